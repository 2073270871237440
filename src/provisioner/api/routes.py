"""API route handlers over the OTA and Wi-Fi state machines.

Handlers only translate between JSON and core calls. Core errors propagate
to ``provisioner_error_handler``, which renders them in the response
envelope with HTTP status 200 and the real status in ``code``.
"""

import logging
import threading

from fastapi import APIRouter, Depends, Query, Request
from fastapi.concurrency import run_in_threadpool
from fastapi.responses import JSONResponse

from provisioner.api.models import (
    ApConfigRequest,
    BeginUpgradeRequest,
    ErrorResponse,
    PartitionsData,
    RestartRequest,
    StationConfigRequest,
    StatusData,
    SuccessResponse,
)
from provisioner.errors import (
    InsufficientSpace,
    InvalidArgument,
    InvalidState,
    InvalidTarget,
    NotFound,
    ProvisionerError,
    ScanTimeout,
    VerifyFailed,
)
from provisioner.models.ota import OtaStatus
from provisioner.models.wifi import SCAN_RESULT_LIMIT
from provisioner.services.system import SystemState

logger = logging.getLogger("provisioner.api")

router = APIRouter(prefix="/api")

# Upload chunks for the single OTA session are handled one at a time
_upload_lock = threading.Lock()

_ERROR_CODES = (
    (InvalidArgument, 400),
    (VerifyFailed, 400),
    (InvalidTarget, 400),
    (NotFound, 404),
    (InvalidState, 409),
    (InsufficientSpace, 413),
    (ScanTimeout, 504),
)


def error_code(exc: ProvisionerError) -> int:
    for kind, code in _ERROR_CODES:
        if isinstance(exc, kind):
            return code
    return 500


async def provisioner_error_handler(request: Request, exc: ProvisionerError) -> JSONResponse:
    code = error_code(exc)
    logger.warning(f"{request.method} {request.url.path} -> {code}: {exc}")
    body = ErrorResponse(code=code, msg=str(exc), error=exc.code)
    return JSONResponse(status_code=200, content=body.model_dump())


def get_system(request: Request) -> SystemState:
    return request.app.state.system


def _ok(data=None) -> SuccessResponse:
    return SuccessResponse(data=data)


# -----------------------------------------------------------------------
# Status


@router.get("/status", response_model=SuccessResponse)
def get_status(system: SystemState = Depends(get_system)):
    """GET /api/status - Firmware, OTA and Wi-Fi summary."""
    try:
        running = system.partitions.running_partition().name
    except NotFound:
        running = None
    status = StatusData(
        firmware_version=system.ota.firmware_version(),
        firmware_sha256=system.ota.firmware_sha256(),
        running_partition=running,
        ota=system.ota.get_progress(),
        last_ota_error=system.report_service.last_error,
        wifi=system.wifi.link_state(),
        restart_pending=system.device.restart_pending,
    )
    return _ok(status.model_dump(mode="json"))


# -----------------------------------------------------------------------
# OTA


@router.get("/ota/partitions", response_model=SuccessResponse)
def get_partitions(system: SystemState = Depends(get_system)):
    """GET /api/ota/partitions - Partition table with the running slot marked."""
    table = system.partitions
    try:
        running = table.running_partition().name
        next_update = table.next_update_partition().name
    except NotFound:
        running, next_update = None, None
    data = PartitionsData(running=running, next_update=next_update, partitions=table.list_partitions())
    return _ok(data.model_dump(mode="json"))


@router.get("/ota/progress", response_model=SuccessResponse)
def get_progress(system: SystemState = Depends(get_system)):
    """GET /api/ota/progress - Current OTA session snapshot.

    Response format:
        {
            "code": 200,
            "msg": "success",
            "data": {
                "bytes_written": 409600,
                "total_bytes": 921600,
                "percentage": 44,
                "in_progress": true,
                "status": "in_progress",
                "status_message": "Writing firmware...",
                "target": "ota_1"
            }
        }
    """
    return _ok(system.ota.get_progress().model_dump(mode="json"))


@router.post("/ota/upgrade", response_model=SuccessResponse)
async def post_upgrade(
    request: Request,
    partition: str = Query("", max_length=16, description="Target slot; next OTA slot if empty"),
    reboot: bool = Query(True, description="Restart after a completed upgrade"),
    system: SystemState = Depends(get_system),
):
    """POST /api/ota/upgrade - Flash a complete image sent as the raw body."""
    image = await request.body()
    target = partition or system.partitions.next_update_partition().name

    def _flash():
        with _upload_lock:
            return system.ota.flash_image(target, image)

    progress = await run_in_threadpool(_flash)
    if reboot and progress.status == OtaStatus.COMPLETED:
        system.ota.restart_device(system.settings.restart_delay)
    return _ok(progress.model_dump(mode="json"))


@router.post("/ota/begin", response_model=SuccessResponse)
def post_begin(request: BeginUpgradeRequest, system: SystemState = Depends(get_system)):
    """POST /api/ota/begin - Open a streaming upgrade session."""
    system.ota.start_upgrade(request.partition, request.size)
    return _ok(system.ota.get_progress().model_dump(mode="json"))


@router.post("/ota/write", response_model=SuccessResponse)
async def post_write(request: Request, system: SystemState = Depends(get_system)):
    """POST /api/ota/write - Append the raw body to the open session.

    The session finishes by itself when the declared size is reached.
    """
    chunk = await request.body()

    def _write():
        with _upload_lock:
            system.ota.write_data(chunk)
            return system.ota.get_progress()

    progress = await run_in_threadpool(_write)
    return _ok(progress.model_dump(mode="json"))


@router.post("/ota/finish", response_model=SuccessResponse)
def post_finish(system: SystemState = Depends(get_system)):
    """POST /api/ota/finish - Finalize a session whose size was not reached."""
    with _upload_lock:
        system.ota.finish_upgrade()
    return _ok(system.ota.get_progress().model_dump(mode="json"))


@router.post("/ota/abort", response_model=SuccessResponse)
def post_abort(system: SystemState = Depends(get_system)):
    """POST /api/ota/abort - Cancel the open session."""
    system.ota.abort_upgrade()
    return _ok(system.ota.get_progress().model_dump(mode="json"))


# -----------------------------------------------------------------------
# Wi-Fi


@router.get("/wifi/status", response_model=SuccessResponse)
def get_wifi_status(system: SystemState = Depends(get_system)):
    return _ok(system.wifi.link_state().model_dump(mode="json"))


@router.post("/wifi/config", response_model=SuccessResponse)
def post_wifi_config(request: StationConfigRequest, system: SystemState = Depends(get_system)):
    """POST /api/wifi/config - Store station credentials, optionally join."""
    system.wifi.set_station_config(request.ssid, request.password)
    if request.save:
        system.wifi.save_config()
    if request.connect:
        system.wifi.connect_station()
    return _ok({"ssid": request.ssid, "connecting": request.connect})


@router.post("/wifi/ap", response_model=SuccessResponse)
def post_ap_config(request: ApConfigRequest, system: SystemState = Depends(get_system)):
    """POST /api/wifi/ap - Change SoftAP settings; applied on next AP start."""
    system.wifi.set_ap_config(request.ssid, request.password, request.channel)
    if request.save:
        system.wifi.save_config()
    return _ok({"ssid": request.ssid, "channel": request.channel})


@router.post("/wifi/connect", response_model=SuccessResponse)
def post_connect(system: SystemState = Depends(get_system)):
    system.wifi.connect_station()
    return _ok({"ssid": system.wifi.station_config.ssid})


@router.post("/wifi/disconnect", response_model=SuccessResponse)
def post_disconnect(system: SystemState = Depends(get_system)):
    system.wifi.disconnect_station()
    return _ok()


@router.get("/wifi/scan", response_model=SuccessResponse)
def get_scan(
    max_results: int = Query(SCAN_RESULT_LIMIT, ge=1, le=SCAN_RESULT_LIMIT),
    system: SystemState = Depends(get_system),
):
    """GET /api/wifi/scan - Blocks until the scan completes or times out."""
    results = system.wifi.scan(max_results)
    return _ok({"networks": [r.model_dump(mode="json") for r in results]})


@router.post("/wifi/clear", response_model=SuccessResponse)
def post_clear(system: SystemState = Depends(get_system)):
    system.wifi.clear_saved_config()
    return _ok()


# -----------------------------------------------------------------------
# System


@router.post("/system/restart", response_model=SuccessResponse)
def post_restart(request: RestartRequest, system: SystemState = Depends(get_system)):
    """POST /api/system/restart - Schedule a device reset. Point of no return."""
    system.device.restart(request.delay)
    return _ok({"delay": request.delay})
