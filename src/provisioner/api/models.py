"""Pydantic models for HTTP API requests and responses."""

from typing import Any, Optional

from pydantic import BaseModel, Field

from provisioner.models.ota import OtaProgress
from provisioner.models.partition import Partition
from provisioner.models.wifi import WifiLinkState


class BeginUpgradeRequest(BaseModel):
    """POST /api/ota/begin payload.

    Example:
        {"partition": "ota_1", "size": 921600}
    """

    partition: str = Field(..., min_length=1, max_length=16, examples=["ota_1"])
    size: int = Field(..., gt=0, description="Total image size in bytes", examples=[921600])


class StationConfigRequest(BaseModel):
    """POST /api/wifi/config payload.

    Example:
        {"ssid": "HomeNetwork", "password": "secret123", "connect": true, "save": true}
    """

    ssid: str = Field(..., min_length=1, max_length=32)
    password: str = Field("", max_length=64)
    connect: bool = Field(True, description="Join immediately after storing")
    save: bool = Field(True, description="Persist to NVS")


class ApConfigRequest(BaseModel):
    """POST /api/wifi/ap payload."""

    ssid: str = Field(..., min_length=1, max_length=32)
    password: str = Field("", max_length=64)
    channel: int = Field(1, ge=1, le=13)
    save: bool = True


class RestartRequest(BaseModel):
    delay: float = Field(1.0, ge=0, le=60, description="Seconds before reset")


class PartitionsData(BaseModel):
    running: Optional[str] = None
    next_update: Optional[str] = None
    partitions: list[Partition]


class StatusData(BaseModel):
    """GET /api/status data."""

    firmware_version: str
    firmware_sha256: Optional[str] = None
    running_partition: Optional[str] = None
    ota: OtaProgress
    last_ota_error: Optional[str] = None
    wifi: WifiLinkState
    restart_pending: bool = False


class SuccessResponse(BaseModel):
    """Envelope for successful calls; HTTP status is always 200."""

    code: int = Field(default=200, description="Application-level status code (200)")
    msg: str = Field(default="success")
    data: Optional[Any] = None


class ErrorResponse(BaseModel):
    """Envelope for failed calls; real status in ``code``."""

    code: int = Field(..., description="Application-level error code (400/404/409/413/500/504)")
    msg: str = Field(..., description="Error message with error code prefix")
    error: str = Field(..., description="Error kind token, e.g. NOT_IN_PROGRESS")
