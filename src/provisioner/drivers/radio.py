"""Wi-Fi radio seam used by the connection state machine.

The radio only accepts requests; outcomes come back asynchronously through
the registered event handler, the way the ESP-IDF event loop delivers
``WIFI_EVENT``/``IP_EVENT`` notifications.
"""

import logging
import threading
from typing import Callable, Optional

from pydantic import BaseModel, Field

from provisioner.models.wifi import ApConfig, AuthMode, ScanResult, StaConfig, WifiEvent

EventHandler = Callable[[WifiEvent, dict], None]


class WifiRadio:
    """Base class for radio backends."""

    def __init__(self):
        self._handler: Optional[EventHandler] = None

    def set_event_handler(self, handler: EventHandler) -> None:
        self._handler = handler

    def emit(self, event: WifiEvent, data: Optional[dict] = None) -> None:
        if self._handler is not None:
            self._handler(event, data or {})

    def start_station(self) -> None:
        raise NotImplementedError

    def connect(self, config: StaConfig) -> None:
        raise NotImplementedError

    def disconnect(self) -> None:
        raise NotImplementedError

    def start_scan(self, scan_id: Optional[int] = None) -> None:
        """Request a scan. Backends that can tag SCAN_DONE echo ``scan_id`` in its data."""
        raise NotImplementedError

    def start_ap(self, config: ApConfig) -> None:
        raise NotImplementedError

    def stop_ap(self) -> None:
        raise NotImplementedError


class SimulatedNetwork(BaseModel):
    """An access point visible to ``SimulatedRadio``."""

    ssid: str = Field(..., min_length=1, max_length=32)
    password: str = Field("", max_length=64)
    rssi: int = Field(-55, ge=-128, le=0)
    channel: int = Field(6, ge=1, le=14)
    ip: str = Field("192.168.1.50", description="Address handed out on join")

    def scan_result(self) -> ScanResult:
        return ScanResult(
            ssid=self.ssid,
            rssi=self.rssi,
            auth_mode=AuthMode.WPA2_PSK if self.password else AuthMode.OPEN,
            channel=self.channel,
        )


class SimulatedRadio(WifiRadio):
    """Host-side radio that answers requests with delayed events.

    Joining succeeds only for a known SSID with the matching password.
    A failed join reports ``STA_DISCONNECTED`` after ``join_timeout``.
    """

    def __init__(
        self,
        networks: Optional[list] = None,
        latency: float = 0.05,
        join_timeout: float = 1.0,
        scan_time: float = 0.3,
    ):
        super().__init__()
        self.logger = logging.getLogger("provisioner.radio")
        self.networks = {n.ssid: n for n in (networks or [])}
        self.latency = latency
        self.join_timeout = join_timeout
        self.scan_time = scan_time
        self._joined: Optional[str] = None
        self._lock = threading.Lock()

    def _later(self, delay: float, event: WifiEvent, data: Optional[dict] = None) -> None:
        timer = threading.Timer(delay, self.emit, args=(event, data))
        timer.daemon = True
        timer.start()

    def start_station(self) -> None:
        self._later(self.latency, WifiEvent.STA_START)

    def connect(self, config: StaConfig) -> None:
        network = self.networks.get(config.ssid)
        if network is None:
            self.logger.debug(f"Simulated join to {config.ssid}: no AP found")
            self._later(self.join_timeout, WifiEvent.STA_DISCONNECTED, {"reason": "no_ap_found"})
            return
        if network.password and network.password != config.password:
            self.logger.debug(f"Simulated join to {config.ssid}: auth failure")
            self._later(self.join_timeout, WifiEvent.STA_DISCONNECTED, {"reason": "auth_fail"})
            return
        with self._lock:
            self._joined = config.ssid
        self._later(self.latency, WifiEvent.STA_CONNECTED, {"ssid": config.ssid})
        self._later(2 * self.latency, WifiEvent.STA_GOT_IP, {"ip": network.ip})

    def disconnect(self) -> None:
        with self._lock:
            joined, self._joined = self._joined, None
        if joined:
            self._later(self.latency, WifiEvent.STA_DISCONNECTED, {"reason": "assoc_leave"})

    def start_scan(self, scan_id: Optional[int] = None) -> None:
        records = [n.scan_result() for n in self.networks.values()]
        records.sort(key=lambda r: r.rssi, reverse=True)
        self._later(self.scan_time, WifiEvent.SCAN_DONE, {"records": records, "scan_id": scan_id})

    def start_ap(self, config: ApConfig) -> None:
        self.logger.debug(f"Simulated SoftAP {config.ssid} on channel {config.channel}")
        self._later(self.latency, WifiEvent.AP_START)

    def stop_ap(self) -> None:
        self._later(self.latency, WifiEvent.AP_STOP)
