"""Wi-Fi connection state machine.

Station state follows network-stack events only: a join request moves the
station to ``connecting``, and it is ``connected`` once an address has been
acquired. Every unexpected disconnect triggers an immediate rejoin.
"""

import logging
import threading
from functools import partial
from typing import Callable, Optional

from pydantic import ValidationError

from provisioner.drivers.radio import WifiRadio
from provisioner.errors import ConfigCorrupt, InvalidArgument, InvalidState, ScanTimeout
from provisioner.models.wifi import (
    SCAN_RESULT_LIMIT,
    ApConfig,
    ScanResult,
    StaConfig,
    StationState,
    WifiEvent,
    WifiLinkState,
)
from provisioner.services.config_store import NvsStore, decode_config, encode_config

CONFIG_NAMESPACE = "wifi_config"
AP_CONFIG_KEY = "ap_config"
STA_CONFIG_KEY = "sta_config"

# Seconds scan() waits for SCAN_DONE
SCAN_TIMEOUT = 10.0


class WifiListener:
    """Receives link events. Called from the event context; must not block."""

    def on_connected(self, ip: str) -> None:
        pass

    def on_disconnected(self) -> None:
        pass

    def on_scan_done(self, results: list[ScanResult]) -> None:
        pass


class WifiManager:
    """Owns the station/SoftAP link state for one radio."""

    def __init__(
        self,
        radio: WifiRadio,
        store: NvsStore,
        listener: Optional[WifiListener] = None,
        scan_timeout: float = SCAN_TIMEOUT,
        suppress_reconnect_after_disconnect: bool = True,
        ap_ip: str = "192.168.4.1",
        ap_config: Optional[ApConfig] = None,
    ):
        self.logger = logging.getLogger("provisioner.wifi")
        self.radio = radio
        self.store = store
        self.listener = listener or WifiListener()
        self.scan_timeout = scan_timeout
        self.suppress_reconnect_after_disconnect = suppress_reconnect_after_disconnect
        self._ap_ip = ap_ip

        self._lock = threading.RLock()
        self._scan_lock = threading.Lock()
        self._scan_done = threading.Event()
        self._scan_seq = 0
        self._pending_scan: Optional[int] = None

        self._sta_config = StaConfig()
        self._ap_config = ap_config or ApConfig()
        self._station_state = StationState.DISCONNECTED
        self._connected = False
        self._ap_started = False
        self._ip: Optional[str] = None
        self._scan_results: list[ScanResult] = []
        self._suppress_next_reconnect = False
        self.reconnect_attempts = 0

        radio.set_event_handler(self.handle_event)

    # --------------------------------------------------------
    # Configuration

    def set_station_config(self, ssid: str, password: str = "") -> None:
        """Store station credentials. Does not connect."""
        if not ssid:
            raise InvalidArgument("SSID must not be empty")
        try:
            config = StaConfig(ssid=ssid, password=password)
        except ValidationError as e:
            raise InvalidArgument(f"invalid station config: {e}") from e
        with self._lock:
            self._sta_config = config
        self.logger.info(f"STA config updated: {ssid}")

    def set_ap_config(self, ssid: str, password: str = "", channel: int = 1) -> None:
        try:
            config = ApConfig(ssid=ssid, password=password, channel=channel)
        except ValidationError as e:
            raise InvalidArgument(f"invalid AP config: {e}") from e
        with self._lock:
            self._ap_config = config
        self.logger.info(f"AP config updated: {ssid}")

    @property
    def station_config(self) -> StaConfig:
        return self._sta_config

    @property
    def ap_config(self) -> ApConfig:
        return self._ap_config

    # --------------------------------------------------------
    # Station

    def start_station(self) -> None:
        """Bring up the station interface; STA_START then joins if configured."""
        self.radio.start_station()

    def connect_station(self) -> None:
        """Issue a join request. Completion is reported by STA_GOT_IP.

        Raises:
            InvalidState: No SSID configured
        """
        with self._lock:
            if not self._sta_config.ssid:
                raise InvalidState("SSID not configured")
            self._suppress_next_reconnect = False
            self._station_state = StationState.CONNECTING
            config = self._sta_config
        self.logger.info(f"Connecting STA to: {config.ssid}")
        self.radio.connect(config)

    def disconnect_station(self) -> None:
        """Request a disconnect without waiting; poll ``is_connected()``."""
        with self._lock:
            self._suppress_next_reconnect = self.suppress_reconnect_after_disconnect
        self.logger.info("STA disconnect requested")
        self.radio.disconnect()

    def is_connected(self) -> bool:
        return self._connected

    @property
    def station_state(self) -> StationState:
        return self._station_state

    def station_ip(self) -> str:
        with self._lock:
            if not self._connected or self._ip is None:
                raise InvalidState("station not connected")
            return self._ip

    # --------------------------------------------------------
    # SoftAP

    def start_ap(self) -> None:
        self.logger.info(f"Starting SoftAP: {self._ap_config.ssid}")
        self.radio.start_ap(self._ap_config)

    def stop_ap(self) -> None:
        self.logger.info("Stopping SoftAP")
        self.radio.stop_ap()

    @property
    def ap_started(self) -> bool:
        return self._ap_started

    def ap_ip(self) -> str:
        if not self._ap_started:
            raise InvalidState("SoftAP not started")
        return self._ap_ip

    # --------------------------------------------------------
    # Scan

    def scan(self, max_results: int = SCAN_RESULT_LIMIT) -> list[ScanResult]:
        """Scan and block until results arrive or ``scan_timeout`` elapses.

        Raises:
            InvalidArgument: ``max_results`` < 1
            ScanTimeout: No SCAN_DONE event within the timeout
        """
        if max_results < 1:
            raise InvalidArgument(f"max_results must be >= 1, got {max_results}")

        with self._scan_lock:
            with self._lock:
                self._scan_seq += 1
                scan_id = self._scan_seq
                self._pending_scan = scan_id
                self._scan_done.clear()
            self.radio.start_scan(scan_id)
            completed = self._scan_done.wait(self.scan_timeout)
            with self._lock:
                self._pending_scan = None
                completed = completed or self._scan_done.is_set()
            if not completed:
                self.logger.error(f"Wi-Fi scan timed out after {self.scan_timeout}s")
                raise ScanTimeout(f"no scan result within {self.scan_timeout}s")
            with self._lock:
                results = list(self._scan_results)

        count = min(max_results, SCAN_RESULT_LIMIT)
        self.logger.info(f"Scan complete: {len(results[:count])} networks")
        return results[:count]

    def last_scan_results(self) -> list[ScanResult]:
        with self._lock:
            return list(self._scan_results)

    # --------------------------------------------------------
    # Events

    def handle_event(self, event: WifiEvent, data: Optional[dict] = None) -> None:
        """Entry point for network-stack events."""
        data = data or {}
        if event == WifiEvent.AP_START:
            self._ap_started = True
            self.logger.info("SoftAP started")
        elif event == WifiEvent.AP_STOP:
            self._ap_started = False
            self.logger.info("SoftAP stopped")
        elif event == WifiEvent.STA_START:
            self.logger.info("STA started")
            if self._sta_config.ssid:
                self.connect_station()
        elif event == WifiEvent.STA_CONNECTED:
            self.logger.info(f"STA associated with {data.get('ssid', self._sta_config.ssid)}")
        elif event == WifiEvent.STA_GOT_IP:
            self._on_got_ip(data.get("ip"))
        elif event == WifiEvent.STA_DISCONNECTED:
            self._on_disconnected(data.get("reason", "unknown"))
        elif event == WifiEvent.SCAN_DONE:
            self._on_scan_done(data.get("records", []), data.get("scan_id"))
        else:
            self.logger.debug(f"Ignoring event {event}")

    def _on_got_ip(self, ip: Optional[str]) -> None:
        with self._lock:
            if self._station_state != StationState.CONNECTING:
                self.logger.warning(
                    f"Ignoring address {ip} outside a join attempt "
                    f"(state={self._station_state.value})"
                )
                return
            self._ip = ip
            self._connected = True
            self._station_state = StationState.CONNECTED
        self.logger.info(f"IP obtained: {ip}")
        self._notify(partial(self.listener.on_connected, ip))

    def _on_disconnected(self, reason: str) -> None:
        with self._lock:
            self._connected = False
            self._ip = None
            self._station_state = StationState.DISCONNECTED
            if self._suppress_next_reconnect:
                self._suppress_next_reconnect = False
                rejoin = None
            elif self._sta_config.ssid:
                # No backoff, no retry limit
                self._station_state = StationState.CONNECTING
                self.reconnect_attempts += 1
                rejoin = self._sta_config
            else:
                rejoin = None

        self.logger.info(f"STA disconnected (reason={reason})")
        self._notify(self.listener.on_disconnected)
        if rejoin is not None:
            self.logger.info(f"Reconnecting to {rejoin.ssid} (attempt {self.reconnect_attempts})")
            self.radio.connect(rejoin)

    def _on_scan_done(self, records: list, scan_id: Optional[int] = None) -> None:
        with self._lock:
            pending = self._pending_scan
        # Untagged results are accepted only while a scan is waiting
        if pending is None or (scan_id is not None and scan_id != pending):
            self.logger.warning(f"Dropping stale scan result (scan_id={scan_id}, pending={pending})")
            return
        results = []
        for record in records[:SCAN_RESULT_LIMIT]:
            if isinstance(record, ScanResult):
                results.append(record)
            else:
                try:
                    results.append(ScanResult(**record))
                except (TypeError, ValidationError) as e:
                    self.logger.warning(f"Dropping malformed scan record {record!r}: {e}")
        with self._lock:
            if self._pending_scan != pending:
                return
            self._scan_results = results
            self._scan_done.set()
        self.logger.info(f"Wi-Fi scan done: {len(results)} networks")
        self._notify(partial(self.listener.on_scan_done, list(results)))

    # --------------------------------------------------------
    # Persistence

    def save_config(self) -> None:
        """Persist AP and STA configs.

        Raises:
            IoFault: Storage write failed
        """
        with self._lock:
            ap_blob = encode_config(self._ap_config)
            sta_blob = encode_config(self._sta_config)
        self.store.set_blob(AP_CONFIG_KEY, ap_blob)
        self.store.set_blob(STA_CONFIG_KEY, sta_blob)
        self.store.commit()
        self.logger.info("Wi-Fi configuration saved")

    def load_config(self) -> bool:
        """Restore AP and STA configs.

        Returns:
            True if a saved configuration was loaded, False if none exists

        Raises:
            ConfigCorrupt: Saved blobs exist but cannot be decoded
            IoFault: Storage read failed
        """
        ap_blob = self.store.get_blob(AP_CONFIG_KEY)
        sta_blob = self.store.get_blob(STA_CONFIG_KEY)
        if ap_blob is None and sta_blob is None:
            self.logger.info("No saved Wi-Fi configuration found")
            return False
        if ap_blob is None or sta_blob is None:
            raise ConfigCorrupt("saved Wi-Fi configuration is incomplete")

        ap_config = decode_config(ap_blob, ApConfig)
        sta_config = decode_config(sta_blob, StaConfig)
        with self._lock:
            self._ap_config = ap_config
            self._sta_config = sta_config
        self.logger.info(f"Wi-Fi configuration loaded (ap={ap_config.ssid}, sta={sta_config.ssid or '-'})")
        return True

    def clear_saved_config(self) -> None:
        self.store.erase_all()
        self.store.commit()
        self.logger.info("Saved Wi-Fi configuration cleared")

    # --------------------------------------------------------

    def link_state(self) -> WifiLinkState:
        with self._lock:
            return WifiLinkState(
                station_ssid=self._sta_config.ssid,
                station_state=self._station_state,
                connected=self._connected,
                ip=self._ip,
                ap_ssid=self._ap_config.ssid,
                ap_started=self._ap_started,
                scan_results=list(self._scan_results),
            )

    def _notify(self, callback: Callable[[], None]) -> None:
        try:
            callback()
        except Exception as e:
            self.logger.error(f"Wi-Fi listener raised: {e}", exc_info=True)
