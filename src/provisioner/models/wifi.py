"""Wi-Fi configuration, event and scan models."""

from enum import Enum
from typing import Optional

from pydantic import BaseModel, Field, field_validator

# Scan results kept per completed scan
SCAN_RESULT_LIMIT = 20


class AuthMode(str, Enum):
    OPEN = "open"
    WEP = "wep"
    WPA_PSK = "wpa_psk"
    WPA2_PSK = "wpa2_psk"
    WPA_WPA2_PSK = "wpa_wpa2_psk"
    WPA3_PSK = "wpa3_psk"
    WPA2_WPA3_PSK = "wpa2_wpa3_psk"


class StationState(str, Enum):
    """Station side of the link.

    disconnected → connecting → connected
          ↑             ↓            ↓
          └──── (disconnect event, auto-rejoin) ┘
    """

    DISCONNECTED = "disconnected"
    CONNECTING = "connecting"
    CONNECTED = "connected"


class WifiEvent(str, Enum):
    """Events delivered by the network stack to ``WifiManager.handle_event``."""

    AP_START = "ap_start"
    AP_STOP = "ap_stop"
    STA_START = "sta_start"
    STA_CONNECTED = "sta_connected"
    STA_DISCONNECTED = "sta_disconnected"
    STA_GOT_IP = "sta_got_ip"
    SCAN_DONE = "scan_done"


class ScanResult(BaseModel):
    """One access point seen during a scan."""

    ssid: str = Field(..., max_length=32)
    rssi: int = Field(..., ge=-128, le=127, description="Signal strength in dBm")
    auth_mode: AuthMode = AuthMode.OPEN
    channel: int = Field(..., ge=0, le=14)


class StaConfig(BaseModel):
    """Credentials for joining an existing network."""

    ssid: str = Field("", max_length=32)
    password: str = Field("", max_length=64)


class ApConfig(BaseModel):
    """SoftAP parameters."""

    ssid: str = Field("ESP32-C6-Config", min_length=1, max_length=32)
    password: str = Field("", max_length=64)
    channel: int = Field(1, ge=1, le=13)
    max_connections: int = Field(4, ge=1, le=10)

    @field_validator("password")
    @classmethod
    def wpa_password_length(cls, v: str) -> str:
        """WPA2 requires at least 8 characters; empty means an open AP."""
        if v and len(v) < 8:
            raise ValueError("AP password must be empty or at least 8 characters")
        return v

    @property
    def auth_mode(self) -> AuthMode:
        return AuthMode.WPA_WPA2_PSK if self.password else AuthMode.OPEN


class WifiLinkState(BaseModel):
    """Snapshot of station and SoftAP status."""

    station_ssid: str = ""
    station_state: StationState = StationState.DISCONNECTED
    connected: bool = False
    ip: Optional[str] = None
    ap_ssid: str = ""
    ap_started: bool = False
    scan_results: list[ScanResult] = Field(default_factory=list, max_length=SCAN_RESULT_LIMIT)
