"""Service settings loaded from JSON or TOML."""

import json
import logging
import os
import tomllib
from pathlib import Path
from typing import Optional

from pydantic import BaseModel, Field, ValidationError

from provisioner.drivers.radio import SimulatedNetwork

CONFIG_ENV_VAR = "PROVISIONER_CONFIG"

LOG_LEVELS = {
    "DEBUG": logging.DEBUG,
    "INFO": logging.INFO,
    "WARNING": logging.WARNING,
    "ERROR": logging.ERROR,
}


class Settings(BaseModel):
    """Runtime configuration for the provisioning service.

    Every field has a default so the service starts without a config file.
    """

    data_dir: str = Field("./data", description="Flash images, boot selector and NVS file")
    partition_table: Optional[str] = Field(
        None, description="ESP-IDF partitions.csv; built-in dual-bank table if unset"
    )
    boot_partition: str = Field(
        "ota_0", description="Slot booted when the boot record is missing or names an empty slot"
    )
    firmware_version: str = Field("1.0.0", description="Version string of the running image")

    log_file: str = Field("./logs/provisioner.log")
    log_level: str = Field("INFO", pattern=r"^(DEBUG|INFO|WARNING|ERROR)$")

    host: str = Field("0.0.0.0")
    port: int = Field(80, gt=0, lt=65536)

    ap_ssid: str = Field("ESP32-C6-Config", min_length=1, max_length=32)
    ap_password: str = Field("", max_length=64)
    ap_channel: int = Field(1, ge=1, le=13)
    ap_ip: str = Field("192.168.4.1")
    sim_networks: list[SimulatedNetwork] = Field(
        default_factory=list, description="Access points visible to the simulated radio"
    )

    scan_timeout: float = Field(10.0, gt=0, description="Seconds to wait for SCAN_DONE")
    progress_interval: float = Field(0.1, gt=0, description="OTA progress reporter period")
    restart_delay: float = Field(1.0, ge=0, description="Delay before reset after an upgrade")
    suppress_reconnect_after_disconnect: bool = Field(
        True,
        description=(
            "Skip the automatic rejoin for the disconnect event caused by an "
            "explicit disconnect request"
        ),
    )

    @property
    def level(self) -> int:
        return LOG_LEVELS[self.log_level]


def load_settings(config_path: Optional[str] = None) -> Settings:
    """Load settings from JSON or TOML based on extension.

    Falls back to ``$PROVISIONER_CONFIG`` and then to defaults when no path
    is given.

    Raises:
        RuntimeError: If an explicitly named config file cannot be read
        ValueError: If the file content is invalid
    """
    config_path = config_path or os.environ.get(CONFIG_ENV_VAR)
    if not config_path:
        return Settings()

    path = Path(config_path)
    try:
        text = path.read_text(encoding="utf-8")
    except OSError as exc:
        raise RuntimeError(f"Config file not found: {config_path}") from exc

    try:
        if path.suffix.lower() == ".toml":
            data = tomllib.loads(text)
        else:
            data = json.loads(text)
    except (json.JSONDecodeError, tomllib.TOMLDecodeError) as exc:
        raise ValueError(f"Invalid config file {path.name}: {exc}") from exc

    try:
        return Settings(**data)
    except ValidationError as exc:
        raise ValueError(f"Invalid settings in {path.name}: {exc}") from exc
