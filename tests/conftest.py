"""Global pytest fixtures and configuration."""

import struct
import sys
from pathlib import Path
from unittest.mock import MagicMock

import pytest

# Add src to path
sys.path.insert(0, str(Path(__file__).parent.parent / "src"))

from provisioner.drivers.flash import FileFlashDriver  # noqa: E402
from provisioner.drivers.radio import WifiRadio  # noqa: E402
from provisioner.services.config_store import NvsStore  # noqa: E402
from provisioner.services.device import DeviceController  # noqa: E402
from provisioner.services.ota import OtaListener, OtaManager  # noqa: E402
from provisioner.services.partitions import DEFAULT_PARTITION_CSV, PartitionTable  # noqa: E402
from provisioner.services.wifi import WifiListener, WifiManager  # noqa: E402


def make_image(size: int = 4096, chip_id: int = 0x000D) -> bytes:
    """Build a firmware image with a valid application header."""
    header = struct.pack(
        "<BBBBIB3sHBHH4sB",
        0xE9, 1, 2, 0x20, 0x40380000, 0xEE, b"\x00\x00\x00",
        chip_id, 0, 0, 0xFFFF, b"\x00" * 4, 1,
    )
    body = bytes(i % 251 for i in range(max(0, size - len(header))))
    return (header + body)[:size] if size >= len(header) else header[:size]


class FakeRadio(WifiRadio):
    """Records requests; events are delivered only when a test emits them."""

    def __init__(self):
        super().__init__()
        self.calls = []
        self.scan_records = None  # deliver SCAN_DONE synchronously when set
        self.last_scan_id = None

    def start_station(self):
        self.calls.append(("start_station",))

    def connect(self, config):
        self.calls.append(("connect", config.ssid, config.password))

    def disconnect(self):
        self.calls.append(("disconnect",))

    def start_scan(self, scan_id=None):
        self.calls.append(("start_scan",))
        self.last_scan_id = scan_id
        if self.scan_records is not None:
            from provisioner.models.wifi import WifiEvent

            self.emit(WifiEvent.SCAN_DONE, {"records": self.scan_records, "scan_id": scan_id})

    def start_ap(self, config):
        self.calls.append(("start_ap", config.ssid))

    def stop_ap(self):
        self.calls.append(("stop_ap",))

    def count(self, name: str) -> int:
        return sum(1 for c in self.calls if c[0] == name)


@pytest.fixture
def firmware_image():
    return make_image


@pytest.fixture
def partition_table():
    """Default dual-bank table running from ota_0."""
    return PartitionTable.from_csv(DEFAULT_PARTITION_CSV, "ota_0")


@pytest.fixture
def flash(tmp_path):
    return FileFlashDriver(str(tmp_path / "flash"))


@pytest.fixture
def ota_listener():
    return MagicMock(spec=OtaListener)


@pytest.fixture
def device():
    return DeviceController(reset_hook=MagicMock())


@pytest.fixture
def ota_manager(partition_table, flash, device, ota_listener):
    return OtaManager(
        partition_table, flash, device=device, listener=ota_listener, firmware_version="1.2.3"
    )


@pytest.fixture
def radio():
    return FakeRadio()


@pytest.fixture
def nvs_store(tmp_path):
    return NvsStore(str(tmp_path / "nvs.json"), "wifi_config")


@pytest.fixture
def wifi_listener():
    return MagicMock(spec=WifiListener)


@pytest.fixture
def wifi_manager(radio, nvs_store, wifi_listener):
    return WifiManager(radio, nvs_store, listener=wifi_listener, scan_timeout=0.2)
