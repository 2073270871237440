"""Process-level wiring of drivers and state machines."""

import logging
from pathlib import Path
from typing import Callable, Optional

from provisioner.config import Settings
from provisioner.drivers.flash import FileFlashDriver, FlashDriver
from provisioner.drivers.radio import SimulatedRadio, WifiRadio
from provisioner.errors import ConfigCorrupt, IoFault, NotFound
from provisioner.models.wifi import ApConfig
from provisioner.services.config_store import NvsStore
from provisioner.services.device import DeviceController
from provisioner.services.ota import OtaManager
from provisioner.services.partitions import PartitionTable
from provisioner.services.reporter import ProgressReporter, ReportService
from provisioner.services.wifi import CONFIG_NAMESPACE, WifiManager

NVS_FILE = "nvs.json"


class SystemState:
    """Owns one instance of every component.

    Created by the entry point and handed to the HTTP layer; tests build as
    many independent instances as they need.
    """

    def __init__(
        self,
        settings: Settings,
        flash: Optional[FlashDriver] = None,
        radio: Optional[WifiRadio] = None,
        reset_hook: Optional[Callable[[], None]] = None,
    ):
        self.logger = logging.getLogger("provisioner.system")
        self.settings = settings
        data_dir = Path(settings.data_dir)

        self.flash = flash or FileFlashDriver(str(data_dir))
        self.partitions = self._load_partitions()

        self.device = DeviceController(reset_hook)
        self.report_service = ReportService()
        self.ota = OtaManager(
            self.partitions,
            self.flash,
            device=self.device,
            listener=self.report_service,
            firmware_version=settings.firmware_version,
        )
        self.progress_reporter = ProgressReporter(self.ota, settings.progress_interval)

        self.store = NvsStore(str(data_dir / NVS_FILE), CONFIG_NAMESPACE)
        self.radio = radio or SimulatedRadio(settings.sim_networks)
        self.wifi = WifiManager(
            self.radio,
            self.store,
            scan_timeout=settings.scan_timeout,
            suppress_reconnect_after_disconnect=settings.suppress_reconnect_after_disconnect,
            ap_ip=settings.ap_ip,
            ap_config=ApConfig(
                ssid=settings.ap_ssid,
                password=settings.ap_password,
                channel=settings.ap_channel,
            ),
        )

    def _load_partitions(self) -> PartitionTable:
        """Pick the running slot the way the bootloader does.

        The boot record is trusted only if its slot holds a valid image;
        otherwise ``settings.boot_partition`` is booted.
        """
        settings = self.settings
        recorded = self.flash.get_boot_partition()
        if recorded is not None:
            table = PartitionTable.load(settings.partition_table, recorded)
            try:
                valid = self.flash.has_valid_image(table.find_partition(recorded))
            except NotFound:
                valid = False
            if valid:
                return table
            self.logger.warning(
                f"Boot record points at {recorded} which holds no valid image, "
                f"falling back to {settings.boot_partition}"
            )
        return PartitionTable.load(settings.partition_table, settings.boot_partition)

    def start(self) -> None:
        """Restore saved Wi-Fi config, bring up AP + station, start reporting."""
        try:
            self.wifi.load_config()
        except ConfigCorrupt as e:
            self.logger.error(f"Saved Wi-Fi configuration is corrupt, using defaults: {e}")
        except IoFault as e:
            self.logger.error(f"Cannot read saved Wi-Fi configuration: {e}")

        self.wifi.start_ap()
        self.wifi.start_station()
        self.progress_reporter.start()
        self.logger.info(
            f"System started: running={self.partitions.running_partition().name}, "
            f"firmware={self.settings.firmware_version}"
        )

    def stop(self) -> None:
        self.progress_reporter.stop()
        self.logger.info("System stopped")
