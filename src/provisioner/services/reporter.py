"""Periodic OTA progress reporting."""

import logging
import threading
from typing import Optional

from provisioner.errors import ProvisionerError, UpgradeAborted
from provisioner.models.ota import OtaProgress
from provisioner.services.ota import OtaListener, OtaManager


class ReportService(OtaListener):
    """Logs OTA events, progress in 5% steps.

    Keeps the last completion/error so the status endpoint can show them.
    """

    def __init__(self, step: int = 5):
        self.logger = logging.getLogger("provisioner.reporter")
        self.step = step
        self.last_error: Optional[str] = None
        self._last_reported = -self.step

    def on_progress(self, progress: OtaProgress) -> None:
        if progress.percentage < self._last_reported:
            # New session
            self._last_reported = -self.step
        if progress.percentage >= self._last_reported + self.step:
            self._last_reported = progress.percentage
            self.logger.info(
                f"OTA progress: {progress.percentage}% "
                f"({progress.bytes_written}/{progress.total_bytes} bytes) "
                f"-> {progress.target}"
            )

    def on_complete(self, progress: OtaProgress) -> None:
        self._last_reported = -self.step
        self.last_error = None
        self.logger.info(f"OTA complete: {progress.total_bytes} bytes on {progress.target}")

    def on_error(self, error: ProvisionerError) -> None:
        self._last_reported = -self.step
        self.last_error = str(error)
        if isinstance(error, UpgradeAborted):
            self.logger.warning(f"OTA aborted: {error}")
        else:
            self.logger.error(f"OTA failed: {error}")


class ProgressReporter:
    """Background task feeding ``OtaManager.report_progress`` at a fixed period.

    Runs off the write path; a slow listener delays only the next report.
    """

    def __init__(self, manager: OtaManager, interval: float = 0.1):
        self.logger = logging.getLogger("provisioner.reporter")
        self.manager = manager
        self.interval = interval
        self._stop = threading.Event()
        self._thread: Optional[threading.Thread] = None

    @property
    def running(self) -> bool:
        return self._thread is not None and self._thread.is_alive()

    def start(self) -> None:
        if self.running:
            return
        self._stop.clear()
        self._thread = threading.Thread(target=self._run, name="ota_progress", daemon=True)
        self._thread.start()
        self.logger.debug(f"Progress reporter started (interval={self.interval}s)")

    def stop(self, timeout: float = 1.0) -> None:
        self._stop.set()
        if self._thread is not None:
            self._thread.join(timeout)
            self._thread = None

    def _run(self) -> None:
        while not self._stop.wait(self.interval):
            self.manager.report_progress()
