"""Unit tests for ReportService and ProgressReporter."""

import logging
import time
from unittest.mock import MagicMock

import pytest

from provisioner.errors import IoFault, UpgradeAborted
from provisioner.models.ota import OtaProgress, OtaStatus
from provisioner.services.reporter import ProgressReporter, ReportService


def _progress(written, total=1000, status=OtaStatus.IN_PROGRESS):
    return OtaProgress(
        bytes_written=written,
        total_bytes=total,
        percentage=written * 100 // total,
        in_progress=status == OtaStatus.IN_PROGRESS,
        status=status,
        status_message="Writing firmware...",
        target="ota_1",
    )


def _progress_lines(caplog):
    return [r.getMessage() for r in caplog.records if r.getMessage().startswith("OTA progress")]


@pytest.mark.unit
class TestReportService:
    """Test ReportService in isolation."""

    @pytest.fixture
    def report_service(self):
        return ReportService()

    def test_logs_in_five_percent_steps(self, report_service, caplog):
        caplog.set_level(logging.INFO, logger="provisioner.reporter")

        for written in range(0, 1001, 10):
            report_service.on_progress(_progress(written))

        lines = _progress_lines(caplog)
        assert len(lines) == 21
        assert lines[0].startswith("OTA progress: 0%")
        assert lines[-1].startswith("OTA progress: 100%")

    def test_repeated_percentage_logged_once(self, report_service, caplog):
        caplog.set_level(logging.INFO, logger="provisioner.reporter")

        for _ in range(10):
            report_service.on_progress(_progress(120))

        assert len(_progress_lines(caplog)) == 1

    def test_new_session_restarts_steps(self, report_service, caplog):
        caplog.set_level(logging.INFO, logger="provisioner.reporter")
        report_service.on_progress(_progress(800))

        report_service.on_progress(_progress(0))

        assert len(_progress_lines(caplog)) == 2

    def test_error_is_recorded(self, report_service, caplog):
        caplog.set_level(logging.INFO, logger="provisioner.reporter")

        report_service.on_error(IoFault("checksum mismatch"))

        assert report_service.last_error == "IO_FAULT: checksum mismatch"
        assert caplog.records[-1].levelno == logging.ERROR

    def test_abort_is_a_warning(self, report_service, caplog):
        caplog.set_level(logging.INFO, logger="provisioner.reporter")

        report_service.on_error(UpgradeAborted("upgrade of ota_1 aborted"))

        assert report_service.last_error.startswith("ABORTED:")
        assert caplog.records[-1].levelno == logging.WARNING

    def test_completion_clears_last_error(self, report_service):
        report_service.on_error(IoFault("flash write error"))

        report_service.on_complete(_progress(1000, status=OtaStatus.COMPLETED))

        assert report_service.last_error is None


@pytest.mark.unit
class TestProgressReporter:
    """Background progress task."""

    def test_reports_periodically(self):
        manager = MagicMock()
        reporter = ProgressReporter(manager, interval=0.01)

        reporter.start()
        time.sleep(0.1)
        reporter.stop()

        assert manager.report_progress.call_count >= 3
        assert reporter.running is False

    def test_start_is_idempotent(self):
        reporter = ProgressReporter(MagicMock(), interval=0.01)

        reporter.start()
        thread = reporter._thread
        reporter.start()

        assert reporter._thread is thread
        assert thread.name == "ota_progress"
        assert thread.daemon is True
        reporter.stop()

    def test_stop_halts_reports(self):
        manager = MagicMock()
        reporter = ProgressReporter(manager, interval=0.01)
        reporter.start()
        time.sleep(0.05)
        reporter.stop()

        count = manager.report_progress.call_count
        time.sleep(0.05)

        assert manager.report_progress.call_count == count

    def test_drives_manager_listener(self, ota_manager, ota_listener, firmware_image):
        image = firmware_image(4096)
        ota_manager.start_upgrade("ota_1", len(image))
        ota_manager.write_data(image[:1024])
        reporter = ProgressReporter(ota_manager, interval=0.01)

        reporter.start()
        time.sleep(0.1)
        reporter.stop()

        assert ota_listener.on_progress.called
        assert ota_listener.on_progress.call_args[0][0].percentage == 25
