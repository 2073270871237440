"""Unit tests for DeviceController."""

import threading
from unittest.mock import MagicMock, patch

import pytest

from provisioner.errors import InvalidArgument, ProvisionerError
from provisioner.services.device import DeviceController


@pytest.mark.unit
class TestDeviceController:
    def test_restart_fires_hook_after_delay(self):
        fired = threading.Event()
        controller = DeviceController(reset_hook=fired.set)

        controller.restart(0.05)

        assert controller.restart_pending is True
        assert fired.wait(2.0)

    def test_second_restart_is_ignored(self):
        with patch("provisioner.services.device.threading.Timer") as MockTimer:
            controller = DeviceController(reset_hook=MagicMock())

            controller.restart(5.0)
            controller.restart(0.0)

        MockTimer.assert_called_once()
        assert MockTimer.call_args[0][0] == 5.0
        MockTimer.return_value.start.assert_called_once()

    def test_negative_delay(self, device):
        with pytest.raises(InvalidArgument) as exc_info:
            device.restart(-1)
        assert isinstance(exc_info.value, ProvisionerError)
        assert str(exc_info.value).startswith("INVALID_ARGUMENT:")
        assert device.restart_pending is False

    def test_reset_flushes_log_handlers(self):
        hook = MagicMock()
        handler = MagicMock()
        handler.level = 0
        controller = DeviceController(reset_hook=hook)

        with patch("provisioner.services.device.logging.getLogger") as get_logger:
            get_logger.return_value.handlers = [handler]
            controller._reset()

        handler.flush.assert_called_once()
        hook.assert_called_once()

    def test_default_hook_reexecs(self):
        with patch("provisioner.services.device.os.execv") as execv:
            DeviceController()._reset()
        execv.assert_called_once()
