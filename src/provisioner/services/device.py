"""Device reset control."""

import logging
import os
import sys
import threading
from typing import Callable, Optional

from provisioner.errors import InvalidArgument


def _reexec() -> None:
    """Replace the current process with a fresh copy of itself."""
    os.execv(sys.executable, [sys.executable] + sys.argv)


class DeviceController:
    """Schedules the hard reset that makes a new boot partition take effect.

    A restart is a point of no return: once the timer fires the process is
    replaced and no caller code runs afterwards.
    """

    def __init__(self, reset_hook: Optional[Callable[[], None]] = None):
        self.logger = logging.getLogger("provisioner.device")
        self.reset_hook = reset_hook or _reexec
        self._timer: Optional[threading.Timer] = None
        self._lock = threading.Lock()

    @property
    def restart_pending(self) -> bool:
        return self._timer is not None

    def restart(self, delay: float = 0.0) -> None:
        """Reset the device after ``delay`` seconds.

        A second call while a restart is pending is ignored.

        Raises:
            InvalidArgument: ``delay`` is negative
        """
        if delay < 0:
            raise InvalidArgument(f"delay must be >= 0, got {delay}")
        with self._lock:
            if self._timer is not None:
                self.logger.info("Restart already scheduled")
                return
            self.logger.warning(f"Restarting device in {delay:.1f}s")
            self._timer = threading.Timer(delay, self._reset)
            self._timer.daemon = True
            self._timer.start()

    def _reset(self) -> None:
        self.logger.info("Restarting device now")
        for handler in logging.getLogger("provisioner").handlers:
            handler.flush()
        self.reset_hook()
