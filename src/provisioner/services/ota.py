"""OTA upgrade state machine.

One session at a time writes a new image into an alternate application slot
and, once the flash transaction validates, repoints the boot selector at it.
"""

import logging
import threading
from functools import partial
from typing import Callable, Optional

from provisioner.drivers.flash import FlashDriver, FlashTransaction
from provisioner.errors import (
    AlreadyInProgress,
    InsufficientSpace,
    InvalidArgument,
    InvalidState,
    InvalidTarget,
    IoFault,
    NotFound,
    NotInProgress,
    ProvisionerError,
    UpgradeAborted,
)
from provisioner.models.ota import OtaProgress, OtaStatus
from provisioner.models.partition import Partition
from provisioner.services.device import DeviceController
from provisioner.services.partitions import PartitionTable
from provisioner.utils.verification import compute_sha256, parse_image_header, verify_firmware

DEFAULT_CHUNK_SIZE = 4096


class OtaListener:
    """Receives OTA events. Methods run in the caller's context and must not
    block or call back into the manager."""

    def on_progress(self, progress: OtaProgress) -> None:
        pass

    def on_complete(self, progress: OtaProgress) -> None:
        pass

    def on_error(self, error: ProvisionerError) -> None:
        pass


class OtaManager:
    """Owns the single OTA session.

    Writes to one session must be serialized by the caller; the lock only
    keeps snapshots consistent for concurrent readers.
    """

    def __init__(
        self,
        partitions: PartitionTable,
        flash: FlashDriver,
        device: Optional[DeviceController] = None,
        listener: Optional[OtaListener] = None,
        firmware_version: str = "",
    ):
        self.logger = logging.getLogger("provisioner.ota")
        self.partitions = partitions
        self.flash = flash
        self.device = device
        self.listener = listener or OtaListener()
        self._firmware_version = firmware_version
        self._lock = threading.RLock()

        self._status = OtaStatus.IDLE
        self._target: Optional[Partition] = None
        self._txn: Optional[FlashTransaction] = None
        self._total = 0
        self._written = 0
        self._message = "Ready"

    # --------------------------------------------------------
    # Session lifecycle

    def start_upgrade(self, partition_name: str, total_size: int) -> None:
        """Open a flash transaction on ``partition_name`` for ``total_size`` bytes.

        Raises:
            InvalidArgument: Empty name or non-positive size
            AlreadyInProgress: A session is in progress
            NotFound: Unknown partition
            InvalidTarget: Running partition or not an application partition
            InsufficientSpace: Image larger than the partition
            IoFault: Flash driver refused to open the transaction
        """
        if not partition_name:
            raise InvalidArgument("partition name is required")
        if isinstance(total_size, bool) or not isinstance(total_size, int) or total_size <= 0:
            raise InvalidArgument(f"invalid image size: {total_size!r}")

        with self._lock:
            if self._status in (OtaStatus.IN_PROGRESS, OtaStatus.FINISHING):
                raise AlreadyInProgress(f"upgrade of {self._target.name} in progress")

            target = self.partitions.find_partition(partition_name)
            if not target.is_app:
                raise InvalidTarget(f"{partition_name} is not an application partition")
            if target.is_running:
                raise InvalidTarget(f"{partition_name} is the running partition")
            if total_size > target.size:
                self.logger.error(f"Firmware too large: {total_size} > {target.size}")
                raise InsufficientSpace(f"{total_size} > {target.size} bytes on {partition_name}")

            txn = self.flash.begin(target)

            if self._status.is_terminal:
                self.logger.info(f"Discarding {self._status.value} session on {self._target.name}")
            self._reset_locked()
            self._target = target
            self._txn = txn
            self._total = total_size
            self._status = OtaStatus.IN_PROGRESS
            self._message = "Starting upgrade..."

        self.logger.info(f"OTA upgrade started: partition={partition_name}, size={total_size}")

    def write_data(self, chunk: bytes) -> None:
        """Append ``chunk``; finishes the upgrade when the last byte arrives.

        A flash write failure is terminal: the session moves to ``failed``
        and a fresh ``start_upgrade`` is required.

        Raises:
            NotInProgress: No session in progress
            InvalidArgument: Empty chunk, or chunk overruns the declared size
            IoFault: Write, finalize or boot selection failed
        """
        with self._lock:
            if self._status != OtaStatus.IN_PROGRESS:
                raise NotInProgress("no upgrade in progress")
            if not chunk:
                raise InvalidArgument("empty chunk")
            if self._written + len(chunk) > self._total:
                raise InvalidArgument(
                    f"chunk of {len(chunk)} bytes overruns image size "
                    f"({self._written}/{self._total} written)"
                )

            try:
                self._txn.write(chunk)
            except IoFault as e:
                notify, error = self._fail_locked("Error writing data", e)
            else:
                self._written += len(chunk)
                self._message = "Writing firmware..."
                if self._written == self._total:
                    notify, error = self._finish_locked()
                else:
                    notify, error = None, None

        self._notify(notify)
        if error is not None:
            raise error

    def finish_upgrade(self) -> None:
        """Close the flash transaction and switch the boot partition.

        Raises:
            NotInProgress: No session in progress
            IoFault: Validation or boot selector update failed
        """
        with self._lock:
            if self._status != OtaStatus.IN_PROGRESS:
                raise NotInProgress("no upgrade in progress")
            notify, error = self._finish_locked()

        self._notify(notify)
        if error is not None:
            raise error

    def abort_upgrade(self) -> None:
        """Cancel the session; partial data on the target is discarded.

        Raises:
            NotInProgress: No session in progress
            IoFault: The driver failed to cancel (session is aborted anyway)
        """
        fault = None
        with self._lock:
            if self._status != OtaStatus.IN_PROGRESS:
                raise NotInProgress("no upgrade in progress")
            try:
                self._txn.abort()
            except IoFault as e:
                self.logger.error(f"Flash abort failed: {e}")
                fault = e
            self._txn = None
            self._status = OtaStatus.ABORTED
            self._message = "Upgrade aborted"
            name = self._target.name

        self.logger.info(f"OTA upgrade aborted: partition={name}")
        self._notify(partial(self.listener.on_error, UpgradeAborted(f"upgrade of {name} aborted")))
        if fault is not None:
            raise fault

    def flash_image(self, partition_name: str, image: bytes, chunk_size: int = DEFAULT_CHUNK_SIZE) -> OtaProgress:
        """Verify and write a complete in-memory image in one call."""
        verify_firmware(image)
        header = parse_image_header(image)
        self.logger.info(
            f"Image header: chip={header.chip_name}, segments={header.segment_count}, "
            f"entry=0x{header.entry_addr:08x}"
        )
        self.start_upgrade(partition_name, len(image))
        view = memoryview(image)
        for start in range(0, len(view), chunk_size):
            self.write_data(bytes(view[start:start + chunk_size]))
        return self.get_progress()

    def reset(self) -> None:
        """Forget a terminal session and return to idle."""
        with self._lock:
            if self._status in (OtaStatus.IN_PROGRESS, OtaStatus.FINISHING):
                raise InvalidState("cannot reset while an upgrade is in progress")
            self._reset_locked()

    # --------------------------------------------------------
    # Queries

    def get_progress(self) -> OtaProgress:
        with self._lock:
            return self._snapshot_locked()

    def is_upgrading(self) -> bool:
        return self._status in (OtaStatus.IN_PROGRESS, OtaStatus.FINISHING)

    @property
    def status(self) -> OtaStatus:
        return self._status

    def report_progress(self) -> None:
        """Push a progress snapshot to the listener while a session runs."""
        progress = self.get_progress()
        if progress.in_progress:
            self._notify(partial(self.listener.on_progress, progress))

    def firmware_version(self) -> str:
        return self._firmware_version

    def firmware_sha256(self) -> Optional[str]:
        """SHA-256 of the image in the running slot, None if it cannot be read."""
        try:
            running = self.partitions.running_partition()
            image = self.flash.read(running)
        except (NotFound, IoFault) as e:
            self.logger.warning(f"Cannot hash running firmware: {e}")
            return None
        return compute_sha256(image) if image else None

    def restart_device(self, delay: float = 0.0) -> None:
        """Schedule a hard reset so the new boot partition takes effect.

        Point of no return: the device resets once ``delay`` has elapsed.
        """
        if self.device is None:
            raise InvalidState("no device controller configured")
        self.logger.info(f"Restart requested after upgrade (status={self._status.value})")
        self.device.restart(delay)

    # --------------------------------------------------------
    # Internals (called with the lock held)

    def _reset_locked(self) -> None:
        self._status = OtaStatus.IDLE
        self._target = None
        self._txn = None
        self._total = 0
        self._written = 0
        self._message = "Ready"

    def _snapshot_locked(self) -> OtaProgress:
        percentage = (self._written * 100) // self._total if self._total > 0 else 0
        return OtaProgress(
            bytes_written=self._written,
            total_bytes=self._total,
            percentage=percentage,
            in_progress=self._status in (OtaStatus.IN_PROGRESS, OtaStatus.FINISHING),
            status=self._status,
            status_message=self._message[:64],
            target=self._target.name if self._target else None,
        )

    def _finish_locked(self):
        self._status = OtaStatus.FINISHING
        self._message = "Finalizing upgrade..."
        txn, self._txn = self._txn, None
        try:
            txn.end()
        except IoFault as e:
            return self._fail_locked("Error finalizing upgrade", e)

        try:
            self.flash.set_boot_partition(self._target)
        except IoFault as e:
            return self._fail_locked("Error setting boot partition", e)

        self._status = OtaStatus.COMPLETED
        self._message = "Upgrade completed successfully"
        self.logger.info(
            f"OTA upgrade completed: partition={self._target.name}, bytes={self._written}"
        )
        return partial(self.listener.on_complete, self._snapshot_locked()), None

    def _fail_locked(self, message: str, error: ProvisionerError):
        if self._txn is not None:
            txn, self._txn = self._txn, None
            try:
                txn.abort()
            except IoFault as e:
                self.logger.warning(f"Flash abort after failure also failed: {e}")
        self._status = OtaStatus.FAILED
        self._message = message
        self.logger.error(f"{message}: {error}")
        return partial(self.listener.on_error, error), error

    def _notify(self, callback: Optional[Callable[[], None]]) -> None:
        if callback is None:
            return
        try:
            callback()
        except Exception as e:
            # Listener failures must not change the session outcome
            self.logger.error(f"OTA listener raised: {e}", exc_info=True)
