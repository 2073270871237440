"""Flash write transactions and boot partition selector.

``FlashDriver`` is the hardware seam used by the OTA state machine.
``FileFlashDriver`` backs every partition with a file under a data directory
and keeps the boot selection in ``otadata.json``, so the core runs on a host.
"""

import hashlib
import json
import logging
import os
from pathlib import Path
from typing import Optional

from provisioner.errors import IoFault
from provisioner.models.partition import Partition
from provisioner.utils.verification import IMAGE_MAGIC

OTADATA_FILE = "otadata.json"


class FlashTransaction:
    """One open write session against a single partition."""

    def __init__(self, partition: Partition):
        self.partition = partition
        self.bytes_written = 0

    def write(self, data: bytes) -> None:
        raise NotImplementedError

    def end(self) -> None:
        """Close the transaction and validate what was written."""
        raise NotImplementedError

    def abort(self) -> None:
        """Discard partial data; the partition must not be bootable afterwards."""
        raise NotImplementedError


class FlashDriver:
    """Base class for flash/boot selector backends."""

    def begin(self, partition: Partition) -> FlashTransaction:
        """Erase ``partition`` for writing.

        If the boot selector points at ``partition`` the selection is cleared
        first, so an erased or partially written slot is never bootable.
        """
        raise NotImplementedError

    def read(self, partition: Partition, offset: int = 0, length: Optional[int] = None) -> bytes:
        raise NotImplementedError

    def has_valid_image(self, partition: Partition) -> bool:
        raise NotImplementedError

    def get_boot_partition(self) -> Optional[str]:
        """Name of the slot the boot selector points at, None if never set."""
        raise NotImplementedError

    def set_boot_partition(self, partition: Partition) -> None:
        """Repoint the boot selector. Either fully succeeds or changes nothing."""
        raise NotImplementedError


class FileFlashTransaction(FlashTransaction):
    """Streams into ``<name>.bin`` while keeping a running SHA-256."""

    def __init__(self, partition: Partition, path: Path, chunk_size: int = 4096):
        super().__init__(partition)
        self.logger = logging.getLogger("provisioner.flash")
        self.path = path
        self.chunk_size = chunk_size
        self._hash = hashlib.sha256()
        try:
            # Opening for write erases the previous image
            self._file = open(path, "wb")
        except OSError as e:
            raise IoFault(f"cannot open {partition.name}: {e}") from e

    def write(self, data: bytes) -> None:
        if self.bytes_written + len(data) > self.partition.size:
            raise IoFault(
                f"write past end of {self.partition.name}: "
                f"{self.bytes_written + len(data)} > {self.partition.size}"
            )
        try:
            self._file.write(data)
        except (OSError, ValueError) as e:
            raise IoFault(f"write to {self.partition.name} failed: {e}") from e
        self._hash.update(data)
        self.bytes_written += len(data)

    def end(self) -> None:
        try:
            self._file.close()
        except OSError as e:
            raise IoFault(f"close of {self.partition.name} failed: {e}") from e

        if self.bytes_written == 0:
            self._invalidate()
            raise IoFault(f"no data written to {self.partition.name}")

        expected = self._hash.hexdigest()
        actual, first = self._read_back()
        if first != IMAGE_MAGIC:
            self._invalidate()
            raise IoFault(f"image validation failed for {self.partition.name}: bad header")
        if actual != expected:
            self._invalidate()
            raise IoFault(
                f"checksum mismatch on {self.partition.name}: "
                f"expected {expected}, got {actual}"
            )
        self.logger.debug(f"Validated {self.bytes_written} bytes on {self.partition.name}: {actual}")

    def abort(self) -> None:
        try:
            self._file.close()
        except OSError:
            self.logger.warning(f"Close failed while aborting {self.partition.name}")
        self._invalidate()

    def _read_back(self):
        h = hashlib.sha256()
        first = None
        try:
            with open(self.path, "rb") as f:
                while chunk := f.read(self.chunk_size):
                    if first is None:
                        first = chunk[0]
                    h.update(chunk)
        except OSError as e:
            raise IoFault(f"read back of {self.partition.name} failed: {e}") from e
        return h.hexdigest(), first

    def _invalidate(self) -> None:
        self.path.unlink(missing_ok=True)


class FileFlashDriver(FlashDriver):
    """File-backed flash: one image file per partition plus a boot record."""

    def __init__(self, data_dir: str):
        self.logger = logging.getLogger("provisioner.flash")
        self.data_dir = Path(data_dir)
        self.data_dir.mkdir(parents=True, exist_ok=True)
        self.otadata_path = self.data_dir / OTADATA_FILE

    def image_path(self, partition: Partition) -> Path:
        return self.data_dir / f"{partition.name}.bin"

    def begin(self, partition: Partition) -> FlashTransaction:
        self.logger.debug(f"Opening write transaction on {partition.name}")
        if self.get_boot_partition() == partition.name:
            # The slot is about to be erased; it must stop being bootable first
            self.logger.warning(f"{partition.name} is the selected boot slot, clearing selection")
            self._write_record(None)
        return FileFlashTransaction(partition, self.image_path(partition))

    def read(self, partition: Partition, offset: int = 0, length: Optional[int] = None) -> bytes:
        path = self.image_path(partition)
        if not path.exists():
            return b""
        try:
            with open(path, "rb") as f:
                f.seek(offset)
                return f.read() if length is None else f.read(length)
        except OSError as e:
            raise IoFault(f"read of {partition.name} failed: {e}") from e

    def has_valid_image(self, partition: Partition) -> bool:
        """True if ``partition`` is an app slot starting with the image magic."""
        if not partition.is_app:
            return False
        header = self.read(partition, 0, 1)
        return bool(header) and header[0] == IMAGE_MAGIC

    def get_boot_partition(self) -> Optional[str]:
        if not self.otadata_path.exists():
            return None
        try:
            with open(self.otadata_path, "r", encoding="utf-8") as f:
                data = json.load(f)
            return data.get("boot")
        except (OSError, json.JSONDecodeError) as e:
            self.logger.error(f"Unreadable boot record, ignoring: {e}")
            return None

    def set_boot_partition(self, partition: Partition) -> None:
        if not partition.is_app:
            raise IoFault(f"{partition.name} is not an application partition")
        if not self.has_valid_image(partition):
            raise IoFault(f"{partition.name} holds no valid image")
        seq = self._write_record(partition.name)
        self.logger.info(f"Boot partition set to {partition.name} (seq={seq})")

    def _write_record(self, boot: Optional[str]) -> int:
        seq = 0
        if self.otadata_path.exists():
            try:
                with open(self.otadata_path, "r", encoding="utf-8") as f:
                    seq = int(json.load(f).get("seq", 0))
            except (OSError, ValueError):
                seq = 0

        # Write to temp file then rename so a failure keeps the old record
        tmp_path = self.otadata_path.parent / f"{self.otadata_path.name}.tmp"
        try:
            with open(tmp_path, "w", encoding="utf-8") as f:
                json.dump({"boot": boot, "seq": seq + 1}, f)
                f.flush()
                os.fsync(f.fileno())
            os.replace(tmp_path, self.otadata_path)
        except OSError as e:
            tmp_path.unlink(missing_ok=True)
            raise IoFault(f"boot selector update failed: {e}") from e
        return seq + 1
