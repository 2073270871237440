"""Partition table accessor for dual-bank OTA."""

import csv
import io
import logging
from pathlib import Path
from typing import Optional

from provisioner.errors import InvalidArgument, IoFault, NotFound
from provisioner.models.partition import Partition, PartitionType

DEFAULT_PARTITION_CSV = """\
# Name,   Type, SubType, Offset,   Size,  Flags
nvs,      data, nvs,     0x9000,   0x6000,
otadata,  data, ota,     0xf000,   0x2000,
phy_init, data, phy,     0x11000,  0x1000,
ota_0,    app,  ota_0,   0x20000,  1M,
ota_1,    app,  ota_1,   0x120000, 1M,
spiffs,   data, spiffs,  0x220000, 1M,
"""

APP_ALIGNMENT = 0x10000
DATA_ALIGNMENT = 0x1000
FIRST_OFFSET = 0x9000


def parse_size(value: str) -> int:
    """Parse ``0x6000``, ``24K``, ``1M`` or plain decimal."""
    text = value.strip().upper()
    if not text:
        raise ValueError("empty size")
    if text.startswith("0X"):
        return int(text, 16)
    if text.endswith("K"):
        return int(text[:-1]) * 1024
    if text.endswith("M"):
        return int(text[:-1]) * 1024 * 1024
    return int(text)


def _align(offset: int, alignment: int) -> int:
    return (offset + alignment - 1) // alignment * alignment


def parse_partition_csv(text: str) -> list[Partition]:
    """Parse an ESP-IDF ``partitions.csv``.

    Empty offsets are assigned sequentially with app partitions aligned to
    64K, as the IDF partition tool does.

    Raises:
        InvalidArgument: On malformed rows or duplicate names
    """
    partitions = []
    seen = set()
    next_offset = FIRST_OFFSET
    for lineno, row in enumerate(csv.reader(io.StringIO(text)), start=1):
        if not row or not row[0].strip() or row[0].strip().startswith("#"):
            continue
        fields = [f.strip() for f in row] + [""] * 6
        name, type_, subtype, offset, size = fields[:5]
        try:
            ptype = PartitionType(type_.lower())
            psize = parse_size(size)
            if offset:
                address = parse_size(offset)
            else:
                alignment = APP_ALIGNMENT if ptype == PartitionType.APP else DATA_ALIGNMENT
                address = _align(next_offset, alignment)
            partition = Partition(
                name=name, type=ptype, subtype=subtype.lower(), size=psize, address=address
            )
        except ValueError as e:
            raise InvalidArgument(f"partition table line {lineno}: {e}") from e
        if name in seen:
            raise InvalidArgument(f"partition table line {lineno}: duplicate name {name}")
        seen.add(name)
        next_offset = address + psize
        partitions.append(partition)
    return partitions


class PartitionTable:
    """Read-only view over the device partition table.

    Exactly one application partition is marked running: the one the boot
    selector pointed at when the process started.
    """

    def __init__(self, partitions: list[Partition], running: Optional[str]):
        self.logger = logging.getLogger("provisioner.partitions")
        marked = []
        for p in partitions:
            is_running = p.name == running and p.is_app
            marked.append(p.model_copy(update={"is_running": is_running}))
        self._partitions = marked
        if not any(p.is_running for p in marked):
            self.logger.error(f"Running partition {running!r} is not an app partition in the table")

    @classmethod
    def from_csv(cls, text: str, running: Optional[str]) -> "PartitionTable":
        return cls(parse_partition_csv(text), running)

    @classmethod
    def load(cls, path: Optional[str], running: Optional[str]) -> "PartitionTable":
        """Load from a CSV file, or the built-in table when ``path`` is None."""
        if path is None:
            return cls.from_csv(DEFAULT_PARTITION_CSV, running)
        try:
            text = Path(path).read_text(encoding="utf-8")
        except OSError as e:
            raise IoFault(f"cannot read partition table {path}: {e}") from e
        return cls.from_csv(text, running)

    def list_partitions(self) -> list[Partition]:
        return list(self._partitions)

    def running_partition(self) -> Partition:
        for p in self._partitions:
            if p.is_running:
                return p
        raise NotFound("no running application partition")

    def find_partition(self, name: str) -> Partition:
        for p in self._partitions:
            if p.name == name:
                return p
        raise NotFound(f"partition {name}")

    def next_update_partition(self) -> Partition:
        """The OTA slot after the running one, wrapping around.

        From a factory slot the first OTA slot is chosen.
        """
        running = self.running_partition()
        slots = sorted(
            (p for p in self._partitions if p.ota_index >= 0), key=lambda p: p.ota_index
        )
        if running.ota_index < 0:
            if not slots:
                raise NotFound("no OTA application slots")
            return slots[0]
        candidates = [p for p in slots if p.name != running.name]
        if not candidates:
            raise NotFound("no alternate OTA application slot")
        after = [p for p in candidates if p.ota_index > running.ota_index]
        return after[0] if after else candidates[0]

    def is_valid_ota_target(self, name: str) -> bool:
        try:
            partition = self.find_partition(name)
        except NotFound:
            return False
        return partition.is_app and not partition.is_running

    def partition_free_space(self, name: str) -> int:
        """Capacity available to an image on ``name``; 0 when unknown."""
        try:
            return self.find_partition(name).size
        except NotFound:
            return 0
