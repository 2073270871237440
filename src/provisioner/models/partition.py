"""Flash partition models."""

from enum import Enum

from pydantic import BaseModel, ConfigDict, Field


class PartitionType(str, Enum):
    """Top-level partition type from the partition table."""

    APP = "app"
    DATA = "data"


class Partition(BaseModel):
    """One named region of flash storage.

    Enumerated from the partition table, never created at runtime.
    """

    model_config = ConfigDict(frozen=True)

    name: str = Field(..., min_length=1, max_length=16, description="Partition label")
    type: PartitionType = Field(..., description="app or data")
    subtype: str = Field(..., description="e.g. factory, ota_0, nvs, spiffs")
    size: int = Field(..., gt=0, description="Capacity in bytes")
    address: int = Field(..., ge=0, description="Base offset in flash")
    is_running: bool = Field(False, description="Currently executing application slot")

    @property
    def is_app(self) -> bool:
        return self.type == PartitionType.APP

    @property
    def ota_index(self) -> int:
        """Slot number for ``ota_N`` app partitions, -1 otherwise."""
        if self.is_app and self.subtype.startswith("ota_"):
            try:
                return int(self.subtype[4:])
            except ValueError:
                return -1
        return -1
