"""OTA session status and progress models."""

from enum import Enum
from typing import Optional

from pydantic import BaseModel, Field


class OtaStatus(str, Enum):
    """OTA session lifecycle.

    State transitions:
    idle → in_progress → finishing → completed
                ↓            ↓
      aborted / failed ←─────
    """

    IDLE = "idle"
    IN_PROGRESS = "in_progress"
    FINISHING = "finishing"
    COMPLETED = "completed"
    FAILED = "failed"
    ABORTED = "aborted"

    @property
    def is_terminal(self) -> bool:
        return self in (OtaStatus.COMPLETED, OtaStatus.FAILED, OtaStatus.ABORTED)


class OtaProgress(BaseModel):
    """Immutable snapshot of the OTA session for polling and listeners."""

    bytes_written: int = Field(0, ge=0)
    total_bytes: int = Field(0, ge=0)
    percentage: int = Field(0, ge=0, le=100)
    in_progress: bool = False
    status: OtaStatus = OtaStatus.IDLE
    status_message: str = Field("", max_length=64)
    target: Optional[str] = Field(None, description="Target partition name")
