"""
Upload asset models.

Status only moves forward: pending -> processing -> completed | failed | error.
"""

from datetime import UTC, datetime
from enum import Enum

from pydantic import BaseModel, Field


class UploadStatus(str, Enum):
    """Upload processing status."""

    PENDING = "pending"
    PROCESSING = "processing"
    COMPLETED = "completed"
    FAILED = "failed"
    ERROR = "error"

    @property
    def rank(self) -> int:
        return _STATUS_RANK[self]

    @property
    def is_terminal(self) -> bool:
        return self.rank == 2

    def can_advance_to(self, target: "UploadStatus") -> bool:
        """Check if moving to target is a forward step."""
        return target.rank > self.rank


_STATUS_RANK = {
    UploadStatus.PENDING: 0,
    UploadStatus.PROCESSING: 1,
    UploadStatus.COMPLETED: 2,
    UploadStatus.FAILED: 2,
    UploadStatus.ERROR: 2,
}


class UploadAsset(BaseModel):
    """Uploaded media file awaiting or undergoing transcription."""

    upload_id: str
    user_id: str = Field(..., min_length=1, max_length=128)
    file_name: str = Field(..., min_length=1, max_length=255)
    file_path: str = Field(..., min_length=1)
    file_size_bytes: int = Field(..., ge=0)
    duration_seconds: int | None = Field(default=None, gt=0)
    status: UploadStatus = Field(default=UploadStatus.PENDING)
    created_at: datetime = Field(default_factory=lambda: datetime.now(UTC))
    updated_at: datetime = Field(default_factory=lambda: datetime.now(UTC))


class UploadCreate(BaseModel):
    """Schema for registering a new upload."""

    user_id: str = Field(..., min_length=1, max_length=128)
    file_name: str = Field(..., min_length=1, max_length=255)
    file_path: str = Field(..., min_length=1)
    file_size_bytes: int = Field(..., ge=0)
    content_type: str | None = Field(default=None, max_length=255)


class UploadStatusUpdate(BaseModel):
    """Schema for advancing upload status."""

    status: UploadStatus
