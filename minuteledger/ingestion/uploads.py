"""
Upload pipeline.

Handles the lifecycle of an uploaded media file:
1. Registration (format check, size cap per plan, quota gate)
2. Completion (duration estimate -> bitrate check -> set once -> ledger increment -> processing)
3. Status advancement (forward only)

Completion is safe to repeat: the duration is set once and the ledger keys
the increment on the upload id.
"""

import logging
import uuid
from datetime import datetime

from pydantic import BaseModel

from minuteledger.billing.usage_tracking import QuotaExceededError, UsageLedger
from minuteledger.config import LedgerConfig
from minuteledger.media.acceptance import (
    average_bytes_per_second,
    is_plausible_bitrate,
    is_supported_format,
)
from minuteledger.media.duration import EstimationPath, UploadDurationEstimator
from minuteledger.models.billing import PlanType
from minuteledger.models.upload import UploadAsset, UploadCreate, UploadStatus
from minuteledger.models.usage import UsageResult
from minuteledger.observability.metrics import track_upload_rejection, track_write_conflict
from minuteledger.resilience.circuit_breakers import retrying_on
from minuteledger.storage.database import LedgerDatabase

logger = logging.getLogger(__name__)


class UploadError(Exception):
    """Base exception for upload pipeline errors."""

    pass


class UploadNotFound(UploadError):
    pass


class FileTooLarge(UploadError):
    """File exceeds the plan's upload size cap."""

    def __init__(self, size_bytes: int, max_size_bytes: int, plan_type: PlanType):
        self.size_bytes = size_bytes
        self.max_size_bytes = max_size_bytes
        self.plan_type = plan_type
        super().__init__(
            f"File size {size_bytes} bytes exceeds the {plan_type.value} plan limit "
            f"of {max_size_bytes} bytes"
        )


class InvalidStatusTransition(UploadError):
    """Requested status would move an upload backwards or between terminal states."""

    pass


class StatusConflict(UploadError):
    """Upload status kept changing under a conditional status write."""

    pass


class UnsupportedMediaType(UploadError):
    """File is neither a supported audio/video extension nor MIME type."""

    def __init__(self, file_name: str, content_type: str | None):
        self.file_name = file_name
        self.content_type = content_type
        super().__init__(
            f"Unsupported media file {file_name!r} (content type {content_type or 'unknown'})"
        )


class ImplausibleMedia(UploadError):
    """Probed duration implies an unrealistic bitrate for the file size."""

    def __init__(self, size_bytes: int, duration_seconds: int, max_bytes_per_second: int):
        self.size_bytes = size_bytes
        self.duration_seconds = duration_seconds
        self.max_bytes_per_second = max_bytes_per_second
        super().__init__(
            f"{size_bytes} bytes over {duration_seconds}s exceeds the maximum average "
            f"bitrate of {max_bytes_per_second} bytes/s"
        )


class UploadCompletion(BaseModel):
    """Result of completing an upload."""

    upload: UploadAsset
    usage: UsageResult
    estimation_path: EstimationPath | None = None  # None when the duration was already set


class UploadPipeline:
    """
    Orchestrates upload registration and completion.

    Components:
    - LedgerDatabase (upload rows)
    - UploadDurationEstimator (ffprobe or size heuristic)
    - UsageLedger (minute accounting)
    """

    def __init__(
        self,
        db: LedgerDatabase,
        ledger: UsageLedger,
        estimator: UploadDurationEstimator,
        config: LedgerConfig,
    ):
        self.db = db
        self.ledger = ledger
        self.estimator = estimator
        self.config = config

    def max_file_size_for(self, plan_type: PlanType) -> int:
        if plan_type == PlanType.PRO:
            return self.config.pro_max_file_size_bytes
        return self.config.free_max_file_size_bytes

    async def register_upload(self, upload_create: UploadCreate) -> UploadAsset:
        """
        Register a new pending upload.

        Args:
            upload_create: Upload metadata

        Returns:
            UploadAsset: Created upload (status pending)

        Raises:
            UnsupportedMediaType: If the file is not a supported audio/video format
            FileTooLarge: If the file exceeds the plan's size cap
            QuotaExceededError: If the user's monthly quota is already exhausted
        """
        user_id = upload_create.user_id
        plan_type = await self.db.get_user_plan(user_id)

        if not is_supported_format(
            upload_create.file_name, upload_create.content_type, self.estimator.config
        ):
            track_upload_rejection(plan_type.value, "file_type")
            logger.warning(
                "Upload rejected: unsupported media type",
                extra={
                    "user_id": user_id,
                    "file_name": upload_create.file_name,
                    "content_type": upload_create.content_type,
                },
            )
            raise UnsupportedMediaType(upload_create.file_name, upload_create.content_type)

        max_size = self.max_file_size_for(plan_type)
        if upload_create.file_size_bytes > max_size:
            track_upload_rejection(plan_type.value, "file_size")
            logger.warning(
                "Upload rejected: file too large",
                extra={
                    "user_id": user_id,
                    "file_size_bytes": upload_create.file_size_bytes,
                    "max_file_size_bytes": max_size,
                },
            )
            raise FileTooLarge(upload_create.file_size_bytes, max_size, plan_type)

        quota_status = await self.ledger.check_quota(user_id)
        if not quota_status.within_limit:
            track_upload_rejection(plan_type.value, "quota")
            logger.warning(
                "Upload rejected: quota exceeded",
                extra={
                    "user_id": user_id,
                    "monthly_usage_minutes": quota_status.monthly_usage_minutes,
                    "quota_minutes": quota_status.quota_minutes,
                },
            )
            raise QuotaExceededError(quota_status)

        upload = UploadAsset(
            upload_id=uuid.uuid4().hex,
            user_id=user_id,
            file_name=upload_create.file_name,
            file_path=upload_create.file_path,
            file_size_bytes=upload_create.file_size_bytes,
        )
        return await self.db.create_upload(upload)

    async def get_upload(self, upload_id: str) -> UploadAsset:
        upload = await self.db.get_upload(upload_id)
        if upload is None:
            raise UploadNotFound(f"Upload {upload_id} not found")
        return upload

    async def complete_upload(self, upload_id: str, now: datetime | None = None) -> UploadCompletion:
        """
        Record usage for a finished upload and move it to processing.

        Args:
            upload_id: Upload to complete
            now: Current time for the ledger (None = now)

        Returns:
            UploadCompletion: Upload and usage result (duplicate=True on repeat)

        Raises:
            UploadNotFound: If the upload does not exist
            ImplausibleMedia: If the probed duration is implausibly short for the
                file size (the upload is marked failed, nothing is recorded)
        """
        upload = await self.get_upload(upload_id)

        estimation_path = None
        if upload.duration_seconds is None:
            estimate = await self.estimator.estimate(upload.file_path, upload.file_size_bytes)
            estimation_path = estimate.path
            if estimate.path == EstimationPath.PROBE and not is_plausible_bitrate(
                upload.file_size_bytes, estimate.duration_seconds, self.estimator.config
            ):
                await self._reject_implausible(upload, estimate.duration_seconds)
            if not await self.db.set_upload_duration(upload_id, estimate.duration_seconds):
                logger.info(
                    "Upload duration already set by a concurrent completion",
                    extra={"upload_id": upload_id},
                )
            upload = await self.get_upload(upload_id)

        usage = await self.ledger.increment(
            upload.user_id,
            upload.duration_seconds,
            size_bytes=upload.file_size_bytes,
            source_id=upload_id,
            now=now,
        )

        if upload.status.can_advance_to(UploadStatus.PROCESSING):
            upload = await self.advance_status(upload_id, UploadStatus.PROCESSING)

        logger.info(
            "Upload completed",
            extra={
                "upload_id": upload_id,
                "user_id": upload.user_id,
                "duration_seconds": upload.duration_seconds,
                "estimation_path": estimation_path.value if estimation_path else None,
                "duplicate": usage.duplicate,
            },
        )

        return UploadCompletion(upload=upload, usage=usage, estimation_path=estimation_path)

    async def _reject_implausible(self, upload: UploadAsset, duration_seconds: int) -> None:
        max_rate = self.estimator.config.max_bytes_per_second
        plan_type = await self.db.get_user_plan(upload.user_id)
        track_upload_rejection(plan_type.value, "bitrate")
        logger.warning(
            "Upload rejected: implausible bitrate",
            extra={
                "upload_id": upload.upload_id,
                "user_id": upload.user_id,
                "file_size_bytes": upload.file_size_bytes,
                "duration_seconds": duration_seconds,
                "bytes_per_second": round(
                    average_bytes_per_second(upload.file_size_bytes, duration_seconds)
                ),
            },
        )
        if upload.status.can_advance_to(UploadStatus.FAILED):
            await self.advance_status(upload.upload_id, UploadStatus.FAILED)
        raise ImplausibleMedia(upload.file_size_bytes, duration_seconds, max_rate)

    async def advance_status(self, upload_id: str, status: UploadStatus) -> UploadAsset:
        """
        Move an upload's status forward.

        Setting the current status again is a no-op. A lost conditional write
        is re-read and retried.

        Raises:
            UploadNotFound: If the upload does not exist
            InvalidStatusTransition: If the move is backwards or between terminal states
            StatusConflict: If every conditional write attempt lost a race
        """
        upload: UploadAsset | None = None
        async for attempt in retrying_on(
            (StatusConflict,),
            max_attempts=self.config.max_write_retries,
            min_wait=self.config.retry_backoff_seconds,
        ):
            with attempt:
                upload = await self._advance_once(upload_id, status)
        return upload

    async def _advance_once(self, upload_id: str, status: UploadStatus) -> UploadAsset:
        upload = await self.get_upload(upload_id)
        if upload.status == status:
            return upload

        if not upload.status.can_advance_to(status):
            logger.warning(
                "Rejected upload status regression",
                extra={
                    "upload_id": upload_id,
                    "current_status": upload.status.value,
                    "requested_status": status.value,
                },
            )
            raise InvalidStatusTransition(
                f"Cannot move upload from {upload.status.value} to {status.value}"
            )

        if not await self.db.update_upload_status(upload_id, upload.status, status):
            track_write_conflict("upload")
            raise StatusConflict(
                f"Upload {upload_id} status changed concurrently while moving it to {status.value}"
            )
        return await self.get_upload(upload_id)
