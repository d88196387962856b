"""
Upload API endpoints.

Registration enforces the supported media formats, the plan's size cap and
the monthly quota gate; completion records the upload's minutes in the usage ledger.

Rate limiting applied (per client address).
"""

from fastapi import APIRouter, Depends, HTTPException, Request, Response, status
from fastapi.responses import JSONResponse
from pydantic import BaseModel

from minuteledger.billing.usage_tracking import QuotaExceededError, UsageLedger
from minuteledger.ingestion.uploads import (
    FileTooLarge,
    ImplausibleMedia,
    InvalidStatusTransition,
    StatusConflict,
    UnsupportedMediaType,
    UploadNotFound,
    UploadPipeline,
)
from minuteledger.media.duration import EstimationPath
from minuteledger.models.upload import UploadAsset, UploadCreate, UploadStatusUpdate
from minuteledger.models.usage import UsageResult
from minuteledger.observability.logging import get_logger, set_user_id
from minuteledger.rate_limits import limiter, upload_rate_limit

logger = get_logger(__name__)

router = APIRouter(prefix="/api/v1/uploads", tags=["Uploads"])


class UploadCompletionResponse(BaseModel):
    """Completed upload with the ledger result."""

    upload: UploadAsset
    usage: UsageResult
    estimation_path: EstimationPath | None = None


def get_pipeline(request: Request) -> UploadPipeline:
    return request.app.state.upload_pipeline


def get_ledger(request: Request) -> UsageLedger:
    return request.app.state.usage_ledger


def set_quota_headers(response: Response, usage: UsageResult) -> None:
    """Attach minute accounting headers to a response."""
    response.headers["X-Minutes-Used"] = str(usage.monthly_usage_minutes)
    response.headers["X-Minutes-Remaining"] = str(usage.quota_remaining)
    response.headers["X-Minutes-Total"] = str(usage.total_usage_minutes)
    if usage.quota_exceeded:
        response.headers["X-Quota-Warning"] = "Monthly quota exceeded"


@router.post("", response_model=UploadAsset, status_code=status.HTTP_201_CREATED)
@limiter.limit(upload_rate_limit)
async def register_upload(
    request: Request,
    upload_create: UploadCreate,
    pipeline: UploadPipeline = Depends(get_pipeline),
    ledger: UsageLedger = Depends(get_ledger),
):
    """
    Register a pending upload.

    Raises:
        413: File exceeds the plan's size cap
        415: File is not a supported audio/video format
        429: Monthly quota already exhausted
    """
    set_user_id(upload_create.user_id)

    try:
        return await pipeline.register_upload(upload_create)
    except UnsupportedMediaType as e:
        raise HTTPException(
            status_code=status.HTTP_415_UNSUPPORTED_MEDIA_TYPE,
            detail={"error": "unsupported_media_type", "message": str(e)},
        )
    except FileTooLarge as e:
        raise HTTPException(
            status_code=status.HTTP_413_REQUEST_ENTITY_TOO_LARGE,
            detail={
                "error": "file_too_large",
                "message": str(e),
                "plan_type": e.plan_type.value,
                "max_size_bytes": e.max_size_bytes,
            },
        )
    except QuotaExceededError as e:
        usage_summary = await ledger.get_usage_summary(upload_create.user_id)
        return JSONResponse(
            status_code=status.HTTP_429_TOO_MANY_REQUESTS,
            content={
                "error": "quota_exceeded",
                "message": str(e),
                "usage": usage_summary,
            },
            headers={
                "Retry-After": "3600",
                "X-RateLimit-Limit": str(e.status.quota_minutes),
                "X-RateLimit-Remaining": "0",
            },
        )


@router.get("/{upload_id}", response_model=UploadAsset)
async def get_upload(
    upload_id: str,
    pipeline: UploadPipeline = Depends(get_pipeline),
):
    try:
        return await pipeline.get_upload(upload_id)
    except UploadNotFound as e:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail=str(e))


@router.post("/{upload_id}/complete", response_model=UploadCompletionResponse)
@limiter.limit(upload_rate_limit)
async def complete_upload(
    request: Request,
    response: Response,
    upload_id: str,
    pipeline: UploadPipeline = Depends(get_pipeline),
):
    """
    Complete an upload: estimate its duration and record its minutes.

    Safe to repeat; a repeat reports duplicate=True and adds nothing.

    Raises:
        404: Upload not found
        409: Status kept changing concurrently
        422: Probed duration is implausible for the file size (upload marked failed)
    """
    try:
        completion = await pipeline.complete_upload(upload_id)
    except UploadNotFound as e:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail=str(e))
    except ImplausibleMedia as e:
        raise HTTPException(
            status_code=status.HTTP_422_UNPROCESSABLE_ENTITY,
            detail={
                "error": "implausible_bitrate",
                "message": str(e),
                "max_bytes_per_second": e.max_bytes_per_second,
            },
        )
    except StatusConflict:
        raise HTTPException(
            status_code=status.HTTP_409_CONFLICT,
            detail="Concurrent update, retry the request",
        )

    set_user_id(completion.upload.user_id)
    set_quota_headers(response, completion.usage)
    return UploadCompletionResponse(
        upload=completion.upload,
        usage=completion.usage,
        estimation_path=completion.estimation_path,
    )


@router.patch("/{upload_id}/status", response_model=UploadAsset)
async def update_upload_status(
    upload_id: str,
    update: UploadStatusUpdate,
    pipeline: UploadPipeline = Depends(get_pipeline),
):
    """
    Advance an upload's status.

    Raises:
        404: Upload not found
        409: Status would move backwards, or kept changing concurrently
    """
    try:
        return await pipeline.advance_status(upload_id, update.status)
    except UploadNotFound as e:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail=str(e))
    except InvalidStatusTransition as e:
        raise HTTPException(status_code=status.HTTP_409_CONFLICT, detail=str(e))
    except StatusConflict as e:
        logger.warning("Upload status update lost every retry", upload_id=upload_id, error=str(e))
        raise HTTPException(
            status_code=status.HTTP_409_CONFLICT,
            detail="Concurrent update, retry the request",
        )
