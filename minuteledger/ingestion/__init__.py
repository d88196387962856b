"""Upload registration and completion."""

from minuteledger.ingestion.uploads import (
    FileTooLarge,
    ImplausibleMedia,
    InvalidStatusTransition,
    StatusConflict,
    UnsupportedMediaType,
    UploadCompletion,
    UploadError,
    UploadNotFound,
    UploadPipeline,
)

__all__ = [
    "FileTooLarge",
    "ImplausibleMedia",
    "InvalidStatusTransition",
    "StatusConflict",
    "UnsupportedMediaType",
    "UploadCompletion",
    "UploadError",
    "UploadNotFound",
    "UploadPipeline",
]
