"""
Media metadata helpers.

Derives billable durations from uploaded files; never inspects content.
"""

from minuteledger.media.acceptance import is_plausible_bitrate, is_supported_format
from minuteledger.media.duration import (
    DurationEstimate,
    EstimationPath,
    UploadDurationEstimator,
)

__all__ = [
    "DurationEstimate",
    "EstimationPath",
    "UploadDurationEstimator",
    "is_plausible_bitrate",
    "is_supported_format",
]
