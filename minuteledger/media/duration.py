"""
Upload duration estimation.

Two paths:
1. probe: ffprobe reads container metadata (exact), bounded by a timeout
2. bitrate_estimate: size / reference bitrate (128 kbit/s = 16000 bytes/s)

Both round half up and floor at 1 second, so every upload bills at least
one minute downstream. Estimation never raises.
"""

import asyncio
import json
import logging
import math
import time
from enum import Enum
from pathlib import Path

from pydantic import BaseModel, Field

from minuteledger.config import MediaConfig
from minuteledger.observability.metrics import track_duration_estimate, track_duration_probe

logger = logging.getLogger(__name__)


class ProbeError(Exception):
    """ffprobe is missing, timed out, failed, or reported no usable duration."""

    pass


class EstimationPath(str, Enum):
    """Which method produced a duration."""

    PROBE = "probe"
    BITRATE_ESTIMATE = "bitrate_estimate"


class DurationEstimate(BaseModel):
    """Billable duration for one upload."""

    duration_seconds: int = Field(..., ge=1)
    path: EstimationPath


def round_half_up(value: float) -> int:
    """Round to the nearest integer, halves away from zero (for value >= 0)."""
    return math.floor(value + 0.5)


class UploadDurationEstimator:
    """
    Derives upload durations, exact when possible, heuristic otherwise.

    Stateless apart from configuration; safe to share across requests.
    """

    def __init__(self, config: MediaConfig):
        self.config = config

    async def estimate(self, file_path: str | None, size_bytes: int) -> DurationEstimate:
        """
        Estimate the duration of an uploaded file.

        Args:
            file_path: Local path to the media file (None = size only)
            size_bytes: File size in bytes

        Returns:
            DurationEstimate: Seconds (>= 1) and the path used
        """
        if self.config.probe_enabled and file_path:
            started = time.perf_counter()
            try:
                seconds = await self.probe(file_path)
            except ProbeError as e:
                track_duration_probe(time.perf_counter() - started, success=False)
                logger.warning(
                    "Duration probe failed, estimating from size",
                    extra={"file_path": file_path, "size_bytes": size_bytes, "error": str(e)},
                )
            else:
                track_duration_probe(time.perf_counter() - started, success=True)
                track_duration_estimate(EstimationPath.PROBE.value)
                return DurationEstimate(
                    duration_seconds=max(1, round_half_up(seconds)),
                    path=EstimationPath.PROBE,
                )

        track_duration_estimate(EstimationPath.BITRATE_ESTIMATE.value)
        return DurationEstimate(
            duration_seconds=self.estimate_from_size(size_bytes),
            path=EstimationPath.BITRATE_ESTIMATE,
        )

    def estimate_from_size(self, size_bytes: int) -> int:
        """Seconds of audio at the reference bitrate (never below 1)."""
        seconds = max(size_bytes, 0) / self.config.fallback_bytes_per_second
        return max(1, round_half_up(seconds))

    async def probe(self, file_path: str) -> float:
        """
        Read the container duration with ffprobe.

        Args:
            file_path: Local path to the media file

        Returns:
            float: Duration in seconds (> 0)

        Raises:
            ProbeError: On any failure, including timeout
        """
        if not Path(file_path).is_file():
            raise ProbeError(f"Not a file: {file_path}")

        cmd = [
            self.config.ffprobe_path,
            "-v",
            "error",
            "-show_entries",
            "format=duration",
            "-of",
            "json",
            file_path,
        ]

        try:
            proc = await asyncio.create_subprocess_exec(
                *cmd,
                stdout=asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.PIPE,
            )
        except OSError as e:
            raise ProbeError(f"Cannot run {self.config.ffprobe_path}: {e}") from e

        try:
            stdout, stderr = await asyncio.wait_for(
                proc.communicate(), timeout=self.config.probe_timeout_seconds
            )
        except asyncio.TimeoutError as e:
            proc.kill()
            await proc.wait()
            raise ProbeError(
                f"ffprobe timed out after {self.config.probe_timeout_seconds}s"
            ) from e

        if proc.returncode != 0:
            message = stderr.decode("utf-8", errors="replace").strip()[:200]
            raise ProbeError(f"ffprobe exited with {proc.returncode}: {message}")

        try:
            payload = json.loads(stdout or b"{}")
            duration = float(payload.get("format", {}).get("duration", 0))
        except (ValueError, TypeError, AttributeError) as e:
            raise ProbeError(f"Unreadable ffprobe output: {e}") from e

        if not math.isfinite(duration) or duration <= 0:
            raise ProbeError(f"ffprobe reported non-positive duration: {duration}")

        return duration
