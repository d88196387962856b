"""
Upload acceptance checks.

- Format: the file name's extension or the declared MIME type must be a
  supported audio/video format
- Bitrate: a probed duration must not imply more than the configured bytes
  per second (a 500 MB file cannot be 2 seconds long)
"""

from pathlib import PurePosixPath

from minuteledger.config import MediaConfig


def is_supported_format(file_name: str, content_type: str | None, config: MediaConfig) -> bool:
    """Check a file against the supported extensions and MIME types."""
    extension = PurePosixPath(file_name).suffix.lower()
    if extension and extension in config.supported_extensions:
        return True
    if content_type:
        mime_type = content_type.split(";", 1)[0].strip().lower()
        return mime_type in config.supported_mime_types
    return False


def average_bytes_per_second(size_bytes: int, duration_seconds: int) -> float:
    return size_bytes / max(duration_seconds, 1)


def is_plausible_bitrate(size_bytes: int, duration_seconds: int, config: MediaConfig) -> bool:
    return average_bytes_per_second(size_bytes, duration_seconds) <= config.max_bytes_per_second
