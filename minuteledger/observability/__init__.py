"""
Observability infrastructure.

Components:
- metrics.py: Prometheus metrics (counters, histograms, gauges)
- logging.py: Structured JSON logging with request context and redaction
- logging_middleware.py: Request logging and slow request detection
- middleware.py: Request metrics and body size limits
"""

from minuteledger.observability.logging import configure_logging, get_logger
from minuteledger.observability.metrics import generate_metrics, track_request

__all__ = [
    "configure_logging",
    "get_logger",
    "generate_metrics",
    "track_request",
]
