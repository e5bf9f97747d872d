"""
Observability helpers for outbound API calls.

Adds correlation IDs and structured logging context to requests.
"""

import logging
import time
import uuid
from typing import Optional

# Configure structured logger
logger = logging.getLogger("minex.api")


def configure_logging(level: str = "INFO") -> None:
    """Root logging setup for apps and scripts embedding the client."""
    logging.basicConfig(
        level=getattr(logging, level.upper(), logging.INFO),
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )


def new_correlation_id() -> str:
    return str(uuid.uuid4())


class RequestTimer:
    """Times one outbound attempt and logs it with its correlation ID."""

    def __init__(self, method: str, path: str, correlation_id: str, attempt: int = 1):
        self.method = method
        self.path = path
        self.correlation_id = correlation_id
        self.attempt = attempt
        self.start_time = time.monotonic()

    def log(self, status_code: Optional[int], error: Optional[str] = None) -> None:
        process_time = (time.monotonic() - self.start_time) * 1000  # ms

        log_data = {
            "correlation_id": self.correlation_id,
            "method": self.method,
            "path": self.path,
            "attempt": self.attempt,
            "status_code": status_code,
            "duration_ms": round(process_time, 2),
        }
        if error:
            log_data["error"] = error

        # Log level based on status
        if status_code is None or status_code >= 500:
            logger.error("Request Failed", extra=log_data)
        elif status_code >= 400:
            logger.warning("Request Error", extra=log_data)
        else:
            logger.info("Request API", extra=log_data)
