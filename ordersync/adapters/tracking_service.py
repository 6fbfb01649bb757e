"""
Client for the downstream tracking-refresh service.

The service accepts batches of ``{"tracking_id", "provider", "post_code"}``
jobs and refreshes carrier tracking asynchronously; this side only fires the
request.
"""

import logging
import os

import requests
from pydantic import BaseModel, Field

from ..common.http import request_with_retry
from ..config.loader import cfg

logger = logging.getLogger(__name__)

DEFAULT_BATCH_URL = "http://127.0.0.1:8000/track/batch"


class TrackingServiceConfig(BaseModel):
    """Tracking service configuration from environment variables and app.yaml."""

    batch_url: str = Field(default=DEFAULT_BATCH_URL, description="Batch tracking endpoint")
    api_key: str | None = Field(default=None, description="Bearer key for the service")
    timeout_seconds: float = Field(default=5.0, description="Request timeout")

    @classmethod
    def from_env(cls) -> "TrackingServiceConfig":
        """Load configuration; environment variables override app.yaml."""
        batch_url = os.getenv("TRACKING_SERVICE_BATCH_URL") or cfg(
            "tracking_service.batch_url", DEFAULT_BATCH_URL
        )
        timeout = os.getenv("TRACKING_SERVICE_TIMEOUT_SECONDS") or cfg(
            "tracking_service.timeout_seconds", 5
        )

        return cls(
            batch_url=batch_url,
            api_key=os.getenv("TRACKING_SERVICE_API_KEY") or None,
            timeout_seconds=float(timeout),
        )


class TrackingServiceError(Exception):
    """Tracking service rejected the batch."""

    def __init__(self, message: str, status_code: int | None = None):
        super().__init__(message)
        self.status_code = status_code


class TrackingServiceClient:
    """Posts tracking refresh jobs to the tracking service."""

    def __init__(self, config: TrackingServiceConfig | None = None):
        self.config = config or TrackingServiceConfig.from_env()
        self.session = requests.Session()
        self.session.headers.update({"Content-Type": "application/json"})
        if self.config.api_key:
            self.session.headers["Authorization"] = f"Bearer {self.config.api_key}"

    def post_jobs(self, jobs: list[dict]) -> int:
        """
        Submit a batch of tracking jobs.

        Args:
            jobs: Job dicts with tracking_id, provider and optional post_code

        Returns:
            HTTP status code of the accepted request

        Raises:
            TrackingServiceError: On a non-2xx response
            requests.RequestException: When the service is unreachable after retries
        """
        if not jobs:
            return 0

        response = request_with_retry(
            self.session,
            "POST",
            self.config.batch_url,
            json={"jobs": jobs},
            timeout=self.config.timeout_seconds,
            retry_statuses=(502, 503, 504),
            attempts=2,
            backoff={"multiplier": 0.5, "min": 0.5, "max": 2},
        )

        if not 200 <= response.status_code < 300:
            raise TrackingServiceError(
                f"Tracking service returned {response.status_code}: {response.text[:500]}",
                status_code=response.status_code,
            )

        logger.info(f"Submitted {len(jobs)} tracking jobs")
        return response.status_code

    def close(self) -> None:
        self.session.close()
