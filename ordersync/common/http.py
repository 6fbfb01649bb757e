"""
HTTP helpers shared by the marketplace and tracking service adapters.
"""

import logging
from collections.abc import Collection, Sequence
from typing import Any

import requests
from tenacity import Retrying, retry_if_exception_type, stop_after_attempt, wait_exponential

logger = logging.getLogger(__name__)

DEFAULT_BACKOFF = {"multiplier": 1, "min": 4, "max": 60}


class RetryableStatusError(requests.RequestException):
    """Response status listed in ``retry_statuses``; carries the last response."""


def safe_headers(response: requests.Response) -> dict[str, str]:
    """
    Response headers as a plain dict.

    Mocked responses in tests may carry a Mock or nothing at all; both yield {}.
    """
    headers = getattr(response, "headers", None)
    if isinstance(headers, dict):
        return headers
    if hasattr(headers, "items"):
        try:
            return dict(headers.items())
        except TypeError:
            return {}
    return {}


def safe_json(response: requests.Response) -> Any:
    """Decode a JSON body, returning None for empty or non-JSON bodies."""
    try:
        return response.json()
    except ValueError:
        logger.warning(f"Non-JSON response body (status {response.status_code})")
        return None


def request_with_retry(
    session: requests.Session,
    method: str,
    url: str,
    *,
    params: dict[str, Any] | None = None,
    json: Any = None,
    headers: dict[str, str] | None = None,
    timeout: float = 30,
    retry_on: Sequence[type[Exception]] = (
        requests.exceptions.Timeout,
        requests.exceptions.ConnectionError,
    ),
    retry_statuses: Collection[int] = (),
    attempts: int = 5,
    backoff: dict[str, int | float] | None = None,
) -> requests.Response:
    """
    Send a request, retrying transient failures with exponential backoff.

    Args:
        session: Session carrying the client's default headers
        method: HTTP method
        url: Full URL
        params: Query parameters
        json: JSON body
        headers: Extra headers merged over the session headers
        timeout: Per-attempt timeout in seconds
        retry_on: Exception types that trigger another attempt
        retry_statuses: Response status codes that trigger another attempt
        attempts: Maximum number of attempts
        backoff: ``multiplier``/``min``/``max`` for wait_exponential

    Returns:
        The last response. A response whose status is in ``retry_statuses`` is
        returned as is once attempts run out.

    Raises:
        The last ``retry_on`` exception when attempts run out
    """
    backoff = {**DEFAULT_BACKOFF, **(backoff or {})}
    retrying = Retrying(
        stop=stop_after_attempt(attempts),
        wait=wait_exponential(
            multiplier=backoff["multiplier"], min=backoff["min"], max=backoff["max"]
        ),
        retry=retry_if_exception_type((*retry_on, RetryableStatusError)),
        reraise=True,
    )

    try:
        for attempt in retrying:
            with attempt:
                number = attempt.retry_state.attempt_number
                logger.debug(f"{method} {url} (attempt {number}/{attempts})")
                response = session.request(
                    method=method,
                    url=url,
                    params=params,
                    json=json,
                    headers=headers or None,
                    timeout=timeout,
                )
                if response.status_code in retry_statuses:
                    raise RetryableStatusError(
                        f"{method} {url} returned {response.status_code}", response=response
                    )
    except RetryableStatusError as e:
        logger.warning(f"Giving up after {attempts} attempts: {e}")
        return e.response

    return response
