"""
Shared ETL utilities for data transformation and extraction.

Provides tolerant field access, coercion and timestamp helpers used by the
marketplace order mapper, the tracking detector and the tracking trigger.
Upstream payloads are semi-structured: a field may arrive snake_cased,
camelCased, missing, or with the wrong type.
"""

import logging
from datetime import UTC, datetime
from decimal import Decimal, InvalidOperation
from typing import Any, Optional

logger = logging.getLogger(__name__)


def camel_case(name: str) -> str:
    """
    Convert a snake_case key to camelCase.

    Examples:
        >>> camel_case("tracking_number")
        "trackingNumber"
        >>> camel_case("id")
        "id"
    """
    head, *rest = name.split("_")
    return head + "".join(part[:1].upper() + part[1:] for part in rest)


def field(data: Any, name: str, default: Any = None) -> Any:
    """
    Read a field from an upstream payload, accepting snake_case or camelCase keys.

    Args:
        data: Payload fragment (anything that is not a dict yields the default)
        name: Field name in snake_case
        default: Value returned when the field is absent or null

    Returns:
        Field value or default
    """
    if not isinstance(data, dict):
        return default

    value = data.get(name)
    if value is None:
        value = data.get(camel_case(name))
    return default if value is None else value


def nested(data: Any, name: str) -> dict:
    """Return a nested object field, or an empty dict when it is missing or malformed."""
    value = field(data, name)
    return value if isinstance(value, dict) else {}


def nested_list(data: Any, name: str) -> list:
    """Return a list field, or an empty list when it is missing or malformed."""
    value = field(data, name)
    return value if isinstance(value, list) else []


def normalize_text(value: Any) -> Optional[str]:
    """
    Trim a string value; blank or non-string values become None.

    Examples:
        >>> normalize_text("  TN-1 ")
        "TN-1"
        >>> normalize_text("   ")
        None
    """
    if value is None:
        return None
    if not isinstance(value, str):
        value = str(value)
    trimmed = value.strip()
    return trimmed or None


def coerce_int(value: Any) -> Optional[int]:
    """
    Safely coerce value to integer.

    Handles numeric strings, floats, and None values gracefully.

    Examples:
        >>> coerce_int("95.0")
        95
        >>> coerce_int("invalid")
        None
    """
    if value is None or isinstance(value, bool):
        return None

    try:
        if isinstance(value, str):
            if "." in value:
                return int(float(value))
            return int(value)

        if isinstance(value, (int, float, Decimal)):
            return int(value)

        return None
    except (ValueError, TypeError, OverflowError):
        return None


def coerce_decimal(value: Any) -> Optional[Decimal]:
    """Coerce a monetary amount (string or number) to Decimal, None if unparseable."""
    if value is None or value == "" or isinstance(value, bool):
        return None

    try:
        return Decimal(str(value))
    except (InvalidOperation, ValueError):
        logger.warning(f"Invalid monetary amount: {value!r}")
        return None


def coerce_bool(value: Any) -> bool:
    """Missing or null flags are False."""
    if isinstance(value, str):
        return value.strip().lower() in ("true", "1", "yes")
    return bool(value)


def parse_epoch(value: Any) -> Optional[datetime]:
    """
    Parse an upstream unix timestamp into an aware UTC datetime.

    Values above 10^12 are treated as milliseconds, everything else as seconds.
    Zero, negative and unparseable values yield None.

    Examples:
        >>> parse_epoch(1700000000)
        datetime(2023, 11, 14, 22, 13, 20, tzinfo=UTC)
        >>> parse_epoch("1700000000000")
        datetime(2023, 11, 14, 22, 13, 20, tzinfo=UTC)
    """
    seconds = coerce_int(value)
    if seconds is None or seconds <= 0:
        return None

    if seconds > 10**12:
        seconds = seconds / 1000

    try:
        return datetime.fromtimestamp(seconds, UTC)
    except (OverflowError, OSError, ValueError):
        logger.warning(f"Could not parse epoch timestamp: {value!r}")
        return None


def epoch_millis(value: Any) -> int:
    """
    Normalize an upstream timestamp to epoch milliseconds, 0 when unknown.

    Second-resolution values (below 10^12) are scaled up.
    """
    number = coerce_int(value)
    if number is None or number <= 0:
        return 0
    if number < 10**12:
        return number * 1000
    return number


def without_none(data: dict) -> dict:
    """Drop keys whose value is None so channel data stays compact."""
    return {key: value for key, value in data.items() if value is not None}
