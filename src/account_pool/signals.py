"""Rate limit signals from upstream responses.

Helpers to recognize a rate-limit response and work out how long the account
should cool down, in the form ``AccountManager.mark_rate_limited`` expects.
"""

import re
from collections.abc import Mapping
from datetime import UTC, datetime

from dateutil import parser as dateutil_parser
from structlog import get_logger

from account_pool.accounts import now_ms


logger = get_logger(__name__)

RATE_LIMIT_PATTERNS = [
    re.compile(r"rate.?limit", re.IGNORECASE),
    re.compile(r"resource.?exhausted", re.IGNORECASE),
    re.compile(r"quota.?exceeded", re.IGNORECASE),
    re.compile(r"too.?many.?requests", re.IGNORECASE),
]

# Google error bodies carry e.g. "retryDelay": "3.5s" or "quotaResetDelay": "12s"
RETRY_DELAY_PATTERN = re.compile(
    r'"(?:retryDelay|quotaResetDelay)"\s*:\s*"(\d+(?:\.\d+)?)s"'
)


def is_rate_limit_error(status_code: int, error_message: str | None = None) -> bool:
    """Check if an error indicates rate limiting.

    Args:
        status_code: HTTP status code
        error_message: Optional error message to check

    Returns:
        True if this appears to be a rate limit error
    """
    if status_code == 429:
        return True

    if error_message:
        return any(pattern.search(error_message) for pattern in RATE_LIMIT_PATTERNS)

    return False


def _parse_delay_from_body(body: str) -> int | None:
    match = RETRY_DELAY_PATTERN.search(body)
    if match is None:
        return None
    return int(float(match.group(1)) * 1000)


def parse_retry_after_ms(
    headers: Mapping[str, str],
    body: str | None = None,
) -> int | None:
    """Parse how long until the rate limit lifts.

    Checks in order:
    1. retry-after header (seconds or HTTP date)
    2. x-ratelimit-reset header (ISO8601 or Unix seconds)
    3. retryDelay / quotaResetDelay in the error body

    Returns:
        Milliseconds from now until the limit lifts, or None if unknown.
        Instants already in the past yield None.
    """
    headers_lower = {k.lower(): v for k, v in headers.items()}

    retry_after = headers_lower.get("retry-after")
    if retry_after is not None:
        try:
            seconds = float(retry_after)
        except ValueError:
            reset_ms = _parse_instant_ms(retry_after)
            if reset_ms is not None:
                return _until(reset_ms, "retry-after")
        else:
            logger.debug("retry_after_parsed", seconds=seconds)
            return int(seconds * 1000) if seconds > 0 else None

    reset_value = headers_lower.get("x-ratelimit-reset")
    if reset_value:
        if reset_value.isdigit():
            return _until(int(reset_value) * 1000, "x-ratelimit-reset")
        reset_ms = _parse_instant_ms(reset_value)
        if reset_ms is not None:
            return _until(reset_ms, "x-ratelimit-reset")

    if body:
        delay_ms = _parse_delay_from_body(body)
        if delay_ms is not None:
            logger.debug("retry_delay_parsed_from_body", delay_ms=delay_ms)
            return delay_ms if delay_ms > 0 else None

    logger.debug("no_retry_after_found", available_headers=list(headers_lower))
    return None


def _parse_instant_ms(value: str) -> int | None:
    try:
        dt = dateutil_parser.parse(value)
    except (ValueError, TypeError, OverflowError):
        return None
    if dt.tzinfo is None:
        dt = dt.replace(tzinfo=UTC)
    return int(dt.timestamp() * 1000)


def _until(reset_ms: int, header: str) -> int | None:
    wait_ms = reset_ms - now_ms()
    logger.debug(
        "rate_limit_reset_parsed",
        header=header,
        reset_time=datetime.fromtimestamp(reset_ms / 1000, tz=UTC).isoformat(),
        wait_ms=wait_ms,
    )
    return wait_ms if wait_ms > 0 else None
