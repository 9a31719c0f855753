"""Rate limit and soft limit tracking for pool accounts.

All functions are stateless and operate on the account list passed in.
Limits are always model-scoped: a query without a model id never reports an
account as limited.

Hard limits come from the backend (HTTP 429) and make an account unusable for
the model until ``reset_time``. Soft limits are set locally when the remaining
quota fraction drops below a threshold; they are a preference signal only.
"""

from collections.abc import Iterable
from dataclasses import dataclass
from datetime import UTC

from dateutil import parser as dateutil_parser
from structlog import get_logger

from account_pool.accounts import (
    Account,
    AccountSettings,
    RateLimitState,
    SoftLimitState,
    now_ms,
)
from account_pool.constants import DEFAULT_COOLDOWN_MS, SOFT_LIMIT_THRESHOLD


logger = get_logger(__name__)


@dataclass(frozen=True)
class SoftLimitUpdate:
    """Outcome of a soft limit status update."""

    changed: bool
    is_soft_limited: bool


def find_account(accounts: Iterable[Account], email: str) -> Account | None:
    """Find an account by email."""
    return next((a for a in accounts if a.email == email), None)


# --- Hard limits ---


def is_all_rate_limited(accounts: list[Account], model_id: str | None) -> bool:
    """Check if every account is invalid or hard-limited for the model.

    An empty pool counts as fully limited. Without a model id nothing can be
    limited, so the answer is False.
    """
    if not accounts:
        return True
    if not model_id:
        return False

    now = now_ms()
    return all(
        account.is_invalid or account.is_rate_limited_for(model_id, now)
        for account in accounts
    )


def get_available_accounts(
    accounts: list[Account], model_id: str | None = None
) -> list[Account]:
    """Get accounts that are neither invalid nor hard-limited for the model."""
    now = now_ms()
    return [account for account in accounts if account.is_usable_for(model_id, now)]


def get_invalid_accounts(accounts: list[Account]) -> list[Account]:
    """Get accounts whose credentials need re-authentication."""
    return [account for account in accounts if account.is_invalid]


def clear_expired_limits(accounts: list[Account]) -> int:
    """Clear hard limits whose reset time has passed.

    Returns:
        Number of limits cleared
    """
    now = now_ms()
    cleared = 0

    for account in accounts:
        for model_id, limit in account.model_rate_limits.items():
            if limit.is_rate_limited and (limit.reset_time or 0) <= now:
                limit.is_rate_limited = False
                limit.reset_time = None
                cleared += 1
                logger.info(
                    "rate_limit_expired",
                    account=account.email,
                    model=model_id,
                )

    return cleared


def reset_all_rate_limits(accounts: list[Account]) -> None:
    """Clear every hard limit regardless of expiry (optimistic retry)."""
    for account in accounts:
        for model_id in account.model_rate_limits:
            account.model_rate_limits[model_id] = RateLimitState()
    logger.warning("rate_limits_reset_for_optimistic_retry", accounts=len(accounts))


def mark_rate_limited(
    accounts: list[Account],
    email: str,
    reset_ms: int | None = None,
    settings: AccountSettings | None = None,
    model_id: str | None = None,
) -> bool:
    """Mark an account as hard-limited for a model.

    Args:
        accounts: Pool accounts
        email: Account to mark
        reset_ms: Milliseconds until the limit lifts. Falls back to the
            configured cooldown, then DEFAULT_COOLDOWN_MS.
        settings: Pool settings holding the configured cooldown
        model_id: Model the limit applies to

    Returns:
        True if the account was found and marked
    """
    account = find_account(accounts, email)
    if account is None:
        logger.warning("unknown_account_rate_limited", account=email)
        return False
    if not model_id:
        logger.warning("rate_limit_without_model_ignored", account=email)
        return False

    if reset_ms is not None and reset_ms > 0:
        cooldown_ms = reset_ms
    else:
        cooldown_ms = (settings.cooldown_duration_ms if settings else None) or (
            DEFAULT_COOLDOWN_MS
        )

    account.model_rate_limits[model_id] = RateLimitState(
        is_rate_limited=True,
        reset_time=now_ms() + cooldown_ms,
    )

    logger.warning(
        "account_rate_limited",
        account=email,
        model=model_id,
        available_in_ms=cooldown_ms,
    )
    return True


def mark_invalid(
    accounts: list[Account], email: str, reason: str = "Unknown error"
) -> bool:
    """Mark an account as invalid until it is re-authenticated.

    Returns:
        True if the account was found and marked
    """
    account = find_account(accounts, email)
    if account is None:
        logger.warning("unknown_account_marked_invalid", account=email)
        return False

    account.is_invalid = True
    account.invalid_reason = reason
    account.invalid_at = now_ms()

    logger.error(
        "account_invalid",
        account=email,
        reason=reason,
        message="Re-authenticate this account to restore it",
    )
    return True


def _soonest_reset_wait_ms(
    accounts: list[Account], model_id: str
) -> tuple[int, Account] | None:
    """Find the shortest positive wait until a limited account resets."""
    now = now_ms()
    soonest: tuple[int, Account] | None = None

    for account in accounts:
        limit = account.model_rate_limits.get(model_id)
        if limit is None or not limit.is_rate_limited or limit.reset_time is None:
            continue
        wait = limit.reset_time - now
        if wait > 0 and (soonest is None or wait < soonest[0]):
            soonest = (wait, account)

    return soonest


def get_min_wait_time_ms(accounts: list[Account], model_id: str | None) -> int:
    """Get the wait until any account becomes available for the model.

    Returns 0 when some account is usable now. When every account is limited
    but no positive wait is found (empty pool, or limits already expired with
    the sweep pending), returns DEFAULT_COOLDOWN_MS.
    """
    if not is_all_rate_limited(accounts, model_id):
        return 0

    soonest = _soonest_reset_wait_ms(accounts, model_id) if model_id else None
    if soonest is None:
        return DEFAULT_COOLDOWN_MS

    wait_ms, account = soonest
    logger.info("shortest_wait", wait_ms=wait_ms, account=account.email, model=model_id)
    return wait_ms


# --- Soft limits ---


def is_soft_limited(
    account: Account | None,
    model_id: str | None,
    threshold: float = SOFT_LIMIT_THRESHOLD,
) -> bool:
    """Check if an account is soft-limited for a model.

    An entry whose reset time has passed reads as not limited; it is removed by
    clear_expired_soft_limits().
    """
    if account is None or not model_id:
        return False

    limit = account.model_soft_limits.get(model_id)
    if limit is None or not limit.is_soft_limited:
        return False
    return not limit.is_expired()


def get_preferred_accounts(
    accounts: list[Account],
    model_id: str | None = None,
    threshold: float = SOFT_LIMIT_THRESHOLD,
) -> list[Account]:
    """Get accounts that are available and not soft-limited for the model."""
    return [
        account
        for account in get_available_accounts(accounts, model_id)
        if not is_soft_limited(account, model_id, threshold)
    ]


def is_all_soft_limited(
    accounts: list[Account],
    model_id: str | None,
    threshold: float = SOFT_LIMIT_THRESHOLD,
) -> bool:
    """Check if every hard-available account is soft-limited for the model.

    Returns False when no account is hard-available, so that "all hard-limited"
    and "all soft-limited" stay distinguishable.
    """
    if not model_id:
        return False

    available = get_available_accounts(accounts, model_id)
    if not available:
        return False
    return all(is_soft_limited(account, model_id, threshold) for account in available)


def _parse_reset_time(reset_time: str | None) -> int | None:
    """Parse an ISO8601 reset instant to a millisecond timestamp."""
    if not reset_time:
        return None
    try:
        dt = dateutil_parser.isoparse(reset_time)
    except (ValueError, TypeError, OverflowError):
        logger.warning("soft_limit_reset_time_unparsable", reset_time=reset_time)
        return None
    if dt.tzinfo is None:
        dt = dt.replace(tzinfo=UTC)
    return int(dt.timestamp() * 1000)


def mark_soft_limited(
    accounts: list[Account],
    email: str,
    model_id: str,
    remaining_fraction: float,
    reset_time: str | None = None,
    threshold: float = SOFT_LIMIT_THRESHOLD,
) -> bool:
    """Mark an account as soft-limited for a model.

    Args:
        accounts: Pool accounts
        email: Account to mark
        model_id: Model whose quota is low
        remaining_fraction: Remaining quota (0.0-1.0)
        reset_time: ISO8601 instant when the quota refills
        threshold: Threshold that was crossed (for logging)

    Returns:
        True if the account was found and marked
    """
    account = find_account(accounts, email)
    if account is None:
        return False

    account.model_soft_limits[model_id] = SoftLimitState(
        remaining_fraction=remaining_fraction,
        reset_time=_parse_reset_time(reset_time),
        marked_at=now_ms(),
    )

    logger.warning(
        "account_soft_limited",
        account=email,
        model=model_id,
        remaining_pct=round(remaining_fraction * 100),
        threshold_pct=round(threshold * 100),
    )
    return True


def clear_soft_limit(accounts: list[Account], email: str, model_id: str) -> bool:
    """Remove the soft limit for an account and model.

    Returns:
        True if a soft limit was removed
    """
    account = find_account(accounts, email)
    if account is None or model_id not in account.model_soft_limits:
        return False

    del account.model_soft_limits[model_id]
    logger.info("soft_limit_cleared", account=email, model=model_id)
    return True


def clear_expired_soft_limits(accounts: list[Account]) -> int:
    """Remove soft limits whose quota window has reset.

    Returns:
        Number of soft limits removed
    """
    now = now_ms()
    cleared = 0

    for account in accounts:
        expired = [
            model_id
            for model_id, limit in account.model_soft_limits.items()
            if limit.is_soft_limited and limit.is_expired(now)
        ]
        for model_id in expired:
            del account.model_soft_limits[model_id]
            cleared += 1
            logger.info("soft_limit_expired", account=account.email, model=model_id)

    return cleared


def update_soft_limit_status(
    accounts: list[Account],
    email: str,
    model_id: str,
    remaining_fraction: float | None,
    reset_time: str | None = None,
    threshold: float = SOFT_LIMIT_THRESHOLD,
) -> SoftLimitUpdate:
    """Mark or clear the soft limit from a fresh quota reading.

    Only a state transition touches the account, so repeated calls with the
    same reading report changed=False.
    """
    account = find_account(accounts, email)
    if account is None:
        return SoftLimitUpdate(changed=False, is_soft_limited=False)

    was_soft_limited = is_soft_limited(account, model_id, threshold)
    if remaining_fraction is None:
        return SoftLimitUpdate(changed=False, is_soft_limited=was_soft_limited)

    should_be_soft_limited = 0 <= remaining_fraction < threshold

    if should_be_soft_limited and not was_soft_limited:
        mark_soft_limited(
            accounts, email, model_id, remaining_fraction, reset_time, threshold
        )
        return SoftLimitUpdate(changed=True, is_soft_limited=True)

    if was_soft_limited and not should_be_soft_limited:
        clear_soft_limit(accounts, email, model_id)
        return SoftLimitUpdate(changed=True, is_soft_limited=False)

    return SoftLimitUpdate(changed=False, is_soft_limited=was_soft_limited)
