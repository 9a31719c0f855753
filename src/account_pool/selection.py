"""Account selection for the rotation pool.

Provides round-robin fallback and sticky selection for cache continuity.
All limit checks are model-specific. Soft limits steer selection towards
accounts with quota headroom but never exclude an account on their own.
"""

from collections.abc import Callable
from dataclasses import dataclass

from structlog import get_logger

from account_pool.accounts import Account, now_ms
from account_pool.constants import MAX_WAIT_BEFORE_ERROR_MS, SOFT_LIMIT_THRESHOLD
from account_pool.rate_limits import (
    clear_expired_limits,
    clear_expired_soft_limits,
    get_available_accounts,
    get_preferred_accounts,
    is_soft_limited,
)


logger = get_logger(__name__)

SaveCallback = Callable[[], None]


@dataclass(frozen=True)
class NextPick:
    """Result of a round-robin pick."""

    account: Account | None
    new_index: int


@dataclass(frozen=True)
class StickyPick:
    """The account at the cursor, if usable."""

    account: Account | None
    new_index: int
    is_soft_limited: bool = False


@dataclass(frozen=True)
class WaitDecision:
    """Whether to block until the sticky account's hard limit lifts."""

    should_wait: bool
    wait_ms: int
    account: Account | None


@dataclass(frozen=True)
class StickySelection:
    """Result of the sticky selection policy."""

    account: Account | None
    wait_ms: int
    new_index: int

    @property
    def should_wait(self) -> bool:
        """True when the caller should sleep wait_ms and retry."""
        return self.account is None and self.wait_ms > 0


def _clamp_index(index: int, count: int) -> int:
    if index < 0 or index >= count:
        return 0
    return index


def _is_preferred(account: Account, model_id: str | None, threshold: float) -> bool:
    if not account.is_usable_for(model_id):
        return False
    return not is_soft_limited(account, model_id, threshold)


def _select(account: Account, on_save: SaveCallback | None) -> None:
    account.mark_used()
    if on_save is not None:
        on_save()


def pick_next(
    accounts: list[Account],
    current_index: int,
    on_save: SaveCallback | None = None,
    model_id: str | None = None,
    soft_limit_enabled: bool = True,
    threshold: float = SOFT_LIMIT_THRESHOLD,
) -> NextPick:
    """Pick the next available account after the cursor (round-robin).

    Scans forward from current_index + 1, wrapping once around the pool.
    With soft limits enabled and a model given, the first preferred
    (not soft-limited) account wins; if there is none, the first available
    account is used instead.

    Args:
        accounts: Pool accounts in selection order
        current_index: Cursor of the current account
        on_save: Called after the selected account is stamped
        model_id: Model to check limits for
        soft_limit_enabled: Whether to prefer accounts that are not soft-limited
        threshold: Soft limit threshold

    Returns:
        Selected account (or None) and the new cursor
    """
    clear_expired_limits(accounts)
    clear_expired_soft_limits(accounts)

    available = get_available_accounts(accounts, model_id)
    if not available:
        return NextPick(account=None, new_index=current_index)

    total = len(accounts)
    index = _clamp_index(current_index, total)
    scan_order = [(index + step) % total for step in range(1, total + 1)]

    if soft_limit_enabled and model_id:
        if get_preferred_accounts(accounts, model_id, threshold):
            for idx in scan_order:
                account = accounts[idx]
                if _is_preferred(account, model_id, threshold):
                    _select(account, on_save)
                    logger.info(
                        "preferred_account_selected",
                        account=account.email,
                        position=idx + 1,
                        total=total,
                    )
                    return NextPick(account=account, new_index=idx)

        logger.warning("all_accounts_soft_limited", model=model_id)

    for idx in scan_order:
        account = accounts[idx]
        if account.is_usable_for(model_id):
            _select(account, on_save)
            logger.info(
                "account_selected",
                account=account.email,
                position=idx + 1,
                total=total,
                soft_limited_fallback=soft_limit_enabled
                and is_soft_limited(account, model_id, threshold),
            )
            return NextPick(account=account, new_index=idx)

    return NextPick(account=None, new_index=current_index)


def get_current_sticky_account(
    accounts: list[Account],
    current_index: int,
    on_save: SaveCallback | None = None,
    model_id: str | None = None,
    threshold: float = SOFT_LIMIT_THRESHOLD,
) -> StickyPick:
    """Get the account at the cursor without advancing it.

    Returns no account if it is invalid or hard-limited. A soft-limited account
    is still returned; the flag lets the caller decide whether to move on.
    """
    clear_expired_limits(accounts)
    clear_expired_soft_limits(accounts)

    if not accounts:
        return StickyPick(account=None, new_index=current_index)

    index = _clamp_index(current_index, len(accounts))
    account = accounts[index]

    if account.is_usable_for(model_id):
        _select(account, on_save)
        return StickyPick(
            account=account,
            new_index=index,
            is_soft_limited=is_soft_limited(account, model_id, threshold),
        )

    return StickyPick(account=None, new_index=index)


def should_wait_for_current_account(
    accounts: list[Account],
    current_index: int,
    model_id: str | None = None,
    max_wait_ms: int = MAX_WAIT_BEFORE_ERROR_MS,
) -> WaitDecision:
    """Check if it is worth waiting for the cursor account's limit to lift.

    Waiting is recommended only for a positive wait no longer than max_wait_ms.
    """
    if not accounts:
        return WaitDecision(should_wait=False, wait_ms=0, account=None)

    account = accounts[_clamp_index(current_index, len(accounts))]
    if account.is_invalid:
        return WaitDecision(should_wait=False, wait_ms=0, account=None)

    wait_ms = 0
    if model_id:
        limit = account.model_rate_limits.get(model_id)
        if limit is not None and limit.is_rate_limited and limit.reset_time:
            wait_ms = limit.reset_time - now_ms()

    if 0 < wait_ms <= max_wait_ms:
        return WaitDecision(should_wait=True, wait_ms=wait_ms, account=account)

    return WaitDecision(should_wait=False, wait_ms=0, account=account)


def pick_sticky_account(
    accounts: list[Account],
    current_index: int,
    on_save: SaveCallback | None = None,
    model_id: str | None = None,
    soft_limit_enabled: bool = True,
    threshold: float = SOFT_LIMIT_THRESHOLD,
    max_wait_ms: int = MAX_WAIT_BEFORE_ERROR_MS,
) -> StickySelection:
    """Pick an account, preferring the current one for cache continuity.

    Decision order:
    1. Keep the sticky account if usable, unless it is soft-limited and a
       preferred account exists elsewhere.
    2. Otherwise switch to another available account right away.
    3. Otherwise wait for the sticky account if its limit lifts soon.
    4. Otherwise try round-robin anyway (may yield no account).
    """
    sticky = get_current_sticky_account(
        accounts, current_index, on_save, model_id, threshold
    )

    if sticky.account is not None:
        if soft_limit_enabled and sticky.is_soft_limited and model_id:
            if get_preferred_accounts(accounts, model_id, threshold):
                nxt = pick_next(accounts, current_index, on_save, model_id, True, threshold)
                if nxt.account is not None and nxt.account.email != sticky.account.email:
                    logger.info(
                        "switched_from_soft_limited_account",
                        previous=sticky.account.email,
                        account=nxt.account.email,
                        model=model_id,
                    )
                    return StickySelection(
                        account=nxt.account, wait_ms=0, new_index=nxt.new_index
                    )
            logger.debug(
                "using_soft_limited_account",
                account=sticky.account.email,
                model=model_id,
            )
        return StickySelection(
            account=sticky.account, wait_ms=0, new_index=sticky.new_index
        )

    if get_available_accounts(accounts, model_id):
        nxt = pick_next(
            accounts, current_index, on_save, model_id, soft_limit_enabled, threshold
        )
        if nxt.account is not None:
            logger.info("switched_account_failover", account=nxt.account.email)
            return StickySelection(account=nxt.account, wait_ms=0, new_index=nxt.new_index)

    decision = should_wait_for_current_account(
        accounts, current_index, model_id, max_wait_ms
    )
    if decision.should_wait and decision.account is not None:
        logger.info(
            "waiting_for_sticky_account",
            account=decision.account.email,
            wait_ms=decision.wait_ms,
        )
        return StickySelection(account=None, wait_ms=decision.wait_ms, new_index=current_index)

    nxt = pick_next(
        accounts, current_index, on_save, model_id, soft_limit_enabled, threshold
    )
    if nxt.account is not None:
        logger.info("switched_account_for_cache", account=nxt.account.email)
    return StickySelection(account=nxt.account, wait_ms=0, new_index=nxt.new_index)
