"""Account pool manager.

Owns the account list, the rotation cursor, the persisted settings and the
per-account token and project caches. Every mutation schedules a save that the
caller does not wait for; in-process reads see the change immediately.
"""

import asyncio
from dataclasses import replace
from threading import Lock, Thread, current_thread
from typing import Any

import httpx
from structlog import get_logger

from account_pool import credentials, quota, rate_limits, selection
from account_pool.accounts import Account, AccountSettings, TokenCache, now_ms
from account_pool.config import PoolSettings, get_settings
from account_pool.exceptions import AccountPoolError
from account_pool.rate_limits import SoftLimitUpdate, find_account
from account_pool.selection import StickySelection, WaitDecision
from account_pool.storage import AccountStore, JsonAccountStore


logger = get_logger(__name__)


class AccountManager:
    """Manages a pool of accounts with sticky selection and failover.

    Features:
    - Sticky selection for prompt cache continuity
    - Round-robin failover when the current account is limited
    - Per-model hard limits with cooldown and soft limits from quota readings
    - Best-effort background persistence after every change
    """

    def __init__(
        self,
        settings: PoolSettings | None = None,
        store: AccountStore | None = None,
        client: httpx.AsyncClient | None = None,
    ):
        """Initialize the manager.

        Args:
            settings: Pool settings (defaults to environment settings)
            store: Persistence port (defaults to the JSON accounts file)
            client: Optional shared HTTP client for token and quota calls
        """
        self._config = settings or get_settings()
        self._store: AccountStore = store or JsonAccountStore(
            self._config.accounts_path, self._config.default_account_db_path
        )
        self._client = client

        self._accounts: list[Account] = []
        self._current_index = 0
        self._settings = AccountSettings()
        self._initialized = False

        self._soft_limit_enabled = self._config.soft_limit_enabled
        self._soft_limit_threshold = self._config.soft_limit_threshold

        self._token_cache: TokenCache = {}
        self._project_cache: dict[str, str] = {}
        self._pending_saves: set[asyncio.Task[bool]] = set()
        self._save_threads: set[Thread] = set()
        self._thread_save_lock = Lock()

    @property
    def config(self) -> PoolSettings:
        """Get the pool settings this manager was built with."""
        return self._config

    @property
    def current_index(self) -> int:
        """Get the rotation cursor."""
        return self._current_index

    @property
    def account_count(self) -> int:
        """Get total number of accounts."""
        return len(self._accounts)

    @property
    def soft_limit_threshold(self) -> float:
        """Get the soft limit threshold (0.0-1.0)."""
        return self._soft_limit_threshold

    async def initialize(self) -> None:
        """Load accounts from the store.

        Falls back to the desktop client's default account when no accounts are
        configured. Calling this again is a no-op.

        Raises:
            StorageError: If the accounts file exists but cannot be loaded
        """
        if self._initialized:
            return

        accounts_file = await self._store.load()
        self._accounts = accounts_file.accounts
        self._settings = accounts_file.settings
        self._current_index = accounts_file.active_index

        if not self._accounts:
            logger.warning("no_accounts_configured_using_default_account")
            self._accounts, self._token_cache = self._store.load_default()
            self._current_index = 0

        self.clear_expired_limits()
        self._initialized = True

        logger.info(
            "account_manager_initialized",
            count=len(self._accounts),
            active_index=self._current_index,
        )

    # --- Persistence ---

    async def save_to_disk(self) -> bool:
        """Persist accounts, settings and cursor.

        Returns:
            True if saved; failures are logged and return False
        """
        return await self._save(self._accounts, self._settings, self._current_index)

    async def _save(
        self, accounts: list[Account], settings: AccountSettings, active_index: int
    ) -> bool:
        try:
            return await self._store.save(accounts, settings, active_index)
        except AccountPoolError as e:
            logger.error("accounts_save_failed", error=e.message, details=e.details)
        except Exception as e:  # noqa: BLE001 - background save errors are logged only
            logger.error("accounts_save_failed", error=str(e), exc_info=True)
        return False

    def _request_save(self) -> None:
        try:
            loop = asyncio.get_running_loop()
        except RuntimeError:
            self._save_in_background_thread()
            return

        task = loop.create_task(self.save_to_disk())
        self._pending_saves.add(task)
        task.add_done_callback(self._on_save_done)

    def _save_in_background_thread(self) -> None:
        snapshot = (
            [Account.from_dict(account.to_dict()) for account in self._accounts],
            replace(self._settings, extra=dict(self._settings.extra)),
            self._current_index,
        )
        thread = Thread(target=self._run_thread_save, args=snapshot, name="account-pool-save")
        thread.daemon = True
        self._save_threads.add(thread)
        try:
            thread.start()
        except RuntimeError as e:
            self._save_threads.discard(thread)
            logger.error("accounts_save_thread_failed", error=str(e))

    def _run_thread_save(
        self, accounts: list[Account], settings: AccountSettings, active_index: int
    ) -> None:
        try:
            with self._thread_save_lock:
                asyncio.run(self._save(accounts, settings, active_index))
        finally:
            self._save_threads.discard(current_thread())

    def _on_save_done(self, task: "asyncio.Task[bool]") -> None:
        self._pending_saves.discard(task)
        if task.cancelled():
            return
        if exc := task.exception():
            logger.error("accounts_save_task_failed", error=str(exc))

    async def flush_pending_saves(self) -> None:
        """Wait for all scheduled saves to finish."""
        while self._pending_saves:
            await asyncio.gather(*list(self._pending_saves), return_exceptions=True)

    def join_save_threads(self, timeout: float | None = None) -> None:
        """Wait for saves scheduled outside an event loop to finish."""
        for thread in list(self._save_threads):
            thread.join(timeout)

    # --- Availability ---

    def is_all_rate_limited(self, model_id: str | None = None) -> bool:
        return rate_limits.is_all_rate_limited(self._accounts, model_id)

    def get_available_accounts(self, model_id: str | None = None) -> list[Account]:
        return rate_limits.get_available_accounts(self._accounts, model_id)

    def get_invalid_accounts(self) -> list[Account]:
        return rate_limits.get_invalid_accounts(self._accounts)

    def get_all_accounts(self) -> list[Account]:
        """Get all accounts, including credentials (for quota fetching)."""
        return self._accounts

    def get_settings(self) -> AccountSettings:
        """Get a copy of the persisted settings."""
        return replace(self._settings, extra=dict(self._settings.extra))

    def clear_expired_limits(self) -> int:
        """Clear expired hard and soft limits.

        Returns:
            Number of limits cleared
        """
        cleared = rate_limits.clear_expired_limits(self._accounts)
        cleared += rate_limits.clear_expired_soft_limits(self._accounts)
        if cleared > 0:
            self._request_save()
        return cleared

    def reset_all_rate_limits(self) -> None:
        """Clear every hard limit to force a fresh check (optimistic retry)."""
        rate_limits.reset_all_rate_limits(self._accounts)

    def get_min_wait_time_ms(self, model_id: str | None = None) -> int:
        return rate_limits.get_min_wait_time_ms(self._accounts, model_id)

    # --- Selection ---

    def pick_next(self, model_id: str | None = None) -> Account | None:
        """Pick the next available account after the cursor and move the cursor to it."""
        result = selection.pick_next(
            self._accounts,
            self._current_index,
            self._request_save,
            model_id,
            self._soft_limit_enabled,
            self._soft_limit_threshold,
        )
        self._current_index = result.new_index
        return result.account

    def get_current_sticky_account(self, model_id: str | None = None) -> Account | None:
        """Get the account at the cursor if it is usable for the model."""
        result = selection.get_current_sticky_account(
            self._accounts,
            self._current_index,
            self._request_save,
            model_id,
            self._soft_limit_threshold,
        )
        self._current_index = result.new_index
        return result.account

    def should_wait_for_current_account(self, model_id: str | None = None) -> WaitDecision:
        return selection.should_wait_for_current_account(
            self._accounts,
            self._current_index,
            model_id,
            self._config.max_wait_before_error_ms,
        )

    def pick_sticky_account(self, model_id: str | None = None) -> StickySelection:
        """Pick an account, preferring the current one for cache continuity.

        Switches only when the current account is invalid, limited for longer
        than the wait ceiling, or soft-limited while a preferred account exists.
        When the result has no account and a positive wait_ms, the caller should
        sleep and try again.
        """
        result = selection.pick_sticky_account(
            self._accounts,
            self._current_index,
            self._request_save,
            model_id,
            self._soft_limit_enabled,
            self._soft_limit_threshold,
            self._config.max_wait_before_error_ms,
        )
        self._current_index = result.new_index
        return result

    # --- Limits ---

    def _cooldown_settings(self) -> AccountSettings:
        if self._settings.cooldown_duration_ms is None and self._config.cooldown_duration_ms:
            return AccountSettings(cooldown_duration_ms=self._config.cooldown_duration_ms)
        return self._settings

    def mark_rate_limited(
        self,
        email: str,
        reset_ms: int | None = None,
        model_id: str | None = None,
    ) -> bool:
        """Mark an account as hard-limited for a model.

        Args:
            email: Account to mark
            reset_ms: Milliseconds until the limit lifts (configured cooldown if None)
            model_id: Model the limit applies to

        Returns:
            True if the account was found and marked
        """
        marked = rate_limits.mark_rate_limited(
            self._accounts, email, reset_ms, self._cooldown_settings(), model_id
        )
        self._request_save()
        return marked

    def mark_invalid(self, email: str, reason: str = "Unknown error") -> bool:
        """Mark an account as invalid (credentials need re-authentication)."""
        marked = rate_limits.mark_invalid(self._accounts, email, reason)
        self._request_save()
        return marked

    # --- Soft limits ---

    def set_soft_limit_enabled(self, enabled: bool, threshold: float | None = None) -> None:
        """Enable or disable soft limits, optionally with a new threshold.

        A threshold outside 0.0-1.0 is ignored.
        """
        self._soft_limit_enabled = enabled
        if threshold is not None:
            if 0 <= threshold <= 1:
                self._soft_limit_threshold = threshold
            else:
                logger.warning("soft_limit_threshold_ignored", threshold=threshold)
        logger.info(
            "soft_limits_configured",
            enabled=enabled,
            threshold_pct=round(self._soft_limit_threshold * 100),
        )

    def is_soft_limit_enabled(self) -> bool:
        return self._soft_limit_enabled

    def is_soft_limited(self, email: str, model_id: str) -> bool:
        account = find_account(self._accounts, email)
        return rate_limits.is_soft_limited(account, model_id, self._soft_limit_threshold)

    def is_all_soft_limited(self, model_id: str) -> bool:
        return rate_limits.is_all_soft_limited(
            self._accounts, model_id, self._soft_limit_threshold
        )

    def get_preferred_accounts(self, model_id: str | None = None) -> list[Account]:
        """Get accounts that are available and not soft-limited for the model."""
        return rate_limits.get_preferred_accounts(
            self._accounts, model_id, self._soft_limit_threshold
        )

    def mark_soft_limited(
        self,
        email: str,
        model_id: str,
        remaining_fraction: float,
        reset_time: str | None = None,
    ) -> bool:
        marked = rate_limits.mark_soft_limited(
            self._accounts,
            email,
            model_id,
            remaining_fraction,
            reset_time,
            self._soft_limit_threshold,
        )
        if marked:
            self._request_save()
        return marked

    def clear_soft_limit(self, email: str, model_id: str) -> bool:
        cleared = rate_limits.clear_soft_limit(self._accounts, email, model_id)
        if cleared:
            self._request_save()
        return cleared

    def update_soft_limit_status(
        self,
        email: str,
        model_id: str,
        remaining_fraction: float | None,
        reset_time: str | None = None,
    ) -> SoftLimitUpdate:
        """Mark or clear the soft limit from a fresh quota reading.

        Saves only when the soft limit state changed.
        """
        result = rate_limits.update_soft_limit_status(
            self._accounts,
            email,
            model_id,
            remaining_fraction,
            reset_time,
            self._soft_limit_threshold,
        )
        if result.changed:
            self._request_save()
        return result

    async def check_soft_limit(
        self, account: Account, model_id: str, token: str
    ) -> quota.SoftLimitCheck:
        """Probe quota for an account and update its soft limit."""
        return await quota.check_and_update_soft_limit(
            account, model_id, token, self, client=self._client
        )

    # --- Credentials ---

    async def get_token_for_account(self, account: Account) -> str:
        """Get an access token for an account.

        Unusable credentials mark the account invalid before the error is raised.

        Raises:
            CredentialsError: If no token could be obtained
        """
        return await credentials.get_token_for_account(
            account,
            self._token_cache,
            self.mark_invalid,
            self._request_save,
            settings=self._config,
            client=self._client,
        )

    async def get_project_for_account(self, account: Account, token: str) -> str:
        return await credentials.get_project_for_account(
            account,
            token,
            self._project_cache,
            settings=self._config,
            client=self._client,
        )

    def clear_token_cache(self, email: str | None = None) -> None:
        credentials.clear_token_cache(self._token_cache, email)

    def clear_project_cache(self, email: str | None = None) -> None:
        credentials.clear_project_cache(self._project_cache, email)

    # --- Status ---

    def get_status(self) -> dict[str, Any]:
        """Get pool status for monitoring.

        Returns:
            Status dictionary with counts and per-account details, without
            any credentials
        """
        now = now_ms()
        available = self.get_available_accounts()
        invalid = self.get_invalid_accounts()
        rate_limited = [
            a
            for a in self._accounts
            if any(limit.is_active(now) for limit in a.model_rate_limits.values())
        ]
        soft_limited = [
            a
            for a in self._accounts
            if any(
                limit.is_soft_limited and not limit.is_expired(now)
                for limit in a.model_soft_limits.values()
            )
        ]

        return {
            "total": len(self._accounts),
            "available": len(available),
            "rate_limited": len(rate_limited),
            "soft_limited": len(soft_limited),
            "invalid": len(invalid),
            "soft_limit_enabled": self._soft_limit_enabled,
            "soft_limit_threshold": self._soft_limit_threshold,
            "summary": (
                f"{len(self._accounts)} total, {len(available)} available, "
                f"{len(rate_limited)} rate-limited, {len(soft_limited)} soft-limited, "
                f"{len(invalid)} invalid"
            ),
            "accounts": [self._get_account_status(a) for a in self._accounts],
        }

    def _get_account_status(self, account: Account) -> dict[str, Any]:
        """Get status for a single account."""
        return {
            "email": account.email,
            "source": account.source,
            "model_rate_limits": {
                model: limit.to_dict() for model, limit in account.model_rate_limits.items()
            },
            "model_soft_limits": {
                model: limit.to_dict() for model, limit in account.model_soft_limits.items()
            },
            "is_invalid": account.is_invalid,
            "invalid_reason": account.invalid_reason,
            "last_used": account.last_used,
        }
