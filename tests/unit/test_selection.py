"""Tests for round-robin and sticky account selection."""

from unittest.mock import MagicMock

import pytest

from account_pool import selection
from account_pool.accounts import Account, RateLimitState, SoftLimitState, now_ms
from account_pool.constants import MAX_WAIT_BEFORE_ERROR_MS


MODEL = "claude-sonnet-4-5"


def limit(account: Account, in_ms: int, model_id: str = MODEL) -> None:
    account.model_rate_limits[model_id] = RateLimitState(
        is_rate_limited=True, reset_time=now_ms() + in_ms
    )


def soft_limit(account: Account, model_id: str = MODEL) -> None:
    account.model_soft_limits[model_id] = SoftLimitState(remaining_fraction=0.05)


@pytest.mark.unit
class TestPickNext:
    """Test round-robin selection."""

    def test_skips_rate_limited_current_account(self, accounts: list[Account]) -> None:
        """Verifies: A limited for the model, cursor at A, B is picked."""
        limit(accounts[0], 1_000)
        on_save = MagicMock()

        result = selection.pick_next(accounts, 0, on_save, MODEL)

        assert result.account is accounts[1]
        assert result.new_index == 1
        on_save.assert_called_once()
        assert accounts[1].last_used is not None

    def test_scans_forward_from_cursor(self, accounts: list[Account]) -> None:
        result = selection.pick_next(accounts, 1, None, MODEL)

        assert result.account is accounts[2]
        assert result.new_index == 2

    def test_wraps_around(self, accounts: list[Account]) -> None:
        result = selection.pick_next(accounts, 2, None, MODEL)

        assert result.account is accounts[0]
        assert result.new_index == 0

    def test_returns_current_when_only_it_is_available(
        self, accounts: list[Account]
    ) -> None:
        accounts[1].is_invalid = True
        limit(accounts[2], 60_000)

        result = selection.pick_next(accounts, 0, None, MODEL)

        assert result.account is accounts[0]
        assert result.new_index == 0

    def test_full_cycle_visits_each_account_once(self) -> None:
        """Verifies: N picks from the cursor visit every account once, in order."""
        accounts = [Account(email=f"{name}@example.com") for name in "abcd"]
        on_save = MagicMock()
        index = 0
        picked: list[int] = []

        for _ in accounts:
            result = selection.pick_next(accounts, index, on_save, MODEL)
            index = result.new_index
            picked.append(index)

        assert picked == [1, 2, 3, 0]
        assert on_save.call_count == len(accounts)
        assert all(account.last_used is not None for account in accounts)

    def test_single_available_account_selected_once_per_call(self) -> None:
        """Verifies: one available account out of four is stamped once per pick."""
        accounts = [Account(email=f"{name}@example.com") for name in "abcd"]
        accounts[0].is_invalid = True
        limit(accounts[1], 60_000)
        limit(accounts[3], 60_000)
        on_save = MagicMock()

        for cursor in range(len(accounts)):
            on_save.reset_mock()

            result = selection.pick_next(accounts, cursor, on_save, MODEL)

            assert result.account is accounts[2]
            assert result.new_index == 2
            on_save.assert_called_once()

        assert [a.last_used is not None for a in accounts] == [False, False, True, False]

    def test_all_soft_limited_falls_back_to_available(
        self, accounts: list[Account]
    ) -> None:
        """Verifies: soft limits are a preference, never an exclusion."""
        for account in accounts:
            soft_limit(account)

        result = selection.pick_next(accounts, 0, None, MODEL, soft_limit_enabled=True)

        assert result.account is accounts[1]
        assert result.new_index == 1

    def test_prefers_account_with_headroom(self, accounts: list[Account]) -> None:
        soft_limit(accounts[1])

        result = selection.pick_next(accounts, 0, None, MODEL)

        assert result.account is accounts[2]

    def test_soft_limits_ignored_when_disabled(self, accounts: list[Account]) -> None:
        soft_limit(accounts[1])

        result = selection.pick_next(accounts, 0, None, MODEL, soft_limit_enabled=False)

        assert result.account is accounts[1]

    def test_none_when_exhausted(self, accounts: list[Account]) -> None:
        on_save = MagicMock()
        accounts[0].is_invalid = True
        limit(accounts[1], 60_000)
        limit(accounts[2], 60_000)

        result = selection.pick_next(accounts, 1, on_save, MODEL)

        assert result.account is None
        assert result.new_index == 1
        on_save.assert_not_called()

    def test_never_returns_unusable_accounts(self, accounts: list[Account]) -> None:
        accounts[0].is_invalid = True
        limit(accounts[1], 60_000)

        for start in range(len(accounts)):
            result = selection.pick_next(accounts, start, None, MODEL)
            assert result.account is accounts[2]

    def test_sweeps_expired_limits(self, accounts: list[Account]) -> None:
        limit(accounts[1], -1)

        selection.pick_next(accounts, 0, None, MODEL)

        assert accounts[1].model_rate_limits[MODEL].is_rate_limited is False

    def test_out_of_range_cursor_is_clamped(self, accounts: list[Account]) -> None:
        result = selection.pick_next(accounts, 7, None, MODEL)

        assert result.account is accounts[1]

    def test_empty_pool(self) -> None:
        result = selection.pick_next([], 0, None, MODEL)

        assert result.account is None
        assert result.new_index == 0


@pytest.mark.unit
class TestStickyRead:
    """Test reading the account at the cursor."""

    def test_returns_current_account(self, accounts: list[Account]) -> None:
        on_save = MagicMock()

        result = selection.get_current_sticky_account(accounts, 1, on_save, MODEL)

        assert result.account is accounts[1]
        assert result.is_soft_limited is False
        on_save.assert_called_once()

    def test_reports_soft_limit(self, accounts: list[Account]) -> None:
        soft_limit(accounts[0])

        result = selection.get_current_sticky_account(accounts, 0, None, MODEL)

        assert result.account is accounts[0]
        assert result.is_soft_limited is True

    def test_limited_current_account(self, accounts: list[Account]) -> None:
        limit(accounts[0], 60_000)

        result = selection.get_current_sticky_account(accounts, 0, None, MODEL)

        assert result.account is None
        assert result.new_index == 0

    def test_clamps_cursor(self, accounts: list[Account]) -> None:
        result = selection.get_current_sticky_account(accounts, -3, None, MODEL)

        assert result.account is accounts[0]
        assert result.new_index == 0


@pytest.mark.unit
class TestWaitDecision:
    """Test the short wait recommendation."""

    def test_short_wait(self, accounts: list[Account]) -> None:
        limit(accounts[0], 5_000)

        decision = selection.should_wait_for_current_account(accounts, 0, MODEL)

        assert decision.should_wait is True
        assert 4_900 <= decision.wait_ms <= 5_000
        assert decision.account is accounts[0]

    def test_wait_too_long(self, accounts: list[Account]) -> None:
        limit(accounts[0], MAX_WAIT_BEFORE_ERROR_MS + 60_000)

        decision = selection.should_wait_for_current_account(accounts, 0, MODEL)

        assert decision.should_wait is False
        assert decision.wait_ms == 0

    def test_custom_ceiling(self, accounts: list[Account]) -> None:
        limit(accounts[0], 5_000)

        decision = selection.should_wait_for_current_account(
            accounts, 0, MODEL, max_wait_ms=1_000
        )

        assert decision.should_wait is False

    def test_not_limited(self, accounts: list[Account]) -> None:
        decision = selection.should_wait_for_current_account(accounts, 0, MODEL)

        assert decision.should_wait is False

    def test_invalid_account(self, accounts: list[Account]) -> None:
        accounts[0].is_invalid = True
        limit(accounts[0], 5_000)

        decision = selection.should_wait_for_current_account(accounts, 0, MODEL)

        assert decision.should_wait is False
        assert decision.account is None


@pytest.mark.unit
class TestPickStickyAccount:
    """Test the composite sticky policy."""

    def test_keeps_sticky_account(self, accounts: list[Account]) -> None:
        result = selection.pick_sticky_account(accounts, 1, None, MODEL)

        assert result.account is accounts[1]
        assert result.new_index == 1
        assert result.should_wait is False

    def test_leaves_soft_limited_account_for_preferred(
        self, accounts: list[Account]
    ) -> None:
        soft_limit(accounts[0])
        soft_limit(accounts[1])

        result = selection.pick_sticky_account(accounts, 0, None, MODEL)

        assert result.account is accounts[2]
        assert result.new_index == 2

    def test_keeps_soft_limited_account_without_alternative(
        self, accounts: list[Account]
    ) -> None:
        for account in accounts:
            soft_limit(account)

        result = selection.pick_sticky_account(accounts, 0, None, MODEL)

        assert result.account is accounts[0]
        assert result.new_index == 0

    def test_keeps_soft_limited_account_when_disabled(
        self, accounts: list[Account]
    ) -> None:
        soft_limit(accounts[0])

        result = selection.pick_sticky_account(
            accounts, 0, None, MODEL, soft_limit_enabled=False
        )

        assert result.account is accounts[0]

    def test_switches_immediately_when_other_available(
        self, accounts: list[Account]
    ) -> None:
        """Verifies: a short wait does not beat an available alternative."""
        limit(accounts[0], 5_000)

        result = selection.pick_sticky_account(accounts, 0, None, MODEL)

        assert result.account is accounts[1]
        assert result.wait_ms == 0
        assert result.new_index == 1

    def test_waits_for_short_limit(self, accounts: list[Account]) -> None:
        """Verifies: only A is left and its limit lifts within the ceiling."""
        limit(accounts[0], 5_000)
        accounts[1].is_invalid = True
        accounts[2].is_invalid = True

        result = selection.pick_sticky_account(accounts, 0, None, MODEL)

        assert result.account is None
        assert result.should_wait is True
        assert 4_900 <= result.wait_ms <= 5_000
        assert result.new_index == 0

    def test_gives_up_on_long_limit(self, accounts: list[Account]) -> None:
        limit(accounts[0], MAX_WAIT_BEFORE_ERROR_MS + 60_000)
        accounts[1].is_invalid = True
        accounts[2].is_invalid = True

        result = selection.pick_sticky_account(accounts, 0, None, MODEL)

        assert result.account is None
        assert result.wait_ms == 0
        assert result.should_wait is False

    def test_invalid_sticky_account(self, accounts: list[Account]) -> None:
        accounts[0].is_invalid = True

        result = selection.pick_sticky_account(accounts, 0, None, MODEL)

        assert result.account is accounts[1]
