"""Tests for account persistence and the default account fallback."""

import sqlite3
from pathlib import Path

import orjson
import pytest

from account_pool.accounts import (
    Account,
    AccountSettings,
    AccountsFile,
    RateLimitState,
    SoftLimitState,
)
from account_pool.exceptions import StorageError
from account_pool.storage import (
    JsonAccountStore,
    load_accounts,
    load_default_account,
    save_accounts,
)


def write_state_db(path: Path, value: bytes | None) -> None:
    with sqlite3.connect(path) as conn:
        conn.execute("CREATE TABLE ItemTable (key TEXT PRIMARY KEY, value BLOB)")
        if value is not None:
            conn.execute(
                "INSERT INTO ItemTable (key, value) VALUES (?, ?)",
                ("antigravityAuthStatus", value),
            )
    conn.close()


@pytest.mark.unit
class TestLoadAccounts:
    """Test loading the accounts file."""

    def test_missing_file_is_empty(self, tmp_path: Path) -> None:
        accounts_file = load_accounts(tmp_path / "missing.json")

        assert accounts_file.accounts == []
        assert accounts_file.active_index == 0

    def test_loads_accounts_and_limits(self, tmp_path: Path) -> None:
        path = tmp_path / "accounts.json"
        path.write_bytes(
            orjson.dumps(
                {
                    "accounts": [
                        {
                            "email": "a@example.com",
                            "refreshToken": "refresh-a",
                            "modelRateLimits": {
                                "claude-sonnet-4-5": {
                                    "isRateLimited": True,
                                    "resetTime": 1_900_000_000_000,
                                }
                            },
                        },
                        {"email": "b@example.com", "isInvalid": True},
                    ],
                    "settings": {"cooldownDurationMs": 30_000, "theme": "dark"},
                    "activeIndex": 1,
                }
            )
        )

        accounts_file = load_accounts(path)

        assert [a.email for a in accounts_file.accounts] == ["a@example.com", "b@example.com"]
        limit = accounts_file.accounts[0].model_rate_limits["claude-sonnet-4-5"]
        assert limit.reset_time == 1_900_000_000_000
        assert accounts_file.accounts[1].is_invalid is True
        assert accounts_file.settings.cooldown_duration_ms == 30_000
        assert accounts_file.settings.extra == {"theme": "dark"}
        assert accounts_file.active_index == 1

    def test_skips_invalid_entries_and_clamps_index(self, tmp_path: Path) -> None:
        path = tmp_path / "accounts.json"
        path.write_bytes(
            orjson.dumps(
                {
                    "accounts": [{"email": "a@example.com"}, {"refreshToken": "orphan"}],
                    "activeIndex": 5,
                }
            )
        )

        accounts_file = load_accounts(path)

        assert [a.email for a in accounts_file.accounts] == ["a@example.com"]
        assert accounts_file.active_index == 0

    @pytest.mark.parametrize(
        "limits",
        [
            {"modelRateLimits": ["claude-sonnet-4-5"]},
            {"modelSoftLimits": "claude-sonnet-4-5"},
            {"modelRateLimits": {"claude-sonnet-4-5": "limited"}},
        ],
    )
    def test_skips_account_with_malformed_limits(
        self, tmp_path: Path, limits: dict[str, object]
    ) -> None:
        path = tmp_path / "accounts.json"
        path.write_bytes(
            orjson.dumps(
                {"accounts": [{"email": "a@example.com", **limits}, {"email": "b@example.com"}]}
            )
        )

        accounts_file = load_accounts(path)

        assert [a.email for a in accounts_file.accounts] == ["b@example.com"]

    def test_malformed_settings_raises(self, tmp_path: Path) -> None:
        path = tmp_path / "accounts.json"
        path.write_bytes(orjson.dumps({"accounts": [], "settings": [1, 2]}))

        with pytest.raises(StorageError, match="Invalid accounts file structure"):
            load_accounts(path)

    def test_invalid_json_raises(self, tmp_path: Path) -> None:
        path = tmp_path / "accounts.json"
        path.write_text("{not json")

        with pytest.raises(StorageError, match="Invalid JSON"):
            load_accounts(path)

    def test_non_object_raises(self, tmp_path: Path) -> None:
        path = tmp_path / "accounts.json"
        path.write_text("[]")

        with pytest.raises(StorageError, match="expected object"):
            load_accounts(path)


@pytest.mark.unit
class TestSaveAccounts:
    """Test writing the accounts file."""

    def test_save_and_reload(self, tmp_path: Path) -> None:
        path = tmp_path / "nested" / "accounts.json"
        account = Account(email="a@example.com", refresh_token="refresh-a")
        account.model_rate_limits["m"] = RateLimitState(True, 1_900_000_000_000)
        account.model_soft_limits["m"] = SoftLimitState(
            remaining_fraction=0.1, reset_time=1_900_000_000_000, marked_at=1
        )
        accounts_file = AccountsFile(
            accounts=[account],
            settings=AccountSettings(cooldown_duration_ms=10_000, extra={"x": 1}),
            active_index=0,
        )

        assert save_accounts(accounts_file, path) is True

        assert not path.with_suffix(".json.tmp").exists()
        data = orjson.loads(path.read_bytes())
        assert data["settings"] == {"x": 1, "cooldownDurationMs": 10_000}
        assert data["accounts"][0]["modelSoftLimits"]["m"]["remainingFraction"] == 0.1

        reloaded = load_accounts(path)
        assert reloaded.accounts[0] == account

    def test_save_failure_returns_false(self, tmp_path: Path) -> None:
        blocker = tmp_path / "blocker"
        blocker.write_text("")

        assert save_accounts(AccountsFile(), blocker / "accounts.json") is False


@pytest.mark.unit
class TestDefaultAccount:
    """Test the desktop client database fallback."""

    def test_loads_signed_in_account(self, tmp_path: Path) -> None:
        db_path = tmp_path / "state.vscdb"
        write_state_db(
            db_path, orjson.dumps({"email": "me@example.com", "apiKey": "ya29.key"})
        )

        accounts, tokens = load_default_account(db_path)

        assert len(accounts) == 1
        assert accounts[0].email == "me@example.com"
        assert accounts[0].source == "database"
        assert tokens["me@example.com"].token == "ya29.key"

    def test_missing_database(self, tmp_path: Path) -> None:
        assert load_default_account(tmp_path / "missing.vscdb") == ([], {})

    def test_not_signed_in(self, tmp_path: Path) -> None:
        db_path = tmp_path / "state.vscdb"
        write_state_db(db_path, None)

        assert load_default_account(db_path) == ([], {})

    def test_record_without_api_key(self, tmp_path: Path) -> None:
        db_path = tmp_path / "state.vscdb"
        write_state_db(db_path, orjson.dumps({"email": "me@example.com"}))

        assert load_default_account(db_path) == ([], {})


@pytest.mark.unit
class TestJsonAccountStore:
    """Test the async store adapter."""

    async def test_round_trip(self, tmp_path: Path) -> None:
        store = JsonAccountStore(tmp_path / "accounts.json")
        accounts = [Account(email="a@example.com"), Account(email="b@example.com")]

        assert await store.save(accounts, AccountSettings(), 1) is True
        loaded = await store.load()

        assert [a.email for a in loaded.accounts] == ["a@example.com", "b@example.com"]
        assert loaded.active_index == 1

    def test_load_default_uses_configured_db(self, tmp_path: Path) -> None:
        db_path = tmp_path / "state.vscdb"
        write_state_db(db_path, orjson.dumps({"apiKey": "ya29.key"}))
        store = JsonAccountStore(tmp_path / "accounts.json", db_path)

        accounts, tokens = store.load_default()

        assert accounts[0].email == "default"
        assert tokens["default"].token == "ya29.key"
