"""Shared fixtures for account pool unit tests."""

from pathlib import Path

import pytest

from account_pool.accounts import Account
from account_pool.config import PoolSettings


@pytest.fixture
def accounts() -> list[Account]:
    """Three healthy accounts A, B, C in selection order."""
    return [
        Account(email="a@example.com", refresh_token="refresh-a"),
        Account(email="b@example.com", refresh_token="refresh-b"),
        Account(email="c@example.com", refresh_token="refresh-c"),
    ]


@pytest.fixture
def pool_settings(tmp_path: Path) -> PoolSettings:
    """Settings pointing at temporary paths, with OAuth client configured."""
    return PoolSettings(
        accounts_path=tmp_path / "accounts.json",
        default_account_db_path=tmp_path / "state.vscdb",
        cloudcode_endpoints=["https://daily.example.test", "https://prod.example.test"],
        oauth_token_url="https://oauth.example.test/token",
        oauth_client_id="client-id",
        oauth_client_secret="client-secret",
    )
