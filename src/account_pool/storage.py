"""Account persistence.

Loads and saves the account list, settings and cursor from a JSON file, and
falls back to the desktop client's state database when no accounts are
configured.
"""

import asyncio
import sqlite3
from contextlib import closing
from pathlib import Path
from typing import Protocol

import orjson
from structlog import get_logger

from account_pool.accounts import (
    Account,
    AccountSettings,
    AccountsFile,
    CachedToken,
    TokenCache,
    now_ms,
)
from account_pool.constants import (
    DEFAULT_ACCOUNT_DB_KEY,
    DEFAULT_ACCOUNT_DB_PATH,
    DEFAULT_ACCOUNTS_PATH,
)
from account_pool.exceptions import StorageError


logger = get_logger(__name__)


class AccountStore(Protocol):
    """Persistence port used by the account manager."""

    async def load(self) -> AccountsFile:
        """Load accounts, settings and cursor."""
        ...

    async def save(
        self,
        accounts: list[Account],
        settings: AccountSettings,
        active_index: int,
    ) -> bool:
        """Persist accounts, settings and cursor. Returns True on success."""
        ...

    def load_default(self) -> tuple[list[Account], TokenCache]:
        """Accounts to use when none are configured, with primed tokens."""
        ...


def load_accounts(path: Path | None = None) -> AccountsFile:
    """Load accounts from JSON file.

    A missing file yields an empty AccountsFile.

    Raises:
        StorageError: If the file cannot be read or has an invalid structure
    """
    path = Path(path or DEFAULT_ACCOUNTS_PATH).expanduser()

    if not path.exists():
        logger.info("accounts_file_not_found", path=str(path))
        return AccountsFile()

    try:
        data = orjson.loads(path.read_bytes())
    except OSError as e:
        raise StorageError(f"Cannot read accounts file: {path}") from e
    except orjson.JSONDecodeError as e:
        raise StorageError(f"Invalid JSON in accounts file: {path}") from e

    if not isinstance(data, dict):
        raise StorageError(
            f"Invalid accounts file format: expected object, got {type(data).__name__}"
        )

    try:
        accounts_file = AccountsFile.from_dict(data)
    except (AttributeError, TypeError, ValueError) as e:
        raise StorageError(f"Invalid accounts file structure: {path}") from e
    logger.info(
        "accounts_loaded",
        path=str(path),
        count=len(accounts_file.accounts),
        active_index=accounts_file.active_index,
    )
    return accounts_file


def save_accounts(accounts_file: AccountsFile, path: Path | None = None) -> bool:
    """Save accounts to JSON file.

    Returns:
        True if saved successfully
    """
    path = Path(path or DEFAULT_ACCOUNTS_PATH).expanduser()

    try:
        path.parent.mkdir(parents=True, exist_ok=True)
        # Write to temp file first, then rename for atomicity
        temp_path = path.with_suffix(".json.tmp")
        temp_path.write_bytes(
            orjson.dumps(accounts_file.to_dict(), option=orjson.OPT_INDENT_2)
        )
        temp_path.replace(path)
    except OSError as e:
        logger.error("accounts_save_failed", path=str(path), error=str(e))
        return False

    logger.debug("accounts_saved", path=str(path), count=len(accounts_file.accounts))
    return True


def load_default_account(
    db_path: Path | None = None,
) -> tuple[list[Account], TokenCache]:
    """Load the signed-in account from the desktop client's state database.

    The database stores a JSON auth record under a fixed key. Its API key is
    used directly as the access token.

    Returns:
        One-element account list and a token cache primed with its key,
        or two empty containers if nothing usable was found
    """
    db_path = Path(db_path or DEFAULT_ACCOUNT_DB_PATH).expanduser()
    if not db_path.exists():
        logger.warning("default_account_db_not_found", path=str(db_path))
        return [], {}

    try:
        with closing(sqlite3.connect(f"file:{db_path}?mode=ro", uri=True)) as conn:
            row = conn.execute(
                "SELECT value FROM ItemTable WHERE key = ?",
                (DEFAULT_ACCOUNT_DB_KEY,),
            ).fetchone()
    except sqlite3.Error as e:
        logger.warning("default_account_db_unreadable", path=str(db_path), error=str(e))
        return [], {}

    if row is None:
        logger.warning("default_account_not_signed_in", path=str(db_path))
        return [], {}

    try:
        auth = orjson.loads(row[0])
    except orjson.JSONDecodeError:
        logger.warning("default_account_record_invalid", path=str(db_path))
        return [], {}

    api_key = auth.get("apiKey") if isinstance(auth, dict) else None
    if not api_key:
        logger.warning("default_account_missing_api_key", path=str(db_path))
        return [], {}

    email = auth.get("email") or "default"
    account = Account(email=email, source="database", added_at=now_ms())
    logger.info("default_account_loaded", account=email)
    return [account], {email: CachedToken(token=api_key)}


class JsonAccountStore:
    """Account store backed by a JSON file."""

    def __init__(
        self,
        path: Path | None = None,
        default_db_path: Path | None = None,
    ) -> None:
        self._path = Path(path or DEFAULT_ACCOUNTS_PATH).expanduser()
        self._default_db_path = default_db_path
        self._write_lock = asyncio.Lock()

    @property
    def path(self) -> Path:
        """Get the accounts file path."""
        return self._path

    async def load(self) -> AccountsFile:
        return await asyncio.to_thread(load_accounts, self._path)

    async def save(
        self,
        accounts: list[Account],
        settings: AccountSettings,
        active_index: int,
    ) -> bool:
        # Snapshot must be taken on the event loop thread
        snapshot = AccountsFile(
            accounts=[Account.from_dict(a.to_dict()) for a in accounts],
            settings=AccountSettings.from_dict(settings.to_dict()),
            active_index=active_index,
        )
        async with self._write_lock:
            return await asyncio.to_thread(save_accounts, snapshot, self._path)

    def load_default(self) -> tuple[list[Account], TokenCache]:
        return load_default_account(self._default_db_path)
