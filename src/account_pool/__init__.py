"""Account pool - multi-account rotation with rate limit and quota tracking."""

from account_pool.accounts import Account, AccountSettings, AccountsFile
from account_pool.config import PoolSettings, configure_logging, get_settings
from account_pool.exceptions import (
    AccountPoolError,
    CredentialsError,
    InvalidCredentialsError,
    ProjectDiscoveryError,
    QuotaFetchError,
    StorageError,
    TokenRefreshError,
)
from account_pool.manager import AccountManager
from account_pool.selection import StickySelection
from account_pool.storage import AccountStore, JsonAccountStore


__version__ = "0.1.0"

__all__ = [
    "Account",
    "AccountManager",
    "AccountPoolError",
    "AccountSettings",
    "AccountStore",
    "AccountsFile",
    "CredentialsError",
    "InvalidCredentialsError",
    "JsonAccountStore",
    "PoolSettings",
    "ProjectDiscoveryError",
    "QuotaFetchError",
    "StickySelection",
    "StorageError",
    "TokenRefreshError",
    "__version__",
    "configure_logging",
    "get_settings",
]
