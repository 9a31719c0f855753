"""Exception hierarchy for the account pool.

Selection and limit tracking never raise: unknown accounts and exhaustion are
reported through return values. These exceptions cover the collaborators
(storage, credentials, quota probe). All are chained with ``from``.
"""

from typing import Any


class AccountPoolError(Exception):
    """Base exception for all account pool errors."""

    def __init__(self, message: str, *, details: dict[str, Any] | None = None) -> None:
        super().__init__(message)
        self.message = message
        self.details = details or {}


# ============================================================================
# Storage
# ============================================================================


class StorageError(AccountPoolError):
    """Accounts file could not be read or has an invalid structure."""


# ============================================================================
# Credentials
# ============================================================================


class CredentialsError(AccountPoolError):
    """Base exception for credential failures."""

    def __init__(
        self,
        message: str,
        *,
        email: str | None = None,
        details: dict[str, Any] | None = None,
    ) -> None:
        super().__init__(message, details=details)
        self.email = email


class TokenRefreshError(CredentialsError):
    """Access token could not be obtained (transient or configuration error)."""

    def __init__(
        self,
        message: str,
        *,
        email: str | None = None,
        status_code: int | None = None,
        response_text: str | None = None,
    ) -> None:
        super().__init__(
            message,
            email=email,
            details={"status_code": status_code} if status_code else None,
        )
        self.status_code = status_code
        self.response_text = response_text


class InvalidCredentialsError(CredentialsError):
    """Stored credentials are unusable and the account needs re-authentication."""


class ProjectDiscoveryError(CredentialsError):
    """Project id could not be resolved for an account."""


# ============================================================================
# Quota probe
# ============================================================================


class QuotaFetchError(AccountPoolError):
    """Model quotas could not be fetched from any endpoint."""
