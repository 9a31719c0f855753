"""Account model for the rotation pool.

Accounts carry their credentials plus per-model limit state. Timestamps are
Unix milliseconds, matching the on-disk format.
"""

from dataclasses import dataclass, field
from datetime import UTC, datetime
from typing import Any

from structlog import get_logger


logger = get_logger(__name__)


def now_ms() -> int:
    """Current time as Unix timestamp in milliseconds."""
    return int(datetime.now(UTC).timestamp() * 1000)


@dataclass
class RateLimitState:
    """Hard rate limit for one model."""

    is_rate_limited: bool = False
    reset_time: int | None = None  # Unix timestamp ms when the limit lifts

    def is_active(self, now: int | None = None) -> bool:
        """Check if the limit is set and has not yet expired."""
        if not self.is_rate_limited or self.reset_time is None:
            return False
        return self.reset_time > (now if now is not None else now_ms())

    def to_dict(self) -> dict[str, Any]:
        return {"isRateLimited": self.is_rate_limited, "resetTime": self.reset_time}

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "RateLimitState":
        return cls(
            is_rate_limited=bool(data.get("isRateLimited", False)),
            reset_time=data.get("resetTime"),
        )


@dataclass
class SoftLimitState:
    """Proactive low-quota marker for one model."""

    remaining_fraction: float
    reset_time: int | None = None  # Unix timestamp ms when quota refills
    marked_at: int = field(default_factory=now_ms)
    is_soft_limited: bool = True

    def is_expired(self, now: int | None = None) -> bool:
        """Check if the quota window has reset since the marker was set."""
        if self.reset_time is None:
            return False
        return self.reset_time <= (now if now is not None else now_ms())

    def to_dict(self) -> dict[str, Any]:
        return {
            "isSoftLimited": self.is_soft_limited,
            "remainingFraction": self.remaining_fraction,
            "resetTime": self.reset_time,
            "markedAt": self.marked_at,
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "SoftLimitState":
        return cls(
            is_soft_limited=bool(data.get("isSoftLimited", True)),
            remaining_fraction=float(data.get("remainingFraction", 0.0)),
            reset_time=data.get("resetTime"),
            marked_at=data.get("markedAt") or now_ms(),
        )


@dataclass
class Account:
    """An upstream account in the rotation pool.

    Combines credentials with runtime limit state.
    """

    email: str
    source: str = "oauth"  # oauth, manual, database

    # Credentials (never included in status output)
    refresh_token: str | None = None
    api_key: str | None = None
    project_id: str | None = None
    added_at: int | None = None

    # Runtime state
    is_invalid: bool = False
    invalid_reason: str | None = None
    invalid_at: int | None = None
    model_rate_limits: dict[str, RateLimitState] = field(default_factory=dict)
    model_soft_limits: dict[str, SoftLimitState] = field(default_factory=dict)
    last_used: int | None = None

    def __post_init__(self) -> None:
        if not self.email:
            raise ValueError("Account email must not be empty")

    def is_rate_limited_for(self, model_id: str | None, now: int | None = None) -> bool:
        """Check if a hard limit is active for the model."""
        if not model_id:
            return False
        limit = self.model_rate_limits.get(model_id)
        return limit is not None and limit.is_active(now)

    def is_usable_for(self, model_id: str | None, now: int | None = None) -> bool:
        """Check if the account can serve a request for the model right now."""
        if self.is_invalid:
            return False
        return not self.is_rate_limited_for(model_id, now)

    def mark_used(self) -> None:
        """Record that this account was selected for a request."""
        self.last_used = now_ms()

    def to_dict(self) -> dict[str, Any]:
        """Convert to dictionary for JSON serialization."""
        return {
            "email": self.email,
            "source": self.source,
            "refreshToken": self.refresh_token,
            "apiKey": self.api_key,
            "projectId": self.project_id,
            "addedAt": self.added_at,
            "lastUsed": self.last_used,
            "isInvalid": self.is_invalid,
            "invalidReason": self.invalid_reason,
            "invalidAt": self.invalid_at,
            "modelRateLimits": {
                model: limit.to_dict() for model, limit in self.model_rate_limits.items()
            },
            "modelSoftLimits": {
                model: limit.to_dict() for model, limit in self.model_soft_limits.items()
            },
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "Account":
        """Create from dictionary loaded from JSON."""
        return cls(
            email=data["email"],
            source=data.get("source", "oauth"),
            refresh_token=data.get("refreshToken"),
            api_key=data.get("apiKey"),
            project_id=data.get("projectId"),
            added_at=data.get("addedAt"),
            last_used=data.get("lastUsed"),
            is_invalid=bool(data.get("isInvalid", False)),
            invalid_reason=data.get("invalidReason"),
            invalid_at=data.get("invalidAt"),
            model_rate_limits={
                model: RateLimitState.from_dict(limit)
                for model, limit in (data.get("modelRateLimits") or {}).items()
            },
            model_soft_limits={
                model: SoftLimitState.from_dict(limit)
                for model, limit in (data.get("modelSoftLimits") or {}).items()
            },
        )


@dataclass
class AccountSettings:
    """Pool settings persisted alongside the accounts."""

    cooldown_duration_ms: int | None = None
    extra: dict[str, Any] = field(default_factory=dict)  # Unknown keys, kept as-is

    def to_dict(self) -> dict[str, Any]:
        data = dict(self.extra)
        if self.cooldown_duration_ms is not None:
            data["cooldownDurationMs"] = self.cooldown_duration_ms
        return data

    @classmethod
    def from_dict(cls, data: dict[str, Any] | None) -> "AccountSettings":
        data = dict(data or {})
        cooldown = data.pop("cooldownDurationMs", None)
        return cls(cooldown_duration_ms=cooldown, extra=data)


@dataclass
class AccountsFile:
    """Represents the accounts.json file structure."""

    accounts: list[Account] = field(default_factory=list)
    settings: AccountSettings = field(default_factory=AccountSettings)
    active_index: int = 0

    def to_dict(self) -> dict[str, Any]:
        return {
            "accounts": [account.to_dict() for account in self.accounts],
            "settings": self.settings.to_dict(),
            "activeIndex": self.active_index,
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "AccountsFile":
        accounts = []
        for item in data.get("accounts") or []:
            try:
                accounts.append(Account.from_dict(item))
            except (AttributeError, KeyError, TypeError, ValueError) as e:
                logger.warning("invalid_account_skipped", error=str(e))

        active_index = data.get("activeIndex", 0)
        if not isinstance(active_index, int) or not 0 <= active_index < len(accounts):
            active_index = 0
        return cls(
            accounts=accounts,
            settings=AccountSettings.from_dict(data.get("settings")),
            active_index=active_index,
        )


@dataclass
class CachedToken:
    """Access token cached per account email."""

    token: str
    extracted_at: int = field(default_factory=now_ms)


TokenCache = dict[str, CachedToken]
