"""Model quota probe for Cloud Code accounts.

Fetches the remaining quota fraction per model and feeds it into the soft
limit tracker, so that accounts running low are de-prioritized before their
quota is exhausted.

Example:
    >>> quotas = await get_model_quotas(token)
    >>> quotas["claude-sonnet-4-5"].remaining_fraction
    0.42
"""

from __future__ import annotations

from dataclasses import dataclass
from datetime import UTC, datetime
from typing import TYPE_CHECKING, Any

import httpx
from structlog import get_logger
from tenacity import (
    AsyncRetrying,
    RetryCallState,
    retry_if_exception_type,
    stop_after_attempt,
    wait_fixed,
)

from account_pool.config import PoolSettings, get_settings
from account_pool.constants import SUPPORTED_MODEL_FAMILIES
from account_pool.exceptions import QuotaFetchError
from account_pool.http import (
    TRANSIENT_STATUS_CODES,
    TransientHTTPError,
    cloudcode_headers,
    open_client,
)


if TYPE_CHECKING:
    from account_pool.accounts import Account
    from account_pool.manager import AccountManager


logger = get_logger(__name__)

MAX_ATTEMPTS_PER_ENDPOINT = 2


@dataclass(frozen=True)
class ModelQuota:
    """Quota reading for one model."""

    remaining_fraction: float | None
    reset_time: str | None  # ISO8601


@dataclass(frozen=True)
class SoftLimitCheck:
    """Outcome of a post-request quota check."""

    checked: bool
    is_soft_limited: bool
    remaining_fraction: float | None = None


def get_model_family(model_id: str) -> str | None:
    """Get the model family (claude, gemini) from a model id."""
    lowered = model_id.lower()
    for family in SUPPORTED_MODEL_FAMILIES:
        if family in lowered:
            return family
    return None


def is_supported_model(model_id: str) -> bool:
    """Check if the pool serves this model."""
    return get_model_family(model_id) is not None


def _log_quota_retry(retry_state: RetryCallState, url: str) -> None:
    logger.warning(
        "fetch_available_models_retry",
        url=url,
        attempt=retry_state.attempt_number,
        error=str(retry_state.outcome.exception()) if retry_state.outcome else None,
    )


async def _fetch_from_endpoint(
    http: httpx.AsyncClient,
    url: str,
    headers: dict[str, str],
) -> dict[str, Any]:
    async for attempt in AsyncRetrying(
        wait=wait_fixed(1),
        stop=stop_after_attempt(MAX_ATTEMPTS_PER_ENDPOINT),
        retry=retry_if_exception_type(TransientHTTPError),
        before_sleep=lambda rs: _log_quota_retry(rs, url),
        reraise=True,
    ):
        with attempt:
            response = await http.post(url, headers=headers, json={})
            if response.status_code in TRANSIENT_STATUS_CODES:
                raise TransientHTTPError(response.status_code, response.text[:200])
            response.raise_for_status()
            data = response.json()
            if not isinstance(data, dict):
                raise ValueError("Unexpected response body")
            return data


async def fetch_available_models(
    token: str,
    *,
    settings: PoolSettings | None = None,
    client: httpx.AsyncClient | None = None,
) -> dict[str, Any]:
    """Fetch available models with quota info, trying each endpoint in order.

    Raises:
        QuotaFetchError: If every endpoint failed
    """
    settings = settings or get_settings()
    headers = cloudcode_headers(token, settings.user_agent)
    errors: dict[str, str] = {}

    async with open_client(client, settings.http_timeout_seconds) as http:
        for endpoint in settings.cloudcode_endpoints:
            url = f"{endpoint}/v1internal:fetchAvailableModels"
            try:
                return await _fetch_from_endpoint(http, url, headers)
            except (
                httpx.RequestError,
                httpx.HTTPStatusError,
                TransientHTTPError,
                ValueError,
            ) as e:
                errors[endpoint] = str(e)
                logger.warning(
                    "fetch_available_models_failed",
                    endpoint=endpoint,
                    error=str(e),
                )

    raise QuotaFetchError(
        "Failed to fetch available models from all endpoints",
        details={"errors": errors},
    )


async def get_model_quotas(
    token: str,
    *,
    settings: PoolSettings | None = None,
    client: httpx.AsyncClient | None = None,
) -> dict[str, ModelQuota]:
    """Get remaining quota and reset time for each supported model.

    Malformed model entries are skipped with a warning.
    """
    data = await fetch_available_models(token, settings=settings, client=client)
    models = data.get("models") or {}
    if not isinstance(models, dict):
        logger.warning("model_quotas_malformed", models_type=type(models).__name__)
        return {}

    quotas: dict[str, ModelQuota] = {}
    for model_id, model_data in models.items():
        if not is_supported_model(model_id) or not isinstance(model_data, dict):
            continue
        quota_info = model_data.get("quotaInfo")
        if not quota_info:
            continue
        if not isinstance(quota_info, dict):
            logger.warning("model_quota_malformed", model=model_id, quota_info=quota_info)
            continue
        fraction = quota_info.get("remainingFraction")
        try:
            remaining = float(fraction) if fraction is not None else None
        except (TypeError, ValueError):
            logger.warning("model_quota_malformed", model=model_id, remaining_fraction=fraction)
            continue
        reset_time = quota_info.get("resetTime")
        quotas[model_id] = ModelQuota(
            remaining_fraction=remaining,
            reset_time=reset_time if isinstance(reset_time, str) else None,
        )
    return quotas


async def list_models(
    token: str,
    *,
    settings: PoolSettings | None = None,
    client: httpx.AsyncClient | None = None,
) -> dict[str, Any]:
    """List supported models in Anthropic list format."""
    data = await fetch_available_models(token, settings=settings, client=client)
    created = int(datetime.now(UTC).timestamp())

    return {
        "object": "list",
        "data": [
            {
                "id": model_id,
                "object": "model",
                "created": created,
                "owned_by": "anthropic",
                "description": (
                    model_data.get("displayName") if isinstance(model_data, dict) else None
                )
                or model_id,
            }
            for model_id, model_data in (data.get("models") or {}).items()
            if is_supported_model(model_id)
        ],
    }


async def check_and_update_soft_limit(
    account: Account,
    model_id: str,
    token: str,
    manager: AccountManager,
    *,
    client: httpx.AsyncClient | None = None,
) -> SoftLimitCheck:
    """Refresh the soft limit for an account after a request.

    A failed quota fetch is logged and leaves the soft limit untouched.
    """
    if not manager.is_soft_limit_enabled():
        return SoftLimitCheck(checked=False, is_soft_limited=False)

    try:
        quotas = await get_model_quotas(token, settings=manager.config, client=client)
    except QuotaFetchError as e:
        logger.debug(
            "soft_limit_quota_check_failed",
            account=account.email,
            model=model_id,
            error=e.message,
        )
        return SoftLimitCheck(checked=False, is_soft_limited=False)

    quota = quotas.get(model_id)
    if quota is None or quota.remaining_fraction is None:
        return SoftLimitCheck(checked=True, is_soft_limited=False)

    result = manager.update_soft_limit_status(
        account.email, model_id, quota.remaining_fraction, quota.reset_time
    )
    if result.changed:
        logger.info(
            "soft_limit_status_changed",
            account=account.email,
            model=model_id,
            is_soft_limited=result.is_soft_limited,
            remaining_pct=round(quota.remaining_fraction * 100),
        )

    return SoftLimitCheck(
        checked=True,
        is_soft_limited=result.is_soft_limited,
        remaining_fraction=quota.remaining_fraction,
    )
