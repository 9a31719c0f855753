"""Access tokens and project ids for pool accounts.

Tokens are cached per account email for TOKEN_REFRESH_INTERVAL_MS. OAuth
accounts exchange their refresh token for a new access token; an
``invalid_grant`` answer means the account needs re-authentication and is
reported through the ``on_invalid`` callback.
"""

from collections.abc import Callable
from typing import Any

import httpx
import orjson
from structlog import get_logger
from tenacity import (
    AsyncRetrying,
    RetryError,
    retry_if_exception_type,
    stop_after_attempt,
    wait_exponential,
)

from account_pool.accounts import Account, CachedToken, TokenCache, now_ms
from account_pool.config import PoolSettings, get_settings
from account_pool.constants import TOKEN_REFRESH_INTERVAL_MS
from account_pool.exceptions import (
    InvalidCredentialsError,
    ProjectDiscoveryError,
    TokenRefreshError,
)
from account_pool.http import (
    TRANSIENT_STATUS_CODES,
    TransientHTTPError,
    cloudcode_headers,
    open_client,
)
from account_pool.storage import load_default_account


logger = get_logger(__name__)

MAX_REFRESH_ATTEMPTS = 3

OnInvalid = Callable[[str, str], None]
OnSave = Callable[[], None]


async def refresh_access_token(
    refresh_token: str,
    *,
    settings: PoolSettings | None = None,
    client: httpx.AsyncClient | None = None,
) -> dict[str, Any]:
    """Exchange a refresh token for a new access token.

    Transient failures (network errors, 5xx) are retried with exponential
    backoff.

    Returns:
        Token endpoint response (access_token, expires_in, optional refresh_token)

    Raises:
        InvalidCredentialsError: If the refresh token was rejected
        TokenRefreshError: For any other failure
    """
    settings = settings or get_settings()
    if not settings.oauth_client_id or not settings.oauth_client_secret:
        raise TokenRefreshError("OAuth client id and secret are not configured")

    form = {
        "client_id": settings.oauth_client_id,
        "client_secret": settings.oauth_client_secret,
        "refresh_token": refresh_token,
        "grant_type": "refresh_token",
    }

    async with open_client(client, settings.http_timeout_seconds) as http:
        try:
            async for attempt in AsyncRetrying(
                wait=wait_exponential(multiplier=1, min=1, max=10),
                stop=stop_after_attempt(MAX_REFRESH_ATTEMPTS),
                retry=retry_if_exception_type((httpx.TransportError, TransientHTTPError)),
                reraise=True,
            ):
                with attempt:
                    response = await http.post(settings.oauth_token_url, data=form)
                    if response.status_code in TRANSIENT_STATUS_CODES:
                        raise TransientHTTPError(response.status_code, response.text)
        except (httpx.TransportError, TransientHTTPError, RetryError) as e:
            raise TokenRefreshError(f"Token refresh failed: {e}") from e

    if response.status_code in (400, 401):
        text = response.text[:500]
        if "invalid_grant" in text.lower():
            raise InvalidCredentialsError(
                "Refresh token was rejected (invalid_grant)",
                details={"status_code": response.status_code},
            )
        raise TokenRefreshError(
            "Token refresh rejected",
            status_code=response.status_code,
            response_text=text,
        )
    if response.status_code >= 400:
        raise TokenRefreshError(
            f"Token refresh failed: HTTP {response.status_code}",
            status_code=response.status_code,
            response_text=response.text[:500],
        )

    try:
        data = response.json()
    except ValueError as e:
        raise TokenRefreshError("Token endpoint returned invalid JSON") from e

    if not data.get("access_token"):
        raise TokenRefreshError("No access_token in refresh response")
    return data


async def _fetch_token(
    account: Account,
    on_save: OnSave | None,
    settings: PoolSettings,
    client: httpx.AsyncClient | None,
) -> str:
    if account.source == "database":
        _, tokens = load_default_account(settings.default_account_db_path)
        cached = tokens.get(account.email) or next(iter(tokens.values()), None)
        if cached is None:
            raise InvalidCredentialsError(
                "Desktop client is not signed in", email=account.email
            )
        return cached.token

    if account.api_key:
        return account.api_key

    if not account.refresh_token:
        raise InvalidCredentialsError(
            "Account has no refresh token or API key", email=account.email
        )

    data = await refresh_access_token(
        account.refresh_token, settings=settings, client=client
    )
    new_refresh_token = data.get("refresh_token")
    if new_refresh_token and new_refresh_token != account.refresh_token:
        account.refresh_token = new_refresh_token
        if on_save is not None:
            on_save()

    logger.info(
        "token_refreshed",
        account=account.email,
        expires_in=data.get("expires_in"),
    )
    return data["access_token"]


async def get_token_for_account(
    account: Account,
    token_cache: TokenCache,
    on_invalid: OnInvalid | None = None,
    on_save: OnSave | None = None,
    *,
    settings: PoolSettings | None = None,
    client: httpx.AsyncClient | None = None,
) -> str:
    """Get an access token for an account, using the cache when fresh.

    Args:
        account: Account to authenticate
        token_cache: Per-email token cache (updated in place)
        on_invalid: Called with (email, reason) when credentials are unusable
        on_save: Called when account credentials changed and should be persisted
        settings: Pool settings
        client: Optional shared HTTP client

    Returns:
        Access token

    Raises:
        InvalidCredentialsError: Credentials are unusable (after on_invalid)
        TokenRefreshError: Token could not be obtained right now
    """
    cached = token_cache.get(account.email)
    if cached is not None and now_ms() - cached.extracted_at < TOKEN_REFRESH_INTERVAL_MS:
        return cached.token

    settings = settings or get_settings()
    try:
        token = await _fetch_token(account, on_save, settings, client)
    except InvalidCredentialsError as e:
        logger.error("account_credentials_invalid", account=account.email, error=e.message)
        if on_invalid is not None:
            on_invalid(account.email, e.message)
        raise
    except TokenRefreshError as e:
        logger.warning("token_refresh_failed", account=account.email, error=e.message)
        raise

    token_cache[account.email] = CachedToken(token=token)
    return token


def _extract_project_id(data: Any) -> str | None:
    project = data.get("cloudaicompanionProject") if isinstance(data, dict) else None
    if isinstance(project, str) and project:
        return project
    if isinstance(project, dict) and project.get("id"):
        return str(project["id"])
    return None


async def get_project_for_account(
    account: Account,
    token: str,
    project_cache: dict[str, str],
    *,
    settings: PoolSettings | None = None,
    client: httpx.AsyncClient | None = None,
) -> str:
    """Get the Cloud Code project id for an account.

    Uses the cache, then the stored project id, then asks the backend.

    Raises:
        ProjectDiscoveryError: If no endpoint returned a project id
    """
    if cached := project_cache.get(account.email):
        return cached

    if account.project_id:
        project_cache[account.email] = account.project_id
        return account.project_id

    settings = settings or get_settings()
    headers = cloudcode_headers(token, settings.user_agent)
    body = orjson.dumps({"metadata": {"ideType": "IDE_UNSPECIFIED"}})

    async with open_client(client, settings.http_timeout_seconds) as http:
        for endpoint in settings.cloudcode_endpoints:
            url = f"{endpoint}/v1internal:loadCodeAssist"
            try:
                response = await http.post(url, headers=headers, content=body)
            except httpx.RequestError as e:
                logger.warning("project_discovery_failed", endpoint=endpoint, error=str(e))
                continue

            if response.status_code >= 400:
                logger.warning(
                    "project_discovery_error",
                    endpoint=endpoint,
                    status=response.status_code,
                )
                continue

            try:
                project_id = _extract_project_id(response.json())
            except ValueError:
                project_id = None
            if project_id:
                project_cache[account.email] = project_id
                logger.info("project_discovered", account=account.email, project=project_id)
                return project_id

    raise ProjectDiscoveryError(
        "Could not discover project id", email=account.email
    )


def clear_token_cache(token_cache: TokenCache, email: str | None = None) -> None:
    """Drop cached tokens for one account, or all when email is None."""
    if email is None:
        token_cache.clear()
    else:
        token_cache.pop(email, None)


def clear_project_cache(project_cache: dict[str, str], email: str | None = None) -> None:
    """Drop cached project ids for one account, or all when email is None."""
    if email is None:
        project_cache.clear()
    else:
        project_cache.pop(email, None)
