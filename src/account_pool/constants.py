"""Constants for the account pool.

This module centralizes configuration values used across the package.
"""

from pathlib import Path


# Time constants (milliseconds unless otherwise noted)
DEFAULT_COOLDOWN_MS = 60 * 1000  # Hard-limit duration when backend gives no reset
MAX_WAIT_BEFORE_ERROR_MS = 2 * 60 * 1000  # Wait for sticky account up to 2 minutes
TOKEN_REFRESH_INTERVAL_MS = 5 * 60 * 1000  # Re-use cached access tokens for 5 minutes
DEFAULT_HTTP_TIMEOUT_SECONDS = 30.0

# Quota fraction below which an account is soft-limited for a model
SOFT_LIMIT_THRESHOLD = 0.2

# Default file locations
DEFAULT_ACCOUNTS_PATH = Path("~/.config/account-pool/accounts.json").expanduser()
DEFAULT_ACCOUNT_DB_PATH = Path(
    "~/.config/Antigravity/User/globalStorage/state.vscdb"
).expanduser()
DEFAULT_ACCOUNT_DB_KEY = "antigravityAuthStatus"

# Cloud Code endpoints, tried in order
CLOUDCODE_ENDPOINT_FALLBACKS: tuple[str, ...] = (
    "https://daily-cloudcode-pa.sandbox.googleapis.com",
    "https://cloudcode-pa.googleapis.com",
)
CLOUDCODE_USER_AGENT = "antigravity/1.11.5"

GOOGLE_OAUTH_TOKEN_URL = "https://oauth2.googleapis.com/token"

# Model families served by the pool
SUPPORTED_MODEL_FAMILIES: tuple[str, ...] = ("claude", "gemini")
