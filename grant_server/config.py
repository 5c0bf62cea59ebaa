"""
Grant server configuration. Values come from the environment with development defaults.
No secrets in this file; client secrets and user passwords come from env or DB.
"""
import os


def _env_flag(name: str, default: str) -> bool:
    return os.environ.get(name, default).strip().lower() in ("1", "true", "yes", "on")


# Issuer URL (public identifier)
ISSUER = os.environ.get("OAUTH_ISSUER", "http://127.0.0.1:9000").rstrip("/")

# SQLite DB for client configuration, users and audit rows. Ledgers are in-memory only.
DATABASE_URL = os.environ.get("AUTH_DATABASE_URL", "sqlite:///./grant_server.db")

# Audience given to tokens of clients that registered no audiences
API_AUDIENCE = os.environ.get("OAUTH_API_AUDIENCE", "api-service")

# Authorization code lifetime (seconds)
CODE_TTL_SECONDS = int(os.environ.get("OAUTH_CODE_TTL_SECONDS", "600"))

# Access token lifetime (seconds)
ACCESS_TOKEN_EXPIRES = int(os.environ.get("OAUTH_ACCESS_TOKEN_EXPIRES", "3600"))

# Refresh token lifetime (seconds). Rotation gives the new refresh token a fresh lifetime.
REFRESH_TOKEN_EXPIRES = int(os.environ.get("OAUTH_REFRESH_TOKEN_EXPIRES", "86400"))

# Device flow (RFC 8628): code lifetime and minimum polling interval (seconds)
DEVICE_CODE_TTL_SECONDS = int(os.environ.get("OAUTH_DEVICE_CODE_TTL_SECONDS", "600"))
DEVICE_POLL_INTERVAL = int(os.environ.get("OAUTH_DEVICE_POLL_INTERVAL", "5"))
DEVICE_VERIFICATION_URI = os.environ.get("OAUTH_DEVICE_VERIFICATION_URI", f"{ISSUER}/device")

# Background purge of expired ledger entries. 0 disables the sweeper thread.
SWEEP_INTERVAL_SECONDS = float(os.environ.get("OAUTH_SWEEP_INTERVAL_SECONDS", "30"))

# bcrypt cost for client secrets and user passwords
BCRYPT_ROUNDS = int(os.environ.get("OAUTH_BCRYPT_ROUNDS", "12"))

# Public clients must bind codes with PKCE
REQUIRE_PKCE_FOR_PUBLIC_CLIENTS = _env_flag("OAUTH_REQUIRE_PKCE_FOR_PUBLIC_CLIENTS", "1")

# Token exchange: reject non-subset scope requests instead of falling back to the subject token's scope
TOKEN_EXCHANGE_STRICT_SCOPE = _env_flag("OAUTH_TOKEN_EXCHANGE_STRICT_SCOPE", "0")

# Dynamic client registration: optional initial access token (Bearer). Unset = open registration.
REGISTRATION_TOKEN = os.environ.get("OAUTH_REGISTRATION_TOKEN", "").strip() or None

# Scopes this server knows about
SUPPORTED_SCOPES = {
    "openid",
    "profile",
    "email",
    "offline_access",
    "api:read",
    "api:write",
    "read",
    "write",
    "admin",
}

# Scopes that ask for a refresh token on client_credentials and token_exchange grants
OFFLINE_ACCESS_SCOPES = {"offline_access"}

# Rate limiting: per-IP, per minute
RATE_LIMIT_LOGIN_PER_MINUTE = int(os.environ.get("OAUTH_RATE_LIMIT_LOGIN_PER_MINUTE", "20"))
RATE_LIMIT_TOKEN_PER_MINUTE = int(os.environ.get("OAUTH_RATE_LIMIT_TOKEN_PER_MINUTE", "60"))
