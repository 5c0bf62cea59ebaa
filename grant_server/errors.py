"""
OAuth 2.0 protocol errors (RFC 6749 §5.2, RFC 8628 §3.5).
Ledgers raise their own error kinds; the grant engine maps them to OAuthError once.
"""

INVALID_REQUEST = "invalid_request"
INVALID_CLIENT = "invalid_client"
INVALID_GRANT = "invalid_grant"
UNAUTHORIZED_CLIENT = "unauthorized_client"
UNSUPPORTED_GRANT_TYPE = "unsupported_grant_type"
UNSUPPORTED_RESPONSE_TYPE = "unsupported_response_type"
INVALID_SCOPE = "invalid_scope"
ACCESS_DENIED = "access_denied"
AUTHORIZATION_PENDING = "authorization_pending"
EXPIRED_TOKEN = "expired_token"
SERVER_ERROR = "server_error"
INVALID_CLIENT_METADATA = "invalid_client_metadata"
INVALID_REDIRECT_URI = "invalid_redirect_uri"

_STATUS_BY_ERROR = {
    INVALID_CLIENT: 401,
    SERVER_ERROR: 500,
}


class OAuthError(Exception):
    """
    A protocol error for the HTTP layer: (status_code, error, error_description).
    redirectable is True only for /authorize errors that may be sent to a verified redirect_uri.
    """

    def __init__(
        self,
        error: str,
        error_description: str = "",
        *,
        status_code: int | None = None,
        redirectable: bool = False,
    ):
        self.error = error
        self.error_description = error_description
        self.status_code = status_code or _STATUS_BY_ERROR.get(error, 400)
        self.redirectable = redirectable
        super().__init__(error_description or error)

    def as_triple(self) -> tuple[int, str, str]:
        return self.status_code, self.error, self.error_description

    def to_dict(self) -> dict:
        return {"error": self.error, "error_description": self.error_description}

    def __repr__(self) -> str:
        return f"OAuthError({self.error!r}, {self.error_description!r}, status_code={self.status_code})"
