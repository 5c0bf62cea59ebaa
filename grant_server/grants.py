"""
Grant engine: the token endpoint's state machine across five grant types.

Every grant runs the same pipeline and stops at the first failure:
  1. required parameters           -> invalid_request
  2. client authentication         -> invalid_client
  3. client allowed this grant     -> unauthorized_client
  4. grant-specific ledger work    -> invalid_grant (and device-flow codes)
  5. scope validation              -> invalid_scope
  6. token issuance

Ledgers are called one after another, never while another ledger's lock is held. Ledger error kinds
are mapped to OAuthError here and nowhere else.
"""
import functools
import logging
from collections.abc import Iterable, Mapping
from dataclasses import dataclass, fields
from typing import Any

from grant_server import errors, pkce
from grant_server.clients import (
    GRANT_AUTHORIZATION_CODE,
    GRANT_CLIENT_CREDENTIALS,
    GRANT_DEVICE_CODE,
    GRANT_REFRESH_TOKEN,
    GRANT_TOKEN_EXCHANGE,
    Client,
    ClientAuthError,
    ClientRegistry,
    normalize_grant_type,
)
from grant_server.codes import AuthorizationCodeLedger, CodeRedemptionError
from grant_server.config import (
    ACCESS_TOKEN_EXPIRES,
    API_AUDIENCE,
    DEVICE_POLL_INTERVAL,
    DEVICE_VERIFICATION_URI,
    REFRESH_TOKEN_EXPIRES,
    REQUIRE_PKCE_FOR_PUBLIC_CLIENTS,
    TOKEN_EXCHANGE_STRICT_SCOPE,
)
from grant_server.device import (
    DeviceAuthorizationError,
    DeviceAuthorizationLedger,
    DeviceErrorKind,
    PollStatus,
)
from grant_server.errors import OAuthError
from grant_server.generators import RandomSourceError, format_user_code
from grant_server.scopes import format_scope, parse_scope, scope_subset, wants_offline_access
from grant_server.tokens import TokenError, TokenErrorKind, TokenKind, TokenLedger

logger = logging.getLogger(__name__)

TOKEN_TYPE_ACCESS_TOKEN = "urn:ietf:params:oauth:token-type:access_token"
SUBJECT_TOKEN_TYPES = {TOKEN_TYPE_ACCESS_TOKEN}
REQUESTED_TOKEN_TYPES = {TOKEN_TYPE_ACCESS_TOKEN}

_TOKEN_ERROR_DESCRIPTIONS = {
    TokenErrorKind.NOT_FOUND: "Invalid token",
    TokenErrorKind.EXPIRED: "Token expired",
    TokenErrorKind.REVOKED: "Token has been revoked",
    TokenErrorKind.WRONG_KIND: "Wrong token type",
    TokenErrorKind.CLIENT_MISMATCH: "Token does not belong to client",
    TokenErrorKind.SCOPE_EXCEEDED: "Requested scope exceeds original scope",
}

_POLL_ERRORS = {
    PollStatus.PENDING: (errors.AUTHORIZATION_PENDING, "User has not yet authorized"),
    PollStatus.DENIED: (errors.ACCESS_DENIED, "User denied authorization"),
    PollStatus.EXPIRED: (errors.EXPIRED_TOKEN, "Device code has expired"),
    PollStatus.NOT_FOUND: (errors.INVALID_GRANT, "Invalid device code"),
    PollStatus.CLIENT_MISMATCH: (errors.INVALID_GRANT, "Device code was issued to another client"),
}


@dataclass
class TokenRequest:
    """Form-decoded token endpoint request (RFC 6749 §4, RFC 8628 §3.4, RFC 8693 §2.1)."""

    grant_type: str | None = None
    client_id: str | None = None
    client_secret: str | None = None
    code: str | None = None
    redirect_uri: str | None = None
    code_verifier: str | None = None
    refresh_token: str | None = None
    device_code: str | None = None
    user_code: str | None = None
    subject_token: str | None = None
    subject_token_type: str | None = None
    requested_token_type: str | None = None
    audience: str | None = None
    scope: str | None = None

    @classmethod
    def from_form(cls, form: Mapping[str, Any]) -> "TokenRequest":
        """Pick known fields; list values (repeated form fields) are joined for scope, else first wins."""
        values = {}
        for f in fields(cls):
            value = form.get(f.name)
            if isinstance(value, (list, tuple)):
                value = " ".join(value) if f.name == "scope" else (value[0] if value else None)
            if isinstance(value, str):
                value = value.strip() or None
            values[f.name] = value
        return cls(**values)


def _server_errors(method):
    """Random-source failures surface as server_error, never as a half-finished grant."""

    @functools.wraps(method)
    def wrapper(*args, **kwargs):
        try:
            return method(*args, **kwargs)
        except RandomSourceError as e:
            logger.error("Credential generation failed in %s: %s", method.__name__, e)
            raise OAuthError(errors.SERVER_ERROR, "Failed to generate credential") from e

    return wrapper


class GrantEngine:
    def __init__(
        self,
        clients: ClientRegistry,
        codes: AuthorizationCodeLedger,
        devices: DeviceAuthorizationLedger,
        tokens: TokenLedger,
        *,
        access_ttl: int = ACCESS_TOKEN_EXPIRES,
        refresh_ttl: int = REFRESH_TOKEN_EXPIRES,
        default_audience: str = API_AUDIENCE,
        verification_uri: str = DEVICE_VERIFICATION_URI,
        poll_interval: int = DEVICE_POLL_INTERVAL,
        require_pkce_for_public_clients: bool = REQUIRE_PKCE_FOR_PUBLIC_CLIENTS,
        strict_exchange_scope: bool = TOKEN_EXCHANGE_STRICT_SCOPE,
    ) -> None:
        self.clients = clients
        self.codes = codes
        self.devices = devices
        self.tokens = tokens
        self.access_ttl = access_ttl
        self.refresh_ttl = refresh_ttl
        self.default_audience = default_audience
        self.verification_uri = verification_uri
        self.poll_interval = poll_interval
        self.require_pkce_for_public_clients = require_pkce_for_public_clients
        self.strict_exchange_scope = strict_exchange_scope
        self._handlers = {
            GRANT_AUTHORIZATION_CODE: self.authorization_code_grant,
            GRANT_CLIENT_CREDENTIALS: self.client_credentials_grant,
            GRANT_REFRESH_TOKEN: self.refresh_token_grant,
            GRANT_DEVICE_CODE: self.device_code_grant,
            GRANT_TOKEN_EXCHANGE: self.token_exchange_grant,
        }

    # --- token endpoint ---

    def token(self, request: TokenRequest) -> dict:
        """Dispatch on grant_type. Returns the success payload or raises OAuthError."""
        if not request.grant_type:
            raise OAuthError(errors.INVALID_REQUEST, "grant_type is required")
        handler = self._handlers.get(normalize_grant_type(request.grant_type))
        if handler is None:
            raise OAuthError(errors.UNSUPPORTED_GRANT_TYPE, f"Unsupported grant_type: {request.grant_type}")
        return handler(request)

    @_server_errors
    def authorization_code_grant(self, request: TokenRequest) -> dict:
        _require(request, "code", "redirect_uri")
        client = self._authenticate(request.client_id, request.client_secret)
        self._require_grant(client, GRANT_AUTHORIZATION_CODE)
        try:
            subject_id, scopes = self.codes.redeem(
                request.code, client.client_id, request.redirect_uri, request.code_verifier
            )
        except CodeRedemptionError as e:
            logger.info("authorization_code grant rejected for client_id=%s: %s", client.client_id, e.kind.value)
            raise OAuthError(errors.INVALID_GRANT, e.description) from e
        self._require_scope(scopes, client.scopes)
        response = self._issue(
            client,
            subject_id,
            scopes,
            self._client_audience(client),
            with_refresh=client.has_grant_type(GRANT_REFRESH_TOKEN),
        )
        logger.info("authorization_code grant: tokens issued for client_id=%s sub=%s", client.client_id, subject_id)
        return response

    @_server_errors
    def client_credentials_grant(self, request: TokenRequest) -> dict:
        """
        No end user. Scope defaults to everything the client may request.
        Extension beyond RFC 6749 §4.4.3: a refresh token is issued when offline_access is granted.
        """
        client = self._authenticate(request.client_id, request.client_secret)
        self._require_grant(client, GRANT_CLIENT_CREDENTIALS)
        scopes = parse_scope(request.scope) or client.scopes
        self._require_scope(scopes, client.scopes)
        response = self._issue(
            client, None, scopes, self._client_audience(client), with_refresh=wants_offline_access(scopes)
        )
        logger.info("client_credentials grant: token issued for client_id=%s", client.client_id)
        return response

    @_server_errors
    def refresh_token_grant(self, request: TokenRequest) -> dict:
        _require(request, "refresh_token")
        client = self._authenticate(request.client_id, request.client_secret)
        self._require_grant(client, GRANT_REFRESH_TOKEN)
        try:
            info = self.tokens.validate(request.refresh_token, TokenKind.REFRESH)
        except TokenError as e:
            raise OAuthError(errors.INVALID_GRANT, _TOKEN_ERROR_DESCRIPTIONS[e.kind]) from e
        if info.client_id != client.client_id:
            raise OAuthError(errors.INVALID_GRANT, "Refresh token does not belong to client")
        requested = parse_scope(request.scope) if request.scope else None
        if requested is not None:
            self._require_scope(requested, info.scopes, "Requested scope exceeds original scope")
        try:
            pair = self.tokens.rotate_refresh(
                request.refresh_token,
                client_id=client.client_id,
                scopes=requested,
                access_ttl=self.access_ttl,
                refresh_ttl=self.refresh_ttl,
            )
        except TokenError as e:
            # Lost a race with a concurrent rotation, revocation or expiry since validate()
            error = errors.INVALID_SCOPE if e.kind is TokenErrorKind.SCOPE_EXCEEDED else errors.INVALID_GRANT
            raise OAuthError(error, _TOKEN_ERROR_DESCRIPTIONS[e.kind]) from e
        scopes = info.scopes if requested is None else requested
        logger.info(
            "refresh_token grant: new tokens issued for client_id=%s sub=%s (refresh token rotated)",
            client.client_id,
            info.subject_id,
        )
        return {
            "access_token": pair.access_token,
            "token_type": "Bearer",
            "expires_in": int(self.access_ttl),
            "scope": format_scope(scopes),
            "refresh_token": pair.refresh_token,
        }

    @_server_errors
    def device_code_grant(self, request: TokenRequest) -> dict:
        _require(request, "device_code")
        client = self._authenticate(request.client_id, request.client_secret)
        self._require_grant(client, GRANT_DEVICE_CODE)
        result = self.devices.poll(request.device_code, client.client_id)
        if result.status is not PollStatus.READY:
            error, description = _POLL_ERRORS[result.status]
            logger.debug("device_code poll for client_id=%s: %s", client.client_id, result.status.value)
            raise OAuthError(error, description)
        self._require_scope(result.scopes, client.scopes)
        response = self._issue(
            client,
            result.subject_id,
            result.scopes,
            self._client_audience(client),
            with_refresh=client.has_grant_type(GRANT_REFRESH_TOKEN),
        )
        logger.info("device_code grant: tokens issued for client_id=%s sub=%s", client.client_id, result.subject_id)
        return response

    @_server_errors
    def token_exchange_grant(self, request: TokenRequest) -> dict:
        """
        RFC 8693 impersonation: the exchanging client receives a token for the subject token's subject.
        A requested scope that is not a subset of the subject token's scope falls back to the subject
        token's scope unless strict_exchange_scope is set; the result never exceeds the subject scope.
        """
        _require(request, "subject_token", "subject_token_type")
        if request.subject_token_type not in SUBJECT_TOKEN_TYPES:
            raise OAuthError(errors.INVALID_REQUEST, "Unsupported subject_token_type")
        if request.requested_token_type and request.requested_token_type not in REQUESTED_TOKEN_TYPES:
            raise OAuthError(errors.INVALID_REQUEST, "Unsupported requested_token_type")
        client = self._authenticate(request.client_id, request.client_secret)
        self._require_grant(client, GRANT_TOKEN_EXCHANGE)
        try:
            info = self.tokens.validate(request.subject_token, TokenKind.ACCESS)
        except TokenError as e:
            raise OAuthError(errors.INVALID_GRANT, "Invalid or expired subject_token") from e
        if request.audience:
            if not client.audience_allowed(request.audience):
                raise OAuthError(errors.INVALID_REQUEST, "Invalid audience")
            audience = frozenset({request.audience})
        else:
            audience = info.audience
        scopes = self._exchange_scope(client, parse_scope(request.scope), info.scopes)
        response = self._issue(client, info.subject_id, scopes, audience, with_refresh=wants_offline_access(scopes))
        response["issued_token_type"] = TOKEN_TYPE_ACCESS_TOKEN
        logger.info(
            "token_exchange grant: token issued for client_id=%s sub=%s (subject token from client_id=%s)",
            client.client_id,
            info.subject_id,
            info.client_id,
        )
        return response

    # --- authorization endpoint ---

    def resolve_redirect(self, client_id: str | None, redirect_uri: str | None) -> Client:
        """
        Client and redirect_uri checks that must pass before any error may be redirected
        (RFC 6749 §4.1.2.1). Failures here are never redirectable.
        """
        if not client_id or not redirect_uri:
            raise OAuthError(errors.INVALID_REQUEST, "client_id and redirect_uri are required")
        client = self.clients.get(client_id)
        if client is None:
            raise OAuthError(errors.INVALID_REQUEST, "Unknown client_id")
        if not client.redirect_uri_allowed(redirect_uri):
            raise OAuthError(errors.INVALID_REQUEST, "redirect_uri not allowed")
        return client

    @_server_errors
    def authorize(
        self,
        *,
        client_id: str | None,
        redirect_uri: str | None,
        subject_id: str,
        response_type: str | None = "code",
        scope: str | Iterable[str] | None = None,
        code_challenge: str | None = None,
        code_challenge_method: str | None = None,
    ) -> tuple[str, float]:
        """Issue an authorization code for an authenticated end user. Returns (code, expires_at)."""
        client = self.resolve_redirect(client_id, redirect_uri)
        if response_type != "code":
            raise OAuthError(errors.UNSUPPORTED_RESPONSE_TYPE, "response_type must be 'code'", redirectable=True)
        if not client.has_grant_type(GRANT_AUTHORIZATION_CODE):
            raise OAuthError(
                errors.UNAUTHORIZED_CLIENT, "Client not authorized for authorization_code grant", redirectable=True
            )
        scopes = parse_scope(scope)
        if not scope_subset(scopes, client.scopes):
            invalid = sorted(scopes - client.scopes)
            raise OAuthError(errors.INVALID_SCOPE, f"Invalid scope(s): {', '.join(invalid)}", redirectable=True)
        if code_challenge_method and not code_challenge:
            raise OAuthError(errors.INVALID_REQUEST, "code_challenge is required with code_challenge_method", redirectable=True)
        if code_challenge:
            code_challenge_method = code_challenge_method or pkce.METHOD_PLAIN
            if code_challenge_method not in pkce.SUPPORTED_METHODS:
                raise OAuthError(
                    errors.INVALID_REQUEST, "code_challenge_method must be S256 or plain", redirectable=True
                )
        elif client.is_public and self.require_pkce_for_public_clients:
            raise OAuthError(errors.INVALID_REQUEST, "code_challenge is required for public clients", redirectable=True)
        code, expires_at = self.codes.issue(
            client.client_id,
            subject_id,
            redirect_uri,
            scopes,
            pkce_challenge=code_challenge,
            pkce_method=code_challenge_method,
        )
        logger.info("Authorization code issued for client_id=%s sub=%s", client.client_id, subject_id)
        return code, expires_at

    # --- device authorization endpoint ---

    @_server_errors
    def request_device_authorization(
        self, client_id: str | None, client_secret: str | None = None, scope: str | None = None
    ) -> dict:
        """RFC 8628 §3.1-3.2."""
        client = self._authenticate(client_id, client_secret)
        self._require_grant(client, GRANT_DEVICE_CODE)
        scopes = parse_scope(scope)
        self._require_scope(scopes, client.scopes)
        ticket = self.devices.request_authorization(client.client_id, scopes)
        return {
            "device_code": ticket.device_code,
            "user_code": format_user_code(ticket.user_code),
            "verification_uri": self.verification_uri,
            "verification_uri_complete": f"{self.verification_uri}?user_code={format_user_code(ticket.user_code)}",
            "expires_in": ticket.expires_in,
            "interval": self.poll_interval,
        }

    def describe_device(self, user_code: str) -> dict:
        """What the user is approving: client and scopes for a live user_code."""
        record = self.devices.lookup(user_code)
        if record is None:
            raise OAuthError(errors.INVALID_GRANT, "Invalid or expired user code")
        client = self.clients.get(record.client_id)
        return {
            "client_id": record.client_id,
            "client_name": client.name if client else "",
            "scope": format_scope(record.scopes),
            "state": record.state.value,
        }

    def approve_device(self, user_code: str, subject_id: str) -> None:
        try:
            self.devices.approve(user_code, subject_id)
        except DeviceAuthorizationError as e:
            raise _device_error(e) from e

    def deny_device(self, user_code: str) -> None:
        try:
            self.devices.deny(user_code)
        except DeviceAuthorizationError as e:
            raise _device_error(e) from e

    # --- revocation / introspection ---

    def revoke(
        self, token: str | None, client_id: str | None, client_secret: str | None = None, token_type_hint: str | None = None
    ) -> bool:
        """
        RFC 7009. Success for unknown tokens and for tokens of other clients alike; only the owning
        client's tokens are actually revoked. Returns whether a token was revoked (for audit only).
        """
        if not token:
            raise OAuthError(errors.INVALID_REQUEST, "token is required")
        client = self._authenticate(client_id, client_secret)
        owner = self.tokens.owner_of(token)
        if owner is None:
            logger.debug("Revocation of unknown token by client_id=%s (hint=%s)", client.client_id, token_type_hint)
            return False
        if owner != client.client_id:
            logger.warning("client_id=%s attempted to revoke a token of another client", client.client_id)
            return False
        self.tokens.revoke(token)
        return True

    def introspect(self, token: str | None, client_id: str | None, client_secret: str | None = None) -> dict:
        """RFC 7662; caller must be an authenticated client."""
        if not token:
            raise OAuthError(errors.INVALID_REQUEST, "token is required")
        self._authenticate(client_id, client_secret)
        return self.tokens.introspect(token)

    # --- helpers ---

    def _authenticate(self, client_id: str | None, client_secret: str | None) -> Client:
        if not client_id:
            raise OAuthError(errors.INVALID_CLIENT, "client_id is required")
        try:
            return self.clients.authenticate(client_id, client_secret)
        except ClientAuthError as e:
            logger.info("Client authentication failed for client_id=%s: %s", client_id, e.kind.value)
            raise OAuthError(errors.INVALID_CLIENT, "Client authentication failed") from e

    @staticmethod
    def _require_grant(client: Client, grant_type: str) -> None:
        if not client.has_grant_type(grant_type):
            raise OAuthError(errors.UNAUTHORIZED_CLIENT, f"Client not authorized for {grant_type} grant")

    @staticmethod
    def _require_scope(requested: Iterable[str], allowed: Iterable[str], description: str | None = None) -> None:
        if not scope_subset(requested, allowed):
            raise OAuthError(errors.INVALID_SCOPE, description or "Requested scope exceeds client permissions")

    def _exchange_scope(self, client: Client, requested: frozenset[str], subject_scopes: frozenset[str]) -> frozenset[str]:
        if not requested:
            return subject_scopes
        if requested <= subject_scopes:
            return requested
        if self.strict_exchange_scope:
            raise OAuthError(errors.INVALID_SCOPE, "Requested scope exceeds subject token scope")
        logger.warning(
            "token_exchange for client_id=%s: requested scope %r is not a subset of the subject token scope; "
            "issuing the subject token scope %r instead",
            client.client_id,
            format_scope(requested),
            format_scope(subject_scopes),
        )
        return subject_scopes

    def _client_audience(self, client: Client) -> frozenset[str]:
        return client.audiences or frozenset({self.default_audience})

    def _issue(
        self,
        client: Client,
        subject_id: str | None,
        scopes: frozenset[str],
        audience: frozenset[str],
        *,
        with_refresh: bool,
    ) -> dict:
        refresh_token = None
        if with_refresh:
            access_token, refresh_token = self.tokens.issue_pair(
                client.client_id,
                subject_id,
                scopes,
                audience,
                access_ttl=self.access_ttl,
                refresh_ttl=self.refresh_ttl,
            )
        else:
            access_token = self.tokens.issue_access(client.client_id, subject_id, scopes, audience, ttl=self.access_ttl)
        response = {
            "access_token": access_token,
            "token_type": "Bearer",
            "expires_in": int(self.access_ttl),
            "scope": format_scope(scopes),
        }
        if refresh_token:
            response["refresh_token"] = refresh_token
        return response


def _require(request: TokenRequest, *names: str) -> None:
    missing = [name for name in names if not getattr(request, name)]
    if missing:
        raise OAuthError(errors.INVALID_REQUEST, f"{', '.join(missing)} required for {request.grant_type} grant")


def _device_error(e: DeviceAuthorizationError) -> OAuthError:
    if e.kind is DeviceErrorKind.EXPIRED:
        return OAuthError(errors.EXPIRED_TOKEN, "User code has expired")
    return OAuthError(errors.INVALID_GRANT, "Invalid or already used user code")
