"""
Client registry: registered OAuth clients and client authentication (RFC 6749 §2.3).
Clients are immutable values; re-registering an id replaces the previous definition.
"""
import logging
from collections.abc import Iterable
from dataclasses import dataclass, field
from enum import Enum

from grant_server.locks import ReadWriteLock
from grant_server.passwords import dummy_hash, verify_password
from grant_server.scopes import scope_subset

logger = logging.getLogger(__name__)

GRANT_AUTHORIZATION_CODE = "authorization_code"
GRANT_CLIENT_CREDENTIALS = "client_credentials"
GRANT_REFRESH_TOKEN = "refresh_token"
GRANT_DEVICE_CODE = "device_code"
GRANT_TOKEN_EXCHANGE = "token_exchange"

SUPPORTED_GRANT_TYPES = frozenset(
    {
        GRANT_AUTHORIZATION_CODE,
        GRANT_CLIENT_CREDENTIALS,
        GRANT_REFRESH_TOKEN,
        GRANT_DEVICE_CODE,
        GRANT_TOKEN_EXCHANGE,
    }
)

# Wire values (RFC 8628 §3.4, RFC 8693 §2.1) -> short names used internally
GRANT_TYPE_URNS = {
    "urn:ietf:params:oauth:grant-type:device_code": GRANT_DEVICE_CODE,
    "urn:ietf:params:oauth:grant-type:token-exchange": GRANT_TOKEN_EXCHANGE,
}


def normalize_grant_type(grant_type: str) -> str:
    grant_type = grant_type.strip()
    return GRANT_TYPE_URNS.get(grant_type, grant_type)


class ClientAuthErrorKind(str, Enum):
    UNKNOWN_CLIENT = "unknown_client"
    MISSING_SECRET = "missing_secret"
    INVALID_SECRET = "invalid_secret"


class ClientAuthError(Exception):
    def __init__(self, kind: ClientAuthErrorKind, client_id: str | None = None):
        self.kind = kind
        self.client_id = client_id
        super().__init__(f"{kind.value}: {client_id}")


class ClientRegistrationError(ValueError):
    """Client definition violates a registry rule."""


@dataclass(frozen=True)
class Client:
    client_id: str
    secret_hash: str = ""
    grant_types: frozenset[str] = field(default_factory=frozenset)
    scopes: frozenset[str] = field(default_factory=frozenset)
    audiences: frozenset[str] = field(default_factory=frozenset)
    redirect_uris: frozenset[str] = field(default_factory=frozenset)
    name: str = ""

    @property
    def is_public(self) -> bool:
        return not self.secret_hash

    @property
    def is_confidential(self) -> bool:
        return not self.is_public

    def has_grant_type(self, grant_type: str) -> bool:
        return normalize_grant_type(grant_type) in self.grant_types

    def redirect_uri_allowed(self, uri: str) -> bool:
        # Exact string match (RFC 6749 §3.1.2.3, OAuth 2.1)
        return uri in self.redirect_uris

    def audience_allowed(self, audience: str) -> bool:
        return audience in self.audiences


def make_client(
    client_id: str,
    *,
    secret_hash: str | None = None,
    grant_types: Iterable[str] = (),
    scopes: Iterable[str] = (),
    audiences: Iterable[str] = (),
    redirect_uris: Iterable[str] = (),
    name: str = "",
) -> Client:
    """Build a Client from loose iterables; grant type URNs are normalized to short names."""
    return Client(
        client_id=client_id,
        secret_hash=secret_hash or "",
        grant_types=frozenset(normalize_grant_type(g) for g in grant_types if g),
        scopes=frozenset(s for s in scopes if s),
        audiences=frozenset(a for a in audiences if a),
        redirect_uris=frozenset(u for u in redirect_uris if u),
        name=name,
    )


class ClientRegistry:
    """In-memory client store, rebuilt at startup from the client configuration table."""

    def __init__(self, clients: Iterable[Client] = ()) -> None:
        self._clients: dict[str, Client] = {}
        self._lock = ReadWriteLock()
        self.load(clients)

    def register(self, client: Client) -> None:
        """Insert or replace by id."""
        if not client.client_id:
            raise ClientRegistrationError("client_id is required")
        unknown = client.grant_types - SUPPORTED_GRANT_TYPES
        if unknown:
            raise ClientRegistrationError(f"Unsupported grant type(s): {', '.join(sorted(unknown))}")
        if GRANT_AUTHORIZATION_CODE in client.grant_types and not client.redirect_uris:
            raise ClientRegistrationError("redirect_uris are required for the authorization_code grant")
        with self._lock.write():
            replaced = client.client_id in self._clients
            self._clients[client.client_id] = client
        logger.info(
            "Registered client %s (confidential=%s, replaced=%s)", client.client_id, client.is_confidential, replaced
        )

    def load(self, clients: Iterable[Client]) -> int:
        count = 0
        for client in clients:
            self.register(client)
            count += 1
        return count

    def get(self, client_id: str) -> Client | None:
        with self._lock.read():
            return self._clients.get(client_id)

    def authenticate(self, client_id: str | None, secret: str | None) -> Client:
        """
        Public clients succeed with any or no secret. Confidential clients need the exact secret.
        Unknown ids burn a dummy bcrypt check so timing does not reveal whether the id exists.
        """
        client = self.get(client_id) if client_id else None
        if client is None:
            verify_password(secret or "", dummy_hash())
            raise ClientAuthError(ClientAuthErrorKind.UNKNOWN_CLIENT, client_id)
        if client.is_public:
            return client
        if not secret:
            raise ClientAuthError(ClientAuthErrorKind.MISSING_SECRET, client_id)
        if not verify_password(secret, client.secret_hash):
            logger.warning("Client authentication failed for client_id=%s", client_id)
            raise ClientAuthError(ClientAuthErrorKind.INVALID_SECRET, client_id)
        return client

    @staticmethod
    def has_grant_type(client: Client, grant_type: str) -> bool:
        return client.has_grant_type(grant_type)

    @staticmethod
    def scope_subset(requested: Iterable[str], allowed: Iterable[str]) -> bool:
        return scope_subset(requested, allowed)

    @staticmethod
    def audience_allowed(client: Client, audience: str) -> bool:
        return client.audience_allowed(audience)

    def __contains__(self, client_id: object) -> bool:
        with self._lock.read():
            return client_id in self._clients

    def __len__(self) -> int:
        with self._lock.read():
            return len(self._clients)
