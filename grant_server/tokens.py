"""
Token ledger: opaque access and refresh tokens looked up by value.

Tokens descending from one authorization grant share a grant_id. Revoking a refresh token revokes
the access tokens of its grant as well (RFC 7009 §2.1). Refresh rotation validates the presented
refresh token, revokes it and issues the successor pair inside one write-locked section, so the old
and new refresh tokens are never valid at the same time.
"""
import logging
from collections.abc import Iterable
from dataclasses import dataclass, field
from enum import Enum
from typing import Callable, NamedTuple

from grant_server.clock import as_clock
from grant_server.config import ACCESS_TOKEN_EXPIRES, ISSUER, REFRESH_TOKEN_EXPIRES
from grant_server.generators import RandomSource
from grant_server.locks import ReadWriteLock
from grant_server.scopes import format_scope, parse_scope

logger = logging.getLogger(__name__)


class TokenKind(str, Enum):
    ACCESS = "access"
    REFRESH = "refresh"

    @property
    def type_hint(self) -> str:
        """RFC 7009 / RFC 7662 token_type_hint value."""
        return f"{self.value}_token"


class TokenErrorKind(str, Enum):
    NOT_FOUND = "not_found"
    EXPIRED = "expired"
    REVOKED = "revoked"
    WRONG_KIND = "wrong_kind"
    CLIENT_MISMATCH = "client_mismatch"
    SCOPE_EXCEEDED = "scope_exceeded"


class TokenError(Exception):
    def __init__(self, kind: TokenErrorKind):
        self.kind = kind
        super().__init__(kind.value)


@dataclass
class Token:
    value: str
    kind: TokenKind
    client_id: str
    subject_id: str | None
    scopes: frozenset[str]
    audience: frozenset[str]
    issued_at: float
    expires_at: float
    grant_id: str
    revoked: bool = False

    def expired(self, now: float) -> bool:
        return now >= self.expires_at


@dataclass(frozen=True)
class TokenInfo:
    kind: TokenKind
    client_id: str
    subject_id: str | None
    scopes: frozenset[str]
    audience: frozenset[str]
    issued_at: float
    expires_at: float
    grant_id: str = field(default="", compare=False)


class TokenPair(NamedTuple):
    access_token: str
    refresh_token: str


def _info(token: Token) -> TokenInfo:
    return TokenInfo(
        kind=token.kind,
        client_id=token.client_id,
        subject_id=token.subject_id,
        scopes=token.scopes,
        audience=token.audience,
        issued_at=token.issued_at,
        expires_at=token.expires_at,
        grant_id=token.grant_id,
    )


class TokenLedger:
    def __init__(
        self,
        clock: Callable[[], float] | None = None,
        random_source: RandomSource | None = None,
        issuer: str = ISSUER,
    ) -> None:
        self._tokens: dict[str, Token] = {}
        self._families: dict[str, set[str]] = {}
        self._lock = ReadWriteLock()
        self._clock = as_clock(clock)
        self._random = random_source or RandomSource()
        self._issuer = issuer

    def issue_access(
        self,
        client_id: str,
        subject_id: str | None,
        scopes: Iterable[str],
        audience: Iterable[str] | str = (),
        ttl: float = ACCESS_TOKEN_EXPIRES,
        grant_id: str | None = None,
    ) -> str:
        with self._lock.write():
            token = self._store(TokenKind.ACCESS, client_id, subject_id, scopes, audience, ttl, grant_id)
        return token.value

    def issue_refresh(
        self,
        client_id: str,
        subject_id: str | None,
        scopes: Iterable[str],
        ttl: float = REFRESH_TOKEN_EXPIRES,
        audience: Iterable[str] | str = (),
        grant_id: str | None = None,
    ) -> str:
        with self._lock.write():
            token = self._store(TokenKind.REFRESH, client_id, subject_id, scopes, audience, ttl, grant_id)
        return token.value

    def issue_pair(
        self,
        client_id: str,
        subject_id: str | None,
        scopes: Iterable[str],
        audience: Iterable[str] | str = (),
        access_ttl: float = ACCESS_TOKEN_EXPIRES,
        refresh_ttl: float = REFRESH_TOKEN_EXPIRES,
        grant_id: str | None = None,
    ) -> TokenPair:
        """Access and refresh token of one new grant. Both are stored or neither is."""
        with self._lock.write():
            grant_id = grant_id or self._random.token(16)
            access = self._make(TokenKind.ACCESS, client_id, subject_id, scopes, audience, access_ttl, grant_id)
            refresh = self._make(
                TokenKind.REFRESH, client_id, subject_id, scopes, audience, refresh_ttl, grant_id, taken=(access.value,)
            )
            self._put(access)
            self._put(refresh)
        return TokenPair(access.value, refresh.value)

    def validate(self, value: str, kind: TokenKind | None = None) -> TokenInfo:
        """Raise TokenError unless the token exists, is unrevoked and unexpired (and of kind, if given)."""
        with self._lock.read():
            token = self._tokens.get(value)
            self._check(token, kind)
            return _info(token)

    def revoke(self, value: str) -> None:
        """RFC 7009: idempotent, silent for unknown tokens."""
        with self._lock.write():
            token = self._tokens.get(value)
            if token is None:
                return
            token.revoked = True
            cascaded = 0
            if token.kind is TokenKind.REFRESH:
                for other in self._families.get(token.grant_id, ()):
                    sibling = self._tokens[other]
                    if sibling.kind is TokenKind.ACCESS and not sibling.revoked:
                        sibling.revoked = True
                        cascaded += 1
        logger.info("Revoked %s token for client_id=%s (+%d access tokens)", token.kind.value, token.client_id, cascaded)

    def introspect(self, value: str) -> dict:
        """RFC 7662 response. Unknown, expired and revoked tokens all answer {"active": False}."""
        try:
            info = self.validate(value)
        except TokenError:
            return {"active": False}
        response = {
            "active": True,
            "scope": format_scope(info.scopes),
            "client_id": info.client_id,
            "token_type": info.kind.type_hint,
            "exp": int(info.expires_at),
            "iat": int(info.issued_at),
            "iss": self._issuer,
            "aud": sorted(info.audience),
        }
        if info.subject_id is not None:
            response["sub"] = info.subject_id
        return response

    def rotate_refresh(
        self,
        old_refresh: str,
        client_id: str | None = None,
        scopes: Iterable[str] | None = None,
        access_ttl: float = ACCESS_TOKEN_EXPIRES,
        refresh_ttl: float = REFRESH_TOKEN_EXPIRES,
    ) -> TokenPair:
        """
        Exchange a refresh token for a new access/refresh pair in one step.
        scopes must be a subset of the old token's scope; None reuses it unchanged.
        Nothing changes if any check fails.
        """
        with self._lock.write():
            old = self._tokens.get(old_refresh)
            self._check(old, TokenKind.REFRESH)
            if client_id is not None and old.client_id != client_id:
                raise TokenError(TokenErrorKind.CLIENT_MISMATCH)
            new_scopes = old.scopes if scopes is None else parse_scope(scopes)
            if not new_scopes <= old.scopes:
                raise TokenError(TokenErrorKind.SCOPE_EXCEEDED)
            access = self._make(
                TokenKind.ACCESS, old.client_id, old.subject_id, new_scopes, old.audience, access_ttl, old.grant_id
            )
            refresh = self._make(
                TokenKind.REFRESH,
                old.client_id,
                old.subject_id,
                new_scopes,
                old.audience,
                refresh_ttl,
                old.grant_id,
                taken=(access.value,),
            )
            old.revoked = True
            self._put(access)
            self._put(refresh)
        logger.info("Rotated refresh token for client_id=%s sub=%s", old.client_id, old.subject_id)
        return TokenPair(access.value, refresh.value)

    def owner_of(self, value: str) -> str | None:
        """Client id the token was issued to, whatever its state. Used to scope revocation."""
        with self._lock.read():
            token = self._tokens.get(value)
            return token.client_id if token else None

    def stats(self) -> dict:
        now = self._clock()
        counts = {kind.value: {"total": 0, "active": 0, "expired": 0, "revoked": 0} for kind in TokenKind}
        with self._lock.read():
            for token in self._tokens.values():
                bucket = counts[token.kind.value]
                bucket["total"] += 1
                if token.revoked:
                    bucket["revoked"] += 1
                elif token.expired(now):
                    bucket["expired"] += 1
                else:
                    bucket["active"] += 1
        return counts

    def sweep(self, now: float | None = None) -> int:
        """Purge tokens past expiry, revoked or not."""
        if now is None:
            now = self._clock()
        with self._lock.write():
            expired = [t for t in self._tokens.values() if t.expires_at < now]
            for token in expired:
                del self._tokens[token.value]
                family = self._families.get(token.grant_id)
                if family is not None:
                    family.discard(token.value)
                    if not family:
                        del self._families[token.grant_id]
        if expired:
            logger.debug("Swept %d expired tokens", len(expired))
        return len(expired)

    def __len__(self) -> int:
        with self._lock.read():
            return len(self._tokens)

    # Helpers below run with the lock held.

    def _check(self, token: Token | None, kind: TokenKind | None) -> None:
        if token is None:
            raise TokenError(TokenErrorKind.NOT_FOUND)
        if kind is not None and token.kind is not kind:
            raise TokenError(TokenErrorKind.WRONG_KIND)
        if token.revoked:
            raise TokenError(TokenErrorKind.REVOKED)
        if token.expired(self._clock()):
            raise TokenError(TokenErrorKind.EXPIRED)

    def _store(
        self,
        kind: TokenKind,
        client_id: str,
        subject_id: str | None,
        scopes: Iterable[str],
        audience: Iterable[str] | str,
        ttl: float,
        grant_id: str | None,
    ) -> Token:
        token = self._make(kind, client_id, subject_id, scopes, audience, ttl, grant_id)
        self._put(token)
        return token

    def _make(
        self,
        kind: TokenKind,
        client_id: str,
        subject_id: str | None,
        scopes: Iterable[str],
        audience: Iterable[str] | str,
        ttl: float,
        grant_id: str | None,
        taken: Iterable[str] = (),
    ) -> Token:
        """Build a record without storing it. May raise RandomSourceError."""
        if isinstance(audience, str):
            audience = [audience]
        taken = set(taken)
        value = self._random.token()
        while value in self._tokens or value in taken:
            value = self._random.token()
        now = self._clock()
        return Token(
            value=value,
            kind=kind,
            client_id=client_id,
            subject_id=subject_id or None,
            scopes=parse_scope(scopes),
            audience=frozenset(a for a in audience if a),
            issued_at=now,
            expires_at=now + ttl,
            grant_id=grant_id or self._random.token(16),
        )

    def _put(self, token: Token) -> None:
        self._tokens[token.value] = token
        self._families.setdefault(token.grant_id, set()).add(token.value)
