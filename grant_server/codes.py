"""
Authorization code ledger (RFC 6749 §4.1). One-time codes bound to client, redirect_uri and PKCE.
Redemption is a single check-and-mark-used step under the write lock: of N concurrent redeemers of
one code exactly one succeeds and the rest see already_used.
"""
import logging
from collections.abc import Iterable
from dataclasses import dataclass
from enum import Enum
from typing import Callable

from grant_server import pkce
from grant_server.clock import as_clock
from grant_server.config import CODE_TTL_SECONDS
from grant_server.generators import RandomSource
from grant_server.locks import ReadWriteLock
from grant_server.scopes import parse_scope

logger = logging.getLogger(__name__)


class CodeErrorKind(str, Enum):
    NOT_FOUND = "not_found"
    EXPIRED = "expired"
    ALREADY_USED = "already_used"
    CLIENT_MISMATCH = "client_mismatch"
    REDIRECT_MISMATCH = "redirect_mismatch"
    PKCE_FAILURE = "pkce_failure"


_DESCRIPTIONS = {
    CodeErrorKind.NOT_FOUND: "Invalid authorization code",
    CodeErrorKind.EXPIRED: "Authorization code expired",
    CodeErrorKind.ALREADY_USED: "Authorization code already used",
    CodeErrorKind.CLIENT_MISMATCH: "Client mismatch",
    CodeErrorKind.REDIRECT_MISMATCH: "redirect_uri mismatch",
    CodeErrorKind.PKCE_FAILURE: "PKCE verification failed",
}


class CodeRedemptionError(Exception):
    def __init__(self, kind: CodeErrorKind):
        self.kind = kind
        self.description = _DESCRIPTIONS[kind]
        super().__init__(self.description)


@dataclass
class AuthorizationCode:
    code: str
    client_id: str
    subject_id: str
    redirect_uri: str
    scopes: frozenset[str]
    expires_at: float
    pkce_challenge: str | None = None
    pkce_method: str | None = None
    used: bool = False

    def expired(self, now: float) -> bool:
        return now >= self.expires_at


class AuthorizationCodeLedger:
    def __init__(
        self,
        ttl: float = CODE_TTL_SECONDS,
        clock: Callable[[], float] | None = None,
        random_source: RandomSource | None = None,
    ) -> None:
        self._codes: dict[str, AuthorizationCode] = {}
        self._lock = ReadWriteLock()
        self._ttl = ttl
        self._clock = as_clock(clock)
        self._random = random_source or RandomSource()

    def issue(
        self,
        client_id: str,
        subject_id: str,
        redirect_uri: str,
        scopes: Iterable[str],
        pkce_challenge: str | None = None,
        pkce_method: str | None = None,
        ttl: float | None = None,
    ) -> tuple[str, float]:
        """Store a new code; returns (code, expires_at). pkce_method defaults to S256 when a challenge is given."""
        if pkce_challenge and not pkce_method:
            pkce_method = pkce.METHOD_S256
        expires_at = self._clock() + (self._ttl if ttl is None else ttl)
        record = AuthorizationCode(
            code="",
            client_id=client_id,
            subject_id=subject_id,
            redirect_uri=redirect_uri,
            scopes=parse_scope(scopes),
            expires_at=expires_at,
            pkce_challenge=pkce_challenge or None,
            pkce_method=pkce_method if pkce_challenge else None,
        )
        with self._lock.write():
            code = self._random.token()
            while code in self._codes:
                code = self._random.token()
            record.code = code
            self._codes[code] = record
        logger.debug("Issued authorization code for client_id=%s sub=%s", client_id, subject_id)
        return code, expires_at

    def redeem(
        self,
        code: str,
        client_id: str,
        redirect_uri: str,
        verifier: str | None = None,
    ) -> tuple[str, frozenset[str]]:
        """
        Atomically check and consume a code. Returns (subject_id, scopes).
        Failed checks leave the code unconsumed; used is checked before expiry so a consumed code
        reports already_used for as long as the record exists.
        """
        with self._lock.write():
            record = self._codes.get(code)
            if record is None:
                raise CodeRedemptionError(CodeErrorKind.NOT_FOUND)
            if record.used:
                raise CodeRedemptionError(CodeErrorKind.ALREADY_USED)
            if record.expired(self._clock()):
                raise CodeRedemptionError(CodeErrorKind.EXPIRED)
            if record.client_id != client_id:
                raise CodeRedemptionError(CodeErrorKind.CLIENT_MISMATCH)
            if record.redirect_uri != redirect_uri:
                raise CodeRedemptionError(CodeErrorKind.REDIRECT_MISMATCH)
            if record.pkce_challenge:
                if not pkce.verify(verifier or "", record.pkce_challenge, record.pkce_method):
                    raise CodeRedemptionError(CodeErrorKind.PKCE_FAILURE)
            elif verifier:
                # A verifier for a code issued without a challenge is a downgrade attempt (RFC 9700 §2.1.1)
                raise CodeRedemptionError(CodeErrorKind.PKCE_FAILURE)
            record.used = True
            return record.subject_id, record.scopes

    def get(self, code: str) -> AuthorizationCode | None:
        with self._lock.read():
            return self._codes.get(code)

    def sweep(self, now: float | None = None) -> int:
        """Remove codes past expiry, used or not. Returns the number removed."""
        if now is None:
            now = self._clock()
        with self._lock.write():
            expired = [c for c, record in self._codes.items() if record.expires_at < now]
            for c in expired:
                del self._codes[c]
        if expired:
            logger.debug("Swept %d expired authorization codes", len(expired))
        return len(expired)

    def __len__(self) -> int:
        with self._lock.read():
            return len(self._codes)
