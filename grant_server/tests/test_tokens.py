"""
Tests for the token ledger: validation, revocation cascade, rotation, introspection.
"""
from concurrent.futures import ThreadPoolExecutor

import pytest

from grant_server.generators import RandomSource, RandomSourceError
from grant_server.tokens import TokenError, TokenErrorKind, TokenKind, TokenLedger


@pytest.fixture
def ledger(fake_clock):
    return TokenLedger(clock=fake_clock, issuer="http://issuer.test")


def _grant(ledger, scopes=("read", "write"), subject="user1"):
    return ledger.issue_pair("c1", subject, scopes, "api-service", access_ttl=3600, refresh_ttl=86400)


def test_validate_access_token(ledger):
    access, _ = _grant(ledger)
    info = ledger.validate(access, TokenKind.ACCESS)
    assert info.client_id == "c1"
    assert info.subject_id == "user1"
    assert info.scopes == {"read", "write"}
    assert info.audience == {"api-service"}


def test_validate_wrong_kind(ledger):
    access, refresh = _grant(ledger)
    with pytest.raises(TokenError) as exc:
        ledger.validate(access, TokenKind.REFRESH)
    assert exc.value.kind is TokenErrorKind.WRONG_KIND
    assert ledger.validate(refresh).kind is TokenKind.REFRESH


def test_validate_unknown(ledger):
    with pytest.raises(TokenError) as exc:
        ledger.validate("nope")
    assert exc.value.kind is TokenErrorKind.NOT_FOUND


def test_expiry_and_clock_rollback(ledger, fake_clock):
    access, _ = _grant(ledger)
    fake_clock.advance(3600)
    with pytest.raises(TokenError) as exc:
        ledger.validate(access)
    assert exc.value.kind is TokenErrorKind.EXPIRED
    fake_clock.advance(-1800)
    with pytest.raises(TokenError):
        ledger.validate(access)


def test_revoke_is_idempotent_and_silent(ledger):
    access, _ = _grant(ledger)
    ledger.revoke(access)
    ledger.revoke(access)
    ledger.revoke("never-issued")
    with pytest.raises(TokenError) as exc:
        ledger.validate(access)
    assert exc.value.kind is TokenErrorKind.REVOKED


def test_revoking_refresh_revokes_its_access_tokens(ledger):
    access, refresh = _grant(ledger)
    other_access, _ = _grant(ledger)
    ledger.revoke(refresh)
    for value in (access, refresh):
        with pytest.raises(TokenError):
            ledger.validate(value)
    assert ledger.validate(other_access).client_id == "c1"


def test_revoking_access_leaves_refresh(ledger):
    access, refresh = _grant(ledger)
    ledger.revoke(access)
    assert ledger.validate(refresh, TokenKind.REFRESH).subject_id == "user1"


def test_rotation_invalidates_predecessor(ledger):
    _, refresh = _grant(ledger)
    pair = ledger.rotate_refresh(refresh, client_id="c1")
    with pytest.raises(TokenError) as exc:
        ledger.validate(refresh)
    assert exc.value.kind is TokenErrorKind.REVOKED
    new_refresh = ledger.validate(pair.refresh_token, TokenKind.REFRESH)
    assert new_refresh.scopes == {"read", "write"}
    assert new_refresh.audience == {"api-service"}
    with pytest.raises(TokenError):
        ledger.rotate_refresh(refresh, client_id="c1")


def test_rotation_narrows_scope(ledger):
    _, refresh = _grant(ledger)
    pair = ledger.rotate_refresh(refresh, scopes=["read"])
    assert ledger.validate(pair.access_token).scopes == {"read"}
    assert ledger.validate(pair.refresh_token).scopes == {"read"}


def test_rotation_rejects_wider_scope_without_side_effects(ledger):
    _, refresh = _grant(ledger, scopes=["read"])
    with pytest.raises(TokenError) as exc:
        ledger.rotate_refresh(refresh, scopes=["read", "admin"])
    assert exc.value.kind is TokenErrorKind.SCOPE_EXCEEDED
    assert ledger.validate(refresh).scopes == {"read"}


def test_rotation_rejects_other_client(ledger):
    _, refresh = _grant(ledger)
    with pytest.raises(TokenError) as exc:
        ledger.rotate_refresh(refresh, client_id="c2")
    assert exc.value.kind is TokenErrorKind.CLIENT_MISMATCH
    assert ledger.validate(refresh).client_id == "c1"


def test_concurrent_rotation_succeeds_once(ledger):
    _, refresh = _grant(ledger)

    def attempt(_):
        try:
            return ledger.rotate_refresh(refresh)
        except TokenError:
            return None

    with ThreadPoolExecutor(max_workers=8) as pool:
        results = list(pool.map(attempt, range(32)))
    assert sum(r is not None for r in results) == 1


def test_revoking_rotated_refresh_cascades_to_new_access(ledger):
    _, refresh = _grant(ledger)
    pair = ledger.rotate_refresh(refresh)
    ledger.revoke(pair.refresh_token)
    with pytest.raises(TokenError):
        ledger.validate(pair.access_token)


def test_introspect_active(ledger, fake_clock):
    access, _ = _grant(ledger)
    data = ledger.introspect(access)
    assert data["active"] is True
    assert data["scope"] == "read write"
    assert data["client_id"] == "c1"
    assert data["sub"] == "user1"
    assert data["aud"] == ["api-service"]
    assert data["iss"] == "http://issuer.test"
    assert data["token_type"] == "access_token"
    assert data["exp"] == int(fake_clock.now + 3600)


def test_introspect_inactive_reveals_nothing(ledger):
    access, _ = _grant(ledger)
    ledger.revoke(access)
    assert ledger.introspect(access) == {"active": False}
    assert ledger.introspect("garbage") == {"active": False}


def test_client_token_has_no_sub(ledger):
    access = ledger.issue_access("c1", None, ["read"])
    assert "sub" not in ledger.introspect(access)


def test_owner_of(ledger):
    access, _ = _grant(ledger)
    assert ledger.owner_of(access) == "c1"
    assert ledger.owner_of("unknown") is None


def test_stats_and_sweep(ledger, fake_clock):
    access, _ = _grant(ledger)
    ledger.revoke(access)
    stats = ledger.stats()
    assert stats["access"]["revoked"] == 1
    assert stats["refresh"]["active"] == 1
    fake_clock.advance(3601)
    assert ledger.sweep() == 1
    assert len(ledger) == 1
    fake_clock.advance(86400)
    assert ledger.sweep() == 1
    assert len(ledger) == 0


class _FailsOnCall(RandomSource):
    """token() raises on its nth call; every other call succeeds."""

    def __init__(self, n: int):
        self.n = n
        self.calls = 0

    def token(self, nbytes: int = 32) -> str:
        self.calls += 1
        if self.calls == self.n:
            raise RandomSourceError("entropy pool unavailable")
        return super().token(nbytes)


def test_issue_pair_stores_nothing_when_random_fails(fake_clock):
    # grant id, access, refresh: the refresh draw fails
    ledger = TokenLedger(clock=fake_clock, random_source=_FailsOnCall(3))
    with pytest.raises(RandomSourceError):
        ledger.issue_pair("c1", "user1", ["read"], "api-service")
    assert len(ledger) == 0


def test_rotation_leaves_predecessor_valid_when_random_fails(fake_clock):
    # calls 1-3 issue the first pair; call 5 is the successor refresh token
    ledger = TokenLedger(clock=fake_clock, random_source=_FailsOnCall(5))
    access, refresh = _grant(ledger)
    with pytest.raises(RandomSourceError):
        ledger.rotate_refresh(refresh, client_id="c1")
    assert len(ledger) == 2
    assert ledger.validate(refresh, TokenKind.REFRESH).client_id == "c1"
    assert ledger.validate(access, TokenKind.ACCESS).client_id == "c1"

    pair = ledger.rotate_refresh(refresh, client_id="c1")
    assert ledger.validate(pair.refresh_token, TokenKind.REFRESH).scopes == {"read", "write"}
