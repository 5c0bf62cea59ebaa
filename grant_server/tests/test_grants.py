"""
Tests for GrantEngine: the token endpoint pipeline across all five grants, without HTTP.
"""
import pytest

from grant_server.clients import ClientRegistry, make_client
from grant_server.codes import AuthorizationCodeLedger
from grant_server.device import DeviceAuthorizationLedger
from grant_server.errors import OAuthError
from grant_server.generators import RandomSource, RandomSourceError
from grant_server.grants import TOKEN_TYPE_ACCESS_TOKEN, GrantEngine, TokenRequest
from grant_server.passwords import hash_password
from grant_server.pkce import generate_pkce
from grant_server.tokens import TokenKind, TokenLedger

REDIRECT = "https://app/cb"
DEVICE_GRANT = "urn:ietf:params:oauth:grant-type:device_code"
EXCHANGE_GRANT = "urn:ietf:params:oauth:grant-type:token-exchange"


def _registry():
    return ClientRegistry(
        [
            make_client(
                "c1",
                grant_types=["authorization_code", "refresh_token", DEVICE_GRANT],
                scopes=["openid", "profile", "api:read"],
                redirect_uris=[REDIRECT],
            ),
            make_client(
                "svc",
                secret_hash=hash_password("svc-secret"),
                grant_types=["client_credentials", EXCHANGE_GRANT, "refresh_token"],
                scopes=["read", "write", "admin", "offline_access"],
                audiences=["api-service", "user-service"],
            ),
            make_client(
                "svc2",
                secret_hash=hash_password("svc2-secret"),
                grant_types=[EXCHANGE_GRANT],
                scopes=["read", "write"],
                audiences=["user-service"],
            ),
        ]
    )


def _engine(clock, **kwargs):
    registry = _registry()
    return GrantEngine(
        registry,
        AuthorizationCodeLedger(clock=clock),
        DeviceAuthorizationLedger(ttl=600, clock=clock),
        TokenLedger(clock=clock),
        **kwargs,
    )


@pytest.fixture
def engine(fake_clock):
    return _engine(fake_clock)


def _error(excinfo):
    return excinfo.value.error


def _client_credentials(engine, scope="read write", client_id="svc", secret="svc-secret"):
    return engine.token(
        TokenRequest(grant_type="client_credentials", client_id=client_id, client_secret=secret, scope=scope)
    )


def _code_flow(engine, scope="openid profile"):
    verifier, challenge = generate_pkce()
    code, _ = engine.authorize(
        client_id="c1",
        redirect_uri=REDIRECT,
        subject_id="u1",
        scope=scope,
        code_challenge=challenge,
        code_challenge_method="S256",
    )
    return engine.token(
        TokenRequest(
            grant_type="authorization_code", client_id="c1", code=code, redirect_uri=REDIRECT, code_verifier=verifier
        )
    )


# --- dispatch ---


def test_missing_grant_type(engine):
    with pytest.raises(OAuthError) as exc:
        engine.token(TokenRequest(client_id="c1"))
    assert _error(exc) == "invalid_request"


def test_unsupported_grant_type(engine):
    with pytest.raises(OAuthError) as exc:
        engine.token(TokenRequest(grant_type="password", client_id="c1"))
    assert _error(exc) == "unsupported_grant_type"


def test_missing_client_id_is_invalid_client(engine):
    with pytest.raises(OAuthError) as exc:
        engine.token(TokenRequest(grant_type="client_credentials"))
    assert _error(exc) == "invalid_client"
    assert exc.value.status_code == 401


def test_client_not_allowed_grant(engine):
    with pytest.raises(OAuthError) as exc:
        engine.token(TokenRequest(grant_type="client_credentials", client_id="c1"))
    assert _error(exc) == "unauthorized_client"


def test_from_form_picks_known_fields():
    req = TokenRequest.from_form({"grant_type": " client_credentials ", "scope": ["read", "write"], "junk": "x"})
    assert req.grant_type == "client_credentials"
    assert req.scope == "read write"
    assert req.client_id is None


# --- authorization_code ---


def test_authorization_code_happy_path(engine):
    payload = _code_flow(engine)
    assert payload["token_type"] == "Bearer"
    assert payload["scope"] == "openid profile"
    assert "refresh_token" in payload
    info = engine.tokens.validate(payload["access_token"], TokenKind.ACCESS)
    assert info.subject_id == "u1"
    assert info.audience == {"api-service"}


def test_authorization_code_replay(engine):
    verifier, challenge = generate_pkce()
    code, _ = engine.authorize(client_id="c1", redirect_uri=REDIRECT, subject_id="u1", code_challenge=challenge)
    req = TokenRequest(
        grant_type="authorization_code", client_id="c1", code=code, redirect_uri=REDIRECT, code_verifier=verifier
    )
    # Method omitted at /authorize means plain; the S256 verifier does not match
    with pytest.raises(OAuthError) as exc:
        engine.token(req)
    assert exc.value.error_description == "PKCE verification failed"
    req.code_verifier = challenge
    engine.token(req)
    with pytest.raises(OAuthError) as exc:
        engine.token(req)
    assert _error(exc) == "invalid_grant"
    assert exc.value.error_description == "Authorization code already used"


def test_authorization_code_missing_params(engine):
    with pytest.raises(OAuthError) as exc:
        engine.token(TokenRequest(grant_type="authorization_code", client_id="c1", code="x"))
    assert _error(exc) == "invalid_request"


def test_authorize_requires_pkce_for_public_clients(engine):
    with pytest.raises(OAuthError) as exc:
        engine.authorize(client_id="c1", redirect_uri=REDIRECT, subject_id="u1")
    assert _error(exc) == "invalid_request"
    assert exc.value.redirectable


def test_authorize_rejects_unregistered_redirect_without_redirecting(engine):
    with pytest.raises(OAuthError) as exc:
        engine.authorize(client_id="c1", redirect_uri="https://evil/cb", subject_id="u1", code_challenge="x")
    assert not exc.value.redirectable


def test_authorize_invalid_scope_is_redirectable(engine):
    with pytest.raises(OAuthError) as exc:
        engine.authorize(client_id="c1", redirect_uri=REDIRECT, subject_id="u1", scope="admin", code_challenge="x")
    assert _error(exc) == "invalid_scope"
    assert exc.value.redirectable


def test_authorize_unsupported_response_type(engine):
    with pytest.raises(OAuthError) as exc:
        engine.authorize(
            client_id="c1", redirect_uri=REDIRECT, subject_id="u1", response_type="token", code_challenge="x"
        )
    assert _error(exc) == "unsupported_response_type"


# --- client_credentials ---


def test_client_credentials_defaults_to_all_client_scopes(engine):
    payload = _client_credentials(engine, scope=None)
    assert payload["scope"] == "admin offline_access read write"
    assert "refresh_token" in payload


def test_client_credentials_no_refresh_without_offline_access(engine):
    payload = _client_credentials(engine, scope="read")
    assert payload["scope"] == "read"
    assert "refresh_token" not in payload
    assert engine.tokens.validate(payload["access_token"]).subject_id is None


def test_client_credentials_bad_secret(engine):
    with pytest.raises(OAuthError) as exc:
        _client_credentials(engine, secret="wrong")
    assert _error(exc) == "invalid_client"


def test_client_credentials_scope_exceeds_client(engine):
    with pytest.raises(OAuthError) as exc:
        _client_credentials(engine, client_id="svc2", secret="svc2-secret", scope="admin")
    # svc2 may not use client_credentials at all; grant check comes before scope
    assert _error(exc) == "unauthorized_client"
    with pytest.raises(OAuthError) as exc:
        _client_credentials(engine, scope="read superuser")
    assert _error(exc) == "invalid_scope"


# --- refresh_token ---


def test_refresh_rotation(engine):
    first = _code_flow(engine)
    second = engine.token(TokenRequest(grant_type="refresh_token", client_id="c1", refresh_token=first["refresh_token"]))
    assert second["refresh_token"] != first["refresh_token"]
    assert second["scope"] == "openid profile"
    with pytest.raises(OAuthError) as exc:
        engine.token(TokenRequest(grant_type="refresh_token", client_id="c1", refresh_token=first["refresh_token"]))
    assert _error(exc) == "invalid_grant"


def test_refresh_scope_narrowing_and_widening(engine):
    first = _code_flow(engine)
    narrowed = engine.token(
        TokenRequest(grant_type="refresh_token", client_id="c1", refresh_token=first["refresh_token"], scope="openid")
    )
    assert narrowed["scope"] == "openid"
    with pytest.raises(OAuthError) as exc:
        engine.token(
            TokenRequest(
                grant_type="refresh_token", client_id="c1", refresh_token=narrowed["refresh_token"], scope="openid profile"
            )
        )
    assert _error(exc) == "invalid_scope"


def test_refresh_token_of_other_client(engine):
    issued = _client_credentials(engine, scope="read offline_access")
    with pytest.raises(OAuthError) as exc:
        engine.token(TokenRequest(grant_type="refresh_token", client_id="c1", refresh_token=issued["refresh_token"]))
    assert _error(exc) == "invalid_grant"


def test_access_token_is_not_a_refresh_token(engine):
    issued = _code_flow(engine)
    with pytest.raises(OAuthError) as exc:
        engine.token(TokenRequest(grant_type="refresh_token", client_id="c1", refresh_token=issued["access_token"]))
    assert _error(exc) == "invalid_grant"


# --- device_code ---


def test_device_flow_scenario(engine):
    ticket = engine.request_device_authorization("c1", None, "api:read")
    assert ticket["expires_in"] == 600
    assert ticket["interval"] == engine.poll_interval
    poll = TokenRequest(grant_type=DEVICE_GRANT, client_id="c1", device_code=ticket["device_code"])
    with pytest.raises(OAuthError) as exc:
        engine.token(poll)
    assert _error(exc) == "authorization_pending"

    engine.approve_device(ticket["user_code"], "u1")
    payload = engine.token(poll)
    assert payload["scope"] == "api:read"
    assert engine.tokens.validate(payload["access_token"]).subject_id == "u1"

    with pytest.raises(OAuthError) as exc:
        engine.token(poll)
    assert _error(exc) == "invalid_grant"


def test_device_denied(engine):
    ticket = engine.request_device_authorization("c1", None, "api:read")
    engine.deny_device(ticket["user_code"])
    with pytest.raises(OAuthError) as exc:
        engine.token(TokenRequest(grant_type=DEVICE_GRANT, client_id="c1", device_code=ticket["device_code"]))
    assert _error(exc) == "access_denied"


def test_device_expired(engine, fake_clock):
    ticket = engine.request_device_authorization("c1", None, "api:read")
    fake_clock.advance(601)
    with pytest.raises(OAuthError) as exc:
        engine.token(TokenRequest(grant_type=DEVICE_GRANT, client_id="c1", device_code=ticket["device_code"]))
    assert _error(exc) == "expired_token"


def test_device_request_scope_checked(engine):
    with pytest.raises(OAuthError) as exc:
        engine.request_device_authorization("c1", None, "admin")
    assert _error(exc) == "invalid_scope"


def test_device_approve_unknown_code(engine):
    with pytest.raises(OAuthError) as exc:
        engine.approve_device("ZZZZ-ZZZZ", "u1")
    assert _error(exc) == "invalid_grant"


# --- token exchange ---


def _exchange(engine, subject_token, scope=None, audience=None, client_id="svc2", secret="svc2-secret"):
    return engine.token(
        TokenRequest(
            grant_type=EXCHANGE_GRANT,
            client_id=client_id,
            client_secret=secret,
            subject_token=subject_token,
            subject_token_type=TOKEN_TYPE_ACCESS_TOKEN,
            scope=scope,
            audience=audience,
        )
    )


def test_token_exchange_scope_fallback_scenario(engine):
    subject = _client_credentials(engine, scope="read write")["access_token"]
    narrowed = _exchange(engine, subject, scope="write")
    assert narrowed["scope"] == "write"
    assert narrowed["issued_token_type"] == TOKEN_TYPE_ACCESS_TOKEN
    fallback = _exchange(engine, subject, scope="admin")
    assert fallback["scope"] == "read write"
    assert engine.tokens.validate(fallback["access_token"]).scopes == {"read", "write"}


def test_token_exchange_strict_scope(fake_clock):
    engine = _engine(fake_clock, strict_exchange_scope=True)
    subject = _client_credentials(engine, scope="read write")["access_token"]
    with pytest.raises(OAuthError) as exc:
        _exchange(engine, subject, scope="admin")
    assert _error(exc) == "invalid_scope"


def test_token_exchange_audience(engine):
    subject = _client_credentials(engine, scope="read")["access_token"]
    payload = _exchange(engine, subject, audience="user-service")
    info = engine.tokens.validate(payload["access_token"])
    assert info.audience == {"user-service"}
    assert info.client_id == "svc2"
    with pytest.raises(OAuthError) as exc:
        _exchange(engine, subject, audience="api-service")
    assert _error(exc) == "invalid_request"


def test_token_exchange_keeps_subject(engine):
    user_token = _code_flow(engine)["access_token"]
    payload = _exchange(engine, user_token)
    assert engine.tokens.validate(payload["access_token"]).subject_id == "u1"


def test_token_exchange_rejects_bad_subject_token(engine):
    with pytest.raises(OAuthError) as exc:
        _exchange(engine, "not-a-token")
    assert _error(exc) == "invalid_grant"


def test_token_exchange_rejects_unknown_token_type(engine):
    with pytest.raises(OAuthError) as exc:
        engine.token(
            TokenRequest(
                grant_type=EXCHANGE_GRANT,
                client_id="svc2",
                client_secret="svc2-secret",
                subject_token="x",
                subject_token_type="urn:ietf:params:oauth:token-type:jwt",
            )
        )
    assert _error(exc) == "invalid_request"


# --- revocation / introspection ---


def test_revoke_only_own_tokens(engine):
    user_tokens = _code_flow(engine)
    assert engine.revoke(user_tokens["access_token"], "svc", "svc-secret") is False
    assert engine.tokens.validate(user_tokens["access_token"])
    assert engine.revoke(user_tokens["refresh_token"], "c1") is True
    assert engine.introspect(user_tokens["access_token"], "svc", "svc-secret") == {"active": False}


def test_revoke_unknown_token_is_silent(engine):
    assert engine.revoke("never-issued", "c1") is False


def test_revoke_requires_client_auth(engine):
    issued = _client_credentials(engine)
    with pytest.raises(OAuthError) as exc:
        engine.revoke(issued["access_token"], "svc", "wrong")
    assert _error(exc) == "invalid_client"


# --- random source failure ---


class _BrokenRandom(RandomSource):
    def token(self, nbytes: int = 32) -> str:
        raise RandomSourceError("entropy pool unavailable")


def test_random_source_failure_is_server_error(fake_clock):
    registry = _registry()
    engine = GrantEngine(
        registry,
        AuthorizationCodeLedger(clock=fake_clock),
        DeviceAuthorizationLedger(clock=fake_clock),
        TokenLedger(clock=fake_clock, random_source=_BrokenRandom()),
    )
    with pytest.raises(OAuthError) as exc:
        _client_credentials(engine)
    assert _error(exc) == "server_error"
    assert exc.value.status_code == 500


class _FailsOnThirdToken(RandomSource):
    def __init__(self):
        self.calls = 0

    def token(self, nbytes: int = 32) -> str:
        self.calls += 1
        if self.calls == 3:
            raise RandomSourceError("entropy pool unavailable")
        return super().token(nbytes)


def test_random_failure_mid_issue_stores_no_tokens(fake_clock):
    tokens = TokenLedger(clock=fake_clock, random_source=_FailsOnThirdToken())
    engine = GrantEngine(
        _registry(),
        AuthorizationCodeLedger(clock=fake_clock),
        DeviceAuthorizationLedger(clock=fake_clock),
        tokens,
    )
    with pytest.raises(OAuthError) as exc:
        _client_credentials(engine, scope="read offline_access")
    assert _error(exc) == "server_error"
    assert len(tokens) == 0
