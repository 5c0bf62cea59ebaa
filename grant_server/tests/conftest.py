"""
Pytest configuration for grant_server. Use in-memory SQLite so tests don't touch the filesystem,
cheap bcrypt so client and user fixtures are fast, and no background sweeper.
"""
import os

# In-memory SQLite; database.py uses StaticPool so all connections share the same DB
os.environ["AUTH_DATABASE_URL"] = "sqlite:///:memory:"
os.environ["OAUTH_BCRYPT_ROUNDS"] = "4"
os.environ["OAUTH_SWEEP_INTERVAL_SECONDS"] = "0"
# Avoid seed_from_env using unexpected env values during tests
for _name in (
    "OAUTH_SEED_PASSWORD",
    "OAUTH_SEED_USER",
    "OAUTH_CLIENT_ID",
    "OAUTH_REDIRECT_URI",
    "OAUTH_REDIRECT_URIS",
    "OAUTH_BACKEND_CLIENT_SECRET",
    "OAUTH_FRONTEND_CLIENT_SECRET",
    "OAUTH_REGISTRATION_TOKEN",
    "OAUTH_TOKEN_EXCHANGE_STRICT_SCOPE",
):
    os.environ.pop(_name, None)

import pytest
from fastapi.testclient import TestClient

from grant_server.database import SessionLocal, init_db
from grant_server.main import create_app
from grant_server.models import ClientRecord, User
from grant_server.passwords import hash_password
from grant_server.seed import load_clients

REDIRECT_URI = "http://127.0.0.1:8000/callback"


class FakeClock:
    """Settable wall clock for ledger tests."""

    def __init__(self, now: float = 1_700_000_000.0):
        self.now = now

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


@pytest.fixture
def fake_clock():
    return FakeClock()


@pytest.fixture
def app():
    return create_app(sweep_interval=0)


@pytest.fixture
def client(app):
    with TestClient(app) as c:
        yield c


def _ensure_user(db, username, password, **kwargs):
    if db.query(User).filter(User.username == username).first() is None:
        db.add(User(username=username, password_hash=hash_password(password), **kwargs))


def _ensure_client(db, client_id, **kwargs):
    if db.query(ClientRecord).filter(ClientRecord.client_id == client_id).first() is None:
        db.add(ClientRecord.build(client_id, **kwargs))


@pytest.fixture
def seeded(client, app):
    """
    Test users and clients, persisted and loaded into this app's registry:
      web-client      public; authorization_code, refresh_token, device_code
      conf-web        confidential (conf-secret); authorization_code, refresh_token
      service-client  confidential (service-secret); client_credentials, token_exchange, refresh_token
    """
    init_db()
    db = SessionLocal()
    try:
        _ensure_user(db, "tokenuser", "tokenpass", name="Token User", email="tokenuser@example.com")
        _ensure_client(
            db,
            "web-client",
            redirect_uris=[REDIRECT_URI],
            grant_types=["authorization_code", "refresh_token", "urn:ietf:params:oauth:grant-type:device_code"],
            scopes=["openid", "profile", "email", "offline_access", "api:read"],
            audiences=["api-service"],
        )
        _ensure_client(
            db,
            "conf-web",
            secret_hash=hash_password("conf-secret"),
            redirect_uris=[REDIRECT_URI],
            grant_types=["authorization_code", "refresh_token"],
            scopes=["openid", "profile", "api:read"],
        )
        _ensure_client(
            db,
            "service-client",
            secret_hash=hash_password("service-secret"),
            grant_types=["client_credentials", "urn:ietf:params:oauth:grant-type:token-exchange", "refresh_token"],
            scopes=["api:read", "api:write", "read", "write", "offline_access"],
            audiences=["api-service", "user-service"],
        )
        db.commit()
        app.state.clients.load(load_clients(db))
        yield db
    finally:
        db.close()
