"""
Seed users and OAuth clients from environment. No hardcoded credentials.
Optional: set OAUTH_SEED_USER + OAUTH_SEED_PASSWORD, OAUTH_CLIENT_ID + OAUTH_REDIRECT_URI(s).
Development clients frontend-client and backend-client are created when missing; their secrets
come from OAUTH_FRONTEND_CLIENT_SECRET / OAUTH_BACKEND_CLIENT_SECRET.
"""
import logging
import os

from sqlalchemy.orm import Session

from grant_server.clients import (
    GRANT_AUTHORIZATION_CODE,
    GRANT_CLIENT_CREDENTIALS,
    GRANT_DEVICE_CODE,
    GRANT_REFRESH_TOKEN,
    GRANT_TOKEN_EXCHANGE,
    Client,
    ClientRegistrationError,
)
from grant_server.models import ClientRecord, User
from grant_server.passwords import hash_password

logger = logging.getLogger(__name__)


def _split(value: str | None, sep: str = ",") -> list[str]:
    if not value:
        return []
    return [v.strip() for v in value.split(sep) if v.strip()]


def _add_client(db: Session, record: ClientRecord) -> bool:
    if db.query(ClientRecord).filter(ClientRecord.client_id == record.client_id).first() is not None:
        logger.debug("Client already exists: %s", record.client_id)
        return False
    db.add(record)
    db.commit()
    logger.info("Seeded client: %s (confidential=%s)", record.client_id, bool(record.client_secret_hash))
    return True


def seed_users(db: Session) -> None:
    seed_user = os.environ.get("OAUTH_SEED_USER")
    seed_password = os.environ.get("OAUTH_SEED_PASSWORD")
    if seed_user and seed_password:
        if db.query(User).filter(User.username == seed_user).first() is None:
            db.add(User(username=seed_user, password_hash=hash_password(seed_password)))
            db.commit()
            logger.info("Seeded user: %s", seed_user)
        else:
            logger.debug("User already exists: %s", seed_user)


def seed_env_client(db: Session) -> None:
    """One client from OAUTH_CLIENT_ID and OAUTH_REDIRECT_URI(S); optional secret makes it confidential."""
    client_id = os.environ.get("OAUTH_CLIENT_ID")
    uris = _split(os.environ.get("OAUTH_REDIRECT_URI") or os.environ.get("OAUTH_REDIRECT_URIS"))
    if not client_id or not uris:
        return
    client_secret = os.environ.get("OAUTH_SEED_CLIENT_SECRET")
    grant_types = _split(os.environ.get("OAUTH_CLIENT_GRANT_TYPES")) or [GRANT_AUTHORIZATION_CODE, GRANT_REFRESH_TOKEN]
    scopes = _split(os.environ.get("OAUTH_CLIENT_SCOPES"), " ") or ["openid", "profile", "email", "offline_access"]
    _add_client(
        db,
        ClientRecord.build(
            client_id,
            secret_hash=hash_password(client_secret) if client_secret else None,
            redirect_uris=uris,
            grant_types=grant_types,
            scopes=scopes,
        ),
    )


def seed_dev_clients(db: Session) -> None:
    """
    frontend-client: user-facing app (authorization_code, device_code, refresh_token). Public unless a
    secret is configured. backend-client: service client (client_credentials, token_exchange,
    refresh_token); confidential, so it is only seeded when its secret is configured.
    """
    frontend_secret = os.environ.get("OAUTH_FRONTEND_CLIENT_SECRET")
    _add_client(
        db,
        ClientRecord.build(
            "frontend-client",
            name="Frontend application",
            secret_hash=hash_password(frontend_secret) if frontend_secret else None,
            redirect_uris=_split(os.environ.get("OAUTH_FRONTEND_REDIRECT_URI")) or ["http://localhost:8080/callback"],
            grant_types=[GRANT_AUTHORIZATION_CODE, GRANT_REFRESH_TOKEN, GRANT_DEVICE_CODE],
            scopes=["openid", "profile", "email", "offline_access", "api:read"],
            audiences=["api-service", "user-service"],
        ),
    )
    backend_secret = os.environ.get("OAUTH_BACKEND_CLIENT_SECRET")
    if not backend_secret:
        logger.debug("OAUTH_BACKEND_CLIENT_SECRET not set; backend-client not seeded")
        return
    _add_client(
        db,
        ClientRecord.build(
            "backend-client",
            name="Backend service",
            secret_hash=hash_password(backend_secret),
            grant_types=[GRANT_CLIENT_CREDENTIALS, GRANT_TOKEN_EXCHANGE, GRANT_REFRESH_TOKEN],
            scopes=["api:read", "api:write", "offline_access"],
            audiences=["api-service"],
        ),
    )


def seed_from_env(db: Session) -> None:
    """Create users and clients from env if set, plus the development clients."""
    seed_users(db)
    seed_env_client(db)
    seed_dev_clients(db)


def load_clients(db: Session) -> list[Client]:
    """All stored client configurations as registry values. Invalid rows are skipped and logged."""
    clients = []
    for record in db.query(ClientRecord).order_by(ClientRecord.id).all():
        client = record.to_client()
        try:
            _check_loadable(client)
        except ClientRegistrationError as e:
            logger.error("Skipping stored client %s: %s", record.client_id, e)
            continue
        clients.append(client)
    return clients


def _check_loadable(client: Client) -> None:
    if GRANT_AUTHORIZATION_CODE in client.grant_types and not client.redirect_uris:
        raise ClientRegistrationError("redirect_uris are required for the authorization_code grant")
