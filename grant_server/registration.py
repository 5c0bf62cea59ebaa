"""
Dynamic client registration (POST /register). Subset of RFC 7591.
When OAUTH_REGISTRATION_TOKEN is set, callers must present it as a Bearer initial access token.
The client_secret is returned once and only its bcrypt hash is stored.
"""
import logging
import secrets
import time
from urllib.parse import urlparse

from fastapi import APIRouter, Depends, HTTPException, Request
from pydantic import BaseModel
from sqlalchemy.orm import Session

from grant_server import errors
from grant_server.audit import EVENT_CLIENT_REGISTERED, OUTCOME_SUCCESS, get_client_ip, log_audit
from grant_server.clients import (
    GRANT_AUTHORIZATION_CODE,
    SUPPORTED_GRANT_TYPES,
    ClientRegistrationError,
    ClientRegistry,
    make_client,
    normalize_grant_type,
)
from grant_server.config import REGISTRATION_TOKEN, SUPPORTED_SCOPES
from grant_server.database import get_db
from grant_server.errors import OAuthError
from grant_server.generators import RandomSource, RandomSourceError
from grant_server.models import ClientRecord
from grant_server.passwords import hash_password
from grant_server.scopes import format_scope, parse_scope

logger = logging.getLogger(__name__)
router = APIRouter()

AUTH_METHOD_NONE = "none"
AUTH_METHODS = {"client_secret_basic", "client_secret_post", AUTH_METHOD_NONE}
DEFAULT_SCOPE = "openid profile email"

_random = RandomSource()


class ClientRegistrationRequest(BaseModel):
    client_name: str | None = None
    redirect_uris: list[str] = []
    grant_types: list[str] = [GRANT_AUTHORIZATION_CODE]
    scope: str | None = None
    audience: list[str] = []
    token_endpoint_auth_method: str = "client_secret_basic"


def _check_registration_token(request: Request) -> None:
    if REGISTRATION_TOKEN is None:
        return
    header = request.headers.get("Authorization") or ""
    scheme, _, presented = header.partition(" ")
    if scheme.lower() != "bearer" or not secrets.compare_digest(presented.strip(), REGISTRATION_TOKEN):
        raise HTTPException(
            status_code=401,
            detail={"error": "invalid_token", "error_description": "Valid initial access token required"},
            headers={"WWW-Authenticate": "Bearer"},
        )


def _validate_redirect_uri(uri: str) -> None:
    parsed = urlparse(uri)
    if parsed.scheme not in ("http", "https") or not parsed.netloc or parsed.fragment:
        raise OAuthError(errors.INVALID_REDIRECT_URI, f"Invalid redirect_uri: {uri}")


def register_client(db: Session, registry: ClientRegistry, body: ClientRegistrationRequest) -> dict:
    """Validate metadata, add the client to the registry and persist it. Returns the RFC 7591 response."""
    grant_types = {normalize_grant_type(g) for g in body.grant_types if g}
    unsupported = grant_types - SUPPORTED_GRANT_TYPES
    if not grant_types or unsupported:
        raise OAuthError(errors.INVALID_CLIENT_METADATA, f"Unsupported grant_types: {', '.join(sorted(unsupported))}")
    if body.token_endpoint_auth_method not in AUTH_METHODS:
        raise OAuthError(errors.INVALID_CLIENT_METADATA, "Unsupported token_endpoint_auth_method")
    scopes = parse_scope(body.scope if body.scope is not None else DEFAULT_SCOPE)
    unknown = scopes - SUPPORTED_SCOPES
    if unknown:
        raise OAuthError(errors.INVALID_CLIENT_METADATA, f"Unsupported scope(s): {', '.join(sorted(unknown))}")
    for uri in body.redirect_uris:
        _validate_redirect_uri(uri)
    if GRANT_AUTHORIZATION_CODE in grant_types and not body.redirect_uris:
        raise OAuthError(errors.INVALID_REDIRECT_URI, "redirect_uris are required for the authorization_code grant")

    try:
        client_id = _random.token(16)
        client_secret = None if body.token_endpoint_auth_method == AUTH_METHOD_NONE else _random.token()
    except RandomSourceError as e:
        raise OAuthError(errors.SERVER_ERROR, "Failed to generate client credentials") from e
    secret_hash = hash_password(client_secret) if client_secret else None

    client = make_client(
        client_id,
        secret_hash=secret_hash,
        grant_types=grant_types,
        scopes=scopes,
        audiences=body.audience,
        redirect_uris=body.redirect_uris,
        name=body.client_name or "",
    )
    try:
        registry.register(client)
    except ClientRegistrationError as e:
        raise OAuthError(errors.INVALID_CLIENT_METADATA, str(e)) from e
    db.add(
        ClientRecord.build(
            client_id,
            secret_hash=secret_hash,
            redirect_uris=client.redirect_uris,
            grant_types=client.grant_types,
            scopes=client.scopes,
            audiences=client.audiences,
            name=body.client_name,
        )
    )
    db.commit()

    response = {
        "client_id": client_id,
        "client_id_issued_at": int(time.time()),
        "client_name": client.name,
        "redirect_uris": sorted(client.redirect_uris),
        "grant_types": sorted(client.grant_types),
        "scope": format_scope(client.scopes),
        "audience": sorted(client.audiences),
        "token_endpoint_auth_method": body.token_endpoint_auth_method,
    }
    if client_secret:
        response["client_secret"] = client_secret
        response["client_secret_expires_at"] = 0
    return response


@router.post("/register", status_code=201)
def register(
    request: Request,
    body: ClientRegistrationRequest,
    db: Session = Depends(get_db),
):
    _check_registration_token(request)
    response = register_client(db, request.app.state.clients, body)
    log_audit(
        db, EVENT_CLIENT_REGISTERED, client_id=response["client_id"], ip=get_client_ip(request), outcome=OUTCOME_SUCCESS
    )
    logger.info("Registered client %s via dynamic registration", response["client_id"])
    return response
