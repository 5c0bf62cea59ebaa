"""
Authorization endpoint (POST /authorize). The user posts credentials together with the authorization
request; on success an authorization code is issued and the user agent is redirected to redirect_uri.
Errors are only redirected once client_id and redirect_uri have been verified (RFC 6749 §4.1.2.1).
"""
import logging
from urllib.parse import urlencode

from fastapi import APIRouter, Depends, Form, HTTPException, Request
from fastapi.responses import RedirectResponse
from sqlalchemy.orm import Session

from grant_server.audit import (
    EVENT_CODE_ISSUED,
    EVENT_GRANT_FAILED,
    EVENT_LOGIN_FAIL,
    EVENT_LOGIN_OK,
    OUTCOME_FAIL,
    OUTCOME_SUCCESS,
    get_client_ip,
    log_audit,
)
from grant_server.config import RATE_LIMIT_LOGIN_PER_MINUTE
from grant_server.database import get_db
from grant_server.dependencies import get_engine
from grant_server.errors import OAuthError
from grant_server.grants import GrantEngine
from grant_server.models import User
from grant_server.passwords import dummy_hash, verify_password
from grant_server.rate_limit import enforce

logger = logging.getLogger(__name__)
router = APIRouter()


def authenticate_user(db: Session, username: str | None, password: str | None) -> User | None:
    """Check username/password. Unknown users burn a dummy bcrypt check so timing does not reveal them."""
    user = db.query(User).filter(User.username == username).first() if username else None
    if user is None:
        verify_password(password or "", dummy_hash())
        return None
    if not verify_password(password or "", user.password_hash):
        return None
    return user


def _redirect(redirect_uri: str, params: dict) -> RedirectResponse:
    sep = "&" if "?" in redirect_uri else "?"
    return RedirectResponse(url=f"{redirect_uri}{sep}{urlencode(params)}", status_code=302)


def _redirect_error(redirect_uri: str, error: OAuthError, state: str | None) -> RedirectResponse:
    params = error.to_dict()
    if state:
        params["state"] = state
    return _redirect(redirect_uri, params)


@router.post("/authorize")
def authorize_post(
    request: Request,
    client_id: str | None = Form(None),
    redirect_uri: str | None = Form(None),
    response_type: str | None = Form(None),
    scope: str = Form(""),
    state: str | None = Form(None),
    username: str | None = Form(None),
    password: str | None = Form(None),
    code_challenge: str | None = Form(None),
    code_challenge_method: str | None = Form(None),
    engine: GrantEngine = Depends(get_engine),
    db: Session = Depends(get_db),
):
    """
    Process login and issue a code: redirect to redirect_uri?code=...&state=...
    Unknown client or unregistered redirect_uri: 400 JSON, never redirected.
    Bad credentials: 401 JSON.
    """
    ip = get_client_ip(request)
    enforce(request, "login", RATE_LIMIT_LOGIN_PER_MINUTE, ip)
    engine.resolve_redirect(client_id, redirect_uri)

    user = authenticate_user(db, username, password)
    if user is None:
        log_audit(db, EVENT_LOGIN_FAIL, client_id=client_id, ip=ip, outcome=OUTCOME_FAIL)
        raise HTTPException(
            status_code=401,
            detail={"error": "access_denied", "error_description": "Invalid username or password"},
        )
    log_audit(db, EVENT_LOGIN_OK, client_id=client_id, subject_id=user.subject_id, ip=ip, outcome=OUTCOME_SUCCESS)

    try:
        code, _ = engine.authorize(
            client_id=client_id,
            redirect_uri=redirect_uri,
            subject_id=user.subject_id,
            response_type=response_type,
            scope=scope,
            code_challenge=code_challenge,
            code_challenge_method=code_challenge_method,
        )
    except OAuthError as e:
        log_audit(db, EVENT_GRANT_FAILED, client_id=client_id, subject_id=user.subject_id, ip=ip, outcome=OUTCOME_FAIL, detail=e.error)
        if e.redirectable:
            return _redirect_error(redirect_uri, e, state)
        raise

    log_audit(db, EVENT_CODE_ISSUED, client_id=client_id, subject_id=user.subject_id, ip=ip, outcome=OUTCOME_SUCCESS)
    params = {"code": code}
    if state:
        params["state"] = state
    return _redirect(redirect_uri, params)
