"""
Device authorization grant endpoints (RFC 8628).
POST /device_authorization: device asks for a device_code/user_code pair.
GET /device: what a user_code is asking for (client and scopes).
POST /device/verify: the user logs in and approves or denies the user_code.
"""
import logging

from fastapi import APIRouter, Depends, Form, HTTPException, Request, Response
from sqlalchemy.orm import Session

from grant_server import errors
from grant_server.audit import (
    EVENT_DEVICE_APPROVED,
    EVENT_DEVICE_DENIED,
    EVENT_DEVICE_REQUESTED,
    EVENT_GRANT_FAILED,
    EVENT_LOGIN_FAIL,
    OUTCOME_FAIL,
    OUTCOME_SUCCESS,
    get_client_ip,
    log_audit,
)
from grant_server.authorize import authenticate_user
from grant_server.client_auth import get_client_credentials_from_request
from grant_server.config import RATE_LIMIT_LOGIN_PER_MINUTE, RATE_LIMIT_TOKEN_PER_MINUTE
from grant_server.database import get_db
from grant_server.dependencies import get_engine
from grant_server.errors import OAuthError
from grant_server.grants import GrantEngine
from grant_server.rate_limit import enforce

logger = logging.getLogger(__name__)
router = APIRouter()

ACTION_APPROVE = "approve"
ACTION_DENY = "deny"


@router.post("/device_authorization")
def device_authorization(
    request: Request,
    response: Response,
    client_id: str | None = Form(None),
    client_secret: str | None = Form(None),
    scope: str | None = Form(None),
    engine: GrantEngine = Depends(get_engine),
    db: Session = Depends(get_db),
):
    ip = get_client_ip(request)
    enforce(request, "token", RATE_LIMIT_TOKEN_PER_MINUTE, ip)
    cid, csecret = get_client_credentials_from_request(request, client_id, client_secret)
    try:
        payload = engine.request_device_authorization(cid, csecret, scope)
    except OAuthError as e:
        log_audit(db, EVENT_GRANT_FAILED, client_id=cid, ip=ip, outcome=OUTCOME_FAIL, detail=e.error)
        raise
    log_audit(db, EVENT_DEVICE_REQUESTED, client_id=cid, ip=ip, outcome=OUTCOME_SUCCESS)
    response.headers["Cache-Control"] = "no-store"
    return payload


@router.get("/device")
def device_lookup(user_code: str, engine: GrantEngine = Depends(get_engine)):
    """Show the verification page data for a user_code. Unknown or expired codes answer invalid_grant."""
    return engine.describe_device(user_code)


@router.post("/device/verify")
def device_verify(
    request: Request,
    user_code: str = Form(...),
    username: str | None = Form(None),
    password: str | None = Form(None),
    action: str = Form(ACTION_APPROVE),
    engine: GrantEngine = Depends(get_engine),
    db: Session = Depends(get_db),
):
    """
    Authenticate the user, then approve or deny the pending device authorization.
    The device learns the outcome on its next poll of POST /token.
    """
    ip = get_client_ip(request)
    enforce(request, "login", RATE_LIMIT_LOGIN_PER_MINUTE, ip)
    action = action.strip().lower()
    if action not in (ACTION_APPROVE, ACTION_DENY):
        raise OAuthError(errors.INVALID_REQUEST, "action must be 'approve' or 'deny'")

    user = authenticate_user(db, username, password)
    if user is None:
        log_audit(db, EVENT_LOGIN_FAIL, ip=ip, outcome=OUTCOME_FAIL)
        raise HTTPException(
            status_code=401,
            detail={"error": "access_denied", "error_description": "Invalid username or password"},
        )

    info = engine.describe_device(user_code)
    if action == ACTION_APPROVE:
        engine.approve_device(user_code, user.subject_id)
        event, status = EVENT_DEVICE_APPROVED, "approved"
    else:
        engine.deny_device(user_code)
        event, status = EVENT_DEVICE_DENIED, "denied"
    log_audit(db, event, client_id=info["client_id"], subject_id=user.subject_id, ip=ip, outcome=OUTCOME_SUCCESS)
    return {"status": status, "client_id": info["client_id"], "scope": info["scope"]}
