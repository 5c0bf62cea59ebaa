"""
Token endpoint (POST /token). authorization_code, client_credentials, refresh_token, device_code and
token-exchange grants; the grant logic lives in GrantEngine.
"""
import logging

from fastapi import APIRouter, Depends, Form, Request, Response
from sqlalchemy.orm import Session

from grant_server import errors
from grant_server.audit import (
    EVENT_GRANT_FAILED,
    EVENT_TOKEN_EXCHANGED,
    EVENT_TOKEN_ISSUED,
    EVENT_TOKEN_REFRESHED,
    OUTCOME_FAIL,
    OUTCOME_SUCCESS,
    get_client_ip,
    log_audit,
)
from grant_server.client_auth import get_client_credentials_from_request
from grant_server.clients import GRANT_REFRESH_TOKEN, GRANT_TOKEN_EXCHANGE, normalize_grant_type
from grant_server.config import RATE_LIMIT_TOKEN_PER_MINUTE
from grant_server.database import get_db
from grant_server.dependencies import get_engine
from grant_server.errors import OAuthError
from grant_server.grants import GrantEngine, TokenRequest
from grant_server.rate_limit import enforce
from grant_server.tokens import TokenError

logger = logging.getLogger(__name__)
router = APIRouter()

_SUCCESS_EVENTS = {
    GRANT_REFRESH_TOKEN: EVENT_TOKEN_REFRESHED,
    GRANT_TOKEN_EXCHANGE: EVENT_TOKEN_EXCHANGED,
}


def _subject_of(engine: GrantEngine, access_token: str) -> str | None:
    try:
        return engine.tokens.validate(access_token).subject_id
    except TokenError:
        return None


@router.post("/token")
def token(
    request: Request,
    response: Response,
    grant_type: str | None = Form(None),
    client_id: str | None = Form(None),
    client_secret: str | None = Form(None),
    code: str | None = Form(None),
    redirect_uri: str | None = Form(None),
    code_verifier: str | None = Form(None),
    refresh_token: str | None = Form(None),
    device_code: str | None = Form(None),
    subject_token: str | None = Form(None),
    subject_token_type: str | None = Form(None),
    requested_token_type: str | None = Form(None),
    audience: str | None = Form(None),
    scope: str | None = Form(None),
    engine: GrantEngine = Depends(get_engine),
    db: Session = Depends(get_db),
):
    """
    Exchange a grant for tokens. Client credentials may come from HTTP Basic or the form.
    Errors are rendered by the OAuthError handler as {"error", "error_description"}.
    """
    ip = get_client_ip(request)
    enforce(request, "token", RATE_LIMIT_TOKEN_PER_MINUTE, ip)
    cid, csecret = get_client_credentials_from_request(request, client_id, client_secret)
    token_request = TokenRequest.from_form(
        {
            "grant_type": grant_type,
            "client_id": cid,
            "client_secret": csecret,
            "code": code,
            "redirect_uri": redirect_uri,
            "code_verifier": code_verifier,
            "refresh_token": refresh_token,
            "device_code": device_code,
            "subject_token": subject_token,
            "subject_token_type": subject_token_type,
            "requested_token_type": requested_token_type,
            "audience": audience,
            "scope": scope,
        }
    )
    try:
        payload = engine.token(token_request)
    except OAuthError as e:
        # authorization_pending is the normal device polling answer, not a failure worth a row
        if e.error != errors.AUTHORIZATION_PENDING:
            log_audit(db, EVENT_GRANT_FAILED, client_id=cid, ip=ip, outcome=OUTCOME_FAIL, detail=e.error)
        raise
    grant = normalize_grant_type(token_request.grant_type)
    log_audit(
        db,
        _SUCCESS_EVENTS.get(grant, EVENT_TOKEN_ISSUED),
        client_id=token_request.client_id,
        subject_id=_subject_of(engine, payload["access_token"]),
        ip=ip,
        outcome=OUTCOME_SUCCESS,
        detail=grant,
    )
    response.headers["Cache-Control"] = "no-store"
    response.headers["Pragma"] = "no-cache"
    return payload
