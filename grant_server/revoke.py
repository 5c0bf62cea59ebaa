"""
Token revocation endpoint (POST /revoke). RFC 7009.
The client must authenticate; only its own tokens are revoked. Revoking a refresh token also revokes
the access tokens of the same grant.
"""
import logging

from fastapi import APIRouter, Depends, Form, Request, Response
from sqlalchemy.orm import Session

from grant_server.audit import EVENT_TOKEN_REVOKED, OUTCOME_SUCCESS, get_client_ip, log_audit
from grant_server.client_auth import get_client_credentials_from_request
from grant_server.database import get_db
from grant_server.dependencies import get_engine
from grant_server.grants import GrantEngine

logger = logging.getLogger(__name__)
router = APIRouter()


@router.post("/revoke")
def revoke(
    request: Request,
    token: str | None = Form(None),
    token_type_hint: str | None = Form(None),
    client_id: str | None = Form(None),
    client_secret: str | None = Form(None),
    engine: GrantEngine = Depends(get_engine),
    db: Session = Depends(get_db),
):
    """
    Revoke a refresh or access token. RFC 7009: always return 200 for valid requests
    (even if the token is unknown or belongs to another client) to avoid leaking information.
    """
    cid, csecret = get_client_credentials_from_request(request, client_id, client_secret)
    hint = (token_type_hint or "").strip().lower() or None
    revoked = engine.revoke((token or "").strip(), cid, csecret, token_type_hint=hint)
    if revoked:
        log_audit(db, EVENT_TOKEN_REVOKED, client_id=cid, ip=get_client_ip(request), outcome=OUTCOME_SUCCESS)
    return Response(status_code=200)
