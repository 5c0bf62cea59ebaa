"""
Token introspection endpoint (POST /introspect). RFC 7662.
Protected: the caller must authenticate as a registered client.
"""
import logging

from fastapi import APIRouter, Depends, Form, Request, Response
from sqlalchemy.orm import Session

from grant_server.audit import EVENT_INTROSPECT, OUTCOME_SUCCESS, get_client_ip, log_audit
from grant_server.client_auth import get_client_credentials_from_request
from grant_server.database import get_db
from grant_server.dependencies import get_engine
from grant_server.grants import GrantEngine

logger = logging.getLogger(__name__)
router = APIRouter()


@router.post("/introspect")
def introspect(
    request: Request,
    response: Response,
    token: str | None = Form(None),
    token_type_hint: str | None = Form(None),
    client_id: str | None = Form(None),
    client_secret: str | None = Form(None),
    engine: GrantEngine = Depends(get_engine),
    db: Session = Depends(get_db),
):
    """
    Return whether the token is active and its metadata. Unknown, expired, revoked and
    malformed tokens all answer {"active": false}. token_type_hint is accepted and ignored:
    every token kind is searched.
    """
    cid, csecret = get_client_credentials_from_request(request, client_id, client_secret)
    result = engine.introspect((token or "").strip(), cid, csecret)
    log_audit(db, EVENT_INTROSPECT, client_id=cid, ip=get_client_ip(request), outcome=OUTCOME_SUCCESS)
    logger.debug("Introspection by client_id=%s active=%s", cid, result["active"])
    response.headers["Cache-Control"] = "no-store"
    return result
