"""
Audit logging. Security-relevant events only; no tokens, secrets, passwords, or full request bodies.
Rows are written by the HTTP layer after the grant engine returns.
"""
import logging

from fastapi import APIRouter, Depends, Request
from sqlalchemy.orm import Session

from grant_server.database import get_db
from grant_server.models import AuditLog

logger = logging.getLogger(__name__)

EVENT_LOGIN_OK = "login_ok"
EVENT_LOGIN_FAIL = "login_fail"
EVENT_CODE_ISSUED = "code_issued"
EVENT_TOKEN_ISSUED = "token_issued"
EVENT_TOKEN_REFRESHED = "token_refreshed"
EVENT_TOKEN_EXCHANGED = "token_exchanged"
EVENT_TOKEN_REVOKED = "token_revoked"
EVENT_INTROSPECT = "introspect"
EVENT_DEVICE_REQUESTED = "device_requested"
EVENT_DEVICE_APPROVED = "device_approved"
EVENT_DEVICE_DENIED = "device_denied"
EVENT_CLIENT_REGISTERED = "client_registered"
EVENT_GRANT_FAILED = "grant_failed"

OUTCOME_SUCCESS = "success"
OUTCOME_FAIL = "fail"


def get_client_ip(request: Request | None) -> str | None:
    """Client IP if available (e.g. request.client.host). Forwarding headers are not trusted."""
    if request is None or request.client is None:
        return None
    return getattr(request.client, "host", None)


def log_audit(
    db: Session,
    event_type: str,
    *,
    client_id: str | None = None,
    subject_id: str | None = None,
    ip: str | None = None,
    outcome: str = OUTCOME_SUCCESS,
    detail: str | None = None,
) -> None:
    """Append one audit record. Never log tokens or passwords."""
    db.add(
        AuditLog(
            event_type=event_type,
            client_id=client_id,
            subject_id=subject_id,
            ip=ip,
            outcome=outcome,
            detail=detail,
        )
    )
    db.commit()
    logger.debug("audit %s client_id=%s outcome=%s", event_type, client_id, outcome)


router = APIRouter(tags=["audit"])


def _query_audit_logs(
    db: Session,
    *,
    limit: int = 100,
    event_type: str | None = None,
    outcome: str | None = None,
    client_id: str | None = None,
):
    """Query audit logs with optional filters. Most recent first."""
    q = db.query(AuditLog).order_by(AuditLog.created_at.desc(), AuditLog.id.desc())
    if event_type:
        q = q.filter(AuditLog.event_type == event_type)
    if outcome:
        q = q.filter(AuditLog.outcome == outcome)
    if client_id:
        q = q.filter(AuditLog.client_id == client_id)
    rows = q.limit(min(max(1, limit), 500)).all()
    return [
        {
            "created_at": r.created_at.isoformat() if r.created_at else None,
            "event_type": r.event_type,
            "client_id": r.client_id,
            "subject_id": r.subject_id,
            "ip": r.ip,
            "outcome": r.outcome,
            "detail": r.detail,
        }
        for r in rows
    ]


@router.get("/audit")
def list_audit_logs(
    limit: int = 100,
    event_type: str | None = None,
    outcome: str | None = None,
    client_id: str | None = None,
    db: Session = Depends(get_db),
):
    """List recent audit events. No tokens or secrets. Most recent first."""
    return _query_audit_logs(db, limit=limit, event_type=event_type, outcome=outcome, client_id=client_id)
