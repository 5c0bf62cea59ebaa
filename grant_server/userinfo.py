"""
UserInfo endpoint (GET /userinfo). Opaque bearer access token required; returns claims by scope.
"""
import logging

from fastapi import APIRouter, Depends, HTTPException
from fastapi.security import HTTPAuthorizationCredentials, HTTPBearer
from sqlalchemy.orm import Session

from grant_server.database import get_db
from grant_server.dependencies import get_engine
from grant_server.grants import GrantEngine
from grant_server.models import User
from grant_server.tokens import TokenError, TokenInfo, TokenKind

logger = logging.getLogger(__name__)
router = APIRouter()
security = HTTPBearer(auto_error=True)


def _validate_access_token(engine: GrantEngine, credentials: HTTPAuthorizationCredentials) -> TokenInfo:
    """Look up the bearer token in the token ledger. Returns its metadata or raises 401."""
    try:
        return engine.tokens.validate(credentials.credentials, TokenKind.ACCESS)
    except TokenError as e:
        logger.debug("UserInfo token invalid: %s", e.kind.value)
        raise HTTPException(
            status_code=401,
            detail="Invalid or expired token",
            headers={"WWW-Authenticate": 'Bearer error="invalid_token"'},
        ) from e


@router.get("/userinfo")
def userinfo(
    credentials: HTTPAuthorizationCredentials = Depends(security),
    engine: GrantEngine = Depends(get_engine),
    db: Session = Depends(get_db),
):
    """
    Return claims for the authenticated user. Requires Bearer access_token issued for a user
    (client_credentials tokens have no subject).
    Claims returned depend on token scope: sub always; profile -> name, preferred_username; email -> email.
    """
    info = _validate_access_token(engine, credentials)
    if info.subject_id is None:
        raise HTTPException(status_code=401, detail="Token has no end-user subject")

    try:
        user_id = int(info.subject_id)
    except ValueError:
        raise HTTPException(status_code=401, detail="Invalid token subject")

    user = db.query(User).filter(User.id == user_id).first()
    if not user:
        raise HTTPException(status_code=401, detail="User not found")

    claims = {"sub": info.subject_id}

    if "profile" in info.scopes or "openid" in info.scopes:
        claims["preferred_username"] = user.username
        if user.name is not None:
            claims["name"] = user.name

    if "email" in info.scopes and user.email is not None:
        claims["email"] = user.email

    return claims
