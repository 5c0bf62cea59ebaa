"""
Well-known endpoints: authorization server metadata (RFC 8414) and its OpenID-style alias.
"""
from fastapi import APIRouter

from grant_server.clients import SUPPORTED_GRANT_TYPES, GRANT_TYPE_URNS
from grant_server.config import ISSUER, SUPPORTED_SCOPES
from grant_server.pkce import SUPPORTED_METHODS

router = APIRouter()

_WIRE_GRANT_TYPES = {short: urn for urn, short in GRANT_TYPE_URNS.items()}


def _metadata() -> dict:
    return {
        "issuer": ISSUER,
        "authorization_endpoint": f"{ISSUER}/authorize",
        "token_endpoint": f"{ISSUER}/token",
        "device_authorization_endpoint": f"{ISSUER}/device_authorization",
        "userinfo_endpoint": f"{ISSUER}/userinfo",
        "revocation_endpoint": f"{ISSUER}/revoke",
        "introspection_endpoint": f"{ISSUER}/introspect",
        "registration_endpoint": f"{ISSUER}/register",
        "response_types_supported": ["code"],
        "grant_types_supported": sorted(_WIRE_GRANT_TYPES.get(g, g) for g in SUPPORTED_GRANT_TYPES),
        "scopes_supported": sorted(SUPPORTED_SCOPES),
        "token_endpoint_auth_methods_supported": ["client_secret_basic", "client_secret_post", "none"],
        "code_challenge_methods_supported": sorted(SUPPORTED_METHODS),
    }


@router.get("/.well-known/oauth-authorization-server")
def oauth_authorization_server():
    """RFC 8414 discovery document."""
    return _metadata()


@router.get("/.well-known/openid-configuration")
def openid_configuration():
    return _metadata()
