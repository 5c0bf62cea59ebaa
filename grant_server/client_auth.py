"""
Client credential extraction (RFC 6749 §2.3.1).
Credentials via Authorization: Basic base64(client_id:client_secret) or client_id + client_secret in form.
Verification itself happens in the client registry.
"""
import base64
import binascii
import logging
from urllib.parse import unquote

from fastapi import Request

logger = logging.getLogger(__name__)


def _parse_basic(header_value: str) -> tuple[str, str] | None:
    """Parse 'Basic <base64(client_id:client_secret)>'. Returns (client_id, client_secret) or None."""
    if not header_value or not header_value.strip().lower().startswith("basic "):
        return None
    try:
        encoded = header_value.strip()[6:].strip()
        decoded = base64.b64decode(encoded, validate=True).decode("utf-8")
    except (binascii.Error, UnicodeDecodeError):
        logger.debug("Malformed Basic authorization header")
        return None
    if ":" not in decoded:
        return None
    client_id, _, client_secret = decoded.partition(":")
    # RFC 6749 §2.3.1: both parts are form-urlencoded before base64
    return unquote(client_id.strip()), unquote(client_secret)


def get_client_credentials_from_request(
    request: Request,
    client_id_form: str | None,
    client_secret_form: str | None,
) -> tuple[str | None, str | None]:
    """
    Get (client_id, client_secret) from Authorization Basic or from form.
    Form takes precedence if it carries a secret.
    """
    auth_header = request.headers.get("Authorization")
    basic = _parse_basic(auth_header) if auth_header else None
    if client_id_form and client_secret_form is not None:
        return client_id_form.strip(), client_secret_form
    if basic:
        return basic
    if client_id_form:
        return client_id_form.strip(), client_secret_form
    return None, None
