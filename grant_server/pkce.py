"""
PKCE (RFC 7636) challenge computation and verification. S256 and plain.
"""
import hashlib
import hmac
import secrets
from base64 import urlsafe_b64encode

METHOD_S256 = "S256"
METHOD_PLAIN = "plain"
SUPPORTED_METHODS = (METHOD_S256, METHOD_PLAIN)


def compute_challenge(code_verifier: str, method: str = METHOD_S256) -> str:
    """Challenge for a verifier; S256 = base64url(SHA256(verifier)) without padding."""
    if method == METHOD_PLAIN:
        return code_verifier
    if method != METHOD_S256:
        raise ValueError(f"Unsupported code_challenge_method: {method}")
    digest = hashlib.sha256(code_verifier.encode("ascii")).digest()
    return urlsafe_b64encode(digest).rstrip(b"=").decode("ascii")


def verify(code_verifier: str, code_challenge: str, method: str | None) -> bool:
    """True if the verifier hashes (per method) to the stored challenge. Unknown methods never verify."""
    if method not in SUPPORTED_METHODS or not code_verifier:
        return False
    try:
        computed = compute_challenge(code_verifier, method)
    except UnicodeEncodeError:
        return False
    return hmac.compare_digest(computed.encode("ascii"), code_challenge.encode("ascii", "replace"))


def generate_pkce() -> tuple[str, str]:
    """
    Generate code_verifier and code_challenge (S256).
    Returns (code_verifier, code_challenge). Verifier is 43 chars (256 bits entropy).
    """
    code_verifier = secrets.token_urlsafe(32)
    return code_verifier, compute_challenge(code_verifier, METHOD_S256)
