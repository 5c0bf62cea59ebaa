"""
Secure random source for opaque credentials (codes, tokens, device and user codes, client secrets).
"""
import logging
import secrets

logger = logging.getLogger(__name__)

# RFC 8628 §6.1: consonants only, no vowels (avoids words) and no ambiguous characters
USER_CODE_ALPHABET = "BCDFGHJKLMNPQRSTVWXZ"
USER_CODE_LENGTH = 8

# 32 bytes -> 43 chars base64url (256 bits)
_TOKEN_BYTES = 32


class RandomSourceError(Exception):
    """The operating system could not supply random bytes."""


class RandomSource:
    """Wraps the secrets module so ledgers can be given a deterministic source in tests."""

    def token(self, nbytes: int = _TOKEN_BYTES) -> str:
        try:
            return secrets.token_urlsafe(nbytes)
        except OSError as e:
            logger.error("Random source failure: %s", e)
            raise RandomSourceError(str(e)) from e

    def user_code(self) -> str:
        try:
            return "".join(secrets.choice(USER_CODE_ALPHABET) for _ in range(USER_CODE_LENGTH))
        except OSError as e:
            logger.error("Random source failure: %s", e)
            raise RandomSourceError(str(e)) from e


def normalize_user_code(user_code: str) -> str:
    """Users may type lowercase, dashes or spaces (e.g. 'bcdf-ghjk')."""
    return "".join(ch for ch in user_code.upper() if ch not in "- \t")


def format_user_code(user_code: str) -> str:
    """Display form XXXX-XXXX."""
    half = len(user_code) // 2
    return f"{user_code[:half]}-{user_code[half:]}"
