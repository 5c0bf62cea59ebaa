"""
bcrypt hashing for user passwords and client secrets. No plaintext is ever stored.
"""
import functools

import bcrypt

from grant_server.config import BCRYPT_ROUNDS


def _encode(plain: str) -> bytes:
    # Bcrypt has a 72-byte limit
    raw = plain.encode("utf-8")
    if len(raw) > 72:
        raw = raw[:72]
    return raw


def hash_password(password: str) -> str:
    return bcrypt.hashpw(_encode(password), bcrypt.gensalt(rounds=BCRYPT_ROUNDS)).decode("utf-8")


def verify_password(plain: str, hashed: str) -> bool:
    """Constant-time check (bcrypt.checkpw). Malformed hashes never verify."""
    try:
        return bcrypt.checkpw(_encode(plain), hashed.encode("utf-8"))
    except ValueError:
        return False


@functools.lru_cache(maxsize=1)
def dummy_hash() -> str:
    """Hash burned when the client or user does not exist, so timing does not reveal existence."""
    return hash_password("grant-server-dummy-secret")
