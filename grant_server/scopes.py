"""
Scope parsing and set rules (RFC 6749 §3.3: space-delimited, case-sensitive).
"""
from collections.abc import Iterable

from grant_server.config import OFFLINE_ACCESS_SCOPES


def parse_scope(scope: str | Iterable[str] | None) -> frozenset[str]:
    """Accept a space-separated string or an iterable of scope tokens."""
    if scope is None:
        return frozenset()
    if isinstance(scope, str):
        return frozenset(s for s in scope.split() if s)
    return frozenset(s.strip() for s in scope if s and s.strip())


def format_scope(scopes: Iterable[str]) -> str:
    return " ".join(sorted(scopes))


def scope_subset(requested: Iterable[str], allowed: Iterable[str]) -> bool:
    """Every requested token must appear in allowed. Empty requested is always a subset."""
    return set(requested) <= set(allowed)


def wants_offline_access(scopes: Iterable[str]) -> bool:
    return bool(set(scopes) & OFFLINE_ACCESS_SCOPES)
