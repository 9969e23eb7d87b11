"""
Parsing helpers for config values and request paths.
"""

from typing import Iterable


def split_csv(value: str | None) -> list[str]:
    """Split a comma-separated setting, dropping blanks and surrounding whitespace."""
    if not value:
        return []
    return [item.strip() for item in value.split(",") if item.strip()]


def normalize_prefix(prefix: str) -> str:
    """'/api/' -> '/api'; the root prefix stays '/'."""
    cleaned = "/" + prefix.strip().strip("/")
    return cleaned


def has_path_prefix(path: str, prefix: str) -> bool:
    """
    True when path sits under prefix on a segment boundary.
    '/users' matches '/users' and '/users/me', not '/usersfoo'.
    """
    prefix = normalize_prefix(prefix)
    if prefix == "/":
        return True
    return path == prefix or path.startswith(prefix + "/")


def matches_any_prefix(path: str, prefixes: Iterable[str]) -> bool:
    return any(has_path_prefix(path, p) for p in prefixes)
