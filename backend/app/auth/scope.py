"""
Endpoint authorization against a key's scope.

A scope is a list of path prefixes, or the sentinel "all". Matching is
segment-aware: "/api/v1/search-by-login" covers ".../search-by-login" and
".../search-by-login/bulk" but not ".../search-by-logindata".

Everything here is pure: no I/O, no clock.
"""

from __future__ import annotations

import logging
from collections.abc import Iterable
from typing import Any

from app.core.errors import Forbidden

logger = logging.getLogger(__name__)

ALL_ENDPOINTS = "all"


def normalize_path(path: str) -> str:
    """Strip query string and trailing slashes, case-fold."""
    return path.split("?", 1)[0].rstrip("/").lower()


def _scope_entries(scope: Iterable[Any]) -> list[str]:
    entries = []
    for entry in scope:
        if not isinstance(entry, str):
            logger.warning("Ignoring non-string scope entry %r", entry)
            continue
        if not entry.strip():
            logger.warning("Ignoring blank scope entry")
            continue
        entries.append(entry.strip())
    return entries


def is_endpoint_allowed(scope: Iterable[Any] | None, path: str) -> bool:
    entries = _scope_entries(scope or [])
    if any(entry.lower() == ALL_ENDPOINTS for entry in entries):
        return True

    target = normalize_path(path)
    for entry in entries:
        prefix = normalize_path(entry)
        if target == prefix or target.startswith(prefix + "/"):
            return True
    return False


def authorize_endpoint(
    scope: Iterable[Any] | None,
    path: str,
    *,
    key_id: Any = None,
) -> None:
    """Raise Forbidden unless `path` is inside `scope`."""
    if not is_endpoint_allowed(scope, path):
        raise Forbidden(key_id=key_id)


def normalize_scope(entries: Iterable[Any] | str) -> list[str]:
    """
    Canonical form for storing a scope.

    Lowercased, trimmed, de-duplicated (order kept); collapses to ["all"]
    when the sentinel is present. Raises ValueError for an empty scope.
    """
    if isinstance(entries, str):
        entries = [entries]

    unique: list[str] = []
    for entry in _scope_entries(entries):
        value = entry.lower()
        if value != "/":
            value = value.rstrip("/")
        if value not in unique:
            unique.append(value)

    if ALL_ENDPOINTS in unique:
        return [ALL_ENDPOINTS]
    if not unique:
        raise ValueError("Endpoints allowed cannot be empty")
    return unique
