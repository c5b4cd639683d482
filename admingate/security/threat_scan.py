"""
Advisory request scan.

Case-insensitive substring match of query values against a fixed
denylist. Matches are reported, never enforced.
"""

from __future__ import annotations

from typing import Final, Iterable, Mapping


SUSPICIOUS_PATTERNS: Final[tuple[str, ...]] = (
    "script",
    "javascript:",
    "eval",
    "document.cookie",
    "localhost",
    "127.0.0.1",
    "admin",
    "select",
    "union",
    "drop",
    "delete",
    "insert",
    "update",
)


def _query_values(query: Mapping[str, object] | Iterable[tuple[str, object]] | str) -> list[str]:
    if isinstance(query, str):
        return [query]
    items = query.items() if isinstance(query, Mapping) else query
    values: list[str] = []
    for _, value in items:
        if isinstance(value, (list, tuple)):
            values.extend(str(v) for v in value)
        else:
            values.append(str(value))
    return values


def scan_query(
    query: Mapping[str, object] | Iterable[tuple[str, object]] | str,
    patterns: Iterable[str] = SUSPICIOUS_PATTERNS,
) -> list[str]:
    """
    Scan query parameter values for denylisted patterns.

    Returns:
        Matched patterns, in denylist order (empty if clean)
    """
    haystack = " ".join(_query_values(query)).lower()
    if not haystack:
        return []
    return [pattern for pattern in patterns if pattern in haystack]
