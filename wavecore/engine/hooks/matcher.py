"""Tool-name matching for hook configurations.

Patterns are exact names (case-insensitive), globs (``*``, ``?``,
``[...]``), or ``|``-separated alternatives of either.
"""
from __future__ import annotations

import fnmatch
import re

_UNSAFE_PATTERN_CHARS = re.compile(r"[;&`$(){}><]")


def _alternatives(pattern: str) -> list[str]:
    return [alt.strip() for alt in pattern.split("|")]


def _matches_single(pattern: str, tool_name: str) -> bool:
    if pattern.lower() == tool_name.lower():
        return True
    return fnmatch.fnmatchcase(tool_name.lower(), pattern.lower())


def matches(pattern: str | None, tool_name: str | None) -> bool:
    """True when ``tool_name`` is selected by ``pattern``.

    An empty pattern or ``*`` selects every tool.
    """
    if not tool_name:
        return False
    if pattern is None or pattern.strip() in ("", "*"):
        return True
    return any(
        alt and _matches_single(alt, tool_name) for alt in _alternatives(pattern)
    )


def is_valid_pattern(pattern: str) -> bool:
    if not isinstance(pattern, str) or not pattern.strip():
        return False
    alternatives = _alternatives(pattern)
    return all(alt and not _UNSAFE_PATTERN_CHARS.search(alt) for alt in alternatives)
