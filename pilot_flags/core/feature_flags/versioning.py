"""Dotted version parsing and ordering for minimum-version gates.

A valid version is one or more dot-separated non-negative integers
("1", "1.2", "1.2.0", "10.0.3.7"). Missing trailing components count as
zero, so "1.2" and "1.2.0" compare equal. Anything else is unparsable and
every comparison against it fails closed.
"""

from __future__ import annotations

import re
from typing import Optional, Tuple

_VERSION_RE = re.compile(r"[0-9]+(?:\.[0-9]+)*")


class InvalidVersionError(ValueError):
    """Raised by parse_version for strings that are not dotted integers."""


def parse_version(value: Optional[str]) -> Tuple[int, ...]:
    """Parse "1.2.0" into (1, 2, 0) with trailing zeros stripped.

    Raises:
        InvalidVersionError: if the string is empty or malformed.
    """
    if not value or not _VERSION_RE.fullmatch(value):
        raise InvalidVersionError(f"Invalid version string: {value!r}")
    try:
        parts = [int(p) for p in value.split(".")]
    except ValueError as e:
        # int() refuses components above the interpreter's digit limit
        raise InvalidVersionError(f"Version component too large: {value[:20]!r}") from e
    while len(parts) > 1 and parts[-1] == 0:
        parts.pop()
    return tuple(parts)


def is_valid_version(value: Optional[str]) -> bool:
    try:
        parse_version(value)
    except InvalidVersionError:
        return False
    return True


def compare_versions(left: str, right: str) -> int:
    """Return -1, 0 or 1. Raises InvalidVersionError on bad input."""
    a = parse_version(left)
    b = parse_version(right)
    width = max(len(a), len(b))
    a = a + (0,) * (width - len(a))
    b = b + (0,) * (width - len(b))
    return (a > b) - (a < b)


def is_version_greater_or_equal(current: Optional[str], minimum: Optional[str]) -> bool:
    """True when current >= minimum; False if either side is unparsable."""
    try:
        return compare_versions(current or "", minimum or "") >= 0
    except InvalidVersionError:
        return False


__all__ = [
    "InvalidVersionError",
    "parse_version",
    "is_valid_version",
    "compare_versions",
    "is_version_greater_or_equal",
]
