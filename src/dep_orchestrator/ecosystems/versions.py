"""Version parsing and update-kind classification."""

import re

from packaging.version import InvalidVersion, Version

_RANGE_PREFIX_RE = re.compile(r"^[^0-9]*")
_STRIP_RE = re.compile(r"^[\s^~=<>!v]+")


def parse_version(value: str | None) -> Version | None:
    """Parse a version string, ignoring any range operator in front of it."""
    if not value:
        return None
    cleaned = _STRIP_RE.sub("", value.strip())
    if not cleaned or not cleaned[0].isdigit():
        return None
    try:
        return Version(cleaned)
    except InvalidVersion:
        return None


def version_triple(value: str | None) -> tuple[int, int, int] | None:
    version = parse_version(value)
    if version is None:
        return None
    release = tuple(version.release) + (0, 0, 0)
    return release[0], release[1], release[2]


def classify_update(current: str | None, target: str | None) -> str:
    """Classify a bump from ``current`` to ``target``.

    Returns ``patch``, ``minor``, ``major`` or ``unknown``. Unparsable
    versions, and targets that are not newer, are ``unknown``.
    """
    old, new = parse_version(current), parse_version(target)
    if old is None or new is None or new <= old:
        return "unknown"

    old_t, new_t = version_triple(current), version_triple(target)
    if new_t[0] != old_t[0]:
        return "major"
    if new_t[1] != old_t[1]:
        return "minor"
    return "patch"


def is_non_breaking(kind: str) -> bool:
    return kind in ("patch", "minor")


def range_prefix(spec: str) -> str:
    """Leading range operator of a manifest entry (``^``, ``~``, or ``""`` for exact)."""
    match = _RANGE_PREFIX_RE.match(spec.strip())
    return match.group(0) if match else ""
