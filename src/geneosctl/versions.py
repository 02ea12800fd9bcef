"""Version selection over directory listings and download catalogues."""
from __future__ import annotations

import re
from collections.abc import Iterable

from packaging.version import InvalidVersion, Version

from .errors import NotExistError
from .options import LATEST

_LETTER_PREFIX_RE = re.compile(r"^[A-Za-z]+")
_LEADING_VERSION_RE = re.compile(r"^(\d+(?:\.\d+)*)(.*)$")
_OVERRIDE_VERSION_RE = re.compile(r"^(\d+(\.\d+){0,2})$")


def strip_prefix(name: str) -> str:
    """Remove a leading run of letters, e.g. ``GA5.11.2`` -> ``5.11.2``."""
    return _LETTER_PREFIX_RE.sub("", name.strip(), count=1)


def _split_version(name: str) -> tuple[Version, str] | None:
    """Return ``(version, suffix)`` for *name*.

    Names that are not PEP 440 versions as a whole, such as platform builds
    like ``6.1.0-el8``, are parsed from their leading numeric part and keep
    the remainder as the suffix.
    """
    candidate = strip_prefix(name)
    if not candidate:
        return None
    try:
        return Version(candidate), ""
    except InvalidVersion:
        pass
    match = _LEADING_VERSION_RE.match(candidate)
    if match is None:
        return None
    return Version(match.group(1)), match.group(2)


def parse_version(name: str) -> Version | None:
    """Return the parsed version for *name* or ``None`` when unparseable."""
    split = _split_version(name)
    return None if split is None else split[0]


def match_version(value: str) -> bool:
    """Return ``True`` when *value* is a plain ``X[.Y[.Z]]`` version."""
    return _OVERRIDE_VERSION_RE.match(value) is not None


def sort_versions(candidates: Iterable[str]) -> list[str]:
    """Return parseable *candidates* in ascending version order.

    A suffixed build sorts below the plain release of the same version.
    """
    parsed: list[tuple[Version, bool, int, str]] = []
    for position, name in enumerate(candidates):
        split = _split_version(name)
        if split is not None:
            version, suffix = split
            parsed.append((version, not suffix, position, name))
    parsed.sort()
    return [name for _, _, _, name in parsed]


def resolve(candidates: Iterable[str], requested: str = LATEST) -> str:
    """Return the original candidate name matching *requested*.

    ``latest`` (or an empty request) selects the highest parseable version;
    anything else must equal a candidate verbatim, or match its version and
    suffix after the same prefix stripping. Unparseable candidates are
    ignored.
    """
    names = list(candidates)
    ordered = sort_versions(names)
    requested = (requested or "").strip()

    if requested in ("", LATEST):
        if not ordered:
            raise NotExistError("No valid versions found.")
        return ordered[-1]

    if requested in names:
        return requested

    wanted = _split_version(requested)
    if wanted is not None:
        matches = [name for name in ordered if _split_version(name) == wanted]
        if matches:
            return matches[-1]
    raise NotExistError(f"Version '{requested}' not found.")


class VersionResolver:
    """Object wrapper so collaborators can be handed a resolver explicitly."""

    def resolve(self, candidates: Iterable[str], requested: str = LATEST) -> str:
        """Delegate to :func:`resolve`."""
        return resolve(candidates, requested)

    def latest(self, candidates: Iterable[str]) -> str | None:
        """Return the newest candidate or ``None`` when nothing parses."""
        try:
            return resolve(candidates, LATEST)
        except NotExistError:
            return None


__all__ = [
    "VersionResolver",
    "match_version",
    "parse_version",
    "resolve",
    "sort_versions",
    "strip_prefix",
]
