"""Containment checks for paths taken from untrusted manifest content.

Two stages: ``validate_relative_path`` rejects paths lexically, and
``safe_join`` resolves the candidate against the run directory and refuses
anything that lands outside it. Resolution follows symlinks, so a link inside
the run directory that points elsewhere is refused too. Comparison is exact
(case-sensitive) on the resolved paths.
"""
from __future__ import annotations

import re
from dataclasses import dataclass
from pathlib import Path

_DRIVE_RE = re.compile(r"^[A-Za-z]:")
_SEPARATORS_RE = re.compile(r"[\\/]")


@dataclass(frozen=True, slots=True)
class PathCheck:
    valid: bool
    reason: str | None = None


def _is_absolute(path: str) -> bool:
    return path.startswith(("/", "\\")) or bool(_DRIVE_RE.match(path))


def validate_relative_path(path: str) -> PathCheck:
    if not path:
        return PathCheck(False, "Path is empty")
    if "\0" in path:
        return PathCheck(False, "Null bytes not allowed in path")
    if _is_absolute(path):
        return PathCheck(False, "Absolute paths not allowed")
    # Raw segments on either separator; "a/../b" and "a\..\b" are both refused.
    if ".." in _SEPARATORS_RE.split(path):
        return PathCheck(False, "Path traversal not allowed")
    return PathCheck(True)


def safe_join(base_dir: Path | str, relative_path: str) -> Path | None:
    """Join *relative_path* onto *base_dir*; None when the result escapes it."""
    try:
        base = Path(base_dir).resolve()
        joined = (base / relative_path).resolve()
    except (OSError, RuntimeError, ValueError):
        return None
    if joined != base and not joined.is_relative_to(base):
        return None
    return joined
