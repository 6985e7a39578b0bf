"""
Input validation for repository-relative paths and git refs.

Security features:
- Traversal protection (no ``..`` segment)
- Absolute path rejection (``/``, ``\\``, drive letters)
- Null byte rejection
- Option injection protection for refs (no leading ``-``)

Checks are purely lexical: they run before any repository is resolved or
any process is spawned.
"""

from __future__ import annotations

import re

from codesearch_mcp.errors import InvalidPath, InvalidRef

DEFAULT_REF = "HEAD"

_DRIVE_RE = re.compile(r"^[A-Za-z]:")
_SEGMENT_SPLIT_RE = re.compile(r"[\\/]")
_CONTROL_RE = re.compile(r"[\x00-\x20\x7f]")


def validate_repo_path(path: str) -> str:
    """
    Validate a path relative to the repository root.

    Args:
        path: Candidate path supplied by the caller

    Returns:
        The path with redundant ``./`` prefixes and duplicate slashes removed

    Raises:
        InvalidPath: Empty, rooted, drive-qualified, traversing or containing null bytes
    """
    if not isinstance(path, str) or not path.strip():
        raise InvalidPath("Invalid path: path is required")
    if "\x00" in path:
        raise InvalidPath("Invalid path: contains null bytes")
    if path.startswith(("/", "\\")) or _DRIVE_RE.match(path):
        raise InvalidPath(f"Invalid path: {path!r} must be relative to the repository root")

    segments = _SEGMENT_SPLIT_RE.split(path)
    if ".." in segments:
        raise InvalidPath(f"Invalid path: {path!r} contains a parent-directory segment")

    cleaned = [s for s in segments if s not in ("", ".")]
    if not cleaned:
        return "."
    return "/".join(cleaned)


def validate_ref(ref: str | None) -> str:
    """
    Validate a git revision (branch, tag or commit).

    ``None`` or an empty string means the repository's current head.

    Raises:
        InvalidRef: Leading ``-`` (would be parsed as an option), whitespace,
            control characters or a ``:`` (would change ``ref:path`` lookups)
    """
    if ref is None or ref == "":
        return DEFAULT_REF
    if not isinstance(ref, str):
        raise InvalidRef("Invalid ref: must be a string")
    if ref.startswith("-"):
        raise InvalidRef(f"Invalid ref: {ref!r} may not start with '-'")
    if _CONTROL_RE.search(ref):
        raise InvalidRef(f"Invalid ref: {ref!r} contains whitespace or control characters")
    if ":" in ref:
        raise InvalidRef(f"Invalid ref: {ref!r} may not contain ':'")
    return ref
