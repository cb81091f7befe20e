from __future__ import annotations

import hashlib
import re
from pathlib import Path

from .errors import PathEscapeError

ARTIFACTS_DIR = "artifacts"
RECEIPTS_DIR = "receipts"
CONTEXT_DIR = "context"
STAGING_DIR = ".partial"
LOCK_FILE = ".lock"

_MAX_SPEC_DIR_CHARS = 128


def sanitize_spec_id(spec_id: str) -> str:
    """Sanitize a spec ID for use as a filesystem path component.

    Args:
        spec_id: Raw spec identifier.

    Returns:
        A filesystem-safe version of the spec ID of at most 128 chars. When
        characters had to be replaced or the ID truncated, a short hash of the
        raw ID is appended so distinct IDs never share a directory.

    Raises:
        ValueError: If the spec ID is empty or contains no safe characters.
    """
    raw = spec_id.strip()
    if not raw:
        raise ValueError("spec_id must be non-empty")
    value = re.sub(r"[^A-Za-z0-9._-]+", "-", raw).strip("-")
    if not value or set(value) <= {"."}:
        raise ValueError("spec_id contains no filesystem-safe characters")
    if value == raw and len(value) <= _MAX_SPEC_DIR_CHARS:
        return value
    digest = hashlib.sha256(raw.encode("utf-8")).hexdigest()[:8]
    return f"{value[:_MAX_SPEC_DIR_CHARS - len(digest) - 1]}-{digest}"


def spec_root(home: Path, spec_id: str) -> Path:
    """Return ``home / "specs" / sanitize_spec_id(spec_id)``."""
    return home / "specs" / sanitize_spec_id(spec_id)


def ensure_dir_all(path: Path) -> None:
    """Create *path* and its parents, tolerating a concurrent creator."""
    try:
        path.mkdir(parents=True, exist_ok=True)
    except FileExistsError:
        # Another process won the race; only a non-directory is a real problem.
        if not path.is_dir():
            raise


def checked_child(directory: Path, name: str) -> Path:
    """Join *name* onto *directory*, refusing anything that is not a plain file name.

    Raises:
        PathEscapeError: If *name* is empty, absolute, contains a separator,
            or is a relative reference like ``..``.
    """
    if not name or name in {".", ".."} or "/" in name or "\\" in name or "\x00" in name:
        raise PathEscapeError(name)
    if Path(name).is_absolute():
        raise PathEscapeError(name)
    return directory / name
