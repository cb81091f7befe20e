from __future__ import annotations

import errno
import logging
import os
import shutil
import tempfile
import time
from pathlib import Path

from .errors import ArtifactWriteError
from .models import AtomicWriteResult

logger = logging.getLogger(__name__)

MAX_RENAME_ATTEMPTS = 5
_INITIAL_BACKOFF_SECONDS = 0.01


def write_file_atomic(path: Path, content: str) -> AtomicWriteResult:
    """Write *content* to *path* atomically.

    Writes to a temporary file in the same directory, fsyncs it, then renames
    (``os.replace``) into place so readers never observe a partial file.
    Transient rename failures are retried with exponential backoff; a
    cross-device rename falls back to copy-then-delete. The strategy taken is
    returned so callers can record it in receipts.

    Args:
        path: Destination file path.
        content: Text to write (UTF-8).

    Returns:
        AtomicWriteResult describing retries and fallback usage.

    Raises:
        ArtifactWriteError: If the write could not be completed.
    """
    try:
        path.parent.mkdir(parents=True, exist_ok=True)
        fd, tmp_name = tempfile.mkstemp(
            dir=str(path.parent),
            prefix=f".{path.name}.",
            suffix=".tmp",
        )
    except OSError as exc:
        raise ArtifactWriteError(f"Failed to create temp file for {path}: {exc}") from exc

    tmp_path = Path(tmp_name)
    try:
        with os.fdopen(fd, "w", encoding="utf-8", newline="") as tmp_handle:
            tmp_handle.write(content)
            tmp_handle.flush()
            os.fsync(tmp_handle.fileno())
        result = _rename_into_place(tmp_path, path)
    except ArtifactWriteError:
        _discard(tmp_path)
        raise
    except OSError as exc:
        _discard(tmp_path)
        raise ArtifactWriteError(f"Failed to atomically write {path}: {exc}") from exc
    except BaseException:
        _discard(tmp_path)
        raise

    if result.retry_count or result.fallback_used:
        logger.debug(
            "atomic write %s: retries=%d fallback=%s", path, result.retry_count, result.fallback_used
        )
    return result


def _rename_into_place(tmp_path: Path, path: Path) -> AtomicWriteResult:
    retries = 0
    delay = _INITIAL_BACKOFF_SECONDS
    warnings: list[str] = []
    while True:
        try:
            os.replace(tmp_path, path)
            break
        except OSError as exc:
            if exc.errno == errno.EXDEV:
                _copy_then_delete(tmp_path, path)
                warnings.append(f"atomic_write_fallback:{path.name}")
                return AtomicWriteResult(retry_count=retries, fallback_used=True, warnings=tuple(warnings))
            if retries + 1 >= MAX_RENAME_ATTEMPTS:
                raise ArtifactWriteError(
                    f"Rename into {path} failed after {retries + 1} attempts: {exc}"
                ) from exc
            retries += 1
            time.sleep(delay)
            delay *= 2

    if retries:
        warnings.append(f"rename_retry_count:{retries}:{path.name}")
    return AtomicWriteResult(retry_count=retries, fallback_used=False, warnings=tuple(warnings))


def _copy_then_delete(tmp_path: Path, path: Path) -> None:
    # Not atomic: only used when the rename cannot cross storage boundaries.
    shutil.copyfile(tmp_path, path)
    with path.open("rb") as handle:
        os.fsync(handle.fileno())
    tmp_path.unlink()


def _discard(tmp_path: Path) -> None:
    try:
        tmp_path.unlink()
    except FileNotFoundError:
        pass
    except OSError as exc:
        logger.warning("Failed to remove temp file %s: %s", tmp_path, exc)
