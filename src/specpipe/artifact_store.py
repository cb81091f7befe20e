from __future__ import annotations

import logging
import os
import shutil
from pathlib import Path

from .atomic_write import write_file_atomic
from .canonical import normalize_line_endings
from .errors import ArtifactWriteError, LockReleasedError, MissingStagedArtifactError, ReadOnlyError
from .lock import FileLock, ProcessLiveness
from .models import (
    Artifact,
    ArtifactStoreResult,
    ArtifactType,
    AtomicWriteResult,
    PhaseId,
    phase_filename,
)
from .paths import (
    ARTIFACTS_DIR,
    CONTEXT_DIR,
    LOCK_FILE,
    RECEIPTS_DIR,
    STAGING_DIR,
    checked_child,
    ensure_dir_all,
    spec_root,
)

logger = logging.getLogger(__name__)


class ArtifactStore:
    """Per-spec artifact tree with a staged -> final lifecycle.

    Layout under ``<home>/specs/<spec_id>/``::

        artifacts/   final, create-once artifacts (written only via rename)
        receipts/    per-attempt receipts
        context/     problem statement and debugging context
        .partial/    staging for the phase currently being attempted
        .lock        exclusive writer lock

    A mutating store holds the spec lock for its whole lifetime; the lock is
    released by ``close()``, by leaving the ``with`` block, or when the store
    is garbage collected. ``readonly()`` stores take no lock and create nothing.
    """

    def __init__(
        self,
        home: Path,
        spec_id: str,
        *,
        force: bool = False,
        lock_ttl_seconds: float | None = None,
        liveness: ProcessLiveness | None = None,
    ) -> None:
        self.spec_id = spec_id
        self.root = spec_root(home, spec_id)
        self.readonly_mode = False
        ensure_dir_all(self.root)
        self._lock: FileLock | None = FileLock.acquire(
            self.root / LOCK_FILE,
            spec_id,
            force=force,
            ttl_seconds=lock_ttl_seconds,
            liveness=liveness,
        )
        try:
            self.ensure_structure()
        except BaseException:
            self._lock.release()
            raise

    @classmethod
    def readonly(cls, home: Path, spec_id: str) -> "ArtifactStore":
        """Create an inspection-only store that never takes the lock."""
        store = cls.__new__(cls)
        store.spec_id = spec_id
        store.root = spec_root(home, spec_id)
        store.readonly_mode = True
        store._lock = None
        return store

    def ensure_structure(self) -> None:
        """Create all required directories if they do not exist."""
        for directory in (self.artifacts_dir, self.receipts_dir, self.context_dir, self.staging_dir):
            try:
                ensure_dir_all(directory)
            except OSError as exc:
                raise ArtifactWriteError(f"Failed to create directory {directory}: {exc}") from exc

    # ------------------------------------------------------------------
    # Lock lifecycle
    # ------------------------------------------------------------------

    @property
    def lock(self) -> FileLock | None:
        return self._lock

    def close(self) -> None:
        """Release the spec lock. Idempotent."""
        if self._lock is not None:
            self._lock.release()

    def __enter__(self) -> "ArtifactStore":
        return self

    def __exit__(self, exc_type, exc, tb) -> None:  # noqa: ANN001
        self.close()

    def _require_writable(self) -> None:
        if self.readonly_mode:
            raise ReadOnlyError(f"Artifact store for spec '{self.spec_id}' was opened read-only")
        if self._lock is None or self._lock.released:
            raise LockReleasedError(f"Artifact store for spec '{self.spec_id}' no longer holds its lock")

    # ------------------------------------------------------------------
    # Path properties
    # ------------------------------------------------------------------

    @property
    def artifacts_dir(self) -> Path:
        return self.root / ARTIFACTS_DIR

    @property
    def receipts_dir(self) -> Path:
        return self.root / RECEIPTS_DIR

    @property
    def context_dir(self) -> Path:
        return self.root / CONTEXT_DIR

    @property
    def staging_dir(self) -> Path:
        return self.root / STAGING_DIR

    def artifact_path(self, name: str, artifact_type: ArtifactType = ArtifactType.MARKDOWN) -> Path:
        directory = self.context_dir if artifact_type is ArtifactType.CONTEXT else self.artifacts_dir
        return checked_child(directory, name)

    # ------------------------------------------------------------------
    # Atomic writes
    # ------------------------------------------------------------------

    def write_atomic(self, path: Path, content: str) -> AtomicWriteResult:
        """Atomically write *content* to *path*, returning retry/fallback provenance."""
        self._require_writable()
        return write_file_atomic(path, content)

    def store_artifact(self, artifact: Artifact) -> ArtifactStoreResult:
        """Write an artifact directly into its final (or context) directory."""
        path = self.artifact_path(artifact.name, artifact.artifact_type)
        return ArtifactStoreResult(path=path, atomic_write=self.write_atomic(path, artifact.content))

    def store_phase_artifact(self, phase: PhaseId, content: str, artifact_type: ArtifactType) -> Path:
        name = phase_filename(phase, artifact_type)
        artifact = Artifact(name=name, content=normalize_line_endings(content), artifact_type=artifact_type)
        return self.store_artifact(artifact).path

    def store_context_file(self, name: str, content: str) -> Path:
        """Write ``context/<name>.txt`` (line endings normalized)."""
        path = checked_child(self.context_dir, f"{name}.txt")
        self.write_atomic(path, normalize_line_endings(content))
        return path

    def read_context_file(self, name: str) -> str | None:
        path = checked_child(self.context_dir, f"{name}.txt")
        try:
            return path.read_text(encoding="utf-8")
        except FileNotFoundError:
            return None

    def read_artifact(self, name: str, artifact_type: ArtifactType = ArtifactType.MARKDOWN) -> str:
        """Read a final (or context) artifact.

        Raises:
            FileNotFoundError: If the artifact does not exist.
        """
        path = self.artifact_path(name, artifact_type)
        if not path.is_file():
            raise FileNotFoundError(f"artifact not found: {path}")
        return path.read_text(encoding="utf-8")

    def artifact_exists(self, name: str, artifact_type: ArtifactType = ArtifactType.MARKDOWN) -> bool:
        return self.artifact_path(name, artifact_type).is_file()

    # ------------------------------------------------------------------
    # Staging and promotion
    # ------------------------------------------------------------------

    def stage(self, artifact: Artifact) -> ArtifactStoreResult:
        """Write *artifact* into the staging directory under its own name."""
        self._require_writable()
        try:
            ensure_dir_all(self.staging_dir)
        except OSError as exc:
            raise ArtifactWriteError(f"Failed to create staging directory {self.staging_dir}: {exc}") from exc
        path = checked_child(self.staging_dir, artifact.name)
        return ArtifactStoreResult(path=path, atomic_write=write_file_atomic(path, artifact.content))

    def stage_phase(self, phase: PhaseId, content: str, artifact_type: ArtifactType = ArtifactType.MARKDOWN) -> ArtifactStoreResult:
        name = phase_filename(phase, artifact_type)
        return self.stage(Artifact(name=name, content=normalize_line_endings(content), artifact_type=artifact_type))

    def staged_path(self, phase: PhaseId, artifact_type: ArtifactType = ArtifactType.MARKDOWN) -> Path:
        return self.staging_dir / phase_filename(phase, artifact_type)

    def promote(self, phase: PhaseId, artifact_type: ArtifactType = ArtifactType.MARKDOWN) -> Path:
        """Move the staged artifact for *phase* into ``artifacts/``.

        The move is a single same-filesystem rename, so a concurrent reader
        sees either no final artifact or the complete one.

        Raises:
            MissingStagedArtifactError: If nothing is staged for this phase/type.
            ArtifactWriteError: If the rename fails.
        """
        return self.promote_staged(phase_filename(phase, artifact_type))

    def promote_staged(self, name: str) -> Path:
        self._require_writable()
        staged = checked_child(self.staging_dir, name)
        final = checked_child(self.artifacts_dir, name)
        if not staged.is_file():
            raise MissingStagedArtifactError(staged)
        try:
            ensure_dir_all(self.artifacts_dir)
            os.replace(staged, final)
        except FileNotFoundError as exc:
            raise MissingStagedArtifactError(staged) from exc
        except OSError as exc:
            raise ArtifactWriteError(f"Failed to promote staged artifact {name}: {exc}") from exc
        logger.info("Promoted %s for spec '%s'", name, self.spec_id)
        return final

    def purge_stale_staging(self) -> None:
        """Best-effort removal of leftover staged output from a previous attempt.

        Failures are logged, never raised.
        """
        self._require_writable()
        if self.staging_dir.exists():
            try:
                shutil.rmtree(self.staging_dir)
            except OSError as exc:
                logger.warning("Failed to remove stale staging directory %s: %s", self.staging_dir, exc)
        try:
            ensure_dir_all(self.staging_dir)
        except OSError as exc:
            logger.warning("Failed to recreate staging directory %s: %s", self.staging_dir, exc)

    def has_staged_output(self) -> bool:
        try:
            return any(path.is_file() and not path.name.startswith(".") for path in self.staging_dir.iterdir())
        except FileNotFoundError:
            return False

    # ------------------------------------------------------------------
    # Partial artifacts (failed-phase output kept next to the finals)
    # ------------------------------------------------------------------

    def store_partial_artifact(self, phase: PhaseId, content: str) -> Path:
        return self.store_phase_artifact(phase, content, ArtifactType.PARTIAL)

    def has_partial_artifact(self, phase: PhaseId) -> bool:
        return self.artifact_exists(phase_filename(phase, ArtifactType.PARTIAL), ArtifactType.PARTIAL)

    def read_partial_artifact(self, phase: PhaseId) -> str:
        return self.read_artifact(phase_filename(phase, ArtifactType.PARTIAL), ArtifactType.PARTIAL)

    def delete_partial_artifact(self, phase: PhaseId) -> None:
        self._require_writable()
        path = self.artifact_path(phase_filename(phase, ArtifactType.PARTIAL), ArtifactType.PARTIAL)
        try:
            path.unlink()
        except FileNotFoundError:
            pass
        except OSError as exc:
            raise ArtifactWriteError(f"Failed to delete partial artifact {path}: {exc}") from exc

    def promote_partial_to_final(self, phase: PhaseId, artifact_type: ArtifactType = ArtifactType.MARKDOWN) -> Path:
        """Copy the partial artifact for *phase* into its final name atomically, then delete the partial.

        Raises:
            MissingStagedArtifactError: If no partial artifact exists.
        """
        self._require_writable()
        partial = self.artifact_path(phase_filename(phase, ArtifactType.PARTIAL), ArtifactType.PARTIAL)
        final = self.artifact_path(phase_filename(phase, artifact_type), artifact_type)
        try:
            content = partial.read_text(encoding="utf-8")
        except FileNotFoundError as exc:
            raise MissingStagedArtifactError(partial) from exc
        write_file_atomic(final, content)
        self.delete_partial_artifact(phase)
        return final

    # ------------------------------------------------------------------
    # Completion queries (read-only safe)
    # ------------------------------------------------------------------

    def phase_completed(self, phase: PhaseId) -> bool:
        """True iff both the Markdown and the structured final artifacts exist."""
        return self.artifact_exists(
            phase_filename(phase, ArtifactType.MARKDOWN), ArtifactType.MARKDOWN
        ) and self.artifact_exists(phase_filename(phase, ArtifactType.CORE_JSON), ArtifactType.CORE_JSON)

    def latest_completed_phase(self) -> PhaseId | None:
        for phase in reversed(PhaseId.ordered()):
            if self.phase_completed(phase):
                return phase
        return None

    def list_artifacts(self) -> list[str]:
        """Return final artifact file names, sorted; empty when nothing exists yet."""
        try:
            entries = list(self.artifacts_dir.iterdir())
        except FileNotFoundError:
            return []
        return sorted(entry.name for entry in entries if entry.is_file() and not entry.name.startswith("."))
