from __future__ import annotations

import hashlib
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from pathlib import Path
from typing import Any

from pydantic import BaseModel, ConfigDict, Field, field_validator

RECEIPT_SCHEMA_VERSION = "1"


class PhaseId(str, Enum):
    REQUIREMENTS = "requirements"
    DESIGN = "design"
    TASKS = "tasks"
    REVIEW = "review"
    FIXUP = "fixup"
    FINAL = "final"

    @property
    def ordinal(self) -> int:
        """Numeric prefix used in artifact filenames and for ordering."""
        return PHASE_ORDINALS[self]

    @classmethod
    def ordered(cls) -> list["PhaseId"]:
        return sorted(cls, key=lambda phase: phase.ordinal)


PHASE_ORDINALS: dict[PhaseId, int] = {
    PhaseId.REQUIREMENTS: 0,
    PhaseId.DESIGN: 10,
    PhaseId.TASKS: 20,
    PhaseId.REVIEW: 30,
    PhaseId.FIXUP: 40,
    PhaseId.FINAL: 50,
}


class ArtifactType(str, Enum):
    MARKDOWN = "markdown"
    CORE_JSON = "core_json"
    PARTIAL = "partial"
    CONTEXT = "context"

    @property
    def extension(self) -> str:
        return _ARTIFACT_EXTENSIONS[self]


_ARTIFACT_EXTENSIONS: dict[ArtifactType, str] = {
    ArtifactType.MARKDOWN: "md",
    ArtifactType.CORE_JSON: "core.json",
    ArtifactType.PARTIAL: "partial.md",
    ArtifactType.CONTEXT: "txt",
}


def phase_filename(phase: PhaseId, artifact_type: ArtifactType) -> str:
    """Return ``<ordinal:02>-<phase>.<ext>``, e.g. ``10-design.core.json``."""
    return f"{phase.ordinal:02d}-{phase.value}.{artifact_type.extension}"


def sha256_hex(content: str | bytes) -> str:
    data = content.encode("utf-8") if isinstance(content, str) else content
    return hashlib.sha256(data).hexdigest()


@dataclass(frozen=True)
class Artifact:
    """One document destined for the artifact store."""

    name: str
    content: str
    artifact_type: ArtifactType
    content_hash: str = ""

    def __post_init__(self) -> None:
        if not self.content_hash:
            object.__setattr__(self, "content_hash", sha256_hex(self.content))


@dataclass(frozen=True)
class AtomicWriteResult:
    """Provenance of an atomic write: how many rename retries, and whether copy fallback was used."""

    retry_count: int = 0
    fallback_used: bool = False
    warnings: tuple[str, ...] = ()


@dataclass(frozen=True)
class ArtifactStoreResult:
    path: Path
    atomic_write: AtomicWriteResult


@dataclass(frozen=True)
class LockInfo:
    spec_id: str
    pid: int
    hostname: str
    created_at: float


@dataclass(frozen=True)
class SecretMatch:
    pattern_id: str
    file_path: str
    line_number: int
    column_range: tuple[int, int]
    context: str


@dataclass(frozen=True)
class RedactionResult:
    content: str
    matches: list[SecretMatch]
    has_secrets: bool


# ---------------------------------------------------------------------------
# LLM collaborator contract
# ---------------------------------------------------------------------------

@dataclass(frozen=True)
class Message:
    role: str
    content: str

    @classmethod
    def system(cls, content: str) -> "Message":
        return cls(role="system", content=content)

    @classmethod
    def user(cls, content: str) -> "Message":
        return cls(role="user", content=content)


@dataclass(frozen=True)
class LlmInvocation:
    spec_id: str
    phase: str
    model: str
    timeout_seconds: float
    messages: list[Message]


@dataclass(frozen=True)
class LlmResult:
    raw_response: str
    model_used: str
    extensions: dict[str, Any] = field(default_factory=dict)


# ---------------------------------------------------------------------------
# Receipt (persisted, JCS-canonicalized)
# ---------------------------------------------------------------------------

class FileEvidence(BaseModel):
    model_config = ConfigDict(frozen=True)

    path: str
    sha256: str
    byte_count: int
    line_count: int


class PacketEvidence(BaseModel):
    model_config = ConfigDict(frozen=True)

    files: list[FileEvidence] = Field(default_factory=list)
    max_bytes: int
    max_lines: int

    @field_validator("files")
    @classmethod
    def _sort_files(cls, value: list[FileEvidence]) -> list[FileEvidence]:
        return sorted(value, key=lambda item: item.path)


class OutputEntry(BaseModel):
    model_config = ConfigDict(frozen=True)

    path: str
    sha256: str


class Receipt(BaseModel):
    """Immutable audit record of a single phase attempt.

    Array fields are sorted on construction so that two receipts built from
    the same facts in a different order canonicalize to identical bytes.
    """

    model_config = ConfigDict(frozen=True)

    schema_version: str = RECEIPT_SCHEMA_VERSION
    emitted_at: datetime
    spec_id: str
    phase: PhaseId
    tool_version: str
    backend_version: str
    model_full_name: str
    model_alias: str | None = None
    canonicalization_version: str
    canonicalization_backend: str
    flags: dict[str, str] = Field(default_factory=dict)
    runner: str
    runner_distro: str | None = None
    fallback_used: bool | None = None
    packet: PacketEvidence
    outputs: list[OutputEntry] = Field(default_factory=list)
    exit_code: int
    warnings: list[str] = Field(default_factory=list)
    error_kind: str | None = None
    error_reason: str | None = None
    stderr_tail: str | None = None

    @field_validator("outputs")
    @classmethod
    def _sort_outputs(cls, value: list[OutputEntry]) -> list[OutputEntry]:
        return sorted(value, key=lambda item: item.path)

    @field_validator("warnings")
    @classmethod
    def _sort_warnings(cls, value: list[str]) -> list[str]:
        return sorted(value)

    @property
    def succeeded(self) -> bool:
        return self.exit_code == 0


# ---------------------------------------------------------------------------
# Orchestrator results
# ---------------------------------------------------------------------------

@dataclass(frozen=True)
class ExecutionResult:
    phase: PhaseId
    success: bool
    exit_code: int
    artifact_paths: list[Path]
    receipt_path: Path
    warnings: list[str] = field(default_factory=list)


@dataclass(frozen=True)
class StatusSnapshot:
    """Best-effort read-only view of a spec; never blocks on an active writer."""

    spec_id: str
    artifacts: list[str]
    latest_completed_phase: PhaseId | None
    receipts: dict[str, str]
    successful_phases: list[PhaseId]
    has_staged_output: bool
