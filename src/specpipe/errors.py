"""
Error classes for specpipe.

Every error carries a stable machine-readable ``kind``, a process exit code,
a human-readable message and a remediation ``suggestion``:

- ConcurrencyError: the spec lock is held by someone else (or looks abandoned)
- ArtifactIoError: staging, promotion or atomic writes failed
- SecretDetectedError: the blocking redaction policy tripped before a call
- PhaseDependencyError: a prerequisite phase has no successful receipt
- PacketOverflowError: the outbound packet exceeds its byte/line budget
- LlmInvocationError: the backend timed out, failed or returned garbage
- CanonicalizationError: a receipt could not be serialized per RFC 8785

Callers branch on the exception class or ``kind``, never on message text.
"""

from __future__ import annotations

from pathlib import Path
from typing import Any


class SpecpipeError(Exception):
    """Base exception for specpipe."""

    kind: str = "internal"
    exit_code: int = 1
    default_suggestion: str = "Inspect the receipts directory for details and retry."

    def __init__(self, message: str, *, suggestion: str | None = None) -> None:
        super().__init__(message)
        self.message = message
        self.suggestion = suggestion if suggestion is not None else self.default_suggestion
        # Set by the orchestrator once a failure receipt has been written.
        self.receipt_path: Path | None = None

    def to_dict(self) -> dict[str, Any]:
        return {"kind": self.kind, "message": self.message, "suggestion": self.suggestion}


class ReadOnlyError(SpecpipeError):
    """Raised when a mutating operation is attempted on a read-only handle."""

    kind = "read_only"
    default_suggestion = "Construct the orchestrator without readonly() to run phases."


class LockReleasedError(ReadOnlyError):
    """Raised when a mutating operation is attempted after the spec lock was released."""

    kind = "lock_released"
    default_suggestion = "Open a new orchestrator to reacquire the spec lock."


# ---------------------------------------------------------------------------
# Concurrency
# ---------------------------------------------------------------------------

class ConcurrencyError(SpecpipeError):
    """Base class for lock acquisition failures."""

    exit_code = 9

    def __init__(self, message: str, *, spec_id: str, pid: int, age_seconds: float, suggestion: str | None = None) -> None:
        super().__init__(message, suggestion=suggestion)
        self.spec_id = spec_id
        self.pid = pid
        self.age_seconds = age_seconds


class ConcurrentExecutionError(ConcurrencyError):
    """Another live process holds the lock for this spec."""

    kind = "concurrent_execution"
    default_suggestion = "Wait for the other process to finish, or retry with force if it is stuck."

    def __init__(self, *, spec_id: str, pid: int, age_seconds: float) -> None:
        super().__init__(
            f"Another process is already running for spec '{spec_id}' "
            f"(PID {pid}, started {age_seconds:.0f}s ago)",
            spec_id=spec_id,
            pid=pid,
            age_seconds=age_seconds,
        )


class StaleLockError(ConcurrencyError):
    """The lock exists but its owner is gone or it outlived its TTL."""

    kind = "stale_lock"
    default_suggestion = "Retry with forced override if you are sure the process is no longer running."

    def __init__(self, *, spec_id: str, pid: int, age_seconds: float) -> None:
        super().__init__(
            f"Stale lock detected for spec '{spec_id}' (PID {pid}, age {age_seconds:.0f}s)",
            spec_id=spec_id,
            pid=pid,
            age_seconds=age_seconds,
        )


# ---------------------------------------------------------------------------
# Artifact I/O
# ---------------------------------------------------------------------------

class ArtifactIoError(SpecpipeError):
    """Base class for artifact store failures."""


class MissingStagedArtifactError(ArtifactIoError):
    """Promotion was requested but nothing is staged under that name."""

    kind = "missing_staged"
    default_suggestion = "Re-run the phase; nothing was staged for promotion."

    def __init__(self, path: Path) -> None:
        super().__init__(f"Staged artifact does not exist: {path}")
        self.path = path


class PathEscapeError(ArtifactIoError):
    """An artifact name would resolve outside of its directory."""

    kind = "path_escape"
    default_suggestion = "Use a plain file name without separators or '..'."

    def __init__(self, name: str) -> None:
        super().__init__(f"Artifact name escapes its directory: {name!r}")
        self.name = name


class ArtifactWriteError(ArtifactIoError):
    """An atomic write (including its retries and fallback) failed."""

    kind = "write_failure"
    default_suggestion = "Check free disk space and permissions on the specpipe home directory."


# ---------------------------------------------------------------------------
# Gate, dependency and packet errors
# ---------------------------------------------------------------------------

class SecretDetectedError(SpecpipeError):
    """The blocking secret policy found a match in outbound content."""

    kind = "secret_detected"
    exit_code = 8
    default_suggestion = (
        "Remove the secret from the input, add the pattern id to the ignore list, "
        "or switch the secret policy to 'redact'."
    )

    def __init__(self, *, pattern_id: str, location: str) -> None:
        super().__init__(f"Secret detected (pattern '{pattern_id}') at {location}")
        self.pattern_id = pattern_id
        self.location = location


class PhaseDependencyError(SpecpipeError):
    """A prerequisite phase is missing or did not succeed."""

    kind = "phase_dependency"
    exit_code = 2

    def __init__(self, *, phase: str, dependency: str) -> None:
        super().__init__(
            f"Phase '{phase}' requires a successful '{dependency}' receipt",
            suggestion=f"Run the '{dependency}' phase successfully first.",
        )
        self.phase = phase
        self.dependency = dependency


class PacketOverflowError(SpecpipeError):
    """The assembled packet exceeds the configured budget."""

    kind = "packet_overflow"
    exit_code = 7
    default_suggestion = "Raise SPECPIPE_PACKET_MAX_BYTES / SPECPIPE_PACKET_MAX_LINES or shrink the inputs."

    def __init__(self, *, used_bytes: int, used_lines: int, max_bytes: int, max_lines: int) -> None:
        super().__init__(
            f"Packet exceeds budget: {used_bytes} bytes / {used_lines} lines "
            f"(limits {max_bytes} bytes / {max_lines} lines)"
        )
        self.used_bytes = used_bytes
        self.used_lines = used_lines


# ---------------------------------------------------------------------------
# LLM invocation
# ---------------------------------------------------------------------------

class LlmInvocationError(SpecpipeError):
    """Base class for backend failures; raised directly for transport errors."""

    kind = "llm_failure"
    exit_code = 70
    default_suggestion = "Inspect stderr_tail in the failure receipt and re-run the phase."

    def __init__(self, message: str, *, stderr: str | None = None, suggestion: str | None = None) -> None:
        super().__init__(message, suggestion=suggestion)
        self.stderr = stderr


class LlmTimeoutError(LlmInvocationError):
    kind = "llm_timeout"
    exit_code = 10
    default_suggestion = "Increase SPECPIPE_PHASE_TIMEOUT or retry when the backend is less loaded."

    def __init__(self, timeout_seconds: float) -> None:
        super().__init__(f"LLM invocation timed out after {timeout_seconds:g}s")
        self.timeout_seconds = timeout_seconds


class LlmNonZeroExitError(LlmInvocationError):
    kind = "llm_nonzero_exit"

    def __init__(self, *, returncode: int, stderr: str | None = None) -> None:
        super().__init__(f"LLM backend exited with status {returncode}", stderr=stderr)
        self.returncode = returncode


class LlmMalformedOutputError(LlmInvocationError):
    kind = "llm_malformed_output"


# ---------------------------------------------------------------------------
# Canonicalization
# ---------------------------------------------------------------------------

class CanonicalizationError(SpecpipeError):
    kind = "canonicalization"
    default_suggestion = "Receipts may only contain JSON-compatible values."
