from importlib.metadata import version

from .artifact_store import ArtifactStore
from .canonical import to_canonical_json
from .errors import (
    ArtifactIoError,
    ArtifactWriteError,
    CanonicalizationError,
    ConcurrencyError,
    ConcurrentExecutionError,
    LlmInvocationError,
    LlmMalformedOutputError,
    LlmNonZeroExitError,
    LlmTimeoutError,
    LockReleasedError,
    MissingStagedArtifactError,
    PacketOverflowError,
    PathEscapeError,
    PhaseDependencyError,
    ReadOnlyError,
    SecretDetectedError,
    SpecpipeError,
    StaleLockError,
)
from .llm import ChatModelBackend, LlmBackend, get_chat_model
from .lock import FileLock, OsProcessLiveness, ProcessLiveness, read_lock_info
from .models import (
    Artifact,
    ArtifactType,
    ExecutionResult,
    LlmInvocation,
    LlmResult,
    Message,
    PhaseId,
    Receipt,
    RedactionResult,
    SecretMatch,
    StatusSnapshot,
)
from .orchestrator import OrchestratorConfig, PhaseOrchestrator, legal_next_phases
from .receipt import ReceiptManager
from .redaction import RedactingFilter, SecretRedactor, redact_user_string
from .settings import RuntimeSettings


def get_version() -> str:
    try:
        return version(__name__)
    except Exception:
        return "0.0.0"


__all__ = [
    "Artifact",
    "ArtifactIoError",
    "ArtifactStore",
    "ArtifactType",
    "ArtifactWriteError",
    "CanonicalizationError",
    "ChatModelBackend",
    "ConcurrencyError",
    "ConcurrentExecutionError",
    "ExecutionResult",
    "FileLock",
    "LlmBackend",
    "LlmInvocation",
    "LlmInvocationError",
    "LlmMalformedOutputError",
    "LlmNonZeroExitError",
    "LlmResult",
    "LlmTimeoutError",
    "LockReleasedError",
    "Message",
    "MissingStagedArtifactError",
    "OrchestratorConfig",
    "OsProcessLiveness",
    "PacketOverflowError",
    "PathEscapeError",
    "PhaseDependencyError",
    "PhaseId",
    "PhaseOrchestrator",
    "ProcessLiveness",
    "ReadOnlyError",
    "Receipt",
    "ReceiptManager",
    "RedactingFilter",
    "RedactionResult",
    "RuntimeSettings",
    "SecretDetectedError",
    "SecretMatch",
    "SecretRedactor",
    "SpecpipeError",
    "StaleLockError",
    "StatusSnapshot",
    "get_chat_model",
    "get_version",
    "legal_next_phases",
    "read_lock_info",
    "redact_user_string",
    "to_canonical_json",
]
