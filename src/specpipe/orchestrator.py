"""Phase orchestrator: runs one phase at a time under the spec lock.

A run is: dependency check -> purge stale staging -> build packet -> secret
gate -> backend call under a timeout -> stage and promote -> receipt. Every
attempt that gets past the dependency check leaves exactly one receipt,
success or failure; failures re-raise the original error with
``receipt_path`` attached.
"""

from __future__ import annotations

import logging
import threading
from concurrent.futures import Future
from concurrent.futures import TimeoutError as FutureTimeoutError
from dataclasses import dataclass, field
from importlib.metadata import PackageNotFoundError, version
from pathlib import Path

from .artifact_store import ArtifactStore
from .errors import (
    ArtifactWriteError,
    LlmInvocationError,
    LlmMalformedOutputError,
    LlmTimeoutError,
    LockReleasedError,
    PhaseDependencyError,
    ReadOnlyError,
    SpecpipeError,
)
from .llm import LlmBackend
from .lock import ProcessLiveness
from .models import (
    ArtifactType,
    ExecutionResult,
    LlmInvocation,
    LlmResult,
    OutputEntry,
    PhaseId,
    StatusSnapshot,
    sha256_hex,
)
from .packet import PROBLEM_STATEMENT_NAME, Packet, assemble_packet, empty_packet
from .phases import build_messages, dependencies_of, derive_core_document
from .phases import legal_next_phases as _legal_next_phases
from .receipt import ReceiptManager
from .redaction import SecretRedactor, redact_user_string, secret_detected_error
from .settings import RuntimeSettings

logger = logging.getLogger(__name__)


def legal_next_phases(current: PhaseId | None) -> list[PhaseId]:
    """Pure transition table; see :func:`specpipe.phases.legal_next_phases`."""
    return _legal_next_phases(current)


def tool_version() -> str:
    try:
        return version("specpipe")
    except PackageNotFoundError:
        return "0.0.0"


@dataclass(frozen=True)
class OrchestratorConfig:
    """Per-run overrides. ``None`` fields fall back to RuntimeSettings."""

    model: str | None = None
    timeout_seconds: float | None = None
    problem_statement: str | None = None
    flags: dict[str, str] = field(default_factory=dict)


class PhaseOrchestrator:
    """Drives phases for one spec.

    A mutating orchestrator holds the spec lock from construction until
    ``close()`` (or context-manager exit). ``readonly()`` builds an
    inspection-only orchestrator that never touches the lock or staging.
    """

    def __init__(
        self,
        settings: RuntimeSettings,
        spec_id: str,
        backend: LlmBackend | None,
        *,
        force: bool = False,
        redactor: SecretRedactor | None = None,
        liveness: ProcessLiveness | None = None,
    ) -> None:
        self.settings = settings
        self.spec_id = spec_id
        self.backend = backend
        self.redactor = redactor if redactor is not None else SecretRedactor.from_settings(settings)
        self.store = ArtifactStore(
            settings.home_path,
            spec_id,
            force=force,
            lock_ttl_seconds=settings.lock_ttl_seconds,
            liveness=liveness,
        )
        self.receipts = ReceiptManager(self.store.receipts_dir, redactor=self.redactor)

    @classmethod
    def readonly(cls, settings: RuntimeSettings, spec_id: str) -> "PhaseOrchestrator":
        orchestrator = cls.__new__(cls)
        orchestrator.settings = settings
        orchestrator.spec_id = spec_id
        orchestrator.backend = None
        orchestrator.redactor = SecretRedactor.from_settings(settings)
        orchestrator.store = ArtifactStore.readonly(settings.home_path, spec_id)
        orchestrator.receipts = ReceiptManager(orchestrator.store.receipts_dir, redactor=orchestrator.redactor)
        return orchestrator

    @property
    def is_readonly(self) -> bool:
        return self.store.readonly_mode

    def close(self) -> None:
        self.store.close()

    def __enter__(self) -> "PhaseOrchestrator":
        return self

    def __exit__(self, exc_type, exc, tb) -> None:  # noqa: ANN001
        self.close()

    # ------------------------------------------------------------------
    # Queries
    # ------------------------------------------------------------------

    def can_resume_from(self, phase: PhaseId) -> bool:
        """True iff every dependency of *phase* has a successful latest receipt."""
        return all(self.receipts.has_successful_receipt(dependency) for dependency in dependencies_of(phase))

    def current_phase(self) -> PhaseId | None:
        return self.store.latest_completed_phase()

    def legal_next_phases(self) -> list[PhaseId]:
        return legal_next_phases(self.current_phase())

    def status(self) -> StatusSnapshot:
        receipts: dict[str, str] = {}
        successful: list[PhaseId] = []
        for phase in PhaseId.ordered():
            latest = self.receipts.latest_receipt(phase)
            if latest is None:
                continue
            path, receipt = latest
            receipts[phase.value] = str(path)
            if receipt.succeeded:
                successful.append(phase)
        return StatusSnapshot(
            spec_id=self.spec_id,
            artifacts=self.store.list_artifacts(),
            latest_completed_phase=self.store.latest_completed_phase(),
            receipts=receipts,
            successful_phases=successful,
            has_staged_output=self.store.has_staged_output(),
        )

    # ------------------------------------------------------------------
    # Execution
    # ------------------------------------------------------------------

    def run_phase(self, phase: PhaseId, config: OrchestratorConfig | None = None) -> ExecutionResult:
        """Execute *phase* once.

        Args:
            phase: Phase to run.
            config: Per-run overrides; defaults come from RuntimeSettings.

        Returns:
            ExecutionResult for a successful attempt.

        Raises:
            ReadOnlyError: On a read-only orchestrator.
            LockReleasedError: After ``close()`` released the spec lock.
            PhaseDependencyError: If a dependency lacks a successful receipt (no receipt written).
            SpecpipeError: Any other failure, after its failure receipt is written.
        """
        if self.is_readonly:
            raise ReadOnlyError(f"Orchestrator for spec '{self.spec_id}' is read-only")
        lock = self.store.lock
        if lock is None or lock.released:
            raise LockReleasedError(f"Orchestrator for spec '{self.spec_id}' was closed and no longer holds its lock")
        config = config if config is not None else OrchestratorConfig()
        for dependency in dependencies_of(phase):
            if not self.receipts.has_successful_receipt(dependency):
                raise PhaseDependencyError(phase=phase.value, dependency=dependency.value)

        logger.info("Starting phase '%s' for spec '%s'", phase.value, self.spec_id)
        self.store.purge_stale_staging()

        warnings: list[str] = []
        packet: Packet | None = None
        llm_result: LlmResult | None = None
        response_text: str | None = None
        try:
            packet = assemble_packet(
                self.store,
                phase,
                max_bytes=self.settings.packet_max_bytes,
                max_lines=self.settings.packet_max_lines,
                problem_statement=config.problem_statement,
            )
            packet.enforce_budget()
            packet = self._apply_secret_gate(packet, warnings)
            if config.problem_statement is not None:
                self._persist_problem_statement(packet)

            invocation = LlmInvocation(
                spec_id=self.spec_id,
                phase=phase.value,
                model=self._model(config),
                timeout_seconds=self._timeout(config),
                messages=build_messages(phase, packet.render()),
            )
            llm_result = _checked_result(self._invoke_with_timeout(invocation))
            _check_response_text(llm_result)

            redacted = self.redactor.redact(llm_result.raw_response, f"response:{phase.value}")
            for match in redacted.matches:
                warnings.append(f"secret_redacted:{match.pattern_id}:{match.file_path}:{match.line_number}")
            response_text = redacted.content

            artifact_paths, outputs = self._stage_and_promote(phase, response_text, warnings)
        except SpecpipeError as exc:
            exc.receipt_path = self._record_failure(phase, config, packet, llm_result, response_text, exc, warnings)
            logger.error("Phase '%s' failed for spec '%s': %s", phase.value, self.spec_id, exc.kind)
            raise

        receipt = self.receipts.build_receipt(
            spec_id=self.spec_id,
            phase=phase,
            tool_version=tool_version(),
            backend_version=str(llm_result.extensions.get("backend_version", "unknown")),
            model_full_name=llm_result.model_used,
            model_alias=self._model_alias(config, llm_result),
            runner=str(llm_result.extensions.get("runner", self.settings.runner)),
            runner_distro=_optional_str(llm_result.extensions.get("runner_distro")),
            fallback_used=_optional_bool(llm_result.extensions.get("fallback_used")),
            packet=packet.evidence(),
            outputs=outputs,
            exit_code=0,
            warnings=warnings,
            flags=config.flags,
            stderr_tail=_optional_str(llm_result.extensions.get("stderr")),
            stderr_tail_bytes=self.settings.stderr_tail_bytes,
        )
        receipt_path, _ = self.receipts.write_receipt(receipt)
        logger.info("Completed phase '%s' for spec '%s'", phase.value, self.spec_id)
        return ExecutionResult(
            phase=phase,
            success=True,
            exit_code=0,
            artifact_paths=artifact_paths,
            receipt_path=receipt_path,
            warnings=list(receipt.warnings),
        )

    # ------------------------------------------------------------------
    # Steps
    # ------------------------------------------------------------------

    def _model(self, config: OrchestratorConfig) -> str:
        return config.model or self.settings.model

    def _timeout(self, config: OrchestratorConfig) -> float:
        return float(config.timeout_seconds if config.timeout_seconds is not None else self.settings.phase_timeout_seconds)

    def _model_alias(self, config: OrchestratorConfig, llm_result: LlmResult | None) -> str | None:
        requested = self._model(config)
        if llm_result is None or llm_result.model_used == requested:
            return None
        return requested

    def _apply_secret_gate(self, packet: Packet, warnings: list[str]) -> Packet:
        matches = packet.scan(self.redactor)
        if not matches:
            return packet
        if self.settings.secret_policy == "block":
            raise secret_detected_error(matches)
        logger.warning("Redacted %d secret match(es) from the outbound packet", len(matches))
        for match in matches:
            warnings.append(f"secret_redacted:{match.pattern_id}:{match.file_path}:{match.line_number}")
        return packet.redacted(self.redactor)

    def _persist_problem_statement(self, packet: Packet) -> None:
        if self.store.read_context_file(PROBLEM_STATEMENT_NAME) is not None:
            return
        content = packet.content_of(f"context/{PROBLEM_STATEMENT_NAME}.txt")
        if content is not None:
            self.store.store_context_file(PROBLEM_STATEMENT_NAME, content)

    def _invoke_with_timeout(self, invocation: LlmInvocation) -> LlmResult:
        """Call the backend on a daemon thread and wait at most ``timeout_seconds``.

        A call that outlives its timeout is abandoned; being a daemon, the
        thread cannot keep the interpreter alive at exit.
        """
        backend = self.backend
        if backend is None:
            raise LlmInvocationError("No LLM backend configured for this orchestrator")
        future: Future[LlmResult] = Future()

        def _call() -> None:
            if not future.set_running_or_notify_cancel():
                return
            try:
                future.set_result(backend.invoke(invocation))
            except BaseException as exc:  # noqa: BLE001 - delivered to the waiting caller.
                future.set_exception(exc)

        worker = threading.Thread(target=_call, name=f"specpipe-{invocation.phase}", daemon=True)
        worker.start()
        try:
            return future.result(timeout=invocation.timeout_seconds)
        except FutureTimeoutError as exc:
            raise LlmTimeoutError(invocation.timeout_seconds) from exc
        except SpecpipeError:
            raise
        except Exception as exc:  # noqa: BLE001 - backends may raise anything.
            detail = redact_user_string(f"{type(exc).__name__}: {exc}")
            raise LlmInvocationError(f"LLM backend failed: {detail}", stderr=detail) from exc

    def _stage_and_promote(
        self, phase: PhaseId, markdown: str, warnings: list[str]
    ) -> tuple[list[Path], list[OutputEntry]]:
        staged_md = self.store.stage_phase(phase, markdown, ArtifactType.MARKDOWN)
        try:
            staged_markdown = staged_md.path.read_text(encoding="utf-8")
        except OSError as exc:
            raise ArtifactWriteError(f"Failed to read staged artifact {staged_md.path}: {exc}") from exc
        core = derive_core_document(self.spec_id, phase, staged_markdown)
        staged_core = self.store.stage_phase(phase, core, ArtifactType.CORE_JSON)
        for result in (staged_md, staged_core):
            warnings.extend(result.atomic_write.warnings)

        paths = [self.store.promote(phase, ArtifactType.MARKDOWN), self.store.promote(phase, ArtifactType.CORE_JSON)]
        self.store.delete_partial_artifact(phase)
        outputs: list[OutputEntry] = []
        for path in paths:
            try:
                digest = sha256_hex(path.read_bytes())
            except OSError as exc:
                raise ArtifactWriteError(f"Failed to hash promoted artifact {path}: {exc}") from exc
            outputs.append(OutputEntry(path=f"{path.parent.name}/{path.name}", sha256=digest))
        return paths, outputs

    def _record_failure(
        self,
        phase: PhaseId,
        config: OrchestratorConfig,
        packet: Packet | None,
        llm_result: LlmResult | None,
        response_text: str | None,
        error: SpecpipeError,
        warnings: list[str],
    ) -> Path | None:
        """Stage any partial response and write the failure receipt. Returns its path, or None if that failed."""
        if response_text:
            try:
                self.store.stage_phase(phase, response_text, ArtifactType.PARTIAL)
            except SpecpipeError as stage_exc:
                logger.warning("Failed to stage partial output for phase '%s': %s", phase.value, stage_exc)

        stderr = error.stderr if isinstance(error, LlmInvocationError) else None
        if stderr is None and llm_result is not None:
            stderr = _optional_str(llm_result.extensions.get("stderr"))
        extensions = llm_result.extensions if llm_result is not None else {}
        evidence = (packet or empty_packet(
            max_bytes=self.settings.packet_max_bytes, max_lines=self.settings.packet_max_lines
        )).evidence()

        try:
            receipt = self.receipts.build_receipt(
                spec_id=self.spec_id,
                phase=phase,
                tool_version=tool_version(),
                backend_version=str(extensions.get("backend_version", "unknown")),
                model_full_name=llm_result.model_used if llm_result is not None else self._model(config),
                model_alias=self._model_alias(config, llm_result),
                runner=str(extensions.get("runner", self.settings.runner)),
                runner_distro=_optional_str(extensions.get("runner_distro")),
                fallback_used=_optional_bool(extensions.get("fallback_used")),
                packet=evidence,
                outputs=[],
                exit_code=error.exit_code,
                warnings=warnings,
                flags=config.flags,
                error_kind=error.kind,
                error_reason=error.message,
                stderr_tail=stderr,
                stderr_tail_bytes=self.settings.stderr_tail_bytes,
            )
            path, _ = self.receipts.write_receipt(receipt)
        except SpecpipeError as receipt_exc:
            logger.error("Failed to write failure receipt for phase '%s': %s", phase.value, receipt_exc)
            return None
        return path


def _checked_result(result: object) -> LlmResult:
    if not isinstance(result, LlmResult):
        raise LlmMalformedOutputError(f"Backend returned {type(result).__name__}, expected LlmResult")
    return result


def _check_response_text(result: LlmResult) -> None:
    """Reject responses that cannot become a phase artifact."""
    if not isinstance(result.raw_response, str):
        raise LlmMalformedOutputError(
            f"Backend response has type {type(result.raw_response).__name__}, expected str"
        )
    if not result.raw_response.strip():
        raise LlmMalformedOutputError("Backend returned an empty response")


def _optional_str(value: object) -> str | None:
    return None if value is None else str(value)


def _optional_bool(value: object) -> bool | None:
    return None if value is None else bool(value)
