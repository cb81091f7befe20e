from __future__ import annotations

import json
import threading
from pathlib import Path

import pytest

from specpipe.errors import (
    ArtifactWriteError,
    ConcurrentExecutionError,
    LlmInvocationError,
    LlmMalformedOutputError,
    LlmNonZeroExitError,
    LlmTimeoutError,
    LockReleasedError,
    PacketOverflowError,
    PhaseDependencyError,
    ReadOnlyError,
    SecretDetectedError,
)
from specpipe.models import ArtifactType, LlmInvocation, LlmResult, PhaseId
from specpipe.orchestrator import OrchestratorConfig, PhaseOrchestrator, legal_next_phases
from specpipe.receipt import ReceiptManager
from specpipe.settings import RuntimeSettings

AWS_KEY = "AKIA" + "QRSTUVWXYZ234567"
GITHUB_TOKEN = "ghp_" + "k" * 36


class _RecordingBackend:
    """Returns a canned Markdown document per phase and records every invocation."""

    def __init__(self, response: str | None = None, **extensions: object) -> None:
        self.response = response
        self.extensions = {"backend_version": "fake/1.0", **extensions}
        self.invocations: list[LlmInvocation] = []

    def invoke(self, invocation: LlmInvocation) -> LlmResult:
        self.invocations.append(invocation)
        text = self.response if self.response is not None else f"# {invocation.phase.title()}\n\n## Scope\nDetails.\n"
        return LlmResult(raw_response=text, model_used="fake-model-2026", extensions=dict(self.extensions))


class _FailingBackend:
    def __init__(self, error: Exception) -> None:
        self.error = error
        self.calls = 0

    def invoke(self, invocation: LlmInvocation) -> LlmResult:
        self.calls += 1
        raise self.error


class _FixedResultBackend:
    def __init__(self, result: object) -> None:
        self.result = result

    def invoke(self, invocation: LlmInvocation) -> object:
        return self.result


class _BlockingBackend:
    def __init__(self) -> None:
        self.started = threading.Event()
        self.release = threading.Event()
        self.worker: threading.Thread | None = None

    def invoke(self, invocation: LlmInvocation) -> LlmResult:
        self.worker = threading.current_thread()
        self.started.set()
        self.release.wait(timeout=10)
        return LlmResult(raw_response="# Late\n", model_used="fake-model-2026")


@pytest.fixture
def settings(tmp_path: Path) -> RuntimeSettings:
    return RuntimeSettings(home=str(tmp_path / "home"))


def _receipts(settings: RuntimeSettings, spec_id: str = "demo") -> ReceiptManager:
    return ReceiptManager(settings.home_path / "specs" / spec_id / "receipts")


def _run_chain(orchestrator: PhaseOrchestrator, *phases: PhaseId) -> None:
    for phase in phases:
        orchestrator.run_phase(phase)


def test_legal_next_phases_table() -> None:
    assert legal_next_phases(None) == [PhaseId.REQUIREMENTS]
    assert legal_next_phases(PhaseId.REQUIREMENTS) == [PhaseId.REQUIREMENTS, PhaseId.DESIGN]
    assert legal_next_phases(PhaseId.DESIGN) == [PhaseId.DESIGN, PhaseId.TASKS]
    assert legal_next_phases(PhaseId.TASKS) == [PhaseId.TASKS, PhaseId.REVIEW, PhaseId.FINAL]
    assert legal_next_phases(PhaseId.REVIEW) == [PhaseId.REVIEW, PhaseId.FIXUP, PhaseId.FINAL]
    assert legal_next_phases(PhaseId.FIXUP) == [PhaseId.FIXUP, PhaseId.FINAL]
    assert legal_next_phases(PhaseId.FINAL) == [PhaseId.FINAL]


def test_run_requirements_success(settings: RuntimeSettings) -> None:
    backend = _RecordingBackend()
    with PhaseOrchestrator(settings, "demo", backend) as orchestrator:
        result = orchestrator.run_phase(
            PhaseId.REQUIREMENTS,
            OrchestratorConfig(problem_statement="Build a CSV importer.", flags={"mode": "strict"}),
        )

        assert result.success
        assert result.exit_code == 0
        assert [path.name for path in result.artifact_paths] == ["00-requirements.md", "00-requirements.core.json"]
        for path in result.artifact_paths:
            assert path.read_text(encoding="utf-8")
        assert orchestrator.store.phase_completed(PhaseId.REQUIREMENTS)
        assert orchestrator.current_phase() == PhaseId.REQUIREMENTS
        assert orchestrator.legal_next_phases() == [PhaseId.REQUIREMENTS, PhaseId.DESIGN]
        assert not orchestrator.store.has_staged_output()
        assert orchestrator.store.read_context_file("problem-statement") == "Build a CSV importer."

    invocation = backend.invocations[0]
    assert invocation.phase == "requirements"
    assert invocation.model == settings.model
    assert invocation.timeout_seconds == 600
    assert [message.role for message in invocation.messages] == ["system", "user"]
    assert "Build a CSV importer." in invocation.messages[1].content

    receipt = ReceiptManager(result.receipt_path.parent).read_receipt(result.receipt_path)
    assert receipt.succeeded
    assert receipt.phase == PhaseId.REQUIREMENTS
    assert receipt.flags == {"mode": "strict"}
    assert receipt.model_full_name == "fake-model-2026"
    assert receipt.model_alias == settings.model
    assert receipt.backend_version == "fake/1.0"
    assert [entry.path for entry in receipt.outputs] == [
        "artifacts/00-requirements.core.json",
        "artifacts/00-requirements.md",
    ]
    assert [item.path for item in receipt.packet.files] == ["context/problem-statement.txt"]


def test_core_artifact_describes_markdown(settings: RuntimeSettings) -> None:
    backend = _RecordingBackend(response="# Requirements\n\n## Goals\n\n```\n# not a heading\n```\n## Risks\n")
    with PhaseOrchestrator(settings, "demo", backend) as orchestrator:
        orchestrator.run_phase(PhaseId.REQUIREMENTS)
        core = json.loads(orchestrator.store.read_artifact("00-requirements.core.json", ArtifactType.CORE_JSON))

    assert core["phase"] == "requirements"
    assert core["spec_id"] == "demo"
    assert [section["title"] for section in core["sections"]] == ["Requirements", "Goals", "Risks"]


def test_later_phase_packet_includes_earlier_artifacts(settings: RuntimeSettings) -> None:
    backend = _RecordingBackend()
    with PhaseOrchestrator(settings, "demo", backend) as orchestrator:
        orchestrator.run_phase(PhaseId.REQUIREMENTS, OrchestratorConfig(problem_statement="Problem."))
        result = orchestrator.run_phase(PhaseId.DESIGN)

    design_prompt = backend.invocations[1].messages[1].content
    assert "artifacts/00-requirements.md" in design_prompt
    assert "Problem." in design_prompt
    receipt = ReceiptManager(result.receipt_path.parent).read_receipt(result.receipt_path)
    assert [item.path for item in receipt.packet.files] == [
        "artifacts/00-requirements.md",
        "context/problem-statement.txt",
    ]


def test_full_chain_reaches_final(settings: RuntimeSettings) -> None:
    with PhaseOrchestrator(settings, "demo", _RecordingBackend()) as orchestrator:
        _run_chain(orchestrator, PhaseId.REQUIREMENTS, PhaseId.DESIGN, PhaseId.TASKS, PhaseId.REVIEW, PhaseId.FIXUP)
        orchestrator.run_phase(PhaseId.FINAL)
        assert orchestrator.current_phase() == PhaseId.FINAL
        snapshot = orchestrator.status()

    assert snapshot.successful_phases == PhaseId.ordered()
    assert snapshot.latest_completed_phase == PhaseId.FINAL
    assert len(snapshot.artifacts) == 12
    assert set(snapshot.receipts) == {phase.value for phase in PhaseId}


def test_dependency_without_receipt_blocks_resume(settings: RuntimeSettings) -> None:
    backend = _RecordingBackend()
    with PhaseOrchestrator(settings, "demo", backend) as orchestrator:
        orchestrator.store.store_phase_artifact(PhaseId.REQUIREMENTS, "# Requirements\n", ArtifactType.MARKDOWN)
        orchestrator.store.store_phase_artifact(PhaseId.REQUIREMENTS, "{}", ArtifactType.CORE_JSON)

        assert orchestrator.current_phase() == PhaseId.REQUIREMENTS
        assert not orchestrator.can_resume_from(PhaseId.DESIGN)
        assert orchestrator.can_resume_from(PhaseId.REQUIREMENTS)

        with pytest.raises(PhaseDependencyError) as excinfo:
            orchestrator.run_phase(PhaseId.DESIGN)

    assert excinfo.value.exit_code == 2
    assert excinfo.value.dependency == "requirements"
    assert excinfo.value.receipt_path is None
    assert backend.invocations == []
    assert _receipts(settings).list_receipts() == []


def test_final_depends_on_tasks_only(settings: RuntimeSettings) -> None:
    with PhaseOrchestrator(settings, "demo", _RecordingBackend()) as orchestrator:
        _run_chain(orchestrator, PhaseId.REQUIREMENTS, PhaseId.DESIGN)
        assert not orchestrator.can_resume_from(PhaseId.FINAL)
        orchestrator.run_phase(PhaseId.TASKS)
        assert orchestrator.can_resume_from(PhaseId.FINAL)
        assert not orchestrator.can_resume_from(PhaseId.FIXUP)


def test_secret_in_packet_blocks_before_backend_call(settings: RuntimeSettings) -> None:
    backend = _RecordingBackend()
    with PhaseOrchestrator(settings, "demo", backend) as orchestrator:
        with pytest.raises(SecretDetectedError) as excinfo:
            orchestrator.run_phase(
                PhaseId.REQUIREMENTS,
                OrchestratorConfig(problem_statement=f"Use key {AWS_KEY} to deploy."),
            )
        assert orchestrator.store.read_context_file("problem-statement") is None
        assert not orchestrator.store.phase_completed(PhaseId.REQUIREMENTS)

    error = excinfo.value
    assert backend.invocations == []
    assert error.pattern_id == "aws_access_key"
    assert AWS_KEY not in str(error)
    assert error.receipt_path is not None
    body = error.receipt_path.read_text(encoding="utf-8")
    assert AWS_KEY not in body
    receipt = ReceiptManager(error.receipt_path.parent).read_receipt(error.receipt_path)
    assert receipt.exit_code == 8
    assert receipt.error_kind == "secret_detected"
    assert receipt.outputs == []


def test_redact_policy_sends_redacted_packet(tmp_path: Path) -> None:
    settings = RuntimeSettings(home=str(tmp_path / "home"), secret_policy="redact")
    backend = _RecordingBackend()
    with PhaseOrchestrator(settings, "demo", backend) as orchestrator:
        result = orchestrator.run_phase(
            PhaseId.REQUIREMENTS,
            OrchestratorConfig(problem_statement=f"Use key {AWS_KEY} to deploy."),
        )
        stored = orchestrator.store.read_context_file("problem-statement")

    prompt = backend.invocations[0].messages[1].content
    assert AWS_KEY not in prompt
    assert "[REDACTED:aws_access_key]" in prompt
    assert stored is not None and AWS_KEY not in stored
    assert "secret_redacted:aws_access_key:context/problem-statement.txt:1" in result.warnings


def test_secret_in_response_is_redacted_before_staging(settings: RuntimeSettings) -> None:
    backend = _RecordingBackend(response=f"# Requirements\n\nToken: {GITHUB_TOKEN}\n")
    with PhaseOrchestrator(settings, "demo", backend) as orchestrator:
        result = orchestrator.run_phase(PhaseId.REQUIREMENTS)
        markdown = orchestrator.store.read_artifact("00-requirements.md")

    assert GITHUB_TOKEN not in markdown
    assert "[REDACTED:github_pat]" in markdown
    assert "secret_redacted:github_pat:response:requirements:3" in result.warnings


def test_timeout_emits_failure_receipt(settings: RuntimeSettings) -> None:
    backend = _BlockingBackend()
    try:
        with PhaseOrchestrator(settings, "demo", backend) as orchestrator:
            with pytest.raises(LlmTimeoutError) as excinfo:
                orchestrator.run_phase(PhaseId.REQUIREMENTS, OrchestratorConfig(timeout_seconds=0.2))
            assert orchestrator.store.list_artifacts() == []
    finally:
        backend.release.set()

    assert backend.started.wait(timeout=5)
    assert backend.worker is not None
    assert backend.worker.daemon
    error = excinfo.value
    assert error.exit_code == 10
    receipt = ReceiptManager(error.receipt_path.parent).read_receipt(error.receipt_path)
    assert receipt.exit_code == 10
    assert receipt.error_kind == "llm_timeout"
    assert "0.2s" in (receipt.error_reason or "")


def test_nonzero_exit_records_redacted_stderr(settings: RuntimeSettings) -> None:
    backend = _FailingBackend(LlmNonZeroExitError(returncode=3, stderr=f"fatal: bad credentials {GITHUB_TOKEN}"))
    with PhaseOrchestrator(settings, "demo", backend) as orchestrator:
        with pytest.raises(LlmNonZeroExitError) as excinfo:
            orchestrator.run_phase(PhaseId.REQUIREMENTS)

    receipt_path = excinfo.value.receipt_path
    assert receipt_path is not None
    assert GITHUB_TOKEN not in receipt_path.read_text(encoding="utf-8")
    receipt = ReceiptManager(receipt_path.parent).read_receipt(receipt_path)
    assert receipt.exit_code == 70
    assert receipt.error_kind == "llm_nonzero_exit"
    assert receipt.stderr_tail == "fatal: bad credentials ***"


def test_malformed_output_is_a_failure(settings: RuntimeSettings) -> None:
    backend = _FailingBackend(LlmMalformedOutputError("empty response"))
    with PhaseOrchestrator(settings, "demo", backend) as orchestrator:
        with pytest.raises(LlmMalformedOutputError):
            orchestrator.run_phase(PhaseId.REQUIREMENTS)
        assert not orchestrator.store.phase_completed(PhaseId.REQUIREMENTS)

    assert not _receipts(settings).has_successful_receipt(PhaseId.REQUIREMENTS)


@pytest.mark.parametrize("raw_response", ["", "  \n\t"])
def test_blank_response_is_never_promoted(settings: RuntimeSettings, raw_response: str) -> None:
    backend = _FixedResultBackend(LlmResult(raw_response=raw_response, model_used="fake-model-2026"))
    with PhaseOrchestrator(settings, "demo", backend) as orchestrator:
        with pytest.raises(LlmMalformedOutputError) as excinfo:
            orchestrator.run_phase(PhaseId.REQUIREMENTS)
        assert orchestrator.store.list_artifacts() == []
        assert not orchestrator.store.phase_completed(PhaseId.REQUIREMENTS)

    receipt = ReceiptManager(excinfo.value.receipt_path.parent).read_receipt(excinfo.value.receipt_path)
    assert receipt.error_kind == "llm_malformed_output"
    assert receipt.model_full_name == "fake-model-2026"
    assert not _receipts(settings).has_successful_receipt(PhaseId.REQUIREMENTS)


@pytest.mark.parametrize(
    "result",
    [None, "# Requirements\n", LlmResult(raw_response=None, model_used="fake-model-2026")],  # type: ignore[arg-type]
)
def test_backend_result_of_wrong_shape_writes_failure_receipt(settings: RuntimeSettings, result: object) -> None:
    with PhaseOrchestrator(settings, "demo", _FixedResultBackend(result)) as orchestrator:
        with pytest.raises(LlmMalformedOutputError) as excinfo:
            orchestrator.run_phase(PhaseId.REQUIREMENTS)
        assert orchestrator.store.list_artifacts() == []

    assert excinfo.value.receipt_path is not None
    receipt = ReceiptManager(excinfo.value.receipt_path.parent).read_receipt(excinfo.value.receipt_path)
    assert receipt.exit_code == excinfo.value.exit_code
    assert receipt.outputs == []


def test_unreadable_promoted_artifact_writes_failure_receipt(
    settings: RuntimeSettings, monkeypatch: pytest.MonkeyPatch
) -> None:
    original_read_bytes = Path.read_bytes

    def _failing_read_bytes(path: Path) -> bytes:
        if path.parent.name == "artifacts":
            raise OSError("input/output error")
        return original_read_bytes(path)

    with PhaseOrchestrator(settings, "demo", _RecordingBackend()) as orchestrator:
        monkeypatch.setattr(Path, "read_bytes", _failing_read_bytes)
        with pytest.raises(ArtifactWriteError) as excinfo:
            orchestrator.run_phase(PhaseId.REQUIREMENTS)
        monkeypatch.undo()

    assert isinstance(excinfo.value.__cause__, OSError)
    receipt = ReceiptManager(excinfo.value.receipt_path.parent).read_receipt(excinfo.value.receipt_path)
    assert receipt.error_kind == "write_failure"
    assert not receipt.succeeded


def test_closed_orchestrator_cannot_run_phases(settings: RuntimeSettings) -> None:
    closed = PhaseOrchestrator(settings, "demo", _RecordingBackend())
    closed.close()

    with PhaseOrchestrator(settings, "demo", _RecordingBackend()) as successor:
        with pytest.raises(LockReleasedError) as excinfo:
            closed.run_phase(PhaseId.REQUIREMENTS)
        assert excinfo.value.kind == "lock_released"
        assert isinstance(excinfo.value, ReadOnlyError)
        assert closed.backend.invocations == []
        assert successor.store.list_artifacts() == []
        assert _receipts(settings).list_receipts(PhaseId.REQUIREMENTS) == []
        assert not successor.store.lock.released


def test_unexpected_backend_exception_is_wrapped(settings: RuntimeSettings) -> None:
    backend = _FailingBackend(RuntimeError(f"socket closed while sending {GITHUB_TOKEN}"))
    with PhaseOrchestrator(settings, "demo", backend) as orchestrator:
        with pytest.raises(LlmInvocationError) as excinfo:
            orchestrator.run_phase(PhaseId.REQUIREMENTS)

    assert excinfo.value.kind == "llm_failure"
    assert GITHUB_TOKEN not in str(excinfo.value)
    assert isinstance(excinfo.value.__cause__, RuntimeError)


def test_packet_overflow_emits_failure_receipt(tmp_path: Path) -> None:
    settings = RuntimeSettings(home=str(tmp_path / "home"), packet_max_bytes=1_024)
    backend = _RecordingBackend()
    with PhaseOrchestrator(settings, "demo", backend) as orchestrator:
        with pytest.raises(PacketOverflowError) as excinfo:
            orchestrator.run_phase(PhaseId.REQUIREMENTS, OrchestratorConfig(problem_statement="x" * 2_000))

    assert backend.invocations == []
    receipt = ReceiptManager(excinfo.value.receipt_path.parent).read_receipt(excinfo.value.receipt_path)
    assert receipt.exit_code == 7
    assert receipt.packet.files[0].byte_count == 2_000


def test_failed_promotion_leaves_partial_staged_and_next_run_purges(
    settings: RuntimeSettings, monkeypatch: pytest.MonkeyPatch
) -> None:
    with PhaseOrchestrator(settings, "demo", _RecordingBackend()) as orchestrator:

        def _broken_promote(phase: PhaseId, artifact_type: ArtifactType = ArtifactType.MARKDOWN) -> Path:
            raise ArtifactWriteError("disk full")

        monkeypatch.setattr(orchestrator.store, "promote", _broken_promote)
        with pytest.raises(ArtifactWriteError):
            orchestrator.run_phase(PhaseId.REQUIREMENTS)
        assert orchestrator.store.has_staged_output()
        assert orchestrator.store.staged_path(PhaseId.REQUIREMENTS, ArtifactType.PARTIAL).is_file()
        assert orchestrator.store.list_artifacts() == []

        monkeypatch.undo()
        orchestrator.run_phase(PhaseId.REQUIREMENTS)
        assert not orchestrator.store.has_staged_output()
        assert orchestrator.store.phase_completed(PhaseId.REQUIREMENTS)


def test_rerun_after_failure_succeeds(settings: RuntimeSettings) -> None:
    with PhaseOrchestrator(settings, "demo", _FailingBackend(LlmNonZeroExitError(returncode=1))) as orchestrator:
        with pytest.raises(LlmNonZeroExitError):
            orchestrator.run_phase(PhaseId.REQUIREMENTS)
        orchestrator.backend = _RecordingBackend()
        orchestrator.run_phase(PhaseId.REQUIREMENTS)
        assert orchestrator.can_resume_from(PhaseId.DESIGN)

    assert len(_receipts(settings).list_receipts(PhaseId.REQUIREMENTS)) == 2


def test_second_orchestrator_for_same_spec_is_refused(settings: RuntimeSettings) -> None:
    with PhaseOrchestrator(settings, "demo", _RecordingBackend()):
        with pytest.raises(ConcurrentExecutionError):
            PhaseOrchestrator(settings, "demo", _RecordingBackend())
        # Other specs are independent.
        with PhaseOrchestrator(settings, "other", _RecordingBackend()) as other:
            assert other.current_phase() is None


def test_readonly_orchestrator_reports_status_while_writer_holds_lock(settings: RuntimeSettings) -> None:
    with PhaseOrchestrator(settings, "demo", _RecordingBackend()) as writer:
        writer.run_phase(PhaseId.REQUIREMENTS)

        reader = PhaseOrchestrator.readonly(settings, "demo")
        snapshot = reader.status()
        assert snapshot.spec_id == "demo"
        assert snapshot.latest_completed_phase == PhaseId.REQUIREMENTS
        assert snapshot.successful_phases == [PhaseId.REQUIREMENTS]
        assert snapshot.artifacts == ["00-requirements.core.json", "00-requirements.md"]
        assert not snapshot.has_staged_output
        assert reader.can_resume_from(PhaseId.DESIGN)

        with pytest.raises(ReadOnlyError):
            reader.run_phase(PhaseId.DESIGN)
        reader.close()
        assert writer.store.lock is not None and not writer.store.lock.released


def test_readonly_status_for_unknown_spec(settings: RuntimeSettings) -> None:
    snapshot = PhaseOrchestrator.readonly(settings, "never-run").status()
    assert snapshot.artifacts == []
    assert snapshot.latest_completed_phase is None
    assert snapshot.receipts == {}
    assert snapshot.successful_phases == []
