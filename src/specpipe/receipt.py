from __future__ import annotations

import logging
from datetime import UTC, datetime
from pathlib import Path

from pydantic import ValidationError

from .atomic_write import write_file_atomic
from .canonical import CANONICALIZATION_BACKEND, CANONICALIZATION_VERSION, to_canonical_json
from .models import AtomicWriteResult, OutputEntry, PacketEvidence, PhaseId, Receipt
from .redaction import SecretRedactor

logger = logging.getLogger(__name__)

_TIMESTAMP_FORMAT = "%Y%m%d_%H%M%S_%f"


def tail_utf8(text: str, max_bytes: int) -> str:
    """Return the last *max_bytes* bytes of *text*, cut on a character boundary."""
    if max_bytes <= 0:
        return ""
    data = text.encode("utf-8")
    if len(data) <= max_bytes:
        return text
    return data[-max_bytes:].decode("utf-8", errors="ignore")


class ReceiptManager:
    """Writes and reads per-attempt receipts under ``<spec_root>/receipts``.

    Receipts are written once (canonical JSON, atomic rename) and never
    rewritten. Read accessors tolerate concurrent writers: a receipt that
    cannot be parsed is skipped with a warning.
    """

    def __init__(self, receipts_dir: Path, *, redactor: SecretRedactor | None = None) -> None:
        self.receipts_dir = receipts_dir
        self.redactor = redactor if redactor is not None else SecretRedactor()

    # ------------------------------------------------------------------
    # Construction
    # ------------------------------------------------------------------

    def build_receipt(
        self,
        *,
        spec_id: str,
        phase: PhaseId,
        tool_version: str,
        backend_version: str,
        model_full_name: str,
        runner: str,
        packet: PacketEvidence,
        outputs: list[OutputEntry],
        exit_code: int,
        warnings: list[str],
        flags: dict[str, str] | None = None,
        model_alias: str | None = None,
        runner_distro: str | None = None,
        fallback_used: bool | None = None,
        error_kind: str | None = None,
        error_reason: str | None = None,
        stderr_tail: str | None = None,
        stderr_tail_bytes: int = 2_048,
        emitted_at: datetime | None = None,
    ) -> Receipt:
        """Assemble a receipt, passing all free text through the redactor.

        Arrays are sorted by the Receipt model itself; ``stderr_tail`` is
        redacted first and then bounded to *stderr_tail_bytes*.
        """
        redact = self.redactor.redact_string
        bounded_stderr = None
        if stderr_tail is not None:
            bounded_stderr = tail_utf8(redact(stderr_tail), stderr_tail_bytes)
        return Receipt(
            emitted_at=emitted_at if emitted_at is not None else datetime.now(UTC),
            spec_id=spec_id,
            phase=phase,
            tool_version=tool_version,
            backend_version=backend_version,
            model_full_name=model_full_name,
            model_alias=model_alias,
            canonicalization_version=CANONICALIZATION_VERSION,
            canonicalization_backend=CANONICALIZATION_BACKEND,
            flags={key: redact(value) for key, value in (flags or {}).items()},
            runner=runner,
            runner_distro=runner_distro,
            fallback_used=fallback_used,
            packet=packet,
            outputs=outputs,
            exit_code=exit_code,
            warnings=self.redactor.redact_strings(warnings),
            error_kind=error_kind,
            error_reason=self.redactor.redact_optional(error_reason),
            stderr_tail=bounded_stderr,
        )

    # ------------------------------------------------------------------
    # Persistence
    # ------------------------------------------------------------------

    def receipt_path_for(self, receipt: Receipt) -> Path:
        stamp = receipt.emitted_at.astimezone(UTC).strftime(_TIMESTAMP_FORMAT)
        return self.receipts_dir / f"{receipt.phase.value}-{stamp}.json"

    def write_receipt(self, receipt: Receipt) -> tuple[Path, AtomicWriteResult]:
        """Persist *receipt* as JCS-canonical JSON.

        Returns:
            The receipt path and the atomic write provenance.

        Raises:
            CanonicalizationError: If the receipt cannot be canonicalized.
            ArtifactWriteError: If the write fails.
        """
        path = self.receipt_path_for(receipt)
        body = to_canonical_json(receipt)
        result = write_file_atomic(path, body)
        logger.info(
            "Wrote %s receipt for phase '%s' (exit_code=%d): %s",
            "success" if receipt.succeeded else "failure",
            receipt.phase.value,
            receipt.exit_code,
            path.name,
        )
        return path, result

    # ------------------------------------------------------------------
    # Read accessors
    # ------------------------------------------------------------------

    def read_receipt(self, path: Path) -> Receipt:
        """Read and validate a receipt file.

        Raises:
            FileNotFoundError: If the receipt does not exist.
            ValueError: If the file is corrupt or fails validation.
        """
        if not path.is_file():
            raise FileNotFoundError(f"receipt not found: {path}")
        try:
            return Receipt.model_validate_json(path.read_text(encoding="utf-8"))
        except (ValidationError, UnicodeDecodeError) as exc:
            raise ValueError(f"receipt at {path} failed validation: {exc}") from exc

    def list_receipts(self, phase: PhaseId | None = None) -> list[Path]:
        """Return receipt paths (optionally for one phase), oldest first."""
        if not self.receipts_dir.is_dir():
            return []
        prefix = f"{phase.value}-" if phase is not None else ""
        return sorted(
            (path for path in self.receipts_dir.glob(f"{prefix}*.json") if not path.name.startswith(".")),
            key=lambda path: (path.name.rsplit("-", 1)[-1], path.name),
        )

    def latest_receipt(self, phase: PhaseId) -> tuple[Path, Receipt] | None:
        """Return the most recent readable receipt for *phase*, or None."""
        for path in reversed(self.list_receipts(phase)):
            try:
                return path, self.read_receipt(path)
            except (OSError, ValueError) as exc:
                logger.warning("Skipping unreadable receipt %s: %s", path.name, exc)
        return None

    def has_successful_receipt(self, phase: PhaseId) -> bool:
        """True iff the latest receipt for *phase* records success."""
        latest = self.latest_receipt(phase)
        return latest is not None and latest[1].succeeded
