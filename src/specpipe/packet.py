from __future__ import annotations

import logging
from dataclasses import dataclass, replace

from .artifact_store import ArtifactStore
from .errors import PacketOverflowError
from .models import ArtifactType, FileEvidence, PacketEvidence, PhaseId, SecretMatch, phase_filename, sha256_hex
from .paths import ARTIFACTS_DIR, CONTEXT_DIR
from .redaction import SecretRedactor

logger = logging.getLogger(__name__)

PROBLEM_STATEMENT_NAME = "problem-statement"


def count_lines(content: str) -> int:
    """Number of lines, counting a trailing unterminated line."""
    if not content:
        return 0
    return content.count("\n") + (0 if content.endswith("\n") else 1)


@dataclass(frozen=True)
class PacketFile:
    """One input document; ``path`` is relative to the spec root."""

    path: str
    content: str

    @property
    def byte_count(self) -> int:
        return len(self.content.encode("utf-8"))

    @property
    def line_count(self) -> int:
        return count_lines(self.content)


@dataclass(frozen=True)
class Packet:
    """Outbound context for one phase invocation, bounded by a byte and line budget."""

    files: tuple[PacketFile, ...]
    max_bytes: int
    max_lines: int

    @property
    def used_bytes(self) -> int:
        return sum(item.byte_count for item in self.files)

    @property
    def used_lines(self) -> int:
        return sum(item.line_count for item in self.files)

    def enforce_budget(self) -> None:
        if self.used_bytes > self.max_bytes or self.used_lines > self.max_lines:
            raise PacketOverflowError(
                used_bytes=self.used_bytes,
                used_lines=self.used_lines,
                max_bytes=self.max_bytes,
                max_lines=self.max_lines,
            )

    def evidence(self) -> PacketEvidence:
        return PacketEvidence(
            files=[
                FileEvidence(
                    path=item.path,
                    sha256=sha256_hex(item.content),
                    byte_count=item.byte_count,
                    line_count=item.line_count,
                )
                for item in self.files
            ],
            max_bytes=self.max_bytes,
            max_lines=self.max_lines,
        )

    def content_of(self, path: str) -> str | None:
        for item in self.files:
            if item.path == path:
                return item.content
        return None

    def scan(self, redactor: SecretRedactor) -> list[SecretMatch]:
        matches: list[SecretMatch] = []
        for item in self.files:
            matches.extend(redactor.scan(item.content, item.path))
        return matches

    def redacted(self, redactor: SecretRedactor) -> "Packet":
        """Return a copy whose file contents have every match replaced by its marker."""
        files = tuple(
            replace(item, content=redactor.redact(item.content, item.path).content) for item in self.files
        )
        return replace(self, files=files)

    def render(self) -> str:
        """Concatenate the files into the text sent to the backend, one fenced section per file."""
        sections: list[str] = []
        for item in self.files:
            body = item.content.rstrip("\n")
            sections.append(f"<<< {item.path} >>>\n{body}\n<<< end {item.path} >>>")
        return "\n\n".join(sections)


def empty_packet(*, max_bytes: int, max_lines: int) -> Packet:
    return Packet(files=(), max_bytes=max_bytes, max_lines=max_lines)


def assemble_packet(
    store: ArtifactStore,
    phase: PhaseId,
    *,
    max_bytes: int,
    max_lines: int,
    problem_statement: str | None = None,
) -> Packet:
    """Collect the inputs for *phase*.

    The packet holds the problem statement (the explicit argument, else
    ``context/problem-statement.txt`` when present) followed by the final
    Markdown artifact of every earlier phase that has completed. The budget
    is not enforced here; call :meth:`Packet.enforce_budget`.
    """
    files: list[PacketFile] = []

    statement = problem_statement if problem_statement is not None else store.read_context_file(PROBLEM_STATEMENT_NAME)
    if statement is not None:
        files.append(PacketFile(path=f"{CONTEXT_DIR}/{PROBLEM_STATEMENT_NAME}.txt", content=statement))

    for earlier in PhaseId.ordered():
        if earlier.ordinal >= phase.ordinal:
            break
        if not store.phase_completed(earlier):
            continue
        name = phase_filename(earlier, ArtifactType.MARKDOWN)
        try:
            content = store.read_artifact(name)
        except FileNotFoundError:
            # Removed between the completion check and the read.
            logger.warning("Artifact %s vanished while building packet for phase '%s'", name, phase.value)
            continue
        files.append(PacketFile(path=f"{ARTIFACTS_DIR}/{name}", content=content))

    packet = Packet(files=tuple(files), max_bytes=max_bytes, max_lines=max_lines)
    logger.debug(
        "Assembled packet for phase '%s': %d file(s), %d bytes, %d lines",
        phase.value,
        len(packet.files),
        packet.used_bytes,
        packet.used_lines,
    )
    return packet
