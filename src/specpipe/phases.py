"""Phase graph: dependencies, legal transitions and per-phase message/artifact shaping."""

from __future__ import annotations

import re

from .canonical import to_canonical_json
from .models import Message, PhaseId, sha256_hex

CORE_SCHEMA_VERSION = "1"

# Each phase may only run once its dependency has a successful receipt.
PHASE_DEPENDENCIES: dict[PhaseId, tuple[PhaseId, ...]] = {
    PhaseId.REQUIREMENTS: (),
    PhaseId.DESIGN: (PhaseId.REQUIREMENTS,),
    PhaseId.TASKS: (PhaseId.DESIGN,),
    PhaseId.REVIEW: (PhaseId.TASKS,),
    PhaseId.FIXUP: (PhaseId.REVIEW,),
    PhaseId.FINAL: (PhaseId.TASKS,),
}

_TRANSITIONS: dict[PhaseId | None, tuple[PhaseId, ...]] = {
    None: (PhaseId.REQUIREMENTS,),
    PhaseId.REQUIREMENTS: (PhaseId.REQUIREMENTS, PhaseId.DESIGN),
    PhaseId.DESIGN: (PhaseId.DESIGN, PhaseId.TASKS),
    PhaseId.TASKS: (PhaseId.TASKS, PhaseId.REVIEW, PhaseId.FINAL),
    PhaseId.REVIEW: (PhaseId.REVIEW, PhaseId.FIXUP, PhaseId.FINAL),
    PhaseId.FIXUP: (PhaseId.FIXUP, PhaseId.FINAL),
    PhaseId.FINAL: (PhaseId.FINAL,),
}

_PHASE_INSTRUCTIONS: dict[PhaseId, str] = {
    PhaseId.REQUIREMENTS: "Write the requirements document for the problem statement below.",
    PhaseId.DESIGN: "Write the design document that satisfies the requirements below.",
    PhaseId.TASKS: "Break the design below into an ordered implementation task list.",
    PhaseId.REVIEW: "Review the task list below against the requirements and design; list every gap.",
    PhaseId.FIXUP: "Apply the review findings below to produce corrected documents.",
    PhaseId.FINAL: "Consolidate the documents below into the final specification.",
}

_HEADING_RE = re.compile(r"^(#{1,6})\s+(.+?)\s*#*\s*$")


def dependencies_of(phase: PhaseId) -> tuple[PhaseId, ...]:
    return PHASE_DEPENDENCIES[phase]


def legal_next_phases(current: PhaseId | None) -> list[PhaseId]:
    """Return the phases that may run after *current*.

    Re-running the current phase is always legal; ``None`` means nothing has
    completed yet.
    """
    return list(_TRANSITIONS[current])


def build_messages(phase: PhaseId, packet_text: str) -> list[Message]:
    """Return the system + user messages sent to the backend for *phase*."""
    system = (
        f"You are producing the '{phase.value}' document of a staged specification. "
        "Respond with Markdown only."
    )
    user = f"{_PHASE_INSTRUCTIONS[phase]}\n\n{packet_text}"
    return [Message.system(system), Message.user(user)]


def extract_sections(markdown: str) -> list[dict[str, object]]:
    """Return ATX headings of *markdown* as ``{"level", "title"}`` in document order.

    Headings inside fenced code blocks are ignored.
    """
    sections: list[dict[str, object]] = []
    in_fence = False
    for line in markdown.split("\n"):
        stripped = line.strip()
        if stripped.startswith("```") or stripped.startswith("~~~"):
            in_fence = not in_fence
            continue
        if in_fence:
            continue
        match = _HEADING_RE.match(line)
        if match:
            sections.append({"level": len(match.group(1)), "title": match.group(2)})
    return sections


def derive_core_document(spec_id: str, phase: PhaseId, markdown: str) -> str:
    """Build the structured companion of a phase's Markdown artifact as canonical JSON."""
    document = {
        "schema_version": CORE_SCHEMA_VERSION,
        "spec_id": spec_id,
        "phase": phase.value,
        "markdown_sha256": sha256_hex(markdown),
        "sections": extract_sections(markdown),
    }
    return to_canonical_json(document)
