"""Secret detection and redaction for everything that leaves the process.

Matches are tracked by line and column (never by value) so they can be
reported and diffed without re-exposing the secret.
"""

from __future__ import annotations

import logging
import re
from dataclasses import dataclass
from functools import lru_cache
from typing import Iterable, Iterator

from .errors import SecretDetectedError
from .models import RedactionResult, SecretMatch
from .settings import RuntimeSettings

logger = logging.getLogger(__name__)

DEFAULT_PATTERNS: dict[str, str] = {
    "github_pat": r"ghp_[A-Za-z0-9]{36}",
    "aws_access_key": r"AKIA[0-9A-Z]{16}",
    "aws_secret_key": r"AWS_SECRET_ACCESS_KEY[=:]",
    "slack_token": r"xox[baprs]-[A-Za-z0-9-]+",
    "bearer_token": r"Bearer [A-Za-z0-9._-]{20,}",
}

STRING_MASK = "***"
_CONTEXT_CHARS = 10


@dataclass(frozen=True)
class _Span:
    start: int
    end: int
    pattern_id: str


class SecretRedactor:
    """Pattern-based scan/redact gate.

    Holds the built-in default patterns, user-registered extra patterns, and
    an ignore list of pattern ids whose matches are suppressed.
    """

    def __init__(self) -> None:
        self._default_patterns: dict[str, re.Pattern[str]] = {
            pattern_id: re.compile(pattern) for pattern_id, pattern in DEFAULT_PATTERNS.items()
        }
        self._extra_patterns: dict[str, re.Pattern[str]] = {}
        self._ignored: list[str] = []

    @classmethod
    def from_settings(cls, settings: RuntimeSettings) -> "SecretRedactor":
        redactor = cls()
        for pattern_id, pattern in sorted(settings.extra_secret_patterns.items()):
            redactor.add_extra_pattern(pattern_id, pattern)
        for pattern_id in settings.ignored_secret_patterns:
            redactor.add_ignored_pattern(pattern_id)
        return redactor

    # ------------------------------------------------------------------
    # Configuration
    # ------------------------------------------------------------------

    def add_extra_pattern(self, pattern_id: str, pattern: str) -> None:
        """Register an extra named pattern.

        Raises:
            ValueError: If the id is empty or the regex does not compile.
        """
        if not pattern_id.strip():
            raise ValueError("pattern_id must be non-empty")
        try:
            compiled = re.compile(pattern, re.MULTILINE)
        except re.error as exc:
            raise ValueError(f"Failed to compile extra pattern '{pattern_id}': {exc}") from exc
        if compiled.search(""):
            raise ValueError(f"Extra pattern '{pattern_id}' matches the empty string")
        self._extra_patterns[pattern_id] = compiled

    def add_ignored_pattern(self, pattern_id: str) -> None:
        if pattern_id not in self._ignored:
            self._ignored.append(pattern_id)

    def pattern_ids(self) -> list[str]:
        return sorted({*self._default_patterns, *self._extra_patterns})

    def ignored_patterns(self) -> list[str]:
        return list(self._ignored)

    def _enabled_patterns(self) -> Iterator[tuple[str, re.Pattern[str]]]:
        for patterns in (self._default_patterns, self._extra_patterns):
            for pattern_id in sorted(patterns):
                if pattern_id not in self._ignored:
                    yield pattern_id, patterns[pattern_id]

    # ------------------------------------------------------------------
    # Structured scan / redact
    # ------------------------------------------------------------------

    def scan(self, content: str, file_path: str) -> list[SecretMatch]:
        """Return every enabled-pattern match in *content*, ordered by position."""
        return [match for _, match in self._scan_spans(content, file_path)]

    def redact(self, content: str, file_path: str) -> RedactionResult:
        """Replace every match with ``[REDACTED:<pattern_id>]``.

        Offsets are computed once; overlapping matches are merged into one
        span labelled by the first-starting (then longest) match; replacement
        walks the spans back to front so earlier offsets stay valid.
        """
        found = list(self._scan_spans(content, file_path))
        if not found:
            return RedactionResult(content=content, matches=[], has_secrets=False)

        kept: list[_Span] = []
        for span, _ in sorted(found, key=lambda item: (item[0].start, -item[0].end)):
            if kept and span.start < kept[-1].end:
                if span.end > kept[-1].end:
                    kept[-1] = _Span(kept[-1].start, span.end, kept[-1].pattern_id)
                continue
            kept.append(span)

        pieces: list[str] = []
        cursor = len(content)
        for span in reversed(kept):
            pieces.append(content[span.end:cursor])
            pieces.append(f"[REDACTED:{span.pattern_id}]")
            cursor = span.start
        pieces.append(content[:cursor])
        redacted = "".join(reversed(pieces))

        return RedactionResult(content=redacted, matches=[match for _, match in found], has_secrets=True)

    def has_secrets(self, content: str, file_path: str) -> bool:
        """Fail-fast check used by the blocking policy."""
        for _ in self._scan_spans(content, file_path):
            return True
        return False

    def _scan_spans(self, content: str, file_path: str) -> Iterator[tuple[_Span, SecretMatch]]:
        lines = list(_iter_lines(content))
        results: list[tuple[_Span, SecretMatch]] = []
        for pattern_id, regex in self._enabled_patterns():
            for line_number, (line_start, line_end) in enumerate(lines, start=1):
                # Match the line on its own so `^` and `$` anchor at line boundaries.
                line = content[line_start:line_end]
                for hit in regex.finditer(line):
                    if hit.end() == hit.start():
                        continue
                    col_start = hit.start()
                    col_end = hit.end()
                    match = SecretMatch(
                        pattern_id=pattern_id,
                        file_path=file_path,
                        line_number=line_number,
                        column_range=(_byte_len(line[:col_start]), _byte_len(line[:col_end])),
                        context=_safe_context(line, col_start, col_end),
                    )
                    results.append((_Span(line_start + col_start, line_start + col_end, pattern_id), match))
        results.sort(key=lambda item: (item[1].line_number, item[1].column_range[0], item[1].pattern_id))
        return iter(results)

    # ------------------------------------------------------------------
    # Coarse string redaction (errors, logs, receipts)
    # ------------------------------------------------------------------

    def redact_string(self, text: str) -> str:
        """Replace every enabled match with ``***``; no structural tracking."""
        redacted = text
        for _, regex in self._enabled_patterns():
            redacted = regex.sub(STRING_MASK, redacted)
        return redacted

    def redact_strings(self, strings: Iterable[str]) -> list[str]:
        return [self.redact_string(text) for text in strings]

    def redact_optional(self, text: str | None) -> str | None:
        return None if text is None else self.redact_string(text)


def _iter_lines(content: str) -> Iterator[tuple[int, int]]:
    """Yield ``(start, end)`` character offsets of each line, excluding the line terminator."""
    start = 0
    length = len(content)
    while start < length:
        newline = content.find("\n", start)
        stop = length if newline == -1 else newline
        end = stop - 1 if stop > start and content[stop - 1] == "\r" else stop
        yield start, end
        if newline == -1:
            return
        start = newline + 1


def _byte_len(text: str) -> int:
    return len(text.encode("utf-8"))


def _safe_context(line: str, start: int, end: int) -> str:
    before = line[max(0, start - _CONTEXT_CHARS):start]
    after = line[end:end + _CONTEXT_CHARS]
    return f"{before}[REDACTED]{after}"


def secret_detected_error(matches: list[SecretMatch]) -> SecretDetectedError:
    """Build the blocking-policy error from the first match, never the secret itself."""
    if not matches:
        return SecretDetectedError(pattern_id="unknown", location="unknown")
    first = matches[0]
    location = f"{first.file_path}:{first.line_number}:{first.column_range[0]}"
    return SecretDetectedError(pattern_id=first.pattern_id, location=location)


@lru_cache(maxsize=1)
def _default_redactor() -> SecretRedactor:
    return SecretRedactor()


def redact_user_string(text: str) -> str:
    """Redact a user-facing string (error message, log line) with the default patterns."""
    return _default_redactor().redact_string(text)


class RedactingFilter(logging.Filter):
    """Logging filter that rewrites each record's message through a redactor.

    Attach to handlers so nothing a handler emits can carry a secret.
    """

    def __init__(self, redactor: SecretRedactor | None = None) -> None:
        super().__init__()
        self._redactor = redactor if redactor is not None else _default_redactor()

    def filter(self, record: logging.LogRecord) -> bool:
        message = record.getMessage()
        redacted = self._redactor.redact_string(message)
        if redacted != message:
            record.msg = redacted
            record.args = None
        return True
