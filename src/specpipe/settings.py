from __future__ import annotations

import json
import os
from dataclasses import dataclass, field
from pathlib import Path

VALID_SECRET_POLICIES: frozenset[str] = frozenset({"block", "redact"})


@dataclass(frozen=True)
class RuntimeSettings:
    """Runtime settings loaded from environment with fail-fast validation."""

    home: str = ".specpipe"
    model: str = "gpt-4o-mini"
    phase_timeout_seconds: int = 600
    lock_ttl_seconds: int = 3_600
    packet_max_bytes: int = 65_536
    packet_max_lines: int = 1_200
    secret_policy: str = "block"
    extra_secret_patterns: dict[str, str] = field(default_factory=dict)
    ignored_secret_patterns: tuple[str, ...] = ()
    stderr_tail_bytes: int = 2_048
    runner: str = "native"

    @classmethod
    def from_env(cls) -> "RuntimeSettings":
        return cls(
            home=os.getenv("SPECPIPE_HOME", ".specpipe"),
            model=os.getenv("SPECPIPE_MODEL", "gpt-4o-mini"),
            phase_timeout_seconds=_get_env_int("SPECPIPE_PHASE_TIMEOUT", default=600, minimum=5, maximum=86_400),
            lock_ttl_seconds=_get_env_int("SPECPIPE_LOCK_TTL", default=3_600, minimum=1),
            packet_max_bytes=_get_env_int("SPECPIPE_PACKET_MAX_BYTES", default=65_536, minimum=1_024),
            packet_max_lines=_get_env_int("SPECPIPE_PACKET_MAX_LINES", default=1_200, minimum=10),
            secret_policy=os.getenv("SPECPIPE_SECRET_POLICY", "block"),
            extra_secret_patterns=_get_env_json_mapping("SPECPIPE_EXTRA_SECRET_PATTERNS_JSON"),
            ignored_secret_patterns=_get_env_list("SPECPIPE_IGNORE_SECRET_PATTERNS"),
            stderr_tail_bytes=_get_env_int("SPECPIPE_STDERR_TAIL_BYTES", default=2_048, minimum=0, maximum=65_536),
            runner=os.getenv("SPECPIPE_RUNNER", "native"),
        ).normalized()

    @property
    def home_path(self) -> Path:
        """Return the specpipe home directory as a Path."""
        return Path(self.home)

    def normalized(self) -> "RuntimeSettings":
        """Validate and normalize all fields. Raises ValueError on invalid configuration."""
        home = self.home.strip()
        if not home:
            raise ValueError("SPECPIPE_HOME must be non-empty")
        model = self.model.strip()
        if not model:
            raise ValueError("SPECPIPE_MODEL must be non-empty")
        runner = self.runner.strip()
        if not runner:
            raise ValueError("SPECPIPE_RUNNER must be non-empty")

        # -- Numeric bounds validation --
        if self.phase_timeout_seconds < 5:
            raise ValueError(f"SPECPIPE_PHASE_TIMEOUT must be >= 5, got: {self.phase_timeout_seconds}")
        if self.lock_ttl_seconds < 1:
            raise ValueError(f"SPECPIPE_LOCK_TTL must be >= 1, got: {self.lock_ttl_seconds}")
        if self.packet_max_bytes < 1 or self.packet_max_lines < 1:
            raise ValueError("SPECPIPE_PACKET_MAX_BYTES and SPECPIPE_PACKET_MAX_LINES must be positive")

        # -- Policy validation --
        secret_policy = self.secret_policy.strip().lower()
        if secret_policy not in VALID_SECRET_POLICIES:
            raise ValueError("SPECPIPE_SECRET_POLICY must be one of: block, redact")

        extra_patterns: dict[str, str] = {}
        for pattern_id, pattern in self.extra_secret_patterns.items():
            key = str(pattern_id).strip()
            if not key or not isinstance(pattern, str) or not pattern:
                raise ValueError(
                    "SPECPIPE_EXTRA_SECRET_PATTERNS_JSON entries must map non-empty ids to non-empty regex strings"
                )
            extra_patterns[key] = pattern

        ignored = tuple(item.strip() for item in self.ignored_secret_patterns if item.strip())
        return RuntimeSettings(
            home=home,
            model=model,
            phase_timeout_seconds=self.phase_timeout_seconds,
            lock_ttl_seconds=self.lock_ttl_seconds,
            packet_max_bytes=self.packet_max_bytes,
            packet_max_lines=self.packet_max_lines,
            secret_policy=secret_policy,
            extra_secret_patterns=extra_patterns,
            ignored_secret_patterns=ignored,
            stderr_tail_bytes=self.stderr_tail_bytes,
            runner=runner,
        )


def _get_env_int(name: str, default: int, minimum: int, maximum: int = 10_000_000) -> int:
    """Parse an integer from an environment variable with bounds checking.

    Args:
        name: Environment variable name.
        default: Value to return if the variable is unset.
        minimum: Inclusive lower bound.
        maximum: Inclusive upper bound (default 10M, prevents absurd values).

    Returns:
        The parsed integer, guaranteed to be within [minimum, maximum].

    Raises:
        ValueError: If the value is not an integer or is outside bounds.
    """
    raw = os.getenv(name)
    if raw is None:
        return default
    try:
        parsed = int(raw)
    except ValueError as exc:
        raise ValueError(f"{name} must be an integer, got: {raw!r}") from exc
    if parsed < minimum:
        raise ValueError(f"{name} must be >= {minimum}, got: {parsed}")
    if parsed > maximum:
        raise ValueError(f"{name} must be <= {maximum}, got: {parsed}")
    return parsed


def _get_env_json_mapping(name: str) -> dict[str, str]:
    raw = os.getenv(name)
    if raw is None or not raw.strip():
        return {}
    try:
        parsed = json.loads(raw)
    except json.JSONDecodeError as exc:
        raise ValueError(f"{name} must be a JSON object, got: {raw!r}") from exc
    if not isinstance(parsed, dict):
        raise ValueError(f"{name} must be a JSON object, got: {type(parsed).__name__}")
    return {str(key): value for key, value in parsed.items()}


def _get_env_list(name: str) -> tuple[str, ...]:
    raw = os.getenv(name, "")
    return tuple(item.strip() for item in raw.split(",") if item.strip())
