from __future__ import annotations

import json
import logging
import os
from importlib.metadata import PackageNotFoundError, version
from pathlib import Path
from typing import Any, Protocol

from dotenv import load_dotenv
from langchain_core.messages import AIMessage, BaseMessage, HumanMessage, SystemMessage
from langchain_openai import ChatOpenAI

from .errors import LlmInvocationError, LlmMalformedOutputError, SpecpipeError
from .models import LlmInvocation, LlmResult, Message
from .redaction import redact_user_string
from .settings import RuntimeSettings

logger = logging.getLogger(__name__)

_DEFAULT_TIMEOUT: int = 600
_DEFAULT_MAX_RETRIES: int = 0


class SupportsInvoke(Protocol):
    """Protocol for any LangChain-compatible runnable that supports invoke."""

    def invoke(self, input: Any) -> Any:  # noqa: ANN401 - external runnable protocol.
        ...


class LlmBackend(Protocol):
    """Collaborator that turns one invocation into one raw response.

    Implementations raise ``LlmNonZeroExitError`` or ``LlmMalformedOutputError``
    (or any other ``LlmInvocationError``); the orchestrator enforces the timeout.
    """

    def invoke(self, invocation: LlmInvocation) -> LlmResult:
        ...


def ensure_openai_api_key(repo_root: Path | None = None) -> str:
    """Load OPENAI_API_KEY from environment or .env and return it.

    Args:
        repo_root: Optional repo root path to search for .env file.

    Returns:
        The API key string.

    Raises:
        RuntimeError: If OPENAI_API_KEY is unavailable after all sources are checked.
    """
    repo = repo_root if repo_root is not None else Path.cwd()
    env_path = repo / ".env"
    if env_path.is_file():
        load_dotenv(env_path)

    key = os.getenv("OPENAI_API_KEY", "").strip()
    if not key:
        raise RuntimeError("OPENAI_API_KEY is required for the chat model backend")
    return key


def get_chat_model(
    *,
    model_name: str,
    temperature: float = 0.0,
    timeout: int = _DEFAULT_TIMEOUT,
    max_retries: int = _DEFAULT_MAX_RETRIES,
    repo_root: Path | None = None,
) -> ChatOpenAI:
    """Construct a ChatOpenAI instance with validated API key.

    Retries default to zero: a failed phase is re-run explicitly, never
    retried behind the caller's back.

    Raises:
        ValueError: If model_name is blank.
        RuntimeError: If OPENAI_API_KEY is not available.
    """
    if not model_name or not model_name.strip():
        raise ValueError("model_name must be a non-empty string")
    ensure_openai_api_key(repo_root=repo_root)
    return ChatOpenAI(model=model_name, temperature=temperature, timeout=timeout, max_retries=max_retries)


def to_langchain_messages(messages: list[Message]) -> list[BaseMessage]:
    converted: list[BaseMessage] = []
    for message in messages:
        if message.role == "system":
            converted.append(SystemMessage(content=message.content))
        elif message.role == "user":
            converted.append(HumanMessage(content=message.content))
        elif message.role == "assistant":
            converted.append(AIMessage(content=message.content))
        else:
            raise ValueError(f"Unsupported message role: {message.role!r}")
    return converted


def content_to_text(content: Any) -> str:
    """Recursively extract plain text from heterogeneous chat model response content.

    Handles strings, lists of text/dict items, and nested content structures
    produced by various LLM response formats.
    """
    if isinstance(content, str):
        return content
    if isinstance(content, list):
        chunks: list[str] = []
        for item in content:
            if isinstance(item, str):
                chunks.append(item)
                continue
            if isinstance(item, dict):
                text_value = item.get("text")
                if isinstance(text_value, str):
                    chunks.append(text_value)
                    continue
                nested = item.get("content")
                if nested is not None:
                    chunks.append(content_to_text(nested))
                    continue
                chunks.append(json.dumps(item, sort_keys=True))
                continue
            chunks.append(str(item))
        return "\n".join(chunk for chunk in chunks if chunk.strip())
    if isinstance(content, dict):
        if "content" in content:
            return content_to_text(content["content"])
        return json.dumps(content, sort_keys=True)
    return str(content)


def _package_version(name: str) -> str:
    try:
        return version(name)
    except PackageNotFoundError:
        return "unknown"


class ChatModelBackend:
    """``LlmBackend`` over a LangChain chat model.

    ``model`` is anything with ``invoke(list[BaseMessage])``; production code
    passes a ``ChatOpenAI`` from :func:`get_chat_model`, tests pass a fake.
    """

    def __init__(self, model: SupportsInvoke, *, model_name: str, runner: str = "native") -> None:
        self.model = model
        self.model_name = model_name
        self.runner = runner
        self.backend_version = f"langchain-openai/{_package_version('langchain-openai')}"

    @classmethod
    def from_settings(cls, settings: RuntimeSettings, *, repo_root: Path | None = None) -> "ChatModelBackend":
        model = get_chat_model(
            model_name=settings.model,
            timeout=settings.phase_timeout_seconds,
            repo_root=repo_root,
        )
        return cls(model, model_name=settings.model, runner=settings.runner)

    def invoke(self, invocation: LlmInvocation) -> LlmResult:
        """Send the invocation's messages and return the flattened text response.

        Raises:
            LlmMalformedOutputError: If the model returns no text.
            LlmInvocationError: If the underlying client raises.
        """
        messages = to_langchain_messages(invocation.messages)
        try:
            response = self.model.invoke(messages)
        except SpecpipeError:
            raise
        except Exception as exc:  # noqa: BLE001 - client libraries raise arbitrary transport errors.
            detail = redact_user_string(f"{type(exc).__name__}: {exc}")
            raise LlmInvocationError(f"Chat model call failed: {detail}", stderr=detail) from exc

        content = getattr(response, "content", response)
        text = content_to_text(content)
        if not text.strip():
            raise LlmMalformedOutputError("Chat model returned an empty response")

        metadata = getattr(response, "response_metadata", None) or {}
        model_used = str(metadata.get("model_name") or invocation.model or self.model_name)
        logger.debug("Chat model '%s' returned %d characters for phase '%s'", model_used, len(text), invocation.phase)
        return LlmResult(
            raw_response=text,
            model_used=model_used,
            extensions={
                "backend_version": self.backend_version,
                "runner": self.runner,
                "fallback_used": False,
            },
        )
