"""Completion client base class shared by all language-model integrations."""

from __future__ import annotations

import logging
import time
from dataclasses import dataclass, field
from typing import Any, Callable, Dict, Optional, Sequence, Type, TypeVar

from pydantic import ValidationError
from pydantic.type_adapter import TypeAdapter

from ..extraction import ExtractionError, parse_json_object

__all__ = [
    "ChatMessage",
    "CompletionRequest",
    "LLMClient",
    "LLMClientError",
    "LLMRateLimitError",
    "LLMResponseFormatError",
    "LLMTransportError",
    "RATE_LIMIT_DELAYS",
    "complete_with_backoff",
    "parse_structured",
]

LOGGER = logging.getLogger(__name__)

T = TypeVar("T")

RATE_LIMIT_DELAYS: tuple[float, ...] = (30.0, 60.0)


class LLMClientError(RuntimeError):
    """Base error raised for completion client failures."""


class LLMTransportError(LLMClientError):
    """Raised when the underlying transport fails to return a response."""


class LLMRateLimitError(LLMTransportError):
    """Raised when the provider rejects a request because of rate limiting."""


class LLMResponseFormatError(LLMClientError):
    """Raised when the model returns a payload that cannot be used."""


@dataclass(slots=True)
class ChatMessage:
    """Single conversation turn sent to the model."""

    role: str
    content: str


@dataclass(slots=True)
class CompletionRequest:
    """Plain-text completion request."""

    messages: list[ChatMessage]
    system_prompt: Optional[str] = None
    temperature: float = 0.3
    max_tokens: int = 4096
    model: Optional[str] = None
    metadata: Dict[str, Any] = field(default_factory=dict)

    @classmethod
    def from_prompt(
        cls,
        prompt: str,
        *,
        system_prompt: Optional[str] = None,
        temperature: float = 0.3,
        max_tokens: int = 4096,
        model: Optional[str] = None,
    ) -> "CompletionRequest":
        """Build a single-turn request from one user prompt."""
        return cls(
            messages=[ChatMessage(role="user", content=prompt)],
            system_prompt=system_prompt,
            temperature=temperature,
            max_tokens=max_tokens,
            model=model,
        )

    def to_payload(self, default_model: str) -> Dict[str, Any]:
        """Render a transport-ready payload for the Responses API."""
        payload: Dict[str, Any] = {
            "model": self.model or default_model,
            "input": [
                {
                    "role": message.role,
                    "content": [{"type": "input_text", "text": message.content}],
                }
                for message in self.messages
            ],
            "max_output_tokens": self.max_tokens,
        }
        if self.system_prompt:
            payload["instructions"] = self.system_prompt
        if self.temperature is not None:
            payload["temperature"] = self.temperature
        if self.metadata:
            payload["metadata"] = {key: str(value)[:512] for key, value in self.metadata.items()}
        return payload


class LLMClient:
    """Provider-neutral completion client. Subclasses implement ``_raw_invoke``."""

    def __init__(self, model: str) -> None:
        self._model = model

    @property
    def model(self) -> str:
        """Return the default model name configured for this client."""
        return self._model

    def complete(self, request: CompletionRequest) -> str:
        """Send ``request`` and return the model's text reply."""
        payload = request.to_payload(self._model)
        text = self._raw_invoke(payload)
        if not text or not text.strip():
            raise LLMResponseFormatError("Model returned an empty response.")
        return text

    def _raw_invoke(self, payload: Dict[str, Any]) -> str:
        """Perform the transport call. Subclasses must implement."""
        raise NotImplementedError("Subclasses must implement _raw_invoke().")


def complete_with_backoff(
    client: LLMClient,
    request: CompletionRequest,
    *,
    delays: Sequence[float] = RATE_LIMIT_DELAYS,
    sleep: Callable[[float], None] = time.sleep,
    on_wait: Optional[Callable[[str], None]] = None,
) -> str:
    """Call ``client.complete`` retrying only on rate limits.

    Makes ``len(delays) + 1`` attempts, sleeping ``delays[i]`` seconds before
    retry ``i + 1``. Every other error class propagates on first occurrence.
    """
    attempts = len(delays) + 1
    for attempt in range(1, attempts + 1):
        try:
            return client.complete(request)
        except LLMRateLimitError as error:
            if attempt >= attempts:
                raise
            delay = delays[attempt - 1]
            message = f"Rate limited (attempt {attempt}/{attempts}); waiting {delay:g}s"
            LOGGER.warning("%s: %s", message, error)
            if on_wait is not None:
                on_wait(message)
            sleep(delay)
    raise AssertionError("unreachable")  # pragma: no cover


def parse_structured(text: str, response_model: Type[T]) -> T:
    """Extract the JSON object from ``text`` and validate it into ``response_model``."""
    try:
        data = parse_json_object(text)
    except ExtractionError as error:
        raise LLMResponseFormatError(str(error)) from error
    try:
        return TypeAdapter(response_model).validate_python(data)
    except ValidationError as error:
        raise LLMResponseFormatError(f"Response did not match {response_model.__name__}: {error}") from error
