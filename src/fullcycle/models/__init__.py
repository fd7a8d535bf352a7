"""Convenience exports for the language-model client implementations."""

from .llm_client import (
    ChatMessage,
    CompletionRequest,
    LLMClient,
    LLMClientError,
    LLMRateLimitError,
    LLMResponseFormatError,
    LLMTransportError,
    complete_with_backoff,
    parse_structured,
)
from .responses import ResponsesClient

__all__ = [
    "ChatMessage",
    "CompletionRequest",
    "LLMClient",
    "LLMClientError",
    "LLMRateLimitError",
    "LLMResponseFormatError",
    "LLMTransportError",
    "ResponsesClient",
    "complete_with_backoff",
    "parse_structured",
]
