"""Production client that speaks the OpenAI Responses API."""

from __future__ import annotations

import json
import os
from typing import Any, Callable, Dict, Optional

from .llm_client import LLMClient, LLMRateLimitError, LLMResponseFormatError, LLMTransportError

__all__ = ["ResponsesClient"]


Transport = Callable[[Dict[str, Any]], str]

_RATE_LIMIT_MARKERS = ("rate_limit", "rate limit", "too many requests")


class ResponsesClient(LLMClient):
    """Thin adapter around the Responses API returning plain output text."""

    def __init__(
        self,
        *,
        api_key: Optional[str] = None,
        base_url: str = "https://api.openai.com/v1/responses",
        model: str = "gpt-5-mini",
        transport: Optional[Transport] = None,
        timeout: float = 150.0,
    ) -> None:
        super().__init__(model=model)
        self._api_key = api_key or os.getenv("FULLCYCLE_API_KEY") or os.getenv("OPENAI_API_KEY")
        self._base_url = base_url
        timeout_override = os.getenv("FULLCYCLE_LLM_TIMEOUT")
        if timeout_override:
            try:
                parsed = float(timeout_override)
                if parsed > 0:
                    timeout = parsed
            except ValueError:
                pass
        self._timeout = timeout
        self._transport = transport or self._http_transport

        if transport is None and not self._api_key:
            raise ValueError("An API key is required when using the default transport.")

    def _raw_invoke(self, payload: Dict[str, Any]) -> str:
        """Send the request over the configured transport."""
        raw_response = self._transport(payload)
        text = self._extract_output_text(raw_response)
        if text is None:
            raise LLMResponseFormatError("Response did not contain output text.")
        return text

    def _http_transport(self, payload: Dict[str, Any]) -> str:
        """Default HTTP transport that targets the Responses endpoint."""
        import urllib.error
        import urllib.request

        data = json.dumps(payload).encode("utf-8")
        request = urllib.request.Request(
            self._base_url,
            data=data,
            headers={
                "Content-Type": "application/json",
                "Authorization": f"Bearer {self._api_key}",
            },
            method="POST",
        )

        try:
            with urllib.request.urlopen(request, timeout=self._timeout) as response:
                raw = response.read()
        except TimeoutError as error:  # pragma: no cover - network-dependent
            raise LLMTransportError("Model response timed out.") from error
        except urllib.error.HTTPError as error:  # pragma: no cover - network-dependent
            message = error.read().decode("utf-8", errors="ignore")
            if error.code == 429 or _mentions_rate_limit(message):
                raise LLMRateLimitError(f"HTTP {error.code}: {message}") from error
            raise LLMTransportError(f"HTTP {error.code}: {message}") from error
        except urllib.error.URLError as error:  # pragma: no cover - network-dependent
            raise LLMTransportError(f"Failed to reach model endpoint: {error.reason}") from error

        return raw.decode("utf-8")

    def _extract_output_text(self, raw_response: str) -> Optional[str]:
        """Concatenate the text parts of the first assistant message."""
        if not raw_response:
            return None

        try:
            data = json.loads(raw_response)
        except json.JSONDecodeError:
            return raw_response

        if not isinstance(data, dict):
            return raw_response

        error = data.get("error")
        if isinstance(error, dict):
            message = str(error.get("message") or error)
            if _mentions_rate_limit(message) or _mentions_rate_limit(str(error.get("type", ""))):
                raise LLMRateLimitError(message)
            raise LLMTransportError(message)

        output_text = data.get("output_text")
        if isinstance(output_text, str) and output_text.strip():
            return output_text

        for item in data.get("output") or []:
            if not isinstance(item, dict):
                continue
            parts = [
                content.get("text")
                for content in item.get("content") or []
                if isinstance(content, dict) and isinstance(content.get("text"), str)
            ]
            if parts:
                return "".join(parts)

        # Chat-completions shaped payloads from compatible gateways.
        for choice in data.get("choices") or []:
            message = choice.get("message") if isinstance(choice, dict) else None
            if isinstance(message, dict) and isinstance(message.get("content"), str):
                return message["content"]

        return None


def _mentions_rate_limit(message: str) -> bool:
    lowered = message.lower()
    return any(marker in lowered for marker in _RATE_LIMIT_MARKERS)
