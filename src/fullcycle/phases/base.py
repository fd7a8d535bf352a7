"""Shared helper used by the phase modules to call the language model."""

from __future__ import annotations

import logging
import time
from typing import Callable, Optional, TypeVar

from ..models.llm_client import CompletionRequest, LLMClient, complete_with_backoff, parse_structured
from ..schema import PipelineConfig

LOGGER = logging.getLogger(__name__)

T = TypeVar("T")

ProgressCallback = Callable[[str], None]


class PhaseLLM:
    """Binds a client to the run configuration, backoff policy and progress sink."""

    def __init__(
        self,
        client: LLMClient,
        config: PipelineConfig,
        *,
        sleep: Callable[[float], None] = time.sleep,
        progress: Optional[ProgressCallback] = None,
    ) -> None:
        self.client = client
        self.config = config
        self._sleep = sleep
        self._progress = progress

    def request(self, prompt: str, *, system_prompt: str, phase: str) -> CompletionRequest:
        request = CompletionRequest.from_prompt(
            prompt,
            system_prompt=system_prompt,
            temperature=self.config.llm_temperature,
            max_tokens=self.config.llm_max_tokens,
            model=self.config.model,
        )
        request.metadata["phase"] = phase
        return request

    def text(self, prompt: str, *, system_prompt: str, phase: str) -> str:
        """Return the raw completion for ``prompt``, retrying only on rate limits."""
        LOGGER.debug("Invoking model for phase %s (%d prompt chars)", phase, len(prompt))
        return complete_with_backoff(
            self.client,
            self.request(prompt, system_prompt=system_prompt, phase=phase),
            delays=self.config.rate_limit_delays,
            sleep=self._sleep,
            on_wait=self._progress,
        )

    def structured(self, prompt: str, response_model: type[T], *, system_prompt: str, phase: str) -> T:
        """Return the completion parsed and validated into ``response_model``."""
        return parse_structured(self.text(prompt, system_prompt=system_prompt, phase=phase), response_model)


__all__ = ["PhaseLLM", "ProgressCallback"]
