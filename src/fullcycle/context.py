"""Retrieved-context port consumed while planning and writing code."""

from __future__ import annotations

import logging

LOGGER = logging.getLogger(__name__)


class ContextProvider:
    """Returns project text relevant to a query. Subclasses implement :meth:`search`."""

    def search(self, query: str, *, top_k: int = 5, min_similarity: float = 0.3) -> str:
        raise NotImplementedError("Subclasses must implement search().")


class StaticContextProvider(ContextProvider):
    """Serves a fixed block of text, e.g. a project README passed on the command line."""

    def __init__(self, text: str) -> None:
        self._text = text

    def search(self, query: str, *, top_k: int = 5, min_similarity: float = 0.3) -> str:
        return self._text


def gather_context(provider: ContextProvider | None, query: str, *, top_k: int, min_similarity: float) -> str:
    """Query ``provider`` and return an empty string when it is absent or fails."""
    if provider is None:
        return ""
    try:
        return provider.search(query, top_k=top_k, min_similarity=min_similarity) or ""
    except Exception as error:
        LOGGER.warning("Context search failed: %s", error)
        return ""


__all__ = ["ContextProvider", "StaticContextProvider", "gather_context"]
