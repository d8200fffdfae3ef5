"""Turns a raw user query into a grounded prompt plus its provenance record."""

from dataclasses import replace
from typing import List, Sequence

from loguru import logger

from ..exceptions import RetrievalError
from ..logging_config import truncate_query
from .retrieval_service import RetrievalPrompt, RetrievalServiceHandle

# Number of retrieved passages recorded with every user turn
PROVENANCE_CONTEXTS = 2


def format_provenance_message(query: str, contexts: Sequence[str]) -> str:
    """
    Persisted form of a grounded user turn.

    The first two contexts are recorded ahead of the query so that a reader
    of the history can see what the answer was grounded on:

        Context {c0}

        Context {c1}

        Query: {query}
    """
    if len(contexts) < PROVENANCE_CONTEXTS:
        raise RetrievalError(
            f"Expected at least {PROVENANCE_CONTEXTS} retrieved contexts, got {len(contexts)}"
        )
    parts: List[str] = [f"Context {context}" for context in contexts[:PROVENANCE_CONTEXTS]]
    parts.append(f"Query: {query}")
    return "\n\n".join(parts)


class RetrievalPromptBuilder:
    """Asks the retrieval service for contexts and fills in the provenance message."""

    def __init__(self, handle: RetrievalServiceHandle):
        self._handle = handle

    @property
    def handle(self) -> RetrievalServiceHandle:
        return self._handle

    async def build_prompt(self, query: str) -> RetrievalPrompt:
        prompt = await self._handle.get_prompt(query)
        provenance = format_provenance_message(query, prompt.contexts)
        logger.debug(
            f"Built grounded prompt with {len(prompt.contexts)} contexts [query: '{truncate_query(query)}']"
        )
        return replace(prompt, query=query, provenance_message=provenance)
