"""
Retrieval service interface and its two-phase initialization.

The retrieval engine is loaded once at process start and is read-only
afterwards. RetrievalServiceHandle exposes its readiness so callers can ask
whether prompts can be built instead of racing the loading task:

    NOT_STARTED -> LOADING -> READY | LOAD_FAILED
"""

import asyncio
from abc import ABC, abstractmethod
from dataclasses import dataclass
from enum import Enum
from pathlib import Path
from typing import Any, Dict, List, Optional

from loguru import logger

from ..config import get_section
from ..exceptions import RetrievalUnavailable
from ..logging_config import truncate_query


@dataclass
class RetrievalPrompt:
    """A query grounded with retrieved passages."""
    query: str
    contexts: List[str]
    # What the backend is given; the retrieval service decides its format
    user_message: str
    # What is recorded as the user's turn; filled in by RetrievalPromptBuilder
    provenance_message: str = ""


def _optional_path(value: Any) -> Optional[Path]:
    return Path(str(value)).expanduser() if value else None


@dataclass
class RetrievalAssets:
    """Files the retrieval engine loads its index and models from."""
    chunks_path: Path
    vectors_path: Path
    embedding_model: Path
    embedding_tokenizer: Optional[Path] = None
    reranker_tokenizer: Optional[Path] = None
    reranker_model: Optional[Path] = None
    # Some embedding models do not take token type ids as input
    use_token_type_ids: bool = False
    top_k: int = 8
    rerank_top_k: int = 2

    @classmethod
    def from_config(cls, config: Optional[Dict[str, Any]] = None) -> "RetrievalAssets":
        rag = get_section("rag", config)
        return cls(
            chunks_path=Path(str(rag.get("chunks_path", ""))).expanduser(),
            vectors_path=Path(str(rag.get("vectors_path", ""))).expanduser(),
            embedding_model=Path(str(rag.get("embedding_model", ""))).expanduser(),
            embedding_tokenizer=_optional_path(rag.get("embedding_tokenizer")),
            reranker_tokenizer=_optional_path(rag.get("reranker_tokenizer")),
            reranker_model=_optional_path(rag.get("reranker_model")),
            use_token_type_ids=bool(rag.get("use_token_type_ids", False)),
            top_k=int(rag.get("top_k", 8)),
            rerank_top_k=int(rag.get("rerank_top_k", 2)),
        )


class RetrievalService(ABC):
    """Embedding index plus reranker. Both methods are blocking."""

    @abstractmethod
    def load(self, assets: RetrievalAssets) -> None:
        """Load the index and models. Raises RetrievalLoadError."""

    @abstractmethod
    def get_prompt(self, query: str) -> RetrievalPrompt:
        """Retrieve contexts for query. Raises RetrievalUnavailable if not loaded."""


class RetrievalReadiness(Enum):
    NOT_STARTED = "not_started"
    LOADING = "loading"
    READY = "ready"
    LOAD_FAILED = "load_failed"


class RetrievalServiceHandle:
    """Shared, read-mostly owner of the process-wide retrieval service."""

    def __init__(self, service: RetrievalService):
        self._service = service
        self._readiness = RetrievalReadiness.NOT_STARTED
        self._load_error: Optional[str] = None
        self._load_task: Optional[asyncio.Task] = None

    @property
    def readiness(self) -> RetrievalReadiness:
        return self._readiness

    @property
    def is_ready(self) -> bool:
        return self._readiness is RetrievalReadiness.READY

    @property
    def load_error(self) -> Optional[str]:
        return self._load_error

    async def initialize(self, assets: RetrievalAssets) -> bool:
        """Load the service in a worker thread. Returns True when READY."""
        if self._readiness in (RetrievalReadiness.LOADING, RetrievalReadiness.READY):
            logger.debug(f"Retrieval initialize skipped, already {self._readiness.value}")
            return await self.wait_until_loaded()

        self._readiness = RetrievalReadiness.LOADING
        return await self._load(assets)

    async def _load(self, assets: RetrievalAssets) -> bool:
        self._load_error = None
        logger.info(f"Loading retrieval assets from {assets.chunks_path.parent}")
        try:
            await asyncio.to_thread(self._service.load, assets)
        except Exception as e:
            self._readiness = RetrievalReadiness.LOAD_FAILED
            self._load_error = str(e) or type(e).__name__
            logger.error(f"Retrieval service failed to load: {self._load_error}")
            return False

        self._readiness = RetrievalReadiness.READY
        logger.info("Retrieval service ready")
        return True

    def start_loading(self, assets: RetrievalAssets) -> asyncio.Task:
        """Schedule initialize() on the running loop and return its task."""
        if self._load_task is not None and (not self._load_task.done() or self.is_ready):
            return self._load_task
        if self.is_ready:
            self._load_task = asyncio.create_task(asyncio.sleep(0, result=True), name="retrieval_load")
            return self._load_task
        # Readiness flips before the task runs so get_prompt never sees NOT_STARTED
        self._readiness = RetrievalReadiness.LOADING
        self._load_task = asyncio.create_task(self._load(assets), name="retrieval_load")
        return self._load_task

    async def wait_until_loaded(self) -> bool:
        if self._load_task is not None and not self._load_task.done():
            await asyncio.shield(self._load_task)
        return self.is_ready

    async def get_prompt(self, query: str) -> RetrievalPrompt:
        if self._readiness is RetrievalReadiness.LOAD_FAILED:
            raise RetrievalUnavailable(f"Retrieval assets failed to load: {self._load_error}")
        if self._readiness is RetrievalReadiness.NOT_STARTED:
            raise RetrievalUnavailable("Retrieval assets have not been loaded, start loading them before querying")
        if self._readiness is not RetrievalReadiness.READY:
            raise RetrievalUnavailable("Retrieval assets are still loading, try again shortly")
        logger.debug(f"Retrieving contexts [query: '{truncate_query(query)}']")
        return await asyncio.to_thread(self._service.get_prompt, query)
