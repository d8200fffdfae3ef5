"""
Dense retrieval over a precomputed chunk index.

The index is two files produced offline:

- chunks CSV: one passage per row (first column), optional header row "text"
- vectors CSV: one embedding per row, same order as the chunks

At query time the query is embedded, the top_k chunks by cosine similarity
are taken, and a cross-encoder keeps the best rerank_top_k of them.

Requires the optional embedding stack: pip install smolchat[embeddings_rag]
"""

import csv
import threading
from pathlib import Path
from typing import Any, List, Optional

import numpy as np
from loguru import logger

from ..exceptions import RetrievalLoadError, RetrievalUnavailable
from ..logging_config import truncate_query
from .prompt_builder import PROVENANCE_CONTEXTS
from .retrieval_service import RetrievalAssets, RetrievalPrompt, RetrievalService

USER_MESSAGE_TEMPLATE = (
    "Answer the query using the information in the contexts below.\n\n"
    "{contexts}\n\n"
    "Query: {query}"
)


def load_chunks(path: Path) -> List[str]:
    """Read passages from the first column of a CSV file."""
    with open(path, newline="", encoding="utf-8") as f:
        rows = [row[0] for row in csv.reader(f) if row and row[0].strip()]
    if rows and rows[0].strip().lower() == "text":
        rows = rows[1:]
    return rows


def load_vectors(path: Path) -> np.ndarray:
    vectors = np.loadtxt(path, delimiter=",", dtype=np.float32, ndmin=2)
    norms = np.linalg.norm(vectors, axis=1, keepdims=True)
    # Zero vectors stay zero and never score above anything else
    norms[norms < 1e-6] = 1.0
    return vectors / norms


def cosine_top_k(query_vector: np.ndarray, vectors: np.ndarray, k: int) -> List[int]:
    """Indices of the k rows of unit-normalized vectors most similar to query_vector."""
    norm = np.linalg.norm(query_vector)
    if norm < 1e-6 or len(vectors) == 0:
        return list(range(min(k, len(vectors))))
    scores = vectors @ (query_vector / norm)
    k = min(k, len(scores))
    top = np.argpartition(-scores, k - 1)[:k]
    return [int(i) for i in top[np.argsort(-scores[top])]]


def _load_tokenizer(source: Path, use_token_type_ids: bool) -> Any:
    from transformers import AutoTokenizer

    kwargs = {}
    if not use_token_type_ids:
        kwargs["model_input_names"] = ["input_ids", "attention_mask"]
    return AutoTokenizer.from_pretrained(str(source), **kwargs)


class DenseRetrievalService(RetrievalService):
    """Retrieval service backed by sentence-transformers models and a numpy index."""

    def __init__(self, device: Optional[str] = None):
        self.device = device
        self._lock = threading.Lock()
        self._chunks: List[str] = []
        self._vectors: Optional[np.ndarray] = None
        self._embedder: Any = None
        self._reranker: Any = None
        self._top_k = 8
        self._rerank_top_k = PROVENANCE_CONTEXTS

    @property
    def is_loaded(self) -> bool:
        return self._vectors is not None and self._embedder is not None

    def load(self, assets: RetrievalAssets) -> None:
        try:
            from sentence_transformers import CrossEncoder, SentenceTransformer
        except ImportError as e:
            raise RetrievalLoadError(
                "sentence-transformers is not installed. Install with: pip install smolchat[embeddings_rag]"
            ) from e

        try:
            chunks = load_chunks(assets.chunks_path)
            vectors = load_vectors(assets.vectors_path)
        except (OSError, ValueError) as e:
            raise RetrievalLoadError(f"Could not read retrieval index: {e}") from e

        if len(chunks) != len(vectors):
            raise RetrievalLoadError(
                f"Index mismatch: {len(chunks)} chunks but {len(vectors)} vectors"
            )
        if len(chunks) < PROVENANCE_CONTEXTS:
            raise RetrievalLoadError(
                f"Index holds {len(chunks)} chunks, at least {PROVENANCE_CONTEXTS} are required"
            )

        try:
            embedder = SentenceTransformer(str(assets.embedding_model), device=self.device)
            if assets.embedding_tokenizer is not None or not assets.use_token_type_ids:
                embedder.tokenizer = _load_tokenizer(
                    assets.embedding_tokenizer or assets.embedding_model, assets.use_token_type_ids
                )
            reranker = None
            if assets.reranker_model is not None:
                reranker = CrossEncoder(str(assets.reranker_model), device=self.device)
                if assets.reranker_tokenizer is not None:
                    reranker.tokenizer = _load_tokenizer(assets.reranker_tokenizer, True)
        except (OSError, ValueError, RuntimeError) as e:
            raise RetrievalLoadError(f"Could not load retrieval models: {e}") from e

        dimension = embedder.get_sentence_embedding_dimension()
        if dimension is not None and vectors.shape[1] != dimension:
            raise RetrievalLoadError(
                f"Index vectors have dimension {vectors.shape[1]}, embedding model produces {dimension}"
            )

        with self._lock:
            self._chunks = chunks
            self._vectors = vectors
            self._embedder = embedder
            self._reranker = reranker
            self._top_k = max(assets.top_k, PROVENANCE_CONTEXTS)
            self._rerank_top_k = max(assets.rerank_top_k, PROVENANCE_CONTEXTS)
        logger.info(f"Loaded retrieval index with {len(chunks)} chunks (dimension {vectors.shape[1]})")

    def _rerank(self, query: str, candidates: List[str]) -> List[str]:
        if self._reranker is None:
            return candidates[:self._rerank_top_k]
        scores = self._reranker.predict([(query, passage) for passage in candidates])
        order = np.argsort(-np.asarray(scores, dtype=np.float32))
        return [candidates[int(i)] for i in order[:self._rerank_top_k]]

    def get_prompt(self, query: str) -> RetrievalPrompt:
        with self._lock:
            if not self.is_loaded:
                raise RetrievalUnavailable("Retrieval index is not loaded")
            query_vector = self._embedder.encode(query, convert_to_numpy=True)
            indices = cosine_top_k(np.asarray(query_vector, dtype=np.float32), self._vectors, self._top_k)
            contexts = self._rerank(query, [self._chunks[i] for i in indices])

        logger.debug(f"Retrieved {len(contexts)} contexts [query: '{truncate_query(query)}']")
        user_message = USER_MESSAGE_TEMPLATE.format(
            contexts="\n\n".join(f"Context: {context}" for context in contexts),
            query=query,
        )
        return RetrievalPrompt(query=query, contexts=contexts, user_message=user_message)
