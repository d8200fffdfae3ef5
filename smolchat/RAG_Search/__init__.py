"""Retrieval: service handle, prompt building and the dense reference service."""

from .retrieval_service import (
    RetrievalAssets,
    RetrievalPrompt,
    RetrievalReadiness,
    RetrievalService,
    RetrievalServiceHandle,
)
from .prompt_builder import RetrievalPromptBuilder, format_provenance_message
from .dense_retrieval import DenseRetrievalService

__all__ = [
    'RetrievalAssets',
    'RetrievalPrompt',
    'RetrievalReadiness',
    'RetrievalService',
    'RetrievalServiceHandle',
    'RetrievalPromptBuilder',
    'format_provenance_message',
    'DenseRetrievalService',
]
