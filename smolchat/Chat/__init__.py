"""Chat session orchestration: generation control and the session façade."""

from .think_tags import quote_think_spans
from .generation_controller import (
    GenerationController,
    GenerationOutcome,
    GenerationResult,
    GenerationSession,
)
from .chat_session import ChatSessionService

__all__ = [
    'quote_think_spans',
    'GenerationController',
    'GenerationOutcome',
    'GenerationResult',
    'GenerationSession',
    'ChatSessionService',
]
