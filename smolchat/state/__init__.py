"""
State management module for smolchat.
Provides the chat data models and the observable session state container.
"""

from .chat_models import Chat, ChatMessage, LLMModel, UNASSIGNED_MODEL_ID
from .session_state import SessionState, ModelLoadState

__all__ = [
    'Chat',
    'ChatMessage',
    'LLMModel',
    'UNASSIGNED_MODEL_ID',
    'SessionState',
    'ModelLoadState',
]
