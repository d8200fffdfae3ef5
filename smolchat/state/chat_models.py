"""Data models for chats, messages and local models using Pydantic."""

from datetime import datetime
from typing import Optional

from pydantic import BaseModel, Field

# Sentinel for a chat that has no model assigned yet
UNASSIGNED_MODEL_ID = -1


class Chat(BaseModel):
    """A conversation and the generation parameters it is run with."""
    id: int = 0
    name: str = "Untitled"
    llm_model_id: int = UNASSIGNED_MODEL_ID
    system_prompt: str = ""
    min_p: float = 0.1
    temperature: float = 0.8
    context_size: int = 2048
    context_size_consumed: int = 0
    is_task: bool = False
    date_created: datetime = Field(default_factory=datetime.now)
    date_used: datetime = Field(default_factory=datetime.now)

    @property
    def has_model(self) -> bool:
        return self.llm_model_id != UNASSIGNED_MODEL_ID


class ChatMessage(BaseModel):
    """Individual persisted chat turn."""
    id: Optional[int] = None
    chat_id: int
    message: str
    is_user_message: bool


class LLMModel(BaseModel):
    """A model file registered on this device."""
    id: int = 0
    name: str
    path: str
    url: str = ""
    context_size: int = 2048
    chat_template: str = ""
