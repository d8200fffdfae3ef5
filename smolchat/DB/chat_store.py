# chat_store.py
# Description: Persistence gateway for chats, messages and registered models
#
"""
chat_store.py
-------------

The session layer only talks to the PersistenceGateway interface.
SQLiteChatStore is the reference implementation used by the app:
- chats with their generation parameters
- the messages of each chat
- the model files registered on this device
"""

import sqlite3
from abc import ABC, abstractmethod
from datetime import datetime
from pathlib import Path
from typing import Any, Dict, List, Optional, Union

from loguru import logger

from ..exceptions import PersistenceError
from ..state.chat_models import Chat, ChatMessage, LLMModel, UNASSIGNED_MODEL_ID
from .base_db import BaseDB


class PersistenceGateway(ABC):
    """Chat, message and model storage used by the session."""

    # --- Chats ---
    @abstractmethod
    def load_default_chat(self) -> Chat: ...

    @abstractmethod
    def get_chats(self) -> List[Chat]: ...

    @abstractmethod
    def add_chat(self, chat: Chat) -> Chat: ...

    @abstractmethod
    def update_chat(self, chat: Chat) -> None: ...

    @abstractmethod
    def delete_chat(self, chat: Chat) -> None: ...

    # --- Messages ---
    @abstractmethod
    def get_messages(self, chat_id: int) -> List[ChatMessage]: ...

    @abstractmethod
    def add_user_message(self, chat_id: int, message: str) -> ChatMessage: ...

    @abstractmethod
    def add_assistant_message(self, chat_id: int, message: str) -> ChatMessage: ...

    @abstractmethod
    def delete_messages(self, chat_id: int) -> None: ...

    # --- Models ---
    @abstractmethod
    def get_model_from_id(self, model_id: int) -> Optional[LLMModel]: ...

    @abstractmethod
    def add_model(self, model: LLMModel) -> LLMModel: ...

    @abstractmethod
    def delete_model(self, model_id: int) -> None: ...


class SQLiteChatStore(BaseDB, PersistenceGateway):
    """
    Manages the SQLite database holding chats, messages and models.

    A new store on an empty database creates one chat from chat_defaults
    the first time load_default_chat() is called.
    """

    _SCHEMA = """
    CREATE TABLE IF NOT EXISTS models (
        id INTEGER PRIMARY KEY AUTOINCREMENT,
        name TEXT NOT NULL,
        path TEXT NOT NULL,
        url TEXT NOT NULL DEFAULT '',
        context_size INTEGER NOT NULL DEFAULT 2048,
        chat_template TEXT NOT NULL DEFAULT ''
    );

    CREATE TABLE IF NOT EXISTS chats (
        id INTEGER PRIMARY KEY AUTOINCREMENT,
        name TEXT NOT NULL,
        llm_model_id INTEGER NOT NULL DEFAULT -1,
        system_prompt TEXT NOT NULL DEFAULT '',
        min_p REAL NOT NULL,
        temperature REAL NOT NULL,
        context_size INTEGER NOT NULL,
        context_size_consumed INTEGER NOT NULL DEFAULT 0,
        is_task INTEGER NOT NULL DEFAULT 0,
        date_created TEXT NOT NULL,
        date_used TEXT NOT NULL
    );

    CREATE TABLE IF NOT EXISTS messages (
        id INTEGER PRIMARY KEY AUTOINCREMENT,
        chat_id INTEGER NOT NULL REFERENCES chats(id) ON DELETE CASCADE,
        message TEXT NOT NULL,
        is_user_message INTEGER NOT NULL
    );

    CREATE INDEX IF NOT EXISTS idx_messages_chat_id ON messages(chat_id);
    CREATE INDEX IF NOT EXISTS idx_chats_date_used ON chats(date_used);
    """

    def __init__(self, db_path: Union[str, Path], chat_defaults: Optional[Dict[str, Any]] = None):
        self.chat_defaults = dict(chat_defaults or {})
        super().__init__(db_path)

    def _initialize_schema(self):
        with self.transaction() as conn:
            conn.executescript(self._SCHEMA)

    # ==================== Row mapping ====================

    @staticmethod
    def _row_to_chat(row: sqlite3.Row) -> Chat:
        return Chat(
            id=row["id"],
            name=row["name"],
            llm_model_id=row["llm_model_id"],
            system_prompt=row["system_prompt"],
            min_p=row["min_p"],
            temperature=row["temperature"],
            context_size=row["context_size"],
            context_size_consumed=row["context_size_consumed"],
            is_task=bool(row["is_task"]),
            date_created=datetime.fromisoformat(row["date_created"]),
            date_used=datetime.fromisoformat(row["date_used"]),
        )

    @staticmethod
    def _row_to_message(row: sqlite3.Row) -> ChatMessage:
        return ChatMessage(
            id=row["id"],
            chat_id=row["chat_id"],
            message=row["message"],
            is_user_message=bool(row["is_user_message"]),
        )

    @staticmethod
    def _row_to_model(row: sqlite3.Row) -> LLMModel:
        return LLMModel(
            id=row["id"],
            name=row["name"],
            path=row["path"],
            url=row["url"],
            context_size=row["context_size"],
            chat_template=row["chat_template"],
        )

    # ==================== Chats ====================

    def load_default_chat(self) -> Chat:
        """Returns the most recently used chat, creating one if there is none."""
        with self.transaction() as conn:
            row = conn.execute("SELECT * FROM chats ORDER BY date_used DESC, id DESC LIMIT 1").fetchone()
        if row is not None:
            return self._row_to_chat(row)
        logger.info("No chats found, creating the default chat")
        return self.add_chat(Chat(**self.chat_defaults))

    def get_chats(self) -> List[Chat]:
        with self.transaction() as conn:
            rows = conn.execute("SELECT * FROM chats ORDER BY date_used DESC, id DESC").fetchall()
        return [self._row_to_chat(row) for row in rows]

    def get_chat(self, chat_id: int) -> Optional[Chat]:
        with self.transaction() as conn:
            row = conn.execute("SELECT * FROM chats WHERE id = ?", (chat_id,)).fetchone()
        return self._row_to_chat(row) if row is not None else None

    def add_chat(self, chat: Chat) -> Chat:
        with self.transaction() as conn:
            cursor = conn.execute(
                """INSERT INTO chats (name, llm_model_id, system_prompt, min_p, temperature, context_size,
                                      context_size_consumed, is_task, date_created, date_used)
                   VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?)""",
                (chat.name, chat.llm_model_id, chat.system_prompt, chat.min_p, chat.temperature,
                 chat.context_size, chat.context_size_consumed, int(chat.is_task),
                 chat.date_created.isoformat(), chat.date_used.isoformat()),
            )
            chat_id = cursor.lastrowid
        logger.debug(f"Added chat {chat_id} '{chat.name}'")
        return chat.model_copy(update={"id": chat_id})

    def update_chat(self, chat: Chat) -> None:
        with self.transaction() as conn:
            cursor = conn.execute(
                """UPDATE chats SET name = ?, llm_model_id = ?, system_prompt = ?, min_p = ?, temperature = ?,
                                    context_size = ?, context_size_consumed = ?, is_task = ?, date_used = ?
                   WHERE id = ?""",
                (chat.name, chat.llm_model_id, chat.system_prompt, chat.min_p, chat.temperature,
                 chat.context_size, chat.context_size_consumed, int(chat.is_task),
                 chat.date_used.isoformat(), chat.id),
            )
        if cursor.rowcount == 0:
            raise PersistenceError(f"Chat {chat.id} does not exist")

    def delete_chat(self, chat: Chat) -> None:
        with self.transaction() as conn:
            conn.execute("DELETE FROM messages WHERE chat_id = ?", (chat.id,))
            conn.execute("DELETE FROM chats WHERE id = ?", (chat.id,))
        logger.debug(f"Deleted chat {chat.id}")

    # ==================== Messages ====================

    def get_messages(self, chat_id: int) -> List[ChatMessage]:
        with self.transaction() as conn:
            rows = conn.execute("SELECT * FROM messages WHERE chat_id = ? ORDER BY id", (chat_id,)).fetchall()
        return [self._row_to_message(row) for row in rows]

    def _add_message(self, chat_id: int, message: str, is_user_message: bool) -> ChatMessage:
        with self.transaction() as conn:
            cursor = conn.execute(
                "INSERT INTO messages (chat_id, message, is_user_message) VALUES (?, ?, ?)",
                (chat_id, message, int(is_user_message)),
            )
        return ChatMessage(id=cursor.lastrowid, chat_id=chat_id, message=message, is_user_message=is_user_message)

    def add_user_message(self, chat_id: int, message: str) -> ChatMessage:
        return self._add_message(chat_id, message, True)

    def add_assistant_message(self, chat_id: int, message: str) -> ChatMessage:
        return self._add_message(chat_id, message, False)

    def delete_messages(self, chat_id: int) -> None:
        with self.transaction() as conn:
            conn.execute("DELETE FROM messages WHERE chat_id = ?", (chat_id,))

    # ==================== Models ====================

    def get_model_from_id(self, model_id: int) -> Optional[LLMModel]:
        if model_id == UNASSIGNED_MODEL_ID:
            return None
        with self.transaction() as conn:
            row = conn.execute("SELECT * FROM models WHERE id = ?", (model_id,)).fetchone()
        return self._row_to_model(row) if row is not None else None

    def get_models(self) -> List[LLMModel]:
        with self.transaction() as conn:
            rows = conn.execute("SELECT * FROM models ORDER BY name").fetchall()
        return [self._row_to_model(row) for row in rows]

    def add_model(self, model: LLMModel) -> LLMModel:
        with self.transaction() as conn:
            cursor = conn.execute(
                "INSERT INTO models (name, path, url, context_size, chat_template) VALUES (?, ?, ?, ?, ?)",
                (model.name, model.path, model.url, model.context_size, model.chat_template),
            )
        return model.model_copy(update={"id": cursor.lastrowid})

    def delete_model(self, model_id: int) -> None:
        with self.transaction() as conn:
            conn.execute("DELETE FROM models WHERE id = ?", (model_id,))
        logger.debug(f"Deleted model {model_id}")
