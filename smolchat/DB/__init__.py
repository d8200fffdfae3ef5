from .chat_store import PersistenceGateway, SQLiteChatStore

__all__ = ['PersistenceGateway', 'SQLiteChatStore']
