"""SQLite-backed storage for kbchat."""

from .conversations import ConversationStore
from .database import Database, Session
from .documents import DocumentRepository
from .usage import UsageEventRepository

__all__ = [
    "ConversationStore",
    "Database",
    "DocumentRepository",
    "Session",
    "UsageEventRepository",
]
