"""Conversation persistence with atomic, position-checked turn appends."""

from __future__ import annotations

import json
import sqlite3
import uuid
from datetime import datetime
from typing import List, Optional, Sequence, Tuple

from kbchat.errors import ConversationConflictError, NotFoundError
from kbchat.metrics.observability import get_logger
from kbchat.models import ChunkRef, Conversation, Identity, Message, utcnow
from kbchat.storage.database import Session


def _ts(value: datetime) -> str:
    return value.isoformat()


def _parse_ts(value: str) -> datetime:
    return datetime.fromisoformat(value)


def _dump_sources(sources: Sequence[ChunkRef]) -> str:
    return json.dumps([{"document_id": ref.document_id, "chunk_id": ref.chunk_id} for ref in sources])


def _load_sources(raw: str | None) -> Tuple[ChunkRef, ...]:
    return tuple(
        ChunkRef(document_id=item["document_id"], chunk_id=item["chunk_id"]) for item in json.loads(raw or "[]")
    )


class ConversationStore:
    """Reads and writes conversations through a caller-provided :class:`Session`.

    No method commits; the session owner decides when the unit of work ends.
    """

    def __init__(self) -> None:
        self._logger = get_logger("conversations")

    def start_or_get(
        self,
        session: Session,
        identity: Identity,
        chatbot_id: str,
        *,
        chatbot_owner_id: Optional[str] = None,
        title: str = "",
    ) -> Conversation:
        """Return the conversation for ``(identity, chatbot_id)``, creating it on first call."""

        session.begin()
        now = _ts(utcnow())
        cursor = session.execute(
            """
            INSERT OR IGNORE INTO conversations
                (id, identity_kind, identity_value, chatbot_id, chatbot_owner_id, title, created_at, last_message_at)
            VALUES (?, ?, ?, ?, ?, ?, ?, ?)
            """,
            (str(uuid.uuid4()), identity.kind, identity.value, chatbot_id, chatbot_owner_id, title, now, now),
        )
        if cursor.rowcount:
            self._logger.info("conversation.created", identity_kind=identity.kind, chatbot_id=chatbot_id)
        conversation = self.find(session, identity, chatbot_id)
        if conversation is None:  # pragma: no cover - the row was just written in this transaction
            raise NotFoundError("Conversation not found")
        return conversation

    def find(self, session: Session, identity: Identity, chatbot_id: str) -> Optional[Conversation]:
        row = session.fetchone(
            "SELECT * FROM conversations WHERE identity_kind = ? AND identity_value = ? AND chatbot_id = ?",
            (identity.kind, identity.value, chatbot_id),
        )
        return self._hydrate(session, row) if row else None

    def get(self, session: Session, conversation_id: str) -> Optional[Conversation]:
        row = session.fetchone("SELECT * FROM conversations WHERE id = ?", (conversation_id,))
        return self._hydrate(session, row) if row else None

    def get_owned(self, session: Session, identity: Identity, conversation_id: str) -> Conversation:
        conversation = self.get(session, conversation_id)
        if conversation is None or conversation.identity != identity:
            raise NotFoundError("Conversation not found")
        return conversation

    def append_turn(
        self,
        session: Session,
        conversation_id: str,
        *,
        user_content: str,
        assistant_content: str,
        sources: Sequence[ChunkRef],
        expected_last_position: int,
    ) -> Tuple[Message, Message]:
        """Write the user message and the assistant reply as one unit.

        Raises :class:`ConversationConflictError` when another turn landed
        since ``expected_last_position`` was read.
        """

        session.begin()
        row = session.fetchone(
            "SELECT COALESCE(MAX(position), -1) AS last FROM messages WHERE conversation_id = ?",
            (conversation_id,),
        )
        last = int(row["last"]) if row else -1
        if last != expected_last_position:
            self._logger.warning(
                "conversation.append_conflict",
                conversation_id=conversation_id,
                expected=expected_last_position,
                actual=last,
            )
            raise ConversationConflictError("Conversation changed while the reply was generated")

        now = utcnow()
        user_message = Message(role="user", content=user_content, position=last + 1, timestamp=now)
        assistant_message = Message(
            role="assistant",
            content=assistant_content,
            position=last + 2,
            timestamp=now,
            sources=tuple(sources),
        )
        try:
            for message in (user_message, assistant_message):
                session.execute(
                    """
                    INSERT INTO messages (conversation_id, position, role, content, sources, timestamp)
                    VALUES (?, ?, ?, ?, ?, ?)
                    """,
                    (
                        conversation_id,
                        message.position,
                        message.role,
                        message.content,
                        _dump_sources(message.sources),
                        _ts(message.timestamp),
                    ),
                )
        except sqlite3.IntegrityError as exc:
            raise ConversationConflictError("Conversation changed while the reply was generated") from exc
        session.execute(
            "UPDATE conversations SET last_message_at = ? WHERE id = ?",
            (_ts(now), conversation_id),
        )
        return user_message, assistant_message

    def list_for_identity(
        self,
        session: Session,
        identity: Identity,
        *,
        page: int = 1,
        limit: int = 20,
        search: str = "",
    ) -> Tuple[List[Conversation], int]:
        clauses = ["identity_kind = ?", "identity_value = ?"]
        params: list = [identity.kind, identity.value]
        if search:
            clauses.append("title LIKE ?")
            params.append(f"%{search}%")
        where = " AND ".join(clauses)
        total = session.fetchone(f"SELECT COUNT(*) AS n FROM conversations WHERE {where}", params)["n"]
        offset = (max(page, 1) - 1) * limit
        rows = session.fetchall(
            f"SELECT * FROM conversations WHERE {where} ORDER BY last_message_at DESC LIMIT ? OFFSET ?",
            [*params, limit, offset],
        )
        return [self._hydrate(session, row, with_messages=False) for row in rows], int(total)

    def rename(self, session: Session, identity: Identity, conversation_id: str, title: str) -> Conversation:
        self.get_owned(session, identity, conversation_id)
        session.begin()
        session.execute("UPDATE conversations SET title = ? WHERE id = ?", (title, conversation_id))
        return self.get_owned(session, identity, conversation_id)

    def delete(self, session: Session, identity: Identity, conversation_id: str) -> None:
        self.get_owned(session, identity, conversation_id)
        session.begin()
        session.execute("DELETE FROM conversations WHERE id = ?", (conversation_id,))
        self._logger.info("conversation.deleted", conversation_id=conversation_id)

    def _hydrate(self, session: Session, row: sqlite3.Row, *, with_messages: bool = True) -> Conversation:
        messages: List[Message] = []
        if with_messages:
            for item in session.fetchall(
                "SELECT * FROM messages WHERE conversation_id = ? ORDER BY position",
                (row["id"],),
            ):
                messages.append(
                    Message(
                        role=item["role"],
                        content=item["content"],
                        position=item["position"],
                        timestamp=_parse_ts(item["timestamp"]),
                        sources=_load_sources(item["sources"]),
                    )
                )
        return Conversation(
            id=row["id"],
            identity=Identity(kind=row["identity_kind"], value=row["identity_value"]),
            chatbot_id=row["chatbot_id"],
            title=row["title"],
            messages=messages,
            last_message_at=_parse_ts(row["last_message_at"]),
            created_at=_parse_ts(row["created_at"]),
            chatbot_owner_id=row["chatbot_owner_id"],
        )
