"""Conversation turns for authenticated users and public sessions."""

from __future__ import annotations

import threading
from contextlib import contextmanager
from dataclasses import dataclass, field
from typing import Dict, Iterator, List, Mapping, Optional, Sequence, Tuple

from kbchat.embeddings.store import VectorIndex
from kbchat.errors import ChatTurnError, ConfigurationError, ForbiddenError, KBChatError, ValidationError
from kbchat.metrics.observability import PipelineMetrics, get_logger
from kbchat.metrics.usage import UsageMeter
from kbchat.models import (
    ChatBot,
    ChatbotVisibility,
    ChatRequest,
    Chunk,
    ChunkRef,
    Conversation,
    DocumentFilter,
    Identity,
    Message,
)
from kbchat.services.rag import RAGEngine
from kbchat.storage.conversations import ConversationStore
from kbchat.storage.database import Database


class ConversationLocks:
    """In-process lock per conversation id; entries are dropped once nobody holds or waits on them."""

    def __init__(self) -> None:
        self._guard = threading.Lock()
        self._entries: Dict[str, List] = {}

    @contextmanager
    def hold(self, conversation_id: str) -> Iterator[None]:
        with self._guard:
            entry = self._entries.setdefault(conversation_id, [threading.Lock(), 0])
            entry[1] += 1
        entry[0].acquire()
        try:
            yield
        finally:
            entry[0].release()
            with self._guard:
                entry[1] -= 1
                if entry[1] == 0:
                    self._entries.pop(conversation_id, None)

    def __len__(self) -> int:
        with self._guard:
            return len(self._entries)


@dataclass(frozen=True)
class ChatTurn:
    conversation_id: str
    user_message: Message
    assistant_message: Message
    sources: Sequence[Chunk] = ()


@dataclass(frozen=True)
class ConversationView:
    conversation: Conversation
    sources: Mapping[int, Sequence[Chunk]] = field(default_factory=dict)


def usage_owner(identity: Identity, chatbot: ChatBot) -> str:
    """Public sessions bill the chatbot owner; users bill themselves."""

    return chatbot.owner_id if identity.is_public else identity.value


class ChatService:
    def __init__(
        self,
        database: Database,
        engine: RAGEngine,
        index: VectorIndex,
        usage_meter: Optional[UsageMeter] = None,
        *,
        conversations: Optional[ConversationStore] = None,
        locks: Optional[ConversationLocks] = None,
    ) -> None:
        self._database = database
        self._engine = engine
        self._index = index
        self._usage = usage_meter
        self._conversations = conversations or ConversationStore()
        self._locks = locks or ConversationLocks()
        self._logger = get_logger("chat")

    def start_conversation(self, identity: Identity, chatbot: ChatBot, *, title: str = "") -> Conversation:
        self._authorize(identity, chatbot)
        with self._database.session() as session:
            return self._conversations.start_or_get(
                session,
                identity,
                chatbot.id,
                chatbot_owner_id=chatbot.owner_id if identity.is_public else None,
                title=title or chatbot.name,
            )

    def send_message(self, identity: Identity, conversation_id: str, chatbot: ChatBot, message: str) -> ChatTurn:
        """Answer ``message`` and append the exchange; nothing is stored when any step fails."""

        if not message.strip():
            raise ValidationError("Message must not be empty")
        self._authorize(identity, chatbot)

        with self._locks.hold(conversation_id):
            session = self._database.session()
            try:
                conversation = self._conversations.get_owned(session, identity, conversation_id)
                if conversation.chatbot_id != chatbot.id:
                    raise ForbiddenError("Conversation belongs to a different chatbot")
                if not chatbot.document_ids:
                    raise ValidationError("No documents associated with this chatbot")
                if chatbot.llm_config is None:
                    raise ConfigurationError("Chatbot has no LLM configuration")

                request = ChatRequest(
                    question=message,
                    document_filter=DocumentFilter.any_of(chatbot.document_ids),
                    llm_config=chatbot.llm_config,
                    history=conversation.history(),
                    system_prompt=chatbot.system_prompt,
                    temperature=chatbot.temperature,
                    max_tokens=chatbot.max_tokens,
                )
                result = self._run_stage("generation", conversation_id, lambda: self._engine.chat(request))
                user_message, assistant_message = self._run_stage(
                    "persist",
                    conversation_id,
                    lambda: self._conversations.append_turn(
                        session,
                        conversation_id,
                        user_content=message,
                        assistant_content=result.response,
                        sources=[ChunkRef.of(chunk) for chunk in result.sources],
                        expected_last_position=conversation.last_position,
                    ),
                )
                session.commit()
            except BaseException:
                session.rollback()
                raise

        self._logger.info(
            "chat.turn_complete",
            conversation_id=conversation_id,
            identity_kind=identity.kind,
            position=assistant_message.position,
            source_count=len(result.sources),
        )
        if self._usage is not None and result.usage is not None:
            self._usage.record_many(result.usage.events(usage_owner(identity, chatbot)))
        return ChatTurn(
            conversation_id=conversation_id,
            user_message=user_message,
            assistant_message=assistant_message,
            sources=list(result.sources) if chatbot.view_source_documents else [],
        )

    def get_conversation(self, identity: Identity, conversation_id: str, chatbot: ChatBot) -> ConversationView:
        self._authorize(identity, chatbot)
        with self._database.session() as session:
            conversation = self._conversations.get_owned(session, identity, conversation_id)
        if not chatbot.view_source_documents:
            return ConversationView(conversation=conversation)
        return ConversationView(conversation=conversation, sources=self._hydrate(conversation.messages, chatbot))

    def list_conversations(
        self,
        identity: Identity,
        *,
        page: int = 1,
        limit: int = 20,
        search: str = "",
    ) -> Tuple[List[Conversation], int]:
        with self._database.session() as session:
            return self._conversations.list_for_identity(session, identity, page=page, limit=limit, search=search)

    def rename_conversation(self, identity: Identity, conversation_id: str, title: str) -> Conversation:
        if not title.strip():
            raise ValidationError("Title must not be empty")
        with self._database.session() as session:
            return self._conversations.rename(session, identity, conversation_id, title.strip())

    def delete_conversation(self, identity: Identity, conversation_id: str) -> None:
        with self._locks.hold(conversation_id):
            with self._database.session() as session:
                self._conversations.delete(session, identity, conversation_id)

    def _hydrate(self, messages: Sequence[Message], chatbot: ChatBot) -> Dict[int, Sequence[Chunk]]:
        wanted = [ref.chunk_id for message in messages for ref in message.sources]
        if not wanted or not chatbot.document_ids:
            return {}
        scope = DocumentFilter.any_of(chatbot.document_ids)
        found = {ChunkRef.of(chunk): chunk for chunk in self._index.get_chunks_by_ids(wanted, scope)}
        sources: Dict[int, Sequence[Chunk]] = {}
        for message in messages:
            if message.sources:
                sources[message.position] = [found[ref] for ref in message.sources if ref in found]
        return sources

    def _run_stage(self, stage: str, conversation_id: str, operation):
        try:
            return operation()
        except KBChatError as exc:
            if exc.status_code < 500:
                raise
            self._fail(stage, conversation_id, exc)
        except Exception as exc:
            self._fail(stage, conversation_id, exc)

    def _fail(self, stage: str, conversation_id: str, exc: Exception) -> None:
        PipelineMetrics.observe_turn_failure(stage)
        self._logger.error(
            "chat.turn_failed",
            stage=stage,
            conversation_id=conversation_id,
            error_type=type(exc).__name__,
            error=str(exc),
        )
        raise ChatTurnError() from exc

    @staticmethod
    def _authorize(identity: Identity, chatbot: ChatBot) -> None:
        visibility = ChatbotVisibility(chatbot.visibility)
        if identity.is_public:
            if visibility != ChatbotVisibility.PUBLIC:
                raise ForbiddenError("This chatbot is not available publicly")
            return
        if identity.value == chatbot.owner_id or visibility == ChatbotVisibility.PUBLIC:
            return
        if visibility == ChatbotVisibility.SHARED and identity.value in chatbot.shared_with:
            return
        raise ForbiddenError("You do not have access to this chatbot")
