"""Pydantic models for the kbchat API."""

from __future__ import annotations

from datetime import datetime
from typing import Any, Dict, List, Literal, Optional

from pydantic import BaseModel, ConfigDict, Field

from kbchat.models import (
    ChatBot,
    ChatbotVisibility,
    Chunk,
    ChunkPayload,
    Conversation,
    DocumentRecord,
    DocumentStatus,
    DocumentVisibility,
    HistoryMessage,
    LLMConfig,
    LLMProvider,
    Message,
)


class _CamelModel(BaseModel):
    model_config = ConfigDict(populate_by_name=True)


class ChunkMetadataModel(_CamelModel):
    character_count: Optional[int] = Field(default=None, alias="characterCount", ge=0)
    word_count: Optional[int] = Field(default=None, alias="wordCount", ge=0)


class ChunkModel(_CamelModel):
    """Chunk transfer object produced by the client-side chunking step."""

    id: str = Field(..., min_length=1)
    content: str = Field(..., min_length=1)
    index: int = Field(..., ge=0)
    metadata: ChunkMetadataModel = Field(default_factory=ChunkMetadataModel)

    def to_payload(self) -> ChunkPayload:
        return ChunkPayload(
            id=self.id,
            content=self.content,
            index=self.index,
            character_count=self.metadata.character_count,
            word_count=self.metadata.word_count,
        )


class DocumentCreateRequest(BaseModel):
    name: str = Field(..., min_length=1)
    description: str = ""
    labels: List[str] = Field(default_factory=list)
    visibility: DocumentVisibility = DocumentVisibility.PRIVATE
    chunks: List[ChunkModel] = Field(..., min_length=1)


class DocumentUpdateRequest(BaseModel):
    name: Optional[str] = Field(default=None, min_length=1)
    description: Optional[str] = None
    labels: Optional[List[str]] = None
    visibility: Optional[DocumentVisibility] = None


class SourceModel(BaseModel):
    chunk_id: str
    content: str
    chunk_index: int
    metadata: Dict[str, Any] = Field(default_factory=dict)

    @classmethod
    def from_chunk(cls, chunk: Chunk) -> "SourceModel":
        return cls(**chunk.as_source())


class DocumentResponse(BaseModel):
    id: str
    owner_id: str
    name: str
    description: str
    visibility: DocumentVisibility
    labels: List[str]
    status: DocumentStatus
    chunk_count: int
    created_at: datetime
    updated_at: datetime

    @classmethod
    def from_record(cls, record: DocumentRecord) -> "DocumentResponse":
        return cls(
            id=record.id,
            owner_id=record.owner_id,
            name=record.name,
            description=record.description,
            visibility=record.visibility,
            labels=list(record.labels),
            status=record.status,
            chunk_count=record.chunk_count,
            created_at=record.created_at,
            updated_at=record.updated_at,
        )


class DocumentDetailResponse(DocumentResponse):
    chunks: List[SourceModel] = Field(default_factory=list)


class DocumentListResponse(BaseModel):
    items: List[DocumentResponse]
    total: int
    page: int
    limit: int
    total_pages: int


class HistoryItem(BaseModel):
    role: Literal["user", "assistant"]
    content: str

    def to_domain(self) -> HistoryMessage:
        return HistoryMessage(role=self.role, content=self.content)


class LLMConfigModel(_CamelModel):
    provider: LLMProvider
    model_name: str = Field(..., alias="modelName")
    api_key: Optional[str] = Field(default=None, alias="apiKey")
    base_url: Optional[str] = Field(default=None, alias="baseUrl")
    id: Optional[str] = None
    user_id: Optional[str] = Field(default=None, alias="userId")

    def to_domain(self) -> LLMConfig:
        return LLMConfig(
            provider=self.provider,
            model_name=self.model_name,
            api_key=self.api_key,
            base_url=self.base_url,
            id=self.id,
            user_id=self.user_id,
        )


class ChatRequestModel(_CamelModel):
    """Stateless chat call: the caller supplies history and scope."""

    question: str = Field(..., min_length=1)
    history: List[HistoryItem] = Field(default_factory=list)
    document_filter: Dict[str, Any] = Field(..., alias="documentFilter")
    system_prompt: str = Field(default="", alias="systemPrompt")
    llm_config: LLMConfigModel = Field(..., alias="llmConfig")
    temperature: Optional[float] = Field(default=None, ge=0.0, le=2.0)
    max_tokens: Optional[int] = Field(default=None, alias="maxTokens", ge=1)
    view_source_documents: bool = Field(default=True, alias="viewSourceDocuments")


class ChatResponseModel(BaseModel):
    response: str
    sources: List[SourceModel]


class ChatbotModel(_CamelModel):
    """Chatbot as resolved and authorized by the calling layer."""

    id: str = Field(..., min_length=1)
    owner_id: str = Field(..., alias="ownerId", min_length=1)
    document_ids: List[str] = Field(default_factory=list, alias="documentIds")
    llm_config: Optional[LLMConfigModel] = Field(default=None, alias="llmConfig")
    system_prompt: str = Field(default="", alias="systemPrompt")
    temperature: float = Field(default=0.7, ge=0.0, le=2.0)
    max_tokens: int = Field(default=1024, alias="maxTokens", ge=1)
    view_source_documents: bool = Field(default=True, alias="viewSourceDocuments")
    visibility: ChatbotVisibility = ChatbotVisibility.PRIVATE
    name: str = ""
    shared_with: List[str] = Field(default_factory=list, alias="sharedWith")

    def to_domain(self) -> ChatBot:
        return ChatBot(
            id=self.id,
            owner_id=self.owner_id,
            document_ids=tuple(self.document_ids),
            llm_config=self.llm_config.to_domain() if self.llm_config else None,
            system_prompt=self.system_prompt,
            temperature=self.temperature,
            max_tokens=self.max_tokens,
            view_source_documents=self.view_source_documents,
            visibility=self.visibility,
            name=self.name,
            shared_with=tuple(self.shared_with),
        )


class StartConversationRequest(BaseModel):
    chatbot: ChatbotModel
    title: str = ""


class SendMessageRequest(BaseModel):
    chatbot: ChatbotModel
    message: str = Field(..., min_length=1)


class ConversationRequest(BaseModel):
    chatbot: ChatbotModel


class RenameConversationRequest(BaseModel):
    title: str = Field(..., min_length=1)


class MessageModel(BaseModel):
    role: Literal["user", "assistant"]
    content: str
    position: int
    timestamp: datetime
    sources: List[SourceModel] = Field(default_factory=list)

    @classmethod
    def from_message(cls, message: Message, sources: List[Chunk] | None = None) -> "MessageModel":
        return cls(
            role=message.role,
            content=message.content,
            position=message.position,
            timestamp=message.timestamp,
            sources=[SourceModel.from_chunk(chunk) for chunk in sources or []],
        )


class ConversationResponse(BaseModel):
    id: str
    chatbot_id: str
    title: str
    created_at: datetime
    last_message_at: datetime
    messages: List[MessageModel] = Field(default_factory=list)

    @classmethod
    def from_conversation(
        cls,
        conversation: Conversation,
        sources: Dict[int, List[Chunk]] | None = None,
    ) -> "ConversationResponse":
        sources = sources or {}
        return cls(
            id=conversation.id,
            chatbot_id=conversation.chatbot_id,
            title=conversation.title,
            created_at=conversation.created_at,
            last_message_at=conversation.last_message_at,
            messages=[
                MessageModel.from_message(message, list(sources.get(message.position, [])))
                for message in conversation.messages
            ],
        )


class ConversationListResponse(BaseModel):
    items: List[ConversationResponse]
    total: int
    page: int
    limit: int


class TurnResponse(BaseModel):
    conversation_id: str
    response: str
    sources: List[SourceModel]
    user_message: MessageModel
    assistant_message: MessageModel
