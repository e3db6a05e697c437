"""FastAPI application exposing kbchat services."""

from __future__ import annotations

from contextlib import asynccontextmanager
from typing import List, Optional
from uuid import uuid4

from fastapi import Depends, FastAPI, Header, HTTPException, Query, Request, Response, status
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from prometheus_client import CONTENT_TYPE_LATEST, generate_latest

from kbchat.api.schemas import (
    ChatRequestModel,
    ChatResponseModel,
    ConversationListResponse,
    ConversationRequest,
    ConversationResponse,
    DocumentCreateRequest,
    DocumentDetailResponse,
    DocumentListResponse,
    DocumentResponse,
    DocumentUpdateRequest,
    MessageModel,
    RenameConversationRequest,
    SendMessageRequest,
    SourceModel,
    StartConversationRequest,
    TurnResponse,
)
from kbchat.config import Settings, get_settings
from kbchat.errors import ChatTurnError, KBChatError
from kbchat.metrics.observability import bind_correlation_id, clear_correlation_id, configure_logging, get_logger
from kbchat.models import ChatRequest, DocumentFilter, Identity
from kbchat.registry import ServiceRegistry, build_registry


def create_app(*, settings: Settings | None = None, registry: ServiceRegistry | None = None) -> FastAPI:
    settings = settings or (registry.settings if registry else get_settings())
    owns_registry = registry is None
    services = registry or build_registry(settings)

    configure_logging(settings.log_level)
    logger = get_logger("api")

    @asynccontextmanager
    async def lifespan(_: FastAPI):
        yield
        if owns_registry:
            services.close()

    app = FastAPI(title="kbchat API", version="0.1.0", lifespan=lifespan)
    app.state.registry = services

    if settings.cors_allow_origins:
        app.add_middleware(
            CORSMiddleware,
            allow_origins=list(settings.cors_allow_origins),
            allow_credentials=settings.cors_allow_credentials,
            allow_methods=list(settings.cors_allow_methods),
            allow_headers=list(settings.cors_allow_headers),
        )

    @app.middleware("http")
    async def add_correlation_id(request: Request, call_next):  # type: ignore[override]
        correlation_id = request.headers.get("X-Request-ID", uuid4().hex)
        request.state.correlation_id = correlation_id
        bind_correlation_id(correlation_id)
        try:
            response = await call_next(request)
        finally:
            clear_correlation_id()
        response.headers["X-Correlation-ID"] = correlation_id
        return response

    @app.exception_handler(KBChatError)
    async def handle_kbchat_error(request: Request, exc: KBChatError) -> JSONResponse:
        correlation_id = getattr(request.state, "correlation_id", uuid4().hex)
        detail = str(exc) if exc.status_code < 500 or isinstance(exc, ChatTurnError) else "Upstream service error"
        log = logger.warning if exc.status_code < 500 else logger.error
        log("request.error", correlation_id=correlation_id, error_type=type(exc).__name__, detail=str(exc))
        return JSONResponse(
            status_code=exc.status_code,
            content={"detail": detail, "correlation_id": correlation_id},
        )

    @app.exception_handler(Exception)
    async def handle_unexpected_error(request: Request, exc: Exception) -> JSONResponse:
        correlation_id = getattr(request.state, "correlation_id", uuid4().hex)
        logger.error("unhandled.error", correlation_id=correlation_id, detail=str(exc))
        return JSONResponse(
            status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
            content={"detail": "Internal Server Error", "correlation_id": correlation_id},
        )

    def get_registry(request: Request) -> ServiceRegistry:
        return request.app.state.registry

    def require_user(x_user_id: Optional[str] = Header(default=None)) -> str:
        if not x_user_id:
            raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="X-User-ID header is required")
        return x_user_id

    def resolve_identity(
        x_user_id: Optional[str] = Header(default=None),
        x_session_id: Optional[str] = Header(default=None),
    ) -> Identity:
        if x_user_id:
            return Identity.user(x_user_id)
        if x_session_id:
            return Identity.session(x_session_id)
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="X-User-ID or X-Session-ID header is required",
        )

    # documents

    @app.post("/documents", response_model=DocumentResponse, status_code=status.HTTP_201_CREATED)
    def create_document(
        payload: DocumentCreateRequest,
        owner_id: str = Depends(require_user),
        deps: ServiceRegistry = Depends(get_registry),
    ) -> DocumentResponse:
        record = deps.ingestion.create_document(
            owner_id,
            name=payload.name,
            description=payload.description,
            labels=payload.labels,
            visibility=payload.visibility,
            chunks=[chunk.to_payload() for chunk in payload.chunks],
        )
        return DocumentResponse.from_record(record)

    @app.get("/documents", response_model=DocumentListResponse)
    def list_documents(
        page: int = Query(default=1, ge=1),
        limit: int = Query(default=20, ge=1, le=100),
        search: str = "",
        labels: Optional[List[str]] = Query(default=None),
        owner_id: str = Depends(require_user),
        deps: ServiceRegistry = Depends(get_registry),
    ) -> DocumentListResponse:
        result = deps.ingestion.list_documents(owner_id, page=page, limit=limit, search=search, labels=labels or ())
        return DocumentListResponse(
            items=[DocumentResponse.from_record(record) for record in result["items"]],
            total=result["total"],
            page=result["page"],
            limit=result["limit"],
            total_pages=result["total_pages"],
        )

    @app.get("/documents/labels", response_model=List[str])
    def document_labels(
        owner_id: str = Depends(require_user),
        deps: ServiceRegistry = Depends(get_registry),
    ) -> List[str]:
        return deps.ingestion.unique_labels(owner_id)

    @app.get("/documents/{document_id}", response_model=DocumentDetailResponse)
    def get_document(
        document_id: str,
        owner_id: str = Depends(require_user),
        deps: ServiceRegistry = Depends(get_registry),
    ) -> DocumentDetailResponse:
        record, chunks = deps.ingestion.get_document(owner_id, document_id)
        return DocumentDetailResponse(
            **DocumentResponse.from_record(record).model_dump(),
            chunks=[SourceModel.from_chunk(chunk) for chunk in chunks],
        )

    @app.get("/documents/{document_id}/chunks", response_model=List[SourceModel])
    def get_document_chunks(
        document_id: str,
        owner_id: str = Depends(require_user),
        deps: ServiceRegistry = Depends(get_registry),
    ) -> List[SourceModel]:
        return [SourceModel.from_chunk(chunk) for chunk in deps.ingestion.get_chunks(owner_id, document_id)]

    @app.patch("/documents/{document_id}", response_model=DocumentResponse)
    def update_document(
        document_id: str,
        payload: DocumentUpdateRequest,
        owner_id: str = Depends(require_user),
        deps: ServiceRegistry = Depends(get_registry),
    ) -> DocumentResponse:
        record = deps.ingestion.update_document(
            owner_id,
            document_id,
            name=payload.name,
            description=payload.description,
            labels=payload.labels,
            visibility=payload.visibility,
        )
        return DocumentResponse.from_record(record)

    @app.delete("/documents/{document_id}", status_code=status.HTTP_204_NO_CONTENT)
    def delete_document(
        document_id: str,
        owner_id: str = Depends(require_user),
        deps: ServiceRegistry = Depends(get_registry),
    ) -> Response:
        deps.ingestion.delete_document(owner_id, document_id)
        return Response(status_code=status.HTTP_204_NO_CONTENT)

    # chat

    @app.post("/chat", response_model=ChatResponseModel)
    def chat(payload: ChatRequestModel, deps: ServiceRegistry = Depends(get_registry)) -> ChatResponseModel:
        request = ChatRequest(
            question=payload.question,
            document_filter=DocumentFilter.parse(payload.document_filter),
            llm_config=payload.llm_config.to_domain(),
            history=[item.to_domain() for item in payload.history],
            system_prompt=payload.system_prompt,
            temperature=payload.temperature,
            max_tokens=payload.max_tokens,
        )
        result = deps.engine.chat(request)
        sources = [SourceModel.from_chunk(chunk) for chunk in result.sources] if payload.view_source_documents else []
        return ChatResponseModel(response=result.response, sources=sources)

    @app.post("/conversations", response_model=ConversationResponse)
    def start_conversation(
        payload: StartConversationRequest,
        identity: Identity = Depends(resolve_identity),
        deps: ServiceRegistry = Depends(get_registry),
    ) -> ConversationResponse:
        conversation = deps.chat.start_conversation(identity, payload.chatbot.to_domain(), title=payload.title)
        return ConversationResponse.from_conversation(conversation)

    @app.get("/conversations", response_model=ConversationListResponse)
    def list_conversations(
        page: int = Query(default=1, ge=1),
        limit: int = Query(default=20, ge=1, le=100),
        search: str = "",
        identity: Identity = Depends(resolve_identity),
        deps: ServiceRegistry = Depends(get_registry),
    ) -> ConversationListResponse:
        items, total = deps.chat.list_conversations(identity, page=page, limit=limit, search=search)
        return ConversationListResponse(
            items=[ConversationResponse.from_conversation(item) for item in items],
            total=total,
            page=page,
            limit=limit,
        )

    @app.post("/conversations/{conversation_id}/view", response_model=ConversationResponse)
    def view_conversation(
        conversation_id: str,
        payload: ConversationRequest,
        identity: Identity = Depends(resolve_identity),
        deps: ServiceRegistry = Depends(get_registry),
    ) -> ConversationResponse:
        view = deps.chat.get_conversation(identity, conversation_id, payload.chatbot.to_domain())
        return ConversationResponse.from_conversation(
            view.conversation,
            {position: list(chunks) for position, chunks in view.sources.items()},
        )

    @app.post("/conversations/{conversation_id}/messages", response_model=TurnResponse)
    def send_message(
        conversation_id: str,
        payload: SendMessageRequest,
        identity: Identity = Depends(resolve_identity),
        deps: ServiceRegistry = Depends(get_registry),
    ) -> TurnResponse:
        turn = deps.chat.send_message(identity, conversation_id, payload.chatbot.to_domain(), payload.message)
        return TurnResponse(
            conversation_id=turn.conversation_id,
            response=turn.assistant_message.content,
            sources=[SourceModel.from_chunk(chunk) for chunk in turn.sources],
            user_message=MessageModel.from_message(turn.user_message),
            assistant_message=MessageModel.from_message(turn.assistant_message, list(turn.sources)),
        )

    @app.patch("/conversations/{conversation_id}", response_model=ConversationResponse)
    def rename_conversation(
        conversation_id: str,
        payload: RenameConversationRequest,
        identity: Identity = Depends(resolve_identity),
        deps: ServiceRegistry = Depends(get_registry),
    ) -> ConversationResponse:
        conversation = deps.chat.rename_conversation(identity, conversation_id, payload.title)
        return ConversationResponse.from_conversation(conversation)

    @app.delete("/conversations/{conversation_id}", status_code=status.HTTP_204_NO_CONTENT)
    def delete_conversation(
        conversation_id: str,
        identity: Identity = Depends(resolve_identity),
        deps: ServiceRegistry = Depends(get_registry),
    ) -> Response:
        deps.chat.delete_conversation(identity, conversation_id)
        return Response(status_code=status.HTTP_204_NO_CONTENT)

    # operations

    @app.get("/metrics")
    async def metrics() -> Response:
        payload = generate_latest()
        return Response(content=payload, media_type=CONTENT_TYPE_LATEST)

    @app.get("/healthz")
    async def healthcheck() -> dict[str, str]:
        from kbchat import __version__

        return {"status": "ok", "version": __version__, "environment": settings.environment}

    @app.head("/healthz")
    async def healthcheck_head() -> Response:
        return Response(status_code=status.HTTP_200_OK)

    @app.get("/livez")
    async def liveness() -> dict[str, str]:
        return {"status": "alive"}

    @app.get("/healthz/ready")
    def readiness(deps: ServiceRegistry = Depends(get_registry)) -> Response:
        try:
            indexed = deps.index.count()
        except Exception as exc:
            logger.error("readiness.vector_store_unavailable", error=str(exc))
            return JSONResponse(
                status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
                content={"status": "unavailable", "detail": "Vector store is unavailable"},
            )
        return JSONResponse(content={"status": "ready", "indexed_chunks": indexed})

    return app
