from __future__ import annotations

import threading
import time

import pytest
from prometheus_client import REGISTRY

from kbchat.errors import ChatTurnError, ConfigurationError, ForbiddenError, ProviderError, ValidationError
from kbchat.models import ChatBot, ChatbotVisibility, Identity
from kbchat.retrieval.service import RetrievalConfig, ScopedRetriever
from kbchat.services.chat import ChatService, ConversationLocks
from kbchat.services.rag import RAGEngine
from kbchat.storage.usage import UsageEventRepository

CHUNKS = ["The sky is blue", "Invoices are due within thirty days", "Cats sleep a lot"]
ALICE = Identity.user("alice")


def _turn_failures(stage: str) -> float:
    return REGISTRY.get_sample_value("kbchat_chat_turn_failures_total", {"stage": stage}) or 0.0


@pytest.fixture()
def service(database, index, embedder, chat_models, usage_meter) -> ChatService:
    index.index_documents(
        CHUNKS,
        [
            {"document_id": "doc-d", "user_id": "owner", "chunk_id": f"doc-d-{i}", "chunk_index": i}
            for i in range(len(CHUNKS))
        ],
    )
    retriever = ScopedRetriever(embedder, index, RetrievalConfig(top_k=4, min_score=0.3))
    engine = RAGEngine(retriever, embedder, chat_models)
    return ChatService(database, engine, index, usage_meter)


def _chatbot(openai_config, **overrides) -> ChatBot:
    values = dict(
        id="bot-1",
        owner_id="alice",
        document_ids=("doc-d",),
        llm_config=openai_config,
        name="Billing bot",
    )
    values.update(overrides)
    return ChatBot(**values)


def test_turn_appends_both_messages_and_returns_sources(service, openai_config):
    chatbot = _chatbot(openai_config)
    conversation = service.start_conversation(ALICE, chatbot)

    turn = service.send_message(ALICE, conversation.id, chatbot, "When are invoices due?")

    assert turn.assistant_message.content == "Invoices are due within thirty days."
    assert [chunk.chunk_id for chunk in turn.sources] == ["doc-d-1"]
    assert turn.assistant_message.chunk_ids == ("doc-d-1",)
    view = service.get_conversation(ALICE, conversation.id, chatbot)
    assert [message.position for message in view.conversation.messages] == [0, 1]
    assert [chunk.chunk_id for chunk in view.sources[1]] == ["doc-d-1"]
    assert view.conversation.title == "Billing bot"


def test_history_from_earlier_turns_is_sent(service, chat_models, openai_config):
    chatbot = _chatbot(openai_config)
    conversation = service.start_conversation(ALICE, chatbot)
    service.send_message(ALICE, conversation.id, chatbot, "When are invoices due?")
    service.send_message(ALICE, conversation.id, chatbot, "And for refunds?")

    _, history, _ = chat_models.last.calls[0]
    assert [turn.content for turn in history] == ["When are invoices due?", chat_models.answer]


def test_generation_failure_leaves_conversation_unchanged(service, chat_models, openai_config, database):
    chatbot = _chatbot(openai_config)
    conversation = service.start_conversation(ALICE, chatbot)
    service.send_message(ALICE, conversation.id, chatbot, "When are invoices due?")
    before = service.get_conversation(ALICE, conversation.id, chatbot).conversation.messages
    failures = _turn_failures("generation")

    chat_models.error = ProviderError("upstream exploded with secret details")
    with pytest.raises(ChatTurnError) as excinfo:
        service.send_message(ALICE, conversation.id, chatbot, "Another question")

    assert "secret" not in str(excinfo.value)
    after = service.get_conversation(ALICE, conversation.id, chatbot).conversation.messages
    assert after == before
    assert _turn_failures("generation") == failures + 1


def test_configuration_errors_surface_verbatim(service, openai_config):
    chatbot = _chatbot(openai_config, llm_config=None)
    conversation = service.start_conversation(ALICE, chatbot)

    with pytest.raises(ConfigurationError, match="LLM configuration"):
        service.send_message(ALICE, conversation.id, chatbot, "When are invoices due?")


def test_chatbot_without_documents_is_rejected(service, openai_config):
    chatbot = _chatbot(openai_config, document_ids=())
    conversation = service.start_conversation(ALICE, chatbot)

    with pytest.raises(ValidationError):
        service.send_message(ALICE, conversation.id, chatbot, "When are invoices due?")


def test_sources_hidden_when_chatbot_disallows_them(service, openai_config):
    chatbot = _chatbot(openai_config, view_source_documents=False)
    conversation = service.start_conversation(ALICE, chatbot)

    turn = service.send_message(ALICE, conversation.id, chatbot, "When are invoices due?")

    assert turn.sources == []
    assert turn.assistant_message.chunk_ids == ("doc-d-1",)
    assert service.get_conversation(ALICE, conversation.id, chatbot).sources == {}


def test_public_session_requires_public_chatbot(service, openai_config):
    with pytest.raises(ForbiddenError):
        service.start_conversation(Identity.session("anon-1"), _chatbot(openai_config))


def test_public_usage_is_attributed_to_chatbot_owner(service, openai_config, usage_meter, database):
    chatbot = _chatbot(openai_config, owner_id="owner", visibility=ChatbotVisibility.PUBLIC)
    visitor = Identity.session("anon-1")
    conversation = service.start_conversation(visitor, chatbot)

    service.send_message(visitor, conversation.id, chatbot, "When are invoices due?")
    usage_meter.flush()

    repository = UsageEventRepository(database)
    totals = repository.totals(user_id="owner")
    assert set(totals) == {"LLM_INPUT", "LLM_OUTPUT", "QUERY_DOCUMENT"}
    assert repository.totals(user_id="anon-1") == {}


def test_other_users_cannot_use_a_private_chatbot(service, openai_config):
    with pytest.raises(ForbiddenError):
        service.start_conversation(Identity.user("mallory"), _chatbot(openai_config))


def test_shared_chatbot_admits_listed_users(service, openai_config):
    chatbot = _chatbot(openai_config, visibility=ChatbotVisibility.SHARED, shared_with=("bob",))
    conversation = service.start_conversation(Identity.user("bob"), chatbot)
    assert conversation.identity == Identity.user("bob")


def test_empty_message_is_rejected(service, openai_config):
    chatbot = _chatbot(openai_config)
    conversation = service.start_conversation(ALICE, chatbot)
    with pytest.raises(ValidationError):
        service.send_message(ALICE, conversation.id, chatbot, "   ")


def test_conversation_locks_serialize_and_clean_up():
    locks = ConversationLocks()
    order = []
    entered = threading.Event()
    release = threading.Event()

    def first() -> None:
        with locks.hold("conv-1"):
            entered.set()
            release.wait(2)
            order.append("first")

    worker = threading.Thread(target=first)
    worker.start()
    entered.wait(2)
    with locks.hold("conv-2"):
        order.append("other")
    release.set()
    with locks.hold("conv-1"):
        order.append("second")
    worker.join(2)

    assert order == ["other", "first", "second"]
    assert len(locks) == 0


def test_sources_come_only_from_the_chatbot_documents(service, index, openai_config):
    index.index_documents(
        ["Cats sleep beside the secret salary sheet"],
        [{"document_id": "doc-other", "user_id": "victim", "chunk_id": "doc-d-1", "chunk_index": 0}],
    )
    chatbot = _chatbot(openai_config)
    conversation = service.start_conversation(ALICE, chatbot)
    service.send_message(ALICE, conversation.id, chatbot, "When are invoices due?")

    view = service.get_conversation(ALICE, conversation.id, chatbot)

    cited = view.sources[1]
    assert [(chunk.document_id, chunk.content) for chunk in cited] == [
        ("doc-d", "Invoices are due within thirty days")
    ]


def _run_in_threads(*calls):
    errors = []

    def run(call) -> None:
        try:
            call()
        except Exception as exc:  # collected for the assertion below
            errors.append(exc)

    threads = [threading.Thread(target=run, args=(call,)) for call in calls]
    for thread in threads:
        thread.start()
    for thread in threads:
        thread.join(10)
    return errors


def test_simultaneous_turns_on_one_conversation_do_not_interleave(service, chat_models, openai_config):
    chatbot = _chatbot(openai_config)
    conversation = service.start_conversation(ALICE, chatbot)
    chat_models.on_generate = lambda: time.sleep(0.2)

    errors = _run_in_threads(
        lambda: service.send_message(ALICE, conversation.id, chatbot, "When are invoices due?"),
        lambda: service.send_message(ALICE, conversation.id, chatbot, "Is there a refund policy?"),
    )

    assert errors == []
    messages = service.get_conversation(ALICE, conversation.id, chatbot).conversation.messages
    assert [message.position for message in messages] == [0, 1, 2, 3]
    assert [message.role for message in messages] == ["user", "assistant", "user", "assistant"]
    assert {messages[0].content, messages[2].content} == {"When are invoices due?", "Is there a refund policy?"}
    _, second_history, _ = chat_models.models[1].calls[0]
    assert [turn.content for turn in second_history] == [messages[0].content, messages[1].content]


def test_turns_on_different_conversations_do_not_block_each_other(service, chat_models, openai_config):
    chatbot = _chatbot(openai_config, visibility=ChatbotVisibility.SHARED, shared_with=("bob",))
    bob = Identity.user("bob")
    alice_conversation = service.start_conversation(ALICE, chatbot)
    bob_conversation = service.start_conversation(bob, chatbot)
    both_generating = threading.Barrier(2, timeout=5)
    chat_models.on_generate = both_generating.wait

    errors = _run_in_threads(
        lambda: service.send_message(ALICE, alice_conversation.id, chatbot, "When are invoices due?"),
        lambda: service.send_message(bob, bob_conversation.id, chatbot, "When are invoices due?"),
    )

    assert errors == []
    for identity, conversation in ((ALICE, alice_conversation), (bob, bob_conversation)):
        messages = service.get_conversation(identity, conversation.id, chatbot).conversation.messages
        assert [message.position for message in messages] == [0, 1]
