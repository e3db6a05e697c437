from __future__ import annotations

import pytest

from kbchat.errors import ConversationConflictError, NotFoundError
from kbchat.models import ChunkRef, Identity
from kbchat.storage.conversations import ConversationStore

ALICE = Identity.user("alice")


def _append(store, session, conversation, question="Q", answer="A", sources=()):
    return store.append_turn(
        session,
        conversation.id,
        user_content=question,
        assistant_content=answer,
        sources=sources,
        expected_last_position=conversation.last_position,
    )


def test_start_or_get_is_idempotent(database):
    store = ConversationStore()
    with database.session() as session:
        first = store.start_or_get(session, ALICE, "bot-1", title="Billing")
    with database.session() as session:
        second = store.start_or_get(session, ALICE, "bot-1", title="Other title")
        items, total = store.list_for_identity(session, ALICE)

    assert first.id == second.id
    assert second.title == "Billing"
    assert total == 1
    assert [item.id for item in items] == [first.id]


def test_public_sessions_are_separate_conversations(database):
    store = ConversationStore()
    with database.session() as session:
        user_conversation = store.start_or_get(session, ALICE, "bot-1")
        public = store.start_or_get(session, Identity.session("alice"), "bot-1", chatbot_owner_id="owner")

    assert user_conversation.id != public.id
    assert public.chatbot_owner_id == "owner"
    assert public.identity.is_public


def test_append_turn_writes_both_messages_with_increasing_positions(database):
    store = ConversationStore()
    with database.session() as session:
        conversation = store.start_or_get(session, ALICE, "bot-1")
    with database.session() as session:
        user_message, assistant_message = _append(
            store,
            session,
            conversation,
            sources=[ChunkRef("doc-a", "c-1"), ChunkRef("doc-b", "c-1")],
        )
    with database.session() as session:
        conversation = store.get(session, conversation.id)
        _append(store, session, conversation, question="Q2", answer="A2")
    with database.session() as session:
        stored = store.get(session, conversation.id)

    assert (user_message.position, assistant_message.position) == (0, 1)
    assert [message.position for message in stored.messages] == [0, 1, 2, 3]
    assert [message.role for message in stored.messages] == ["user", "assistant", "user", "assistant"]
    assert stored.messages[1].sources == (ChunkRef("doc-a", "c-1"), ChunkRef("doc-b", "c-1"))
    assert stored.messages[0].sources == ()
    assert stored.last_message_at >= stored.created_at


def test_append_with_stale_snapshot_conflicts(database):
    store = ConversationStore()
    with database.session() as session:
        snapshot = store.start_or_get(session, ALICE, "bot-1")
    with database.session() as session:
        _append(store, session, snapshot)

    with pytest.raises(ConversationConflictError):
        with database.session() as session:
            _append(store, session, snapshot, question="late")

    with database.session() as session:
        stored = store.get(session, snapshot.id)
    assert [message.content for message in stored.messages] == ["Q", "A"]


def test_rolled_back_turn_leaves_no_messages(database):
    store = ConversationStore()
    with database.session() as session:
        conversation = store.start_or_get(session, ALICE, "bot-1")

    session = database.session()
    _append(store, session, conversation)
    session.rollback()
    session.commit()

    assert session.released
    with database.session() as session:
        assert store.get(session, conversation.id).messages == []


def test_session_cannot_be_reused_after_release(database):
    session = database.session()
    session.commit()
    with pytest.raises(RuntimeError):
        session.execute("SELECT 1")


def test_rename_list_and_delete_are_owner_scoped(database):
    store = ConversationStore()
    with database.session() as session:
        conversation = store.start_or_get(session, ALICE, "bot-1", title="Billing")
        store.start_or_get(session, ALICE, "bot-2", title="Weather")

    with database.session() as session:
        renamed = store.rename(session, ALICE, conversation.id, "Invoices")
    assert renamed.title == "Invoices"

    with database.session() as session:
        items, total = store.list_for_identity(session, ALICE, search="Invo")
    assert total == 1
    assert items[0].id == conversation.id

    with pytest.raises(NotFoundError):
        with database.session() as session:
            store.delete(session, Identity.user("mallory"), conversation.id)

    with database.session() as session:
        _append(store, session, conversation)
    with database.session() as session:
        store.delete(session, ALICE, conversation.id)
    with database.session() as session:
        assert store.get(session, conversation.id) is None
        remaining = session.fetchone("SELECT COUNT(*) AS n FROM messages")["n"]
    assert remaining == 0
