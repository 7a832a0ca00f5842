"""Tests for agent.conversations -- hidden sessions and result post-back."""

import pytest

from agent.conversations import PREVIEW_LENGTH, ConversationStore


@pytest.fixture()
def store(tmp_path):
    s = ConversationStore(tmp_path / "conversations.db")
    yield s
    s.close()


def test_hidden_conversations_are_not_listed(store):
    store.create_conversation("visible", title="Chat")
    store.create_conversation("session", title="[Scheduled] x", hidden=True)
    assert [c.id for c in store.list_conversations()] == ["visible"]
    assert len(store.list_conversations(include_hidden=True)) == 2


def test_delete_removes_messages(store):
    store.create_conversation("session", hidden=True)
    store.add_message("session", role="user", content="hi")
    store.add_message("session", role="assistant", content=None,
                      tool_calls=[{"id": "c1", "type": "function"}])
    assert len(store.messages("session")) == 2
    assert store.messages("session")[1].tool_calls == [{"id": "c1", "type": "function"}]

    assert store.delete_conversation("session")
    assert store.messages("session") == []
    assert not store.delete_conversation("session")


def test_post_result_updates_summary_fields(store):
    created = store.create_conversation("chat", title="Chat")
    summary = "s" * (PREVIEW_LENGTH + 50)

    assert store.post_result("chat", "[Scheduled Task] do it\n\n" + summary, summary)

    conversation = store.get_conversation("chat")
    assert conversation.message_count == 1
    assert conversation.last_message_preview == "s" * PREVIEW_LENGTH
    assert conversation.updated_at >= created.updated_at
    [message] = store.messages("chat")
    assert message.role == "assistant"
    assert message.content.startswith("[Scheduled Task] do it")


def test_post_result_to_missing_conversation(store):
    assert store.post_result("gone", "content", "preview") is False
    assert store.messages("gone") == []
