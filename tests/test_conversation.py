import pytest

from omni_agent.conversation import DEFAULT_TITLE, Conversation, ConversationStore
from omni_agent.models import Role


def test_duplicate_consecutive_messages_are_coalesced():
    conversation = Conversation()
    assert conversation.append(Role.USER, "hi") is True
    assert conversation.append(Role.USER, "hi") is False
    assert conversation.append(Role.AGENT, "hi") is True
    assert conversation.append(Role.USER, "hi") is True
    assert [m.role for m in conversation.messages] == [Role.USER, Role.AGENT, Role.USER]


def test_messages_view_is_a_copy():
    conversation = Conversation()
    conversation.append("user", "hello")
    conversation.messages.clear()
    assert len(conversation) == 1


def test_title_is_assigned_only_once():
    conversation = Conversation()
    assert conversation.title == DEFAULT_TITLE
    assert conversation.assign_title(None) is False
    assert conversation.assign_title("Shoe shopping") is True
    assert conversation.assign_title("Something else") is False
    assert conversation.title == "Shoe shopping"

    conversation.rename("Renamed")
    assert conversation.title == "Renamed"


def test_round_trip_through_dict():
    conversation = Conversation(title="Trip")
    conversation.append(Role.USER, "book a flight")
    conversation.append(Role.AGENT, "Thought: search first")

    restored = Conversation.from_dict(conversation.to_dict())
    assert restored.id == conversation.id
    assert restored.title == "Trip"
    assert restored.messages == conversation.messages


def test_store_creates_active_conversation_lazily():
    store = ConversationStore()
    first = store.active
    assert store.active is first

    second = store.new()
    assert store.active is second
    assert store.activate(first.id) is first
    assert {c.id for c in store.list()} == {first.id, second.id}

    with pytest.raises(KeyError):
        store.activate("missing")
