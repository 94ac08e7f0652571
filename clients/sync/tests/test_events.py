import pytest

from convsync.events import (
    ChatCleared,
    GroupCreated,
    MessageReceived,
    MessagesDeleted,
    ReadReceipt,
    RemovedFromGroup,
    StatusUpdate,
    TypingChanged,
    UnknownEvent,
    join_conversations_frame,
    mark_read_frame,
    parse_event,
)
from convsync.models import DeletionScope


def _frame(name, body):
    return {"v": 1, "t": name, "body": body}


def test_new_message():
    event = parse_event(
        _frame("new_message", {"conversation_id": "c1", "message": {"id": "m1", "sender_id": "bob", "content": "hi"}})
    )

    assert isinstance(event, MessageReceived)
    assert event.message.conversation_id == "c1"
    assert event.message.content == "hi"


def test_typing_and_stop_typing():
    start = parse_event(_frame("typing", {"conversation_id": "c1", "user_id": "bob"}))
    stop = parse_event(_frame("stop_typing", {"conversation_id": "c1", "user_id": "bob"}))

    assert start == TypingChanged(conversation_id="c1", user_id="bob", active=True)
    assert stop == TypingChanged(conversation_id="c1", user_id="bob", active=False)


def test_read_receipt():
    event = parse_event(
        _frame("message_read", {"conversation_id": "c1", "message_ids": ["m1", "m2"], "reader_id": "bob", "read_at": 7})
    )

    assert event == ReadReceipt(conversation_id="c1", message_ids=("m1", "m2"), reader_id="bob", read_at_ms=7)


@pytest.mark.parametrize(
    "name,scope",
    [
        ("messages_deleted", None),
        ("messages_deleted_for_me", DeletionScope.FOR_ME),
        ("messages_deleted_for_everyone", DeletionScope.FOR_EVERYONE),
        ("messages_hard_deleted", DeletionScope.HARD),
        ("messages_soft_deleted", DeletionScope.SOFT),
        ("messages_admin_deleted", DeletionScope.ADMIN),
        ("messages_auto_deleted", DeletionScope.AUTO_EXPIRY),
        ("unsent_messages_deleted", DeletionScope.UNSENT),
    ],
)
def test_deletion_variants_map_to_scopes(name, scope):
    event = parse_event(_frame(name, {"conversation_id": "c1", "message_ids": ["m1"], "deleted_by": "bob"}))

    assert isinstance(event, MessagesDeleted)
    assert event.scope == scope
    assert event.message_ids == ("m1",)
    assert event.deleted_by == "bob"


def test_membership_and_status_events():
    created = parse_event(_frame("added_to_group", {"conversation": {"id": "g1", "participants": ["a", "b"]}}))
    removed = parse_event(_frame("removed_from_group", {"conversation_id": "g1", "removed_by": "a"}))
    cleared = parse_event(_frame("chat_cleared_for_me", {"conversation_id": "c1", "cleared_by": "alice"}))
    status = parse_event(_frame("message_status_update", {"conversation_id": "c1", "message_id": "m1", "status": "read"}))

    assert isinstance(created, GroupCreated) and created.conversation.id == "g1"
    assert removed == RemovedFromGroup(conversation_id="g1", removed_by="a")
    assert cleared == ChatCleared(conversation_id="c1", cleared_by="alice")
    assert status == StatusUpdate(conversation_id="c1", message_id="m1", status="read")


def test_unknown_event_is_preserved():
    event = parse_event(_frame("presence.update", {"user_id": "bob"}))
    assert event == UnknownEvent(name="presence.update", body={"user_id": "bob"})


@pytest.mark.parametrize(
    "frame",
    [
        "not a frame",
        {"v": 1, "body": {}},
        {"v": 1, "t": "message_read", "body": {"conversation_id": "c1", "message_ids": "m1", "reader_id": "b"}},
        {"v": 1, "t": "chat_cleared_for_me", "body": {"conversation_id": "c1"}},
        {"v": 1, "t": "new_message", "body": []},
    ],
)
def test_malformed_frames_raise(frame):
    with pytest.raises(ValueError):
        parse_event(frame)


def test_outbound_frames():
    assert join_conversations_frame(["c1", "c2"]) == {
        "v": 1,
        "t": "join_conversations",
        "body": {"conversation_ids": ["c1", "c2"]},
    }
    assert mark_read_frame("c1", ("m1",))["body"] == {"conversation_id": "c1", "message_ids": ["m1"]}
