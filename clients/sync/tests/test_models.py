import unittest

from convsync.models import (
    GroupInfo,
    MessageStatus,
    conversation_from_dict,
    message_from_dict,
)


class MessageParsingTests(unittest.TestCase):
    def test_message_from_dict_reads_wire_keys(self) -> None:
        message = message_from_dict(
            {
                "id": "m1",
                "conversation_id": "c1",
                "sender_id": "bob",
                "content": "hello",
                "media": {"kind": "image", "url": "https://cdn/x.png", "name": "x.png", "size": 12},
                "created_at": 1000,
                "status": "delivered",
                "read_by": {"carol": 1500},
                "expires_at": 9000,
                "client_id": "temp_1_1",
            }
        )

        self.assertEqual(message.id, "m1")
        self.assertEqual(message.media.kind, "image")
        self.assertEqual(message.media.size, 12)
        self.assertEqual(message.status, MessageStatus.DELIVERED)
        self.assertEqual(message.read_by, {"carol": 1500})
        self.assertEqual(message.expires_at_ms, 9000)
        self.assertFalse(message.is_provisional)
        self.assertEqual(message.to_dict()["created_at"], 1000)

    def test_conversation_id_falls_back_to_argument(self) -> None:
        message = message_from_dict({"id": "m1", "sender_id": "bob", "content": "x"}, conversation_id="c9")
        self.assertEqual(message.conversation_id, "c9")

    def test_rejects_unknown_status_and_missing_ids(self) -> None:
        with self.assertRaises(ValueError):
            message_from_dict({"id": "m1", "sender_id": "bob", "conversation_id": "c1", "status": "lost"})
        with self.assertRaises(ValueError):
            message_from_dict({"sender_id": "bob", "conversation_id": "c1"})
        with self.assertRaises(ValueError):
            message_from_dict("m1")


class ConversationParsingTests(unittest.TestCase):
    def test_group_conversation(self) -> None:
        conversation = conversation_from_dict(
            {
                "id": "g1",
                "participants": ["alice", "bob", "carol"],
                "group": {"name": "team", "description": "", "admin_id": "alice", "admins": ["bob"]},
                "last_message": {"id": "m3", "sender_id": "bob", "content": "yo", "created_at": 5},
                "last_activity": 5,
                "unread": 2,
            }
        )

        self.assertTrue(conversation.is_group)
        self.assertTrue(conversation.group.is_admin("alice"))
        self.assertTrue(conversation.group.is_admin("bob"))
        self.assertFalse(conversation.group.is_admin("carol"))
        self.assertEqual(conversation.last_message.conversation_id, "g1")
        self.assertEqual(conversation.unread, 2)

    def test_direct_conversation_defaults(self) -> None:
        conversation = conversation_from_dict({"id": "c1", "participants": ["alice", "bob"]})
        self.assertFalse(conversation.is_group)
        self.assertIsNone(conversation.last_message)
        self.assertEqual(conversation.unread, 0)

    def test_group_info_admin_check(self) -> None:
        group = GroupInfo(name="g", admin_id="alice")
        self.assertTrue(group.is_admin("alice"))
        self.assertFalse(group.is_admin("bob"))


if __name__ == "__main__":
    unittest.main()
