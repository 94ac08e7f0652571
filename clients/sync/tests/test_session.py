import asyncio
import unittest

from helpers.fakes import FakeApi, FakeChannel, FakeClock, make_direct, make_group, make_message

from convsync.config import SyncConfig
from convsync.deletion import DeletionRejected
from convsync.membership import MembershipRejected
from convsync.models import DeletionScope, MessageStatus
from convsync.session import SyncSession


def _frame(name, body):
    return {"v": 1, "t": name, "body": body}


def _message_body(message_id, sender, content, conversation_id="c1", created_at=0, **extra):
    body = {
        "id": message_id,
        "conversation_id": conversation_id,
        "sender_id": sender,
        "content": content,
        "created_at": created_at,
    }
    body.update(extra)
    return body


class SyncSessionTests(unittest.IsolatedAsyncioTestCase):
    async def asyncSetUp(self) -> None:
        self.clock = FakeClock()
        self.api = FakeApi(self.clock)
        self.api.conversations = [
            make_direct("c1", "alice", "bob", last_activity_ms=10),
            make_direct("c2", "alice", "carol", last_activity_ms=20),
            make_group("g1", ["alice", "bob", "carol"], admin_id="bob"),
        ]
        self.channel = FakeChannel()
        self.session = SyncSession(
            "alice",
            self.api,
            self.channel,
            config=SyncConfig(typing_debounce_ms=50, expiry_sweep_interval_s=3600),
            now_func=self.clock.now,
        )
        await self.session.start()

    async def asyncTearDown(self) -> None:
        await self.session.stop()

    def _push(self, name, body):
        self.channel.deliver(_frame(name, body))

    async def test_start_loads_and_joins_rooms(self) -> None:
        self.assertEqual([conv.id for conv in self.session.store.list_ordered()], ["c2", "c1", "g1"])
        self.assertEqual(self.channel.intents("join_conversations"), [{"conversation_ids": ["c1", "c2", "g1"]}])
        self.assertTrue(self.session.sweeper.running)

    async def test_concrete_send_scenario(self) -> None:
        await self.session.open_conversation("c1")
        message = await self.session.send_message("c1", "hello")

        self.assertEqual(message.id, "m1")
        self.assertEqual(message.status, MessageStatus.SENT)
        self.assertEqual(self.api.called("send_message")[0][3][:5], "temp_")

        self._push("new_message", {"conversation_id": "c1", "message": _message_body("m1", "alice", "hello", created_at=self.clock.now())})
        self.assertEqual(message.status, MessageStatus.DELIVERED)

        self._push("message_read", {"conversation_id": "c1", "message_ids": ["m1"], "reader_id": "bob", "read_at": 5})
        thread = self.session.tracker.thread("c1")
        self.assertEqual(len(thread), 1)
        self.assertEqual(thread[0].status, MessageStatus.READ)
        self.assertIn("bob", thread[0].read_by)
        self.assertEqual(self.session.render().thread[0]["read_by"], ["bob"])

    async def test_offline_send_then_echo_leaves_one_entry(self) -> None:
        self.api.disconnect("send_message")

        failed = await self.session.send_message("c1", "are you there?")

        self.assertEqual(failed.status, MessageStatus.FAILED)
        self.assertEqual(self.session.notices, ["Message not sent"])

        retried = await self.session.retry("c1", failed.id)
        self._push(
            "new_message",
            {"conversation_id": "c1", "message": _message_body(retried.id, "alice", "are you there?", created_at=self.clock.now())},
        )
        thread = self.session.tracker.thread("c1")
        self.assertEqual(len(thread), 1)
        self.assertEqual(thread[0].status, MessageStatus.DELIVERED)

    async def test_retry_ignores_non_failed(self) -> None:
        message = await self.session.send_message("c1", "fine")
        self.assertIsNone(await self.session.retry("c1", message.id))

    async def test_inbound_open_vs_closed(self) -> None:
        await self.session.open_conversation("c1")
        self._push("new_message", {"conversation_id": "c1", "message": _message_body("r1", "bob", "hey")})
        self._push("new_message", {"conversation_id": "c2", "message": _message_body("r2", "carol", "psst", "c2")})

        self.assertEqual(self.session.store.get("c1").unread, 0)
        self.assertEqual(self.session.store.get("c2").unread, 1)
        self.assertEqual(
            self.channel.intents("mark_messages_read"), [{"conversation_id": "c1", "message_ids": ["r1"]}]
        )

    async def test_open_marks_history_read(self) -> None:
        self.api.history["c2"] = [make_message("r5", "carol", "old", conversation_id="c2", created_at_ms=1)]
        self._push("new_message", {"conversation_id": "c2", "message": _message_body("r6", "carol", "new", "c2", 2)})
        self.assertEqual(self.session.store.get("c2").unread, 1)
        order_before = [conv.id for conv in self.session.store.list_ordered()]

        await self.session.open_conversation("c2")

        self.assertEqual(self.session.store.get("c2").unread, 0)
        self.assertEqual(
            self.channel.intents("mark_messages_read"), [{"conversation_id": "c2", "message_ids": ["r5"]}]
        )
        self.assertEqual([conv.id for conv in self.session.store.list_ordered()], order_before)

    async def test_chat_cleared_by_other_user_is_ignored(self) -> None:
        self._push("new_message", {"conversation_id": "c1", "message": _message_body("r1", "bob", "keep me")})

        with self.assertLogs("convsync.session", level="WARNING"):
            self._push("chat_cleared_for_me", {"conversation_id": "c1", "cleared_by": "bob"})
        self.assertEqual(len(self.session.tracker.thread("c1")), 1)

        self._push("chat_cleared_for_me", {"conversation_id": "c1", "cleared_by": "alice"})
        self.assertEqual(self.session.tracker.thread("c1"), [])
        self.assertIsNone(self.session.store.get("c1").last_message)

    async def test_clear_chat_waits_for_event(self) -> None:
        self._push("new_message", {"conversation_id": "c1", "message": _message_body("r1", "bob", "x")})

        await self.session.clear_chat("c1")

        self.assertEqual(self.api.called("clear_chat"), [("clear_chat", "c1")])
        self.assertEqual(len(self.session.tracker.thread("c1")), 1)

    async def test_delete_for_me_event_from_other_user_is_ignored(self) -> None:
        self._push("new_message", {"conversation_id": "c1", "message": _message_body("r1", "bob", "x")})

        self._push("messages_deleted_for_me", {"conversation_id": "c1", "message_ids": ["r1"], "deleted_by": "bob"})
        self.assertEqual(len(self.session.tracker.thread("c1")), 1)

        self._push("messages_deleted_for_everyone", {"conversation_id": "c1", "message_ids": ["r1"], "deleted_by": "bob"})
        self.assertEqual(self.session.tracker.thread("c1"), [])

    async def test_delete_for_me_event_without_actor_is_ignored(self) -> None:
        self._push("new_message", {"conversation_id": "c1", "message": _message_body("r1", "bob", "x")})

        with self.assertLogs("convsync.deletion", level="WARNING"):
            self._push("messages_deleted_for_me", {"conversation_id": "c1", "message_ids": ["r1"]})
        self.assertEqual([m.id for m in self.session.tracker.thread("c1")], ["r1"])

        self._push("messages_deleted_for_me", {"conversation_id": "c1", "message_ids": ["r1"], "deleted_by": "alice"})
        self.assertEqual(self.session.tracker.thread("c1"), [])

    async def test_message_for_unknown_conversation_loads_it(self) -> None:
        self.api.conversations.append(make_direct("c9", "alice", "dave"))

        self._push("new_message", {"conversation_id": "c9", "message": _message_body("d1", "dave", "hi", conversation_id="c9", created_at=50)})
        self._push("new_message", {"conversation_id": "c9", "message": _message_body("d2", "dave", "there", conversation_id="c9", created_at=60)})
        for _ in range(3):
            await asyncio.sleep(0)

        conversation = self.session.store.get("c9")
        self.assertIsNotNone(conversation)
        self.assertEqual(conversation.last_message.id, "d2")
        self.assertEqual(conversation.unread, 2)
        self.assertEqual(self.session.store.list_ordered()[0].id, "c9")
        self.assertIn({"conversation_ids": ["c9"]}, self.channel.intents("join_conversations"))
        self.assertEqual(len(self.api.called("list_conversations")), 2)

    async def test_delete_rejection_adds_notice(self) -> None:
        message = await self.session.send_message("c1", "oops")
        self.clock.advance(20 * 60)

        with self.assertRaises(DeletionRejected):
            await self.session.delete_messages("c1", [message.id], DeletionScope.FOR_EVERYONE)

        self.assertEqual(self.api.called("delete_messages"), [])
        self.assertTrue(self.session.notices[-1].startswith("Delete failed"))

    async def test_media_deleted_event(self) -> None:
        self._push(
            "new_message",
            {
                "conversation_id": "c1",
                "message": _message_body("r1", "bob", "", media={"kind": "image", "url": "https://cdn/1.png"}),
            },
        )
        self._push("media_deleted", {"conversation_id": "c1", "message_ids": ["r1"]})

        entry = self.session.tracker.find("c1", "r1")
        self.assertIsNone(entry.media)
        self.assertEqual(entry.content, "[Media deleted]")

    async def test_conversation_deleted_closes_open_thread(self) -> None:
        await self.session.open_conversation("c1")

        self._push("conversation_deleted", {"conversation_id": "c1"})

        self.assertNotIn("c1", self.session.store)
        self.assertIsNone(self.session.render().open_conversation_id)
        self.assertEqual(self.channel.intents("leave_conversations"), [{"conversation_ids": ["c1"]}])

    async def test_delete_conversation(self) -> None:
        await self.session.open_conversation("c2")

        closed = await self.session.delete_conversation("c2")

        self.assertTrue(closed)
        self.assertNotIn("c2", self.session.store)

    async def test_group_events(self) -> None:
        self._push(
            "group_created",
            {"conversation": {"id": "g9", "participants": ["dave", "alice"], "group": {"name": "new", "admin_id": "dave"}}},
        )
        self.assertIn("g9", self.session.store)
        self.assertIn({"conversation_ids": ["g9"]}, self.channel.intents("join_conversations"))

        self._push(
            "group_updated",
            {"conversation": {"id": "g9", "participants": ["dave", "alice"], "group": {"name": "renamed", "admin_id": "dave"}}},
        )
        self.assertEqual(self.session.store.get("g9").group.name, "renamed")

        self._push("removed_from_group", {"conversation_id": "g9", "removed_by": "dave"})
        self.assertNotIn("g9", self.session.store)

    async def test_status_update_and_unknown_events(self) -> None:
        message = await self.session.send_message("c1", "hi")

        self._push("message_status_update", {"conversation_id": "c1", "message_id": message.id, "status": "delivered"})
        self.assertEqual(message.status, MessageStatus.DELIVERED)

        with self.assertLogs("convsync.session", level="WARNING"):
            self._push("presence.update", {"user_id": "bob"})

    async def test_remote_typing_only_for_open_conversation(self) -> None:
        self._push("typing", {"conversation_id": "c1", "user_id": "bob"})
        self.assertEqual(self.session.typing_users(), [])

        await self.session.open_conversation("c1")
        self._push("typing", {"conversation_id": "c1", "user_id": "bob"})
        self.assertEqual(self.session.typing_users(), ["bob"])

        self._push("new_message", {"conversation_id": "c1", "message": _message_body("r1", "bob", "done")})
        self.assertEqual(self.session.typing_users(), [])

        self._push("typing", {"conversation_id": "c1", "user_id": "bob"})
        await self.session.open_conversation("c2")
        self.assertEqual(self.session.typing_users(), [])

    async def test_switching_conversation_stops_local_typing(self) -> None:
        await self.session.open_conversation("c1")
        self.session.typing("c1")
        self.session.typing("c1")
        self.assertEqual(self.channel.intents("start_typing"), [{"conversation_id": "c1"}])

        await self.session.open_conversation("c2")

        self.assertEqual(self.channel.intents("stop_typing"), [{"conversation_id": "c1"}])

    async def test_typing_auto_stops_after_debounce(self) -> None:
        self.session.typing("c1")
        await asyncio.sleep(0.1)

        self.assertEqual(self.channel.intents("stop_typing"), [{"conversation_id": "c1"}])

    async def test_membership_rejection_adds_notice(self) -> None:
        with self.assertRaises(MembershipRejected):
            await self.session.add_members("g1", ["dave"])
        self.assertTrue(self.session.notices[-1].startswith("Group change failed"))

    async def test_leave_group_drops_thread(self) -> None:
        await self.session.open_conversation("g1")
        self._push("new_message", {"conversation_id": "g1", "message": _message_body("r1", "bob", "x", "g1")})

        closed = await self.session.leave("g1")

        self.assertTrue(closed)
        self.assertEqual(self.session.tracker.thread("g1"), [])
        self.assertNotIn("g1", self.session.store)

    async def test_start_direct_and_create_group(self) -> None:
        direct = await self.session.start_direct("erin")
        group = await self.session.create_group(["bob"], "book club")

        self.assertEqual(direct.id, "dm-erin")
        self.assertTrue(group.is_group)
        self.assertIn("g-book club", self.session.store)

    async def test_notices_are_bounded(self) -> None:
        for index in range(self.session.config.max_notices + 5):
            self.session.notify(f"n{index}")

        self.assertEqual(len(self.session.notices), self.session.config.max_notices)
        self.assertEqual(self.session.notices[-1], f"n{self.session.config.max_notices + 4}")


if __name__ == "__main__":
    unittest.main()
