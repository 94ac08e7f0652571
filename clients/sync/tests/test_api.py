import unittest

from aiohttp.test_utils import TestServer
from helpers.fake_server import FakeServerState, create_fake_app

from convsync.api import ApiError, ConversationApi, TransportError
from convsync.models import DeletionScope, MediaRef


class ConversationApiTests(unittest.IsolatedAsyncioTestCase):
    async def asyncSetUp(self) -> None:
        self.state = FakeServerState()
        self.state.add_conversation(
            {
                "id": "g1",
                "participants": ["alice", "bob"],
                "group": {"name": "team", "description": "", "admin_id": "alice", "admins": []},
                "last_activity": 5,
                "unread": 1,
            }
        )
        self.server = TestServer(create_fake_app(self.state))
        await self.server.start_server()
        self.api = ConversationApi(f"http://{self.server.host}:{self.server.port}", token="tok-1")

    async def asyncTearDown(self) -> None:
        await self.api.close()
        await self.server.close()

    async def test_list_conversations_sends_bearer_token(self) -> None:
        conversations = await self.api.list_conversations()

        self.assertEqual([conv.id for conv in conversations], ["g1"])
        self.assertEqual(conversations[0].group.admin_id, "alice")
        self.assertEqual(self.state.auth_headers, ["Bearer tok-1"])

    async def test_send_and_fetch_messages(self) -> None:
        sent = await self.api.send_message(
            "g1", "hello", media=MediaRef(kind="file", url="https://cdn/a.pdf", name="a.pdf"), client_id="temp_1_1"
        )
        history = await self.api.fetch_messages("g1", limit=10)

        self.assertEqual(sent.client_id, "temp_1_1")
        self.assertEqual(sent.media.name, "a.pdf")
        self.assertEqual([m.id for m in history], [sent.id])
        method, path, body = self.state.requests[0]
        self.assertEqual((method, path), ("POST", "/conversations/g1/messages"))
        self.assertEqual(body["client_id"], "temp_1_1")

    async def test_direct_and_group_creation(self) -> None:
        direct = await self.api.get_or_create_direct("bob")
        again = await self.api.get_or_create_direct("bob")
        group = await self.api.create_group(["bob", "carol"], "club", "books")

        self.assertEqual(direct.id, again.id)
        self.assertEqual(group.group.description, "books")
        self.assertEqual(group.participants, ["alice", "bob", "carol"])

    async def test_membership_endpoints(self) -> None:
        added = await self.api.add_members("g1", ["carol"])
        promoted = await self.api.promote_admin("g1", "carol")
        demoted = await self.api.demote_admin("g1", "carol")
        removed = await self.api.remove_member("g1", "carol")
        left = await self.api.remove_member("g1", "alice")

        self.assertIn("carol", added.participants)
        self.assertEqual(promoted.group.admins, {"carol"})
        self.assertEqual(demoted.group.admins, set())
        self.assertNotIn("carol", removed.participants)
        self.assertIsNone(left)

    async def test_delete_paths_per_scope(self) -> None:
        for scope in (DeletionScope.FOR_ME, DeletionScope.FOR_EVERYONE, DeletionScope.HARD, DeletionScope.ADMIN):
            self.assertEqual(await self.api.delete_messages(scope, "g1", ["m1"]), ["m1"])

        paths = [path for _, path, _ in self.state.requests]
        self.assertEqual(
            paths,
            [
                "/messages/delete-for-me",
                "/messages/delete-for-everyone",
                "/messages/hard-delete",
                "/messages/admin-delete",
            ],
        )
        with self.assertRaises(ValueError):
            await self.api.delete_messages(DeletionScope.AUTO_EXPIRY, "g1", ["m1"])

    async def test_auto_delete_media_and_conversation_endpoints(self) -> None:
        expires_at = await self.api.set_auto_delete("g1", ["m1"], "24h")
        media = await self.api.delete_media("g1", ["m1"])
        await self.api.clear_chat("g1")
        await self.api.delete_conversation("g1")

        self.assertEqual(expires_at, self.state.now_ms + 3_600_000)
        self.assertEqual(media, ["m1"])
        self.assertEqual(
            [(method, path) for method, path, _ in self.state.requests[2:]],
            [("DELETE", "/messages/conversation/g1/clear"), ("DELETE", "/messages/conversation/g1")],
        )
        self.assertNotIn("g1", self.state.conversations)

    async def test_error_body_becomes_api_error(self) -> None:
        self.state.fail("POST", "/messages/delete-for-everyone", 410, code="window_expired", message="too late")

        with self.assertRaises(ApiError) as ctx:
            await self.api.delete_messages(DeletionScope.FOR_EVERYONE, "g1", ["m1"])

        self.assertEqual(ctx.exception.status, 410)
        self.assertEqual(ctx.exception.code, "window_expired")
        self.assertEqual(ctx.exception.message, "too late")
        self.assertTrue(ctx.exception.is_rejection)

    async def test_server_error_is_not_a_rejection(self) -> None:
        self.state.fail("GET", "/conversations", 503, code="unavailable")

        with self.assertRaises(ApiError) as ctx:
            await self.api.list_conversations()
        self.assertFalse(ctx.exception.is_rejection)

    async def test_unreachable_server_raises_transport_error(self) -> None:
        port = self.server.port
        await self.server.close()
        api = ConversationApi(f"http://127.0.0.1:{port}", timeout_s=2)
        try:
            with self.assertRaises(TransportError):
                await api.list_conversations()
        finally:
            await api.close()


if __name__ == "__main__":
    unittest.main()
