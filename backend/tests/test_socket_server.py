import asyncio
import unittest
from unittest.mock import AsyncMock, patch

from habitchat.core.security import create_access_token
from habitchat.realtime import socket_server as ws
from habitchat.services.conversation_service import room_name
from habitchat.services.friend_service import friend_service
from habitchat.services.presence_service import InMemoryPresenceRegistry
from tests.db_helpers import dispose_session_factory, make_session_factory, make_user


class SocketServerFlowTests(unittest.IsolatedAsyncioTestCase):
    async def asyncSetUp(self) -> None:
        self.factory = make_session_factory()
        self.db = self.factory()
        self.alice = make_user(self.db, "alice", uid="10000000001")
        self.bob = make_user(self.db, "bob", uid="10000000002")
        self.carol = make_user(self.db, "carol", uid="10000000003")

        self.emitted: list[tuple[str, object, str | None, str | None]] = []
        self.rooms: dict[str, set[str]] = {}
        self.sessions: dict[str, dict] = {}
        self.presence = InMemoryPresenceRegistry()
        self.patches = []

        async def fake_emit(event, payload=None, room=None, skip_sid=None, **_kwargs):
            self.emitted.append((event, payload, room, skip_sid))

        async def fake_get_session(sid):
            return self.sessions[sid]

        async def fake_save_session(sid, session):
            self.sessions[sid] = session

        async def fake_enter_room(sid, room):
            self.rooms.setdefault(room, set()).add(sid)

        async def fake_leave_room(sid, room):
            self.rooms.get(room, set()).discard(sid)

        self.patches.append(patch.object(ws.sio, "emit", new=fake_emit))
        self.patches.append(patch.object(ws.sio, "get_session", new=fake_get_session))
        self.patches.append(patch.object(ws.sio, "save_session", new=fake_save_session))
        self.patches.append(patch.object(ws.sio, "enter_room", new=fake_enter_room))
        self.patches.append(patch.object(ws.sio, "leave_room", new=fake_leave_room))
        self.patches.append(patch.object(ws, "SessionLocal", new=self.factory))
        self.patches.append(patch.object(ws, "presence_registry", new=self.presence))
        self.patches.append(patch.object(ws, "_is_socket_event_allowed", return_value=True))
        self.patches.append(patch.object(ws, "_is_socket_connect_allowed", return_value=True))
        for patcher in self.patches:
            patcher.start()

    async def asyncTearDown(self) -> None:
        for patcher in reversed(self.patches):
            patcher.stop()
        ws._sid_to_identity.clear()
        self.db.close()
        dispose_session_factory(self.factory)

    def _events(self, name: str) -> list[tuple[str, object, str | None, str | None]]:
        return [entry for entry in self.emitted if entry[0] == name]

    def _befriend(self) -> str:
        request = friend_service.send_request(self.db, self.alice, self.bob.uid, "hi")
        friendship = friend_service.respond_to_request(self.db, request.id, self.bob, "accept")
        return friendship.conversation.conversation_id

    async def _connect(self, sid: str, user) -> bool:
        token = create_access_token(user.id, username=user.username)
        return await ws.connect(sid, {"REMOTE_ADDR": "127.0.0.1"}, {"token": f"Bearer {token}"})

    async def test_accepted_friends_exchange_messages_through_conversation_room(self) -> None:
        conversation_id = self._befriend()

        self.assertTrue(await self._connect("sid-bob", self.bob))
        self.assertTrue(await self._connect("sid-alice", self.alice))
        self.assertIn("sid-bob", self.rooms[room_name(conversation_id)])
        self.assertIn("sid-bob", self.rooms[ws.user_room(self.bob.id)])

        ack = await ws.send_message(
            "sid-alice",
            {"conversationId": conversation_id, "content": "hello", "messageType": "text"},
        )
        self.assertTrue(ack["ok"])

        new_messages = self._events("new_message")
        self.assertEqual(len(new_messages), 1)
        _, payload, room, _ = new_messages[0]
        self.assertEqual(room, room_name(conversation_id))
        self.assertEqual(payload["content"], "hello")
        self.assertEqual(payload["sender_id"], self.alice.id)
        self.assertEqual(payload["conversation_id"], conversation_id)
        self.assertIn("sid-bob", self.rooms[room])

        status_updates = self._events("message_status_update")
        self.assertEqual(len(status_updates), 1)
        self.assertEqual(status_updates[0][1]["status"], "delivered")
        self.assertEqual(status_updates[0][1]["message_ids"], [payload["message_id"]])

    async def test_invalid_token_is_refused_with_auth_error(self) -> None:
        with self.assertRaises(ws.SocketConnectionRefused):
            await ws.connect("sid-x", {}, {"token": "Bearer not-a-token"})
        self.assertEqual(len(self._events("auth_error")), 1)
        self.assertNotIn("sid-x", ws._sid_to_identity)

    async def test_join_conversation_requires_participant(self) -> None:
        conversation_id = self._befriend()
        await self._connect("sid-carol", self.carol)

        ack = await ws.join_conversation("sid-carol", {"conversationId": conversation_id})
        self.assertFalse(ack["ok"])
        self.assertEqual(len(self._events("error")), 1)
        self.assertNotIn("sid-carol", self.rooms.get(room_name(conversation_id), set()))

        await self._connect("sid-bob", self.bob)
        ack = await ws.join_conversation("sid-bob", conversation_id)
        self.assertTrue(ack["ok"])

    async def test_typing_is_relayed_to_others_in_the_room(self) -> None:
        conversation_id = self._befriend()
        await self._connect("sid-alice", self.alice)

        ack = await ws.typing("sid-alice", {"conversationId": conversation_id, "isTyping": True})
        self.assertTrue(ack["ok"])
        event, payload, room, skip_sid = self._events("user_typing")[0]
        self.assertEqual(room, room_name(conversation_id))
        self.assertEqual(skip_sid, "sid-alice")
        self.assertTrue(payload["is_typing"])
        self.assertEqual(payload["user_id"], self.alice.id)

    async def test_blocked_friend_gets_error_instead_of_broadcast(self) -> None:
        conversation_id = self._befriend()
        friend_service.block(self.db, self.alice.id, self.bob.id)
        await self._connect("sid-bob", self.bob)

        ack = await ws.send_message("sid-bob", {"conversationId": conversation_id, "content": "hey"})
        self.assertFalse(ack["ok"])
        self.assertEqual(self._events("new_message"), [])
        self.assertEqual(len(self._events("error")), 1)

    async def test_mark_as_read_broadcasts_read_receipt(self) -> None:
        conversation_id = self._befriend()
        await self._connect("sid-alice", self.alice)
        await self._connect("sid-bob", self.bob)
        await ws.send_message("sid-alice", {"conversationId": conversation_id, "content": "hello"})
        message_id = self._events("new_message")[0][1]["message_id"]

        ack = await ws.mark_as_read("sid-bob", {"conversationId": conversation_id})
        self.assertTrue(ack["ok"])
        self.assertEqual(ack["message_ids"], [message_id])
        receipt = self._events("message_status_update")[-1][1]
        self.assertEqual(receipt["status"], "read")
        self.assertEqual(receipt["user_id"], self.bob.id)

    async def test_disconnect_updates_presence(self) -> None:
        await self._connect("sid-alice-1", self.alice)
        await self._connect("sid-alice-2", self.alice)
        self.assertTrue(self.presence.is_online(self.alice.id))

        await ws.disconnect("sid-alice-1")
        self.assertTrue(self.presence.is_online(self.alice.id))
        await ws.disconnect("sid-alice-2")
        self.assertFalse(self.presence.is_online(self.alice.id))

    async def test_socket_events_refresh_presence(self) -> None:
        conversation_id = self._befriend()
        await self._connect("sid-alice", self.alice)

        with patch.object(self.presence, "touch") as touch:
            await ws.typing("sid-alice", {"conversationId": conversation_id})
            await ws.send_message("sid-alice", {"conversationId": conversation_id, "content": "hi"})
        self.assertEqual(touch.call_count, 2)
        touch.assert_called_with(self.alice.id, "sid-alice")

    async def test_expiring_presence_starts_a_single_heartbeat_task(self) -> None:
        self.presence.expires = True
        with patch.object(ws, "_presence_heartbeat_task", None), patch.object(
            ws.sio, "start_background_task"
        ) as start:
            start.return_value.done.return_value = False
            await self._connect("sid-alice", self.alice)
            await self._connect("sid-bob", self.bob)
        start.assert_called_once_with(ws._presence_heartbeat_loop)

    async def test_memory_presence_needs_no_heartbeat_task(self) -> None:
        with patch.object(ws.sio, "start_background_task") as start:
            await self._connect("sid-alice", self.alice)
        start.assert_not_called()

    async def test_heartbeat_loop_touches_every_live_socket(self) -> None:
        await self._connect("sid-alice", self.alice)
        await self._connect("sid-bob", self.bob)

        sleep = AsyncMock(side_effect=[None, asyncio.CancelledError()])
        with patch.object(ws.sio, "sleep", new=sleep), patch.object(self.presence, "touch") as touch:
            with self.assertRaises(asyncio.CancelledError):
                await ws._presence_heartbeat_loop()
        touched = sorted(call.args for call in touch.call_args_list)
        self.assertEqual(touched, sorted([(self.alice.id, "sid-alice"), (self.bob.id, "sid-bob")]))


if __name__ == "__main__":
    unittest.main()
