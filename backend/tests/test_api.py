import asyncio
import unittest
from unittest.mock import Mock, patch

from fastapi.testclient import TestClient
from sqlalchemy.exc import OperationalError

from habitchat.core.config import get_settings
from habitchat.db.session import get_db
from habitchat.main import api_app
from habitchat.realtime import socket_server as ws
from habitchat.services.conversation_service import conversation_service
from habitchat.services.friend_service import friend_service
from habitchat.services.message_service import message_service
from habitchat.services.presence_service import InMemoryPresenceRegistry
from tests.db_helpers import dispose_session_factory, make_session_factory


class ApiFlowTests(unittest.TestCase):
    def setUp(self) -> None:
        self.factory = make_session_factory()
        self.emitted: list[tuple[str, object, str | None]] = []

        def override_get_db():
            db = self.factory()
            try:
                yield db
            finally:
                db.close()

        async def fake_emit(event, payload=None, room=None, **_kwargs):
            self.emitted.append((event, payload, room))

        api_app.dependency_overrides[get_db] = override_get_db
        self.patches = [
            patch.object(get_settings(), "rate_limit_enabled", False),
            patch.object(ws.sio, "emit", new=fake_emit),
            patch.object(ws, "SessionLocal", new=self.factory),
            patch.object(ws, "presence_registry", new=InMemoryPresenceRegistry()),
        ]
        for patcher in self.patches:
            patcher.start()
        self.client = TestClient(api_app)

    def tearDown(self) -> None:
        for patcher in reversed(self.patches):
            patcher.stop()
        api_app.dependency_overrides.clear()
        dispose_session_factory(self.factory)

    def _register(self, username: str) -> tuple[dict, dict]:
        response = self.client.post(
            "/api/auth/register",
            json={"email": f"{username}@example.com", "username": username, "password": "password123"},
        )
        self.assertEqual(response.status_code, 201, response.text)
        user = response.json()["data"]
        login = self.client.post("/api/auth/login", json={"login": username, "password": "password123"})
        self.assertEqual(login.status_code, 200, login.text)
        token = login.json()["data"]["access_token"]
        return user, {"Authorization": f"Bearer {token}"}

    def _befriend(self) -> tuple[dict, dict, dict, dict, str]:
        alice, alice_headers = self._register("alice")
        bob, bob_headers = self._register("bob")

        sent = self.client.post(
            "/api/friends/request",
            json={"uid": bob["uid"], "message": "hi"},
            headers=alice_headers,
        )
        self.assertEqual(sent.status_code, 201, sent.text)
        pending = self.client.get("/api/friends/requests?type=received", headers=bob_headers).json()["data"]
        self.assertEqual(len(pending), 1)

        accepted = self.client.post(
            f"/api/friends/requests/{pending[0]['id']}",
            json={"action": "accept"},
            headers=bob_headers,
        )
        self.assertEqual(accepted.status_code, 200, accepted.text)
        conversation_id = accepted.json()["data"]["conversation_id"]
        self.assertIsNotNone(conversation_id)
        return alice, alice_headers, bob, bob_headers, conversation_id

    def test_health_uses_envelope(self) -> None:
        body = self.client.get("/api/health").json()
        self.assertTrue(body["success"])
        self.assertEqual(body["data"]["database"], "ok")

    def test_request_id_is_echoed_or_generated(self) -> None:
        echoed = self.client.get("/api/health", headers={"X-Request-ID": "req-42"})
        self.assertEqual(echoed.headers["X-Request-ID"], "req-42")
        self.assertTrue(self.client.get("/api/health").headers["X-Request-ID"])

    def test_health_reports_database_outage_as_503(self) -> None:
        def broken_db():
            db = Mock()
            db.execute.side_effect = OperationalError("SELECT 1", {}, Exception("connection refused"))
            yield db

        api_app.dependency_overrides[get_db] = broken_db
        response = self.client.get("/api/health")
        self.assertEqual(response.status_code, 503)
        self.assertFalse(response.json()["success"])
        self.assertEqual(response.json()["data"]["database"], "unavailable")

    def test_me_requires_token(self) -> None:
        response = self.client.get("/api/auth/me")
        self.assertEqual(response.status_code, 401)
        self.assertEqual(response.json()["success"], False)
        self.assertIsNone(response.json()["data"])

    def test_validation_errors_use_envelope(self) -> None:
        response = self.client.post("/api/auth/register", json={"email": "nope"})
        self.assertEqual(response.status_code, 400)
        self.assertFalse(response.json()["success"])

    def test_friend_request_push_and_listing(self) -> None:
        alice, _, bob, bob_headers, conversation_id = self._befriend()

        request_events = [entry for entry in self.emitted if entry[0] == "friend_request"]
        self.assertEqual(request_events[0][2], f"user_{bob['id']}")
        self.assertEqual(request_events[0][1]["message"], "hi")
        responded = [entry for entry in self.emitted if entry[0] == "friend_request_responded"]
        self.assertEqual(responded[0][2], f"user_{alice['id']}")

        friends = self.client.get("/api/friends", headers=bob_headers).json()["data"]
        self.assertEqual(friends[0]["user_id"], alice["id"])
        self.assertEqual(friends[0]["conversation_id"], conversation_id)

    def test_duplicate_request_between_friends_is_conflict(self) -> None:
        alice, alice_headers, bob, _, _ = self._befriend()
        response = self.client.post("/api/friends/request", json={"uid": bob["uid"]}, headers=alice_headers)
        self.assertEqual(response.status_code, 409)
        self.assertFalse(response.json()["success"])

    def test_rest_message_matches_broadcast_and_history(self) -> None:
        _, alice_headers, _, bob_headers, conversation_id = self._befriend()

        sent = self.client.post(
            "/api/chat/messages",
            json={"conversation_id": conversation_id, "content": "hello", "message_type": "text"},
            headers=alice_headers,
        )
        self.assertEqual(sent.status_code, 201, sent.text)
        data = sent.json()["data"]

        broadcasts = [entry for entry in self.emitted if entry[0] == "new_message"]
        self.assertEqual(len(broadcasts), 1)
        _, payload, room = broadcasts[0]
        self.assertEqual(room, f"conversation_{conversation_id}")
        self.assertEqual(payload, data)

        history = self.client.get(
            f"/api/chat/conversations/{conversation_id}/messages",
            headers=bob_headers,
        ).json()["data"]
        fetched = history["messages"][0]
        for key in ("message_id", "content", "message_type", "sender_id", "sent_at"):
            self.assertEqual(fetched[key], payload[key])

        conversations = self.client.get("/api/chat/conversations", headers=bob_headers).json()["data"]
        self.assertEqual(conversations[0]["unread_count"], 1)
        read = self.client.post(f"/api/chat/conversations/{conversation_id}/read", headers=bob_headers)
        self.assertEqual(read.status_code, 200, read.text)
        conversations = self.client.get("/api/chat/conversations", headers=bob_headers).json()["data"]
        self.assertEqual(conversations[0]["unread_count"], 0)

    def test_empty_message_and_outsider_are_rejected(self) -> None:
        _, alice_headers, _, _, conversation_id = self._befriend()
        _, carol_headers = self._register("carol")

        empty = self.client.post(
            "/api/chat/messages",
            json={"conversation_id": conversation_id, "content": "  "},
            headers=alice_headers,
        )
        self.assertEqual(empty.status_code, 400)
        self.assertFalse(empty.json()["success"])

        outsider = self.client.post(
            "/api/chat/messages",
            json={"conversation_id": conversation_id, "content": "hi"},
            headers=carol_headers,
        )
        self.assertEqual(outsider.status_code, 403)

    def test_blocked_friend_cannot_send(self) -> None:
        alice, alice_headers, bob, bob_headers, conversation_id = self._befriend()
        blocked = self.client.post(f"/api/friends/{bob['id']}/block", headers=alice_headers)
        self.assertEqual(blocked.status_code, 200, blocked.text)
        self.assertEqual(blocked.json()["data"]["status"], "blocked")

        response = self.client.post(
            "/api/chat/messages",
            json={"conversation_id": conversation_id, "content": "hello?"},
            headers=bob_headers,
        )
        self.assertEqual(response.status_code, 403)
        updates = [entry for entry in self.emitted if entry[0] == "friendship_updated"]
        self.assertEqual(updates[0][2], f"user_{bob['id']}")


    def test_removed_friend_cannot_revive_conversation_over_rest(self) -> None:
        alice, alice_headers, bob, bob_headers, conversation_id = self._befriend()
        removed = self.client.delete(f"/api/friends/{bob['id']}", headers=alice_headers)
        self.assertEqual(removed.status_code, 200, removed.text)

        created = self.client.post(
            "/api/chat/conversations",
            json={"type": "private", "participant_ids": [alice["id"]]},
            headers=bob_headers,
        )
        self.assertEqual(created.status_code, 201, created.text)
        self.assertEqual(created.json()["data"]["conversation_id"], conversation_id)
        self.assertFalse(created.json()["data"]["is_active"])

        response = self.client.post(
            "/api/chat/messages",
            json={"conversation_id": conversation_id, "content": "still here?"},
            headers=bob_headers,
        )
        self.assertEqual(response.status_code, 403)

    def test_async_routes_do_database_work_off_the_event_loop(self) -> None:
        on_loop: list[str] = []

        def recording(name, func):
            def wrapper(*args, **kwargs):
                try:
                    asyncio.get_running_loop()
                    on_loop.append(name)
                except RuntimeError:
                    pass
                return func(*args, **kwargs)

            return wrapper

        targets = [
            (friend_service, "serialize_friendship"),
            (conversation_service, "serialize"),
            (conversation_service, "participant_user_ids"),
            (conversation_service, "require_participant"),
            (message_service, "serialize_message"),
            (message_service, "mark_delivered"),
        ]
        wrappers = [
            patch.object(owner, name, new=recording(name, getattr(owner, name))) for owner, name in targets
        ]
        for patcher in wrappers:
            patcher.start()
        try:
            alice, alice_headers, bob, bob_headers, conversation_id = self._befriend()
            self.client.post(
                "/api/chat/conversations",
                json={"type": "group", "participant_ids": [bob["id"]], "name": "Runners"},
                headers=alice_headers,
            )
            self.client.post(
                "/api/chat/messages",
                json={"conversation_id": conversation_id, "content": "hello"},
                headers=alice_headers,
            )
            self.client.post(f"/api/chat/conversations/{conversation_id}/read", headers=bob_headers)
            self.client.post(f"/api/friends/{alice['id']}/block", headers=bob_headers)
        finally:
            for patcher in reversed(wrappers):
                patcher.stop()
        self.assertEqual(on_loop, [])

if __name__ == "__main__":
    unittest.main()
