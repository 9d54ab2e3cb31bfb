import unittest
from datetime import datetime, timedelta, timezone

from habitchat.core.exceptions import ForbiddenError, InvalidArgumentError, NotFoundError
from habitchat.services.auth_service import as_utc
from habitchat.services.conversation_service import conversation_service
from habitchat.services.friend_service import friend_service
from habitchat.services.message_service import message_service
from tests.db_helpers import dispose_session_factory, make_session_factory, make_user


class MessageServiceTests(unittest.TestCase):
    def setUp(self) -> None:
        self.factory = make_session_factory()
        self.db = self.factory()
        self.alice = make_user(self.db, "alice", uid="10000000001")
        self.bob = make_user(self.db, "bob", uid="10000000002")
        self.carol = make_user(self.db, "carol", uid="10000000003")
        request = friend_service.send_request(self.db, self.alice, self.bob.uid, "hi")
        friendship = friend_service.respond_to_request(self.db, request.id, self.bob, "accept")
        self.conversation_id = friendship.conversation.conversation_id

    def tearDown(self) -> None:
        self.db.close()
        dispose_session_factory(self.factory)

    def _send(self, sender, content: str, **kwargs):
        return message_service.send_message(self.db, self.conversation_id, sender.id, content, **kwargs)

    def test_messages_are_ordered_by_sent_at_then_id(self) -> None:
        sent = [self._send(self.alice if index % 2 else self.bob, f"m{index}") for index in range(6)]

        page = message_service.list_messages(self.db, self.conversation_id, self.alice.id)
        listed = list(reversed(page["messages"]))
        self.assertEqual([item["message_id"] for item in listed], [m.message_id for m in sent])
        for earlier, later in zip(listed, listed[1:]):
            self.assertLessEqual(earlier["sent_at"], later["sent_at"])
        self.assertFalse(page["has_more"])
        self.assertEqual(page["total"], 6)

    def test_sent_at_never_precedes_last_message_at(self) -> None:
        conversation = conversation_service.get_by_external_id(self.db, self.conversation_id)
        future = datetime.now(timezone.utc) + timedelta(minutes=5)
        conversation.last_message_at = future
        self.db.commit()

        first = self._send(self.alice, "clock skew")
        second = self._send(self.bob, "same instant")
        self.assertEqual(as_utc(first.sent_at), future)
        self.assertEqual(as_utc(second.sent_at), future)
        self.assertLess(first.id, second.id)

        newest = message_service.list_messages(self.db, self.conversation_id, self.bob.id)["messages"][0]
        self.assertEqual(newest["message_id"], second.message_id)

    def test_pagination_reports_has_more(self) -> None:
        for index in range(5):
            self._send(self.alice, f"m{index}")
        page = message_service.list_messages(self.db, self.conversation_id, self.bob.id, page=1, size=2)
        self.assertEqual(len(page["messages"]), 2)
        self.assertTrue(page["has_more"])
        last = message_service.list_messages(self.db, self.conversation_id, self.bob.id, page=3, size=2)
        self.assertEqual(len(last["messages"]), 1)
        self.assertFalse(last["has_more"])

    def test_empty_text_is_invalid(self) -> None:
        with self.assertRaises(InvalidArgumentError):
            self._send(self.alice, "")
        with self.assertRaises(InvalidArgumentError):
            self._send(self.alice, "   ")
        with self.assertRaises(InvalidArgumentError):
            self._send(self.alice, "hello", message_type="sticker")

    def test_non_participant_is_forbidden(self) -> None:
        with self.assertRaises(ForbiddenError):
            self._send(self.carol, "let me in")
        with self.assertRaises(ForbiddenError):
            message_service.list_messages(self.db, self.conversation_id, self.carol.id)
        with self.assertRaises(NotFoundError):
            message_service.send_message(self.db, "missing", self.alice.id, "hello")

    def test_blocked_friendship_forbids_messaging(self) -> None:
        friend_service.block(self.db, self.alice.id, self.bob.id)
        with self.assertRaises(ForbiddenError):
            self._send(self.bob, "are you there?")
        with self.assertRaises(ForbiddenError):
            self._send(self.alice, "bye")

        friend_service.unblock(self.db, self.alice.id, self.bob.id)
        self.assertEqual(self._send(self.bob, "back again").content, "back again")

    def test_removed_friendship_makes_conversation_read_only(self) -> None:
        self._send(self.alice, "before")
        friend_service.remove_friend(self.db, self.alice.id, self.bob.id)
        with self.assertRaises(ForbiddenError):
            self._send(self.bob, "after")
        page = message_service.list_messages(self.db, self.conversation_id, self.bob.id)
        self.assertEqual([item["content"] for item in page["messages"]], ["before"])

    def test_reply_must_target_same_conversation(self) -> None:
        original = self._send(self.alice, "question")
        reply = self._send(self.bob, "answer", reply_to_id=original.message_id)
        self.assertEqual(message_service.serialize_message(reply)["reply_to_id"], original.message_id)

        other = conversation_service.create_conversation(self.db, self.alice, "group", [self.carol.id])
        foreign = message_service.send_message(self.db, other.conversation_id, self.carol.id, "elsewhere")
        with self.assertRaises(InvalidArgumentError):
            self._send(self.alice, "bad reply", reply_to_id=foreign.message_id)

    def test_only_sender_edits_and_deletes_softly(self) -> None:
        message = self._send(self.alice, "tpyo")
        with self.assertRaises(ForbiddenError):
            message_service.edit_message(self.db, message.message_id, self.bob.id, "typo")

        edited = message_service.edit_message(self.db, message.message_id, self.alice.id, "typo")
        self.assertTrue(edited.is_edited)
        self.assertIsNotNone(edited.edited_at)

        with self.assertRaises(ForbiddenError):
            message_service.delete_message(self.db, message.message_id, self.bob.id)
        message_service.delete_message(self.db, message.message_id, self.alice.id)

        listed = message_service.list_messages(self.db, self.conversation_id, self.bob.id)["messages"]
        self.assertEqual(len(listed), 1)
        self.assertTrue(listed[0]["is_deleted"])
        self.assertEqual(listed[0]["content"], "")
        with self.assertRaises(InvalidArgumentError):
            message_service.edit_message(self.db, message.message_id, self.alice.id, "again")

    def test_mark_messages_read_flags_only_messages_from_others(self) -> None:
        from_alice = self._send(self.alice, "one")
        from_bob = self._send(self.bob, "two")

        changed = message_service.mark_messages_read(self.db, self.conversation_id, self.bob.id)
        self.assertEqual(changed, [from_alice.message_id])
        self.db.refresh(from_alice)
        self.db.refresh(from_bob)
        self.assertTrue(from_alice.is_read)
        self.assertFalse(from_bob.is_read)
        item = conversation_service.list_conversations(self.db, self.bob.id)[0]
        self.assertEqual(item["unread_count"], 0)

    def test_mark_delivered_is_applied_once(self) -> None:
        message = self._send(self.alice, "ping")
        self.assertIsNotNone(message_service.mark_delivered(self.db, message.message_id))
        self.assertIsNone(message_service.mark_delivered(self.db, message.message_id))


if __name__ == "__main__":
    unittest.main()
