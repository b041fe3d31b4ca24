import json
import unittest

from chat_client.models import Conversation, Message
from chat_client.reconciler import FrameOutcome, MessageReconciler, conversation_for, message_from_frame, reconcile
from chat_client.errors import ProtocolError
from chat_client.unread import UnreadTracker


def _temp(content: str, *, group=None, to=None, sender="alice", msg_id="temp-1") -> Message:
    return Message(id=msg_id, sender=sender, content=content, time="t0", group=group, to=to, is_temp=True)


class ReconcileTests(unittest.TestCase):
    def test_confirmation_replaces_temp_entry_in_place(self):
        messages = [
            Message(id="m0", sender="bob", content="earlier", time="t-1", group="alpha"),
            _temp("hi", group="alpha"),
            Message(id="m2", sender="bob", content="later", time="t2", group="alpha"),
        ]
        confirmed = Message(id="srv-9", sender="alice", content="hi", time="t1", group="alpha", uuid="u-9")

        outcome = reconcile(messages, confirmed, "alice")

        self.assertIs(outcome, FrameOutcome.REPLACED)
        self.assertEqual(len(messages), 3)
        self.assertEqual(messages[1].id, "temp-1")
        self.assertFalse(messages[1].is_temp)
        self.assertEqual(messages[1].time, "t1")
        self.assertEqual(messages[1].uuid, "u-9")

    def test_temp_entry_for_other_target_is_not_replaced(self):
        messages = [_temp("hi", group="beta")]
        confirmed = Message(id="srv", sender="alice", content="hi", time="t1", group="alpha")

        self.assertIs(reconcile(messages, confirmed, "alice"), FrameOutcome.APPENDED)
        self.assertEqual(len(messages), 2)
        self.assertTrue(messages[0].is_temp)

    def test_private_confirmation_matches_on_recipient(self):
        messages = [_temp("psst", to="bob")]
        confirmed = Message(id="srv", sender="alice", content="psst", time="t1", to="bob")

        self.assertIs(reconcile(messages, confirmed, "alice"), FrameOutcome.REPLACED)
        self.assertEqual(len(messages), 1)

    def test_duplicate_by_uuid_is_ignored(self):
        messages = [Message(id="u1", sender="bob", content="yo", time="t1", group="alpha", uuid="u1")]
        again = Message(id="u1", sender="bob", content="yo", time="t1-late", group="alpha", uuid="u1")

        self.assertIs(reconcile(messages, again, "alice"), FrameOutcome.DUPLICATE)
        self.assertEqual(len(messages), 1)

    def test_duplicate_by_sender_content_time_is_ignored(self):
        messages = [Message(id="a", sender="bob", content="yo", time="t1", group="alpha")]
        again = Message(id="b", sender="bob", content="yo", time="t1", group="alpha")

        self.assertIs(reconcile(messages, again, "alice"), FrameOutcome.DUPLICATE)
        self.assertEqual([m.id for m in messages], ["a"])

    def test_same_content_at_different_time_is_appended(self):
        messages = [Message(id="a", sender="bob", content="yo", time="t1", group="alpha")]
        later = Message(id="b", sender="bob", content="yo", time="t2", group="alpha")

        self.assertIs(reconcile(messages, later, "alice"), FrameOutcome.APPENDED)
        self.assertEqual(len(messages), 2)


class MessageFromFrameTests(unittest.TestCase):
    def test_missing_required_field_is_rejected(self):
        for missing in ("from", "content", "time"):
            frame = {"from": "bob", "content": "hi", "time": "t1", "group": "alpha"}
            del frame[missing]
            with self.subTest(missing=missing):
                with self.assertRaises(ProtocolError):
                    message_from_frame(frame)

    def test_id_falls_back_to_uuid_then_generated(self):
        with_uuid = message_from_frame({"from": "bob", "content": "hi", "time": "t", "uuid": "u-1"})
        bare = message_from_frame({"from": "bob", "content": "hi", "time": "t"})

        self.assertEqual(with_uuid.id, "u-1")
        self.assertTrue(bare.id.startswith("msg-"))
        self.assertIsNone(bare.uuid)


class ConversationForTests(unittest.TestCase):
    def test_group_message_counts_toward_group(self):
        message = Message(id="1", sender="bob", content="x", time="t", group="alpha")
        self.assertEqual(conversation_for(message, "alice"), Conversation.group_chat("alpha"))

    def test_private_message_to_me_counts_toward_sender(self):
        message = Message(id="1", sender="bob", content="x", time="t", to="alice")
        self.assertEqual(conversation_for(message, "alice").key, "user:bob")

    def test_private_message_from_me_counts_nowhere(self):
        message = Message(id="1", sender="alice", content="x", time="t", to="bob")
        self.assertIsNone(conversation_for(message, "alice"))


class MessageReconcilerTests(unittest.IsolatedAsyncioTestCase):
    async def asyncSetUp(self):
        self.messages = []
        self.unread = UnreadTracker()
        self.active = None
        self.auth_failures = []
        self.membership_events = []

        async def on_auth_failed(reason):
            self.auth_failures.append(reason)

        self.reconciler = MessageReconciler(
            "alice",
            self.messages,
            self.unread,
            active_conversation=lambda: self.active,
            on_auth_failed=on_auth_failed,
            on_membership_change=self.membership_events.append,
        )

    async def _feed(self, frame) -> FrameOutcome:
        raw = frame if isinstance(frame, str) else json.dumps(frame)
        return await self.reconciler.handle_frame(raw)

    async def test_own_message_confirmation_leaves_single_entry(self):
        self.active = Conversation.group_chat("alpha")
        self.messages.append(_temp("hi", group="alpha"))

        outcome = await self._feed({"from": "alice", "content": "hi", "time": "t1", "group": "alpha", "uuid": "u1"})

        self.assertIs(outcome, FrameOutcome.REPLACED)
        self.assertEqual(len(self.messages), 1)
        self.assertFalse(self.messages[0].is_temp)
        self.assertEqual(self.unread.get("group:alpha"), 0)

    async def test_unread_increments_only_for_inactive_conversations(self):
        self.active = Conversation.group_chat("alpha")

        await self._feed({"from": "bob", "content": "in alpha", "time": "t1", "group": "alpha"})
        await self._feed({"from": "bob", "content": "in beta", "time": "t2", "group": "beta"})
        await self._feed({"from": "bob", "content": "again", "time": "t3", "group": "beta"})
        await self._feed({"from": "carol", "content": "dm", "time": "t4", "to": "alice"})

        self.assertEqual(
            self.unread.snapshot(),
            {"group:beta": 2, "user:carol": 1},
        )

    async def test_duplicate_frame_does_not_bump_unread(self):
        frame = {"from": "bob", "content": "once", "time": "t1", "group": "beta", "uuid": "u7"}

        self.assertIs(await self._feed(frame), FrameOutcome.APPENDED)
        self.assertIs(await self._feed(frame), FrameOutcome.DUPLICATE)

        self.assertEqual(len(self.messages), 1)
        self.assertEqual(self.unread.get("group:beta"), 1)

    async def test_malformed_frames_are_discarded(self):
        for raw in ("not json", "[1, 2]", json.dumps({"content": "no sender", "time": "t"})):
            with self.subTest(raw=raw):
                self.assertIs(await self._feed(raw), FrameOutcome.DISCARDED)
        self.assertIs(await self.reconciler.handle_frame(b"\xff\xfe"), FrameOutcome.DISCARDED)
        self.assertEqual(self.messages, [])
        self.assertEqual(self.unread.snapshot(), {})

    async def test_auth_failed_frame_invokes_callback(self):
        outcome = await self._feed({"type": "auth_failed", "message": "token expired"})

        self.assertIs(outcome, FrameOutcome.AUTH_FAILED)
        self.assertEqual(self.auth_failures, ["token expired"])
        self.assertEqual(self.messages, [])

    async def test_membership_event_triggers_refresh_callback(self):
        outcome = await self._feed({"from": "system", "type": "user_joined", "content": "bob joined"})

        self.assertIs(outcome, FrameOutcome.MEMBERSHIP)
        self.assertEqual(self.membership_events, ["user_joined"])
        self.assertEqual(self.messages, [])

    async def test_other_system_frames_become_notices(self):
        outcome = await self._feed({"from": "system", "type": "notice", "content": "maintenance at noon"})

        self.assertIs(outcome, FrameOutcome.SYSTEM)
        self.assertEqual(len(self.messages), 1)
        notice = self.messages[0]
        self.assertTrue(notice.is_system)
        self.assertTrue(notice.id.startswith("sys-"))
        self.assertEqual(notice.content, "maintenance at noon")
        self.assertEqual(self.unread.snapshot(), {})

    async def test_unread_rebinds_after_tracker_swap(self):
        self.reconciler.unread = UnreadTracker()

        await self._feed({"from": "bob", "content": "new", "time": "t1", "group": "beta"})

        self.assertEqual(self.reconciler.unread.get("group:beta"), 1)
        self.assertEqual(self.unread.snapshot(), {})


class MessageTests(unittest.TestCase):
    def test_to_dict_uses_wire_field_names(self):
        message = Message(id="temp-1", sender="alice", content="hi", time="t0", to="bob", is_temp=True)

        self.assertEqual(
            message.to_dict(),
            {"id": "temp-1", "from": "alice", "content": "hi", "time": "t0", "isTemp": True, "to": "bob"},
        )
