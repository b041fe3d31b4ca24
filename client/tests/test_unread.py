import unittest

from chat_client.unread import UnreadTracker


class UnreadTrackerTests(unittest.TestCase):
    def test_active_conversation_never_accumulates(self):
        tracker = UnreadTracker()

        self.assertEqual(tracker.on_message_arrived("group:alpha", True), 0)
        self.assertEqual(tracker.on_message_arrived("group:alpha", True), 0)

        self.assertEqual(tracker.get("group:alpha"), 0)

    def test_inactive_conversation_counts_and_resets_on_select(self):
        tracker = UnreadTracker()
        tracker.on_message_arrived("user:bob", False)
        self.assertEqual(tracker.on_message_arrived("user:bob", False), 2)

        tracker.on_conversation_selected("user:bob")

        self.assertEqual(tracker.get("user:bob"), 0)
        self.assertEqual(tracker.on_message_arrived("user:bob", False), 1)

    def test_snapshot_is_a_copy(self):
        tracker = UnreadTracker()
        tracker.on_message_arrived("group:beta", False)

        snap = tracker.snapshot()
        snap["group:beta"] = 99

        self.assertEqual(tracker.get("group:beta"), 1)
