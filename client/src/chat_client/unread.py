from __future__ import annotations

from typing import Dict


class UnreadTracker:
    """Per-conversation unread counters keyed by conversation key."""

    def __init__(self) -> None:
        self._counts: Dict[str, int] = {}

    def on_message_arrived(self, conversation_key: str, is_active: bool) -> int:
        if not is_active:
            self._counts[conversation_key] = self._counts.get(conversation_key, 0) + 1
        return self._counts.get(conversation_key, 0)

    def on_conversation_selected(self, conversation_key: str) -> None:
        self._counts[conversation_key] = 0

    def get(self, conversation_key: str) -> int:
        return self._counts.get(conversation_key, 0)

    def snapshot(self) -> Dict[str, int]:
        return dict(self._counts)
