"""Turns inbound socket frames into message list mutations."""

from __future__ import annotations

import enum
import json
import logging
import uuid
from typing import Any, Awaitable, Callable, Dict, List, Optional

from .errors import ProtocolError
from .models import SYSTEM_SENDER, Conversation, Message, utc_timestamp
from .unread import UnreadTracker

logger = logging.getLogger("chat_client.reconciler")

AUTH_FAILED = "auth_failed"
MEMBERSHIP_EVENTS = frozenset({"user_joined", "user_left"})


class FrameOutcome(enum.Enum):
    REPLACED = "replaced"
    APPENDED = "appended"
    DUPLICATE = "duplicate"
    SYSTEM = "system"
    MEMBERSHIP = "membership"
    AUTH_FAILED = "auth_failed"
    DISCARDED = "discarded"


def parse_frame(raw: str | bytes) -> Dict[str, Any]:
    if isinstance(raw, bytes):
        try:
            raw = raw.decode("utf-8")
        except UnicodeDecodeError as exc:
            raise ProtocolError("frame is not valid utf-8", raw) from exc
    try:
        frame = json.loads(raw)
    except ValueError as exc:
        raise ProtocolError("frame is not valid json", raw) from exc
    if not isinstance(frame, dict):
        raise ProtocolError("frame must be a json object", raw)
    return frame


def _optional_str(value: Any) -> Optional[str]:
    if value is None or value == "":
        return None
    return str(value)


def message_from_frame(frame: Dict[str, Any]) -> Message:
    sender = frame.get("from")
    content = frame.get("content")
    time = frame.get("time")
    if not sender or not content or not time:
        raise ProtocolError("business frame requires from, content and time", frame)
    msg_uuid = _optional_str(frame.get("uuid"))
    msg_id = _optional_str(frame.get("id")) or msg_uuid or f"msg-{uuid.uuid4().hex}"
    return Message(
        id=msg_id,
        sender=str(sender),
        content=str(content),
        time=str(time),
        to=_optional_str(frame.get("to")),
        group=_optional_str(frame.get("group")),
        uuid=msg_uuid,
    )


def _same_target(a: Message, b: Message) -> bool:
    if a.group and b.group:
        return a.group == b.group
    if a.to and b.to:
        return a.to == b.to
    return False


def _is_duplicate(existing: Message, incoming: Message) -> bool:
    if existing.uuid and existing.uuid == incoming.uuid:
        return True
    return (
        existing.sender == incoming.sender
        and existing.content == incoming.content
        and existing.time == incoming.time
    )


def reconcile(messages: List[Message], incoming: Message, username: str) -> FrameOutcome:
    """Merge a confirmed message into ``messages`` in place.

    A pending temp entry from ``username`` with the same target and content is
    replaced where it stands. Otherwise the message is appended unless an entry
    with the same uuid, or the same ``(from, content, time)``, is already present.
    """

    for index, existing in enumerate(messages):
        if (
            existing.is_temp
            and existing.sender == username
            and _same_target(existing, incoming)
            and existing.content == incoming.content
        ):
            messages[index] = existing.confirmed_as(incoming)
            return FrameOutcome.REPLACED

    if any(_is_duplicate(existing, incoming) for existing in messages):
        return FrameOutcome.DUPLICATE

    messages.append(incoming)
    return FrameOutcome.APPENDED


def conversation_for(message: Message, username: str) -> Optional[Conversation]:
    """Conversation an inbound message counts toward, or None if not addressed to us."""

    if message.group:
        return Conversation.group_chat(message.group)
    if message.to == username:
        return Conversation.private_chat(message.sender)
    return None


class MessageReconciler:
    def __init__(
        self,
        username: str,
        messages: List[Message],
        unread: UnreadTracker,
        *,
        active_conversation: Callable[[], Optional[Conversation]],
        on_auth_failed: Callable[[str], Awaitable[None]],
        on_membership_change: Callable[[str], None],
    ) -> None:
        self.username = username
        self.messages = messages
        self.unread = unread
        self._active_conversation = active_conversation
        self._on_auth_failed = on_auth_failed
        self._on_membership_change = on_membership_change

    async def handle_frame(self, raw: str | bytes) -> FrameOutcome:
        try:
            frame = parse_frame(raw)
            if frame.get("type") == AUTH_FAILED:
                reason = str(frame.get("message") or "authentication failed")
                logger.warning("server rejected websocket auth: %s", reason)
                await self._on_auth_failed(reason)
                return FrameOutcome.AUTH_FAILED
            if frame.get("from") == SYSTEM_SENDER:
                return self._handle_system(frame)
            message = message_from_frame(frame)
        except ProtocolError as exc:
            logger.warning("discarding frame: %s (raw=%r)", exc, exc.raw)
            return FrameOutcome.DISCARDED

        outcome = reconcile(self.messages, message, self.username)
        if outcome is not FrameOutcome.DUPLICATE:
            self._count_unread(message)
        return outcome

    def _handle_system(self, frame: Dict[str, Any]) -> FrameOutcome:
        event_type = frame.get("type")
        if event_type in MEMBERSHIP_EVENTS:
            self._on_membership_change(str(event_type))
            return FrameOutcome.MEMBERSHIP
        self.messages.append(
            Message(
                id=f"sys-{uuid.uuid4().hex}",
                sender=SYSTEM_SENDER,
                content=str(frame.get("content") or "system notice"),
                time=utc_timestamp(),
            )
        )
        return FrameOutcome.SYSTEM

    def _count_unread(self, message: Message) -> None:
        conversation = conversation_for(message, self.username)
        if conversation is None:
            return
        self.unread.on_message_arrived(conversation.key, conversation == self._active_conversation())
