"""Session store: the state a UI observes plus the send/select/reconnect API."""

from __future__ import annotations

import asyncio
import logging
import secrets
import time
from typing import Any, Callable, Coroutine, Dict, List, Optional, Set

import aiohttp

from .config import CLOSE_POLICY_VIOLATION, SessionConfig
from .errors import AuthenticationError, SendPreconditionError, TransportError
from .models import (
    KIND_GROUP,
    Conversation,
    ConnectionState,
    ConnectionStatus,
    Message,
    PresenceSnapshot,
    utc_timestamp,
)
from .presence import PollResult, PresencePoller
from .reconciler import MessageReconciler
from .rest import GroupActionResult, RestClient
from .transport import TransportConnection, WsConnect
from .unread import UnreadTracker

logger = logging.getLogger("chat_client.session")


def new_temp_id() -> str:
    return f"temp-{int(time.time() * 1000)}-{secrets.token_hex(4)}"


class ChatSession:
    """One authenticated chat session.

    Must be created inside a running event loop when no ``http`` session is
    supplied, since one is opened here.
    """

    def __init__(
        self,
        token: str,
        username: str,
        *,
        config: Optional[SessionConfig] = None,
        on_logout: Optional[Callable[[], Any]] = None,
        on_change: Optional[Callable[["ChatSession"], Any]] = None,
        http: Optional[aiohttp.ClientSession] = None,
        ws_connect: Optional[WsConnect] = None,
        now_func: Callable[[], float] = time.monotonic,
    ) -> None:
        self.config = config or SessionConfig()
        self.token = token or ""
        self.username = username
        self.on_logout = on_logout
        self.on_change = on_change
        self._owns_http = http is None
        self._http = http if http is not None else aiohttp.ClientSession()

        self._messages: List[Message] = []
        self.unread = UnreadTracker()
        self.active: Optional[Conversation] = None
        self.draft = ""
        self.error: Optional[str] = None
        self._poll_error: Optional[str] = None
        self.auth_valid = bool(self.token.strip())
        self._auto_select_done = False
        self._ended = False
        self._connect_task: Optional[asyncio.Task] = None
        self._background: Set[asyncio.Task] = set()

        self.rest = RestClient(self._http, self.token, self.config)
        self.poller = PresencePoller(
            self.rest,
            username,
            self.config,
            now_func=now_func,
            on_result=self._on_poll_result,
            on_auth_failure=self._on_auth_error,
        )
        self.reconciler = MessageReconciler(
            username,
            self._messages,
            self.unread,
            active_conversation=lambda: self.active,
            on_auth_failed=self._on_ws_auth_failed,
            on_membership_change=self._on_membership_change,
        )
        self.transport = TransportConnection(
            self.config,
            self.token,
            username,
            http=self._http,
            ws_connect=ws_connect,
            on_frame=self._on_frame,
            on_state_change=self._on_transport_state,
        )

    # -- observable state -------------------------------------------------

    @property
    def status(self) -> ConnectionStatus:
        return self.transport.status

    @property
    def messages(self) -> List[Message]:
        """Messages of the active conversation in arrival order."""

        if self.active is None:
            return []
        return [message for message in self._messages if self.active.includes(message, self.username)]

    @property
    def notices(self) -> List[Message]:
        return [message for message in self._messages if message.is_system]

    @property
    def all_messages(self) -> List[Message]:
        return list(self._messages)

    @property
    def active_conversation(self) -> Optional[Conversation]:
        return self.active

    @property
    def groups(self) -> List[str]:
        return list(self.poller.groups)

    @property
    def presence(self) -> PresenceSnapshot:
        return self.poller.snapshot

    @property
    def conversations(self) -> List[Conversation]:
        groups = [Conversation.group_chat(name) for name in self.poller.groups]
        friends = [Conversation.private_chat(friend.username) for friend in self.poller.snapshot.friends]
        return groups + friends

    @property
    def unread_counts(self) -> Dict[str, int]:
        return self.unread.snapshot()

    @property
    def ended(self) -> bool:
        return self._ended

    def _notify(self) -> None:
        if self.on_change is not None:
            self.on_change(self)

    def _spawn(self, coro: Coroutine[Any, Any, Any]) -> asyncio.Task:
        task = asyncio.create_task(coro)
        self._background.add(task)
        task.add_done_callback(self._background_done)
        return task

    def _background_done(self, task: asyncio.Task) -> None:
        self._background.discard(task)
        if not task.cancelled() and task.exception() is not None:
            logger.error("background task failed", exc_info=task.exception())

    # -- lifecycle --------------------------------------------------------

    async def start(self) -> None:
        """Begin polling and connect the socket once the first poll has resolved."""

        if not self.auth_valid:
            await self._invalidate("missing credentials, please log in again")
            return
        self.poller.start()
        self._connect_task = asyncio.create_task(self._connect_when_ready())

    async def _connect_when_ready(self) -> None:
        await self.poller.ready.wait()
        if self.auth_valid and not self._ended:
            await self.transport.connect()

    async def logout(self) -> None:
        """End the session: cancel timers, close the socket and drop all state."""

        if self._ended:
            return
        self._ended = True
        self.auth_valid = False
        current = asyncio.current_task()
        if self._connect_task is not None and self._connect_task is not current:
            self._connect_task.cancel()
        self._connect_task = None
        for task in list(self._background):
            if task is not current:
                task.cancel()
        await self.poller.stop()
        await self.transport.shutdown()

        self._messages.clear()
        self.unread = UnreadTracker()
        self.reconciler.unread = self.unread
        self.poller.snapshot = PresenceSnapshot()
        self.poller.groups = []
        self.active = None
        self.draft = ""
        if self._owns_http and not self._http.closed:
            await self._http.close()
        logger.info("session for %s ended", self.username)
        self._notify()
        if self.on_logout is not None:
            self.on_logout()

    async def _invalidate(self, reason: str) -> None:
        logger.warning("authentication invalid: %s", reason)
        self.error = reason
        await self.logout()

    async def _on_auth_error(self, exc: AuthenticationError) -> None:
        await self._invalidate(str(exc))

    # -- inbound ----------------------------------------------------------

    async def _on_frame(self, raw: str) -> None:
        await self.reconciler.handle_frame(raw)
        self._notify()

    async def _on_ws_auth_failed(self, reason: str) -> None:
        self.error = "websocket authentication failed, retrying"
        await self.transport.abort(CLOSE_POLICY_VIOLATION, f"auth failed: {reason}")

    def _on_membership_change(self, event: str) -> None:
        logger.info("membership changed (%s), refreshing", event)
        self._spawn(self.refresh())

    def _on_transport_state(self, state: ConnectionState) -> None:
        if state is ConnectionState.OPEN:
            self.error = None
        elif state is ConnectionState.FAILED and self.transport.last_error is not None:
            self.error = str(self.transport.last_error)
        self._notify()

    def _on_poll_result(self, result: PollResult) -> None:
        problems = [err for err in (result.presence_error, result.groups_error) if err]
        poll_error = "; ".join(problems) if problems else None
        if poll_error is not None:
            self.error = poll_error
        elif self.error is not None and self.error == self._poll_error:
            self.error = None
        self._poll_error = poll_error
        if result.groups_ok and not self._auto_select_done:
            self._auto_select_done = True
            if self.active is None and result.groups:
                logger.info("auto-selecting group %s", result.groups[0])
                self.select_conversation(KIND_GROUP, result.groups[0])
        self._notify()

    # -- commands ---------------------------------------------------------

    def select_conversation(self, kind: str, name: str) -> Conversation:
        conversation = Conversation(kind, name)
        self.active = conversation
        self.unread.on_conversation_selected(conversation.key)
        self._notify()
        return conversation

    def set_draft(self, text: str) -> None:
        self.draft = text

    async def send(self, text: Optional[str] = None) -> bool:
        """Send ``text`` (or the current draft) to the active conversation.

        Raises ``SendPreconditionError`` for problems the user must fix. Returns
        False when the message could not be transmitted; the optimistic entry is
        rolled back and ``error`` describes why.
        """

        content = self.draft if text is None else text
        if not content.strip():
            raise SendPreconditionError("enter a message first")
        if not self.auth_valid:
            await self._invalidate("authentication expired, please log in again")
            return False
        if self.active is None:
            raise SendPreconditionError("select a conversation first")

        state = self.transport.state
        if state is ConnectionState.CONNECTING:
            raise SendPreconditionError("connection in progress, please wait")
        if state is ConnectionState.FAILED:
            raise SendPreconditionError("connection failed, reconnect manually before sending")
        if state is not ConnectionState.OPEN:
            self.error = "connection not ready, connecting"
            self._notify()
            if not await self.transport.connect():
                self.error = "could not connect, message not sent"
                self._notify()
                return False

        conversation = self.active
        is_group = conversation.kind == KIND_GROUP
        timestamp = utc_timestamp()
        payload: Dict[str, Any] = {
            "type": "group_message" if is_group else "private_message",
            "content": content,
            "timestamp": timestamp,
        }
        if is_group:
            payload["group"] = conversation.name
        else:
            payload["to"] = conversation.name
        temp = Message(
            id=new_temp_id(),
            sender=self.username,
            content=content,
            time=timestamp,
            to=None if is_group else conversation.name,
            group=conversation.name if is_group else None,
            is_temp=True,
        )
        self._messages.append(temp)
        self.draft = ""
        self._notify()

        try:
            await self.transport.send(payload)
        except TransportError as exc:
            logger.warning("send failed: %s", exc)
            self._messages[:] = [message for message in self._messages if message.id != temp.id]
            if not self.draft:
                self.draft = content
            self.error = f"send failed: {exc}"
            if exc.stale:
                await self.transport.drop_stale()
            self._notify()
            return False
        return True

    async def reconnect(self) -> bool:
        if not self.auth_valid:
            self.error = "log in first"
            return False
        self.error = None
        return await self.transport.reconnect()

    async def refresh(self) -> Optional[PollResult]:
        if not self.auth_valid:
            return None
        try:
            return await self.poller.poll()
        except AuthenticationError as exc:
            await self._invalidate(str(exc))
            return None

    async def create_group(self, name: str) -> GroupActionResult:
        return await self._group_action(lambda: self.rest.create_group(name, existing=self.poller.groups))

    async def join_group(self, *, name: Optional[str] = None, group_id: Optional[int | str] = None) -> GroupActionResult:
        return await self._group_action(lambda: self.rest.join_group(name=name, group_id=group_id))

    async def _group_action(self, action: Callable[[], Coroutine[Any, Any, GroupActionResult]]) -> GroupActionResult:
        if not self.auth_valid:
            return GroupActionResult(ok=False, message="log in first")
        try:
            result = await action()
        except AuthenticationError as exc:
            await self._invalidate(str(exc))
            return GroupActionResult(ok=False, message=str(exc))
        except TransportError as exc:
            return GroupActionResult(ok=False, message=str(exc))
        if result.ok:
            if result.group:
                self.poller.add_group(result.group)
            self._notify()
            await self.refresh()
        return result
