from __future__ import annotations

import asyncio
import logging
import time
from dataclasses import dataclass, field
from typing import Any, Awaitable, Callable, Dict, Iterable, List, Optional

from .config import SessionConfig
from .errors import AuthenticationError, ChatClientError
from .models import Friend, PresenceSnapshot
from .rest import RestClient

logger = logging.getLogger("chat_client.presence")


@dataclass
class PollResult:
    presence: PresenceSnapshot
    groups: List[str] = field(default_factory=list)
    presence_error: Optional[str] = None
    groups_error: Optional[str] = None

    @property
    def ok(self) -> bool:
        return self.presence_error is None and self.groups_error is None

    @property
    def groups_ok(self) -> bool:
        return self.groups_error is None


def build_snapshot(entries: Iterable[Dict[str, Any]], username: str) -> PresenceSnapshot:
    """Build a fresh snapshot; the local user is reported separately from friends."""

    friends: List[Friend] = []
    online: Dict[str, bool] = {}
    self_online = False
    for entry in entries:
        name = entry["username"]
        is_online = bool(entry["isOnline"])
        online[name] = is_online
        if name == username:
            self_online = is_online
        else:
            friends.append(Friend(username=name, is_online=is_online))
    return PresenceSnapshot(self_online=self_online, friends=tuple(friends), online_by_username=online)


class PresencePoller:
    """Periodically refreshes the presence list and the group membership list."""

    def __init__(
        self,
        rest: RestClient,
        username: str,
        config: SessionConfig,
        *,
        now_func: Callable[[], float] = time.monotonic,
        on_result: Optional[Callable[[PollResult], None]] = None,
        on_auth_failure: Optional[Callable[[AuthenticationError], Awaitable[None]]] = None,
    ) -> None:
        self.rest = rest
        self.username = username
        self.config = config
        self.snapshot = PresenceSnapshot()
        self.groups: List[str] = []
        self.ready = asyncio.Event()
        self.on_result = on_result
        self.on_auth_failure = on_auth_failure
        self._now = now_func
        self._last_poll_at: Optional[float] = None
        self._in_flight = False
        self._task: Optional[asyncio.Task] = None

    def start(self) -> None:
        if self._task is None:
            self._task = asyncio.create_task(self._run())

    async def stop(self) -> None:
        task, self._task = self._task, None
        if task is None or task is asyncio.current_task():
            return
        task.cancel()
        try:
            await task
        except asyncio.CancelledError:
            pass

    async def _run(self) -> None:
        await asyncio.sleep(self.config.initial_poll_delay_s)
        while True:
            try:
                await self.poll()
            except AuthenticationError as exc:
                logger.error("presence poll rejected credentials: %s", exc)
                self._task = None
                if self.on_auth_failure is not None:
                    await self.on_auth_failure(exc)
                return
            await asyncio.sleep(self.config.poll_interval_s)

    def add_group(self, name: str) -> None:
        """Optimistically list a group we just created or joined; the next poll confirms it."""

        if name and name not in self.groups:
            self.groups.append(name)

    async def poll(self) -> Optional[PollResult]:
        """Run one cycle; returns None when skipped by the minimum spacing guard."""

        now = self._now()
        if self._in_flight or (
            self._last_poll_at is not None and now - self._last_poll_at < self.config.min_poll_spacing_s
        ):
            logger.debug("skipping presence poll, previous one too recent")
            return None
        self._last_poll_at = now
        self._in_flight = True
        try:
            presence_res, groups_res = await asyncio.gather(
                self.rest.online_users(), self.rest.my_groups(), return_exceptions=True
            )
            for outcome in (presence_res, groups_res):
                if isinstance(outcome, BaseException) and not isinstance(outcome, ChatClientError):
                    raise outcome
            for outcome in (presence_res, groups_res):
                if isinstance(outcome, AuthenticationError):
                    raise outcome

            result = PollResult(presence=PresenceSnapshot())
            if isinstance(presence_res, ChatClientError):
                result.presence_error = f"failed to load presence: {presence_res}"
                logger.warning("%s", result.presence_error)
            else:
                result.presence = build_snapshot(presence_res, self.username)
            if isinstance(groups_res, ChatClientError):
                result.groups_error = f"failed to load groups: {groups_res}"
                logger.warning("%s", result.groups_error)
            else:
                result.groups = list(groups_res)

            self.snapshot = result.presence
            self.groups = list(result.groups)
        finally:
            self._in_flight = False
            self.ready.set()

        if self.on_result is not None:
            self.on_result(result)
        return result
