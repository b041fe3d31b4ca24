"""Websocket lifecycle: connect, handshake timeout, close and reconnect backoff."""

from __future__ import annotations

import asyncio
import logging
from typing import Any, Awaitable, Callable, Dict, Optional

import aiohttp
from aiohttp import WSMsgType
from yarl import URL

from .config import CLOSE_ABNORMAL, CLOSE_NORMAL, CLOSE_POLICY_VIOLATION, SessionConfig, redact_url
from .errors import ChatClientError, ConnectionTimeoutError, ReconnectExhaustedError, TransportError
from .models import ConnectionState, ConnectionStatus, ReconnectPolicy, utc_timestamp

logger = logging.getLogger("chat_client.transport")

WsConnect = Callable[[str], Awaitable[Any]]
FrameHandler = Callable[[str], Awaitable[Any]]
StateListener = Callable[[ConnectionState], None]


def is_auth_close(code: int, reason: str) -> bool:
    return code == CLOSE_POLICY_VIOLATION or "auth" in (reason or "").lower()


def reconnect_delay(policy: ReconnectPolicy, code: int, reason: str) -> Optional[float]:
    """Seconds to wait before the next attempt, or None when attempts are used up."""

    if policy.exhausted:
        return None
    if is_auth_close(code, reason):
        return policy.auth_failure_delay_s
    return policy.base_delay_s


class TransportConnection:
    """Owns the single websocket of a session and its reconnect state machine."""

    def __init__(
        self,
        config: SessionConfig,
        token: str,
        username: str,
        *,
        http: Optional[aiohttp.ClientSession] = None,
        ws_connect: Optional[WsConnect] = None,
        on_frame: Optional[FrameHandler] = None,
        on_state_change: Optional[StateListener] = None,
    ) -> None:
        self.config = config
        self.username = username
        self.policy = ReconnectPolicy(
            max_attempts=config.max_reconnect_attempts,
            base_delay_s=config.reconnect_delay_s,
            auth_failure_delay_s=config.auth_failure_delay_s,
        )
        self.last_error: Optional[ChatClientError] = None
        self.on_frame = on_frame
        self.on_state_change = on_state_change
        self._token = token
        self._http = http
        self._owns_http = False
        self._ws_connect = ws_connect or self._aiohttp_connect
        self._state = ConnectionState.IDLE
        self._ws: Any = None
        self._reader_task: Optional[asyncio.Task] = None
        self._reconnect_task: Optional[asyncio.Task] = None
        self.next_delay_s: Optional[float] = None
        self._terminated = False

    @property
    def state(self) -> ConnectionState:
        return self._state

    @property
    def reconnect_pending(self) -> bool:
        return self._reconnect_task is not None

    @property
    def status(self) -> ConnectionStatus:
        return ConnectionStatus(
            state=self._state,
            retrying=self.reconnect_pending,
            attempt=self.policy.attempt_count,
            retry_in_s=self.next_delay_s if self.reconnect_pending else None,
            error=str(self.last_error) if self.last_error else None,
        )

    def _set_state(self, state: ConnectionState) -> None:
        if state is self._state:
            return
        logger.debug("transport %s -> %s", self._state.value, state.value)
        self._state = state
        if self.on_state_change is not None:
            self.on_state_change(state)

    async def _aiohttp_connect(self, url: str) -> aiohttp.ClientWebSocketResponse:
        if self._http is None or self._http.closed:
            self._http = aiohttp.ClientSession()
            self._owns_http = True
        return await self._http.ws_connect(URL(url, encoded=True))

    def _detach(self) -> Any:
        ws, self._ws = self._ws, None
        reader, self._reader_task = self._reader_task, None
        if reader is not None and reader is not asyncio.current_task():
            reader.cancel()
        return ws

    def _cancel_reconnect(self) -> None:
        task, self._reconnect_task = self._reconnect_task, None
        self.next_delay_s = None
        if task is not None and task is not asyncio.current_task():
            task.cancel()

    async def connect(self) -> bool:
        """Open the socket. Returns True once the connection is Open.

        Calls made while a connection is Connecting or Open are ignored, and
        nothing happens in Failed until ``reconnect()`` resets the attempts.
        """

        if self._terminated:
            return False
        if self._state in (ConnectionState.CONNECTING, ConnectionState.OPEN):
            logger.debug("connect ignored, already %s", self._state.value)
            return self._state is ConnectionState.OPEN
        if self._state is ConnectionState.FAILED:
            logger.info("connect refused: reconnect attempts exhausted, manual reconnect required")
            return False

        self._cancel_reconnect()
        self._set_state(ConnectionState.CONNECTING)
        previous = self._detach()
        if previous is not None and not previous.closed:
            await previous.close(code=CLOSE_NORMAL, message=b"replaced by new connection")

        url = self.config.ws_url(self._token)
        logger.info(
            "connecting to %s (attempt %d/%d)",
            redact_url(url),
            self.policy.attempt_count,
            self.policy.max_attempts,
        )
        try:
            ws = await asyncio.wait_for(self._ws_connect(url), self.config.connect_timeout_s)
        except asyncio.TimeoutError:
            return self._connect_failed(
                ConnectionTimeoutError(self.config.connect_timeout_s), CLOSE_ABNORMAL, "connect timeout"
            )
        except aiohttp.WSServerHandshakeError as exc:
            code = CLOSE_POLICY_VIOLATION if exc.status in (401, 403) else CLOSE_ABNORMAL
            return self._connect_failed(
                TransportError(f"handshake rejected with status {exc.status}"), code, f"handshake {exc.status}"
            )
        except (aiohttp.ClientError, OSError) as exc:
            return self._connect_failed(TransportError(f"connection failed: {exc}"), CLOSE_ABNORMAL, str(exc))
        except asyncio.CancelledError:
            if self._state is ConnectionState.CONNECTING:
                self._set_state(ConnectionState.IDLE)
            raise

        if self._state is not ConnectionState.CONNECTING or self._terminated:
            # close() ran while the handshake was in flight.
            await ws.close(code=CLOSE_NORMAL, message=b"connection no longer wanted")
            return False

        self._ws = ws
        self.policy.reset()
        self.last_error = None
        self._set_state(ConnectionState.OPEN)
        logger.info("websocket open for %s", self.username)
        try:
            await ws.send_json({"type": "init", "username": self.username, "timestamp": utc_timestamp()})
        except (ConnectionError, aiohttp.ClientError) as exc:
            logger.warning("failed to send init frame: %s", exc)
        self._reader_task = asyncio.create_task(self._read_loop(ws))
        return True

    def _connect_failed(self, error: ChatClientError, code: int, reason: str) -> bool:
        if self._state is not ConnectionState.CONNECTING:
            return False
        logger.warning("websocket connect failed: %s", error)
        self.last_error = error
        self._on_closed(code, reason)
        return False

    async def _read_loop(self, ws: Any) -> None:
        code: Optional[int] = None
        reason = ""
        while True:
            msg = await ws.receive()
            if msg.type in (WSMsgType.TEXT, WSMsgType.BINARY):
                if self.on_frame is None:
                    continue
                try:
                    await self.on_frame(msg.data)
                except Exception:
                    logger.exception("frame handler failed")
                if ws is not self._ws:
                    return
            elif msg.type == WSMsgType.CLOSE:
                code = msg.data
                reason = msg.extra or ""
                break
            elif msg.type == WSMsgType.ERROR:
                self.last_error = TransportError(f"websocket error: {ws.exception()}")
                logger.warning("%s", self.last_error)
                break
            elif msg.type in (WSMsgType.CLOSING, WSMsgType.CLOSED):
                break

        if ws is not self._ws:
            return
        self._ws = None
        self._reader_task = None
        if not ws.closed:
            await ws.close()
        self._on_closed(code or ws.close_code or CLOSE_ABNORMAL, reason)

    def _on_closed(self, code: int, reason: str) -> None:
        logger.info("websocket closed [%s] %s", code, reason)
        if self._terminated:
            self._set_state(ConnectionState.IDLE)
            return
        if code == CLOSE_NORMAL:
            self._set_state(ConnectionState.IDLE)
            return

        self._set_state(ConnectionState.CLOSING)
        delay = reconnect_delay(self.policy, code, reason)
        if delay is None:
            self.last_error = ReconnectExhaustedError(self.policy.attempt_count)
            logger.error("%s", self.last_error)
            self._set_state(ConnectionState.FAILED)
            return

        self.policy.attempt_count += 1
        logger.info(
            "reconnecting in %.1fs (attempt %d/%d)", delay, self.policy.attempt_count, self.policy.max_attempts
        )
        self.next_delay_s = delay
        self._reconnect_task = asyncio.create_task(self._reconnect_after(delay))
        self._set_state(ConnectionState.IDLE)

    async def _reconnect_after(self, delay: float) -> None:
        await asyncio.sleep(delay)
        self._reconnect_task = None
        self.next_delay_s = None
        await self.connect()

    async def reconnect(self) -> bool:
        """Manual reconnect: reset the attempt counter and connect again."""

        if self._terminated:
            return False
        self._cancel_reconnect()
        self.policy.reset()
        self.last_error = None
        if self._state is ConnectionState.FAILED:
            self._set_state(ConnectionState.IDLE)
        return await self.connect()

    async def send(self, payload: Dict[str, Any]) -> None:
        ws = self._ws
        if self._state is not ConnectionState.OPEN or ws is None or ws.closed:
            raise TransportError(f"socket is not open (state={self._state.value})", stale=True)
        try:
            await ws.send_json(payload)
        except (ConnectionError, aiohttp.ClientError) as exc:
            raise TransportError(f"send failed: {exc}", stale=ws.closed) from exc

    async def drop_stale(self) -> bool:
        """Treat an Open connection whose socket has already closed as an abnormal close.

        Returns True when the reconnect evaluation ran.
        """

        ws = self._ws
        if self._state is not ConnectionState.OPEN or ws is None or not ws.closed:
            return False
        logger.info("socket closed underneath an open connection")
        await self.abort(CLOSE_ABNORMAL, "stale socket")
        return True

    async def abort(self, code: int, reason: str) -> None:
        """Force-close the socket and run the same reconnect evaluation as a remote close."""

        ws = self._detach()
        if ws is not None and not ws.closed:
            await ws.close(code=code, message=reason.encode("utf-8"))
        if self._state in (ConnectionState.OPEN, ConnectionState.CONNECTING):
            self._on_closed(code, reason)

    async def close(self, reason: str = "client closing") -> None:
        """Intentional close; no reconnect is scheduled."""

        self._cancel_reconnect()
        ws = self._detach()
        if ws is not None and not ws.closed:
            self._set_state(ConnectionState.CLOSING)
            await ws.close(code=CLOSE_NORMAL, message=reason.encode("utf-8"))
        if self._state is not ConnectionState.FAILED:
            self._set_state(ConnectionState.IDLE)

    async def shutdown(self) -> None:
        """Tear down for good: close the socket, cancel timers, release the HTTP session."""

        self._terminated = True
        await self.close("session ended")
        self._set_state(ConnectionState.IDLE)
        if self._owns_http and self._http is not None:
            await self._http.close()
            self._http = None
