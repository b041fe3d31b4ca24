from __future__ import annotations


class ChatClientError(Exception):
    pass


class AuthenticationError(ChatClientError):
    """Token missing, invalid or expired. Terminal for the session."""


class ConnectionTimeoutError(ChatClientError):
    def __init__(self, timeout_s: float):
        self.timeout_s = timeout_s
        super().__init__(f"websocket handshake did not complete within {timeout_s:g}s")


class TransportError(ChatClientError):
    def __init__(self, message: str, *, stale: bool = False):
        self.stale = stale
        super().__init__(message)


class ProtocolError(ChatClientError):
    def __init__(self, message: str, raw: object = None):
        self.raw = raw
        super().__init__(message)


class ReconnectExhaustedError(ChatClientError):
    def __init__(self, attempts: int):
        self.attempts = attempts
        super().__init__(f"gave up reconnecting after {attempts} attempts; manual reconnect required")


class SendPreconditionError(ChatClientError):
    pass
