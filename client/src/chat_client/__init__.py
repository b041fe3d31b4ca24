"""Realtime chat client session: socket lifecycle, reconciliation, unread and presence state."""

from .config import SessionConfig
from .errors import (
    AuthenticationError,
    ChatClientError,
    ConnectionTimeoutError,
    ProtocolError,
    ReconnectExhaustedError,
    SendPreconditionError,
    TransportError,
)
from .models import ConnectionState, ConnectionStatus, Conversation, Message, PresenceSnapshot
from .session import ChatSession

__all__ = [
    "AuthenticationError",
    "ChatClientError",
    "ChatSession",
    "ConnectionState",
    "ConnectionStatus",
    "ConnectionTimeoutError",
    "Conversation",
    "Message",
    "PresenceSnapshot",
    "ProtocolError",
    "ReconnectExhaustedError",
    "SendPreconditionError",
    "SessionConfig",
    "TransportError",
]
