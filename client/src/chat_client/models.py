"""Value types shared by the session components."""

from __future__ import annotations

import enum
from datetime import datetime, timezone
from dataclasses import dataclass, field, replace
from typing import Any, Dict, Optional, Tuple

SYSTEM_SENDER = "system"
KIND_GROUP = "group"
KIND_PRIVATE = "private"


class ConnectionState(enum.Enum):
    IDLE = "idle"
    CONNECTING = "connecting"
    OPEN = "open"
    CLOSING = "closing"
    FAILED = "failed"


@dataclass
class ReconnectPolicy:
    max_attempts: int
    base_delay_s: float
    auth_failure_delay_s: float
    attempt_count: int = 0

    @property
    def exhausted(self) -> bool:
        return self.attempt_count >= self.max_attempts

    def reset(self) -> None:
        self.attempt_count = 0


@dataclass(frozen=True)
class ConnectionStatus:
    """What a UI needs to render the connection indicator."""

    state: ConnectionState
    retrying: bool = False
    attempt: int = 0
    retry_in_s: Optional[float] = None
    error: Optional[str] = None

    @property
    def action_required(self) -> bool:
        return self.state is ConnectionState.FAILED


@dataclass(frozen=True)
class Message:
    id: str
    sender: str
    content: str
    time: str
    to: Optional[str] = None
    group: Optional[str] = None
    is_temp: bool = False
    uuid: Optional[str] = None

    @property
    def is_system(self) -> bool:
        return self.sender == SYSTEM_SENDER

    def confirmed_as(self, confirmed: "Message") -> "Message":
        """Return ``confirmed`` carrying this entry's id so UI keys stay stable."""

        return replace(confirmed, id=self.id, is_temp=False)

    def to_dict(self) -> Dict[str, Any]:
        payload: Dict[str, Any] = {
            "id": self.id,
            "from": self.sender,
            "content": self.content,
            "time": self.time,
            "isTemp": self.is_temp,
        }
        if self.to is not None:
            payload["to"] = self.to
        if self.group is not None:
            payload["group"] = self.group
        if self.uuid is not None:
            payload["uuid"] = self.uuid
        return payload


@dataclass(frozen=True)
class Conversation:
    kind: str
    name: str

    def __post_init__(self) -> None:
        if self.kind not in {KIND_GROUP, KIND_PRIVATE}:
            raise ValueError(f"unknown conversation kind: {self.kind!r}")

    @classmethod
    def group_chat(cls, name: str) -> "Conversation":
        return cls(KIND_GROUP, name)

    @classmethod
    def private_chat(cls, name: str) -> "Conversation":
        return cls(KIND_PRIVATE, name)

    @property
    def key(self) -> str:
        prefix = "group" if self.kind == KIND_GROUP else "user"
        return f"{prefix}:{self.name}"

    def includes(self, message: Message, username: str) -> bool:
        if message.is_system:
            return False
        if self.kind == KIND_GROUP:
            return message.group == self.name
        return (message.sender == self.name and message.to == username) or (
            message.sender == username and message.to == self.name
        )


@dataclass(frozen=True)
class Friend:
    username: str
    is_online: bool


@dataclass(frozen=True)
class PresenceSnapshot:
    self_online: bool = False
    friends: Tuple[Friend, ...] = ()
    online_by_username: Dict[str, bool] = field(default_factory=dict)

    def is_online(self, username: str) -> bool:
        return self.online_by_username.get(username, False)


def utc_timestamp() -> str:
    """Millisecond-precision UTC ISO timestamp, e.g. ``2024-05-01T12:00:00.000Z``."""

    return datetime.now(timezone.utc).isoformat(timespec="milliseconds").replace("+00:00", "Z")
