from __future__ import annotations

import os
from dataclasses import dataclass
from typing import Mapping, Optional
from urllib.parse import quote, urlsplit

CLOSE_NORMAL = 1000
CLOSE_ABNORMAL = 1006
CLOSE_POLICY_VIOLATION = 1008

DEFAULT_BASE_URL = "http://127.0.0.1:3000"


@dataclass
class SessionConfig:
    base_url: str = DEFAULT_BASE_URL
    max_reconnect_attempts: int = 8
    reconnect_delay_s: float = 3.0
    auth_failure_delay_s: float = 1.0
    connect_timeout_s: float = 12.0
    poll_interval_s: float = 5.0
    initial_poll_delay_s: float = 0.5
    min_poll_spacing_s: float = 1.0
    http_timeout_s: float = 5.0
    fetch_retry_max: int = 3
    fetch_retry_backoff_s: float = 1.0
    auth_scheme: str = "Bearer"

    @classmethod
    def from_env(cls, environ: Optional[Mapping[str, str]] = None, **overrides) -> "SessionConfig":
        """Build a config from ``CHAT_*`` variables; keyword overrides win."""

        env = os.environ if environ is None else environ
        values: dict[str, object] = {}
        if env.get("CHAT_BASE_URL"):
            values["base_url"] = env["CHAT_BASE_URL"]
        if env.get("CHAT_MAX_RECONNECT_ATTEMPTS"):
            values["max_reconnect_attempts"] = int(env["CHAT_MAX_RECONNECT_ATTEMPTS"])
        if env.get("CHAT_CONNECT_TIMEOUT"):
            values["connect_timeout_s"] = float(env["CHAT_CONNECT_TIMEOUT"])
        if env.get("CHAT_POLL_INTERVAL"):
            values["poll_interval_s"] = float(env["CHAT_POLL_INTERVAL"])
        values.update({key: value for key, value in overrides.items() if value is not None})
        return cls(**values)

    def strip_scheme(self, token: str) -> str:
        token = token.strip()
        prefix = f"{self.auth_scheme} "
        if token.startswith(prefix):
            return token[len(prefix) :].strip()
        return token

    def authorization_header(self, token: str) -> str:
        return f"{self.auth_scheme} {self.strip_scheme(token)}"

    def ws_url(self, token: str) -> str:
        """Return ``ws(s)://<host>/ws?token=<escaped>`` for the REST base URL."""

        parts = urlsplit(self.base_url)
        scheme = "wss" if parts.scheme == "https" else "ws"
        return f"{scheme}://{parts.netloc}/ws?token={quote(self.strip_scheme(token), safe='')}"


def redact_url(url: str) -> str:
    head, sep, _ = url.partition("?token=")
    return f"{head}{sep}***" if sep else url
