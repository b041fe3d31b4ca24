"""aiohttp client for the presence and group membership endpoints."""

from __future__ import annotations

import asyncio
import logging
import re
from dataclasses import dataclass
from typing import Any, Dict, Iterable, List, Optional

import aiohttp

from .config import SessionConfig
from .errors import AuthenticationError, TransportError

logger = logging.getLogger("chat_client.rest")

GROUP_NAME_MIN = 2
GROUP_NAME_MAX = 50
_GROUP_NAME_RE = re.compile(r"^[\u4e00-\u9fa5a-zA-Z0-9_]+$")


@dataclass(frozen=True)
class RestResponse:
    status: int
    data: Any

    @property
    def ok(self) -> bool:
        return 200 <= self.status < 300

    def error_message(self, fallback: str) -> str:
        if isinstance(self.data, dict):
            for key in ("error", "message"):
                value = self.data.get(key)
                if isinstance(value, str) and value:
                    return value
        return fallback


@dataclass(frozen=True)
class GroupActionResult:
    ok: bool
    message: str
    group: Optional[str] = None


def validate_group_name(name: str, existing: Iterable[str] = ()) -> Optional[str]:
    """Return a user-facing problem with ``name`` or None when it is acceptable."""

    if not name:
        return "group name must not be empty"
    if len(name) < GROUP_NAME_MIN or len(name) > GROUP_NAME_MAX:
        return f"group name must be {GROUP_NAME_MIN}-{GROUP_NAME_MAX} characters"
    if not _GROUP_NAME_RE.match(name):
        return "group name may only contain letters, digits, CJK characters and underscores"
    if name in set(existing):
        return "group already exists"
    return None


class RestClient:
    def __init__(self, http: aiohttp.ClientSession, token: str, config: SessionConfig) -> None:
        self._http = http
        self._token = token
        self.config = config

    def _headers(self) -> Dict[str, str]:
        if not self._token or not self._token.strip():
            raise AuthenticationError("missing credentials, please log in again")
        return {
            "Authorization": self.config.authorization_header(self._token),
            "Content-Type": "application/json",
            "Accept": "application/json",
        }

    async def request(self, method: str, path: str, payload: Optional[Dict[str, Any]] = None) -> RestResponse:
        """Issue a request, retrying failures with linear backoff.

        A 401 that persists through every retry raises ``AuthenticationError``;
        other exhausted failures return the last response, or raise
        ``TransportError`` when no response was ever received.
        """

        url = f"{self.config.base_url.rstrip('/')}{path}"
        timeout = aiohttp.ClientTimeout(total=self.config.http_timeout_s)
        attempt = 0
        while True:
            logger.debug("%s %s (retry %d)", method, path, attempt)
            try:
                async with self._http.request(
                    method, url, json=payload, headers=self._headers(), timeout=timeout
                ) as response:
                    try:
                        data = await response.json(content_type=None)
                    except ValueError:
                        data = {"error": "response was not json"}
                    result = RestResponse(status=response.status, data=data)
            except (aiohttp.ClientError, asyncio.TimeoutError) as exc:
                if attempt >= self.config.fetch_retry_max:
                    raise TransportError(f"{method} {path} failed: {exc}") from exc
                logger.warning("%s %s failed (%s), retrying", method, path, exc)
            else:
                if result.ok:
                    return result
                if attempt >= self.config.fetch_retry_max:
                    if result.status == 401:
                        raise AuthenticationError("session expired, please log in again")
                    return result
                logger.warning("%s %s returned %d, retrying", method, path, result.status)
            await asyncio.sleep(self.config.fetch_retry_backoff_s * (attempt + 1))
            attempt += 1

    async def online_users(self) -> List[Dict[str, Any]]:
        response = await self.request("GET", "/api/online")
        if not response.ok or not isinstance(response.data, list):
            raise TransportError(response.error_message("presence list has unexpected format"))
        return [
            entry
            for entry in response.data
            if isinstance(entry, dict)
            and isinstance(entry.get("username"), str)
            and isinstance(entry.get("isOnline"), bool)
        ]

    async def my_groups(self) -> List[str]:
        response = await self.request("GET", "/api/groups/my")
        if not response.ok or not isinstance(response.data, dict):
            raise TransportError(response.error_message("failed to load groups"))
        groups = response.data.get("groups")
        if groups is None:
            groups = []
        if not isinstance(groups, list):
            raise TransportError("group list has unexpected format")
        return [group["name"] for group in groups if isinstance(group, dict) and isinstance(group.get("name"), str)]

    async def create_group(self, name: str, existing: Iterable[str] = ()) -> GroupActionResult:
        name = name.strip()
        problem = validate_group_name(name, existing)
        if problem is not None:
            return GroupActionResult(ok=False, message=problem)
        response = await self.request("POST", "/api/groups", {"group_name": name})
        if not response.ok:
            return GroupActionResult(ok=False, message=response.error_message("failed to create group"))
        group = response.data.get("group") if isinstance(response.data, dict) else None
        created = group.get("name") if isinstance(group, dict) and isinstance(group.get("name"), str) else name
        return GroupActionResult(ok=True, message=f"created group {created}", group=created)

    async def join_group(self, *, name: Optional[str] = None, group_id: Optional[int | str] = None) -> GroupActionResult:
        if group_id is not None:
            try:
                numeric_id = int(str(group_id).strip())
            except ValueError:
                numeric_id = 0
            if numeric_id <= 0:
                return GroupActionResult(ok=False, message="group id must be a positive integer")
            payload: Dict[str, Any] = {"group_id": numeric_id}
        else:
            name = (name or "").strip()
            if not name:
                return GroupActionResult(ok=False, message="enter a group name or id")
            if len(name) < GROUP_NAME_MIN or len(name) > GROUP_NAME_MAX:
                return GroupActionResult(
                    ok=False, message=f"group name must be {GROUP_NAME_MIN}-{GROUP_NAME_MAX} characters"
                )
            payload = {"group_name": name}
        response = await self.request("POST", "/api/groups/join", payload)
        if not response.ok:
            return GroupActionResult(ok=False, message=response.error_message("failed to join group"))
        data = response.data if isinstance(response.data, dict) else {}
        group = data.get("group")
        joined = group.get("name") if isinstance(group, dict) and isinstance(group.get("name"), str) else name
        message = data.get("message") if isinstance(data.get("message"), str) else "joined group"
        return GroupActionResult(ok=True, message=message, group=joined)
