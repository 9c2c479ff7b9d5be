"""HTTP client for the service-center REST API.

Only the endpoints the live notification core depends on are wrapped
here. Every call attaches the bearer credential; without a credential the
methods return a neutral default and never touch the network.
"""

from __future__ import annotations

import logging
from typing import Any

import httpx

from autocare.core.config import ApiConfig
from autocare.core.errors import AuthRejected, CountFetchError
from autocare.core.types import UserRole
from autocare.realtime.models import ChatMessagePayload

logger = logging.getLogger(__name__)

_ROLE_PRIORITY = (UserRole.EMPLOYEE, UserRole.ADMIN, UserRole.CUSTOMER)


def mask_token(token: str | None) -> str:
    if not token:
        return "none"
    return f"{token[:6]}..."


def detect_role(profile: Any) -> UserRole:
    """Pick a dashboard role from a ``/users/me`` response.

    Roles may be plain strings or ``{"name": ...}`` objects, at the top
    level or nested under ``user``.
    """
    if not isinstance(profile, dict):
        return UserRole.OTHER
    roles = profile.get("roles")
    if not roles and isinstance(profile.get("user"), dict):
        roles = profile["user"].get("roles")
    names: set[str] = set()
    for role in roles or []:
        if isinstance(role, dict):
            role = role.get("name", "")
        if isinstance(role, str):
            names.add(role.upper().removeprefix("ROLE_"))
    for candidate in _ROLE_PRIORITY:
        if candidate.value.upper() in names:
            return candidate
    return UserRole.OTHER


def _as_count(value: Any) -> int:
    if isinstance(value, dict):
        value = value.get("count", 0)
    try:
        count = int(value)
    except (TypeError, ValueError):
        return 0
    return max(0, count)


class ServiceCenterClient:
    """Async client for the notification and messaging endpoints."""

    def __init__(
        self,
        config: ApiConfig,
        token: str | None = None,
        *,
        transport: httpx.AsyncBaseTransport | None = None,
    ) -> None:
        self.config = config
        self._token = token
        headers = {"Content-Type": "application/json"}
        if token:
            headers["Authorization"] = f"Bearer {token}"
        self._http = httpx.AsyncClient(
            base_url=config.base_url,
            timeout=httpx.Timeout(config.timeout_seconds),
            headers=headers,
            transport=transport,
        )

    @property
    def has_credential(self) -> bool:
        return bool(self._token)

    def _api(self, path: str) -> str:
        return f"{self.config.api_prefix.rstrip('/')}{path}"

    # -- notifications -------------------------------------------------------

    async def unread_notification_count(self) -> int:
        """``GET /notifications/unread/count`` -> ``{"count": n}``."""
        if not self.has_credential:
            return 0
        data = await self._get_json(self._api("/notifications/unread/count"))
        return _as_count(data)

    async def mark_all_notifications_read(self) -> None:
        """``PUT /notifications/read-all``."""
        if not self.has_credential:
            return
        await self._request("PUT", self._api("/notifications/read-all"))

    # -- messages ------------------------------------------------------------

    async def unread_message_count(self, role: UserRole = UserRole.CUSTOMER) -> int:
        """Unread direct-message count for the current user.

        Employees also receive customer broadcasts, so their count is the
        sum of the per-conversation unread counters.
        """
        if not self.has_credential:
            return 0
        if role in (UserRole.EMPLOYEE, UserRole.ADMIN):
            conversations = await self._get_json(self._api("/messages/conversations"))
            if not isinstance(conversations, list):
                return 0
            return sum(
                _as_count(c.get("unreadCount", 0)) for c in conversations if isinstance(c, dict)
            )
        data = await self._get_json(self._api("/messages/unread/count"))
        return _as_count(data)

    async def mark_conversation_read(self, other_user_id: int) -> None:
        if not self.has_credential:
            return
        await self._request("PUT", self._api(f"/messages/read/{other_user_id}"))

    async def conversation_history(
        self,
        other_user_id: int | None,
        role: UserRole = UserRole.CUSTOMER,
    ) -> list[ChatMessagePayload]:
        """Previously stored messages of one conversation, oldest first."""
        if not self.has_credential:
            return []
        if role in (UserRole.EMPLOYEE, UserRole.ADMIN):
            if other_user_id is None:
                return []
            path = self._api(f"/messages/employee/customer/{other_user_id}/all")
        else:
            path = self._api("/messages/customer/all")
        data = await self._get_json(path)
        if not isinstance(data, list):
            return []
        history: list[ChatMessagePayload] = []
        for item in data:
            try:
                history.append(ChatMessagePayload.model_validate(item))
            except ValueError as exc:
                logger.warning("Skipping malformed history message: %s", exc)
        return history

    # -- identity ------------------------------------------------------------

    async def current_user(self) -> dict[str, Any]:
        if not self.has_credential:
            return {}
        data = await self._get_json("/users/me")
        return data if isinstance(data, dict) else {}

    async def current_role(self) -> UserRole:
        return detect_role(await self.current_user())

    # -- lifecycle -----------------------------------------------------------

    async def close(self) -> None:
        await self._http.aclose()

    async def __aenter__(self) -> ServiceCenterClient:
        return self

    async def __aexit__(self, *exc_info: object) -> None:
        await self.close()

    # -- internal ------------------------------------------------------------

    async def _request(self, method: str, path: str) -> httpx.Response:
        logger.debug("%s %s (token %s)", method, path, mask_token(self._token))
        try:
            resp = await self._http.request(method, path)
        except httpx.HTTPError as exc:
            raise CountFetchError(f"{method} {path} failed: {exc}") from exc
        if resp.status_code in (401, 403):
            raise AuthRejected(f"{method} {path} rejected the credential", status_code=resp.status_code)
        if resp.is_error:
            raise CountFetchError(f"{method} {path} returned {resp.status_code}")
        return resp

    async def _get_json(self, path: str) -> Any:
        resp = await self._request("GET", path)
        if resp.status_code == 204 or not resp.content:
            return None
        try:
            return resp.json()
        except ValueError as exc:
            raise CountFetchError(f"GET {path} returned invalid JSON") from exc
