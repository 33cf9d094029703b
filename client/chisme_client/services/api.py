"""REST collaborator — roles, overrides, message pages, reactions and pins."""

import logging
from datetime import datetime, timezone
from typing import Any
from urllib.parse import quote

import httpx

from chisme_client.config import settings
from chisme_client.core.errors import (
    ApiError,
    AuthError,
    NotConnectedError,
    PermissionDenied,
    StaleReferenceError,
    ValidationError,
)
from chisme_client.schemas.message import Message
from chisme_client.schemas.role import ChannelOverride, OverrideUpdate, Role

logger = logging.getLogger(__name__)

TIMESTAMP_FORMAT = "%Y-%m-%d %H:%M:%S"


def _detail(response: httpx.Response) -> str:
    try:
        body = response.json()
    except ValueError:
        return response.text or response.reason_phrase
    if isinstance(body, dict):
        return str(body.get("detail") or body.get("error") or body.get("message") or body)
    return str(body)


def _raise_for_status(response: httpx.Response) -> None:
    if response.is_success:
        return
    status = response.status_code
    detail = _detail(response)
    if status == 401:
        raise AuthError(detail)
    if status == 403:
        raise PermissionDenied(detail)
    if status == 404:
        raise StaleReferenceError(detail)
    if status in (400, 422):
        raise ValidationError(detail)
    raise ApiError(status, detail)


class ApiClient:
    def __init__(
        self,
        token: str,
        server_id: str,
        base_url: str | None = None,
        timeout: float | None = None,
        transport: httpx.AsyncBaseTransport | None = None,
    ) -> None:
        self.server_id = server_id
        self._client = httpx.AsyncClient(
            base_url=base_url or settings.API_URL,
            timeout=timeout or settings.HTTP_TIMEOUT,
            headers={"Authorization": f"Bearer {token}", "X-Server-Id": server_id},
            transport=transport,
        )

    async def aclose(self) -> None:
        await self._client.aclose()

    async def _request(self, method: str, path: str, **kwargs: Any) -> Any:
        try:
            response = await self._client.request(method, path, **kwargs)
        except httpx.RequestError as exc:
            logger.warning("%s %s failed: %s", method, path, exc)
            raise NotConnectedError(f"API unreachable: {exc}") from exc
        _raise_for_status(response)
        if response.status_code == 204 or not response.content:
            return None
        return response.json()

    # ------------------------------------------------------------------
    # Roles / overrides
    # ------------------------------------------------------------------

    async def get_roles(self) -> list[Role]:
        data = await self._request("GET", "/api/roles")
        return [Role.model_validate(r) for r in data or []]

    async def get_member_roles(self, user_id: str) -> list[Role]:
        data = await self._request("GET", f"/api/users/{quote(user_id, safe='')}/roles")
        return [Role.model_validate(r) for r in data or []]

    async def get_overrides(self, channel_id: str) -> list[ChannelOverride]:
        data = await self._request("GET", f"/api/channels/{channel_id}/overrides")
        return [ChannelOverride.model_validate({"channel_id": channel_id, **o}) for o in data or []]

    async def put_override(self, channel_id: str, target_id: str, update: OverrideUpdate) -> ChannelOverride:
        data = await self._request(
            "PUT",
            f"/api/channels/{channel_id}/overrides/{target_id}",
            json=update.model_dump(mode="json"),
        )
        sent = {"channel_id": channel_id, "target_id": target_id, **update.model_dump()}
        # an empty 204 means the server stored exactly what we sent
        return ChannelOverride.model_validate({**sent, **data} if isinstance(data, dict) else sent)

    async def delete_override(self, channel_id: str, target_id: str) -> None:
        await self._request("DELETE", f"/api/channels/{channel_id}/overrides/{target_id}")

    # ------------------------------------------------------------------
    # Messages
    # ------------------------------------------------------------------

    async def get_messages(
        self,
        channel_id: str,
        limit: int | None = None,
        before: datetime | str | None = None,
    ) -> list[Message]:
        params: dict[str, Any] = {"limit": limit or settings.MESSAGES_PER_PAGE}
        if before is not None:
            # the server compares created_at as "YYYY-MM-DD HH:MM:SS" text
            if isinstance(before, datetime):
                before = before.astimezone(timezone.utc).strftime(TIMESTAMP_FORMAT)
            params["before"] = before
        data = await self._request("GET", f"/api/channels/{channel_id}/messages", params=params)
        messages = [Message.model_validate({"channel_id": channel_id, **m}) for m in data or []]
        return sorted(messages, key=lambda m: m.created_at)

    async def add_reaction(self, message_id: str, emoji: str) -> None:
        await self._request("POST", f"/api/messages/{message_id}/reactions", json={"emoji": emoji})

    async def remove_reaction(self, message_id: str, emoji: str) -> None:
        await self._request("DELETE", f"/api/messages/{message_id}/reactions/{quote(emoji, safe='')}")

    async def pin_message(self, message_id: str) -> None:
        await self._request("POST", f"/api/messages/{message_id}/pin")

    async def unpin_message(self, message_id: str) -> None:
        await self._request("DELETE", f"/api/messages/{message_id}/pin")
