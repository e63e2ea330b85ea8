"""
Telegram Bot API client — the three platform calls the gatekeeper needs.

  getChatMember   → MembershipRecord (role + bot flag)
  banChatMember   → removal from the gated group
  sendMessage     → sentiment alert delivery

Every failure surfaces as PlatformApiError. Nothing here retries: removals
and deliveries are at-most-once.
"""
from __future__ import annotations

import structlog
from typing import Any, Optional, Union

import httpx

from core.errors import PlatformApiError
from models.schemas import MemberRole, MembershipRecord

logger = structlog.get_logger()

SUPERGROUP_PREFIX = "-100"

ChatId = Union[str, int]

_ROLE_BY_STATUS = {
    "creator": MemberRole.OWNER,
    "administrator": MemberRole.ADMINISTRATOR,
}


def _user_id(user_id: ChatId, method: str) -> int:
    try:
        return int(user_id)
    except (TypeError, ValueError) as e:
        raise PlatformApiError(f"Invalid user id {user_id!r}", method=method) from e


def normalize_chat_id(chat_id: ChatId) -> str:
    """
    Supergroup ids must carry the -100 prefix. An id that already has it is
    returned unchanged; otherwise any leading sign is dropped and the prefix added.
    """
    value = str(chat_id).strip()
    if value.startswith(SUPERGROUP_PREFIX):
        return value
    return SUPERGROUP_PREFIX + value.lstrip("-+")


class TelegramClient:
    """Minimal async Bot API client over httpx."""

    def __init__(self, bot_token: str, api_base_url: str = "https://api.telegram.org",
                 timeout: float = 10.0, client: Optional[httpx.AsyncClient] = None):
        self._bot_token = bot_token
        self._api_base_url = api_base_url.rstrip("/")
        self._timeout = timeout
        self.client: Optional[httpx.AsyncClient] = client

    @property
    def configured(self) -> bool:
        return bool(self._bot_token)

    async def _get_client(self) -> httpx.AsyncClient:
        if self.client is None or self.client.is_closed:
            self.client = httpx.AsyncClient(
                base_url=f"{self._api_base_url}/bot{self._bot_token}/",
                timeout=self._timeout,
            )
        return self.client

    async def _call(self, method: str, payload: dict[str, Any]) -> Any:
        if not self._bot_token:
            raise PlatformApiError("Telegram bot token is not configured", method=method)

        client = await self._get_client()
        try:
            response = await client.post(method, json=payload)
        except httpx.HTTPError as e:
            raise PlatformApiError(f"{method} request failed: {e}", method=method) from e

        try:
            body = response.json()
        except ValueError:
            body = {}
        if not isinstance(body, dict):
            body = {}

        if response.is_error or not body.get("ok", False):
            description = body.get("description", response.reason_phrase)
            retry_after = (body.get("parameters") or {}).get("retry_after")
            raise PlatformApiError(
                f"{method} failed ({response.status_code}): {description}",
                method=method,
                status_code=response.status_code,
                description=description,
                retry_after=retry_after,
            )
        return body.get("result")

    async def get_chat_member(self, chat_id: ChatId, user_id: ChatId) -> MembershipRecord:
        result = await self._call("getChatMember", {"chat_id": chat_id, "user_id": _user_id(user_id, "getChatMember")})
        if not isinstance(result, dict):
            raise PlatformApiError("getChatMember returned no member", method="getChatMember")
        status = result.get("status", "")
        user = result.get("user") or {}
        return MembershipRecord(
            role=_ROLE_BY_STATUS.get(status, MemberRole.MEMBER),
            is_bot_account=bool(user.get("is_bot", False)),
            status=status,
        )

    async def ban_chat_member(self, chat_id: ChatId, user_id: ChatId) -> bool:
        result = await self._call("banChatMember", {"chat_id": chat_id, "user_id": _user_id(user_id, "banChatMember")})
        logger.info("telegram_member_banned", chat_id=str(chat_id), user_id=str(user_id))
        return bool(result)

    async def send_message(self, chat_id: ChatId, text: str, parse_mode: str = "HTML",
                           disable_web_page_preview: bool = True) -> dict[str, Any]:
        result = await self._call("sendMessage", {
            "chat_id": chat_id,
            "text": text,
            "parse_mode": parse_mode,
            "disable_web_page_preview": disable_web_page_preview,
        })
        return result if isinstance(result, dict) else {}

    async def close(self):
        if self.client:
            await self.client.aclose()
