"""
Telegram Channel — Telegram Bot API integration.

Provides:
- TelegramAdapter: unified (type, content) → Bot API method parameters
  (interactive button/list content becomes an inline keyboard whose
  callback_data is the option id)
- TelegramSender: one Bot API call per job, classifying permanent
  descriptions (blocked bot, missing chat, empty/oversized text) as fatal
- Inbound: text messages, media captions and callback_query presses
"""
from __future__ import annotations

from typing import Any, Optional

import httpx
import structlog

from channels.base import (
    ChannelSender, DeliveryFatalError, DeliveryTransientError, MessageAdapter,
    SendResult, UnsupportedMessageError, compact,
)
from models.schemas import ChannelType, InboundMessage, OutgoingJob
from utils.identity import split_user_id

logger = structlog.get_logger()

API_BASE_URL = "https://api.telegram.org"

METHODS = {
    "text": "sendMessage",
    "interactive": "sendMessage",
    "image": "sendPhoto",
    "audio": "sendAudio",
    "voice": "sendVoice",
    "video": "sendVideo",
    "document": "sendDocument",
    "file": "sendDocument",
    "location": "sendLocation",
}

FATAL_DESCRIPTIONS = (
    "bot was blocked by the user",
    "user is deactivated",
    "chat not found",
    "message text is empty",
    "wrong http url specified",
    "message is too long",
    "replied message not found",
)


def is_fatal_description(description: str) -> bool:
    text = (description or "").lower()
    return any(marker in text for marker in FATAL_DESCRIPTIONS)


# ══════════════════════════════════════════════════════════════
#  ADAPTER
# ══════════════════════════════════════════════════════════════

def _interactive_options(content: dict[str, Any]) -> list[tuple[str, str]]:
    """(id, title) pairs from WhatsApp-shaped or simplified interactive content."""
    action = content.get("action") or {}
    options: list[tuple[str, str]] = []
    for button in action.get("buttons") or content.get("buttons") or []:
        reply = button.get("reply") or button
        if reply.get("id") and reply.get("title"):
            options.append((str(reply["id"]), str(reply["title"])))
    sections = action.get("sections") or (content.get("list") or {}).get("sections") or []
    for section in sections:
        for row in section.get("rows") or []:
            if row.get("id") and row.get("title"):
                options.append((str(row["id"]), str(row["title"])))
    return options


class TelegramAdapter(MessageAdapter):

    channel_type = ChannelType.TELEGRAM

    def normalize_recipient(self, user_id: str) -> str:
        address, _ = split_user_id(str(user_id or ""))
        return address.strip()

    def adapt(self, message_type: str, content: Any) -> Any:
        c = content if isinstance(content, dict) else {"text": content}
        url = c.get("url") or c.get("link")

        if message_type == "text":
            return {"text": c.get("text") if c.get("text") is not None else c.get("body")}
        if message_type == "image":
            return compact({"photo": url, "caption": c.get("caption")})
        if message_type == "audio":
            return compact({"audio": url, "caption": c.get("caption"),
                            "voice": bool(c.get("isVoice") or c.get("voice")) or None})
        if message_type == "video":
            return compact({"video": url, "caption": c.get("caption")})
        if message_type in ("document", "file"):
            return compact({"document": url, "caption": c.get("caption") or c.get("filename")})
        if message_type == "location":
            return {"latitude": c.get("latitude"), "longitude": c.get("longitude")}
        if message_type == "interactive":
            body = c.get("body")
            text = (body.get("text") if isinstance(body, dict) else body) or c.get("text") or ""
            keyboard = [[{"text": title, "callback_data": option_id}]
                        for option_id, title in _interactive_options(c)]
            return {"text": text, "reply_markup": {"inline_keyboard": keyboard}}
        raise UnsupportedMessageError(message_type, self.channel_type.value)


# ══════════════════════════════════════════════════════════════
#  SENDER
# ══════════════════════════════════════════════════════════════

class TelegramSender(ChannelSender):

    channel_type = ChannelType.TELEGRAM

    def __init__(self, credentials: dict[str, Any], client: Optional[httpx.AsyncClient] = None,
                 timeout: float = 15.0, **kwargs):
        super().__init__(**kwargs)
        self._token = credentials.get("bot_token", "")
        self._client = client
        self._timeout = timeout

    async def _get_client(self) -> httpx.AsyncClient:
        if self._client is None or self._client.is_closed:
            self._client = httpx.AsyncClient(base_url=API_BASE_URL, timeout=self._timeout)
        return self._client

    def build_call(self, job: OutgoingJob) -> tuple[str, dict[str, Any]]:
        content = dict(job.content or {})
        message_type = job.type
        if message_type == "audio" and content.pop("voice", False):
            message_type = "voice"
            content["voice"] = content.pop("audio", None)
        method = METHODS.get(message_type)
        if method is None:
            raise UnsupportedMessageError(job.type, "telegram")
        payload = {"chat_id": job.to, **content}
        if job.context.get("message_id"):
            payload["reply_to_message_id"] = job.context["message_id"]
        return method, payload

    async def _do_send(self, job: OutgoingJob) -> SendResult:
        if not self._token:
            raise DeliveryFatalError("Telegram bot token is not configured", "telegram")
        method, payload = self.build_call(job)

        client = await self._get_client()
        try:
            resp = await client.post(f"{API_BASE_URL}/bot{self._token}/{method}", json=payload)
        except httpx.TransportError as e:
            raise DeliveryTransientError(f"Telegram transport error: {e}", "telegram") from e

        try:
            data = resp.json()
        except ValueError:
            data = {}
        if resp.is_success and data.get("ok"):
            result = data.get("result") or {}
            if isinstance(result, list):
                result = result[0] if result else {}
            provider_id = result.get("message_id")
            logger.info("telegram_message_sent", to=job.to, method=method, provider_id=provider_id)
            return SendResult(provider_message_id=str(provider_id) if provider_id is not None else None,
                              response=data)

        description = data.get("description") or f"{method} failed with HTTP {resp.status_code}"
        if resp.status_code in (401, 404) or is_fatal_description(description):
            raise DeliveryFatalError(description, "telegram")
        raise DeliveryTransientError(description, "telegram")

    async def aclose(self) -> None:
        if self._client is not None and not self._client.is_closed:
            await self._client.aclose()


# ══════════════════════════════════════════════════════════════
#  INBOUND
# ══════════════════════════════════════════════════════════════

def parse_inbound(update: dict[str, Any]) -> list[InboundMessage]:
    """Normalize one Bot API update; unsupported update kinds yield nothing."""
    callback = update.get("callback_query")
    if callback:
        message = callback.get("message") or {}
        chat_id = (message.get("chat") or {}).get("id") or (callback.get("from") or {}).get("id")
        data = callback.get("data")
        title = data
        for row in ((message.get("reply_markup") or {}).get("inline_keyboard") or []):
            for button in row:
                if button.get("callback_data") == data:
                    title = button.get("text", data)
        sender = callback.get("from") or {}
        return [InboundMessage(
            channel=ChannelType.TELEGRAM,
            sender=str(chat_id),
            provider_message_id=f"cb-{callback.get('id')}",
            type="interactive",
            text=title,
            id=data,
            title=title,
            sender_name=sender.get("username") or sender.get("first_name") or "",
        )]

    message = update.get("message") or update.get("edited_message")
    if not message or not (message.get("chat") or {}).get("id"):
        return []

    msg_type = "text"
    text = message.get("text")
    if text is None:
        for kind in ("photo", "document", "video", "audio", "voice", "location"):
            if kind in message:
                msg_type = kind
                break
        if msg_type == "location":
            loc = message["location"]
            text = f"{loc.get('latitude')},{loc.get('longitude')}"
        else:
            text = message.get("caption")

    sender = message.get("from") or {}
    return [InboundMessage(
        channel=ChannelType.TELEGRAM,
        sender=str(message["chat"]["id"]),
        provider_message_id=str(message.get("message_id")),
        type=msg_type,
        text=text.strip() if isinstance(text, str) else text,
        sender_name=sender.get("username") or sender.get("first_name") or "",
    )]
