"""
WhatsApp Channel — WhatsApp Business Cloud API integration.

Provides:
- Recipient normalization (user id suffix stripped, digits only, E.164 length check)
- Webhook verification (hub.verify_token challenge, X-Hub-Signature-256)
- WhatsAppAdapter: unified (type, content) → Graph API message object
- WhatsAppSender: POST /{phone_number_id}/messages with fatal/transient classification
- Inbound: text, interactive (button_reply, list_reply), button, media captions, location
"""
from __future__ import annotations

import hashlib
import hmac
import re
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

GRAPH_BASE_URL = "https://graph.facebook.com"

# Cloud API error codes that are worth retrying (throttling / temporary outage)
TRANSIENT_ERROR_CODES = {1, 2, 4, 80007, 130429, 131000, 131016, 131048, 131056}

_E164 = re.compile(r"^\d{7,15}$")


def normalize_phone(value: str) -> str:
    """Strip the user id suffix, keep digits only, drop leading zeros."""
    address, _ = split_user_id(str(value or ""))
    return re.sub(r"\D", "", address).lstrip("0")


def verify_webhook(params: dict[str, Any], verify_token: str) -> Optional[str]:
    """
    Verify the WhatsApp webhook subscription.
    Returns the challenge string on success, None on failure.
    """
    mode = params.get("hub.mode", "")
    token = params.get("hub.verify_token", "")
    challenge = params.get("hub.challenge", "")

    if mode == "subscribe" and verify_token and token == verify_token:
        return challenge
    return None


def verify_signature(body: bytes, signature: str, app_secret: str) -> bool:
    """Check the X-Hub-Signature-256 header. Always passes when no app secret is configured."""
    if not app_secret:
        return True
    expected = "sha256=" + hmac.new(app_secret.encode(), body, hashlib.sha256).hexdigest()
    return hmac.compare_digest(expected, signature or "")


# ══════════════════════════════════════════════════════════════
#  ADAPTER
# ══════════════════════════════════════════════════════════════

class WhatsAppAdapter(MessageAdapter):

    channel_type = ChannelType.WHATSAPP

    def normalize_recipient(self, user_id: str) -> str:
        return normalize_phone(user_id)

    def adapt(self, message_type: str, content: Any) -> Any:
        c = content if isinstance(content, dict) else {"text": content}
        url = c.get("url") or c.get("link")

        if message_type == "text":
            return {"body": c.get("text") if c.get("text") is not None else c.get("body")}
        if message_type == "image":
            return compact({"link": url, "caption": c.get("caption")})
        if message_type == "audio":
            return compact({"link": url, "voice": bool(c.get("isVoice") or c.get("voice")) or None})
        if message_type == "video":
            return compact({"link": url, "caption": c.get("caption")})
        if message_type in ("document", "file"):
            return compact({"link": url, "filename": c.get("filename"), "caption": c.get("caption")})
        if message_type == "location":
            return compact({
                "latitude": c.get("latitude"), "longitude": c.get("longitude"),
                "name": c.get("name"), "address": c.get("address"),
            })
        if message_type == "interactive":
            return content
        if message_type == "template":
            return compact({
                "name": c.get("templateName") or c.get("name"),
                "language": {"code": c.get("languageCode") or (c.get("language") or {}).get("code") or "pt_BR"},
                "components": c.get("components"),
            })
        raise UnsupportedMessageError(message_type, self.channel_type.value)


# ══════════════════════════════════════════════════════════════
#  SENDER
# ══════════════════════════════════════════════════════════════

class WhatsAppSender(ChannelSender):
    """Delivers adapted messages through the Graph API."""

    channel_type = ChannelType.WHATSAPP

    def __init__(self, credentials: dict[str, Any], client: Optional[httpx.AsyncClient] = None,
                 timeout: float = 15.0, **kwargs):
        super().__init__(**kwargs)
        self._phone_number_id = credentials.get("phone_number_id", "")
        self._access_token = credentials.get("access_token", "")
        self._api_version = credentials.get("api_version", "v22.0")
        self._client = client
        self._timeout = timeout

    async def _get_client(self) -> httpx.AsyncClient:
        if self._client is None or self._client.is_closed:
            self._client = httpx.AsyncClient(base_url=GRAPH_BASE_URL, timeout=self._timeout)
        return self._client

    def build_payload(self, job: OutgoingJob) -> dict[str, Any]:
        message_type = "document" if job.type == "file" else job.type
        payload = {
            "messaging_product": "whatsapp",
            "to": job.to,
            "type": message_type,
            message_type: job.content,
        }
        if job.context.get("message_id"):
            payload["context"] = {"message_id": job.context["message_id"]}
        return payload

    async def _do_send(self, job: OutgoingJob) -> SendResult:
        if not self._phone_number_id or not self._access_token:
            raise DeliveryFatalError("WhatsApp credentials are not configured", "whatsapp")
        if not _E164.match(job.to or ""):
            raise DeliveryFatalError(f"Invalid WhatsApp recipient: {job.to!r}", "whatsapp")

        client = await self._get_client()
        try:
            resp = await client.post(
                f"{GRAPH_BASE_URL}/{self._api_version}/{self._phone_number_id}/messages",
                json=self.build_payload(job),
                headers={"Authorization": f"Bearer {self._access_token}"},
            )
        except httpx.TransportError as e:
            raise DeliveryTransientError(f"WhatsApp transport error: {e}", "whatsapp") from e

        if resp.is_success:
            data = resp.json()
            messages = data.get("messages") or [{}]
            provider_id = messages[0].get("id")
            logger.info("whatsapp_message_sent", to=job.to, type=job.type, provider_id=provider_id)
            return SendResult(provider_message_id=provider_id, response=data)

        raise self._classify(resp)

    @staticmethod
    def _classify(resp: httpx.Response) -> Exception:
        try:
            error = resp.json().get("error", {})
        except ValueError:
            error = {}
        code = error.get("code")
        message = f"WhatsApp {resp.status_code}: {error.get('message') or resp.text[:200]}"

        if resp.status_code == 429 or resp.status_code >= 500 or code in TRANSIENT_ERROR_CODES:
            return DeliveryTransientError(message, "whatsapp")
        return DeliveryFatalError(message, "whatsapp")

    async def aclose(self) -> None:
        if self._client is not None and not self._client.is_closed:
            await self._client.aclose()


# ══════════════════════════════════════════════════════════════
#  INBOUND
# ══════════════════════════════════════════════════════════════

def _parse_message(msg: dict[str, Any], sender_name: str) -> InboundMessage:
    msg_type = msg.get("type", "text")
    text = reply_id = title = None

    if msg_type == "text":
        text = (msg.get("text") or {}).get("body", "").strip()
    elif msg_type == "interactive":
        interactive = msg.get("interactive") or {}
        reply = interactive.get("button_reply") or interactive.get("list_reply")
        if reply:
            reply_id, title = reply.get("id"), reply.get("title")
            text = title
    elif msg_type == "button":
        button = msg.get("button") or {}
        reply_id, title = button.get("payload"), button.get("text")
        text = title
    elif msg_type in ("image", "video", "document"):
        media = msg.get(msg_type) or {}
        text = media.get("caption") or media.get("filename")
    elif msg_type == "location":
        loc = msg.get("location") or {}
        text = f"{loc.get('latitude')},{loc.get('longitude')}"
    elif (msg.get("text") or {}).get("body"):
        text = msg["text"]["body"].strip()

    fields = {
        "channel": ChannelType.WHATSAPP,
        "sender": msg.get("from", ""),
        "type": msg_type,
        "text": text,
        "id": reply_id,
        "title": title,
        "sender_name": sender_name,
    }
    if msg.get("id"):
        fields["provider_message_id"] = msg["id"]
    return InboundMessage(**fields)


def parse_inbound(payload: dict[str, Any]) -> list[InboundMessage]:
    """Extract every user message from a Cloud API webhook body (status callbacks are skipped)."""
    messages: list[InboundMessage] = []
    for entry in payload.get("entry") or []:
        for change in entry.get("changes") or []:
            value = change.get("value") or {}
            names = {
                c.get("wa_id"): (c.get("profile") or {}).get("name", "")
                for c in value.get("contacts") or []
            }
            for msg in value.get("messages") or []:
                if not msg.get("from"):
                    continue
                messages.append(_parse_message(msg, names.get(msg.get("from"), "")))
    return messages
