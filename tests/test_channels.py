"""
Tests for the WhatsApp and Telegram channels.

Covers:
  - Adapters: unified (type, content) → wire shape, unsupported types
  - Senders: HTTP calls through httpx.MockTransport, fatal/transient classification
  - Inbound parsing of webhook bodies
  - Webhook verification helpers
"""
import hashlib
import hmac
import json

import httpx
import pytest

from channels.base import DeliveryFatalError, DeliveryTransientError, UnsupportedMessageError
from channels.telegram_adapter import TelegramAdapter, TelegramSender
from channels.telegram_adapter import parse_inbound as parse_telegram
from channels.whatsapp_adapter import (
    WhatsAppAdapter, WhatsAppSender, normalize_phone, verify_signature, verify_webhook,
)
from channels.whatsapp_adapter import parse_inbound as parse_whatsapp
from models.schemas import ChannelType, OutgoingJob
from utils.identity import channel_of, make_user_id, split_user_id

from conftest import WA_PHONE, WA_USER

BUTTONS = {
    "type": "button",
    "body": {"text": "Escolha"},
    "action": {"buttons": [
        {"type": "reply", "reply": {"id": "opt_1", "title": "Boleto"}},
        {"type": "reply", "reply": {"id": "opt_2", "title": "Atendente"}},
    ]},
}


def mock_client(handler) -> httpx.AsyncClient:
    return httpx.AsyncClient(transport=httpx.MockTransport(handler))


def job(channel=ChannelType.WHATSAPP, to=WA_PHONE, type="text", content=None, context=None) -> OutgoingJob:
    return OutgoingJob(temp_id="t1", channel=channel, to=to, user_id=f"{to}@x", type=type,
                       content=content if content is not None else {"body": "Olá"},
                       context=context or {})


# ──────────────────────────────────────────────────────────────
#  Identity helpers
# ──────────────────────────────────────────────────────────────

class TestIdentity:
    def test_make_and_split(self):
        assert make_user_id(WA_PHONE, "whatsapp") == WA_USER
        assert make_user_id("42", ChannelType.TELEGRAM) == "42@t.msgcli.net"
        assert make_user_id(WA_USER, "telegram") == WA_USER
        assert split_user_id(WA_USER) == (WA_PHONE, ChannelType.WHATSAPP)
        assert split_user_id("bare") == ("bare", None)
        assert channel_of("42@t.msgcli.net") == ChannelType.TELEGRAM
        assert channel_of("x@unknown.net") is None

    def test_normalize_phone(self):
        assert normalize_phone(WA_USER) == WA_PHONE
        assert normalize_phone("+55 (11) 99999-0000") == WA_PHONE
        assert normalize_phone("055119") == "55119"


# ──────────────────────────────────────────────────────────────
#  WhatsApp
# ──────────────────────────────────────────────────────────────

class TestWhatsAppAdapter:
    adapter = WhatsAppAdapter()

    def test_text(self):
        assert self.adapter.adapt("text", {"text": "Olá"}) == {"body": "Olá"}
        assert self.adapter.adapt("text", "plain") == {"body": "plain"}

    def test_media(self):
        assert self.adapter.adapt("image", {"url": "https://x/a.png", "caption": "c"}) == {
            "link": "https://x/a.png", "caption": "c",
        }
        assert self.adapter.adapt("audio", {"url": "https://x/a.ogg", "isVoice": True}) == {
            "link": "https://x/a.ogg", "voice": True,
        }
        assert self.adapter.adapt("file", {"url": "https://x/d.pdf", "filename": "d.pdf"}) == {
            "link": "https://x/d.pdf", "filename": "d.pdf",
        }

    def test_interactive_passthrough(self):
        assert self.adapter.adapt("interactive", BUTTONS) is BUTTONS

    def test_template_defaults_language(self):
        wire = self.adapter.adapt("template", {"templateName": "boas_vindas"})
        assert wire == {"name": "boas_vindas", "language": {"code": "pt_BR"}}

    def test_unsupported(self):
        with pytest.raises(UnsupportedMessageError):
            self.adapter.adapt("sticker", {})


class TestWhatsAppSender:
    CREDS = {"access_token": "tok", "phone_number_id": "1234567890", "api_version": "v22.0"}

    @pytest.mark.asyncio
    async def test_success(self):
        seen = {}

        def handler(request: httpx.Request) -> httpx.Response:
            seen["url"] = str(request.url)
            seen["auth"] = request.headers["Authorization"]
            seen["body"] = json.loads(request.content)
            return httpx.Response(200, json={"messages": [{"id": "wamid.abc"}]})

        sender = WhatsAppSender(self.CREDS, client=mock_client(handler))
        result = await sender.send(job(context={"message_id": "wamid.prev"}))

        assert result.provider_message_id == "wamid.abc"
        assert seen["url"] == "https://graph.facebook.com/v22.0/1234567890/messages"
        assert seen["auth"] == "Bearer tok"
        assert seen["body"] == {
            "messaging_product": "whatsapp", "to": WA_PHONE, "type": "text",
            "text": {"body": "Olá"}, "context": {"message_id": "wamid.prev"},
        }
        await sender.aclose()

    def test_file_is_sent_as_document(self):
        payload = WhatsAppSender(self.CREDS).build_payload(job(type="file", content={"link": "u"}))
        assert payload["type"] == "document"
        assert payload["document"] == {"link": "u"}

    @pytest.mark.asyncio
    @pytest.mark.parametrize("status,body,error", [
        (429, {"error": {"code": 130429, "message": "throttled"}}, DeliveryTransientError),
        (503, {}, DeliveryTransientError),
        (400, {"error": {"code": 131000, "message": "try later"}}, DeliveryTransientError),
        (400, {"error": {"code": 131026, "message": "undeliverable"}}, DeliveryFatalError),
        (401, {"error": {"code": 190, "message": "bad token"}}, DeliveryFatalError),
    ])
    async def test_error_classification(self, status, body, error):
        sender = WhatsAppSender(self.CREDS, client=mock_client(lambda r: httpx.Response(status, json=body)))
        with pytest.raises(error):
            await sender.send(job())

    @pytest.mark.asyncio
    async def test_transport_error_is_transient(self):
        def handler(request):
            raise httpx.ConnectError("refused", request=request)

        sender = WhatsAppSender(self.CREDS, client=mock_client(handler))
        with pytest.raises(DeliveryTransientError, match="transport"):
            await sender.send(job())

    @pytest.mark.asyncio
    async def test_invalid_recipient_is_fatal_without_http(self):
        calls = []
        sender = WhatsAppSender(self.CREDS, client=mock_client(lambda r: calls.append(r)))
        with pytest.raises(DeliveryFatalError, match="Invalid WhatsApp recipient"):
            await sender.send(job(to="12ab"))
        assert calls == []

    @pytest.mark.asyncio
    async def test_missing_credentials(self):
        with pytest.raises(DeliveryFatalError, match="credentials"):
            await WhatsAppSender({}).send(job())


class TestWhatsAppInbound:
    @staticmethod
    def body(*messages, contacts=None):
        return {"entry": [{"changes": [{"value": {
            "contacts": contacts or [{"wa_id": WA_PHONE, "profile": {"name": "Ana"}}],
            "messages": list(messages),
        }}]}]}

    def test_text(self):
        [msg] = parse_whatsapp(self.body(
            {"from": WA_PHONE, "id": "wamid.1", "type": "text", "text": {"body": "  oi  "}},
        ))
        assert msg.channel == ChannelType.WHATSAPP
        assert msg.sender == WA_PHONE
        assert msg.provider_message_id == "wamid.1"
        assert msg.text == "oi"
        assert msg.sender_name == "Ana"

    def test_button_and_list_replies(self):
        button, row = parse_whatsapp(self.body(
            {"from": WA_PHONE, "id": "w1", "type": "interactive",
             "interactive": {"button_reply": {"id": "opt_1", "title": "Boleto"}}},
            {"from": WA_PHONE, "id": "w2", "type": "interactive",
             "interactive": {"list_reply": {"id": "row_9", "title": "Outros"}}},
        ))
        assert (button.id, button.title, button.text) == ("opt_1", "Boleto", "Boleto")
        assert (row.id, row.title) == ("row_9", "Outros")

    def test_location_and_caption(self):
        loc, img = parse_whatsapp(self.body(
            {"from": WA_PHONE, "id": "w1", "type": "location",
             "location": {"latitude": -23.5, "longitude": -46.6}},
            {"from": WA_PHONE, "id": "w2", "type": "image", "image": {"caption": "comprovante"}},
        ))
        assert loc.text == "-23.5,-46.6"
        assert img.text == "comprovante"

    def test_status_callbacks_are_skipped(self):
        body = {"entry": [{"changes": [{"value": {"statuses": [{"id": "wamid.1", "status": "read"}]}}]}]}
        assert parse_whatsapp(body) == []
        assert parse_whatsapp({}) == []


class TestWebhookVerification:
    def test_verify_webhook(self):
        params = {"hub.mode": "subscribe", "hub.verify_token": "verify-me", "hub.challenge": "123"}
        assert verify_webhook(params, "verify-me") == "123"
        assert verify_webhook(params, "other") is None
        assert verify_webhook({**params, "hub.mode": "unsubscribe"}, "verify-me") is None
        assert verify_webhook(params, "") is None

    def test_verify_signature(self):
        body = b'{"entry": []}'
        good = "sha256=" + hmac.new(b"secret", body, hashlib.sha256).hexdigest()
        assert verify_signature(body, good, "secret")
        assert not verify_signature(body, "sha256=deadbeef", "secret")
        assert not verify_signature(body, "", "secret")
        assert verify_signature(body, "", "")


# ──────────────────────────────────────────────────────────────
#  Telegram
# ──────────────────────────────────────────────────────────────

class TestTelegramAdapter:
    adapter = TelegramAdapter()

    def test_recipient(self):
        assert self.adapter.normalize_recipient("42@t.msgcli.net") == "42"

    def test_text_and_media(self):
        assert self.adapter.adapt("text", {"text": "Olá"}) == {"text": "Olá"}
        assert self.adapter.adapt("image", {"url": "u", "caption": "c"}) == {"photo": "u", "caption": "c"}
        assert self.adapter.adapt("file", {"url": "u", "filename": "d.pdf"}) == {
            "document": "u", "caption": "d.pdf",
        }

    def test_interactive_becomes_inline_keyboard(self):
        wire = self.adapter.adapt("interactive", BUTTONS)
        assert wire == {
            "text": "Escolha",
            "reply_markup": {"inline_keyboard": [
                [{"text": "Boleto", "callback_data": "opt_1"}],
                [{"text": "Atendente", "callback_data": "opt_2"}],
            ]},
        }

    def test_list_sections(self):
        content = {"type": "list", "body": {"text": "Menu"},
                   "action": {"sections": [{"rows": [{"id": "r1", "title": "Um"}]}]}}
        wire = self.adapter.adapt("interactive", content)
        assert wire["reply_markup"]["inline_keyboard"] == [[{"text": "Um", "callback_data": "r1"}]]

    def test_template_is_unsupported(self):
        with pytest.raises(UnsupportedMessageError):
            self.adapter.adapt("template", {"templateName": "x"})


class TestTelegramSender:
    CREDS = {"bot_token": "123:ABC"}

    @pytest.mark.asyncio
    async def test_send_message(self):
        seen = {}

        def handler(request):
            seen["url"] = str(request.url)
            seen["body"] = json.loads(request.content)
            return httpx.Response(200, json={"ok": True, "result": {"message_id": 77}})

        sender = TelegramSender(self.CREDS, client=mock_client(handler))
        result = await sender.send(job(channel=ChannelType.TELEGRAM, to="42", content={"text": "Olá"},
                                       context={"message_id": 5}))
        assert result.provider_message_id == "77"
        assert seen["url"] == "https://api.telegram.org/bot123:ABC/sendMessage"
        assert seen["body"] == {"chat_id": "42", "text": "Olá", "reply_to_message_id": 5}

    def test_voice_audio_uses_send_voice(self):
        method, payload = TelegramSender(self.CREDS).build_call(
            job(channel=ChannelType.TELEGRAM, to="42", type="audio", content={"audio": "u", "voice": True}))
        assert method == "sendVoice"
        assert payload == {"chat_id": "42", "voice": "u"}

    @pytest.mark.asyncio
    @pytest.mark.parametrize("status,description,error", [
        (403, "Forbidden: bot was blocked by the user", DeliveryFatalError),
        (400, "Bad Request: chat not found", DeliveryFatalError),
        (401, "Unauthorized", DeliveryFatalError),
        (429, "Too Many Requests: retry after 5", DeliveryTransientError),
        (502, "Bad Gateway", DeliveryTransientError),
    ])
    async def test_error_classification(self, status, description, error):
        sender = TelegramSender(self.CREDS, client=mock_client(
            lambda r: httpx.Response(status, json={"ok": False, "description": description})))
        with pytest.raises(error):
            await sender.send(job(channel=ChannelType.TELEGRAM, to="42", content={"text": "x"}))


class TestTelegramInbound:
    def test_text_message(self):
        [msg] = parse_telegram({"update_id": 1, "message": {
            "message_id": 10, "chat": {"id": 42}, "from": {"username": "ana"}, "text": " oi ",
        }})
        assert msg.channel == ChannelType.TELEGRAM
        assert msg.sender == "42"
        assert msg.provider_message_id == "10"
        assert msg.text == "oi"
        assert msg.sender_name == "ana"

    def test_callback_query_uses_button_title(self):
        [msg] = parse_telegram({"update_id": 2, "callback_query": {
            "id": "987", "data": "opt_2", "from": {"id": 42, "first_name": "Ana"},
            "message": {"chat": {"id": 42}, "reply_markup": {"inline_keyboard": [
                [{"text": "Boleto", "callback_data": "opt_1"}],
                [{"text": "Atendente", "callback_data": "opt_2"}],
            ]}},
        }})
        assert msg.provider_message_id == "cb-987"
        assert (msg.id, msg.title, msg.text) == ("opt_2", "Atendente", "Atendente")
        assert msg.type == "interactive"

    def test_photo_caption(self):
        [msg] = parse_telegram({"message": {"message_id": 3, "chat": {"id": 42},
                                            "photo": [{"file_id": "f"}], "caption": "nota"}})
        assert msg.type == "photo"
        assert msg.text == "nota"

    def test_unsupported_update(self):
        assert parse_telegram({"update_id": 3, "poll": {}}) == []
