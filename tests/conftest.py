"""Shared test fixtures for FlowDesk."""
import os
from datetime import datetime, timezone
from pathlib import Path

# Point the settings loader at the test config before anything reads it
os.environ["FLOWDESK_CONFIG"] = str(Path(__file__).parent / "settings.test.yaml")

import pytest

from channels.base import ChannelRegistry, ChannelSender, DeliveryFatalError, DeliveryTransientError, SendResult
from channels.messenger import Messenger
from channels.telegram_adapter import TelegramAdapter
from channels.whatsapp_adapter import WhatsAppAdapter
from core.handover import HandoverManager
from core.interpreter import FlowInterpreter
from database.store_memory import InMemoryStore
from job_queue.message_queue import InMemoryMessageQueue, Queues
from models.schemas import ChannelType, InboundMessage, OutgoingJob
from support.hours_cache import BusinessHoursCache
from support.tickets import TicketDistributor

WA_PHONE = "5511999990000"
WA_USER = f"{WA_PHONE}@w.msgcli.net"

# Monday 2025-03-10 10:30 in America/Sao_Paulo
MONDAY_MORNING = datetime(2025, 3, 10, 13, 30, tzinfo=timezone.utc)


async def no_sleep(seconds: float):
    return None


class FakeSender(ChannelSender):
    """Scripted sender: pops one outcome per call (an exception instance or a provider id)."""

    channel_type = ChannelType.WHATSAPP

    def __init__(self, outcomes=None, channel_type: ChannelType = ChannelType.WHATSAPP):
        self.channel_type = channel_type
        super().__init__()
        self.outcomes = list(outcomes or [])
        self.jobs: list[OutgoingJob] = []

    async def _do_send(self, job: OutgoingJob) -> SendResult:
        self.jobs.append(job)
        outcome = self.outcomes.pop(0) if self.outcomes else "wamid.default"
        if isinstance(outcome, Exception):
            raise outcome
        return SendResult(provider_message_id=outcome)


class Outbox:
    """Reads what the messenger enqueued on the outgoing queue."""

    def __init__(self, queue: InMemoryMessageQueue):
        self.queue = queue

    async def jobs(self) -> list[OutgoingJob]:
        return [OutgoingJob.model_validate(j.payload) for j in await self.queue.peek(Queues.OUTGOING, 100)]

    async def texts(self) -> list[str]:
        out = []
        for job in await self.jobs():
            content = job.content or {}
            out.append(content.get("body") or content.get("text") or "")
        return out


# ──────────────────────────────────────────────────────────────
#  Infrastructure
# ──────────────────────────────────────────────────────────────

@pytest.fixture
def store() -> InMemoryStore:
    return InMemoryStore()


@pytest.fixture
def queue() -> InMemoryMessageQueue:
    return InMemoryMessageQueue(retry_backoff_base=0.01, promote_interval=0.01)


@pytest.fixture
def registry() -> ChannelRegistry:
    reg = ChannelRegistry()
    reg.register(WhatsAppAdapter())
    reg.register(TelegramAdapter())
    return reg


@pytest.fixture
def messenger(store, queue, registry) -> Messenger:
    return Messenger(store, queue, registry, max_attempts=3)


@pytest.fixture
def outbox(queue) -> Outbox:
    return Outbox(queue)


@pytest.fixture
def handover(store, messenger) -> HandoverManager:
    return HandoverManager(
        store,
        messenger,
        TicketDistributor(store),
        BusinessHoursCache(store, ttl_seconds=0),
        timezone_name="America/Sao_Paulo",
        clock=lambda: MONDAY_MORNING,
        sleep=no_sleep,
    )


@pytest.fixture
def interpreter(store, messenger, handover, queue) -> FlowInterpreter:
    return FlowInterpreter(store, messenger, handover, queue=queue, sleep=no_sleep)


@pytest.fixture
def make_inbound():
    def _make(text=None, reply_id=None, title=None, message_id=None, sender=WA_PHONE,
              channel=ChannelType.WHATSAPP, msg_type="text"):
        fields = dict(channel=channel, sender=sender, type=msg_type, text=text, id=reply_id, title=title)
        if message_id:
            fields["provider_message_id"] = message_id
        return InboundMessage(**fields)
    return _make


# ──────────────────────────────────────────────────────────────
#  Flows
# ──────────────────────────────────────────────────────────────

@pytest.fixture
def support_flow() -> dict:
    """Menu → pricing / human support, with an error block and a farewell block."""
    return {
        "id": "flow-support",
        "name": "Atendimento",
        "start": "welcome",
        "blocks": {
            "welcome": {
                "type": "text",
                "content": "Olá {{userName}}! Digite 1 para suporte ou 2 para preços.",
                "awaitResponse": True,
                "actions": [
                    {"conditions": [{"type": "equals", "variable": "lastUserMessage", "value": "1|suporte"}],
                     "next": "support"},
                    {"conditions": [{"type": "equals", "variable": "lastUserMessage", "value": "2|preços"}],
                     "next": "pricing"},
                ],
                "defaultNext": "onerror",
            },
            "pricing": {
                "type": "text",
                "content": "Planos a partir de R$ 49,90.",
                "defaultNext": "despedida",
            },
            "support": {
                "type": "human",
                "content": {"queueName": "Suporte"},
                "defaultNext": "despedida",
            },
            "onerror": {
                "type": "text",
                "label": "onerror",
                "content": "Desculpe, não entendi.",
            },
            "despedida": {
                "type": "text",
                "content": "Obrigado pelo contato!",
                "awaitResponse": True,
            },
        },
    }


@pytest.fixture
def menu_flow() -> dict:
    """Interactive button menu answered by id or title."""
    return {
        "id": "flow-menu",
        "start": "menu",
        "blocks": {
            "menu": {
                "type": "interactive",
                "awaitResponse": True,
                "content": {
                    "type": "button",
                    "body": {"text": "Escolha uma opção"},
                    "action": {"buttons": [
                        {"type": "reply", "reply": {"id": "opt_boleto", "title": "2ª via de boleto"}},
                        {"type": "reply", "reply": {"id": "opt_atendente", "title": "Falar com atendente"}},
                    ]},
                },
                "actions": [
                    {"conditions": [{"type": "equals", "variable": "lastUserMessage", "value": "opt_boleto"}],
                     "next": "boleto"},
                    {"conditions": [{"type": "equals", "variable": "lastUserMessage",
                                     "value": "Falar com atendente"}],
                     "next": "agent"},
                ],
            },
            "boleto": {"type": "text", "content": "Segue seu boleto."},
            "agent": {"type": "text", "content": "Transferindo..."},
        },
    }
