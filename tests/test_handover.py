"""
Tests for human handoff: business-hours gate, pre-handoff notice,
ticket distribution and the return path after the ticket is closed.
"""
import pytest

from core.flow import TurnContext, parse_flow
from models.schemas import (
    Agent, AgentStatus, ConfiguredMessage, HandoverStatus, HoursWindow, OffHoursConfig,
    PreHumanConfig, QueueBusinessHoursConfig,
)
from support.business_hours import REASON_CLOSED, REASON_HOLIDAY
from support.tickets import DISTRIBUTION_SETTING

from conftest import WA_USER

BASE = {"userName": "Ana", "channel": "whatsapp"}
WELCOME = "Olá Ana! Digite 1 para suporte ou 2 para preços."
SATURDAY_ONLY = {"sat": [HoursWindow(start="09:00", end="12:00")]}


async def ask_for_support(interpreter, make_inbound, flow):
    await interpreter.run_turn(make_inbound("oi"), flow, BASE, WA_USER)
    return await interpreter.run_turn(make_inbound("1"), flow, BASE, WA_USER)


async def close_handover(store):
    session = await store.load_session(WA_USER)
    session.vars.handover = session.vars.handover.model_copy(update={"status": HandoverStatus.CLOSED})
    await store.save_session(WA_USER, session.current_block, session.last_flow_id, session.vars)


# ──────────────────────────────────────────────────────────────
#  Open queue
# ──────────────────────────────────────────────────────────────

class TestOpenQueue:
    @pytest.mark.asyncio
    async def test_opens_ticket_and_parks_session(self, interpreter, store, outbox, make_inbound, support_flow):
        await ask_for_support(interpreter, make_inbound, support_flow)

        session = await store.load_session(WA_USER)
        assert session.current_block == "human"
        assert session.vars.fila == "Suporte"
        assert session.vars.ticket_number == 1
        assert session.vars.protocol == "PRT-20250310-1030-1"
        assert session.vars.offhours is False
        assert session.vars.handover.status == HandoverStatus.OPEN
        assert session.vars.handover.origin_block == "support"
        assert session.vars.previous_block == "support"

        ticket = await store.find_open_ticket(WA_USER)
        assert ticket.fila == "Suporte"
        assert ticket.assigned_to is None
        assert await outbox.texts() == [WELCOME]

    @pytest.mark.asyncio
    async def test_auto_distribution_assigns_agent(self, interpreter, store, make_inbound, support_flow):
        await store.set_setting(DISTRIBUTION_SETTING, "auto")
        await store.upsert_agent(Agent(id="agent-1", status=AgentStatus.ONLINE, queues=["Suporte"]))
        await ask_for_support(interpreter, make_inbound, support_flow)
        assert (await store.find_open_ticket(WA_USER)).assigned_to == "agent-1"

    @pytest.mark.asyncio
    async def test_messages_while_parked_do_not_duplicate_tickets(
        self, interpreter, store, outbox, make_inbound, support_flow,
    ):
        await ask_for_support(interpreter, make_inbound, support_flow)
        assert await interpreter.run_turn(make_inbound("alguém aí?"), support_flow, BASE, WA_USER) is None
        assert await interpreter.run_turn(make_inbound("olá?"), support_flow, BASE, WA_USER) is None

        assert store.stats()["tickets"] == 1
        assert (await store.load_session(WA_USER)).current_block == "human"
        assert await outbox.texts() == [WELCOME]

    @pytest.mark.asyncio
    async def test_pre_handoff_notice_is_sent_once(self, interpreter, handover, store, outbox, make_inbound,
                                                   support_flow):
        await store.upsert_queue_hours(QueueBusinessHoursConfig(
            queue_name="Suporte",
            pre_human=PreHumanConfig(enabled=True, message="Aguarde, {{userName}}. Fila {{fila}}.", delayMs=500),
        ))
        await ask_for_support(interpreter, make_inbound, support_flow)

        flow = parse_flow(support_flow)
        session = await store.load_session(WA_USER)
        ctx = TurnContext(user_id=WA_USER, flow=flow, vars=session.vars, channel="whatsapp")
        await handover.enter(ctx, "support", flow.blocks["support"])

        assert await outbox.texts() == [WELCOME, "Aguarde, Ana. Fila Suporte."]
        assert (await store.load_session(WA_USER)).vars.handover.pre_msg_sent is True

    @pytest.mark.asyncio
    async def test_disabled_pre_handoff_notice(self, interpreter, store, outbox, make_inbound, support_flow):
        await store.upsert_queue_hours(QueueBusinessHoursConfig(
            queue_name="Suporte", pre_human=PreHumanConfig(enabled=False, message="Aguarde"),
        ))
        await ask_for_support(interpreter, make_inbound, support_flow)
        assert await outbox.texts() == [WELCOME]


# ──────────────────────────────────────────────────────────────
#  Closed queue
# ──────────────────────────────────────────────────────────────

class TestOffHours:
    @pytest.mark.asyncio
    async def test_closed_routes_to_configured_block(self, interpreter, store, outbox, make_inbound,
                                                     support_flow):
        await store.upsert_queue_hours(QueueBusinessHoursConfig(
            queue_name="Suporte", timezone="America/Sao_Paulo", hours=SATURDAY_ONLY,
            off_hours=OffHoursConfig(message="Fila {{fila}} fechada agora.", next="pricing"),
        ))
        await ask_for_support(interpreter, make_inbound, support_flow)

        assert await outbox.texts() == [
            WELCOME, "Fila Suporte fechada agora.", "Planos a partir de R$ 49,90.", "Obrigado pelo contato!",
        ]
        session = await store.load_session(WA_USER)
        assert session.vars.offhours is True
        assert session.vars.offhours_reason == REASON_CLOSED
        assert session.current_block == "despedida"
        assert store.stats()["tickets"] == 0

    @pytest.mark.asyncio
    async def test_holiday_variant(self, interpreter, store, outbox, make_inbound, support_flow):
        await store.upsert_queue_hours(QueueBusinessHoursConfig(
            queue_name="Suporte", timezone="America/Sao_Paulo",
            hours={"mon": [HoursWindow(start="09:00", end="18:00")]},
            holidays=["2025-03-10"],
            off_hours=OffHoursConfig(
                holiday=ConfiguredMessage(message="Hoje é feriado."),
                closed=ConfiguredMessage(message="Estamos fechados."),
                next="pricing",
            ),
        ))
        await ask_for_support(interpreter, make_inbound, support_flow)

        texts = await outbox.texts()
        assert texts[1] == "Hoje é feriado."
        assert "Estamos fechados." not in texts
        assert (await store.load_session(WA_USER)).vars.offhours_reason == REASON_HOLIDAY

    @pytest.mark.asyncio
    async def test_label_lookup_for_next_block(self, interpreter, store, outbox, make_inbound, support_flow):
        support_flow["blocks"]["pricing"]["label"] = "Tabela de preços"
        await store.upsert_queue_hours(QueueBusinessHoursConfig(
            queue_name="Suporte", timezone="America/Sao_Paulo", hours=SATURDAY_ONLY,
            off_hours=OffHoursConfig(message="Fechado.", next="Tabela de preços"),
        ))
        await ask_for_support(interpreter, make_inbound, support_flow)
        assert (await outbox.texts())[2] == "Planos a partir de R$ 49,90."

    @pytest.mark.asyncio
    async def test_without_message_or_route_uses_fallbacks(self, interpreter, store, outbox, make_inbound,
                                                           support_flow):
        await store.upsert_queue_hours(QueueBusinessHoursConfig(
            queue_name="Suporte", timezone="America/Sao_Paulo", hours=SATURDAY_ONLY,
        ))
        await ask_for_support(interpreter, make_inbound, support_flow)

        assert await outbox.texts() == [
            WELCOME,
            "Nosso atendimento está fora do horário no momento.",
            "Desculpe, não entendi.",
            WELCOME,
        ]
        assert (await store.load_session(WA_USER)).current_block == "welcome"


# ──────────────────────────────────────────────────────────────
#  Return to the bot
# ──────────────────────────────────────────────────────────────

class TestReturnFromHuman:
    @pytest.mark.asyncio
    async def test_resumes_from_origin_next_block(self, interpreter, store, outbox, make_inbound, support_flow):
        await ask_for_support(interpreter, make_inbound, support_flow)
        await close_handover(store)

        record = await interpreter.run_turn(make_inbound("voltei"), support_flow, BASE, WA_USER)

        assert record is not None
        assert await outbox.texts() == [WELCOME, "Obrigado pelo contato!"]
        assert (await store.load_session(WA_USER)).current_block == "despedida"

    @pytest.mark.asyncio
    async def test_falls_back_to_human_return_block(self, interpreter, store, outbox, make_inbound, support_flow):
        del support_flow["blocks"]["support"]["defaultNext"]
        support_flow["blocks"]["volta"] = {"type": "text", "label": "onhumanreturn",
                                           "content": "Atendimento encerrado, {{userName}}."}
        await ask_for_support(interpreter, make_inbound, support_flow)
        await close_handover(store)

        await interpreter.run_turn(None, support_flow, BASE, WA_USER)
        assert (await outbox.texts())[-1] == "Atendimento encerrado, Ana."
