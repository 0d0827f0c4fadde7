"""
Tests for all store backends.

Covers:
  - InMemoryStore
  - SqlStore (via in-memory SQLite + aiosqlite for test portability)
  - Store factory
  - Queue factory (memory vs redis selection)
"""
import pytest
import pytest_asyncio
from sqlalchemy.ext.asyncio import async_sessionmaker, create_async_engine
from sqlalchemy.pool import StaticPool

from core.errors import TicketConflictError
from database.session import init_db, session_scope
from database.store import SqlStore
from database.store_memory import InMemoryStore
from models.schemas import (
    Agent, AgentStatus, ChannelType, DeliveryRecord, DeliveryStatus, Handover, HandoverStatus,
    InboundMessage, OffHoursConfig, QueueBusinessHoursConfig, SessionVars, TicketStatus,
)
from support.tickets import DISTRIBUTION_SETTING, TicketDistributor

USER = "5511999990000@w.msgcli.net"


# ──────────────────────────────────────────────────────────────
#  Fixtures
# ──────────────────────────────────────────────────────────────

@pytest_asyncio.fixture
async def sql_store():
    engine = create_async_engine("sqlite+aiosqlite://", poolclass=StaticPool,
                                 connect_args={"check_same_thread": False})
    await init_db(engine)
    factory = async_sessionmaker(engine, expire_on_commit=False)
    yield SqlStore(session_scope(factory))
    await engine.dispose()


@pytest.fixture(params=["memory", "sql"])
def any_store(request, sql_store):
    return InMemoryStore() if request.param == "memory" else sql_store


def sample_vars() -> SessionVars:
    vars = SessionVars(channel="whatsapp", previous_block="menu", fila="Suporte")
    vars.handover = Handover(status=HandoverStatus.OPEN, origin_block="support", pre_msg_sent=True)
    vars.set("cpf", "12345678900")
    vars.set("lastUserMessage", "2")
    return vars


# ──────────────────────────────────────────────────────────────
#  Behaviour shared by every backend
# ──────────────────────────────────────────────────────────────

class TestSessions:
    @pytest.mark.asyncio
    async def test_missing_session_is_fresh(self, any_store):
        session = await any_store.load_session(USER)
        assert session.user_id == USER
        assert session.current_block is None
        assert session.vars.bag() == {}

    @pytest.mark.asyncio
    async def test_save_and_load_round_trip(self, any_store):
        await any_store.save_session(USER, "pricing", "flow-1", sample_vars())
        session = await any_store.load_session(USER)

        assert session.current_block == "pricing"
        assert session.last_flow_id == "flow-1"
        assert session.vars.previous_block == "menu"
        assert session.vars.last_user_message == "2"
        assert session.vars.get("cpf") == "12345678900"
        assert session.vars.handover.status == HandoverStatus.OPEN
        assert session.vars.handover.pre_msg_sent is True

    @pytest.mark.asyncio
    async def test_last_write_wins(self, any_store):
        await any_store.save_session(USER, "a", "flow-1", SessionVars(fila="A"))
        await any_store.save_session(USER, "b", "flow-1", SessionVars(fila="B"))
        session = await any_store.load_session(USER)
        assert session.current_block == "b"
        assert session.vars.fila == "B"


class TestFlowsAndSettings:
    @pytest.mark.asyncio
    async def test_active_flow(self, any_store):
        assert await any_store.get_active_flow() is None
        await any_store.save_flow({"id": "f1", "start": "a", "blocks": {}})
        await any_store.save_flow({"id": "f2", "start": "b", "blocks": {}})
        active = await any_store.get_active_flow()
        assert active["id"] == "f2"
        assert active["start"] == "b"

    @pytest.mark.asyncio
    async def test_settings(self, any_store):
        assert await any_store.get_setting(DISTRIBUTION_SETTING) is None
        await any_store.set_setting(DISTRIBUTION_SETTING, "auto")
        await any_store.set_setting(DISTRIBUTION_SETTING, "manual")
        assert await any_store.get_setting(DISTRIBUTION_SETTING) == "manual"

    @pytest.mark.asyncio
    async def test_queue_hours_case_insensitive(self, any_store):
        await any_store.upsert_queue_hours(QueueBusinessHoursConfig(
            queue_name="Suporte", timezone="America/Sao_Paulo", holidays=["2025-12-25"],
            off_hours=OffHoursConfig(message="Fechado", next="menu"),
        ))
        config = await any_store.get_queue_hours("SUPORTE")
        assert config.timezone == "America/Sao_Paulo"
        assert config.holidays == ["2025-12-25"]
        assert config.off_hours.message == "Fechado"
        assert config.off_hours.next == "menu"
        assert await any_store.get_queue_hours("Vendas") is None


class TestTickets:
    @pytest.mark.asyncio
    async def test_distribution_and_close(self, any_store):
        await any_store.set_setting(DISTRIBUTION_SETTING, "auto")
        await any_store.upsert_agent(Agent(id="A", status=AgentStatus.ONLINE, queues=["Suporte"]))
        await any_store.upsert_agent(Agent(id="B", status=AgentStatus.ONLINE, queues=["Suporte"]))
        distributor = TicketDistributor(any_store)

        first = await distributor.distribute("u1", "Suporte")
        second = await distributor.distribute("u2", "suporte")
        again = await distributor.distribute("u1", "Suporte")

        assert (first.assigned_to, second.assigned_to) == ("A", "B")
        assert again.ticket.id == first.ticket.id
        assert second.ticket_number == first.ticket_number + 1

        closed = await any_store.set_ticket_status("u1", TicketStatus.CLOSED, first.ticket_number)
        assert closed.status == TicketStatus.CLOSED
        assert await any_store.find_open_ticket("u1") is None
        assert (await any_store.find_open_ticket("u2")).ticket_number == second.ticket_number

    @pytest.mark.asyncio
    async def test_set_status_unknown_ticket(self, any_store):
        assert await any_store.set_ticket_status("nobody", TicketStatus.CLOSED) is None

    @pytest.mark.asyncio
    async def test_sql_unique_violation_is_a_ticket_conflict(self, sql_store):
        async with sql_store.ticket_transaction() as tx:
            await tx.create_ticket("u1", "Suporte", assigned_to=None)

        with pytest.raises(TicketConflictError):
            async with sql_store.ticket_transaction() as tx:
                await tx.create_ticket("u1", "Suporte", assigned_to=None)

        assert (await sql_store.find_open_ticket("u1")).ticket_number == 1
        second = await TicketDistributor(sql_store).distribute("u2", "Suporte")
        assert second.ticket_number == 2


class TestMessages:
    @pytest.mark.asyncio
    async def test_delivery_record_lifecycle(self, any_store):
        record = await any_store.create_delivery(DeliveryRecord(
            user_id=USER, channel=ChannelType.WHATSAPP, to="5511999990000",
            type="text", content={"body": "Olá"},
        ))
        loaded = await any_store.get_delivery(record.id)
        assert loaded.status == DeliveryStatus.PENDING
        assert loaded.content == {"body": "Olá"}

        await any_store.update_delivery(record.id, DeliveryStatus.SENT,
                                        provider_message_id="wamid.1", attempts=2)
        loaded = await any_store.get_delivery(record.id)
        assert loaded.status == DeliveryStatus.SENT
        assert loaded.provider_message_id == "wamid.1"
        assert loaded.attempts == 2

    @pytest.mark.asyncio
    async def test_inbound_dedup(self, any_store):
        msg = InboundMessage(channel=ChannelType.WHATSAPP, sender="5511999990000",
                             provider_message_id="wamid.in.1", text="oi")
        assert await any_store.record_inbound(msg, USER) is True
        assert await any_store.record_inbound(msg, USER) is False
        # same provider id for another identity is a different message
        assert await any_store.record_inbound(msg, "other@w.msgcli.net") is True

    @pytest.mark.asyncio
    async def test_forgotten_inbound_can_be_recorded_again(self, any_store):
        msg = InboundMessage(channel=ChannelType.WHATSAPP, sender="5511999990000",
                             provider_message_id="wamid.in.2", text="oi")
        assert await any_store.record_inbound(msg, USER) is True
        await any_store.forget_inbound(msg, USER)
        assert await any_store.record_inbound(msg, USER) is True
        assert await any_store.record_inbound(msg, USER) is False

    @pytest.mark.asyncio
    async def test_unknown_delivery(self, any_store):
        assert await any_store.get_delivery("missing") is None


# ──────────────────────────────────────────────────────────────
#  Factories
# ──────────────────────────────────────────────────────────────

class TestStoreFactory:
    def setup_method(self):
        from database.store_factory import reset_store
        reset_store()

    def teardown_method(self):
        from database.store_factory import reset_store
        reset_store()

    def test_memory_backend(self):
        from database.store_factory import create_store
        assert isinstance(create_store({"store_backend": "memory"}), InMemoryStore)

    def test_sql_backend(self):
        from database.store_factory import create_store
        assert isinstance(create_store({"store_backend": "sql"}), SqlStore)

    def test_singleton(self):
        from database.store_factory import create_store, get_store
        store = create_store()
        assert get_store() is store


class TestQueueFactory:
    def setup_method(self):
        from job_queue.message_queue import reset_message_queue
        reset_message_queue()

    def teardown_method(self):
        from job_queue.message_queue import reset_message_queue
        reset_message_queue()

    def test_memory_backend(self):
        from job_queue.message_queue import InMemoryMessageQueue, create_message_queue
        assert isinstance(create_message_queue({"backend": "memory"}), InMemoryMessageQueue)

    def test_redis_backend(self):
        from job_queue.message_queue import RedisMessageQueue, create_message_queue
        queue = create_message_queue({"backend": "redis", "redis_url": "redis://localhost:6379/5",
                                      "retry_backoff_base": 3})
        assert isinstance(queue, RedisMessageQueue)
        assert queue.retry_backoff_base == 3.0
