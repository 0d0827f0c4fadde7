"""
SqlStore — Portable SQL queries for PostgreSQL, MySQL, SQLite.

Every public method opens its own transactional session scope. Ticket
distribution runs its reads and the insert inside ONE scope, taking row
locks (SELECT ... FOR UPDATE) where the dialect supports them.
"""
from __future__ import annotations

from contextlib import AbstractAsyncContextManager, asynccontextmanager
from typing import Any, AsyncIterator, Callable, Optional

import structlog
from sqlalchemy import and_, delete, func, select, update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession

from core.errors import TicketConflictError
from database.models import (
    AgentRow, FlowRow, MessageRow, QueueHoursRow, SessionRow, SettingRow, TicketRow,
    _new_id, _utcnow,
)
from database.session import get_session
from database.store_base import BaseStore, TicketTransaction
from models.schemas import (
    Agent, AgentStatus, DeliveryRecord, DeliveryStatus, InboundMessage,
    QueueBusinessHoursConfig, Session, SessionVars, Ticket, TicketStatus,
)

logger = structlog.get_logger()

SessionScope = Callable[[], AbstractAsyncContextManager[AsyncSession]]


def _ticket_from_row(row: TicketRow) -> Ticket:
    return Ticket(
        id=row.id, user_id=row.user_id, fila=row.fila,
        status=TicketStatus(row.status), assigned_to=row.assigned_to,
        ticket_number=row.ticket_number, created_at=row.created_at,
    )


class _SqlTicketTransaction(TicketTransaction):

    def __init__(self, db: AsyncSession):
        self._db = db

    async def find_open_ticket(self, user_id: str) -> Optional[Ticket]:
        stmt = (
            select(TicketRow)
            .where(and_(TicketRow.user_id == user_id, TicketRow.status == TicketStatus.OPEN.value))
            .limit(1)
            .with_for_update()
        )
        row = (await self._db.execute(stmt)).scalar_one_or_none()
        return _ticket_from_row(row) if row else None

    async def get_setting(self, key: str) -> Optional[str]:
        row = await self._db.get(SettingRow, key)
        return row.value if row else None

    async def online_agents(self, queue_name: str) -> list[Agent]:
        # Queue membership lives in a JSON column; filter in Python for portability
        stmt = (
            select(AgentRow)
            .where(AgentRow.status == AgentStatus.ONLINE.value)
            .order_by(AgentRow.id)
            .with_for_update()
        )
        target = queue_name.lower()
        agents = []
        for row in (await self._db.execute(stmt)).scalars():
            queues = row.queues or []
            if target in {str(q).lower() for q in queues}:
                agents.append(Agent(id=row.id, name=row.name,
                                    status=AgentStatus(row.status), queues=list(queues)))
        return agents

    async def open_ticket_counts(self, agent_ids: list[str]) -> dict[str, int]:
        counts = {agent_id: 0 for agent_id in agent_ids}
        if not agent_ids:
            return counts
        stmt = (
            select(TicketRow.assigned_to, func.count(TicketRow.id))
            .where(and_(
                TicketRow.status == TicketStatus.OPEN.value,
                TicketRow.assigned_to.in_(agent_ids),
            ))
            .group_by(TicketRow.assigned_to)
        )
        for agent_id, count in (await self._db.execute(stmt)).all():
            counts[agent_id] = int(count)
        return counts

    async def create_ticket(self, user_id: str, fila: str, assigned_to: Optional[str]) -> Ticket:
        next_number = (await self._db.execute(
            select(func.coalesce(func.max(TicketRow.ticket_number), 0) + 1)
        )).scalar_one()
        row = TicketRow(
            id=_new_id(), ticket_number=int(next_number), user_id=user_id,
            fila=fila, status=TicketStatus.OPEN.value, assigned_to=assigned_to,
            created_at=_utcnow(),
        )
        self._db.add(row)
        try:
            await self._db.flush()
        except IntegrityError as e:
            logger.info("ticket_number_conflict", user_id=user_id, ticket_number=row.ticket_number)
            raise TicketConflictError(str(e.orig)) from e
        return _ticket_from_row(row)


class SqlStore(BaseStore):
    """
    Persistent store backed by any SQLAlchemy-supported database.
    Works with PostgreSQL, MySQL 8+, and SQLite.
    """

    def __init__(self, session_scope: Optional[SessionScope] = None):
        self._scope = session_scope or get_session

    # ── Sessions ──────────────────────────────────────────

    async def load_session(self, user_id: str) -> Session:
        async with self._scope() as db:
            row = await db.get(SessionRow, user_id)
            if row is None:
                return Session(user_id=user_id)
            return Session(
                user_id=row.user_id,
                current_block=row.current_block,
                last_flow_id=row.last_flow_id,
                vars=SessionVars.model_validate(row.vars or {}),
                updated_at=row.updated_at,
            )

    async def save_session(self, user_id: str, current_block: Optional[str],
                           flow_id: Optional[str], vars: SessionVars) -> None:
        async with self._scope() as db:
            row = await db.get(SessionRow, user_id)
            if row is None:
                db.add(SessionRow(
                    user_id=user_id, current_block=current_block,
                    last_flow_id=flow_id, vars=vars.bag(), updated_at=_utcnow(),
                ))
            else:
                row.current_block = current_block
                row.last_flow_id = flow_id
                row.vars = vars.bag()
                row.updated_at = _utcnow()

    # ── Flows ─────────────────────────────────────────────

    async def get_active_flow(self) -> Optional[dict[str, Any]]:
        async with self._scope() as db:
            stmt = (
                select(FlowRow)
                .where(FlowRow.active.is_(True))
                .order_by(FlowRow.created_at.desc())
                .limit(1)
            )
            row = (await db.execute(stmt)).scalar_one_or_none()
            return {**row.data, "id": row.id} if row else None

    async def save_flow(self, data: dict[str, Any], active: bool = True) -> str:
        async with self._scope() as db:
            if active:
                await db.execute(update(FlowRow).values(active=False))
            flow_id = str(data.get("id") or _new_id())
            row = await db.get(FlowRow, flow_id)
            if row is None:
                db.add(FlowRow(id=flow_id, name=data.get("name", ""), data=data, active=active))
            else:
                row.data = data
                row.active = active
            return flow_id

    # ── Settings ──────────────────────────────────────────

    async def get_setting(self, key: str) -> Optional[str]:
        async with self._scope() as db:
            row = await db.get(SettingRow, key)
            return row.value if row else None

    async def set_setting(self, key: str, value: str) -> None:
        async with self._scope() as db:
            row = await db.get(SettingRow, key)
            if row is None:
                db.add(SettingRow(key=key, value=value))
            else:
                row.value = value

    # ── Support ───────────────────────────────────────────

    async def get_queue_hours(self, queue_name: str) -> Optional[QueueBusinessHoursConfig]:
        async with self._scope() as db:
            stmt = (
                select(QueueHoursRow)
                .where(func.lower(QueueHoursRow.queue_name) == queue_name.lower())
                .limit(1)
            )
            row = (await db.execute(stmt)).scalar_one_or_none()
            if row is None:
                return None
            return QueueBusinessHoursConfig.model_validate({
                "queue_name": row.queue_name,
                "timezone": row.timezone,
                "hours": row.hours or {},
                "holidays": row.holidays or [],
                "exceptions": row.exceptions or {},
                "pre_human": row.pre_human,
                "off_hours": row.off_hours,
            })

    async def upsert_queue_hours(self, config: QueueBusinessHoursConfig) -> None:
        data = config.model_dump(mode="json", by_alias=True)
        async with self._scope() as db:
            row = await db.get(QueueHoursRow, config.queue_name)
            if row is None:
                db.add(QueueHoursRow(**data))
            else:
                for key, value in data.items():
                    setattr(row, key, value)

    async def upsert_agent(self, agent: Agent) -> None:
        async with self._scope() as db:
            row = await db.get(AgentRow, agent.id)
            if row is None:
                db.add(AgentRow(id=agent.id, name=agent.name,
                                status=agent.status.value, queues=list(agent.queues)))
            else:
                row.name = agent.name
                row.status = agent.status.value
                row.queues = list(agent.queues)

    @asynccontextmanager
    async def ticket_transaction(self) -> AsyncIterator[TicketTransaction]:
        async with self._scope() as db:
            yield _SqlTicketTransaction(db)

    async def find_open_ticket(self, user_id: str) -> Optional[Ticket]:
        async with self._scope() as db:
            stmt = (
                select(TicketRow)
                .where(and_(TicketRow.user_id == user_id, TicketRow.status == TicketStatus.OPEN.value))
                .limit(1)
            )
            row = (await db.execute(stmt)).scalar_one_or_none()
            return _ticket_from_row(row) if row else None

    async def set_ticket_status(self, user_id: str, status: TicketStatus,
                                ticket_number: Optional[int] = None) -> Optional[Ticket]:
        async with self._scope() as db:
            stmt = select(TicketRow).where(TicketRow.user_id == user_id)
            if ticket_number is not None:
                stmt = stmt.where(TicketRow.ticket_number == ticket_number)
            else:
                stmt = stmt.where(TicketRow.status == TicketStatus.OPEN.value)
            row = (await db.execute(stmt.limit(1))).scalar_one_or_none()
            if row is None:
                return None
            row.status = status.value
            return _ticket_from_row(row)

    # ── Messages ──────────────────────────────────────────

    async def create_delivery(self, record: DeliveryRecord) -> DeliveryRecord:
        async with self._scope() as db:
            db.add(MessageRow(
                id=record.id, direction="outbound", channel=record.channel.value,
                user_id=record.user_id, message_id=record.id, recipient=record.to,
                type=record.type, content=record.content, status=record.status.value,
                attempts=record.attempts, created_at=record.created_at,
            ))
        return record

    async def get_delivery(self, record_id: str) -> Optional[DeliveryRecord]:
        async with self._scope() as db:
            row = await db.get(MessageRow, record_id)
            if row is None or row.direction != "outbound":
                return None
            return DeliveryRecord(
                id=row.id, user_id=row.user_id, channel=row.channel, to=row.recipient,
                type=row.type, content=row.content, status=DeliveryStatus(row.status),
                provider_message_id=row.provider_message_id, error=row.error,
                attempts=row.attempts, created_at=row.created_at, updated_at=row.updated_at,
            )

    async def update_delivery(self, record_id: str, status: DeliveryStatus, *,
                              provider_message_id: Optional[str] = None,
                              error: Optional[str] = None,
                              attempts: Optional[int] = None) -> None:
        values: dict[str, Any] = {"status": status.value, "updated_at": _utcnow()}
        if provider_message_id is not None:
            values["provider_message_id"] = provider_message_id
        if error is not None:
            values["error"] = error
        if attempts is not None:
            values["attempts"] = attempts
        async with self._scope() as db:
            await db.execute(update(MessageRow).where(MessageRow.id == record_id).values(**values))

    async def record_inbound(self, message: InboundMessage, user_id: str) -> bool:
        try:
            async with self._scope() as db:
                db.add(MessageRow(
                    id=_new_id(), direction="inbound", channel=message.channel.value,
                    user_id=user_id, message_id=message.provider_message_id,
                    recipient="", type=message.type, status="received",
                    content={"text": message.text, "id": message.id, "title": message.title},
                ))
        except IntegrityError:
            logger.info("inbound_duplicate", channel=message.channel.value,
                        message_id=message.provider_message_id, user_id=user_id)
            return False
        return True

    async def forget_inbound(self, message: InboundMessage, user_id: str) -> None:
        async with self._scope() as db:
            await db.execute(delete(MessageRow).where(and_(
                MessageRow.direction == "inbound",
                MessageRow.channel == message.channel.value,
                MessageRow.message_id == message.provider_message_id,
                MessageRow.user_id == user_id,
            )))
