"""
InMemoryStore — Dict-backed store for development and testing.

Features:
  - Zero dependencies (no database, no Redis)
  - Full interface compatibility with SqlStore
  - Values are stored as JSON-shaped dicts, so loads return fresh copies
  - Ticket distribution serialized by a store-wide asyncio.Lock
  - All data lost on process restart

Best for: local development, unit tests, quick prototyping.
"""
from __future__ import annotations

import asyncio
import copy
import uuid
from contextlib import asynccontextmanager
from datetime import datetime, timezone
from typing import Any, AsyncIterator, Optional

import structlog

from database.store_base import BaseStore, TicketTransaction
from models.schemas import (
    Agent, AgentStatus, DeliveryRecord, DeliveryStatus, InboundMessage,
    QueueBusinessHoursConfig, Session, SessionVars, Ticket, TicketStatus,
)

logger = structlog.get_logger()


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


def _new_id() -> str:
    return uuid.uuid4().hex[:16]


class _MemoryTicketTransaction(TicketTransaction):

    def __init__(self, store: InMemoryStore):
        self._store = store

    async def find_open_ticket(self, user_id: str) -> Optional[Ticket]:
        return await self._store.find_open_ticket(user_id)

    async def get_setting(self, key: str) -> Optional[str]:
        return self._store._settings.get(key)

    async def online_agents(self, queue_name: str) -> list[Agent]:
        target = queue_name.lower()
        return [
            Agent.model_validate(a) for a in self._store._agents.values()
            if a["status"] == AgentStatus.ONLINE.value
            and target in {q.lower() for q in a.get("queues", [])}
        ]

    async def open_ticket_counts(self, agent_ids: list[str]) -> dict[str, int]:
        counts = {agent_id: 0 for agent_id in agent_ids}
        for t in self._store._tickets.values():
            if t["status"] == TicketStatus.OPEN.value and t.get("assigned_to") in counts:
                counts[t["assigned_to"]] += 1
        return counts

    async def create_ticket(self, user_id: str, fila: str, assigned_to: Optional[str]) -> Ticket:
        self._store._ticket_seq += 1
        ticket = Ticket(
            id=_new_id(), user_id=user_id, fila=fila,
            assigned_to=assigned_to, ticket_number=self._store._ticket_seq,
        )
        self._store._tickets[ticket.id] = ticket.model_dump(mode="json")
        return ticket


class InMemoryStore(BaseStore):
    """Full-featured in-memory store with the same interface as SqlStore."""

    def __init__(self):
        self._sessions: dict[str, dict] = {}            # user_id → session dict
        self._flows: dict[str, dict] = {}               # id → {"data", "active"}
        self._settings: dict[str, str] = {}
        self._queue_hours: dict[str, dict] = {}         # lower(queue_name) → config dict
        self._agents: dict[str, dict] = {}              # id → agent dict (insertion ordered)
        self._tickets: dict[str, dict] = {}             # id → ticket dict
        self._deliveries: dict[str, dict] = {}          # id → delivery record dict
        self._inbound: set[tuple[str, str, str]] = set()
        self._ticket_seq = 0
        self._ticket_lock = asyncio.Lock()
        logger.info("inmemory_store_initialized")

    # ── Sessions ──────────────────────────────────────────

    async def load_session(self, user_id: str) -> Session:
        data = self._sessions.get(user_id)
        if data is None:
            return Session(user_id=user_id)
        return Session.model_validate(copy.deepcopy(data))

    async def save_session(self, user_id: str, current_block: Optional[str],
                           flow_id: Optional[str], vars: SessionVars) -> None:
        self._sessions[user_id] = {
            "user_id": user_id,
            "current_block": current_block,
            "last_flow_id": flow_id,
            "vars": vars.bag(),
            "updated_at": _utcnow().isoformat(),
        }

    # ── Flows ─────────────────────────────────────────────

    async def get_active_flow(self) -> Optional[dict[str, Any]]:
        for flow_id, entry in reversed(self._flows.items()):
            if entry["active"]:
                return {**copy.deepcopy(entry["data"]), "id": flow_id}
        return None

    async def save_flow(self, data: dict[str, Any], active: bool = True) -> str:
        flow_id = str(data.get("id") or _new_id())
        if active:
            for entry in self._flows.values():
                entry["active"] = False
        self._flows[flow_id] = {"data": copy.deepcopy(data), "active": active}
        return flow_id

    # ── Settings ──────────────────────────────────────────

    async def get_setting(self, key: str) -> Optional[str]:
        return self._settings.get(key)

    async def set_setting(self, key: str, value: str) -> None:
        self._settings[key] = value

    # ── Support ───────────────────────────────────────────

    async def get_queue_hours(self, queue_name: str) -> Optional[QueueBusinessHoursConfig]:
        data = self._queue_hours.get(queue_name.lower())
        return QueueBusinessHoursConfig.model_validate(data) if data else None

    async def upsert_queue_hours(self, config: QueueBusinessHoursConfig) -> None:
        self._queue_hours[config.queue_name.lower()] = config.model_dump(mode="json", by_alias=True)

    async def upsert_agent(self, agent: Agent) -> None:
        self._agents[agent.id] = agent.model_dump(mode="json")

    @asynccontextmanager
    async def ticket_transaction(self) -> AsyncIterator[TicketTransaction]:
        async with self._ticket_lock:
            yield _MemoryTicketTransaction(self)

    async def find_open_ticket(self, user_id: str) -> Optional[Ticket]:
        for t in self._tickets.values():
            if t["user_id"] == user_id and t["status"] == TicketStatus.OPEN.value:
                return Ticket.model_validate(t)
        return None

    async def set_ticket_status(self, user_id: str, status: TicketStatus,
                                ticket_number: Optional[int] = None) -> Optional[Ticket]:
        for t in self._tickets.values():
            if t["user_id"] != user_id:
                continue
            if ticket_number is not None and t["ticket_number"] != ticket_number:
                continue
            if ticket_number is None and t["status"] != TicketStatus.OPEN.value:
                continue
            t["status"] = status.value
            return Ticket.model_validate(t)
        return None

    # ── Messages ──────────────────────────────────────────

    async def create_delivery(self, record: DeliveryRecord) -> DeliveryRecord:
        self._deliveries[record.id] = record.model_dump(mode="json")
        return record

    async def get_delivery(self, record_id: str) -> Optional[DeliveryRecord]:
        data = self._deliveries.get(record_id)
        return DeliveryRecord.model_validate(data) if data else None

    async def update_delivery(self, record_id: str, status: DeliveryStatus, *,
                              provider_message_id: Optional[str] = None,
                              error: Optional[str] = None,
                              attempts: Optional[int] = None) -> None:
        rec = self._deliveries.get(record_id)
        if rec is None:
            logger.warning("delivery_record_missing", record_id=record_id)
            return
        rec["status"] = status.value
        if provider_message_id is not None:
            rec["provider_message_id"] = provider_message_id
        if error is not None:
            rec["error"] = error
        if attempts is not None:
            rec["attempts"] = attempts
        rec["updated_at"] = _utcnow().isoformat()

    async def record_inbound(self, message: InboundMessage, user_id: str) -> bool:
        key = (message.channel.value, message.provider_message_id, user_id)
        if key in self._inbound:
            return False
        self._inbound.add(key)
        return True

    async def forget_inbound(self, message: InboundMessage, user_id: str) -> None:
        self._inbound.discard((message.channel.value, message.provider_message_id, user_id))

    # ── Stats (for debugging) ─────────────────────────────

    def stats(self) -> dict[str, int]:
        return {
            "sessions": len(self._sessions),
            "tickets": len(self._tickets),
            "agents": len(self._agents),
            "deliveries": len(self._deliveries),
            "inbound": len(self._inbound),
        }
