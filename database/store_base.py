"""
Abstract Store — Interface for all storage backends.

Implementations:
  - SqlStore      (PostgreSQL / MySQL / SQLite via SQLAlchemy)
  - InMemoryStore (dict-based, single-process, no persistence)

Ticket distribution needs several reads and one write to commit together,
so it runs inside a TicketTransaction obtained from
``store.ticket_transaction()``.
"""
from __future__ import annotations

from abc import ABC, abstractmethod
from contextlib import AbstractAsyncContextManager
from typing import Any, Optional

from models.schemas import (
    Agent, DeliveryRecord, DeliveryStatus, InboundMessage,
    QueueBusinessHoursConfig, Session, SessionVars, Ticket, TicketStatus,
)


class TicketTransaction(ABC):
    """Unit of work for one ticket distribution."""

    @abstractmethod
    async def find_open_ticket(self, user_id: str) -> Optional[Ticket]:
        ...

    @abstractmethod
    async def get_setting(self, key: str) -> Optional[str]:
        ...

    @abstractmethod
    async def online_agents(self, queue_name: str) -> list[Agent]:
        """Online agents serving ``queue_name``, in stable candidate order."""
        ...

    @abstractmethod
    async def open_ticket_counts(self, agent_ids: list[str]) -> dict[str, int]:
        ...

    @abstractmethod
    async def create_ticket(self, user_id: str, fila: str, assigned_to: Optional[str]) -> Ticket:
        ...


class BaseStore(ABC):
    """Interface that all store backends must implement."""

    # ── Sessions ──────────────────────────────────────────────

    @abstractmethod
    async def load_session(self, user_id: str) -> Session:
        """Return the stored session or a fresh default one."""
        ...

    @abstractmethod
    async def save_session(self, user_id: str, current_block: Optional[str],
                           flow_id: Optional[str], vars: SessionVars) -> None:
        """Idempotent upsert, last write wins."""
        ...

    # ── Flows ─────────────────────────────────────────────────

    @abstractmethod
    async def get_active_flow(self) -> Optional[dict[str, Any]]:
        ...

    @abstractmethod
    async def save_flow(self, data: dict[str, Any], active: bool = True) -> str:
        ...

    # ── Settings ──────────────────────────────────────────────

    @abstractmethod
    async def get_setting(self, key: str) -> Optional[str]:
        ...

    @abstractmethod
    async def set_setting(self, key: str, value: str) -> None:
        ...

    # ── Support ───────────────────────────────────────────────

    @abstractmethod
    async def get_queue_hours(self, queue_name: str) -> Optional[QueueBusinessHoursConfig]:
        """Case-insensitive lookup by queue name."""
        ...

    @abstractmethod
    async def upsert_queue_hours(self, config: QueueBusinessHoursConfig) -> None:
        ...

    @abstractmethod
    async def upsert_agent(self, agent: Agent) -> None:
        ...

    @abstractmethod
    def ticket_transaction(self) -> AbstractAsyncContextManager[TicketTransaction]:
        ...

    @abstractmethod
    async def find_open_ticket(self, user_id: str) -> Optional[Ticket]:
        ...

    @abstractmethod
    async def set_ticket_status(self, user_id: str, status: TicketStatus,
                                ticket_number: Optional[int] = None) -> Optional[Ticket]:
        ...

    # ── Messages ──────────────────────────────────────────────

    @abstractmethod
    async def create_delivery(self, record: DeliveryRecord) -> DeliveryRecord:
        ...

    @abstractmethod
    async def get_delivery(self, record_id: str) -> Optional[DeliveryRecord]:
        ...

    @abstractmethod
    async def update_delivery(self, record_id: str, status: DeliveryStatus, *,
                              provider_message_id: Optional[str] = None,
                              error: Optional[str] = None,
                              attempts: Optional[int] = None) -> None:
        ...

    @abstractmethod
    async def record_inbound(self, message: InboundMessage, user_id: str) -> bool:
        """Log an inbound message; False when (channel, provider id, user) was already seen."""
        ...

    @abstractmethod
    async def forget_inbound(self, message: InboundMessage, user_id: str) -> None:
        """Drop the dedup entry for a message whose turn failed, so a redelivery runs again."""
        ...
