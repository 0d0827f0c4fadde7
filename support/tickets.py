"""
Ticket distribution for human handoff.

One distribution is a single unit of work: check for an open ticket,
read the distribution mode, pick the least-loaded eligible agent and
create the ticket all commit together, so a user never ends up with two
open tickets and two concurrent handoffs never double-assign.
"""
from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Any, Optional
from zoneinfo import ZoneInfo

import structlog
from tenacity import AsyncRetrying, retry_if_exception_type, stop_after_attempt, wait_random

from core.errors import TicketConflictError, TicketDistributionError
from database.store_base import BaseStore
from models.schemas import DistributionMode, Ticket
from utils.text import digits_only

logger = structlog.get_logger()

DISTRIBUTION_SETTING = "distribuicao_tickets"


@dataclass
class DistributionResult:
    ticket: Ticket
    created: bool
    mode: str

    @property
    def ticket_number(self) -> Optional[int]:
        return self.ticket.ticket_number

    @property
    def assigned_to(self) -> Optional[str]:
        return self.ticket.assigned_to


class TicketDistributor:

    max_attempts = 5

    def __init__(self, store: BaseStore, default_queue: str = "Default",
                 default_mode: str = DistributionMode.MANUAL.value):
        self._store = store
        self._default_queue = default_queue
        self._default_mode = default_mode

    async def distribute(self, user_id: str, queue_name: Optional[str]) -> DistributionResult:
        """
        Return the user's open ticket, creating (and maybe assigning) one if needed.

        A conflict with a concurrent distribution (same next ticket number,
        or a second open ticket for the user) rolls the unit back and runs
        it again from the top.
        """
        fila = queue_name or self._default_queue
        try:
            async for attempt in AsyncRetrying(
                retry=retry_if_exception_type(TicketConflictError),
                stop=stop_after_attempt(self.max_attempts),
                wait=wait_random(min=0.01, max=0.1),
                reraise=True,
            ):
                with attempt:
                    return await self._distribute_once(user_id, fila)
        except Exception as e:
            logger.error("ticket_distribution_failed", user_id=user_id, fila=fila, error=str(e))
            raise TicketDistributionError(str(e)) from e

    async def _distribute_once(self, user_id: str, fila: str) -> DistributionResult:
        async with self._store.ticket_transaction() as tx:
            existing = await tx.find_open_ticket(user_id)
            if existing:
                logger.debug("ticket_exists", user_id=user_id, ticket_number=existing.ticket_number)
                return DistributionResult(ticket=existing, created=False, mode="existing")

            mode = (await tx.get_setting(DISTRIBUTION_SETTING) or self._default_mode).lower()
            if mode != DistributionMode.AUTO.value:
                ticket = await tx.create_ticket(user_id, fila, assigned_to=None)
                logger.info("ticket_created", user_id=user_id, fila=fila,
                            ticket_number=ticket.ticket_number, mode="manual")
                return DistributionResult(ticket=ticket, created=True, mode="manual")

            candidates = await tx.online_agents(fila)
            if not candidates:
                ticket = await tx.create_ticket(user_id, fila, assigned_to=None)
                logger.warning("ticket_created_without_agent", user_id=user_id, fila=fila,
                               ticket_number=ticket.ticket_number)
                return DistributionResult(ticket=ticket, created=True, mode="auto-no-agent")

            loads = await tx.open_ticket_counts([a.id for a in candidates])
            # sorted() is stable: ties keep candidate order
            chosen = sorted(candidates, key=lambda a: loads.get(a.id, 0))[0]
            ticket = await tx.create_ticket(user_id, fila, assigned_to=chosen.id)
            logger.info("ticket_created", user_id=user_id, fila=fila,
                        ticket_number=ticket.ticket_number, assigned_to=chosen.id, mode="auto")
            return DistributionResult(ticket=ticket, created=True, mode="auto")


def build_protocol(vars: dict[str, Any], now: Optional[datetime] = None, tz: str = "UTC") -> str:
    """``PRT-YYYYMMDD-HHMM-<ticket digits>`` ("0000" when no ticket is known)."""
    now = now or datetime.now(timezone.utc)
    if now.tzinfo is None:
        now = now.replace(tzinfo=timezone.utc)
    local = now.astimezone(ZoneInfo(tz))

    handover = vars.get("handover") or {}
    ticket = vars.get("ticket")
    raw: Any = None
    for candidate in (
        vars.get("ticketNumber"),
        vars.get("ticketId"),
        ticket.get("number") if isinstance(ticket, dict) else ticket,
        handover.get("ticketNumber"),
        handover.get("ticketId"),
    ):
        if candidate is not None:
            raw = candidate
            break

    digits = digits_only(raw)
    return f"PRT-{local:%Y%m%d}-{local:%H%M}-{digits or '0000'}"
