"""
Ingestion — turns queued inbound events into interpreter turns.

Responsibilities:
  - normalize the channel-native webhook body into InboundMessages
  - drop redelivered messages (dedup on channel + provider id + user)
  - load the active flow and seed the per-turn base vars
  - apply the external ticket-closed signal and resume the conversation
  - run scheduled flow continuations
  - serialize turns per identity so concurrent events for one user
    never interleave their session read-modify-write
"""
from __future__ import annotations

import asyncio
from collections import defaultdict
from contextlib import asynccontextmanager
from datetime import datetime, timezone
from typing import Any, AsyncIterator, Callable, Optional

import structlog

from channels import telegram_adapter, whatsapp_adapter
from core.handover import HUMAN_SESSION_BLOCK
from core.interpreter import FlowInterpreter
from database.store_base import BaseStore
from models.schemas import (
    ChannelType, DeliveryRecord, FlowContinuation, Handover, HandoverStatus, InboundEvent,
    InboundMessage, TicketRef, TicketStatus, TicketStatusEvent,
)
from utils.identity import make_user_id, split_user_id

logger = structlog.get_logger()

INBOUND_PARSERS: dict[ChannelType, Callable[[Any], list[InboundMessage]]] = {
    ChannelType.WHATSAPP: whatsapp_adapter.parse_inbound,
    ChannelType.TELEGRAM: telegram_adapter.parse_inbound,
}


class IdentityLocks:
    """One asyncio.Lock per identity, dropped once nobody holds or waits on it."""

    def __init__(self):
        self._locks: dict[str, asyncio.Lock] = {}
        self._waiters: dict[str, int] = defaultdict(int)

    @asynccontextmanager
    async def hold(self, identity: str) -> AsyncIterator[None]:
        lock = self._locks.setdefault(identity, asyncio.Lock())
        self._waiters[identity] += 1
        try:
            async with lock:
                yield
        finally:
            self._waiters[identity] -= 1
            if self._waiters[identity] == 0:
                self._locks.pop(identity, None)
                self._waiters.pop(identity, None)

    def __len__(self) -> int:
        return len(self._locks)


class IngestionService:

    def __init__(self, store: BaseStore, interpreter: FlowInterpreter,
                 locks: Optional[IdentityLocks] = None,
                 clock: Callable[[], datetime] = lambda: datetime.now(timezone.utc)):
        self._store = store
        self._interpreter = interpreter
        self._locks = locks or IdentityLocks()
        self._clock = clock

    async def handle_event(self, event: InboundEvent) -> list[Optional[DeliveryRecord]]:
        """Normalize a raw channel event and run one turn per contained message."""
        parser = INBOUND_PARSERS.get(event.channel)
        messages = parser(event.payload) if parser else []
        if not messages:
            logger.debug("inbound_event_ignored", channel=event.channel.value, external_id=event.external_id)
        return [await self.process_message(message) for message in messages]

    async def process_message(self, message: InboundMessage) -> Optional[DeliveryRecord]:
        user_id = make_user_id(message.sender, message.channel)
        async with self._locks.hold(user_id):
            if not await self._store.record_inbound(message, user_id):
                logger.info("inbound_duplicate_skipped",
                            user_id=user_id,
                            provider_message_id=message.provider_message_id)
                return None

            try:
                return await self._run_message(message, user_id)
            except Exception as e:
                # Release the dedup key so the queue retry runs this message again
                logger.error("inbound_turn_failed", user_id=user_id,
                             provider_message_id=message.provider_message_id, error=str(e))
                await self._store.forget_inbound(message, user_id)
                raise

    async def _run_message(self, message: InboundMessage, user_id: str) -> Optional[DeliveryRecord]:
        flow = await self._store.get_active_flow()
        if flow is None:
            logger.warning("no_active_flow", user_id=user_id)
            return None

        base_vars = {
            "userPhone": message.sender,
            "userName": message.sender_name,
            "lastUserMessage": message.text,
            "channel": message.channel.value,
            "now": self._clock().isoformat(),
            "lastMessageId": message.provider_message_id,
        }
        return await self._interpreter.run_turn(message, flow, base_vars, user_id)

    async def handle_ticket_status(self, event: TicketStatusEvent) -> Optional[DeliveryRecord]:
        """Apply an external ticket status change; ``closed`` hands the conversation back to the bot."""
        if event.status != TicketStatus.CLOSED:
            logger.info("ticket_status_ignored", user_id=event.user_id, status=event.status.value)
            return None

        user_id = event.user_id
        address, channel = split_user_id(user_id)
        async with self._locks.hold(user_id):
            ticket_number = _as_int(event.ticket_number)
            await self._store.set_ticket_status(user_id, TicketStatus.CLOSED, ticket_number)

            session = await self._store.load_session(user_id)
            if session.current_block != HUMAN_SESSION_BLOCK:
                logger.warning("ticket_closed_without_handover", user_id=user_id,
                               current_block=session.current_block, ticket_number=event.ticket_number)
                return None

            vars = session.vars
            previous = vars.ticket or TicketRef()
            vars.ticket = previous.model_copy(update={
                "number": event.ticket_number or previous.number or vars.ticket_number,
                "fila": event.fila or previous.fila or vars.fila,
            })
            handover = vars.handover or Handover()
            vars.handover = handover.model_copy(update={
                "status": HandoverStatus.CLOSED, "pre_msg_sent": False,
            })
            await self._store.save_session(user_id, HUMAN_SESSION_BLOCK, session.last_flow_id, vars)
            logger.info("ticket_closed", user_id=user_id, ticket_number=event.ticket_number)

            flow = await self._store.get_active_flow()
            if flow is None:
                logger.warning("no_active_flow", user_id=user_id)
                return None
            base_vars = {
                "userPhone": address,
                "channel": channel.value if channel else None,
                "now": self._clock().isoformat(),
            }
            return await self._interpreter.run_turn(
                None, flow, {k: v for k, v in base_vars.items() if v is not None}, user_id,
            )

    async def continue_flow(self, continuation: FlowContinuation) -> Optional[DeliveryRecord]:
        """Resume a turn that was suspended by a long block delay."""
        async with self._locks.hold(continuation.user_id):
            flow = await self._store.get_active_flow()
            if flow is None:
                logger.warning("no_active_flow", user_id=continuation.user_id)
                return None
            if continuation.flow_id and flow.get("id") != continuation.flow_id:
                logger.info("continuation_flow_changed", user_id=continuation.user_id,
                            expected=continuation.flow_id, active=flow.get("id"))
                return None
            return await self._interpreter.run_turn(
                None, flow, {"now": self._clock().isoformat()}, continuation.user_id,
                resume_at=continuation.block_id,
            )


def _as_int(value: Any) -> Optional[int]:
    try:
        return int(str(value)) if value is not None else None
    except ValueError:
        return None
