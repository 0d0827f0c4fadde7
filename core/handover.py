"""
Human handoff: business-hours gate, pre-handoff notice, ticket distribution
and the return path once the ticket is closed.

Entering a ``human`` block:
  closed queue → off-hours message (holiday / closed variant), route to the
                 configured fallback block; no ticket is opened
  open queue   → one-time pre-handoff notice (guarded by handover.preMsgSent),
                 session parked at ``human``, ticket distributed, protocol set

While parked at ``human`` every inbound event only re-runs the (idempotent)
distribution. When the ticket-closed signal has marked the handover closed,
the conversation resumes from the origin block's next-block resolution,
falling back to the human-return block, the error block, then flow start.
"""
from __future__ import annotations

import asyncio
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Any, Awaitable, Callable, Optional

import structlog

from channels.base import ChannelError
from channels.messenger import Messenger
from config.settings import FlowConfig
from core.errors import TicketDistributionError
from core.flow import TurnContext, determine_next_block, resolve_by_id_or_label, resolve_error_block
from database.store_base import BaseStore
from models.schemas import (
    Block, ConfiguredMessage, DeliveryRecord, Handover, HandoverStatus, OffHoursConfig,
    QueueBusinessHoursConfig,
)
from support.business_hours import REASON_HOLIDAY, evaluate
from support.hours_cache import BusinessHoursCache
from support.tickets import TicketDistributor, build_protocol
from utils.templating import render, substitute

logger = structlog.get_logger()

HUMAN_SESSION_BLOCK = "human"


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


@dataclass
class HandoverOutcome:
    """``next_block`` is set when the turn should continue (off-hours routing)."""
    next_block: Optional[str] = None

    @property
    def halted(self) -> bool:
        return self.next_block is None


class HandoverManager:

    def __init__(
        self,
        store: BaseStore,
        messenger: Messenger,
        distributor: TicketDistributor,
        hours: BusinessHoursCache,
        config: Optional[FlowConfig] = None,
        timezone_name: str = "UTC",
        default_queue: str = "Default",
        clock: Callable[[], datetime] = _utcnow,
        sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep,
    ):
        self._store = store
        self._messenger = messenger
        self._distributor = distributor
        self._hours = hours
        self._config = config or FlowConfig()
        self._tz = timezone_name
        self._default_queue = default_queue
        self._clock = clock
        self._sleep = sleep

    # ── Entering a human block ────────────────────────────────

    async def enter(self, ctx: TurnContext, block_id: str, block: Block) -> HandoverOutcome:
        queue_name = block.queue_name or ctx.vars.fila or self._default_queue
        ctx.vars.fila = queue_name
        logger.info("handover_requested", user_id=ctx.user_id, block=block_id, fila=queue_name)

        config = await self._hours.get(queue_name)
        decision = evaluate(config, self._clock())
        if not decision.open:
            return await self._route_off_hours(ctx, config, decision.reason)

        ctx.vars.offhours = False
        ctx.vars.offhours_reason = None

        handover = ctx.vars.handover or Handover()
        pre_human = config.pre_human if config else None
        if pre_human is not None and pre_human.enabled and not handover.pre_msg_sent:
            # persisted before sending so a retried turn never repeats the notice
            ctx.vars.handover = handover.model_copy(update={"pre_msg_sent": True})
            await self._save(ctx, block_id)
            await self.send_configured(ctx, pre_human)

        ctx.vars.handover = Handover(status=HandoverStatus.OPEN, origin_block=block_id, pre_msg_sent=True)
        ctx.vars.previous_block = block_id
        await self._save(ctx, HUMAN_SESSION_BLOCK)

        await self.distribute(ctx)
        return HandoverOutcome()

    async def _route_off_hours(self, ctx: TurnContext, config: Optional[QueueBusinessHoursConfig],
                               reason: Optional[str]) -> HandoverOutcome:
        ctx.vars.offhours = True
        ctx.vars.offhours_reason = reason
        logger.info("handover_off_hours", user_id=ctx.user_id, fila=ctx.vars.fila, reason=reason)

        off_hours = config.off_hours if config else None
        await self.send_configured(ctx, self._off_hours_message(off_hours, reason))

        flow = ctx.flow
        target = (
            resolve_by_id_or_label(flow, off_hours.next if off_hours else None)
            or resolve_by_id_or_label(flow, self._config.offhours_block)
            or resolve_error_block(flow, self._config.error_block)
        )
        return HandoverOutcome(next_block=target)

    def _off_hours_message(self, off_hours: Optional[OffHoursConfig],
                           reason: Optional[str]) -> ConfiguredMessage:
        if off_hours is not None:
            if reason == REASON_HOLIDAY and off_hours.holiday is not None:
                return off_hours.holiday
            if off_hours.closed is not None:
                return off_hours.closed
            if off_hours.message or off_hours.payload or off_hours.content:
                return off_hours
        return ConfiguredMessage(message=self._config.offhours_fallback_text)

    # ── Parked at human ───────────────────────────────────────

    async def on_human_session(self, ctx: TurnContext) -> Optional[str]:
        """Block to resume at when the handover is closed; otherwise redistribute and return None."""
        handover = ctx.vars.handover
        if handover is None or handover.status != HandoverStatus.CLOSED:
            await self.distribute(ctx)
            return None

        flow = ctx.flow
        origin = handover.origin_block
        bag = ctx.vars.bag()
        next_block = None
        if origin and origin in flow.blocks:
            next_block = determine_next_block(flow.blocks[origin], bag, flow, origin)
        if not next_block or next_block not in flow.blocks:
            next_block = (
                resolve_by_id_or_label(flow, self._config.human_return_block)
                or resolve_error_block(flow, self._config.error_block)
                or flow.start
            )
        logger.info("handover_resumed", user_id=ctx.user_id, origin=origin, next_block=next_block)
        return next_block

    async def distribute(self, ctx: TurnContext) -> None:
        """Ensure the user has an open ticket; record its number and protocol in vars."""
        try:
            result = await self._distributor.distribute(ctx.user_id, ctx.vars.fila)
        except TicketDistributionError as e:
            logger.error("handover_distribution_failed", user_id=ctx.user_id, error=str(e))
            return

        if result.ticket_number is not None:
            ctx.vars.ticket_number = result.ticket_number
        ctx.vars.protocol = build_protocol(ctx.vars.bag(), self._clock(), self._tz)
        await self._save(ctx, HUMAN_SESSION_BLOCK)

    # ── Helpers ───────────────────────────────────────────────

    async def send_configured(self, ctx: TurnContext, entry: Optional[ConfiguredMessage]) -> Optional[DeliveryRecord]:
        """Send a tenant-configured notice with placeholder substitution; failures are logged."""
        if entry is None:
            return None
        if entry.delay_ms and entry.delay_ms > 0:
            await self._sleep(entry.delay_ms / 1000)

        bag = ctx.vars.bag()
        if isinstance(entry.message, str):
            content: Any = {"text": substitute(entry.message, bag)}
        else:
            raw = entry.payload if entry.payload is not None else entry.content
            if raw is None:
                return None
            content = render(raw, bag)

        try:
            record = await self._messenger.send(ctx.channel, ctx.user_id, entry.type or "text", content)
        except ChannelError as e:
            logger.error("configured_message_failed", user_id=ctx.user_id, error=str(e))
            return None
        ctx.sent = record
        return record

    async def _save(self, ctx: TurnContext, current_block: str) -> None:
        await self._store.save_session(ctx.user_id, current_block, ctx.flow.id, ctx.vars)
