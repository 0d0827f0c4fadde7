"""
Flow Interpreter — drives one user's turn through the flow graph.

A turn:
  1. loads the session and merges its vars over the base vars
  2. picks the block to run: flow start, a restart after the farewell
     block, the human-handoff resume path, the action matched by the
     user's reply to an awaiting block, or the stored block itself
  3. runs blocks in a loop (send / api_call / script / human), persisting
     ``(current_block, vars)`` after every transition
  4. stops at an awaiting block, a human handoff, a long delay (scheduled
     as a continuation job) or when no next block resolves

Failures inside a block never escape ``run_turn``: the turn is aborted,
logged, and whatever had already been sent is returned.
"""
from __future__ import annotations

import asyncio
import json
from datetime import datetime, timedelta, timezone
from typing import Any, Awaitable, Callable, Optional

import httpx
import structlog

from channels.base import ChannelError
from channels.messenger import Messenger
from config.settings import FlowConfig
from core.errors import FlowDefinitionError, ScriptExecutionError, UnknownBlockError
from core.flow import (
    TurnContext, determine_next_block, get_block, parse_flow, resolve_error_block,
    static_error_content,
)
from core.handover import HUMAN_SESSION_BLOCK, HandoverManager
from core.matching import determine_next_smart
from core.scripting import ScriptSandbox
from database.store_base import BaseStore
from job_queue.message_queue import JobKind, MessageQueue, QueueJob, Queues
from models.schemas import (
    SENDABLE_BLOCK_TYPES, Block, BlockType, DeliveryRecord, Flow, FlowContinuation,
    InboundMessage, SessionVars,
)
from utils.templating import render, substitute, substitute_ref

logger = structlog.get_logger()

# Upper bound on blocks executed in one turn without waiting for input
MAX_BLOCKS_PER_TURN = 100


class FlowInterpreter:

    def __init__(
        self,
        store: BaseStore,
        messenger: Messenger,
        handover: HandoverManager,
        sandbox: Optional[ScriptSandbox] = None,
        http_client: Optional[httpx.AsyncClient] = None,
        queue: Optional[MessageQueue] = None,
        config: Optional[FlowConfig] = None,
        sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep,
    ):
        self._store = store
        self._messenger = messenger
        self._handover = handover
        self._config = config or FlowConfig()
        self._sandbox = sandbox or ScriptSandbox(
            timeout_seconds=self._config.script_timeout_seconds,
            memory_mb=self._config.script_memory_mb,
        )
        self._http = http_client
        self._queue = queue
        self._sleep = sleep
        self._handlers: dict[BlockType, Callable[[Block, TurnContext], Awaitable[Any]]] = {
            BlockType.API_CALL: self._run_api_call,
            BlockType.SCRIPT: self._run_script,
        }
        for block_type in SENDABLE_BLOCK_TYPES:
            self._handlers[block_type] = self._render_content

    async def _get_http(self) -> httpx.AsyncClient:
        if self._http is None or self._http.is_closed:
            self._http = httpx.AsyncClient(timeout=self._config.http_timeout_seconds)
        return self._http

    async def aclose(self) -> None:
        if self._http is not None and not self._http.is_closed:
            await self._http.aclose()

    # ══════════════════════════════════════════════════════════
    #  TURN
    # ══════════════════════════════════════════════════════════

    async def run_turn(
        self,
        inbound: Optional[InboundMessage],
        flow_data: Any,
        base_vars: dict[str, Any],
        user_id: str,
        *,
        resume_at: Optional[str] = None,
    ) -> Optional[DeliveryRecord]:
        """
        Run one turn for ``user_id``.

        Returns the delivery record of the last message sent during the turn,
        or None when nothing was sent (awaiting input, parked at a human
        handoff, or no resolvable next block).
        """
        try:
            flow = parse_flow(flow_data)
        except FlowDefinitionError as e:
            logger.error("flow_definition_invalid", user_id=user_id, error=str(e))
            return await self._send_static_error(flow_data, base_vars, user_id)

        session = await self._store.load_session(user_id)
        vars = session.vars.merged_over(base_vars)
        for key in ("now", "lastMessageId"):
            if key in base_vars:
                vars.set(key, base_vars[key])
        if not vars.channel:
            vars.channel = self._config.default_channel
        if inbound is not None:
            self._apply_inbound(vars, inbound)

        ctx = TurnContext(user_id=user_id, flow=flow, vars=vars, channel=vars.channel)
        error_block = resolve_error_block(flow, self._config.error_block)
        stored = session.current_block

        if resume_at is not None:
            if stored != resume_at:
                logger.info("continuation_stale", user_id=user_id, expected=resume_at, stored=stored)
                return None
            current_id: Optional[str] = resume_at
        elif stored == HUMAN_SESSION_BLOCK:
            current_id = await self._handover.on_human_session(ctx)
            if current_id is None:
                return None
        elif not stored or stored not in flow.blocks:
            current_id = flow.start
        elif stored == self._config.farewell_block:
            ctx.vars = self._fresh_vars(base_vars, inbound)
            current_id = flow.start
        elif flow.blocks[stored].await_response:
            if inbound is None or not (inbound.text or inbound.id):
                return None
            current_id = self._resolve_reply(flow, flow.blocks[stored], stored, ctx.vars, error_block)
            if current_id is None:
                logger.info("no_matching_action", user_id=user_id, block=stored)
                return None
        else:
            current_id = stored

        logger.info("turn_started", user_id=user_id, flow_id=flow.id, block=current_id)
        try:
            await self._run_blocks(ctx, current_id, error_block)
        except Exception as e:
            logger.error("turn_aborted", user_id=user_id, flow_id=flow.id, error=str(e), exc_info=True)
        return ctx.sent

    def _resolve_reply(self, flow: Flow, block: Block, block_id: str, vars: SessionVars,
                       error_block: Optional[str]) -> Optional[str]:
        bag = vars.bag()
        if block.type == BlockType.INTERACTIVE:
            next_id = determine_next_smart(block, bag, flow)
        else:
            next_id = determine_next_block(block, bag, flow, block_id, error_block)
        if next_id is None:
            return None
        return self._resolve_reference(flow, next_id, bag, error_block)

    async def _run_blocks(self, ctx: TurnContext, current_id: Optional[str],
                          error_block: Optional[str]) -> None:
        flow = ctx.flow
        steps = 0
        while current_id:
            block = flow.blocks.get(current_id)
            if block is None:
                break
            steps += 1
            if steps > MAX_BLOCKS_PER_TURN:
                logger.error("turn_block_limit_reached", user_id=ctx.user_id, block=current_id)
                break

            if block.type == BlockType.HUMAN:
                outcome = await self._handover.enter(ctx, current_id, block)
                if outcome.halted:
                    return
                resolved = self._resolve_reference(flow, outcome.next_block, ctx.vars.bag(), error_block)
                await self._store.save_session(ctx.user_id, resolved, flow.id, ctx.vars)
                current_id = resolved
                continue

            handler = self._handlers.get(block.type)
            if handler is None:
                raise FlowDefinitionError(f"No handler for block type {block.type}")
            content = await handler(block, ctx)
            if block.type in SENDABLE_BLOCK_TYPES and content:
                await self._send(block, content, ctx)

            bag = ctx.vars.bag()
            next_id = determine_next_block(block, bag, flow, current_id, error_block)
            resolved = self._resolve_reference(
                flow, current_id if block.await_response else next_id, bag, error_block,
            )
            if current_id != error_block and resolved and resolved != error_block:
                ctx.vars.previous_block = current_id

            await self._store.save_session(ctx.user_id, resolved, flow.id, ctx.vars)
            logger.debug("block_executed", user_id=ctx.user_id, block=current_id,
                         type=block.type.value, next_block=resolved)

            if block.await_response:
                break

            delay = block.await_time_in_seconds or 0
            if delay > 0 and resolved:
                if delay > self._config.inline_delay_max_seconds and self._queue is not None:
                    await self._schedule_continuation(ctx, resolved, delay)
                    break
                await self._sleep(delay)

            current_id = resolved

    def _resolve_reference(self, flow: Flow, ref: Optional[str], bag: dict[str, Any],
                           error_block: Optional[str]) -> Optional[str]:
        """Substitute placeholders in a block reference; dangling references go to the error block."""
        if not ref:
            return None
        resolved = substitute_ref(ref, bag)
        try:
            get_block(flow, resolved)
        except UnknownBlockError as e:
            logger.warning("unknown_block_reference", block_id=e.block_id, error_block=error_block)
            return error_block
        return resolved

    # ══════════════════════════════════════════════════════════
    #  BLOCK HANDLERS
    # ══════════════════════════════════════════════════════════

    async def _render_content(self, block: Block, ctx: TurnContext) -> Any:
        if block.content is None:
            return ""
        return render(block.content, ctx.vars.bag())

    async def _run_api_call(self, block: Block, ctx: TurnContext) -> Any:
        bag = ctx.vars.bag()
        url = substitute(block.url, bag)
        body = render(block.body, bag) if block.body is not None else None
        headers = {str(k): str(v) for k, v in render(block.headers or {}, bag).items()}

        client = await self._get_http()
        try:
            resp = await client.request(block.method.upper(), url, json=body, headers=headers)
        except httpx.HTTPError as e:
            logger.error("api_call_failed", user_id=ctx.user_id, block=block.id, url=url, error=str(e))
            return ""

        try:
            data = resp.json()
        except ValueError:
            data = resp.text
        ctx.vars.response_status = resp.status_code
        ctx.vars.response_data = data
        logger.info("api_call_completed", user_id=ctx.user_id, block=block.id, status=resp.status_code)

        if block.script:
            content = await self._run_sandboxed(ctx, block, block.script,
                                                {"response": data, "vars": ctx.vars.bag()})
        else:
            content = data if isinstance(data, str) else json.dumps(data, ensure_ascii=False)

        if block.output_var:
            ctx.vars.set(block.output_var, content)
        if block.status_var:
            ctx.vars.set(block.status_var, resp.status_code)
        return content

    async def _run_script(self, block: Block, ctx: TurnContext) -> Any:
        output = await self._run_sandboxed(ctx, block, block.code or "", {"vars": ctx.vars.bag()},
                                           expression=block.function)
        if block.output_var:
            ctx.vars.set(block.output_var, output)
        return "" if output is None else str(output)

    async def _run_sandboxed(self, ctx: TurnContext, block: Block, code: str,
                             bindings: dict[str, Any], expression: Optional[str] = None) -> Any:
        try:
            return await self._sandbox.run(code, bindings, expression=expression)
        except ScriptExecutionError as e:
            logger.error("script_failed", user_id=ctx.user_id, block=block.id, error=str(e))
            return ""

    # ══════════════════════════════════════════════════════════
    #  SENDING
    # ══════════════════════════════════════════════════════════

    async def _send(self, block: Block, content: Any, ctx: TurnContext) -> None:
        if block.send_delay_in_seconds and block.send_delay_in_seconds > 0:
            await self._sleep(block.send_delay_in_seconds)

        message = {"text": content} if isinstance(content, str) else content
        try:
            ctx.sent = await self._messenger.send(ctx.channel, ctx.user_id, block.type.value, message)
            return
        except ChannelError as e:
            logger.warning("block_send_failed", user_id=ctx.user_id, block=block.id,
                           type=block.type.value, error=str(e))

        try:
            ctx.sent = await self._messenger.send(ctx.channel, ctx.user_id, "text",
                                                  {"text": self._fallback_text(content)})
        except ChannelError as e:
            logger.error("fallback_send_failed", user_id=ctx.user_id, block=block.id, error=str(e))

    def _fallback_text(self, content: Any) -> str:
        if isinstance(content, dict) and content.get("url"):
            return f"{self._config.media_fallback_prefix}{content['url']}"
        if isinstance(content, str):
            return content
        return self._config.media_fallback_text

    async def _send_static_error(self, flow_data: Any, base_vars: dict[str, Any],
                                 user_id: str) -> Optional[DeliveryRecord]:
        text = static_error_content(flow_data, self._config.flow_error_text)
        channel = base_vars.get("channel") or self._config.default_channel
        message = {"text": text} if isinstance(text, str) else text
        try:
            return await self._messenger.send(channel, user_id, "text", message)
        except ChannelError as e:
            logger.error("flow_error_send_failed", user_id=user_id, error=str(e))
            return None

    # ══════════════════════════════════════════════════════════
    #  HELPERS
    # ══════════════════════════════════════════════════════════

    @staticmethod
    def _apply_inbound(vars: SessionVars, inbound: InboundMessage) -> None:
        vars.last_user_message = inbound.text if inbound.text is not None else inbound.title
        vars.last_reply_id = inbound.id
        vars.last_reply_title = inbound.title
        vars.last_message_type = inbound.type

    def _fresh_vars(self, base_vars: dict[str, Any], inbound: Optional[InboundMessage]) -> SessionVars:
        vars = SessionVars.model_validate(dict(base_vars))
        if not vars.channel:
            vars.channel = self._config.default_channel
        if inbound is not None:
            self._apply_inbound(vars, inbound)
        return vars

    async def _schedule_continuation(self, ctx: TurnContext, block_id: str, delay: float) -> None:
        run_at = datetime.now(timezone.utc) + timedelta(seconds=delay)
        await self._queue.publish_delayed(QueueJob(
            kind=JobKind.FLOW_CONTINUE,
            payload=FlowContinuation(user_id=ctx.user_id, block_id=block_id,
                                     flow_id=ctx.flow.id).model_dump(),
            queue=Queues.INCOMING,
            scheduled_at=run_at.isoformat(),
        ))
        logger.info("continuation_scheduled", user_id=ctx.user_id, block=block_id, delay=delay)
