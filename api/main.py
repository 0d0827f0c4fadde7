"""
FastAPI Application — Webhooks + admin API.

Provides:
- Webhook verification and ingestion for WhatsApp and Telegram
- Ticket status endpoint for the external helpdesk (ticket closed signal)
- Flow publishing and per-queue business hours administration
- Channel health, queue depth and delivery record diagnostics

Webhooks only validate and enqueue; turns run in the ingestion consumer.
"""
from __future__ import annotations

import hmac
import json
from contextlib import asynccontextmanager
from datetime import datetime, timezone
from typing import Any

# Load .env before any config is read
from dotenv import load_dotenv
load_dotenv()

import structlog
from fastapi import FastAPI, HTTPException, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from pydantic import ValidationError

from channels import whatsapp_adapter
from config.settings import get_settings
from core.flow import parse_flow
from core.errors import FlowDefinitionError
from core.runtime import build_runtime
from database.session import close_db, init_db
from job_queue.message_queue import JobKind, QueueJob, Queues
from models.schemas import ChannelType, InboundEvent, QueueBusinessHoursConfig, TicketStatusEvent

logger = structlog.get_logger()

# ──────────────────────────────────────────────────────────────
#  Bootstrap
# ──────────────────────────────────────────────────────────────

_settings_boot = get_settings()
runtime = build_runtime(_settings_boot)
message_queue = runtime.queue
store = runtime.store
channel_registry = runtime.registry


def _credentials(channel: ChannelType) -> dict[str, Any]:
    config = get_settings().channels.get(channel.value)
    return config.credentials if config else {}


@asynccontextmanager
async def lifespan(app: FastAPI):
    settings = get_settings()

    if settings.database.store_backend == "sql":
        await init_db()

    await message_queue.connect()
    await runtime.ingestion_consumer.start_background()
    await runtime.delivery_consumer.start_background()
    await runtime.promoter.start_background()

    logger.info("flowdesk_started",
                store_backend=settings.database.store_backend,
                queue_backend=type(message_queue).__name__)
    yield

    await runtime.shutdown()
    if settings.database.store_backend == "sql":
        await close_db()
    logger.info("flowdesk_stopped")


# ──────────────────────────────────────────────────────────────
#  App
# ──────────────────────────────────────────────────────────────

app = FastAPI(
    title="FlowDesk API",
    description="Multi-channel conversational support orchestration",
    version="1.0.0",
    lifespan=lifespan,
)

app.add_middleware(
    CORSMiddleware,
    allow_origins=["*"],
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)


async def _enqueue(kind: str, payload: dict[str, Any], max_attempts: int) -> QueueJob:
    job = QueueJob(kind=kind, payload=payload, max_attempts=max_attempts)
    await message_queue.publish(Queues.INCOMING, job)
    return job


# ══════════════════════════════════════════════════════════════
#  HEALTH & DIAGNOSTICS
# ══════════════════════════════════════════════════════════════

@app.get("/health")
async def health():
    return {
        "status": "healthy",
        "timestamp": datetime.now(timezone.utc).isoformat(),
        "channels": [c.value for c in channel_registry.get_available()],
    }


@app.get("/api/v1/channels/health")
async def channel_health():
    """Circuit breaker state and send metrics per configured sender."""
    return await channel_registry.health_check_all()


@app.get("/api/v1/queue/stats")
async def queue_stats():
    depths = await message_queue.stats()
    return {
        "incoming_queue_depth": depths[Queues.INCOMING],
        "outgoing_queue_depth": depths[Queues.OUTGOING],
        "delayed_depth": depths[Queues.DELAYED],
        "dlq_depth": depths[Queues.DLQ],
    }


@app.get("/api/v1/deliveries/{record_id}")
async def get_delivery(record_id: str):
    record = await store.get_delivery(record_id)
    if record is None:
        raise HTTPException(404, "Delivery record not found")
    return record.model_dump(mode="json")


# ══════════════════════════════════════════════════════════════
#  ADMIN: flows and business hours
# ══════════════════════════════════════════════════════════════

@app.post("/api/v1/flows")
async def publish_flow(request: Request):
    """Store a flow document and make it the active one."""
    data = await request.json()
    try:
        flow = parse_flow(data)
    except FlowDefinitionError as e:
        raise HTTPException(422, str(e))
    flow_id = await store.save_flow(data, active=True)
    logger.info("flow_published", flow_id=flow_id, blocks=len(flow.blocks))
    return {"status": "published", "flow_id": flow_id}


@app.get("/api/v1/flows/active")
async def get_active_flow():
    flow = await store.get_active_flow()
    if flow is None:
        raise HTTPException(404, "No active flow")
    return flow


@app.put("/api/v1/queues/{queue_name}/hours")
async def set_queue_hours(queue_name: str, request: Request):
    data = await request.json()
    try:
        config = QueueBusinessHoursConfig.model_validate({**data, "queue_name": queue_name})
    except ValidationError as e:
        raise HTTPException(422, str(e))
    await store.upsert_queue_hours(config)
    runtime.hours_cache.invalidate(queue_name)
    return {"status": "ok", "queue_name": queue_name}


# ══════════════════════════════════════════════════════════════
#  TICKETS
# ══════════════════════════════════════════════════════════════

@app.post("/api/v1/tickets/status")
async def ticket_status(event: TicketStatusEvent):
    """External helpdesk signal; ``closed`` returns the conversation to the bot."""
    job = await _enqueue(
        JobKind.TICKET_STATUS,
        event.model_dump(mode="json", by_alias=True),
        get_settings().queue.max_ingestion_attempts,
    )
    return {"status": "queued", "job_id": job.job_id}


# ══════════════════════════════════════════════════════════════
#  WEBHOOKS: WhatsApp
# ══════════════════════════════════════════════════════════════

@app.get("/webhooks/whatsapp")
async def whatsapp_verify(request: Request):
    params = dict(request.query_params)
    verify_token = _credentials(ChannelType.WHATSAPP).get("verify_token", "")
    challenge = whatsapp_adapter.verify_webhook(params, verify_token)
    if challenge:
        return JSONResponse(content=int(challenge))
    raise HTTPException(403, "Verification failed")


@app.post("/webhooks/whatsapp")
async def whatsapp_webhook(request: Request):
    """Receive WhatsApp events with signature verification."""
    body_bytes = await request.body()

    # Verify webhook signature if app_secret is configured
    signature = request.headers.get("X-Hub-Signature-256", "")
    app_secret = _credentials(ChannelType.WHATSAPP).get("app_secret", "")
    if not whatsapp_adapter.verify_signature(body_bytes, signature, app_secret):
        logger.warning("whatsapp_webhook_signature_invalid")
        raise HTTPException(403, "Invalid signature")

    try:
        body = json.loads(body_bytes)
    except ValueError:
        raise HTTPException(400, "Invalid JSON body")

    event = InboundEvent(channel=ChannelType.WHATSAPP, payload=body)
    job = await _enqueue(JobKind.INBOUND, event.model_dump(mode="json"),
                         get_settings().queue.max_ingestion_attempts)
    return {"status": "ok", "job_id": job.job_id}


# ══════════════════════════════════════════════════════════════
#  WEBHOOKS: Telegram
# ══════════════════════════════════════════════════════════════

@app.post("/webhooks/telegram")
async def telegram_webhook(request: Request):
    secret = _credentials(ChannelType.TELEGRAM).get("webhook_secret", "")
    if secret:
        header = request.headers.get("X-Telegram-Bot-Api-Secret-Token", "")
        if not hmac.compare_digest(header, secret):
            logger.warning("telegram_webhook_secret_invalid")
            raise HTTPException(403, "Invalid secret token")

    update = await request.json()
    update_id = update.get("update_id") if isinstance(update, dict) else None
    event = InboundEvent(
        channel=ChannelType.TELEGRAM,
        payload=update,
        external_id=str(update_id) if update_id is not None else None,
    )
    job = await _enqueue(JobKind.INBOUND, event.model_dump(mode="json"),
                         get_settings().queue.max_ingestion_attempts)
    return {"status": "ok", "job_id": job.job_id}
