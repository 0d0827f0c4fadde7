"""
Runtime wiring — builds the object graph shared by the API process and the
worker processes from Settings.
"""
from __future__ import annotations

from dataclasses import dataclass
from typing import Optional

import structlog

from channels.base import ChannelRegistry
from channels.messenger import Messenger
from channels.telegram_adapter import TelegramAdapter, TelegramSender
from channels.whatsapp_adapter import WhatsAppAdapter, WhatsAppSender
from config.settings import Settings
from core.handover import HandoverManager
from core.ingestion import IngestionService
from core.interpreter import FlowInterpreter
from core.scripting import ScriptSandbox
from database.store_base import BaseStore
from database.store_factory import create_store
from job_queue.consumer import DelayedJobPromoter, DeliveryConsumer, IngestionConsumer
from job_queue.message_queue import MessageQueue, create_message_queue
from models.schemas import ChannelType
from support.hours_cache import BusinessHoursCache
from support.tickets import TicketDistributor

logger = structlog.get_logger()


@dataclass
class Runtime:
    settings: Settings
    store: BaseStore
    queue: MessageQueue
    registry: ChannelRegistry
    messenger: Messenger
    hours_cache: BusinessHoursCache
    interpreter: FlowInterpreter
    ingestion: IngestionService
    ingestion_consumer: IngestionConsumer
    delivery_consumer: DeliveryConsumer
    promoter: DelayedJobPromoter

    async def shutdown(self) -> None:
        await self.ingestion_consumer.stop()
        await self.delivery_consumer.stop()
        await self.promoter.stop()
        await self.queue.close()
        await self.interpreter.aclose()
        await self.registry.shutdown_all()


def build_registry(settings: Settings) -> ChannelRegistry:
    """Adapters for every known channel; senders only for enabled ones."""
    registry = ChannelRegistry()
    timeout = settings.flow.http_timeout_seconds
    channels = settings.channels

    wa = channels.get(ChannelType.WHATSAPP.value)
    registry.register(
        WhatsAppAdapter(),
        WhatsAppSender(wa.credentials, timeout=timeout) if wa and wa.enabled else None,
    )
    tg = channels.get(ChannelType.TELEGRAM.value)
    registry.register(
        TelegramAdapter(),
        TelegramSender(tg.credentials, timeout=timeout) if tg and tg.enabled else None,
    )
    return registry


def build_runtime(
    settings: Settings,
    store: Optional[BaseStore] = None,
    queue: Optional[MessageQueue] = None,
    registry: Optional[ChannelRegistry] = None,
) -> Runtime:
    store = store or create_store({"store_backend": settings.database.store_backend})
    queue = queue or create_message_queue({
        "backend": settings.queue.backend,
        "redis_url": settings.queue.redis_url,
        "retry_backoff_base": settings.queue.retry_backoff_base,
        "delayed_promote_interval": settings.queue.delayed_promote_interval,
    })
    registry = registry or build_registry(settings)

    messenger = Messenger(store, queue, registry, max_attempts=settings.queue.max_delivery_attempts)
    hours_cache = BusinessHoursCache(store, ttl_seconds=settings.support.hours_cache_ttl_seconds)
    handover = HandoverManager(
        store,
        messenger,
        TicketDistributor(store, settings.support.default_queue, settings.support.default_distribution_mode),
        hours_cache,
        config=settings.flow,
        timezone_name=settings.timezone,
        default_queue=settings.support.default_queue,
    )
    interpreter = FlowInterpreter(
        store,
        messenger,
        handover,
        sandbox=ScriptSandbox(settings.flow.script_timeout_seconds, settings.flow.script_memory_mb),
        queue=queue,
        config=settings.flow,
    )
    ingestion = IngestionService(store, interpreter)

    runtime = Runtime(
        settings=settings,
        store=store,
        queue=queue,
        registry=registry,
        messenger=messenger,
        hours_cache=hours_cache,
        interpreter=interpreter,
        ingestion=ingestion,
        ingestion_consumer=IngestionConsumer(
            ingestion, queue,
            consumer_group=settings.queue.consumer_group,
            concurrency=settings.queue.ingestion_concurrency,
        ),
        delivery_consumer=DeliveryConsumer(
            store, registry, queue,
            consumer_group=settings.queue.consumer_group,
            concurrency=settings.queue.delivery_concurrency,
        ),
        promoter=DelayedJobPromoter(queue, interval_seconds=settings.queue.delayed_promote_interval),
    )
    logger.info("runtime_built",
                store=type(store).__name__,
                queue=type(queue).__name__,
                channels=[c.value for c in registry.get_available()])
    return runtime
