"""
Queue Consumers — Pull jobs from the queues and drive ingestion and delivery.

Runs as async tasks inside a worker process. For horizontal scaling, deploy
multiple processes with the same consumer_group; Redis Streams guarantees
each job is delivered to exactly one consumer.

Topology:
  ┌──────────────┐       ┌─────────────────┐       ┌─────────────────┐
  │ Webhook API  │──pub──▶│ incoming queue   │──────▶│ IngestionConsumer│──▶ interpreter
  └──────────────┘       └─────────────────┘       └────────┬────────┘
                                                             │ Messenger.send
                         ┌─────────────────┐                 ▼
                         │ outgoing queue   │◀──────────── pending record
                         └────────┬────────┘
                                  ▼
                         ┌─────────────────┐
                         │ DeliveryConsumer │──▶ channel sender
                         └────────┬────────┘
                    transient     │      fatal / exhausted
                         ┌────────┴────────┐
                         ▼                 ▼
                ┌─────────────────┐  ┌─────────────┐
                │ delayed (sorted │  │    DLQ      │
                │  set / promoter)│  └─────────────┘
                └─────────────────┘
"""
from __future__ import annotations

import asyncio
from typing import Optional

import structlog
from pydantic import ValidationError

from channels.base import ChannelRegistry, DeliveryFatalError, DeliveryTransientError
from database.store_base import BaseStore
from job_queue.message_queue import (
    JobKind, MessageQueue, QueueJob, Queues, RejectedJob,
    get_message_queue,
)
from models.schemas import (
    DeliveryStatus, FlowContinuation, InboundEvent, OutgoingJob, TicketStatusEvent,
)

logger = structlog.get_logger()


class _QueueWorker:
    """Start/stop plumbing shared by the consumers."""

    queue_name: str = ""

    def __init__(
        self,
        queue: MessageQueue = None,
        consumer_group: str = "flowdesk-workers",
        consumer_name: str = "",
        concurrency: int = 50,
    ):
        self.queue = queue or get_message_queue()
        self.consumer_group = consumer_group
        self.consumer_name = consumer_name
        self.concurrency = concurrency
        self._tasks: list[asyncio.Task] = []

    async def start(self):
        """Start consuming — blocks until stop() is called."""
        logger.info("consumer_starting",
                    queue=self.queue_name,
                    group=self.consumer_group,
                    concurrency=self.concurrency)

        await self.queue.consume(
            queue=self.queue_name,
            handler=self.handle,
            consumer_group=self.consumer_group,
            consumer_name=self.consumer_name,
            prefetch=self.concurrency,
        )

    async def start_background(self) -> asyncio.Task:
        """Start consuming in a background task. Returns the task handle."""
        task = asyncio.create_task(self.start())
        self._tasks.append(task)
        return task

    async def stop(self):
        """Gracefully stop all consumer tasks."""
        self.queue.stop()
        for task in self._tasks:
            task.cancel()
            try:
                await task
            except asyncio.CancelledError:
                pass
        self._tasks.clear()
        logger.info("consumer_stopped", queue=self.queue_name)

    async def handle(self, job: QueueJob):
        raise NotImplementedError


# ──────────────────────────────────────────────────────────────
#  Ingestion
# ──────────────────────────────────────────────────────────────

class IngestionConsumer(_QueueWorker):
    """
    Consumes the incoming queue and hands each job to the ingestion service.

    Usage:
        consumer = IngestionConsumer(service, queue)
        await consumer.start()             # blocks, runs forever
        await consumer.start_background()  # returns immediately, runs as task
        await consumer.stop()
    """

    queue_name = Queues.INCOMING

    def __init__(self, ingestion, queue: MessageQueue = None, **kwargs):
        super().__init__(queue, **kwargs)
        self.ingestion = ingestion  # core.ingestion.IngestionService

    async def handle(self, job: QueueJob):
        logger.info("processing_job", job_id=job.job_id, kind=job.kind, attempt=job.attempt)
        try:
            if job.kind == JobKind.INBOUND:
                await self.ingestion.handle_event(InboundEvent.model_validate(job.payload))
            elif job.kind == JobKind.TICKET_STATUS:
                await self.ingestion.handle_ticket_status(TicketStatusEvent.model_validate(job.payload))
            elif job.kind == JobKind.FLOW_CONTINUE:
                await self.ingestion.continue_flow(FlowContinuation.model_validate(job.payload))
            else:
                raise RejectedJob(f"Unknown job kind: {job.kind}")
        except ValidationError as e:
            raise RejectedJob(f"Malformed {job.kind} payload: {e}") from e


# ──────────────────────────────────────────────────────────────
#  Delivery
# ──────────────────────────────────────────────────────────────

class DeliveryConsumer(_QueueWorker):
    """
    Consumes OutgoingJobs and invokes the channel sender.

    Outcome handling:
      success   → record ``sent`` with the provider message id
      fatal     → record ``error``, job rejected to the DLQ (never retried)
      transient → exception propagates so the queue schedules a retry;
                  on the last attempt the record is marked ``error`` first
    """

    queue_name = Queues.OUTGOING

    def __init__(self, store: BaseStore, registry: ChannelRegistry,
                 queue: MessageQueue = None, **kwargs):
        super().__init__(queue, **kwargs)
        self.store = store
        self.registry = registry

    async def handle(self, job: QueueJob):
        try:
            outgoing = OutgoingJob.model_validate(job.payload)
        except ValidationError as e:
            raise RejectedJob(f"Malformed outgoing payload: {e}") from e

        attempts = job.attempt + 1
        try:
            sender = self.registry.sender(outgoing.channel)
            result = await sender.send(outgoing)
        except DeliveryFatalError as e:
            await self.store.update_delivery(outgoing.temp_id, DeliveryStatus.ERROR,
                                             error=str(e), attempts=attempts)
            logger.warning("delivery_failed_fatal",
                           record_id=outgoing.temp_id,
                           channel=outgoing.channel.value,
                           error=str(e))
            raise RejectedJob(str(e)) from e
        except DeliveryTransientError as e:
            status = DeliveryStatus.ERROR if job.is_last_attempt else DeliveryStatus.PENDING
            await self.store.update_delivery(outgoing.temp_id, status,
                                             error=str(e), attempts=attempts)
            logger.warning("delivery_failed_transient",
                           record_id=outgoing.temp_id,
                           channel=outgoing.channel.value,
                           attempt=attempts,
                           max_attempts=job.max_attempts,
                           error=str(e))
            raise

        await self.store.update_delivery(outgoing.temp_id, DeliveryStatus.SENT,
                                         provider_message_id=result.provider_message_id,
                                         attempts=attempts)
        logger.info("delivery_sent",
                    record_id=outgoing.temp_id,
                    channel=outgoing.channel.value,
                    provider_id=result.provider_message_id)


# ──────────────────────────────────────────────────────────────
#  Delayed Job Promoter
# ──────────────────────────────────────────────────────────────

class DelayedJobPromoter:
    """
    Background task that periodically moves delayed/retry jobs
    whose scheduled_at has arrived onto their origin queue.

    For Redis: runs ZRANGEBYSCORE + XADD pipeline.
    For in-memory: already handled inside InMemoryMessageQueue.
    """

    def __init__(self, queue: MessageQueue = None, interval_seconds: float = 1.0):
        self.queue = queue or get_message_queue()
        self.interval = interval_seconds
        self._task: Optional[asyncio.Task] = None

    async def start_background(self) -> asyncio.Task:
        self._task = asyncio.create_task(self._run())
        return self._task

    async def stop(self):
        if self._task:
            self._task.cancel()
            try:
                await self._task
            except asyncio.CancelledError:
                pass

    async def _run(self):
        logger.info("delayed_promoter_started", interval=self.interval)
        while True:
            try:
                await self.queue.promote_delayed()
            except asyncio.CancelledError:
                break
            except Exception as e:
                logger.error("promoter_error", error=str(e))
            await asyncio.sleep(self.interval)
