"""
Messenger — entry point of the outbound delivery pipeline.

``send()`` never touches the network: it adapts the unified message for the
target channel, persists a ``pending`` delivery record and enqueues an
OutgoingJob for the delivery workers. The caller gets the pending record
back immediately.
"""
from __future__ import annotations

from typing import Any, Optional

import structlog

from channels.base import ChannelRegistry
from database.store_base import BaseStore
from job_queue.message_queue import JobKind, MessageQueue, QueueJob, Queues
from models.schemas import ChannelType, DeliveryRecord, OutgoingJob

logger = structlog.get_logger()


class Messenger:

    def __init__(self, store: BaseStore, queue: MessageQueue, registry: ChannelRegistry,
                 max_attempts: int = 4):
        self._store = store
        self._queue = queue
        self._registry = registry
        self._max_attempts = max_attempts

    async def send(
        self,
        channel: ChannelType | str,
        user_id: str,
        message_type: str,
        content: Any,
        context: Optional[dict[str, Any]] = None,
    ) -> DeliveryRecord:
        """
        Adapt, persist and enqueue one outbound message.

        Raises UnsupportedMessageError when the channel has no mapping for
        ``message_type`` (or the channel itself is unknown); nothing is
        persisted or enqueued in that case.
        """
        adapter = self._registry.adapter(channel)
        to = adapter.normalize_recipient(user_id)
        wire_content = adapter.adapt(message_type, content)

        record = await self._store.create_delivery(DeliveryRecord(
            user_id=user_id,
            channel=adapter.channel_type,
            to=to,
            type=message_type,
            content=wire_content,
        ))

        job = OutgoingJob(
            temp_id=record.id,
            channel=adapter.channel_type,
            to=to,
            user_id=user_id,
            type=message_type,
            content=wire_content,
            context=context or {},
        )
        await self._queue.publish(Queues.OUTGOING, QueueJob(
            kind=JobKind.OUTGOING,
            payload=job.model_dump(mode="json", by_alias=True),
            max_attempts=self._max_attempts,
        ))

        logger.info("message_enqueued",
                    record_id=record.id,
                    channel=adapter.channel_type.value,
                    user_id=user_id,
                    type=message_type)
        return record
