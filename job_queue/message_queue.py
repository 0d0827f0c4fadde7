"""
Message Queue — Abstract interface with Redis Streams and in-memory backends.

Queue Topology:
  flowdesk:incoming    — Inbound events, ticket-status signals and flow continuations
  flowdesk:outgoing    — OutgoingJobs ready for channel delivery
  flowdesk:delayed     — Jobs with a future execution time (sorted set in Redis)
  flowdesk:dlq         — Dead-letter queue for rejected / exhausted jobs

Message Schema:
  {
      "job_id":        unique job identifier (stable across retries),
      "kind":          inbound | ticket_status | flow_continue | outgoing,
      "payload":       JSON body for the handler of ``kind``,
      "queue":         queue the job belongs to (retries go back here),
      "attempt":       current attempt number (0-based),
      "max_attempts":  ceiling before DLQ,
      "scheduled_at":  ISO timestamp when the job should execute,
      "created_at":    ISO timestamp when the job was enqueued,
      "metadata":      arbitrary extra data (last error, dlq reason),
  }
"""
from __future__ import annotations

import asyncio
import json
import uuid
from abc import ABC, abstractmethod
from dataclasses import dataclass, field, asdict
from datetime import datetime, timedelta, timezone
from typing import Any, Awaitable, Callable, Optional

import structlog

logger = structlog.get_logger()

JobHandler = Callable[["QueueJob"], Awaitable[Any]]


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


# ──────────────────────────────────────────────────────────────
#  Job Model
# ──────────────────────────────────────────────────────────────

class JobKind:
    INBOUND = "inbound"
    TICKET_STATUS = "ticket_status"
    FLOW_CONTINUE = "flow_continue"
    OUTGOING = "outgoing"


class RejectedJob(Exception):
    """Raised by a handler for a job that must not be retried (goes straight to the DLQ)."""


@dataclass
class QueueJob:
    """A unit of work on the queue."""
    kind: str
    payload: dict[str, Any] = field(default_factory=dict)
    queue: str = ""
    attempt: int = 0
    max_attempts: int = 3
    scheduled_at: str = ""
    created_at: str = ""
    metadata: dict[str, Any] = field(default_factory=dict)
    job_id: str = ""

    def __post_init__(self):
        if not self.job_id:
            self.job_id = f"job_{uuid.uuid4().hex[:12]}"
        if not self.created_at:
            self.created_at = _utcnow().isoformat()
        if not self.scheduled_at:
            self.scheduled_at = self.created_at

    def to_dict(self) -> dict[str, Any]:
        d = asdict(self)
        d["payload"] = json.dumps(d["payload"])
        d["metadata"] = json.dumps(d["metadata"])
        d["attempt"] = str(d["attempt"])
        d["max_attempts"] = str(d["max_attempts"])
        return d

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> QueueJob:
        data = dict(data)  # copy
        if isinstance(data.get("payload"), str):
            data["payload"] = json.loads(data["payload"])
        if isinstance(data.get("metadata"), str):
            data["metadata"] = json.loads(data["metadata"])
        data["attempt"] = int(data.get("attempt", 0))
        data["max_attempts"] = int(data.get("max_attempts", 3))
        return cls(**{k: v for k, v in data.items() if k in cls.__dataclass_fields__})

    @property
    def scheduled_ts(self) -> float:
        try:
            target = datetime.fromisoformat(self.scheduled_at)
        except ValueError:
            return 0.0
        if target.tzinfo is None:
            target = target.replace(tzinfo=timezone.utc)
        return target.timestamp()

    @property
    def is_last_attempt(self) -> bool:
        return self.attempt + 1 >= self.max_attempts

    def next_retry_job(self, backoff_base: float = 2.0, error: str = "") -> QueueJob:
        """Copy with incremented attempt, scheduled ``backoff_base * 2**attempt`` seconds out."""
        retry_at = _utcnow() + timedelta(seconds=backoff_base * (2 ** self.attempt))
        return QueueJob(
            kind=self.kind,
            payload=self.payload,
            queue=self.queue,
            attempt=self.attempt + 1,
            max_attempts=self.max_attempts,
            scheduled_at=retry_at.isoformat(),
            created_at=self.created_at,
            metadata={**self.metadata, "last_error": error,
                      "last_failure_at": _utcnow().isoformat()},
            job_id=self.job_id,  # same job_id across retries for tracing
        )


# ──────────────────────────────────────────────────────────────
#  Queue Names
# ──────────────────────────────────────────────────────────────

class Queues:
    INCOMING = "flowdesk:incoming"
    OUTGOING = "flowdesk:outgoing"
    DELAYED = "flowdesk:delayed"
    DLQ = "flowdesk:dlq"


# ──────────────────────────────────────────────────────────────
#  Abstract Interface
# ──────────────────────────────────────────────────────────────

class MessageQueue(ABC):
    """Abstract message queue interface."""

    def __init__(self, retry_backoff_base: float = 2.0):
        self.retry_backoff_base = retry_backoff_base
        self._running = False

    @abstractmethod
    async def connect(self):
        """Establish connection to the queue backend."""
        ...

    @abstractmethod
    async def close(self):
        """Gracefully shut down."""
        ...

    @abstractmethod
    async def publish(self, queue: str, job: QueueJob):
        """Publish a job to a queue."""
        ...

    @abstractmethod
    async def publish_delayed(self, job: QueueJob):
        """Publish a job that should land on ``job.queue`` at ``job.scheduled_at``."""
        ...

    @abstractmethod
    async def consume(
        self,
        queue: str,
        handler: JobHandler,
        consumer_group: str = "default",
        consumer_name: str = "",
        prefetch: int = 10,
    ):
        """
        Start consuming from a queue. Blocks and calls handler for each job,
        with at most ``prefetch`` handlers in flight.
        """
        ...

    @abstractmethod
    async def queue_length(self, queue: str) -> int:
        """Return the number of pending jobs in a queue."""
        ...

    @abstractmethod
    async def peek(self, queue: str, count: int = 10) -> list[QueueJob]:
        """Peek at jobs without consuming them."""
        ...

    @abstractmethod
    async def promote_delayed(self, now: Optional[datetime] = None) -> int:
        """Move delayed jobs whose scheduled_at has arrived onto their queue."""
        ...

    async def nack(self, queue: str, job: QueueJob, error: str = "", requeue: bool = True):
        """Negative-acknowledge: delayed retry on ``queue``, or DLQ when rejected or exhausted."""
        if not requeue or job.is_last_attempt:
            job.metadata["dlq_reason"] = error if not requeue else f"Exceeded {job.max_attempts} attempts"
            job.metadata["last_error"] = error
            job.queue = job.queue or queue
            await self.publish(Queues.DLQ, job)
            logger.warning("job_moved_to_dlq",
                           job_id=job.job_id,
                           kind=job.kind,
                           attempts=job.attempt + 1,
                           rejected=not requeue)
            return

        job.queue = job.queue or queue
        retry_job = job.next_retry_job(self.retry_backoff_base, error)
        await self.publish_delayed(retry_job)
        logger.info("job_scheduled_for_retry",
                    job_id=job.job_id,
                    attempt=retry_job.attempt,
                    scheduled_at=retry_job.scheduled_at)

    async def _run_handler(self, queue: str, job: QueueJob, handler: JobHandler):
        """Invoke ``handler``; failures are routed to nack and never escape."""
        try:
            await handler(job)
        except RejectedJob as e:
            await self.nack(queue, job, error=str(e), requeue=False)
        except Exception as e:
            logger.error("job_handler_error",
                         job_id=job.job_id,
                         kind=job.kind,
                         error=str(e))
            await self.nack(queue, job, error=str(e))

    async def stats(self) -> dict[str, int]:
        return {
            name: await self.queue_length(name)
            for name in (Queues.INCOMING, Queues.OUTGOING, Queues.DELAYED, Queues.DLQ)
        }

    def stop(self):
        self._running = False


# ──────────────────────────────────────────────────────────────
#  Redis Streams Implementation
# ──────────────────────────────────────────────────────────────

class RedisMessageQueue(MessageQueue):
    """
    Production queue backed by Redis Streams + Sorted Sets.

    - Incoming/Outgoing queues use Redis Streams with consumer groups
    - Delayed queue uses a Redis Sorted Set (ZRANGEBYSCORE for promotion)
    - DLQ uses a Redis Stream for inspection
    """

    def __init__(self, redis_url: str = "redis://localhost:6379", retry_backoff_base: float = 2.0):
        super().__init__(retry_backoff_base)
        self._redis_url = redis_url
        self._redis = None

    async def connect(self):
        import redis.asyncio as aioredis
        self._redis = aioredis.from_url(
            self._redis_url,
            decode_responses=True,
            max_connections=20,
        )
        await self._redis.ping()
        logger.info("redis_queue_connected", url=self._redis_url)

    async def close(self):
        self._running = False
        if self._redis:
            await self._redis.aclose()

    async def _ensure_group(self, queue: str, group: str):
        """Create consumer group if it doesn't exist."""
        from redis.exceptions import ResponseError
        try:
            await self._redis.xgroup_create(queue, group, id="0", mkstream=True)
        except ResponseError as e:
            if "BUSYGROUP" not in str(e):
                raise

    async def publish(self, queue: str, job: QueueJob):
        job.queue = job.queue or queue
        await self._redis.xadd(queue, job.to_dict())
        logger.info("job_published",
                    queue=queue,
                    job_id=job.job_id,
                    kind=job.kind)

    async def publish_delayed(self, job: QueueJob):
        payload = json.dumps(job.to_dict())
        await self._redis.zadd(Queues.DELAYED, {payload: job.scheduled_ts})
        logger.info("delayed_job_published",
                    job_id=job.job_id,
                    queue=job.queue,
                    scheduled_at=job.scheduled_at)

    async def consume(
        self,
        queue: str,
        handler: JobHandler,
        consumer_group: str = "default",
        consumer_name: str = "",
        prefetch: int = 10,
    ):
        if not consumer_name:
            consumer_name = f"worker_{uuid.uuid4().hex[:8]}"

        await self._ensure_group(queue, consumer_group)
        self._running = True
        in_flight: set[asyncio.Task] = set()
        logger.info("consumer_started",
                    queue=queue,
                    group=consumer_group,
                    consumer=consumer_name,
                    prefetch=prefetch)

        async def process(message_id: str, job: QueueJob):
            await self._run_handler(queue, job, handler)
            await self._redis.xack(queue, consumer_group, message_id)

        try:
            while self._running:
                free = prefetch - len(in_flight)
                if free <= 0:
                    await asyncio.wait(in_flight, return_when=asyncio.FIRST_COMPLETED)
                    continue
                try:
                    messages = await self._redis.xreadgroup(
                        groupname=consumer_group,
                        consumername=consumer_name,
                        streams={queue: ">"},
                        count=free,
                        block=2000,  # block 2s waiting for messages
                    )
                except asyncio.CancelledError:
                    raise
                except Exception as e:
                    logger.error("consumer_error", queue=queue, error=str(e))
                    await asyncio.sleep(1)
                    continue

                for _, stream_messages in messages or []:
                    for message_id, fields in stream_messages:
                        task = asyncio.create_task(process(message_id, QueueJob.from_dict(fields)))
                        in_flight.add(task)
                        task.add_done_callback(in_flight.discard)
        except asyncio.CancelledError:
            pass
        finally:
            if in_flight:
                await asyncio.gather(*in_flight, return_exceptions=True)

    async def queue_length(self, queue: str) -> int:
        if queue == Queues.DELAYED:
            return await self._redis.zcard(queue)
        return await self._redis.xlen(queue)

    async def peek(self, queue: str, count: int = 10) -> list[QueueJob]:
        messages = await self._redis.xrange(queue, count=count)
        return [QueueJob.from_dict(fields) for _, fields in messages]

    async def promote_delayed(self, now: Optional[datetime] = None) -> int:
        """Move jobs whose scheduled_at <= now from sorted set to their stream."""
        ts = (now or _utcnow()).timestamp()
        ready = await self._redis.zrangebyscore(Queues.DELAYED, "-inf", ts)

        if not ready:
            return 0

        pipe = self._redis.pipeline()
        for payload in ready:
            job = QueueJob.from_dict(json.loads(payload))
            pipe.xadd(job.queue or Queues.INCOMING, job.to_dict())
            pipe.zrem(Queues.DELAYED, payload)
        await pipe.execute()

        logger.info("delayed_jobs_promoted", count=len(ready))
        return len(ready)


# ──────────────────────────────────────────────────────────────
#  In-Memory Implementation (Development)
# ──────────────────────────────────────────────────────────────

class InMemoryMessageQueue(MessageQueue):
    """
    Development/test queue backed by asyncio primitives.
    Single-process only — no consumer groups or persistence.
    """

    def __init__(self, retry_backoff_base: float = 2.0, promote_interval: float = 1.0):
        super().__init__(retry_backoff_base)
        self._queues: dict[str, asyncio.Queue] = {}
        self._delayed: list[QueueJob] = []
        self._promote_interval = promote_interval
        self._delayed_promoter_task: Optional[asyncio.Task] = None

    def _get_queue(self, name: str) -> asyncio.Queue:
        if name not in self._queues:
            self._queues[name] = asyncio.Queue()
        return self._queues[name]

    async def connect(self):
        self._running = True
        self._delayed_promoter_task = asyncio.create_task(self._promote_loop())
        logger.info("inmemory_queue_connected")

    async def close(self):
        self._running = False
        if self._delayed_promoter_task:
            self._delayed_promoter_task.cancel()
            try:
                await self._delayed_promoter_task
            except asyncio.CancelledError:
                pass

    async def publish(self, queue: str, job: QueueJob):
        job.queue = job.queue or queue
        await self._get_queue(queue).put(job)
        logger.info("job_published",
                    queue=queue,
                    job_id=job.job_id,
                    kind=job.kind)

    async def publish_delayed(self, job: QueueJob):
        self._delayed.append(job)
        self._delayed.sort(key=lambda j: j.scheduled_ts)
        logger.info("delayed_job_published",
                    job_id=job.job_id,
                    queue=job.queue,
                    scheduled_at=job.scheduled_at)

    async def consume(
        self,
        queue: str,
        handler: JobHandler,
        consumer_group: str = "default",
        consumer_name: str = "",
        prefetch: int = 10,
    ):
        q = self._get_queue(queue)
        self._running = True
        slots = asyncio.Semaphore(prefetch)
        in_flight: set[asyncio.Task] = set()
        logger.info("consumer_started", queue=queue, prefetch=prefetch)

        async def process(job: QueueJob):
            try:
                await self._run_handler(queue, job, handler)
            finally:
                slots.release()

        try:
            while self._running:
                await slots.acquire()
                try:
                    job = await asyncio.wait_for(q.get(), timeout=2.0)
                except asyncio.TimeoutError:
                    slots.release()
                    continue
                task = asyncio.create_task(process(job))
                in_flight.add(task)
                task.add_done_callback(in_flight.discard)
        except asyncio.CancelledError:
            pass
        finally:
            if in_flight:
                await asyncio.gather(*in_flight, return_exceptions=True)

    async def run_once(self, queue: str, handler: JobHandler) -> bool:
        """Process the next ready job on ``queue`` inline. False when the queue is empty."""
        q = self._get_queue(queue)
        if q.empty():
            return False
        await self._run_handler(queue, q.get_nowait(), handler)
        return True

    async def queue_length(self, queue: str) -> int:
        if queue == Queues.DELAYED:
            return len(self._delayed)
        return self._get_queue(queue).qsize()

    async def peek(self, queue: str, count: int = 10) -> list[QueueJob]:
        if queue == Queues.DELAYED:
            return list(self._delayed[:count])
        q = self._get_queue(queue)
        items = []
        # asyncio.Queue doesn't support peek natively: drain and re-add
        while not q.empty():
            items.append(q.get_nowait())
        for item in items:
            q.put_nowait(item)
        return items[:count]

    async def promote_delayed(self, now: Optional[datetime] = None) -> int:
        ts = (now or _utcnow()).timestamp()
        ready = [job for job in self._delayed if job.scheduled_ts <= ts]
        self._delayed = [job for job in self._delayed if job.scheduled_ts > ts]

        for job in ready:
            await self.publish(job.queue or Queues.INCOMING, job)

        if ready:
            logger.info("delayed_jobs_promoted", count=len(ready))
        return len(ready)

    async def _promote_loop(self):
        """Background loop to promote delayed jobs."""
        while self._running:
            try:
                await self.promote_delayed()
            except asyncio.CancelledError:
                break
            except Exception as e:
                logger.error("delayed_promote_error", error=str(e))
            await asyncio.sleep(self._promote_interval)


# ──────────────────────────────────────────────────────────────
#  Factory
# ──────────────────────────────────────────────────────────────

_instance: Optional[MessageQueue] = None


def create_message_queue(queue_config: dict[str, Any] = None) -> MessageQueue:
    """Factory: create the appropriate queue backend."""
    global _instance
    if _instance:
        return _instance

    config = queue_config or {}
    backend = config.get("backend", "memory")
    backoff = float(config.get("retry_backoff_base", 2))

    if backend == "redis":
        url = config.get("redis_url", "redis://localhost:6379")
        _instance = RedisMessageQueue(redis_url=url, retry_backoff_base=backoff)
    else:
        _instance = InMemoryMessageQueue(
            retry_backoff_base=backoff,
            promote_interval=float(config.get("delayed_promote_interval", 1)),
        )

    return _instance


def get_message_queue() -> MessageQueue:
    """Return the singleton queue instance."""
    global _instance
    if _instance is None:
        _instance = create_message_queue()
    return _instance


def reset_message_queue() -> None:
    """Reset the singleton (for testing)."""
    global _instance
    _instance = None
