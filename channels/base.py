"""
Channel infrastructure shared by every messaging channel.

Provides:
- ChannelError hierarchy with fatal / transient delivery classification
- TokenBucketRateLimiter: async token bucket with configurable burst
- CircuitBreaker: failure-counting breaker with half-open probe
- ChannelMetrics: per-channel sent / fatal / transient counters
- MessageAdapter: pure mapping from unified (type, content) to wire shape
- ChannelSender: network strategy wrapped with rate limiting and breaker
- ChannelRegistry: adapter + sender lookup by channel tag
"""
from __future__ import annotations

import abc
import asyncio
import time
from dataclasses import dataclass, field
from typing import Any, Optional

import structlog

from models.schemas import ChannelType, OutgoingJob

logger = structlog.get_logger()


# ══════════════════════════════════════════════════════════════
#  ERRORS
# ══════════════════════════════════════════════════════════════

class ChannelError(Exception):
    """Base exception for all channel operations."""

    def __init__(self, message: str, channel: str = "", retryable: bool = False):
        self.channel = channel
        self.retryable = retryable
        super().__init__(message)


class DeliveryFatalError(ChannelError):
    """Permanent failure: bad recipient, credentials or payload. Never retried."""

    def __init__(self, message: str, channel: str = ""):
        super().__init__(message, channel, retryable=False)


class DeliveryTransientError(ChannelError):
    """Temporary failure: network, rate limit, provider outage. Retried."""

    def __init__(self, message: str, channel: str = ""):
        super().__init__(message, channel, retryable=True)


class UnsupportedMessageError(DeliveryFatalError):
    """The (channel, type) combination has no wire mapping."""

    def __init__(self, message_type: str, channel: str = ""):
        super().__init__(f"Unsupported message type '{message_type}' for {channel or 'channel'}", channel)
        self.message_type = message_type


class RateLimitedError(DeliveryTransientError):
    def __init__(self, channel: str = ""):
        super().__init__(f"Rate limit exceeded for {channel}", channel)


class CircuitOpenError(DeliveryTransientError):
    def __init__(self, channel: str = ""):
        super().__init__(f"Circuit breaker open for {channel}", channel)


# ══════════════════════════════════════════════════════════════
#  TOKEN BUCKET RATE LIMITER
# ══════════════════════════════════════════════════════════════

class TokenBucketRateLimiter:
    """
    Async token bucket rate limiter.
    Tokens refill at `rate` per second up to `burst` capacity.
    """

    def __init__(self, rate: float = 20.0, burst: int = 40):
        self.rate = rate
        self.burst = burst
        self._tokens: float = float(burst)
        self._last_refill = time.monotonic()
        self._lock = asyncio.Lock()

    async def acquire(self, timeout: float = 5.0) -> bool:
        deadline = time.monotonic() + timeout
        while True:
            async with self._lock:
                self._refill()
                if self._tokens >= 1.0:
                    self._tokens -= 1.0
                    return True
            remaining = deadline - time.monotonic()
            if remaining <= 0:
                return False
            await asyncio.sleep(min(1.0 / max(self.rate, 0.001), remaining))

    def _refill(self):
        now = time.monotonic()
        self._tokens = min(self.burst, self._tokens + (now - self._last_refill) * self.rate)
        self._last_refill = now


# ══════════════════════════════════════════════════════════════
#  CIRCUIT BREAKER
# ══════════════════════════════════════════════════════════════

class CircuitBreaker:
    """
    Per-channel circuit breaker.

    closed → open (after `failure_threshold` consecutive transient failures)
    → half_open (after `recovery_timeout`) → closed on the next success,
    or open again on the next failure.
    """

    def __init__(self, name: str = "", failure_threshold: int = 5, recovery_timeout: float = 30.0):
        self.name = name
        self.failure_threshold = failure_threshold
        self.recovery_timeout = recovery_timeout
        self._state = "closed"
        self._consecutive_failures = 0
        self._opened_at = 0.0

    @property
    def state(self) -> str:
        if self._state == "open" and time.monotonic() - self._opened_at >= self.recovery_timeout:
            return "half_open"
        return self._state

    @property
    def is_open(self) -> bool:
        return self.state == "open"

    def record_failure(self):
        self._consecutive_failures += 1
        if self.state == "half_open" or self._consecutive_failures >= self.failure_threshold:
            self._state = "open"
            self._opened_at = time.monotonic()
            logger.warning("circuit_opened", channel=self.name, failures=self._consecutive_failures)

    def record_success(self):
        if self._state != "closed":
            logger.info("circuit_closed", channel=self.name)
        self._state = "closed"
        self._consecutive_failures = 0

    @property
    def stats(self) -> dict[str, Any]:
        return {"state": self.state, "consecutive_failures": self._consecutive_failures}


# ══════════════════════════════════════════════════════════════
#  CHANNEL METRICS
# ══════════════════════════════════════════════════════════════

@dataclass
class ChannelMetrics:
    channel: ChannelType
    sent: int = 0
    fatal: int = 0
    transient: int = 0
    latencies_ms: list[float] = field(default_factory=list)

    def record_send(self, latency_ms: float):
        self.sent += 1
        self.latencies_ms = (self.latencies_ms + [latency_ms])[-100:]

    @property
    def avg_latency_ms(self) -> float:
        return sum(self.latencies_ms) / len(self.latencies_ms) if self.latencies_ms else 0.0

    def to_dict(self) -> dict[str, Any]:
        return {
            "channel": self.channel.value,
            "sent": self.sent,
            "fatal": self.fatal,
            "transient": self.transient,
            "avg_latency_ms": round(self.avg_latency_ms, 1),
        }


# ══════════════════════════════════════════════════════════════
#  ADAPTER: pure unified → wire mapping
# ══════════════════════════════════════════════════════════════

def compact(payload: dict[str, Any]) -> dict[str, Any]:
    """Drop keys whose value is None."""
    return {k: v for k, v in payload.items() if v is not None}


class MessageAdapter(abc.ABC):
    """Stateless mapping for one channel. Raises UnsupportedMessageError for unknown types."""

    channel_type: ChannelType

    @abc.abstractmethod
    def normalize_recipient(self, user_id: str) -> str:
        """Turn a channel-qualified user id into the channel's address."""
        ...

    @abc.abstractmethod
    def adapt(self, message_type: str, content: Any) -> Any:
        ...


# ══════════════════════════════════════════════════════════════
#  SENDER: network strategy per channel
# ══════════════════════════════════════════════════════════════

@dataclass
class SendResult:
    provider_message_id: Optional[str] = None
    response: Any = None


class ChannelSender(abc.ABC):
    """
    Base class for channel senders.

    Subclasses implement `_do_send` and raise DeliveryFatalError /
    DeliveryTransientError. The base wraps every send with rate limiting,
    the circuit breaker and metrics; any unclassified exception is
    reported as transient.
    """

    channel_type: ChannelType

    def __init__(self, rate_limiter: Optional[TokenBucketRateLimiter] = None,
                 breaker: Optional[CircuitBreaker] = None):
        self._rate_limiter = rate_limiter or TokenBucketRateLimiter()
        self._breaker = breaker or CircuitBreaker(name=self.channel_type.value)
        self.metrics = ChannelMetrics(self.channel_type)

    @abc.abstractmethod
    async def _do_send(self, job: OutgoingJob) -> SendResult:
        ...

    async def send(self, job: OutgoingJob) -> SendResult:
        channel = self.channel_type.value
        if self._breaker.is_open:
            self.metrics.transient += 1
            raise CircuitOpenError(channel)
        if not await self._rate_limiter.acquire(timeout=5.0):
            self.metrics.transient += 1
            raise RateLimitedError(channel)

        start = time.monotonic()
        try:
            result = await self._do_send(job)
        except DeliveryFatalError:
            self.metrics.fatal += 1
            raise
        except DeliveryTransientError:
            self.metrics.transient += 1
            self._breaker.record_failure()
            raise
        except Exception as e:
            self.metrics.transient += 1
            self._breaker.record_failure()
            raise DeliveryTransientError(f"{type(e).__name__}: {e}", channel) from e

        self._breaker.record_success()
        self.metrics.record_send((time.monotonic() - start) * 1000)
        return result

    async def health_check(self) -> dict[str, Any]:
        return {
            "channel": self.channel_type.value,
            "circuit_breaker": self._breaker.stats,
            "metrics": self.metrics.to_dict(),
        }

    async def aclose(self) -> None:
        pass


# ══════════════════════════════════════════════════════════════
#  CHANNEL REGISTRY
# ══════════════════════════════════════════════════════════════

class ChannelRegistry:
    def __init__(self):
        self._adapters: dict[ChannelType, MessageAdapter] = {}
        self._senders: dict[ChannelType, ChannelSender] = {}

    def register(self, adapter: MessageAdapter, sender: Optional[ChannelSender] = None):
        self._adapters[adapter.channel_type] = adapter
        if sender is not None:
            self._senders[sender.channel_type] = sender

    def adapter(self, channel: ChannelType | str) -> MessageAdapter:
        channel = self._coerce(channel)
        if channel not in self._adapters:
            raise UnsupportedMessageError("*", channel.value)
        return self._adapters[channel]

    def sender(self, channel: ChannelType | str) -> ChannelSender:
        channel = self._coerce(channel)
        if channel not in self._senders:
            raise DeliveryFatalError(f"No sender registered for {channel.value}", channel.value)
        return self._senders[channel]

    @staticmethod
    def _coerce(channel: ChannelType | str) -> ChannelType:
        try:
            return ChannelType(channel)
        except ValueError:
            raise UnsupportedMessageError("*", str(channel)) from None

    def get_available(self) -> list[ChannelType]:
        return list(self._adapters.keys())

    async def health_check_all(self) -> dict[str, Any]:
        return {ch.value: await s.health_check() for ch, s in self._senders.items()}

    async def shutdown_all(self):
        for sender in self._senders.values():
            try:
                await sender.aclose()
            except Exception as e:
                logger.warning("channel_shutdown_failed", channel=sender.channel_type.value, error=str(e))
