"""
TTL cache for queue business-hours configuration.

Hours change rarely but are read on every handoff. Entries (including
"no config" misses) are kept per lower-cased queue name for ``ttl_seconds``.
"""
from __future__ import annotations

import time
from typing import Callable, Optional

import structlog

from database.store_base import BaseStore
from models.schemas import QueueBusinessHoursConfig

logger = structlog.get_logger()


class BusinessHoursCache:

    def __init__(self, store: BaseStore, ttl_seconds: float = 60.0,
                 clock: Callable[[], float] = time.monotonic):
        self._store = store
        self._ttl = ttl_seconds
        self._clock = clock
        self._entries: dict[str, tuple[float, Optional[QueueBusinessHoursConfig]]] = {}

    async def get(self, queue_name: Optional[str]) -> Optional[QueueBusinessHoursConfig]:
        if not queue_name:
            return None
        key = queue_name.lower()
        now = self._clock()
        cached = self._entries.get(key)
        if cached and now - cached[0] < self._ttl:
            return cached[1]

        config = await self._store.get_queue_hours(queue_name)
        self._entries[key] = (now, config)
        logger.debug("business_hours_loaded", queue=queue_name, found=config is not None)
        return config

    def invalidate(self, queue_name: Optional[str] = None) -> None:
        """Drop one queue's entry, or everything when no name is given."""
        if queue_name is None:
            self._entries.clear()
        else:
            self._entries.pop(queue_name.lower(), None)
