"""Periodic sampler feeding process telemetry into the store."""

from __future__ import annotations

import asyncio
import logging
from datetime import datetime, timezone
from typing import Callable, Optional

import psutil

from .messages import Point, TickMessage
from .telemetry_store import DEFAULT_TICK_INTERVAL, TimeSeriesStore


LOGGER = logging.getLogger(__name__)

MemorySource = Callable[[], int]
Clock = Callable[[], datetime]


def process_memory_bytes() -> int:
    """Return the resident set size of the current process in bytes."""

    return psutil.Process().memory_info().rss


def _utc_now() -> datetime:
    return datetime.now(timezone.utc)


class SamplingLoop:
    """Sample memory and client count on a fixed cadence and broadcast ticks.

    Each firing records one point per series, both stamped with the same
    instant, and only then hands the resulting :class:`TickMessage` to
    :meth:`TimeSeriesStore.broadcast`.  Additional metrics would plug in the
    same way ``memory_source`` does.
    """

    def __init__(
        self,
        store: TimeSeriesStore,
        *,
        interval: float = DEFAULT_TICK_INTERVAL,
        memory_source: Optional[MemorySource] = None,
        clock: Optional[Clock] = None,
    ) -> None:
        if interval <= 0:
            raise ValueError("interval must be positive")

        self._store = store
        self._interval = interval
        self._memory_source = memory_source or process_memory_bytes
        self._clock = clock or _utc_now
        self._task: Optional[asyncio.Task] = None
        self._ticks = 0

    @property
    def interval(self) -> float:
        return self._interval

    @property
    def running(self) -> bool:
        return self._task is not None and not self._task.done()

    @property
    def ticks(self) -> int:
        """Number of completed firings since construction."""

        return self._ticks

    async def start(self) -> None:
        if self.running:
            return

        LOGGER.info("Starting sampler with a %.1fs interval", self._interval)
        self._task = asyncio.get_running_loop().create_task(
            self._run(), name="telemetry-sampler"
        )

    async def stop(self) -> None:
        if self._task is None:
            return

        LOGGER.info("Stopping sampler")
        self._task.cancel()
        await asyncio.gather(self._task, return_exceptions=True)
        self._task = None

    def sample_once(self) -> TickMessage:
        """Take one observation, record it and broadcast it."""

        timestamp = self._clock()
        ram_point = Point(timestamp, self._read_memory())
        client_point = Point(timestamp, self._store.current_live_client_count())

        self._store.record_tick(ram_point, client_point)
        message = TickMessage(ram=ram_point, clients=client_point)
        self._store.broadcast(message)
        self._ticks += 1

        LOGGER.debug(
            "Sampled ram=%d bytes clients=%d",
            ram_point.value,
            client_point.value,
        )
        return message

    def _read_memory(self) -> int:
        try:
            value = int(self._memory_source())
        except Exception:
            LOGGER.warning("Memory usage unavailable, recording 0", exc_info=True)
            return 0
        return max(value, 0)

    async def _run(self) -> None:
        loop = asyncio.get_running_loop()
        next_fire = loop.time() + self._interval
        while True:
            await asyncio.sleep(max(next_fire - loop.time(), 0))
            try:
                self.sample_once()
            except Exception:
                LOGGER.exception("Sampler tick failed")

            next_fire += self._interval
            now = loop.time()
            if next_fire <= now:
                # Missed slots are dropped, never replayed back-to-back.
                missed = int((now - next_fire) // self._interval) + 1
                next_fire += missed * self._interval
                LOGGER.warning("Sampler fell behind, skipping %d tick(s)", missed)
