import asyncio
import time
from datetime import datetime, timezone
from typing import List

import pytest

from ops_dashboard.core.messages import Message, TickMessage
from ops_dashboard.core.sampler import SamplingLoop, process_memory_bytes
from ops_dashboard.core.telemetry_store import TimeSeriesStore


_NOW = datetime(2024, 5, 1, 12, 0, tzinfo=timezone.utc)


class _RecordingTarget:
    """Captures what the store looked like when each message arrived."""

    def __init__(self, store: TimeSeriesStore) -> None:
        self._store = store
        self.received: List[Message] = []
        self.ram_lengths: List[int] = []
        self.client_lengths: List[int] = []

    def put_nowait(self, item: Message) -> None:
        snapshot = self._store.snapshot()
        self.received.append(item)
        self.ram_lengths.append(len(snapshot.ram))
        self.client_lengths.append(len(snapshot.clients))


def test_sample_once_stamps_both_points_with_the_same_instant() -> None:
    store = TimeSeriesStore(capacity=10)
    store.increment_live_clients()
    store.increment_live_clients()
    sampler = SamplingLoop(store, memory_source=lambda: 4096, clock=lambda: _NOW)

    message = sampler.sample_once()

    assert isinstance(message, TickMessage)
    assert message.ram.timestamp == message.clients.timestamp == _NOW
    assert message.ram.value == 4096
    assert message.clients.value == 2
    assert store.ram_history() == (message.ram,)
    assert store.client_history() == (message.clients,)
    assert sampler.ticks == 1


def test_tick_is_recorded_before_subscribers_see_it() -> None:
    store = TimeSeriesStore(capacity=10)
    target = _RecordingTarget(store)
    store.subscribe("observer", target)
    sampler = SamplingLoop(store, memory_source=lambda: 1, clock=lambda: _NOW)

    sampler.sample_once()
    sampler.sample_once()

    assert len(target.received) == 2
    assert target.ram_lengths == [1, 2]
    assert target.client_lengths == [1, 2]


def test_failing_memory_source_records_zero() -> None:
    def _broken() -> int:
        raise OSError("procfs unavailable")

    store = TimeSeriesStore(capacity=10)
    sampler = SamplingLoop(store, memory_source=_broken, clock=lambda: _NOW)

    message = sampler.sample_once()

    assert message.ram.value == 0
    assert len(store.ram_history()) == 1
    assert len(store.client_history()) == 1


def test_negative_memory_reading_is_clamped() -> None:
    store = TimeSeriesStore(capacity=10)
    sampler = SamplingLoop(store, memory_source=lambda: -5, clock=lambda: _NOW)

    assert sampler.sample_once().ram.value == 0


def test_sampler_rejects_non_positive_interval() -> None:
    with pytest.raises(ValueError):
        SamplingLoop(TimeSeriesStore(capacity=1), interval=0)


def test_default_memory_source_reports_process_usage() -> None:
    assert process_memory_bytes() > 0


def test_sampler_loop_ticks_periodically() -> None:
    asyncio.run(_test_sampler_loop_ticks_periodically())


async def _test_sampler_loop_ticks_periodically() -> None:
    store = TimeSeriesStore(capacity=3)
    viewer: "asyncio.Queue[Message]" = asyncio.Queue(maxsize=100)
    store.subscribe("viewer", viewer)
    sampler = SamplingLoop(store, interval=0.01, memory_source=lambda: 2048)

    await sampler.start()
    await sampler.start()
    assert sampler.running

    first = await asyncio.wait_for(viewer.get(), timeout=1)
    second = await asyncio.wait_for(viewer.get(), timeout=1)
    await sampler.stop()

    assert not sampler.running
    assert first.ram.timestamp <= second.ram.timestamp
    assert sampler.ticks >= 2
    assert len(store.ram_history()) == min(sampler.ticks, 3)

    await sampler.stop()


def test_sampler_skips_missed_slots_after_a_stall() -> None:
    asyncio.run(_test_sampler_skips_missed_slots_after_a_stall())


async def _test_sampler_skips_missed_slots_after_a_stall() -> None:
    interval = 0.05
    calls: List[float] = []

    def _stalling_source() -> int:
        calls.append(time.monotonic())
        if len(calls) == 1:
            # Blocks the event loop for several intervals.
            time.sleep(interval * 6)
        return 1024

    store = TimeSeriesStore(capacity=50)
    sampler = SamplingLoop(store, interval=interval, memory_source=_stalling_source)

    await sampler.start()
    loop = asyncio.get_running_loop()
    deadline = loop.time() + 2
    while len(calls) < 5 and loop.time() < deadline:
        await asyncio.sleep(0.01)
    await sampler.stop()

    assert len(calls) >= 5
    gaps = [later - earlier for earlier, later in zip(calls, calls[1:])]
    assert min(gaps) > interval / 2
    assert len(store.ram_history()) == sampler.ticks
