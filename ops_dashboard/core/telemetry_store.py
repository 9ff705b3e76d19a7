"""In-memory rolling history of dashboard telemetry and its viewer registry."""

from __future__ import annotations

import asyncio
import logging
import queue
import threading
from collections import Counter, deque
from typing import Any, Deque, Dict, List, Protocol, Tuple

from .messages import InitMessage, Message, Point


__all__ = [
    "DEFAULT_MAX_WINDOW",
    "DEFAULT_TICK_INTERVAL",
    "DeliveryTarget",
    "TimeSeriesStore",
    "history_capacity",
]


LOGGER = logging.getLogger(__name__)

DEFAULT_TICK_INTERVAL = 5.0
DEFAULT_MAX_WINDOW = 24 * 60 * 60.0

# Raised by a target that cannot take a message right now.
_NOT_READY = (asyncio.QueueFull, queue.Full)


class DeliveryTarget(Protocol):
    """Anything accepting messages without blocking, e.g. ``asyncio.Queue``."""

    def put_nowait(self, item: Message) -> None:
        ...


def history_capacity(
    max_window: float = DEFAULT_MAX_WINDOW,
    interval: float = DEFAULT_TICK_INTERVAL,
) -> int:
    """Return how many samples fit in ``max_window`` seconds at ``interval``."""

    if max_window <= 0:
        raise ValueError("max_window must be positive")
    if interval <= 0:
        raise ValueError("interval must be positive")
    return max(int(max_window // interval), 1)


class TimeSeriesStore:
    """Bounded RAM/client-count history fanned out to live viewers.

    Every piece of mutable state (both series, the live client counter and the
    subscriber registry) sits behind a single :class:`threading.Lock` so the
    sampling loop, the logging hook and session handlers can call in from any
    thread.  Delivery to subscribers happens after the lock is released.

    The live client counter saturates at zero: a ``disconnect`` without a
    matching ``connect`` leaves it untouched.
    """

    def __init__(self, *, capacity: int = history_capacity()) -> None:
        if capacity < 1:
            raise ValueError("capacity must be at least 1")

        self._capacity = capacity
        self._lock = threading.Lock()
        self._ram_history: Deque[Point] = deque(maxlen=capacity)
        self._client_history: Deque[Point] = deque(maxlen=capacity)
        self._live_clients = 0
        self._subscribers: Dict[str, DeliveryTarget] = {}
        self._delivered_counts: Counter[str] = Counter()
        self._dropped_counts: Counter[str] = Counter()

    @property
    def capacity(self) -> int:
        return self._capacity

    # ------------------------------------------------------------------
    # Recording helpers
    # ------------------------------------------------------------------
    def record_memory_point(self, point: Point) -> None:
        """Append a memory sample, evicting the oldest one when full."""

        with self._lock:
            self._ram_history.append(point)

    def record_client_count_point(self, point: Point) -> None:
        """Append a client-count sample, evicting the oldest one when full."""

        with self._lock:
            self._client_history.append(point)

    def record_tick(self, ram_point: Point, client_point: Point) -> None:
        """Append one sample to each series as a single atomic step."""

        with self._lock:
            self._ram_history.append(ram_point)
            self._client_history.append(client_point)

    # ------------------------------------------------------------------
    # Live client counter
    # ------------------------------------------------------------------
    def increment_live_clients(self) -> None:
        with self._lock:
            self._live_clients += 1

    def decrement_live_clients(self) -> None:
        with self._lock:
            underflow = self._live_clients == 0
            if not underflow:
                self._live_clients -= 1

        if underflow:
            LOGGER.warning("Ignoring client disconnect without a matching connect")

    def current_live_client_count(self) -> int:
        with self._lock:
            return self._live_clients

    # ------------------------------------------------------------------
    # Subscription management
    # ------------------------------------------------------------------
    def subscribe(self, subscriber_id: str, target: DeliveryTarget) -> None:
        """Register ``target`` for ``subscriber_id``, replacing any previous one."""

        with self._lock:
            self._subscribers[subscriber_id] = target

    def unsubscribe(self, subscriber_id: str) -> None:
        with self._lock:
            self._subscribers.pop(subscriber_id, None)

    def subscriber_count(self) -> int:
        with self._lock:
            return len(self._subscribers)

    def subscriber_ids(self) -> List[str]:
        with self._lock:
            return list(self._subscribers)

    # ------------------------------------------------------------------
    # Snapshots and delivery
    # ------------------------------------------------------------------
    def snapshot(self) -> InitMessage:
        """Return a point-in-time copy of both series."""

        with self._lock:
            return InitMessage(
                ram=tuple(self._ram_history),
                clients=tuple(self._client_history),
            )

    def ram_history(self) -> Tuple[Point, ...]:
        with self._lock:
            return tuple(self._ram_history)

    def client_history(self) -> Tuple[Point, ...]:
        with self._lock:
            return tuple(self._client_history)

    def broadcast(self, message: Message) -> None:
        """Offer ``message`` to every subscriber without waiting on any of them.

        A subscriber whose target is full simply misses this message.
        """

        with self._lock:
            subscribers = list(self._subscribers.items())

        delivered = 0
        dropped = 0
        for subscriber_id, target in subscribers:
            try:
                target.put_nowait(message)
            except _NOT_READY:
                dropped += 1
                LOGGER.warning(
                    "Dropping %s message for slow subscriber %s",
                    message.type,
                    subscriber_id,
                    extra={
                        "subscriber": subscriber_id,
                        "message_type": message.type,
                    },
                )
            except Exception:
                dropped += 1
                LOGGER.warning(
                    "Delivery to subscriber %s failed",
                    subscriber_id,
                    exc_info=True,
                )
            else:
                delivered += 1

        with self._lock:
            if delivered:
                self._delivered_counts[message.type] += delivered
            if dropped:
                self._dropped_counts[message.type] += dropped

    # ------------------------------------------------------------------
    # Metrics
    # ------------------------------------------------------------------
    def metrics_snapshot(self) -> Dict[str, Any]:
        """Return delivered/dropped counters keyed by message type."""

        with self._lock:
            return {
                "delivered": dict(self._delivered_counts),
                "dropped": dict(self._dropped_counts),
                "subscribers": len(self._subscribers),
            }

    def reset_metrics(self) -> None:
        with self._lock:
            self._delivered_counts.clear()
            self._dropped_counts.clear()
