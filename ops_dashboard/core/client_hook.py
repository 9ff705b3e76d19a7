"""Logging hook that keeps the live client counter in sync.

Servers announce client lifecycle through ordinary log calls carrying a
structured ``event`` field::

    LOGGER.info("Client connected", extra={"event": "connect"})

:class:`ClientCountHandler` taps those records and bumps the store's counter.
Records with any other ``event`` value (or none at all) are ignored.
"""

from __future__ import annotations

import logging
from typing import Optional

from .telemetry_store import TimeSeriesStore


CONNECT_EVENT = "connect"
DISCONNECT_EVENT = "disconnect"


class ClientCountHandler(logging.Handler):
    """Translate ``connect``/``disconnect`` log records into counter updates."""

    def __init__(
        self,
        store: TimeSeriesStore,
        *,
        event_field: str = "event",
        level: int = logging.NOTSET,
    ) -> None:
        super().__init__(level=level)
        self._store = store
        self._event_field = event_field

    def emit(self, record: logging.LogRecord) -> None:
        event = getattr(record, self._event_field, None)
        if not isinstance(event, str):
            return

        if event == CONNECT_EVENT:
            self._store.increment_live_clients()
        elif event == DISCONNECT_EVENT:
            self._store.decrement_live_clients()


def install_client_hook(
    store: TimeSeriesStore,
    logger: Optional[logging.Logger] = None,
) -> ClientCountHandler:
    """Attach a :class:`ClientCountHandler` to ``logger`` (root by default).

    The logger's effective level has to let the lifecycle records through,
    otherwise they never reach the handler.
    """

    handler = ClientCountHandler(store)
    (logger or logging.getLogger()).addHandler(handler)
    return handler


def remove_client_hook(
    handler: ClientCountHandler,
    logger: Optional[logging.Logger] = None,
) -> None:
    (logger or logging.getLogger()).removeHandler(handler)
