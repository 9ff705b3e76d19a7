import logging

from ops_dashboard.core.client_hook import (
    ClientCountHandler,
    install_client_hook,
    remove_client_hook,
)
from ops_dashboard.core.telemetry_store import TimeSeriesStore


def _isolated_logger(name: str) -> logging.Logger:
    logger = logging.getLogger(name)
    logger.setLevel(logging.DEBUG)
    logger.propagate = False
    return logger


def test_connect_and_disconnect_events_update_counter() -> None:
    store = TimeSeriesStore(capacity=3)
    logger = _isolated_logger("ops_dashboard.tests.hook.counter")
    handler = install_client_hook(store, logger)

    try:
        logger.info("client joined", extra={"event": "connect"})
        logger.info("client joined", extra={"event": "connect"})
        assert store.current_live_client_count() == 2

        logger.info("client left", extra={"event": "disconnect"})
        assert store.current_live_client_count() == 1
    finally:
        remove_client_hook(handler, logger)

    logger.info("client joined", extra={"event": "connect"})
    assert store.current_live_client_count() == 1


def test_unrelated_records_are_ignored() -> None:
    store = TimeSeriesStore(capacity=3)
    logger = _isolated_logger("ops_dashboard.tests.hook.ignored")
    handler = install_client_hook(store, logger)

    try:
        logger.info("plain message")
        logger.info("other event", extra={"event": "helo"})
        logger.info("wrong type", extra={"event": 1})
        assert store.current_live_client_count() == 0
    finally:
        remove_client_hook(handler, logger)


def test_unmatched_disconnect_keeps_counter_at_zero() -> None:
    store = TimeSeriesStore(capacity=3)
    logger = _isolated_logger("ops_dashboard.tests.hook.underflow")
    handler = install_client_hook(store, logger)

    try:
        logger.info("client left", extra={"event": "disconnect"})
        logger.info("client left", extra={"event": "disconnect"})
        assert store.current_live_client_count() == 0

        logger.info("client joined", extra={"event": "connect"})
        assert store.current_live_client_count() == 1
    finally:
        remove_client_hook(handler, logger)


def test_custom_event_field() -> None:
    store = TimeSeriesStore(capacity=3)
    logger = _isolated_logger("ops_dashboard.tests.hook.field")
    handler = ClientCountHandler(store, event_field="lifecycle")
    logger.addHandler(handler)

    try:
        logger.info("client joined", extra={"lifecycle": "connect"})
        logger.info("client joined", extra={"event": "connect"})
        assert store.current_live_client_count() == 1
    finally:
        logger.removeHandler(handler)
