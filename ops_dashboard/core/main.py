"""Entry point wiring the telemetry store, sampler and dashboard server."""

from __future__ import annotations

import argparse
import asyncio
import logging
import os
import signal
from typing import Optional, Sequence, Set

from .client_hook import install_client_hook, remove_client_hook
from .sampler import SamplingLoop
from .telemetry_store import (
    DEFAULT_MAX_WINDOW,
    DEFAULT_TICK_INTERVAL,
    TimeSeriesStore,
    history_capacity,
)
from .websocket_server import DashboardServer


LOGGER = logging.getLogger(__name__)


logging.basicConfig(
    level=logging.INFO,
    format="%(asctime)s [%(levelname)s] %(name)s: %(message)s",
)


def _parse_args(argv: Optional[Sequence[str]] = None) -> argparse.Namespace:
    parser = argparse.ArgumentParser(description="Live operations dashboard telemetry")
    parser.add_argument(
        "--host",
        default=os.environ.get("DASHBOARD_HOST", "127.0.0.1"),
        help="Interface the dashboard WebSocket server binds to",
    )
    parser.add_argument(
        "--port",
        type=int,
        default=int(os.environ.get("DASHBOARD_PORT", "8765")),
        help="Port the dashboard WebSocket server listens on",
    )
    parser.add_argument(
        "--tick-interval",
        type=float,
        default=float(os.environ.get("DASHBOARD_TICK_INTERVAL", DEFAULT_TICK_INTERVAL)),
        help="Seconds between two telemetry samples",
    )
    parser.add_argument(
        "--max-window",
        type=float,
        default=float(os.environ.get("DASHBOARD_MAX_WINDOW", DEFAULT_MAX_WINDOW)),
        help="Seconds of history retained for newly joined viewers",
    )
    parser.add_argument(
        "--queue-size",
        type=int,
        default=int(os.environ.get("DASHBOARD_QUEUE_SIZE", "16")),
        help="Frames buffered per viewer before ticks are dropped",
    )
    parser.add_argument(
        "--tokens",
        default=os.environ.get("DASHBOARD_TOKENS", "dev-token"),
        help="Comma separated list of tokens accepted from viewers",
    )
    parser.add_argument(
        "--run-for",
        type=float,
        default=float(os.environ.get("DASHBOARD_RUN_FOR", "0")),
        help="Stop after this many seconds (0 runs until interrupted)",
    )
    parser.add_argument(
        "--simulate-client",
        action="store_true",
        default=_env_flag("DASHBOARD_SIMULATE_CLIENT"),
        help="Log a synthetic client connect so the counter has something to show",
    )
    return parser.parse_args(argv)


def _env_flag(name: str, *, default: bool = False) -> bool:
    raw = os.environ.get(name)
    if raw is None:
        return default
    return raw.strip().lower() in {"1", "true", "yes", "on"}


def _parse_tokens(raw: str) -> Set[str]:
    return {token.strip() for token in raw.split(",") if token.strip()}


async def _wait_for_shutdown(run_for: float) -> None:
    stop_event = asyncio.Event()
    loop = asyncio.get_running_loop()
    for sig in (signal.SIGINT, signal.SIGTERM):
        try:
            loop.add_signal_handler(sig, stop_event.set)
        except (NotImplementedError, RuntimeError):
            LOGGER.debug("Signal handler for %s unavailable", sig)

    if run_for > 0:
        try:
            await asyncio.wait_for(stop_event.wait(), timeout=run_for)
        except asyncio.TimeoutError:
            pass
    else:
        await stop_event.wait()


async def main(argv: Optional[Sequence[str]] = None) -> None:
    args = _parse_args(argv)

    capacity = history_capacity(args.max_window, args.tick_interval)
    store = TimeSeriesStore(capacity=capacity)
    LOGGER.info(
        "Retaining %d samples (%.0fs window at %.1fs interval)",
        capacity,
        args.max_window,
        args.tick_interval,
    )

    hook = install_client_hook(store)
    sampler = SamplingLoop(store, interval=args.tick_interval)
    server = DashboardServer(
        host=args.host,
        port=args.port,
        store=store,
        allowed_tokens=_parse_tokens(args.tokens),
        queue_maxsize=args.queue_size,
    )

    if args.simulate_client:
        LOGGER.info("Simulated client connected", extra={"event": "connect"})

    await sampler.start()
    try:
        await server.start()
    except OSError as exc:
        LOGGER.warning("Dashboard server not started: %s", exc)

    try:
        await _wait_for_shutdown(args.run_for)
    finally:
        LOGGER.info("Delivery metrics: %s", store.metrics_snapshot())
        await server.stop()
        await sampler.stop()
        remove_client_hook(hook)


def run() -> None:
    asyncio.run(main())


if __name__ == "__main__":
    run()
