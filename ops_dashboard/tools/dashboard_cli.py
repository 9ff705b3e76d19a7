"""Watch the telemetry stream of a running dashboard server."""

from __future__ import annotations

import argparse
import asyncio
import json
import logging
from typing import Any, Dict, List
from urllib.parse import urlencode

import websockets

LOGGER = logging.getLogger("ops_dashboard.cli.dashboard")


def viewer_uri(host: str, port: int, token: str, label: str = "cli") -> str:
    return f"ws://{host}:{port}/?{urlencode({'token': token, 'viewer': label})}"


def summarise_init(frame: Dict[str, Any]) -> Dict[str, Any]:
    """Condense an INIT frame into sample counts and latest values."""

    payload = frame.get("payload", {})
    summary: Dict[str, Any] = {"type": frame.get("type")}
    for key in ("ram", "nClients"):
        points = payload.get(key, [])
        summary[key] = {
            "samples": len(points),
            "latest": points[-1] if points else None,
        }
    return summary


def format_tick(frame: Dict[str, Any]) -> str:
    """Render a TICK frame as one human readable line."""

    payload = frame["payload"]
    ram_mib = payload["ram"]["y"] / (1024 * 1024)
    return f"{payload['ram']['x']}  ram={ram_mib:.1f}MiB  clients={payload['nClients']['y']}"


async def _watch(args: argparse.Namespace) -> List[Any]:
    uri = viewer_uri(args.host, args.port, args.token)
    LOGGER.debug("Connecting to %s", uri)

    frames: List[Any] = []
    async with websockets.connect(uri, open_timeout=args.timeout) as websocket:
        frames.append(summarise_init(json.loads(await websocket.recv())))

        if args.metrics:
            await websocket.send(json.dumps({"action": "metrics"}))

        remaining_ticks = max(args.ticks, 0)
        waiting_for_metrics = args.metrics
        while remaining_ticks or waiting_for_metrics:
            frame = json.loads(await websocket.recv())
            if frame.get("type") == "TICK" and remaining_ticks:
                remaining_ticks -= 1
                if args.plain:
                    print(format_tick(frame))
                    continue
            elif frame.get("type") == "metrics":
                waiting_for_metrics = False
            frames.append(frame)
    return frames


def _build_argument_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(description=__doc__)
    parser.add_argument("--host", default="127.0.0.1", help="Dashboard server host")
    parser.add_argument("--port", type=int, default=8765, help="Dashboard server port")
    parser.add_argument("--token", default="dev-token", help="Viewer token")
    parser.add_argument("--timeout", type=float, default=10.0, help="Connection timeout in seconds")
    parser.add_argument("--ticks", type=int, default=1, help="TICK frames to wait for")
    parser.add_argument(
        "--metrics",
        action="store_true",
        help="Also request the server's delivery metrics",
    )
    parser.add_argument(
        "--plain",
        action="store_true",
        help="Print ticks as one line each instead of JSON",
    )
    return parser


def main() -> None:
    args = _build_argument_parser().parse_args()
    frames = asyncio.run(_watch(args))
    print(json.dumps(frames, indent=2, sort_keys=True))


if __name__ == "__main__":  # pragma: no cover - CLI entry point
    main()
