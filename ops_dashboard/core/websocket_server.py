"""Local WebSocket server streaming dashboard telemetry to viewers."""

from __future__ import annotations

import asyncio
import json
import logging
from dataclasses import dataclass
from typing import Any, Awaitable, Callable, Dict, Optional, Set
from urllib.parse import parse_qsl, urlparse

import websockets
from websockets.asyncio.server import Server, ServerConnection

from .messages import Message, encode_message
from .telemetry_store import TimeSeriesStore


LOGGER = logging.getLogger(__name__)

UNAUTHORIZED_CLOSE_CODE = 4401


@dataclass
class _Viewer:
    viewer_id: str
    label: str
    websocket: ServerConnection
    queue: "asyncio.Queue[Message]"
    heartbeat_task: Optional[asyncio.Task] = None
    frames_sent: int = 0

    def describe(self) -> Dict[str, Any]:
        return {
            "label": self.label,
            "frames_sent": self.frames_sent,
            "queued": self.queue.qsize(),
        }


def _error_frame(code: str, message: str) -> Dict[str, Any]:
    return {"type": "error", "error": {"code": code, "message": message}}


class DashboardServer:
    """Serve the INIT snapshot and subsequent TICK frames over WebSocket.

    Each viewer owns a bounded queue registered with the store.  Ticks the
    viewer cannot absorb are dropped by the store, so a slow browser tab only
    ever loses its own frames.  Viewers may also send small JSON requests:
    ``ping``, ``snapshot`` (re-send INIT) and ``metrics``.
    """

    def __init__(
        self,
        *,
        host: str,
        port: int,
        store: TimeSeriesStore,
        allowed_tokens: Optional[Set[str]] = None,
        heartbeat_interval: float = 30.0,
        queue_maxsize: int = 16,
    ) -> None:
        if queue_maxsize < 1:
            raise ValueError("queue_maxsize must be at least 1")

        self._host = host
        self._port = port
        self._store = store
        self._allowed_tokens = allowed_tokens or {"dev-token"}
        self._heartbeat_interval = heartbeat_interval
        self._queue_maxsize = queue_maxsize
        self._server: Optional[Server] = None
        self._viewers: Dict[str, _Viewer] = {}
        self._lock = asyncio.Lock()
        self._actions: Dict[str, Callable[[_Viewer], Awaitable[Dict[str, Any]]]] = {
            "ping": self._pong,
            "snapshot": self._resend_snapshot,
            "metrics": self._metrics,
        }

    async def start(self) -> None:
        if self._server is not None:
            return

        LOGGER.info("Starting dashboard server on ws://%s:%s", self._host, self._port)
        self._server = await websockets.serve(
            self._client_handler,
            host=self._host,
            port=self._port,
            ping_interval=None,
        )

    async def stop(self) -> None:
        if self._server is None:
            return

        LOGGER.info("Stopping dashboard server")
        self._server.close()
        await self._server.wait_closed()
        self._server = None

        async with self._lock:
            viewer_ids = list(self._viewers)

        for viewer_id in viewer_ids:
            await self._leave(viewer_id)

    def viewer_ids(self) -> list[str]:
        return list(self._viewers)

    # ------------------------------------------------------------------
    # Session lifecycle
    # ------------------------------------------------------------------
    async def _client_handler(self, websocket: ServerConnection) -> None:
        query = dict(parse_qsl(urlparse(websocket.request.path or "").query))
        if query.get("token") not in self._allowed_tokens:
            LOGGER.warning("Rejecting dashboard connection due to invalid token")
            await websocket.close(code=UNAUTHORIZED_CLOSE_CODE, reason="Unauthorized")
            return

        viewer = await self._join(websocket, query.get("viewer", "anonymous"))
        try:
            await self._send(viewer, encode_message(self._store.snapshot()))

            streamer = asyncio.create_task(self._stream_ticks(viewer))
            requests = asyncio.create_task(self._serve_requests(viewer))
            viewer.heartbeat_task = asyncio.create_task(self._watch_liveness(viewer))

            done, pending = await asyncio.wait(
                {streamer, requests, viewer.heartbeat_task},
                return_when=asyncio.FIRST_COMPLETED,
            )
            for task in pending:
                task.cancel()
            for task in done:
                if task.cancelled():
                    continue
                exc = task.exception()
                if exc:
                    raise exc
        except websockets.ConnectionClosed:
            LOGGER.debug("Dashboard viewer %s connection closed", viewer.viewer_id)
        except Exception:
            LOGGER.exception("Dashboard viewer session crashed")
        finally:
            await self._leave(viewer.viewer_id)

    async def _join(self, websocket: ServerConnection, label: str) -> _Viewer:
        viewer = _Viewer(
            viewer_id=f"viewer-{id(websocket)}",
            label=label,
            websocket=websocket,
            queue=asyncio.Queue(maxsize=self._queue_maxsize),
        )
        async with self._lock:
            self._viewers[viewer.viewer_id] = viewer

        # Subscribe before taking the snapshot so no tick falls in between.
        self._store.subscribe(viewer.viewer_id, viewer.queue)
        LOGGER.info("Dashboard viewer %s (%s) joined", viewer.viewer_id, label)
        return viewer

    async def _leave(self, viewer_id: str) -> None:
        self._store.unsubscribe(viewer_id)

        async with self._lock:
            viewer = self._viewers.pop(viewer_id, None)
        if viewer is None:
            return

        if viewer.heartbeat_task is not None:
            viewer.heartbeat_task.cancel()
        try:
            await viewer.websocket.close()
        except Exception:
            LOGGER.debug("Viewer close failed", exc_info=True)
        LOGGER.info(
            "Dashboard viewer %s left after %d frames",
            viewer_id,
            viewer.frames_sent,
        )

    # ------------------------------------------------------------------
    # Per-viewer tasks
    # ------------------------------------------------------------------
    async def _stream_ticks(self, viewer: _Viewer) -> None:
        while True:
            message = await viewer.queue.get()
            await self._send(viewer, encode_message(message))

    async def _serve_requests(self, viewer: _Viewer) -> None:
        async for raw in viewer.websocket:
            try:
                request = json.loads(raw)
            except json.JSONDecodeError:
                await self._reply(viewer, _error_frame("invalid_json", "Payload must be valid JSON"))
                continue

            action = request.get("action") if isinstance(request, dict) else None
            handler = self._actions.get(action) if isinstance(action, str) else None
            if handler is None:
                await self._reply(
                    viewer,
                    _error_frame("unknown_action", f"Action '{action}' is not supported"),
                )
                continue

            await self._reply(viewer, await handler(viewer))

    async def _watch_liveness(self, viewer: _Viewer) -> None:
        """Return once the viewer stops answering pings."""

        while True:
            await asyncio.sleep(self._heartbeat_interval)
            pong = await viewer.websocket.ping()
            try:
                await asyncio.wait_for(pong, timeout=self._heartbeat_interval)
            except asyncio.TimeoutError:
                LOGGER.warning("Dashboard viewer %s missed a heartbeat", viewer.viewer_id)
                return

    # ------------------------------------------------------------------
    # Requests
    # ------------------------------------------------------------------
    async def _pong(self, viewer: _Viewer) -> Dict[str, Any]:
        return {"type": "pong"}

    async def _resend_snapshot(self, viewer: _Viewer) -> Dict[str, Any]:
        return self._store.snapshot().to_payload()

    async def _metrics(self, viewer: _Viewer) -> Dict[str, Any]:
        async with self._lock:
            viewers = {
                viewer_id: entry.describe() for viewer_id, entry in self._viewers.items()
            }
        return {
            "type": "metrics",
            "delivery": self._store.metrics_snapshot(),
            "live_clients": self._store.current_live_client_count(),
            "viewers": viewers,
        }

    async def _reply(self, viewer: _Viewer, payload: Dict[str, Any]) -> None:
        await self._send(viewer, json.dumps(payload))

    async def _send(self, viewer: _Viewer, frame: str) -> None:
        await viewer.websocket.send(frame)
        viewer.frames_sent += 1
