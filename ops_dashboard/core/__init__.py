"""Core runtime components for the operations dashboard."""

from .client_hook import ClientCountHandler, install_client_hook, remove_client_hook
from .messages import InitMessage, Message, Point, TickMessage, encode_message
from .sampler import SamplingLoop, process_memory_bytes
from .telemetry_store import TimeSeriesStore, history_capacity
from .websocket_server import DashboardServer

__all__ = [
    "ClientCountHandler",
    "DashboardServer",
    "encode_message",
    "history_capacity",
    "InitMessage",
    "install_client_hook",
    "Message",
    "Point",
    "process_memory_bytes",
    "remove_client_hook",
    "SamplingLoop",
    "TickMessage",
    "TimeSeriesStore",
]
