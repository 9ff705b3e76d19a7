"""Payload types delivered to dashboard viewers.

Viewers only ever receive two frame shapes: a full ``INIT`` snapshot when they
join and an incremental ``TICK`` for every sampling firing afterwards.  The
dataclasses below expose ``to_payload`` helpers that collapse into ``dict``
objects ready for JSON serialisation while keeping the field names stable for
existing viewer clients.
"""

from __future__ import annotations

import json
from dataclasses import dataclass
from datetime import datetime
from typing import Any, ClassVar, Dict, Tuple, Union


INIT_MESSAGE = "INIT"
TICK_MESSAGE = "TICK"


@dataclass(frozen=True, slots=True)
class Point:
    """Single sample of a series."""

    timestamp: datetime
    value: int

    def __post_init__(self) -> None:
        if not isinstance(self.value, int) or isinstance(self.value, bool):
            raise TypeError("point value must be an integer")
        if self.value < 0:
            raise ValueError("point value must be non-negative")

    def to_payload(self) -> Dict[str, Any]:
        return {"x": self.timestamp.isoformat(), "y": self.value}


@dataclass(frozen=True, slots=True)
class InitMessage:
    """Full history snapshot handed to a newly joined viewer."""

    ram: Tuple[Point, ...]
    clients: Tuple[Point, ...]

    type: ClassVar[str] = INIT_MESSAGE

    def to_payload(self) -> Dict[str, Any]:
        return {
            "type": self.type,
            "payload": {
                "ram": [point.to_payload() for point in self.ram],
                "nClients": [point.to_payload() for point in self.clients],
            },
        }


@dataclass(frozen=True, slots=True)
class TickMessage:
    ram: Point
    clients: Point

    type: ClassVar[str] = TICK_MESSAGE

    def to_payload(self) -> Dict[str, Any]:
        return {
            "type": self.type,
            "payload": {
                "ram": self.ram.to_payload(),
                "nClients": self.clients.to_payload(),
            },
        }


Message = Union[InitMessage, TickMessage]


def encode_message(message: Message) -> str:
    """Serialise ``message`` into the JSON text sent over the wire."""

    return json.dumps(message.to_payload())
