import asyncio
import enum
import time
from dataclasses import dataclass, field
from typing import Any, Dict, Optional, Tuple

from . import config


class BridgeState(enum.Enum):
    CONNECTING = "connecting"
    BRIDGING = "bridging"
    CLOSING = "closing"
    CLOSED = "closed"


class Event(enum.Enum):
    STREAM_CONNECTED = "stream_connected"
    STREAM_DATA = "stream_data"
    STREAM_CLOSED = "stream_closed"
    STREAM_ERROR = "stream_error"
    FRAMED_DATA = "framed_data"
    FRAMED_CLOSED = "framed_closed"
    FRAMED_ERROR = "framed_error"
    IDLE_TIMEOUT = "idle_timeout"
    SHUTDOWN = "shutdown"


TERMINAL_EVENTS = frozenset({
    Event.STREAM_CLOSED,
    Event.STREAM_ERROR,
    Event.FRAMED_CLOSED,
    Event.FRAMED_ERROR,
    Event.IDLE_TIMEOUT,
    Event.SHUTDOWN,
})

# Non-terminal transitions; anything missing here leaves the state unchanged.
TRANSITIONS: Dict[Tuple[BridgeState, Event], BridgeState] = {
    (BridgeState.CONNECTING, Event.STREAM_CONNECTED): BridgeState.BRIDGING,
    (BridgeState.CONNECTING, Event.FRAMED_DATA): BridgeState.CONNECTING,
    (BridgeState.BRIDGING, Event.FRAMED_DATA): BridgeState.BRIDGING,
    (BridgeState.BRIDGING, Event.STREAM_DATA): BridgeState.BRIDGING,
}

# What the browser is told when a terminal event ends the session.
# Framed-side events map to None: that side is already gone.
CLOSE_FRAMES: Dict[Event, Optional[Tuple[int, str]]] = {
    Event.STREAM_CLOSED: (config.CLOSE_NORMAL, config.REASON_UPSTREAM_CLOSED),
    Event.STREAM_ERROR: (config.CLOSE_INTERNAL_ERROR, config.REASON_UPSTREAM_ERROR),
    Event.IDLE_TIMEOUT: (config.CLOSE_INTERNAL_ERROR, config.REASON_UPSTREAM_ERROR),
    Event.SHUTDOWN: (config.CLOSE_GOING_AWAY, config.REASON_SHUTDOWN),
    Event.FRAMED_CLOSED: None,
    Event.FRAMED_ERROR: None,
}


def transition(state: BridgeState, event: Event) -> BridgeState:
    if state in (BridgeState.CLOSING, BridgeState.CLOSED):
        return state
    if event in TERMINAL_EVENTS:
        return BridgeState.CLOSING
    return TRANSITIONS.get((state, event), state)


def close_frame_for(event: Event) -> Optional[Tuple[int, str]]:
    return CLOSE_FRAMES.get(event)


@dataclass
class Connection:
    id: str
    service_id: str
    host: str
    port: int
    framed: Any
    reader: Optional[asyncio.StreamReader] = None
    writer: Optional[asyncio.StreamWriter] = None
    state: BridgeState = BridgeState.CONNECTING
    auth_observed: bool = False
    frames_dropped: int = 0
    chunks_dropped: int = 0
    bytes_up: int = 0      # browser -> VNC server
    bytes_down: int = 0    # VNC server -> browser
    created_at: float = field(default_factory=time.time)

    @property
    def target(self) -> str:
        return f"{self.host}:{self.port}"

    def apply(self, event: Event) -> BridgeState:
        self.state = transition(self.state, event)
        return self.state
