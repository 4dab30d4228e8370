import logging
import os
import threading
import time
import uuid
from typing import Callable

LOG_FORMAT = "%(asctime)s [%(levelname)s] %(name)s: %(message)s"


def setup_logging(level: str = "INFO") -> None:
    logging.basicConfig(level=getattr(logging, level.upper(), logging.INFO), format=LOG_FORMAT)


def now_ms() -> int:
    return int(time.time() * 1000)


def new_connection_id(service_id: str) -> str:
    """`<service_id>-<millis>-<suffix>`; the suffix keeps ids unique within one millisecond."""
    return f"{service_id}-{now_ms()}-{uuid.uuid4().hex[:8]}"


def arm_forced_exit(delay: float, exit_fn: Callable[[int], None] = os._exit) -> threading.Timer:
    """
    Start a daemon timer that calls `exit_fn(1)` after `delay` seconds.
    Runs on its own thread so it still fires when the event loop is stuck.
    Cancel the returned timer once shutdown has completed.
    """
    timer = threading.Timer(delay, exit_fn, args=(1,))
    timer.daemon = True
    timer.start()
    return timer
