#!/usr/bin/env python3

import argparse
import asyncio
import logging
import os
import signal
import sys
from typing import Callable, List, Optional

from . import config
from .gateway_ws import Gateway
from .registry import Registry
from .utils import arm_forced_exit, setup_logging

logger = logging.getLogger("VNC-Relay")


class RelaySystem:
    def __init__(self, host: str = config.LISTEN_HOST, port: int = config.LISTEN_PORT,
                 path: str = config.LISTEN_PATH, idle_timeout: float = config.IDLE_TIMEOUT,
                 shutdown_grace: float = config.SHUTDOWN_GRACE,
                 force_exit: Callable[[int], None] = os._exit) -> None:
        self.registry = Registry()
        self.gateway = Gateway(self.registry, host=host, port=port, path=path, idle_timeout=idle_timeout)
        self.shutdown_grace = shutdown_grace
        self._force_exit = force_exit
        self.gateway_task: Optional[asyncio.Task] = None
        self.shutdown_task: Optional[asyncio.Task] = None
        self.running = False

    async def start(self) -> None:
        logger.info("=" * 56)
        logger.info("%s starting...", config.APP_NAME)
        logger.info("=" * 56)
        logger.info(f"Listen:        {self.gateway.host}:{self.gateway.port}{self.gateway.path}")
        logger.info(f"Idle timeout:  {self.gateway.idle_timeout:g}s")
        logger.info("=" * 56)
        self.running = True
        self.gateway_task = asyncio.create_task(self.gateway.start())
        try:
            await self.gateway_task
        except asyncio.CancelledError:
            logger.info("Gateway task cancelled")
            raise
        except Exception:
            self.running = False
            raise

    def request_shutdown(self) -> None:
        if self.shutdown_task is None:
            self.shutdown_task = asyncio.get_running_loop().create_task(self.shutdown())

    async def shutdown(self) -> None:
        if not self.running:
            return
        logger.info("Shutting down VNC server...")
        self.running = False
        watchdog = arm_forced_exit(self.shutdown_grace, self._force_exit)
        try:
            await self.gateway.stop()
            if self.gateway_task and not self.gateway_task.done():
                await self.gateway_task
        finally:
            watchdog.cancel()
        logger.info("%s stopped", config.APP_NAME)


def setup_signal_handlers(system: RelaySystem) -> None:
    loop = asyncio.get_running_loop()

    def _handler():
        logger.info("Received termination signal")
        system.request_shutdown()

    sigs = [signal.SIGINT, signal.SIGTERM]
    if hasattr(signal, "SIGQUIT"):
        sigs.append(signal.SIGQUIT)
    for sig in sigs:
        try:
            loop.add_signal_handler(sig, _handler)
        except NotImplementedError:
            # Windows may not support signal handlers in ProactorEventLoop
            signal.signal(sig, lambda *_: loop.call_soon_threadsafe(system.request_shutdown))


def setup_exception_handler(system: RelaySystem) -> None:
    loop = asyncio.get_running_loop()

    def _handler(loop, context):
        logger.error("Uncaught exception: %s", context.get("message"), exc_info=context.get("exception"))
        system.request_shutdown()

    loop.set_exception_handler(_handler)


def parse_args(argv: Optional[List[str]] = None) -> argparse.Namespace:
    parser = argparse.ArgumentParser(description="WebSocket to TCP relay for browser VNC clients")
    parser.add_argument("--host", default=config.LISTEN_HOST)
    parser.add_argument("--port", type=int, default=config.LISTEN_PORT)
    parser.add_argument("--path", default=config.LISTEN_PATH)
    parser.add_argument("--idle-timeout", type=float, default=config.IDLE_TIMEOUT,
                        help="Seconds without VNC traffic before a session is closed")
    parser.add_argument("--shutdown-grace", type=float, default=config.SHUTDOWN_GRACE,
                        help="Seconds to wait for a clean shutdown before forcing exit")
    parser.add_argument("--log-level", default="INFO")
    return parser.parse_args(argv)


async def main(argv: Optional[List[str]] = None) -> int:
    args = parse_args(argv)
    setup_logging(args.log_level)

    system = RelaySystem(args.host, args.port, args.path,
                         idle_timeout=args.idle_timeout, shutdown_grace=args.shutdown_grace)
    setup_signal_handlers(system)
    setup_exception_handler(system)

    try:
        await system.start()
    except OSError as e:
        logger.error("Failed to start VNC server: %s", e)
        return 1
    if system.shutdown_task is not None:
        await system.shutdown_task
    return 0


def run() -> None:
    try:
        sys.exit(asyncio.run(main()))
    except KeyboardInterrupt:
        logger.info("System interrupted")


if __name__ == "__main__":
    run()
