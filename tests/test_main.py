"""Tests for the process-level surface: CLI, shutdown and forced exit."""

import asyncio
import signal
import socket
from unittest.mock import MagicMock

import pytest

from vnc_relay import config
from vnc_relay.main import RelaySystem, main, parse_args, setup_exception_handler
from vnc_relay.utils import arm_forced_exit


async def started(system):
    task = asyncio.create_task(system.start())
    await asyncio.wait_for(system.gateway.wait_ready(), 2)
    return task


class TestParseArgs:
    def test_defaults(self):
        args = parse_args([])
        assert args.host == config.LISTEN_HOST
        assert args.port == 3101
        assert args.path == "/vnc"
        assert args.idle_timeout == 30.0
        assert args.shutdown_grace == 3.0

    def test_overrides(self):
        args = parse_args(["--port", "6080", "--path", "/websockify", "--idle-timeout", "5"])
        assert args.port == 6080
        assert args.path == "/websockify"
        assert args.idle_timeout == 5.0


class TestRelaySystem:
    @pytest.mark.anyio
    async def test_clean_shutdown_cancels_watchdog(self):
        force_exit = MagicMock()
        system = RelaySystem(host="127.0.0.1", port=0, shutdown_grace=0.5, force_exit=force_exit)
        task = await started(system)

        system.request_shutdown()
        await asyncio.wait_for(task, 2)
        await system.shutdown_task
        await asyncio.sleep(0.6)

        force_exit.assert_not_called()
        assert system.running is False

    @pytest.mark.anyio
    async def test_request_shutdown_is_idempotent(self):
        system = RelaySystem(host="127.0.0.1", port=0, force_exit=MagicMock())
        task = await started(system)

        system.request_shutdown()
        first = system.shutdown_task
        system.request_shutdown()

        assert system.shutdown_task is first
        await asyncio.wait_for(task, 2)
        await first

    @pytest.mark.anyio
    async def test_stuck_shutdown_forces_exit(self):
        force_exit = MagicMock()
        system = RelaySystem(host="127.0.0.1", port=0, shutdown_grace=0.1, force_exit=force_exit)

        async def slow_drain():
            await asyncio.sleep(0.5)
            return 0

        system.registry.drain_all = slow_drain
        task = await started(system)

        system.request_shutdown()
        await asyncio.wait_for(system.shutdown_task, 2)
        await asyncio.wait_for(task, 2)

        force_exit.assert_called_once_with(1)

    @pytest.mark.anyio
    async def test_uncaught_exception_triggers_shutdown(self):
        loop = asyncio.get_running_loop()
        system = RelaySystem(host="127.0.0.1", port=0, force_exit=MagicMock())
        task = await started(system)
        setup_exception_handler(system)
        try:
            loop.call_exception_handler({"message": "boom", "exception": RuntimeError("boom")})
            await asyncio.wait_for(task, 2)
            await system.shutdown_task
        finally:
            loop.set_exception_handler(None)

        assert system.running is False


class TestMain:
    @pytest.mark.anyio
    async def test_port_in_use_exits_with_error(self):
        loop = asyncio.get_running_loop()
        with socket.socket(socket.AF_INET, socket.SOCK_STREAM) as busy:
            busy.bind(("127.0.0.1", 0))
            busy.listen()
            port = busy.getsockname()[1]
            try:
                assert await main(["--host", "127.0.0.1", "--port", str(port)]) == 1
            finally:
                loop.set_exception_handler(None)
                for sig in (signal.SIGINT, signal.SIGTERM, signal.SIGQUIT):
                    loop.remove_signal_handler(sig)


class TestForcedExit:
    def test_fires_after_delay(self):
        fired = MagicMock()
        timer = arm_forced_exit(0.05, fired)
        timer.join(1)
        fired.assert_called_once_with(1)

    def test_cancel_prevents_exit(self):
        fired = MagicMock()
        timer = arm_forced_exit(0.2, fired)
        timer.cancel()
        timer.join(1)
        fired.assert_not_called()
