"""Unit tests for the shutdown coordinator."""

from __future__ import annotations

import asyncio
import signal
from unittest.mock import MagicMock

import pytest

from dialog_migrator.core.shutdown import FORCED_EXIT_CODE, ShutdownCoordinator


class TestStopRequests:
    """Tests for request_shutdown and the signal handler."""

    def test_initial_state(self):
        coordinator = ShutdownCoordinator()
        assert coordinator.is_shutting_down is False
        assert coordinator.reason is None

    def test_request_shutdown_is_idempotent(self):
        coordinator = ShutdownCoordinator()
        coordinator.request_shutdown("first")
        coordinator.request_shutdown("second")

        assert coordinator.is_shutting_down is True
        assert coordinator.reason == "first"

    def test_first_signal_requests_shutdown(self):
        coordinator = ShutdownCoordinator()
        coordinator._handle_signal(signal.SIGINT)

        assert coordinator.is_shutting_down is True
        assert coordinator.reason == "signal_sigint"

    def test_second_signal_forces_exit(self):
        coordinator = ShutdownCoordinator()
        force = MagicMock()
        coordinator.on_force_exit(force)

        coordinator._handle_signal(signal.SIGTERM)
        force.assert_not_called()
        coordinator._handle_signal(signal.SIGTERM)
        force.assert_called_once()

    def test_force_exit_without_callback_raises(self):
        coordinator = ShutdownCoordinator()
        with pytest.raises(SystemExit) as exc_info:
            coordinator.force_exit()
        assert exc_info.value.code == FORCED_EXIT_CODE

    @pytest.mark.asyncio
    async def test_wait_returns_after_request(self):
        coordinator = ShutdownCoordinator()
        asyncio.get_running_loop().call_soon(coordinator.request_shutdown)

        await asyncio.wait_for(coordinator.wait(), timeout=1)

        assert coordinator.reason == "requested"


class TestGracePeriod:
    """The first stop request bounds how long the run may keep going."""

    @pytest.mark.asyncio
    async def test_grace_expiry_forces_exit(self):
        coordinator = ShutdownCoordinator(grace_period=0.01)
        force = MagicMock()
        coordinator.on_force_exit(force)

        coordinator.request_shutdown("test")
        await asyncio.sleep(0.05)

        force.assert_called_once()

    @pytest.mark.asyncio
    async def test_disarm_cancels_forced_exit(self):
        coordinator = ShutdownCoordinator(grace_period=0.01)
        force = MagicMock()
        coordinator.on_force_exit(force)

        coordinator.request_shutdown("test")
        coordinator.disarm()
        await asyncio.sleep(0.05)

        force.assert_not_called()

    def test_request_outside_loop_arms_nothing(self):
        coordinator = ShutdownCoordinator(grace_period=0.01)
        coordinator.request_shutdown("test")

        assert coordinator._grace_timer is None

    def test_request_callbacks_run_once(self):
        coordinator = ShutdownCoordinator()
        first = MagicMock(side_effect=RuntimeError("boom"))
        second = MagicMock()
        coordinator.on_request(first)
        coordinator.on_request(second)

        coordinator.request_shutdown("test")
        coordinator.request_shutdown("again")

        first.assert_called_once()
        second.assert_called_once()


class TestSignalRegistration:
    """Tests for register_signals / unregister_signals."""

    def test_registers_sigint_and_sigterm(self):
        loop = MagicMock()
        coordinator = ShutdownCoordinator()

        coordinator.register_signals(loop)

        registered = [c.args[0] for c in loop.add_signal_handler.call_args_list]
        assert registered == [signal.SIGINT, signal.SIGTERM]

        coordinator.unregister_signals(loop)
        removed = [c.args[0] for c in loop.remove_signal_handler.call_args_list]
        assert removed == [signal.SIGINT, signal.SIGTERM]

    def test_unsupported_platform_only_warns(self):
        loop = MagicMock()
        loop.add_signal_handler.side_effect = NotImplementedError
        coordinator = ShutdownCoordinator()

        coordinator.register_signals(loop)
        coordinator.unregister_signals(loop)

        loop.remove_signal_handler.assert_not_called()

    def test_double_registration_ignored(self):
        loop = MagicMock()
        coordinator = ShutdownCoordinator()

        coordinator.register_signals(loop)
        coordinator.register_signals(loop)

        assert loop.add_signal_handler.call_count == 2


class TestSaveCallbacks:
    """Tests for run_save_callbacks()."""

    @pytest.mark.asyncio
    async def test_no_callbacks(self):
        assert await ShutdownCoordinator().run_save_callbacks() is True

    @pytest.mark.asyncio
    async def test_runs_callbacks_in_order(self):
        calls = []
        coordinator = ShutdownCoordinator()

        async def first():
            calls.append("first")

        async def second():
            calls.append("second")

        coordinator.on_save(first)
        coordinator.on_save(second)

        assert await coordinator.run_save_callbacks() is True
        assert calls == ["first", "second"]

    @pytest.mark.asyncio
    async def test_failing_callback_does_not_block_others(self):
        calls = []
        coordinator = ShutdownCoordinator()

        async def broken():
            raise RuntimeError("disk gone")

        async def healthy():
            calls.append("healthy")

        coordinator.on_save(broken)
        coordinator.on_save(healthy)

        assert await coordinator.run_save_callbacks() is True
        assert calls == ["healthy"]

    @pytest.mark.asyncio
    async def test_timeout_forces_exit(self):
        coordinator = ShutdownCoordinator(grace_period=0.01)
        force = MagicMock()
        coordinator.on_force_exit(force)

        async def slow():
            await asyncio.sleep(5)

        coordinator.on_save(slow)

        assert await coordinator.run_save_callbacks() is False
        force.assert_called_once()
