"""
Graceful shutdown coordination for a migration run.

The coordinator turns SIGINT/SIGTERM into a cooperative stop request. The
orchestrator polls :attr:`ShutdownCoordinator.is_shutting_down` between
conversations and batches, so in-flight saves always finish. Callbacks
registered with :meth:`ShutdownCoordinator.on_request` run as soon as the stop
is requested (the limiter uses this to cut induced waits short).

The first request also arms the grace period: if the run has not called
:meth:`ShutdownCoordinator.disarm` by the time it expires, the process is
forced out. Save callbacks registered with
:meth:`ShutdownCoordinator.on_save` run under the same bound, and a second
signal skips it altogether.

Example:
    >>> coordinator = ShutdownCoordinator(grace_period=30.0)
    >>> coordinator.register_signals(asyncio.get_running_loop())
    >>> ...
    >>> if coordinator.is_shutting_down:
    ...     await coordinator.run_save_callbacks()
"""

from __future__ import annotations

import asyncio
import logging
import signal
from typing import Awaitable, Callable, Optional

from dialog_migrator.constants import DEFAULT_SHUTDOWN_GRACE_PERIOD
from dialog_migrator.utils.logging import log_with_context

SaveCallback = Callable[[], Awaitable[None]]
RequestCallback = Callable[[], None]
ForceExitCallback = Callable[[], None]

# Conventional exit status for a run stopped by Ctrl+C
FORCED_EXIT_CODE = 130


class ShutdownCoordinator:
    """Cooperative stop flag with signal wiring and bounded save callbacks."""

    def __init__(self, grace_period: float = DEFAULT_SHUTDOWN_GRACE_PERIOD) -> None:
        self.grace_period = grace_period
        self._event = asyncio.Event()
        self._reason: Optional[str] = None
        self._save_callbacks: list[SaveCallback] = []
        self._request_callbacks: list[RequestCallback] = []
        self._grace_timer: Optional[asyncio.TimerHandle] = None
        self._force_exit: Optional[ForceExitCallback] = None
        self._registered: list[signal.Signals] = []

    # ------------------------------------------------------------------
    # Signals
    # ------------------------------------------------------------------

    def register_signals(self, loop: Optional[asyncio.AbstractEventLoop] = None) -> None:
        """
        Handle SIGINT and SIGTERM on ``loop``.

        The first signal requests a graceful shutdown, a second one forces
        exit. Platforms without ``add_signal_handler`` support only get a
        warning.
        """
        if self._registered:
            log_with_context(logging.WARNING, "Signal handlers already registered")
            return

        loop = loop or asyncio.get_running_loop()
        for sig in (signal.SIGINT, signal.SIGTERM):
            try:
                loop.add_signal_handler(sig, self._handle_signal, sig)
            except NotImplementedError:
                log_with_context(
                    logging.WARNING,
                    f"Signal handling not supported on this platform for {sig.name}",
                )
                continue
            self._registered.append(sig)
        log_with_context(logging.DEBUG, "Shutdown signal handlers registered")

    def unregister_signals(self, loop: Optional[asyncio.AbstractEventLoop] = None) -> None:
        if not self._registered:
            return
        loop = loop or asyncio.get_running_loop()
        for sig in self._registered:
            loop.remove_signal_handler(sig)
        self._registered = []

    def _handle_signal(self, sig: signal.Signals) -> None:
        if self.is_shutting_down:
            log_with_context(
                logging.WARNING,
                f"Received second {sig.name}, forcing exit",
                reason=self._reason,
            )
            self.force_exit()
            return

        log_with_context(
            logging.WARNING,
            f"Received {sig.name}, finishing the current batch and saving progress "
            "(press Ctrl+C again to force exit)",
        )
        self.request_shutdown(f"signal_{sig.name.lower()}")

    # ------------------------------------------------------------------
    # Stop requests
    # ------------------------------------------------------------------

    def request_shutdown(self, reason: str = "requested") -> None:
        """Ask the run to stop at the next conversation or batch boundary."""
        if self._event.is_set():
            return
        self._reason = reason
        self._event.set()
        log_with_context(logging.INFO, f"Shutdown requested ({reason})")

        for callback in self._request_callbacks:
            try:
                callback()
            except Exception as e:  # One failing callback must not block the rest
                log_with_context(
                    logging.ERROR, f"Shutdown request callback failed: {e}", exc_info=True
                )
        self._arm_grace_timer()

    def _arm_grace_timer(self) -> None:
        try:
            loop = asyncio.get_running_loop()
        except RuntimeError:
            # Requested outside the event loop; nothing is running to bound
            return
        self._grace_timer = loop.call_later(self.grace_period, self._grace_expired)

    def _grace_expired(self) -> None:
        self._grace_timer = None
        log_with_context(
            logging.ERROR,
            f"Migration did not stop within {self.grace_period}s of the shutdown request, "
            "forcing exit",
            reason=self._reason,
        )
        self.force_exit()

    def disarm(self) -> None:
        """Cancel the grace timer once the run has stopped on its own."""
        if self._grace_timer is not None:
            self._grace_timer.cancel()
            self._grace_timer = None

    @property
    def is_shutting_down(self) -> bool:
        return self._event.is_set()

    @property
    def reason(self) -> Optional[str]:
        return self._reason

    async def wait(self) -> None:
        await self._event.wait()

    # ------------------------------------------------------------------
    # Callbacks
    # ------------------------------------------------------------------

    def on_save(self, callback: SaveCallback) -> None:
        """Register an async callback that persists state during shutdown."""
        self._save_callbacks.append(callback)

    def on_request(self, callback: RequestCallback) -> None:
        """Register a callback run synchronously when the stop is requested."""
        self._request_callbacks.append(callback)

    def on_force_exit(self, callback: ForceExitCallback) -> None:
        self._force_exit = callback

    def force_exit(self) -> None:
        """Invoke the force-exit callback, or raise ``SystemExit`` without one."""
        if self._force_exit is not None:
            self._force_exit()
            return
        raise SystemExit(FORCED_EXIT_CODE)

    async def run_save_callbacks(self) -> bool:
        """
        Run every save callback within the grace period.

        Returns:
            True if all callbacks finished in time, False on timeout
        """
        if not self._save_callbacks:
            return True

        async def run_all() -> None:
            for callback in self._save_callbacks:
                try:
                    await callback()
                except Exception as e:  # One failing callback must not block the rest
                    log_with_context(
                        logging.ERROR,
                        f"Shutdown save callback failed: {e}",
                        exc_info=True,
                    )

        try:
            await asyncio.wait_for(run_all(), timeout=self.grace_period)
        except asyncio.TimeoutError:
            log_with_context(
                logging.ERROR,
                f"Shutdown save callbacks did not finish within {self.grace_period}s",
            )
            if self._force_exit is not None:
                self._force_exit()
            return False
        return True
