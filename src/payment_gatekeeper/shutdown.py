"""Signal-driven graceful shutdown for the gatekeeper service.

Usage:
    ```python
    async with GracefulShutdown(timeout=30.0) as shutdown:
        service = GatekeeperService(settings)
        shutdown.register_cleanup(service.stop)
        await service.start()
        await shutdown.wait()
    ```
"""

from __future__ import annotations

import asyncio
import logging
import signal
import sys
from collections.abc import Callable
from contextlib import suppress
from typing import Any

logger = logging.getLogger(__name__)

DEFAULT_SHUTDOWN_TIMEOUT = 30.0

SHUTDOWN_SIGNALS = (signal.SIGTERM, signal.SIGINT)


class GracefulShutdown:
    """Traps SIGTERM/SIGINT and runs cleanup callbacks on the way out.

    A first signal sets the shutdown event; a second one exits the process
    immediately. Cleanup callbacks (sync or async) run in registration order
    and share a single timeout.
    """

    def __init__(self, timeout: float = DEFAULT_SHUTDOWN_TIMEOUT) -> None:
        """Initialize the shutdown handler.

        Args:
            timeout: Maximum time in seconds granted to the cleanup callbacks.
        """
        self._timeout = timeout
        self._event: asyncio.Event | None = None
        self._requested = False
        self._callbacks: list[Callable[[], Any]] = []
        self._loop: asyncio.AbstractEventLoop | None = None
        self._installed: list[signal.Signals] = []

    @property
    def timeout(self) -> float:
        """Cleanup timeout in seconds."""
        return self._timeout

    @property
    def is_shutdown_requested(self) -> bool:
        """Check if shutdown has been requested."""
        return self._requested

    def _get_event(self) -> asyncio.Event:
        if self._event is None:
            self._event = asyncio.Event()
            if self._requested:
                self._event.set()
        return self._event

    def register_cleanup(self, callback: Callable[[], Any]) -> None:
        """Register a callable (sync or async) to run during shutdown."""
        self._callbacks.append(callback)

    def request_shutdown(self) -> None:
        """Request shutdown from application code."""
        if self._requested:
            return
        self._requested = True
        logger.info("Shutdown requested")
        if self._event is not None:
            self._event.set()

    async def wait(self) -> None:
        """Block until a signal arrives or shutdown is requested."""
        await self._get_event().wait()

    def install_signal_handlers(self) -> None:
        """Install handlers for SIGTERM and SIGINT on the running loop."""
        self._loop = asyncio.get_running_loop()
        self._get_event()
        for sig in SHUTDOWN_SIGNALS:
            try:
                self._loop.add_signal_handler(sig, self._handle_signal, sig)
            except (NotImplementedError, ValueError, OSError) as e:
                logger.warning("Could not install handler for %s: %s", sig.name, e)
                continue
            self._installed.append(sig)

    def remove_signal_handlers(self) -> None:
        """Remove the handlers installed by this instance."""
        if self._loop is None:
            return
        for sig in self._installed:
            with suppress(ValueError, OSError):
                self._loop.remove_signal_handler(sig)
        self._installed.clear()

    def _handle_signal(self, sig: signal.Signals) -> None:
        if self._requested:
            logger.warning("Received %s again - forcing exit!", sig.name)
            sys.exit(128 + sig.value)
        logger.info("Received %s - initiating graceful shutdown...", sig.name)
        self.request_shutdown()

    async def _run_callbacks(self) -> None:
        for callback in self._callbacks:
            try:
                result = callback()
                if asyncio.iscoroutine(result):
                    await result
            except Exception as e:
                logger.error("Cleanup callback failed: %s", e)

    async def run_cleanup_callbacks(self) -> bool:
        """Run the cleanup callbacks.

        Returns:
            False if they did not finish within the timeout.
        """
        try:
            await asyncio.wait_for(self._run_callbacks(), timeout=self._timeout)
        except TimeoutError:
            logger.error("Cleanup did not finish within %.1fs", self._timeout)
            return False
        return True

    async def __aenter__(self) -> GracefulShutdown:
        self.install_signal_handlers()
        return self

    async def __aexit__(self, *_args: Any) -> None:
        self.remove_signal_handlers()
        await self.run_cleanup_callbacks()
