"""Graceful shutdown handling for the monitor.

SIGTERM and SIGINT stop message consumption; registered cleanup callbacks
then run so the pipeline can release its database connections. A second
signal exits immediately.

Usage:
    ```python
    async with GracefulShutdown() as shutdown:
        shutdown.register_cleanup(pipeline.stop)
        completed = await shutdown.run(pipeline.run(source))
    ```
"""

from __future__ import annotations

import asyncio
import logging
import signal
import sys
from collections.abc import Awaitable, Callable
from contextlib import suppress
from types import FrameType
from typing import Any, TypeVar

logger = logging.getLogger(__name__)

DEFAULT_SHUTDOWN_TIMEOUT = 30.0  # seconds

SHUTDOWN_SIGNALS = (signal.SIGTERM, signal.SIGINT)

T = TypeVar("T")


class GracefulShutdown:
    """Coordinates shutdown between signal handlers and running work.

    Attributes:
        timeout: Seconds allowed for cleanup callbacks to finish.
    """

    def __init__(self, timeout: float = DEFAULT_SHUTDOWN_TIMEOUT) -> None:
        """Initialize the shutdown handler.

        Args:
            timeout: Seconds allowed for cleanup callbacks to finish.
        """
        self.timeout = timeout
        self._event = asyncio.Event()
        self._requested = False
        self._loop: asyncio.AbstractEventLoop | None = None
        self._fallback_handlers: dict[signal.Signals, Any] = {}
        self._cleanup_callbacks: list[Callable[[], Any]] = []

    @property
    def is_shutdown_requested(self) -> bool:
        """Whether a signal or caller has asked to shut down."""
        return self._requested

    def register_cleanup(self, callback: Callable[[], Any]) -> None:
        """Register a sync or async callable to run on exit."""
        self._cleanup_callbacks.append(callback)

    def request_shutdown(self) -> None:
        """Ask running work to stop. Repeated calls are ignored."""
        if self._requested:
            return
        self._requested = True
        self._event.set()
        logger.info("Shutdown requested")

    async def wait(self) -> None:
        """Block until shutdown is requested."""
        await self._event.wait()

    async def run(self, work: Awaitable[T]) -> bool:
        """Run ``work`` until it finishes or shutdown is requested.

        Returns:
            True if the work completed, False if it was cancelled by a
            shutdown request. Exceptions raised by the work propagate.
        """
        task = asyncio.ensure_future(work)
        waiter = asyncio.ensure_future(self._event.wait())
        done, _ = await asyncio.wait({task, waiter}, return_when=asyncio.FIRST_COMPLETED)

        if task in done:
            waiter.cancel()
            with suppress(asyncio.CancelledError):
                await waiter
            task.result()
            return True

        task.cancel()
        with suppress(asyncio.CancelledError):
            await task
        return False

    def install_signal_handlers(self) -> None:
        """Trap SIGTERM and SIGINT.

        Uses the event loop's signal support where available and falls back
        to ``signal.signal`` (e.g. on Windows).
        """
        self._loop = asyncio.get_running_loop()
        for sig in SHUTDOWN_SIGNALS:
            try:
                self._loop.add_signal_handler(sig, self._handle_signal, sig)
            except NotImplementedError:
                with suppress(ValueError, OSError):
                    self._fallback_handlers[sig] = signal.signal(sig, self._handle_signal_sync)
            except (ValueError, OSError, RuntimeError) as e:
                logger.warning("Could not install handler for %s: %s", sig.name, e)

    def remove_signal_handlers(self) -> None:
        """Remove installed handlers and restore any replaced ones."""
        if self._loop is not None:
            for sig in SHUTDOWN_SIGNALS:
                with suppress(ValueError, OSError, NotImplementedError, RuntimeError):
                    self._loop.remove_signal_handler(sig)
        for sig, original in self._fallback_handlers.items():
            with suppress(ValueError, OSError):
                signal.signal(sig, original)
        self._fallback_handlers.clear()

    def _handle_signal(self, sig: signal.Signals) -> None:
        if self._requested:
            logger.warning("Received %s again - exiting immediately", sig.name)
            sys.exit(128 + sig.value)
        logger.info("Received %s - shutting down", sig.name)
        self.request_shutdown()

    def _handle_signal_sync(self, sig: int, _frame: FrameType | None) -> None:
        self._handle_signal(signal.Signals(sig))

    async def run_cleanup_callbacks(self) -> None:
        """Run cleanup callbacks in registration order, within the timeout."""
        for callback in self._cleanup_callbacks:
            try:
                result = callback()
                if asyncio.iscoroutine(result):
                    await asyncio.wait_for(result, timeout=self.timeout)
            except TimeoutError:
                logger.error("Cleanup callback timed out after %.1fs", self.timeout)
            except Exception as e:
                logger.error("Cleanup callback failed: %s", e)

    async def __aenter__(self) -> GracefulShutdown:
        self.install_signal_handlers()
        return self

    async def __aexit__(self, *_args: Any) -> None:
        self.remove_signal_handlers()
        await self.run_cleanup_callbacks()
