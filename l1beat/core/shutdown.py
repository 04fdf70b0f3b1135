"""Graceful shutdown coordination for the ingestion daemon.

Signals set an asyncio event; the scheduler loop waits on it between ticks so
a SIGTERM stops scheduling new jobs and lets the current one finish.
"""

import asyncio
import logging
import signal
import sys
from types import FrameType
from typing import Optional

logger = logging.getLogger(__name__)


class ShutdownHandler:
    """Manages graceful shutdown for the daemon loop."""

    def __init__(self) -> None:
        self._shutdown_event = asyncio.Event()
        self._shutdown_requested = False
        self._signals_registered = False

    def register_signals(self) -> None:
        """Register SIGTERM (container stop) and SIGINT (Ctrl+C) handlers."""
        if self._signals_registered:
            logger.warning("Signal handlers already registered")
            return

        if sys.platform == "win32":
            signal.signal(signal.SIGINT, self._signal_handler)
            signal.signal(signal.SIGBREAK, self._signal_handler)
            logger.info("Registered shutdown signals: SIGINT, SIGBREAK")
        else:
            signal.signal(signal.SIGTERM, self._signal_handler)
            signal.signal(signal.SIGINT, self._signal_handler)
            logger.info("Registered shutdown signals: SIGTERM, SIGINT")

        self._signals_registered = True

    def _signal_handler(self, signum: int, frame: Optional[FrameType]) -> None:
        signal_name = signal.Signals(signum).name
        logger.info(
            f"Received {signal_name}, initiating graceful shutdown",
            extra={"signal": signal_name, "signal_number": signum},
        )
        self.request_shutdown()

    def request_shutdown(self) -> None:
        """Request graceful shutdown."""
        if not self._shutdown_requested:
            self._shutdown_requested = True
            self._shutdown_event.set()
            logger.info("Shutdown requested")

    @property
    def should_shutdown(self) -> bool:
        return self._shutdown_requested

    async def wait_for_shutdown(self, timeout: Optional[float] = None) -> bool:
        """Wait for a shutdown request.

        Args:
            timeout: Optional timeout in seconds

        Returns:
            True if shutdown was requested, False if the timeout elapsed first
        """
        if timeout is None:
            await self._shutdown_event.wait()
            return True
        try:
            await asyncio.wait_for(self._shutdown_event.wait(), timeout=timeout)
            return True
        except asyncio.TimeoutError:
            return False
