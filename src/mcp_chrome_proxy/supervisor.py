#!/usr/bin/env python3
"""
Signal handling and orderly shutdown
"""

import asyncio
import logging
import signal
from typing import Any, Dict, Optional

import uvicorn

from mcp_chrome_proxy.bridge import ProxyBridge

logger = logging.getLogger(__name__)

SHUTDOWN_SIGNALS = (signal.SIGINT, signal.SIGTERM)


class Supervisor:
    """Turns SIGINT/SIGTERM into a graceful shutdown of the bridge

    The first signal ends every open event stream and sets ``stop_event``;
    in-flight requests are left to finish. ``shutdown`` then closes all
    sessions and the child connection.
    """

    def __init__(self, bridge: ProxyBridge):
        self.bridge = bridge
        self.loop: Optional[asyncio.AbstractEventLoop] = None
        self.stop_event: Optional[asyncio.Event] = None
        self.received_signals = []
        self._previous_handlers: Dict[int, Any] = {}

    def install(self) -> None:
        """Bind to the running loop and install the signal handlers"""
        self.loop = asyncio.get_running_loop()
        self.stop_event = asyncio.Event()
        for sig in SHUTDOWN_SIGNALS:
            self._previous_handlers[sig] = signal.signal(sig, self._handle_signal)

    def restore(self) -> None:
        """Put back whatever handlers were installed before ``install``"""
        for sig, handler in self._previous_handlers.items():
            signal.signal(sig, handler)
        self._previous_handlers.clear()

    def _handle_signal(self, signum: int, frame: Any) -> None:
        self.notify_signal(signum)

    def notify_signal(self, signum: int) -> None:
        """Record a termination signal and start draining

        Safe to call from a signal handler.
        """
        self.received_signals.append(signum)
        if len(self.received_signals) == 1:
            logger.info(f"Received {signal.Signals(signum).name}, shutting down gracefully...")
        if self.loop is not None and not self.loop.is_closed():
            self.loop.call_soon_threadsafe(self.begin_shutdown)

    def begin_shutdown(self) -> None:
        """Stop accepting work: set ``stop_event`` and end event streams"""
        if self.stop_event is None:
            self.stop_event = asyncio.Event()
        if self.stop_event.is_set():
            return
        self.stop_event.set()
        self.bridge.registry.close_streams()

    async def shutdown(self) -> int:
        """Close every session and the child connection

        Returns:
            Process exit status
        """
        try:
            await self.bridge.close()
        except Exception as e:
            logger.error(f"Error during cleanup: {e}")
        return 0


class ProxyServer(uvicorn.Server):
    """uvicorn server that reports termination signals to the supervisor"""

    def __init__(self, config: uvicorn.Config, supervisor: Supervisor):
        super().__init__(config)
        self.supervisor = supervisor

    def handle_exit(self, sig: int, frame: Any) -> None:
        self.supervisor.notify_signal(sig)
        super().handle_exit(sig, frame)
