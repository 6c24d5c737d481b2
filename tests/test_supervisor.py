#!/usr/bin/env python3
"""
Tests for signal handling and graceful shutdown
"""

import asyncio
import signal
import unittest
import sys
from pathlib import Path
from unittest.mock import AsyncMock, MagicMock

import uvicorn

# Ensure the src directory is in the path
src_dir = Path(__file__).parent.parent / "src"
sys.path.insert(0, str(src_dir))

from mcp_chrome_proxy.bridge import ProxyBridge
from mcp_chrome_proxy.config import BridgeConfig
from mcp_chrome_proxy.http_app import create_app
from mcp_chrome_proxy.supervisor import ProxyServer, Supervisor


def make_bridge():
    connection = MagicMock()
    connection.connected = False
    connection.tool_count = None
    connection.call_tool = AsyncMock(return_value={"content": []})
    connection.close = AsyncMock()
    return ProxyBridge(BridgeConfig(eager_connect=False), connection=connection)


class TestSupervisor(unittest.TestCase):
    """Test suite for Supervisor"""

    def setUp(self):
        self.loop = asyncio.new_event_loop()
        asyncio.set_event_loop(self.loop)
        self.bridge = make_bridge()
        self.supervisor = Supervisor(self.bridge)

    def tearDown(self):
        self.supervisor.restore()
        self.loop.close()

    def test_install_and_restore_handlers(self):
        previous = signal.getsignal(signal.SIGTERM)

        async def _test():
            self.supervisor.install()
            self.assertEqual(signal.getsignal(signal.SIGTERM), self.supervisor._handle_signal)

        self.loop.run_until_complete(_test())
        self.supervisor.restore()
        self.assertEqual(signal.getsignal(signal.SIGTERM), previous)

    def test_signal_starts_graceful_shutdown(self):
        async def _test():
            self.supervisor.install()
            session = self.bridge.registry.get_or_create("a")
            session.transport.open_stream()
            self.supervisor.notify_signal(signal.SIGTERM)
            await asyncio.wait_for(self.supervisor.stop_event.wait(), 1)
            frames = [frame async for frame in session.transport.events()]
            await self.bridge.close()
            return frames

        frames = self.loop.run_until_complete(_test())
        self.assertEqual(frames, [b": stream open\n\n"])
        self.assertEqual(self.supervisor.received_signals, [signal.SIGTERM])

    def test_in_flight_call_completes_before_cleanup(self):
        async def slow_call(name, arguments):
            await asyncio.sleep(0.1)
            return {"content": [{"type": "text", "text": name}]}

        self.bridge.connection.call_tool.side_effect = slow_call

        async def _test():
            self.supervisor.install()
            session = self.bridge.registry.get_or_create("a")
            call = asyncio.ensure_future(session.endpoint.handle_message({
                "jsonrpc": "2.0", "id": 1, "method": "tools/call", "params": {"name": "list_pages"}
            }))
            await asyncio.sleep(0)
            self.supervisor.begin_shutdown()
            response = await call
            status = await self.supervisor.shutdown()
            return response, status

        response, status = self.loop.run_until_complete(_test())
        self.assertEqual(response["result"]["content"][0]["text"], "list_pages")
        self.assertEqual(status, 0)
        self.bridge.connection.close.assert_awaited_once()
        self.assertEqual(len(self.bridge.registry), 0)

    def test_shutdown_survives_cleanup_errors(self):
        self.bridge.connection.close.side_effect = RuntimeError("child already gone")
        with self.assertLogs("mcp_chrome_proxy.bridge", "ERROR"):
            status = self.loop.run_until_complete(self.supervisor.shutdown())
        self.assertEqual(status, 0)
        self.assertTrue(self.bridge.closed)

    def test_proxy_server_reports_signals(self):
        supervisor = MagicMock()
        server = ProxyServer(uvicorn.Config(create_app(self.bridge), log_config=None), supervisor)
        server.handle_exit(signal.SIGINT, None)
        supervisor.notify_signal.assert_called_once_with(signal.SIGINT)
        self.assertTrue(server.should_exit)


if __name__ == "__main__":
    unittest.main()
