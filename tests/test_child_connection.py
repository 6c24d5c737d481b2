#!/usr/bin/env python3
"""
Tests for the stdio client and the shared child connection

BackendConnection is exercised with a fake client; StdioRpcClient runs
against the fake MCP server in tests/fixtures.
"""

import asyncio
import logging
import unittest
import sys
from pathlib import Path
from unittest.mock import MagicMock

# Ensure the src directory is in the path
src_dir = Path(__file__).parent.parent / "src"
sys.path.insert(0, str(src_dir))

from mcp_chrome_proxy.child import (
    BackendConnection,
    ConnectionState,
    StdioRpcClient,
    _log_payload,
)
from mcp_chrome_proxy.errors import (
    BackendUnavailable,
    DomainError,
    ShutdownInProgress,
    UpstreamTimeout,
)

FAKE_SERVER = Path(__file__).parent / "fixtures" / "fake_mcp_server.py"
BACKEND_URL = "http://localhost:9222"


class FakeClient:
    """Stand-in for StdioRpcClient that answers from canned results"""

    def __init__(self, command, on_exit=None, start_delay=0.02, start_error=None):
        self.command = command
        self.on_exit = on_exit
        self.start_delay = start_delay
        self.start_error = start_error
        self.alive = False
        self.closed = False
        self.requests = []
        self.notifications = []

    async def start(self):
        await asyncio.sleep(self.start_delay)
        if self.start_error is not None:
            raise self.start_error
        self.alive = True

    async def request(self, method, params=None, timeout=None):
        self.requests.append((method, params))
        if method == "initialize":
            return {"protocolVersion": params["protocolVersion"], "serverInfo": {"name": "fake"}}
        if method == "tools/list":
            return {"tools": [{"name": "navigate_page"}, {"name": "take_screenshot"}]}
        if params["name"] == "missing":
            raise DomainError({"code": -32602, "message": "Unknown tool: missing"})
        return {"content": [{"type": "text", "text": f"ran {params['name']}"}]}

    async def notify(self, method, params=None):
        self.notifications.append(method)

    async def close(self):
        self.alive = False
        self.closed = True

    def die(self):
        """Simulate the child exiting on its own"""
        self.alive = False
        self.on_exit(self)


class TestBackendConnection(unittest.TestCase):
    """Test suite for BackendConnection"""

    def setUp(self):
        self.loop = asyncio.new_event_loop()
        asyncio.set_event_loop(self.loop)
        self.clients = []
        self.factory = MagicMock(side_effect=self._make_client)
        self.connection = BackendConnection(BACKEND_URL, ["chrome-devtools-mcp"],
                                            handshake_timeout=2.0, client_factory=self.factory)

    def tearDown(self):
        self.loop.close()

    def _make_client(self, command, on_exit=None):
        client = FakeClient(command, on_exit=on_exit)
        self.clients.append(client)
        return client

    def test_nothing_spawned_until_first_call(self):
        self.assertEqual(self.connection.state, ConnectionState.ABSENT)
        self.assertFalse(self.connection.connected)
        self.assertIsNone(self.connection.tool_count)
        self.factory.assert_not_called()

    def test_concurrent_first_calls_spawn_once(self):
        """Ten simultaneous callers share a single spawn"""
        async def _test():
            return await asyncio.gather(*(self.connection.ensure_connected() for _ in range(10)))

        clients = self.loop.run_until_complete(_test())
        self.assertEqual(self.factory.call_count, 1)
        self.assertEqual(self.connection.spawn_count, 1)
        self.assertTrue(all(client is clients[0] for client in clients))
        self.assertEqual(self.connection.state, ConnectionState.READY)

    def test_handshake(self):
        client = self.loop.run_until_complete(self.connection.ensure_connected())
        self.assertEqual(client.command, ["chrome-devtools-mcp", BACKEND_URL])
        method, params = client.requests[0]
        self.assertEqual(method, "initialize")
        self.assertEqual(params["protocolVersion"], "2025-06-18")
        self.assertEqual(params["clientInfo"]["name"], "mcp-chrome-proxy-client")
        self.assertEqual(client.notifications, ["notifications/initialized"])
        self.assertEqual(self.connection.server_info, {"name": "fake"})

    def test_failed_spawn_does_not_poison_later_calls(self):
        self.factory.side_effect = [
            FakeClient([], start_error=BackendUnavailable("npx not found")),
            FakeClient([]),
        ]

        async def _test():
            with self.assertRaises(BackendUnavailable):
                await self.connection.ensure_connected()
            self.assertEqual(self.connection.state, ConnectionState.FAILED)
            return await self.connection.ensure_connected()

        client = self.loop.run_until_complete(_test())
        self.assertTrue(client.alive)
        self.assertEqual(self.connection.spawn_count, 2)
        self.assertEqual(self.connection.state, ConnectionState.READY)

    def test_handshake_timeout(self):
        slow = FakeClient([], start_delay=1.0)
        self.factory.side_effect = [slow]
        self.connection.handshake_timeout = 0.05

        with self.assertRaises(BackendUnavailable):
            self.loop.run_until_complete(self.connection.ensure_connected())
        self.assertTrue(slow.closed)
        self.assertEqual(self.connection.state, ConnectionState.FAILED)

    def test_list_tools_records_tool_count(self):
        result = self.loop.run_until_complete(self.connection.list_tools())
        self.assertEqual([tool["name"] for tool in result["tools"]], ["navigate_page", "take_screenshot"])
        self.assertEqual(self.connection.tool_count, 2)

    def test_paginated_list_does_not_change_tool_count(self):
        self.loop.run_until_complete(self.connection.list_tools({"cursor": "page-2"}))
        self.assertIsNone(self.connection.tool_count)

    def test_call_tool_forwards_name_and_arguments(self):
        async def _test():
            result = await self.connection.call_tool("navigate_page", {"url": "https://example.com"})
            return result, self.clients[0].requests[-1]

        result, (method, params) = self.loop.run_until_complete(_test())
        self.assertEqual(result["content"][0]["text"], "ran navigate_page")
        self.assertEqual(method, "tools/call")
        self.assertEqual(params, {"name": "navigate_page", "arguments": {"url": "https://example.com"}})

    def test_call_tool_defaults_arguments(self):
        self.loop.run_until_complete(self.connection.call_tool("list_pages"))
        self.assertEqual(self.clients[0].requests[-1][1]["arguments"], {})

    def test_call_tool_domain_error_passes_through(self):
        with self.assertRaises(DomainError) as ctx:
            self.loop.run_until_complete(self.connection.call_tool("missing", {}))
        self.assertEqual(ctx.exception.error, {"code": -32602, "message": "Unknown tool: missing"})

    def test_call_tool_rejects_empty_name_without_spawning(self):
        for name in ("", None, 42):
            with self.subTest(name=name):
                with self.assertRaises(ValueError):
                    self.loop.run_until_complete(self.connection.call_tool(name, {}))
        self.factory.assert_not_called()

    def test_child_exit_reconnects_on_next_call(self):
        async def _test():
            first = await self.connection.ensure_connected()
            first.die()
            self.assertEqual(self.connection.state, ConnectionState.FAILED)
            self.assertFalse(self.connection.connected)
            return first, await self.connection.ensure_connected()

        first, second = self.loop.run_until_complete(_test())
        self.assertIsNot(first, second)
        self.assertTrue(first.closed)
        self.assertEqual(self.connection.spawn_count, 2)

    def test_dead_client_is_closed_before_respawn(self):
        async def _test():
            first = await self.connection.ensure_connected()
            # Process gone but no exit reported yet
            first.alive = False
            second = await self.connection.ensure_connected()
            return first, second

        first, second = self.loop.run_until_complete(_test())
        self.assertTrue(first.closed)
        self.assertIsNot(first, second)
        self.assertEqual(self.factory.call_count, 2)

    def test_close_is_permanent(self):
        async def _test():
            client = await self.connection.ensure_connected()
            await self.connection.close()
            self.assertTrue(client.closed)
            with self.assertRaises(ShutdownInProgress):
                await self.connection.call_tool("navigate_page", {})

        self.loop.run_until_complete(_test())
        self.assertEqual(self.factory.call_count, 1)


class TestStdioRpcClient(unittest.TestCase):
    """Test suite for StdioRpcClient against the fake MCP server"""

    def setUp(self):
        self.loop = asyncio.new_event_loop()
        asyncio.set_event_loop(self.loop)
        self.on_exit = MagicMock()
        self.client = StdioRpcClient([sys.executable, str(FAKE_SERVER), BACKEND_URL],
                                     on_exit=self.on_exit)

    def tearDown(self):
        self.loop.run_until_complete(self.client.close())
        self.loop.close()

    async def _start(self):
        await self.client.start()
        await self.client.request("initialize", {
            "protocolVersion": "2025-06-18",
            "capabilities": {},
            "clientInfo": {"name": "test", "version": "0"}
        }, timeout=10)
        await self.client.notify("notifications/initialized")

    def test_request_round_trip(self):
        async def _test():
            await self._start()
            return await self.client.request("tools/call", {
                "name": "navigate_page", "arguments": {"url": "https://example.com"}
            }, timeout=10)

        result = self.loop.run_until_complete(_test())
        self.assertIsNotNone(self.client.pid)
        self.assertEqual(result["content"][0]["text"],
                         f"Navigated to https://example.com via {BACKEND_URL}")

    def test_out_of_order_responses_reach_their_callers(self):
        async def _test():
            await self._start()
            slow = asyncio.ensure_future(self.client.request(
                "tools/call", {"name": "echo", "arguments": {"tag": "slow", "delay": 0.5}}, timeout=10))
            fast = asyncio.ensure_future(self.client.request(
                "tools/call", {"name": "echo", "arguments": {"tag": "fast"}}, timeout=10))
            done, _ = await asyncio.wait({slow, fast}, return_when=asyncio.FIRST_COMPLETED)
            self.assertEqual(done, {fast})
            return await slow, await fast

        slow, fast = self.loop.run_until_complete(_test())
        self.assertIn('"tag": "slow"', slow["content"][0]["text"])
        self.assertIn('"tag": "fast"', fast["content"][0]["text"])

    def test_error_response_raises_domain_error(self):
        async def _test():
            await self._start()
            await self.client.request("tools/call", {"name": "does_not_exist", "arguments": {}}, timeout=10)

        with self.assertRaises(DomainError) as ctx:
            self.loop.run_until_complete(_test())
        self.assertEqual(ctx.exception.error["code"], -32602)
        self.assertIn("does_not_exist", ctx.exception.error["message"])

    def test_timeout(self):
        async def _test():
            await self._start()
            await self.client.request("tools/call", {"name": "echo", "arguments": {"delay": 2}}, timeout=0.1)

        with self.assertRaises(UpstreamTimeout):
            self.loop.run_until_complete(_test())
        self.assertTrue(self.client.alive)

    def test_child_exit_fails_pending_calls(self):
        async def _test():
            await self._start()
            pending = asyncio.ensure_future(self.client.request(
                "tools/call", {"name": "echo", "arguments": {"delay": 5}}, timeout=10))
            await asyncio.sleep(0.05)
            with self.assertRaises(BackendUnavailable):
                await self.client.request("tools/call", {"name": "crash", "arguments": {}}, timeout=10)
            with self.assertRaises(BackendUnavailable):
                await pending

        self.loop.run_until_complete(_test())
        self.assertFalse(self.client.alive)
        self.on_exit.assert_called_once_with(self.client)

    def test_close_does_not_report_exit(self):
        self.loop.run_until_complete(self._start())
        self.loop.run_until_complete(self.client.close())
        self.assertFalse(self.client.alive)
        self.on_exit.assert_not_called()

    def test_spawn_failure(self):
        client = StdioRpcClient(["/nonexistent/chrome-devtools-mcp", BACKEND_URL])
        with self.assertRaises(BackendUnavailable):
            self.loop.run_until_complete(client.start())
        self.assertFalse(client.alive)


class TestConnectionWithFakeServer(unittest.TestCase):
    """BackendConnection driving real child processes"""

    def setUp(self):
        self.loop = asyncio.new_event_loop()
        asyncio.set_event_loop(self.loop)
        self.connection = BackendConnection(BACKEND_URL, [sys.executable, str(FAKE_SERVER)],
                                            handshake_timeout=10, call_timeout=10)

    def tearDown(self):
        self.loop.run_until_complete(self.connection.close())
        self.loop.close()

    def test_oversized_output_replaces_child_without_orphan(self):
        """A child that breaks its stdout is stopped before the next spawn"""
        async def _test():
            first = await self.connection.ensure_connected()
            with self.assertRaises(BackendUnavailable):
                await self.connection.call_tool("oversized", {})
            self.assertFalse(self.connection.connected)

            result = await self.connection.call_tool("navigate_page", {"url": "https://example.com"})
            second = await self.connection.ensure_connected()
            return first, second, result

        first, second, result = self.loop.run_until_complete(_test())
        self.assertIn("Navigated to https://example.com", result["content"][0]["text"])
        self.assertEqual(self.connection.spawn_count, 2)
        self.assertIsNot(first, second)
        self.assertIsNotNone(first.process.returncode)
        self.assertIsNone(second.process.returncode)

    def test_close_stops_a_discarded_child(self):
        async def _test():
            first = await self.connection.ensure_connected()
            with self.assertRaises(BackendUnavailable):
                await self.connection.call_tool("oversized", {})
            await self.connection.close()
            return first

        first = self.loop.run_until_complete(_test())
        self.assertIsNotNone(first.process.returncode)
        self.assertEqual(self.connection.spawn_count, 1)


class TestPayloadLogging(unittest.TestCase):
    """Payload logging must never break a forwarded call"""

    def test_unserializable_payload(self):
        payload = {}
        payload["self"] = payload
        with self.assertLogs("mcp_chrome_proxy.child", logging.DEBUG) as logs:
            _log_payload("tools/call request", payload)
        self.assertIn("unserializable payload", logs.output[0])


if __name__ == "__main__":
    unittest.main()
