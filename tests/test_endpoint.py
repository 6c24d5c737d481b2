#!/usr/bin/env python3
"""
Unit tests for the per-session MCP endpoint
"""

import asyncio
import unittest
import sys
from pathlib import Path
from unittest.mock import AsyncMock

# Ensure the src directory is in the path
src_dir = Path(__file__).parent.parent / "src"
sys.path.insert(0, str(src_dir))

from mcp_chrome_proxy.endpoint import LATEST_PROTOCOL_VERSION, ProxyEndpoint
from mcp_chrome_proxy.errors import (
    BackendUnavailable,
    DomainError,
    ShutdownInProgress,
    UpstreamTimeout,
)


def request(method, request_id=1, params=None):
    message = {"jsonrpc": "2.0", "id": request_id, "method": method}
    if params is not None:
        message["params"] = params
    return message


class TestProxyEndpoint(unittest.TestCase):
    """Test suite for ProxyEndpoint.handle_message"""

    def setUp(self):
        self.loop = asyncio.new_event_loop()
        asyncio.set_event_loop(self.loop)
        self.endpoint = ProxyEndpoint("session-1")
        self.call_tool = AsyncMock(return_value={"content": [{"type": "text", "text": "done"}]})
        self.endpoint.set_request_handler("tools/call", self.call_tool)

    def tearDown(self):
        self.loop.close()

    def handle(self, message):
        return self.loop.run_until_complete(self.endpoint.handle_message(message))

    def test_initialize_negotiates_protocol_version(self):
        response = self.handle(request("initialize", params={
            "protocolVersion": "2024-11-05",
            "capabilities": {},
            "clientInfo": {"name": "inspector", "version": "1.0"}
        }))
        result = response["result"]
        self.assertEqual(result["protocolVersion"], "2024-11-05")
        self.assertEqual(result["capabilities"], {"tools": {}})
        self.assertEqual(result["serverInfo"]["name"], "mcp-chrome-proxy")
        self.assertEqual(self.endpoint.client_info, {"name": "inspector", "version": "1.0"})

    def test_initialize_with_unknown_version_gets_latest(self):
        response = self.handle(request("initialize", params={"protocolVersion": "1999-01-01"}))
        self.assertEqual(response["result"]["protocolVersion"], LATEST_PROTOCOL_VERSION)

    def test_ping(self):
        self.assertEqual(self.handle(request("ping", "p1")), {"jsonrpc": "2.0", "id": "p1", "result": {}})

    def test_unknown_method(self):
        response = self.handle(request("resources/list", 4))
        self.assertEqual(response["id"], 4)
        self.assertEqual(response["error"]["code"], -32601)

    def test_notifications_and_responses_get_no_answer(self):
        self.assertIsNone(self.handle({"jsonrpc": "2.0", "method": "notifications/initialized"}))
        self.assertIsNone(self.handle({"jsonrpc": "2.0", "id": 9, "result": {}}))
        self.call_tool.assert_not_awaited()

    def test_handler_receives_params(self):
        params = {"name": "navigate_page", "arguments": {"url": "https://example.com"}}
        response = self.handle(request("tools/call", 2, params))
        self.call_tool.assert_awaited_once_with(params)
        self.assertEqual(response, {"jsonrpc": "2.0", "id": 2,
                                    "result": {"content": [{"type": "text", "text": "done"}]}})

    def test_error_mapping(self):
        """Each failure kind maps to its JSON-RPC error code"""
        cases = [
            (ValueError("Tool name must be a non-empty string"), -32602),
            (UpstreamTimeout("tools/call timed out"), -32001),
            (BackendUnavailable("npx not found"), -32000),
            (ShutdownInProgress("Proxy is shutting down"), -32000),
            (RuntimeError("boom"), -32603),
        ]
        for error, code in cases:
            with self.subTest(error=error):
                self.call_tool.side_effect = error
                response = self.handle(request("tools/call", 3, {"name": "x"}))
                self.assertEqual(response["id"], 3)
                self.assertEqual(response["error"]["code"], code)

    def test_domain_error_relayed_verbatim(self):
        error = {"code": -32602, "message": "Unknown tool: does_not_exist", "data": {"hint": "tools/list"}}
        self.call_tool.side_effect = DomainError(error)
        response = self.handle(request("tools/call", 2, {"name": "does_not_exist"}))
        self.assertEqual(response, {"jsonrpc": "2.0", "id": 2, "error": error})

    def test_positional_params_are_invalid(self):
        self.endpoint.set_request_handler("tools/list", AsyncMock(return_value={"tools": []}))
        for method in ("initialize", "tools/list", "tools/call"):
            with self.subTest(method=method):
                response = self.handle(request(method, 6, [1]))
                self.assertEqual(response["id"], 6)
                self.assertEqual(response["error"]["code"], -32602)
        self.call_tool.assert_not_awaited()

    def test_closed_endpoint_refuses_requests(self):
        self.loop.run_until_complete(self.endpoint.close())
        response = self.handle(request("tools/call", 5, {"name": "x"}))
        self.assertEqual(response["error"]["code"], -32000)
        self.call_tool.assert_not_awaited()


if __name__ == "__main__":
    unittest.main()
