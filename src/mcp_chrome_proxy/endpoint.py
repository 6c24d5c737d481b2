#!/usr/bin/env python3
"""
Server-facing MCP endpoint for one session

Answers ``initialize`` and ``ping`` itself and hands every other request to a
registered handler. The proxy registers ``tools/list`` and ``tools/call``;
both delegate to the shared child connection.
"""

import logging
from typing import Any, Awaitable, Callable, Dict, Optional

from mcp_chrome_proxy import __version__
from mcp_chrome_proxy.errors import (
    BackendUnavailable,
    DomainError,
    UpstreamTimeout,
)
from mcp_chrome_proxy.jsonrpc import (
    BACKEND_UNAVAILABLE,
    INTERNAL_ERROR,
    INVALID_PARAMS,
    METHOD_NOT_FOUND,
    UPSTREAM_TIMEOUT,
    error_response,
    is_notification,
    is_response,
    relay_error,
    success_response,
)

logger = logging.getLogger(__name__)

SERVER_INFO = {
    "name": "mcp-chrome-proxy",
    "version": __version__,
}

LATEST_PROTOCOL_VERSION = "2025-06-18"
SUPPORTED_PROTOCOL_VERSIONS = ("2024-11-05", "2025-03-26", "2025-06-18")

RequestHandler = Callable[[Dict[str, Any]], Awaitable[Any]]


class ProxyEndpoint:
    """Dispatches JSON-RPC requests from one session to its handlers"""

    def __init__(self, session_id: str):
        self.session_id = session_id
        self.handlers: Dict[str, RequestHandler] = {}
        self.closed = False
        self.client_info: Optional[Dict[str, Any]] = None

    def set_request_handler(self, method: str, handler: RequestHandler) -> None:
        """Register the coroutine that answers ``method``"""
        self.handlers[method] = handler

    async def handle_message(self, message: Dict[str, Any]) -> Optional[Dict[str, Any]]:
        """Handle one inbound message

        Args:
            message: A validated JSON-RPC request, notification or response

        Returns:
            The response envelope, or None when nothing is owed
        """
        if is_response(message):
            logger.debug(f"[{self.session_id}] Ignoring client response for id {message.get('id')!r}")
            return None

        method = message.get("method")
        if is_notification(message):
            logger.debug(f"[{self.session_id}] Notification: {method}")
            return None

        request_id = message.get("id")
        params = message.get("params")
        logger.info(f"[{self.session_id}] Request {request_id}: {method}")

        if self.closed:
            return error_response(request_id, "Session is closed", BACKEND_UNAVAILABLE)

        # MCP methods only take named parameters
        if params is None:
            params = {}
        elif not isinstance(params, dict):
            return error_response(request_id, f"{method} params must be an object", INVALID_PARAMS)

        if method == "initialize":
            return success_response(request_id, self._initialize(params))
        if method == "ping":
            return success_response(request_id, {})

        handler = self.handlers.get(method)
        if handler is None:
            logger.warning(f"[{self.session_id}] Unknown method: {method}")
            return error_response(request_id, f"Method not found: {method}", METHOD_NOT_FOUND)

        try:
            result = await handler(params)
        except DomainError as e:
            logger.info(f"[{self.session_id}] {method} failed in backend: {e}")
            return relay_error(request_id, e.error)
        except ValueError as e:
            return error_response(request_id, str(e), INVALID_PARAMS)
        except UpstreamTimeout as e:
            logger.error(f"[{self.session_id}] {method} timed out: {e}")
            return error_response(request_id, str(e), UPSTREAM_TIMEOUT)
        except BackendUnavailable as e:
            logger.error(f"[{self.session_id}] {method} failed, backend unavailable: {e}")
            return error_response(request_id, str(e), BACKEND_UNAVAILABLE)
        except Exception as e:
            logger.exception(f"[{self.session_id}] Error handling {method}")
            return error_response(request_id, f"Internal error: {e}", INTERNAL_ERROR)

        logger.info(f"[{self.session_id}] Response {request_id}: {method} - Success")
        return success_response(request_id, result)

    def _initialize(self, params: Dict[str, Any]) -> Dict[str, Any]:
        requested = params.get("protocolVersion")
        self.client_info = params.get("clientInfo")
        if requested in SUPPORTED_PROTOCOL_VERSIONS:
            version = requested
        else:
            version = LATEST_PROTOCOL_VERSION
        logger.info(f"[{self.session_id}] Client initialized: {self.client_info} (protocol {version})")
        return {
            "protocolVersion": version,
            "capabilities": {"tools": {}},
            "serverInfo": SERVER_INFO,
        }

    async def close(self) -> None:
        """Stop accepting requests on this endpoint"""
        if not self.closed:
            self.closed = True
            logger.info(f"[{self.session_id}] Endpoint closed")
