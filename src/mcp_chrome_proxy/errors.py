#!/usr/bin/env python3
"""
Error types raised by the Chrome MCP proxy
"""

from typing import Any, Dict


class BridgeError(Exception):
    """Base class for all proxy errors."""


class BackendUnavailable(BridgeError):
    """Raised when the child MCP process cannot be spawned, handshaken or reached."""


class UpstreamTimeout(BridgeError):
    """Raised when the child does not answer a forwarded call in time."""


class ShutdownInProgress(BackendUnavailable):
    """Raised when a call arrives after the proxy started shutting down."""


class MalformedRequest(BridgeError):
    """Raised when an inbound body is not JSON or not a JSON-RPC envelope."""


class StreamConflict(BridgeError):
    """Raised when a second event stream is opened for the same session."""


class DomainError(BridgeError):
    """Raised when the child answers a call with a JSON-RPC error object.

    The error object is kept verbatim so it can be relayed unchanged.
    """

    error: Dict[str, Any]

    def __init__(self, error: Dict[str, Any]) -> None:
        """Wrap a child error object

        Args:
            error: The ``error`` member of the child's response envelope
        """
        if not isinstance(error, dict):
            error = {"code": -32603, "message": str(error)}
        self.error = error
        super().__init__(f"Backend error {error.get('code')}: {error.get('message')}")
