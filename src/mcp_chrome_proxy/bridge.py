#!/usr/bin/env python3
"""
Top-level proxy instance: owns the child connection and the session registry
"""

import logging
from typing import Any, Dict, Optional

from mcp_chrome_proxy.child import BackendConnection
from mcp_chrome_proxy.config import BridgeConfig
from mcp_chrome_proxy.errors import BridgeError
from mcp_chrome_proxy.sessions import SessionRegistry

logger = logging.getLogger(__name__)


class ProxyBridge:
    """Chrome MCP proxy: many sessions, one child connection"""

    def __init__(self, config: BridgeConfig, connection: Optional[BackendConnection] = None):
        """Initialize the bridge

        Args:
            config: Validated configuration
            connection: Child connection to use instead of building one
        """
        self.config = config
        if connection is None:
            connection = BackendConnection(
                config.backend_url,
                config.child_command,
                handshake_timeout=config.handshake_timeout,
                call_timeout=config.call_timeout,
            )
        self.connection = connection
        self.registry = SessionRegistry(
            connection,
            grace_period=config.session_grace,
            keepalive=config.stream_keepalive,
            idle_timeout=config.session_idle_timeout,
        )
        self.closed = False

    async def start(self) -> None:
        """Pre-connect to the child if configured; never raises"""
        if not self.config.eager_connect:
            logger.info("Child connection will be established on first request")
            return

        logger.info("Pre-initializing child connection...")
        try:
            await self.connection.ensure_connected()
        except BridgeError as e:
            logger.warning(f"Failed to pre-initialize child connection: {e}")
            logger.warning("Tools will be initialized on first request instead")
            return

        try:
            result = await self.connection.list_tools()
        except BridgeError as e:
            logger.error(f"Child connection is up but tools/list failed: {e}")
            return
        if not isinstance(result, dict) or not isinstance(result.get("tools"), list):
            logger.warning(f"Child returned an unexpected tools/list result: {result!r}")
            return
        tools = result["tools"]
        sample = [tool.get("name") for tool in tools[:3] if isinstance(tool, dict)]
        logger.info(f"Child has {len(tools)} tools available, e.g. {sample}")

    def health(self) -> Dict[str, Any]:
        """Report status without touching the child process"""
        return {
            "status": "ok",
            "backend_url": self.config.backend_url,
            "backend_connected": self.connection.connected,
            "tools_available": self.connection.tool_count,
        }

    async def close(self) -> None:
        """Close every session, then the child connection

        Best effort: failures are logged and the sequence continues.
        """
        if self.closed:
            return
        self.closed = True
        logger.info("Shutting down: closing sessions")
        await self.registry.close_all()
        try:
            await self.connection.close()
        except Exception as e:
            logger.error(f"Error closing child connection: {e}")
        logger.info("Cleanup complete")
