#!/usr/bin/env python3
"""
Main entry point for the MCP Chrome Proxy
"""

import argparse
import asyncio
import logging
import sys
from typing import Any, Dict, List, Optional

from pydantic import ValidationError

from mcp_chrome_proxy.config import load_config
from mcp_chrome_proxy.logging_config import configure_logging
from mcp_chrome_proxy.server import serve

logger = logging.getLogger("mcp-chrome-proxy")


def parse_args(argv: Optional[List[str]] = None) -> argparse.Namespace:
    """Parse command line arguments"""
    parser = argparse.ArgumentParser(
        description="Expose a local chrome-devtools-mcp server over HTTP"
    )
    parser.add_argument(
        "--stdio",
        action="store_true",
        help="Serve MCP on stdin/stdout instead of HTTP"
    )
    parser.add_argument("--host", help="Address to bind (default: 0.0.0.0)")
    parser.add_argument("--port", type=int, help="Port to listen on (default: 3000)")
    parser.add_argument(
        "--backend-url",
        help="Chrome remote debugging URL (default: http://localhost:9222)"
    )
    parser.add_argument(
        "--child-command",
        help="Command that starts the child MCP server (default: npx -y chrome-devtools-mcp)"
    )
    parser.add_argument(
        "--session-mode",
        choices=["per-client", "shared"],
        help="One session per Mcp-Session-Id, or one shared session for everyone"
    )
    parser.add_argument(
        "--lazy",
        action="store_true",
        help="Do not connect to the child until the first request"
    )
    parser.add_argument("--log-dir", help="Also write logs to this directory")
    parser.add_argument(
        "--debug",
        action="store_true",
        help="Enable debug logging, including forwarded payloads"
    )
    return parser.parse_args(argv)


def build_overrides(args: argparse.Namespace) -> Dict[str, Any]:
    """Translate parsed arguments into config overrides"""
    overrides: Dict[str, Any] = {
        "host": args.host,
        "port": args.port,
        "backend_url": args.backend_url,
        "child_command": args.child_command,
        "session_mode": args.session_mode,
        "log_dir": args.log_dir,
    }
    if args.stdio:
        overrides["transport"] = "stdio"
    if args.lazy:
        overrides["eager_connect"] = False
    if args.debug:
        overrides["debug"] = True
    return overrides


def main(argv: Optional[List[str]] = None) -> int:
    """Parse arguments and run the proxy"""
    args = parse_args(argv)

    try:
        config = load_config(build_overrides(args))
    except ValidationError as e:
        print(f"Invalid configuration: {e}", file=sys.stderr)
        return 1

    configure_logging(config)

    try:
        return asyncio.run(serve(config))
    except KeyboardInterrupt:
        return 0
    except Exception as e:
        logger.exception(f"Fatal error: {e}")
        return 1


if __name__ == "__main__":
    sys.exit(main())
