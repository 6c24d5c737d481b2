#!/usr/bin/env python3
"""
Logging setup for the proxy

Logs go to stderr and, when a log directory is configured, to a timestamped
file there. Nothing is ever written to stdout, which carries the protocol in
stdio mode.
"""

import logging
import sys
from datetime import datetime
from pathlib import Path
from typing import Optional

from mcp_chrome_proxy.config import BridgeConfig

LOG_FORMAT = "%(asctime)s - %(name)s - %(levelname)s - %(message)s"


def configure_logging(config: BridgeConfig) -> Optional[Path]:
    """Configure the root logger

    Args:
        config: Proxy configuration (uses ``debug`` and ``log_dir``)

    Returns:
        Path of the log file, if one was opened
    """
    handlers = [logging.StreamHandler(sys.stderr)]
    log_file = None
    if config.log_dir:
        log_dir = Path(config.log_dir)
        log_dir.mkdir(parents=True, exist_ok=True)
        log_file = log_dir / f"mcp_chrome_proxy_{datetime.now().strftime('%Y%m%d_%H%M%S')}.log"
        handlers.append(logging.FileHandler(log_file))

    logging.basicConfig(
        level=logging.DEBUG if config.debug else logging.INFO,
        format=LOG_FORMAT,
        handlers=handlers,
        force=True,
    )
    # asyncio's own debug chatter is not useful here
    logging.getLogger("asyncio").setLevel(logging.WARNING)
    return log_file
