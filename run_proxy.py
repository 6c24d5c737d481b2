#!/usr/bin/env python3
"""
Run the MCP Chrome Proxy from a source checkout
"""

import sys
from pathlib import Path

# Ensure the src directory is in the path
src_dir = Path(__file__).parent / "src"
sys.path.insert(0, str(src_dir))

from mcp_chrome_proxy.__main__ import main

if __name__ == "__main__":
    sys.exit(main())
