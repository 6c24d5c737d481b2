"""
MCP Chrome Proxy: exposes a local stdio MCP server (chrome-devtools-mcp) over HTTP
"""

__version__ = "1.0.0"
