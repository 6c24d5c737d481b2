#!/usr/bin/env python3
"""
Configuration for the Chrome MCP proxy

Values come from environment variables and can be overridden on the
command line. Everything is validated once, at startup.
"""

import os
import shlex
from typing import Any, Dict, List, Literal, Mapping, Optional

from pydantic import BaseModel, Field, field_validator

DEFAULT_CHILD_COMMAND = ["npx", "-y", "chrome-devtools-mcp"]

# Environment variable -> config field
ENV_VARS = {
    "HOST": "host",
    "PORT": "port",
    "CHROME_URL": "backend_url",
    "MCP_TRANSPORT": "transport",
    "MCP_CHILD_COMMAND": "child_command",
    "MCP_HANDSHAKE_TIMEOUT": "handshake_timeout",
    "MCP_CALL_TIMEOUT": "call_timeout",
    "MCP_SESSION_GRACE": "session_grace",
    "MCP_SESSION_IDLE_TIMEOUT": "session_idle_timeout",
    "MCP_SESSION_MODE": "session_mode",
    "MCP_STREAM_KEEPALIVE": "stream_keepalive",
    "MCP_SHUTDOWN_TIMEOUT": "shutdown_timeout",
    "MCP_EAGER_CONNECT": "eager_connect",
    "MCP_LOG_DIR": "log_dir",
    "MCP_DEBUG": "debug",
}


class BridgeConfig(BaseModel):
    """Runtime settings for the proxy"""

    host: str = "0.0.0.0"
    port: int = Field(3000, ge=0, le=65535)
    backend_url: str = "http://localhost:9222"
    transport: Literal["http", "stdio"] = "http"
    child_command: List[str] = Field(default_factory=lambda: list(DEFAULT_CHILD_COMMAND))
    handshake_timeout: float = Field(30.0, gt=0)
    call_timeout: float = Field(300.0, gt=0)
    session_grace: float = Field(1.0, ge=0)
    session_idle_timeout: float = Field(300.0, gt=0)
    session_mode: Literal["per-client", "shared"] = "per-client"
    stream_keepalive: float = Field(15.0, gt=0)
    shutdown_timeout: float = Field(10.0, gt=0)
    eager_connect: bool = True
    log_dir: Optional[str] = None
    debug: bool = False

    @field_validator("transport", "session_mode", mode="before")
    @classmethod
    def _lowercase(cls, value: Any) -> Any:
        return value.strip().lower() if isinstance(value, str) else value

    @field_validator("child_command", mode="before")
    @classmethod
    def _split_command(cls, value: Any) -> Any:
        if isinstance(value, str):
            value = shlex.split(value)
        return value

    @field_validator("child_command")
    @classmethod
    def _require_command(cls, value: List[str]) -> List[str]:
        if not value:
            raise ValueError("child command must not be empty")
        return value

    @field_validator("backend_url")
    @classmethod
    def _require_backend_url(cls, value: str) -> str:
        if not value.strip():
            raise ValueError("backend URL must not be empty")
        return value.strip()


def env_values(environ: Optional[Mapping[str, str]] = None) -> Dict[str, str]:
    """Collect the raw config values present in the environment"""
    if environ is None:
        environ = os.environ
    values = {}
    for name, field in ENV_VARS.items():
        value = environ.get(name)
        if value is not None and value != "":
            values[field] = value
    return values


def load_config(overrides: Optional[Dict[str, Any]] = None,
                environ: Optional[Mapping[str, str]] = None) -> BridgeConfig:
    """Build the config from the environment, then apply overrides

    Args:
        overrides: Values from the command line; None entries are ignored
        environ: Environment mapping, defaults to os.environ

    Returns:
        Validated BridgeConfig

    Raises:
        pydantic.ValidationError: If any value is invalid
    """
    values: Dict[str, Any] = env_values(environ)
    for key, value in (overrides or {}).items():
        if value is not None:
            values[key] = value
    return BridgeConfig(**values)
