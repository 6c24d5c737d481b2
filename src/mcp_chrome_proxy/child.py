#!/usr/bin/env python3
"""
Connection to the child MCP server (chrome-devtools-mcp) over stdin/stdout

The child is spawned once and shared by every session. Requests are written
as newline-delimited JSON-RPC and answered out of order; responses are matched
to callers by the request id this module assigns.
"""

import asyncio
import itertools
import json
import logging
from collections import deque
from enum import Enum
from typing import Any, Callable, Deque, Dict, List, Optional, Set

from mcp_chrome_proxy import __version__
from mcp_chrome_proxy.errors import (
    BackendUnavailable,
    DomainError,
    ShutdownInProgress,
    UpstreamTimeout,
)
from mcp_chrome_proxy.jsonrpc import METHOD_NOT_FOUND, error_response, success_response

logger = logging.getLogger(__name__)

PROTOCOL_VERSION = "2025-06-18"

CLIENT_INFO = {
    "name": "mcp-chrome-proxy-client",
    "version": __version__,
}

# Longest line accepted from the child before it is treated as broken
MAX_LINE_LENGTH = 10 * 1024 * 1024

TERMINATE_TIMEOUT = 5.0


def _log_payload(label: str, payload: Any) -> None:
    """Log a forwarded payload at DEBUG; never raises."""
    if not logger.isEnabledFor(logging.DEBUG):
        return
    try:
        text = json.dumps(payload, indent=2, default=str)
    except (TypeError, ValueError) as e:
        text = f"<unserializable payload: {e}>"
    logger.debug(f"{label}: {text}")


class StdioRpcClient:
    """JSON-RPC client bound to a subprocess's stdin/stdout"""

    def __init__(self, command: List[str],
                 on_exit: Optional[Callable[["StdioRpcClient"], None]] = None):
        """Initialize the client

        Args:
            command: Program and arguments to launch
            on_exit: Called once when the child's stdout closes
        """
        self.command = command
        self.on_exit = on_exit
        self.process: Optional[asyncio.subprocess.Process] = None
        self._ids = itertools.count(1)
        self._pending: Dict[int, asyncio.Future] = {}
        self._write_lock = asyncio.Lock()
        self._reader_task: Optional[asyncio.Task] = None
        self._stderr_task: Optional[asyncio.Task] = None
        self._stderr_tail: Deque[str] = deque(maxlen=20)
        self._closed = False

    @property
    def pid(self) -> Optional[int]:
        return self.process.pid if self.process else None

    @property
    def alive(self) -> bool:
        """True while the child runs and its stdout is open"""
        return (
            not self._closed
            and self.process is not None
            and self.process.returncode is None
        )

    @property
    def stderr_tail(self) -> List[str]:
        return list(self._stderr_tail)

    async def start(self) -> None:
        """Spawn the child process

        Raises:
            BackendUnavailable: If the program cannot be started
        """
        logger.info(f"Spawning child process: {' '.join(self.command)}")
        try:
            self.process = await asyncio.create_subprocess_exec(
                *self.command,
                stdin=asyncio.subprocess.PIPE,
                stdout=asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.PIPE,
                limit=MAX_LINE_LENGTH,
            )
        except OSError as e:
            self._closed = True
            raise BackendUnavailable(f"Could not spawn {self.command[0]}: {e}") from e

        logger.info(f"Child process started with PID {self.process.pid}")
        self._reader_task = asyncio.create_task(self._read_stdout())
        self._stderr_task = asyncio.create_task(self._read_stderr())

    async def request(self, method: str, params: Optional[Dict[str, Any]] = None,
                      timeout: Optional[float] = None) -> Any:
        """Send a request and wait for the matching response

        Args:
            method: JSON-RPC method name
            params: Request parameters, forwarded as given
            timeout: Seconds to wait for the answer, None waits forever

        Returns:
            The ``result`` member of the child's response

        Raises:
            DomainError: The child answered with an error object
            BackendUnavailable: The child is gone or the write failed
            UpstreamTimeout: No answer within ``timeout``
        """
        if not self.alive:
            raise BackendUnavailable("Child process is not running")

        request_id = next(self._ids)
        message: Dict[str, Any] = {"jsonrpc": "2.0", "id": request_id, "method": method}
        if params is not None:
            message["params"] = params

        future = asyncio.get_running_loop().create_future()
        self._pending[request_id] = future
        try:
            await self._write(message)
            if timeout is None:
                return await future
            return await asyncio.wait_for(future, timeout)
        except asyncio.TimeoutError:
            raise UpstreamTimeout(f"{method} timed out after {timeout:g}s") from None
        finally:
            self._pending.pop(request_id, None)

    async def notify(self, method: str, params: Optional[Dict[str, Any]] = None) -> None:
        """Send a notification (no response expected)"""
        message: Dict[str, Any] = {"jsonrpc": "2.0", "method": method}
        if params is not None:
            message["params"] = params
        await self._write(message)

    async def _write(self, message: Dict[str, Any]) -> None:
        if self.process is None or self.process.stdin is None:
            raise BackendUnavailable("Child process is not running")
        data = (json.dumps(message, separators=(",", ":")) + "\n").encode("utf-8")
        async with self._write_lock:
            try:
                self.process.stdin.write(data)
                await self.process.stdin.drain()
            except (BrokenPipeError, ConnectionResetError) as e:
                raise BackendUnavailable(f"Lost connection to child process: {e}") from e

    async def _read_stdout(self) -> None:
        """Dispatch every line the child writes until its stdout closes"""
        stdout = self.process.stdout
        reason = "Child process closed its output"
        try:
            while True:
                try:
                    line = await stdout.readline()
                except (ValueError, asyncio.LimitOverrunError) as e:
                    reason = f"Child sent an oversized message: {e}"
                    logger.error(reason)
                    break
                if not line:
                    break
                line = line.strip()
                if not line:
                    continue
                try:
                    message = json.loads(line)
                except json.JSONDecodeError:
                    logger.warning(f"Ignoring non-JSON output from child: {line[:200]!r}")
                    continue
                if isinstance(message, list):
                    for item in message:
                        await self._dispatch(item)
                else:
                    await self._dispatch(message)
        finally:
            self._handle_eof(reason)

    async def _dispatch(self, message: Any) -> None:
        if not isinstance(message, dict):
            logger.warning(f"Ignoring unexpected message from child: {message!r}")
            return

        if "method" not in message:
            future = self._pending.get(message.get("id"))
            if future is None:
                logger.warning(f"Dropping response for unknown request id {message.get('id')!r}")
            elif not future.done():
                if "error" in message:
                    future.set_exception(DomainError(message["error"]))
                else:
                    future.set_result(message.get("result"))
            return

        if "id" not in message:
            logger.debug(f"Child notification: {message['method']}")
            return

        # Requests initiated by the child
        if message["method"] == "ping":
            reply = success_response(message["id"], {})
        else:
            reply = error_response(message["id"], f"Method not found: {message['method']}",
                                   METHOD_NOT_FOUND)
        try:
            await self._write(reply)
        except BackendUnavailable as e:
            logger.warning(f"Could not answer child request {message['method']}: {e}")

    async def _read_stderr(self) -> None:
        stderr = self.process.stderr
        while True:
            try:
                line = await stderr.readline()
            except (ValueError, asyncio.LimitOverrunError):
                continue
            if not line:
                break
            text = line.decode(errors="replace").rstrip()
            if text:
                self._stderr_tail.append(text)
                logger.debug(f"[child stderr] {text}")

    def _handle_eof(self, reason: str) -> None:
        was_closed = self._closed
        self._closed = True
        if self._stderr_tail:
            reason = f"{reason}; last stderr: {self._stderr_tail[-1]}"
        for future in self._pending.values():
            if not future.done():
                future.set_exception(BackendUnavailable(reason))
        self._pending.clear()
        if not was_closed:
            logger.warning(reason)
            if self.on_exit is not None:
                self.on_exit(self)

    async def close(self) -> None:
        """Stop the child: close stdin, terminate, then kill if it lingers"""
        self._closed = True
        process = self.process
        if process is None:
            return

        if process.stdin is not None and not process.stdin.is_closing():
            process.stdin.close()
        if process.returncode is None:
            try:
                process.terminate()
            except ProcessLookupError:
                pass
            try:
                await asyncio.wait_for(process.wait(), TERMINATE_TIMEOUT)
            except asyncio.TimeoutError:
                logger.warning(f"Child PID {process.pid} ignored SIGTERM, killing it")
                process.kill()
                await process.wait()

        for task in (self._reader_task, self._stderr_task):
            if task is not None and not task.done():
                task.cancel()
        for task in (self._reader_task, self._stderr_task):
            if task is not None:
                try:
                    await task
                except asyncio.CancelledError:
                    pass
        logger.info(f"Child process {process.pid} exited with code {process.returncode}")


class ConnectionState(str, Enum):
    ABSENT = "absent"
    CONNECTING = "connecting"
    READY = "ready"
    FAILED = "failed"


class BackendConnection:
    """The single, lazily established connection to the child MCP server

    Sessions only call ``ensure_connected``, ``list_tools`` and ``call_tool``.
    Creation is serialized so concurrent first calls spawn one process.
    """

    def __init__(self, backend_url: str, command: List[str],
                 handshake_timeout: float = 30.0, call_timeout: float = 300.0,
                 client_factory: Callable[..., StdioRpcClient] = StdioRpcClient):
        """Initialize the connection (nothing is spawned yet)

        Args:
            backend_url: Browser debugging endpoint passed to the child
            command: Launch command for the child, without the backend URL
            handshake_timeout: Seconds allowed for spawn plus ``initialize``
            call_timeout: Seconds allowed per forwarded call
            client_factory: Builds the stdio client, replaced in tests
        """
        self.backend_url = backend_url
        self.command = list(command)
        self.handshake_timeout = handshake_timeout
        self.call_timeout = call_timeout
        self.client_factory = client_factory
        self.state = ConnectionState.ABSENT
        self.server_info: Optional[Dict[str, Any]] = None
        self.tool_count: Optional[int] = None
        self.spawn_count = 0
        self._client: Optional[StdioRpcClient] = None
        self._lock = asyncio.Lock()
        self._closed = False
        # Closes of clients that went bad while their process may still run
        self._reaping: Set[asyncio.Task] = set()

    @property
    def connected(self) -> bool:
        return (
            self.state is ConnectionState.READY
            and self._client is not None
            and self._client.alive
        )

    async def ensure_connected(self) -> StdioRpcClient:
        """Return a ready client, spawning the child first if needed

        Raises:
            BackendUnavailable: Spawn or handshake failed; a later call retries
            ShutdownInProgress: The connection has been closed for good
        """
        if self.connected:
            return self._client

        async with self._lock:
            if self._closed:
                raise ShutdownInProgress("Proxy is shutting down")
            if self.connected:
                return self._client

            stale, self._client = self._client, None
            if stale is not None:
                self._reap(stale)
            await self._wait_reaped()

            self.state = ConnectionState.CONNECTING
            self.spawn_count += 1
            client = self.client_factory(self.command + [self.backend_url],
                                         on_exit=self._handle_exit)
            try:
                await asyncio.wait_for(self._start_and_handshake(client), self.handshake_timeout)
            except asyncio.TimeoutError:
                await self._discard(client)
                raise BackendUnavailable(
                    f"Child handshake did not complete within {self.handshake_timeout:g}s"
                ) from None
            except (BackendUnavailable, UpstreamTimeout) as e:
                await self._discard(client)
                raise BackendUnavailable(f"Could not connect to child: {e}") from e
            except DomainError as e:
                await self._discard(client)
                raise BackendUnavailable(f"Child rejected initialize: {e}") from e
            except asyncio.CancelledError:
                await self._discard(client)
                raise

            self._client = client
            self.state = ConnectionState.READY
            name = (self.server_info or {}).get("name", "unknown")
            logger.info(f"Connected to child MCP server {name} for {self.backend_url}")
            return client

    async def _start_and_handshake(self, client: StdioRpcClient) -> None:
        await client.start()
        result = await client.request("initialize", {
            "protocolVersion": PROTOCOL_VERSION,
            "capabilities": {},
            "clientInfo": CLIENT_INFO,
        })
        self.server_info = (result or {}).get("serverInfo")
        await client.notify("notifications/initialized")

    async def _discard(self, client: StdioRpcClient) -> None:
        self.state = ConnectionState.FAILED
        try:
            await client.close()
        except Exception as e:
            logger.error(f"Error closing failed child process: {e}")

    def _handle_exit(self, client: StdioRpcClient) -> None:
        if client is not self._client:
            return
        self._client = None
        # stdout may be unusable while the process keeps running
        self._reap(client)
        if not self._closed:
            self.state = ConnectionState.FAILED
            logger.warning("Child connection dropped; the next call will reconnect")

    def _reap(self, client: StdioRpcClient) -> None:
        """Close a discarded client in the background, tracked until done"""
        task = asyncio.get_running_loop().create_task(self._close_client(client))
        self._reaping.add(task)
        task.add_done_callback(self._reaping.discard)

    async def _close_client(self, client: StdioRpcClient) -> None:
        try:
            await client.close()
        except Exception as e:
            logger.error(f"Error closing child process {client.pid}: {e}")

    async def _wait_reaped(self) -> None:
        if self._reaping:
            logger.info(f"Waiting for {len(self._reaping)} discarded child process(es) to exit")
            await asyncio.gather(*list(self._reaping))

    async def list_tools(self, params: Optional[Dict[str, Any]] = None) -> Any:
        """Forward ``tools/list`` to the child and return its result verbatim"""
        client = await self.ensure_connected()
        _log_payload("tools/list request", params)
        result = await client.request("tools/list", params, timeout=self.call_timeout)
        _log_payload("tools/list response", result)
        if isinstance(result, dict) and isinstance(result.get("tools"), list):
            if not (params or {}).get("cursor"):
                self.tool_count = len(result["tools"])
        return result

    async def call_tool(self, name: str, arguments: Any = None) -> Any:
        """Forward ``tools/call`` for ``name`` and return its result verbatim

        Raises:
            ValueError: ``name`` is empty or not a string
            DomainError: The child rejected or failed the call
        """
        if not isinstance(name, str) or not name:
            raise ValueError("Tool name must be a non-empty string")

        client = await self.ensure_connected()
        params = {"name": name, "arguments": arguments if arguments is not None else {}}
        logger.info(f"Forwarding tool call: {name}")
        _log_payload(f"tools/call {name} request", params)
        result = await client.request("tools/call", params, timeout=self.call_timeout)
        _log_payload(f"tools/call {name} response", result)
        return result

    async def close(self) -> None:
        """Close the child for good; later calls raise ShutdownInProgress"""
        async with self._lock:
            self._closed = True
            client, self._client = self._client, None
            self.state = ConnectionState.ABSENT
        if client is not None:
            await client.close()
        await self._wait_reaped()
