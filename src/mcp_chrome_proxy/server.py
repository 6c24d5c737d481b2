#!/usr/bin/env python3
"""
Run loops for the two transport modes

* http: FastAPI app under uvicorn, for remote clients
* stdio: newline-delimited JSON-RPC on this process's stdin/stdout
"""

import asyncio
import errno
import json
import logging
import socket
import sys
from typing import Any, Optional, Set

import uvicorn

from mcp_chrome_proxy.bridge import ProxyBridge
from mcp_chrome_proxy.child import MAX_LINE_LENGTH
from mcp_chrome_proxy.config import BridgeConfig
from mcp_chrome_proxy.errors import MalformedRequest
from mcp_chrome_proxy.http_app import create_app
from mcp_chrome_proxy.jsonrpc import (
    INTERNAL_ERROR,
    INVALID_REQUEST,
    PARSE_ERROR,
    error_response,
    validate_envelope,
)
from mcp_chrome_proxy.supervisor import ProxyServer, Supervisor

logger = logging.getLogger(__name__)

STDIO_SESSION_ID = "stdio"


def bind_socket(host: str, port: int) -> socket.socket:
    """Bind the listening socket up front so a busy port fails fast

    Raises:
        OSError: If the address cannot be bound
    """
    family = socket.AF_INET6 if ":" in host else socket.AF_INET
    sock = socket.socket(family, socket.SOCK_STREAM)
    try:
        sock.setsockopt(socket.SOL_SOCKET, socket.SO_REUSEADDR, 1)
        sock.bind((host, port))
    except OSError:
        sock.close()
        raise
    sock.set_inheritable(True)
    return sock


async def _exit_when_stopped(supervisor: Supervisor, server: uvicorn.Server) -> None:
    await supervisor.stop_event.wait()
    server.should_exit = True


async def run_http(bridge: ProxyBridge, supervisor: Supervisor) -> int:
    """Serve the HTTP front end until a termination signal arrives

    Returns:
        0 after a clean shutdown, 1 if the server could not start
    """
    config = bridge.config
    try:
        sock = bind_socket(config.host, config.port)
    except OSError as e:
        if e.errno == errno.EADDRINUSE:
            logger.error(f"Port {config.port} is already in use!")
            logger.error("Please close the other application or set a different PORT environment variable.")
        else:
            logger.error(f"Could not listen on {config.host}:{config.port}: {e}")
        return 1

    uv_config = uvicorn.Config(
        create_app(bridge),
        log_config=None,
        lifespan="on",
        timeout_graceful_shutdown=config.shutdown_timeout,
    )
    server = ProxyServer(uv_config, supervisor)
    supervisor.install()
    watcher = asyncio.create_task(_exit_when_stopped(supervisor, server))

    port = sock.getsockname()[1]
    logger.info("=" * 60)
    logger.info("MCP Chrome Proxy Server Started")
    logger.info("=" * 60)
    logger.info(f"Listening on: http://{config.host}:{port}")
    logger.info(f"MCP Endpoint: http://{config.host}:{port}/mcp")
    logger.info(f"Health Check: http://{config.host}:{port}/health")
    logger.info(f"Chrome backend: {config.backend_url}")
    logger.info(f"Session mode: {config.session_mode}")

    try:
        await server.serve(sockets=[sock])
    finally:
        watcher.cancel()
        await supervisor.shutdown()
        supervisor.restore()
        sock.close()

    return 0 if server.started else 1


async def connect_stdio():
    """Wrap this process's stdin/stdout in asyncio streams"""
    loop = asyncio.get_running_loop()
    reader = asyncio.StreamReader(limit=MAX_LINE_LENGTH)
    protocol = asyncio.StreamReaderProtocol(reader)
    await loop.connect_read_pipe(lambda: protocol, sys.stdin)

    writer_transport, writer_protocol = await loop.connect_write_pipe(
        asyncio.streams.FlowControlMixin, sys.stdout
    )
    writer = asyncio.StreamWriter(writer_transport, writer_protocol, None, loop)
    return reader, writer


async def run_stdio(bridge: ProxyBridge, stop_event: Optional[asyncio.Event] = None,
                    reader: Optional[asyncio.StreamReader] = None, writer: Any = None) -> None:
    """Serve JSON-RPC over stdin/stdout until EOF or ``stop_event``

    Each line is dispatched as its own task so slow tool calls do not hold up
    later requests; responses are written as they complete.

    Args:
        bridge: The proxy bridge
        stop_event: Set by the supervisor to stop reading
        reader: Input stream, defaults to stdin
        writer: Output stream, defaults to stdout
    """
    if reader is None or writer is None:
        reader, writer = await connect_stdio()

    session = bridge.registry.get_or_create(STDIO_SESSION_ID)
    write_lock = asyncio.Lock()
    pending: Set[asyncio.Task] = set()

    async def write_message(message: Any) -> None:
        data = (json.dumps(message) + "\n").encode("utf-8")
        async with write_lock:
            try:
                writer.write(data)
                await writer.drain()
            except (BrokenPipeError, ConnectionResetError) as e:
                logger.error(f"Could not write response to stdout: {e}")

    async def dispatch(payload: Any) -> None:
        try:
            if isinstance(payload, list):
                if not payload:
                    raise MalformedRequest("Empty JSON-RPC batch")
                for item in payload:
                    validate_envelope(item)
            else:
                validate_envelope(payload)
        except MalformedRequest as e:
            request_id = payload.get("id") if isinstance(payload, dict) else None
            await write_message(error_response(request_id, str(e), INVALID_REQUEST))
            return

        try:
            response = await session.transport.handle_messages(payload)
        except Exception:
            logger.exception("Error handling stdio request")
            request_id = payload.get("id") if isinstance(payload, dict) else None
            await write_message(error_response(request_id, "Internal error", INTERNAL_ERROR))
            return
        if response is not None:
            await write_message(response)

    logger.info("Stdio server ready, waiting for input")
    stop_wait = asyncio.ensure_future(stop_event.wait()) if stop_event is not None else None
    try:
        while True:
            read = asyncio.ensure_future(reader.readline())
            waiting = {read} if stop_wait is None else {read, stop_wait}
            done, _ = await asyncio.wait(waiting, return_when=asyncio.FIRST_COMPLETED)
            if read not in done:
                read.cancel()
                logger.info("Stop requested, no longer reading stdin")
                break

            try:
                line = read.result()
            except ValueError as e:
                logger.error(f"Discarding oversized input line: {e}")
                continue
            if not line:
                logger.info("End of input stream")
                break
            line = line.strip()
            if not line:
                continue

            try:
                payload = json.loads(line)
            except json.JSONDecodeError as e:
                logger.error(f"Invalid JSON: {e}")
                await write_message(error_response(None, "Parse error", PARSE_ERROR))
                continue

            task = asyncio.create_task(dispatch(payload))
            pending.add(task)
            task.add_done_callback(pending.discard)
    finally:
        if stop_wait is not None:
            stop_wait.cancel()

    if pending:
        logger.info(f"Waiting for {len(pending)} in-flight request(s)")
        await asyncio.gather(*pending, return_exceptions=True)


async def serve(config: BridgeConfig) -> int:
    """Run the proxy in the configured transport mode

    Returns:
        Process exit status
    """
    bridge = ProxyBridge(config)
    supervisor = Supervisor(bridge)

    if config.transport == "http":
        return await run_http(bridge, supervisor)

    logger.info("Starting in stdio mode...")
    supervisor.install()
    try:
        await bridge.start()
        await run_stdio(bridge, stop_event=supervisor.stop_event)
    finally:
        await supervisor.shutdown()
        supervisor.restore()
    return 0
