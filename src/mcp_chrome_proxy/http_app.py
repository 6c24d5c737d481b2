#!/usr/bin/env python3
"""
HTTP front end: FastAPI app exposing /mcp and /health
"""

import logging
import re
import uuid
from contextlib import asynccontextmanager
from typing import Any, Dict, List, Union

from fastapi import FastAPI, Request
from fastapi.responses import JSONResponse, PlainTextResponse, Response, StreamingResponse

from mcp_chrome_proxy.bridge import ProxyBridge
from mcp_chrome_proxy.errors import MalformedRequest, StreamConflict
from mcp_chrome_proxy.jsonrpc import parse_body
from mcp_chrome_proxy.sessions import SHARED_SESSION_ID, new_session_id

logger = logging.getLogger(__name__)

SESSION_HEADER = "Mcp-Session-Id"
REQUEST_ID_HEADER = "X-Request-ID"

MAX_SESSION_ID_LENGTH = 256
SESSION_ID_PATTERN = re.compile(r"^[A-Za-z0-9._:-]+$")

CORS_HEADERS = {
    "Access-Control-Allow-Origin": "*",
    "Access-Control-Allow-Methods": "GET, POST, PUT, DELETE, OPTIONS",
    "Access-Control-Allow-Headers": (
        "Content-Type, Accept, Authorization, Mcp-Session-Id, Mcp-Protocol-Version, Last-Event-ID"
    ),
    "Access-Control-Expose-Headers": "Mcp-Session-Id, X-Request-ID",
    "Access-Control-Max-Age": "86400",
}

RESPONSE_CORS_HEADERS = {
    "Access-Control-Allow-Origin": "*",
    "Access-Control-Expose-Headers": "Mcp-Session-Id, X-Request-ID",
}

NOT_FOUND_TEXT = "Not Found. Use /mcp for MCP endpoint or /health for status"

ALL_METHODS = ["GET", "HEAD", "POST", "PUT", "PATCH", "DELETE", "OPTIONS"]

Messages = Union[Dict[str, Any], List[Dict[str, Any]]]


def error_json(status_code: int, message: str, request_id: str) -> JSONResponse:
    """Transport-level failure with a correlation token for the client"""
    headers = {REQUEST_ID_HEADER: request_id, **RESPONSE_CORS_HEADERS}
    return JSONResponse({"error": message, "request_id": request_id},
                        status_code=status_code, headers=headers)


def accepts_json(request: Request) -> bool:
    """True unless the Accept header rules out application/json"""
    accept = request.headers.get("accept", "")
    if not accept.strip():
        return True
    for part in accept.split(","):
        media_type = part.split(";", 1)[0].strip().lower()
        if media_type in ("application/json", "application/*", "*/*"):
            return True
    return False


def _is_initialize(messages: Messages) -> bool:
    items = messages if isinstance(messages, list) else [messages]
    return any(item.get("method") == "initialize" for item in items)


def _describe(messages: Messages) -> str:
    items = messages if isinstance(messages, list) else [messages]
    return ", ".join(str(item.get("method", "response")) for item in items)


def create_app(bridge: ProxyBridge) -> FastAPI:
    """Build the FastAPI application around a bridge instance

    Args:
        bridge: The proxy bridge serving every request

    Returns:
        FastAPI application; its lifespan starts and closes the bridge
    """

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        await bridge.start()
        yield
        await bridge.close()

    app = FastAPI(
        title="MCP Chrome Proxy",
        lifespan=lifespan,
        docs_url=None,
        redoc_url=None,
        openapi_url=None,
    )
    app.state.bridge = bridge
    registry = bridge.registry

    def resolve_session_id(request: Request, messages: Messages = None) -> str:
        """Pick the session for a request

        The Mcp-Session-Id header wins; an initialize without one gets a fresh
        session; everything else lands on the shared session.
        """
        if bridge.config.session_mode == "shared":
            return SHARED_SESSION_ID
        header = request.headers.get(SESSION_HEADER)
        if header:
            if len(header) > MAX_SESSION_ID_LENGTH or not SESSION_ID_PATTERN.match(header):
                raise MalformedRequest(f"Invalid {SESSION_HEADER} header")
            return header
        if messages is not None and _is_initialize(messages):
            return new_session_id()
        return SHARED_SESSION_ID

    def log_request(request: Request) -> None:
        client = request.client.host if request.client else "unknown"
        logger.info(f"{request.method} {request.url.path} from {client}")

    @app.get("/health")
    async def health(request: Request) -> JSONResponse:
        log_request(request)
        return JSONResponse(bridge.health())

    @app.api_route("/mcp{rest:path}", methods=["GET", "POST", "PUT", "DELETE", "OPTIONS"])
    async def mcp(request: Request, rest: str) -> Response:
        log_request(request)
        request_id = uuid.uuid4().hex

        if request.method == "OPTIONS":
            return Response(status_code=200, headers=CORS_HEADERS)

        try:
            if request.method == "GET":
                return open_stream(request, request_id)
            if request.method == "DELETE":
                return await delete_session(request, request_id)
            return await handle_post(request, request_id)
        except MalformedRequest as e:
            logger.warning(f"Malformed request {request_id}: {e}")
            return error_json(400, str(e), request_id)
        except Exception:
            logger.exception(f"Failed to handle MCP request {request_id}")
            return error_json(500, "Error handling MCP request", request_id)

    def open_stream(request: Request, request_id: str) -> Response:
        session_id = resolve_session_id(request)
        session = registry.get_or_create(session_id)
        try:
            session.transport.open_stream()
        except StreamConflict as e:
            return error_json(409, str(e), request_id)
        session.reopen()
        registry.touch(session_id)

        headers = {
            SESSION_HEADER: session_id,
            "Cache-Control": "no-cache",
            "X-Accel-Buffering": "no",
            **RESPONSE_CORS_HEADERS,
        }
        return StreamingResponse(
            session.transport.events(request.is_disconnected),
            media_type="text/event-stream",
            headers=headers,
        )

    async def handle_post(request: Request, request_id: str) -> Response:
        messages = parse_body(await request.body())
        logger.info(f"REQUEST {request_id}: {_describe(messages)}")

        session_id = resolve_session_id(request, messages)
        session = registry.get_or_create(session_id)
        async with registry.active(session):
            result = await session.transport.handle_messages(messages)

        headers = {
            SESSION_HEADER: session_id,
            REQUEST_ID_HEADER: request_id,
            **RESPONSE_CORS_HEADERS,
        }
        if result is None:
            return Response(status_code=202, headers=headers)

        if session.transport.has_stream and not accepts_json(request):
            for item in (result if isinstance(result, list) else [result]):
                session.transport.send(item)
            logger.info(f"Request {request_id} answered on the event stream of {session_id}")
            return Response(status_code=202, headers=headers)

        return JSONResponse(result, headers=headers)

    async def delete_session(request: Request, request_id: str) -> Response:
        session_id = resolve_session_id(request)
        await registry.remove(session_id)
        headers = {SESSION_HEADER: session_id, REQUEST_ID_HEADER: request_id, **RESPONSE_CORS_HEADERS}
        return JSONResponse({"status": "closed", "session_id": session_id}, headers=headers)

    @app.api_route("/{path:path}", methods=ALL_METHODS)
    async def not_found(request: Request, path: str) -> PlainTextResponse:
        log_request(request)
        return PlainTextResponse(NOT_FOUND_TEXT, status_code=404)

    return app
