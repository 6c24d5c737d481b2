#!/usr/bin/env python3
"""
Session registry: pairs of (endpoint, transport) keyed by session id
"""

import asyncio
import logging
import uuid
from contextlib import asynccontextmanager
from datetime import datetime
from enum import Enum
from typing import Any, AsyncIterator, Dict, List, Optional

from mcp_chrome_proxy.child import BackendConnection
from mcp_chrome_proxy.endpoint import ProxyEndpoint
from mcp_chrome_proxy.transport import StreamTransport

logger = logging.getLogger(__name__)

# Session used for requests that do not name one
SHARED_SESSION_ID = "shared"


def new_session_id() -> str:
    return uuid.uuid4().hex


class SessionState(str, Enum):
    OPEN = "open"
    DRAINING = "draining"
    CLOSED = "closed"


class Session:
    """One bridging context between a network peer and the shared child"""

    def __init__(self, session_id: str, endpoint: ProxyEndpoint, transport: StreamTransport):
        self.session_id = session_id
        self.endpoint = endpoint
        self.transport = transport
        self.created_at = datetime.now()
        self.state = SessionState.OPEN
        self.drain_task: Optional[asyncio.Task] = None
        self.idle_task: Optional[asyncio.Task] = None
        self.active_requests = 0

    def to_dict(self) -> Dict[str, Any]:
        return {
            "session_id": self.session_id,
            "state": self.state.value,
            "created_at": self.created_at.isoformat(),
            "streaming": self.transport.has_stream,
        }

    def reopen(self) -> None:
        """Cancel a pending drain; the session stays registered"""
        if self.state is SessionState.DRAINING:
            if self.drain_task is not None:
                self.drain_task.cancel()
                self.drain_task = None
            self.state = SessionState.OPEN
            logger.info(f"[{self.session_id}] Drain cancelled, session reopened")

    async def close(self) -> None:
        """Close the transport, then the endpoint"""
        if self.state is SessionState.CLOSED:
            return
        self.state = SessionState.CLOSED
        await self.transport.close()
        await self.endpoint.close()


class SessionRegistry:
    """Owns every session; all sessions share one BackendConnection"""

    def __init__(self, connection: BackendConnection, grace_period: float = 1.0,
                 keepalive: float = 15.0, idle_timeout: Optional[float] = 300.0):
        """Initialize the registry

        Args:
            connection: The child connection every endpoint delegates to
            grace_period: Seconds between a stream closing and its session
                being removed, so in-flight requests can finish
            keepalive: Keep-alive interval for session event streams
            idle_timeout: Seconds a session without an event stream may sit
                idle before it is removed, None keeps it until deleted
        """
        self.connection = connection
        self.grace_period = grace_period
        self.keepalive = keepalive
        self.idle_timeout = idle_timeout
        self.sessions: Dict[str, Session] = {}

    def __contains__(self, session_id: str) -> bool:
        return session_id in self.sessions

    def __len__(self) -> int:
        return len(self.sessions)

    def get(self, session_id: str) -> Optional[Session]:
        return self.sessions.get(session_id)

    def get_or_create(self, session_id: str) -> Session:
        """Return the open session for ``session_id``, creating it if needed

        Creating a session never touches the child process.
        """
        session = self.sessions.get(session_id)
        if session is not None:
            return session

        endpoint = ProxyEndpoint(session_id)
        endpoint.set_request_handler("tools/list", self._list_tools)
        endpoint.set_request_handler("tools/call", self._call_tool)
        transport = StreamTransport(endpoint, keepalive=self.keepalive,
                                    on_stream_closed=self.schedule_removal)
        session = Session(session_id, endpoint, transport)
        self.sessions[session_id] = session
        logger.info(f"Created session {session_id} ({len(self.sessions)} open)")
        return session

    async def _list_tools(self, params: Dict[str, Any]) -> Any:
        return await self.connection.list_tools(params or None)

    async def _call_tool(self, params: Dict[str, Any]) -> Any:
        if not isinstance(params, dict):
            raise ValueError("tools/call params must be an object")
        return await self.connection.call_tool(params.get("name"), params.get("arguments"))

    async def remove(self, session_id: str) -> None:
        """Close and forget a session; a missing session is a no-op"""
        session = self.sessions.pop(session_id, None)
        if session is None:
            return
        for task in (session.drain_task, session.idle_task):
            if task is not None and task is not asyncio.current_task():
                task.cancel()
        session.drain_task = None
        session.idle_task = None
        await session.close()
        logger.info(f"Removed session {session_id} ({len(self.sessions)} open)")

    def schedule_removal(self, session_id: str) -> None:
        """Move a session to DRAINING and remove it after the grace period"""
        session = self.sessions.get(session_id)
        if session is None or session.state is not SessionState.OPEN:
            return
        self._cancel_idle(session)
        session.state = SessionState.DRAINING
        session.drain_task = asyncio.get_running_loop().create_task(
            self._remove_after_grace(session)
        )
        logger.info(f"[{session_id}] Draining, removal in {self.grace_period:g}s")

    async def _remove_after_grace(self, session: Session) -> None:
        await asyncio.sleep(self.grace_period)
        if self.sessions.get(session.session_id) is session and session.state is SessionState.DRAINING:
            await self.remove(session.session_id)

    @asynccontextmanager
    async def active(self, session: Session) -> AsyncIterator[Session]:
        """Mark a request in flight on ``session``; the idle timer restarts after it"""
        session.active_requests += 1
        self._cancel_idle(session)
        try:
            yield session
        finally:
            session.active_requests -= 1
            self.touch(session.session_id)

    def touch(self, session_id: str) -> None:
        """Restart the idle timer of a session that has no event stream

        Sessions with an open stream, a request in flight or a pending drain
        are left alone; their timer stays off.
        """
        session = self.sessions.get(session_id)
        if session is None:
            return
        self._cancel_idle(session)
        if (
            self.idle_timeout is None
            or session.state is not SessionState.OPEN
            or session.transport.has_stream
            or session.active_requests
        ):
            return
        session.idle_task = asyncio.get_running_loop().create_task(self._expire_when_idle(session))

    def _cancel_idle(self, session: Session) -> None:
        if session.idle_task is not None and session.idle_task is not asyncio.current_task():
            session.idle_task.cancel()
        session.idle_task = None

    async def _expire_when_idle(self, session: Session) -> None:
        await asyncio.sleep(self.idle_timeout)
        if (
            self.sessions.get(session.session_id) is session
            and session.state is SessionState.OPEN
            and not session.transport.has_stream
            and not session.active_requests
        ):
            logger.info(f"[{session.session_id}] Idle for {self.idle_timeout:g}s without a stream, removing")
            await self.remove(session.session_id)

    def close_streams(self) -> None:
        """End every open event stream"""
        for session in list(self.sessions.values()):
            session.transport.end_stream()

    async def close_all(self) -> None:
        """Close every session, logging and skipping individual failures"""
        for session_id in list(self.sessions):
            try:
                await self.remove(session_id)
            except Exception as e:
                logger.error(f"Error closing session {session_id}: {e}")

    def list_sessions(self) -> List[Dict[str, Any]]:
        return [session.to_dict() for session in self.sessions.values()]
