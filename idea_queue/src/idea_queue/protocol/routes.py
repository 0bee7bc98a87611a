"""
HTTP endpoints for protocol sessions.

- ``GET  /stream/{token}/open``: server-sent event stream. The first event
  (``endpoint``) carries the absolute URL to post commands to.
- ``POST /stream/{token}/command?session={id}``: one JSON-RPC command.
  The reply is returned in the response body and also pushed onto the
  session's stream as a ``message`` event.
"""

import json
from typing import AsyncIterator, Callable, Optional

from fastapi import APIRouter, HTTPException, Query, Request
from fastapi.responses import JSONResponse, Response, StreamingResponse
from sqlalchemy.exc import DBAPIError

from .dispatcher import INTERNAL_ERROR, PARSE_ERROR, CommandDispatcher, failure
from .sessions import ProtocolSession, SessionRegistry
from ..config import get_settings
from ..db import Database, get_database
from ..logging_conf import get_logger, bind_context, unbind_context
from ..subscribers import subscriber_for_token

logger = get_logger(__name__)

router = APIRouter(prefix="/stream", tags=["protocol"])


def get_db(request: Request) -> Database:
    if getattr(request.app.state, "database", None) is None:
        request.app.state.database = get_database()
    return request.app.state.database


def get_sessions(request: Request) -> SessionRegistry:
    return request.app.state.sessions


def open_session(
    registry: SessionRegistry,
    subscriber_id: int,
    command_url: Callable[[str], str],
    keepalive_seconds: Optional[float] = None,
) -> ProtocolSession:
    """Register a session, announce its command URL and start pinging."""
    session = registry.open(subscriber_id)
    session.send_event("endpoint", command_url(session.session_id))
    if keepalive_seconds:
        session.start_keepalive(keepalive_seconds)
    return session


async def stream_frames(session: ProtocolSession, registry: SessionRegistry) -> AsyncIterator[str]:
    """
    Write the session's frames until it closes. However the stream ends
    (client gone, server shutdown), the session leaves the table.
    """
    try:
        while True:
            frame = await session.next_frame()
            if frame is None:
                break
            yield frame
    finally:
        registry.remove(session.session_id)


def _command_url(request: Request, token: str, session_id: str) -> str:
    base = get_settings().public_base_url
    if base:
        return f"{base.rstrip('/')}/stream/{token}/command?session={session_id}"
    url = request.url_for("stream_command", token=token)
    return str(url.include_query_params(session=session_id))


def _authorize(db: Database, token: str):
    subscriber = subscriber_for_token(db, token)
    if subscriber is None:
        raise HTTPException(status_code=401, detail="Invalid token")
    return subscriber


@router.get("/{token}/open")
async def open_stream(token: str, request: Request):
    """Open the event stream for the token's subscriber."""
    db = get_db(request)
    subscriber = _authorize(db, token)
    registry = get_sessions(request)

    session = open_session(
        registry,
        subscriber.id,
        lambda session_id: _command_url(request, token, session_id),
        keepalive_seconds=get_settings().keepalive_seconds,
    )

    return StreamingResponse(
        stream_frames(session, registry),
        media_type="text/event-stream",
        headers={
            "Cache-Control": "no-cache",
            "Connection": "keep-alive",
            "X-Accel-Buffering": "no",
        },
    )


@router.post("/{token}/command", name="stream_command")
async def stream_command(
    token: str,
    request: Request,
    session_id: Optional[str] = Query(None, alias="session"),
):
    """Dispatch one command against a live session."""
    db = get_db(request)
    subscriber = _authorize(db, token)

    if not session_id:
        raise HTTPException(status_code=400, detail="Missing session")

    registry = get_sessions(request)
    session = registry.get(session_id)
    # Sessions of other subscribers are indistinguishable from dead ones
    if session is None or session.is_closed or session.subscriber_id != subscriber.id:
        raise HTTPException(status_code=404, detail="Session not found")

    try:
        message = json.loads(await request.body())
    except (json.JSONDecodeError, UnicodeDecodeError):
        return JSONResponse(failure(None, PARSE_ERROR, "Parse error"), status_code=400)

    bind_context(session_id=session_id)
    try:
        reply = CommandDispatcher(db).dispatch(session, message)
    except DBAPIError:
        registry.remove(session_id)
        request_id = message.get("id") if isinstance(message, dict) else None
        return JSONResponse(failure(request_id, INTERNAL_ERROR, "Store unavailable"), status_code=503)
    finally:
        unbind_context("session_id")

    if reply is None:
        return Response(status_code=202)

    session.send_event("message", reply)
    return JSONResponse(reply)
