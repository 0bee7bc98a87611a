"""
Command dispatch for protocol sessions.

Commands use a JSON-RPC 2.0 envelope: ``{jsonrpc, id, method, params}``
in, ``{jsonrpc, id, result}`` or ``{jsonrpc, id, error: {code, message}}``
out. A message without an ``id`` is a notification and never gets a reply,
not even an error.
"""

import json
from typing import Any, Optional

from sqlalchemy.exc import DBAPIError

from .sessions import ProtocolSession, SessionState
from .tools import TOOL_CATALOG, ToolError, ToolExecutor, UnknownToolError
from ..config import get_settings
from ..db import Database
from ..logging_conf import get_logger

logger = get_logger(__name__)

SERVER_NAME = "idea-queue"
SERVER_VERSION = "1.0.0"

PARSE_ERROR = -32700
INVALID_REQUEST = -32600
METHOD_NOT_FOUND = -32601
INVALID_PARAMS = -32602
INTERNAL_ERROR = -32603
NOT_INITIALIZED = -32002


class ProtocolError(Exception):
    """A command that must be answered with a protocol-level error."""

    def __init__(self, code: int, message: str):
        super().__init__(message)
        self.code = code
        self.message = message


def success(request_id: Any, result: Any) -> dict:
    return {"jsonrpc": "2.0", "id": request_id, "result": result}


def failure(request_id: Any, code: int, message: str) -> dict:
    return {"jsonrpc": "2.0", "id": request_id, "error": {"code": code, "message": message}}


def text_content(payload: Any, is_error: bool = False) -> dict:
    """Wrap a tool result the way tool-calling clients expect it."""
    result = {"content": [{"type": "text", "text": json.dumps(payload, indent=2, default=str)}]}
    if is_error:
        result["isError"] = True
    return result


class CommandDispatcher:
    """
    Routes one decoded command to its handler for a given session.
    """

    def __init__(self, db: Database):
        self.db = db
        self.settings = get_settings()

    def dispatch(self, session: ProtocolSession, message: Any) -> Optional[dict]:
        """
        Handle one message. Returns the reply, or None for notifications.

        Store failures are re-raised after closing the session: the caller
        answers them and the agent has to reconnect.
        """
        if not isinstance(message, dict):
            return failure(None, INVALID_REQUEST, "Invalid Request")

        request_id = message.get("id")
        is_notification = "id" not in message or request_id is None
        method = message.get("method")

        if not isinstance(method, str) or message.get("jsonrpc", "2.0") != "2.0":
            return None if is_notification else failure(request_id, INVALID_REQUEST, "Invalid Request")

        if method.startswith("notifications/"):
            self._notify(session, method)
            return None

        try:
            result = self._call(session, method, message.get("params") or {})
        except ProtocolError as e:
            if is_notification:
                logger.debug("notification_error_dropped", method=method, error=e.message)
                return None
            return failure(request_id, e.code, e.message)
        except DBAPIError as e:
            logger.error("session_store_failure", session_id=session.session_id, error=str(e))
            session.close()
            raise

        if is_notification:
            return None
        return success(request_id, result)

    def _notify(self, session: ProtocolSession, method: str) -> None:
        if method == "notifications/initialized" and session.state == SessionState.INITIALIZED:
            session.state = SessionState.ACTIVE
        logger.debug("notification_acknowledged", session_id=session.session_id, method=method)

    def _call(self, session: ProtocolSession, method: str, params: Any) -> Any:
        if method == "initialize":
            if session.state == SessionState.OPENED:
                session.state = SessionState.INITIALIZED
            logger.info("session_initialized", session_id=session.session_id)
            return {
                "protocolVersion": self.settings.protocol_version,
                "capabilities": {"tools": {}},
                "serverInfo": {"name": SERVER_NAME, "version": SERVER_VERSION},
            }

        if method == "ping":
            return {}

        if method in ("tools/list", "tools/call"):
            if session.state == SessionState.OPENED:
                raise ProtocolError(NOT_INITIALIZED, "Session not initialized")
            session.state = SessionState.ACTIVE

            if method == "tools/list":
                return {"tools": TOOL_CATALOG}
            return self._call_tool(session, params)

        raise ProtocolError(METHOD_NOT_FOUND, f"Method not found: {method}")

    def _call_tool(self, session: ProtocolSession, params: Any) -> dict:
        if not isinstance(params, dict) or not isinstance(params.get("name"), str):
            raise ProtocolError(INVALID_PARAMS, "tools/call requires a tool name")

        name = params["name"]
        executor = ToolExecutor(self.db, session.subscriber_id)
        try:
            payload = executor.call(name, params.get("arguments"))
        except UnknownToolError:
            raise ProtocolError(METHOD_NOT_FOUND, f"Unknown tool: {name}")
        except ToolError as e:
            logger.info("tool_rejected", session_id=session.session_id, tool=name, error=str(e))
            return text_content({"error": str(e)}, is_error=True)

        logger.info("tool_called", session_id=session.session_id, tool=name)
        return text_content(payload)
