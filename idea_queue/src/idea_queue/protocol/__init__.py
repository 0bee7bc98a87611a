"""
Protocol session server.

Lets an external agent work with one subscriber's items over a
token-scoped event stream plus a command endpoint.
"""

from .sessions import ProtocolSession, SessionRegistry, SessionState
from .dispatcher import CommandDispatcher, ProtocolError
from .tools import TOOL_CATALOG, ToolExecutor
from .routes import router

__all__ = [
    "ProtocolSession",
    "SessionRegistry",
    "SessionState",
    "CommandDispatcher",
    "ProtocolError",
    "TOOL_CATALOG",
    "ToolExecutor",
    "router",
]
