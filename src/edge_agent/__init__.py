"""Single-conversation chat agent with best-effort vector memory.

The server side is a FastAPI application built by ``create_app`` (see
:mod:`edge_agent.server`); each conversation is an :class:`AgentSession`.
The client side is :class:`ConnectionSession`, optionally driven by
:class:`WebSocketClient`.

Typical usage
-------------
from edge_agent import create_app
app = create_app()

or, from the provided launcher:

python scripts/run_server.py --host 127.0.0.1 --port 8000
"""

from __future__ import annotations

from .agent import AgentRegistry, AgentSession
from .client import ChatMessage, ConnectionSession, ConnectionStatus, WebSocketClient
from .conversation import ConversationMessage, ConversationStore
from .llm import FALLBACK_REPLY, ReplyGenerator, build_prompt, extract_reply
from .memory import MemoryPipeline
from .scheduler import ReminderScheduler
from .server import create_app

__all__ = [
    "AgentRegistry",
    "AgentSession",
    "ChatMessage",
    "ConnectionSession",
    "ConnectionStatus",
    "ConversationMessage",
    "ConversationStore",
    "FALLBACK_REPLY",
    "MemoryPipeline",
    "ReminderScheduler",
    "ReplyGenerator",
    "WebSocketClient",
    "__version__",
    "build_prompt",
    "create_app",
    "extract_reply",
    "get_version",
]

__version__ = "0.1.0"


def get_version() -> str:
    """Return the package version."""
    return __version__
