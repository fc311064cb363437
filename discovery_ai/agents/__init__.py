# agents/__init__.py
"""
AI Agents Package

Contains the chat-facing agent:
- ChatSessionController: interview state machine behind the WebSocket
"""

from .chat_controller import (
    ChatSessionController,
    ChatState,
    ConnectionContext,
    SessionLockRegistry,
    session_locks,
)

__all__ = [
    "ChatSessionController",
    "ChatState",
    "ConnectionContext",
    "SessionLockRegistry",
    "session_locks",
]
