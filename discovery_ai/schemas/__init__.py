# schemas/__init__.py
"""
Pydantic Schemas Package

Contains all Pydantic v2 models for:
- Chat sessions, messages and the travel profile
- Structured extraction payloads
- WebSocket and REST payloads
"""

from .chat_schemas import (
    # Enums
    MessageRole, ConversationStage,
    # Profile
    Destination, CollectedData, ProfileUpdate, ExtractionPayload,
    # Session
    ChatMessage, ChatSession,
    # Wire
    StreamChunk, StartChatRequest, SendMessageRequest, AuthenticateRequest, SessionSummary,
)

__all__ = [
    # Enums
    "MessageRole", "ConversationStage",
    # Profile
    "Destination", "CollectedData", "ProfileUpdate", "ExtractionPayload",
    # Session
    "ChatMessage", "ChatSession",
    # Wire
    "StreamChunk", "StartChatRequest", "SendMessageRequest", "AuthenticateRequest", "SessionSummary",
]
