"""
Chat Error Taxonomy

Every failure the chat service reports to a client is a ChatError.
The WebSocket gateway turns them into `error` events; the REST API
turns them into HTTP errors via `status_code`.
"""

from enum import Enum
from typing import Any, Dict, Optional


class ErrorCode(str, Enum):
    """Error codes sent to clients"""

    # Authentication (1xxx)
    AUTHENTICATION_FAILED = "ERR_1001"
    SESSION_ACCESS_DENIED = "ERR_1002"

    # Session (2xxx)
    NO_ACTIVE_SESSION = "ERR_2001"
    SESSION_NOT_FOUND = "ERR_2002"
    SESSION_FROZEN = "ERR_2003"
    TURN_IN_PROGRESS = "ERR_2004"

    # Upstream dependencies (3xxx)
    COMPLETION_SOURCE_FAILURE = "ERR_3001"
    STORE_UNAVAILABLE = "ERR_3002"
    MALFORMED_EXTRACTION = "ERR_3003"

    # Validation (4xxx)
    INVALID_MESSAGE = "ERR_4001"
    UNKNOWN_EVENT = "ERR_4002"

    # Internal (5xxx)
    INTERNAL_ERROR = "ERR_5000"


class ChatError(Exception):
    """Base exception for all chat service errors"""

    error_code: ErrorCode = ErrorCode.INTERNAL_ERROR
    status_code: int = 500
    default_message: str = "Internal error"

    def __init__(self, message: Optional[str] = None, details: Optional[Dict[str, Any]] = None):
        self.message = message or self.default_message
        self.details = details or {}
        super().__init__(self.message)

    def to_event(self) -> Dict[str, Any]:
        """Payload for the outbound `error` event"""
        payload: Dict[str, Any] = {
            "message": self.message,
            "code": self.error_code.value,
        }
        if self.details:
            payload["details"] = self.details
        return payload

    def to_dict(self) -> Dict[str, Any]:
        """Body for REST error responses"""
        return {"error": self.to_event()}


class AuthenticationError(ChatError):
    """Missing, expired or invalid credentials. Closes the connection."""

    error_code = ErrorCode.AUTHENTICATION_FAILED
    status_code = 401
    default_message = "Authentication failed"


class SessionAccessDenied(ChatError):
    """Requester does not own the session"""

    error_code = ErrorCode.SESSION_ACCESS_DENIED
    status_code = 403
    default_message = "Access denied to this session"


class NoActiveSession(ChatError):
    """Event requires a bound session but the connection has none"""

    error_code = ErrorCode.NO_ACTIVE_SESSION
    status_code = 409
    default_message = "No active session. Start a chat first."


class SessionNotFound(ChatError):
    """Session id unknown or expired"""

    error_code = ErrorCode.SESSION_NOT_FOUND
    status_code = 404
    default_message = "Session not found"

    def __init__(self, session_id: str):
        super().__init__(f"Session not found: {session_id}", {"sessionId": session_id})
        self.session_id = session_id


class SessionFrozen(ChatError):
    """Interview already complete; session accepts no more turns"""

    error_code = ErrorCode.SESSION_FROZEN
    status_code = 409
    default_message = "Interview already complete. Start a new chat to plan another trip."


class TurnInProgress(ChatError):
    """A turn is already streaming for this session"""

    error_code = ErrorCode.TURN_IN_PROGRESS
    status_code = 409
    default_message = "Please wait for the current reply to finish."


class CompletionSourceFailure(ChatError):
    """LLM errored, timed out or stalled"""

    error_code = ErrorCode.COMPLETION_SOURCE_FAILURE
    status_code = 502
    default_message = "The assistant is unavailable right now. Please try again."


class StoreUnavailable(ChatError):
    """Session store I/O failed"""

    error_code = ErrorCode.STORE_UNAVAILABLE
    status_code = 503
    default_message = "Session storage is unavailable. Please try again."


class MalformedExtraction(ChatError):
    """Structured payload missing or unparseable. Logged, never surfaced."""

    error_code = ErrorCode.MALFORMED_EXTRACTION
    status_code = 422
    default_message = "Could not extract structured data from the reply"


class InvalidMessage(ChatError):
    """Inbound event payload failed validation"""

    error_code = ErrorCode.INVALID_MESSAGE
    status_code = 400
    default_message = "Invalid message"


class UnknownEvent(ChatError):
    error_code = ErrorCode.UNKNOWN_EVENT
    status_code = 400
    default_message = "Unknown event"
