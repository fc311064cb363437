# api/__init__.py
"""
API Package
- auth: JWT verification shared by WebSocket and REST
- websocket: real-time interview gateway (/api/ai/chat/ws)
- sessions: session history REST endpoints
"""

from .auth import TokenVerifier, create_access_token, extract_token, get_current_user_id
from .sessions import router as sessions_router
from .websocket import ClientConnection, ConnectionGateway, router as websocket_router

__all__ = [
    "TokenVerifier",
    "create_access_token",
    "extract_token",
    "get_current_user_id",
    "ClientConnection",
    "ConnectionGateway",
    "sessions_router",
    "websocket_router",
]
