"""
WebSocket API for the real-time travel interview

Connect: ws://localhost:8000/api/ai/chat/ws?token=<jwt>
(or send `Authorization: Bearer <jwt>`, or send an `authenticate` event first)

Send message format:
{
    "event": "startChat" | "sendMessage" | "endChat" | "sessionInfo" | "ping",
    "data": {"sessionId": "...", "content": "..."}
}

Receive message format:
{
    "event": "connected" | "chatResponse" | "sessionInfo" | "chatEnded" | "error" | "pong",
    "data": {...}
}
"""

import asyncio
from typing import Any, Dict, Optional, Set, Tuple

from fastapi import APIRouter, Request, WebSocket, WebSocketDisconnect, status
from fastapi.websockets import WebSocketState
from loguru import logger
from pydantic import ValidationError

from ..agents.chat_controller import ChatSessionController, ChatState, ConnectionContext
from ..errors import AuthenticationError, ChatError, InvalidMessage, UnknownEvent
from ..schemas.chat_schemas import AuthenticateRequest, SendMessageRequest, StartChatRequest
from ..utils.chat_helpers import RecentMessageWindow, utcnow
from .auth import TokenVerifier, extract_token

router = APIRouter(prefix="/api/ai", tags=["WebSocket"])


def parse_envelope(message: Any) -> Tuple[Optional[str], Dict[str, Any]]:
    """
    Split an inbound message into (event, data).

    Accepts {"event": ..., "data": {...}} and the flat
    {"type": ..., "content": ...} form.
    """
    if not isinstance(message, dict):
        return None, {}
    event = message.get("event") or message.get("type")
    data = message.get("data")
    if not isinstance(data, dict):
        data = {k: v for k, v in message.items() if k not in ("event", "type", "data")}
    return event, data


class ClientConnection:
    """One authenticated WebSocket and its chat binding"""

    def __init__(
        self,
        websocket: WebSocket,
        user_id: str,
        dedup_window_seconds: float = 5.0,
        dedup_window_size: int = 50,
    ):
        self.websocket = websocket
        self.user_id = user_id
        self.context = ConnectionContext(user_id=user_id, state=ChatState.CONNECTED)
        self.connection_id = self.context.connection_id
        self.closed = False
        self.inbound_window = RecentMessageWindow(dedup_window_seconds, dedup_window_size)
        self.outbound_window = RecentMessageWindow(dedup_window_seconds, dedup_window_size)
        self.tasks: Set[asyncio.Task] = set()
        self._send_lock = asyncio.Lock()

    async def send_event(self, event: str, data: Dict[str, Any]) -> None:
        """
        Send one event, dropping a complete assistant message already
        delivered on this connection within the dedup window.
        """
        if event == "chatResponse" and data.get("isComplete") and data.get("content"):
            if self.outbound_window.is_duplicate("assistant", data["content"]):
                logger.info(f"Suppressed duplicate assistant message on connection {self.connection_id}")
                return
        await self.deliver(event, data)

    async def deliver(self, event: str, data: Dict[str, Any]) -> None:
        """
        Send one event as is. Used for direct answers to a client request
        (startChat), which must always arrive. Silently dropped once the
        client is gone, so turns keep running (and persisting) after a
        disconnect.
        """
        if self.closed:
            logger.debug(f"Dropping {event} for closed connection {self.connection_id}")
            return

        try:
            async with self._send_lock:
                if self.websocket.client_state != WebSocketState.CONNECTED:
                    self.closed = True
                    return
                await self.websocket.send_json({"event": event, "data": data})
        except (WebSocketDisconnect, RuntimeError, OSError) as e:
            self.closed = True
            logger.info(f"Connection {self.connection_id} closed while sending {event}: {e.__class__.__name__}")

    async def send_error(self, error: ChatError) -> None:
        await self.send_event("error", error.to_event())


class ConnectionGateway:
    """
    Manages WebSocket connections for the chat interview

    Authenticates each connection, routes inbound events to the
    controller and tracks connections per user.
    """

    def __init__(
        self,
        controller: ChatSessionController,
        token_verifier: TokenVerifier,
        auth_timeout: float = 10.0,
        dedup_window_seconds: float = 5.0,
        dedup_window_size: int = 50,
    ):
        self.controller = controller
        self.token_verifier = token_verifier
        self.auth_timeout = auth_timeout
        self.dedup_window_seconds = dedup_window_seconds
        self.dedup_window_size = dedup_window_size
        # Active connections: {connection_id: ClientConnection}
        self.active_connections: Dict[str, ClientConnection] = {}
        # User connections: {user_id: set of connection_ids}
        self.user_connections: Dict[str, Set[str]] = {}
        self._pending_turns: Set[asyncio.Task] = set()

    # ============================================
    # Connection lifecycle
    # ============================================

    async def authenticate(self, websocket: WebSocket) -> str:
        """
        Resolve the user id for a freshly accepted socket

        Raises:
            AuthenticationError: no valid token within auth_timeout
        """
        token = extract_token(websocket.headers, websocket.query_params)
        if token is None:
            try:
                message = await asyncio.wait_for(websocket.receive_json(), timeout=self.auth_timeout)
            except asyncio.TimeoutError:
                raise AuthenticationError("Authentication timed out")
            except (ValueError, KeyError):
                raise AuthenticationError("Authentication required")

            event, data = parse_envelope(message)
            if event != "authenticate":
                raise AuthenticationError("Authentication required")
            try:
                token = AuthenticateRequest.model_validate(data).token
            except ValidationError:
                raise AuthenticationError("Authentication token required")

        return await self.token_verifier.verify(token)

    def register(self, websocket: WebSocket, user_id: str) -> ClientConnection:
        connection = ClientConnection(
            websocket,
            user_id,
            dedup_window_seconds=self.dedup_window_seconds,
            dedup_window_size=self.dedup_window_size,
        )
        self.active_connections[connection.connection_id] = connection
        self.user_connections.setdefault(user_id, set()).add(connection.connection_id)
        logger.info(f"WebSocket connected: connection={connection.connection_id}, user={user_id}")
        return connection

    def unregister(self, connection: ClientConnection) -> None:
        connection.closed = True
        self.controller.disconnect(connection.context)

        self.active_connections.pop(connection.connection_id, None)
        user_set = self.user_connections.get(connection.user_id)
        if user_set is not None:
            user_set.discard(connection.connection_id)
            if not user_set:
                del self.user_connections[connection.user_id]

        logger.info(
            f"WebSocket disconnected: connection={connection.connection_id}, user={connection.user_id}, "
            f"turns still running={len(connection.tasks)}"
        )

    async def handle(self, websocket: WebSocket) -> None:
        """Full lifecycle of one socket: authenticate, serve events, clean up"""
        await websocket.accept()

        try:
            user_id = await self.authenticate(websocket)
        except AuthenticationError as e:
            logger.warning(f"WebSocket authentication failed: {e.message}")
            await self._reject(websocket, e)
            return
        except WebSocketDisconnect:
            logger.info("WebSocket closed before authenticating")
            return

        connection = self.register(websocket, user_id)
        await connection.send_event("connected", {
            "message": "Connected to AIR Discovery chat",
            "userId": user_id,
            "connectionId": connection.connection_id,
            "timestamp": utcnow().isoformat(),
        })

        try:
            while True:
                try:
                    message = await websocket.receive_json()
                except (ValueError, KeyError):
                    await connection.send_error(InvalidMessage("Invalid message format"))
                    continue

                event, data = parse_envelope(message)
                try:
                    await self.dispatch(connection, event, data)
                except ChatError as e:
                    logger.info(f"{event} rejected on connection {connection.connection_id}: {e.error_code.value} {e.message}")
                    await connection.send_error(e)
                except Exception as e:
                    logger.exception(f"Unexpected error handling {event} on connection {connection.connection_id}: {e}")
                    await connection.send_error(ChatError())

        except WebSocketDisconnect:
            pass
        finally:
            self.unregister(connection)

    async def _reject(self, websocket: WebSocket, error: AuthenticationError) -> None:
        try:
            await websocket.send_json({"event": "error", "data": error.to_event()})
            await websocket.close(code=status.WS_1008_POLICY_VIOLATION)
        except (WebSocketDisconnect, RuntimeError, OSError):
            pass

    # ============================================
    # Event routing
    # ============================================

    async def dispatch(self, connection: ClientConnection, event: Optional[str], data: Dict[str, Any]) -> None:
        ctx = connection.context
        emit = connection.send_event

        try:
            if event == "startChat":
                request = StartChatRequest.model_validate(data)
                await self.controller.start_chat(ctx, connection.deliver, request.session_id)

            elif event == "sendMessage":
                request = SendMessageRequest.model_validate(data)
                self._spawn_turn(connection, request.content)

            elif event == "endChat":
                await self.controller.end_chat(ctx, emit)

            elif event in ("sessionInfo", "getSessionStatus"):
                await self.controller.session_info(ctx, emit)

            elif event == "ping":
                await emit("pong", {"timestamp": utcnow().isoformat()})

            elif event == "authenticate":
                logger.debug(f"Connection {connection.connection_id} already authenticated")

            else:
                raise UnknownEvent(f"Unknown event: {event}")

        except ValidationError as e:
            raise InvalidMessage(f"Invalid {event} payload", {"errors": e.error_count()})

    def _spawn_turn(self, connection: ClientConnection, content: str) -> None:
        """Run sendMessage in its own task so the socket keeps reading"""
        if connection.inbound_window.is_duplicate("user", content):
            logger.info(f"Dropped duplicate sendMessage on connection {connection.connection_id}")
            return

        task = asyncio.create_task(self._run_turn(connection, content))
        connection.tasks.add(task)
        self._pending_turns.add(task)
        task.add_done_callback(connection.tasks.discard)
        task.add_done_callback(self._pending_turns.discard)

    async def _run_turn(self, connection: ClientConnection, content: str) -> None:
        try:
            await self.controller.send_message(connection.context, content, connection.send_event)
        except ChatError as e:
            connection.inbound_window.forget("user", content)
            logger.info(f"sendMessage failed on connection {connection.connection_id}: {e.error_code.value} {e.message}")
            await connection.send_error(e)
        except Exception as e:
            connection.inbound_window.forget("user", content)
            logger.exception(f"Unexpected error in chat turn on connection {connection.connection_id}: {e}")
            await connection.send_error(ChatError())

    # ============================================
    # Introspection / shutdown
    # ============================================

    def get_connection_count(self) -> int:
        """Get number of active connections"""
        return len(self.active_connections)

    def get_user_count(self) -> int:
        return len(self.user_connections)

    def get_pending_turn_count(self) -> int:
        return len(self._pending_turns)

    async def shutdown(self, grace_seconds: float = 15.0) -> None:
        """Let running turns finish (and persist) before the process exits"""
        pending = set(self._pending_turns)
        if not pending:
            return
        logger.info(f"Waiting up to {grace_seconds}s for {len(pending)} chat turns to finish")
        done, still_running = await asyncio.wait(pending, timeout=grace_seconds)
        for task in still_running:
            task.cancel()
        if still_running:
            logger.warning(f"Cancelled {len(still_running)} chat turns at shutdown")


@router.websocket("/chat/ws")
async def websocket_chat(websocket: WebSocket):
    """WebSocket endpoint for the travel interview"""
    gateway: ConnectionGateway = websocket.app.state.gateway
    await gateway.handle(websocket)


@router.get("/chat/ws/status")
async def websocket_status(request: Request):
    """Get WebSocket connection status"""
    gateway: ConnectionGateway = request.app.state.gateway
    return {
        "active_connections": gateway.get_connection_count(),
        "active_users": gateway.get_user_count(),
        "pending_turns": gateway.get_pending_turn_count(),
        "timestamp": utcnow().isoformat(),
    }
