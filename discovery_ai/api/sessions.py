# api/sessions.py
"""
Session history API
Lets a signed-in user list their recent interviews and reopen one.
"""

from typing import Any, Dict, List

from fastapi import APIRouter, Depends, HTTPException, Request
from loguru import logger

from ..errors import ChatError, SessionAccessDenied
from ..interfaces.session_store import SessionStore
from ..schemas.chat_schemas import SessionSummary
from .auth import get_current_user_id

router = APIRouter(prefix="/api/ai/sessions", tags=["Sessions"])


def _store(request: Request) -> SessionStore:
    return request.app.state.session_store


def _http_error(error: ChatError) -> HTTPException:
    return HTTPException(status_code=error.status_code, detail=error.to_event())


@router.get("/user/{user_id}")
async def list_user_sessions(
    user_id: str,
    request: Request,
    current_user: str = Depends(get_current_user_id),
) -> Dict[str, Any]:
    """List a user's live sessions, most recent first"""
    if current_user != user_id:
        logger.warning(f"User {current_user} tried to list sessions of {user_id}")
        raise _http_error(SessionAccessDenied())

    try:
        sessions = await _store(request).list_active_for_user(user_id)
    except ChatError as e:
        raise _http_error(e)

    summaries: List[Dict[str, Any]] = [
        SessionSummary.from_session(s).model_dump(by_alias=True, mode="json") for s in sessions
    ]
    return {"sessions": summaries, "count": len(summaries)}


@router.get("/{session_id}")
async def get_session(
    session_id: str,
    request: Request,
    current_user: str = Depends(get_current_user_id),
) -> Dict[str, Any]:
    """Full session with messages"""
    try:
        session = await _store(request).get(session_id)
    except ChatError as e:
        raise _http_error(e)

    if not session.is_owned_by(current_user):
        logger.warning(f"User {current_user} denied access to session {session_id}")
        raise _http_error(SessionAccessDenied())

    return session.to_client_dict()
