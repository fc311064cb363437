# agents/chat_controller.py
"""
Chat Session Controller
Drives one connection through the interview state machine:

    DISCONNECTED -> CONNECTING -> CONNECTED
    CONNECTED --startChat--> SESSION_ACTIVE (or INTERVIEW_COMPLETE on resume)
    SESSION_ACTIVE --sendMessage--> STREAMING --complete--> SESSION_ACTIVE | INTERVIEW_COMPLETE
    any bound state --endChat--> ENDED
    any state --disconnect--> DISCONNECTED (session kept)

Sessions are loaded from the store at the start of every operation and
saved before the operation reports success. Turns on the same session are
serialized process-wide by SessionLockRegistry.
"""

import asyncio
from collections import defaultdict
from contextlib import aclosing, asynccontextmanager
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Any, Awaitable, Callable, Dict, Optional, Tuple

from loguru import logger

from ..algorithms.destination_matcher import match_destination
from ..algorithms.profile_accumulator import (
    completion_stats,
    derive_stage,
    is_ready_for_recommendation,
    merge,
    next_question_key,
)
from ..errors import (
    CompletionSourceFailure,
    InvalidMessage,
    NoActiveSession,
    SessionAccessDenied,
    SessionFrozen,
    SessionNotFound,
    TurnInProgress,
)
from ..interfaces.session_store import SessionStore
from ..llm.completion_source import CompletionSource
from ..llm.prompts import (
    CLOSING_MESSAGE,
    FOLLOW_UP_QUESTIONS,
    GREETING,
    RECOMMENDATION_MESSAGE,
    build_prompt_context,
)
from ..llm.response_assembler import AssembledResponse, StreamingResponseAssembler
from ..schemas.chat_schemas import ChatSession, Destination, MessageRole, StreamChunk
from ..utils.chat_helpers import format_brl, new_id, utcnow

EmitFn = Callable[[str, Dict[str, Any]], Awaitable[None]]


class ChatState(str, Enum):
    DISCONNECTED = "disconnected"
    CONNECTING = "connecting"
    CONNECTED = "connected"
    SESSION_ACTIVE = "session_active"
    STREAMING = "streaming"
    INTERVIEW_COMPLETE = "interview_complete"
    ENDED = "ended"


@dataclass
class ConnectionContext:
    """Per-connection binding between an authenticated user and a session"""
    user_id: str
    connection_id: str = field(default_factory=new_id)
    session_id: Optional[str] = None
    state: ChatState = ChatState.CONNECTING

    def bind(self, session: ChatSession) -> None:
        self.session_id = session.session_id
        self.state = ChatState.INTERVIEW_COMPLETE if session.interview_complete else ChatState.SESSION_ACTIVE

    def unbind(self, state: ChatState) -> None:
        self.session_id = None
        self.state = state


class SessionLockRegistry:
    """
    One asyncio.Lock per session id, shared by every connection in the
    process. Locks are dropped once nobody holds or waits for them.
    """

    def __init__(self):
        self._locks: Dict[str, asyncio.Lock] = {}
        self._users: Dict[str, int] = defaultdict(int)

    def is_busy(self, session_id: str) -> bool:
        lock = self._locks.get(session_id)
        return lock is not None and lock.locked()

    @asynccontextmanager
    async def hold(self, session_id: str):
        lock = self._locks.setdefault(session_id, asyncio.Lock())
        self._users[session_id] += 1
        try:
            async with lock:
                yield
        finally:
            self._users[session_id] -= 1
            if self._users[session_id] <= 0:
                del self._users[session_id]
                self._locks.pop(session_id, None)

    def __len__(self) -> int:
        return len(self._locks)


# Process-wide registry
session_locks = SessionLockRegistry()


class ChatSessionController:
    """
    Interview state machine.

    Every public operation takes the connection's ConnectionContext and an
    `emit(event, payload)` coroutine used to push events to that connection.
    """

    def __init__(
        self,
        store: SessionStore,
        completion_source: CompletionSource,
        locks: Optional[SessionLockRegistry] = None,
        history_window: int = 20,
        max_questions: int = 8,
        message_max_length: int = 2000,
        delete_on_end: bool = False,
        clock: Callable[[], datetime] = utcnow,
    ):
        self.store = store
        self.completion_source = completion_source
        self.locks = locks if locks is not None else session_locks
        self.history_window = history_window
        self.max_questions = max_questions
        self.message_max_length = message_max_length
        self.delete_on_end = delete_on_end
        self._clock = clock

    # ============================================
    # Helpers
    # ============================================

    def _require_session(self, ctx: ConnectionContext) -> str:
        if not ctx.session_id:
            raise NoActiveSession()
        return ctx.session_id

    async def _load_owned(self, ctx: ConnectionContext, session_id: str) -> ChatSession:
        try:
            session = await self.store.get(session_id)
        except SessionNotFound:
            if ctx.session_id == session_id:
                ctx.unbind(ChatState.CONNECTED)
            raise
        if not session.is_owned_by(ctx.user_id):
            logger.warning(f"User {ctx.user_id} denied access to session {session_id}")
            raise SessionAccessDenied()
        return session

    @staticmethod
    def _set_state(ctx: ConnectionContext, session_id: str, state: ChatState) -> None:
        # A turn may outlive its connection binding; only touch the binding it started on
        if ctx.session_id == session_id:
            ctx.state = state

    @staticmethod
    def session_metadata(session: ChatSession) -> Dict[str, Any]:
        return {
            "stage": session.conversation_stage.value,
            "questionNumber": session.questions_asked,
            "totalQuestions": session.total_questions_available,
            "interviewComplete": session.interview_complete,
            "collectedData": session.collected_data.model_dump(),
            "recommendedDestination": (
                session.recommended_destination.model_dump() if session.recommended_destination else None
            ),
            "completion": completion_stats(session.collected_data).to_dict(),
            "messageCount": len(session.messages),
        }

    # ============================================
    # startChat
    # ============================================

    async def start_chat(self, ctx: ConnectionContext, emit: EmitFn, session_id: Optional[str] = None) -> ChatSession:
        """
        Resume or create a session and bind it to the connection

        New sessions get the greeting; resumed sessions replay their last
        assistant message. Either way one complete chatResponse is emitted.
        """
        session = await self.store.create(ctx.user_id, session_id)
        resumed = bool(session.messages)

        async with self.locks.hold(session.session_id):
            if resumed:
                # Pick up whatever an in-flight turn persisted while we waited
                session = await self._load_owned(ctx, session.session_id)
                last = session.last_message(MessageRole.ASSISTANT)
                content = last.content if last else GREETING
            else:
                session.total_questions_available = self.max_questions
                session.append_message(MessageRole.ASSISTANT, GREETING, metadata={"nextQuestionKey": "origin"})
                session.questions_asked = 1
                await self.store.save(session)
                content = GREETING

        ctx.bind(session)
        logger.info(
            f"{'Resumed' if resumed else 'Started'} chat {session.session_id} for user {ctx.user_id} "
            f"(connection={ctx.connection_id}, state={ctx.state.value})"
        )

        metadata = self.session_metadata(session)
        metadata["resumed"] = resumed
        await emit("chatResponse", StreamChunk(
            content=content,
            is_complete=True,
            session_id=session.session_id,
            metadata=metadata,
        ).to_event())
        return session

    # ============================================
    # sendMessage
    # ============================================

    async def send_message(self, ctx: ConnectionContext, content: str, emit: EmitFn) -> ChatSession:
        """
        Run one interview turn

        The user message is persisted before the completion source is
        called. The assistant message, merged profile and completion flag
        are persisted together once the stream completes. A failed stream
        leaves only the user message behind.

        Raises:
            NoActiveSession, InvalidMessage, TurnInProgress, SessionFrozen,
            SessionNotFound, SessionAccessDenied, CompletionSourceFailure,
            StoreUnavailable
        """
        session_id = self._require_session(ctx)
        text = (content or "").strip()
        if not text:
            raise InvalidMessage("Message content is required")
        if len(text) > self.message_max_length:
            raise InvalidMessage(f"Message is too long (max {self.message_max_length} characters)")
        if self.locks.is_busy(session_id):
            raise TurnInProgress()

        async with self.locks.hold(session_id):
            session = await self._load_owned(ctx, session_id)
            if session.interview_complete:
                self._set_state(ctx, session_id, ChatState.INTERVIEW_COMPLETE)
                raise SessionFrozen()

            if session.append_message(MessageRole.USER, text, now=self._clock()) is None:
                logger.info(f"Duplicate user message on session {session_id}, treating as retry")
            else:
                session.current_question_index += 1
            await self.store.save(session)

            self._set_state(ctx, session_id, ChatState.STREAMING)
            finished = False
            try:
                turn_id, sequence, result = await self._stream_reply(session, emit)
                session, message_id = self._apply_reply(session, result, turn_id)
                await self.store.save(session)
                finished = True
            finally:
                if not finished:
                    self._set_state(ctx, session_id, ChatState.SESSION_ACTIVE)

            self._set_state(
                ctx,
                session_id,
                ChatState.INTERVIEW_COMPLETE if session.interview_complete else ChatState.SESSION_ACTIVE,
            )

        metadata = self.session_metadata(session)
        metadata.update(
            turnId=turn_id,
            sequence=sequence,
            isTyping=False,
            messageId=message_id,
            message=session.messages[-1].content,
            nextQuestionKey=next_question_key(session.collected_data),
            extracted=result.payload is not None,
        )
        await emit("chatResponse", StreamChunk(
            content="",
            is_complete=True,
            session_id=session_id,
            metadata=metadata,
        ).to_event())
        return session

    async def _stream_reply(self, session: ChatSession, emit: EmitFn) -> Tuple[str, int, AssembledResponse]:
        prompt = build_prompt_context(session, self.history_window, self.max_questions)
        assembler = StreamingResponseAssembler(session.session_id)
        turn_id = new_id()
        sequence = 0
        completed = False

        async with aclosing(self.completion_source.stream(session.session_id, prompt)) as stream:
            async for fragment in stream:
                if fragment.text:
                    assembler.append(fragment.text)
                    await emit("chatResponse", StreamChunk(
                        content=fragment.text,
                        is_complete=False,
                        session_id=session.session_id,
                        metadata={"turnId": turn_id, "sequence": sequence, "isTyping": assembler.is_typing},
                    ).to_event())
                    sequence += 1
                if fragment.is_complete:
                    completed = True
                    break

        if not completed:
            raise CompletionSourceFailure("The assistant reply ended unexpectedly.", {"reason": "truncated"})
        return turn_id, sequence, assembler.finish()

    def _apply_reply(self, session: ChatSession, result: AssembledResponse, turn_id: str) -> Tuple[ChatSession, str]:
        """Merge the finished reply into the session (in memory only)"""
        update = result.payload.data_collected if result.payload else None
        if update is not None:
            session.collected_data = merge(session.collected_data, update)

        ready = is_ready_for_recommendation(session.collected_data)
        key = next_question_key(session.collected_data)
        destination: Optional[Destination] = None
        display = result.display_text

        if ready:
            proposed = update.destination() if update is not None else None
            if proposed is not None and proposed.iata != session.collected_data.origin_iata:
                destination = proposed
            else:
                destination = match_destination(session.collected_data)
            if not display:
                display = RECOMMENDATION_MESSAGE.format(
                    destination=destination.label(),
                    activities=", ".join(session.collected_data.activities),
                    budget=format_brl(session.collected_data.budget_in_brl),
                    purpose=session.collected_data.purpose,
                )
        elif not display:
            display = FOLLOW_UP_QUESTIONS[key]

        now = self._clock()
        message = session.append_message(
            MessageRole.ASSISTANT,
            display,
            metadata={"turnId": turn_id, "nextQuestionKey": key},
            now=now,
        )
        if message is not None and not ready:
            session.questions_asked += 1

        session.conversation_stage = derive_stage(session.collected_data)
        if ready and session.complete_interview(destination, now=now):
            logger.info(
                f"Interview complete for session {session.session_id}: "
                f"recommended {destination.label() if destination else '-'}"
            )
        else:
            session.touch(now)

        message_id = message.id if message is not None else session.messages[-1].id
        return session, message_id

    # ============================================
    # endChat / sessionInfo / disconnect
    # ============================================

    async def end_chat(self, ctx: ConnectionContext, emit: EmitFn) -> None:
        """
        End the bound session. Waits for an in-flight turn to finish first.
        A second call on an ended connection does nothing.
        """
        session_id = ctx.session_id
        if session_id is None:
            if ctx.state == ChatState.ENDED:
                logger.debug(f"endChat repeated on connection {ctx.connection_id}, ignoring")
                return
            raise NoActiveSession()

        async with self.locks.hold(session_id):
            try:
                session: Optional[ChatSession] = await self._load_owned(ctx, session_id)
            except SessionNotFound:
                session = None

            if session is not None:
                if self.delete_on_end:
                    await self.store.delete(session_id)
                else:
                    await self.store.save(session)

            ctx.unbind(ChatState.ENDED)

        logger.info(f"Chat {session_id} ended by user {ctx.user_id} (deleted={self.delete_on_end})")
        await emit("chatEnded", {
            "message": CLOSING_MESSAGE,
            "sessionId": session_id,
            "profile": session.collected_data.model_dump() if session else None,
            "interviewComplete": session.interview_complete if session else False,
            "recommendedDestination": (
                session.recommended_destination.model_dump()
                if session and session.recommended_destination else None
            ),
        })

    async def session_info(self, ctx: ConnectionContext, emit: EmitFn) -> None:
        info: Dict[str, Any] = {"hasActiveSession": False, "sessionId": None, "state": ctx.state.value}
        if ctx.session_id:
            try:
                session = await self._load_owned(ctx, ctx.session_id)
                info.update(session.to_client_dict())
                info.update(
                    hasActiveSession=True,
                    state=ctx.state.value,
                    completion=completion_stats(session.collected_data).to_dict(),
                )
            except SessionNotFound:
                info.update(state=ctx.state.value, expired=True)
        await emit("sessionInfo", info)

    def disconnect(self, ctx: ConnectionContext) -> None:
        """Drop the live binding only; the persisted session is untouched"""
        if ctx.session_id:
            logger.info(f"Connection {ctx.connection_id} dropped; session {ctx.session_id} kept")
        ctx.unbind(ChatState.DISCONNECTED)
