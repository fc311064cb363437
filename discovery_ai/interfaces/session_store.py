# interfaces/session_store.py
"""
Chat Session Store
Durable, keyed storage of ChatSession documents with an idle TTL.

Every read returns a fresh copy; nothing above this layer keeps a session
between requests. Sessions idle longer than the TTL are invisible to
reads even if the backend has not physically removed them yet.
"""

import asyncio
from abc import ABC, abstractmethod
from datetime import datetime, timedelta
from typing import Callable, Dict, List, Optional

import redis.asyncio as redis
from loguru import logger
from pydantic import ValidationError
from redis.exceptions import RedisError

from ..config import settings
from ..errors import SessionNotFound, StoreUnavailable
from ..schemas.chat_schemas import ChatSession
from ..utils.chat_helpers import utcnow


class SessionStore(ABC):
    """
    Abstract session store.

    Implementations: RedisSessionStore (production), InMemorySessionStore
    (local development and tests).
    """

    def __init__(self, ttl_hours: int = 24, clock: Callable[[], datetime] = utcnow):
        self.ttl = timedelta(hours=ttl_hours)
        self._clock = clock

    @property
    def ttl_seconds(self) -> int:
        return int(self.ttl.total_seconds())

    def is_expired(self, session: ChatSession) -> bool:
        return session.updated_at + self.ttl < self._clock()

    async def create(self, user_id: str, session_id: Optional[str] = None) -> ChatSession:
        """
        Resume or create a session

        Args:
            user_id: Owner of the session
            session_id: Optional id of a session to resume

        Returns:
            The existing session when session_id names a live session owned
            by user_id, otherwise a new session with a freshly generated id.
        """
        if session_id:
            try:
                existing = await self.get(session_id)
                if existing.is_owned_by(user_id):
                    logger.info(f"Resuming session {session_id} for user {user_id}")
                    return existing
                logger.warning(f"User {user_id} tried to resume session {session_id} owned by another user")
            except SessionNotFound:
                logger.info(f"Session {session_id} not found or expired, creating a new one")

        now = self._clock()
        session = ChatSession(user_id=str(user_id), created_at=now, updated_at=now)
        await self.save(session)
        logger.info(f"Created new session: {session.session_id} (user={user_id})")
        return session

    @abstractmethod
    async def get(self, session_id: str) -> ChatSession:
        """Fetch a live session. Raises SessionNotFound when missing or expired."""

    @abstractmethod
    async def save(self, session: ChatSession) -> None:
        """Atomically replace the stored session"""

    @abstractmethod
    async def delete(self, session_id: str) -> None:
        pass

    @abstractmethod
    async def list_active_for_user(self, user_id: str) -> List[ChatSession]:
        """Live sessions of a user, most recently updated first"""

    @abstractmethod
    async def purge_expired(self) -> int:
        """Physically remove expired sessions. Returns how many were removed."""

    async def ping(self) -> bool:
        return True

    async def close(self) -> None:
        pass


# ============================================
# In-memory implementation
# ============================================

class InMemorySessionStore(SessionStore):
    """
    Process-local store keeping JSON snapshots.

    Snapshots (not live objects) are stored so callers can never mutate
    stored state without calling save().
    """

    def __init__(self, ttl_hours: int = 24, clock: Callable[[], datetime] = utcnow):
        super().__init__(ttl_hours=ttl_hours, clock=clock)
        self._records: Dict[str, str] = {}

    def _load(self, session_id: str) -> Optional[ChatSession]:
        raw = self._records.get(session_id)
        if raw is None:
            return None
        return ChatSession.model_validate_json(raw)

    async def get(self, session_id: str) -> ChatSession:
        session = self._load(session_id)
        if session is None or self.is_expired(session):
            raise SessionNotFound(session_id)
        return session

    async def save(self, session: ChatSession) -> None:
        self._records[session.session_id] = session.model_dump_json()
        logger.debug(f"Saved session {session.session_id} to memory ({len(session.messages)} messages)")

    async def delete(self, session_id: str) -> None:
        if self._records.pop(session_id, None) is not None:
            logger.info(f"Deleted session: {session_id}")

    async def list_active_for_user(self, user_id: str) -> List[ChatSession]:
        sessions = []
        for session_id in list(self._records):
            session = self._load(session_id)
            if session and session.is_owned_by(user_id) and not self.is_expired(session):
                sessions.append(session)
        return sorted(sessions, key=lambda s: s.updated_at, reverse=True)

    async def purge_expired(self) -> int:
        expired = [sid for sid in list(self._records) if self.is_expired(self._load(sid))]
        for session_id in expired:
            del self._records[session_id]
        if expired:
            logger.info(f"Purged {len(expired)} expired sessions from memory")
        return len(expired)

    def __len__(self) -> int:
        return len(self._records)


# ============================================
# Redis implementation
# ============================================

class RedisSessionStore(SessionStore):
    """
    Redis-backed store.

    Layout:
        {prefix}:session:{session_id}      -> ChatSession JSON, EX = ttl
        {prefix}:user_sessions:{user_id}   -> SET of session ids, EX = ttl

    Each save is a single SET of the whole document, so readers see either
    the previous or the new version. The key TTL is refreshed on every save.
    """

    def __init__(
        self,
        redis_url: Optional[str] = None,
        ttl_hours: int = 24,
        key_prefix: str = "chat",
        clock: Callable[[], datetime] = utcnow,
        client: Optional[redis.Redis] = None,
    ):
        super().__init__(ttl_hours=ttl_hours, clock=clock)
        self.redis_url = redis_url or settings.redis_url
        self.key_prefix = key_prefix
        self.redis_client: Optional[redis.Redis] = client

    def _ensure_client(self) -> redis.Redis:
        if self.redis_client is None:
            self.redis_client = redis.from_url(
                self.redis_url,
                encoding="utf-8",
                decode_responses=True
            )
            logger.info(f"SessionStore using Redis at {self.redis_url}")
        return self.redis_client

    def _get_key(self, session_id: str) -> str:
        return f"{self.key_prefix}:session:{session_id}"

    def _get_user_key(self, user_id: str) -> str:
        return f"{self.key_prefix}:user_sessions:{user_id}"

    def _decode(self, session_id: str, raw: Optional[str]) -> Optional[ChatSession]:
        if raw is None:
            return None
        try:
            return ChatSession.model_validate_json(raw)
        except ValidationError as e:
            logger.error(f"Corrupt session document {session_id}: {e}")
            return None

    async def get(self, session_id: str) -> ChatSession:
        client = self._ensure_client()
        try:
            raw = await client.get(self._get_key(session_id))
        except (RedisError, OSError) as e:
            logger.error(f"Redis get failed for session {session_id}: {e}")
            raise StoreUnavailable(details={"operation": "get"}) from e

        session = self._decode(session_id, raw)
        if session is None or self.is_expired(session):
            raise SessionNotFound(session_id)
        return session

    async def save(self, session: ChatSession) -> None:
        client = self._ensure_client()
        user_key = self._get_user_key(session.user_id)
        try:
            async with client.pipeline(transaction=True) as pipe:
                pipe.set(self._get_key(session.session_id), session.model_dump_json(), ex=self.ttl_seconds)
                pipe.sadd(user_key, session.session_id)
                pipe.expire(user_key, self.ttl_seconds)
                await pipe.execute()
        except (RedisError, OSError) as e:
            logger.error(f"Redis save failed for session {session.session_id}: {e}")
            raise StoreUnavailable(details={"operation": "save"}) from e
        logger.debug(f"Saved session {session.session_id} to Redis ({len(session.messages)} messages)")

    async def delete(self, session_id: str) -> None:
        client = self._ensure_client()
        key = self._get_key(session_id)
        try:
            session = self._decode(session_id, await client.get(key))
            async with client.pipeline(transaction=True) as pipe:
                pipe.delete(key)
                if session is not None:
                    pipe.srem(self._get_user_key(session.user_id), session_id)
                await pipe.execute()
        except (RedisError, OSError) as e:
            logger.error(f"Redis delete failed for session {session_id}: {e}")
            raise StoreUnavailable(details={"operation": "delete"}) from e
        logger.info(f"Deleted session: {session_id}")

    async def list_active_for_user(self, user_id: str) -> List[ChatSession]:
        client = self._ensure_client()
        user_key = self._get_user_key(user_id)
        try:
            session_ids = sorted(await client.smembers(user_key))
            if not session_ids:
                return []
            raws = await client.mget([self._get_key(sid) for sid in session_ids])
        except (RedisError, OSError) as e:
            logger.error(f"Redis list failed for user {user_id}: {e}")
            raise StoreUnavailable(details={"operation": "list"}) from e

        sessions, stale = [], []
        for session_id, raw in zip(session_ids, raws):
            session = self._decode(session_id, raw)
            if session is None or self.is_expired(session) or not session.is_owned_by(user_id):
                stale.append(session_id)
            else:
                sessions.append(session)

        if stale:
            try:
                await client.srem(user_key, *stale)
            except (RedisError, OSError) as e:
                # Index cleanup only; the listing itself is already correct
                logger.warning(f"Could not prune {len(stale)} stale ids for user {user_id}: {e}")

        return sorted(sessions, key=lambda s: s.updated_at, reverse=True)

    async def purge_expired(self) -> int:
        # Redis expires session keys itself; user index entries are pruned lazily on listing
        return 0

    async def ping(self) -> bool:
        try:
            return bool(await self._ensure_client().ping())
        except (RedisError, OSError) as e:
            logger.warning(f"Redis ping failed: {e}")
            return False

    async def close(self) -> None:
        if self.redis_client is not None:
            await self.redis_client.aclose()
            self.redis_client = None
            logger.info("SessionStore Redis connection closed")


def build_session_store(backend: Optional[str] = None) -> SessionStore:
    """
    Create the configured session store

    Args:
        backend: "redis" or "memory" (defaults to SESSION_STORE_BACKEND)
    """
    backend = (backend or settings.SESSION_STORE_BACKEND).strip().lower()
    if backend == "memory":
        logger.warning("Using in-memory session store; sessions are lost on restart")
        return InMemorySessionStore(ttl_hours=settings.SESSION_TTL_HOURS)
    if backend == "redis":
        return RedisSessionStore(
            redis_url=settings.redis_url,
            ttl_hours=settings.SESSION_TTL_HOURS,
            key_prefix=settings.SESSION_KEY_PREFIX,
        )
    raise ValueError(f"Unknown session store backend: {backend}")


async def purge_expired_periodically(store: SessionStore, interval_seconds: float) -> None:
    """
    Background task removing expired sessions every interval_seconds.
    Runs until cancelled; a failed pass is logged and retried next interval.
    """
    while True:
        await asyncio.sleep(interval_seconds)
        try:
            await store.purge_expired()
        except StoreUnavailable as e:
            logger.warning(f"Session purge skipped: {e.message}")
