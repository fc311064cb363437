"""
Stream guard for completion sources
Bounds stalled streams with an idle timeout and retries failed attempts
with exponential backoff, but only before the first fragment reached
the caller: once text has been forwarded a retry would duplicate it.
"""

import asyncio
import random
from typing import AsyncIterator, Awaitable, Callable

from loguru import logger

from ..errors import CompletionSourceFailure
from .completion_source import CompletionFragment, CompletionSource
from .prompts import PromptContext


def exponential_backoff_delay(attempt: int, base_delay: float = 0.5, max_delay: float = 8.0) -> float:
    """
    Calculate exponential backoff delay with jitter

    Args:
        attempt: Current attempt number (0-indexed)
        base_delay: Base delay in seconds
        max_delay: Maximum delay in seconds

    Returns:
        Delay in seconds
    """
    # Exponential backoff: base_delay * 2^attempt
    delay = min(base_delay * (2 ** attempt), max_delay)

    # Jitter to avoid thundering herd
    return delay + random.uniform(0, 0.1 * delay)


class ResilientCompletionSource(CompletionSource):
    """Wraps another source with idle timeout and pre-stream retries"""

    def __init__(
        self,
        inner: CompletionSource,
        idle_timeout: float = 30.0,
        max_retries: int = 2,
        base_delay: float = 0.5,
        max_delay: float = 8.0,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ):
        self.inner = inner
        self.idle_timeout = idle_timeout
        self.max_retries = max_retries
        self.base_delay = base_delay
        self.max_delay = max_delay
        self._sleep = sleep

    @property
    def name(self) -> str:
        return self.inner.name

    async def _next_fragment(self, iterator: AsyncIterator[CompletionFragment]) -> CompletionFragment:
        try:
            return await asyncio.wait_for(iterator.__anext__(), timeout=self.idle_timeout)
        except StopAsyncIteration:
            raise CompletionSourceFailure(
                "The assistant reply ended unexpectedly.", {"provider": self.name, "reason": "truncated"}
            )
        except asyncio.TimeoutError:
            logger.warning(f"Completion stream idle for {self.idle_timeout}s ({self.name})")
            raise CompletionSourceFailure(
                "The assistant stopped responding.", {"provider": self.name, "reason": "idle_timeout"}
            )

    async def stream(self, session_id: str, prompt: PromptContext) -> AsyncIterator[CompletionFragment]:
        for attempt in range(self.max_retries + 1):
            iterator = self.inner.stream(session_id, prompt).__aiter__()
            started = False
            try:
                while True:
                    fragment = await self._next_fragment(iterator)
                    started = True
                    yield fragment
                    if fragment.is_complete:
                        if attempt > 0:
                            logger.info(f"Completion for session {session_id} succeeded after {attempt} retries")
                        return
            except CompletionSourceFailure as e:
                if started or attempt == self.max_retries:
                    logger.error(f"Completion failed for session {session_id} after {attempt + 1} attempts: {e.details}")
                    raise
                delay = exponential_backoff_delay(attempt, self.base_delay, self.max_delay)
                logger.warning(
                    f"Completion attempt {attempt + 1} failed for session {session_id} "
                    f"({e.details}), retrying in {delay:.2f}s"
                )
                await self._sleep(delay)
            finally:
                aclose = getattr(iterator, "aclose", None)
                if aclose is not None:
                    await aclose()

    async def close(self) -> None:
        await self.inner.close()
