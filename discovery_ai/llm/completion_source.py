"""
Completion Sources
Streaming LLM providers behind one interface.

LLM Provider:
- If OPENAI_API_KEY is set: use OpenAI
- If no OPENAI_API_KEY: use Ollama (llama3.2)
- LLM_PROVIDER=rule_based: offline interviewer, no model at all

A stream yields CompletionFragment objects and ends with exactly one
fragment flagged is_complete. Provider errors surface as
CompletionSourceFailure.
"""

import json
from abc import ABC, abstractmethod
from dataclasses import dataclass
from typing import AsyncIterator, Optional

import httpx
from loguru import logger
from openai import AsyncOpenAI, OpenAIError

from ..config import settings
from ..errors import CompletionSourceFailure
from .prompts import PromptContext


@dataclass
class CompletionFragment:
    """One piece of a streamed reply"""
    text: str = ""
    is_complete: bool = False


class CompletionSource(ABC):
    """Streams the assistant reply for one turn"""

    name: str = "abstract"

    @abstractmethod
    def stream(self, session_id: str, prompt: PromptContext) -> AsyncIterator[CompletionFragment]:
        """Async iterator of fragments; the last one has is_complete=True"""

    async def close(self) -> None:
        pass


# ============================================
# OpenAI
# ============================================

class OpenAICompletionSource(CompletionSource):
    """Streamed chat completions from OpenAI (or an OpenAI-compatible server)"""

    name = "openai"

    def __init__(
        self,
        api_key: Optional[str] = None,
        model: Optional[str] = None,
        base_url: Optional[str] = None,
        max_tokens: int = 600,
        temperature: float = 0.7,
        client: Optional[AsyncOpenAI] = None,
    ):
        self.model = model or settings.OPENAI_MODEL
        self.max_tokens = max_tokens
        self.temperature = temperature
        self.client = client or AsyncOpenAI(
            api_key=api_key or settings.OPENAI_API_KEY,
            base_url=base_url or settings.OPENAI_BASE_URL,
        )
        logger.info(f"OpenAI completion source ready (model={self.model})")

    async def stream(self, session_id: str, prompt: PromptContext) -> AsyncIterator[CompletionFragment]:
        try:
            response = await self.client.chat.completions.create(
                model=self.model,
                messages=prompt.to_chat_messages(),
                max_tokens=self.max_tokens,
                temperature=self.temperature,
                stream=True,
            )
            async for chunk in response:
                if not chunk.choices:
                    continue
                delta = chunk.choices[0].delta.content
                if delta:
                    yield CompletionFragment(text=delta)
        except OpenAIError as e:
            logger.error(f"OpenAI API error for session {session_id}: {e}")
            raise CompletionSourceFailure(details={"provider": self.name}) from e

        yield CompletionFragment(is_complete=True)

    async def close(self) -> None:
        await self.client.close()


# ============================================
# Ollama
# ============================================

class OllamaCompletionSource(CompletionSource):
    """Streamed chat from a local Ollama server (/api/chat, NDJSON)"""

    name = "ollama"

    def __init__(
        self,
        base_url: Optional[str] = None,
        model: Optional[str] = None,
        max_tokens: int = 600,
        temperature: float = 0.7,
        timeout: float = 60.0,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        self.base_url = (base_url or settings.OLLAMA_BASE_URL).rstrip("/")
        self.model = model or settings.OLLAMA_MODEL
        self.max_tokens = max_tokens
        self.temperature = temperature
        self.timeout = timeout
        self._transport = transport
        logger.info(f"Ollama completion source ready (model={self.model}, url={self.base_url})")

    async def stream(self, session_id: str, prompt: PromptContext) -> AsyncIterator[CompletionFragment]:
        body = {
            "model": self.model,
            "messages": prompt.to_chat_messages(),
            "stream": True,
            "options": {
                "temperature": self.temperature,
                "num_predict": self.max_tokens
            }
        }
        try:
            async with httpx.AsyncClient(timeout=self.timeout, transport=self._transport) as client:
                async with client.stream("POST", f"{self.base_url}/api/chat", json=body) as response:
                    if response.status_code != 200:
                        await response.aread()
                        raise CompletionSourceFailure(
                            details={"provider": self.name, "status": response.status_code}
                        )
                    async for line in response.aiter_lines():
                        if not line.strip():
                            continue
                        data = json.loads(line)
                        if data.get("error"):
                            raise CompletionSourceFailure(details={"provider": self.name, "error": data["error"]})
                        content = (data.get("message") or {}).get("content", "")
                        if content:
                            yield CompletionFragment(text=content)
                        if data.get("done"):
                            yield CompletionFragment(is_complete=True)
                            return
        except (httpx.HTTPError, json.JSONDecodeError) as e:
            logger.error(f"Ollama error for session {session_id}: {e}")
            raise CompletionSourceFailure(details={"provider": self.name}) from e

        raise CompletionSourceFailure("The assistant reply ended unexpectedly.", {"provider": self.name})


def build_completion_source(provider: Optional[str] = None) -> CompletionSource:
    """
    Create the configured completion source, wrapped with idle-timeout and
    retry protection.

    Args:
        provider: openai | ollama | rule_based (defaults to settings.llm_provider)
    """
    from .resilience import ResilientCompletionSource
    from .rule_based_source import RuleBasedCompletionSource

    provider = (provider or settings.llm_provider).strip().lower()
    if provider == "openai":
        inner: CompletionSource = OpenAICompletionSource(
            max_tokens=settings.LLM_MAX_TOKENS,
            temperature=settings.LLM_TEMPERATURE,
        )
    elif provider == "ollama":
        inner = OllamaCompletionSource(
            max_tokens=settings.LLM_MAX_TOKENS,
            temperature=settings.LLM_TEMPERATURE,
        )
    elif provider == "rule_based":
        inner = RuleBasedCompletionSource()
    else:
        raise ValueError(f"Unknown LLM provider: {provider}")

    logger.info(f"✓ LLM provider: {inner.name}")
    return ResilientCompletionSource(
        inner,
        idle_timeout=settings.LLM_STREAM_IDLE_TIMEOUT,
        max_retries=settings.LLM_MAX_RETRIES,
        base_delay=settings.LLM_RETRY_BASE_DELAY,
    )
