# llm/__init__.py
"""
LLM Components Package

Contains LLM-powered components:
- completion_source: Streaming OpenAI / Ollama providers
- resilience: Idle timeout and retry guard for streams
- rule_based_source: Offline interviewer
- profile_extractor: Rule-based PT-BR profile extraction
- response_assembler: Stream buffer and structured payload extraction
- prompts: System prompt, greeting and follow-up questions
"""

from .completion_source import (
    CompletionFragment,
    CompletionSource,
    OpenAICompletionSource,
    OllamaCompletionSource,
    build_completion_source,
)
from .resilience import ResilientCompletionSource
from .rule_based_source import RuleBasedCompletionSource
from .profile_extractor import ProfileExtractor, profile_extractor
from .response_assembler import StreamingResponseAssembler, AssembledResponse
from .prompts import PromptContext, build_prompt_context

__all__ = [
    "CompletionFragment",
    "CompletionSource",
    "OpenAICompletionSource",
    "OllamaCompletionSource",
    "build_completion_source",
    "ResilientCompletionSource",
    "RuleBasedCompletionSource",
    "ProfileExtractor",
    "profile_extractor",
    "StreamingResponseAssembler",
    "AssembledResponse",
    "PromptContext",
    "build_prompt_context",
]
