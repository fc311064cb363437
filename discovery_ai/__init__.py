# discovery_ai/__init__.py
"""
AIR Discovery Conversational Profiling Service

Real-time travel-profile interview over WebSocket:
- Streaming AI assistant replies (OpenAI, Ollama or offline rule-based)
- Structured profile extraction (origin, budget, activities, purpose)
- Destination recommendation once the profile is complete
- Resumable sessions with a 24h idle TTL (Redis or in-memory)

User Journeys Supported:
1. Start a chat and get interviewed
2. Drop the connection and resume where you left off
3. Get a destination recommendation
4. Browse past conversations
"""

__version__ = "1.0.0"
__author__ = "AIR Discovery Team"

# Package structure:
# discovery_ai/
# ├── __init__.py           <- This file
# ├── main.py               <- FastAPI application entry
# ├── config.py             <- Configuration settings
# ├── errors.py             <- Error taxonomy
# │
# ├── agents/
# │   └── chat_controller.py    <- Chat session state machine
# │
# ├── api/                  <- FastAPI Routers
# │   ├── auth.py           <- JWT verification
# │   ├── websocket.py      <- WS /api/ai/chat/ws
# │   └── sessions.py       <- /api/ai/sessions
# │
# ├── interfaces/
# │   └── session_store.py  <- Redis / in-memory session store
# │
# ├── llm/                  <- LLM Components
# │   ├── prompts.py            <- System prompt, greeting, follow-ups
# │   ├── completion_source.py  <- OpenAI / Ollama streaming
# │   ├── resilience.py         <- Idle timeout + retry guard
# │   ├── profile_extractor.py  <- Rule-based PT-BR extraction
# │   ├── rule_based_source.py  <- Offline interviewer
# │   └── response_assembler.py <- Stream buffer + JSON extraction
# │
# ├── algorithms/
# │   ├── profile_accumulator.py <- Merge + readiness gate
# │   └── destination_matcher.py <- Fallback destination choice
# │
# ├── schemas/
# │   └── chat_schemas.py   <- Pydantic models
# │
# └── utils/
#     └── chat_helpers.py   <- Clock, dedup window, text helpers
