"""
Streaming Response Assembler
Accumulates streamed completion fragments for one assistant turn and,
once the stream is complete, splits the finished reply into the text shown
to the user and the structured JSON payload embedded in it.

Structured parsing happens only in finish(). Intermediate buffers may hold
half a JSON object and are never parsed.
"""

import json
import re
from dataclasses import dataclass
from typing import Any, Optional, Tuple

from loguru import logger
from pydantic import ValidationError

from ..errors import MalformedExtraction
from ..schemas.chat_schemas import ExtractionPayload

CODE_FENCE = re.compile(r"```(?:json|JSON)?[ \t]*")
JSON_LABEL = re.compile(r"(?im)^\s*json\s*:\s*$|\bjson\s*:\s*(?=\{)")
TRAILING_COMMA = re.compile(r",\s*([}\]])")
SMART_QUOTES = str.maketrans({"“": '"', "”": '"'})
PAYLOAD_KEYS = {"conversation_stage", "data_collected", "assistant_message", "is_final_recommendation"}


@dataclass
class AssembledResponse:
    """Outcome of one finished assistant turn"""
    raw_text: str
    display_text: str
    payload: Optional[ExtractionPayload] = None
    error: Optional[str] = None


def sanitize_response(text: str) -> str:
    """Remove markdown code fences and 'JSON:' labels around the payload"""
    cleaned = CODE_FENCE.sub("", text)
    cleaned = JSON_LABEL.sub("", cleaned)
    return cleaned.strip()


def find_json_span(text: str) -> Optional[Tuple[int, int]]:
    """
    Greedy outermost object span: first '{' through last '}'.

    Returns:
        (start, end) with end exclusive, or None when no span exists
    """
    start = text.find("{")
    end = text.rfind("}")
    if start == -1 or end < start:
        return None
    return start, end + 1


def _loads(candidate: str) -> Any:
    try:
        return json.loads(candidate)
    except json.JSONDecodeError:
        repaired = TRAILING_COMMA.sub(r"\1", candidate.translate(SMART_QUOTES))
        return json.loads(repaired)


def parse_structured_payload(text: str) -> Tuple[Optional[ExtractionPayload], Optional[Tuple[int, int]], Optional[str]]:
    """
    Extract the structured payload from a finished, sanitized reply

    Returns:
        (payload, span, error) - payload None with an error message when
        the reply has no usable JSON object
    """
    span = find_json_span(text)
    if span is None:
        return None, None, "no JSON object in reply"

    try:
        data = _loads(text[span[0]:span[1]])
    except json.JSONDecodeError as e:
        return None, span, f"invalid JSON: {e.msg} at position {e.pos}"

    if not isinstance(data, dict) or not PAYLOAD_KEYS & set(data):
        return None, span, "JSON object is not an extraction payload"

    try:
        return ExtractionPayload.model_validate(data), span, None
    except ValidationError as e:
        return None, span, f"payload failed validation: {e.error_count()} errors"


def _collapse_blank_lines(text: str) -> str:
    return re.sub(r"\n{3,}", "\n\n", text).strip()


class StreamingResponseAssembler:
    """
    Append-only buffer for one streamed assistant turn

    Usage:
        assembler = StreamingResponseAssembler(session_id)
        for fragment in stream:
            assembler.append(fragment)
        result = assembler.finish()
    """

    def __init__(self, session_id: str):
        self.session_id = session_id
        self._parts = []
        self._length = 0
        self._result: Optional[AssembledResponse] = None
        self.fragment_count = 0

    @property
    def text(self) -> str:
        return "".join(self._parts)

    @property
    def is_complete(self) -> bool:
        return self._result is not None

    @property
    def is_typing(self) -> bool:
        """Typing indicator: stream still open and something already arrived"""
        return not self.is_complete and self._length > 0

    def append(self, fragment: str) -> None:
        if self.is_complete:
            raise RuntimeError(f"Response for session {self.session_id} is already complete")
        if not fragment:
            return
        self._parts.append(fragment)
        self._length += len(fragment)
        self.fragment_count += 1

    def finish(self) -> AssembledResponse:
        """Close the stream and parse the finished reply. Idempotent."""
        if self._result is not None:
            return self._result

        raw = self.text
        sanitized = sanitize_response(raw)
        payload, span, error = parse_structured_payload(sanitized)

        if span is not None:
            outside = _collapse_blank_lines(sanitized[:span[0]] + "\n" + sanitized[span[1]:])
        else:
            outside = _collapse_blank_lines(sanitized)

        if payload is not None:
            display = outside or payload.assistant_message or ""
        else:
            display = outside or _collapse_blank_lines(sanitized)
            failure = MalformedExtraction(details={"sessionId": self.session_id, "reason": error})
            logger.warning(f"{failure.error_code.value} {failure.message}: {failure.details}")

        self._result = AssembledResponse(raw_text=raw, display_text=display, payload=payload, error=error)
        logger.debug(
            f"Assembled reply for session {self.session_id}: {self.fragment_count} fragments, "
            f"{len(raw)} chars, payload={'yes' if payload else 'no'}"
        )
        return self._result

