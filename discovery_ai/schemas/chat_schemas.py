# schemas/chat_schemas.py
"""
Pydantic v2 schemas for the conversational profiling service
Sessions, messages, the collected travel profile and wire payloads
"""

import re
from datetime import datetime
from enum import Enum
from typing import Any, Dict, Iterable, List, Optional

from pydantic import BaseModel, ConfigDict, Field, field_validator

from ..utils.chat_helpers import dedup_key, new_id, parse_brl_amount, truncate_text, utcnow

IATA_PATTERN = re.compile(r"^[A-Z]{3}$")
BRL_AMOUNT = re.compile(r"\d[\d.,]*")


# ============================================
# Enums
# ============================================

class MessageRole(str, Enum):
    USER = "user"
    ASSISTANT = "assistant"
    SYSTEM = "system"


class ConversationStage(str, Enum):
    COLLECTING_ORIGIN = "collecting_origin"
    COLLECTING_BUDGET = "collecting_budget"
    COLLECTING_ACTIVITIES = "collecting_activities"
    COLLECTING_PURPOSE = "collecting_purpose"
    RECOMMENDATION_READY = "recommendation_ready"


# ============================================
# Field normalizers
# ============================================

def normalize_tags(values: Optional[Iterable[Any]]) -> List[str]:
    """
    Case-normalize a set-valued field.

    Lower-cases, trims, collapses inner whitespace, drops blanks and
    duplicates and returns the result sorted so equal sets compare equal.
    """
    if values is None:
        return []
    if isinstance(values, str):
        values = [values]
    tags = set()
    for value in values:
        if value is None:
            continue
        tag = " ".join(str(value).split()).lower()
        if tag:
            tags.add(tag)
    return sorted(tags)


def normalize_text(value: Any) -> Optional[str]:
    if value is None:
        return None
    text = " ".join(str(value).split())
    return text or None


def normalize_iata(value: Any) -> Optional[str]:
    text = normalize_text(value)
    if text is None:
        return None
    code = text.upper()
    return code if IATA_PATTERN.match(code) else None


def normalize_budget(value: Any) -> Optional[int]:
    """
    Coerce a budget to non-negative integer cents; anything else is absent.

    Numbers and bare digit strings are already cents. Formatted strings
    ("R$ 3.000,00", "3.000") are amounts in reais.
    """
    if value is None or isinstance(value, bool):
        return None
    if isinstance(value, str):
        text = value.strip()
        if text.isdigit():
            return int(text)
        amount = BRL_AMOUNT.search(text)
        return parse_brl_amount(amount.group(0)) if amount else None
    if isinstance(value, (int, float)):
        cents = int(round(value))
        return cents if cents >= 0 else None
    return None


# ============================================
# Travel profile
# ============================================

class Destination(BaseModel):
    """Recommended destination"""
    name: str
    iata: Optional[str] = None

    @field_validator("iata", mode="before")
    @classmethod
    def _iata(cls, value: Any) -> Optional[str]:
        return normalize_iata(value)

    def label(self) -> str:
        return f"{self.name} ({self.iata})" if self.iata else self.name


class CollectedData(BaseModel):
    """Travel profile accumulated across turns"""
    origin_name: Optional[str] = None
    origin_iata: Optional[str] = None
    budget_in_brl: Optional[int] = None  # integer cents
    activities: List[str] = Field(default_factory=list)
    purpose: Optional[str] = None
    hobbies: List[str] = Field(default_factory=list)

    @field_validator("origin_name", "purpose", mode="before")
    @classmethod
    def _text(cls, value: Any) -> Optional[str]:
        return normalize_text(value)

    @field_validator("origin_iata", mode="before")
    @classmethod
    def _iata(cls, value: Any) -> Optional[str]:
        return normalize_iata(value)

    @field_validator("budget_in_brl", mode="before")
    @classmethod
    def _budget(cls, value: Any) -> Optional[int]:
        return normalize_budget(value)

    @field_validator("activities", "hobbies", mode="before")
    @classmethod
    def _tags(cls, value: Any) -> List[str]:
        return normalize_tags(value)


class ProfileUpdate(CollectedData):
    """
    Partial profile extracted from one assistant reply.

    Same fields as CollectedData plus the destination the model may
    propose once the profile is complete. Absent fields are None/empty.
    """
    model_config = ConfigDict(extra="ignore")

    destination_name: Optional[str] = None
    destination_iata: Optional[str] = None

    @field_validator("destination_name", mode="before")
    @classmethod
    def _destination_name(cls, value: Any) -> Optional[str]:
        return normalize_text(value)

    @field_validator("destination_iata", mode="before")
    @classmethod
    def _destination_iata(cls, value: Any) -> Optional[str]:
        return normalize_iata(value)

    def destination(self) -> Optional[Destination]:
        if not self.destination_name:
            return None
        return Destination(name=self.destination_name, iata=self.destination_iata)


class ExtractionPayload(BaseModel):
    """Structured JSON block embedded in a finished assistant reply"""
    model_config = ConfigDict(extra="ignore")

    conversation_stage: Optional[ConversationStage] = None
    data_collected: ProfileUpdate = Field(default_factory=ProfileUpdate)
    next_question_key: Optional[str] = None
    assistant_message: Optional[str] = None
    is_final_recommendation: bool = False

    @field_validator("conversation_stage", mode="before")
    @classmethod
    def _stage(cls, value: Any) -> Optional[str]:
        # Unknown stages (e.g. "error") are treated as absent
        if value in {stage.value for stage in ConversationStage}:
            return value
        return None

    @field_validator("data_collected", mode="before")
    @classmethod
    def _data(cls, value: Any) -> Any:
        return value or {}

    @field_validator("assistant_message", mode="before")
    @classmethod
    def _message(cls, value: Any) -> Optional[str]:
        if value is None:
            return None
        text = str(value).strip()
        return text or None


# ============================================
# Session
# ============================================

class ChatMessage(BaseModel):
    """One conversation turn"""
    id: str = Field(default_factory=new_id)
    role: MessageRole
    content: str
    timestamp: datetime = Field(default_factory=utcnow)
    metadata: Optional[Dict[str, Any]] = None

    def to_client_dict(self) -> Dict[str, Any]:
        data = {
            "id": self.id,
            "role": self.role.value,
            "content": self.content,
            "timestamp": self.timestamp.isoformat(),
        }
        if self.metadata:
            data["metadata"] = self.metadata
        return data


class ChatSession(BaseModel):
    """Persisted conversation with its accumulated travel profile"""
    session_id: str = Field(default_factory=new_id)
    user_id: str
    messages: List[ChatMessage] = Field(default_factory=list)
    collected_data: CollectedData = Field(default_factory=CollectedData)
    conversation_stage: ConversationStage = ConversationStage.COLLECTING_ORIGIN

    # Advisory counters
    current_question_index: int = 0
    questions_asked: int = 0
    total_questions_available: int = 8

    interview_complete: bool = False
    recommended_destination: Optional[Destination] = None

    created_at: datetime = Field(default_factory=utcnow)
    updated_at: datetime = Field(default_factory=utcnow)
    completed_at: Optional[datetime] = None

    def touch(self, now: Optional[datetime] = None) -> None:
        self.updated_at = now or utcnow()

    def is_owned_by(self, user_id: str) -> bool:
        return str(self.user_id) == str(user_id)

    def append_message(
        self,
        role: MessageRole,
        content: str,
        metadata: Optional[Dict[str, Any]] = None,
        now: Optional[datetime] = None,
    ) -> Optional[ChatMessage]:
        """
        Append a message unless it repeats the previous one.

        Returns:
            The stored ChatMessage, or None when (role, trimmed content)
            equals the last message and nothing was appended.
        """
        content = content.strip()
        if self.messages:
            last = self.messages[-1]
            if dedup_key(last.role.value, last.content) == dedup_key(role.value, content):
                return None
        message = ChatMessage(role=role, content=content, metadata=metadata, timestamp=now or utcnow())
        self.messages.append(message)
        self.touch(message.timestamp)
        return message

    def complete_interview(self, destination: Optional[Destination], now: Optional[datetime] = None) -> bool:
        """Flip interview_complete once. Returns False if it was already complete."""
        if self.interview_complete:
            return False
        now = now or utcnow()
        self.interview_complete = True
        self.recommended_destination = destination
        self.conversation_stage = ConversationStage.RECOMMENDATION_READY
        self.completed_at = now
        self.touch(now)
        return True

    def last_message(self, role: Optional[MessageRole] = None) -> Optional[ChatMessage]:
        for message in reversed(self.messages):
            if role is None or message.role == role:
                return message
        return None

    @property
    def interview_efficiency(self) -> float:
        """Required fields gathered per question asked, capped at 1.0"""
        if not self.questions_asked:
            return 0.0
        # 4 required profile fields
        return round(min(1.0, 4 / self.questions_asked), 2)

    def summary(self, max_length: int = 100) -> str:
        first_user = next((m for m in self.messages if m.role == MessageRole.USER), None)
        if first_user is None:
            return "Nova conversa"
        return truncate_text(first_user.content, max_length)

    def to_client_dict(self, include_messages: bool = True) -> Dict[str, Any]:
        """camelCase view sent to clients"""
        data: Dict[str, Any] = {
            "sessionId": self.session_id,
            "userId": self.user_id,
            "collectedData": self.collected_data.model_dump(),
            "conversationStage": self.conversation_stage.value,
            "currentQuestionIndex": self.current_question_index,
            "questionsAsked": self.questions_asked,
            "totalQuestionsAvailable": self.total_questions_available,
            "interviewEfficiency": self.interview_efficiency,
            "interviewComplete": self.interview_complete,
            "recommendedDestination": (
                self.recommended_destination.model_dump() if self.recommended_destination else None
            ),
            "messageCount": len(self.messages),
            "createdAt": self.created_at.isoformat(),
            "updatedAt": self.updated_at.isoformat(),
            "completedAt": self.completed_at.isoformat() if self.completed_at else None,
        }
        if include_messages:
            data["messages"] = [m.to_client_dict() for m in self.messages]
        return data


# ============================================
# Wire payloads
# ============================================

class StreamChunk(BaseModel):
    """Outbound `chatResponse` payload"""
    model_config = ConfigDict(populate_by_name=True)

    content: str = ""
    is_complete: bool = Field(False, alias="isComplete")
    session_id: str = Field(..., alias="sessionId")
    metadata: Optional[Dict[str, Any]] = None

    def to_event(self) -> Dict[str, Any]:
        return self.model_dump(by_alias=True, exclude_none=True, mode="json")


class StartChatRequest(BaseModel):
    model_config = ConfigDict(populate_by_name=True, extra="ignore")

    session_id: Optional[str] = Field(None, alias="sessionId")


class SendMessageRequest(BaseModel):
    model_config = ConfigDict(extra="ignore")

    content: str = Field(..., min_length=1)

    @field_validator("content", mode="before")
    @classmethod
    def _strip(cls, value: Any) -> Any:
        return value.strip() if isinstance(value, str) else value


class AuthenticateRequest(BaseModel):
    model_config = ConfigDict(extra="ignore")

    token: str = Field(..., min_length=1)


class SessionSummary(BaseModel):
    """Row in the session history list"""
    model_config = ConfigDict(populate_by_name=True)

    session_id: str = Field(..., alias="sessionId")
    user_id: str = Field(..., alias="userId")
    start_time: datetime = Field(..., alias="startTime")
    last_updated: datetime = Field(..., alias="lastUpdated")
    summary: str
    message_count: int = Field(..., alias="messageCount")
    interview_complete: bool = Field(..., alias="interviewComplete")
    recommended_destination: Optional[Destination] = Field(None, alias="recommendedDestination")

    @classmethod
    def from_session(cls, session: ChatSession) -> "SessionSummary":
        return cls(
            session_id=session.session_id,
            user_id=session.user_id,
            start_time=session.created_at,
            last_updated=session.updated_at,
            summary=session.summary(),
            message_count=len(session.messages),
            interview_complete=session.interview_complete,
            recommended_destination=session.recommended_destination,
        )
