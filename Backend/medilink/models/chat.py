from datetime import datetime
from enum import Enum
from typing import Any

from pydantic import BaseModel, ConfigDict, Field
from pydantic.alias_generators import to_camel


class ChatRole(str, Enum):
    user = "user"
    assistant = "assistant"
    system = "system"


class MessageType(str, Enum):
    text = "text"
    question = "question"
    scale_response = "scale_response"


class ConversationPhase(str, Enum):
    initial = "initial"
    questioning = "questioning"
    analysis = "analysis"

    @property
    def rank(self) -> int:
        return _PHASE_ORDER.index(self)


_PHASE_ORDER = [ConversationPhase.initial, ConversationPhase.questioning, ConversationPhase.analysis]


class CamelModel(BaseModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)


class MedicalRecords(CamelModel):
    chronic_diseases: list[str] = Field(default_factory=list)
    allergies: list[str] = Field(default_factory=list)
    past_medications: list[str] = Field(default_factory=list)
    scans: list[Any] = Field(default_factory=list)


class HistoryTurn(CamelModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True, extra="allow")

    role: ChatRole
    content: str


class MedicalChatRequest(CamelModel):
    message: str = Field(..., min_length=1, max_length=12000)
    patient_id: str | None = Field(default=None, max_length=64)
    session_id: str | None = Field(default=None, max_length=64)
    conversation_history: list[HistoryTurn] = Field(default_factory=list)
    medical_records: MedicalRecords | None = None
    phase: ConversationPhase = ConversationPhase.initial


class MedicalChatResponse(CamelModel):
    reply: str
    session_id: str | None = None
    phase: ConversationPhase
    expects_severity_rating: bool = False


class MedicalChatErrorResponse(CamelModel):
    error: str
    reply: str | None = None
    is_rate_limit: bool | None = None
    is_payment_required: bool | None = None


class ChatMessage(CamelModel):
    id: str
    role: ChatRole
    content: str
    message_type: MessageType = MessageType.text
    metadata: dict[str, Any] = Field(default_factory=dict)
    expects_severity_rating: bool = False
    created_at: datetime | None = None

    @property
    def severity(self) -> int | None:
        value = self.metadata.get("severity")
        return value if isinstance(value, int) else None


class Notification(CamelModel):
    title: str = "Error"
    description: str
    variant: str = "destructive"


class SendMessageRequest(CamelModel):
    session_id: str | None = Field(default=None, max_length=64, pattern=r"^[a-zA-Z0-9-]+$")
    text: str = Field(default="", max_length=12000)
    patient_id: str = Field(..., min_length=1, max_length=64)
    patient_name: str = Field(..., min_length=1, max_length=200)
    patient_email: str = Field(..., min_length=3, max_length=320)
    severity_score: int | None = Field(default=None, ge=0, le=5)


class ConversationState(CamelModel):
    session_id: str | None = None
    phase: ConversationPhase
    loading: bool = False
    awaiting_severity_rating: bool = False
    messages: list[ChatMessage] = Field(default_factory=list)
    notifications: list[Notification] = Field(default_factory=list)


class ChatSessionSummary(CamelModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True, from_attributes=True)

    id: str
    patient_id: str
    patient_name: str
    patient_email: str
    phase: ConversationPhase
    created_at: datetime
    updated_at: datetime


class ChatSessionListResponse(CamelModel):
    total: int
    sessions: list[ChatSessionSummary] = Field(default_factory=list)


class ChatMessageEntry(CamelModel):
    id: int
    session_id: str
    role: ChatRole
    content: str
    message_type: MessageType
    metadata: dict[str, Any] = Field(default_factory=dict)
    created_at: datetime


class ChatSessionMessagesResponse(CamelModel):
    session_id: str
    total_messages: int
    messages: list[ChatMessageEntry] = Field(default_factory=list)


class MedicalAnalysisResponse(CamelModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True, from_attributes=True)

    id: int
    session_id: str
    patient_id: str
    symptoms: list[str] = Field(default_factory=list)
    severity_scores: dict[str, int] = Field(default_factory=dict)
    analysis_result: str
    recommendations: str | None = None
    medical_history_reviewed: MedicalRecords | None = None
    created_at: datetime
