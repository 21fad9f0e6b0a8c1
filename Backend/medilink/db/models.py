from datetime import UTC, datetime
from typing import Any
from uuid import uuid4

from sqlalchemy import Boolean, DateTime, Enum, ForeignKey, Integer, String, Text
from sqlalchemy.orm import Mapped, mapped_column, relationship
from sqlalchemy.types import JSON

from medilink.db.base import Base
from medilink.models.chat import ConversationPhase


def _utcnow() -> datetime:
    return datetime.now(UTC)


class PatientProfileRecord(Base):
    __tablename__ = "profiles"

    id: Mapped[str] = mapped_column(String(64), primary_key=True)
    name: Mapped[str | None] = mapped_column(String(200), nullable=True)
    email: Mapped[str | None] = mapped_column(String(320), nullable=True)
    chronic_diseases: Mapped[list[str]] = mapped_column(JSON, default=list)
    allergies: Mapped[list[str]] = mapped_column(JSON, default=list)
    past_medications: Mapped[list[str]] = mapped_column(JSON, default=list)
    scans: Mapped[list[dict[str, Any]]] = mapped_column(JSON, default=list)


class ChatSessionRecord(Base):
    __tablename__ = "chat_sessions"

    id: Mapped[str] = mapped_column(String(64), primary_key=True, default=lambda: str(uuid4()))
    patient_id: Mapped[str] = mapped_column(String(64), index=True)
    patient_name: Mapped[str] = mapped_column(String(200))
    patient_email: Mapped[str] = mapped_column(String(320), index=True)
    phase: Mapped[ConversationPhase] = mapped_column(
        Enum(
            ConversationPhase,
            name="conversation_phase",
            native_enum=False,
            values_callable=lambda enum: [member.value for member in enum],
        ),
        default=ConversationPhase.initial,
    )
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=_utcnow)
    updated_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=_utcnow, index=True)

    messages: Mapped[list["ChatMessageRecord"]] = relationship(
        back_populates="session",
        cascade="all, delete-orphan",
        order_by="ChatMessageRecord.id",
    )
    analysis: Mapped["MedicalAnalysisRecord | None"] = relationship(
        back_populates="session",
        cascade="all, delete-orphan",
        uselist=False,
    )


class ChatMessageRecord(Base):
    __tablename__ = "chat_messages"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    session_id: Mapped[str] = mapped_column(ForeignKey("chat_sessions.id", ondelete="CASCADE"), index=True)
    role: Mapped[str] = mapped_column(String(20), index=True)
    content: Mapped[str] = mapped_column(Text)
    message_type: Mapped[str] = mapped_column(String(20), default="text")
    # "metadata" is reserved on declarative classes
    message_metadata: Mapped[dict[str, Any]] = mapped_column("metadata", JSON, default=dict)
    expects_severity_rating: Mapped[bool] = mapped_column(Boolean, default=False)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=_utcnow, index=True)

    session: Mapped[ChatSessionRecord] = relationship(back_populates="messages")


class MedicalAnalysisRecord(Base):
    __tablename__ = "medical_analyses"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    session_id: Mapped[str] = mapped_column(
        ForeignKey("chat_sessions.id", ondelete="CASCADE"),
        unique=True,
        index=True,
    )
    patient_id: Mapped[str] = mapped_column(String(64), index=True)
    symptoms: Mapped[list[str]] = mapped_column(JSON, default=list)
    severity_scores: Mapped[dict[str, int]] = mapped_column(JSON, default=dict)
    analysis_result: Mapped[str] = mapped_column(Text)
    recommendations: Mapped[str | None] = mapped_column(Text, nullable=True)
    medical_history_reviewed: Mapped[dict[str, Any] | None] = mapped_column(JSON, nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=_utcnow)

    session: Mapped[ChatSessionRecord] = relationship(back_populates="analysis")
