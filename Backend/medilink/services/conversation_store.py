from datetime import UTC, datetime
import logging

from fastapi import Depends
from sqlalchemy import or_, select
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from medilink.core.errors import SessionCreationError
from medilink.db.models import (
    ChatMessageRecord,
    ChatSessionRecord,
    MedicalAnalysisRecord,
    PatientProfileRecord,
)
from medilink.db.session import get_db_session
from medilink.models.chat import ChatMessage, ConversationPhase, MedicalRecords

logger = logging.getLogger(__name__)


def to_chat_message(record: ChatMessageRecord) -> ChatMessage:
    return ChatMessage(
        id=str(record.id),
        role=record.role,
        content=record.content,
        message_type=record.message_type,
        metadata=record.message_metadata or {},
        expects_severity_rating=bool(record.expects_severity_rating),
        created_at=record.created_at,
    )


class ConversationStore:
    """Chat sessions, turns and analyses on top of one SQLAlchemy session."""

    def __init__(self, db: Session) -> None:
        self._db = db

    def create_session(self, patient_id: str, patient_name: str, patient_email: str) -> ChatSessionRecord:
        record = ChatSessionRecord(
            patient_id=patient_id,
            patient_name=patient_name,
            patient_email=patient_email,
            phase=ConversationPhase.initial,
        )
        try:
            self._db.add(record)
            self._db.commit()
        except SQLAlchemyError as exc:
            self._db.rollback()
            raise SessionCreationError("Failed to create chat session") from exc
        self._db.refresh(record)
        return record

    def get_session(self, session_id: str) -> ChatSessionRecord | None:
        return self._db.get(ChatSessionRecord, session_id)

    def save_message(
        self,
        session_id: str,
        message: ChatMessage,
        phase: ConversationPhase | None = None,
    ) -> ChatMessageRecord:
        """Insert a turn; when ``phase`` is given it is committed with the turn."""
        now = datetime.now(UTC)
        record = ChatMessageRecord(
            session_id=session_id,
            role=message.role.value,
            content=message.content,
            message_type=message.message_type.value,
            message_metadata=dict(message.metadata),
            expects_severity_rating=message.expects_severity_rating,
            created_at=message.created_at or now,
        )
        try:
            self._db.add(record)
            session = self._db.get(ChatSessionRecord, session_id)
            if session is not None:
                session.updated_at = now
                if phase is not None:
                    session.phase = phase
            self._db.commit()
        except SQLAlchemyError:
            self._db.rollback()
            raise
        self._db.refresh(record)
        return record

    def fetch_medical_records(self, patient_id: str) -> MedicalRecords | None:
        profile = self._db.get(PatientProfileRecord, patient_id)
        if profile is None:
            return None
        return MedicalRecords(
            chronic_diseases=profile.chronic_diseases or [],
            allergies=profile.allergies or [],
            past_medications=profile.past_medications or [],
            scans=profile.scans or [],
        )

    def save_analysis(
        self,
        session_id: str,
        patient_id: str,
        symptoms: list[str],
        severity_scores: dict[str, int],
        analysis_result: str,
        medical_history_reviewed: MedicalRecords | None,
    ) -> MedicalAnalysisRecord:
        existing = self.get_analysis(session_id)
        if existing is not None:
            logger.warning("Session %s already has a medical analysis; keeping the first one", session_id)
            return existing

        record = MedicalAnalysisRecord(
            session_id=session_id,
            patient_id=patient_id,
            symptoms=list(symptoms),
            severity_scores=dict(severity_scores),
            analysis_result=analysis_result,
            medical_history_reviewed=(
                medical_history_reviewed.model_dump() if medical_history_reviewed is not None else None
            ),
        )
        try:
            self._db.add(record)
            self._db.commit()
        except SQLAlchemyError:
            self._db.rollback()
            raise
        self._db.refresh(record)
        return record

    def get_analysis(self, session_id: str) -> MedicalAnalysisRecord | None:
        statement = select(MedicalAnalysisRecord).where(MedicalAnalysisRecord.session_id == session_id)
        return self._db.execute(statement).scalars().first()

    def list_messages(self, session_id: str) -> list[ChatMessageRecord]:
        statement = (
            select(ChatMessageRecord)
            .where(ChatMessageRecord.session_id == session_id)
            .order_by(ChatMessageRecord.created_at.asc(), ChatMessageRecord.id.asc())
        )
        return list(self._db.execute(statement).scalars().all())

    def list_sessions(self, search: str | None = None) -> list[ChatSessionRecord]:
        statement = select(ChatSessionRecord).order_by(ChatSessionRecord.updated_at.desc())
        if search:
            pattern = f"%{search.strip()}%"
            statement = statement.where(
                or_(
                    ChatSessionRecord.patient_name.ilike(pattern),
                    ChatSessionRecord.patient_email.ilike(pattern),
                )
            )
        return list(self._db.execute(statement).scalars().all())


def get_conversation_store(db: Session = Depends(get_db_session)) -> ConversationStore:
    return ConversationStore(db)
