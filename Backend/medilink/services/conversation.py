from collections.abc import Iterator
from contextlib import contextmanager
from datetime import UTC, datetime
from functools import lru_cache
import logging
from threading import Lock
from uuid import uuid4

from sqlalchemy.exc import SQLAlchemyError

from medilink.core.config import get_settings
from medilink.core.errors import (
    ConversationBusyError,
    PatientMismatchError,
    PaymentRequiredError,
    RateLimitError,
    SessionCreationError,
    SessionNotFoundError,
)
from medilink.models.chat import (
    ChatMessage,
    ChatRole,
    ConversationPhase,
    ConversationState,
    HistoryTurn,
    MedicalChatRequest,
    MedicalRecords,
    MessageType,
    Notification,
)
from medilink.services.conversation_store import ConversationStore, to_chat_message
from medilink.services.medical_chat import MedicalChatService


GREETING = (
    "Hello! I'm MediAssist, your AI medical assistant. I'll help you understand your symptoms "
    "by asking some questions. What brings you here today?"
)
RATE_LIMIT_REPLY = "I'm receiving too many requests right now. Please wait a moment and try again."
PAYMENT_REQUIRED_REPLY = "The AI assistant is temporarily unavailable. Please contact support."
CONNECTION_ERROR_REPLY = "I apologize, but I'm having trouble connecting. Please try again."

logger = logging.getLogger(__name__)


def compute_next_phase(phase: ConversationPhase, question_count: int, threshold: int = 3) -> ConversationPhase:
    if phase == ConversationPhase.initial and question_count == 0:
        return ConversationPhase.questioning
    if phase == ConversationPhase.questioning and question_count >= threshold:
        return ConversationPhase.analysis
    return phase


class ConversationController:
    """Drives one patient conversation: turns, phase, session and analysis.

    One instance per conversation. Only one ``send_message`` may run at a
    time; an overlapping call raises ``ConversationBusyError``.
    """

    def __init__(
        self,
        store: ConversationStore,
        analysis_service: MedicalChatService,
        history_window: int | None = None,
        question_threshold: int | None = None,
    ) -> None:
        settings = get_settings()
        self._store = store
        self._analysis_service = analysis_service
        self._history_window = max(0, settings.chat_history_window if history_window is None else history_window)
        self._question_threshold = (
            settings.analysis_question_threshold if question_threshold is None else question_threshold
        )
        self._busy = Lock()
        self.initialize()

    @classmethod
    def resume(
        cls,
        store: ConversationStore,
        analysis_service: MedicalChatService,
        session_id: str,
        **kwargs,
    ) -> "ConversationController":
        session = store.get_session(session_id)
        if session is None:
            raise SessionNotFoundError(f"Chat session {session_id} not found")

        controller = cls(store, analysis_service, **kwargs)
        controller.session_id = session.id
        controller.patient_id = session.patient_id
        controller.phase = ConversationPhase(session.phase)
        controller.messages.extend(to_chat_message(record) for record in store.list_messages(session.id))
        return controller

    def initialize(self) -> None:
        self.messages: list[ChatMessage] = [
            ChatMessage(
                id="init",
                role=ChatRole.assistant,
                content=GREETING,
                message_type=MessageType.text,
            )
        ]
        self.phase = ConversationPhase.initial
        self.session_id: str | None = None
        self.patient_id: str | None = None
        self.loading = False
        self.notifications: list[Notification] = []

    @property
    def question_count(self) -> int:
        return sum(1 for message in self.messages if message.message_type == MessageType.question)

    @property
    def awaiting_severity_rating(self) -> bool:
        if self.phase != ConversationPhase.questioning:
            return False
        for message in reversed(self.messages):
            if message.role == ChatRole.assistant:
                return message.expects_severity_rating
        return False

    def state(self) -> ConversationState:
        return ConversationState(
            session_id=self.session_id,
            phase=self.phase,
            loading=self.loading,
            awaiting_severity_rating=self.awaiting_severity_rating,
            messages=list(self.messages),
            notifications=list(self.notifications),
        )

    def send_message(
        self,
        text: str,
        patient_id: str,
        patient_name: str,
        patient_email: str,
        severity_score: int | None = None,
    ) -> None:
        if not text.strip():
            return

        # a session stays bound to the patient it was created for
        if self.patient_id is not None and patient_id != self.patient_id:
            raise PatientMismatchError(f"Chat session {self.session_id} belongs to another patient")

        if not self._busy.acquire(blocking=False):
            raise ConversationBusyError("A message is already being sent in this conversation")

        self.loading = True
        try:
            self._send(text, patient_id, patient_name, patient_email, severity_score)
        finally:
            self.loading = False
            self._busy.release()

    def _send(
        self,
        text: str,
        patient_id: str,
        patient_name: str,
        patient_email: str,
        severity_score: int | None,
    ) -> None:
        if self.session_id is None:
            try:
                session = self._store.create_session(patient_id, patient_name, patient_email)
            except SessionCreationError as exc:
                logger.exception("Error creating chat session for patient %s", patient_id)
                self._notify(exc.message)
                return
            self.session_id = session.id
            self.patient_id = session.patient_id

        # context and question count are taken before the new turn is appended
        history = self.messages[-self._history_window:] if self._history_window else []
        question_count = self.question_count

        is_scale_response = severity_score is not None
        user_message = ChatMessage(
            id=uuid4().hex,
            role=ChatRole.user,
            content=text,
            message_type=MessageType.scale_response if is_scale_response else MessageType.text,
            metadata={"severity": severity_score} if is_scale_response else {},
            created_at=datetime.now(UTC),
        )
        self.messages.append(user_message)
        self._persist(user_message)

        try:
            medical_records = self._fetch_medical_records(patient_id)
            next_phase = compute_next_phase(self.phase, question_count, self._question_threshold)
            response = self._analysis_service.analyze(
                MedicalChatRequest(
                    message=text,
                    patient_id=patient_id,
                    session_id=self.session_id,
                    conversation_history=[
                        HistoryTurn(role=message.role, content=message.content) for message in history
                    ],
                    medical_records=medical_records,
                    phase=next_phase,
                )
            )
        except Exception as exc:
            logger.warning("Chat error in session %s: %s", self.session_id, exc)
            self._append_error_turn(exc)
            return

        assistant_message = ChatMessage(
            id=uuid4().hex,
            role=ChatRole.assistant,
            content=response.reply,
            message_type=MessageType.question if next_phase == ConversationPhase.questioning else MessageType.text,
            expects_severity_rating=response.expects_severity_rating,
            created_at=datetime.now(UTC),
        )
        self.messages.append(assistant_message)
        entered_analysis = next_phase == ConversationPhase.analysis and self.phase != ConversationPhase.analysis
        self.phase = next_phase
        self._persist(assistant_message, phase=next_phase)

        if entered_analysis:
            self._record_analysis(patient_id, response.reply, medical_records)

    def _fetch_medical_records(self, patient_id: str) -> MedicalRecords | None:
        try:
            return self._store.fetch_medical_records(patient_id)
        except SQLAlchemyError:
            logger.exception("Error fetching medical records for patient %s", patient_id)
            return None

    def _persist(self, message: ChatMessage, phase: ConversationPhase | None = None) -> None:
        try:
            record = self._store.save_message(self.session_id, message, phase=phase)
        except SQLAlchemyError:
            logger.exception("Error saving %s message in session %s", message.role.value, self.session_id)
            return
        message.id = str(record.id)

    def _record_analysis(
        self,
        patient_id: str,
        analysis_result: str,
        medical_records: MedicalRecords | None,
    ) -> None:
        symptoms = [message.content for message in self.messages if message.role == ChatRole.user]
        severity_scores: dict[str, int] = {}
        for message in self.messages:
            if message.severity is not None:
                severity_scores[message.content] = message.severity

        try:
            self._store.save_analysis(
                session_id=self.session_id,
                patient_id=patient_id,
                symptoms=symptoms,
                severity_scores=severity_scores,
                analysis_result=analysis_result,
                medical_history_reviewed=medical_records,
            )
        except SQLAlchemyError:
            logger.exception("Error saving medical analysis for session %s", self.session_id)

    def _append_error_turn(self, exc: Exception) -> None:
        if isinstance(exc, RateLimitError):
            content = RATE_LIMIT_REPLY
        elif isinstance(exc, PaymentRequiredError):
            content = PAYMENT_REQUIRED_REPLY
        else:
            content = CONNECTION_ERROR_REPLY

        self.messages.append(
            ChatMessage(
                id=f"{uuid4().hex}-error",
                role=ChatRole.assistant,
                content=content,
                message_type=MessageType.text,
                created_at=datetime.now(UTC),
            )
        )
        self._notify(str(exc) or "Failed to send message")

    def _notify(self, description: str) -> None:
        self.notifications.append(Notification(title="Error", description=description))


class SessionLockRegistry:
    """Serializes sends per chat session across requests.

    Entries only live while a send holds them, so the registry stays the
    size of the in-flight sessions.
    """

    def __init__(self) -> None:
        self._locks: dict[str, Lock] = {}
        self._holders: dict[str, int] = {}
        self._guard = Lock()

    @contextmanager
    def hold(self, session_id: str | None) -> Iterator[None]:
        if session_id is None:
            yield
            return

        with self._guard:
            lock = self._locks.setdefault(session_id, Lock())
            self._holders[session_id] = self._holders.get(session_id, 0) + 1
        acquired = lock.acquire(blocking=False)
        try:
            if not acquired:
                raise ConversationBusyError(f"A message is already being sent in session {session_id}")
            yield
        finally:
            if acquired:
                lock.release()
            self._forget(session_id)

    def _forget(self, session_id: str) -> None:
        with self._guard:
            remaining = self._holders[session_id] - 1
            if remaining:
                self._holders[session_id] = remaining
            else:
                del self._holders[session_id]
                del self._locks[session_id]

    def __len__(self) -> int:
        with self._guard:
            return len(self._locks)


@lru_cache
def get_session_locks() -> SessionLockRegistry:
    return SessionLockRegistry()
