from fastapi import APIRouter, Depends, HTTPException, status

from medilink.core.config import Settings, get_settings
from medilink.core.errors import ConversationBusyError, PatientMismatchError, SessionNotFoundError
from medilink.core.security import enforce_patient_message_limit, rate_limit_conversation
from medilink.models.chat import ConversationState, SendMessageRequest
from medilink.services.conversation import (
    ConversationController,
    SessionLockRegistry,
    get_session_locks,
)
from medilink.services.conversation_store import ConversationStore, get_conversation_store
from medilink.services.medical_chat import MedicalChatService, get_medical_chat_service

router = APIRouter(prefix="/conversations", tags=["conversations"])


def _resume(
    store: ConversationStore,
    service: MedicalChatService,
    session_id: str,
) -> ConversationController:
    try:
        return ConversationController.resume(store, service, session_id)
    except SessionNotFoundError as exc:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail=exc.message) from exc


@router.get("/new", response_model=ConversationState)
def new_conversation(
    store: ConversationStore = Depends(get_conversation_store),
    service: MedicalChatService = Depends(get_medical_chat_service),
) -> ConversationState:
    return ConversationController(store, service).state()


@router.get("/{session_id}", response_model=ConversationState)
def get_conversation(
    session_id: str,
    store: ConversationStore = Depends(get_conversation_store),
    service: MedicalChatService = Depends(get_medical_chat_service),
    _: None = Depends(rate_limit_conversation),
) -> ConversationState:
    return _resume(store, service, session_id).state()


@router.post("/messages", response_model=ConversationState)
def send_message(
    payload: SendMessageRequest,
    store: ConversationStore = Depends(get_conversation_store),
    service: MedicalChatService = Depends(get_medical_chat_service),
    locks: SessionLockRegistry = Depends(get_session_locks),
    settings: Settings = Depends(get_settings),
    _: None = Depends(rate_limit_conversation),
) -> ConversationState:
    enforce_patient_message_limit(payload.patient_id, settings)

    try:
        with locks.hold(payload.session_id):
            if payload.session_id:
                controller = _resume(store, service, payload.session_id)
            else:
                controller = ConversationController(store, service)

            controller.send_message(
                payload.text,
                patient_id=payload.patient_id,
                patient_name=payload.patient_name,
                patient_email=payload.patient_email,
                severity_score=payload.severity_score,
            )
    except ConversationBusyError as exc:
        raise HTTPException(status_code=status.HTTP_409_CONFLICT, detail=exc.message) from exc
    except PatientMismatchError as exc:
        raise HTTPException(status_code=status.HTTP_403_FORBIDDEN, detail=exc.message) from exc

    return controller.state()
