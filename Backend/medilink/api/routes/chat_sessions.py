from fastapi import APIRouter, Depends, HTTPException, Query

from medilink.core.security import rate_limit_conversation
from medilink.models.chat import (
    ChatMessageEntry,
    ChatSessionListResponse,
    ChatSessionMessagesResponse,
    ChatSessionSummary,
    MedicalAnalysisResponse,
)
from medilink.services.conversation_store import ConversationStore, get_conversation_store

router = APIRouter(prefix="/chat-sessions", tags=["chat-sessions"])


@router.get("", response_model=ChatSessionListResponse)
def list_chat_sessions(
    search: str | None = Query(default=None, max_length=200),
    store: ConversationStore = Depends(get_conversation_store),
    _: None = Depends(rate_limit_conversation),
) -> ChatSessionListResponse:
    sessions = store.list_sessions(search)
    return ChatSessionListResponse(
        total=len(sessions),
        sessions=[ChatSessionSummary.model_validate(item) for item in sessions],
    )


@router.get("/{session_id}/messages", response_model=ChatSessionMessagesResponse)
def get_session_messages(
    session_id: str,
    store: ConversationStore = Depends(get_conversation_store),
    _: None = Depends(rate_limit_conversation),
) -> ChatSessionMessagesResponse:
    if store.get_session(session_id) is None:
        raise HTTPException(status_code=404, detail="Chat session not found")

    rows = store.list_messages(session_id)
    return ChatSessionMessagesResponse(
        session_id=session_id,
        total_messages=len(rows),
        messages=[
            ChatMessageEntry(
                id=item.id,
                session_id=item.session_id,
                role=item.role,
                content=item.content,
                message_type=item.message_type,
                metadata=item.message_metadata or {},
                created_at=item.created_at,
            )
            for item in rows
        ],
    )


@router.get("/{session_id}/analysis", response_model=MedicalAnalysisResponse)
def get_session_analysis(
    session_id: str,
    store: ConversationStore = Depends(get_conversation_store),
    _: None = Depends(rate_limit_conversation),
) -> MedicalAnalysisResponse:
    analysis = store.get_analysis(session_id)
    if analysis is None:
        raise HTTPException(status_code=404, detail="No AI analysis available for this session yet")
    return MedicalAnalysisResponse.model_validate(analysis)
