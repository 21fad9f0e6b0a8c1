import logging

from fastapi import APIRouter, Depends
from fastapi.responses import JSONResponse

from medilink.core.errors import MediLinkError, PaymentRequiredError, RateLimitError
from medilink.core.security import rate_limit_medical_chat
from medilink.models.chat import MedicalChatErrorResponse, MedicalChatRequest, MedicalChatResponse
from medilink.services.medical_chat import MedicalChatService, get_medical_chat_service

GENERIC_ERROR_REPLY = "I apologize, but I encountered an error. Please try again."

logger = logging.getLogger(__name__)

router = APIRouter(tags=["medical-chat"])


def _error_response(status_code: int, body: MedicalChatErrorResponse) -> JSONResponse:
    return JSONResponse(
        status_code=status_code,
        content=body.model_dump(by_alias=True, exclude_none=True),
    )


@router.post(
    "/medical-chat",
    response_model=MedicalChatResponse,
    responses={
        402: {"model": MedicalChatErrorResponse},
        429: {"model": MedicalChatErrorResponse},
        500: {"model": MedicalChatErrorResponse},
    },
)
def medical_chat(
    payload: MedicalChatRequest,
    service: MedicalChatService = Depends(get_medical_chat_service),
    _: None = Depends(rate_limit_medical_chat),
):
    try:
        return service.analyze(payload)
    except RateLimitError as exc:
        return _error_response(
            exc.status_code,
            MedicalChatErrorResponse(error=exc.message, is_rate_limit=True),
        )
    except PaymentRequiredError as exc:
        return _error_response(
            exc.status_code,
            MedicalChatErrorResponse(error=exc.message, is_payment_required=True),
        )
    except MediLinkError as exc:
        logger.error("Error in medical-chat: %s", exc)
        return _error_response(
            500,
            MedicalChatErrorResponse(error=exc.message, reply=GENERIC_ERROR_REPLY),
        )
