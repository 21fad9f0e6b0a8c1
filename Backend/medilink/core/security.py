from __future__ import annotations

from collections import defaultdict, deque
from datetime import datetime, timedelta, UTC
from threading import Lock

from fastapi import Depends, HTTPException, Request, status
from starlette.middleware.base import BaseHTTPMiddleware

from medilink.core.config import Settings, get_settings


class SecurityHeadersMiddleware(BaseHTTPMiddleware):
    async def dispatch(self, request: Request, call_next):
        response = await call_next(request)

        response.headers["X-Content-Type-Options"] = "nosniff"
        response.headers["X-Frame-Options"] = "DENY"
        response.headers["Referrer-Policy"] = "strict-origin-when-cross-origin"
        response.headers["Cache-Control"] = "no-store"

        forwarded_proto = request.headers.get("x-forwarded-proto", "")
        if request.url.scheme == "https" or forwarded_proto.lower() == "https":
            response.headers["Strict-Transport-Security"] = "max-age=31536000; includeSubDomains"

        return response


_rate_limit_store: dict[str, deque[datetime]] = defaultdict(deque)
_rate_limit_lock = Lock()

TOO_MANY_REQUESTS = "Too many requests. Please wait and try again."


def _client_ip(request: Request) -> str:
    xff = request.headers.get("x-forwarded-for", "")
    if xff:
        return xff.split(",")[0].strip()
    return request.client.host if request.client else "unknown"


def _enforce_rate_limit(key: str, max_requests: int, window_seconds: int = 60) -> None:
    if max_requests <= 0:
        return

    now = datetime.now(UTC)
    window_start = now - timedelta(seconds=window_seconds)

    with _rate_limit_lock:
        entries = _rate_limit_store[key]
        while entries and entries[0] < window_start:
            entries.popleft()

        if len(entries) >= max_requests:
            raise HTTPException(status_code=status.HTTP_429_TOO_MANY_REQUESTS, detail=TOO_MANY_REQUESTS)

        entries.append(now)


def reset_rate_limits() -> None:
    with _rate_limit_lock:
        _rate_limit_store.clear()


def rate_limit_medical_chat(
    request: Request,
    settings: Settings = Depends(get_settings),
) -> None:
    """The stateless analysis endpoint has no session, so callers are keyed by IP."""
    _enforce_rate_limit(f"medical_chat:ip:{_client_ip(request)}", settings.medical_chat_rate_limit_per_min)


def rate_limit_conversation(
    request: Request,
    settings: Settings = Depends(get_settings),
) -> None:
    session_id = request.path_params.get("session_id")
    if session_id:
        key = f"conversation:session:{session_id}"
    else:
        key = f"conversation:ip:{_client_ip(request)}"
    _enforce_rate_limit(key, settings.conversation_rate_limit_per_min)


def enforce_patient_message_limit(patient_id: str, settings: Settings) -> None:
    """Caps how many turns one patient may send per minute, across sessions and clients."""
    _enforce_rate_limit(f"conversation:patient:{patient_id}", settings.patient_message_rate_limit_per_min)
