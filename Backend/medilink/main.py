from contextlib import asynccontextmanager
import logging

from dotenv import load_dotenv
from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware

load_dotenv()  # provider credentials are read from the process environment

from medilink.api.routes.chat_sessions import router as chat_sessions_router  # noqa: E402
from medilink.api.routes.conversations import router as conversations_router  # noqa: E402
from medilink.api.routes.medical_chat import router as medical_chat_router  # noqa: E402
from medilink.core.config import get_settings  # noqa: E402
from medilink.core.security import SecurityHeadersMiddleware  # noqa: E402
from medilink.db.session import init_db  # noqa: E402

settings = get_settings()

logging.basicConfig(
    level=settings.log_level.upper(),
    format="%(asctime)s %(levelname)s %(name)s: %(message)s",
)


@asynccontextmanager
async def lifespan(_: FastAPI):
    init_db()
    yield


app = FastAPI(title=settings.app_name, debug=settings.debug, version="0.1.0", lifespan=lifespan)

app.add_middleware(SecurityHeadersMiddleware)
app.add_middleware(
    CORSMiddleware,
    allow_origins=settings.cors_origins,
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)


@app.get("/health")
def health_check() -> dict[str, str]:
    return {"status": "ok"}


app.include_router(medical_chat_router, prefix="/api/v1")
app.include_router(conversations_router, prefix="/api/v1")
app.include_router(chat_sessions_router, prefix="/api/v1")
