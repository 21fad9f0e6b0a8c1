from functools import lru_cache
import os
from pathlib import Path
from typing import Annotated

from pydantic import Field, field_validator
from pydantic_settings import BaseSettings, NoDecode, SettingsConfigDict


BACKEND_ROOT = Path(__file__).resolve().parents[2]


class Settings(BaseSettings):
    app_name: str = "MediLink Backend"
    debug: bool = False
    log_level: str = "INFO"
    database_url: str = Field(
        default_factory=lambda: "sqlite:////tmp/medilink.db"
        if os.getenv("VERCEL") == "1"
        else "sqlite:///./medilink.db"
    )

    llm_provider: str = "gateway"
    llm_api_key: str | None = None
    llm_model: str = "google/gemini-2.5-flash"
    llm_base_url: str = "https://ai.gateway.lovable.dev/v1/chat/completions"
    llm_site_url: str = "http://localhost:8080"
    llm_app_name: str = "MediLink"

    gemini_api_key: str | None = None
    gemini_model: str = "gemini-2.5-flash"

    llm_temperature: float = 0.7
    llm_max_tokens: int = 1000
    llm_timeout_seconds: float = 35

    chat_history_window: int = 10
    analysis_question_threshold: int = 3

    cors_origins: Annotated[list[str], NoDecode] = Field(default_factory=lambda: [
        "http://localhost:8080",
        "http://127.0.0.1:8080",
    ])
    medical_chat_rate_limit_per_min: int = 30
    conversation_rate_limit_per_min: int = 40
    patient_message_rate_limit_per_min: int = 20

    model_config = SettingsConfigDict(
        env_file=str(BACKEND_ROOT / ".env"),
        env_file_encoding="utf-8",
        case_sensitive=False,
        extra="ignore",
    )

    @field_validator("cors_origins", mode="before")
    @classmethod
    def parse_cors_origins(cls, value: str | list[str]) -> list[str]:
        if isinstance(value, str):
            return [origin.strip() for origin in value.split(",") if origin.strip()]
        return value

    @field_validator("llm_provider", mode="before")
    @classmethod
    def normalize_provider(cls, value: str) -> str:
        if isinstance(value, str):
            return value.strip().lower()
        return value

    @property
    def active_api_key(self) -> str | None:
        return self.gemini_api_key if self.llm_provider == "gemini" else self.llm_api_key

    @property
    def active_model(self) -> str:
        return self.gemini_model if self.llm_provider == "gemini" else self.llm_model


@lru_cache
def get_settings() -> Settings:
    return Settings()
