from collections.abc import Generator
import os

from sqlalchemy import create_engine
from sqlalchemy.engine import Engine
from sqlalchemy.orm import Session, sessionmaker
from sqlalchemy.pool import StaticPool

from medilink.core.config import get_settings
from medilink.db.base import Base

settings = get_settings()
database_url = settings.database_url
if os.getenv("VERCEL") == "1" and database_url.startswith("sqlite:///./"):
    sqlite_filename = database_url.removeprefix("sqlite:///./")
    database_url = f"sqlite:////tmp/{sqlite_filename}"


def build_engine(url: str) -> Engine:
    if url in ("sqlite://", "sqlite:///:memory:"):
        # one shared connection so every thread sees the same in-memory database
        return create_engine(
            url,
            future=True,
            connect_args={"check_same_thread": False},
            poolclass=StaticPool,
        )
    connect_args = {"check_same_thread": False} if url.startswith("sqlite") else {}
    return create_engine(url, future=True, connect_args=connect_args)


engine = build_engine(database_url)
SessionLocal = sessionmaker(bind=engine, autocommit=False, autoflush=False, class_=Session)


def init_db(bind: Engine | None = None) -> None:
    import medilink.db.models  # noqa: F401

    Base.metadata.create_all(bind=bind or engine)


def get_db_session() -> Generator[Session, None, None]:
    session = SessionLocal()
    try:
        yield session
    finally:
        session.close()
