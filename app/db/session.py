# app/db/session.py
from typing import Any, Dict

from sqlalchemy import create_engine
from sqlalchemy.engine import Engine
from sqlalchemy.orm import sessionmaker

from app.core.config import settings


def make_engine(db_uri: str) -> Engine:
    kwargs: Dict[str, Any] = {"pool_pre_ping": True, "future": True}
    if db_uri.startswith("sqlite"):
        # sessions are handed across FastAPI's threadpool
        kwargs["connect_args"] = {"check_same_thread": False}
    else:
        kwargs.update(pool_recycle=280, pool_size=10, max_overflow=20)
    return create_engine(db_uri, **kwargs)


engine: Engine = make_engine(settings.SQLALCHEMY_DATABASE_URI)

SessionLocal = sessionmaker(
    autocommit=False,
    autoflush=False,
    expire_on_commit=False,
    bind=engine,
    future=True,
)
