# app/api/deps.py
from __future__ import annotations

from typing import Generator

from sqlalchemy.orm import Session

from app.core.config import BillingConfig
from app.db.session import SessionLocal


def get_db() -> Generator[Session, None, None]:
    db = SessionLocal()
    try:
        yield db
    finally:
        db.close()


def get_billing_config() -> BillingConfig:
    """
    Read per request so env / settings overrides apply to new invoices;
    tests override this dependency to vary tax rates.
    """
    return BillingConfig.from_settings()
