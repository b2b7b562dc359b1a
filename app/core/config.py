# app/core/config.py
import os
from dataclasses import dataclass
from decimal import Decimal
from pathlib import Path
from typing import List

from pydantic import BaseModel
from dotenv import load_dotenv

load_dotenv()


def _split_csv(value: str) -> List[str]:
    return [v.strip() for v in (value or "").split(",") if v.strip()]


class Settings(BaseModel):
    PROJECT_NAME: str = os.getenv("PROJECT_NAME", "HIMS IPD Billing")
    API_V1_STR: str = os.getenv("API_V1_STR", "/api")

    # CORS (env takes priority)
    BACKEND_CORS_ORIGINS: List[str] = _split_csv(
        os.getenv(
            "CORS_ORIGINS",
            "http://localhost:5173,http://127.0.0.1:5173",
        ))

    # ---------- Database ----------
    DATA_DIR: str = os.getenv("DATA_DIR", "./data")
    SQLALCHEMY_DATABASE_URI: str = os.getenv(
        "DATABASE_URL", f"sqlite:///{os.getenv('DATA_DIR', './data')}/billing.db")

    LOG_LEVEL: str = os.getenv("LOG_LEVEL", "INFO").upper()

    # ---------- Billing ----------
    # rates are fractions: 0.09 == 9%
    BILLING_CGST_RATE: Decimal = Decimal(os.getenv("BILLING_CGST_RATE", "0")
                                         or "0")
    BILLING_SGST_RATE: Decimal = Decimal(os.getenv("BILLING_SGST_RATE", "0")
                                         or "0")
    BILLING_DUE_DAYS: int = int(os.getenv("BILLING_DUE_DAYS", "30"))
    BILLING_INVOICE_PREFIX: str = os.getenv("BILLING_INVOICE_PREFIX", "INV")
    BILLING_LOCK_TIMEOUT_SECONDS: float = float(
        os.getenv("BILLING_LOCK_TIMEOUT_SECONDS", "5"))
    BILLING_CONFLICT_RETRIES: int = int(
        os.getenv("BILLING_CONFLICT_RETRIES", "1"))


settings = Settings()

if settings.SQLALCHEMY_DATABASE_URI.startswith("sqlite:///"):
    Path(settings.DATA_DIR).resolve().mkdir(parents=True, exist_ok=True)


@dataclass(frozen=True)
class BillingConfig:
    """
    Hospital-wide billing defaults, read once at invoice creation.
    Passed explicitly so callers (and tests) can vary rates per call.
    """
    cgst_rate: Decimal = Decimal("0")
    sgst_rate: Decimal = Decimal("0")
    due_days: int = 30
    invoice_prefix: str = "INV"
    lock_timeout: float = 5.0
    conflict_retries: int = 1

    @classmethod
    def from_settings(cls, s: Settings = settings) -> "BillingConfig":
        return cls(
            cgst_rate=s.BILLING_CGST_RATE,
            sgst_rate=s.BILLING_SGST_RATE,
            due_days=s.BILLING_DUE_DAYS,
            invoice_prefix=s.BILLING_INVOICE_PREFIX,
            lock_timeout=s.BILLING_LOCK_TIMEOUT_SECONDS,
            conflict_retries=s.BILLING_CONFLICT_RETRIES,
        )
