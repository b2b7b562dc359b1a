from datetime import datetime

from sqlalchemy import (
    Column,
    Integer,
    String,
    DateTime,
    Text,
    JSON,
)

from app.db.base import Base


class ErrorLog(Base):
    """
    Unhandled exceptions raised while serving billing / IPD requests.
    Typed engine errors (validation, state, conflict) are NOT stored here.
    """
    __tablename__ = "error_logs"

    id = Column(Integer, primary_key=True, index=True)

    # quick summary
    description = Column(String(1000), nullable=True)

    # where it happened
    endpoint = Column(String(255), nullable=True)  # e.g. "POST /api/billing/invoices"
    module = Column(String(255), nullable=True)
    function = Column(String(255), nullable=True)

    http_status = Column(Integer, nullable=True)

    request_payload = Column(JSON, nullable=True)

    stack_trace = Column(Text, nullable=True)

    created_at = Column(DateTime, default=datetime.utcnow, nullable=False)
