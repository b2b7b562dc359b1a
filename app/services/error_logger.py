import logging
import traceback
from typing import Any, Callable, Dict, Optional

from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from app.models.error_log import ErrorLog

logger = logging.getLogger(__name__)


def log_error(
    session_factory: Callable[[], Session],
    *,
    description: Optional[str] = None,
    endpoint: Optional[str] = None,
    module: Optional[str] = None,
    function: Optional[str] = None,
    http_status: Optional[int] = None,
    request_payload: Optional[Dict[str, Any]] = None,
    stack_trace: Optional[str] = None,
) -> None:
    """
    Persist an unhandled error into error_logs.
    Uses its own session: the request session may be mid-rollback.
    Never raises.
    """
    db = session_factory()
    try:
        db.add(
            ErrorLog(
                description=(description or "")[:1000] or None,
                endpoint=endpoint,
                module=module,
                function=function,
                http_status=http_status,
                request_payload=request_payload,
                stack_trace=stack_trace,
            ))
        db.commit()
    except SQLAlchemyError:
        # last resort – never raise from logger
        db.rollback()
        logger.exception("Failed to persist error log")
    finally:
        db.close()


def format_exception(exc: Exception) -> str:
    return "".join(
        traceback.format_exception(type(exc), exc, exc.__traceback__))
