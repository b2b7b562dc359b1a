# FILE: app/core/errors.py
from __future__ import annotations

from typing import Any, Optional


class BillingError(Exception):
    """
    Base for typed engine errors.
    The API layer turns these into the standard err() envelope.
    """
    status_code: int = 400
    code: str = "BILLING_ERROR"

    def __init__(self, msg: str, *, details: Optional[Any] = None):
        super().__init__(msg)
        self.msg = msg
        self.details = details


class ValidationError(BillingError):
    # malformed input: negative amount, overpayment, unknown category
    status_code = 400
    code = "VALIDATION_ERROR"


class InvalidStateError(BillingError):
    # illegal for the current invoice status / segment state
    status_code = 409
    code = "INVALID_STATE"


class ConflictError(BillingError):
    # lock timeout or stale version; safe to retry once after re-reading
    status_code = 409
    code = "CONFLICT"


class NotFoundError(BillingError):
    status_code = 404
    code = "NOT_FOUND"
