# FILE: app/services/billing_status.py
"""
Invoice status is derived, never assigned directly.

  draft      explicit: created, items editable, not payable
  cancelled  explicit and terminal
  refunded   terminal; recognised on stored rows, no engine path leads here

everything else is a pure function of (paid, total, due_date, now):

  paid >= total > 0   -> paid
  paid > 0            -> partial
  now > due_date      -> overdue
  otherwise           -> pending
"""
from __future__ import annotations

import logging
from datetime import datetime
from typing import Optional

from app.core.errors import InvalidStateError
from app.models.billing import Invoice, InvoiceStatus as S
from app.services.billing_math import D

logger = logging.getLogger(__name__)

EXPLICIT = {S.DRAFT.value, S.CANCELLED.value, S.REFUNDED.value}
CANCELLABLE = {S.DRAFT.value, S.PENDING.value, S.PARTIAL.value, S.OVERDUE.value}
UNPAYABLE = {S.DRAFT.value, S.CANCELLED.value, S.REFUNDED.value, S.PAID.value}


def derive_status(
    current: Optional[str],
    paid,
    total,
    due_date: Optional[datetime],
    now: datetime,
) -> str:
    if current in EXPLICIT:
        return current

    paid = D(paid)
    total = D(total)
    if total > 0 and paid >= total:
        return S.PAID.value
    if paid > 0:
        return S.PARTIAL.value
    if due_date is not None and now > due_date:
        return S.OVERDUE.value
    return S.PENDING.value


def recompute_status(invoice: Invoice, now: datetime) -> str:
    before = invoice.status
    after = derive_status(before, invoice.paid_amount, invoice.total_amount,
                          invoice.due_date, now)
    if after != before:
        logger.info("Invoice %s status %s -> %s", invoice.invoice_number,
                    before, after)
        invoice.status = after
    return after


def finalize(invoice: Invoice, now: datetime) -> str:
    """draft -> derived status; items are frozen from here on."""
    if invoice.status != S.DRAFT.value:
        raise InvalidStateError(
            f"Only draft invoices can be finalized (status={invoice.status})")
    invoice.finalized_at = now
    invoice.status = S.PENDING.value
    logger.info("Invoice %s finalized", invoice.invoice_number)
    return recompute_status(invoice, now)


def cancel(invoice: Invoice, now: datetime, reason: Optional[str] = None) -> str:
    if invoice.status not in CANCELLABLE:
        raise InvalidStateError(
            f"Cannot cancel invoice with status: {invoice.status}")
    invoice.status = S.CANCELLED.value
    invoice.cancelled_at = now
    invoice.cancel_reason = reason
    logger.info("Invoice %s cancelled", invoice.invoice_number)
    return invoice.status


def ensure_payable(invoice: Invoice) -> None:
    st = invoice.status
    if st == S.DRAFT.value:
        raise InvalidStateError("Invoice must be finalized before payment")
    if st == S.PAID.value:
        raise InvalidStateError("Invoice is already fully paid")
    if st in UNPAYABLE:
        raise InvalidStateError(f"Cannot add payment to {st} invoice")
