# FILE: app/services/billing_payments.py
from __future__ import annotations

import logging
from datetime import datetime
from typing import Optional

from sqlalchemy.orm import Session

from app.core.config import BillingConfig
from app.core.errors import ConflictError, ValidationError
from app.models.billing import Invoice, Payment, PayMethod
from app.services.billing_calc import load_invoice, recalc_invoice
from app.services.billing_locks import invoice_key, run_atomic
from app.services.billing_math import D, money2
from app.services.billing_status import ensure_payable
from app.utils.timezone import now_ist

logger = logging.getLogger(__name__)

METHODS = {m.value for m in PayMethod}


def _method_value(method) -> str:
    m = getattr(method, "value", method)
    if m not in METHODS:
        raise ValidationError(
            f"Invalid payment method. Must be one of: {', '.join(sorted(METHODS))}")
    return m


def apply_payment(
    inv: Invoice,
    *,
    amount,
    method,
    reference: Optional[str] = None,
    idempotency_key: Optional[str] = None,
    received_by: Optional[int] = None,
    now: datetime,
) -> Invoice:
    """
    Read-check-write on an already locked invoice. Caller commits.
    """
    amt = money2(amount)
    if amt <= 0:
        raise ValidationError("Payment amount must be greater than 0")
    method = _method_value(method)

    key = (idempotency_key or "").strip() or None
    if key:
        dup = next((p for p in inv.payments if p.idempotency_key == key), None)
        if dup is not None:
            if money2(dup.amount) != amt:
                raise ConflictError(
                    f"Idempotency key '{key}' was already used for a payment of {money2(dup.amount)}")
            logger.info("Duplicate payment key=%s on invoice %s ignored", key,
                        inv.invoice_number)
            return inv

    ensure_payable(inv)

    due = money2(inv.due_amount)
    if amt > due:
        raise ValidationError(
            f"Payment amount ({amt}) exceeds due amount ({due})")

    inv.payments.append(
        Payment(
            amount=amt,
            method=method,
            reference=(reference or "").strip() or None,
            idempotency_key=key,
            paid_at=now,
            received_by=received_by,
        ))
    recalc_invoice(inv, now)

    logger.info("Payment %s (%s) recorded on invoice %s, due now %s", amt,
                method, inv.invoice_number, inv.due_amount)
    return inv


def record_payment(
    db: Session,
    *,
    invoice_id: int,
    amount,
    method,
    reference: Optional[str] = None,
    idempotency_key: Optional[str] = None,
    received_by: Optional[int] = None,
    now: Optional[datetime] = None,
    config: Optional[BillingConfig] = None,
) -> Invoice:
    """
    Serialized per invoice: two concurrent payments can never both pass
    the due check against the same stale due_amount.
    """
    cfg = config or BillingConfig.from_settings()

    # cheap input checks before taking the lock
    if D(amount) <= 0:
        raise ValidationError("Payment amount must be greater than 0")
    _method_value(method)

    def _do() -> Invoice:
        inv = load_invoice(db, invoice_id, for_update=True)
        return apply_payment(
            inv,
            amount=amount,
            method=method,
            reference=reference,
            idempotency_key=idempotency_key,
            received_by=received_by,
            now=now or now_ist(),
        )

    return run_atomic(db,
                      invoice_key(invoice_id),
                      _do,
                      timeout=cfg.lock_timeout,
                      retries=cfg.conflict_retries)
