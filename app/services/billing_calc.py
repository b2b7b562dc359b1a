from __future__ import annotations

from datetime import datetime

from sqlalchemy.orm import Session, selectinload

from app.core.errors import NotFoundError
from app.models.billing import Invoice
from app.services.billing_math import D, ZERO, compute_due, money2, summarize
from app.services.billing_status import recompute_status


def load_invoice(db: Session, invoice_id: int, *, for_update: bool = False) -> Invoice:
    q = (db.query(Invoice).options(selectinload(Invoice.items),
                                   selectinload(Invoice.payments)).filter(
                                       Invoice.id == int(invoice_id)))
    if for_update:
        # always re-read: the identity map may hold a pre-lock snapshot
        q = q.populate_existing().with_for_update()
    inv = q.first()
    if not inv:
        raise NotFoundError(f"Invoice {invoice_id} not found")
    return inv


def recalc_invoice(inv: Invoice, now: datetime) -> Invoice:
    """
    The only writer of invoice amount columns.
    Runs after every item / discount / payment change, then re-derives status.
    """
    s = summarize(inv.items, inv.invoice_discount, inv.cgst_rate,
                  inv.sgst_rate).rounded()

    inv.subtotal = s.subtotal
    inv.discount_amount = s.discount_amount
    inv.cgst_amount = s.cgst_amount
    inv.sgst_amount = s.sgst_amount
    inv.total_tax = s.total_tax
    inv.total_amount = s.total_amount

    paid = money2(sum((D(p.amount) for p in inv.payments), ZERO))
    inv.paid_amount = paid
    inv.due_amount = money2(compute_due(s.total_amount, paid))

    recompute_status(inv, now)
    return inv
