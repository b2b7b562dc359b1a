# FILE: app/services/billing_ledger.py
"""
Unbilled charge ledger.

Other modules (OT, nursing, pharmacy ...) record charges here as they
happen; entries are attached to the stay's draft invoice either right away
or in bulk when a provisional bill is generated.
"""
from __future__ import annotations

from datetime import datetime
from typing import Any, Dict, Iterable, List, Mapping, Optional

from sqlalchemy.orm import Session

from app.core.errors import ValidationError
from app.models.billing import BillingLedgerEntry, Invoice, LedgerSourceType
from app.services.billing_lines import line_from_service_charge, upsert_line
from app.services.billing_math import D, ZERO, money2
from app.utils.timezone import to_naive_ist

SOURCE_TYPES = {s.value for s in LedgerSourceType}


def ledger_source_key(entry_id: int) -> str:
    return f"LED:{int(entry_id)}"


def new_entry(
    payload: Mapping[str, Any],
    *,
    patient_id: int,
    admission_id: Optional[int],
    now: datetime,
) -> BillingLedgerEntry:
    source_type = payload.get("source_type") or LedgerSourceType.MANUAL.value
    source_type = getattr(source_type, "value", source_type)
    if source_type not in SOURCE_TYPES:
        raise ValidationError(
            f"Invalid source_type '{source_type}'. Must be one of: {sorted(SOURCE_TYPES)}")

    # same rules as any invoice line; amount is always qty * unit_price
    line = line_from_service_charge({
        "description": payload.get("description"),
        "category": payload.get("category"),
        "quantity": payload.get("quantity"),
        "unit_price": payload.get("unit_price"),
    })

    source_id = payload.get("source_id")
    return BillingLedgerEntry(
        admission_id=admission_id,
        patient_id=int(patient_id),
        source_type=source_type,
        source_id=str(source_id) if source_id is not None else None,
        category=line["category"],
        description=line["description"],
        quantity=money2(line["quantity"]),
        unit_price=money2(line["unit_price"]),
        amount=money2(line["amount"]),
        recorded_by=payload.get("recorded_by"),
        recorded_at=now,
        billed=False,
        created_at=now,
    )


def line_from_ledger_entry(entry: BillingLedgerEntry) -> Dict[str, Any]:
    return {
        "description": entry.description,
        "category": entry.category,
        "quantity": D(entry.quantity),
        "unit_price": D(entry.unit_price),
        "discount": ZERO,
        "tax": ZERO,
        "amount": D(entry.amount),
        "source_key": ledger_source_key(entry.id),
        "segment_id": None,
    }


def unbilled_entries(db: Session, admission_id: int) -> List[BillingLedgerEntry]:
    return (db.query(BillingLedgerEntry).filter(
        BillingLedgerEntry.admission_id == int(admission_id),
        BillingLedgerEntry.billed.is_(False),
    ).order_by(BillingLedgerEntry.id.asc()).all())


def attach_entries(invoice: Invoice, entries: Iterable[BillingLedgerEntry],
                   now: datetime) -> int:
    """
    Upsert one line per entry and mark it billed. The invoice must be a
    persisted draft; the caller recalculates and commits.
    """
    n = 0
    for entry in entries:
        upsert_line(invoice, line_from_ledger_entry(entry))
        entry.billed = True
        entry.billed_at = now
        entry.invoice_id = invoice.id
        n += 1
    return n


def list_entries(
    db: Session,
    *,
    admission_id: Optional[int] = None,
    patient_id: Optional[int] = None,
    billed: Optional[bool] = None,
    created_from: Optional[datetime] = None,
    created_to: Optional[datetime] = None,
) -> List[BillingLedgerEntry]:
    q = db.query(BillingLedgerEntry)
    if admission_id:
        q = q.filter(BillingLedgerEntry.admission_id == int(admission_id))
    if patient_id:
        q = q.filter(BillingLedgerEntry.patient_id == int(patient_id))
    if billed is not None:
        q = q.filter(BillingLedgerEntry.billed.is_(bool(billed)))
    if created_from:
        q = q.filter(BillingLedgerEntry.created_at >= to_naive_ist(created_from))
    if created_to:
        q = q.filter(BillingLedgerEntry.created_at <= to_naive_ist(created_to))
    return q.order_by(BillingLedgerEntry.created_at.desc(),
                      BillingLedgerEntry.id.desc()).all()
