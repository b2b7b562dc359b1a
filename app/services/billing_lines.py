# FILE: app/services/billing_lines.py
from __future__ import annotations

from datetime import datetime
from typing import Any, Dict, Iterable, List, Mapping, Optional

from app.core.errors import InvalidStateError, NotFoundError, ValidationError
from app.models.billing import Invoice, InvoiceItem, ItemCategory
from app.models.ipd import IpdStaySegment
from app.services.billing_math import D, ZERO, line_amount, line_gross, money2
from app.services.billing_stay import segment_cost, segment_days

CATEGORIES = {c.value for c in ItemCategory}

LINE_FIELDS = ("description", "category", "quantity", "unit_price",
               "discount", "tax", "amount", "source_key", "segment_id")


def segment_source_key(segment_id: int) -> str:
    return f"SEG:{int(segment_id)}"


def event_source_key(source_event_id: Any) -> str:
    return f"EVT:{str(source_event_id).strip()}"


def _bed_type_label(x: Optional[str]) -> str:
    return (x or "general").replace("_", " ").title()


def _get(obj: Any, name: str, default=None):
    if isinstance(obj, Mapping):
        return obj.get(name, default)
    return getattr(obj, name, default)


def line_from_segment(segment: IpdStaySegment,
                      as_of: datetime) -> Dict[str, Any]:
    if segment.id is None:
        raise ValidationError("Segment must be persisted before billing")
    days = segment_days(segment, as_of)
    rate = D(segment.daily_rate)
    unit = "day" if days == 1 else "days"
    return {
        "description": (f"Bed charges - {_bed_type_label(segment.bed_type)} "
                        f"({segment.bed_number}) - {days} {unit}"),
        "category": ItemCategory.BED_CHARGES.value,
        "quantity": D(days),
        "unit_price": rate,
        "discount": ZERO,
        "tax": ZERO,
        "amount": segment_cost(segment, as_of),
        "source_key": segment_source_key(segment.id),
        "segment_id": int(segment.id),
    }


def line_from_service_charge(charge: Any) -> Dict[str, Any]:
    """
    Map a one-off billable event (doctor visit, procedure, lab test ...) to a
    line payload. `charge` may be a dict or a pydantic model.
    """
    description = (_get(charge, "description") or "").strip()
    if not description:
        raise ValidationError("description is required")

    category = _get(charge, "category")
    category = getattr(category, "value", category)
    if category not in CATEGORIES:
        raise ValidationError(
            f"Unknown category '{category}'. Must be one of: {sorted(CATEGORIES)}")

    if _get(charge, "unit_price") is None:
        raise ValidationError("unit_price is required")

    raw_qty = _get(charge, "quantity")
    qty = D(1 if raw_qty is None else raw_qty)
    unit_price = D(_get(charge, "unit_price"))
    discount = D(_get(charge, "discount", 0))
    tax = D(_get(charge, "tax", 0))

    if qty < 1:
        raise ValidationError("quantity must be at least 1")
    if unit_price < 0:
        raise ValidationError("unit_price cannot be negative")
    if discount < 0 or tax < 0:
        raise ValidationError("discount and tax cannot be negative")
    if line_gross(qty, unit_price) - discount + tax < 0:
        raise ValidationError("discount exceeds the line value")

    event_id = _get(charge, "source_event_id")
    return {
        "description": description,
        "category": category,
        "quantity": qty,
        "unit_price": unit_price,
        "discount": discount,
        "tax": tax,
        "amount": line_amount(qty, unit_price, discount, tax),
        "source_key": event_source_key(event_id) if event_id else None,
        "segment_id": None,
    }


def _ensure_draft(invoice: Invoice) -> None:
    if not invoice.is_draft:
        raise InvalidStateError(
            f"Items are frozen once the invoice is finalized (status={invoice.status})")


def upsert_line(invoice: Invoice, payload: Dict[str, Any]) -> InvoiceItem:
    """
    Replace the line with the same source_key, else append.
    Lines without a source_key are always appended.
    """
    _ensure_draft(invoice)

    key = payload.get("source_key")
    line = None
    if key:
        line = next((it for it in invoice.items if it.source_key == key), None)

    stored = dict(payload)
    for k in ("quantity", "unit_price", "discount", "tax", "amount"):
        stored[k] = money2(stored.get(k))

    if line is not None:
        for k in LINE_FIELDS:
            if k in stored:
                setattr(line, k, stored[k])
        return line

    seq = max((int(it.seq or 0) for it in invoice.items), default=0) + 1
    line = InvoiceItem(seq=seq, **{k: stored.get(k) for k in LINE_FIELDS})
    invoice.items.append(line)
    return line


def remove_line(invoice: Invoice, item_id: int) -> InvoiceItem:
    _ensure_draft(invoice)
    line = next((it for it in invoice.items if int(it.id or 0) == int(item_id)),
                None)
    if line is None:
        raise NotFoundError(f"Item {item_id} not found on this invoice")
    invoice.items.remove(line)
    return line


def sync_stay_lines(invoice: Invoice, segments: Iterable[IpdStaySegment],
                    as_of: datetime) -> List[InvoiceItem]:
    """
    One bed_charges line per segment, re-priced to as_of.
    Safe to run repeatedly (transfer, discharge, provisional bill).
    """
    return [upsert_line(invoice, line_from_segment(s, as_of)) for s in segments]
