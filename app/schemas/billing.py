# FILE: app/schemas/billing.py
from __future__ import annotations

from datetime import datetime
from decimal import Decimal
from typing import Any, Dict, List, Optional

from pydantic import BaseModel, field_validator

from app.services.billing_math import format_inr, money2


def _m(x) -> str:
    return str(money2(x))


# -------------------------
# inputs
# -------------------------
class InvoiceItemIn(BaseModel):
    description: str
    # validated by the engine so unknown values surface as VALIDATION_ERROR
    category: str
    quantity: Decimal = Decimal("1")
    unit_price: Decimal
    discount: Decimal = Decimal("0")
    tax: Decimal = Decimal("0")
    source_event_id: Optional[str] = None


class InvoiceCreate(BaseModel):
    """
    Client totals (subtotal / totalAmount / dueAmount ...) are not part of
    this schema and are dropped if sent.
    """
    patient_id: int
    type: str = "other"
    admission_id: Optional[int] = None
    items: List[InvoiceItemIn] = []
    discount_amount: Decimal = Decimal("0")
    discount_reason: Optional[str] = None
    cgst_rate: Optional[Decimal] = None
    sgst_rate: Optional[Decimal] = None
    due_date: Optional[datetime] = None
    notes: Optional[str] = None
    finalize: bool = False

    @field_validator("patient_id")
    @classmethod
    def _patient(cls, v):
        if int(v) <= 0:
            raise ValueError("patient_id must be positive")
        return int(v)


class PaymentIn(BaseModel):
    amount: Decimal
    method: str
    reference: Optional[str] = None
    idempotency_key: Optional[str] = None
    received_by: Optional[int] = None


class DiscountIn(BaseModel):
    amount: Decimal
    reason: Optional[str] = None


class CancelIn(BaseModel):
    reason: Optional[str] = None


class InvoiceUpdateIn(BaseModel):
    notes: Optional[str] = None
    due_date: Optional[datetime] = None


class LedgerEntryIn(BaseModel):
    admission_id: Optional[int] = None
    patient_id: Optional[int] = None
    source_type: str = "manual"
    source_id: Optional[str] = None
    category: str
    description: str
    quantity: Decimal = Decimal("1")
    unit_price: Decimal
    recorded_by: Optional[int] = None
    auto_attach_invoice: bool = True


class ProvisionalInvoiceIn(BaseModel):
    admission_id: int


# -------------------------
# outputs
# -------------------------
class InvoiceItemOut(BaseModel):
    id: Optional[int] = None
    seq: Optional[int] = None
    description: str
    category: str
    quantity: str
    unit_price: str
    discount: str
    tax: str
    amount: str
    source_key: Optional[str] = None
    segment_id: Optional[int] = None


class PaymentOut(BaseModel):
    id: Optional[int] = None
    amount: str
    method: str
    reference: Optional[str] = None
    idempotency_key: Optional[str] = None
    paid_at: Optional[datetime] = None


class TaxPart(BaseModel):
    rate: str
    amount: str


class TaxDetailsOut(BaseModel):
    cgst: TaxPart
    sgst: TaxPart


class InvoiceOut(BaseModel):
    id: int
    invoice_number: Optional[str] = None
    patient_id: int
    admission_id: Optional[int] = None
    type: str
    status: str
    items: List[InvoiceItemOut]
    subtotal: str
    discount_amount: str
    discount_reason: Optional[str] = None
    tax_details: TaxDetailsOut
    total_tax: str
    total_amount: str
    paid_amount: str
    due_amount: str
    due_date: datetime
    payments: List[PaymentOut]
    notes: Optional[str] = None
    finalized_at: Optional[datetime] = None
    cancelled_at: Optional[datetime] = None
    version: int
    display: Dict[str, str]


def serialize_invoice(inv: Any) -> InvoiceOut:
    items = [
        InvoiceItemOut(
            id=it.id,
            seq=it.seq,
            description=it.description,
            category=it.category,
            quantity=_m(it.quantity),
            unit_price=_m(it.unit_price),
            discount=_m(it.discount),
            tax=_m(it.tax),
            amount=_m(it.amount),
            source_key=it.source_key,
            segment_id=it.segment_id,
        ) for it in inv.items
    ]
    payments = [
        PaymentOut(
            id=p.id,
            amount=_m(p.amount),
            method=p.method,
            reference=p.reference,
            idempotency_key=p.idempotency_key,
            paid_at=p.paid_at,
        ) for p in inv.payments
    ]
    return InvoiceOut(
        id=int(inv.id),
        invoice_number=inv.invoice_number,
        patient_id=int(inv.patient_id),
        admission_id=inv.admission_id,
        type=inv.type,
        status=inv.status,
        items=items,
        subtotal=_m(inv.subtotal),
        discount_amount=_m(inv.discount_amount),
        discount_reason=inv.discount_reason,
        tax_details=TaxDetailsOut(
            cgst=TaxPart(rate=str(inv.cgst_rate or 0),
                         amount=_m(inv.cgst_amount)),
            sgst=TaxPart(rate=str(inv.sgst_rate or 0),
                         amount=_m(inv.sgst_amount)),
        ),
        total_tax=_m(inv.total_tax),
        total_amount=_m(inv.total_amount),
        paid_amount=_m(inv.paid_amount),
        due_amount=_m(inv.due_amount),
        due_date=inv.due_date,
        payments=payments,
        notes=inv.notes,
        finalized_at=inv.finalized_at,
        cancelled_at=inv.cancelled_at,
        version=int(inv.version or 1),
        display={
            "subtotal": format_inr(inv.subtotal),
            "discount_amount": format_inr(inv.discount_amount),
            "total_tax": format_inr(inv.total_tax),
            "total_amount": format_inr(inv.total_amount),
            "paid_amount": format_inr(inv.paid_amount),
            "due_amount": format_inr(inv.due_amount),
        },
    )


class LedgerEntryOut(BaseModel):
    id: int
    admission_id: Optional[int] = None
    patient_id: int
    source_type: str
    source_id: Optional[str] = None
    category: str
    description: str
    quantity: str
    unit_price: str
    amount: str
    recorded_by: Optional[int] = None
    recorded_at: datetime
    billed: bool
    billed_at: Optional[datetime] = None
    invoice_id: Optional[int] = None


def serialize_ledger_entry(e: Any) -> LedgerEntryOut:
    return LedgerEntryOut(
        id=int(e.id),
        admission_id=e.admission_id,
        patient_id=int(e.patient_id),
        source_type=e.source_type,
        source_id=e.source_id,
        category=e.category,
        description=e.description,
        quantity=_m(e.quantity),
        unit_price=_m(e.unit_price),
        amount=_m(e.amount),
        recorded_by=e.recorded_by,
        recorded_at=e.recorded_at,
        billed=bool(e.billed),
        billed_at=e.billed_at,
        invoice_id=e.invoice_id,
    )
