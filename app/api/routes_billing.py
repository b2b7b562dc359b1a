# FILE: app/api/routes_billing.py
from __future__ import annotations

import logging
from datetime import datetime
from typing import Optional

from fastapi import APIRouter, Body, Depends, Query
from sqlalchemy.orm import Session

from app.api.deps import get_billing_config, get_db
from app.api.response import ok
from app.core.config import BillingConfig
from app.schemas.billing import (
    CancelIn,
    DiscountIn,
    InvoiceCreate,
    InvoiceItemIn,
    InvoiceUpdateIn,
    LedgerEntryIn,
    PaymentIn,
    ProvisionalInvoiceIn,
    serialize_invoice,
    serialize_ledger_entry,
)
from app.services.billing_engine import (
    AddItem,
    Cancel,
    Finalize,
    RemoveItem,
    SetDiscount,
    SyncStay,
    UpdateDetails,
    apply_command,
    create_invoice,
    generate_provisional_invoice,
    get_invoice,
    list_invoices,
    record_ledger_entry,
    refresh_overdue,
)
from app.services.billing_ledger import list_entries
from app.services.billing_payments import record_payment

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/billing", tags=["Billing"])


@router.post("/invoices", status_code=201)
def create_invoice_api(
        inp: InvoiceCreate,
        db: Session = Depends(get_db),
        cfg: BillingConfig = Depends(get_billing_config),
):
    payload = inp.model_dump()
    inv = create_invoice(db, payload, config=cfg)
    return ok(serialize_invoice(inv), status_code=201)


@router.get("/invoices")
def list_invoices_api(
        patient_id: Optional[int] = Query(default=None),
        status: Optional[str] = Query(default=None),
        type: Optional[str] = Query(default=None),
        admission_id: Optional[int] = Query(default=None),
        start_date: Optional[datetime] = Query(default=None),
        end_date: Optional[datetime] = Query(default=None),
        db: Session = Depends(get_db),
        cfg: BillingConfig = Depends(get_billing_config),
):
    rows = list_invoices(db,
                         patient_id=patient_id,
                         status=status,
                         inv_type=type,
                         admission_id=admission_id,
                         created_from=start_date,
                         created_to=end_date,
                         config=cfg)
    return ok([serialize_invoice(i) for i in rows], meta={"count": len(rows)})


@router.get("/invoices/{invoice_id}")
def get_invoice_api(
        invoice_id: int,
        db: Session = Depends(get_db),
        cfg: BillingConfig = Depends(get_billing_config),
):
    return ok(serialize_invoice(get_invoice(db, invoice_id, config=cfg)))


@router.patch("/invoices/{invoice_id}")
def update_invoice_api(
        invoice_id: int,
        inp: InvoiceUpdateIn,
        db: Session = Depends(get_db),
        cfg: BillingConfig = Depends(get_billing_config),
):
    """notes / due_date only; amounts and status are never client-set."""
    inv = apply_command(db,
                        invoice_id,
                        UpdateDetails(notes=inp.notes, due_date=inp.due_date),
                        config=cfg)
    return ok(serialize_invoice(inv))


@router.post("/invoices/{invoice_id}/items")
def add_item_api(
        invoice_id: int,
        inp: InvoiceItemIn,
        db: Session = Depends(get_db),
        cfg: BillingConfig = Depends(get_billing_config),
):
    inv = apply_command(db,
                        invoice_id,
                        AddItem(charge=inp.model_dump()),
                        config=cfg)
    return ok(serialize_invoice(inv))


@router.delete("/invoices/{invoice_id}/items/{item_id}")
def remove_item_api(
        invoice_id: int,
        item_id: int,
        db: Session = Depends(get_db),
        cfg: BillingConfig = Depends(get_billing_config),
):
    inv = apply_command(db, invoice_id, RemoveItem(item_id=item_id), config=cfg)
    return ok(serialize_invoice(inv))


@router.post("/invoices/{invoice_id}/sync-stay")
def sync_stay_api(
        invoice_id: int,
        db: Session = Depends(get_db),
        cfg: BillingConfig = Depends(get_billing_config),
):
    """Provisional bill: re-price bed lines up to now."""
    inv = apply_command(db, invoice_id, SyncStay(), config=cfg)
    return ok(serialize_invoice(inv))


@router.patch("/invoices/{invoice_id}/discount")
def set_discount_api(
        invoice_id: int,
        inp: DiscountIn,
        db: Session = Depends(get_db),
        cfg: BillingConfig = Depends(get_billing_config),
):
    inv = apply_command(db,
                        invoice_id,
                        SetDiscount(amount=inp.amount, reason=inp.reason),
                        config=cfg)
    return ok(serialize_invoice(inv))


@router.post("/invoices/{invoice_id}/finalize")
def finalize_api(
        invoice_id: int,
        db: Session = Depends(get_db),
        cfg: BillingConfig = Depends(get_billing_config),
):
    inv = apply_command(db, invoice_id, Finalize(), config=cfg)
    return ok(serialize_invoice(inv))


@router.post("/invoices/{invoice_id}/cancel")
def cancel_api(
        invoice_id: int,
        inp: Optional[CancelIn] = Body(default=None),
        db: Session = Depends(get_db),
        cfg: BillingConfig = Depends(get_billing_config),
):
    reason = inp.reason if inp else None
    inv = apply_command(db, invoice_id, Cancel(reason=reason), config=cfg)
    return ok(serialize_invoice(inv))


@router.post("/invoices/{invoice_id}/payments", status_code=201)
def add_payment_api(
        invoice_id: int,
        inp: PaymentIn,
        db: Session = Depends(get_db),
        cfg: BillingConfig = Depends(get_billing_config),
):
    inv = record_payment(
        db,
        invoice_id=invoice_id,
        amount=inp.amount,
        method=inp.method,
        reference=inp.reference,
        idempotency_key=inp.idempotency_key,
        received_by=inp.received_by,
        config=cfg,
    )
    return ok(serialize_invoice(inv), status_code=201)


@router.post("/invoices/refresh-overdue")
def refresh_overdue_api(
        db: Session = Depends(get_db),
        cfg: BillingConfig = Depends(get_billing_config),
):
    moved = refresh_overdue(db, config=cfg)
    logger.info("Overdue refresh moved %s invoices", moved)
    return ok({"moved": moved})


# -------------------------
# ledger
# -------------------------
@router.post("/ledger", status_code=201)
def create_ledger_entry_api(
        inp: LedgerEntryIn,
        db: Session = Depends(get_db),
        cfg: BillingConfig = Depends(get_billing_config),
):
    entry, inv = record_ledger_entry(db, inp.model_dump(), config=cfg)
    return ok(
        {
            "entry": serialize_ledger_entry(entry),
            "invoice": serialize_invoice(inv) if inv is not None else None,
        },
        status_code=201,
    )


@router.get("/ledger")
def list_ledger_api(
        admission_id: Optional[int] = Query(default=None),
        patient_id: Optional[int] = Query(default=None),
        billed: Optional[bool] = Query(default=None),
        start_date: Optional[datetime] = Query(default=None),
        end_date: Optional[datetime] = Query(default=None),
        db: Session = Depends(get_db),
):
    rows = list_entries(db,
                        admission_id=admission_id,
                        patient_id=patient_id,
                        billed=billed,
                        created_from=start_date,
                        created_to=end_date)
    return ok([serialize_ledger_entry(e) for e in rows],
              meta={"count": len(rows)})


@router.post("/ledger/generate-invoice")
def generate_invoice_api(
        inp: ProvisionalInvoiceIn,
        db: Session = Depends(get_db),
        cfg: BillingConfig = Depends(get_billing_config),
):
    inv, attached = generate_provisional_invoice(db, inp.admission_id,
                                                 config=cfg)
    return ok({"invoice": serialize_invoice(inv), "attached": attached})
