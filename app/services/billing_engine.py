# FILE: app/services/billing_engine.py
"""
Single mutation entry point for invoices.

Every change goes through apply_command() (or the IPD stay helpers below),
which locks, mutates, recalculates totals + status and commits as one unit.
Nothing outside this module writes Invoice.status or amount columns.
"""
from __future__ import annotations

import logging
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from decimal import Decimal
from typing import Any, Dict, List, Mapping, Optional, Tuple, Union

from sqlalchemy.orm import Session, selectinload

from app.core.config import BillingConfig
from app.core.errors import (
    ConflictError,
    InvalidStateError,
    NotFoundError,
    ValidationError,
)
from app.models.billing import (
    BillingLedgerEntry,
    Invoice,
    InvoiceStatus,
    InvoiceType,
)
from app.models.ipd import AdmissionStatus, IpdAdmission, IpdBed
from app.services import billing_status
from app.services.billing_calc import load_invoice, recalc_invoice
from app.services.billing_ledger import (
    attach_entries,
    new_entry,
    unbilled_entries,
)
from app.services.billing_lines import (
    line_from_service_charge,
    remove_line,
    sync_stay_lines,
    upsert_line,
)
from app.services.billing_locks import (
    bed_key,
    invoice_key,
    patient_key,
    run_atomic,
    series_key,
    stay_key,
)
from app.services.billing_math import D, ZERO, money2
from app.services.billing_numbers import next_invoice_number
from app.services.billing_payments import apply_payment
from app.services.billing_stay import (
    close_and_transfer,
    close_on_discharge,
    open_segment,
    segment_cost,
    segment_days,
)
from app.utils.timezone import now_ist, to_naive_ist

logger = logging.getLogger(__name__)

INVOICE_TYPES = {t.value for t in InvoiceType}


# -------------------------
# commands
# -------------------------
@dataclass(frozen=True)
class AddItem:
    charge: Mapping[str, Any]
    kind: str = field(default="add_item", init=False)


@dataclass(frozen=True)
class RemoveItem:
    item_id: int
    kind: str = field(default="remove_item", init=False)


@dataclass(frozen=True)
class SyncStay:
    as_of: Optional[datetime] = None
    kind: str = field(default="sync_stay", init=False)


@dataclass(frozen=True)
class AddPayment:
    amount: Decimal
    method: str
    reference: Optional[str] = None
    idempotency_key: Optional[str] = None
    received_by: Optional[int] = None
    kind: str = field(default="add_payment", init=False)


@dataclass(frozen=True)
class SetDiscount:
    amount: Decimal
    reason: Optional[str] = None
    kind: str = field(default="set_discount", init=False)


@dataclass(frozen=True)
class UpdateDetails:
    """None leaves a field as it is."""
    notes: Optional[str] = None
    due_date: Optional[datetime] = None
    kind: str = field(default="update_details", init=False)


@dataclass(frozen=True)
class Finalize:
    kind: str = field(default="finalize", init=False)


@dataclass(frozen=True)
class Cancel:
    reason: Optional[str] = None
    kind: str = field(default="cancel", init=False)


@dataclass(frozen=True)
class Refresh:
    """Re-derive amounts/status only (e.g. a due date has passed)."""
    kind: str = field(default="refresh", init=False)


Command = Union[AddItem, RemoveItem, SyncStay, AddPayment, SetDiscount,
                UpdateDetails, Finalize, Cancel, Refresh]


def _cfg(config: Optional[BillingConfig]) -> BillingConfig:
    return config or BillingConfig.from_settings()


def _open_stay(db: Session, inv: Invoice) -> Optional[IpdAdmission]:
    if not inv.admission_id:
        return None
    adm = db.get(IpdAdmission, int(inv.admission_id))
    if adm is not None and not adm.is_discharged:
        return adm
    return None


def _dispatch(db: Session, inv: Invoice, cmd: Command, now: datetime) -> None:
    if isinstance(cmd, AddItem):
        upsert_line(inv, line_from_service_charge(cmd.charge))

    elif isinstance(cmd, RemoveItem):
        remove_line(inv, cmd.item_id)

    elif isinstance(cmd, SyncStay):
        if not inv.admission_id:
            raise ValidationError("Invoice is not linked to an admission")
        adm = db.get(IpdAdmission, int(inv.admission_id))
        if adm is None:
            raise NotFoundError(f"Admission {inv.admission_id} not found")
        as_of = cmd.as_of or adm.discharged_at or now
        sync_stay_lines(inv, adm.segments, as_of)

    elif isinstance(cmd, AddPayment):
        # apply_payment recalculates and re-derives status itself
        apply_payment(inv,
                      amount=cmd.amount,
                      method=cmd.method,
                      reference=cmd.reference,
                      idempotency_key=cmd.idempotency_key,
                      received_by=cmd.received_by,
                      now=now)

    elif isinstance(cmd, SetDiscount):
        if not inv.is_draft:
            raise InvalidStateError(
                f"Discount can only change on a draft invoice (status={inv.status})")
        if D(cmd.amount) < 0:
            raise ValidationError("Discount cannot be negative")
        inv.invoice_discount = money2(cmd.amount)
        inv.discount_reason = cmd.reason

    elif isinstance(cmd, UpdateDetails):
        if inv.status in (InvoiceStatus.CANCELLED.value,
                          InvoiceStatus.REFUNDED.value):
            raise InvalidStateError(f"Cannot edit a {inv.status} invoice")
        if cmd.due_date is not None:
            if inv.status == InvoiceStatus.PAID.value:
                raise InvalidStateError("Due date of a paid invoice cannot change")
            # status follows in recalc_invoice (overdue <-> pending)
            inv.due_date = to_naive_ist(cmd.due_date)
        if cmd.notes is not None:
            inv.notes = cmd.notes

    elif isinstance(cmd, Finalize):
        if _open_stay(db, inv) is not None:
            raise InvalidStateError(
                "Stay is still open; discharge the patient to finalize its invoice")
        # totals must be current before status is derived from them
        recalc_invoice(inv, now)
        billing_status.finalize(inv, now)

    elif isinstance(cmd, Cancel):
        billing_status.cancel(inv, now, cmd.reason)

    elif isinstance(cmd, Refresh):
        pass

    else:
        raise ValidationError(f"Unknown invoice command: {cmd!r}")


def apply_command(
    db: Session,
    invoice_id: int,
    cmd: Command,
    *,
    now: Optional[datetime] = None,
    config: Optional[BillingConfig] = None,
) -> Invoice:
    cfg = _cfg(config)

    def _do() -> Invoice:
        ts = now or now_ist()
        inv = load_invoice(db, invoice_id, for_update=True)
        _dispatch(db, inv, cmd, ts)
        return recalc_invoice(inv, ts)

    return run_atomic(db,
                      invoice_key(invoice_id),
                      _do,
                      timeout=cfg.lock_timeout,
                      retries=cfg.conflict_retries)


# -------------------------
# create / read
# -------------------------
def _new_invoice(
    db: Session,
    *,
    patient_id: int,
    inv_type: str,
    now: datetime,
    cfg: BillingConfig,
    admission_id: Optional[int] = None,
    due_date: Optional[datetime] = None,
    cgst_rate=None,
    sgst_rate=None,
    notes: Optional[str] = None,
) -> Invoice:
    if inv_type not in INVOICE_TYPES:
        raise ValidationError(
            f"Invalid invoice type '{inv_type}'. Must be one of: {sorted(INVOICE_TYPES)}")

    cgst = D(cfg.cgst_rate if cgst_rate is None else cgst_rate)
    sgst = D(cfg.sgst_rate if sgst_rate is None else sgst_rate)
    if cgst < 0 or sgst < 0:
        raise ValidationError("Tax rates cannot be negative")

    inv = Invoice(
        invoice_number=next_invoice_number(db,
                                           on_date=now,
                                           prefix=cfg.invoice_prefix),
        patient_id=int(patient_id),
        admission_id=admission_id,
        type=inv_type,
        status=InvoiceStatus.DRAFT.value,
        invoice_discount=ZERO,
        cgst_rate=cgst,
        sgst_rate=sgst,
        paid_amount=ZERO,
        due_date=to_naive_ist(due_date) or (now + timedelta(days=cfg.due_days)),
        notes=notes,
        created_at=now,
    )
    db.add(inv)
    return inv


def create_invoice(
    db: Session,
    payload: Mapping[str, Any],
    *,
    now: Optional[datetime] = None,
    config: Optional[BillingConfig] = None,
) -> Invoice:
    """
    Totals are always computed here; any client-sent totals are ignored.
    """
    cfg = _cfg(config)
    if not payload.get("patient_id"):
        raise ValidationError("patient_id is required")

    def _do() -> Invoice:
        ts = now or now_ist()
        admission_id = payload.get("admission_id")
        adm = db.get(IpdAdmission, int(admission_id)) if admission_id else None
        if admission_id and adm is None:
            raise NotFoundError(f"Admission {admission_id} not found")
        if payload.get("finalize") and adm is not None and not adm.is_discharged:
            raise InvalidStateError(
                "Stay is still open; discharge the patient to finalize its invoice")

        inv = _new_invoice(
            db,
            patient_id=payload["patient_id"],
            inv_type=payload.get("type") or InvoiceType.OTHER.value,
            now=ts,
            cfg=cfg,
            admission_id=admission_id,
            due_date=payload.get("due_date"),
            cgst_rate=payload.get("cgst_rate"),
            sgst_rate=payload.get("sgst_rate"),
            notes=payload.get("notes"),
        )
        for charge in payload.get("items") or []:
            upsert_line(inv, line_from_service_charge(charge))

        disc = D(payload.get("discount_amount"))
        if disc < 0:
            raise ValidationError("Discount cannot be negative")
        inv.invoice_discount = money2(disc)
        inv.discount_reason = payload.get("discount_reason")

        recalc_invoice(inv, ts)
        if payload.get("finalize"):
            billing_status.finalize(inv, ts)
        db.flush()
        logger.info("Invoice %s created for patient %s (%s)",
                    inv.invoice_number, inv.patient_id, inv.status)
        return inv

    return run_atomic(db,
                      series_key(cfg.invoice_prefix),
                      _do,
                      timeout=cfg.lock_timeout,
                      retries=cfg.conflict_retries)


# stored statuses that the passage of time alone can move into a status
AGES_INTO = {
    InvoiceStatus.OVERDUE.value: {InvoiceStatus.PENDING.value},
}


def _current(db: Session, inv: Invoice, ts: datetime,
             config: Optional[BillingConfig]) -> Invoice:
    derived = billing_status.derive_status(inv.status, inv.paid_amount,
                                           inv.total_amount, inv.due_date, ts)
    if derived != inv.status:
        # stored status went stale with time (due date passed)
        inv = apply_command(db, inv.id, Refresh(), now=ts, config=config)
    return inv


def get_invoice(
    db: Session,
    invoice_id: int,
    *,
    now: Optional[datetime] = None,
    config: Optional[BillingConfig] = None,
) -> Invoice:
    inv = load_invoice(db, invoice_id)
    return _current(db, inv, now or now_ist(), config)


def list_invoices(
    db: Session,
    *,
    patient_id: Optional[int] = None,
    status: Optional[str] = None,
    inv_type: Optional[str] = None,
    admission_id: Optional[int] = None,
    created_from: Optional[datetime] = None,
    created_to: Optional[datetime] = None,
    now: Optional[datetime] = None,
    config: Optional[BillingConfig] = None,
) -> List[Invoice]:
    """
    Status is re-derived per row before the status filter applies, so a
    pending invoice past its due date lists (and filters) as overdue.
    """
    ts = now or now_ist()
    q = db.query(Invoice).options(selectinload(Invoice.items),
                                  selectinload(Invoice.payments))
    if patient_id:
        q = q.filter(Invoice.patient_id == int(patient_id))
    if status:
        q = q.filter(
            Invoice.status.in_(sorted({status} | AGES_INTO.get(status, set()))))
    if inv_type:
        q = q.filter(Invoice.type == inv_type)
    if admission_id:
        q = q.filter(Invoice.admission_id == int(admission_id))
    if created_from:
        q = q.filter(Invoice.created_at >= to_naive_ist(created_from))
    if created_to:
        q = q.filter(Invoice.created_at <= to_naive_ist(created_to))

    rows = [
        _current(db, inv, ts, config)
        for inv in q.order_by(Invoice.id.desc()).all()
    ]
    if status:
        rows = [inv for inv in rows if inv.status == status]
    return rows


def refresh_overdue(
    db: Session,
    *,
    now: Optional[datetime] = None,
    config: Optional[BillingConfig] = None,
) -> int:
    """Move unpaid, past-due pending invoices to overdue. Returns count."""
    ts = now or now_ist()
    ids = [
        int(r[0]) for r in db.query(Invoice.id).filter(
            Invoice.status == InvoiceStatus.PENDING.value,
            Invoice.due_date < ts,
        ).all()
    ]
    moved = 0
    for inv_id in ids:
        inv = apply_command(db, inv_id, Refresh(), now=ts, config=config)
        if inv.status == InvoiceStatus.OVERDUE.value:
            moved += 1
    return moved


# -------------------------
# IPD stay
# -------------------------
def _load_admission(db: Session, admission_id: int) -> IpdAdmission:
    adm = (db.query(IpdAdmission).options(selectinload(
        IpdAdmission.segments)).populate_existing().filter(
            IpdAdmission.id == int(admission_id)).with_for_update().first())
    if not adm:
        raise NotFoundError(f"Admission {admission_id} not found")
    return adm


def _load_bed(db: Session, bed_id: int) -> IpdBed:
    bed = (db.query(IpdBed).populate_existing().filter(
        IpdBed.id == int(bed_id)).with_for_update().first())
    if not bed:
        raise NotFoundError(f"Bed {bed_id} not found")
    return bed


def _draft_stay_invoice_id(db: Session, admission_id: int) -> Optional[int]:
    row = (db.query(Invoice.id).filter(
        Invoice.admission_id == int(admission_id),
        Invoice.type == InvoiceType.IPD.value,
        Invoice.status == InvoiceStatus.DRAFT.value,
    ).order_by(Invoice.id.desc()).first())
    return int(row[0]) if row else None


def _stay_invoice(db: Session, adm: IpdAdmission, now: datetime,
                  cfg: BillingConfig) -> Invoice:
    """Latest draft IPD invoice of the stay; a new one if it was cancelled."""
    inv_id = _draft_stay_invoice_id(db, adm.id)
    if inv_id:
        return load_invoice(db, inv_id, for_update=True)
    inv = _new_invoice(
        db,
        patient_id=adm.patient_id,
        inv_type=InvoiceType.IPD.value,
        now=now,
        cfg=cfg,
        admission_id=adm.id,
        notes=f"Invoice for admission - {adm.admission_code}",
    )
    return inv


def admit_patient(
    db: Session,
    *,
    patient_id: int,
    bed_id: int,
    admitted_at: Optional[datetime] = None,
    admission_type: str = "elective",
    admitting_doctor_id: Optional[int] = None,
    notes: Optional[str] = None,
    now: Optional[datetime] = None,
    config: Optional[BillingConfig] = None,
) -> Tuple[IpdAdmission, Invoice]:
    """
    Admission + first bed segment + draft IPD invoice carrying the first
    day's bed charge.
    """
    cfg = _cfg(config)

    def _do() -> Tuple[IpdAdmission, Invoice]:
        ts = now or now_ist()
        at = to_naive_ist(admitted_at) or ts

        active = (db.query(IpdAdmission.id).filter(
            IpdAdmission.patient_id == int(patient_id),
            IpdAdmission.status == AdmissionStatus.ADMITTED.value,
        ).first())
        if active:
            raise ConflictError(
                "Patient already has an active admission. Cannot assign bed until discharge.")

        bed = _load_bed(db, bed_id)
        adm = IpdAdmission(
            patient_id=int(patient_id),
            admitting_doctor_id=admitting_doctor_id,
            admission_type=admission_type,
            admitted_at=at,
            status=AdmissionStatus.ADMITTED.value,
            notes=notes,
        )
        db.add(adm)
        db.flush()
        adm.admission_code = f"ADM{int(adm.id):06d}"

        open_segment(db, adm, bed, at)

        inv = _stay_invoice(db, adm, ts, cfg)
        sync_stay_lines(inv, adm.segments, at)
        recalc_invoice(inv, ts)
        db.flush()

        logger.info("Patient %s admitted as %s to bed %s, invoice %s",
                    patient_id, adm.admission_code, bed.bed_number,
                    inv.invoice_number)
        return adm, inv

    return run_atomic(db, [bed_key(bed_id),
                           series_key(cfg.invoice_prefix)],
                      _do,
                      timeout=cfg.lock_timeout,
                      retries=cfg.conflict_retries)


def _stay_keys(db: Session, admission_id: int, cfg: BillingConfig,
               *extra: str) -> List[str]:
    keys = [stay_key(admission_id), *extra]
    inv_id = _draft_stay_invoice_id(db, admission_id)
    if inv_id:
        keys.append(invoice_key(inv_id))
    keys.append(series_key(cfg.invoice_prefix))
    return keys


def transfer_patient(
    db: Session,
    *,
    admission_id: int,
    new_bed_id: int,
    at: Optional[datetime] = None,
    reason: Optional[str] = None,
    now: Optional[datetime] = None,
    config: Optional[BillingConfig] = None,
) -> Tuple[IpdAdmission, Invoice]:
    cfg = _cfg(config)

    def _do() -> Tuple[IpdAdmission, Invoice]:
        ts = now or now_ist()
        when = to_naive_ist(at) or ts
        adm = _load_admission(db, admission_id)
        if adm.is_discharged:
            raise InvalidStateError("Cannot transfer a discharged patient")
        new_bed = _load_bed(db, new_bed_id)

        close_and_transfer(db, adm, new_bed, when, reason=reason)

        inv = _stay_invoice(db, adm, ts, cfg)
        sync_stay_lines(inv, adm.segments, when)
        recalc_invoice(inv, ts)
        db.flush()
        return adm, inv

    keys = _stay_keys(db, admission_id, cfg, bed_key(new_bed_id))
    return run_atomic(db,
                      keys,
                      _do,
                      timeout=cfg.lock_timeout,
                      retries=cfg.conflict_retries)


def discharge_patient(
    db: Session,
    *,
    admission_id: int,
    at: Optional[datetime] = None,
    finalize: bool = True,
    now: Optional[datetime] = None,
    config: Optional[BillingConfig] = None,
) -> Tuple[IpdAdmission, Invoice]:
    """
    Close the stay, re-price every segment to the discharge time, pull in
    unbilled ledger charges and (by default) finalize the stay invoice.
    """
    cfg = _cfg(config)

    def _do() -> Tuple[IpdAdmission, Invoice]:
        ts = now or now_ist()
        when = to_naive_ist(at) or ts
        adm = _load_admission(db, admission_id)
        close_on_discharge(db, adm, when)

        inv = _stay_invoice(db, adm, ts, cfg)
        sync_stay_lines(inv, adm.segments, when)
        db.flush()
        attach_entries(inv, unbilled_entries(db, adm.id), ts)
        recalc_invoice(inv, ts)
        if finalize:
            billing_status.finalize(inv, ts)
        db.flush()
        return adm, inv

    return run_atomic(db,
                      _stay_keys(db, admission_id, cfg),
                      _do,
                      timeout=cfg.lock_timeout,
                      retries=cfg.conflict_retries)


def stay_cost(
    db: Session,
    admission_id: int,
    *,
    as_of: Optional[datetime] = None,
) -> Dict[str, Any]:
    adm = db.get(IpdAdmission, int(admission_id))
    if not adm:
        raise NotFoundError(f"Admission {admission_id} not found")
    when = as_of or adm.discharged_at or now_ist()

    rows = []
    total = ZERO
    for s in adm.segments:
        cost = segment_cost(s, when)
        total += cost
        rows.append({
            "segment_id": int(s.id),
            "bed_id": int(s.bed_id),
            "bed_number": s.bed_number,
            "ward": s.ward,
            "bed_type": s.bed_type,
            "daily_rate": money2(s.daily_rate),
            "start_at": s.start_at,
            "end_at": s.end_at,
            "transfer_reason": s.transfer_reason,
            "days": segment_days(s, when),
            "cost": money2(cost),
        })

    return {
        "admission_id": int(adm.id),
        "admission_code": adm.admission_code,
        "status": adm.status,
        "as_of": when,
        "segments": rows,
        "total_cost": money2(total),
    }


# -------------------------
# unbilled charge ledger
# -------------------------
def record_ledger_entry(
    db: Session,
    payload: Mapping[str, Any],
    *,
    now: Optional[datetime] = None,
    config: Optional[BillingConfig] = None,
) -> Tuple[BillingLedgerEntry, Optional[Invoice]]:
    """
    Record a charge against a stay or a patient. With auto_attach_invoice
    (default) a stay charge lands on the stay's draft invoice at once;
    otherwise it waits for generate_provisional_invoice / discharge.
    """
    cfg = _cfg(config)
    admission_id = payload.get("admission_id")
    patient_id = payload.get("patient_id")
    if not admission_id and not patient_id:
        raise ValidationError("patient_id or admission_id is required")

    def _do() -> Tuple[BillingLedgerEntry, Optional[Invoice]]:
        ts = now or now_ist()
        adm = None
        pid = patient_id
        if admission_id:
            adm = db.get(IpdAdmission, int(admission_id))
            if adm is None:
                raise NotFoundError(f"Admission {admission_id} not found")
            if patient_id and int(patient_id) != int(adm.patient_id):
                raise ValidationError(
                    f"Admission {adm.admission_code} belongs to another patient")
            pid = adm.patient_id

        entry = new_entry(payload,
                          patient_id=pid,
                          admission_id=adm.id if adm is not None else None,
                          now=ts)
        db.add(entry)
        db.flush()

        inv = None
        if adm is not None and payload.get("auto_attach_invoice", True):
            inv_id = _draft_stay_invoice_id(db, adm.id)
            if inv_id:
                inv = load_invoice(db, inv_id, for_update=True)
                attach_entries(inv, [entry], ts)
                recalc_invoice(inv, ts)
                db.flush()

        logger.info("Ledger entry %s (%s %s) recorded for patient %s%s",
                    entry.id, entry.category, entry.amount, pid,
                    f", billed on {inv.invoice_number}" if inv else "")
        return entry, inv

    if admission_id:
        keys = [stay_key(admission_id)]
        inv_id = _draft_stay_invoice_id(db, admission_id)
        if inv_id:
            keys.append(invoice_key(inv_id))
    else:
        keys = [patient_key(patient_id)]
    return run_atomic(db,
                      keys,
                      _do,
                      timeout=cfg.lock_timeout,
                      retries=cfg.conflict_retries)


def generate_provisional_invoice(
    db: Session,
    admission_id: int,
    *,
    now: Optional[datetime] = None,
    config: Optional[BillingConfig] = None,
) -> Tuple[Invoice, int]:
    """
    Attach every unbilled ledger entry of the stay to its draft invoice
    (opened if there is none). An open stay's bed lines are re-priced to
    now as well. Returns (invoice, entries attached).
    """
    cfg = _cfg(config)

    def _do() -> Tuple[Invoice, int]:
        ts = now or now_ist()
        adm = _load_admission(db, admission_id)
        inv = _stay_invoice(db, adm, ts, cfg)
        if not adm.is_discharged:
            sync_stay_lines(inv, adm.segments, ts)
        db.flush()

        attached = attach_entries(inv, unbilled_entries(db, adm.id), ts)
        recalc_invoice(inv, ts)
        db.flush()
        logger.info("Provisional invoice %s for %s: %s ledger entries attached",
                    inv.invoice_number, adm.admission_code, attached)
        return inv, attached

    return run_atomic(db,
                      _stay_keys(db, admission_id, cfg),
                      _do,
                      timeout=cfg.lock_timeout,
                      retries=cfg.conflict_retries)
