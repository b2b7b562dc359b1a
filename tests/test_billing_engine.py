from datetime import datetime, timedelta
from decimal import Decimal

import pytest

from app.core.config import BillingConfig
from app.core.errors import (
    InvalidStateError,
    NotFoundError,
    ValidationError,
)
from app.models.billing import InvoiceStatus
from app.services.billing_engine import (
    AddItem,
    AddPayment,
    Cancel,
    Finalize,
    RemoveItem,
    SetDiscount,
    SyncStay,
    UpdateDetails,
    admit_patient,
    apply_command,
    create_invoice,
    get_invoice,
    list_invoices,
    transfer_patient,
)

T0 = datetime(2025, 3, 1, 10, 0)

VISIT = {"description": "Consultation", "category": "doctor_fee",
         "unit_price": "1000"}


def _draft(db, cfg, **extra):
    payload = {"patient_id": 1, "type": "opd", **extra}
    return create_invoice(db, payload, now=T0, config=cfg)


def test_invoice_numbers_run_per_month(db, cfg):
    a = _draft(db, cfg)
    b = _draft(db, cfg)
    c = create_invoice(db, {"patient_id": 1}, now=datetime(2025, 4, 2),
                       config=cfg)

    assert a.invoice_number == "INV250300001"
    assert b.invoice_number == "INV250300002"
    assert c.invoice_number == "INV250400001"
    assert c.type == "other"


def test_client_totals_are_ignored(db, cfg):
    inv = _draft(db, cfg, items=[VISIT], total_amount="5",
                 paid_amount="1000", status="paid")
    assert inv.total_amount == Decimal("1000.00")
    assert inv.paid_amount == Decimal("0.00")
    assert inv.status == InvoiceStatus.DRAFT.value
    assert inv.due_date == T0 + timedelta(days=cfg.due_days)


def test_gst_applies_after_discount(db):
    cfg = BillingConfig(cgst_rate=Decimal("0.09"), sgst_rate=Decimal("0.09"))
    inv = _draft(db, cfg, items=[VISIT], discount_amount="100")

    assert inv.subtotal == Decimal("1000.00")
    assert inv.discount_amount == Decimal("100.00")
    assert inv.cgst_amount == Decimal("81.00")
    assert inv.sgst_amount == Decimal("81.00")
    assert inv.total_amount == Decimal("1062.00")


def test_create_rejects_bad_input(db, cfg):
    with pytest.raises(ValidationError):
        create_invoice(db, {}, now=T0, config=cfg)
    with pytest.raises(ValidationError):
        _draft(db, cfg, type="spa")
    with pytest.raises(ValidationError):
        _draft(db, cfg, cgst_rate="-0.01")
    with pytest.raises(ValidationError):
        _draft(db, cfg, discount_amount="-1")
    with pytest.raises(NotFoundError):
        _draft(db, cfg, admission_id=404)


def test_draft_editing_commands(db, cfg):
    inv = _draft(db, cfg)

    inv = apply_command(db, inv.id, AddItem(charge=VISIT), now=T0, config=cfg)
    inv = apply_command(db, inv.id,
                        AddItem(charge={**VISIT, "unit_price": "250"}),
                        now=T0, config=cfg)
    assert inv.total_amount == Decimal("1250.00")

    inv = apply_command(db, inv.id, SetDiscount(amount=Decimal("50"),
                                                reason="staff"),
                        now=T0, config=cfg)
    assert inv.total_amount == Decimal("1200.00")
    assert inv.discount_reason == "staff"

    inv = apply_command(db, inv.id, RemoveItem(item_id=inv.items[0].id),
                        now=T0, config=cfg)
    assert len(inv.items) == 1
    assert inv.total_amount == Decimal("200.00")


def test_finalized_invoice_is_frozen(db, cfg):
    inv = _draft(db, cfg, items=[VISIT])
    inv = apply_command(db, inv.id, Finalize(), now=T0, config=cfg)
    assert inv.status == InvoiceStatus.PENDING.value
    assert inv.finalized_at == T0

    with pytest.raises(InvalidStateError):
        apply_command(db, inv.id, AddItem(charge=VISIT), now=T0, config=cfg)
    with pytest.raises(InvalidStateError):
        apply_command(db, inv.id, SetDiscount(amount=Decimal("10")), now=T0,
                      config=cfg)
    with pytest.raises(InvalidStateError):
        apply_command(db, inv.id, Finalize(), now=T0, config=cfg)

    inv = get_invoice(db, inv.id, now=T0, config=cfg)
    assert inv.total_amount == Decimal("1000.00")
    assert len(inv.items) == 1


def test_unknown_invoice(db, cfg):
    with pytest.raises(NotFoundError):
        get_invoice(db, 12345, config=cfg)
    with pytest.raises(NotFoundError):
        apply_command(db, 12345, Finalize(), config=cfg)


def test_list_invoices_filters(db, cfg):
    _draft(db, cfg)
    _draft(db, cfg, patient_id=2, type="lab", finalize=True)

    assert len(list_invoices(db, now=T0)) == 2
    assert [i.patient_id for i in list_invoices(db, patient_id=2, now=T0)] == [2]
    assert len(list_invoices(db, status="draft", now=T0)) == 1
    assert len(list_invoices(db, inv_type="lab", now=T0)) == 1


def test_sync_stay_on_non_stay_invoice(db, cfg):
    inv = _draft(db, cfg)
    with pytest.raises(ValidationError):
        apply_command(db, inv.id, SyncStay(), now=T0, config=cfg)


def test_stay_invoice_cannot_finalize_while_admitted(db, make_bed, cfg):
    bed = make_bed("GEN-101", 500)
    _, inv = admit_patient(db, patient_id=1, bed_id=bed.id, admitted_at=T0,
                           now=T0, config=cfg)
    with pytest.raises(InvalidStateError):
        apply_command(db, inv.id, Finalize(), now=T0, config=cfg)


def test_provisional_stay_bill(db, make_bed, cfg):
    bed = make_bed("GEN-101", 500)
    _, inv = admit_patient(db, patient_id=1, bed_id=bed.id, admitted_at=T0,
                           now=T0, config=cfg)
    as_of = T0 + timedelta(days=1, hours=1)

    inv = apply_command(db, inv.id, SyncStay(as_of=as_of), now=as_of,
                        config=cfg)
    inv = apply_command(db, inv.id, SyncStay(as_of=as_of), now=as_of,
                        config=cfg)

    assert len(inv.items) == 1
    assert inv.items[0].quantity == Decimal("2.00")
    assert inv.total_amount == Decimal("1000.00")


def test_cancelled_stay_invoice_is_replaced(db, make_bed, cfg):
    a = make_bed("GEN-101", 500)
    b = make_bed("GEN-102", 700)
    adm, first = admit_patient(db, patient_id=1, bed_id=a.id, admitted_at=T0,
                               now=T0, config=cfg)
    apply_command(db, first.id, Cancel(reason="wrong tariff"), now=T0,
                  config=cfg)

    t1 = T0 + timedelta(days=1)
    adm, second = transfer_patient(db, admission_id=adm.id, new_bed_id=b.id,
                                   at=t1, now=t1, config=cfg)

    assert second.id != first.id
    assert second.status == InvoiceStatus.DRAFT.value
    assert len(second.items) == 2
    assert second.total_amount == Decimal("1200.00")


def test_list_derives_overdue_on_read(db, cfg):
    inv = _draft(db, cfg, items=[VISIT], finalize=True)
    assert inv.status == InvoiceStatus.PENDING.value
    later = inv.due_date + timedelta(days=1)

    rows = list_invoices(db, now=later, config=cfg)
    assert [r.status for r in rows] == [InvoiceStatus.OVERDUE.value]

    assert [r.id for r in list_invoices(db, status="overdue", now=later,
                                        config=cfg)] == [inv.id]
    assert list_invoices(db, status="pending", now=later, config=cfg) == []
    assert get_invoice(db, inv.id, now=later,
                       config=cfg).status == InvoiceStatus.OVERDUE.value


def test_list_filters_by_creation_date(db, cfg):
    create_invoice(db, {"patient_id": 1}, now=T0, config=cfg)
    mid = create_invoice(db, {"patient_id": 1}, now=T0 + timedelta(days=5),
                         config=cfg)
    create_invoice(db, {"patient_id": 1}, now=T0 + timedelta(days=10),
                   config=cfg)

    rows = list_invoices(db,
                         created_from=T0 + timedelta(days=1),
                         created_to=T0 + timedelta(days=9),
                         now=T0,
                         config=cfg)
    assert [r.id for r in rows] == [mid.id]
    assert len(list_invoices(db, created_from=T0 + timedelta(days=5),
                             now=T0, config=cfg)) == 2


def test_update_details_moves_due_date(db, cfg):
    inv = _draft(db, cfg, items=[VISIT])
    inv = apply_command(db, inv.id, UpdateDetails(notes="ward 3"), now=T0,
                        config=cfg)
    assert inv.notes == "ward 3"

    inv = apply_command(db, inv.id, Finalize(), now=T0, config=cfg)
    inv = apply_command(db, inv.id,
                        UpdateDetails(due_date=T0 - timedelta(days=1)),
                        now=T0, config=cfg)
    assert inv.status == InvoiceStatus.OVERDUE.value
    assert inv.notes == "ward 3"

    inv = apply_command(db, inv.id,
                        UpdateDetails(due_date=T0 + timedelta(days=30)),
                        now=T0, config=cfg)
    assert inv.status == InvoiceStatus.PENDING.value
    assert inv.due_date == T0 + timedelta(days=30)


def test_update_details_rejected_when_closed(db, cfg):
    paid = _draft(db, cfg, items=[VISIT], finalize=True)
    paid = apply_command(db, paid.id,
                         AddPayment(amount=Decimal("1000"), method="cash"),
                         now=T0, config=cfg)
    assert paid.status == InvoiceStatus.PAID.value
    with pytest.raises(InvalidStateError):
        apply_command(db, paid.id, UpdateDetails(due_date=T0), now=T0,
                      config=cfg)
    paid = apply_command(db, paid.id, UpdateDetails(notes="receipt sent"),
                         now=T0, config=cfg)
    assert paid.notes == "receipt sent"

    gone = _draft(db, cfg, items=[VISIT])
    apply_command(db, gone.id, Cancel(reason="duplicate"), now=T0, config=cfg)
    with pytest.raises(InvalidStateError):
        apply_command(db, gone.id, UpdateDetails(notes="x"), now=T0,
                      config=cfg)


def test_create_cannot_finalize_open_stay(db, make_bed, cfg):
    bed = make_bed("GEN-101", 500)
    adm, _ = admit_patient(db, patient_id=1, bed_id=bed.id, admitted_at=T0,
                           now=T0, config=cfg)

    with pytest.raises(InvalidStateError):
        _draft(db, cfg, type="ipd", admission_id=adm.id, items=[VISIT],
               finalize=True)

    inv = _draft(db, cfg, type="ipd", admission_id=adm.id, items=[VISIT])
    assert inv.status == InvoiceStatus.DRAFT.value
