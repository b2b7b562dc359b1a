from datetime import datetime, timedelta
from decimal import Decimal

import pytest

from app.core.errors import InvalidStateError
from app.models.billing import Invoice, InvoiceStatus as S
from app.services.billing_status import (
    cancel,
    derive_status,
    ensure_payable,
    finalize,
)

NOW = datetime(2025, 3, 15, 12, 0)
LATER = NOW + timedelta(days=10)
EARLIER = NOW - timedelta(days=1)


@pytest.mark.parametrize("current,paid,total,due,expected", [
    (S.PENDING.value, "1000", "1000", LATER, S.PAID.value),
    (S.PENDING.value, "400", "1000", LATER, S.PARTIAL.value),
    (S.OVERDUE.value, "400", "1000", EARLIER, S.PARTIAL.value),
    (S.PENDING.value, "0", "1000", EARLIER, S.OVERDUE.value),
    (S.PENDING.value, "0", "1000", LATER, S.PENDING.value),
    # a zero invoice is never "paid" by nothing
    (S.PENDING.value, "0", "0", LATER, S.PENDING.value),
    (S.DRAFT.value, "0", "1000", EARLIER, S.DRAFT.value),
    (S.CANCELLED.value, "0", "1000", EARLIER, S.CANCELLED.value),
    (S.REFUNDED.value, "1000", "1000", LATER, S.REFUNDED.value),
])
def test_derive_status(current, paid, total, due, expected):
    assert derive_status(current, Decimal(paid), Decimal(total), due,
                         NOW) == expected


def _invoice(status, total="1000", paid="0", due=LATER):
    return Invoice(invoice_number="INV250300001", status=status,
                   total_amount=Decimal(total), paid_amount=Decimal(paid),
                   due_date=due)


def test_finalize_derives_status_from_amounts():
    inv = _invoice(S.DRAFT.value, due=EARLIER)
    assert finalize(inv, NOW) == S.OVERDUE.value
    assert inv.finalized_at == NOW


def test_finalize_twice_is_rejected():
    inv = _invoice(S.PENDING.value)
    with pytest.raises(InvalidStateError):
        finalize(inv, NOW)


@pytest.mark.parametrize("status", [
    S.DRAFT.value, S.PENDING.value, S.PARTIAL.value, S.OVERDUE.value
])
def test_cancel_open_invoice(status):
    inv = _invoice(status)
    assert cancel(inv, NOW, "duplicate") == S.CANCELLED.value
    assert inv.cancelled_at == NOW
    assert inv.cancel_reason == "duplicate"


@pytest.mark.parametrize("status", [
    S.PAID.value, S.CANCELLED.value, S.REFUNDED.value
])
def test_cancel_closed_invoice_is_rejected(status):
    inv = _invoice(status)
    with pytest.raises(InvalidStateError):
        cancel(inv, NOW)
    assert inv.status == status


@pytest.mark.parametrize("status", [
    S.DRAFT.value, S.PAID.value, S.CANCELLED.value, S.REFUNDED.value
])
def test_unpayable_statuses(status):
    with pytest.raises(InvalidStateError):
        ensure_payable(_invoice(status))


@pytest.mark.parametrize("status", [
    S.PENDING.value, S.PARTIAL.value, S.OVERDUE.value
])
def test_payable_statuses(status):
    ensure_payable(_invoice(status))
