from __future__ import annotations

from datetime import datetime

from sqlalchemy.orm import Session

from app.models.billing import InvoiceNumberSeries


def _period_key(dt: datetime) -> str:
    return dt.strftime("%y%m")


def next_invoice_number(
    db: Session,
    *,
    on_date: datetime,
    prefix: str = "INV",
    padding: int = 5,
) -> str:
    """
    INV + YYMM + zero-padded running number, restarting every month:
    INV250300001, INV250300002, ... INV250400001
    """
    pk = _period_key(on_date)

    row = (db.query(InvoiceNumberSeries).filter(
        InvoiceNumberSeries.prefix == prefix,
        InvoiceNumberSeries.period_key == pk,
        InvoiceNumberSeries.is_active.is_(True),
    ).with_for_update().first())

    if not row:
        row = InvoiceNumberSeries(
            prefix=prefix,
            period_key=pk,
            padding=padding,
            next_number=1,
            is_active=True,
        )
        db.add(row)
        db.flush()

    n = int(row.next_number or 1)
    row.next_number = n + 1
    db.flush()

    return f"{prefix}{pk}{str(n).zfill(int(row.padding or padding))}"
