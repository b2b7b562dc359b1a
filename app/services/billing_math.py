# app/services/billing_math.py
"""
Invoice arithmetic. Pure functions, no DB / request access.

Values stay unrounded Decimal through every intermediate step; money2()
is applied only when a figure is stored or displayed, so rounding error
does not compound across many lines.
"""
from __future__ import annotations

from dataclasses import dataclass
from decimal import Decimal, InvalidOperation, ROUND_HALF_UP
from typing import Any, Dict, Iterable, Mapping

ZERO = Decimal("0")
Q2 = Decimal("0.01")


def D(x) -> Decimal:
    if isinstance(x, Decimal):
        return x
    try:
        return Decimal(str(x if x is not None else 0))
    except (InvalidOperation, ValueError):
        return ZERO


def money2(x) -> Decimal:
    return D(x).quantize(Q2, rounding=ROUND_HALF_UP)


def _field(it: Any, name: str):
    if isinstance(it, Mapping):
        return it.get(name)
    return getattr(it, name, None)


def line_gross(qty, unit_price) -> Decimal:
    return D(qty) * D(unit_price)


def line_amount(qty, unit_price, discount, tax) -> Decimal:
    """
    (qty * unit_price - discount) + tax, floored at zero.
    """
    amt = line_gross(qty, unit_price) - D(discount) + D(tax)
    return amt if amt > 0 else ZERO


def compute_subtotal(items: Iterable[Any]) -> Decimal:
    return sum(
        (line_gross(_field(it, "quantity"), _field(it, "unit_price"))
         for it in items),
        ZERO,
    )


def compute_discount(items: Iterable[Any],
                     invoice_discount=0,
                     subtotal=None) -> Decimal:
    """
    Line discounts + header discount, clamped into [0, subtotal].
    Over-discounting is clamped rather than rejected.
    """
    items = list(items)
    if subtotal is None:
        subtotal = compute_subtotal(items)
    disc = sum((D(_field(it, "discount")) for it in items), ZERO)
    disc += D(invoice_discount)
    if disc < 0:
        disc = ZERO
    sub = D(subtotal)
    if disc > sub:
        disc = sub if sub > 0 else ZERO
    return disc


def compute_tax(taxable_base, cgst_rate, sgst_rate) -> Dict[str, Decimal]:
    """
    Rates are fractions (0.09 == 9%). Negative bases and rates count as zero.
    """
    base = D(taxable_base)
    if base < 0:
        base = ZERO
    cgst = base * max(D(cgst_rate), ZERO)
    sgst = base * max(D(sgst_rate), ZERO)
    return {"cgst": cgst, "sgst": sgst, "total": cgst + sgst}


def compute_total(subtotal, discount, total_tax) -> Decimal:
    return max(ZERO, D(subtotal) - D(discount)) + D(total_tax)


def compute_due(total, paid) -> Decimal:
    due = D(total) - D(paid)
    return due if due > 0 else ZERO


@dataclass(frozen=True)
class InvoiceSummary:
    subtotal: Decimal
    discount_amount: Decimal
    cgst_amount: Decimal
    sgst_amount: Decimal
    total_tax: Decimal
    total_amount: Decimal

    def rounded(self) -> "InvoiceSummary":
        """
        Storage form. total is re-derived from the rounded parts so the
        stored row reconciles exactly: total = subtotal - discount + tax.
        """
        sub = money2(self.subtotal)
        disc = money2(self.discount_amount)
        cgst = money2(self.cgst_amount)
        sgst = money2(self.sgst_amount)
        tax = money2(self.total_tax)
        return InvoiceSummary(
            subtotal=sub,
            discount_amount=disc,
            cgst_amount=cgst,
            sgst_amount=sgst,
            total_tax=tax,
            total_amount=compute_total(sub, disc, tax),
        )


def summarize(items: Iterable[Any],
              invoice_discount=0,
              cgst_rate=0,
              sgst_rate=0) -> InvoiceSummary:
    items = list(items)
    subtotal = compute_subtotal(items)
    discount = compute_discount(items, invoice_discount, subtotal)
    item_tax = sum((D(_field(it, "tax")) for it in items), ZERO)

    gst = compute_tax(subtotal - discount, cgst_rate, sgst_rate)
    total_tax = item_tax + gst["total"]

    return InvoiceSummary(
        subtotal=subtotal,
        discount_amount=discount,
        cgst_amount=gst["cgst"],
        sgst_amount=gst["sgst"],
        total_tax=total_tax,
        total_amount=compute_total(subtotal, discount, total_tax),
    )


def format_inr(x) -> str:
    """
    ₹ with Indian digit grouping: 1234567.5 -> ₹12,34,567.50
    Presentation only; amounts are stored as plain numbers.
    """
    q = money2(x)
    sign = "-" if q < 0 else ""
    whole, frac = f"{abs(q):.2f}".split(".")
    if len(whole) > 3:
        head, tail = whole[:-3], whole[-3:]
        groups = []
        while len(head) > 2:
            groups.insert(0, head[-2:])
            head = head[:-2]
        if head:
            groups.insert(0, head)
        whole = ",".join(groups + [tail])
    return f"{sign}₹{whole}.{frac}"
