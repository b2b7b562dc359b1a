# FILE: app/models/billing.py
from __future__ import annotations

import enum
from datetime import datetime

from sqlalchemy import (
    Boolean,
    Column,
    DateTime,
    ForeignKey,
    Index,
    Integer,
    Numeric,
    String,
    Text,
    UniqueConstraint,
)
from sqlalchemy.orm import relationship

from app.db.base import Base


class InvoiceType(str, enum.Enum):
    OPD = "opd"
    IPD = "ipd"
    PHARMACY = "pharmacy"
    LAB = "lab"
    EMERGENCY = "emergency"
    OTHER = "other"


class InvoiceStatus(str, enum.Enum):
    DRAFT = "draft"
    PENDING = "pending"
    PARTIAL = "partial"
    PAID = "paid"
    OVERDUE = "overdue"
    CANCELLED = "cancelled"
    REFUNDED = "refunded"


class ItemCategory(str, enum.Enum):
    BED_CHARGES = "bed_charges"
    DOCTOR_FEE = "doctor_fee"
    NURSING = "nursing"
    MEDICATION = "medication"
    PROCEDURE = "procedure"
    LAB_TEST = "lab_test"
    RADIOLOGY = "radiology"
    SURGERY = "surgery"
    OTHER = "other"


class PayMethod(str, enum.Enum):
    CASH = "cash"
    CARD = "card"
    UPI = "upi"
    NET_BANKING = "net_banking"
    CHEQUE = "cheque"
    INSURANCE = "insurance"


class Invoice(Base):
    """
    Patient invoice.

    Amount columns are derived: they are written only by
    billing_engine.recalc_invoice() and never accepted from clients.

      subtotal       = sum(qty * unit_price)
      discount_amount= sum(item.discount) + invoice_discount (capped to subtotal)
      total_tax      = sum(item.tax) + cgst_amount + sgst_amount
      total_amount   = subtotal - discount_amount + total_tax
      due_amount     = max(total_amount - paid_amount, 0)
    """

    __tablename__ = "billing_invoices"
    __table_args__ = (
        Index("ix_billing_invoices_patient", "patient_id"),
        Index("ix_billing_invoices_status", "status"),
    )

    id = Column(Integer, primary_key=True, index=True)
    invoice_number = Column(String(32), unique=True, index=True, nullable=True)

    patient_id = Column(Integer, nullable=False)
    admission_id = Column(Integer,
                          ForeignKey("ipd_admissions.id"),
                          nullable=True,
                          index=True)

    # opd | ipd | pharmacy | lab | emergency | other
    type = Column(String(20), nullable=False, default=InvoiceType.OTHER.value)
    status = Column(String(16),
                    nullable=False,
                    default=InvoiceStatus.DRAFT.value)

    subtotal = Column(Numeric(12, 2), default=0)
    # header level discount as entered; discount_amount is the applied total
    invoice_discount = Column(Numeric(12, 2), default=0)
    discount_amount = Column(Numeric(12, 2), default=0)
    discount_reason = Column(String(255), nullable=True)

    cgst_rate = Column(Numeric(6, 4), default=0)
    cgst_amount = Column(Numeric(12, 2), default=0)
    sgst_rate = Column(Numeric(6, 4), default=0)
    sgst_amount = Column(Numeric(12, 2), default=0)
    total_tax = Column(Numeric(12, 2), default=0)

    total_amount = Column(Numeric(12, 2), default=0)
    paid_amount = Column(Numeric(12, 2), default=0)
    due_amount = Column(Numeric(12, 2), default=0)

    due_date = Column(DateTime, nullable=False)
    notes = Column(Text, nullable=True)

    finalized_at = Column(DateTime, nullable=True)
    cancelled_at = Column(DateTime, nullable=True)
    cancel_reason = Column(String(255), nullable=True)

    # optimistic concurrency
    version = Column(Integer, nullable=False, default=1)

    created_at = Column(DateTime, default=datetime.utcnow)
    updated_at = Column(
        DateTime,
        default=datetime.utcnow,
        onupdate=datetime.utcnow,
    )

    items = relationship(
        "InvoiceItem",
        back_populates="invoice",
        cascade="all, delete-orphan",
        order_by="InvoiceItem.seq",
    )
    payments = relationship(
        "Payment",
        back_populates="invoice",
        cascade="all, delete-orphan",
        order_by="Payment.id",
    )

    __mapper_args__ = {"version_id_col": version}

    @property
    def is_draft(self) -> bool:
        return self.status == InvoiceStatus.DRAFT.value


class InvoiceItem(Base):
    __tablename__ = "billing_invoice_items"
    __table_args__ = (
        # SEG:<segment_id> / EVT:<source_event_id> / LED:<entry_id>; NULL for manual lines
        UniqueConstraint("invoice_id",
                         "source_key",
                         name="uq_billing_item_source_per_invoice"),
        Index("ix_billing_items_invoice", "invoice_id"),
    )

    id = Column(Integer, primary_key=True, index=True)
    invoice_id = Column(
        Integer,
        ForeignKey("billing_invoices.id", ondelete="CASCADE"),
        nullable=False,
    )

    # S.no order for UI/print
    seq = Column(Integer, default=1)

    source_key = Column(String(64), nullable=True)
    # stay segment billed by this line (reference, not ownership)
    segment_id = Column(Integer,
                        ForeignKey("ipd_stay_segments.id"),
                        nullable=True)

    description = Column(String(300), nullable=False)
    category = Column(String(20), nullable=False)

    quantity = Column(Numeric(10, 2), default=1)
    unit_price = Column(Numeric(12, 2), default=0)
    discount = Column(Numeric(12, 2), default=0)
    tax = Column(Numeric(12, 2), default=0)

    # (qty * unit_price - discount) + tax
    amount = Column(Numeric(12, 2), default=0)

    created_at = Column(DateTime, default=datetime.utcnow)
    updated_at = Column(
        DateTime,
        default=datetime.utcnow,
        onupdate=datetime.utcnow,
    )

    invoice = relationship("Invoice", back_populates="items")


class Payment(Base):
    """
    Payment against one invoice. Append-only: never edited or removed.
    """

    __tablename__ = "billing_payments"
    __table_args__ = (
        Index("ix_billing_payments_invoice", "invoice_id"),
        UniqueConstraint("invoice_id",
                         "idempotency_key",
                         name="uq_billing_payment_idem"),
    )

    id = Column(Integer, primary_key=True, index=True)
    invoice_id = Column(
        Integer,
        ForeignKey("billing_invoices.id", ondelete="CASCADE"),
        nullable=False,
    )

    amount = Column(Numeric(12, 2), nullable=False)
    method = Column(String(32), nullable=False)
    reference = Column(String(100), nullable=True)
    idempotency_key = Column(String(80), nullable=True)
    paid_at = Column(DateTime, default=datetime.utcnow)
    received_by = Column(Integer, nullable=True)

    invoice = relationship("Invoice", back_populates="payments")


class LedgerSourceType(str, enum.Enum):
    SERVICE_ORDER = "service_order"
    BED_CHARGE = "bed_charge"
    NURSING = "nursing"
    PHARMACY = "pharmacy"
    PROCEDURE = "procedure"
    MANUAL = "manual"
    OTHER = "other"


class BillingLedgerEntry(Base):
    """
    A charge recorded against a stay (or a patient) before it is billed.
    Attached to an invoice as one line keyed LED:<id>; billed/invoice_id
    mark where it went.
    """

    __tablename__ = "billing_ledger"
    __table_args__ = (
        Index("ix_billing_ledger_adm_billed", "admission_id", "billed"),
        Index("ix_billing_ledger_patient_created", "patient_id", "created_at"),
    )

    id = Column(Integer, primary_key=True, index=True)
    admission_id = Column(Integer,
                          ForeignKey("ipd_admissions.id"),
                          nullable=True)
    patient_id = Column(Integer, nullable=False)

    source_type = Column(String(20),
                         nullable=False,
                         default=LedgerSourceType.MANUAL.value)
    # id in the producing module (OT case, service order ...)
    source_id = Column(String(64), nullable=True)

    category = Column(String(20), nullable=False)
    description = Column(String(300), nullable=False)
    quantity = Column(Numeric(10, 2), default=1)
    unit_price = Column(Numeric(12, 2), nullable=False)
    amount = Column(Numeric(12, 2), nullable=False)

    recorded_by = Column(Integer, nullable=True)
    recorded_at = Column(DateTime, nullable=False)

    billed = Column(Boolean, nullable=False, default=False)
    billed_at = Column(DateTime, nullable=True)
    invoice_id = Column(Integer,
                        ForeignKey("billing_invoices.id"),
                        nullable=True)

    created_at = Column(DateTime, nullable=False)


class InvoiceNumberSeries(Base):
    __tablename__ = "billing_number_series"
    __table_args__ = (UniqueConstraint("prefix",
                                       "period_key",
                                       name="uq_billing_series_period"), )

    id = Column(Integer, primary_key=True)
    prefix = Column(String(20), nullable=False)
    # YYMM, numbering restarts every month
    period_key = Column(String(8), nullable=False)
    next_number = Column(Integer, nullable=False, default=1)
    padding = Column(Integer, nullable=False, default=5)
    is_active = Column(Boolean, default=True)
