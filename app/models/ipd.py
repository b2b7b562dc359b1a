# FILE: app/models/ipd.py
from __future__ import annotations

import enum
from datetime import datetime

from sqlalchemy import (
    Column,
    DateTime,
    ForeignKey,
    Index,
    Integer,
    Numeric,
    String,
)
from sqlalchemy.orm import relationship

from app.db.base import Base


class BedType(str, enum.Enum):
    GENERAL = "general"
    SEMI_PRIVATE = "semi_private"
    PRIVATE = "private"
    ICU = "icu"
    NICU = "nicu"
    PICU = "picu"
    CCU = "ccu"
    ISOLATION = "isolation"


class BedStatus(str, enum.Enum):
    AVAILABLE = "available"
    OCCUPIED = "occupied"
    MAINTENANCE = "maintenance"
    RESERVED = "reserved"
    CLEANING = "cleaning"


class AdmissionStatus(str, enum.Enum):
    ADMITTED = "admitted"
    DISCHARGED = "discharged"


class IpdBed(Base):
    __tablename__ = "ipd_beds"
    __table_args__ = (
        Index("ix_ipd_beds_status", "status"),
        Index("ix_ipd_beds_ward", "ward"),
    )

    id = Column(Integer, primary_key=True)
    bed_number = Column(String(30), unique=True, nullable=False)
    ward = Column(String(80), nullable=False)
    floor = Column(String(30), nullable=True)
    bed_type = Column(String(20), nullable=False,
                      default=BedType.GENERAL.value)
    status = Column(String(20), nullable=False,
                    default=BedStatus.AVAILABLE.value)
    price_per_day = Column(Numeric(12, 2), nullable=False, default=500)
    current_patient_id = Column(Integer, nullable=True)

    created_at = Column(DateTime, default=datetime.utcnow)
    updated_at = Column(DateTime,
                        default=datetime.utcnow,
                        onupdate=datetime.utcnow)


class IpdAdmission(Base):
    """
    One in-patient stay. Owns the ordered bed occupancy segments.
    Patient / doctor are referenced by id only.
    """
    __tablename__ = "ipd_admissions"

    id = Column(Integer, primary_key=True)
    admission_code = Column(String(20), unique=True, index=True, nullable=True)
    patient_id = Column(Integer, nullable=False, index=True)
    admitting_doctor_id = Column(Integer, nullable=True)

    # emergency | elective | transfer
    admission_type = Column(String(20), nullable=False, default="elective")
    admitted_at = Column(DateTime, nullable=False)
    discharged_at = Column(DateTime, nullable=True)
    status = Column(String(20),
                    nullable=False,
                    default=AdmissionStatus.ADMITTED.value)
    total_days = Column(Integer, nullable=True)
    notes = Column(String(500), nullable=True)

    created_at = Column(DateTime, default=datetime.utcnow)

    segments = relationship(
        "IpdStaySegment",
        back_populates="admission",
        cascade="all, delete-orphan",
        order_by="IpdStaySegment.start_at",
    )

    @property
    def open_segment(self) -> "IpdStaySegment | None":
        for seg in self.segments:
            if seg.end_at is None:
                return seg
        return None

    @property
    def is_discharged(self) -> bool:
        return self.status == AdmissionStatus.DISCHARGED.value


class IpdStaySegment(Base):
    """
    One continuous bed occupancy at one daily rate.
    Ward / bed type / rate are snapshotted when the segment opens so a later
    tariff change does not re-price an earlier part of the stay.
    """
    __tablename__ = "ipd_stay_segments"
    __table_args__ = (
        Index("ix_ipd_segments_adm_start", "admission_id", "start_at"),
        Index("ix_ipd_segments_adm_end", "admission_id", "end_at"),
    )

    id = Column(Integer, primary_key=True)
    admission_id = Column(Integer,
                          ForeignKey("ipd_admissions.id", ondelete="CASCADE"),
                          nullable=False)
    bed_id = Column(Integer, ForeignKey("ipd_beds.id"), nullable=False)
    bed_number = Column(String(30), nullable=False)
    ward = Column(String(80), nullable=False)
    bed_type = Column(String(20), nullable=False)
    daily_rate = Column(Numeric(12, 2), nullable=False)
    start_at = Column(DateTime, nullable=False)
    end_at = Column(DateTime, nullable=True)
    transfer_reason = Column(String(120), default="admission")

    admission = relationship("IpdAdmission", back_populates="segments")
    bed = relationship("IpdBed")
