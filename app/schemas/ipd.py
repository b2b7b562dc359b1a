# FILE: app/schemas/ipd.py
from __future__ import annotations

from datetime import datetime
from decimal import Decimal
from typing import List, Literal, Optional

from pydantic import BaseModel, ConfigDict, field_validator

from app.models.ipd import BedType


class BedCreate(BaseModel):
    bed_number: str
    ward: str
    floor: Optional[str] = None
    bed_type: BedType = BedType.GENERAL
    price_per_day: Decimal = Decimal("500")

    @field_validator("bed_number", "ward")
    @classmethod
    def _not_blank(cls, v: str) -> str:
        v = (v or "").strip()
        if not v:
            raise ValueError("must not be blank")
        return v

    @field_validator("price_per_day")
    @classmethod
    def _rate(cls, v):
        if Decimal(str(v)) < 0:
            raise ValueError("price_per_day cannot be negative")
        return v


class BedOut(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: int
    bed_number: str
    ward: str
    floor: Optional[str] = None
    bed_type: str
    status: str
    price_per_day: Decimal
    current_patient_id: Optional[int] = None


class AdmitIn(BaseModel):
    patient_id: int
    bed_id: int
    admission_type: Literal["emergency", "elective", "transfer"] = "elective"
    admitting_doctor_id: Optional[int] = None
    admitted_at: Optional[datetime] = None
    notes: Optional[str] = None


class TransferIn(BaseModel):
    new_bed_id: int
    transfer_reason: Optional[str] = None
    at: Optional[datetime] = None


class DischargeIn(BaseModel):
    at: Optional[datetime] = None
    finalize: bool = True


class StaySegmentOut(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: int
    bed_id: int
    bed_number: str
    ward: str
    bed_type: str
    daily_rate: Decimal
    start_at: datetime
    end_at: Optional[datetime] = None
    transfer_reason: Optional[str] = None


class AdmissionOut(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: int
    admission_code: Optional[str] = None
    patient_id: int
    admission_type: str
    admitted_at: datetime
    discharged_at: Optional[datetime] = None
    status: str
    total_days: Optional[int] = None
    segments: List[StaySegmentOut] = []
