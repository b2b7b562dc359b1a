from __future__ import annotations

import logging
from datetime import datetime, timedelta
from decimal import Decimal
from typing import Iterable, Optional

from sqlalchemy.orm import Session

from app.core.errors import ConflictError, InvalidStateError, ValidationError
from app.models.ipd import (
    AdmissionStatus,
    BedStatus,
    IpdAdmission,
    IpdBed,
    IpdStaySegment,
)
from app.services.billing_math import D, ZERO

logger = logging.getLogger(__name__)

ONE_DAY = timedelta(days=1)


# -------------------------
# costing (pure)
# -------------------------
def segment_days(segment: IpdStaySegment, as_of: datetime) -> int:
    """
    Whole days billed for a segment up to as_of.
    Any partial day counts as a full day, and a zero-length (or same-instant)
    segment still bills one day.
    """
    end = segment.end_at if segment.end_at is not None else as_of
    if end > as_of:
        end = as_of
    elapsed = end - segment.start_at
    if elapsed <= timedelta(0):
        return 1
    # ceiling division on timedelta, exact to the microsecond
    return max(1, -((-elapsed) // ONE_DAY))


def segment_cost(segment: IpdStaySegment, as_of: datetime) -> Decimal:
    return D(segment_days(segment, as_of)) * D(segment.daily_rate)


def total_cost(segments: Iterable[IpdStaySegment], as_of: datetime) -> Decimal:
    return sum((segment_cost(s, as_of) for s in segments), ZERO)


# -------------------------
# segment lifecycle
# -------------------------
def _occupy(bed: IpdBed, patient_id: int) -> None:
    if bed.status != BedStatus.AVAILABLE.value:
        raise ConflictError(
            f"Bed {bed.bed_number} is not available (status={bed.status})")
    bed.status = BedStatus.OCCUPIED.value
    bed.current_patient_id = patient_id


def _release(bed: Optional[IpdBed]) -> None:
    if bed is None:
        return
    bed.status = BedStatus.AVAILABLE.value
    bed.current_patient_id = None


def open_segment(
    db: Session,
    admission: IpdAdmission,
    bed: IpdBed,
    start_at: datetime,
    *,
    reason: str = "admission",
) -> IpdStaySegment:
    if admission.is_discharged:
        raise InvalidStateError(
            f"Admission {admission.admission_code or admission.id} is discharged")
    if admission.open_segment is not None:
        raise ConflictError(
            "Stay already has an open bed segment; transfer instead")

    last = admission.segments[-1] if admission.segments else None
    if last is not None and last.end_at is not None and start_at < last.end_at:
        raise ValidationError("Segment cannot start before the previous one ended")

    _occupy(bed, admission.patient_id)

    seg = IpdStaySegment(
        bed_id=bed.id,
        bed_number=bed.bed_number,
        ward=bed.ward,
        bed_type=bed.bed_type,
        daily_rate=D(bed.price_per_day),
        start_at=start_at,
        end_at=None,
        transfer_reason=reason,
    )
    admission.segments.append(seg)
    db.flush()
    return seg


def close_and_transfer(
    db: Session,
    admission: IpdAdmission,
    new_bed: IpdBed,
    at: datetime,
    *,
    reason: Optional[str] = None,
) -> IpdStaySegment:
    current = admission.open_segment
    if current is None:
        raise InvalidStateError("No open bed segment to transfer from")
    if at < current.start_at:
        raise ValidationError("Transfer time is before the current segment start")
    if int(new_bed.id) == int(current.bed_id):
        raise ValidationError("Patient already occupies this bed")

    # occupy first: an unavailable target must leave the stay untouched
    _occupy(new_bed, admission.patient_id)
    current.end_at = at
    _release(current.bed)

    seg = IpdStaySegment(
        bed_id=new_bed.id,
        bed_number=new_bed.bed_number,
        ward=new_bed.ward,
        bed_type=new_bed.bed_type,
        daily_rate=D(new_bed.price_per_day),
        start_at=at,
        end_at=None,
        transfer_reason=reason or "transfer",
    )
    admission.segments.append(seg)
    db.flush()

    logger.info("Stay %s transferred bed %s -> %s at %s", admission.id,
                current.bed_number, new_bed.bed_number, at.isoformat())
    return seg


def close_on_discharge(
    db: Session,
    admission: IpdAdmission,
    at: datetime,
) -> IpdStaySegment:
    if admission.is_discharged:
        raise InvalidStateError("Admission is already discharged")
    current = admission.open_segment
    if current is None:
        raise InvalidStateError("No open bed segment to close")
    if at < current.start_at:
        raise ValidationError("Discharge time is before the current segment start")

    current.end_at = at
    _release(current.bed)

    admission.status = AdmissionStatus.DISCHARGED.value
    admission.discharged_at = at
    admission.total_days = sum(segment_days(s, at) for s in admission.segments)
    db.flush()

    logger.info("Stay %s discharged at %s (%s days)", admission.id,
                at.isoformat(), admission.total_days)
    return current
