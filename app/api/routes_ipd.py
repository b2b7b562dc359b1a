# FILE: app/api/routes_ipd.py
from __future__ import annotations

from typing import Optional

from fastapi import APIRouter, Body, Depends, HTTPException, Query
from sqlalchemy.orm import Session

from app.api.deps import get_billing_config, get_db
from app.api.response import ok
from app.core.config import BillingConfig
from app.models.ipd import IpdAdmission, IpdBed
from app.schemas.billing import serialize_invoice
from app.schemas.ipd import (
    AdmissionOut,
    AdmitIn,
    BedCreate,
    BedOut,
    DischargeIn,
    TransferIn,
)
from app.services.billing_engine import (
    admit_patient,
    discharge_patient,
    stay_cost,
    transfer_patient,
)

router = APIRouter(prefix="/ipd", tags=["IPD"])


# -------------------------
# beds
# -------------------------
@router.post("/beds", status_code=201)
def create_bed(inp: BedCreate, db: Session = Depends(get_db)):
    exists = (db.query(IpdBed.id).filter(
        IpdBed.bed_number == inp.bed_number).first())
    if exists:
        raise HTTPException(status_code=409,
                            detail=f"Bed {inp.bed_number} already exists")
    bed = IpdBed(
        bed_number=inp.bed_number,
        ward=inp.ward,
        floor=inp.floor,
        bed_type=inp.bed_type.value,
        price_per_day=inp.price_per_day,
    )
    db.add(bed)
    db.commit()
    db.refresh(bed)
    return ok(BedOut.model_validate(bed), status_code=201)


@router.get("/beds")
def list_beds(
        status: Optional[str] = Query(default=None),
        ward: Optional[str] = Query(default=None),
        db: Session = Depends(get_db),
):
    q = db.query(IpdBed)
    if status:
        q = q.filter(IpdBed.status == status)
    if ward:
        q = q.filter(IpdBed.ward == ward)
    rows = q.order_by(IpdBed.bed_number.asc()).all()
    return ok([BedOut.model_validate(b) for b in rows])


# -------------------------
# stay
# -------------------------
@router.post("/admissions", status_code=201)
def admit(
        inp: AdmitIn,
        db: Session = Depends(get_db),
        cfg: BillingConfig = Depends(get_billing_config),
):
    adm, inv = admit_patient(
        db,
        patient_id=inp.patient_id,
        bed_id=inp.bed_id,
        admitted_at=inp.admitted_at,
        admission_type=inp.admission_type,
        admitting_doctor_id=inp.admitting_doctor_id,
        notes=inp.notes,
        config=cfg,
    )
    return ok(
        {
            "admission": AdmissionOut.model_validate(adm),
            "invoice": serialize_invoice(inv),
        },
        status_code=201,
    )


@router.get("/admissions/{admission_id}")
def get_admission(admission_id: int, db: Session = Depends(get_db)):
    adm = db.get(IpdAdmission, admission_id)
    if not adm:
        raise HTTPException(status_code=404, detail="Admission not found")
    return ok(AdmissionOut.model_validate(adm))


@router.post("/admissions/{admission_id}/transfer")
def transfer(
        admission_id: int,
        inp: TransferIn,
        db: Session = Depends(get_db),
        cfg: BillingConfig = Depends(get_billing_config),
):
    adm, inv = transfer_patient(
        db,
        admission_id=admission_id,
        new_bed_id=inp.new_bed_id,
        at=inp.at,
        reason=inp.transfer_reason,
        config=cfg,
    )
    return ok({
        "admission": AdmissionOut.model_validate(adm),
        "invoice": serialize_invoice(inv),
    })


@router.post("/admissions/{admission_id}/discharge")
def discharge(
        admission_id: int,
        inp: Optional[DischargeIn] = Body(default=None),
        db: Session = Depends(get_db),
        cfg: BillingConfig = Depends(get_billing_config),
):
    inp = inp or DischargeIn()
    adm, inv = discharge_patient(
        db,
        admission_id=admission_id,
        at=inp.at,
        finalize=inp.finalize,
        config=cfg,
    )
    return ok({
        "admission": AdmissionOut.model_validate(adm),
        "invoice": serialize_invoice(inv),
    })


@router.get("/admissions/{admission_id}/stay-cost")
def get_stay_cost(admission_id: int, db: Session = Depends(get_db)):
    return ok(stay_cost(db, admission_id))
