# app/db/init_db.py
from __future__ import annotations

import argparse
from decimal import Decimal

from sqlalchemy import inspect
from sqlalchemy.engine import Engine
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from app.db.session import engine as default_engine
from app.db.base import Base
from app.models.ipd import IpdBed, BedType

# (bed_number, ward, floor, bed_type, price_per_day)
DEMO_BEDS = [
    ("GEN-101", "General Ward", "1", BedType.GENERAL, Decimal("500")),
    ("GEN-102", "General Ward", "1", BedType.GENERAL, Decimal("500")),
    ("SP-201", "Semi Private", "2", BedType.SEMI_PRIVATE, Decimal("800")),
    ("PVT-301", "Private Wing", "3", BedType.PRIVATE, Decimal("1200")),
    ("ICU-01", "ICU", "4", BedType.ICU, Decimal("3500")),
    ("NICU-01", "NICU", "4", BedType.NICU, Decimal("4000")),
]


def init_db(engine: Engine = default_engine) -> None:
    Base.metadata.create_all(bind=engine)


def print_tables(engine: Engine) -> set:
    names = set(inspect(engine).get_table_names())
    print("Existing tables:", sorted(names))
    return names


def seed_beds(db: Session) -> int:
    """
    Seed ONLY missing beds; safe to run multiple times.
    """
    added = 0
    for number, ward, floor, bed_type, rate in DEMO_BEDS:
        exists = db.query(IpdBed.id).filter(IpdBed.bed_number == number).first()
        if exists:
            continue
        db.add(
            IpdBed(
                bed_number=number,
                ward=ward,
                floor=floor,
                bed_type=bed_type.value,
                price_per_day=rate,
            ))
        added += 1
    return added


def run(fresh: bool = False, seed: bool = False) -> None:
    if fresh:
        print("WARNING: Dropping ALL tables (dev only) …")
        Base.metadata.drop_all(bind=default_engine)

    print("Creating all missing tables …")
    init_db(default_engine)
    print_tables(default_engine)

    if not seed:
        return
    try:
        with Session(default_engine) as db:
            n = seed_beds(db)
            db.commit()
            print(f"Beds seeded ({n} inserted).")
    except SQLAlchemyError as e:
        print("Seeding failed:", e)
        raise


if __name__ == "__main__":
    parser = argparse.ArgumentParser(
        description="Initialize DB (create tables, optionally seed beds).")
    parser.add_argument(
        "--fresh",
        action="store_true",
        help="Drop & recreate all tables (DEV ONLY).",
    )
    parser.add_argument(
        "--seed",
        action="store_true",
        help="Insert demo beds.",
    )
    args = parser.parse_args()
    run(fresh=args.fresh, seed=args.seed)
