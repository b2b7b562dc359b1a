import os
from decimal import Decimal

import pytest
from sqlalchemy import create_engine
from sqlalchemy.orm import sessionmaker
from sqlalchemy.pool import StaticPool

# keep the app's default engine off the on-disk database
os.environ.setdefault("DATABASE_URL", "sqlite://")

from fastapi.testclient import TestClient  # noqa: E402

from app.api.deps import get_billing_config, get_db  # noqa: E402
from app.core.config import BillingConfig  # noqa: E402
from app.db.base import Base  # noqa: E402
from app.main import app  # noqa: E402
from app.models.ipd import IpdBed  # noqa: E402


@pytest.fixture()
def engine():
    eng = create_engine(
        "sqlite://",
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
    )
    Base.metadata.create_all(bind=eng)
    yield eng
    Base.metadata.drop_all(bind=eng)
    eng.dispose()


@pytest.fixture()
def session_factory(engine):
    return sessionmaker(bind=engine, autoflush=False, expire_on_commit=False)


@pytest.fixture()
def db(session_factory):
    session = session_factory()
    try:
        yield session
    finally:
        session.close()


@pytest.fixture()
def cfg():
    return BillingConfig(lock_timeout=1.0)


@pytest.fixture()
def make_bed(db):

    def _make(number, rate, bed_type="general", ward="General Ward"):
        bed = IpdBed(
            bed_number=number,
            ward=ward,
            bed_type=bed_type,
            price_per_day=Decimal(str(rate)),
        )
        db.add(bed)
        db.commit()
        return bed

    return _make


@pytest.fixture()
def client(session_factory, cfg):

    def _get_db():
        session = session_factory()
        try:
            yield session
        finally:
            session.close()

    app.dependency_overrides[get_db] = _get_db
    app.dependency_overrides[get_billing_config] = lambda: cfg
    app.state.session_factory = session_factory
    try:
        yield TestClient(app)
    finally:
        app.dependency_overrides.clear()
