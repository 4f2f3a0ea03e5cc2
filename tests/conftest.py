"""
Test configuration and fixtures.

Provides:
- in-memory SQLite database per test
- a controllable clock shared by every component
- a small clinic directory (patients, professional, labs)
- FastAPI TestClient with the components dependency overridden
- bearer tokens for a clinician and a lab user
"""
from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime, timedelta

import pytest
from fastapi.testclient import TestClient

from dental_office.api_main import app, get_components
from dental_office.audit import Actor
from dental_office.auth_security import create_access_token
from dental_office.db import Database
from dental_office.models import ActorRole, Laboratory, Patient, Professional
from dental_office.services import build_components, init_db
from dental_office.transitions import TransitionPolicy

CLINIC_ID = 1
OTHER_CLINIC_ID = 2
TZ = "America/Sao_Paulo"


class FakeClock:
    """Naive UTC clock that only moves when told to."""

    def __init__(self, start: datetime) -> None:
        self.now = start

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **kwargs) -> datetime:
        self.now = self.now + timedelta(**kwargs)
        return self.now


@dataclass(frozen=True)
class Directory:
    patient_id: int
    other_patient_id: int
    professional_id: int
    lab_id: int
    other_lab_id: int
    foreign_patient_id: int


# =============================================================================
# Database / components
# =============================================================================

@pytest.fixture
def db():
    database = Database("sqlite://")
    init_db(database)
    yield database
    database.dispose()


@pytest.fixture
def clock() -> FakeClock:
    # 15:00 UTC is noon in Sao Paulo
    return FakeClock(datetime(2026, 3, 10, 15, 0, 0))


@pytest.fixture
def comp(db, clock):
    return build_components(db, policy=TransitionPolicy.permissive(), clock=clock, tz=TZ)


@pytest.fixture
def directory(db) -> Directory:
    with db.session() as s:
        p1 = Patient(clinic_id=CLINIC_ID, name="Ana Souza", mobile="+55 11 90000-0001")
        p2 = Patient(clinic_id=CLINIC_ID, name="Bruno Lima")
        foreign = Patient(clinic_id=OTHER_CLINIC_ID, name="Someone Else")
        prof = Professional(clinic_id=CLINIC_ID, name="Dr. Silva")
        lab1 = Laboratory(clinic_id=CLINIC_ID, name="Lab Prime", whatsapp="+55 11 3000-0001", specialties=[])
        lab2 = Laboratory(clinic_id=CLINIC_ID, name="Ceramic Art", specialties=[])
        s.add_all([p1, p2, foreign, prof, lab1, lab2])
        s.flush()
        return Directory(
            patient_id=p1.id,
            other_patient_id=p2.id,
            professional_id=prof.id,
            lab_id=lab1.id,
            other_lab_id=lab2.id,
            foreign_patient_id=foreign.id,
        )


@pytest.fixture
def actor() -> Actor:
    return Actor(clinic_id=CLINIC_ID, name="Dr. Silva", role=ActorRole.CLINICIAN)


@pytest.fixture
def lab_actor() -> Actor:
    return Actor(clinic_id=CLINIC_ID, name="Lab Prime", role=ActorRole.LAB)


@pytest.fixture
def make_case(comp, actor, directory):
    def _make(**fields):
        data = {"patient_id": directory.patient_id, "work_type": "crown"}
        data.update(fields)
        return comp.cases.create(actor, data)

    return _make


# =============================================================================
# HTTP
# =============================================================================

@pytest.fixture
def client(comp):
    app.dependency_overrides[get_components] = lambda: comp
    yield TestClient(app)
    app.dependency_overrides.clear()


def _headers(clinic_id: int, name: str, role: ActorRole) -> dict[str, str]:
    token = create_access_token(subject=f"user-{name}", clinic_id=clinic_id, name=name, role=role)
    return {"Authorization": f"Bearer {token}"}


@pytest.fixture
def auth_header() -> dict[str, str]:
    return _headers(CLINIC_ID, "Dr. Silva", ActorRole.CLINICIAN)


@pytest.fixture
def lab_header() -> dict[str, str]:
    return _headers(CLINIC_ID, "Lab Prime", ActorRole.LAB)


@pytest.fixture
def other_clinic_header() -> dict[str, str]:
    return _headers(OTHER_CLINIC_ID, "Dr. Other", ActorRole.CLINICIAN)
