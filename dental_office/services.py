from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime
from typing import Callable

from sqlalchemy import select

from . import config
from .audit import AuditTrail, history_flat
from .cases import CaseStore, attachment_flat, case_flat, load_owned_case
from .codes import CodeGenerator
from .config import to_clinic_date, utcnow
from .db import Database
from .errors import ValidationError
from .finance import CostAggregator
from .labs import LabDirectory
from .messages import MessageThread, message_flat
from .models import Laboratory, Patient, Professional
from .transitions import StatusTransitionEngine, TransitionPolicy
from .validators import clean_text


# =========================
# Bootstrap DB
# =========================
def init_db(db: Database) -> None:
    """Create tables if missing."""
    db.create_all()


# =========================
# Wiring
# =========================
@dataclass(frozen=True)
class Components:
    db: Database
    codes: CodeGenerator
    audit: AuditTrail
    cases: CaseStore
    transitions: StatusTransitionEngine
    messages: MessageThread
    finance: CostAggregator
    labs: LabDirectory


def build_components(
    db: Database,
    policy: TransitionPolicy | None = None,
    clock: Callable[[], datetime] = utcnow,
    tz: str | None = None,
    codes: CodeGenerator | None = None,
) -> Components:
    """Every component gets the same store handle and clock."""
    tz = tz or config.CLINIC_TIMEZONE
    policy = policy or TransitionPolicy.from_name(config.CASE_TRANSITION_POLICY)
    codes = codes or CodeGenerator(db, year=lambda: to_clinic_date(clock(), tz).year)
    audit = AuditTrail(db, clock=clock)
    return Components(
        db=db,
        codes=codes,
        audit=audit,
        cases=CaseStore(db, codes, audit, clock=clock, tz=tz),
        transitions=StatusTransitionEngine(db, audit, policy=policy, clock=clock, tz=tz),
        messages=MessageThread(db, clock=clock),
        finance=CostAggregator(db, tz=tz),
        labs=LabDirectory(db),
    )


# =========================
# Case detail (case + attachments + history + messages)
# =========================
def case_detail(comp: Components, clinic_id: int, case_id: int, newest_first: bool = False) -> dict:
    """
    Full case for the detail view, read in one session:
    - names of patient / lab / professional
    - attachments newest first
    - history oldest first (or newest first on request)
    - messages in chronological order
    """
    with comp.db.session() as s:
        c = load_owned_case(s, clinic_id, case_id)
        patient = s.get(Patient, c.patient_id)
        lab = s.get(Laboratory, c.lab_id) if c.lab_id else None
        prof = s.get(Professional, c.professional_id) if c.professional_id else None

        data = case_flat(
            c,
            patientName=patient.name if patient else None,
            patientPhone=(patient.mobile or patient.phone) if patient else None,
            labName=lab.name if lab else None,
            labPhone=lab.phone if lab else None,
            labWhatsapp=lab.whatsapp if lab else None,
            professionalName=prof.name if prof else None,
        )
        data["attachments"] = [attachment_flat(a) for a in comp.cases.list_attachments(c.id, s)]
        data["history"] = [history_flat(h) for h in AuditTrail.entries(s, c.id, newest_first)]
        messages = MessageThread.messages(s, c.id)
        data["messages"] = [message_flat(m) for m in messages]
        data["unreadMessages"] = MessageThread.unread(s, c.id)
        return data


# =========================
# Directory (patients / professionals): minimal local copies of external records
# =========================
def create_patient(db: Database, clinic_id: int, name: str, phone: str | None = None,
                   email: str | None = None, mobile: str | None = None) -> int:
    name = clean_text(name)
    if not name:
        raise ValidationError("Patient name is required")
    with db.session() as s:
        p = Patient(clinic_id=clinic_id, name=name, phone=phone, email=email, mobile=mobile)
        s.add(p)
        s.flush()
        return p.id


def create_professional(db: Database, clinic_id: int, name: str, icon: str | None = None) -> int:
    name = clean_text(name)
    if not name:
        raise ValidationError("Professional name is required")
    with db.session() as s:
        p = Professional(clinic_id=clinic_id, name=name, icon=icon, active=True)
        s.add(p)
        s.flush()
        return p.id


def list_patients_flat(db: Database, clinic_id: int) -> list[dict]:
    with db.session() as s:
        rows = s.execute(
            select(Patient.id, Patient.name, Patient.phone, Patient.email)
            .where(Patient.clinic_id == clinic_id)
            .order_by(Patient.name)
        ).all()
        return [{"id": r.id, "name": r.name, "phone": r.phone, "email": r.email} for r in rows]


def list_professionals_flat(db: Database, clinic_id: int) -> list[dict]:
    with db.session() as s:
        rows = s.execute(
            select(Professional.id, Professional.name, Professional.icon)
            .where(Professional.clinic_id == clinic_id, Professional.active.is_(True))
            .order_by(Professional.name)
        ).all()
        return [{"id": r.id, "name": r.name, "icon": r.icon} for r in rows]
