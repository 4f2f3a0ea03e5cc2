from __future__ import annotations

import enum
from datetime import date, datetime
from decimal import Decimal

from sqlalchemy import (
    JSON,
    BigInteger,
    Boolean,
    Date,
    DateTime,
    Enum,
    ForeignKey,
    Index,
    Integer,
    Numeric,
    String,
    Text,
)
from sqlalchemy.orm import Mapped, mapped_column, relationship

from .config import utcnow
from .db import Base


class CaseStatus(enum.Enum):
    CREATED = "created"
    AWAITING_SEND = "awaiting_send"
    SENT_TO_LAB = "sent_to_lab"
    IN_DESIGN = "in_design"
    IN_PRODUCTION = "in_production"
    IN_FINISHING = "in_finishing"
    IN_TRANSIT = "in_transit"
    RECEIVED_CLINIC = "received_clinic"
    CLINICAL_TRIAL = "clinical_trial"
    ADJUSTMENT_REQUESTED = "adjustment_requested"
    REWORK = "rework"
    FINALIZED = "finalized"
    CANCELLED = "cancelled"

    @property
    def is_terminal(self) -> bool:
        return self in TERMINAL_STATUSES


TERMINAL_STATUSES = frozenset({CaseStatus.FINALIZED, CaseStatus.CANCELLED})


class Urgency(enum.Enum):
    NORMAL = "normal"
    URGENT = "urgent"
    EMERGENCY = "emergency"


class PieceKind(enum.Enum):
    TEMPORARY = "temporary"
    DEFINITIVE = "definitive"


class Technique(enum.Enum):
    CONVENTIONAL = "conventional"
    DIGITAL = "digital"


class ActorRole(enum.Enum):
    CLINICIAN = "clinician"
    LAB = "lab"


# Enums are stored by value ("in_production"), not by member name
def _values(enum_cls: type[enum.Enum]) -> list[str]:
    return [m.value for m in enum_cls]


def _enum_column(enum_cls: type[enum.Enum], length: int) -> Enum:
    return Enum(
        enum_cls,
        values_callable=_values,
        native_enum=False,
        validate_strings=True,
        length=length,
    )


# =========================
# Directory (external collaborators, read-only for the core)
# =========================
class Patient(Base):
    __tablename__ = "patients"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    clinic_id: Mapped[int] = mapped_column(Integer, nullable=False, index=True)
    name: Mapped[str] = mapped_column(String(160), nullable=False)
    phone: Mapped[str | None] = mapped_column(String(30), nullable=True)
    mobile: Mapped[str | None] = mapped_column(String(30), nullable=True)
    email: Mapped[str | None] = mapped_column(String(120), nullable=True)

    def __repr__(self) -> str:
        return f"Patient({self.id}, {self.name})"


class Professional(Base):
    __tablename__ = "professionals"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    clinic_id: Mapped[int] = mapped_column(Integer, nullable=False, index=True)
    name: Mapped[str] = mapped_column(String(160), nullable=False)
    icon: Mapped[str | None] = mapped_column(String(40), nullable=True)
    active: Mapped[bool] = mapped_column(Boolean, default=True, nullable=False)

    def __repr__(self) -> str:
        return f"Professional({self.id}, {self.name})"


# =========================
# Laboratories
# =========================
class Laboratory(Base):
    __tablename__ = "laboratories"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    clinic_id: Mapped[int] = mapped_column(Integer, nullable=False, index=True)
    name: Mapped[str] = mapped_column(String(160), nullable=False)
    tax_id: Mapped[str | None] = mapped_column(String(20), nullable=True)
    phone: Mapped[str | None] = mapped_column(String(30), nullable=True)
    whatsapp: Mapped[str | None] = mapped_column(String(30), nullable=True)
    email: Mapped[str | None] = mapped_column(String(120), nullable=True)
    address: Mapped[str | None] = mapped_column(Text, nullable=True)
    city: Mapped[str | None] = mapped_column(String(100), nullable=True)
    state: Mapped[str | None] = mapped_column(String(2), nullable=True)
    postal_code: Mapped[str | None] = mapped_column(String(10), nullable=True)
    technical_lead: Mapped[str | None] = mapped_column(String(160), nullable=True)
    technical_lead_license: Mapped[str | None] = mapped_column(String(20), nullable=True)
    specialties: Mapped[list[str]] = mapped_column(JSON, default=list, nullable=False)
    notes: Mapped[str | None] = mapped_column(Text, nullable=True)
    active: Mapped[bool] = mapped_column(Boolean, default=True, nullable=False)

    created_at: Mapped[datetime] = mapped_column(DateTime, default=utcnow, nullable=False)
    updated_at: Mapped[datetime] = mapped_column(DateTime, default=utcnow, onupdate=utcnow, nullable=False)

    prices: Mapped[list["LabPrice"]] = relationship(back_populates="laboratory", cascade="all, delete-orphan")

    def __repr__(self) -> str:
        return f"Laboratory({self.id}, {self.name})"


class LabPrice(Base):
    __tablename__ = "lab_prices"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    lab_id: Mapped[int] = mapped_column(ForeignKey("laboratories.id"), nullable=False, index=True)
    material: Mapped[str] = mapped_column(String(100), nullable=False, index=True)
    procedure: Mapped[str] = mapped_column(String(200), nullable=False)
    value: Mapped[Decimal] = mapped_column(Numeric(10, 2), nullable=False)
    note: Mapped[str | None] = mapped_column(Text, nullable=True)
    active: Mapped[bool] = mapped_column(Boolean, default=True, nullable=False)

    created_at: Mapped[datetime] = mapped_column(DateTime, default=utcnow, nullable=False)
    updated_at: Mapped[datetime] = mapped_column(DateTime, default=utcnow, onupdate=utcnow, nullable=False)

    laboratory: Mapped["Laboratory"] = relationship(back_populates="prices")


# =========================
# Prosthetic cases
# =========================
class ProstheticCase(Base):
    __tablename__ = "prosthetic_cases"
    __table_args__ = (
        Index("ix_cases_clinic_status", "clinic_id", "status"),
        Index("ix_cases_date_promised", "date_promised"),
    )

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    code: Mapped[str] = mapped_column(String(32), unique=True, nullable=False)

    clinic_id: Mapped[int] = mapped_column(Integer, nullable=False, index=True)
    patient_id: Mapped[int] = mapped_column(ForeignKey("patients.id"), nullable=False, index=True)
    lab_id: Mapped[int | None] = mapped_column(ForeignKey("laboratories.id"), nullable=True, index=True)
    professional_id: Mapped[int | None] = mapped_column(ForeignKey("professionals.id"), nullable=True)

    work_type: Mapped[str] = mapped_column(String(50), nullable=False)
    work_type_detail: Mapped[str | None] = mapped_column(Text, nullable=True)
    piece_kind: Mapped[PieceKind] = mapped_column(
        _enum_column(PieceKind, 20), default=PieceKind.DEFINITIVE, nullable=False
    )
    teeth: Mapped[list[str]] = mapped_column(JSON, default=list, nullable=False)
    material: Mapped[str | None] = mapped_column(String(50), nullable=True)
    material_detail: Mapped[str | None] = mapped_column(Text, nullable=True)
    technique: Mapped[Technique] = mapped_column(
        _enum_column(Technique, 20), default=Technique.CONVENTIONAL, nullable=False
    )
    shade: Mapped[str | None] = mapped_column(String(20), nullable=True)
    shade_scale: Mapped[str | None] = mapped_column(String(50), nullable=True)
    urgency: Mapped[Urgency] = mapped_column(_enum_column(Urgency, 20), default=Urgency.NORMAL, nullable=False)

    date_sent: Mapped[date | None] = mapped_column(Date, nullable=True)
    date_promised: Mapped[date | None] = mapped_column(Date, nullable=True)
    date_actual_return: Mapped[date | None] = mapped_column(Date, nullable=True)

    status: Mapped[CaseStatus] = mapped_column(
        _enum_column(CaseStatus, 30), default=CaseStatus.CREATED, nullable=False
    )
    finalized_at: Mapped[datetime | None] = mapped_column(DateTime, nullable=True)

    agreed_value: Mapped[Decimal | None] = mapped_column(Numeric(10, 2), nullable=True)
    cost_value: Mapped[Decimal | None] = mapped_column(Numeric(10, 2), nullable=True)

    clinical_notes: Mapped[str | None] = mapped_column(Text, nullable=True)
    technical_notes: Mapped[str | None] = mapped_column(Text, nullable=True)
    files_url: Mapped[str | None] = mapped_column(Text, nullable=True)
    group_id: Mapped[str | None] = mapped_column(String(36), nullable=True, index=True)

    created_at: Mapped[datetime] = mapped_column(DateTime, default=utcnow, nullable=False)
    updated_at: Mapped[datetime] = mapped_column(DateTime, default=utcnow, nullable=False)

    def __repr__(self) -> str:
        return f"ProstheticCase({self.code}, {self.status.value})"


class CaseStatusHistory(Base):
    """Append-only: rows are never updated nor deleted."""
    __tablename__ = "case_status_history"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    case_id: Mapped[int] = mapped_column(ForeignKey("prosthetic_cases.id"), nullable=False, index=True)
    previous_status: Mapped[CaseStatus | None] = mapped_column(_enum_column(CaseStatus, 30), nullable=True)
    new_status: Mapped[CaseStatus] = mapped_column(_enum_column(CaseStatus, 30), nullable=False)
    actor_name: Mapped[str] = mapped_column(String(100), nullable=False)
    actor_role: Mapped[ActorRole] = mapped_column(_enum_column(ActorRole, 20), nullable=False)
    note: Mapped[str | None] = mapped_column(Text, nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime, default=utcnow, nullable=False)


class CaseMessage(Base):
    __tablename__ = "case_messages"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    case_id: Mapped[int] = mapped_column(ForeignKey("prosthetic_cases.id"), nullable=False, index=True)
    sender_role: Mapped[ActorRole] = mapped_column(_enum_column(ActorRole, 20), nullable=False)
    sender_name: Mapped[str] = mapped_column(String(255), nullable=False)
    body: Mapped[str] = mapped_column(Text, nullable=False)
    is_read: Mapped[bool] = mapped_column(Boolean, default=False, nullable=False)
    read_at: Mapped[datetime | None] = mapped_column(DateTime, nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime, default=utcnow, nullable=False)


class CaseAttachment(Base):
    """Metadata only: the file itself lives in the external blob store."""
    __tablename__ = "case_attachments"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    case_id: Mapped[int] = mapped_column(ForeignKey("prosthetic_cases.id"), nullable=False, index=True)
    kind: Mapped[str] = mapped_column(String(20), nullable=False)
    file_name: Mapped[str] = mapped_column(String(255), nullable=False)
    original_name: Mapped[str | None] = mapped_column(String(255), nullable=True)
    size_bytes: Mapped[int | None] = mapped_column(BigInteger, nullable=True)
    mime_type: Mapped[str | None] = mapped_column(String(100), nullable=True)
    url: Mapped[str] = mapped_column(Text, nullable=False)
    version: Mapped[int] = mapped_column(Integer, default=1, nullable=False)
    description: Mapped[str | None] = mapped_column(Text, nullable=True)
    uploaded_by: Mapped[ActorRole] = mapped_column(_enum_column(ActorRole, 20), nullable=False)
    created_at: Mapped[datetime] = mapped_column(DateTime, default=utcnow, nullable=False)
