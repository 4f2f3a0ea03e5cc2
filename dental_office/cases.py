from __future__ import annotations

import logging
from dataclasses import dataclass, field
from datetime import datetime
from decimal import Decimal
from typing import Any, Callable, Mapping

from sqlalchemy import and_, case as sql_case, func, select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from . import config
from .audit import Actor, AuditTrail
from .codes import CodeGenerator
from .config import clinic_today, utcnow
from .db import Database
from .errors import NotFound, ValidationError
from .models import (
    TERMINAL_STATUSES,
    ActorRole,
    CaseAttachment,
    CaseMessage,
    CaseStatus,
    Laboratory,
    Patient,
    PieceKind,
    Professional,
    ProstheticCase,
    Technique,
    Urgency,
)
from .validators import (
    clean_text,
    parse_date,
    parse_enum,
    parse_id,
    parse_money,
    parse_optional_money,
    parse_status,
    validate_teeth,
)

logger = logging.getLogger(__name__)

CODE_INSERT_ATTEMPTS = 3

_COMMON_FIELDS = frozenset({
    "lab_id",
    "professional_id",
    "work_type",
    "work_type_detail",
    "piece_kind",
    "teeth",
    "material",
    "material_detail",
    "technique",
    "shade",
    "shade_scale",
    "urgency",
    "date_sent",
    "date_promised",
    "clinical_notes",
    "technical_notes",
    "files_url",
    "agreed_value",
})
CREATE_FIELDS = _COMMON_FIELDS | {"patient_id", "cost_value", "group_id"}
UPDATE_FIELDS = _COMMON_FIELDS | {"date_actual_return"}

_ID_FIELDS = {"patient_id", "lab_id", "professional_id"}
_DATE_FIELDS = {"date_sent", "date_promised", "date_actual_return"}
_MONEY_FIELDS = {"agreed_value", "cost_value"}
_ENUM_FIELDS = {"piece_kind": PieceKind, "technique": Technique, "urgency": Urgency}


# =========================
# Lookups shared by the case components
# =========================
def load_owned_case(s: Session, clinic_id: int, case_id: int, for_update: bool = False) -> ProstheticCase:
    """Case by id, only if it belongs to the clinic; otherwise NotFound."""
    q = select(ProstheticCase).where(ProstheticCase.id == case_id, ProstheticCase.clinic_id == clinic_id)
    if for_update:
        q = q.with_for_update()
    c = s.scalars(q).first()
    if c is None:
        raise NotFound("Case not found")
    return c


def _check_owned(s: Session, model, ident: int | None, clinic_id: int, label: str) -> None:
    if ident is None:
        return
    found = s.execute(select(model.id).where(model.id == ident, model.clinic_id == clinic_id)).first()
    if found is None:
        raise NotFound(f"{label} not found")


def _normalize(fields: Mapping[str, Any], allowed: frozenset[str]) -> dict[str, Any]:
    """camel/HTTP-agnostic field map -> column values, with validation."""
    if "status" in fields:
        raise ValidationError("Status changes go through the status transition")
    unknown = set(fields) - allowed
    if unknown:
        raise ValidationError(f"Unknown or read-only fields: {', '.join(sorted(unknown))}")

    values: dict[str, Any] = {}
    for name, raw in fields.items():
        if name in _ID_FIELDS:
            values[name] = parse_id(raw, name)
        elif name in _DATE_FIELDS:
            values[name] = parse_date(raw, name)
        elif name in _MONEY_FIELDS:
            values[name] = parse_optional_money(raw, name)
        elif name in _ENUM_FIELDS:
            if raw is None:
                raise ValidationError(f"{name} cannot be null")
            values[name] = parse_enum(_ENUM_FIELDS[name], raw, name)
        elif name == "teeth":
            values[name] = validate_teeth(raw)
        else:
            values[name] = clean_text(raw)

    if "work_type" in values and values["work_type"] is None:
        raise ValidationError("workType is required")
    if values.get("group_id") and len(values["group_id"]) > 36:
        raise ValidationError("groupId is too long (max 36 characters)")
    return values


# =========================
# DTO
# =========================
@dataclass(frozen=True)
class CaseFilters:
    status: CaseStatus | None = None
    lab_id: int | None = None
    patient_id: int | None = None
    professional_id: int | None = None
    urgency: Urgency | None = None

    @classmethod
    def build(cls, status=None, lab_id=None, patient_id=None, professional_id=None, urgency=None) -> "CaseFilters":
        return cls(
            status=parse_status(status) if status else None,
            lab_id=parse_id(lab_id, "labId"),
            patient_id=parse_id(patient_id, "patientId"),
            professional_id=parse_id(professional_id, "professionalId"),
            urgency=parse_enum(Urgency, urgency, "urgency") if urgency else None,
        )

    def conditions(self, clinic_id: int) -> list:
        conds = [ProstheticCase.clinic_id == clinic_id]
        if self.status is not None:
            conds.append(ProstheticCase.status == self.status)
        if self.lab_id is not None:
            conds.append(ProstheticCase.lab_id == self.lab_id)
        if self.patient_id is not None:
            conds.append(ProstheticCase.patient_id == self.patient_id)
        if self.professional_id is not None:
            conds.append(ProstheticCase.professional_id == self.professional_id)
        if self.urgency is not None:
            conds.append(ProstheticCase.urgency == self.urgency)
        return conds


@dataclass(frozen=True)
class CaseStats:
    total: int = 0
    in_progress: int = 0
    finalized: int = 0
    overdue: int = 0
    urgent: int = 0

    def to_dict(self) -> dict:
        return {
            "total": self.total,
            "inProgress": self.in_progress,
            "finalized": self.finalized,
            "overdue": self.overdue,
            "urgent": self.urgent,
        }


@dataclass
class CasePage:
    cases: list[dict] = field(default_factory=list)
    stats: CaseStats = field(default_factory=CaseStats)
    limit: int = 0
    offset: int = 0

    @property
    def has_more(self) -> bool:
        return self.offset + len(self.cases) < self.stats.total

    def pagination(self) -> dict:
        return {"limit": self.limit, "offset": self.offset, "total": self.stats.total, "hasMore": self.has_more}


def _money(value: Decimal | None) -> float | None:
    return float(value) if value is not None else None


def _iso(value) -> str | None:
    return value.isoformat() if value is not None else None


def case_flat(c: ProstheticCase, **extra: Any) -> dict:
    """JSON-safe case, camelCase keys."""
    data = {
        "id": c.id,
        "code": c.code,
        "clinicId": c.clinic_id,
        "groupId": c.group_id,
        "patientId": c.patient_id,
        "labId": c.lab_id,
        "professionalId": c.professional_id,
        "workType": c.work_type,
        "workTypeDetail": c.work_type_detail,
        "pieceKind": c.piece_kind.value,
        "teeth": list(c.teeth or []),
        "material": c.material,
        "materialDetail": c.material_detail,
        "technique": c.technique.value,
        "shade": c.shade,
        "shadeScale": c.shade_scale,
        "urgency": c.urgency.value,
        "dateSent": _iso(c.date_sent),
        "datePromised": _iso(c.date_promised),
        "dateActualReturn": _iso(c.date_actual_return),
        "status": c.status.value,
        "finalizedAt": _iso(c.finalized_at),
        "agreedValue": _money(c.agreed_value),
        "costValue": _money(c.cost_value),
        "clinicalNotes": c.clinical_notes,
        "technicalNotes": c.technical_notes,
        "filesUrl": c.files_url,
        "createdAt": _iso(c.created_at),
        "updatedAt": _iso(c.updated_at),
    }
    data.update(extra)
    return data


def attachment_flat(a: CaseAttachment) -> dict:
    return {
        "id": a.id,
        "kind": a.kind,
        "fileName": a.file_name,
        "originalName": a.original_name,
        "sizeBytes": a.size_bytes,
        "mimeType": a.mime_type,
        "url": a.url,
        "version": a.version,
        "description": a.description,
        "uploadedBy": a.uploaded_by.value,
        "createdAt": _iso(a.created_at),
    }


# =========================
# Store
# =========================
class CaseStore:
    """
    Owner of the mutable case record and its list projections.
    Status is never written here, except the initial "created".
    """

    def __init__(
        self,
        db: Database,
        codes: CodeGenerator,
        audit: AuditTrail,
        clock: Callable[[], datetime] = utcnow,
        tz: str | None = None,
        default_limit: int | None = None,
        max_limit: int | None = None,
    ) -> None:
        self.db = db
        self.codes = codes
        self.audit = audit
        self.clock = clock
        self.tz = tz
        self.default_limit = default_limit or config.CASES_DEFAULT_LIMIT
        self.max_limit = max_limit or config.CASES_MAX_LIMIT

    # ---- create / read / update ----
    def create(self, actor: Actor, fields: Mapping[str, Any]) -> ProstheticCase:
        """New case in status "created" plus its first history entry."""
        if fields.get("patient_id") in (None, ""):
            raise ValidationError("patientId is required")
        if not clean_text(fields.get("work_type")):
            raise ValidationError("workType is required")
        values = _normalize(fields, CREATE_FIELDS)
        values.setdefault("teeth", [])

        attempt = 0
        while True:
            attempt += 1
            try:
                with self.db.session() as s:
                    self._check_refs(s, actor.clinic_id, values)
                    now = self.clock()
                    c = ProstheticCase(
                        clinic_id=actor.clinic_id,
                        code=self.codes.issue(actor.clinic_id, session=s),
                        status=CaseStatus.CREATED,
                        created_at=now,
                        updated_at=now,
                        **values,
                    )
                    s.add(c)
                    s.flush()
                    self.audit.append(s, c.id, None, CaseStatus.CREATED, actor, "Case created")
                    logger.info("Case %s created for patient %s by %s", c.code, c.patient_id, actor.name)
                    return c
            except IntegrityError as exc:
                # two creators drew the same code between check and insert
                if "code" not in str(exc.orig).lower() or attempt == CODE_INSERT_ATTEMPTS:
                    raise
                logger.warning("Case code taken on insert, retrying (%d/%d)", attempt, CODE_INSERT_ATTEMPTS)

    def get(self, clinic_id: int, case_id: int) -> ProstheticCase:
        with self.db.session() as s:
            return load_owned_case(s, clinic_id, case_id)

    def update(self, clinic_id: int, case_id: int, fields: Mapping[str, Any]) -> ProstheticCase:
        """Partial edit of descriptive fields; status, code, finalizedAt are out of reach."""
        values = _normalize(fields, UPDATE_FIELDS)
        with self.db.case_lock(case_id), self.db.session() as s:
            c = load_owned_case(s, clinic_id, case_id, for_update=True)
            self._check_refs(s, clinic_id, values)
            for name, value in values.items():
                setattr(c, name, value)
            c.updated_at = self.clock()
            s.flush()
            logger.info("Case %s updated: %s", c.code, ", ".join(sorted(values)) or "no fields")
            return c

    def set_cost(self, clinic_id: int, case_id: int, cost_value: Any) -> ProstheticCase:
        """Cost correction without touching status."""
        if cost_value is None:
            raise ValidationError("costValue is required")
        cost = parse_money(cost_value, "costValue")
        with self.db.case_lock(case_id), self.db.session() as s:
            c = load_owned_case(s, clinic_id, case_id, for_update=True)
            c.cost_value = cost
            c.updated_at = self.clock()
            s.flush()
            logger.info("Case %s cost set to %s", c.code, cost)
            return c

    @staticmethod
    def _check_refs(s: Session, clinic_id: int, values: Mapping[str, Any]) -> None:
        if "patient_id" in values:
            _check_owned(s, Patient, values["patient_id"], clinic_id, "Patient")
        if "lab_id" in values:
            _check_owned(s, Laboratory, values["lab_id"], clinic_id, "Laboratory")
        if "professional_id" in values:
            _check_owned(s, Professional, values["professional_id"], clinic_id, "Professional")

    # ---- list projection ----
    def _page_bounds(self, limit: int | None, offset: int | None) -> tuple[int, int]:
        limit = self.default_limit if limit is None else limit
        offset = 0 if offset is None else offset
        if limit < 1 or limit > self.max_limit:
            raise ValidationError(f"limit must be between 1 and {self.max_limit}")
        if offset < 0:
            raise ValidationError("offset cannot be negative")
        return limit, offset

    def stats(self, s: Session, conds: list) -> CaseStats:
        """Counts over the whole filtered set, never just one page."""
        open_ = ProstheticCase.status.not_in(list(TERMINAL_STATUSES))
        today = clinic_today(self.clock(), self.tz)

        def count_if(cond):
            return func.coalesce(func.sum(sql_case((cond, 1), else_=0)), 0)

        row = s.execute(
            select(
                func.count(ProstheticCase.id).label("total"),
                count_if(open_).label("in_progress"),
                count_if(ProstheticCase.status == CaseStatus.FINALIZED).label("finalized"),
                count_if(and_(ProstheticCase.date_promised < today, open_)).label("overdue"),
                count_if(and_(ProstheticCase.urgency.in_([Urgency.URGENT, Urgency.EMERGENCY]), open_)).label("urgent"),
            ).where(*conds)
        ).one()
        return CaseStats(
            total=int(row.total or 0),
            in_progress=int(row.in_progress),
            finalized=int(row.finalized),
            overdue=int(row.overdue),
            urgent=int(row.urgent),
        )

    def list(
        self,
        clinic_id: int,
        filters: CaseFilters | None = None,
        limit: int | None = None,
        offset: int | None = None,
    ) -> CasePage:
        filters = filters or CaseFilters()
        limit, offset = self._page_bounds(limit, offset)
        conds = filters.conditions(clinic_id)

        attachments = (
            select(func.count(CaseAttachment.id))
            .where(CaseAttachment.case_id == ProstheticCase.id)
            .correlate(ProstheticCase)
            .scalar_subquery()
        )
        # derived at read time, never stored
        unread = (
            select(func.count(CaseMessage.id))
            .where(
                CaseMessage.case_id == ProstheticCase.id,
                CaseMessage.sender_role == ActorRole.LAB,
                CaseMessage.is_read.is_(False),
            )
            .correlate(ProstheticCase)
            .scalar_subquery()
        )

        with self.db.session() as s:
            stats = self.stats(s, conds)
            q = (
                select(
                    ProstheticCase,
                    Patient.name.label("patient_name"),
                    Laboratory.name.label("lab_name"),
                    Laboratory.whatsapp.label("lab_whatsapp"),
                    Professional.name.label("professional_name"),
                    Professional.icon.label("professional_icon"),
                    attachments.label("attachment_count"),
                    unread.label("unread_messages"),
                )
                .outerjoin(Patient, Patient.id == ProstheticCase.patient_id)
                .outerjoin(Laboratory, Laboratory.id == ProstheticCase.lab_id)
                .outerjoin(Professional, Professional.id == ProstheticCase.professional_id)
                .where(*conds)
                .order_by(ProstheticCase.created_at.desc(), ProstheticCase.id.desc())
                .limit(limit)
                .offset(offset)
            )
            rows = s.execute(q).all()
            cases = [
                case_flat(
                    r.ProstheticCase,
                    patientName=r.patient_name,
                    labName=r.lab_name,
                    labWhatsapp=r.lab_whatsapp,
                    professionalName=r.professional_name,
                    professionalIcon=r.professional_icon,
                    attachmentCount=int(r.attachment_count or 0),
                    unreadMessages=int(r.unread_messages or 0),
                )
                for r in rows
            ]
        return CasePage(cases=cases, stats=stats, limit=limit, offset=offset)

    def list_for_patient(self, clinic_id: int, patient_id: int, status: CaseStatus | None = None) -> tuple[list[dict], dict]:
        """Cases of one patient (clinical record view), newest first."""
        with self.db.session() as s:
            _check_owned(s, Patient, patient_id, clinic_id, "Patient")
            q = (
                select(
                    ProstheticCase,
                    Laboratory.name.label("lab_name"),
                    Professional.name.label("professional_name"),
                )
                .outerjoin(Laboratory, Laboratory.id == ProstheticCase.lab_id)
                .outerjoin(Professional, Professional.id == ProstheticCase.professional_id)
                .where(ProstheticCase.clinic_id == clinic_id, ProstheticCase.patient_id == patient_id)
                .order_by(ProstheticCase.created_at.desc(), ProstheticCase.id.desc())
            )
            if status is not None:
                q = q.where(ProstheticCase.status == status)
            rows = s.execute(q).all()

        cases = [
            case_flat(r.ProstheticCase, labName=r.lab_name, professionalName=r.professional_name)
            for r in rows
        ]
        stats = {
            "total": len(cases),
            "finalized": sum(1 for c in cases if c["status"] == CaseStatus.FINALIZED.value),
            "inProgress": sum(1 for c in cases if CaseStatus(c["status"]) not in TERMINAL_STATUSES),
        }
        return cases, stats

    # ---- attachments (metadata of files kept in the blob store) ----
    def add_attachment(
        self,
        actor: Actor,
        case_id: int,
        kind: str,
        file_name: str,
        url: str,
        original_name: str | None = None,
        size_bytes: int | None = None,
        mime_type: str | None = None,
        description: str | None = None,
    ) -> CaseAttachment:
        kind, file_name, url = clean_text(kind), clean_text(file_name), clean_text(url)
        if not kind or not file_name or not url:
            raise ValidationError("kind, fileName and url are required")
        if size_bytes is not None and size_bytes < 0:
            raise ValidationError("sizeBytes cannot be negative")

        with self.db.case_lock(case_id), self.db.session() as s:
            load_owned_case(s, actor.clinic_id, case_id)
            last = s.execute(
                select(func.max(CaseAttachment.version)).where(
                    CaseAttachment.case_id == case_id, CaseAttachment.file_name == file_name
                )
            ).scalar()
            a = CaseAttachment(
                case_id=case_id,
                kind=kind,
                file_name=file_name,
                original_name=clean_text(original_name),
                size_bytes=size_bytes,
                mime_type=clean_text(mime_type),
                url=url,
                version=(last or 0) + 1,
                description=clean_text(description),
                uploaded_by=actor.role,
                created_at=self.clock(),
            )
            s.add(a)
            s.flush()
            return a

    def list_attachments(self, case_id: int, s: Session | None = None) -> list[CaseAttachment]:
        q = (
            select(CaseAttachment)
            .where(CaseAttachment.case_id == case_id)
            .order_by(CaseAttachment.created_at.desc(), CaseAttachment.id.desc())
        )
        if s is not None:
            return list(s.scalars(q))
        with self.db.session() as s2:
            return list(s2.scalars(q))
