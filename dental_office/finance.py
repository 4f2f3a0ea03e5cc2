from __future__ import annotations

from dataclasses import dataclass, field
from datetime import date, datetime, time, timedelta, timezone
from decimal import Decimal

from sqlalchemy import select

from .config import clinic_zone
from .db import Database
from .errors import ValidationError
from .models import CaseStatus, Laboratory, Patient, Professional, ProstheticCase

ZERO = Decimal("0.00")


def _utc_start_of(day: date, tz: str | None) -> datetime:
    """First instant of a clinic-local day, as naive UTC (the storage format)."""
    local = datetime.combine(day, time.min, tzinfo=clinic_zone(tz))
    try:
        return local.astimezone(timezone.utc).replace(tzinfo=None)
    except OverflowError:
        # first / last representable day, shifted past the datetime range
        return datetime.min if day == date.min else datetime.max


@dataclass
class Bucket:
    total: Decimal = ZERO
    count: int = 0

    def add(self, value: Decimal | None) -> None:
        self.total += value or ZERO
        self.count += 1

    def to_dict(self) -> dict:
        return {"total": float(self.total), "count": self.count}


@dataclass
class CostSummary:
    total: Decimal = ZERO
    count: int = 0
    by_lab: dict[str, Bucket] = field(default_factory=dict)
    by_professional: dict[str, Bucket] = field(default_factory=dict)
    records: list[dict] = field(default_factory=list)

    def to_dict(self) -> dict:
        return {
            "total": float(self.total),
            "count": self.count,
            "byLab": {k: v.to_dict() for k, v in self.by_lab.items()},
            "byProfessional": {k: v.to_dict() for k, v in self.by_professional.items()},
        }


class CostAggregator:
    """
    Cost of finalized cases, overall and per lab / per professional.
    Date filters are inclusive and refer to the clinic-local day of finalized_at.
    """

    def __init__(self, db: Database, tz: str | None = None) -> None:
        self.db = db
        self.tz = tz

    def summarize(
        self,
        clinic_id: int,
        date_from: date | None = None,
        date_to: date | None = None,
        lab_id: int | None = None,
        professional_id: int | None = None,
    ) -> CostSummary:
        if date_from and date_to and date_from > date_to:
            raise ValidationError("dateFrom must not be after dateTo")

        q = (
            select(
                ProstheticCase,
                Patient.name.label("patient_name"),
                Laboratory.name.label("lab_name"),
                Professional.name.label("professional_name"),
            )
            .outerjoin(Patient, Patient.id == ProstheticCase.patient_id)
            .outerjoin(Laboratory, Laboratory.id == ProstheticCase.lab_id)
            .outerjoin(Professional, Professional.id == ProstheticCase.professional_id)
            .where(ProstheticCase.clinic_id == clinic_id, ProstheticCase.status == CaseStatus.FINALIZED)
            .order_by(ProstheticCase.finalized_at.desc(), ProstheticCase.id.desc())
        )
        if date_from is not None:
            q = q.where(ProstheticCase.finalized_at >= _utc_start_of(date_from, self.tz))
        if date_to is not None and date_to < date.max:
            q = q.where(ProstheticCase.finalized_at < _utc_start_of(date_to + timedelta(days=1), self.tz))
        if lab_id is not None:
            q = q.where(ProstheticCase.lab_id == lab_id)
        if professional_id is not None:
            q = q.where(ProstheticCase.professional_id == professional_id)

        summary = CostSummary()
        with self.db.session() as s:
            for r in s.execute(q).all():
                c: ProstheticCase = r.ProstheticCase
                cost = c.cost_value
                summary.total += cost or ZERO
                summary.count += 1
                if r.lab_name:
                    summary.by_lab.setdefault(r.lab_name, Bucket()).add(cost)
                if r.professional_name:
                    summary.by_professional.setdefault(r.professional_name, Bucket()).add(cost)
                summary.records.append(
                    {
                        "id": c.id,
                        "code": c.code,
                        "workType": c.work_type,
                        "workTypeDetail": c.work_type_detail,
                        "teeth": list(c.teeth or []),
                        "toothCount": len(c.teeth or []),
                        "material": c.material,
                        "costValue": float(cost) if cost is not None else None,
                        "finalizedAt": c.finalized_at.isoformat() if c.finalized_at else None,
                        "createdAt": c.created_at.isoformat(),
                        "patientName": r.patient_name,
                        "labId": c.lab_id,
                        "labName": r.lab_name,
                        "professionalId": c.professional_id,
                        "professionalName": r.professional_name,
                    }
                )
        return summary
