from __future__ import annotations

import logging
from typing import Any, Iterable, Mapping

from sqlalchemy import and_, func, select
from sqlalchemy.orm import Session

from .db import Database
from .errors import NotFound, ValidationError
from .models import CaseStatus, LabPrice, Laboratory, ProstheticCase
from .validators import clean_text, parse_money, validate_labels

logger = logging.getLogger(__name__)

LAB_FIELDS = frozenset({
    "name",
    "tax_id",
    "phone",
    "whatsapp",
    "email",
    "address",
    "city",
    "state",
    "postal_code",
    "technical_lead",
    "technical_lead_license",
    "specialties",
    "notes",
})


def _lab_values(fields: Mapping[str, Any]) -> dict[str, Any]:
    unknown = set(fields) - LAB_FIELDS
    if unknown:
        raise ValidationError(f"Unknown fields: {', '.join(sorted(unknown))}")
    values: dict[str, Any] = {}
    for name, raw in fields.items():
        if name == "specialties":
            values[name] = validate_labels(raw, "specialties")
        else:
            values[name] = clean_text(raw)
    if "state" in values and values["state"] is not None:
        values["state"] = values["state"].upper()
        if len(values["state"]) != 2:
            raise ValidationError("state must be a two-letter code")
    return values


def _owned_lab(s: Session, clinic_id: int, lab_id: int, active_only: bool = True) -> Laboratory:
    q = select(Laboratory).where(Laboratory.id == lab_id, Laboratory.clinic_id == clinic_id)
    if active_only:
        q = q.where(Laboratory.active.is_(True))
    lab = s.scalars(q).first()
    if lab is None:
        raise NotFound("Laboratory not found")
    return lab


def lab_flat(lab: Laboratory, total_cases: int = 0, on_time: int = 0) -> dict:
    return {
        "id": lab.id,
        "name": lab.name,
        "taxId": lab.tax_id,
        "phone": lab.phone,
        "whatsapp": lab.whatsapp,
        "email": lab.email,
        "address": lab.address,
        "city": lab.city,
        "state": lab.state,
        "postalCode": lab.postal_code,
        "technicalLead": lab.technical_lead,
        "technicalLeadLicense": lab.technical_lead_license,
        "specialties": list(lab.specialties or []),
        "notes": lab.notes,
        "totalCases": total_cases,
        "onTimeDeliveries": on_time,
        "onTimePercent": round(on_time / total_cases * 100) if total_cases else 0,
    }


def price_flat(p: LabPrice) -> dict:
    return {
        "id": p.id,
        "labId": p.lab_id,
        "material": p.material,
        "procedure": p.procedure,
        "value": float(p.value),
        "note": p.note,
    }


class LabDirectory:
    """Partner laboratories of a clinic and their price tables."""

    def __init__(self, db: Database) -> None:
        self.db = db

    # =========================
    # Laboratories
    # =========================
    def list(self, clinic_id: int) -> list[dict]:
        """Active labs by name, with delivery punctuality over their cases."""
        total_cases = (
            select(func.count(ProstheticCase.id))
            .where(ProstheticCase.lab_id == Laboratory.id)
            .correlate(Laboratory)
            .scalar_subquery()
        )
        on_time = (
            select(func.count(ProstheticCase.id))
            .where(
                and_(
                    ProstheticCase.lab_id == Laboratory.id,
                    ProstheticCase.status == CaseStatus.FINALIZED,
                    ProstheticCase.date_actual_return <= ProstheticCase.date_promised,
                )
            )
            .correlate(Laboratory)
            .scalar_subquery()
        )
        with self.db.session() as s:
            rows = s.execute(
                select(Laboratory, total_cases.label("total_cases"), on_time.label("on_time"))
                .where(Laboratory.clinic_id == clinic_id, Laboratory.active.is_(True))
                .order_by(Laboratory.name.asc())
            ).all()
            return [lab_flat(r.Laboratory, int(r.total_cases or 0), int(r.on_time or 0)) for r in rows]

    def create(self, clinic_id: int, fields: Mapping[str, Any]) -> Laboratory:
        values = _lab_values(fields)
        if not values.get("name"):
            raise ValidationError("name is required")
        values.setdefault("specialties", [])
        with self.db.session() as s:
            lab = Laboratory(clinic_id=clinic_id, active=True, **values)
            s.add(lab)
            s.flush()
            logger.info("Laboratory %s (%s) created for clinic %s", lab.id, lab.name, clinic_id)
            return lab

    def update(self, clinic_id: int, lab_id: int, fields: Mapping[str, Any]) -> Laboratory:
        values = _lab_values(fields)
        if "name" in values and not values["name"]:
            raise ValidationError("name cannot be empty")
        with self.db.session() as s:
            lab = _owned_lab(s, clinic_id, lab_id)
            for name, value in values.items():
                setattr(lab, name, value)
            s.flush()
            logger.info("Laboratory %s updated: %s", lab_id, ", ".join(sorted(values)) or "no fields")
            return lab

    def deactivate(self, clinic_id: int, lab_id: int) -> None:
        """Soft delete: cases keep pointing at the lab."""
        with self.db.session() as s:
            lab = _owned_lab(s, clinic_id, lab_id)
            lab.active = False
            logger.info("Laboratory %s deactivated", lab_id)

    # =========================
    # Price table
    # =========================
    def list_prices(self, clinic_id: int, lab_id: int) -> tuple[list[dict], dict[str, list[dict]]]:
        """Active prices, plus the same list grouped by material."""
        with self.db.session() as s:
            _owned_lab(s, clinic_id, lab_id, active_only=False)
            rows = s.scalars(
                select(LabPrice)
                .where(LabPrice.lab_id == lab_id, LabPrice.active.is_(True))
                .order_by(LabPrice.material.asc(), LabPrice.procedure.asc())
            )
            prices = [price_flat(p) for p in rows]

        by_material: dict[str, list[dict]] = {}
        for p in prices:
            by_material.setdefault(p["material"], []).append(p)
        return prices, by_material

    @staticmethod
    def _price_values(material: Any, procedure: Any, value: Any, note: Any = None) -> dict[str, Any]:
        material, procedure = clean_text(material), clean_text(procedure)
        if not material or not procedure or value is None:
            raise ValidationError("material, procedure and value are required")
        return {
            "material": material,
            "procedure": procedure,
            "value": parse_money(value, "value"),
            "note": clean_text(note),
        }

    def add_price(self, clinic_id: int, lab_id: int, material: Any, procedure: Any, value: Any, note: Any = None) -> LabPrice:
        values = self._price_values(material, procedure, value, note)
        with self.db.session() as s:
            _owned_lab(s, clinic_id, lab_id)
            p = LabPrice(lab_id=lab_id, active=True, **values)
            s.add(p)
            s.flush()
            logger.info("Price %s added to laboratory %s (%s / %s)", p.id, lab_id, p.material, p.procedure)
            return p

    def add_prices_bulk(self, clinic_id: int, lab_id: int, items: Iterable[Mapping[str, Any]]) -> list[LabPrice]:
        """All or nothing: one bad row rejects the batch."""
        values = [
            self._price_values(i.get("material"), i.get("procedure"), i.get("value"), i.get("note"))
            for i in items
        ]
        if not values:
            raise ValidationError("prices list is empty")
        with self.db.session() as s:
            _owned_lab(s, clinic_id, lab_id)
            created = [LabPrice(lab_id=lab_id, active=True, **v) for v in values]
            s.add_all(created)
            s.flush()
            logger.info("%d prices added to laboratory %s", len(created), lab_id)
            return created

    def _owned_price(self, s: Session, clinic_id: int, price_id: int) -> LabPrice:
        p = s.scalars(
            select(LabPrice)
            .join(Laboratory, Laboratory.id == LabPrice.lab_id)
            .where(LabPrice.id == price_id, Laboratory.clinic_id == clinic_id, LabPrice.active.is_(True))
        ).first()
        if p is None:
            raise NotFound("Price not found")
        return p

    def update_price(self, clinic_id: int, price_id: int, fields: Mapping[str, Any]) -> LabPrice:
        with self.db.session() as s:
            p = self._owned_price(s, clinic_id, price_id)
            values = self._price_values(
                fields.get("material", p.material),
                fields.get("procedure", p.procedure),
                fields.get("value", p.value),
                fields.get("note", p.note),
            )
            for name, value in values.items():
                setattr(p, name, value)
            s.flush()
            logger.info("Price %s updated", price_id)
            return p

    def deactivate_price(self, clinic_id: int, price_id: int) -> None:
        with self.db.session() as s:
            p = self._owned_price(s, clinic_id, price_id)
            p.active = False
            logger.info("Price %s deactivated", price_id)
