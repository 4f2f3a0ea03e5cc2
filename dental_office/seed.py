from __future__ import annotations

from decimal import Decimal

from sqlalchemy import select

from .db import Database
from .models import LabPrice, Laboratory, Patient, Professional

DEMO_CLINIC_ID = 1


def seed_base(db: Database, clinic_id: int = DEMO_CLINIC_ID) -> None:
    """
    Minimal demo data (idempotent):
    - professionals
    - patients
    - laboratories
    - a few lab prices
    """
    with db.session() as s:
        # Professionals
        for name, icon in [("Dr. Silva", "tooth"), ("Dra. Costa", "smile")]:
            exists = s.execute(
                select(Professional).where(Professional.clinic_id == clinic_id, Professional.name == name)
            ).scalar_one_or_none()
            if exists is None:
                s.add(Professional(clinic_id=clinic_id, name=name, icon=icon))

        # Patients
        patients = [
            ("Ana Souza", "+55 11 90000-0001"),
            ("Bruno Lima", "+55 11 90000-0002"),
            ("Carla Mendes", None),
        ]
        for name, mobile in patients:
            exists = s.execute(
                select(Patient).where(Patient.clinic_id == clinic_id, Patient.name == name)
            ).scalar_one_or_none()
            if exists is None:
                s.add(Patient(clinic_id=clinic_id, name=name, mobile=mobile))

        # Laboratories
        labs = [
            ("Lab Prime", "+55 11 3000-0001", ["zirconia", "e.max"]),
            ("Ceramic Art", "+55 11 3000-0002", ["metal-ceramic", "dentures"]),
        ]
        for name, whatsapp, specialties in labs:
            exists = s.execute(
                select(Laboratory).where(Laboratory.clinic_id == clinic_id, Laboratory.name == name)
            ).scalar_one_or_none()
            if exists is None:
                s.add(Laboratory(clinic_id=clinic_id, name=name, whatsapp=whatsapp, specialties=specialties))

        s.flush()

        # Prices (simple example)
        prime = s.execute(
            select(Laboratory).where(Laboratory.clinic_id == clinic_id, Laboratory.name == "Lab Prime")
        ).scalar_one()

        def add_price(material: str, procedure: str, value: str) -> None:
            if s.execute(
                select(LabPrice).where(
                    LabPrice.lab_id == prime.id, LabPrice.material == material, LabPrice.procedure == procedure
                )
            ).scalar_one_or_none() is None:
                s.add(LabPrice(lab_id=prime.id, material=material, procedure=procedure, value=Decimal(value)))

        add_price("zirconia", "Single crown", "350.00")
        add_price("e.max", "Veneer", "420.00")
