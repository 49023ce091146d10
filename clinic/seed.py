from __future__ import annotations

import logging
from datetime import date, datetime, timedelta

from sqlalchemy.engine import Engine
from sqlmodel import Session, select

from clinic.core.auth import hash_password
from clinic.models import Appointment, Medication, Patient, SystemSetting, User

logger = logging.getLogger("clinic.seed")

DEFAULT_USERS = [
    {"username": "admin", "email": "admin@clinic.local", "password": "admin123",
     "first_name": "System", "last_name": "Administrator", "role": "admin"},
    {"username": "dr.smith", "email": "dr.smith@clinic.local", "password": "doctor123",
     "first_name": "John", "last_name": "Smith", "role": "doctor"},
    {"username": "dr.johnson", "email": "dr.johnson@clinic.local", "password": "doctor123",
     "first_name": "Sarah", "last_name": "Johnson", "role": "doctor"},
    {"username": "staff", "email": "staff@clinic.local", "password": "staff123",
     "first_name": "Front", "last_name": "Desk", "role": "staff"},
]

SAMPLE_PATIENTS = [
    {"first_name": "Alice", "last_name": "Brown", "date_of_birth": date(1985, 3, 14),
     "gender": "female", "phone": "555-0101", "allergies": "Penicillin"},
    {"first_name": "Bob", "last_name": "Wilson", "date_of_birth": date(1972, 11, 2),
     "gender": "male", "phone": "555-0102"},
    {"first_name": "Carol", "last_name": "Davis", "date_of_birth": date(1999, 7, 21),
     "gender": "female", "phone": "555-0103"},
]

SAMPLE_MEDICATIONS = [
    {"name": "Amoxicillin", "generic_name": "Amoxicillin", "dosage": "500mg", "form": "capsule",
     "unit_price": 0.45, "quantity": 200, "manufacturer": "Generic Pharma"},
    {"name": "Paracetamol", "generic_name": "Acetaminophen", "dosage": "500mg", "form": "tablet",
     "unit_price": 0.10, "quantity": 500, "manufacturer": "HealthCorp"},
    {"name": "Ibuprofen", "generic_name": "Ibuprofen", "dosage": "400mg", "form": "tablet",
     "unit_price": 0.15, "quantity": 8, "minimum_stock": 20, "manufacturer": "HealthCorp"},
]

DEFAULT_SETTINGS = [
    {"key": "clinic_name", "value": "Clinic", "category": "general", "is_public": True,
     "description": "Name printed on invoices and prescriptions"},
    {"key": "currency", "value": "USD", "category": "billing", "is_public": True,
     "description": "Currency used for invoices"},
    {"key": "appointment_slot_minutes", "value": "30", "category": "scheduling",
     "description": "Default appointment length"},
]


def _seed_users(session: Session) -> dict[str, User]:
    users = {}
    for row in DEFAULT_USERS:
        user = session.exec(select(User).where(User.username == row["username"])).first()
        if user is None:
            data = dict(row)
            user = User(password_hash=hash_password(data.pop("password")), **data)
            session.add(user)
            logger.info("event=seed_user username=%s role=%s", user.username, user.role)
        users[row["username"]] = user
    session.flush()
    return users


def seed_database(engine: Engine) -> dict[str, int]:
    """Insert the default users, sample records and settings; returns how many rows were added."""
    added = {"users": 0, "patients": 0, "medications": 0, "appointments": 0, "settings": 0}
    with Session(engine) as session:
        before = len(session.exec(select(User.id)).all())
        users = _seed_users(session)
        added["users"] = len(session.exec(select(User.id)).all()) - before

        if session.exec(select(Patient.id)).first() is None:
            patients = []
            for index, row in enumerate(SAMPLE_PATIENTS, start=1):
                patient = Patient(patient_code=f"P{index:05d}", **row)
                session.add(patient)
                patients.append(patient)
            session.flush()
            added["patients"] = len(patients)

            tomorrow = datetime.utcnow().replace(hour=9, minute=0, second=0, microsecond=0) + timedelta(days=1)
            session.add(
                Appointment(
                    patient_id=patients[0].id,
                    doctor_id=users["dr.smith"].id,
                    scheduled_at=tomorrow,
                    notes="Annual check-up",
                )
            )
            added["appointments"] = 1

        if session.exec(select(Medication.id)).first() is None:
            for row in SAMPLE_MEDICATIONS:
                session.add(Medication(**row))
            added["medications"] = len(SAMPLE_MEDICATIONS)

        for row in DEFAULT_SETTINGS:
            exists = session.exec(select(SystemSetting).where(SystemSetting.key == row["key"])).first()
            if exists is None:
                session.add(SystemSetting(**row))
                added["settings"] += 1

        session.commit()

    logger.info("event=seed_complete %s", " ".join(f"{k}={v}" for k, v in added.items()))
    return added
