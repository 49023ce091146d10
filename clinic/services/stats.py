from sqlalchemy import func
from sqlmodel import Session, select

from clinic.models import Appointment, Medication, Patient, User


def fetch_clinic_totals(session: Session) -> dict[str, int]:
    patients = session.exec(select(func.count(Patient.id))).one()
    appointments = session.exec(select(func.count(Appointment.id))).one()
    medications = session.exec(select(func.count(Medication.id))).one()
    users = session.exec(select(func.count(User.id))).one()
    low_stock = session.exec(
        select(func.count(Medication.id)).where(Medication.quantity < Medication.minimum_stock)
    ).one()

    return {
        "patients": int(patients or 0),
        "appointments": int(appointments or 0),
        "medications": int(medications or 0),
        "users": int(users or 0),
        "low_stock_medications": int(low_stock or 0),
    }
