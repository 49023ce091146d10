from __future__ import annotations

import logging
from datetime import datetime, timezone
from pathlib import Path
from typing import Optional

from fastapi import APIRouter, Depends, HTTPException, Query, Request, Response
from fastapi.responses import JSONResponse
from pydantic import BaseModel
from sqlalchemy import func, or_
from sqlmodel import Session, select

from clinic.api.deps import (
    backup_manager,
    client_ip,
    demo_provisioner,
    get_db_session,
    require_admin,
    require_user,
)
from clinic.config import IS_PRODUCTION
from clinic.core.auth import SESSION_COOKIE, verify_password
from clinic.core.metrics import metrics
from clinic.db import ensure_connection
from clinic.models import Appointment, Medication, Patient, PatientCreate, User
from clinic.services.stats import fetch_clinic_totals

router = APIRouter()

logger = logging.getLogger("clinic")


class RestoreRequest(BaseModel):
    file_name: str


class BackupConfigUpdate(BaseModel):
    enabled: Optional[bool] = None
    interval_hours: Optional[float] = None
    max_backups: Optional[int] = None
    backup_dir: Optional[str] = None
    auto_backup_on_shutdown: Optional[bool] = None
    compress_backups: Optional[bool] = None


class LoginRequest(BaseModel):
    username: str
    password: str


def _user_summary(user: User) -> dict:
    return {
        "id": user.id,
        "username": user.username,
        "first_name": user.first_name,
        "last_name": user.last_name,
        "role": user.role,
    }


@router.get("/api/health")
def health():
    database_ok = ensure_connection()
    body = {
        "status": "OK" if database_ok else "DEGRADED",
        "database": "connected" if database_ok else "unavailable",
        "timestamp": datetime.now(timezone.utc).isoformat(),
    }
    return JSONResponse(body, status_code=200 if database_ok else 503)


@router.post("/demo/init")
def demo_init(request: Request, provisioner=Depends(demo_provisioner)):
    token = provisioner.provision(client_ip(request))
    return {"token": token}


# sign-in, checked against whichever database the request is bound to


@router.post("/api/auth/login")
def login(payload: LoginRequest, request: Request, response: Response, session: Session = Depends(get_db_session)):
    user = session.exec(select(User).where(User.username == payload.username)).first()
    if user is None or not user.is_active or not verify_password(user.password_hash, payload.password):
        logger.warning("event=login_failed username=%s", payload.username)
        raise HTTPException(status_code=401, detail="Invalid username or password")

    sessions = request.app.state.sessions
    token = sessions.issue(user.id, user.username, user.role, request.state.database_scope)
    response.set_cookie(
        SESSION_COOKIE,
        token,
        max_age=sessions.max_age,
        httponly=True,
        samesite="lax",
        secure=IS_PRODUCTION,
    )
    logger.info("event=login username=%s scope=%s", user.username, request.state.database_scope)
    return {"user": _user_summary(user)}


@router.post("/api/auth/logout")
def logout(response: Response):
    response.delete_cookie(SESSION_COOKIE)
    return {"status": "logged_out"}


@router.get("/api/auth/me")
def current_user(user: User = Depends(require_user)):
    return {"user": _user_summary(user)}


# clinic data, served from whichever database the request is bound to


@router.get("/api/stats", dependencies=[Depends(require_user)])
def clinic_stats(session: Session = Depends(get_db_session)):
    return fetch_clinic_totals(session)


@router.get("/api/patients", dependencies=[Depends(require_user)])
def list_patients(
    search: Optional[str] = None,
    limit: int = Query(default=50, ge=1, le=200),
    offset: int = Query(default=0, ge=0),
    session: Session = Depends(get_db_session),
):
    stmt = select(Patient).where(Patient.is_active == True)  # noqa: E712
    if search:
        pattern = f"%{search}%"
        stmt = stmt.where(
            or_(Patient.first_name.ilike(pattern), Patient.last_name.ilike(pattern), Patient.patient_code.ilike(pattern))
        )
    patients = session.exec(stmt.order_by(Patient.id).offset(offset).limit(limit)).all()
    return {"patients": patients, "limit": limit, "offset": offset}


@router.post("/api/patients", status_code=201, dependencies=[Depends(require_user)])
def create_patient(payload: PatientCreate, session: Session = Depends(get_db_session)):
    last_id = session.exec(select(func.max(Patient.id))).one() or 0
    patient = Patient(patient_code=f"P{last_id + 1:05d}", **payload.model_dump())
    session.add(patient)
    session.commit()
    session.refresh(patient)
    return patient


@router.get("/api/patients/{patient_id}", dependencies=[Depends(require_user)])
def get_patient(patient_id: int, session: Session = Depends(get_db_session)):
    patient = session.get(Patient, patient_id)
    if not patient:
        raise HTTPException(status_code=404, detail="Patient not found")
    return patient


@router.get("/api/appointments", dependencies=[Depends(require_user)])
def list_appointments(
    patient_id: Optional[int] = None,
    status: Optional[str] = None,
    session: Session = Depends(get_db_session),
):
    stmt = select(Appointment)
    if patient_id is not None:
        stmt = stmt.where(Appointment.patient_id == patient_id)
    if status:
        stmt = stmt.where(Appointment.status == status)
    return {"appointments": session.exec(stmt.order_by(Appointment.scheduled_at)).all()}


@router.get("/api/medications", dependencies=[Depends(require_user)])
def list_medications(low_stock: bool = False, session: Session = Depends(get_db_session)):
    stmt = select(Medication)
    if low_stock:
        stmt = stmt.where(Medication.quantity < Medication.minimum_stock)
    return {"medications": session.exec(stmt.order_by(Medication.name)).all()}


# admin: backups and database


@router.get("/api/admin/backups", dependencies=[Depends(require_admin)])
def list_backups(manager=Depends(backup_manager)):
    return {"backups": [record.to_dict() for record in manager.list_backups()]}


@router.get("/api/admin/backups/stats", dependencies=[Depends(require_admin)])
def backup_stats(manager=Depends(backup_manager)):
    stats = manager.get_backup_stats()
    for key in ("oldest_backup", "newest_backup"):
        if stats[key] is not None:
            stats[key] = stats[key].isoformat()
    stats["state"] = manager.state
    return stats


@router.post("/api/admin/backups", status_code=201, dependencies=[Depends(require_admin)])
def create_backup(manager=Depends(backup_manager)):
    path = manager.create_backup()
    if path is None:
        return {"status": "skipped", "file_name": None}
    return {"status": "created", "file_name": Path(path).name}


@router.post("/api/admin/backups/restore", dependencies=[Depends(require_admin)])
def restore_backup(payload: RestoreRequest, manager=Depends(backup_manager)):
    snapshot = manager.restore_from_backup(manager.resolve_backup_path(payload.file_name))
    logger.info("event=restore_requested file=%s", payload.file_name)
    return {
        "status": "restored",
        "file_name": payload.file_name,
        "pre_restore_snapshot": Path(snapshot).name if snapshot else None,
    }


@router.get("/api/admin/backups/config", dependencies=[Depends(require_admin)])
def get_backup_config(manager=Depends(backup_manager)):
    return {**manager.get_config().to_dict(), "state": manager.state}


@router.put("/api/admin/backups/config", dependencies=[Depends(require_admin)])
def update_backup_config(payload: BackupConfigUpdate, manager=Depends(backup_manager)):
    changes = payload.model_dump(exclude_unset=True, exclude_none=True)
    try:
        config = manager.update_config(**changes)
    except ValueError as exc:
        raise HTTPException(status_code=400, detail=str(exc))
    return {**config.to_dict(), "state": manager.state}


@router.get("/api/admin/database", dependencies=[Depends(require_admin)])
def database_info(request: Request):
    return request.app.state.bundler.database_stats()


@router.get("/api/admin/metrics", dependencies=[Depends(require_admin)])
async def admin_metrics():
    return metrics.snapshot()
