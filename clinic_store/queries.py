"""
Read-only views across entities.

Each function runs in one read transaction (a consistent snapshot) and
returns plain dicts, so callers never trip over lazy loads on detached rows.
"""
from __future__ import annotations

import json
from datetime import date, datetime, timedelta
from decimal import Decimal

from sqlalchemy import and_, func, select
from sqlalchemy.orm import aliased, selectinload

from .errors import NotFoundError
from .models import (
    Appointment,
    AppointmentService,
    AppointmentStatus,
    AuditLog,
    Doctor,
    Invoice,
    Medication,
    Patient,
    Prescription,
    PrescriptionItem,
    Room,
    Service,
    User,
)
from .store import EntityStore


def _full_name(first: str | None, last: str | None) -> str | None:
    if not first and not last:
        return None
    return f"{first or ''} {last or ''}".strip()


# =========================
# Appointments
# =========================
def appointments_overview(
    store: EntityStore,
    *,
    status: AppointmentStatus | str | None = None,
    doctor_id: int | None = None,
    patient_id: int | None = None,
    room_id: int | None = None,
    start: datetime | None = None,
    end: datetime | None = None,
) -> list[dict]:
    """
    Appointments with patient and doctor names, ordered by start time.
    start/end bound scheduled_at as [start, end).
    """
    doctor_user = aliased(User)
    services_total = (
        select(
            AppointmentService.appointment_id,
            func.sum(AppointmentService.price_at_time).label("services_total"),
        )
        .group_by(AppointmentService.appointment_id)
        .subquery()
    )

    q = (
        select(
            Appointment.id,
            Appointment.scheduled_at,
            Appointment.duration_minutes,
            Appointment.status,
            Appointment.reason,
            Patient.id.label("patient_id"),
            Patient.first_name.label("patient_first"),
            Patient.last_name.label("patient_last"),
            Doctor.id.label("doctor_id"),
            Doctor.license_number,
            Doctor.specialization,
            doctor_user.first_name.label("doctor_first"),
            doctor_user.last_name.label("doctor_last"),
            Room.name.label("room_name"),
            services_total.c.services_total,
        )
        .join(Patient, Patient.id == Appointment.patient_id)
        .join(Doctor, Doctor.id == Appointment.doctor_id)
        .outerjoin(doctor_user, doctor_user.id == Doctor.user_id)
        .outerjoin(Room, Room.id == Appointment.room_id)
        .outerjoin(services_total, services_total.c.appointment_id == Appointment.id)
    )

    conditions = []
    if status is not None:
        conditions.append(Appointment.status == AppointmentStatus(status))
    if doctor_id is not None:
        conditions.append(Appointment.doctor_id == doctor_id)
    if patient_id is not None:
        conditions.append(Appointment.patient_id == patient_id)
    if room_id is not None:
        conditions.append(Appointment.room_id == room_id)
    if start is not None:
        conditions.append(Appointment.scheduled_at >= start)
    if end is not None:
        conditions.append(Appointment.scheduled_at < end)
    if conditions:
        q = q.where(and_(*conditions))
    q = q.order_by(Appointment.scheduled_at.asc(), Appointment.id.asc())

    with store.read_session() as s:
        rows = s.execute(q).all()
        return [
            {
                "id": r.id,
                "scheduled_at": r.scheduled_at,
                "ends_at": r.scheduled_at + timedelta(minutes=r.duration_minutes),
                "duration_minutes": r.duration_minutes,
                "status": r.status.value,
                "reason": r.reason,
                "patient_id": r.patient_id,
                "patient_name": _full_name(r.patient_first, r.patient_last),
                "doctor_id": r.doctor_id,
                "doctor_name": _full_name(r.doctor_first, r.doctor_last),
                "license_number": r.license_number,
                "specialization": r.specialization,
                "room": r.room_name,
                "services_total": r.services_total if r.services_total is not None else Decimal("0.00"),
            }
            for r in rows
        ]


def doctor_agenda(store: EntityStore, doctor_id: int, day: date) -> list[dict]:
    """One doctor's day, cancelled appointments excluded."""
    start_day = datetime.combine(day, datetime.min.time())
    rows = appointments_overview(store, doctor_id=doctor_id, start=start_day, end=start_day + timedelta(days=1))
    return [r for r in rows if r["status"] != AppointmentStatus.CANCELLED.value]


# =========================
# Actors
# =========================
def patients_by_name(store: EntityStore, last_name: str, first_name: str | None = None) -> list[dict]:
    q = select(Patient.id, Patient.first_name, Patient.last_name, Patient.date_of_birth, Patient.national_id).where(
        Patient.last_name == last_name
    )
    if first_name is not None:
        q = q.where(Patient.first_name == first_name)
    q = q.order_by(Patient.last_name, Patient.first_name, Patient.id)

    with store.read_session() as s:
        return [
            {
                "id": r.id,
                "first_name": r.first_name,
                "last_name": r.last_name,
                "date_of_birth": r.date_of_birth,
                "national_id": r.national_id,
            }
            for r in s.execute(q).all()
        ]


def doctors_by_specialization(store: EntityStore, specialization: str) -> list[dict]:
    q = (
        select(
            Doctor.id,
            Doctor.license_number,
            Doctor.specialization,
            Doctor.consultation_fee,
            User.first_name,
            User.last_name,
        )
        .outerjoin(User, User.id == Doctor.user_id)
        .where(Doctor.specialization == specialization)
        .order_by(Doctor.license_number)
    )
    with store.read_session() as s:
        return [
            {
                "id": r.id,
                "name": _full_name(r.first_name, r.last_name),
                "license_number": r.license_number,
                "specialization": r.specialization,
                "consultation_fee": r.consultation_fee,
            }
            for r in s.execute(q).all()
        ]


def doctor_for_user(store: EntityStore, user_id: int) -> Doctor | None:
    """Reverse of Doctor.user_id: users hold no pointer to their doctor record."""
    with store.read_session() as s:
        return s.scalars(select(Doctor).where(Doctor.user_id == user_id)).first()


# =========================
# Clinical / billing
# =========================
def prescriptions_for_patient(store: EntityStore, patient_id: int) -> list[dict]:
    q = (
        select(Prescription)
        .where(Prescription.patient_id == patient_id)
        .options(selectinload(Prescription.items).selectinload(PrescriptionItem.medication))
        .order_by(Prescription.issued_at.desc(), Prescription.id.desc())
    )
    with store.read_session() as s:
        out = []
        for p in s.scalars(q):
            out.append(
                {
                    "id": p.id,
                    "appointment_id": p.appointment_id,
                    "doctor_id": p.doctor_id,
                    "issued_at": p.issued_at,
                    "notes": p.notes,
                    "items": [
                        {
                            "medication_id": it.medication_id,
                            "medication": it.medication.name,
                            "dosage": it.dosage,
                            "quantity": it.quantity,
                            "instructions": it.instructions,
                        }
                        for it in sorted(p.items, key=lambda it: it.medication_id)
                    ],
                }
            )
        return out


def invoice_summary(store: EntityStore, invoice_id: int) -> dict:
    """Invoice with its items; line totals are derived, items_total is their sum."""
    with store.read_session() as s:
        inv = s.scalars(select(Invoice).where(Invoice.id == invoice_id).options(selectinload(Invoice.items))).first()
        if inv is None:
            raise NotFoundError(f"invoice {invoice_id!r} not found.", entity="invoice", value=invoice_id)

        items = [
            {
                "id": it.id,
                "description": it.description,
                "quantity": it.quantity,
                "unit_price": it.unit_price,
                "line_total": it.line_total,
            }
            for it in inv.items
        ]
        return {
            "id": inv.id,
            "patient_id": inv.patient_id,
            "appointment_id": inv.appointment_id,
            "invoice_date": inv.invoice_date,
            "status": inv.status.value,
            "total_amount": inv.total_amount,
            "items": items,
            "items_total": sum((i["line_total"] for i in items), Decimal("0.00")),
        }


def stock_report(store: EntityStore, below: int | None = None) -> list[dict]:
    q = select(Medication.id, Medication.name, Medication.sku, Medication.quantity_in_stock).order_by(Medication.name)
    if below is not None:
        q = q.where(Medication.quantity_in_stock < below)
    with store.read_session() as s:
        return [
            {"id": r.id, "name": r.name, "sku": r.sku, "quantity_in_stock": r.quantity_in_stock}
            for r in s.execute(q).all()
        ]


def services_for_appointment(store: EntityStore, appointment_id: int) -> list[dict]:
    q = (
        select(Service.id, Service.code, Service.name, AppointmentService.price_at_time, Service.price)
        .join(AppointmentService, AppointmentService.service_id == Service.id)
        .where(AppointmentService.appointment_id == appointment_id)
        .order_by(Service.name)
    )
    with store.read_session() as s:
        return [
            {
                "service_id": r.id,
                "code": r.code,
                "name": r.name,
                "price_at_time": r.price_at_time,
                "current_price": r.price,
            }
            for r in s.execute(q).all()
        ]


# =========================
# Audit feed
# =========================
def audit_feed(
    store: EntityStore,
    *,
    after_id: int | None = None,
    entity: str | None = None,
    limit: int = 100,
) -> list[dict]:
    """
    Append-only feed ordered by performed_at (then id).
    Poll with after_id = last id seen.
    """
    q = select(AuditLog)
    if after_id is not None:
        q = q.where(AuditLog.id > after_id)
    if entity is not None:
        q = q.where(AuditLog.entity == entity)
    q = q.order_by(AuditLog.performed_at.asc(), AuditLog.id.asc()).limit(limit)

    with store.read_session() as s:
        return [
            {
                "id": a.id,
                "entity": a.entity,
                "entity_id": a.entity_id,
                "action": a.action.value,
                "performed_by_user": a.performed_by_user,
                "performed_at": a.performed_at,
                "details": json.loads(a.details) if a.details else None,
            }
            for a in s.scalars(q)
        ]
