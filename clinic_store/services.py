from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import datetime
from decimal import Decimal
from typing import Any, Iterable, Mapping

from sqlalchemy import select

from .errors import InvalidReferenceError, NotFoundError, ValidationError
from .models import (
    AppointmentService,
    AppointmentStatus,
    InvoiceItem,
    PrescriptionItem,
    Role,
    Service,
)
from .security import hash_password
from .store import EntityStore, Transaction

logger = logging.getLogger(__name__)

DEFAULT_APPOINTMENT_MINUTES = 30


# =========================
# Helper / DTO
# =========================
@dataclass(frozen=True)
class BookingResult:
    appointment_id: int
    duration_minutes: int
    services_total: Decimal


def _resolve_role(tx: Transaction, role: int | str) -> int:
    if isinstance(role, int):
        return role
    role_id = tx.session.execute(select(Role.id).where(Role.name == role)).scalar_one_or_none()
    if role_id is None:
        raise InvalidReferenceError(f"Unknown role {role!r}.", entity="user", field="role_id", value=role)
    return role_id


# =========================
# Users
# =========================
def register_user(
    store: EntityStore,
    *,
    username: str,
    email: str,
    password: str,
    first_name: str,
    last_name: str,
    role: int | str,
    phone: str | None = None,
    performed_by: int | None = None,
) -> int:
    """Create a staff account; role may be given by id or by name."""
    username = username.strip().lower()
    if not password:
        raise ValidationError("user.password is required.", entity="user", field="password")

    with store.transaction(performed_by) as tx:
        return tx.insert(
            "user",
            {
                "username": username,
                "email": email.strip().lower(),
                "password_hash": hash_password(password),
                "first_name": first_name.strip(),
                "last_name": last_name.strip(),
                "phone": phone,
                "role_id": _resolve_role(tx, role),
            },
        )


# =========================
# Booking (use case core)
# =========================
def book_appointment(
    store: EntityStore,
    *,
    patient_id: int,
    doctor_id: int,
    scheduled_at: datetime,
    service_ids: Iterable[int] = (),
    room_id: int | None = None,
    reason: str | None = None,
    duration_minutes: int | None = None,
    created_by: int | None = None,
) -> BookingResult:
    """
    Use case: book an appointment.
    - duration from the services unless given (30 minutes without services)
    - each service's current price is snapshotted into price_at_time
    - the same doctor at the same start time fails with UniquenessError
    """
    with store.transaction(created_by) as tx:
        services = []
        for service_id in service_ids:
            try:
                services.append(tx.get("service", service_id))
            except NotFoundError:
                raise InvalidReferenceError(
                    f"appointment_service.service_id references missing service {service_id!r}.",
                    entity="appointment_service",
                    field="service_id",
                    value=service_id,
                ) from None

        if duration_minutes is None:
            duration_minutes = sum(s.duration_minutes for s in services) or DEFAULT_APPOINTMENT_MINUTES

        appointment_id = tx.insert(
            "appointment",
            {
                "patient_id": patient_id,
                "doctor_id": doctor_id,
                "room_id": room_id,
                "scheduled_at": scheduled_at,
                "duration_minutes": duration_minutes,
                "reason": reason,
                "created_by_user": created_by,
            },
        )

        total = Decimal("0.00")
        for svc in services:
            tx.insert(
                "appointment_service",
                {"appointment_id": appointment_id, "service_id": svc.id, "price_at_time": svc.price},
            )
            total += svc.price

        logger.info("booked appointment %s with %d service(s)", appointment_id, len(services))
        return BookingResult(appointment_id, duration_minutes, total)


def cancel_appointment(store: EntityStore, appointment_id: int, performed_by: int | None = None) -> bool:
    """False when the appointment is already cancelled."""
    with store.transaction(performed_by) as tx:
        appt = tx.get("appointment", appointment_id)
        if appt.status is AppointmentStatus.CANCELLED:
            return False
        tx.update("appointment", appointment_id, {"status": AppointmentStatus.CANCELLED})
        return True


# =========================
# Prescriptions
# =========================
def issue_prescription(
    store: EntityStore,
    *,
    appointment_id: int,
    items: Iterable[Mapping[str, Any]],
    notes: str | None = None,
    performed_by: int | None = None,
) -> int:
    """
    Prescription for an appointment; doctor and patient come from the appointment.
    items: {"medication_id", "dosage", "quantity", "instructions"?}
    """
    with store.transaction(performed_by) as tx:
        appt = tx.get("appointment", appointment_id)
        prescription_id = tx.insert(
            "prescription",
            {
                "appointment_id": appt.id,
                "doctor_id": appt.doctor_id,
                "patient_id": appt.patient_id,
                "notes": notes,
            },
        )
        for item in items:
            tx.insert("prescription_item", {**item, "prescription_id": prescription_id})
        return prescription_id


def dispense_prescription(store: EntityStore, prescription_id: int, performed_by: int | None = None) -> dict[int, int]:
    """
    Take every item of the prescription out of stock.
    Insufficient stock fails the whole dispense (quantity_in_stock must stay >= 0).
    Returns medication_id -> remaining stock.
    """
    with store.transaction(performed_by) as tx:
        tx.get("prescription", prescription_id)
        items = tx.session.scalars(
            select(PrescriptionItem).where(PrescriptionItem.prescription_id == prescription_id)
        ).all()

        remaining: dict[int, int] = {}
        for item in items:
            med = tx.get("medication", item.medication_id)
            left = med.quantity_in_stock - item.quantity
            tx.update("medication", item.medication_id, {"quantity_in_stock": left})
            remaining[item.medication_id] = left
        return remaining


# =========================
# Billing
# =========================
def bill_appointment(
    store: EntityStore,
    appointment_id: int,
    *,
    extra_items: Iterable[Mapping[str, Any]] = (),
    performed_by: int | None = None,
) -> int:
    """
    Invoice for an appointment:
    - consultation fee of the doctor (when > 0)
    - one line per booked service at its snapshotted price
    - extra_items: {"description", "unit_price", "quantity"?}
    total_amount is the sum of the line totals.
    """
    with store.transaction(performed_by) as tx:
        appt = tx.get("appointment", appointment_id)
        doctor = tx.get("doctor", appt.doctor_id)

        lines: list[dict[str, Any]] = []
        if doctor.consultation_fee > 0:
            lines.append({"description": "Consultation", "quantity": 1, "unit_price": doctor.consultation_fee})

        booked = tx.session.execute(
            select(Service.name, AppointmentService.price_at_time)
            .join(AppointmentService, AppointmentService.service_id == Service.id)
            .where(AppointmentService.appointment_id == appointment_id)
            .order_by(Service.name)
        ).all()
        for name, price in booked:
            lines.append({"description": name, "quantity": 1, "unit_price": price})

        for extra in extra_items:
            lines.append({"quantity": 1, **extra})

        invoice_id = tx.insert("invoice", {"patient_id": appt.patient_id, "appointment_id": appt.id})
        total = Decimal("0.00")
        for line in lines:
            item_id = tx.insert("invoice_item", {**line, "invoice_id": invoice_id})
            total += tx.get("invoice_item", item_id).line_total
        tx.update("invoice", invoice_id, {"total_amount": total})
        return invoice_id


def refresh_invoice_total(store: EntityStore, invoice_id: int, performed_by: int | None = None) -> Decimal:
    """Recompute total_amount from the current items."""
    with store.transaction(performed_by) as tx:
        tx.get("invoice", invoice_id)
        items = tx.session.scalars(select(InvoiceItem).where(InvoiceItem.invoice_id == invoice_id)).all()
        total = sum((it.line_total for it in items), Decimal("0.00"))
        tx.update("invoice", invoice_id, {"total_amount": total})
        return total
