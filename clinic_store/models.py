from __future__ import annotations

import enum
from datetime import date, datetime, timezone
from decimal import Decimal

from sqlalchemy import (
    CheckConstraint,
    Date,
    DateTime,
    Enum,
    ForeignKey,
    Index,
    Integer,
    Numeric,
    String,
    Text,
    UniqueConstraint,
)
from sqlalchemy.ext.hybrid import hybrid_property
from sqlalchemy.orm import Mapped, mapped_column, relationship

from .db import Base

# Column info keys read by the constraint engine
MIN = "min"  # value >= bound
GT = "gt"  # value > bound
SYSTEM = "system"  # managed by the store, never set by callers


def utcnow() -> datetime:
    """Naive UTC timestamp (SQLite keeps no offsets)."""
    return datetime.now(timezone.utc).replace(tzinfo=None)


def _values_enum(cls: type[enum.Enum], name: str) -> Enum:
    # store the lowercase values ("scheduled"), not the member names
    return Enum(cls, name=name, native_enum=False, values_callable=lambda e: [m.value for m in e])


def _created_at() -> Mapped[datetime]:
    return mapped_column(DateTime, default=utcnow, nullable=False, info={SYSTEM: True})


def _updated_at() -> Mapped[datetime]:
    return mapped_column(DateTime, default=utcnow, onupdate=utcnow, nullable=False, info={SYSTEM: True})


class Gender(enum.Enum):
    MALE = "male"
    FEMALE = "female"
    OTHER = "other"


class AppointmentStatus(enum.Enum):
    SCHEDULED = "scheduled"
    CHECKED_IN = "checked_in"
    COMPLETED = "completed"
    CANCELLED = "cancelled"
    NO_SHOW = "no_show"


class InvoiceStatus(enum.Enum):
    UNPAID = "unpaid"
    PAID = "paid"
    PARTIALLY_PAID = "partially_paid"
    CANCELLED = "cancelled"


class AuditAction(enum.Enum):
    CREATE = "create"
    UPDATE = "update"
    DELETE = "delete"


# =========================
# Reference collections
# =========================
class Role(Base):
    __tablename__ = "roles"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    name: Mapped[str] = mapped_column(String(50), nullable=False, unique=True)
    description: Mapped[str | None] = mapped_column(String(255), nullable=True)

    def __repr__(self) -> str:
        return f"Role({self.name})"


class Room(Base):
    __tablename__ = "rooms"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    name: Mapped[str] = mapped_column(String(100), nullable=False, unique=True)
    floor: Mapped[str | None] = mapped_column(String(50), nullable=True)
    notes: Mapped[str | None] = mapped_column(String(255), nullable=True)


class Service(Base):
    __tablename__ = "services"
    __table_args__ = (
        UniqueConstraint("name", "code", name="ux_services_name_code"),
        CheckConstraint("price >= 0", name="ck_services_price"),
        CheckConstraint("duration_minutes > 0", name="ck_services_duration"),
    )

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    name: Mapped[str] = mapped_column(String(150), nullable=False)
    code: Mapped[str | None] = mapped_column(String(50), nullable=True, unique=True)
    description: Mapped[str | None] = mapped_column(String(255), nullable=True)
    price: Mapped[Decimal] = mapped_column(Numeric(10, 2), default=Decimal("0.00"), nullable=False, info={MIN: 0})
    duration_minutes: Mapped[int] = mapped_column(Integer, default=30, nullable=False, info={GT: 0})

    def __repr__(self) -> str:
        return f"Service({self.code or '-'} {self.name})"


class Medication(Base):
    __tablename__ = "medications"
    __table_args__ = (
        CheckConstraint("unit_price >= 0", name="ck_medications_unit_price"),
        CheckConstraint("quantity_in_stock >= 0", name="ck_medications_stock"),
    )

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    name: Mapped[str] = mapped_column(String(200), nullable=False)
    sku: Mapped[str | None] = mapped_column(String(100), nullable=True, unique=True)
    manufacturer: Mapped[str | None] = mapped_column(String(150), nullable=True)
    unit_price: Mapped[Decimal] = mapped_column(
        Numeric(10, 2), default=Decimal("0.00"), nullable=False, info={MIN: 0}
    )
    quantity_in_stock: Mapped[int] = mapped_column(Integer, default=0, nullable=False, info={MIN: 0})
    created_at: Mapped[datetime] = _created_at()
    updated_at: Mapped[datetime] = _updated_at()


# =========================
# Actors
# =========================
class User(Base):
    __tablename__ = "users"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    username: Mapped[str] = mapped_column(String(100), nullable=False, unique=True)
    email: Mapped[str] = mapped_column(String(255), nullable=False, unique=True)
    password_hash: Mapped[str] = mapped_column(String(255), nullable=False)
    first_name: Mapped[str] = mapped_column(String(100), nullable=False)
    last_name: Mapped[str] = mapped_column(String(100), nullable=False)
    phone: Mapped[str | None] = mapped_column(String(20), nullable=True)
    role_id: Mapped[int] = mapped_column(
        ForeignKey("roles.id", ondelete="RESTRICT", onupdate="CASCADE"), nullable=False
    )
    created_at: Mapped[datetime] = _created_at()
    updated_at: Mapped[datetime] = _updated_at()

    role: Mapped["Role"] = relationship(viewonly=True)

    def __repr__(self) -> str:
        return f"User({self.username})"


class Patient(Base):
    __tablename__ = "patients"
    __table_args__ = (Index("idx_patients_name", "last_name", "first_name"),)

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    first_name: Mapped[str] = mapped_column(String(100), nullable=False)
    last_name: Mapped[str] = mapped_column(String(100), nullable=False)
    date_of_birth: Mapped[date | None] = mapped_column(Date, nullable=True)
    gender: Mapped[Gender] = mapped_column(_values_enum(Gender, "gender"), default=Gender.OTHER, nullable=False)
    national_id: Mapped[str | None] = mapped_column(String(50), nullable=True, unique=True)
    email: Mapped[str | None] = mapped_column(String(255), nullable=True)
    phone: Mapped[str | None] = mapped_column(String(20), nullable=True)
    address: Mapped[str | None] = mapped_column(String(255), nullable=True)
    emergency_contact_name: Mapped[str | None] = mapped_column(String(150), nullable=True)
    emergency_contact_phone: Mapped[str | None] = mapped_column(String(20), nullable=True)
    created_at: Mapped[datetime] = _created_at()
    updated_at: Mapped[datetime] = _updated_at()

    def __repr__(self) -> str:
        return f"Patient({self.first_name} {self.last_name})"


class Doctor(Base):
    """A doctor may exist without a login; a user is linked to at most one doctor."""

    __tablename__ = "doctors"
    __table_args__ = (
        Index("idx_doctors_specialization", "specialization"),
        CheckConstraint("consultation_fee >= 0", name="ck_doctors_fee"),
    )

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    user_id: Mapped[int | None] = mapped_column(
        ForeignKey("users.id", ondelete="SET NULL", onupdate="CASCADE"), nullable=True, unique=True
    )
    license_number: Mapped[str] = mapped_column(String(100), nullable=False, unique=True)
    specialization: Mapped[str | None] = mapped_column(String(150), nullable=True)
    bio: Mapped[str | None] = mapped_column(Text, nullable=True)
    phone: Mapped[str | None] = mapped_column(String(20), nullable=True)
    consultation_fee: Mapped[Decimal] = mapped_column(
        Numeric(10, 2), default=Decimal("0.00"), nullable=False, info={MIN: 0}
    )
    created_at: Mapped[datetime] = _created_at()
    updated_at: Mapped[datetime] = _updated_at()

    user: Mapped[User | None] = relationship(viewonly=True)

    def __repr__(self) -> str:
        return f"Doctor({self.license_number}, {self.specialization})"


# =========================
# Encounters
# =========================
class Appointment(Base):
    __tablename__ = "appointments"
    __table_args__ = (
        # exact duplicate guard only (same doctor, same start); overlaps are not checked
        UniqueConstraint("doctor_id", "scheduled_at", name="ux_doctor_sched_at"),
        CheckConstraint("duration_minutes > 0", name="ck_appointments_duration"),
    )

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    patient_id: Mapped[int] = mapped_column(
        ForeignKey("patients.id", ondelete="CASCADE", onupdate="CASCADE"), nullable=False, index=True
    )
    doctor_id: Mapped[int] = mapped_column(
        ForeignKey("doctors.id", ondelete="RESTRICT", onupdate="CASCADE"), nullable=False, index=True
    )
    room_id: Mapped[int | None] = mapped_column(
        ForeignKey("rooms.id", ondelete="SET NULL", onupdate="CASCADE"), nullable=True
    )
    scheduled_at: Mapped[datetime] = mapped_column(DateTime, nullable=False, index=True)
    duration_minutes: Mapped[int] = mapped_column(Integer, default=30, nullable=False, info={GT: 0})
    status: Mapped[AppointmentStatus] = mapped_column(
        _values_enum(AppointmentStatus, "appointment_status"),
        default=AppointmentStatus.SCHEDULED,
        nullable=False,
        index=True,
    )
    reason: Mapped[str | None] = mapped_column(String(255), nullable=True)
    created_by_user: Mapped[int | None] = mapped_column(
        ForeignKey("users.id", ondelete="SET NULL", onupdate="CASCADE"), nullable=True
    )
    created_at: Mapped[datetime] = _created_at()
    updated_at: Mapped[datetime] = _updated_at()

    services: Mapped[list["AppointmentService"]] = relationship(viewonly=True)


class AppointmentService(Base):
    """Junction Appointment <-> Service; price_at_time is a snapshot taken at booking."""

    __tablename__ = "appointment_services"
    __table_args__ = (CheckConstraint("price_at_time >= 0", name="ck_appointment_services_price"),)

    appointment_id: Mapped[int] = mapped_column(
        ForeignKey("appointments.id", ondelete="CASCADE", onupdate="CASCADE"), primary_key=True, autoincrement=False
    )
    service_id: Mapped[int] = mapped_column(
        ForeignKey("services.id", ondelete="RESTRICT", onupdate="CASCADE"), primary_key=True, autoincrement=False
    )
    price_at_time: Mapped[Decimal] = mapped_column(Numeric(10, 2), nullable=False, info={MIN: 0})


# =========================
# Clinical
# =========================
class Prescription(Base):
    __tablename__ = "prescriptions"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    appointment_id: Mapped[int] = mapped_column(
        ForeignKey("appointments.id", ondelete="CASCADE", onupdate="CASCADE"), nullable=False
    )
    doctor_id: Mapped[int] = mapped_column(
        ForeignKey("doctors.id", ondelete="RESTRICT", onupdate="CASCADE"), nullable=False
    )
    patient_id: Mapped[int] = mapped_column(
        ForeignKey("patients.id", ondelete="CASCADE", onupdate="CASCADE"), nullable=False
    )
    issued_at: Mapped[datetime] = mapped_column(DateTime, default=utcnow, nullable=False)
    notes: Mapped[str | None] = mapped_column(Text, nullable=True)

    items: Mapped[list["PrescriptionItem"]] = relationship(viewonly=True)


class PrescriptionItem(Base):
    __tablename__ = "prescription_items"
    __table_args__ = (CheckConstraint("quantity > 0", name="ck_prescription_items_quantity"),)

    prescription_id: Mapped[int] = mapped_column(
        ForeignKey("prescriptions.id", ondelete="CASCADE", onupdate="CASCADE"), primary_key=True, autoincrement=False
    )
    medication_id: Mapped[int] = mapped_column(
        ForeignKey("medications.id", ondelete="RESTRICT", onupdate="CASCADE"), primary_key=True, autoincrement=False
    )
    dosage: Mapped[str] = mapped_column(Text, nullable=False)  # e.g. "1 tablet twice a day"
    quantity: Mapped[int] = mapped_column(Integer, nullable=False, info={GT: 0})
    instructions: Mapped[str | None] = mapped_column(Text, nullable=True)

    medication: Mapped["Medication"] = relationship(viewonly=True)


# =========================
# Billing
# =========================
class Invoice(Base):
    __tablename__ = "invoices"
    __table_args__ = (CheckConstraint("total_amount >= 0", name="ck_invoices_total"),)

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    patient_id: Mapped[int] = mapped_column(
        ForeignKey("patients.id", ondelete="RESTRICT", onupdate="CASCADE"), nullable=False, index=True
    )
    appointment_id: Mapped[int | None] = mapped_column(
        ForeignKey("appointments.id", ondelete="SET NULL", onupdate="CASCADE"), nullable=True
    )
    invoice_date: Mapped[datetime] = mapped_column(DateTime, default=utcnow, nullable=False)
    total_amount: Mapped[Decimal] = mapped_column(
        Numeric(12, 2), default=Decimal("0.00"), nullable=False, info={MIN: 0}
    )
    status: Mapped[InvoiceStatus] = mapped_column(
        _values_enum(InvoiceStatus, "invoice_status"), default=InvoiceStatus.UNPAID, nullable=False
    )
    notes: Mapped[str | None] = mapped_column(String(255), nullable=True)

    items: Mapped[list["InvoiceItem"]] = relationship(viewonly=True, order_by="InvoiceItem.id")


class InvoiceItem(Base):
    __tablename__ = "invoice_items"
    __table_args__ = (
        CheckConstraint("quantity > 0", name="ck_invoice_items_quantity"),
        CheckConstraint("unit_price >= 0", name="ck_invoice_items_unit_price"),
    )
    __derived__ = ("line_total",)

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    invoice_id: Mapped[int] = mapped_column(
        ForeignKey("invoices.id", ondelete="CASCADE", onupdate="CASCADE"), nullable=False, index=True
    )
    description: Mapped[str] = mapped_column(String(255), nullable=False)
    quantity: Mapped[int] = mapped_column(Integer, nullable=False, info={GT: 0})
    unit_price: Mapped[Decimal] = mapped_column(Numeric(12, 2), nullable=False, info={MIN: 0})

    @hybrid_property
    def line_total(self) -> Decimal:
        # never stored: always quantity * unit_price, in Python and in SQL
        return self.quantity * self.unit_price


# =========================
# Audit
# =========================
class AuditLog(Base):
    """Append-only."""

    __tablename__ = "audit_logs"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    entity: Mapped[str] = mapped_column(String(100), nullable=False)
    entity_id: Mapped[int | None] = mapped_column(Integer, nullable=True)
    action: Mapped[AuditAction] = mapped_column(_values_enum(AuditAction, "audit_action"), nullable=False)
    performed_by_user: Mapped[int | None] = mapped_column(
        ForeignKey("users.id", ondelete="SET NULL", onupdate="CASCADE"), nullable=True
    )
    performed_at: Mapped[datetime] = mapped_column(DateTime, default=utcnow, nullable=False, index=True)
    details: Mapped[str | None] = mapped_column(Text, nullable=True)


# Entity name -> model, in dependency order (parents first)
ENTITIES: dict[str, type[Base]] = {
    "role": Role,
    "room": Room,
    "service": Service,
    "medication": Medication,
    "user": User,
    "patient": Patient,
    "doctor": Doctor,
    "appointment": Appointment,
    "appointment_service": AppointmentService,
    "prescription": Prescription,
    "prescription_item": PrescriptionItem,
    "invoice": Invoice,
    "invoice_item": InvoiceItem,
    "audit_log": AuditLog,
}

APPEND_ONLY = frozenset({"audit_log"})
