from __future__ import annotations

from decimal import Decimal

from sqlalchemy import select

from .models import Role, Room, Service
from .store import EntityStore

DEFAULT_ROLES = [
    ("admin", "System administrator"),
    ("receptionist", "Front desk staff"),
    ("doctor", "Medical doctor"),
    ("pharmacist", "Pharmacy staff"),
]

DEFAULT_ROOMS = [
    ("Consultation 1", "Ground"),
    ("Consultation 2", "Ground"),
    ("Procedure Room", "First"),
]

DEFAULT_SERVICES = [
    ("General Consultation", "CONS-GEN", Decimal("30.00"), 30),
    ("Blood Test", "LAB-BLD", Decimal("15.00"), 15),
    ("ECG", "DIAG-ECG", Decimal("25.00"), 20),
]


def seed_reference_data(store: EntityStore) -> int:
    """
    Load the minimal reference data (idempotent):
    - roles
    - rooms
    - services
    Returns how many rows were inserted.
    """
    inserted = 0
    with store.transaction() as tx:
        s = tx.session

        for name, description in DEFAULT_ROLES:
            if s.execute(select(Role).where(Role.name == name)).scalar_one_or_none() is None:
                tx.insert("role", {"name": name, "description": description}, audit=False)
                inserted += 1

        for name, floor in DEFAULT_ROOMS:
            if s.execute(select(Room).where(Room.name == name)).scalar_one_or_none() is None:
                tx.insert("room", {"name": name, "floor": floor}, audit=False)
                inserted += 1

        for name, code, price, minutes in DEFAULT_SERVICES:
            if s.execute(select(Service).where(Service.code == code)).scalar_one_or_none() is None:
                tx.insert(
                    "service",
                    {"name": name, "code": code, "price": price, "duration_minutes": minutes},
                    audit=False,
                )
                inserted += 1

    return inserted
