"""
Pytest configuration and fixtures for the clinic store tests.
"""
from datetime import datetime

import pytest

from clinic_store.config import Settings
from clinic_store.store import EntityStore


@pytest.fixture
def store():
    """Fresh in-memory store per test."""
    s = EntityStore(settings=Settings(database_url="sqlite://"))
    yield s
    s.dispose()


@pytest.fixture
def file_store(tmp_path):
    """File-backed store: needed when several threads hit the database."""
    s = EntityStore(settings=Settings(database_url=f"sqlite:///{tmp_path / 'clinic.sqlite'}", busy_timeout=10.0))
    yield s
    s.dispose()


@pytest.fixture
def role_id(store):
    return store.roles.insert({"name": "doctor", "description": "Medical doctor"})


@pytest.fixture
def user_id(store, role_id):
    return store.users.insert(
        {
            "username": "jdoe",
            "email": "jdoe@clinic.example",
            "password_hash": "not-a-real-hash",
            "first_name": "John",
            "last_name": "Doe",
            "role_id": role_id,
        }
    )


@pytest.fixture
def doctor_id(store, user_id):
    return store.doctors.insert(
        {
            "user_id": user_id,
            "license_number": "LIC-1",
            "specialization": "General Practitioner",
            "consultation_fee": "40.00",
        }
    )


@pytest.fixture
def patient_id(store):
    return store.patients.insert({"first_name": "Amina", "last_name": "Ali", "date_of_birth": "1998-05-14"})


@pytest.fixture
def appointment_id(store, patient_id, doctor_id):
    return store.appointments.insert(
        {
            "patient_id": patient_id,
            "doctor_id": doctor_id,
            "scheduled_at": datetime(2025, 1, 10, 9, 0),
            "duration_minutes": 30,
        }
    )


@pytest.fixture
def medication_id(store):
    return store.medications.insert(
        {"name": "Amoxicillin 500mg", "sku": "AMX-500", "unit_price": "0.80", "quantity_in_stock": 100}
    )


@pytest.fixture
def service_id(store):
    return store.services.insert({"name": "Blood Test", "code": "LAB-BLD", "price": "15.00", "duration_minutes": 15})
