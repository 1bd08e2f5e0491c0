"""
Field, uniqueness and reference constraints, and the derived line_total.
"""
from datetime import datetime, timedelta, timezone
from decimal import Decimal

import pytest

from clinic_store.errors import ConstraintError, InvalidReferenceError, UniquenessError, ValidationError


class TestFieldConstraints:
    @pytest.mark.parametrize(
        "entity, values, field",
        [
            ("doctor", {"license_number": "LIC-2", "consultation_fee": -1}, "consultation_fee"),
            ("service", {"name": "X", "duration_minutes": 0}, "duration_minutes"),
            ("service", {"name": "X", "price": "-0.01"}, "price"),
            ("medication", {"name": "X", "quantity_in_stock": -5}, "quantity_in_stock"),
            ("doctor", {"specialization": "Cardiology"}, "license_number"),
            ("patient", {"first_name": "A", "last_name": "B", "gender": "unknown"}, "gender"),
            ("role", {"name": "   "}, "name"),
            ("role", {"name": "x" * 51}, "name"),
            ("service", {"name": "X", "price": "12.345"}, "price"),
            ("service", {"name": "X", "duration_minutes": "30"}, "duration_minutes"),
            ("patient", {"first_name": "A", "last_name": "B", "date_of_birth": "14/05/1998"}, "date_of_birth"),
        ],
    )
    def test_invalid_values_are_rejected(self, store, entity, values, field):
        with pytest.raises(ValidationError) as exc:
            store.insert(entity, values)
        assert exc.value.entity == entity
        assert exc.value.field == field

    def test_nothing_written_on_validation_error(self, store):
        with pytest.raises(ValidationError):
            store.services.insert({"name": "X", "price": -1})
        assert store.services.find().all() == []

    def test_unknown_and_system_fields_are_rejected(self, store):
        with pytest.raises(ValidationError):
            store.rooms.insert({"name": "A", "colour": "blue"})
        with pytest.raises(ValidationError):
            store.patients.insert({"first_name": "A", "last_name": "B", "created_at": datetime(2020, 1, 1)})

    def test_appointment_status_outside_enum(self, store, appointment_id):
        with pytest.raises(ValidationError) as exc:
            store.appointments.update(appointment_id, {"status": "pending"})
        assert exc.value.field == "status"

    def test_prescription_item_needs_positive_quantity_and_dosage(self, store, appointment_id, medication_id, doctor_id, patient_id):
        prescription_id = store.prescriptions.insert(
            {"appointment_id": appointment_id, "doctor_id": doctor_id, "patient_id": patient_id}
        )
        base = {"prescription_id": prescription_id, "medication_id": medication_id}

        with pytest.raises(ValidationError):
            store.prescription_items.insert({**base, "dosage": "1 tablet twice a day", "quantity": 0})
        with pytest.raises(ValidationError):
            store.prescription_items.insert({**base, "dosage": "", "quantity": 10})

    def test_aware_datetimes_are_stored_as_utc(self, store, patient_id, doctor_id):
        east_africa = timezone(timedelta(hours=3))
        appt_id = store.appointments.insert(
            {
                "patient_id": patient_id,
                "doctor_id": doctor_id,
                "scheduled_at": datetime(2025, 1, 10, 12, 0, tzinfo=east_africa),
            }
        )
        assert store.appointments.get(appt_id).scheduled_at == datetime(2025, 1, 10, 9, 0)

    def test_errors_carry_structured_detail(self, store):
        with pytest.raises(ConstraintError) as exc:
            store.medications.insert({"name": "X", "unit_price": -2})
        detail = exc.value.as_dict()
        assert detail["error"] == "ValidationError"
        assert detail["entity"] == "medication"
        assert detail["field"] == "unit_price"
        assert detail["retryable"] is False


class TestUniqueness:
    def test_duplicate_appointment_same_doctor_same_time(self, store, appointment_id, patient_id, doctor_id):
        with pytest.raises(UniquenessError) as exc:
            store.appointments.insert(
                {"patient_id": patient_id, "doctor_id": doctor_id, "scheduled_at": datetime(2025, 1, 10, 9, 0)}
            )
        assert exc.value.entity == "appointment"
        assert exc.value.field == "doctor_id, scheduled_at"

    def test_same_time_other_doctor_or_other_time_is_fine(self, store, appointment_id, patient_id, doctor_id):
        other_doctor = store.doctors.insert({"license_number": "LIC-2"})

        store.appointments.insert(
            {"patient_id": patient_id, "doctor_id": other_doctor, "scheduled_at": datetime(2025, 1, 10, 9, 0)}
        )
        # overlapping but not identical start: only exact duplicates are refused
        store.appointments.insert(
            {"patient_id": patient_id, "doctor_id": doctor_id, "scheduled_at": datetime(2025, 1, 10, 9, 15)}
        )
        assert len(store.appointments.find(doctor_id=doctor_id).all()) == 2

    def test_rescheduling_onto_taken_slot_fails(self, store, appointment_id, patient_id, doctor_id):
        later = store.appointments.insert(
            {"patient_id": patient_id, "doctor_id": doctor_id, "scheduled_at": datetime(2025, 1, 10, 10, 0)}
        )
        with pytest.raises(UniquenessError):
            store.appointments.update(later, {"scheduled_at": datetime(2025, 1, 10, 9, 0)})

    @pytest.mark.parametrize(
        "entity, first, second, field",
        [
            ("role", {"name": "admin"}, {"name": "admin"}, "name"),
            ("room", {"name": "Room 1"}, {"name": "Room 1"}, "name"),
            ("doctor", {"license_number": "LIC-9"}, {"license_number": "LIC-9"}, "license_number"),
            ("medication", {"name": "A", "sku": "S-1"}, {"name": "B", "sku": "S-1"}, "sku"),
            ("service", {"name": "A", "code": "C-1"}, {"name": "B", "code": "C-1"}, "code"),
            (
                "patient",
                {"first_name": "A", "last_name": "B", "national_id": "NID1"},
                {"first_name": "C", "last_name": "D", "national_id": "NID1"},
                "national_id",
            ),
        ],
    )
    def test_unique_keys(self, store, entity, first, second, field):
        store.insert(entity, first)
        with pytest.raises(UniquenessError) as exc:
            store.insert(entity, second)
        assert exc.value.field == field

    def test_optional_unique_values_may_repeat_when_empty(self, store):
        store.patients.insert({"first_name": "A", "last_name": "B"})
        store.patients.insert({"first_name": "C", "last_name": "D"})
        store.medications.insert({"name": "A"})
        store.medications.insert({"name": "B"})
        assert len(store.patients.find(national_id__isnull=True).all()) == 2

    def test_username_and_email_unique(self, store, user_id, role_id):
        base = {"password_hash": "x", "first_name": "A", "last_name": "B", "role_id": role_id}
        with pytest.raises(UniquenessError) as exc:
            store.users.insert({**base, "username": "jdoe", "email": "other@clinic.example"})
        assert exc.value.field == "username"
        with pytest.raises(UniquenessError) as exc:
            store.users.insert({**base, "username": "other", "email": "jdoe@clinic.example"})
        assert exc.value.field == "email"

    def test_user_linked_to_at_most_one_doctor(self, store, doctor_id, user_id):
        with pytest.raises(UniquenessError) as exc:
            store.doctors.insert({"user_id": user_id, "license_number": "LIC-2"})
        assert exc.value.field == "user_id"

    def test_same_service_twice_on_appointment(self, store, appointment_id, service_id):
        link = {"appointment_id": appointment_id, "service_id": service_id, "price_at_time": "15.00"}
        store.appointment_services.insert(link)
        with pytest.raises(UniquenessError):
            store.appointment_services.insert(link)


class TestReferences:
    def test_missing_patient(self, store, doctor_id):
        with pytest.raises(InvalidReferenceError) as exc:
            store.appointments.insert({"patient_id": 404, "doctor_id": doctor_id, "scheduled_at": datetime(2025, 1, 1)})
        assert exc.value.field == "patient_id"
        assert exc.value.value == 404

    def test_missing_role(self, store):
        with pytest.raises(InvalidReferenceError):
            store.users.insert(
                {
                    "username": "a",
                    "email": "a@x",
                    "password_hash": "x",
                    "first_name": "A",
                    "last_name": "B",
                    "role_id": 77,
                }
            )

    def test_optional_reference_must_resolve_when_given(self, store, appointment_id):
        with pytest.raises(InvalidReferenceError) as exc:
            store.appointments.update(appointment_id, {"room_id": 5})
        assert exc.value.field == "room_id"

    def test_doctor_without_user_is_allowed(self, store):
        doctor_id = store.doctors.insert({"license_number": "LIC-12345", "specialization": "General Practitioner"})
        assert store.doctors.get(doctor_id).user_id is None


class TestLineTotal:
    @pytest.mark.parametrize(
        "quantity, unit_price, expected",
        [
            (1, "0.00", Decimal("0.00")),
            (3, "19.99", Decimal("59.97")),
            (12, "2.50", Decimal("30.00")),
        ],
    )
    def test_line_total_is_quantity_times_unit_price(self, store, patient_id, quantity, unit_price, expected):
        invoice_id = store.invoices.insert({"patient_id": patient_id})
        item_id = store.invoice_items.insert(
            {"invoice_id": invoice_id, "description": "Line", "quantity": quantity, "unit_price": unit_price}
        )
        item = store.invoice_items.get(item_id)
        assert item.line_total == expected
        assert item.as_dict()["line_total"] == expected

    def test_line_total_follows_updates(self, store, patient_id):
        invoice_id = store.invoices.insert({"patient_id": patient_id})
        item_id = store.invoice_items.insert(
            {"invoice_id": invoice_id, "description": "Line", "quantity": 2, "unit_price": "5.00"}
        )
        store.invoice_items.update(item_id, {"quantity": 4})
        assert store.invoice_items.get(item_id).line_total == Decimal("20.00")
        store.invoice_items.update(item_id, {"unit_price": "1.25"})
        assert store.invoice_items.get(item_id).line_total == Decimal("5.00")

    def test_line_total_cannot_be_set(self, store, patient_id):
        invoice_id = store.invoices.insert({"patient_id": patient_id})
        with pytest.raises(ValidationError) as exc:
            store.invoice_items.insert(
                {"invoice_id": invoice_id, "description": "L", "quantity": 1, "unit_price": 1, "line_total": 99}
            )
        assert exc.value.field == "line_total"

        item_id = store.invoice_items.insert({"invoice_id": invoice_id, "description": "L", "quantity": 1, "unit_price": 1})
        with pytest.raises(ValidationError):
            store.invoice_items.update(item_id, {"line_total": 99})
