"""
Entity store contract: insert/get/update/delete/find and transactions.
"""
from datetime import date, datetime
from decimal import Decimal

import pytest

from clinic_store.errors import NotFoundError, UniquenessError, ValidationError
from clinic_store.models import AppointmentStatus, Gender, InvoiceStatus


class TestInsertAndGet:
    def test_insert_then_get_returns_inserted_values(self, store):
        values = {
            "name": "Paracetamol 500mg",
            "sku": "PCM-500",
            "manufacturer": "Acme Pharma",
            "unit_price": Decimal("1.25"),
            "quantity_in_stock": 10,
        }
        med_id = store.medications.insert(values)

        row = store.medications.get(med_id).as_dict()
        for field, value in values.items():
            assert row[field] == value
        assert row["id"] == med_id
        assert row["created_at"] is not None
        assert row["updated_at"] is not None

    def test_appointment_status_defaults_to_scheduled(self, store, appointment_id):
        appt = store.appointments.get(appointment_id)
        assert appt.status is AppointmentStatus.SCHEDULED
        assert appt.scheduled_at == datetime(2025, 1, 10, 9, 0)
        assert appt.room_id is None

    def test_patient_gender_defaults_to_other(self, store, patient_id):
        patient = store.patients.get(patient_id)
        assert patient.gender is Gender.OTHER
        assert patient.date_of_birth == date(1998, 5, 14)

    def test_numeric_defaults_applied(self, store, patient_id):
        service_id = store.services.insert({"name": "Consultation"})
        invoice_id = store.invoices.insert({"patient_id": patient_id})

        service = store.services.get(service_id)
        invoice = store.invoices.get(invoice_id)
        assert service.price == Decimal("0.00")
        assert service.duration_minutes == 30
        assert invoice.total_amount == Decimal("0.00")
        assert invoice.status is InvoiceStatus.UNPAID

    def test_enum_accepts_string_value(self, store):
        pid = store.patients.insert({"first_name": "Sara", "last_name": "Kim", "gender": "female"})
        assert store.patients.get(pid).gender is Gender.FEMALE

    def test_get_missing_row_raises_not_found(self, store):
        with pytest.raises(NotFoundError) as exc:
            store.patients.get(12345)
        assert exc.value.entity == "patient"

    def test_junction_rows_use_composite_key(self, store, appointment_id, service_id):
        key = store.appointment_services.insert(
            {"appointment_id": appointment_id, "service_id": service_id, "price_at_time": "15.00"}
        )
        assert key == (appointment_id, service_id)
        assert store.appointment_services.get(key).price_at_time == Decimal("15.00")

    def test_unknown_entity_is_rejected(self, store):
        with pytest.raises(ValidationError):
            store.insert("ward", {"name": "A"})


class TestUpdate:
    def test_update_changes_fields(self, store, appointment_id):
        store.appointments.update(appointment_id, {"status": "checked_in", "reason": "Follow-up"})

        appt = store.appointments.get(appointment_id)
        assert appt.status is AppointmentStatus.CHECKED_IN
        assert appt.reason == "Follow-up"

    def test_update_revalidates_merged_row(self, store, appointment_id):
        with pytest.raises(ValidationError) as exc:
            store.appointments.update(appointment_id, {"duration_minutes": 0})
        assert exc.value.field == "duration_minutes"
        assert store.appointments.get(appointment_id).duration_minutes == 30

    def test_update_keeping_own_unique_values_is_allowed(self, store, doctor_id):
        store.doctors.update(doctor_id, {"license_number": "LIC-1", "specialization": "Cardiology"})
        assert store.doctors.get(doctor_id).specialization == "Cardiology"

    def test_update_required_field_to_none_fails(self, store, patient_id):
        with pytest.raises(ValidationError):
            store.patients.update(patient_id, {"last_name": None})

    def test_update_missing_row_raises_not_found(self, store):
        with pytest.raises(NotFoundError):
            store.rooms.update(999, {"name": "X"})

    def test_delete_missing_row_raises_not_found(self, store):
        with pytest.raises(NotFoundError):
            store.rooms.delete(999)

    def test_junction_key_is_immutable(self, store, appointment_id, service_id):
        other = store.services.insert({"name": "ECG", "code": "DIAG-ECG"})
        key = store.appointment_services.insert(
            {"appointment_id": appointment_id, "service_id": service_id, "price_at_time": "15.00"}
        )
        with pytest.raises(ValidationError):
            store.appointment_services.update(key, {"service_id": other})

    def test_junction_key_may_repeat_its_current_value(self, store, appointment_id, service_id):
        key = store.appointment_services.insert(
            {"appointment_id": appointment_id, "service_id": service_id, "price_at_time": "15.00"}
        )
        store.appointment_services.update(
            key, {"appointment_id": appointment_id, "service_id": service_id, "price_at_time": "12.50"}
        )
        assert store.appointment_services.get(key).price_at_time == Decimal("12.50")

    def test_updated_at_moves_forward(self, store, patient_id):
        before = store.patients.get(patient_id).updated_at
        store.patients.update(patient_id, {"phone": "+254712345678"})
        assert store.patients.get(patient_id).updated_at >= before


class TestFind:
    def test_find_is_lazy_and_restartable(self, store):
        result = store.patients.find(last_name="Ali")
        store.patients.insert({"first_name": "Amina", "last_name": "Ali"})

        assert [p.first_name for p in result] == ["Amina"]
        store.patients.insert({"first_name": "Omar", "last_name": "Ali"})
        assert sorted(p.first_name for p in result) == ["Amina", "Omar"]

    def test_find_with_range_and_order(self, store, patient_id, doctor_id):
        for hour in (11, 9, 10):
            store.appointments.insert(
                {"patient_id": patient_id, "doctor_id": doctor_id, "scheduled_at": datetime(2025, 1, 10, hour)}
            )

        rows = store.appointments.find(
            scheduled_at__gte=datetime(2025, 1, 10, 10), order_by="-scheduled_at"
        ).all()
        assert [r.scheduled_at.hour for r in rows] == [11, 10]

    def test_find_coerces_enum_values(self, store, appointment_id):
        assert [a.id for a in store.appointments.find(status="scheduled")] == [appointment_id]
        assert store.appointments.find(status__in=["completed", "cancelled"]).all() == []

    def test_find_with_python_predicate(self, store):
        store.rooms.insert({"name": "Room A", "floor": "1"})
        store.rooms.insert({"name": "Room B", "floor": "2"})

        rows = store.rooms.find(lambda r: r.floor == "2").all()
        assert [r.name for r in rows] == ["Room B"]

    def test_find_isnull_and_limit(self, store):
        store.medications.insert({"name": "A"})
        store.medications.insert({"name": "B", "sku": "B-1"})

        assert [m.name for m in store.medications.find(sku__isnull=True)] == ["A"]
        assert len(store.medications.find(limit=1).all()) == 1

    def test_find_on_derived_line_total(self, store, patient_id):
        invoice_id = store.invoices.insert({"patient_id": patient_id})
        store.invoice_items.insert({"invoice_id": invoice_id, "description": "A", "quantity": 2, "unit_price": "3.00"})
        store.invoice_items.insert({"invoice_id": invoice_id, "description": "B", "quantity": 5, "unit_price": "4.00"})

        rows = store.invoice_items.find(line_total__gt=10).all()
        assert [r.description for r in rows] == ["B"]

    def test_find_rejects_unknown_field_and_lookup(self, store):
        with pytest.raises(ValidationError):
            store.patients.find(nickname="x")
        with pytest.raises(ValidationError):
            store.patients.find(last_name__startswith="A")

    def test_filter_on_field_named_entity(self, store):
        store.rooms.insert({"name": "Room 1"})
        store.roles.insert({"name": "admin"})

        by_collection = store.audit_logs.find(entity="room").all()
        by_store = store.find("audit_log", entity="room").all()
        assert [a.entity for a in by_collection] == ["room"]
        assert [a.id for a in by_store] == [a.id for a in by_collection]
        assert store.find("audit_log", lambda a: a.entity == "role", entity="role").first().entity == "role"

    def test_first_returns_none_when_empty(self, store):
        assert store.rooms.find(name="nope").first() is None


class TestTransactions:
    def test_failed_transaction_leaves_no_trace(self, store):
        with pytest.raises(UniquenessError):
            with store.transaction() as tx:
                tx.insert("room", {"name": "Room A"})
                tx.insert("room", {"name": "Room A"})

        assert store.rooms.find(name="Room A").all() == []
        assert store.audit_logs.find(entity="room").all() == []

    def test_transaction_commits_all_operations(self, store, patient_id):
        with store.transaction() as tx:
            invoice_id = tx.insert("invoice", {"patient_id": patient_id})
            tx.insert("invoice_item", {"invoice_id": invoice_id, "description": "Visit", "quantity": 1, "unit_price": 20})
            tx.update("invoice", invoice_id, {"total_amount": 20})

        assert store.invoices.get(invoice_id).total_amount == Decimal("20.00")
        assert len(store.invoice_items.find(invoice_id=invoice_id).all()) == 1
