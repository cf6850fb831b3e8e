from decimal import Decimal

import pytest

from zurihealth.errors import InvalidStateTransition, ValidationError
from zurihealth.models.all_models import (
    Appointment,
    AppointmentStatus,
    Bill,
    InventoryItem,
    MedicalRecord,
    OmaeraMedication,
    Prescription,
    User,
    evaluate_parameters,
    find_slot_overlaps,
)
from zurihealth.migrations.versions import DEFAULT_LAB_TEMPLATES

FULL_BLOOD_COUNT = DEFAULT_LAB_TEMPLATES[0]["parameters"]
URINALYSIS = DEFAULT_LAB_TEMPLATES[3]["parameters"]


@pytest.mark.parametrize("quantity, minimum, expected", [
    (0, 10, "out-of-stock"),
    (0, 0, "out-of-stock"),
    (1, 10, "low-stock"),
    (10, 10, "low-stock"),
    (11, 10, "in-stock"),
    (3, 0, "in-stock"),
])
def test_inventory_status_law(quantity, minimum, expected):
    assert InventoryItem.status_for(quantity, minimum) == expected


def test_bill_totals():
    bill = Bill(
        items=[
            {"description": "Consultation", "quantity": 1, "unit_price": "15000"},
            {"description": "Malaria RDT", "quantity": 2, "unit_price": Decimal("2500.50")},
        ],
        tax=Decimal("100"),
        discount=Decimal("600"),
    )
    bill.recompute_totals()
    assert bill.total_amount == Decimal("20001.00")
    assert bill.final_amount == Decimal("19501.00")
    assert bill.items[1]["amount"] == "5001.00"


def test_bill_rounds_to_cents():
    bill = Bill(items=[{"description": "Syrup", "quantity": 3, "unit_price": "0.335"}], tax=0, discount=0)
    bill.recompute_totals()
    assert bill.items[0]["unit_price"] == "0.34"
    assert bill.final_amount == Decimal("1.02")


def test_bill_discount_cannot_exceed_total():
    bill = Bill(items=[{"description": "Dressing", "quantity": 1, "unit_price": "50"}], tax=0, discount=60)
    with pytest.raises(ValidationError):
        bill.recompute_totals()


@pytest.mark.parametrize("terminal", ["completed", "cancelled", "no-show"])
@pytest.mark.parametrize("target", ["scheduled", "completed", "cancelled", "no-show"])
def test_terminal_appointments_never_move(terminal, target):
    appointment = Appointment(status=terminal)
    assert appointment.is_terminal
    with pytest.raises(InvalidStateTransition):
        appointment.transition_to(target)
    assert appointment.status == terminal


def test_cancellation_records_actor_and_reason():
    appointment = Appointment(status="scheduled")
    appointment.transition_to(AppointmentStatus.CANCELLED, actor_id="someone", reason="Patient travelling")
    assert appointment.status == "cancelled"
    assert appointment.cancelled_by == "someone"
    assert appointment.cancel_reason == "Patient travelling"


def test_refills_are_bounded():
    prescription = Prescription(status="active", refill_count=0, max_refills=2)
    prescription.record_refill()
    assert prescription.status == "active"
    assert prescription.refills_remaining == 1
    prescription.record_refill()
    assert prescription.status == "completed"
    with pytest.raises(InvalidStateTransition):
        prescription.record_refill()
    assert prescription.refill_count == 2


def test_prescription_without_refills_cannot_refill():
    prescription = Prescription(status="active", refill_count=0, max_refills=0)
    with pytest.raises(InvalidStateTransition):
        prescription.record_refill()


def test_closed_prescription_cannot_be_cancelled():
    prescription = Prescription(status="completed", refill_count=0, max_refills=0)
    with pytest.raises(InvalidStateTransition):
        prescription.cancel()


def test_final_medical_record_is_immutable():
    record = MedicalRecord(status="draft")
    record.ensure_mutable()
    record.finalize()
    assert record.finalized_at is not None
    with pytest.raises(InvalidStateTransition):
        record.ensure_mutable()
    with pytest.raises(InvalidStateTransition):
        record.finalize()


def test_omaera_price_change_needs_an_actor():
    medication = OmaeraMedication(original_price=Decimal("10.00"), current_price=Decimal("10.00"))
    with pytest.raises(ValidationError):
        medication.update_price("12.50", None)
    medication.update_price("12.50", "pharmacist-id")
    assert medication.current_price == Decimal("12.50")
    assert medication.last_updated_by == "pharmacist-id"


def test_numeric_parameters_outside_range_are_abnormal():
    assert evaluate_parameters(FULL_BLOOD_COUNT, {"Hemoglobin": 9.5})
    assert not evaluate_parameters(FULL_BLOOD_COUNT, {"Hemoglobin": 14, "Platelets": 300})
    assert not evaluate_parameters(FULL_BLOOD_COUNT, {})


def test_option_parameters_use_normal_options():
    assert evaluate_parameters(URINALYSIS, {"Protein": "2+"})
    assert not evaluate_parameters(URINALYSIS, {"Protein": "Negative", "Appearance": "Cloudy"})
    with pytest.raises(ValidationError):
        evaluate_parameters(URINALYSIS, {"Protein": "Lots"})


def test_unknown_parameters_are_rejected():
    with pytest.raises(ValidationError):
        evaluate_parameters(FULL_BLOOD_COUNT, {"Cholesterol": 4.2})


def test_slot_overlaps():
    slots = [
        {"day": "monday", "start_time": "08:00", "end_time": "12:00"},
        {"day": "monday", "start_time": "11:30", "end_time": "13:00"},
        {"day": "tuesday", "start_time": "08:00", "end_time": "12:00"},
        {"day": "tuesday", "start_time": "12:00", "end_time": "14:00"},
    ]
    assert find_slot_overlaps(slots) == ["monday"]


def test_passwords_are_hashed():
    user = User(is_active=True)
    user.set_password("Secret123!")
    assert user.password_hash != "Secret123!"
    assert user.check_password("Secret123!")
    assert not user.check_password("wrong")

    user.is_active = False
    assert not user.check_password("Secret123!")
