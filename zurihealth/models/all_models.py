# zurihealth/models/all_models.py
from decimal import Decimal, ROUND_HALF_UP, InvalidOperation
from typing import Any, Dict, Iterable, List, Optional

from sqlalchemy import case, event
from sqlalchemy.orm import Session, declarative_base

from zurihealth.errors import InvalidStateTransition, ValidationError
from zurihealth.models.associations import belongs_to, has_many, has_one, many_to_many_through
from zurihealth.schema.tables import metadata
from zurihealth.schema.vocabularies import VOCABULARIES
from zurihealth.utils.auth import hash_password, verify_password
from zurihealth.utils.clock import hospital_now

Base = declarative_base(metadata=metadata)

CENTS = Decimal("0.01")


def to_money(value: Any) -> Decimal:
    try:
        return Decimal(str(value)).quantize(CENTS, rounding=ROUND_HALF_UP)
    except (InvalidOperation, ValueError) as exc:
        raise ValidationError(f"{value!r} is not a valid amount") from exc


# Enums
UserRole = VOCABULARIES["user_role"].as_enum("UserRole")
Gender = VOCABULARIES["gender"].as_enum("Gender")
AppointmentType = VOCABULARIES["appointment_type"].as_enum("AppointmentType")
AppointmentStatus = VOCABULARIES["appointment_status"].as_enum("AppointmentStatus")
RecordStatus = VOCABULARIES["record_status"].as_enum("RecordStatus")
PrescriptionStatus = VOCABULARIES["prescription_status"].as_enum("PrescriptionStatus")
MedicationCategory = VOCABULARIES["medication_category"].as_enum("MedicationCategory")
MedicationForm = VOCABULARIES["medication_form"].as_enum("MedicationForm")
LabCategory = VOCABULARIES["lab_category"].as_enum("LabCategory")
TestResultStatus = VOCABULARIES["test_result_status"].as_enum("TestResultStatus")
InventoryStatus = VOCABULARIES["inventory_status"].as_enum("InventoryStatus")
BillStatus = VOCABULARIES["bill_status"].as_enum("BillStatus")
DepartmentStatus = VOCABULARIES["department_status"].as_enum("DepartmentStatus")

# ================================
# USER AND PROFILES
# ================================

class User(Base):
    __table__ = metadata.tables["users"]

    # Relationships
    doctor_profile = has_one("DoctorProfile", "DoctorProfile.user_id", back_populates="user")
    patient_profile = has_one("PatientProfile", "PatientProfile.user_id", back_populates="user")

    @property
    def full_name(self) -> str:
        return f"{self.first_name} {self.last_name}"

    def set_password(self, password: str) -> None:
        self.password_hash = hash_password(password)

    def check_password(self, password: str) -> bool:
        if not self.is_active:
            return False
        return verify_password(password, self.password_hash)


class Department(Base):
    __table__ = metadata.tables["departments"]

    # Relationships
    doctors = has_many("DoctorProfile", "DoctorProfile.department_id", back_populates="department")
    lab_templates = has_many("LabTestTemplate", "LabTestTemplate.department_id", back_populates="department")


def find_slot_overlaps(slots: Iterable[Dict[str, Any]]) -> List[str]:
    """Days on which two availability slots overlap. Times are ``HH:MM`` strings."""
    by_day: Dict[str, List[tuple]] = {}
    for slot in slots:
        by_day.setdefault(slot["day"], []).append((slot["start_time"], slot["end_time"]))

    overlapping = []
    for day, ranges in by_day.items():
        ranges.sort()
        for (_, previous_end), (next_start, _) in zip(ranges, ranges[1:]):
            if next_start < previous_end:
                overlapping.append(day)
                break
    return overlapping


class SoftDeleteMixin:
    @property
    def is_deleted(self) -> bool:
        return self.deleted_at is not None

    def soft_delete(self) -> None:
        self.deleted_at = hospital_now()

    def restore(self) -> None:
        self.deleted_at = None


class DoctorProfile(SoftDeleteMixin, Base):
    __table__ = metadata.tables["doctor_profiles"]

    # Relationships
    user = belongs_to("User", "DoctorProfile.user_id", back_populates="doctor_profile")
    department = belongs_to("Department", "DoctorProfile.department_id", required=False, back_populates="doctors")
    appointments = has_many("Appointment", "Appointment.doctor_id", back_populates="doctor")
    medical_records = has_many("MedicalRecord", "MedicalRecord.doctor_id", back_populates="doctor")
    prescriptions = has_many("Prescription", "Prescription.doctor_id", back_populates="doctor")
    test_results = has_many("TestResult", "TestResult.doctor_id", back_populates="doctor")


class PatientProfile(SoftDeleteMixin, Base):
    __table__ = metadata.tables["patient_profiles"]

    # Relationships
    user = belongs_to("User", "PatientProfile.user_id", back_populates="patient_profile")
    appointments = has_many("Appointment", "Appointment.patient_id", back_populates="patient")
    medical_records = has_many("MedicalRecord", "MedicalRecord.patient_id", back_populates="patient")
    prescriptions = has_many("Prescription", "Prescription.patient_id", back_populates="patient")
    test_results = has_many("TestResult", "TestResult.patient_id", back_populates="patient")
    bills = has_many("Bill", "Bill.patient_id", back_populates="patient")

# ================================
# APPOINTMENTS AND RECORDS
# ================================

class Appointment(Base):
    __table__ = metadata.tables["appointments"]

    TRANSITIONS = {
        AppointmentStatus.SCHEDULED.value: {
            AppointmentStatus.COMPLETED.value,
            AppointmentStatus.CANCELLED.value,
            AppointmentStatus.NO_SHOW.value,
        },
    }

    # Relationships
    patient = belongs_to("PatientProfile", "Appointment.patient_id", back_populates="appointments")
    doctor = belongs_to("DoctorProfile", "Appointment.doctor_id", back_populates="appointments")
    medical_records = has_many("MedicalRecord", "MedicalRecord.appointment_id", back_populates="appointment")

    @property
    def is_terminal(self) -> bool:
        return self.status not in self.TRANSITIONS

    def transition_to(self, status: str, actor_id=None, reason: Optional[str] = None) -> None:
        status = getattr(status, "value", status)
        allowed = self.TRANSITIONS.get(self.status, set())
        if status not in allowed:
            raise InvalidStateTransition(
                "Appointment", self.status, status,
                "appointment is already closed" if self.is_terminal else None,
            )
        if status == AppointmentStatus.CANCELLED.value:
            self.cancelled_by = actor_id
            self.cancel_reason = reason
        self.status = status


class MedicalRecord(Base):
    __table__ = metadata.tables["medical_records"]

    # Relationships
    patient = belongs_to("PatientProfile", "MedicalRecord.patient_id", back_populates="medical_records")
    doctor = belongs_to("DoctorProfile", "MedicalRecord.doctor_id", back_populates="medical_records")
    appointment = belongs_to("Appointment", "MedicalRecord.appointment_id", required=False,
                             back_populates="medical_records")

    @property
    def is_final(self) -> bool:
        return self.status == RecordStatus.FINAL.value

    def ensure_mutable(self) -> None:
        if self.is_final:
            raise InvalidStateTransition("MedicalRecord", self.status, self.status,
                                         "finalized records cannot be modified")

    def finalize(self) -> None:
        if self.is_final:
            raise InvalidStateTransition("MedicalRecord", self.status, RecordStatus.FINAL.value)
        self.status = RecordStatus.FINAL.value
        self.finalized_at = hospital_now()

# ================================
# PHARMACY
# ================================

class Medication(Base):
    __table__ = metadata.tables["medications"]

    # Relationships
    prescription_lines = has_many("PrescriptionMedication", "PrescriptionMedication.medication_id",
                                  back_populates="medication")


class Prescription(Base):
    __table__ = metadata.tables["prescriptions"]

    # Relationships
    patient = belongs_to("PatientProfile", "Prescription.patient_id", back_populates="prescriptions")
    doctor = belongs_to("DoctorProfile", "Prescription.doctor_id", back_populates="prescriptions")
    appointment = belongs_to("Appointment", "Prescription.appointment_id", required=False)
    lines = has_many("PrescriptionMedication", "PrescriptionMedication.prescription_id",
                     back_populates="prescription", cascade="all, delete-orphan")
    medications = many_to_many_through(
        "Prescription", "Medication",
        through="PrescriptionMedication", secondary="prescription_medications",
        local_key="prescription_id", remote_key="medication_id",
    )

    @property
    def refills_remaining(self) -> int:
        return max(self.max_refills - self.refill_count, 0)

    def _close(self, status: str) -> None:
        if self.status != PrescriptionStatus.ACTIVE.value:
            raise InvalidStateTransition("Prescription", self.status, status)
        self.status = status

    def complete(self) -> None:
        self._close(PrescriptionStatus.COMPLETED.value)

    def cancel(self) -> None:
        self._close(PrescriptionStatus.CANCELLED.value)

    def record_refill(self) -> None:
        if self.status != PrescriptionStatus.ACTIVE.value:
            raise InvalidStateTransition("Prescription", self.status, self.status,
                                         "refills are only recorded on active prescriptions")
        if self.refill_count >= self.max_refills:
            raise InvalidStateTransition("Prescription", self.status, self.status,
                                         f"all {self.max_refills} refills have been used")
        self.refill_count += 1
        if self.refill_count == self.max_refills:
            self.status = PrescriptionStatus.COMPLETED.value


class PrescriptionMedication(Base):
    __table__ = metadata.tables["prescription_medications"]

    # Relationships
    prescription = belongs_to("Prescription", "PrescriptionMedication.prescription_id", back_populates="lines")
    medication = belongs_to("Medication", "PrescriptionMedication.medication_id",
                            back_populates="prescription_lines")


class OmaeraMedication(Base):
    __table__ = metadata.tables["omaera_medications"]

    # Relationships
    updated_by = belongs_to("User", "OmaeraMedication.last_updated_by", required=False)

    def update_price(self, price, actor_id) -> None:
        if actor_id is None:
            raise ValidationError("Price changes must be attributed to a user")
        price = to_money(price)
        if price < 0:
            raise ValidationError("Price cannot be negative")
        self.current_price = price
        self.last_updated_by = actor_id

# ================================
# LABORATORY
# ================================

def evaluate_parameters(parameters: List[Dict[str, Any]], values: Dict[str, Any]) -> bool:
    """True when any recorded value falls outside its parameter's normal range
    or normal options. TEXT parameters are never assessed."""
    known = {parameter["name"]: parameter for parameter in parameters}
    unknown = sorted(set(values) - set(known))
    if unknown:
        raise ValidationError(f"Unknown test parameter(s): {', '.join(unknown)}")

    abnormal = False
    for name, value in values.items():
        if value is None or value == "":
            continue
        parameter = known[name]
        value_type = parameter.get("value_type", "NUMERIC")
        if value_type == "NUMERIC":
            try:
                number = float(value)
            except (TypeError, ValueError) as exc:
                raise ValidationError(f"{name} expects a numeric value, got {value!r}") from exc
            bounds = parameter.get("normal_range") or {}
            low, high = bounds.get("min"), bounds.get("max")
            if (low is not None and number < low) or (high is not None and number > high):
                abnormal = True
        elif value_type == "OPTION":
            options = parameter.get("options") or []
            if options and value not in options:
                raise ValidationError(f"{name} must be one of {', '.join(options)}")
            normal = parameter.get("normal_options")
            if normal and value not in normal:
                abnormal = True
    return abnormal


class LabTestTemplate(Base):
    __table__ = metadata.tables["lab_test_templates"]

    # Relationships
    department = belongs_to("Department", "LabTestTemplate.department_id", required=False,
                            back_populates="lab_templates")
    results = has_many("TestResult", "TestResult.template_id", back_populates="template")


class TestResult(Base):
    __table__ = metadata.tables["test_results"]
    __test__ = False

    # Relationships
    patient = belongs_to("PatientProfile", "TestResult.patient_id", back_populates="test_results")
    doctor = belongs_to("DoctorProfile", "TestResult.doctor_id", back_populates="test_results")
    template = belongs_to("LabTestTemplate", "TestResult.template_id", required=False, back_populates="results")

    def evaluate_against(self, template: LabTestTemplate) -> bool:
        self.is_abnormal = evaluate_parameters(template.parameters or [], self.parameter_values or {})
        return self.is_abnormal

    def refresh_derived(self, session: Session) -> None:
        # Without a template the flag stays as entered
        if self.template_id is None:
            if self.is_abnormal is None:
                self.is_abnormal = False
            return
        template = session.get(LabTestTemplate, self.template_id)
        if template is None:
            raise ValidationError(f"Lab test template {self.template_id} does not exist")
        self.evaluate_against(template)

# ================================
# INVENTORY AND BILLING
# ================================

class InventoryItem(Base):
    __table__ = metadata.tables["inventory_items"]

    @staticmethod
    def status_for(quantity: int, minimum_level: int) -> str:
        if quantity <= 0:
            return InventoryStatus.OUT_OF_STOCK.value
        if quantity <= minimum_level:
            return InventoryStatus.LOW_STOCK.value
        return InventoryStatus.IN_STOCK.value

    @staticmethod
    def status_expression(quantity, minimum_level):
        """SQL counterpart of ``status_for`` for single-statement updates."""
        return case(
            (quantity <= 0, InventoryStatus.OUT_OF_STOCK.value),
            (quantity <= minimum_level, InventoryStatus.LOW_STOCK.value),
            else_=InventoryStatus.IN_STOCK.value,
        )

    def refresh_derived(self, session: Session) -> None:
        if self.quantity is None:
            self.quantity = 0
        if self.minimum_level is None:
            self.minimum_level = 0
        if self.quantity < 0 or self.minimum_level < 0:
            raise ValidationError("Inventory quantity and minimum level cannot be negative")
        self.status = self.status_for(self.quantity, self.minimum_level)


class Bill(Base):
    __table__ = metadata.tables["bills"]

    # Relationships
    patient = belongs_to("PatientProfile", "Bill.patient_id", back_populates="bills")
    appointment = belongs_to("Appointment", "Bill.appointment_id", required=False)

    def recompute_totals(self) -> None:
        items = []
        total = Decimal("0.00")
        for item in self.items or []:
            quantity = int(item["quantity"])
            unit_price = to_money(item["unit_price"])
            if quantity < 1 or unit_price < 0:
                raise ValidationError(f"Invalid bill line {item.get('description')!r}")
            amount = to_money(unit_price * quantity)
            total += amount
            items.append({
                "description": item["description"],
                "quantity": quantity,
                "unit_price": str(unit_price),
                "amount": str(amount),
            })

        tax = to_money(self.tax or 0)
        discount = to_money(self.discount or 0)
        if tax < 0 or discount < 0:
            raise ValidationError("Tax and discount cannot be negative")
        final = total - discount + tax
        if final < 0:
            raise ValidationError("Discount exceeds the billed amount")

        self.items = items
        self.total_amount = to_money(total)
        self.tax = tax
        self.discount = discount
        self.final_amount = to_money(final)

    def refresh_derived(self, session: Session) -> None:
        self.recompute_totals()


@event.listens_for(Session, "before_flush")
def refresh_derived_fields(session, flush_context, instances):
    """Recompute derived columns on every pending write."""
    with session.no_autoflush:
        for instance in list(session.new) + list(session.dirty):
            refresh = getattr(instance, "refresh_derived", None)
            if refresh is not None and instance not in session.deleted:
                refresh(session)
