# zurihealth/persistence/repositories.py
"""One repository per entity, on top of the generic ``Repository``."""
import uuid
from typing import Any, Optional
from uuid import UUID

from sqlalchemy import and_, exists, or_, select, update
from sqlalchemy.orm import Session

from zurihealth.errors import InvalidStateTransition, NotFoundError, ReferentialIntegrityError, ValidationError
from zurihealth.logging_setup import get_logger
from zurihealth.models.all_models import (
    Appointment,
    AppointmentStatus,
    Bill,
    BillStatus,
    Department,
    DoctorProfile,
    InventoryItem,
    LabTestTemplate,
    MedicalRecord,
    Medication,
    OmaeraMedication,
    PatientProfile,
    Prescription,
    PrescriptionMedication,
    PrescriptionStatus,
    TestResult,
    User,
    UserRole,
)
from zurihealth.persistence.base import Actor, Predicate, Repository, resolve_predicate
from zurihealth.schemas.appointment import AppointmentCreate, AppointmentUpdate
from zurihealth.schemas.billing import BillCreate, BillUpdate, InventoryItemCreate, InventoryItemUpdate
from zurihealth.schemas.department import DepartmentCreate, DepartmentUpdate
from zurihealth.schemas.pharmacy import (
    MedicationCreate,
    MedicationUpdate,
    OmaeraMedicationCreate,
    OmaeraMedicationUpdate,
    PrescriptionCreate,
    PrescriptionUpdate,
)
from zurihealth.schemas.records import (
    LabTestTemplateCreate,
    LabTestTemplateUpdate,
    MedicalRecordCreate,
    MedicalRecordUpdate,
    TestResultCreate,
    TestResultUpdate,
)
from zurihealth.schemas.user import (
    DoctorProfileCreate,
    DoctorProfileUpdate,
    PatientProfileCreate,
    PatientProfileUpdate,
    UserCreate,
    UserUpdate,
)
from zurihealth.utils.clock import hospital_now

logger = get_logger(__name__)

# ================================
# PEOPLE
# ================================

class UserRepository(Repository):
    model = User
    create_schema = UserCreate
    update_schema = UserUpdate

    def _build(self, session, values, actor):
        password = values.pop("password")
        user = User(**values)
        user.set_password(password)
        return user

    def _before_update(self, session, instance, values):
        if values.get("email"):
            values["email"] = values["email"].lower()
        role = values.get("role")
        if role is not None and role != instance.role:
            self._check_role_change(session, instance, role)

    @staticmethod
    def _check_role_change(session, user, role):
        # Soft-deleted profiles included
        for profile, required in ((DoctorProfile, UserRole.DOCTOR.value), (PatientProfile, UserRole.PATIENT.value)):
            held = session.execute(select(profile.id).where(profile.user_id == user.id)).first()
            if held is not None and role != required:
                raise ValidationError(
                    f"User {user.id} has a {profile.__name__}; role must stay '{required}'",
                    details={"role": role},
                )

    def update(self, id, data, session=None):
        raise ValidationError("Users are updated with patch(); passwords change through change_password()")

    def get_by_email(self, email: str, session: Optional[Session] = None) -> Optional[User]:
        return self.find_one(User.email == email.strip().lower(), session=session)

    def create(self, data, actor=None, session=None):
        payload = self.validate(self.create_schema, data)
        payload.email = payload.email.lower()
        return super().create(payload, actor=actor, session=session)

    def change_password(self, id: UUID, current: str, new: str, session: Optional[Session] = None) -> User:
        if len(new) < 8:
            raise ValidationError("Password must be at least 8 characters")
        with self._session(session) as session:
            user = self._lock(session, id)
            if not user.check_password(current):
                raise ValidationError("Current password is incorrect")
            user.set_password(new)
            self._flush(session)
            logger.info("Password changed for user %s", id)
            return user

    def authenticate(self, email: str, password: str, session: Optional[Session] = None) -> Optional[User]:
        """Return the user when the credentials match, ``None`` otherwise."""
        with self._session(session) as session:
            user = self.get_by_email(email, session=session)
            if user is None or not user.check_password(password):
                logger.warning("Failed sign-in attempt for %s", email)
                return None
            user.last_login_at = hospital_now()
            self._flush(session)
            return user


class DepartmentRepository(Repository):
    model = Department
    create_schema = DepartmentCreate
    update_schema = DepartmentUpdate

    def get_by_code(self, code: str, session: Optional[Session] = None) -> Department:
        department = self.find_one(Department.code == code, session=session)
        if department is None:
            raise NotFoundError("Department", code)
        return department


class _ProfileRepository(Repository):
    role: str = None

    def _build(self, session, values, actor):
        user = session.get(User, values["user_id"])
        if user.role != self.role:
            raise ValidationError(
                f"{self.entity} requires a user with role '{self.role}', got '{user.role}'"
            )
        return super()._build(session, values, actor)


class DoctorProfileRepository(_ProfileRepository):
    model = DoctorProfile
    create_schema = DoctorProfileCreate
    update_schema = DoctorProfileUpdate
    role = UserRole.DOCTOR.value

    def in_department(self, department_id: UUID, session: Optional[Session] = None):
        return self.find(DoctorProfile.department_id == department_id, session=session)


class PatientProfileRepository(_ProfileRepository):
    model = PatientProfile
    create_schema = PatientProfileCreate
    update_schema = PatientProfileUpdate
    role = UserRole.PATIENT.value

    def get_by_patient_number(self, patient_number: str, session: Optional[Session] = None):
        return self.find_one(PatientProfile.patient_number == patient_number, session=session)

# ================================
# APPOINTMENTS AND RECORDS
# ================================

class AppointmentRepository(Repository):
    model = Appointment
    create_schema = AppointmentCreate
    update_schema = AppointmentUpdate

    def _before_update(self, session, instance, values):
        if instance.status != AppointmentStatus.SCHEDULED.value:
            raise InvalidStateTransition("Appointment", instance.status, instance.status,
                                         "only scheduled appointments can be changed")
        kind = values.get("type", instance.type)
        link = values.get("meeting_link", instance.meeting_link)
        if link and kind != "telehealth":
            raise ValidationError("meeting_link is only allowed on telehealth appointments")

    def update(self, id, data, session=None):
        payload = self.validate(self.create_schema, data)
        values = payload.model_dump(exclude={"patient_id", "doctor_id"})
        return self._apply(id, values, session)

    def transition(self, id: UUID, status: Any, actor: Optional[Actor] = None,
                   reason: Optional[str] = None, session: Optional[Session] = None) -> Appointment:
        with self._session(session) as session:
            appointment = self._lock(session, id)
            appointment.transition_to(status, actor.user_id if actor else None, reason)
            self._flush(session)
            logger.info("Appointment %s is now %s", id, appointment.status)
            return appointment

    def complete(self, id: UUID, actor: Optional[Actor] = None, session: Optional[Session] = None):
        return self.transition(id, AppointmentStatus.COMPLETED, actor, session=session)

    def cancel(self, id: UUID, actor: Actor, reason: Optional[str] = None, session: Optional[Session] = None):
        return self.transition(id, AppointmentStatus.CANCELLED, actor, reason, session=session)

    def mark_no_show(self, id: UUID, actor: Optional[Actor] = None, session: Optional[Session] = None):
        return self.transition(id, AppointmentStatus.NO_SHOW, actor, session=session)

    def for_doctor(self, doctor_id: UUID, start=None, end=None, session: Optional[Session] = None):
        conditions = [Appointment.doctor_id == doctor_id]
        if start is not None:
            conditions.append(Appointment.date_time >= start)
        if end is not None:
            conditions.append(Appointment.date_time < end)
        return self.find(and_(*conditions), order_by=Appointment.date_time, session=session)


class MedicalRecordRepository(Repository):
    model = MedicalRecord
    create_schema = MedicalRecordCreate
    update_schema = MedicalRecordUpdate

    def _before_update(self, session, instance, values):
        instance.ensure_mutable()

    def update(self, id, data, session=None):
        payload = self.validate(self.create_schema, data)
        values = payload.model_dump(exclude={"patient_id", "doctor_id", "appointment_id"})
        return self._apply(id, values, session)

    def finalize(self, id: UUID, session: Optional[Session] = None) -> MedicalRecord:
        with self._session(session) as session:
            record = self._lock(session, id)
            record.finalize()
            self._flush(session)
            logger.info("Medical record %s finalized", id)
            return record

    def _before_delete(self, session, instance):
        instance.ensure_mutable()

    def visible_to(self, patient_id: UUID, doctor_id: UUID, scope: Optional[Predicate] = None,
                   session: Optional[Session] = None):
        """A patient's records that a doctor may read: the ones the doctor wrote,
        or all of them once the two share a non-cancelled appointment."""
        shared_appointment = exists().where(
            Appointment.patient_id == MedicalRecord.patient_id,
            Appointment.doctor_id == doctor_id,
            Appointment.status != AppointmentStatus.CANCELLED.value,
        )
        where = and_(
            MedicalRecord.patient_id == patient_id,
            or_(MedicalRecord.doctor_id == doctor_id, shared_appointment),
        )
        if scope is not None:
            where = and_(where, resolve_predicate(MedicalRecord, scope))
        return self.find(where, order_by=MedicalRecord.created_at, session=session)

# ================================
# PHARMACY
# ================================

class MedicationRepository(Repository):
    model = Medication
    create_schema = MedicationCreate
    update_schema = MedicationUpdate

    def get_by_item_code(self, item_code: str, session: Optional[Session] = None) -> Medication:
        medication = self.find_one(Medication.item_code == item_code, session=session)
        if medication is None:
            raise NotFoundError("Medication", item_code)
        return medication


class OmaeraMedicationRepository(Repository):
    model = OmaeraMedication
    create_schema = OmaeraMedicationCreate
    update_schema = OmaeraMedicationUpdate

    def _build(self, session, values, actor):
        if values.get("current_price") is None:
            values["current_price"] = values["original_price"]
        if actor is not None:
            values["last_updated_by"] = actor.user_id
        return OmaeraMedication(**values)

    def _before_update(self, session, instance, values):
        if "current_price" in values:
            raise ValidationError("Use update_price() to change the current price")

    def update_price(self, id: UUID, price, actor: Actor, session: Optional[Session] = None):
        with self._session(session) as session:
            medication = self._lock(session, id)
            medication.update_price(price, actor.user_id if actor else None)
            self._flush(session)
            logger.info("Price of %s set to %s by %s", medication.item_code, medication.current_price,
                        actor.user_id)
            return medication

    def active(self, session: Optional[Session] = None):
        return self.find(OmaeraMedication.is_active.is_(True), order_by=OmaeraMedication.item_code,
                         session=session)


class PrescriptionRepository(Repository):
    model = Prescription
    create_schema = PrescriptionCreate
    update_schema = PrescriptionUpdate

    def create(self, data, actor=None, session=None):
        return self.create_with_lines(data, actor=actor, session=session)

    def create_with_lines(self, data: Any, actor: Optional[Actor] = None,
                          session: Optional[Session] = None) -> Prescription:
        """Insert a prescription and its medication lines in one unit of work."""
        payload = self.validate(self.create_schema, data)
        values = payload.model_dump(exclude={"lines"})
        with self._session(session) as session:
            self._check_references(session, values)
            prescription = Prescription(**values)
            for line in payload.lines:
                medication = session.get(Medication, line.medication_id)
                if medication is None:
                    raise ReferentialIntegrityError(
                        f"Prescription line references missing Medication {line.medication_id}",
                        details={"column": "medication_id", "value": str(line.medication_id)},
                    )
                if not medication.is_active:
                    raise ValidationError(f"Medication {medication.item_code} is not active")
                prescription.lines.append(PrescriptionMedication(
                    medication_id=line.medication_id, quantity=line.quantity, instructions=line.instructions,
                ))
            session.add(prescription)
            self._flush(session)
            logger.debug("Created prescription %s with %d line(s)", prescription.id, len(payload.lines))
            return prescription

    def update(self, id, data, session=None):
        raise ValidationError("Prescriptions are changed with patch(); lines are fixed once issued")

    def _before_update(self, session, instance, values):
        if instance.status != PrescriptionStatus.ACTIVE.value:
            raise InvalidStateTransition("Prescription", instance.status, instance.status,
                                         "only active prescriptions can be changed")
        if values.get("max_refills") is not None and values["max_refills"] < instance.refill_count:
            raise ValidationError(
                f"max_refills cannot drop below the {instance.refill_count} refill(s) already recorded"
            )

    def _change(self, id: UUID, method: str, session: Optional[Session]) -> Prescription:
        with self._session(session) as session:
            prescription = self._lock(session, id)
            getattr(prescription, method)()
            self._flush(session)
            logger.info("Prescription %s: %s (status %s, refills %d/%d)", id, method, prescription.status,
                        prescription.refill_count, prescription.max_refills)
            return prescription

    def record_refill(self, id: UUID, session: Optional[Session] = None) -> Prescription:
        return self._change(id, "record_refill", session)

    def complete(self, id: UUID, session: Optional[Session] = None) -> Prescription:
        return self._change(id, "complete", session)

    def cancel(self, id: UUID, session: Optional[Session] = None) -> Prescription:
        return self._change(id, "cancel", session)

# ================================
# LABORATORY
# ================================

class LabTestTemplateRepository(Repository):
    model = LabTestTemplate
    create_schema = LabTestTemplateCreate
    update_schema = LabTestTemplateUpdate

    def active(self, category: Optional[str] = None, session: Optional[Session] = None):
        where = LabTestTemplate.is_active.is_(True)
        if category is not None:
            where = and_(where, LabTestTemplate.category == getattr(category, "value", category))
        return self.find(where, order_by=LabTestTemplate.name, session=session)


class TestResultRepository(Repository):
    __test__ = False

    model = TestResult
    create_schema = TestResultCreate
    update_schema = TestResultUpdate

    def _build(self, session, values, actor):
        template_id = values.get("template_id")
        if template_id is not None:
            template = session.get(LabTestTemplate, template_id)
            if not template.is_active:
                raise ValidationError(f"Lab test template {template.name} is not active")
        return super()._build(session, values, actor)

    def abnormal_for_patient(self, patient_id: UUID, session: Optional[Session] = None):
        return self.find(
            and_(TestResult.patient_id == patient_id, TestResult.is_abnormal.is_(True)),
            order_by=TestResult.performed_at,
            session=session,
        )

# ================================
# INVENTORY AND BILLING
# ================================

class InventoryItemRepository(Repository):
    model = InventoryItem
    create_schema = InventoryItemCreate
    update_schema = InventoryItemUpdate

    def adjust_quantity(self, id: UUID, delta: int, session: Optional[Session] = None) -> InventoryItem:
        """Add ``delta`` (negative to consume) in one UPDATE statement, so
        concurrent adjustments never read a stale quantity."""
        new_quantity = InventoryItem.quantity + delta
        statement = (
            update(InventoryItem)
            .where(InventoryItem.id == id, new_quantity >= 0)
            .values(
                quantity=new_quantity,
                status=InventoryItem.status_expression(new_quantity, InventoryItem.minimum_level),
                updated_at=hospital_now(),
            )
            .execution_options(synchronize_session=False)
        )
        with self._session(session) as session:
            result = session.execute(statement)
            if result.rowcount == 0:
                if session.get(InventoryItem, id) is None:
                    raise NotFoundError("InventoryItem", id)
                raise ValidationError(f"Adjusting by {delta} would make the stock level negative")
            item = session.execute(
                select(InventoryItem).where(InventoryItem.id == id).execution_options(populate_existing=True)
            ).scalar_one()
            logger.info("Inventory %s adjusted by %d to %d (%s)", item.item_code, delta, item.quantity, item.status)
            return item

    def below_minimum(self, session: Optional[Session] = None):
        return self.find(InventoryItem.quantity <= InventoryItem.minimum_level,
                         order_by=InventoryItem.quantity, session=session)


def generate_bill_number() -> str:
    return f"BILL-{hospital_now():%Y%m%d}-{uuid.uuid4().hex[:8].upper()}"


class BillRepository(Repository):
    model = Bill
    create_schema = BillCreate
    update_schema = BillUpdate

    def _build(self, session, values, actor):
        if not values.get("bill_number"):
            values["bill_number"] = generate_bill_number()
        return super()._build(session, values, actor)

    def update(self, id, data, session=None):
        payload = self.validate(self.create_schema, data)
        values = payload.model_dump(exclude={"bill_number", "patient_id"})
        return self._apply(id, values, session)

    def _before_update(self, session, instance, values):
        if instance.status in (BillStatus.PAID.value, BillStatus.CANCELLED.value):
            raise InvalidStateTransition("Bill", instance.status, instance.status,
                                         "settled bills cannot be changed")

    def _transition(self, session, id, target, allowed):
        bill = self._lock(session, id)
        if bill.status not in allowed:
            raise InvalidStateTransition("Bill", bill.status, target)
        bill.status = target
        return bill

    def mark_paid(self, id: UUID, payment_method: str, session: Optional[Session] = None) -> Bill:
        with self._session(session) as session:
            bill = self._transition(session, id, BillStatus.PAID.value,
                                    (BillStatus.PENDING.value, BillStatus.OVERDUE.value))
            bill.payment_method = payment_method
            bill.payment_date = hospital_now()
            self._flush(session)
            logger.info("Bill %s paid (%s)", bill.bill_number, payment_method)
            return bill

    def mark_overdue(self, id: UUID, session: Optional[Session] = None) -> Bill:
        with self._session(session) as session:
            bill = self._transition(session, id, BillStatus.OVERDUE.value, (BillStatus.PENDING.value,))
            self._flush(session)
            logger.info("Bill %s is overdue", bill.bill_number)
            return bill

    def cancel(self, id: UUID, session: Optional[Session] = None) -> Bill:
        with self._session(session) as session:
            bill = self._transition(session, id, BillStatus.CANCELLED.value,
                                    (BillStatus.PENDING.value, BillStatus.OVERDUE.value))
            self._flush(session)
            logger.info("Bill %s cancelled", bill.bill_number)
            return bill

    def for_patient(self, patient_id: UUID, status: Optional[str] = None, session: Optional[Session] = None):
        where = Bill.patient_id == patient_id
        if status is not None:
            where = and_(where, Bill.status == getattr(status, "value", status))
        return self.find(where, session=session)


class Repositories:
    """All entity repositories bound to one persistence context."""

    def __init__(self, context):
        self.context = context
        self.users = UserRepository(context)
        self.departments = DepartmentRepository(context)
        self.doctors = DoctorProfileRepository(context)
        self.patients = PatientProfileRepository(context)
        self.appointments = AppointmentRepository(context)
        self.medical_records = MedicalRecordRepository(context)
        self.medications = MedicationRepository(context)
        self.omaera_medications = OmaeraMedicationRepository(context)
        self.prescriptions = PrescriptionRepository(context)
        self.lab_templates = LabTestTemplateRepository(context)
        self.test_results = TestResultRepository(context)
        self.inventory = InventoryItemRepository(context)
        self.bills = BillRepository(context)
