# zurihealth/schemas/user.py

from datetime import date
from decimal import Decimal
from typing import Annotated, List, Literal, Optional
from uuid import UUID

from pydantic import EmailStr, Field, StringConstraints, model_validator

from zurihealth.models.all_models import find_slot_overlaps
from zurihealth.schemas.common import Member, Payload

Weekday = Literal["monday", "tuesday", "wednesday", "thursday", "friday", "saturday", "sunday"]
ClockTime = Annotated[str, StringConstraints(pattern=r"^([01]\d|2[0-3]):[0-5]\d$")]


class UserBase(Payload):
    first_name: str = Field(min_length=1, max_length=100)
    last_name: str = Field(min_length=1, max_length=100)
    email: EmailStr
    phone: Optional[str] = Field(default=None, max_length=20)
    role: Member("user_role") = "patient"
    gender: Optional[Member("gender")] = None
    date_of_birth: Optional[date] = None
    is_active: bool = True
    national_id: Optional[str] = Field(default=None, max_length=50)
    registration_id: Optional[str] = Field(default=None, max_length=50)


class UserCreate(UserBase):
    password: str = Field(min_length=8, max_length=128)


class UserUpdate(Payload):
    first_name: Optional[str] = Field(default=None, min_length=1, max_length=100)
    last_name: Optional[str] = Field(default=None, min_length=1, max_length=100)
    email: Optional[EmailStr] = None
    phone: Optional[str] = Field(default=None, max_length=20)
    role: Optional[Member("user_role")] = None
    gender: Optional[Member("gender")] = None
    date_of_birth: Optional[date] = None
    is_active: Optional[bool] = None
    national_id: Optional[str] = Field(default=None, max_length=50)
    registration_id: Optional[str] = Field(default=None, max_length=50)

# Doctor profiles

class AvailabilitySlot(Payload):
    day: Weekday
    start_time: ClockTime
    end_time: ClockTime

    @model_validator(mode="after")
    def check_range(self):
        if self.start_time >= self.end_time:
            raise ValueError("start_time must be before end_time")
        return self


def _check_availability(slots: Optional[List[AvailabilitySlot]]):
    if slots:
        overlapping = find_slot_overlaps(slot.model_dump() for slot in slots)
        if overlapping:
            raise ValueError(f"Availability slots overlap on {', '.join(overlapping)}")


class DoctorProfileCreate(Payload):
    user_id: UUID
    department_id: Optional[UUID] = None
    specialization: str = Field(min_length=1, max_length=100)
    license_number: str = Field(min_length=1, max_length=100)
    qualifications: List[str] = []
    experience_years: Optional[int] = Field(default=None, ge=0, le=80)
    consultation_fee: Optional[Decimal] = Field(default=None, ge=0, max_digits=10, decimal_places=2)
    bio: Optional[str] = None
    availability: List[AvailabilitySlot] = []
    is_available_for_video: bool = True

    @model_validator(mode="after")
    def check_availability(self):
        _check_availability(self.availability)
        return self


class DoctorProfileUpdate(Payload):
    department_id: Optional[UUID] = None
    specialization: Optional[str] = Field(default=None, min_length=1, max_length=100)
    license_number: Optional[str] = Field(default=None, min_length=1, max_length=100)
    qualifications: Optional[List[str]] = None
    experience_years: Optional[int] = Field(default=None, ge=0, le=80)
    consultation_fee: Optional[Decimal] = Field(default=None, ge=0, max_digits=10, decimal_places=2)
    bio: Optional[str] = None
    availability: Optional[List[AvailabilitySlot]] = None
    is_available_for_video: Optional[bool] = None

    @model_validator(mode="after")
    def check_availability(self):
        _check_availability(self.availability)
        return self

# Patient profiles

class Address(Payload):
    street: Optional[str] = None
    city: Optional[str] = None
    district: Optional[str] = None
    country: Optional[str] = "Malawi"


class EmergencyContact(Payload):
    name: str
    relationship: str
    phone: str = Field(max_length=20)


class MedicalHistoryEntry(Payload):
    condition: str
    diagnosed_on: Optional[str] = None
    notes: Optional[str] = None


class CurrentMedication(Payload):
    name: str
    dosage: Optional[str] = None
    frequency: Optional[str] = None


class PatientProfileCreate(Payload):
    user_id: UUID
    patient_number: str = Field(min_length=1, max_length=20)
    date_of_birth: Optional[date] = None
    gender: Optional[Member("gender")] = None
    blood_group: Optional[str] = Field(default=None, pattern=r"^(A|B|AB|O)[+-]$")
    telephone: str = Field(min_length=1, max_length=20)
    address: Optional[Address] = None
    emergency_contact: Optional[EmergencyContact] = None
    medical_history: List[MedicalHistoryEntry] = []
    allergies: List[str] = []
    current_medications: List[CurrentMedication] = []


class PatientProfileUpdate(Payload):
    date_of_birth: Optional[date] = None
    gender: Optional[Member("gender")] = None
    blood_group: Optional[str] = Field(default=None, pattern=r"^(A|B|AB|O)[+-]$")
    telephone: Optional[str] = Field(default=None, min_length=1, max_length=20)
    address: Optional[Address] = None
    emergency_contact: Optional[EmergencyContact] = None
    medical_history: Optional[List[MedicalHistoryEntry]] = None
    allergies: Optional[List[str]] = None
    current_medications: Optional[List[CurrentMedication]] = None
