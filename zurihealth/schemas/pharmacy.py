# zurihealth/schemas/pharmacy.py

from datetime import datetime
from decimal import Decimal
from typing import List, Optional
from uuid import UUID

from pydantic import Field, model_validator

from zurihealth.schemas.common import Member, Payload


class MedicationCreate(Payload):
    item_code: str = Field(min_length=1, max_length=50)
    name: str = Field(min_length=1, max_length=255)
    generic_name: Optional[str] = Field(default=None, max_length=255)
    category: Member("medication_category")
    form: Member("medication_form")
    strength: str = Field(min_length=1, max_length=50)
    manufacturer: Optional[str] = Field(default=None, max_length=255)
    unit_price: Decimal = Field(ge=0, max_digits=10, decimal_places=2)
    prescription_required: bool = True
    is_active: bool = True


class MedicationUpdate(Payload):
    item_code: Optional[str] = Field(default=None, min_length=1, max_length=50)
    name: Optional[str] = Field(default=None, min_length=1, max_length=255)
    generic_name: Optional[str] = Field(default=None, max_length=255)
    category: Optional[Member("medication_category")] = None
    form: Optional[Member("medication_form")] = None
    strength: Optional[str] = Field(default=None, min_length=1, max_length=50)
    manufacturer: Optional[str] = Field(default=None, max_length=255)
    unit_price: Optional[Decimal] = Field(default=None, ge=0, max_digits=10, decimal_places=2)
    prescription_required: Optional[bool] = None
    is_active: Optional[bool] = None


class OmaeraMedicationCreate(Payload):
    item_code: str = Field(min_length=1, max_length=50)
    item_description: str = Field(min_length=1)
    pack_size: Optional[str] = Field(default=None, max_length=50)
    tax_code: Decimal = Field(default=Decimal("0"), ge=0, max_digits=4, decimal_places=2)
    original_price: Decimal = Field(ge=0, max_digits=10, decimal_places=2)
    current_price: Optional[Decimal] = Field(default=None, ge=0, max_digits=10, decimal_places=2)
    is_active: bool = True
    notes: Optional[str] = None


class OmaeraMedicationUpdate(Payload):
    """Catalogue details only; price changes go through ``update_price``."""
    item_description: Optional[str] = Field(default=None, min_length=1)
    pack_size: Optional[str] = Field(default=None, max_length=50)
    tax_code: Optional[Decimal] = Field(default=None, ge=0, max_digits=4, decimal_places=2)
    is_active: Optional[bool] = None
    notes: Optional[str] = None


class PrescriptionLine(Payload):
    medication_id: UUID
    quantity: int = Field(default=1, ge=1)
    instructions: Optional[str] = None


class PrescriptionCreate(Payload):
    patient_id: UUID
    doctor_id: UUID
    appointment_id: Optional[UUID] = None
    diagnosis: str = Field(min_length=1)
    notes: Optional[str] = None
    valid_until: datetime
    max_refills: int = Field(default=0, ge=0, le=12)
    lines: List[PrescriptionLine] = Field(min_length=1)

    @model_validator(mode="after")
    def check_lines(self):
        medication_ids = [line.medication_id for line in self.lines]
        if len(medication_ids) != len(set(medication_ids)):
            raise ValueError("each medication may appear only once per prescription")
        return self


class PrescriptionUpdate(Payload):
    diagnosis: Optional[str] = Field(default=None, min_length=1)
    notes: Optional[str] = None
    valid_until: Optional[datetime] = None
    max_refills: Optional[int] = Field(default=None, ge=0, le=12)
