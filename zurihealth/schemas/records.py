# zurihealth/schemas/records.py
"""Payloads for medical records, lab templates and test results."""

from datetime import datetime
from decimal import Decimal
from typing import Dict, List, Literal, Optional, Union
from uuid import UUID

from pydantic import Field, model_validator

from zurihealth.schemas.common import Member, Payload

# Medical records

class Vitals(Payload):
    blood_pressure: Optional[str] = Field(default=None, pattern=r"^\d{2,3}/\d{2,3}$")
    temperature: Optional[float] = Field(default=None, ge=25, le=45)
    heart_rate: Optional[int] = Field(default=None, ge=0, le=300)
    respiratory_rate: Optional[int] = Field(default=None, ge=0, le=100)
    oxygen_saturation: Optional[float] = Field(default=None, ge=0, le=100)
    weight: Optional[float] = Field(default=None, ge=0, le=500)


class PrescriptionItem(Payload):
    medication: str = Field(min_length=1)
    dosage: str = Field(min_length=1)
    frequency: str = Field(min_length=1)
    duration: Optional[str] = None


class Attachment(Payload):
    file_name: str = Field(min_length=1, max_length=255)
    file_type: str = Field(min_length=1, max_length=100)
    file_url: str = Field(pattern=r"^https?://")


class MedicalRecordCreate(Payload):
    patient_id: UUID
    doctor_id: UUID
    appointment_id: Optional[UUID] = None
    diagnosis: str = Field(min_length=1)
    symptoms: List[str] = []
    vitals: Optional[Vitals] = None
    prescription_items: List[PrescriptionItem] = []
    notes: Optional[str] = None
    attachments: List[Attachment] = []


class MedicalRecordUpdate(Payload):
    diagnosis: Optional[str] = Field(default=None, min_length=1)
    symptoms: Optional[List[str]] = None
    vitals: Optional[Vitals] = None
    prescription_items: Optional[List[PrescriptionItem]] = None
    notes: Optional[str] = None
    attachments: Optional[List[Attachment]] = None

# Lab templates

class NormalRange(Payload):
    min: Optional[float] = None
    max: Optional[float] = None

    @model_validator(mode="after")
    def check_bounds(self):
        if self.min is not None and self.max is not None and self.min > self.max:
            raise ValueError("normal range min must not exceed max")
        return self


class LabParameter(Payload):
    name: str = Field(min_length=1)
    unit: Optional[str] = None
    value_type: Literal["NUMERIC", "TEXT", "OPTION"] = "NUMERIC"
    normal_range: Optional[NormalRange] = None
    options: List[str] = []
    normal_options: List[str] = []

    @model_validator(mode="after")
    def check_kind(self):
        if self.value_type == "OPTION":
            if not self.options:
                raise ValueError(f"{self.name}: OPTION parameters need options")
            if not set(self.normal_options) <= set(self.options):
                raise ValueError(f"{self.name}: normal_options must be a subset of options")
        elif self.options or self.normal_options:
            raise ValueError(f"{self.name}: only OPTION parameters take options")
        if self.value_type != "NUMERIC" and self.normal_range is not None:
            raise ValueError(f"{self.name}: only NUMERIC parameters take a normal range")
        return self


def _check_parameter_names(parameters: Optional[List[LabParameter]]):
    if parameters:
        names = [parameter.name for parameter in parameters]
        if len(names) != len(set(names)):
            raise ValueError("parameter names must be unique")


class LabTestTemplateCreate(Payload):
    name: str = Field(min_length=1, max_length=255)
    category: Member("lab_category")
    parameters: List[LabParameter] = Field(min_length=1)
    sample_type: Optional[str] = Field(default=None, max_length=100)
    instructions: Optional[str] = None
    turnaround_hours: Optional[int] = Field(default=None, ge=0)
    cost: Optional[Decimal] = Field(default=None, ge=0, max_digits=10, decimal_places=2)
    is_active: bool = True
    department_id: Optional[UUID] = None

    @model_validator(mode="after")
    def check_parameters(self):
        _check_parameter_names(self.parameters)
        return self


class LabTestTemplateUpdate(Payload):
    name: Optional[str] = Field(default=None, min_length=1, max_length=255)
    category: Optional[Member("lab_category")] = None
    parameters: Optional[List[LabParameter]] = Field(default=None, min_length=1)
    sample_type: Optional[str] = Field(default=None, max_length=100)
    instructions: Optional[str] = None
    turnaround_hours: Optional[int] = Field(default=None, ge=0)
    cost: Optional[Decimal] = Field(default=None, ge=0, max_digits=10, decimal_places=2)
    is_active: Optional[bool] = None
    department_id: Optional[UUID] = None

    @model_validator(mode="after")
    def check_parameters(self):
        _check_parameter_names(self.parameters)
        return self

# Test results

ParameterValue = Union[float, str, None]


class TestResultCreate(Payload):
    __test__ = False

    patient_id: UUID
    doctor_id: UUID
    template_id: Optional[UUID] = None
    test_name: str = Field(min_length=1, max_length=255)
    performed_at: datetime
    result: str = Field(min_length=1)
    parameter_values: Dict[str, ParameterValue] = {}
    status: Member("test_result_status")
    is_abnormal: Optional[bool] = None
    comments: Optional[str] = None


class TestResultUpdate(Payload):
    __test__ = False

    result: Optional[str] = Field(default=None, min_length=1)
    parameter_values: Optional[Dict[str, ParameterValue]] = None
    status: Optional[Member("test_result_status")] = None
    is_abnormal: Optional[bool] = None
    comments: Optional[str] = None
