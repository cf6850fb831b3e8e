# zurihealth/schemas/appointment.py

from datetime import datetime
from typing import Optional
from uuid import UUID

from pydantic import Field, model_validator

from zurihealth.schemas.common import Member, Payload


def _check_meeting_link(appointment_type: Optional[str], meeting_link: Optional[str]):
    if meeting_link and appointment_type is not None and appointment_type != "telehealth":
        raise ValueError("meeting_link is only used for telehealth appointments")


class AppointmentCreate(Payload):
    patient_id: UUID
    doctor_id: UUID
    date_time: datetime
    type: Member("appointment_type") = "in-person"
    reason: str = Field(min_length=1)
    notes: Optional[str] = None
    meeting_link: Optional[str] = Field(default=None, pattern=r"^https?://")

    @model_validator(mode="after")
    def check_meeting_link(self):
        _check_meeting_link(self.type, self.meeting_link)
        return self


class AppointmentUpdate(Payload):
    """Status is not editable here; it only changes through transitions."""
    date_time: Optional[datetime] = None
    type: Optional[Member("appointment_type")] = None
    reason: Optional[str] = Field(default=None, min_length=1)
    notes: Optional[str] = None
    meeting_link: Optional[str] = Field(default=None, pattern=r"^https?://")

    @model_validator(mode="after")
    def check_meeting_link(self):
        _check_meeting_link(self.type, self.meeting_link)
        return self
