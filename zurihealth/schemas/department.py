# zurihealth/schemas/department.py
from typing import Optional

from pydantic import Field

from zurihealth.schemas.common import Member, Payload


class DepartmentCreate(Payload):
    name: str = Field(min_length=1, max_length=100)
    code: str = Field(min_length=1, max_length=10, pattern=r"^[A-Z0-9-]+$")
    description: Optional[str] = None
    status: Member("department_status") = "active"


class DepartmentUpdate(Payload):
    name: Optional[str] = Field(default=None, min_length=1, max_length=100)
    code: Optional[str] = Field(default=None, min_length=1, max_length=10, pattern=r"^[A-Z0-9-]+$")
    description: Optional[str] = None
    status: Optional[Member("department_status")] = None
