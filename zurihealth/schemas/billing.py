# zurihealth/schemas/billing.py

from datetime import date
from decimal import Decimal
from typing import List, Optional
from uuid import UUID

from pydantic import Field

from zurihealth.schemas.common import Payload

# Inventory

class Supplier(Payload):
    name: str = Field(min_length=1)
    contact: Optional[str] = None
    email: Optional[str] = None


class InventoryItemCreate(Payload):
    item_code: str = Field(min_length=1, max_length=50)
    name: str = Field(min_length=1, max_length=255)
    category: str = Field(min_length=1, max_length=100)
    quantity: int = Field(default=0, ge=0)
    unit: Optional[str] = Field(default=None, max_length=30)
    minimum_level: int = Field(default=0, ge=0)
    supplier: Optional[Supplier] = None
    cost: Optional[Decimal] = Field(default=None, ge=0, max_digits=10, decimal_places=2)
    expiry_date: Optional[date] = None
    location: Optional[str] = Field(default=None, max_length=100)


class InventoryItemUpdate(Payload):
    name: Optional[str] = Field(default=None, min_length=1, max_length=255)
    category: Optional[str] = Field(default=None, min_length=1, max_length=100)
    quantity: Optional[int] = Field(default=None, ge=0)
    unit: Optional[str] = Field(default=None, max_length=30)
    minimum_level: Optional[int] = Field(default=None, ge=0)
    supplier: Optional[Supplier] = None
    cost: Optional[Decimal] = Field(default=None, ge=0, max_digits=10, decimal_places=2)
    expiry_date: Optional[date] = None
    location: Optional[str] = Field(default=None, max_length=100)

# Bills

class BillItem(Payload):
    description: str = Field(min_length=1)
    quantity: int = Field(default=1, ge=1)
    unit_price: Decimal = Field(ge=0, max_digits=12, decimal_places=2)


class BillCreate(Payload):
    bill_number: Optional[str] = Field(default=None, max_length=30)
    patient_id: UUID
    appointment_id: Optional[UUID] = None
    items: List[BillItem] = Field(min_length=1)
    tax: Decimal = Field(default=Decimal("0"), ge=0, max_digits=12, decimal_places=2)
    discount: Decimal = Field(default=Decimal("0"), ge=0, max_digits=12, decimal_places=2)
    due_date: Optional[date] = None
    payment_method: Optional[str] = Field(default=None, max_length=50)


class BillUpdate(Payload):
    items: Optional[List[BillItem]] = Field(default=None, min_length=1)
    tax: Optional[Decimal] = Field(default=None, ge=0, max_digits=12, decimal_places=2)
    discount: Optional[Decimal] = Field(default=None, ge=0, max_digits=12, decimal_places=2)
    due_date: Optional[date] = None
    payment_method: Optional[str] = Field(default=None, max_length=50)
