import uuid
from datetime import datetime
from typing import Optional

from pydantic import BaseModel, Field, field_validator

from .common import TransactionType, ReferenceType, normalize_choice, empty_str_to_none


class MachinePartBase(BaseModel):
    machine_id: uuid.UUID
    part_code: str
    part_name: str
    description: Optional[str] = None
    part_category: Optional[str] = None
    uom: str = "pcs"
    min_stock_level: Optional[int] = Field(default=None, ge=0)
    location: Optional[str] = None
    vendor_name: Optional[str] = None
    cost_per_unit: Optional[float] = Field(default=None, ge=0)

    @field_validator("description", "part_category", "location", "vendor_name", mode="before")
    @classmethod
    def _blank(cls, v):
        return empty_str_to_none(v)


class MachinePartCreate(MachinePartBase):
    quantity_on_hand: int = Field(default=0, ge=0)


class MachinePartUpdate(BaseModel):
    part_code: Optional[str] = None
    part_name: Optional[str] = None
    description: Optional[str] = None
    part_category: Optional[str] = None
    uom: Optional[str] = None
    # Routed through an ADJUST ledger entry, never written directly
    quantity_on_hand: Optional[int] = Field(default=None, ge=0)
    min_stock_level: Optional[int] = Field(default=None, ge=0)
    location: Optional[str] = None
    vendor_name: Optional[str] = None
    cost_per_unit: Optional[float] = Field(default=None, ge=0)


class StockUpdateRequest(BaseModel):
    quantity: int = Field(ge=0)
    operation: str = "add"  # add|remove|set
    notes: Optional[str] = None

    @field_validator("operation")
    @classmethod
    def _operation(cls, v: str) -> str:
        v = (v or "").strip().lower()
        if v not in ("add", "remove", "set"):
            raise ValueError("operation must be add, remove or set")
        return v


class MachinePartResponse(BaseModel):
    id: uuid.UUID
    machine_id: uuid.UUID
    part_code: str
    part_name: str
    description: Optional[str] = None
    part_category: Optional[str] = None
    uom: str
    quantity_on_hand: int
    min_stock_level: Optional[int] = None
    location: Optional[str] = None
    vendor_name: Optional[str] = None
    cost_per_unit: Optional[float] = None
    is_low_stock: bool
    created_at: datetime
    updated_at: datetime

    class Config:
        from_attributes = True


def _txn_type(v):
    if v is None:
        return None
    mapped = normalize_choice(v, TransactionType)
    if mapped is None:
        raise ValueError(f"Invalid transaction type: {v}")
    return mapped


def _ref_type(v):
    if v is None:
        return None
    mapped = normalize_choice(v, ReferenceType)
    if mapped is None:
        raise ValueError(f"Invalid reference type: {v}")
    return mapped


class InventoryTransactionCreate(BaseModel):
    part_id: uuid.UUID
    type: TransactionType = TransactionType.IN
    quantity: int
    reference_type: ReferenceType = ReferenceType.MANUAL
    reference_id: Optional[str] = None
    notes: Optional[str] = None

    @field_validator("type", mode="before")
    @classmethod
    def _type(cls, v):
        return _txn_type(v) or TransactionType.IN

    @field_validator("reference_type", mode="before")
    @classmethod
    def _ref(cls, v):
        return _ref_type(v) or ReferenceType.MANUAL


class InventoryTransactionUpdate(BaseModel):
    type: Optional[TransactionType] = None
    quantity: Optional[int] = None
    reference_type: Optional[ReferenceType] = None
    reference_id: Optional[str] = None
    notes: Optional[str] = None

    @field_validator("type", mode="before")
    @classmethod
    def _type(cls, v):
        return _txn_type(v)

    @field_validator("reference_type", mode="before")
    @classmethod
    def _ref(cls, v):
        return _ref_type(v)


class QuickAdjustmentRequest(BaseModel):
    part_id: uuid.UUID
    new_quantity: int = Field(ge=0)
    reason: Optional[str] = None


class PartBrief(BaseModel):
    id: uuid.UUID
    part_code: str
    part_name: str
    uom: str
    machine_id: uuid.UUID

    class Config:
        from_attributes = True


class InventoryTransactionResponse(BaseModel):
    id: uuid.UUID
    part_id: uuid.UUID
    type: TransactionType
    quantity: int
    balance_after: int
    reference_type: ReferenceType
    reference_id: Optional[str] = None
    notes: Optional[str] = None
    performed_by: Optional[uuid.UUID] = None
    created_at: datetime
    part: Optional[PartBrief] = None

    class Config:
        from_attributes = True
