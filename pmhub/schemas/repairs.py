import uuid
from datetime import datetime
from typing import List, Optional

from pydantic import BaseModel, Field, field_validator

from .common import (
    Priority,
    RepairStatus,
    RepairItemStatus,
    RepairPhotoType,
    normalize_choice,
    empty_str_to_none,
)
from .machines import MachineBrief


def _priority(v):
    if v is None:
        return None
    return normalize_choice(v, Priority) or Priority.MEDIUM


class RepairWorkItemInput(BaseModel):
    title: str
    description: Optional[str] = None
    status: RepairItemStatus = RepairItemStatus.PENDING
    remarks: Optional[str] = None

    @field_validator("status", mode="before")
    @classmethod
    def _status(cls, v):
        if v is None:
            return RepairItemStatus.PENDING
        return normalize_choice(v, RepairItemStatus) or RepairItemStatus.PENDING


class RepairWorkCreate(BaseModel):
    machine_id: uuid.UUID
    title: str
    description: Optional[str] = None
    priority: Priority = Priority.MEDIUM
    assigned_to: Optional[uuid.UUID] = None
    estimated_hours: Optional[float] = Field(default=None, ge=0)
    items: List[RepairWorkItemInput] = []

    @field_validator("priority", mode="before")
    @classmethod
    def _prio(cls, v):
        return _priority(v) or Priority.MEDIUM

    @field_validator("title")
    @classmethod
    def _title(cls, v: str) -> str:
        v = (v or "").strip()
        if not v:
            raise ValueError("title is required")
        return v


class RepairFromPMRequest(BaseModel):
    title: Optional[str] = None
    description: Optional[str] = None
    priority: Optional[Priority] = None
    assigned_to: Optional[uuid.UUID] = None

    @field_validator("priority", mode="before")
    @classmethod
    def _prio(cls, v):
        return _priority(v)


class RepairWorkUpdate(BaseModel):
    title: Optional[str] = None
    description: Optional[str] = None
    priority: Optional[Priority] = None
    estimated_hours: Optional[float] = Field(default=None, ge=0)
    actual_hours: Optional[float] = Field(default=None, ge=0)
    actual_cost: Optional[float] = Field(default=None, ge=0)
    root_cause: Optional[str] = None
    resolution: Optional[str] = None
    customer_signature_url: Optional[str] = None
    customer_signer_name: Optional[str] = None
    items: Optional[List[RepairWorkItemInput]] = None

    @field_validator("priority", mode="before")
    @classmethod
    def _prio(cls, v):
        return _priority(v)


class AssignRequest(BaseModel):
    user_id: uuid.UUID
    notes: Optional[str] = None


class BulkAssignRequest(BaseModel):
    user_ids: List[uuid.UUID]
    notes: Optional[str] = None


class PartUsedInput(BaseModel):
    part_id: uuid.UUID
    quantity_used: int = Field(gt=0)


class RepairCompleteRequest(BaseModel):
    actual_hours: Optional[float] = Field(default=None, ge=0)
    actual_cost: Optional[float] = Field(default=None, ge=0)
    root_cause: Optional[str] = None
    resolution: Optional[str] = None
    customer_signature_url: Optional[str] = None
    customer_signer_name: Optional[str] = None
    customer_signed_at: Optional[datetime] = None
    parts_used: List[PartUsedInput] = []

    @field_validator("customer_signature_url", "customer_signer_name", mode="before")
    @classmethod
    def _blank(cls, v):
        return empty_str_to_none(v)


class RepairCancelRequest(BaseModel):
    reason: Optional[str] = None


class RepairItemUpdate(BaseModel):
    title: Optional[str] = None
    description: Optional[str] = None
    status: Optional[RepairItemStatus] = None
    remarks: Optional[str] = None

    @field_validator("status", mode="before")
    @classmethod
    def _status(cls, v):
        if v is None:
            return None
        return normalize_choice(v, RepairItemStatus)


class RepairWorkItemResponse(BaseModel):
    id: uuid.UUID
    item_order: int
    title: str
    description: Optional[str] = None
    status: RepairItemStatus
    remarks: Optional[str] = None
    completed_by: Optional[uuid.UUID] = None
    completed_at: Optional[datetime] = None

    class Config:
        from_attributes = True


class RepairWorkPhotoResponse(BaseModel):
    id: uuid.UUID
    repair_work_id: uuid.UUID
    repair_work_item_id: Optional[uuid.UUID] = None
    photo_type: RepairPhotoType
    file_url: str
    file_name: Optional[str] = None
    caption: Optional[str] = None
    created_at: datetime

    class Config:
        from_attributes = True


class RepairWorkPartResponse(BaseModel):
    id: uuid.UUID
    part_id: uuid.UUID
    quantity_used: int
    unit_cost: Optional[float] = None
    transaction_id: Optional[uuid.UUID] = None

    class Config:
        from_attributes = True


class RepairAssignmentResponse(BaseModel):
    user_id: uuid.UUID
    assigned_by: Optional[uuid.UUID] = None
    notes: Optional[str] = None
    assigned_at: datetime

    class Config:
        from_attributes = True


class RepairWorkResponse(BaseModel):
    id: uuid.UUID
    work_order_number: str
    machine_id: uuid.UUID
    title: str
    description: Optional[str] = None
    priority: Priority
    status: RepairStatus
    reported_by: Optional[uuid.UUID] = None
    assigned_to: Optional[uuid.UUID] = None
    pm_result_id: Optional[uuid.UUID] = None
    started_at: Optional[datetime] = None
    completed_at: Optional[datetime] = None
    estimated_hours: Optional[float] = None
    actual_hours: Optional[float] = None
    actual_cost: Optional[float] = None
    root_cause: Optional[str] = None
    resolution: Optional[str] = None
    customer_signature_url: Optional[str] = None
    customer_signer_name: Optional[str] = None
    customer_signed_at: Optional[datetime] = None
    machine: Optional[MachineBrief] = None
    created_at: datetime
    updated_at: datetime

    class Config:
        from_attributes = True


class RepairWorkDetail(RepairWorkResponse):
    items: List[RepairWorkItemResponse] = []
    photos: List[RepairWorkPhotoResponse] = []
    parts_used: List[RepairWorkPartResponse] = []
    assignments: List[RepairAssignmentResponse] = []
