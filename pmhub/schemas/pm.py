import uuid
from datetime import datetime
from typing import List, Optional

from pydantic import BaseModel, Field, field_validator

from .common import (
    FrequencyType,
    Priority,
    ScheduleStatus,
    ResultStatus,
    PMPhotoType,
    normalize_choice,
    empty_str_to_none,
)
from .machines import MachineBrief


# ---------- Templates ----------
class PMTemplateItemInput(BaseModel):
    id: Optional[uuid.UUID] = None  # present when editing an existing step
    check_item: str
    step_order: Optional[int] = None
    category: Optional[str] = None
    standard_value: Optional[str] = None
    unit: Optional[str] = None
    method: Optional[str] = None
    tools_required: Optional[str] = None
    is_required: bool = True
    has_photo: bool = False
    requires_signature: bool = False
    remarks: Optional[str] = None

    @field_validator("category", "standard_value", "unit", "method", "tools_required", "remarks", mode="before")
    @classmethod
    def _blank(cls, v):
        return empty_str_to_none(v)


class PMTemplateItemResponse(BaseModel):
    id: uuid.UUID
    check_item: str
    step_order: int
    category: Optional[str] = None
    standard_value: Optional[str] = None
    unit: Optional[str] = None
    method: Optional[str] = None
    tools_required: Optional[str] = None
    is_required: bool
    has_photo: bool
    requires_signature: bool
    remarks: Optional[str] = None

    class Config:
        from_attributes = True


def _frequency(v):
    if v is None:
        return None
    return normalize_choice(v, FrequencyType) or FrequencyType.MONTHLY


class PMTemplateCreate(BaseModel):
    name: str
    description: Optional[str] = None
    machine_type: Optional[str] = None
    frequency_type: FrequencyType = FrequencyType.MONTHLY
    frequency_value: int = Field(default=1, ge=1)
    duration_minutes: Optional[int] = Field(default=None, ge=0)
    is_active: bool = True
    items: List[PMTemplateItemInput] = []

    @field_validator("frequency_type", mode="before")
    @classmethod
    def _freq(cls, v):
        return _frequency(v) or FrequencyType.MONTHLY


class PMTemplateUpdate(BaseModel):
    name: Optional[str] = None
    description: Optional[str] = None
    machine_type: Optional[str] = None
    frequency_type: Optional[FrequencyType] = None
    frequency_value: Optional[int] = Field(default=None, ge=1)
    duration_minutes: Optional[int] = Field(default=None, ge=0)
    is_active: Optional[bool] = None
    items: Optional[List[PMTemplateItemInput]] = None

    @field_validator("frequency_type", mode="before")
    @classmethod
    def _freq(cls, v):
        return _frequency(v)


class PMTemplateResponse(BaseModel):
    id: uuid.UUID
    name: str
    description: Optional[str] = None
    machine_type: Optional[str] = None
    frequency_type: FrequencyType
    frequency_value: int
    duration_minutes: Optional[int] = None
    is_active: bool
    items: List[PMTemplateItemResponse] = []
    created_at: datetime
    updated_at: datetime

    class Config:
        from_attributes = True


class PMTemplateBrief(BaseModel):
    id: uuid.UUID
    name: str
    frequency_type: FrequencyType
    frequency_value: int

    class Config:
        from_attributes = True


# ---------- Schedules ----------
def _priority(v):
    if v is None:
        return None
    return normalize_choice(v, Priority) or Priority.MEDIUM


def _schedule_status(v):
    if v is None:
        return None
    mapped = normalize_choice(v, ScheduleStatus)
    if mapped is None:
        raise ValueError(f"Invalid schedule status: {v}")
    return mapped


class PMScheduleCreate(BaseModel):
    pm_template_id: uuid.UUID
    machine_id: uuid.UUID
    due_date: datetime
    priority: Priority = Priority.MEDIUM
    estimated_hours: Optional[float] = Field(default=None, ge=0)
    remarks: Optional[str] = None
    assigned_to: List[uuid.UUID] = []

    @field_validator("priority", mode="before")
    @classmethod
    def _prio(cls, v):
        return _priority(v) or Priority.MEDIUM


class PMScheduleUpdate(BaseModel):
    due_date: Optional[datetime] = None
    priority: Optional[Priority] = None
    estimated_hours: Optional[float] = Field(default=None, ge=0)
    remarks: Optional[str] = None
    status: Optional[ScheduleStatus] = None
    assigned_to: Optional[List[uuid.UUID]] = None

    @field_validator("priority", mode="before")
    @classmethod
    def _prio(cls, v):
        return _priority(v)

    @field_validator("status", mode="before")
    @classmethod
    def _status(cls, v):
        return _schedule_status(v)


class PhotoInput(BaseModel):
    file_url: str
    file_name: Optional[str] = None
    caption: Optional[str] = None


class PMStepResultInput(BaseModel):
    pm_template_item_id: uuid.UUID
    status: ResultStatus = ResultStatus.PASS
    measured_value: Optional[str] = None
    remarks: Optional[str] = None
    before_photos: Optional[List[PhotoInput]] = None
    after_photos: Optional[List[PhotoInput]] = None

    @field_validator("status", mode="before")
    @classmethod
    def _status(cls, v):
        if v is None:
            return ResultStatus.PASS
        return normalize_choice(v, ResultStatus) or ResultStatus.PASS


class PMBulkResultsInput(BaseModel):
    results: List[PMStepResultInput]


class PMCompleteRequest(BaseModel):
    customer_signature_url: Optional[str] = None
    customer_signer_name: Optional[str] = None
    customer_signed_at: Optional[datetime] = None
    remarks: Optional[str] = None

    @field_validator("customer_signature_url", "customer_signer_name", "remarks", mode="before")
    @classmethod
    def _blank(cls, v):
        return empty_str_to_none(v)


class PMSkipRequest(BaseModel):
    reason: Optional[str] = None


class PMResultPhotoCreate(BaseModel):
    photo_type: PMPhotoType = PMPhotoType.EVIDENCE
    file_url: str
    file_name: Optional[str] = None
    caption: Optional[str] = None


class PMResultPhotoResponse(BaseModel):
    id: uuid.UUID
    pm_result_id: uuid.UUID
    photo_type: PMPhotoType
    file_url: str
    file_name: Optional[str] = None
    caption: Optional[str] = None
    created_at: datetime

    class Config:
        from_attributes = True


class PMResultResponse(BaseModel):
    id: uuid.UUID
    pm_schedule_id: uuid.UUID
    pm_template_item_id: uuid.UUID
    status: ResultStatus
    measured_value: Optional[str] = None
    remarks: Optional[str] = None
    checked_by: Optional[uuid.UUID] = None
    checked_at: datetime
    photos: List[PMResultPhotoResponse] = []

    class Config:
        from_attributes = True


class PMScheduleResponse(BaseModel):
    id: uuid.UUID
    schedule_code: str
    pm_template_id: uuid.UUID
    machine_id: uuid.UUID
    due_date: datetime
    status: ScheduleStatus
    effective_status: Optional[ScheduleStatus] = None
    priority: Priority
    estimated_hours: Optional[float] = None
    started_at: Optional[datetime] = None
    completed_at: Optional[datetime] = None
    completed_by: Optional[uuid.UUID] = None
    last_done_date: Optional[datetime] = None
    remarks: Optional[str] = None
    customer_signature_url: Optional[str] = None
    customer_signer_name: Optional[str] = None
    customer_signed_at: Optional[datetime] = None
    previous_schedule_id: Optional[uuid.UUID] = None
    assigned_user_ids: List[uuid.UUID] = []
    template: Optional[PMTemplateBrief] = None
    machine: Optional[MachineBrief] = None
    created_at: datetime
    updated_at: datetime

    class Config:
        from_attributes = True


class PMScheduleDetail(PMScheduleResponse):
    results: List[PMResultResponse] = []


class PMResultPhotosReplace(BaseModel):
    before_photos: List[PhotoInput] = []
    after_photos: List[PhotoInput] = []


class PMCancelRequest(BaseModel):
    reason: Optional[str] = None
