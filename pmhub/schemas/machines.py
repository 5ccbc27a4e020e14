import uuid
from datetime import date, datetime
from typing import List, Optional

from pydantic import BaseModel, field_validator

from .common import MachineStatus, DocumentType, normalize_choice, empty_str_to_none


def _machine_status(v):
    if v is None:
        return None
    mapped = normalize_choice(v, MachineStatus)
    if mapped is None:
        raise ValueError(f"Invalid machine status: {v}")
    return mapped


class MachineBase(BaseModel):
    machine_code: str
    name: str
    category: Optional[str] = None
    model: Optional[str] = None
    serial_number: Optional[str] = None
    installation_date: Optional[date] = None
    location: Optional[str] = None
    description: Optional[str] = None
    image_url: Optional[str] = None
    status: MachineStatus = MachineStatus.ACTIVE
    company_id: Optional[uuid.UUID] = None

    @field_validator("category", "model", "serial_number", "location", "description", "image_url", "installation_date", mode="before")
    @classmethod
    def _blank(cls, v):
        return empty_str_to_none(v)

    @field_validator("status", mode="before")
    @classmethod
    def _status(cls, v):
        return _machine_status(v) or MachineStatus.ACTIVE


class MachineCreate(MachineBase):
    pass


class MachineUpdate(BaseModel):
    machine_code: Optional[str] = None
    name: Optional[str] = None
    category: Optional[str] = None
    model: Optional[str] = None
    serial_number: Optional[str] = None
    installation_date: Optional[date] = None
    location: Optional[str] = None
    description: Optional[str] = None
    image_url: Optional[str] = None
    status: Optional[MachineStatus] = None
    company_id: Optional[uuid.UUID] = None

    @field_validator("status", mode="before")
    @classmethod
    def _status(cls, v):
        return _machine_status(v)


class BulkStatusRequest(BaseModel):
    machine_ids: List[uuid.UUID]
    status: MachineStatus

    @field_validator("status", mode="before")
    @classmethod
    def _status(cls, v):
        return _machine_status(v)


class CompanyBrief(BaseModel):
    id: uuid.UUID
    name: str

    class Config:
        from_attributes = True


class MachineResponse(MachineBase):
    id: uuid.UUID
    company: Optional[CompanyBrief] = None
    created_at: datetime
    updated_at: datetime

    class Config:
        from_attributes = True


class MachineBrief(BaseModel):
    id: uuid.UUID
    machine_code: str
    name: str
    location: Optional[str] = None
    status: str

    class Config:
        from_attributes = True


class MachineDocumentUpdate(BaseModel):
    title: Optional[str] = None
    document_type: Optional[DocumentType] = None
    description: Optional[str] = None


class MachineDocumentResponse(BaseModel):
    id: uuid.UUID
    machine_id: uuid.UUID
    title: str
    document_type: DocumentType
    description: Optional[str] = None
    file_name: str
    file_url: str
    file_size: int
    mime_type: Optional[str] = None
    uploaded_by: Optional[uuid.UUID] = None
    created_at: datetime

    class Config:
        from_attributes = True
