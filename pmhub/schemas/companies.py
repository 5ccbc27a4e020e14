import uuid
from datetime import datetime
from typing import Optional

from pydantic import BaseModel, field_validator

from .common import empty_str_to_none


class CompanyBase(BaseModel):
    name: str
    email: Optional[str] = None
    phone: Optional[str] = None
    address: Optional[str] = None
    detail: Optional[str] = None
    is_active: bool = True

    @field_validator("email", "phone", "address", "detail", mode="before")
    @classmethod
    def _blank(cls, v):
        return empty_str_to_none(v)


class CompanyCreate(CompanyBase):
    @field_validator("name")
    @classmethod
    def _name_required(cls, v: str) -> str:
        v = (v or "").strip()
        if not v:
            raise ValueError("name is required")
        return v


class CompanyUpdate(BaseModel):
    name: Optional[str] = None
    email: Optional[str] = None
    phone: Optional[str] = None
    address: Optional[str] = None
    detail: Optional[str] = None
    is_active: Optional[bool] = None


class CompanyResponse(CompanyBase):
    id: uuid.UUID
    external_id: Optional[str] = None
    created_at: datetime
    updated_at: datetime

    class Config:
        from_attributes = True
