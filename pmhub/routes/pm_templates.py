import uuid
from typing import Optional

from fastapi import APIRouter, Depends, Query
from sqlalchemy.orm import Session

from ..auth.security import get_current_user, require_admin
from ..db import get_db, unit_of_work
from ..responses import clamp_paging, dump, ok, paged
from ..schemas.common import FrequencyType, plain
from ..schemas.pm import PMTemplateCreate, PMTemplateResponse, PMTemplateUpdate
from ..services import pm_templates as template_service


router = APIRouter(prefix="/api/pm-templates", tags=["pm-templates"])


@router.get("")
def list_templates(
    search: Optional[str] = None,
    machine_type: Optional[str] = None,
    frequency_type: Optional[FrequencyType] = None,
    is_active: Optional[bool] = None,
    page: int = Query(1),
    limit: int = Query(10),
    db: Session = Depends(get_db),
    _=Depends(get_current_user),
):
    page, limit = clamp_paging(page, limit)
    rows, total = template_service.list_templates(
        db,
        search=search,
        machine_type=machine_type,
        frequency_type=frequency_type.value if frequency_type else None,
        is_active=is_active,
        page=page,
        limit=limit,
    )
    return paged(dump(PMTemplateResponse, rows), page, limit, total)


@router.get("/categories")
def item_categories(db: Session = Depends(get_db), _=Depends(get_current_user)):
    return ok(template_service.item_categories(db))


@router.get("/stats/dashboard")
def template_stats(db: Session = Depends(get_db), _=Depends(get_current_user)):
    return ok(template_service.template_stats(db))


@router.get("/machine-types/list")
def machine_types(db: Session = Depends(get_db), _=Depends(get_current_user)):
    return ok(template_service.machine_types(db))


@router.get("/{template_id}")
def get_template(template_id: uuid.UUID, db: Session = Depends(get_db), _=Depends(get_current_user)):
    return ok(dump(PMTemplateResponse, template_service.get_template(db, template_id)))


@router.post("", status_code=201)
def create_template(req: PMTemplateCreate, db: Session = Depends(get_db), _=Depends(require_admin)):
    with unit_of_work(db):
        template = template_service.create_template(db, plain(req.model_dump()))
    template = template_service.get_template(db, template.id)
    return ok(dump(PMTemplateResponse, template), message="PM template created")


@router.put("/{template_id}")
def update_template(template_id: uuid.UUID, req: PMTemplateUpdate, db: Session = Depends(get_db), _=Depends(require_admin)):
    with unit_of_work(db):
        template_service.update_template(db, template_id, plain(req.model_dump(exclude_unset=True)))
    template = template_service.get_template(db, template_id)
    return ok(dump(PMTemplateResponse, template), message="PM template updated")


@router.delete("/{template_id}")
def delete_template(template_id: uuid.UUID, db: Session = Depends(get_db), _=Depends(require_admin)):
    with unit_of_work(db):
        template_service.delete_template(db, template_id)
    return ok(message="PM template deleted")
