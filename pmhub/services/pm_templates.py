import uuid
from typing import List, Optional

import structlog
from sqlalchemy import func
from sqlalchemy.orm import Session, selectinload

from ..errors import ConflictOrDuplicate, NotFound, ValidationFailed
from ..models.models import PMResult, PMSchedule, PMTemplate, PMTemplateItem
from ..schemas.common import FrequencyType
from .query import contains_any, paginate


log = structlog.get_logger(__name__)

_ITEM_FIELDS = (
    "check_item",
    "category",
    "standard_value",
    "unit",
    "method",
    "tools_required",
    "is_required",
    "has_photo",
    "requires_signature",
    "remarks",
)


def get_template(db: Session, template_id: uuid.UUID) -> PMTemplate:
    template = (
        db.query(PMTemplate)
        .options(selectinload(PMTemplate.items))
        .filter(PMTemplate.id == template_id)
        .first()
    )
    if not template:
        raise NotFound("PM template not found")
    return template


def list_templates(
    db: Session,
    *,
    search: Optional[str] = None,
    machine_type: Optional[str] = None,
    frequency_type: Optional[str] = None,
    is_active: Optional[bool] = None,
    page: int = 1,
    limit: int = 10,
):
    q = db.query(PMTemplate).options(selectinload(PMTemplate.items))
    if search:
        q = q.filter(contains_any(search, PMTemplate.name, PMTemplate.description))
    if machine_type:
        q = q.filter(PMTemplate.machine_type == machine_type)
    if frequency_type:
        q = q.filter(PMTemplate.frequency_type == frequency_type)
    if is_active is not None:
        q = q.filter(PMTemplate.is_active.is_(is_active))
    return paginate(q.order_by(PMTemplate.name.asc()), page, limit)


def item_categories(db: Session) -> List[str]:
    rows = (
        db.query(PMTemplateItem.category)
        .filter(PMTemplateItem.category.isnot(None))
        .distinct()
        .order_by(PMTemplateItem.category.asc())
        .all()
    )
    return [r[0] for r in rows]


def machine_types(db: Session) -> List[str]:
    rows = (
        db.query(PMTemplate.machine_type)
        .filter(PMTemplate.machine_type.isnot(None))
        .distinct()
        .order_by(PMTemplate.machine_type.asc())
        .all()
    )
    return [r[0] for r in rows]


def template_stats(db: Session) -> dict:
    total = db.query(func.count(PMTemplate.id)).scalar() or 0
    active = db.query(func.count(PMTemplate.id)).filter(PMTemplate.is_active.is_(True)).scalar() or 0
    by_frequency = {f.value: 0 for f in FrequencyType}
    for freq, count in db.query(PMTemplate.frequency_type, func.count(PMTemplate.id)).group_by(PMTemplate.frequency_type).all():
        by_frequency[freq] = count
    return {"total": total, "active": active, "inactive": total - active, "by_frequency": by_frequency}


def _item_values(data: dict, position: int) -> dict:
    values = {k: data.get(k) for k in _ITEM_FIELDS if k in data}
    values["step_order"] = data.get("step_order") or position
    if not (values.get("check_item") or "").strip():
        raise ValidationFailed(f"Step {position} needs a check item")
    return values


def create_template(db: Session, data: dict) -> PMTemplate:
    items = data.pop("items", None) or []
    if not (data.get("name") or "").strip():
        raise ValidationFailed("Template name is required")
    template = PMTemplate(**data)
    for pos, item in enumerate(items, start=1):
        item.pop("id", None)
        template.items.append(PMTemplateItem(**_item_values(item, pos)))
    db.add(template)
    db.flush()
    log.info("pm_template_created", template_id=str(template.id), items=len(items))
    return template


def _referenced_item_ids(db: Session, item_ids: List[uuid.UUID]) -> set:
    if not item_ids:
        return set()
    rows = db.query(PMResult.pm_template_item_id).filter(PMResult.pm_template_item_id.in_(item_ids)).distinct().all()
    return {r[0] for r in rows}


def update_template(db: Session, template_id: uuid.UUID, changes: dict) -> PMTemplate:
    """Apply field changes and, when ``items`` is given, reconcile the steps:
    matching ids are updated, new ones created, and missing ones removed
    unless a PM result already points at them."""
    template = get_template(db, template_id)
    items = changes.pop("items", None)
    for k, v in changes.items():
        setattr(template, k, v)

    if items is not None:
        existing = {i.id: i for i in template.items}
        seen = set()
        for pos, data in enumerate(items, start=1):
            item_id = data.pop("id", None)
            values = _item_values(data, pos)
            if item_id and item_id in existing:
                item = existing[item_id]
                for k, v in values.items():
                    setattr(item, k, v)
                seen.add(item_id)
            else:
                template.items.append(PMTemplateItem(**values))
        missing = [iid for iid in existing if iid not in seen]
        in_use = _referenced_item_ids(db, missing)
        for iid in missing:
            if iid in in_use:
                log.warning("pm_template_item_kept", template_id=str(template.id), item_id=str(iid), reason="referenced by results")
                continue
            template.items.remove(existing[iid])
    db.flush()
    db.refresh(template)
    return template


def delete_template(db: Session, template_id: uuid.UUID) -> None:
    template = get_template(db, template_id)
    schedules = db.query(func.count(PMSchedule.id)).filter(PMSchedule.pm_template_id == template.id).scalar() or 0
    if schedules:
        raise ConflictOrDuplicate(f"Cannot delete PM template with {schedules} linked schedule(s)")
    db.delete(template)
    db.flush()
    log.info("pm_template_deleted", template_id=str(template_id))
