import uuid
from datetime import datetime
from decimal import Decimal
from typing import List, Optional, Sequence, Tuple

import structlog
from sqlalchemy import and_, exists, func, or_
from sqlalchemy.orm import Session, joinedload, selectinload

from ..auth.scope import AccessScope, AllRows
from ..db import utcnow
from ..errors import NotFound, PreconditionNotMet, ValidationFailed
from ..models.models import (
    Machine,
    MachinePart,
    PMResult,
    RepairWork,
    RepairWorkAssignment,
    RepairWorkItem,
    RepairWorkPart,
    RepairWorkPhoto,
    User,
)
from ..schemas.common import (
    MachineStatus,
    OPEN_REPAIR_STATUSES,
    ReferenceType,
    RepairItemStatus,
    RepairStatus,
    TERMINAL_REPAIR_STATUSES,
)
from . import inventory
from .completion import REPAIR_COMPLETION_CHECKS, first_failure
from .query import contains_any, paginate


log = structlog.get_logger(__name__)

OPEN = RepairStatus.OPEN.value
IN_PROGRESS = RepairStatus.IN_PROGRESS.value


def next_work_order_number(db: Session, now: Optional[datetime] = None) -> str:
    """``RW-YYYYMM-NNN``, numbered per calendar month."""
    prefix = f"RW-{(now or utcnow()).strftime('%Y%m')}"
    last = (
        db.query(RepairWork.work_order_number)
        .filter(RepairWork.work_order_number.like(f"{prefix}-%"))
        .order_by(RepairWork.work_order_number.desc())
        .first()
    )
    seq = 1
    if last:
        try:
            seq = int(last[0].rsplit("-", 1)[-1]) + 1
        except ValueError:
            seq = db.query(func.count(RepairWork.id)).filter(RepairWork.work_order_number.like(f"{prefix}-%")).scalar() + 1
    return f"{prefix}-{seq:03d}"


def _detail_options():
    return (
        joinedload(RepairWork.machine),
        selectinload(RepairWork.items),
        selectinload(RepairWork.photos),
        selectinload(RepairWork.parts_used),
        selectinload(RepairWork.assignments),
    )


def _involves(user_id: uuid.UUID):
    return or_(
        RepairWork.assigned_to == user_id,
        RepairWork.reported_by == user_id,
        exists().where(
            and_(RepairWorkAssignment.repair_work_id == RepairWork.id, RepairWorkAssignment.user_id == user_id)
        ),
    )


def apply_scope(q, scope: AccessScope):
    if isinstance(scope, AllRows):
        return q
    return q.filter(_involves(scope.user_id))


def get_repair(db: Session, repair_id: uuid.UUID, scope: Optional[AccessScope] = None) -> RepairWork:
    q = db.query(RepairWork).options(*_detail_options()).filter(RepairWork.id == repair_id)
    if scope is not None:
        q = apply_scope(q, scope)
    rw = q.first()
    if not rw:
        raise NotFound("Repair work not found")
    return rw


def list_repairs(
    db: Session,
    scope: AccessScope,
    *,
    status: Optional[str] = None,
    exclude_status: Optional[str] = None,
    priority: Optional[str] = None,
    machine_id: Optional[uuid.UUID] = None,
    assigned_to: Optional[uuid.UUID] = None,
    reported_by: Optional[uuid.UUID] = None,
    search: Optional[str] = None,
    page: int = 1,
    limit: int = 10,
):
    q = apply_scope(db.query(RepairWork).options(joinedload(RepairWork.machine), selectinload(RepairWork.items)), scope)
    if status:
        q = q.filter(RepairWork.status == status)
    if exclude_status:
        q = q.filter(RepairWork.status != exclude_status)
    if priority:
        q = q.filter(RepairWork.priority == priority)
    if machine_id:
        q = q.filter(RepairWork.machine_id == machine_id)
    if assigned_to:
        q = q.filter(RepairWork.assigned_to == assigned_to)
    if reported_by:
        q = q.filter(RepairWork.reported_by == reported_by)
    if search:
        q = q.filter(contains_any(search, RepairWork.work_order_number, RepairWork.title, RepairWork.description))
    return paginate(q.order_by(RepairWork.created_at.desc()), page, limit)


def repair_stats(
    db: Session,
    *,
    machine_id: Optional[uuid.UUID] = None,
    start: Optional[datetime] = None,
    end: Optional[datetime] = None,
) -> dict:
    criteria = []
    if machine_id:
        criteria.append(RepairWork.machine_id == machine_id)
    if start and end:
        criteria += [RepairWork.created_at >= start, RepairWork.created_at <= end]

    total = db.query(func.count(RepairWork.id)).filter(*criteria).scalar() or 0
    by_status = {s.value: 0 for s in RepairStatus}
    for s, c in db.query(RepairWork.status, func.count(RepairWork.id)).filter(*criteria).group_by(RepairWork.status).all():
        by_status[s] = c
    by_priority = dict(
        db.query(RepairWork.priority, func.count(RepairWork.id)).filter(*criteria).group_by(RepairWork.priority).all()
    )
    completed = [*criteria, RepairWork.status == RepairStatus.COMPLETED.value]
    avg_hours = db.query(func.avg(RepairWork.actual_hours)).filter(*completed).scalar()
    total_cost = db.query(func.coalesce(func.sum(RepairWork.actual_cost), 0)).filter(*completed).scalar()
    return {
        "total": total,
        "by_status": by_status,
        "by_priority": by_priority,
        "average_completion_hours": round(float(avg_hours or 0), 2),
        "total_cost": float(total_cost or 0),
    }


# ---------- Machine status ----------
def _set_machine_maintenance(db: Session, machine_id: uuid.UUID) -> None:
    machine = db.query(Machine).filter(Machine.id == machine_id).first()
    if machine and machine.status != MachineStatus.MAINTENANCE.value:
        machine.status = MachineStatus.MAINTENANCE.value
        log.info("machine_status_changed", machine_id=str(machine_id), status=machine.status)


def _restore_machine(db: Session, rw: RepairWork) -> None:
    """Back to ACTIVE only when no other open repair keeps the machine down."""
    machine = db.query(Machine).filter(Machine.id == rw.machine_id).first()
    if not machine or machine.status != MachineStatus.MAINTENANCE.value:
        return
    others = (
        db.query(RepairWork.id)
        .filter(
            RepairWork.machine_id == rw.machine_id,
            RepairWork.id != rw.id,
            RepairWork.status.in_(OPEN_REPAIR_STATUSES),
        )
        .first()
    )
    if others is None:
        machine.status = MachineStatus.ACTIVE.value
        log.info("machine_status_changed", machine_id=str(machine.id), status=machine.status)


# ---------- Writes ----------
def _check_user(db: Session, user_id: Optional[uuid.UUID]) -> None:
    if user_id and not db.query(User.id).filter(User.id == user_id).first():
        raise NotFound("User not found")


def _build_items(items: Sequence[dict]) -> List[RepairWorkItem]:
    built = []
    for pos, item in enumerate(items, start=1):
        if not (item.get("title") or "").strip():
            raise ValidationFailed(f"Repair item {pos} needs a title")
        built.append(
            RepairWorkItem(
                item_order=pos,
                title=item["title"].strip(),
                description=item.get("description"),
                status=item.get("status") or RepairItemStatus.PENDING.value,
                remarks=item.get("remarks"),
            )
        )
    return built


def create_repair(
    db: Session,
    *,
    machine_id: uuid.UUID,
    title: str,
    description: Optional[str],
    priority: str,
    reported_by: Optional[uuid.UUID],
    assigned_to: Optional[uuid.UUID] = None,
    estimated_hours: Optional[float] = None,
    items: Sequence[dict] = (),
    pm_result_id: Optional[uuid.UUID] = None,
) -> RepairWork:
    if not db.query(Machine.id).filter(Machine.id == machine_id).first():
        raise NotFound("Machine not found")
    _check_user(db, assigned_to)
    rw = RepairWork(
        work_order_number=next_work_order_number(db),
        machine_id=machine_id,
        title=title,
        description=description,
        priority=priority,
        status=OPEN,
        reported_by=reported_by,
        assigned_to=assigned_to,
        estimated_hours=estimated_hours,
        pm_result_id=pm_result_id,
    )
    rw.items.extend(_build_items(items))
    if assigned_to:
        rw.assignments.append(RepairWorkAssignment(user_id=assigned_to, assigned_by=reported_by))
    db.add(rw)
    _set_machine_maintenance(db, machine_id)
    db.flush()
    log.info("repair_work_created", repair_work_id=str(rw.id), work_order_number=rw.work_order_number)
    return rw


def create_from_pm_result(
    db: Session,
    pm_result_id: uuid.UUID,
    *,
    reported_by: Optional[uuid.UUID],
    title: Optional[str] = None,
    description: Optional[str] = None,
    priority: Optional[str] = None,
    assigned_to: Optional[uuid.UUID] = None,
) -> RepairWork:
    result = (
        db.query(PMResult)
        .options(joinedload(PMResult.schedule), joinedload(PMResult.template_item))
        .filter(PMResult.id == pm_result_id)
        .first()
    )
    if not result:
        raise NotFound("PM result not found")
    check_item = result.template_item.check_item if result.template_item else "PM check"
    return create_repair(
        db,
        machine_id=result.schedule.machine_id,
        title=title or f"Repair from PM: {check_item}",
        description=description or f"PM check reported {result.status} ({result.remarks or 'no remarks'})",
        priority=priority or result.schedule.priority,
        reported_by=reported_by,
        assigned_to=assigned_to,
        items=[{"title": check_item, "description": result.remarks}],
        pm_result_id=result.id,
    )


def update_repair(db: Session, repair_id: uuid.UUID, changes: dict) -> RepairWork:
    """Field update. A given ``items`` list replaces the checklist wholesale."""
    rw = get_repair(db, repair_id)
    items = changes.pop("items", None)
    if changes.get("customer_signature_url") and not changes.get("customer_signed_at"):
        changes["customer_signed_at"] = utcnow()
    for k, v in changes.items():
        setattr(rw, k, Decimal(str(v)) if k == "actual_cost" and v is not None else v)
    if items is not None:
        if rw.status in TERMINAL_REPAIR_STATUSES:
            raise PreconditionNotMet("Repair work is already closed")
        rw.items.clear()
        rw.items.extend(_build_items(items))
    db.flush()
    return rw


def assign(
    db: Session,
    repair_id: uuid.UUID,
    user_id: uuid.UUID,
    *,
    assigned_by: Optional[uuid.UUID],
    notes: Optional[str] = None,
) -> Tuple[RepairWork, bool]:
    """Attach a technician. Returns the repair and whether the assignment is new."""
    rw = get_repair(db, repair_id)
    if rw.status in TERMINAL_REPAIR_STATUSES:
        raise PreconditionNotMet("Repair work is already closed")
    _check_user(db, user_id)
    if rw.assigned_to is None:
        rw.assigned_to = user_id
    if rw.status == OPEN:
        rw.status = IN_PROGRESS
        if rw.started_at is None:
            rw.started_at = utcnow()
        _set_machine_maintenance(db, rw.machine_id)

    existing = next((a for a in rw.assignments if a.user_id == user_id), None)
    if existing is None:
        rw.assignments.append(RepairWorkAssignment(user_id=user_id, assigned_by=assigned_by, notes=notes))
    elif existing.assigned_by is None and assigned_by:
        existing.assigned_by = assigned_by
    db.flush()
    log.info("repair_work_assigned", repair_work_id=str(rw.id), user_id=str(user_id))
    return rw, existing is None


def bulk_assign(
    db: Session,
    repair_id: uuid.UUID,
    user_ids: Sequence[uuid.UUID],
    *,
    assigned_by: Optional[uuid.UUID],
    notes: Optional[str] = None,
) -> Tuple[RepairWork, List[uuid.UUID]]:
    if not user_ids:
        raise ValidationFailed("user_ids must not be empty")
    added = []
    rw = None
    for uid in dict.fromkeys(user_ids):
        rw, is_new = assign(db, repair_id, uid, assigned_by=assigned_by, notes=notes)
        if is_new:
            added.append(uid)
    return rw, added


def unassign_all(db: Session, repair_id: uuid.UUID) -> RepairWork:
    rw = get_repair(db, repair_id)
    rw.assigned_to = None
    rw.assignments.clear()
    db.flush()
    return rw


def start(db: Session, repair_id: uuid.UUID, actor_id: Optional[uuid.UUID]) -> RepairWork:
    rw = get_repair(db, repair_id)
    if rw.status in TERMINAL_REPAIR_STATUSES:
        raise PreconditionNotMet("Repair work is already closed")
    rw.status = IN_PROGRESS
    if rw.started_at is None:
        rw.started_at = utcnow()
    _set_machine_maintenance(db, rw.machine_id)
    db.flush()
    log.info("repair_work_started", repair_work_id=str(rw.id), user_id=str(actor_id) if actor_id else None)
    return rw


def complete(
    db: Session,
    repair_id: uuid.UUID,
    *,
    actor_id: Optional[uuid.UUID],
    parts_used: Sequence[dict] = (),
    actual_hours: Optional[float] = None,
    actual_cost: Optional[float] = None,
    root_cause: Optional[str] = None,
    resolution: Optional[str] = None,
    customer_signature_url: Optional[str] = None,
    customer_signer_name: Optional[str] = None,
    customer_signed_at: Optional[datetime] = None,
) -> RepairWork:
    rw = get_repair(db, repair_id)
    first_failure(REPAIR_COMPLETION_CHECKS, rw)

    now = utcnow()
    parts_cost = Decimal("0")
    for used in parts_used:
        part = db.query(MachinePart).filter(MachinePart.id == used["part_id"]).first()
        if not part:
            raise NotFound("Machine part not found", details={"part_id": str(used["part_id"])})
        txn = inventory.apply_transaction(
            db,
            part_id=part.id,
            type=inventory.OUT,
            quantity=used["quantity_used"],
            reference_type=ReferenceType.WORK_ORDER.value,
            reference_id=str(rw.id),
            notes=f"Used in repair {rw.work_order_number}: {rw.title}",
            actor_id=actor_id,
        )
        rw.parts_used.append(
            RepairWorkPart(
                part_id=part.id,
                quantity_used=used["quantity_used"],
                unit_cost=part.cost_per_unit,
                transaction_id=txn.id,
            )
        )
        parts_cost += (part.cost_per_unit or Decimal("0")) * used["quantity_used"]

    rw.status = RepairStatus.COMPLETED.value
    rw.completed_at = now
    if rw.started_at is None:
        rw.started_at = now
    if actual_hours is not None:
        rw.actual_hours = actual_hours
    if actual_cost is not None:
        rw.actual_cost = Decimal(str(actual_cost))
    elif parts_used:
        rw.actual_cost = parts_cost
    if root_cause is not None:
        rw.root_cause = root_cause
    if resolution is not None:
        rw.resolution = resolution
    if customer_signature_url:
        rw.customer_signature_url = customer_signature_url
        rw.customer_signer_name = customer_signer_name
        rw.customer_signed_at = customer_signed_at or now
    _restore_machine(db, rw)
    db.flush()
    log.info("repair_work_completed", repair_work_id=str(rw.id), parts=len(parts_used))
    return rw


def cancel(db: Session, repair_id: uuid.UUID, reason: Optional[str] = None) -> RepairWork:
    rw = get_repair(db, repair_id)
    if rw.status in TERMINAL_REPAIR_STATUSES:
        raise PreconditionNotMet("Repair work is already closed")
    rw.status = RepairStatus.CANCELLED.value
    if reason:
        rw.resolution = f"Cancelled: {reason}"
    _restore_machine(db, rw)
    db.flush()
    log.info("repair_work_cancelled", repair_work_id=str(rw.id))
    return rw


def repair_file_urls(rw: RepairWork) -> List[Optional[str]]:
    return [rw.customer_signature_url] + [p.file_url for p in rw.photos]


def delete_repair(db: Session, repair_id: uuid.UUID) -> List[Optional[str]]:
    rw = get_repair(db, repair_id)
    urls = repair_file_urls(rw)
    was_open = rw.status in OPEN_REPAIR_STATUSES
    if was_open:
        _restore_machine(db, rw)
    db.delete(rw)
    db.flush()
    log.info("repair_work_deleted", repair_work_id=str(repair_id))
    return urls


# ---------- Photos & items ----------
def _get_item(rw: RepairWork, item_id: uuid.UUID) -> RepairWorkItem:
    item = next((i for i in rw.items if i.id == item_id), None)
    if not item:
        raise NotFound("Repair work item not found")
    return item


def add_photos(
    db: Session,
    repair_id: uuid.UUID,
    files: Sequence,
    *,
    photo_type: str,
    caption: Optional[str],
    item_id: Optional[uuid.UUID],
    actor_id: Optional[uuid.UUID],
) -> List[RepairWorkPhoto]:
    """``files`` are ``StoredFile`` values already written to storage."""
    rw = get_repair(db, repair_id)
    if item_id:
        _get_item(rw, item_id)
    photos = [
        RepairWorkPhoto(
            repair_work_item_id=item_id,
            photo_type=photo_type,
            file_url=f.url,
            file_name=f.file_name,
            caption=caption,
            uploaded_by=actor_id,
        )
        for f in files
    ]
    rw.photos.extend(photos)
    db.flush()
    return photos


def delete_photo(db: Session, repair_id: uuid.UUID, photo_id: uuid.UUID) -> str:
    photo = (
        db.query(RepairWorkPhoto)
        .filter(RepairWorkPhoto.id == photo_id, RepairWorkPhoto.repair_work_id == repair_id)
        .first()
    )
    if not photo:
        raise NotFound("Photo not found")
    url = photo.file_url
    db.delete(photo)
    db.flush()
    return url


def item_photos(db: Session, repair_id: uuid.UUID, item_id: uuid.UUID, photo_type: Optional[str] = None) -> List[RepairWorkPhoto]:
    _get_item(get_repair(db, repair_id), item_id)
    q = db.query(RepairWorkPhoto).filter(
        RepairWorkPhoto.repair_work_id == repair_id, RepairWorkPhoto.repair_work_item_id == item_id
    )
    if photo_type:
        q = q.filter(RepairWorkPhoto.photo_type == photo_type)
    return q.order_by(RepairWorkPhoto.created_at.asc()).all()


def update_item(
    db: Session, repair_id: uuid.UUID, item_id: uuid.UUID, changes: dict, actor_id: Optional[uuid.UUID]
) -> RepairWork:
    rw = get_repair(db, repair_id)
    item = _get_item(rw, item_id)
    status = changes.pop("status", None)
    for k, v in changes.items():
        setattr(item, k, v)
    if status:
        if status == RepairItemStatus.COMPLETED.value:
            if not (item.remarks or "").strip():
                raise PreconditionNotMet("Item remarks are required before completing it")
            if item.status != status:
                item.completed_at = utcnow()
                item.completed_by = actor_id
        else:
            item.completed_at = None
            item.completed_by = None
        item.status = status
    db.flush()
    return rw
