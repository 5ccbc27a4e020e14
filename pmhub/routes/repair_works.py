import uuid
from datetime import datetime
from typing import List, Optional

from fastapi import APIRouter, Depends, File, Form, Query, UploadFile
from sqlalchemy.orm import Session

from ..auth.scope import AccessScope, current_scope
from ..auth.security import get_current_user, require_admin, require_staff
from ..db import get_db, unit_of_work
from ..errors import ValidationFailed
from ..models.models import User
from ..responses import clamp_paging, dump, ok, paged
from ..schemas.common import Priority, RepairPhotoType, RepairStatus, normalize_choice, plain
from ..schemas.repairs import (
    AssignRequest,
    BulkAssignRequest,
    RepairCancelRequest,
    RepairCompleteRequest,
    RepairFromPMRequest,
    RepairItemUpdate,
    RepairWorkCreate,
    RepairWorkDetail,
    RepairWorkPhotoResponse,
    RepairWorkResponse,
    RepairWorkUpdate,
)
from ..services import notifications
from ..services.completion import REPAIR_COMPLETION_CHECKS, failing_reasons
from ..services import repair_works as repair_service
from ..services.uploads import discard_files, store_upload


router = APIRouter(prefix="/api/repair-works", tags=["repair-works"])


def _detail(db: Session, repair_id: uuid.UUID) -> dict:
    db.expire_all()
    return dump(RepairWorkDetail, repair_service.get_repair(db, repair_id))


def _notify_assignees(db: Session, repair_id: uuid.UUID, user_ids) -> None:
    if not user_ids:
        return
    rw = repair_service.get_repair(db, repair_id)
    notifications.notify_users(
        db,
        user_ids,
        "New Repair Assigned",
        f"{rw.work_order_number}: {rw.title} ({rw.priority})",
        f"/repair-works/{rw.id}",
    )


def _notify_reported(db: Session, repair_id: uuid.UUID) -> None:
    rw = repair_service.get_repair(db, repair_id)
    notifications.notify_role(
        db,
        "ADMIN",
        "New Repair Reported",
        f"{rw.work_order_number}: {rw.title} ({rw.priority})",
        f"/repair-works/{rw.id}",
    )


@router.get("")
def list_repairs(
    status: Optional[RepairStatus] = None,
    exclude_status: Optional[RepairStatus] = None,
    priority: Optional[Priority] = None,
    machine_id: Optional[uuid.UUID] = None,
    assigned_to: Optional[uuid.UUID] = None,
    reported_by: Optional[uuid.UUID] = None,
    search: Optional[str] = None,
    page: int = Query(1),
    limit: int = Query(10),
    db: Session = Depends(get_db),
    scope: AccessScope = Depends(current_scope),
):
    page, limit = clamp_paging(page, limit)
    rows, total = repair_service.list_repairs(
        db,
        scope,
        status=status.value if status else None,
        exclude_status=exclude_status.value if exclude_status else None,
        priority=priority.value if priority else None,
        machine_id=machine_id,
        assigned_to=assigned_to,
        reported_by=reported_by,
        search=search,
        page=page,
        limit=limit,
    )
    return paged(dump(RepairWorkResponse, rows), page, limit, total, with_links=True)


@router.get("/dashboard/stats")
def repair_stats(
    machine_id: Optional[uuid.UUID] = None,
    start_date: Optional[datetime] = None,
    end_date: Optional[datetime] = None,
    db: Session = Depends(get_db),
    _=Depends(get_current_user),
):
    return ok(repair_service.repair_stats(db, machine_id=machine_id, start=start_date, end=end_date))


@router.post("", status_code=201)
def create_repair(req: RepairWorkCreate, db: Session = Depends(get_db), user: User = Depends(get_current_user)):
    data = plain(req.model_dump())
    with unit_of_work(db):
        rw = repair_service.create_repair(db, reported_by=user.id, **data)
    repair_id = rw.id
    if data["assigned_to"]:
        _notify_assignees(db, repair_id, [data["assigned_to"]])
    else:
        _notify_reported(db, repair_id)
    return ok(_detail(db, repair_id), message="Repair work created")


@router.post("/from-pm/{result_id}", status_code=201)
def create_from_pm(
    result_id: uuid.UUID, req: RepairFromPMRequest, db: Session = Depends(get_db), user: User = Depends(require_staff)
):
    data = plain(req.model_dump())
    with unit_of_work(db):
        rw = repair_service.create_from_pm_result(db, result_id, reported_by=user.id, **data)
    repair_id = rw.id
    _notify_assignees(db, repair_id, [data["assigned_to"]])
    return ok(_detail(db, repair_id), message="Repair work created from PM result")


@router.get("/{repair_id}")
def get_repair(repair_id: uuid.UUID, db: Session = Depends(get_db), scope: AccessScope = Depends(current_scope)):
    rw = repair_service.get_repair(db, repair_id, scope)
    data = dump(RepairWorkDetail, rw)
    data["completion_blockers"] = failing_reasons(REPAIR_COMPLETION_CHECKS, rw)
    return ok(data)


@router.put("/{repair_id}")
def update_repair(
    repair_id: uuid.UUID,
    req: RepairWorkUpdate,
    db: Session = Depends(get_db),
    _=Depends(require_staff),
    scope: AccessScope = Depends(current_scope),
):
    repair_service.get_repair(db, repair_id, scope)
    with unit_of_work(db):
        repair_service.update_repair(db, repair_id, plain(req.model_dump(exclude_unset=True)))
    return ok(_detail(db, repair_id), message="Repair work updated")


@router.delete("/{repair_id}")
def delete_repair(repair_id: uuid.UUID, db: Session = Depends(get_db), _=Depends(require_admin)):
    with unit_of_work(db):
        urls = repair_service.delete_repair(db, repair_id)
    discard_files(urls)
    return ok(message="Repair work deleted")


@router.post("/{repair_id}/assign")
def assign(
    repair_id: uuid.UUID,
    req: AssignRequest,
    db: Session = Depends(get_db),
    user: User = Depends(require_staff),
    scope: AccessScope = Depends(current_scope),
):
    repair_service.get_repair(db, repair_id, scope)
    with unit_of_work(db):
        _, is_new = repair_service.assign(db, repair_id, req.user_id, assigned_by=user.id, notes=req.notes)
    if is_new:
        _notify_assignees(db, repair_id, [req.user_id])
    return ok(_detail(db, repair_id), message="Technician assigned")


@router.post("/{repair_id}/assign/bulk")
def bulk_assign(
    repair_id: uuid.UUID,
    req: BulkAssignRequest,
    db: Session = Depends(get_db),
    user: User = Depends(require_staff),
    scope: AccessScope = Depends(current_scope),
):
    repair_service.get_repair(db, repair_id, scope)
    with unit_of_work(db):
        _, added = repair_service.bulk_assign(db, repair_id, req.user_ids, assigned_by=user.id, notes=req.notes)
    _notify_assignees(db, repair_id, added)
    return ok(_detail(db, repair_id), message=f"{len(added)} technicians assigned")


@router.delete("/{repair_id}/unassign")
def unassign(
    repair_id: uuid.UUID,
    db: Session = Depends(get_db),
    _=Depends(require_staff),
    scope: AccessScope = Depends(current_scope),
):
    repair_service.get_repair(db, repair_id, scope)
    with unit_of_work(db):
        repair_service.unassign_all(db, repair_id)
    return ok(_detail(db, repair_id), message="Assignments removed")


@router.post("/{repair_id}/start")
def start(
    repair_id: uuid.UUID,
    db: Session = Depends(get_db),
    user: User = Depends(require_staff),
    scope: AccessScope = Depends(current_scope),
):
    repair_service.get_repair(db, repair_id, scope)
    with unit_of_work(db):
        repair_service.start(db, repair_id, user.id)
    return ok(_detail(db, repair_id), message="Repair work started")


@router.post("/{repair_id}/complete")
def complete(
    repair_id: uuid.UUID,
    req: RepairCompleteRequest,
    db: Session = Depends(get_db),
    user: User = Depends(require_staff),
    scope: AccessScope = Depends(current_scope),
):
    repair_service.get_repair(db, repair_id, scope)
    data = plain(req.model_dump())
    with unit_of_work(db):
        repair_service.complete(db, repair_id, actor_id=user.id, **data)
    return ok(_detail(db, repair_id), message="Repair work completed")


@router.post("/{repair_id}/cancel")
def cancel(
    repair_id: uuid.UUID,
    req: RepairCancelRequest,
    db: Session = Depends(get_db),
    _=Depends(require_staff),
    scope: AccessScope = Depends(current_scope),
):
    repair_service.get_repair(db, repair_id, scope)
    with unit_of_work(db):
        repair_service.cancel(db, repair_id, req.reason)
    return ok(_detail(db, repair_id), message="Repair work cancelled")


# ---------- Photos & items ----------
@router.post("/{repair_id}/photos", status_code=201)
def upload_photos(
    repair_id: uuid.UUID,
    files: List[UploadFile] = File(...),
    photo_type: str = Form(RepairPhotoType.PROGRESS.value),
    caption: Optional[str] = Form(None),
    item_id: Optional[uuid.UUID] = Form(None),
    db: Session = Depends(get_db),
    user: User = Depends(require_staff),
    scope: AccessScope = Depends(current_scope),
):
    kind = normalize_choice(photo_type, RepairPhotoType)
    if kind is None:
        raise ValidationFailed(f"Invalid photo type: {photo_type}")
    repair_service.get_repair(db, repair_id, scope)
    stored = []
    try:
        for f in files:
            stored.append(store_upload(f, folder="repair-photos"))
        with unit_of_work(db):
            photos = repair_service.add_photos(
                db, repair_id, stored, photo_type=kind, caption=caption, item_id=item_id, actor_id=user.id
            )
    except Exception:
        discard_files([s.url for s in stored])
        raise
    return ok(dump(RepairWorkPhotoResponse, photos), message=f"{len(photos)} photos uploaded")


@router.delete("/{repair_id}/photos/{photo_id}")
def delete_photo(
    repair_id: uuid.UUID,
    photo_id: uuid.UUID,
    db: Session = Depends(get_db),
    _=Depends(require_staff),
    scope: AccessScope = Depends(current_scope),
):
    repair_service.get_repair(db, repair_id, scope)
    with unit_of_work(db):
        url = repair_service.delete_photo(db, repair_id, photo_id)
    discard_files([url])
    return ok(message="Photo deleted")


@router.patch("/{repair_id}/items/{item_id}")
def update_item(
    repair_id: uuid.UUID,
    item_id: uuid.UUID,
    req: RepairItemUpdate,
    db: Session = Depends(get_db),
    user: User = Depends(require_staff),
    scope: AccessScope = Depends(current_scope),
):
    repair_service.get_repair(db, repair_id, scope)
    with unit_of_work(db):
        repair_service.update_item(db, repair_id, item_id, plain(req.model_dump(exclude_unset=True)), user.id)
    return ok(_detail(db, repair_id), message="Item updated")


@router.get("/{repair_id}/items/{item_id}/photos")
def item_photos(
    repair_id: uuid.UUID,
    item_id: uuid.UUID,
    photo_type: Optional[RepairPhotoType] = None,
    db: Session = Depends(get_db),
    scope: AccessScope = Depends(current_scope),
):
    repair_service.get_repair(db, repair_id, scope)
    photos = repair_service.item_photos(db, repair_id, item_id, photo_type.value if photo_type else None)
    return ok(dump(RepairWorkPhotoResponse, photos))
