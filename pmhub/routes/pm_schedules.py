import uuid
from datetime import datetime
from typing import Optional

from fastapi import APIRouter, Depends, Query
from sqlalchemy.orm import Session

from ..auth.scope import AccessScope, current_scope
from ..auth.security import get_current_user, require_admin, require_staff
from ..db import get_db, unit_of_work
from ..models.models import User
from ..responses import clamp_paging, dump, ok, paged
from ..schemas.common import Priority, plain
from ..schemas.pm import (
    PMBulkResultsInput,
    PMCancelRequest,
    PMCompleteRequest,
    PMResultPhotoCreate,
    PMResultPhotoResponse,
    PMResultPhotosReplace,
    PMResultResponse,
    PMScheduleCreate,
    PMScheduleDetail,
    PMScheduleResponse,
    PMScheduleUpdate,
    PMSkipRequest,
    PMStepResultInput,
)
from ..services import notifications
from ..services import pm_schedules as pm_service
from ..services.uploads import discard_files
from ..logging import structlog


router = APIRouter(prefix="/api/pm-schedules", tags=["pm-schedules"])
log = structlog.get_logger(__name__)


def _detail(db: Session, schedule_id: uuid.UUID) -> dict:
    db.expire_all()
    return dump(PMScheduleDetail, pm_service.get_schedule(db, schedule_id))


def _notify_assigned(db: Session, schedule_id: uuid.UUID, user_ids) -> None:
    if not user_ids:
        return
    schedule = pm_service.get_schedule(db, schedule_id)
    notifications.notify_users(
        db,
        user_ids,
        "New PM Assigned",
        f"{schedule.template.name} on {schedule.machine.name} is due {schedule.due_date:%Y-%m-%d}",
        f"/pm-schedules/{schedule.id}",
    )


@router.get("")
def list_schedules(
    machine_id: Optional[uuid.UUID] = None,
    pm_template_id: Optional[uuid.UUID] = None,
    status: Optional[str] = None,
    priority: Optional[Priority] = None,
    due_from: Optional[datetime] = None,
    due_to: Optional[datetime] = None,
    assigned_to: Optional[uuid.UUID] = None,
    search: Optional[str] = None,
    sort_by: Optional[str] = None,
    sort_order: str = "desc",
    page: int = Query(1),
    limit: int = Query(10),
    db: Session = Depends(get_db),
    scope: AccessScope = Depends(current_scope),
):
    page, limit = clamp_paging(page, limit)
    rows, total = pm_service.list_schedules(
        db,
        scope,
        machine_id=machine_id,
        pm_template_id=pm_template_id,
        status=status,
        priority=priority.value if priority else None,
        due_from=due_from,
        due_to=due_to,
        assigned_to=assigned_to,
        search=search,
        sort_by=sort_by,
        sort_order=sort_order,
        page=page,
        limit=limit,
    )
    return paged(dump(PMScheduleResponse, rows), page, limit, total)


@router.get("/stats/dashboard")
def dashboard_stats(db: Session = Depends(get_db), _=Depends(get_current_user)):
    return ok(pm_service.dashboard_stats(db))


@router.get("/{schedule_id}")
def get_schedule(schedule_id: uuid.UUID, db: Session = Depends(get_db), scope: AccessScope = Depends(current_scope)):
    return ok(dump(PMScheduleDetail, pm_service.get_schedule(db, schedule_id, scope)))


@router.get("/{schedule_id}/history")
def schedule_history(schedule_id: uuid.UUID, db: Session = Depends(get_db), scope: AccessScope = Depends(current_scope)):
    pm_service.get_schedule(db, schedule_id, scope)
    return ok(dump(PMScheduleDetail, pm_service.execution_history(db, schedule_id)))


@router.post("", status_code=201)
def create_schedule(req: PMScheduleCreate, db: Session = Depends(get_db), user: User = Depends(require_staff)):
    data = plain(req.model_dump())
    with unit_of_work(db):
        schedule = pm_service.create_schedule(db, actor_id=user.id, **data)
    schedule_id = schedule.id
    _notify_assigned(db, schedule_id, data["assigned_to"])
    return ok(_detail(db, schedule_id), message="PM schedule created")


@router.put("/{schedule_id}")
def update_schedule(
    schedule_id: uuid.UUID, req: PMScheduleUpdate, db: Session = Depends(get_db), user: User = Depends(require_staff)
):
    with unit_of_work(db):
        _, added = pm_service.update_schedule(db, schedule_id, plain(req.model_dump(exclude_unset=True)), user.id)
    _notify_assigned(db, schedule_id, added)
    return ok(_detail(db, schedule_id), message="PM schedule updated")


@router.delete("/{schedule_id}")
def delete_schedule(schedule_id: uuid.UUID, db: Session = Depends(get_db), _=Depends(require_admin)):
    with unit_of_work(db):
        urls = pm_service.delete_schedule(db, schedule_id)
    discard_files(urls)
    return ok(message="PM schedule deleted")


@router.post("/{schedule_id}/start")
def start_schedule(
    schedule_id: uuid.UUID,
    db: Session = Depends(get_db),
    user: User = Depends(require_staff),
    scope: AccessScope = Depends(current_scope),
):
    pm_service.get_schedule(db, schedule_id, scope)
    with unit_of_work(db):
        pm_service.start_schedule(db, schedule_id, user.id)
    return ok(_detail(db, schedule_id), message="PM schedule started")


@router.post("/{schedule_id}/step")
def save_step(
    schedule_id: uuid.UUID,
    req: PMStepResultInput,
    db: Session = Depends(get_db),
    user: User = Depends(require_staff),
    scope: AccessScope = Depends(current_scope),
):
    schedule = pm_service.get_schedule(db, schedule_id, scope)
    with unit_of_work(db):
        result, dropped = pm_service.save_step(db, schedule, plain(req.model_dump()), user.id)
    discard_files(dropped)
    db.refresh(result)
    return ok(dump(PMResultResponse, result), message="Step saved")


@router.post("/{schedule_id}/results")
def save_results(
    schedule_id: uuid.UUID,
    req: PMBulkResultsInput,
    db: Session = Depends(get_db),
    user: User = Depends(require_staff),
    scope: AccessScope = Depends(current_scope),
):
    pm_service.get_schedule(db, schedule_id, scope)
    steps = [plain(s.model_dump()) for s in req.results]
    with unit_of_work(db):
        _, dropped = pm_service.save_step_results(db, schedule_id, steps, user.id)
    discard_files(dropped)
    return ok(_detail(db, schedule_id), message=f"{len(steps)} results saved")


@router.post("/{schedule_id}/complete")
def complete_schedule(
    schedule_id: uuid.UUID,
    req: PMCompleteRequest,
    db: Session = Depends(get_db),
    user: User = Depends(require_staff),
    scope: AccessScope = Depends(current_scope),
):
    pm_service.get_schedule(db, schedule_id, scope)
    with unit_of_work(db):
        _, successor = pm_service.complete_schedule(
            db,
            schedule_id,
            actor_id=user.id,
            signature_url=req.customer_signature_url,
            signer_name=req.customer_signer_name,
            signed_at=req.customer_signed_at,
            remarks=req.remarks,
        )
    next_id = successor.id
    return ok(
        {"completed": _detail(db, schedule_id), "next_schedule": _detail(db, next_id)},
        message="PM schedule completed",
    )


@router.post("/{schedule_id}/skip")
def skip_schedule(
    schedule_id: uuid.UUID,
    req: PMSkipRequest,
    db: Session = Depends(get_db),
    user: User = Depends(require_staff),
    scope: AccessScope = Depends(current_scope),
):
    pm_service.get_schedule(db, schedule_id, scope)
    with unit_of_work(db):
        _, successor = pm_service.skip_schedule(db, schedule_id, actor_id=user.id, reason=req.reason)
    next_id = successor.id
    return ok(
        {"skipped": _detail(db, schedule_id), "next_schedule": _detail(db, next_id)},
        message="PM schedule skipped",
    )


@router.post("/{schedule_id}/cancel")
def cancel_schedule(
    schedule_id: uuid.UUID, req: PMCancelRequest, db: Session = Depends(get_db), _=Depends(require_admin)
):
    with unit_of_work(db):
        pm_service.cancel_schedule(db, schedule_id, reason=req.reason)
    return ok(_detail(db, schedule_id), message="PM schedule cancelled")


# ---------- Result photos ----------
@router.get("/results/{result_id}/photos")
def list_result_photos(
    result_id: uuid.UUID,
    photo_type: Optional[str] = None,
    db: Session = Depends(get_db),
    scope: AccessScope = Depends(current_scope),
):
    return ok(dump(PMResultPhotoResponse, pm_service.list_result_photos(db, result_id, photo_type, scope)))


@router.post("/results/{result_id}/photos", status_code=201)
def add_result_photo(
    result_id: uuid.UUID,
    req: PMResultPhotoCreate,
    db: Session = Depends(get_db),
    _=Depends(require_staff),
    scope: AccessScope = Depends(current_scope),
):
    with unit_of_work(db):
        created = pm_service.add_result_photos(db, result_id, [plain(req.model_dump())], scope)
    return ok(dump(PMResultPhotoResponse, created), message="Photo added")


@router.put("/results/{result_id}/photos")
def replace_result_photos(
    result_id: uuid.UUID,
    req: PMResultPhotosReplace,
    db: Session = Depends(get_db),
    _=Depends(require_staff),
    scope: AccessScope = Depends(current_scope),
):
    data = plain(req.model_dump())
    with unit_of_work(db):
        result, dropped = pm_service.replace_result_photos(
            db, result_id, data["before_photos"], data["after_photos"], scope
        )
    discard_files(dropped)
    db.refresh(result)
    return ok(dump(PMResultResponse, result), message="Photos updated")


@router.delete("/results/photos/{photo_id}")
def delete_result_photo(
    photo_id: uuid.UUID,
    db: Session = Depends(get_db),
    _=Depends(require_staff),
    scope: AccessScope = Depends(current_scope),
):
    with unit_of_work(db):
        url = pm_service.delete_result_photo(db, photo_id, scope)
    discard_files([url])
    log.info("pm_result_photo_deleted", photo_id=str(photo_id))
    return ok(message="Photo deleted")
