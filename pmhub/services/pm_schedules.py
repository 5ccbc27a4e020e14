"""
PM schedules: listing, the execution state machine and the recurrence chain.

A chain is the sequence of schedules for one (machine, template) pair linked
through ``previous_schedule_id``. Completing or skipping the open link closes
it and opens exactly one successor; cancelling ends the chain.
"""
import uuid
from datetime import datetime, timedelta
from typing import Iterable, List, Optional, Sequence, Tuple

import structlog
from sqlalchemy import and_, exists, func, or_
from sqlalchemy.orm import Session, joinedload, selectinload

from ..auth.scope import AccessScope, AllRows, OwnedBy
from ..db import utcnow
from ..errors import ConflictOrDuplicate, NotFound, PreconditionNotMet, ValidationFailed
from ..models.models import (
    ACTIVE_SCHEDULE_STATUSES,
    Company,
    Machine,
    PMResult,
    PMResultPhoto,
    PMSchedule,
    PMScheduleAssignment,
    PMTemplate,
    PMTemplateItem,
    User,
)
from ..schemas.common import PMPhotoType, ScheduleStatus, TERMINAL_SCHEDULE_STATUSES, normalize_choice
from .completion import PM_COMPLETION_CHECKS, PMCompletion, first_failure
from .query import contains_any, paginate
from .recurrence import next_due_date, schedule_code


log = structlog.get_logger(__name__)

SCHEDULED = ScheduleStatus.SCHEDULED.value
IN_PROGRESS = ScheduleStatus.IN_PROGRESS.value

SORT_COLUMNS = {
    "id": PMSchedule.id,
    "template_name": PMTemplate.name,
    "machine_name": Machine.name,
    "company": Company.name,
    "location": Machine.location,
    "status": PMSchedule.status,
    "priority": PMSchedule.priority,
    "completed_date": PMSchedule.completed_at,
    "due_date": PMSchedule.due_date,
    "started_at": PMSchedule.started_at,
}


def schedule_load_options():
    return (
        joinedload(PMSchedule.template),
        joinedload(PMSchedule.machine),
        selectinload(PMSchedule.assignments),
    )


def get_schedule(db: Session, schedule_id: uuid.UUID, scope: Optional[AccessScope] = None) -> PMSchedule:
    schedule = (
        db.query(PMSchedule)
        .options(*schedule_load_options(), selectinload(PMSchedule.results).selectinload(PMResult.photos))
        .filter(PMSchedule.id == schedule_id)
        .first()
    )
    if not schedule:
        raise NotFound("PM schedule not found")
    if isinstance(scope, OwnedBy) and not _owned(schedule, scope.user_id):
        raise NotFound("PM schedule not found")
    return schedule


def _owned(schedule: PMSchedule, user_id: uuid.UUID) -> bool:
    return user_id in schedule.assigned_user_ids or schedule.completed_by == user_id


def assigned_to_clause(user_id: uuid.UUID):
    return exists().where(
        and_(PMScheduleAssignment.pm_schedule_id == PMSchedule.id, PMScheduleAssignment.user_id == user_id)
    )


def apply_scope(q, scope: AccessScope):
    """Narrow a PMSchedule query to what ``scope`` may see."""
    if isinstance(scope, AllRows):
        return q
    return q.filter(or_(assigned_to_clause(scope.user_id), PMSchedule.completed_by == scope.user_id))


def overdue_clause(now: Optional[datetime] = None):
    return and_(PMSchedule.due_date < (now or utcnow()), PMSchedule.status.in_((SCHEDULED, IN_PROGRESS)))


def list_schedules(
    db: Session,
    scope: AccessScope,
    *,
    machine_id: Optional[uuid.UUID] = None,
    pm_template_id: Optional[uuid.UUID] = None,
    status: Optional[str] = None,
    priority: Optional[str] = None,
    due_from: Optional[datetime] = None,
    due_to: Optional[datetime] = None,
    assigned_to: Optional[uuid.UUID] = None,
    search: Optional[str] = None,
    sort_by: Optional[str] = None,
    sort_order: str = "desc",
    page: int = 1,
    limit: int = 10,
):
    q = (
        db.query(PMSchedule)
        .join(Machine, PMSchedule.machine_id == Machine.id)
        .join(PMTemplate, PMSchedule.pm_template_id == PMTemplate.id)
        .outerjoin(Company, Machine.company_id == Company.id)
        .options(*schedule_load_options())
    )
    q = apply_scope(q, scope)
    if machine_id:
        q = q.filter(PMSchedule.machine_id == machine_id)
    if pm_template_id:
        q = q.filter(PMSchedule.pm_template_id == pm_template_id)
    if status:
        wanted = normalize_choice(status, ScheduleStatus)
        if wanted is None:
            raise ValidationFailed(f"Unknown schedule status: {status}")
        if wanted == ScheduleStatus.OVERDUE.value:
            q = q.filter(or_(overdue_clause(), PMSchedule.status == wanted))
        else:
            q = q.filter(PMSchedule.status == wanted)
    if priority:
        q = q.filter(PMSchedule.priority == priority)
    if due_from:
        q = q.filter(PMSchedule.due_date >= due_from)
    if due_to:
        q = q.filter(PMSchedule.due_date <= due_to)
    if assigned_to:
        q = q.filter(assigned_to_clause(assigned_to))
    if search:
        q = q.filter(contains_any(search, Machine.name, PMTemplate.name))

    column = SORT_COLUMNS.get(sort_by or "", PMSchedule.completed_at)
    ordering = column.asc() if (sort_order or "").lower() == "asc" else column.desc()
    return paginate(q.order_by(ordering, PMSchedule.due_date.asc()), page, limit)


def dashboard_stats(db: Session, now: Optional[datetime] = None) -> dict:
    now = now or utcnow()
    open_statuses = (SCHEDULED, IN_PROGRESS)
    month_start = now.replace(day=1, hour=0, minute=0, second=0, microsecond=0)

    def count(*criteria) -> int:
        return db.query(func.count(PMSchedule.id)).filter(*criteria).scalar() or 0

    due_this_week = count(
        PMSchedule.due_date >= now, PMSchedule.due_date <= now + timedelta(days=7), PMSchedule.status.in_(open_statuses)
    )
    return {
        "total": count(),
        "overdue": count(overdue_clause(now)),
        "due_this_week": due_this_week,
        "due_this_month": count(
            PMSchedule.due_date >= now, PMSchedule.due_date <= now + timedelta(days=30), PMSchedule.status.in_(open_statuses)
        ),
        "completed_this_month": count(
            PMSchedule.status == ScheduleStatus.COMPLETED.value, PMSchedule.last_done_date >= month_start
        ),
        "in_progress": count(PMSchedule.status == IN_PROGRESS),
        "upcoming": due_this_week,
    }


def execution_history(db: Session, schedule_id: uuid.UUID) -> List[PMSchedule]:
    """Completed runs of the same machine/template pair, newest first."""
    current = get_schedule(db, schedule_id)
    return (
        db.query(PMSchedule)
        .options(*schedule_load_options(), selectinload(PMSchedule.results).selectinload(PMResult.photos))
        .filter(
            PMSchedule.machine_id == current.machine_id,
            PMSchedule.pm_template_id == current.pm_template_id,
            PMSchedule.status == ScheduleStatus.COMPLETED.value,
            PMSchedule.completed_at.isnot(None),
        )
        .order_by(PMSchedule.completed_at.desc())
        .all()
    )


# ---------- Chain helpers ----------
def _ensure_chain_open_slot(db: Session, machine_id: uuid.UUID, template_id: uuid.UUID) -> None:
    clash = (
        db.query(PMSchedule.id)
        .filter(
            PMSchedule.machine_id == machine_id,
            PMSchedule.pm_template_id == template_id,
            PMSchedule.status.in_(ACTIVE_SCHEDULE_STATUSES),
        )
        .first()
    )
    if clash:
        raise ConflictOrDuplicate("An open PM schedule already exists for this machine and template")


def _unique_code(db: Session, machine: Machine, due: datetime) -> str:
    base = schedule_code(machine.machine_code, machine.name, due)
    code, n = base, 1
    while db.query(PMSchedule.id).filter(PMSchedule.schedule_code == code).first():
        n += 1
        code = f"{base}-{n}"
    return code


def _check_users(db: Session, user_ids: Sequence[uuid.UUID]) -> List[uuid.UUID]:
    unique = list(dict.fromkeys(user_ids or []))
    if not unique:
        return []
    found = {u for (u,) in db.query(User.id).filter(User.id.in_(unique)).all()}
    missing = [str(u) for u in unique if u not in found]
    if missing:
        raise NotFound("Assigned user not found", details={"user_ids": missing})
    return unique


def _assign(schedule: PMSchedule, user_ids: Iterable[uuid.UUID], assigned_by: Optional[uuid.UUID]) -> None:
    for uid in user_ids:
        schedule.assignments.append(PMScheduleAssignment(user_id=uid, assigned_by=assigned_by))


def _spawn_successor(db: Session, previous: PMSchedule, due: datetime, actor_id: Optional[uuid.UUID]) -> PMSchedule:
    successor = PMSchedule(
        schedule_code=_unique_code(db, previous.machine, due),
        pm_template_id=previous.pm_template_id,
        machine_id=previous.machine_id,
        due_date=due,
        status=SCHEDULED,
        priority=previous.priority,
        estimated_hours=previous.estimated_hours,
        remarks=f"Created from {previous.schedule_code}",
        previous_schedule_id=previous.id,
        created_by=actor_id,
    )
    _assign(successor, previous.assigned_user_ids, actor_id)
    db.add(successor)
    db.flush()
    return successor


# ---------- Writes ----------
def create_schedule(
    db: Session,
    *,
    pm_template_id: uuid.UUID,
    machine_id: uuid.UUID,
    due_date: datetime,
    priority: str,
    estimated_hours: Optional[float] = None,
    remarks: Optional[str] = None,
    assigned_to: Sequence[uuid.UUID] = (),
    actor_id: Optional[uuid.UUID] = None,
) -> PMSchedule:
    if not due_date:
        raise ValidationFailed("Due date is required")
    if not db.query(PMTemplate.id).filter(PMTemplate.id == pm_template_id).first():
        raise NotFound("PM template not found")
    machine = db.query(Machine).filter(Machine.id == machine_id).first()
    if not machine:
        raise NotFound("Machine not found")
    _ensure_chain_open_slot(db, machine_id, pm_template_id)
    assignees = _check_users(db, assigned_to)

    schedule = PMSchedule(
        schedule_code=_unique_code(db, machine, due_date),
        pm_template_id=pm_template_id,
        machine_id=machine_id,
        due_date=due_date,
        status=SCHEDULED,
        priority=priority,
        estimated_hours=estimated_hours,
        remarks=remarks,
        created_by=actor_id,
    )
    _assign(schedule, assignees, actor_id)
    db.add(schedule)
    db.flush()
    log.info("pm_schedule_created", schedule_id=str(schedule.id), schedule_code=schedule.schedule_code)
    return schedule


def update_schedule(
    db: Session, schedule_id: uuid.UUID, changes: dict, actor_id: Optional[uuid.UUID]
) -> Tuple[PMSchedule, List[uuid.UUID]]:
    """Returns the schedule and the users newly assigned by this update."""
    schedule = get_schedule(db, schedule_id)
    assigned_to = changes.pop("assigned_to", None)
    status = changes.pop("status", None)
    if schedule.status in TERMINAL_SCHEDULE_STATUSES and (set(changes) - {"remarks"} or status or assigned_to is not None):
        raise PreconditionNotMet("PM schedule is already closed")
    if status is not None:
        if status not in (SCHEDULED, IN_PROGRESS):
            raise ValidationFailed("Use the complete, skip or cancel actions to close a PM schedule")
        schedule.status = status
        if status == IN_PROGRESS and schedule.started_at is None:
            schedule.started_at = utcnow()
    for k, v in changes.items():
        setattr(schedule, k, v)

    added: List[uuid.UUID] = []
    if assigned_to is not None:
        wanted = _check_users(db, assigned_to)
        current = set(schedule.assigned_user_ids)
        for a in list(schedule.assignments):
            if a.user_id not in wanted:
                schedule.assignments.remove(a)
        added = [u for u in wanted if u not in current]
        _assign(schedule, added, actor_id)
    db.flush()
    return schedule, added


def schedule_file_urls(schedule: PMSchedule) -> List[Optional[str]]:
    urls: List[Optional[str]] = [schedule.customer_signature_url]
    for result in schedule.results:
        urls += [p.file_url for p in result.photos]
    return urls


def delete_schedule(db: Session, schedule_id: uuid.UUID) -> List[Optional[str]]:
    """Delete the schedule with its results and photos. Returns the file urls
    to discard once committed."""
    schedule = get_schedule(db, schedule_id)
    urls = schedule_file_urls(schedule)
    db.delete(schedule)
    db.flush()
    log.info("pm_schedule_deleted", schedule_id=str(schedule_id), files=len([u for u in urls if u]))
    return urls


def _ensure_open(schedule: PMSchedule) -> None:
    if schedule.status in TERMINAL_SCHEDULE_STATUSES:
        raise PreconditionNotMet("PM schedule is already closed")


def start_schedule(db: Session, schedule_id: uuid.UUID, actor_id: Optional[uuid.UUID]) -> PMSchedule:
    schedule = get_schedule(db, schedule_id)
    _ensure_open(schedule)
    if schedule.started_at is None:
        schedule.started_at = utcnow()
    schedule.status = IN_PROGRESS
    db.flush()
    log.info("pm_schedule_started", schedule_id=str(schedule.id), user_id=str(actor_id) if actor_id else None)
    return schedule


def _replace_photos(result: PMResult, photo_type: str, photos) -> List[str]:
    old = [p for p in result.photos if p.photo_type == photo_type]
    for p in old:
        result.photos.remove(p)
    for idx, photo in enumerate(photos, start=1):
        result.photos.append(
            PMResultPhoto(
                photo_type=photo_type,
                file_url=photo["file_url"],
                file_name=photo.get("file_name") or photo["file_url"].rsplit("/", 1)[-1] or f"{photo_type.lower()}_{idx}.jpg",
                caption=photo.get("caption"),
            )
        )
    kept = {p["file_url"] for p in photos}
    return [p.file_url for p in old if p.file_url not in kept]


def save_step(
    db: Session, schedule: PMSchedule, step: dict, actor_id: Optional[uuid.UUID]
) -> Tuple[PMResult, List[str]]:
    """Upsert one step result. Returns it with the photo urls it no longer uses."""
    _ensure_open(schedule)
    item_id = step["pm_template_item_id"]
    item = (
        db.query(PMTemplateItem)
        .filter(PMTemplateItem.id == item_id, PMTemplateItem.pm_template_id == schedule.pm_template_id)
        .first()
    )
    if not item:
        raise NotFound("PM template item not found")

    result = next((r for r in schedule.results if r.pm_template_item_id == item_id), None)
    if result is None:
        result = PMResult(pm_template_item_id=item_id)
        schedule.results.append(result)
    result.status = step.get("status") or "PASS"
    result.measured_value = step.get("measured_value")
    result.remarks = step.get("remarks")
    result.checked_by = actor_id
    result.checked_at = utcnow()

    dropped: List[str] = []
    if step.get("before_photos") is not None:
        dropped += _replace_photos(result, PMPhotoType.BEFORE.value, step["before_photos"])
    if step.get("after_photos") is not None:
        dropped += _replace_photos(result, PMPhotoType.AFTER.value, step["after_photos"])

    if schedule.status == SCHEDULED:
        schedule.status = IN_PROGRESS
    if schedule.started_at is None:
        schedule.started_at = utcnow()
    db.flush()
    return result, dropped


def save_step_results(
    db: Session, schedule_id: uuid.UUID, steps: List[dict], actor_id: Optional[uuid.UUID]
) -> Tuple[List[PMResult], List[str]]:
    if not steps:
        raise ValidationFailed("results must not be empty")
    schedule = get_schedule(db, schedule_id)
    results, dropped = [], []
    for step in steps:
        result, urls = save_step(db, schedule, step, actor_id)
        results.append(result)
        dropped += urls
    log.info("pm_step_results_saved", schedule_id=str(schedule.id), steps=len(results))
    return results, dropped


def complete_schedule(
    db: Session,
    schedule_id: uuid.UUID,
    *,
    actor_id: Optional[uuid.UUID],
    signature_url: Optional[str],
    signer_name: Optional[str],
    signed_at: Optional[datetime] = None,
    remarks: Optional[str] = None,
) -> Tuple[PMSchedule, PMSchedule]:
    """Close the schedule and open its successor. Returns ``(completed, next)``."""
    schedule = get_schedule(db, schedule_id)
    first_failure(PM_COMPLETION_CHECKS, PMCompletion(schedule, signature_url, signer_name))

    now = utcnow()
    schedule.status = ScheduleStatus.COMPLETED.value
    schedule.completed_at = now
    schedule.completed_by = actor_id
    schedule.last_done_date = now
    if schedule.started_at is None:
        schedule.started_at = now
    if remarks is not None:
        schedule.remarks = remarks
    schedule.customer_signature_url = signature_url.strip()
    schedule.customer_signer_name = signer_name.strip()
    schedule.customer_signed_at = signed_at or now
    # The chain link must be closed before the successor takes the open slot
    db.flush()

    template = schedule.template
    successor = _spawn_successor(
        db, schedule, next_due_date(now, template.frequency_type, template.frequency_value), actor_id
    )
    log.info(
        "pm_schedule_completed",
        schedule_id=str(schedule.id),
        next_schedule_id=str(successor.id),
        next_due_date=successor.due_date.isoformat(),
    )
    return schedule, successor


def skip_schedule(
    db: Session, schedule_id: uuid.UUID, *, actor_id: Optional[uuid.UUID], reason: Optional[str] = None
) -> Tuple[PMSchedule, PMSchedule]:
    schedule = get_schedule(db, schedule_id)
    _ensure_open(schedule)
    schedule.status = ScheduleStatus.SKIPPED.value
    if reason:
        schedule.remarks = f"Skipped: {reason}"
    db.flush()

    template = schedule.template
    successor = _spawn_successor(
        db, schedule, next_due_date(schedule.due_date, template.frequency_type, template.frequency_value), actor_id
    )
    log.info("pm_schedule_skipped", schedule_id=str(schedule.id), next_schedule_id=str(successor.id))
    return schedule, successor


def cancel_schedule(db: Session, schedule_id: uuid.UUID, *, reason: Optional[str] = None) -> PMSchedule:
    schedule = get_schedule(db, schedule_id)
    _ensure_open(schedule)
    schedule.status = ScheduleStatus.CANCELLED.value
    if reason:
        schedule.remarks = f"Cancelled: {reason}"
    db.flush()
    log.info("pm_schedule_cancelled", schedule_id=str(schedule.id))
    return schedule


# ---------- Result photos ----------
def get_result(
    db: Session, result_id: uuid.UUID, scope: Optional[AccessScope] = None, *, editing: bool = False
) -> PMResult:
    """Load a result through its schedule, so scope and the closed check
    apply to photo evidence the same way they apply to the run itself."""
    result = (
        db.query(PMResult).options(selectinload(PMResult.photos)).filter(PMResult.id == result_id).first()
    )
    if not result:
        raise NotFound("PM result not found")
    try:
        schedule = get_schedule(db, result.pm_schedule_id, scope)
    except NotFound:
        raise NotFound("PM result not found")
    if editing:
        _ensure_open(schedule)
    return result


def add_result_photos(
    db: Session, result_id: uuid.UUID, photos: List[dict], scope: Optional[AccessScope] = None
) -> List[PMResultPhoto]:
    result = get_result(db, result_id, scope, editing=True)
    created = [PMResultPhoto(**p) for p in photos]
    result.photos.extend(created)
    db.flush()
    return created


def list_result_photos(
    db: Session, result_id: uuid.UUID, photo_type: Optional[str] = None, scope: Optional[AccessScope] = None
) -> List[PMResultPhoto]:
    get_result(db, result_id, scope)
    q = db.query(PMResultPhoto).filter(PMResultPhoto.pm_result_id == result_id)
    if photo_type:
        q = q.filter(PMResultPhoto.photo_type == (normalize_choice(photo_type, PMPhotoType) or photo_type))
    return q.order_by(PMResultPhoto.created_at.asc()).all()


def replace_result_photos(
    db: Session, result_id: uuid.UUID, before: List[dict], after: List[dict], scope: Optional[AccessScope] = None
) -> Tuple[PMResult, List[str]]:
    result = get_result(db, result_id, scope, editing=True)
    dropped = _replace_photos(result, PMPhotoType.BEFORE.value, before)
    dropped += _replace_photos(result, PMPhotoType.AFTER.value, after)
    db.flush()
    return result, dropped


def delete_result_photo(db: Session, photo_id: uuid.UUID, scope: Optional[AccessScope] = None) -> str:
    photo = db.query(PMResultPhoto).filter(PMResultPhoto.id == photo_id).first()
    if not photo:
        raise NotFound("Photo not found")
    try:
        get_result(db, photo.pm_result_id, scope, editing=True)
    except NotFound:
        raise NotFound("Photo not found")
    url = photo.file_url
    db.delete(photo)
    db.flush()
    return url


def delete_photos_by_file_name(db: Session, file_name: str) -> List[str]:
    """Drop every PM photo row pointing at ``file_name``; returns their urls."""
    if not file_name or "/" in file_name or file_name in (".", ".."):
        raise ValidationFailed("Invalid file name")
    photos = db.query(PMResultPhoto).filter(PMResultPhoto.file_url.like(f"%/{file_name}")).all()
    urls = [p.file_url for p in photos]
    for p in photos:
        db.delete(p)
    db.flush()
    return urls
