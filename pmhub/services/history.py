import uuid
from datetime import date, datetime, time, timedelta, timezone
from typing import List, Optional

from sqlalchemy import func, or_
from sqlalchemy.orm import Session

from ..auth.scope import AccessScope
from ..models.models import Machine, PMSchedule, PMTemplate, User
from ..schemas.common import Priority, ScheduleStatus, normalize_choice
from .pm_schedules import SORT_COLUMNS, apply_scope, assigned_to_clause, schedule_load_options
from .query import contains_any, paginate


CLOSED = (ScheduleStatus.COMPLETED.value, ScheduleStatus.SKIPPED.value)


def _base(
    db: Session,
    scope: AccessScope,
    *,
    status: Optional[str] = None,
    machine_id: Optional[uuid.UUID] = None,
    priority: Optional[str] = None,
    date_from: Optional[date] = None,
    date_to: Optional[date] = None,
    technician_id: Optional[uuid.UUID] = None,
    search: Optional[str] = None,
):
    q = (
        db.query(PMSchedule)
        .join(Machine, PMSchedule.machine_id == Machine.id)
        .join(PMTemplate, PMSchedule.pm_template_id == PMTemplate.id)
        .filter(PMSchedule.status.in_(CLOSED))
    )
    q = apply_scope(q, scope)
    wanted = normalize_choice(status, ScheduleStatus)
    if wanted in CLOSED:
        q = q.filter(PMSchedule.status == wanted)
    if machine_id:
        q = q.filter(PMSchedule.machine_id == machine_id)
    if priority:
        q = q.filter(PMSchedule.priority == (normalize_choice(priority, Priority) or priority))
    # Whole days, inclusive
    if date_from:
        q = q.filter(PMSchedule.completed_at >= datetime.combine(date_from, time.min, tzinfo=timezone.utc))
    if date_to:
        q = q.filter(
            PMSchedule.completed_at < datetime.combine(date_to + timedelta(days=1), time.min, tzinfo=timezone.utc)
        )
    if technician_id:
        q = q.filter(or_(assigned_to_clause(technician_id), PMSchedule.completed_by == technician_id))
    if search:
        q = q.filter(contains_any(search, Machine.name, Machine.machine_code, PMTemplate.name, PMSchedule.schedule_code))
    return q


def list_history(
    db: Session,
    scope: AccessScope,
    *,
    sort_by: Optional[str] = None,
    sort_order: str = "desc",
    page: int = 1,
    limit: int = 10,
    **filters,
):
    q = _base(db, scope, **filters).options(*schedule_load_options())
    column = SORT_COLUMNS.get(sort_by or "", PMSchedule.completed_at)
    if sort_by == "company":
        column = PMSchedule.completed_at
    ordering = column.asc() if (sort_order or "").lower() == "asc" else column.desc()
    return paginate(q.order_by(ordering), page, limit)


def history_stats(db: Session, scope: AccessScope, **filters) -> dict:
    q = _base(db, scope, **filters)
    ids = q.with_entities(PMSchedule.id).subquery()
    rows = (
        db.query(PMSchedule.status, PMSchedule.priority, func.count(PMSchedule.id))
        .filter(PMSchedule.id.in_(ids.select()))
        .group_by(PMSchedule.status, PMSchedule.priority)
        .all()
    )
    by_priority = {p.value: 0 for p in Priority}
    stats = {"total": 0, "completed": 0, "skipped": 0, "by_priority": by_priority}
    for status, priority, count in rows:
        stats["total"] += count
        if status == ScheduleStatus.COMPLETED.value:
            stats["completed"] += count
        else:
            stats["skipped"] += count
        by_priority[priority] = by_priority.get(priority, 0) + count
    return stats


def unique_machines(db: Session, scope: AccessScope) -> List[dict]:
    ids = _base(db, scope).with_entities(PMSchedule.machine_id).distinct().subquery()
    machines = db.query(Machine).filter(Machine.id.in_(ids.select())).order_by(Machine.name.asc()).all()
    return [{"id": str(m.id), "name": m.name, "machine_code": m.machine_code} for m in machines]


def unique_technicians(db: Session, scope: AccessScope) -> List[dict]:
    ids = (
        _base(db, scope)
        .filter(PMSchedule.completed_by.isnot(None))
        .with_entities(PMSchedule.completed_by)
        .distinct()
        .subquery()
    )
    users = db.query(User).filter(User.id.in_(ids.select())).order_by(User.email.asc()).all()
    return [{"id": str(u.id), "full_name": u.full_name, "email": u.email} for u in users]
