"""
Morning work summary pushed to every active technician.

The job runs on an APScheduler ``BackgroundScheduler`` cron trigger in the
configured timezone. ``run_daily_summary`` is importable on its own so the
counting can be exercised without a scheduler.
"""
from datetime import datetime, time, timedelta
from typing import Dict, Optional

import pytz
import structlog
from apscheduler.schedulers.background import BackgroundScheduler
from sqlalchemy import and_, exists, func, or_
from sqlalchemy.orm import Session

from ..config import settings
from ..db import SessionLocal, utcnow
from ..models.models import (
    ACTIVE_SCHEDULE_STATUSES,
    PMSchedule,
    PMScheduleAssignment,
    RepairWork,
    RepairWorkAssignment,
    Role,
    User,
)
from ..schemas.common import OPEN_REPAIR_STATUSES, RoleName
from ..services import notifications


log = structlog.get_logger(__name__)

_scheduler: Optional[BackgroundScheduler] = None


def start_of_tomorrow(now: datetime, tz_name: str) -> datetime:
    """Midnight after ``now`` in ``tz_name``, returned in UTC."""
    tz = pytz.timezone(tz_name)
    local_now = now.astimezone(tz)
    local_midnight = tz.localize(datetime.combine(local_now.date() + timedelta(days=1), time.min))
    return local_midnight.astimezone(pytz.utc)


def count_open_work(db: Session, user_id, cutoff: datetime) -> Dict[str, int]:
    repairs = (
        db.query(func.count(RepairWork.id))
        .filter(
            RepairWork.status.in_(OPEN_REPAIR_STATUSES),
            or_(
                RepairWork.assigned_to == user_id,
                exists().where(
                    and_(RepairWorkAssignment.repair_work_id == RepairWork.id, RepairWorkAssignment.user_id == user_id)
                ),
            ),
        )
        .scalar()
        or 0
    )
    pms = (
        db.query(func.count(PMSchedule.id))
        .filter(
            PMSchedule.status.in_(ACTIVE_SCHEDULE_STATUSES),
            PMSchedule.due_date < cutoff,
            exists().where(
                and_(PMScheduleAssignment.pm_schedule_id == PMSchedule.id, PMScheduleAssignment.user_id == user_id)
            ),
        )
        .scalar()
        or 0
    )
    return {"repairs": repairs, "pms": pms}


def run_daily_summary(db: Session, now: Optional[datetime] = None) -> Dict[str, Dict[str, int]]:
    """Notify each technician with pending work. Returns the counts per user id."""
    cutoff = start_of_tomorrow(now or utcnow(), settings.tz_default)
    technicians = (
        db.query(User)
        .join(Role, User.role_id == Role.id)
        .filter(Role.name == RoleName.TECHNICIAN.value, User.is_active.is_(True))
        .all()
    )
    summary = {}
    for tech in technicians:
        counts = count_open_work(db, tech.id, cutoff)
        summary[str(tech.id)] = counts
        total = counts["repairs"] + counts["pms"]
        if total:
            notifications.notify_user(
                db,
                tech.id,
                "Daily Work Summary",
                f"Good morning! You have {total} tasks pending today "
                f"({counts['repairs']} Repairs, {counts['pms']} PMs).",
                "/tasks",
            )
    log.info("daily_summary_run", technicians=len(technicians), notified=sum(1 for c in summary.values() if c["repairs"] or c["pms"]))
    return summary


def _job() -> None:
    db = SessionLocal()
    try:
        run_daily_summary(db)
    except Exception:
        log.exception("daily_summary_failed")
    finally:
        db.close()


def start_scheduler() -> Optional[BackgroundScheduler]:
    global _scheduler
    if _scheduler is not None:
        return _scheduler
    scheduler = BackgroundScheduler(timezone=pytz.timezone(settings.tz_default))
    scheduler.add_job(_job, trigger="cron", hour=settings.daily_summary_hour, minute=0, id="daily_summary", replace_existing=True)
    scheduler.start()
    _scheduler = scheduler
    log.info("scheduler_started", hour=settings.daily_summary_hour, tz=settings.tz_default)
    return scheduler


def stop_scheduler() -> None:
    global _scheduler
    if _scheduler is not None:
        _scheduler.shutdown(wait=False)
        _scheduler = None
        log.info("scheduler_stopped")
