"""Tests for pmhub.jobs.daily_summary - morning technician digest."""
from datetime import datetime, timedelta, timezone

from pmhub.jobs.daily_summary import count_open_work, run_daily_summary, start_of_tomorrow
from pmhub.models.models import (
    Notification,
    PMSchedule,
    PMScheduleAssignment,
    PMTemplate,
    RepairWork,
    RepairWorkAssignment,
)


NOW = datetime(2024, 6, 10, 1, 0, tzinfo=timezone.utc)  # 08:00 in Bangkok


def _schedule(db, machine, template, tech, due, status="SCHEDULED", code="PM-X"):
    s = PMSchedule(
        schedule_code=code, pm_template_id=template.id, machine_id=machine.id, due_date=due, status=status, priority="MEDIUM"
    )
    s.assignments.append(PMScheduleAssignment(user_id=tech.id))
    db.add(s)
    db.commit()
    return s


def _repair(db, machine, number, status="OPEN", assigned_to=None, extra_assignee=None):
    rw = RepairWork(work_order_number=number, machine_id=machine.id, title="Noise", status=status, assigned_to=assigned_to)
    if extra_assignee:
        rw.assignments.append(RepairWorkAssignment(user_id=extra_assignee.id))
    db.add(rw)
    db.commit()
    return rw


def test_start_of_tomorrow_uses_local_midnight():
    cutoff = start_of_tomorrow(NOW, "Asia/Bangkok")
    assert cutoff == datetime(2024, 6, 10, 17, 0, tzinfo=timezone.utc)


def test_counts_only_open_work_due_before_tomorrow(db, machine, template, technician):
    cutoff = start_of_tomorrow(NOW, "Asia/Bangkok")
    _schedule(db, machine, template, technician, NOW - timedelta(days=2), code="PM-OVERDUE")
    weekly = PMTemplate(name="Weekly lathe check", frequency_type="WEEKLY", frequency_value=1)
    db.add(weekly)
    db.commit()
    # One open link per machine and template, so the later one uses its own template
    _schedule(db, machine, weekly, technician, NOW + timedelta(days=5), code="PM-LATER")
    _schedule(db, machine, template, technician, NOW - timedelta(days=40), status="COMPLETED", code="PM-DONE")
    _repair(db, machine, "RW-202406-001", assigned_to=technician.id)
    _repair(db, machine, "RW-202406-002", status="IN_PROGRESS", extra_assignee=technician)
    _repair(db, machine, "RW-202406-003", status="COMPLETED", assigned_to=technician.id)

    assert count_open_work(db, technician.id, cutoff) == {"repairs": 2, "pms": 1}


def test_notifies_only_technicians_with_work(db, machine, template, technician, other_technician):
    _repair(db, machine, "RW-202406-010", assigned_to=technician.id)

    summary = run_daily_summary(db, NOW)

    assert summary[str(technician.id)] == {"repairs": 1, "pms": 0}
    assert summary[str(other_technician.id)] == {"repairs": 0, "pms": 0}
    sent = db.query(Notification).all()
    assert [n.user_id for n in sent] == [technician.id]
    assert sent[0].title == "Daily Work Summary"
    assert "1 tasks pending today (1 Repairs, 0 PMs)" in sent[0].body
