"""Two sessions racing on the same PM schedule.

Runs against a file database so each session holds its own connection, the
way two API workers would.
"""
from datetime import timedelta

import pytest
from sqlalchemy.orm import sessionmaker

from pmhub.db import Base, build_engine, unit_of_work, utcnow
from pmhub.errors import ConflictOrDuplicate
from pmhub.models.models import Machine, PMSchedule, PMTemplate, PMTemplateItem
from pmhub.services import pm_schedules, users


@pytest.fixture
def file_sessions(tmp_path):
    engine = build_engine(f"sqlite:///{tmp_path / 'pmhub.db'}")
    Base.metadata.create_all(bind=engine)
    factory = sessionmaker(bind=engine, autoflush=False, autocommit=False, future=True)
    yield factory
    engine.dispose()


@pytest.fixture
def open_schedule(file_sessions):
    with file_sessions() as db:
        users.ensure_roles(db)
        tech = users.create_user(db, email="tech@example.com", password="secret123", role="TECHNICIAN")
        machine = Machine(machine_code="CNC-01", name="CNC Lathe")
        template = PMTemplate(name="Monthly lathe check", frequency_type="MONTHLY", frequency_value=1)
        template.items.append(PMTemplateItem(check_item="Check coolant level", step_order=1))
        db.add_all([machine, template])
        db.flush()
        schedule = pm_schedules.create_schedule(
            db,
            pm_template_id=template.id,
            machine_id=machine.id,
            due_date=utcnow() + timedelta(days=1),
            priority="MEDIUM",
            assigned_to=[tech.id],
        )
        db.commit()
        return schedule.id, tech.id


def _complete(db, schedule_id, tech_id):
    return pm_schedules.complete_schedule(
        db, schedule_id, actor_id=tech_id, signature_url="/uploads/signatures/s.png", signer_name="Dana"
    )


def test_second_completion_of_a_stale_copy_conflicts(file_sessions, open_schedule):
    schedule_id, tech_id = open_schedule
    first, second = file_sessions(), file_sessions()
    try:
        # Both workers read the open schedule before either writes
        pm_schedules.get_schedule(first, schedule_id)
        pm_schedules.get_schedule(second, schedule_id)

        with unit_of_work(first):
            _complete(first, schedule_id, tech_id)

        with pytest.raises(ConflictOrDuplicate):
            with unit_of_work(second):
                _complete(second, schedule_id, tech_id)
    finally:
        first.close()
        second.close()

    with file_sessions() as db:
        statuses = sorted(s.status for s in db.query(PMSchedule).all())
        assert statuses == ["COMPLETED", "SCHEDULED"]


def test_second_open_link_is_rejected_by_the_database(file_sessions, open_schedule):
    schedule_id, _ = open_schedule
    with file_sessions() as db:
        existing = db.get(PMSchedule, schedule_id)
        duplicate = PMSchedule(
            schedule_code="PM-CNC01-MANUAL",
            pm_template_id=existing.pm_template_id,
            machine_id=existing.machine_id,
            due_date=existing.due_date + timedelta(days=7),
            status="SCHEDULED",
        )
        with pytest.raises(ConflictOrDuplicate):
            with unit_of_work(db):
                db.add(duplicate)

        assert db.query(PMSchedule).count() == 1
