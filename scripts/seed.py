"""
Seed the local database with an admin, one customer company, a machine with
spare parts and a monthly PM template.

Usage:
  python scripts/seed.py

The script is idempotent: records are looked up by their unique fields
(email, company name, machine code, part code, template name) and only
created when missing.
"""
import os
from datetime import timedelta

from pmhub.db import Base, SessionLocal, engine, unit_of_work, utcnow
from pmhub.models.models import Company, Machine, MachinePart, PMSchedule, PMTemplate, User
from pmhub.schemas.common import RoleName
from pmhub.services import machine_parts, pm_schedules, pm_templates, users


ADMIN_EMAIL = os.getenv("SEED_ADMIN_EMAIL", "admin@pmhub.local")
ADMIN_PASSWORD = os.getenv("SEED_ADMIN_PASSWORD", "admin1234")

PARTS = [
    {"part_code": "BRG-6205", "part_name": "Bearing 6205-2RS", "part_category": "Bearings", "uom": "pcs",
     "min_stock_level": 4, "cost_per_unit": 4.5, "quantity_on_hand": 12},
    {"part_code": "BLT-A42", "part_name": "V-belt A42", "part_category": "Belts", "uom": "pcs",
     "min_stock_level": 2, "cost_per_unit": 9.0, "quantity_on_hand": 5},
    {"part_code": "OIL-68", "part_name": "Hydraulic oil ISO VG 68", "part_category": "Lubricants", "uom": "L",
     "min_stock_level": 20, "cost_per_unit": 3.2, "quantity_on_hand": 60},
]

CHECKLIST = [
    {"check_item": "Check hydraulic oil level", "category": "Lubrication", "standard_value": "Between MIN and MAX"},
    {"check_item": "Inspect belts for wear and tension", "category": "Mechanical", "has_photo": True},
    {"check_item": "Measure motor current", "category": "Electrical", "standard_value": "< 12", "unit": "A"},
    {"check_item": "Clean cooling fan and filters", "category": "Cleaning", "is_required": False},
]


def ensure_admin(db) -> User:
    user = db.query(User).filter(User.email == ADMIN_EMAIL.lower()).first()
    if user:
        return user
    print(f"[seed] creating admin {ADMIN_EMAIL}")
    return users.create_user(
        db, email=ADMIN_EMAIL, password=ADMIN_PASSWORD, role=RoleName.ADMIN.value, first_name="System", last_name="Admin"
    )


def ensure_company(db) -> Company:
    company = db.query(Company).filter(Company.name == "Demo Manufacturing").first()
    if company:
        return company
    company = Company(name="Demo Manufacturing", email="plant@demo.local", address="1 Industrial Estate")
    db.add(company)
    db.flush()
    return company


def ensure_machine(db, company: Company) -> Machine:
    machine = db.query(Machine).filter(Machine.machine_code == "PRS-001").first()
    if machine:
        return machine
    machine = Machine(
        machine_code="PRS-001",
        name="Hydraulic Press 200T",
        category="Press",
        model="HP-200",
        serial_number="HP200-0042",
        location="Line 1",
        company_id=company.id,
    )
    db.add(machine)
    db.flush()
    return machine


def ensure_parts(db, machine: Machine, admin: User) -> None:
    for part_data in PARTS:
        exists = (
            db.query(MachinePart.id)
            .filter(MachinePart.machine_id == machine.id, MachinePart.part_code == part_data["part_code"])
            .first()
        )
        if exists:
            continue
        machine_parts.create_part(db, {**part_data, "machine_id": machine.id}, admin.id)
        print(f"[seed] part {part_data['part_code']} with {part_data['quantity_on_hand']} on hand")


def ensure_template(db) -> PMTemplate:
    template = db.query(PMTemplate).filter(PMTemplate.name == "Press monthly inspection").first()
    if template:
        return template
    return pm_templates.create_template(
        db,
        {
            "name": "Press monthly inspection",
            "description": "Routine monthly checks for hydraulic presses",
            "machine_type": "Press",
            "frequency_type": "MONTHLY",
            "frequency_value": 1,
            "duration_minutes": 90,
            "items": [dict(i) for i in CHECKLIST],
        },
    )


def ensure_schedule(db, machine: Machine, template: PMTemplate, admin: User) -> None:
    exists = (
        db.query(PMSchedule.id)
        .filter(PMSchedule.machine_id == machine.id, PMSchedule.pm_template_id == template.id)
        .first()
    )
    if exists:
        return
    pm_schedules.create_schedule(
        db,
        pm_template_id=template.id,
        machine_id=machine.id,
        due_date=utcnow() + timedelta(days=7),
        priority="MEDIUM",
        actor_id=admin.id,
    )


def main():
    Base.metadata.create_all(bind=engine)
    db = SessionLocal()
    try:
        with unit_of_work(db):
            users.ensure_roles(db)
            admin = ensure_admin(db)
            company = ensure_company(db)
            machine = ensure_machine(db, company)
            ensure_parts(db, machine, admin)
            template = ensure_template(db)
            ensure_schedule(db, machine, template, admin)
        print("[seed] done")
    finally:
        db.close()


if __name__ == "__main__":
    main()
