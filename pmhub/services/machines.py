import uuid
from io import BytesIO
from typing import Dict, List, Optional

import qrcode
import structlog
from sqlalchemy import func
from sqlalchemy.orm import Session, joinedload

from ..config import settings
from ..errors import ConflictOrDuplicate, NotFound, ValidationFailed
from ..models.models import (
    ACTIVE_SCHEDULE_STATUSES,
    Company,
    Machine,
    MachineDocument,
    PMSchedule,
    RepairWork,
    RepairWorkPhoto,
)
from ..schemas.common import MachineStatus, ScheduleStatus
from .query import contains_any, paginate


log = structlog.get_logger(__name__)


def get_machine(db: Session, machine_id: uuid.UUID) -> Machine:
    machine = db.query(Machine).options(joinedload(Machine.company)).filter(Machine.id == machine_id).first()
    if not machine:
        raise NotFound("Machine not found")
    return machine


def get_machine_by_code(db: Session, code: str) -> Machine:
    machine = db.query(Machine).filter(func.upper(Machine.machine_code) == code.strip().upper()).first()
    if not machine:
        raise NotFound("Machine not found")
    return machine


def _ensure_unique_code(db: Session, code: str, exclude_id: Optional[uuid.UUID] = None) -> None:
    q = db.query(Machine).filter(func.upper(Machine.machine_code) == code.strip().upper())
    if exclude_id:
        q = q.filter(Machine.id != exclude_id)
    if q.first():
        raise ConflictOrDuplicate(f"Machine code {code} already exists")


def _check_company(db: Session, company_id: Optional[uuid.UUID]) -> None:
    if company_id and not db.query(Company.id).filter(Company.id == company_id).first():
        raise NotFound("Company not found")


def list_machines(
    db: Session,
    *,
    status: Optional[str] = None,
    category: Optional[str] = None,
    company_id: Optional[uuid.UUID] = None,
    search: Optional[str] = None,
    page: int = 1,
    limit: int = 10,
):
    q = db.query(Machine).options(joinedload(Machine.company))
    if status:
        q = q.filter(Machine.status == status)
    if category:
        q = q.filter(Machine.category == category)
    if company_id:
        q = q.filter(Machine.company_id == company_id)
    if search:
        q = q.filter(contains_any(search, Machine.machine_code, Machine.name, Machine.location, Machine.serial_number))
    return paginate(q.order_by(Machine.machine_code.asc()), page, limit)


def maintenance_overview(db: Session, machine_ids: List[uuid.UUID]) -> Dict[uuid.UUID, dict]:
    """Last/next PM dates and repair counts/cost for a page of machines."""
    if not machine_ids:
        return {}
    overview = {
        mid: {"last_pm_date": None, "next_pm_date": None, "work_orders_count": 0, "total_cost": 0.0}
        for mid in machine_ids
    }
    last_pm = (
        db.query(PMSchedule.machine_id, func.max(PMSchedule.completed_at))
        .filter(PMSchedule.machine_id.in_(machine_ids), PMSchedule.status == ScheduleStatus.COMPLETED.value)
        .group_by(PMSchedule.machine_id)
        .all()
    )
    next_pm = (
        db.query(PMSchedule.machine_id, func.min(PMSchedule.due_date))
        .filter(PMSchedule.machine_id.in_(machine_ids), PMSchedule.status.in_(ACTIVE_SCHEDULE_STATUSES))
        .group_by(PMSchedule.machine_id)
        .all()
    )
    repairs = (
        db.query(RepairWork.machine_id, func.count(RepairWork.id), func.coalesce(func.sum(RepairWork.actual_cost), 0))
        .filter(RepairWork.machine_id.in_(machine_ids))
        .group_by(RepairWork.machine_id)
        .all()
    )
    for mid, value in last_pm:
        overview[mid]["last_pm_date"] = value
    for mid, value in next_pm:
        overview[mid]["next_pm_date"] = value
    for mid, count, cost in repairs:
        overview[mid]["work_orders_count"] = count
        overview[mid]["total_cost"] = float(cost or 0)
    return overview


def machine_stats(db: Session) -> dict:
    total = db.query(func.count(Machine.id)).scalar() or 0
    by_status = {s.value: 0 for s in MachineStatus}
    for status, count in db.query(Machine.status, func.count(Machine.id)).group_by(Machine.status).all():
        by_status[status] = count
    by_category = {
        (category or "Uncategorized"): count
        for category, count in db.query(Machine.category, func.count(Machine.id)).group_by(Machine.category).all()
    }
    return {"total": total, "by_status": by_status, "by_category": by_category}


def search_machines(db: Session, term: str, limit: int = 20) -> List[Machine]:
    if not term or not term.strip():
        return []
    return (
        db.query(Machine)
        .filter(contains_any(term, Machine.machine_code, Machine.name, Machine.model, Machine.serial_number))
        .order_by(Machine.machine_code.asc())
        .limit(limit)
        .all()
    )


def create_machine(db: Session, data: dict) -> Machine:
    data["machine_code"] = data["machine_code"].strip()
    if not data["machine_code"] or not (data.get("name") or "").strip():
        raise ValidationFailed("machine_code and name are required")
    _ensure_unique_code(db, data["machine_code"])
    _check_company(db, data.get("company_id"))
    machine = Machine(**data)
    db.add(machine)
    db.flush()
    log.info("machine_created", machine_id=str(machine.id), machine_code=machine.machine_code)
    return machine


def update_machine(db: Session, machine_id: uuid.UUID, changes: dict) -> Machine:
    machine = get_machine(db, machine_id)
    if changes.get("machine_code"):
        _ensure_unique_code(db, changes["machine_code"], exclude_id=machine.id)
    if "company_id" in changes:
        _check_company(db, changes["company_id"])
    for k, v in changes.items():
        setattr(machine, k, v)
    db.flush()
    return machine


def bulk_update_status(db: Session, machine_ids: List[uuid.UUID], status: str) -> int:
    if not machine_ids:
        raise ValidationFailed("machine_ids must not be empty")
    updated = (
        db.query(Machine)
        .filter(Machine.id.in_(machine_ids))
        .update({Machine.status: status}, synchronize_session=False)
    )
    db.flush()
    log.info("machine_bulk_status", count=updated, status=status)
    return updated


def machine_file_urls(db: Session, machine: Machine) -> List[Optional[str]]:
    urls = [machine.image_url]
    urls += [d.file_url for d in db.query(MachineDocument).filter(MachineDocument.machine_id == machine.id).all()]
    urls += [
        p.file_url
        for p in db.query(RepairWorkPhoto)
        .join(RepairWork, RepairWorkPhoto.repair_work_id == RepairWork.id)
        .filter(RepairWork.machine_id == machine.id)
        .all()
    ]
    for schedule in machine.pm_schedules:
        urls.append(schedule.customer_signature_url)
        for result in schedule.results:
            urls += [p.file_url for p in result.photos]
    return urls


def delete_machine(db: Session, machine_id: uuid.UUID) -> List[Optional[str]]:
    """Delete the machine and everything it owns. Returns the file urls the
    caller should discard once the transaction has committed."""
    machine = get_machine(db, machine_id)
    urls = machine_file_urls(db, machine)
    db.delete(machine)
    db.flush()
    log.info("machine_deleted", machine_id=str(machine_id))
    return urls


def replace_image(db: Session, machine_id: uuid.UUID, image_url: Optional[str]) -> Optional[str]:
    """Point the machine at a new image and return the previous url."""
    machine = get_machine(db, machine_id)
    previous = machine.image_url
    machine.image_url = image_url
    db.flush()
    return previous


def qr_payload(machine: Machine) -> str:
    return f"{settings.public_base_url.rstrip('/')}/machines/{machine.id}?code={machine.machine_code}"


def generate_qr_png(data: str, box_size: int = 10) -> bytes:
    qr = qrcode.QRCode(
        version=None,
        error_correction=qrcode.constants.ERROR_CORRECT_M,
        box_size=box_size,
        border=4,
    )
    qr.add_data(data)
    qr.make(fit=True)
    img = qr.make_image(fill_color="black", back_color="white")
    buffer = BytesIO()
    img.save(buffer, format="PNG")
    return buffer.getvalue()
