import uuid
from typing import List, Optional

import structlog
from sqlalchemy.orm import Session

from ..errors import ConflictOrDuplicate, NotFound
from ..models.models import Machine, MachinePart, RepairWorkPart
from ..schemas.common import ReferenceType
from . import inventory
from .query import contains_any, paginate


log = structlog.get_logger(__name__)


def _require_machine(db: Session, machine_id: uuid.UUID) -> Machine:
    machine = db.query(Machine).filter(Machine.id == machine_id).first()
    if not machine:
        raise NotFound("Machine not found")
    return machine


def get_part(db: Session, part_id: uuid.UUID) -> MachinePart:
    part = db.query(MachinePart).filter(MachinePart.id == part_id).first()
    if not part:
        raise NotFound("Machine part not found")
    return part


def _ensure_unique_code(db: Session, machine_id: uuid.UUID, code: str, exclude_id: Optional[uuid.UUID] = None) -> None:
    q = db.query(MachinePart).filter(MachinePart.machine_id == machine_id, MachinePart.part_code == code)
    if exclude_id:
        q = q.filter(MachinePart.id != exclude_id)
    if q.first():
        raise ConflictOrDuplicate(f"Part code {code} already exists for this machine")


def _low_stock_clause():
    return MachinePart.min_stock_level.isnot(None) & (MachinePart.quantity_on_hand <= MachinePart.min_stock_level)


def list_parts(
    db: Session,
    *,
    machine_id: Optional[uuid.UUID] = None,
    category: Optional[str] = None,
    search: Optional[str] = None,
    low_stock: bool = False,
    page: int = 1,
    limit: int = 10,
):
    q = db.query(MachinePart)
    if machine_id:
        q = q.filter(MachinePart.machine_id == machine_id)
    if category:
        q = q.filter(MachinePart.part_category == category)
    if search:
        q = q.filter(
            contains_any(search, MachinePart.part_code, MachinePart.part_name, MachinePart.description, MachinePart.vendor_name)
        )
    if low_stock:
        q = q.filter(_low_stock_clause())
    return paginate(q.order_by(MachinePart.part_code.asc()), page, limit)


def parts_for_machine(db: Session, machine_id: uuid.UUID) -> List[MachinePart]:
    _require_machine(db, machine_id)
    return db.query(MachinePart).filter(MachinePart.machine_id == machine_id).order_by(MachinePart.part_code.asc()).all()


def search_parts(db: Session, machine_id: uuid.UUID, term: str) -> List[MachinePart]:
    _require_machine(db, machine_id)
    q = db.query(MachinePart).filter(MachinePart.machine_id == machine_id)
    if term and term.strip():
        q = q.filter(
            contains_any(term, MachinePart.part_code, MachinePart.part_name, MachinePart.description, MachinePart.vendor_name)
        )
    return q.order_by(MachinePart.part_code.asc()).all()


def low_stock_parts(db: Session, machine_id: uuid.UUID) -> List[MachinePart]:
    _require_machine(db, machine_id)
    return (
        db.query(MachinePart)
        .filter(MachinePart.machine_id == machine_id, _low_stock_clause())
        .order_by(MachinePart.quantity_on_hand.asc())
        .all()
    )


def categories(db: Session) -> List[str]:
    rows = (
        db.query(MachinePart.part_category)
        .filter(MachinePart.part_category.isnot(None))
        .distinct()
        .order_by(MachinePart.part_category.asc())
        .all()
    )
    return [r[0] for r in rows]


def part_statistics(db: Session, machine_id: Optional[uuid.UUID] = None) -> dict:
    q = db.query(MachinePart)
    if machine_id:
        q = q.filter(MachinePart.machine_id == machine_id)
    parts = q.all()
    total_value = sum(float(p.cost_per_unit or 0) * p.quantity_on_hand for p in parts)
    costs = [float(p.cost_per_unit) for p in parts if p.cost_per_unit is not None]
    return {
        "total_parts": len(parts),
        "total_quantity": sum(p.quantity_on_hand for p in parts),
        "total_value": round(total_value, 2),
        "average_cost": round(sum(costs) / len(costs), 2) if costs else 0.0,
        "low_stock_count": sum(1 for p in parts if p.is_low_stock),
    }


def create_part(db: Session, data: dict, actor_id: Optional[uuid.UUID]) -> MachinePart:
    _require_machine(db, data["machine_id"])
    _ensure_unique_code(db, data["machine_id"], data["part_code"])
    opening = data.pop("quantity_on_hand", 0) or 0
    part = MachinePart(**data, quantity_on_hand=0)
    db.add(part)
    db.flush()
    if opening:
        # Opening balance goes through the ledger like any other movement
        inventory.apply_transaction(
            db,
            part_id=part.id,
            type=inventory.ADJUST,
            quantity=opening,
            reference_type=ReferenceType.ADJUSTMENT.value,
            notes="Opening balance",
            actor_id=actor_id,
        )
    log.info("machine_part_created", part_id=str(part.id), part_code=part.part_code)
    return part


def update_part(db: Session, part_id: uuid.UUID, changes: dict, actor_id: Optional[uuid.UUID]) -> MachinePart:
    part = get_part(db, part_id)
    new_quantity = changes.pop("quantity_on_hand", None)
    if changes.get("part_code") and changes["part_code"] != part.part_code:
        _ensure_unique_code(db, part.machine_id, changes["part_code"], exclude_id=part.id)
    for k, v in changes.items():
        setattr(part, k, v)
    db.flush()
    if new_quantity is not None and new_quantity != part.quantity_on_hand:
        inventory.apply_transaction(
            db,
            part_id=part.id,
            type=inventory.ADJUST,
            quantity=new_quantity,
            reference_type=ReferenceType.ADJUSTMENT.value,
            notes="Quantity edited on part record",
            actor_id=actor_id,
        )
    return part


def delete_part(db: Session, part_id: uuid.UUID) -> None:
    part = get_part(db, part_id)
    if db.query(RepairWorkPart.id).filter(RepairWorkPart.part_id == part.id).first():
        raise ConflictOrDuplicate("Part was consumed by repair work and cannot be deleted")
    db.delete(part)
    db.flush()
    log.info("machine_part_deleted", part_id=str(part_id))

