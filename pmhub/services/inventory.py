"""
Inventory ledger.

A part's ``quantity_on_hand`` is a cache of the fold of its transactions:
IN adds, OUT subtracts, ADJUST replaces the running balance. Every function
here changes the ledger row and the cached balance in the same session and
flushes, leaving the commit to the caller's ``unit_of_work`` so the stock
movement lands together with whatever status change triggered it.
"""
import uuid
from collections import Counter, defaultdict
from datetime import date, datetime, time, timedelta, timezone
from decimal import Decimal
from typing import Iterable, Optional, Tuple, List

import structlog
from sqlalchemy import func, or_
from sqlalchemy.orm import Session, joinedload

from ..db import utcnow
from ..errors import NotFound, ValidationFailed, InsufficientStock, PreconditionNotMet
from ..models.models import InventoryTransaction, MachinePart, Machine
from ..schemas.common import TransactionType, ReferenceType, normalize_choice


log = structlog.get_logger(__name__)

IN = TransactionType.IN.value
OUT = TransactionType.OUT.value
ADJUST = TransactionType.ADJUST.value


def coerce_type(value) -> str:
    mapped = normalize_choice(value, TransactionType)
    if mapped is None:
        raise ValidationFailed(f"Invalid transaction type: {value}")
    return mapped


def coerce_reference_type(value) -> str:
    if value is None:
        return ReferenceType.MANUAL.value
    mapped = normalize_choice(value, ReferenceType)
    if mapped is None:
        raise ValidationFailed(f"Invalid reference type: {value}")
    return mapped


def _validate_quantity(txn_type: str, quantity) -> int:
    if isinstance(quantity, bool) or not isinstance(quantity, int):
        raise ValidationFailed("Quantity must be an integer")
    if txn_type == ADJUST:
        if quantity < 0:
            raise ValidationFailed("Adjusted quantity cannot be negative")
    elif quantity <= 0:
        raise ValidationFailed("Quantity must be greater than 0")
    return quantity


def apply_effect(balance: int, txn_type: str, quantity: int) -> int:
    if txn_type == IN:
        new_balance = balance + quantity
    elif txn_type == OUT:
        new_balance = balance - quantity
    else:
        new_balance = quantity
    if new_balance < 0:
        raise InsufficientStock(
            f"Insufficient stock: on hand {balance}, requested {quantity}",
            details={"on_hand": balance, "requested": quantity},
        )
    return new_balance


def ledger_balance(entries: Iterable[Tuple[str, int]]) -> int:
    """Fold ``(type, quantity)`` pairs, oldest first, into a balance."""
    balance = 0
    for txn_type, quantity in entries:
        if txn_type == IN:
            balance += quantity
        elif txn_type == OUT:
            balance -= quantity
        elif txn_type == ADJUST:
            balance = quantity
    return balance


def _get_part(db: Session, part_id: uuid.UUID) -> MachinePart:
    part = db.query(MachinePart).filter(MachinePart.id == part_id).with_for_update().first()
    if not part:
        raise NotFound("Machine part not found")
    return part


def get_transaction(db: Session, txn_id: uuid.UUID) -> InventoryTransaction:
    txn = (
        db.query(InventoryTransaction)
        .options(joinedload(InventoryTransaction.part))
        .filter(InventoryTransaction.id == txn_id)
        .first()
    )
    if not txn:
        raise NotFound("Inventory transaction not found")
    return txn


def _ledger_order():
    return (InventoryTransaction.created_at.asc(), InventoryTransaction.id.asc())


def _part_entries(db: Session, part_id: uuid.UUID) -> List[InventoryTransaction]:
    return (
        db.query(InventoryTransaction)
        .filter(InventoryTransaction.part_id == part_id)
        .order_by(*_ledger_order())
        .all()
    )


def _next_stamp(db: Session, part_id: uuid.UUID) -> datetime:
    """A timestamp strictly after the part's newest entry, so ``created_at``
    alone orders a part's ledger even when two postings share a clock tick."""
    now = utcnow()
    last = db.query(func.max(InventoryTransaction.created_at)).filter(InventoryTransaction.part_id == part_id).scalar()
    if last is not None:
        if last.tzinfo is None:
            last = last.replace(tzinfo=timezone.utc)
        if now <= last:
            now = last + timedelta(microseconds=1)
    return now


def _later_entries(db: Session, txn: InventoryTransaction, only_type: Optional[str] = None):
    q = db.query(InventoryTransaction).filter(
        InventoryTransaction.part_id == txn.part_id,
        InventoryTransaction.id != txn.id,
        InventoryTransaction.created_at > txn.created_at,
    )
    if only_type:
        q = q.filter(InventoryTransaction.type == only_type)
    return q


def _restate(db: Session, part: MachinePart) -> int:
    """Re-fold the part's ledger after a posting changed or vanished, rewriting
    each ``balance_after`` and the cached balance.

    Raises ``InsufficientStock`` when any point of the history would dip
    below zero."""
    balance = 0
    for entry in _part_entries(db, part.id):
        balance = apply_effect(balance, entry.type, entry.quantity)
        entry.balance_after = balance
    part.quantity_on_hand = balance
    db.flush()
    return balance


def apply_transaction(
    db: Session,
    *,
    part_id: uuid.UUID,
    type,
    quantity: int,
    reference_type=None,
    reference_id: Optional[str] = None,
    actor_id: Optional[uuid.UUID] = None,
    notes: Optional[str] = None,
) -> InventoryTransaction:
    txn_type = coerce_type(type)
    ref_type = coerce_reference_type(reference_type)
    _validate_quantity(txn_type, quantity)
    part = _get_part(db, part_id)
    # Raises before anything is written
    new_balance = apply_effect(part.quantity_on_hand, txn_type, quantity)

    txn = InventoryTransaction(
        part_id=part.id,
        type=txn_type,
        quantity=quantity,
        balance_after=new_balance,
        reference_type=ref_type,
        reference_id=str(reference_id) if reference_id is not None else None,
        notes=notes,
        performed_by=actor_id,
        created_at=_next_stamp(db, part.id),
    )
    part.quantity_on_hand = new_balance
    db.add(txn)
    db.flush()
    log.info(
        "inventory_transaction_applied",
        transaction_id=str(txn.id),
        part_id=str(part.id),
        type=txn_type,
        quantity=quantity,
        balance=new_balance,
        reference_type=ref_type,
    )
    return txn


def _ensure_reversible(db: Session, txn: InventoryTransaction) -> None:
    """ADJUST entries cannot be reversed, and neither can an IN/OUT that an
    ADJUST posted after it has already overwritten."""
    if txn.type == ADJUST:
        raise PreconditionNotMet("ADJUST transactions cannot be reversed")
    if _later_entries(db, txn, only_type=ADJUST).first() is not None:
        raise PreconditionNotMet("Transaction is superseded by a later stock adjustment")


def update_transaction(
    db: Session,
    txn_id: uuid.UUID,
    *,
    type=None,
    quantity: Optional[int] = None,
    reference_type=None,
    reference_id: Optional[str] = None,
    notes: Optional[str] = None,
) -> InventoryTransaction:
    txn = get_transaction(db, txn_id)
    new_type = coerce_type(type) if type is not None else txn.type
    new_quantity = quantity if quantity is not None else txn.quantity
    _validate_quantity(new_type, new_quantity)

    if new_type != txn.type or new_quantity != txn.quantity:
        _ensure_reversible(db, txn)
        if new_type == ADJUST and _later_entries(db, txn).first() is not None:
            raise PreconditionNotMet("Only the latest transaction of a part can become an ADJUST")
        part = _get_part(db, txn.part_id)
        txn.type = new_type
        txn.quantity = new_quantity
        db.flush()
        balance = _restate(db, part)
        log.info("inventory_transaction_restated", transaction_id=str(txn.id), part_id=str(part.id), balance=balance)

    if reference_type is not None:
        txn.reference_type = coerce_reference_type(reference_type)
    if reference_id is not None:
        txn.reference_id = reference_id
    if notes is not None:
        txn.notes = notes
    db.flush()
    return txn


def delete_transaction(db: Session, txn_id: uuid.UUID) -> None:
    txn = get_transaction(db, txn_id)
    _ensure_reversible(db, txn)
    part = _get_part(db, txn.part_id)
    db.delete(txn)
    db.flush()
    balance = _restate(db, part)
    log.info("inventory_transaction_deleted", transaction_id=str(txn_id), part_id=str(part.id), balance=balance)


def quick_adjustment(
    db: Session,
    *,
    part_id: uuid.UUID,
    new_quantity: int,
    reason: Optional[str] = None,
    actor_id: Optional[uuid.UUID] = None,
) -> InventoryTransaction:
    return apply_transaction(
        db,
        part_id=part_id,
        type=ADJUST,
        quantity=new_quantity,
        reference_type=ReferenceType.ADJUSTMENT.value,
        notes=reason or "Quick stock adjustment",
        actor_id=actor_id,
    )


def change_stock(
    db: Session,
    *,
    part_id: uuid.UUID,
    operation: str,
    quantity: int,
    actor_id: Optional[uuid.UUID] = None,
    notes: Optional[str] = None,
) -> InventoryTransaction:
    """Manual add/remove/set from the part screen."""
    txn_type = {"add": IN, "remove": OUT, "set": ADJUST}.get(operation)
    if txn_type is None:
        raise ValidationFailed("operation must be add, remove or set")
    return apply_transaction(
        db,
        part_id=part_id,
        type=txn_type,
        quantity=quantity,
        reference_type=ReferenceType.MANUAL.value,
        actor_id=actor_id,
        notes=notes or f"Manual stock {operation}",
    )


# ---------- Reads ----------
def _day_bounds(date_from: Optional[date], date_to: Optional[date]):
    start = datetime.combine(date_from, time.min, tzinfo=timezone.utc) if date_from else None
    end = datetime.combine(date_to, time.max, tzinfo=timezone.utc) if date_to else None
    return start, end


def _filtered(db: Session, filters: dict):
    q = db.query(InventoryTransaction).join(MachinePart, InventoryTransaction.part_id == MachinePart.id)
    if filters.get("part_id"):
        q = q.filter(InventoryTransaction.part_id == filters["part_id"])
    if filters.get("machine_id"):
        q = q.filter(MachinePart.machine_id == filters["machine_id"])
    if filters.get("type"):
        q = q.filter(InventoryTransaction.type == coerce_type(filters["type"]))
    if filters.get("reference_type"):
        q = q.filter(InventoryTransaction.reference_type == coerce_reference_type(filters["reference_type"]))
    if filters.get("reference_id"):
        q = q.filter(InventoryTransaction.reference_id == str(filters["reference_id"]))
    if filters.get("performed_by"):
        q = q.filter(InventoryTransaction.performed_by == filters["performed_by"])
    start, end = _day_bounds(filters.get("date_from"), filters.get("date_to"))
    if start:
        q = q.filter(InventoryTransaction.created_at >= start)
    if end:
        q = q.filter(InventoryTransaction.created_at <= end)
    if filters.get("search"):
        term = f"%{filters['search']}%"
        q = q.filter(
            or_(
                MachinePart.part_code.ilike(term),
                MachinePart.part_name.ilike(term),
                InventoryTransaction.notes.ilike(term),
                InventoryTransaction.reference_id.ilike(term),
            )
        )
    return q


def list_transactions(db: Session, filters: dict, page: int, limit: int) -> Tuple[List[InventoryTransaction], int]:
    q = _filtered(db, filters)
    total = q.count()
    items = (
        q.options(joinedload(InventoryTransaction.part))
        .order_by(InventoryTransaction.created_at.desc(), InventoryTransaction.id.desc())
        .offset((page - 1) * limit)
        .limit(limit)
        .all()
    )
    return items, total


def inventory_summary(db: Session, part_id: uuid.UUID) -> dict:
    part = db.query(MachinePart).filter(MachinePart.id == part_id).first()
    if not part:
        raise NotFound("Machine part not found")
    entries = _part_entries(db, part_id)
    total_in = sum(t.quantity for t in entries if t.type == IN)
    total_out = sum(t.quantity for t in entries if t.type == OUT)
    adjustments = sum(1 for t in entries if t.type == ADJUST)
    folded = ledger_balance((t.type, t.quantity) for t in entries)
    last = entries[-1] if entries else None
    return {
        "part_id": str(part.id),
        "part_code": part.part_code,
        "quantity_on_hand": part.quantity_on_hand,
        "ledger_balance": folded,
        "in_sync": folded == part.quantity_on_hand,
        "total_in": total_in,
        "total_out": total_out,
        "total_adjustments": adjustments,
        "transaction_count": len(entries),
        "last_transaction": {
            "id": str(last.id),
            "type": last.type,
            "quantity": last.quantity,
            "created_at": last.created_at.isoformat(),
        }
        if last
        else None,
    }


def audit_report(db: Session, filters: dict) -> Tuple[List[InventoryTransaction], dict]:
    rows = (
        _filtered(db, filters)
        .options(joinedload(InventoryTransaction.part).joinedload(MachinePart.machine).joinedload(Machine.company))
        .order_by(InventoryTransaction.created_at.desc(), InventoryTransaction.id.desc())
        .all()
    )
    by_type = defaultdict(lambda: {"count": 0, "quantity": 0})
    by_reference = Counter()
    by_user = Counter()
    by_machine = Counter()
    by_company = Counter()
    total_value = Decimal("0")
    parts, users, machines, companies = set(), set(), set(), set()

    for t in rows:
        by_type[t.type]["count"] += 1
        by_type[t.type]["quantity"] += t.quantity
        by_reference[t.reference_type] += 1
        part = t.part
        if part.cost_per_unit is not None:
            total_value += Decimal(part.cost_per_unit) * t.quantity
        parts.add(part.id)
        if t.performed_by:
            users.add(t.performed_by)
            by_user[str(t.performed_by)] += 1
        machine = part.machine
        if machine:
            machines.add(machine.id)
            by_machine[machine.machine_code] += 1
            if machine.company:
                companies.add(machine.company.id)
                by_company[machine.company.name] += 1

    stats = {
        "total_transactions": len(rows),
        "total_in": by_type[IN]["quantity"] if IN in by_type else 0,
        "total_out": by_type[OUT]["quantity"] if OUT in by_type else 0,
        "total_adjustments": by_type[ADJUST]["count"] if ADJUST in by_type else 0,
        "total_value": float(total_value),
        "unique_parts": len(parts),
        "unique_users": len(users),
        "unique_machines": len(machines),
        "unique_companies": len(companies),
        "by_type": dict(by_type),
        "by_reference_type": dict(by_reference),
        "by_user": dict(by_user),
        "by_machine": dict(by_machine),
        "by_company": dict(by_company),
    }
    return rows, stats
