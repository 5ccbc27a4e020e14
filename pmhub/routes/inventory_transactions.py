import uuid
from datetime import date
from typing import Optional

from fastapi import APIRouter, Depends, Query
from sqlalchemy.orm import Session

from ..auth.security import get_current_user, require_admin, require_staff
from ..db import get_db, unit_of_work
from ..models.models import User
from ..responses import clamp_paging, dump, ok, paged
from ..schemas.common import ReferenceType, TransactionType, plain
from ..schemas.inventory import (
    InventoryTransactionCreate,
    InventoryTransactionResponse,
    InventoryTransactionUpdate,
    QuickAdjustmentRequest,
)
from ..services import inventory


router = APIRouter(prefix="/api/inventory-transactions", tags=["inventory"])


def _filters(
    part_id: Optional[uuid.UUID] = None,
    machine_id: Optional[uuid.UUID] = None,
    type: Optional[TransactionType] = None,
    reference_type: Optional[ReferenceType] = None,
    reference_id: Optional[str] = None,
    performed_by: Optional[uuid.UUID] = None,
    date_from: Optional[date] = None,
    date_to: Optional[date] = None,
    search: Optional[str] = None,
) -> dict:
    return plain(
        {
            "part_id": part_id,
            "machine_id": machine_id,
            "type": type,
            "reference_type": reference_type,
            "reference_id": reference_id,
            "performed_by": performed_by,
            "date_from": date_from,
            "date_to": date_to,
            "search": search,
        }
    )


@router.post("", status_code=201)
def create_transaction(req: InventoryTransactionCreate, db: Session = Depends(get_db), user: User = Depends(require_staff)):
    data = plain(req.model_dump())
    with unit_of_work(db):
        txn = inventory.apply_transaction(db, actor_id=user.id, **data)
    txn = inventory.get_transaction(db, txn.id)
    return ok(dump(InventoryTransactionResponse, txn), message="Transaction recorded")


@router.get("")
def list_transactions(
    filters: dict = Depends(_filters),
    page: int = Query(1),
    limit: int = Query(10),
    db: Session = Depends(get_db),
    _=Depends(get_current_user),
):
    page, limit = clamp_paging(page, limit)
    rows, total = inventory.list_transactions(db, filters, page, limit)
    return paged(dump(InventoryTransactionResponse, rows), page, limit, total)


@router.get("/part/{part_id}")
def transactions_for_part(
    part_id: uuid.UUID,
    page: int = Query(1),
    limit: int = Query(20),
    db: Session = Depends(get_db),
    _=Depends(get_current_user),
):
    page, limit = clamp_paging(page, limit)
    rows, total = inventory.list_transactions(db, {"part_id": part_id}, page, limit)
    return paged(dump(InventoryTransactionResponse, rows), page, limit, total)


@router.get("/summary/{part_id}")
def part_summary(part_id: uuid.UUID, db: Session = Depends(get_db), _=Depends(get_current_user)):
    return ok(inventory.inventory_summary(db, part_id))


@router.get("/audit-report")
def audit_report(filters: dict = Depends(_filters), db: Session = Depends(get_db), _=Depends(require_staff)):
    rows, stats = inventory.audit_report(db, filters)
    return ok({"transactions": dump(InventoryTransactionResponse, rows), "statistics": stats})


@router.post("/quick-adjustment")
def quick_adjustment(req: QuickAdjustmentRequest, db: Session = Depends(get_db), user: User = Depends(require_staff)):
    with unit_of_work(db):
        txn = inventory.quick_adjustment(
            db, part_id=req.part_id, new_quantity=req.new_quantity, reason=req.reason, actor_id=user.id
        )
    txn = inventory.get_transaction(db, txn.id)
    return ok(dump(InventoryTransactionResponse, txn), message="Stock adjusted")


@router.get("/{transaction_id}")
def get_transaction(transaction_id: uuid.UUID, db: Session = Depends(get_db), _=Depends(get_current_user)):
    return ok(dump(InventoryTransactionResponse, inventory.get_transaction(db, transaction_id)))


@router.put("/{transaction_id}")
def update_transaction(
    transaction_id: uuid.UUID, req: InventoryTransactionUpdate, db: Session = Depends(get_db), _=Depends(require_admin)
):
    with unit_of_work(db):
        txn = inventory.update_transaction(db, transaction_id, **plain(req.model_dump(exclude_unset=True)))
    db.refresh(txn)
    return ok(dump(InventoryTransactionResponse, txn), message="Transaction updated")


@router.delete("/{transaction_id}")
def delete_transaction(transaction_id: uuid.UUID, db: Session = Depends(get_db), _=Depends(require_admin)):
    with unit_of_work(db):
        inventory.delete_transaction(db, transaction_id)
    return ok(message="Transaction deleted")
