import uuid
from typing import Optional

from fastapi import APIRouter, Depends, Query
from sqlalchemy.orm import Session

from ..auth.security import get_current_user, require_admin, require_staff
from ..db import get_db, unit_of_work
from ..models.models import User
from ..responses import clamp_paging, dump, ok, paged
from ..schemas.inventory import (
    InventoryTransactionResponse,
    MachinePartCreate,
    MachinePartResponse,
    MachinePartUpdate,
    StockUpdateRequest,
)
from ..services import inventory
from ..services import machine_parts as part_service


router = APIRouter(prefix="/api/machine-parts", tags=["machine-parts"])


@router.get("")
def list_parts(
    machine_id: Optional[uuid.UUID] = None,
    category: Optional[str] = None,
    search: Optional[str] = None,
    low_stock: bool = False,
    page: int = Query(1),
    limit: int = Query(10),
    db: Session = Depends(get_db),
    _=Depends(get_current_user),
):
    page, limit = clamp_paging(page, limit)
    rows, total = part_service.list_parts(
        db, machine_id=machine_id, category=category, search=search, low_stock=low_stock, page=page, limit=limit
    )
    return paged(dump(MachinePartResponse, rows), page, limit, total)


@router.get("/categories")
def part_categories(db: Session = Depends(get_db), _=Depends(get_current_user)):
    return ok(part_service.categories(db))


@router.get("/statistics")
def part_statistics(machine_id: Optional[uuid.UUID] = None, db: Session = Depends(get_db), _=Depends(get_current_user)):
    return ok(part_service.part_statistics(db, machine_id))


@router.get("/machine/{machine_id}")
def parts_for_machine(machine_id: uuid.UUID, db: Session = Depends(get_db), _=Depends(get_current_user)):
    return ok(dump(MachinePartResponse, part_service.parts_for_machine(db, machine_id)))


@router.get("/machine/{machine_id}/search")
def search_parts(machine_id: uuid.UUID, q: str = Query(""), db: Session = Depends(get_db), _=Depends(get_current_user)):
    return ok(dump(MachinePartResponse, part_service.search_parts(db, machine_id, q)))


@router.get("/machine/{machine_id}/low-stock")
def low_stock(machine_id: uuid.UUID, db: Session = Depends(get_db), _=Depends(get_current_user)):
    return ok(dump(MachinePartResponse, part_service.low_stock_parts(db, machine_id)))


@router.get("/{part_id}")
def get_part(part_id: uuid.UUID, db: Session = Depends(get_db), _=Depends(get_current_user)):
    return ok(dump(MachinePartResponse, part_service.get_part(db, part_id)))


@router.post("", status_code=201)
def create_part(req: MachinePartCreate, db: Session = Depends(get_db), user: User = Depends(require_staff)):
    with unit_of_work(db):
        part = part_service.create_part(db, req.model_dump(), user.id)
    db.refresh(part)
    return ok(dump(MachinePartResponse, part), message="Part created")


@router.put("/{part_id}")
def update_part(part_id: uuid.UUID, req: MachinePartUpdate, db: Session = Depends(get_db), user: User = Depends(require_staff)):
    with unit_of_work(db):
        part = part_service.update_part(db, part_id, req.model_dump(exclude_unset=True), user.id)
    db.refresh(part)
    return ok(dump(MachinePartResponse, part), message="Part updated")


@router.patch("/{part_id}/stock")
def update_stock(part_id: uuid.UUID, req: StockUpdateRequest, db: Session = Depends(get_db), user: User = Depends(require_staff)):
    with unit_of_work(db):
        txn = inventory.change_stock(
            db, part_id=part_id, operation=req.operation, quantity=req.quantity, actor_id=user.id, notes=req.notes
        )
    part = part_service.get_part(db, part_id)
    return ok(
        {"part": dump(MachinePartResponse, part), "transaction": dump(InventoryTransactionResponse, txn)},
        message="Stock updated",
    )


@router.delete("/{part_id}")
def delete_part(part_id: uuid.UUID, db: Session = Depends(get_db), _=Depends(require_admin)):
    with unit_of_work(db):
        part_service.delete_part(db, part_id)
    return ok(message="Part deleted")
