import uuid
from datetime import date
from typing import Optional

from fastapi import APIRouter, Depends, Query
from sqlalchemy.orm import Session

from ..auth.scope import AccessScope, current_scope
from ..db import get_db
from ..responses import clamp_paging, dump, ok, paged
from ..schemas.pm import PMScheduleResponse
from ..services import history as history_service


router = APIRouter(prefix="/api/history", tags=["history"])


def _filters(
    status: Optional[str] = None,
    machine_id: Optional[uuid.UUID] = None,
    priority: Optional[str] = None,
    date_from: Optional[date] = None,
    date_to: Optional[date] = None,
    technician_id: Optional[uuid.UUID] = None,
    search: Optional[str] = None,
) -> dict:
    return {
        "status": status,
        "machine_id": machine_id,
        "priority": priority,
        "date_from": date_from,
        "date_to": date_to,
        "technician_id": technician_id,
        "search": search,
    }


@router.get("")
def list_history(
    filters: dict = Depends(_filters),
    sort_by: Optional[str] = None,
    sort_order: str = "desc",
    page: int = Query(1),
    limit: int = Query(10),
    db: Session = Depends(get_db),
    scope: AccessScope = Depends(current_scope),
):
    page, limit = clamp_paging(page, limit)
    rows, total = history_service.list_history(
        db, scope, sort_by=sort_by, sort_order=sort_order, page=page, limit=limit, **filters
    )
    return paged(dump(PMScheduleResponse, rows), page, limit, total, with_links=True)


@router.get("/stats")
def history_stats(filters: dict = Depends(_filters), db: Session = Depends(get_db), scope: AccessScope = Depends(current_scope)):
    return ok(history_service.history_stats(db, scope, **filters))


@router.get("/machines")
def history_machines(db: Session = Depends(get_db), scope: AccessScope = Depends(current_scope)):
    return ok(history_service.unique_machines(db, scope))


@router.get("/technicians")
def history_technicians(db: Session = Depends(get_db), scope: AccessScope = Depends(current_scope)):
    return ok(history_service.unique_technicians(db, scope))
