import uuid
from typing import Optional

from fastapi import APIRouter, Depends, Query
from sqlalchemy.orm import Session

from ..auth.security import get_current_user, require_admin
from ..db import get_db, unit_of_work
from ..responses import clamp_paging, dump, ok, paged
from ..schemas.companies import CompanyCreate, CompanyResponse, CompanyUpdate
from ..services import companies as company_service


router = APIRouter(prefix="/api/companies", tags=["companies"])


@router.get("")
def list_companies(
    search: Optional[str] = None,
    is_active: Optional[bool] = None,
    page: int = Query(1),
    limit: int = Query(10),
    db: Session = Depends(get_db),
    _=Depends(get_current_user),
):
    page, limit = clamp_paging(page, limit)
    rows, total = company_service.list_companies(db, search=search, is_active=is_active, page=page, limit=limit)
    return paged(dump(CompanyResponse, rows), page, limit, total)


@router.get("/stats")
def company_stats(db: Session = Depends(get_db), _=Depends(get_current_user)):
    return ok(company_service.company_stats(db))


@router.post("/sync")
def sync_companies(db: Session = Depends(get_db), _=Depends(require_admin)):
    rows = company_service.fetch_remote_companies()
    with unit_of_work(db):
        stats = company_service.sync_companies(db, rows)
    return ok(stats, message=f"Synced {stats['created'] + stats['updated']} companies")


@router.get("/{company_id}")
def get_company(company_id: uuid.UUID, db: Session = Depends(get_db), _=Depends(get_current_user)):
    company = company_service.get_company(db, company_id)
    data = dump(CompanyResponse, company)
    data["counts"] = company_service.company_counts(db, company_id)
    return ok(data)


@router.post("", status_code=201)
def create_company(req: CompanyCreate, db: Session = Depends(get_db), _=Depends(require_admin)):
    with unit_of_work(db):
        company = company_service.create_company(db, req.model_dump())
    db.refresh(company)
    return ok(dump(CompanyResponse, company), message="Company created")


@router.put("/{company_id}")
def update_company(company_id: uuid.UUID, req: CompanyUpdate, db: Session = Depends(get_db), _=Depends(require_admin)):
    with unit_of_work(db):
        company = company_service.update_company(db, company_id, req.model_dump(exclude_unset=True))
    db.refresh(company)
    return ok(dump(CompanyResponse, company), message="Company updated")


@router.delete("/{company_id}")
def delete_company(company_id: uuid.UUID, db: Session = Depends(get_db), _=Depends(require_admin)):
    with unit_of_work(db):
        company_service.delete_company(db, company_id)
    return ok(message="Company deleted")
