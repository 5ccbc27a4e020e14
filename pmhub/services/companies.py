import uuid
from typing import Optional

import httpx
import structlog
from sqlalchemy import func
from sqlalchemy.orm import Session

from ..config import settings
from ..errors import ConflictOrDuplicate, NotFound, ValidationFailed, Internal
from ..models.models import Company, Machine, User
from .query import contains_any, paginate


log = structlog.get_logger(__name__)


def list_companies(db: Session, *, search: Optional[str], is_active: Optional[bool], page: int, limit: int):
    q = db.query(Company)
    if search:
        q = q.filter(contains_any(search, Company.name, Company.email, Company.detail))
    if is_active is not None:
        q = q.filter(Company.is_active.is_(is_active))
    return paginate(q.order_by(Company.name.asc()), page, limit)


def get_company(db: Session, company_id: uuid.UUID) -> Company:
    company = db.query(Company).filter(Company.id == company_id).first()
    if not company:
        raise NotFound("Company not found")
    return company


def company_counts(db: Session, company_id: uuid.UUID) -> dict:
    return {
        "users": db.query(func.count(User.id)).filter(User.company_id == company_id).scalar() or 0,
        "machines": db.query(func.count(Machine.id)).filter(Machine.company_id == company_id).scalar() or 0,
    }


def company_stats(db: Session) -> dict:
    total = db.query(func.count(Company.id)).scalar() or 0
    active = db.query(func.count(Company.id)).filter(Company.is_active.is_(True)).scalar() or 0
    with_machines = db.query(func.count(func.distinct(Machine.company_id))).filter(Machine.company_id.isnot(None)).scalar() or 0
    return {"total": total, "active": active, "inactive": total - active, "with_machines": with_machines}


def _ensure_unique_name(db: Session, name: str, exclude_id: Optional[uuid.UUID] = None) -> None:
    q = db.query(Company).filter(func.lower(Company.name) == name.strip().lower())
    if exclude_id:
        q = q.filter(Company.id != exclude_id)
    if q.first():
        raise ConflictOrDuplicate("Company name already exists")


def create_company(db: Session, data: dict) -> Company:
    _ensure_unique_name(db, data["name"])
    company = Company(**data)
    db.add(company)
    db.flush()
    log.info("company_created", company_id=str(company.id))
    return company


def update_company(db: Session, company_id: uuid.UUID, changes: dict) -> Company:
    company = get_company(db, company_id)
    if changes.get("name"):
        _ensure_unique_name(db, changes["name"], exclude_id=company.id)
    for k, v in changes.items():
        setattr(company, k, v)
    db.flush()
    return company


def delete_company(db: Session, company_id: uuid.UUID) -> None:
    company = get_company(db, company_id)
    users = db.query(func.count(User.id)).filter(User.company_id == company.id).scalar() or 0
    if users > 0:
        raise ConflictOrDuplicate("Cannot delete company with active users")
    db.delete(company)
    db.flush()
    log.info("company_deleted", company_id=str(company_id))


def _extract_rows(payload) -> list:
    if isinstance(payload, list):
        return payload
    if isinstance(payload, dict):
        for key in ("result", "data", "companies"):
            rows = payload.get(key)
            if isinstance(rows, list):
                return rows
    raise ValidationFailed("Invalid sync response: expected a list of companies")


def fetch_remote_companies(client: Optional[httpx.Client] = None) -> list:
    if not settings.company_sync_url:
        raise ValidationFailed("COMPANY_SYNC_URL is not configured")
    headers = {"Content-Type": "application/json"}
    if settings.company_sync_token:
        headers["Authorization"] = f"Bearer {settings.company_sync_token}"
    own_client = client is None
    client = client or httpx.Client(timeout=30.0)
    try:
        resp = client.get(settings.company_sync_url, headers=headers)
        resp.raise_for_status()
        return _extract_rows(resp.json())
    except httpx.HTTPError as e:
        log.warning("company_sync_fetch_failed", error=str(e))
        raise Internal("Could not reach the company directory") from e
    finally:
        if own_client:
            client.close()


def sync_companies(db: Session, rows: list) -> dict:
    """Upsert companies from the upstream directory, matching on external id
    first and then on name."""
    stats = {"total": len(rows), "created": 0, "updated": 0, "skipped": 0, "errors": []}
    for row in rows:
        name = (row.get("name") or "").strip() if isinstance(row, dict) else ""
        if not name:
            stats["skipped"] += 1
            continue
        external_id = str(row["id"]) if row.get("id") is not None else None
        fields = {
            "name": name,
            "email": row.get("email") or None,
            "phone": row.get("tel") or row.get("phone") or None,
            "address": row.get("address") or None,
            "detail": row.get("detail") or None,
        }
        company = None
        if external_id:
            company = db.query(Company).filter(Company.external_id == external_id).first()
        if company is None:
            company = db.query(Company).filter(func.lower(Company.name) == name.lower()).first()
        if company is None:
            db.add(Company(external_id=external_id, **fields))
            db.flush()
            stats["created"] += 1
            continue
        clash = (
            db.query(Company)
            .filter(func.lower(Company.name) == name.lower(), Company.id != company.id)
            .first()
        )
        if clash:
            stats["errors"].append({"name": name, "error": "name already used by another company"})
            continue
        for k, v in fields.items():
            setattr(company, k, v)
        if external_id:
            company.external_id = external_id
        db.flush()
        stats["updated"] += 1
    log.info("company_sync_finished", **{k: v for k, v in stats.items() if k != "errors"}, errors=len(stats["errors"]))
    return stats
