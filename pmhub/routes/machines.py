import uuid
from typing import Optional

from fastapi import APIRouter, Depends, File, Query, Response, UploadFile
from sqlalchemy.orm import Session

from ..auth.security import get_current_user, require_admin, require_staff
from ..db import get_db, unit_of_work
from ..models.models import Machine
from ..responses import clamp_paging, dump, ok, paged
from ..schemas.common import MachineStatus, plain
from ..schemas.machines import BulkStatusRequest, MachineBrief, MachineCreate, MachineResponse, MachineUpdate
from ..services import machines as machine_service
from ..services.uploads import discard_files, store_upload


router = APIRouter(prefix="/api/machines", tags=["machines"])


@router.get("")
def list_machines(
    status: Optional[MachineStatus] = None,
    category: Optional[str] = None,
    company_id: Optional[uuid.UUID] = None,
    search: Optional[str] = None,
    page: int = Query(1),
    limit: int = Query(10),
    db: Session = Depends(get_db),
    _=Depends(get_current_user),
):
    page, limit = clamp_paging(page, limit)
    rows, total = machine_service.list_machines(
        db,
        status=status.value if status else None,
        category=category,
        company_id=company_id,
        search=search,
        page=page,
        limit=limit,
    )
    overview = machine_service.maintenance_overview(db, [m.id for m in rows])
    items = [{**dump(MachineResponse, m), **overview.get(m.id, {})} for m in rows]
    return paged(items, page, limit, total)


@router.get("/stats")
def machine_stats(db: Session = Depends(get_db), _=Depends(get_current_user)):
    return ok(machine_service.machine_stats(db))


@router.get("/search")
def search_machines(q: str = Query(""), db: Session = Depends(get_db), _=Depends(get_current_user)):
    return ok(dump(MachineBrief, machine_service.search_machines(db, q)))


@router.patch("/bulk-status")
def bulk_status(req: BulkStatusRequest, db: Session = Depends(get_db), _=Depends(require_admin)):
    with unit_of_work(db):
        count = machine_service.bulk_update_status(db, req.machine_ids, req.status.value)
    return ok({"updated": count}, message=f"{count} machines updated")


@router.get("/company/{company_id}")
def machines_for_company(
    company_id: uuid.UUID,
    page: int = Query(1),
    limit: int = Query(50),
    db: Session = Depends(get_db),
    _=Depends(get_current_user),
):
    page, limit = clamp_paging(page, limit)
    rows, total = machine_service.list_machines(db, company_id=company_id, page=page, limit=limit)
    return paged(dump(MachineResponse, rows), page, limit, total)


@router.get("/code/{code}")
def machine_by_code(code: str, db: Session = Depends(get_db), _=Depends(get_current_user)):
    return ok(dump(MachineResponse, machine_service.get_machine_by_code(db, code)))


@router.get("/{machine_id}")
def get_machine(machine_id: uuid.UUID, db: Session = Depends(get_db), _=Depends(get_current_user)):
    machine = machine_service.get_machine(db, machine_id)
    overview = machine_service.maintenance_overview(db, [machine.id])
    return ok({**dump(MachineResponse, machine), **overview.get(machine.id, {})})


@router.post("", status_code=201)
def create_machine(req: MachineCreate, db: Session = Depends(get_db), _=Depends(require_admin)):
    with unit_of_work(db):
        machine = machine_service.create_machine(db, plain(req.model_dump()))
    db.refresh(machine)
    return ok(dump(MachineResponse, machine), message="Machine created")


@router.put("/{machine_id}")
def update_machine(machine_id: uuid.UUID, req: MachineUpdate, db: Session = Depends(get_db), _=Depends(require_staff)):
    with unit_of_work(db):
        machine = machine_service.update_machine(db, machine_id, plain(req.model_dump(exclude_unset=True)))
    db.refresh(machine)
    return ok(dump(MachineResponse, machine), message="Machine updated")


@router.delete("/{machine_id}")
def delete_machine(machine_id: uuid.UUID, db: Session = Depends(get_db), _=Depends(require_admin)):
    with unit_of_work(db):
        urls = machine_service.delete_machine(db, machine_id)
    discard_files(urls)
    return ok(message="Machine deleted")


@router.post("/{machine_id}/upload-image")
def upload_image(
    machine_id: uuid.UUID,
    file: UploadFile = File(...),
    db: Session = Depends(get_db),
    _=Depends(require_staff),
):
    machine_service.get_machine(db, machine_id)
    stored = store_upload(file, folder="machine-images")
    try:
        with unit_of_work(db):
            previous = machine_service.replace_image(db, machine_id, stored.url)
    except Exception:
        discard_files([stored.url])
        raise
    discard_files([previous])
    return ok({"image_url": stored.url}, message="Image uploaded")


@router.delete("/{machine_id}/image")
def delete_image(machine_id: uuid.UUID, db: Session = Depends(get_db), _=Depends(require_staff)):
    with unit_of_work(db):
        previous = machine_service.replace_image(db, machine_id, None)
    discard_files([previous])
    return ok(message="Image removed")


@router.get("/{machine_id}/qr")
def machine_qr(machine_id: uuid.UUID, size: int = Query(10, ge=1, le=40), db: Session = Depends(get_db), _=Depends(get_current_user)):
    machine: Machine = machine_service.get_machine(db, machine_id)
    png = machine_service.generate_qr_png(machine_service.qr_payload(machine), box_size=size)
    return Response(
        content=png,
        media_type="image/png",
        headers={"Content-Disposition": f'inline; filename="{machine.machine_code}-qr.png"'},
    )
