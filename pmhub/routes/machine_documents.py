import uuid
from typing import Optional

from fastapi import APIRouter, Depends, File, Form, UploadFile
from fastapi.responses import RedirectResponse
from sqlalchemy.orm import Session

from ..auth.security import get_current_user, require_staff
from ..db import get_db, unit_of_work
from ..errors import NotFound
from ..models.models import User
from ..responses import dump, ok
from ..schemas.common import plain
from ..schemas.machines import MachineDocumentResponse, MachineDocumentUpdate
from ..services import machine_documents as document_service
from ..services.uploads import DOCUMENT_TYPES, discard_files, get_storage, store_upload


router = APIRouter(prefix="/api/machine-documents", tags=["machine-documents"])


@router.get("/machine/{machine_id}")
def documents_for_machine(machine_id: uuid.UUID, db: Session = Depends(get_db), _=Depends(get_current_user)):
    return ok(dump(MachineDocumentResponse, document_service.list_documents(db, machine_id)))


@router.get("/machine/{machine_id}/type/{document_type}")
def documents_by_type(
    machine_id: uuid.UUID, document_type: str, db: Session = Depends(get_db), _=Depends(get_current_user)
):
    return ok(dump(MachineDocumentResponse, document_service.list_documents(db, machine_id, document_type)))


@router.get("/machine/{machine_id}/stats")
def document_stats(machine_id: uuid.UUID, db: Session = Depends(get_db), _=Depends(get_current_user)):
    return ok(document_service.document_stats(db, machine_id))


@router.get("/{document_id}")
def get_document(document_id: uuid.UUID, db: Session = Depends(get_db), _=Depends(get_current_user)):
    return ok(dump(MachineDocumentResponse, document_service.get_document(db, document_id)))


@router.post("/machine/{machine_id}/upload", status_code=201)
def upload_document(
    machine_id: uuid.UUID,
    file: UploadFile = File(...),
    title: Optional[str] = Form(None),
    document_type: Optional[str] = Form(None),
    description: Optional[str] = Form(None),
    db: Session = Depends(get_db),
    user: User = Depends(require_staff),
):
    document_service.list_documents(db, machine_id)  # 404 before anything is stored
    stored = store_upload(file, folder="machine-documents", allowed_types=DOCUMENT_TYPES)
    try:
        with unit_of_work(db):
            doc = document_service.create_document(
                db,
                machine_id=machine_id,
                title=title,
                document_type=document_type,
                description=description,
                file_name=stored.file_name,
                file_url=stored.url,
                file_size=stored.size,
                mime_type=stored.mime_type,
                uploaded_by=user.id,
            )
    except Exception:
        discard_files([stored.url])
        raise
    db.refresh(doc)
    return ok(dump(MachineDocumentResponse, doc), message="Document uploaded")


@router.put("/{document_id}")
def update_document(
    document_id: uuid.UUID, req: MachineDocumentUpdate, db: Session = Depends(get_db), _=Depends(require_staff)
):
    with unit_of_work(db):
        doc = document_service.update_document(db, document_id, plain(req.model_dump(exclude_unset=True)))
    db.refresh(doc)
    return ok(dump(MachineDocumentResponse, doc), message="Document updated")


@router.delete("/{document_id}")
def delete_document(document_id: uuid.UUID, db: Session = Depends(get_db), _=Depends(require_staff)):
    with unit_of_work(db):
        url = document_service.delete_document(db, document_id)
    discard_files([url])
    return ok(message="Document deleted")


@router.get("/{document_id}/download")
def download_document(document_id: uuid.UUID, db: Session = Depends(get_db), _=Depends(get_current_user)):
    doc = document_service.get_document(db, document_id)
    storage = get_storage()
    key = storage.key_from_url(doc.file_url)
    target = storage.get_download_url(key) if key else doc.file_url
    if not target:
        raise NotFound("Document file is missing")
    return RedirectResponse(url=target, status_code=307)
