import uuid
from typing import List, Optional

import structlog
from sqlalchemy import func
from sqlalchemy.orm import Session

from ..errors import NotFound
from ..models.models import Machine, MachineDocument
from ..schemas.common import DocumentType, normalize_choice


log = structlog.get_logger(__name__)


def _require_machine(db: Session, machine_id: uuid.UUID) -> None:
    if not db.query(Machine.id).filter(Machine.id == machine_id).first():
        raise NotFound("Machine not found")


def list_documents(db: Session, machine_id: uuid.UUID, document_type: Optional[str] = None) -> List[MachineDocument]:
    _require_machine(db, machine_id)
    q = db.query(MachineDocument).filter(MachineDocument.machine_id == machine_id)
    if document_type:
        q = q.filter(MachineDocument.document_type == (normalize_choice(document_type, DocumentType) or "OTHER"))
    return q.order_by(MachineDocument.created_at.desc()).all()


def get_document(db: Session, document_id: uuid.UUID) -> MachineDocument:
    doc = db.query(MachineDocument).filter(MachineDocument.id == document_id).first()
    if not doc:
        raise NotFound("Document not found")
    return doc


def document_stats(db: Session, machine_id: uuid.UUID) -> dict:
    _require_machine(db, machine_id)
    rows = (
        db.query(MachineDocument.document_type, func.count(MachineDocument.id))
        .filter(MachineDocument.machine_id == machine_id)
        .group_by(MachineDocument.document_type)
        .all()
    )
    total_size = (
        db.query(func.coalesce(func.sum(MachineDocument.file_size), 0))
        .filter(MachineDocument.machine_id == machine_id)
        .scalar()
    )
    by_type = {t: c for t, c in rows}
    return {"total": sum(by_type.values()), "by_type": by_type, "total_size": int(total_size or 0)}


def create_document(
    db: Session,
    *,
    machine_id: uuid.UUID,
    title: str,
    document_type: Optional[str],
    description: Optional[str],
    file_name: str,
    file_url: str,
    file_size: int,
    mime_type: Optional[str],
    uploaded_by: Optional[uuid.UUID],
) -> MachineDocument:
    _require_machine(db, machine_id)
    doc = MachineDocument(
        machine_id=machine_id,
        title=title or file_name,
        document_type=normalize_choice(document_type, DocumentType) or DocumentType.OTHER.value,
        description=description,
        file_name=file_name,
        file_url=file_url,
        file_size=file_size,
        mime_type=mime_type,
        uploaded_by=uploaded_by,
    )
    db.add(doc)
    db.flush()
    log.info("machine_document_created", document_id=str(doc.id), machine_id=str(machine_id))
    return doc


def update_document(db: Session, document_id: uuid.UUID, changes: dict) -> MachineDocument:
    doc = get_document(db, document_id)
    for k, v in changes.items():
        setattr(doc, k, v.value if hasattr(v, "value") else v)
    db.flush()
    return doc


def delete_document(db: Session, document_id: uuid.UUID) -> str:
    doc = get_document(db, document_id)
    url = doc.file_url
    db.delete(doc)
    db.flush()
    return url
