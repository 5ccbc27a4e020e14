from typing import Optional

from fastapi import APIRouter, Depends, File, Form, UploadFile
from sqlalchemy.orm import Session

from ..auth.security import get_current_user, require_staff
from ..db import get_db, unit_of_work
from ..errors import ValidationFailed
from ..responses import ok
from ..services import pm_schedules as pm_service
from ..services.uploads import IMAGE_TYPES, discard_files, store_data_url, store_upload


router = APIRouter(prefix="/api/upload", tags=["uploads"])


def _describe(stored) -> dict:
    return {"url": stored.url, "file_name": stored.file_name, "size": stored.size, "mime_type": stored.mime_type}


@router.post("/image", status_code=201)
def upload_image(
    file: UploadFile = File(...),
    folder: str = Form("pm-photos"),
    _=Depends(get_current_user),
):
    if folder not in ("pm-photos", "repair-photos", "machine-images"):
        raise ValidationFailed(f"Unknown upload folder: {folder}")
    stored = store_upload(file, folder=folder, allowed_types=IMAGE_TYPES)
    return ok(_describe(stored), message="Image uploaded")


@router.post("/signature", status_code=201)
def upload_signature(
    signature: Optional[str] = Form(None),
    file: Optional[UploadFile] = File(None),
    _=Depends(get_current_user),
):
    """Accepts a signature pad's base64 data URL or a plain image upload."""
    if signature:
        stored = store_data_url(signature, folder="signatures")
    elif file is not None:
        stored = store_upload(file, folder="signatures", allowed_types=IMAGE_TYPES | {"image/svg+xml"})
    else:
        raise ValidationFailed("Provide a signature data URL or an image file")
    return ok(_describe(stored), message="Signature uploaded")


@router.delete("/pm-photos/{file_name}")
def delete_pm_photo(file_name: str, db: Session = Depends(get_db), _=Depends(require_staff)):
    with unit_of_work(db):
        urls = pm_service.delete_photos_by_file_name(db, file_name)
    removed = discard_files(urls)
    return ok({"photos": len(urls), "files": removed}, message="Photo deleted")
