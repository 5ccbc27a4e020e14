import base64
import binascii
import os
import re
import uuid
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Iterable, Optional

import structlog
from fastapi import UploadFile
from slugify import slugify

from ..config import settings
from ..errors import ValidationFailed
from ..storage.provider import StorageProvider
from ..storage.local_provider import LocalStorageProvider


log = structlog.get_logger(__name__)

IMAGE_TYPES = {"image/jpeg", "image/png", "image/gif", "image/webp", "image/heic", "image/heif"}
DOCUMENT_TYPES = IMAGE_TYPES | {
    "application/pdf",
    "application/msword",
    "application/vnd.openxmlformats-officedocument.wordprocessingml.document",
    "application/vnd.ms-excel",
    "application/vnd.openxmlformats-officedocument.spreadsheetml.sheet",
    "text/plain",
    "application/dwg",
    "image/vnd.dwg",
}

_DATA_URL = re.compile(r"^data:(?P<mime>[\w/+.-]+);base64,(?P<data>.+)$", re.DOTALL)


@dataclass
class StoredFile:
    url: str
    file_name: str
    size: int
    mime_type: Optional[str]


def get_storage() -> StorageProvider:
    """Blob storage when configured, otherwise the local filesystem."""
    if settings.storage_provider == "blob" and settings.azure_blob_connection and settings.azure_blob_container:
        from ..storage.blob_provider import BlobStorageProvider

        return BlobStorageProvider()
    return LocalStorageProvider()


def build_key(folder: str, original_name: str) -> str:
    stem, ext = os.path.splitext(original_name or "file")
    month = datetime.now(timezone.utc).strftime("%Y-%m")
    safe = slugify(stem)[:60] or "file"
    return f"{folder}/{month}/{uuid.uuid4().hex[:12]}-{safe}{ext.lower()}"


def store_bytes(
    data: bytes,
    *,
    folder: str,
    original_name: str,
    content_type: Optional[str],
    allowed_types: Optional[set] = None,
    storage: Optional[StorageProvider] = None,
) -> StoredFile:
    if allowed_types is not None and content_type not in allowed_types:
        raise ValidationFailed(f"Unsupported file type: {content_type}")
    if not data:
        raise ValidationFailed("Uploaded file is empty")
    if len(data) > settings.max_upload_mb * 1024 * 1024:
        raise ValidationFailed(f"File exceeds {settings.max_upload_mb} MB")
    storage = storage or get_storage()
    key = build_key(folder, original_name)
    url = storage.save(data, key, content_type)
    log.info("file_stored", key=key, provider=storage.name, size=len(data))
    return StoredFile(url=url, file_name=original_name, size=len(data), mime_type=content_type)


def store_upload(
    upload: UploadFile,
    *,
    folder: str,
    allowed_types: Optional[set] = IMAGE_TYPES,
    storage: Optional[StorageProvider] = None,
) -> StoredFile:
    data = upload.file.read()
    return store_bytes(
        data,
        folder=folder,
        original_name=upload.filename or "upload",
        content_type=upload.content_type,
        allowed_types=allowed_types,
        storage=storage,
    )


def store_data_url(data_url: str, *, folder: str, storage: Optional[StorageProvider] = None) -> StoredFile:
    """Persist a ``data:image/png;base64,...`` payload (signature pads send these)."""
    match = _DATA_URL.match((data_url or "").strip())
    if not match:
        raise ValidationFailed("Signature must be a base64 data URL")
    mime = match.group("mime")
    try:
        data = base64.b64decode(match.group("data"), validate=True)
    except (binascii.Error, ValueError):
        raise ValidationFailed("Signature data is not valid base64")
    ext = {"image/png": ".png", "image/jpeg": ".jpg", "image/svg+xml": ".svg"}.get(mime, ".bin")
    return store_bytes(
        data,
        folder=folder,
        original_name=f"signature{ext}",
        content_type=mime,
        allowed_types=IMAGE_TYPES | {"image/svg+xml"},
        storage=storage,
    )


def discard_files(urls: Iterable[Optional[str]], storage: Optional[StorageProvider] = None) -> int:
    """Best-effort removal of stored files. Failures are logged, never raised.
    Returns how many files were removed."""
    removed = 0
    urls = [u for u in urls if u]
    if not urls:
        return 0
    try:
        storage = storage or get_storage()
    except Exception as e:
        log.warning("file_discard_storage_unavailable", error=str(e))
        return 0
    for url in urls:
        key = storage.key_from_url(url)
        if not key:
            log.info("file_discard_skipped", url=url)
            continue
        try:
            storage.delete(key)
            removed += 1
        except Exception as e:
            log.warning("file_discard_failed", url=url, error=str(e))
    return removed
