from datetime import datetime, timedelta, timezone
from typing import Optional, BinaryIO, Union
from urllib.parse import unquote, urlparse

from azure.storage.blob import (
    BlobServiceClient,
    ContentSettings,
    generate_blob_sas,
    BlobSasPermissions,
)

from ..config import settings
from .provider import StorageProvider


class BlobStorageProvider(StorageProvider):
    name = "blob"

    def __init__(self) -> None:
        if not settings.azure_blob_connection or not settings.azure_blob_container:
            raise RuntimeError("AZURE_BLOB_CONNECTION and AZURE_BLOB_CONTAINER must be set")
        self._service = BlobServiceClient.from_connection_string(settings.azure_blob_connection)
        self._container = settings.azure_blob_container

    def _client(self, key: str):
        return self._service.get_blob_client(self._container, key.lstrip("/"))

    def save(self, data: Union[bytes, BinaryIO], key: str, content_type: Optional[str] = None) -> str:
        client = self._client(key)
        client.upload_blob(
            data,
            overwrite=True,
            content_settings=ContentSettings(content_type=content_type) if content_type else None,
        )
        return client.url

    def get_download_url(self, key: str, expires_s: int = 3600) -> Optional[str]:
        expiry = datetime.now(timezone.utc) + timedelta(seconds=expires_s)
        sas = generate_blob_sas(
            account_name=self._service.account_name,
            container_name=self._container,
            blob_name=key.lstrip("/"),
            account_key=self._service.credential.account_key,
            permission=BlobSasPermissions(read=True),
            expiry=expiry,
        )
        return f"{self._client(key).url}?{sas}"

    def delete(self, key: str) -> None:
        self._client(key).delete_blob()

    def key_from_url(self, url: str) -> Optional[str]:
        if not url:
            return None
        path = unquote(urlparse(url).path).lstrip("/")
        prefix = f"{self._container}/"
        if not path.startswith(prefix):
            return None
        return path[len(prefix):]
