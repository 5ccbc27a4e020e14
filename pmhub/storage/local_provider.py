"""
Local filesystem storage provider.
Files land under ``<STORAGE_DIR>/uploads`` and are served by the app at ``/uploads``.
"""
from pathlib import Path
from typing import Optional, BinaryIO, Union
from urllib.parse import quote, unquote

from ..config import settings
from .provider import StorageProvider


URL_PREFIX = "/uploads/"


class LocalStorageProvider(StorageProvider):
    name = "local"

    def __init__(self, base_dir: Optional[str] = None):
        self.base_dir = Path(base_dir or settings.storage_dir)
        self.root = self.base_dir / "uploads"
        self.root.mkdir(parents=True, exist_ok=True)

    def _get_path(self, key: str) -> Path:
        # Remove leading slash and sanitize
        clean_key = key.lstrip("/").replace("..", "").replace("\\", "/")
        return self.root / clean_key

    def save(self, data: Union[bytes, BinaryIO], key: str, content_type: Optional[str] = None) -> str:
        path = self._get_path(key)
        path.parent.mkdir(parents=True, exist_ok=True)
        with open(path, "wb") as f:
            if hasattr(data, "read"):
                f.write(data.read())
            else:
                f.write(data)
        return URL_PREFIX + quote(key.lstrip("/"))

    def get_download_url(self, key: str, expires_s: int = 3600) -> Optional[str]:
        if self._get_path(key).exists():
            return URL_PREFIX + quote(key.lstrip("/"))
        return None

    def delete(self, key: str) -> None:
        path = self._get_path(key)
        if path.exists():
            path.unlink()

    def key_from_url(self, url: str) -> Optional[str]:
        if not url:
            return None
        idx = url.find(URL_PREFIX)
        if idx < 0:
            return None
        return unquote(url[idx + len(URL_PREFIX):])
