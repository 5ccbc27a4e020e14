from typing import BinaryIO, Optional, Union


class StorageProvider:
    """Where uploaded evidence (photos, signatures, documents) lives.

    Keys are slash-separated paths such as ``repair-photos/2024/ab12.jpg``.
    The database keeps only the url returned by ``save``.
    """

    name = "base"

    def save(self, data: Union[bytes, BinaryIO], key: str, content_type: Optional[str] = None) -> str:
        raise NotImplementedError

    def get_download_url(self, key: str, expires_s: int = 3600) -> Optional[str]:
        raise NotImplementedError

    def delete(self, key: str) -> None:
        raise NotImplementedError

    def key_from_url(self, url: str) -> Optional[str]:
        raise NotImplementedError
