"""
Local filesystem storage provider.
Uploads go through the API itself (PUT /files/local/{key}).
"""
from pathlib import Path
from typing import BinaryIO, Optional, Union
from urllib.parse import quote

from ..config import settings
from ..logging import get_logger
from .provider import StorageProvider


log = get_logger(__name__)


class LocalStorageProvider(StorageProvider):
    name = "local"

    def __init__(self, base_dir: Optional[str] = None):
        self.base_dir = Path(base_dir or settings.storage_dir)
        (self.base_dir / "uploads").mkdir(parents=True, exist_ok=True)

    def _get_path(self, key: str) -> Path:
        clean_key = key.lstrip("/").replace("..", "").replace("\\", "/")
        return self.base_dir / "uploads" / clean_key

    def _url(self, key: str) -> str:
        return f"{settings.public_base_url}/files/local/{quote(key.lstrip('/'))}"

    def generate_upload_url(self, key: str, content_type: str, expires_s: int) -> str:
        return self._url(key)

    def exists(self, key: str) -> bool:
        return self._get_path(key).exists()

    def read(self, key: str) -> bytes:
        return self._get_path(key).read_bytes()

    def copy_in(self, src: Union[bytes, BinaryIO], key: str) -> None:
        path = self._get_path(key)
        path.parent.mkdir(parents=True, exist_ok=True)
        data = src.read() if hasattr(src, "read") else src
        path.write_bytes(data)
        log.info("storage_write", key=key, size=len(data))
