from typing import BinaryIO, Union


class StorageProvider:
    name = "base"

    def generate_upload_url(self, key: str, content_type: str, expires_s: int) -> str:
        raise NotImplementedError

    def exists(self, key: str) -> bool:
        raise NotImplementedError

    def copy_in(self, src: Union[bytes, BinaryIO], key: str) -> None:
        raise NotImplementedError

    def reference_uri(self, key: str) -> str:
        """Opaque URI stored on profiles (photos, documents)."""
        return f"{self.name}://{key.lstrip('/')}"
