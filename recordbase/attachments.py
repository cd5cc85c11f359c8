from __future__ import annotations

import logging
import secrets
import time
from pathlib import Path

logger = logging.getLogger("recordbase.attachments")


class AttachmentTooLarge(ValueError):
    def __init__(self, size: int, limit: int) -> None:
        super().__init__(f"attachment of {size} bytes exceeds limit of {limit} bytes")
        self.size = size
        self.limit = limit


class AttachmentStore:
    """Uploaded files on local disk, published under a static URL prefix."""

    def __init__(self, root: str | Path, url_prefix: str = "/uploads", max_bytes: int = 5 * 1024 * 1024) -> None:
        self.root = Path(root)
        self.url_prefix = "/" + url_prefix.strip("/")
        self.max_bytes = max_bytes

    def ensure_root(self) -> None:
        self.root.mkdir(parents=True, exist_ok=True)

    def check_size(self, size: int) -> None:
        if size > self.max_bytes:
            raise AttachmentTooLarge(size, self.max_bytes)

    def _stored_name(self, filename: str | None) -> str:
        suffix = Path(filename or "").suffix.lower()
        if not suffix[1:].isalnum():
            suffix = ""
        return f"{int(time.time() * 1000)}-{secrets.randbelow(10**9)}{suffix}"

    def store_bytes(self, filename: str | None, data: bytes) -> dict:
        self.check_size(len(data))
        self.ensure_root()
        stored_name = self._stored_name(filename)
        path = self.root / stored_name
        path.write_bytes(data)
        logger.info("attachment_stored name=%s size=%s", stored_name, len(data))
        return {"storage_key": stored_name, "url": f"{self.url_prefix}/{stored_name}"}

    def resolve_path(self, storage_key: str) -> Path:
        return self.root / Path(storage_key).name

    def delete(self, storage_key: str) -> bool:
        try:
            path = self.resolve_path(storage_key)
            if path.exists():
                path.unlink()
            return True
        except OSError as exc:
            logger.warning("attachment_delete_failed name=%s error=%s", storage_key, exc)
            return False
