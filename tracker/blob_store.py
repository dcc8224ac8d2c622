"""
Blob store for PO documents.

Documents are opaque to the tracker: upload returns a (url, path) pair that
is stored on the PO as its attachment, and the same path is handed back for
download and delete.  Only PDFs are accepted.

LocalBlobStore keeps files under one storage root on disk:

    <storage_dir>/<owner>/<entity>_<epoch millis>.pdf

and builds public URLs as ``<base_url>/<path>``.
"""
import asyncio
import logging
import time
from abc import ABC, abstractmethod
from dataclasses import dataclass
from pathlib import Path
from typing import Optional

from .errors import INVALID_INPUT, NotFoundError, StoreError, ValidationError

logger = logging.getLogger(__name__)

PDF_MEDIA_TYPE = "application/pdf"
DEFAULT_MAX_UPLOAD_BYTES = 10 * 1024 * 1024


@dataclass(frozen=True)
class StoredBlob:
    url: str
    path: str


@dataclass(frozen=True)
class BlobDownload:
    """Document bytes plus the name the client should save them under."""
    filename: str
    content: bytes
    media_type: str = PDF_MEDIA_TYPE


class BlobStore(ABC):

    def __init__(self, max_upload_bytes: int = DEFAULT_MAX_UPLOAD_BYTES) -> None:
        self.max_upload_bytes = max_upload_bytes

    @abstractmethod
    async def upload(
        self,
        content: bytes,
        filename: str,
        owner_id: str,
        entity_id: str,
        content_type: Optional[str] = None,
    ) -> StoredBlob:
        ...

    @abstractmethod
    async def download(self, path: str, display_name: Optional[str] = None) -> BlobDownload:
        ...

    @abstractmethod
    async def delete(self, path: str) -> None:
        ...

    @abstractmethod
    def public_url(self, path: str) -> str:
        ...

    def validate_upload(
        self, content: bytes, filename: str, content_type: Optional[str] = None
    ) -> None:
        """Reject anything that is not a non-empty PDF within the size limit."""
        is_pdf = filename.lower().endswith(".pdf") or content_type == PDF_MEDIA_TYPE
        if not is_pdf:
            raise ValidationError(
                INVALID_INPUT,
                "Only PDF files are accepted (.pdf extension required)",
                field="file",
            )
        if not content:
            raise ValidationError(INVALID_INPUT, "Uploaded file is empty", field="file")
        if len(content) > self.max_upload_bytes:
            limit_mb = self.max_upload_bytes / (1024 * 1024)
            raise ValidationError(
                INVALID_INPUT,
                f"File too large ({len(content)} bytes); the limit is {limit_mb:.0f} MB",
                field="file",
            )


class LocalBlobStore(BlobStore):
    """Filesystem-backed blob store rooted at *storage_dir*."""

    def __init__(
        self,
        storage_dir: Path,
        base_url: str = "/files",
        max_upload_bytes: int = DEFAULT_MAX_UPLOAD_BYTES,
    ) -> None:
        super().__init__(max_upload_bytes)
        self.root = Path(storage_dir).resolve()
        self.base_url = base_url.rstrip("/")
        self.root.mkdir(parents=True, exist_ok=True)

    def _resolve(self, path: str) -> Path:
        target = (self.root / path).resolve()
        if target != self.root and self.root not in target.parents:
            raise ValidationError(INVALID_INPUT, f"Invalid storage path: {path}", field="path")
        return target

    def public_url(self, path: str) -> str:
        return f"{self.base_url}/{path}"

    async def upload(
        self,
        content: bytes,
        filename: str,
        owner_id: str,
        entity_id: str,
        content_type: Optional[str] = None,
    ) -> StoredBlob:
        self.validate_upload(content, filename, content_type)
        path = f"{owner_id}/{entity_id}_{int(time.time() * 1000)}.pdf"
        target = self._resolve(path)

        def _write() -> None:
            target.parent.mkdir(parents=True, exist_ok=True)
            target.write_bytes(content)

        try:
            await asyncio.to_thread(_write)
        except OSError as exc:
            logger.error("Failed to save document %s: %s", path, exc)
            raise StoreError(f"Failed to save document: {exc}", operation="upload") from exc

        logger.info("Document stored: %s (%d bytes)", path, len(content))
        return StoredBlob(url=self.public_url(path), path=path)

    async def download(self, path: str, display_name: Optional[str] = None) -> BlobDownload:
        target = self._resolve(path)
        try:
            content = await asyncio.to_thread(target.read_bytes)
        except FileNotFoundError as exc:
            raise NotFoundError("document", path) from exc
        except OSError as exc:
            logger.error("Failed to read document %s: %s", path, exc)
            raise StoreError(f"Failed to read document: {exc}", operation="download") from exc
        return BlobDownload(filename=display_name or target.name, content=content)

    async def delete(self, path: str) -> None:
        target = self._resolve(path)
        try:
            await asyncio.to_thread(target.unlink, missing_ok=True)
        except OSError as exc:
            logger.error("Failed to delete document %s: %s", path, exc)
            raise StoreError(f"Failed to delete document: {exc}", operation="delete") from exc
        logger.info("Document deleted: %s", path)
