"""
Object store for downloaded images.

The crawl hands over raw bytes plus placement coordinates and gets back
a stored path and an opaque preview token. ``LocalImageStore`` lays
files out as ``<storage_dir>/<comic>/<chapter>/image_NNN.<ext>``.
"""

import asyncio
import hashlib
from pathlib import Path
from typing import Protocol

from comicrawl.models.schemas import ImagePlacement, StoredObject
from comicrawl.utils.exceptions import StorageError
from comicrawl.utils.files import image_extension, image_file_name, sanitize_segment, write_bytes_atomic
from comicrawl.utils.logging import get_logger

logger = get_logger(__name__)


class ObjectStore(Protocol):
    async def store(self, data: bytes, placement: ImagePlacement) -> StoredObject: ...


def preview_token(data: bytes) -> str:
    """Short content digest standing in for a rendered preview."""
    return "sha256:" + hashlib.sha256(data).hexdigest()[:16]


class LocalImageStore:
    """Stores images on the local filesystem with atomic writes."""

    def __init__(self, root: str | Path) -> None:
        self.root = Path(root)

    def path_for(self, placement: ImagePlacement) -> Path:
        return (
            self.root
            / sanitize_segment(placement.comic_key, default="comic")
            / sanitize_segment(placement.chapter_key, default="chapter")
            / image_file_name(
                placement.image_index,
                image_extension(placement.source_url, placement.content_type),
            )
        )

    async def store(self, data: bytes, placement: ImagePlacement) -> StoredObject:
        """
        Write ``data`` for ``placement``.

        Raises:
            StorageError: If ``data`` is empty or the write fails
        """
        if not data:
            raise StorageError("Refusing to store an empty image", operation="write")

        path = self.path_for(placement)
        await asyncio.to_thread(write_bytes_atomic, path, data)

        logger.debug("Image stored", path=str(path), size_bytes=len(data))
        return StoredObject(path=str(path), size_bytes=len(data), preview=preview_token(data))
