"""
File helpers for the local image store.

Slug-based directory names, image file naming and atomic writes so a
crashed download never leaves a truncated image behind.
"""

import os
import tempfile
from pathlib import Path
from urllib.parse import unquote, urlparse

from slugify import slugify

from comicrawl.utils.exceptions import StorageError
from comicrawl.utils.logging import get_logger

logger = get_logger(__name__)

IMAGE_EXTENSIONS = {".jpg", ".jpeg", ".png", ".webp", ".gif", ".avif"}

_CONTENT_TYPE_EXTENSIONS = {
    "image/jpeg": ".jpg",
    "image/png": ".png",
    "image/webp": ".webp",
    "image/gif": ".gif",
    "image/avif": ".avif",
}


def sanitize_segment(value: str, max_length: int = 80, default: str = "unnamed") -> str:
    """
    Convert an arbitrary name into a filesystem-safe path segment.

    Example:
        >>> sanitize_segment("Đại Quản Gia: Là Ma Hoàng")
        'dai-quan-gia-la-ma-hoang'
    """
    safe = slugify(value or "", max_length=max_length, lowercase=True, separator="-")
    return safe or default


def image_extension(url: str, content_type: str | None = None) -> str:
    """
    Pick a file extension for a downloaded image.

    The URL path wins when it carries a known image extension; otherwise
    the response content type decides, falling back to ``.jpg``.
    """
    path = unquote(urlparse(url).path)
    suffix = Path(path).suffix.lower()
    if suffix in IMAGE_EXTENSIONS:
        return ".jpg" if suffix == ".jpeg" else suffix

    if content_type:
        mime = content_type.split(";", 1)[0].strip().lower()
        if mime in _CONTENT_TYPE_EXTENSIONS:
            return _CONTENT_TYPE_EXTENSIONS[mime]

    return ".jpg"


def image_file_name(image_index: int, extension: str = ".jpg") -> str:
    """Return the stored file name for a 0-based image index (``image_001.jpg``)."""
    return f"image_{image_index + 1:03d}{extension}"


def write_bytes_atomic(path: Path, data: bytes) -> None:
    """
    Write ``data`` to ``path`` via a temp file in the same directory.

    Raises:
        StorageError: If the directory cannot be created or the write fails
    """
    tmp_name: str | None = None
    try:
        path.parent.mkdir(parents=True, exist_ok=True)
        with tempfile.NamedTemporaryFile(
            dir=path.parent, prefix=".partial_", delete=False
        ) as tmp:
            tmp_name = tmp.name
            tmp.write(data)
            tmp.flush()
            os.fsync(tmp.fileno())
        os.replace(tmp_name, path)
        tmp_name = None
    except OSError as e:
        raise StorageError(
            f"Failed to write image: {e}",
            file_path=str(path),
            operation="write",
        ) from e
    finally:
        if tmp_name is not None and os.path.exists(tmp_name):
            try:
                os.unlink(tmp_name)
            except OSError as e:
                logger.warning("Failed to delete partial file", path=tmp_name, error=str(e))
