import logging
import threading
from concurrent.futures import ThreadPoolExecutor
from pathlib import Path
from typing import Callable

from PIL import Image, ImageOps

# Allow large panoramas; images are thumbnailed and released immediately
Image.MAX_IMAGE_PIXELS = None

import config
from records import MediaType, ThumbnailStatus

logger = logging.getLogger(__name__)

_heif_registered = False

StatusCallback = Callable[[int, ThumbnailStatus], None]
Renderer = Callable[[Path, str, int], Path]


def register_heif() -> None:
    """Register HEIF/HEIC opener with Pillow (idempotent)."""
    global _heif_registered
    if _heif_registered:
        return
    try:
        from pillow_heif import register_heif_opener

        register_heif_opener()
        _heif_registered = True
        logger.info("HEIF support registered")
    except ImportError:
        logger.warning("pillow-heif not installed; HEIF/HEIC files will be skipped")
        _heif_registered = True


def thumbnail_path(key: str) -> Path:
    """Cache location for a thumbnail. Keys are content hashes, so moves reuse it."""
    return config.THUMBNAILS_DIR / key[:2] / f"{key}.webp"


def render_thumbnail(source: Path, key: str, size: int) -> Path:
    """Return the cached thumbnail for source, generating it if missing."""
    dest = thumbnail_path(key)
    if dest.exists():
        return dest
    register_heif()
    dest.parent.mkdir(parents=True, exist_ok=True)
    tmp = dest.with_suffix(".tmp")
    with Image.open(source) as img:
        img = ImageOps.exif_transpose(img)
        if img.mode not in ("RGB", "RGBA"):
            img = img.convert("RGB")
        img.thumbnail((size, size), Image.LANCZOS)
        img.save(tmp, "WEBP", quality=85)
    tmp.rename(dest)
    return dest


class ThumbnailQueue:
    """Fire-and-forget thumbnail generation.

    request() returns immediately. The outcome is reported through
    on_status(photo_id, READY | FAILED) from a worker thread.
    """

    def __init__(
        self,
        on_status: StatusCallback | None = None,
        render: Renderer = render_thumbnail,
        workers: int | None = None,
        size: int | None = None,
    ):
        self._on_status = on_status
        self._render = render
        self._size = size or config.THUMBNAIL_SIZE
        self._pool = ThreadPoolExecutor(
            max_workers=workers or config.THUMBNAIL_WORKERS,
            thread_name_prefix="thumbnail",
        )
        self._lock = threading.Lock()
        self._closed = False

    def set_callback(self, on_status: StatusCallback) -> None:
        self._on_status = on_status

    def request(self, photo_id: int, path: str, key: str, media_type: MediaType) -> ThumbnailStatus:
        with self._lock:
            if self._closed:
                return ThumbnailStatus.PENDING
            self._pool.submit(self._run, photo_id, Path(path), key, media_type)
        return ThumbnailStatus.PENDING

    def _run(self, photo_id: int, path: Path, key: str, media_type: MediaType) -> None:
        if media_type is MediaType.VIDEO:
            # No frame decoder in this process
            status = ThumbnailStatus.FAILED
        else:
            try:
                self._render(path, key, self._size)
                status = ThumbnailStatus.READY
            except Exception:
                logger.warning("Thumbnail failed for %s", path, exc_info=True)
                status = ThumbnailStatus.FAILED

        if self._on_status is None:
            return
        try:
            self._on_status(photo_id, status)
        except Exception:
            logger.warning("Thumbnail status callback failed for photo %d", photo_id, exc_info=True)

    def shutdown(self, wait: bool = True) -> None:
        with self._lock:
            self._closed = True
        self._pool.shutdown(wait=wait)
