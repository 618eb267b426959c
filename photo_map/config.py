import os
from pathlib import Path

CACHE_DIR = Path(
    os.environ.get("PHOTO_MAP_CACHE_DIR", Path.home() / ".cache" / "photo-map")
).resolve()

CATALOG_DB = CACHE_DIR / "catalog.db"
THUMBNAILS_DIR = CACHE_DIR / "thumbnails"

PHOTO_EXTENSIONS = {
    ".jpg", ".jpeg", ".png", ".heic", ".heif", ".tif", ".tiff", ".webp",
    ".dng", ".cr2", ".cr3", ".nef", ".nrw", ".arw", ".sr2", ".rw2",
    ".orf", ".raf", ".pef", ".srw", ".raw",
}
VIDEO_EXTENSIONS = {".mov", ".mp4"}
SUPPORTED_EXTENSIONS = PHOTO_EXTENSIONS | VIDEO_EXTENSIONS

SCAN_EXCLUDE_DIRS = {"$RECYCLE.BIN", "System Volume Information", "__pycache__"}

HASH_BLOCK_SIZE = 1 << 20

# -- indexing --

WORKER_LIMIT = int(os.environ.get("PHOTO_MAP_WORKERS", str(min(8, os.cpu_count() or 2))))
CATALOG_RETRY_ATTEMPTS = 3

# Events for one root are held until it has been quiet this long.
DEBOUNCE_SECONDS = float(os.environ.get("PHOTO_MAP_DEBOUNCE", "0.3"))
# A burst touching more paths than this is handled as a full rescan.
OVERFLOW_THRESHOLD = 1200

# -- thumbnails --

THUMBNAIL_SIZE = 256
THUMBNAIL_WORKERS = 2

# -- spatial index / clustering --

BASE_CELL_DEGREES = 0.5
TILE_SIZE = 256
CLUSTER_RADIUS_PX = int(os.environ.get("PHOTO_MAP_CLUSTER_PX", "60"))
MAX_ZOOM = 22
MAX_MERCATOR_LAT = 85.05112878
DEFAULT_QUERY_TIMEOUT = 5.0

# -- service daemon --

SERVICE_PORT = int(os.environ.get("PHOTO_MAP_PORT", "7830"))
SERVICE_HOST = "127.0.0.1"
PUMP_INTERVAL_SECONDS = 0.1
SERVICE_PID_FILE = CACHE_DIR / "service.pid"
NICE_VALUE = 10
