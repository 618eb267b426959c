"""HTTP service daemon for photo-map.

Owns the catalog, the spatial index and the index coordinator. The file
watcher and the map UI talk to it over HTTP. Only one instance should run at
a time.

    uv run python service.py

Startup order:
    1. Write PID, start uvicorn  -- HTTP is up immediately
    2. Background thread: open the catalog, rebuild the spatial index,
       start the event pump, rescan every known root
    Handlers return 503 until the coordinator is ready.
"""

import asyncio
import logging
import os
import signal
import sys
import threading

from starlette.applications import Starlette
from starlette.requests import Request
from starlette.responses import JSONResponse
from starlette.routing import Mount, Route
from starlette.staticfiles import StaticFiles

import config
from catalog import Catalog
from clusters import ClusterFilters, ClusterService, label_clusters, normalize_zoom
from errors import QueryNotFound, QueryTimeout, RootError
from events import FsEvent
from indexer import IndexCoordinator
from records import ThumbnailStatus
from thumbnails import ThumbnailQueue

logging.basicConfig(level=logging.INFO, format="%(levelname)s %(name)s: %(message)s")
logger = logging.getLogger(__name__)

_coordinator: IndexCoordinator | None = None
_clusters: ClusterService | None = None
_coordinator_lock = threading.Lock()
_ready = threading.Event()


def install(coordinator: IndexCoordinator) -> None:
    """Make a coordinator the one the handlers serve."""
    global _coordinator, _clusters
    with _coordinator_lock:
        _coordinator = coordinator
        _clusters = ClusterService(coordinator.spatial_index)
    _ready.set()


def uninstall() -> IndexCoordinator | None:
    global _coordinator, _clusters
    with _coordinator_lock:
        coordinator, _coordinator, _clusters = _coordinator, None, None
    _ready.clear()
    return coordinator


def _create_coordinator() -> IndexCoordinator:
    catalog = Catalog(config.CATALOG_DB)
    return IndexCoordinator(catalog, thumbnails=ThumbnailQueue())


# ---------------------------------------------------------------------------
# Request helpers
# ---------------------------------------------------------------------------


_LOADING = JSONResponse({"loading": True}, status_code=503)


async def _json_body(request: Request) -> dict:
    body = await request.json()
    if not isinstance(body, dict):
        raise ValueError("Request body must be a JSON object")
    return body


def _require(body: dict, name: str):
    if body.get(name) is None:
        raise ValueError(f"Missing field: {name}")
    return body[name]


def _int(value, name: str) -> int:
    try:
        return int(value)
    except (TypeError, ValueError):
        raise ValueError(f"{name} must be an integer, got {value!r}") from None


def _timeout(value) -> float:
    if value is None:
        return config.DEFAULT_QUERY_TIMEOUT
    timeout = float(value)
    if timeout <= 0:
        raise ValueError("timeout must be positive")
    return timeout


def _query_filters(params) -> ClusterFilters:
    """Filters from query parameters; list values are comma separated."""
    data = {}
    for name in ("date_from", "date_to"):
        if params.get(name):
            data[name] = params[name]
    for name in ("media_types", "root_ids"):
        if params.get(name):
            data[name] = [v for v in params[name].split(",") if v]
    if params.get("include_undated"):
        data["include_undated"] = params["include_undated"].lower() in ("1", "true", "yes")
    return ClusterFilters.from_dict(data)


# ---------------------------------------------------------------------------
# Handlers
# ---------------------------------------------------------------------------


async def health(request: Request) -> JSONResponse:
    return JSONResponse({"ok": True, "ready": _ready.is_set()})


async def list_roots(request: Request) -> JSONResponse:
    if not _ready.is_set():
        return _LOADING
    return JSONResponse([r.to_dict() for r in _coordinator.list_roots()])


async def add_root(request: Request) -> JSONResponse:
    if not _ready.is_set():
        return _LOADING
    body = await _json_body(request)
    path = str(_require(body, "path"))
    root = await asyncio.to_thread(_coordinator.add_root, path)
    if body.get("scan", True):
        _coordinator.schedule_scan(root.id)
    return JSONResponse(root.to_dict())


async def remove_root(request: Request) -> JSONResponse:
    if not _ready.is_set():
        return _LOADING
    body = await _json_body(request)
    root_id = _int(_require(body, "root_id"), "root_id")
    root = await asyncio.to_thread(_coordinator.remove_root, root_id)
    return JSONResponse(root.to_dict())


async def scan_root(request: Request) -> JSONResponse:
    if not _ready.is_set():
        return _LOADING
    body = await _json_body(request)
    root_id = _int(_require(body, "root_id"), "root_id")
    progress = await asyncio.to_thread(_coordinator.scan_root, root_id)
    return JSONResponse(progress.to_dict())


async def progress(request: Request) -> JSONResponse:
    if not _ready.is_set():
        return _LOADING
    raw = request.query_params.get("root_id")
    if raw is not None:
        return JSONResponse(_coordinator.get_indexing_progress(_int(raw, "root_id")).to_dict())
    return JSONResponse([
        _coordinator.get_indexing_progress(r.id).to_dict() for r in _coordinator.list_roots()
    ])


async def push_events(request: Request) -> JSONResponse:
    """Watcher feed: {"events": [{path, kind, old_path?}], "interrupted": bool, "root_id"?}."""
    if not _ready.is_set():
        return _LOADING
    body = await _json_body(request)
    raw_events = body.get("events") or []
    if not isinstance(raw_events, list):
        raise ValueError("events must be a list")
    try:
        events = [FsEvent.from_dict(e) for e in raw_events]
    except (KeyError, TypeError) as exc:
        raise ValueError(f"Malformed event: {exc}") from exc

    touched: set[int] = set()
    for event in events:
        touched.update(_coordinator.push_event(event))
    if body.get("interrupted"):
        root_id = body.get("root_id")
        _coordinator.mark_interrupted(_int(root_id, "root_id") if root_id is not None else None)
    return JSONResponse({"accepted": len(events), "roots": sorted(touched)})


async def clusters(request: Request) -> JSONResponse:
    if not _ready.is_set():
        return _LOADING
    body = await _json_body(request)
    bbox = _require(body, "bbox")
    zoom = _require(body, "zoom")
    timeout = _timeout(body.get("timeout"))
    filters = ClusterFilters.from_dict(body.get("filters"))

    cells = await asyncio.to_thread(_clusters.get_clusters, bbox, zoom, timeout, filters)
    items = [c.to_dict() for c in cells]
    if body.get("labels"):
        labels = await asyncio.to_thread(label_clusters, cells)
        for item in items:
            item["label"] = labels.get(item["cluster_id"], "")
    return JSONResponse({
        "zoom": normalize_zoom(zoom),
        "total": sum(c.count for c in cells),
        "clusters": items,
    })


async def cluster_members(request: Request) -> JSONResponse:
    if not _ready.is_set():
        return _LOADING
    cluster_id = request.path_params["cluster_id"]
    timeout = _timeout(request.query_params.get("timeout"))
    filters = _query_filters(request.query_params)
    ids = await asyncio.to_thread(_clusters.get_cluster_members, cluster_id, timeout, filters)
    return JSONResponse({"cluster_id": cluster_id, "count": len(ids), "member_ids": ids})


async def photo(request: Request) -> JSONResponse:
    if not _ready.is_set():
        return _LOADING
    photo_id = request.path_params["photo_id"]
    record = await asyncio.to_thread(_coordinator.get_photo, photo_id)
    if record is None:
        return JSONResponse({"error": f"Unknown photo: {photo_id}"}, status_code=404)
    data = record.to_dict()
    if record.thumbnail_status is ThumbnailStatus.READY:
        key = record.content_hash
        data["thumbnail_url"] = f"/thumbnails/{key[:2]}/{key}.webp"
    return JSONResponse(data)


# ---------------------------------------------------------------------------
# Error mapping
# ---------------------------------------------------------------------------


def _error(status: int):
    async def handler(request: Request, exc: Exception) -> JSONResponse:
        if status >= 500:
            logger.warning("%s %s failed: %s", request.method, request.url.path, exc)
        message = exc.args[0] if isinstance(exc, KeyError) and exc.args else str(exc)
        return JSONResponse({"error": message}, status_code=status)
    return handler


exception_handlers = {
    QueryNotFound: _error(404),
    KeyError: _error(404),
    ValueError: _error(400),
    RootError: _error(409),
    QueryTimeout: _error(504),
}

routes = [
    Route("/health", health, methods=["GET"]),
    Route("/roots", list_roots, methods=["GET"]),
    Route("/roots", add_root, methods=["POST"]),
    Route("/roots/remove", remove_root, methods=["POST"]),
    Route("/roots/scan", scan_root, methods=["POST"]),
    Route("/progress", progress, methods=["GET"]),
    Route("/events", push_events, methods=["POST"]),
    Route("/clusters", clusters, methods=["POST"]),
    Route("/clusters/{cluster_id:path}/members", cluster_members, methods=["GET"]),
    Route("/photos/{photo_id:int}", photo, methods=["GET"]),
    Mount(
        "/thumbnails",
        StaticFiles(directory=str(config.THUMBNAILS_DIR), check_dir=False),
        name="thumbnails",
    ),
]

app = Starlette(routes=routes, exception_handlers=exception_handlers)


# ---------------------------------------------------------------------------
# Lifecycle
# ---------------------------------------------------------------------------


def _set_process_priority() -> None:
    try:
        os.nice(config.NICE_VALUE)
        logger.info("Set nice value to %d", config.NICE_VALUE)
    except OSError:
        logger.debug("Could not set nice value")


def _write_pid() -> None:
    config.SERVICE_PID_FILE.parent.mkdir(parents=True, exist_ok=True)
    config.SERVICE_PID_FILE.write_text(str(os.getpid()))
    logger.info("PID file: %s", config.SERVICE_PID_FILE)


def _cleanup(*_args) -> None:
    config.SERVICE_PID_FILE.unlink(missing_ok=True)
    coordinator = uninstall()
    if coordinator is not None:
        coordinator.close()


def _background_startup() -> None:
    """Open the catalog and reconcile every root without blocking the event loop.

    Uvicorn is already listening. Handlers return 503 until _ready is set.
    """
    def _load():
        try:
            coordinator = _create_coordinator()
            coordinator.start_pump()
            install(coordinator)
            logger.info(
                "Coordinator ready: %d roots, %d located photos",
                len(coordinator.list_roots()), len(coordinator.spatial_index),
            )
            for root in coordinator.list_roots():
                coordinator.schedule_scan(root.id)
        except Exception:
            logger.warning("Background startup failed", exc_info=True)

    threading.Thread(target=_load, name="background-startup", daemon=True).start()


if __name__ == "__main__":
    import atexit

    import uvicorn

    config.THUMBNAILS_DIR.mkdir(parents=True, exist_ok=True)
    _write_pid()
    atexit.register(_cleanup)
    signal.signal(signal.SIGTERM, lambda *_: sys.exit(0))

    _set_process_priority()
    _background_startup()

    logger.info("Starting photo-map service on %s:%d", config.SERVICE_HOST, config.SERVICE_PORT)
    uvicorn.run(app, host=config.SERVICE_HOST, port=config.SERVICE_PORT, log_level="warning")
