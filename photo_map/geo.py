"""Web-Mercator helpers for zoom-dependent cluster grids.

Pixel space follows the usual slippy-map convention: the world is
TILE_SIZE * 2**zoom pixels square, x grows east from -180°, y grows south
from the northern Mercator limit.
"""

import math

import numpy as np

import config
from records import BBox

WORLD_BBOX: BBox = (-180.0, -90.0, 180.0, 90.0)


def world_size(zoom: int) -> float:
    return float(config.TILE_SIZE * (2 ** zoom))


def cell_count(zoom: int, radius_px: int) -> int:
    """Number of grid cells along one axis at this zoom."""
    return math.ceil(world_size(zoom) / radius_px)


def _wrap_lng(lng: float) -> float:
    if -180.0 <= lng <= 180.0:
        return lng
    return ((lng + 180.0) % 360.0) - 180.0


def normalize_bbox(bbox) -> BBox:
    """Validate a (west, south, east, north) viewport.

    Latitudes are clamped to [-90, 90]; longitudes outside [-180, 180] are
    wrapped. A span of 360° or more becomes the whole world. west > east
    after normalization means the box crosses the antimeridian.
    """
    try:
        west, south, east, north = (float(v) for v in bbox)
    except (TypeError, ValueError) as exc:
        raise ValueError(f"bbox must be four numbers, got {bbox!r}") from exc
    if not all(math.isfinite(v) for v in (west, south, east, north)):
        raise ValueError(f"bbox contains non-finite values: {bbox!r}")
    if south > north:
        raise ValueError(f"bbox south {south} is above north {north}")

    south = max(-90.0, min(90.0, south))
    north = max(-90.0, min(90.0, north))
    if east - west >= 360.0:
        return (-180.0, south, 180.0, north)
    return (_wrap_lng(west), south, _wrap_lng(east), north)


def split_antimeridian(bbox: BBox) -> list[BBox]:
    """Split a viewport that crosses ±180° into two ordinary boxes."""
    west, south, east, north = bbox
    if west <= east:
        return [bbox]
    return [(west, south, 180.0, north), (-180.0, south, east, north)]


def bbox_intersects(a: BBox, b: BBox) -> bool:
    return a[0] <= b[2] and b[0] <= a[2] and a[1] <= b[3] and b[1] <= a[3]


def point_in_bbox(lat: float, lng: float, bbox: BBox) -> bool:
    west, south, east, north = bbox
    return south <= lat <= north and west <= lng <= east


# ---------------------------------------------------------------------------
# Projection
# ---------------------------------------------------------------------------


def lat_to_y(lat: float, zoom: int) -> float:
    lat = max(-config.MAX_MERCATOR_LAT, min(config.MAX_MERCATOR_LAT, lat))
    sin = math.sin(math.radians(lat))
    return (0.5 - math.log((1 + sin) / (1 - sin)) / (4 * math.pi)) * world_size(zoom)


def lng_to_x(lng: float, zoom: int) -> float:
    return (lng / 360.0 + 0.5) * world_size(zoom)


def y_to_lat(y: float, zoom: int) -> float:
    n = math.pi * (1 - 2 * y / world_size(zoom))
    return math.degrees(math.atan(math.sinh(n)))


def x_to_lng(x: float, zoom: int) -> float:
    return x / world_size(zoom) * 360.0 - 180.0


def cells_for(
    lats: np.ndarray, lngs: np.ndarray, zoom: int, radius_px: int,
) -> tuple[np.ndarray, np.ndarray]:
    """Grid cell (x, y) for each coordinate. Pure function of its inputs."""
    size = world_size(zoom)
    count = cell_count(zoom, radius_px)
    lat = np.clip(np.asarray(lats, dtype=np.float64), -config.MAX_MERCATOR_LAT, config.MAX_MERCATOR_LAT)
    lng = np.asarray(lngs, dtype=np.float64)
    sin = np.sin(np.radians(lat))
    x = (lng / 360.0 + 0.5) * size
    y = (0.5 - np.log((1 + sin) / (1 - sin)) / (4 * np.pi)) * size
    cx = np.clip(np.floor(x / radius_px), 0, count - 1).astype(np.int64)
    cy = np.clip(np.floor(y / radius_px), 0, count - 1).astype(np.int64)
    return cx, cy


def cell_bounds(zoom: int, cell_x: int, cell_y: int, radius_px: int) -> BBox:
    """Geographic extent of one grid cell.

    Edge rows and columns are widened to the poles and the antimeridian so
    that clamped coordinates still fall inside their cell's bounds.
    """
    size = world_size(zoom)
    last = cell_count(zoom, radius_px) - 1
    x0 = cell_x * radius_px
    x1 = min((cell_x + 1) * radius_px, size)
    y0 = cell_y * radius_px
    y1 = min((cell_y + 1) * radius_px, size)

    west = -180.0 if cell_x == 0 else x_to_lng(x0, zoom)
    east = 180.0 if cell_x == last else x_to_lng(x1, zoom)
    north = 90.0 if cell_y == 0 else y_to_lat(y0, zoom)
    south = -90.0 if cell_y == last else y_to_lat(y1, zoom)
    return (west, south, east, north)


def expand_bbox(bbox: BBox, zoom: int, margin_px: float) -> BBox:
    """Grow an ordinary (non-wrapping) box by margin_px on every side."""
    west, south, east, north = bbox
    size = world_size(zoom)
    dlng = margin_px / size * 360.0

    y_north = lat_to_y(north, zoom) - margin_px
    y_south = lat_to_y(south, zoom) + margin_px
    new_north = 90.0 if y_north <= 0 or north >= config.MAX_MERCATOR_LAT else y_to_lat(y_north, zoom)
    new_south = -90.0 if y_south >= size or south <= -config.MAX_MERCATOR_LAT else y_to_lat(y_south, zoom)

    return (
        max(-180.0, west - dlng),
        max(-90.0, new_south),
        min(180.0, east + dlng),
        min(90.0, new_north),
    )
