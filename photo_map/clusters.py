"""Zoom-dependent clustering over the spatial index.

Clusters are not stored. Every query projects the located photos around the
viewport into a Web-Mercator pixel grid whose cells are CLUSTER_RADIUS_PX
wide and groups them by cell. A cluster id names its cell, so the same id
always describes the same patch of the map at that zoom, and its membership
can be recomputed from the index at any later time.
"""

import logging
import time
from dataclasses import dataclass
from datetime import datetime, timezone

import numpy as np
import reverse_geocode

import config
from errors import QueryNotFound, QueryTimeout
from geo import (
    bbox_intersects,
    cell_bounds,
    cell_count,
    cells_for,
    expand_bbox,
    normalize_bbox,
    split_antimeridian,
)
from records import BBox, ClusterCell, Coordinate, Facet, MediaType
from spatial_index import SpatialIndex

logger = logging.getLogger(__name__)

# Slack added around a cell's bounds before filtering by exact cell equality
_BOUNDS_EPSILON = 1e-9


class Deadline:
    """Raises QueryTimeout from check() once the budget is spent."""

    def __init__(self, timeout: float | None):
        self.timeout = timeout
        self._expires = None if timeout is None else time.monotonic() + timeout

    def check(self) -> None:
        if self._expires is not None and time.monotonic() >= self._expires:
            raise QueryTimeout(self.timeout)


def _parse_date(value, end_of_day: bool = False) -> datetime | None:
    """ISO date or datetime -> aware UTC datetime. A bare date covers the whole day."""
    if value is None or value == "":
        return None
    if isinstance(value, datetime):
        parsed = value
    else:
        text = str(value).strip()
        try:
            parsed = datetime.fromisoformat(text.replace("Z", "+00:00"))
        except ValueError:
            raise ValueError(f"Invalid date: {value!r}") from None
        if end_of_day and len(text) == 10:
            parsed = parsed.replace(hour=23, minute=59, second=59, microsecond=999999)
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed.astimezone(timezone.utc)


@dataclass(frozen=True)
class ClusterFilters:
    """Narrows which indexed photos take part in clustering.

    Empty or None fields do not filter. When a date bound is set, photos
    without a capture time are dropped unless include_undated is true.
    """

    date_from: datetime | None = None
    date_to: datetime | None = None
    include_undated: bool = False
    media_types: frozenset[MediaType] | None = None
    root_ids: frozenset[int] | None = None

    @classmethod
    def from_dict(cls, data: dict | None) -> "ClusterFilters":
        if not data:
            return cls()
        if not isinstance(data, dict):
            raise ValueError("filters must be a JSON object")
        try:
            media_types = frozenset(MediaType(m) for m in data.get("media_types") or ())
            root_ids = frozenset(int(r) for r in data.get("root_ids") or ())
        except (TypeError, ValueError) as exc:
            raise ValueError(f"Invalid filters: {exc}") from exc
        filters = cls(
            date_from=_parse_date(data.get("date_from")),
            date_to=_parse_date(data.get("date_to"), end_of_day=True),
            include_undated=bool(data.get("include_undated", False)),
            media_types=media_types or None,
            root_ids=root_ids or None,
        )
        if filters.date_from and filters.date_to and filters.date_from > filters.date_to:
            raise ValueError("date_from is after date_to")
        return filters

    def is_empty(self) -> bool:
        return (
            self.date_from is None and self.date_to is None
            and not self.media_types and not self.root_ids
        )

    def matches(self, facet: Facet | None) -> bool:
        if self.is_empty():
            return True
        if facet is None:
            return False
        if self.root_ids and facet.root_id not in self.root_ids:
            return False
        if self.media_types and facet.media_type not in self.media_types:
            return False
        if self.date_from is None and self.date_to is None:
            return True
        taken_at = facet.taken_at
        if taken_at is None:
            return self.include_undated
        if taken_at.tzinfo is None:
            taken_at = taken_at.replace(tzinfo=timezone.utc)
        if self.date_from is not None and taken_at < self.date_from:
            return False
        if self.date_to is not None and taken_at > self.date_to:
            return False
        return True


def encode_cluster_id(zoom: int, cell_x: int, cell_y: int) -> str:
    return f"{zoom}/{cell_x}/{cell_y}"


def decode_cluster_id(cluster_id: str, radius_px: int | None = None) -> tuple[int, int, int]:
    """Parse "zoom/x/y". Raises QueryNotFound if malformed or off the grid."""
    radius = radius_px or config.CLUSTER_RADIUS_PX
    parts = str(cluster_id).split("/")
    if len(parts) != 3:
        raise QueryNotFound(cluster_id)
    try:
        zoom, cx, cy = (int(p) for p in parts)
    except ValueError:
        raise QueryNotFound(cluster_id) from None
    if not 0 <= zoom <= config.MAX_ZOOM:
        raise QueryNotFound(cluster_id)
    count = cell_count(zoom, radius)
    if not (0 <= cx < count and 0 <= cy < count):
        raise QueryNotFound(cluster_id)
    return zoom, cx, cy


def normalize_zoom(zoom) -> int:
    try:
        z = int(round(float(zoom)))
    except (TypeError, ValueError, OverflowError) as exc:
        raise ValueError(f"zoom must be a number, got {zoom!r}") from exc
    return max(0, min(config.MAX_ZOOM, z))


class ClusterService:
    def __init__(self, index: SpatialIndex, radius_px: int | None = None):
        self._index = index
        self._radius = radius_px or config.CLUSTER_RADIUS_PX

    @property
    def radius_px(self) -> int:
        return self._radius

    def _query(
        self, boxes: list[BBox], deadline: Deadline, filters: ClusterFilters | None,
    ) -> list[tuple[int, Coordinate]]:
        found: dict[int, Coordinate] = {}
        for box in boxes:
            found.update(self._index.query_region(box, check=deadline.check))
        points = sorted(found.items())
        if filters is None or filters.is_empty():
            return points
        deadline.check()
        return [(pid, c) for pid, c in points if filters.matches(self._index.facet(pid))]

    def get_clusters(
        self, viewport, zoom, timeout: float | None = None, filters: ClusterFilters | None = None,
    ) -> list[ClusterCell]:
        """Clusters whose grid cell intersects the viewport at this zoom.

        Args:
            viewport: (west, south, east, north) in degrees. west > east
                means the viewport crosses the antimeridian.
            zoom: map zoom, rounded and clamped to [0, MAX_ZOOM].
            timeout: seconds; QueryTimeout is raised once exceeded.
            filters: only photos matching these are counted.

        Returns:
            Cells sorted by descending count, then (cell_x, cell_y). Single
            photos come back as clusters of one.
        """
        deadline = Deadline(timeout)
        bbox = normalize_bbox(viewport)
        z = normalize_zoom(zoom)

        parts = split_antimeridian(bbox)
        # One cell of margin so cells straddling the edge see all members
        expanded = [expand_bbox(p, z, self._radius) for p in parts]
        points = self._query(expanded, deadline, filters)
        if not points:
            return []

        ids = np.fromiter((pid for pid, _ in points), dtype=np.int64, count=len(points))
        lats = np.fromiter((c.lat for _, c in points), dtype=np.float64, count=len(points))
        lngs = np.fromiter((c.lng for _, c in points), dtype=np.float64, count=len(points))
        cx, cy = cells_for(lats, lngs, z, self._radius)
        deadline.check()

        # ids are ascending, so a stable sort on the cell key keeps each
        # group's members in id order
        order = np.lexsort((cy, cx))
        keys = np.stack((cx[order], cy[order]), axis=1)
        breaks = np.flatnonzero(np.any(keys[1:] != keys[:-1], axis=1)) + 1
        starts = np.concatenate(([0], breaks))
        ends = np.concatenate((breaks, [len(order)]))

        cells: list[ClusterCell] = []
        for start, end in zip(starts, ends):
            deadline.check()
            members = order[start:end]
            cell_x, cell_y = int(keys[start, 0]), int(keys[start, 1])
            bounds = cell_bounds(z, cell_x, cell_y, self._radius)
            if not any(bbox_intersects(bounds, p) for p in parts):
                continue
            m_lat = lats[members]
            m_lng = lngs[members]
            cells.append(ClusterCell(
                cluster_id=encode_cluster_id(z, cell_x, cell_y),
                zoom=z,
                cell_x=cell_x,
                cell_y=cell_y,
                centroid=Coordinate(float(m_lat.mean()), float(m_lng.mean())),
                bbox=(float(m_lng.min()), float(m_lat.min()), float(m_lng.max()), float(m_lat.max())),
                member_ids=tuple(int(i) for i in ids[members]),
            ))

        cells.sort(key=lambda c: (-c.count, c.cell_x, c.cell_y))
        logger.debug(
            "get_clusters z=%d bbox=%s: %d points, %d clusters", z, bbox, len(points), len(cells),
        )
        return cells

    def get_cluster_members(
        self, cluster_id: str, timeout: float | None = None, filters: ClusterFilters | None = None,
    ) -> list[int]:
        """Photo ids in the cell named by cluster_id, ascending.

        Pass the filters used for get_clusters to get the same members it counted.
        """
        deadline = Deadline(timeout)
        z, cell_x, cell_y = decode_cluster_id(cluster_id, self._radius)
        west, south, east, north = cell_bounds(z, cell_x, cell_y, self._radius)
        box = (
            max(-180.0, west - _BOUNDS_EPSILON),
            max(-90.0, south - _BOUNDS_EPSILON),
            min(180.0, east + _BOUNDS_EPSILON),
            min(90.0, north + _BOUNDS_EPSILON),
        )
        points = self._query([box], deadline, filters)
        if not points:
            return []
        lats = np.array([c.lat for _, c in points], dtype=np.float64)
        lngs = np.array([c.lng for _, c in points], dtype=np.float64)
        cx, cy = cells_for(lats, lngs, z, self._radius)
        deadline.check()
        hit = (cx == cell_x) & (cy == cell_y)
        return [pid for (pid, _), keep in zip(points, hit) if keep]


def label_clusters(cells: list[ClusterCell]) -> dict[str, str]:
    """Reverse geocode cluster centroids to "City, Country" labels."""
    if not cells:
        return {}
    coords = [(c.centroid.lat, c.centroid.lng) for c in cells]
    try:
        results = reverse_geocode.search(coords)
    except Exception:
        logger.warning("Batch reverse geocoding failed", exc_info=True)
        return {c.cluster_id: "" for c in cells}

    labels = {}
    for cell, geo in zip(cells, results):
        city = geo.get("city", "")
        country = geo.get("country", "")
        labels[cell.cluster_id] = f"{city}, {country}" if city and country else (city or country)
    return labels
