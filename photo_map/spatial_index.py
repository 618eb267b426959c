"""Uniform-grid spatial index over (photo id, coordinate) pairs.

The world is cut into BASE_CELL_DEGREES square buckets. Insert, remove and
update touch one or two buckets; region queries visit only the buckets that
overlap the requested box and test individual points only in buckets that
straddle its edge.

Writers are serialized by one lock. Every bucket also has its own lock, held
by a writer while it mutates that bucket and by a reader while it copies the
bucket's members, so a query observes each bucket either before or after a
mutation, never half way. No lock is held between buckets.
"""

import logging
import math
import threading
from typing import Callable, Iterable

import config
from errors import IndexWriteConflict
from records import BBox, Coordinate, Facet, is_valid_coordinate

logger = logging.getLogger(__name__)

CellKey = tuple[int, int]


class _Bucket:
    __slots__ = ("lock", "members")

    def __init__(self):
        self.lock = threading.Lock()
        self.members: dict[int, Coordinate] = {}

    def snapshot(self) -> list[tuple[int, Coordinate]]:
        with self.lock:
            return list(self.members.items())


class SpatialIndex:
    def __init__(self, cell_degrees: float | None = None):
        self._cell = float(cell_degrees or config.BASE_CELL_DEGREES)
        self._cols = math.ceil(360.0 / self._cell)
        self._rows = math.ceil(180.0 / self._cell)
        self._buckets: dict[CellKey, _Bucket] = {}
        self._locations: dict[int, Coordinate] = {}
        self._facets: dict[int, Facet] = {}
        self._write_lock = threading.Lock()
        self._version = 0

    # -- introspection --

    @property
    def cell_degrees(self) -> float:
        return self._cell

    @property
    def version(self) -> int:
        """Incremented on every successful mutation."""
        return self._version

    def __len__(self) -> int:
        return len(self._locations)

    def __contains__(self, photo_id: int) -> bool:
        return photo_id in self._locations

    def get(self, photo_id: int) -> Coordinate | None:
        return self._locations.get(photo_id)

    def facet(self, photo_id: int) -> Facet | None:
        return self._facets.get(photo_id)

    def bucket_count(self) -> int:
        return len(self._buckets)

    # -- grid --

    def _key(self, coord: Coordinate) -> CellKey:
        ix = min(int(math.floor((coord.lng + 180.0) / self._cell)), self._cols - 1)
        iy = min(int(math.floor((coord.lat + 90.0) / self._cell)), self._rows - 1)
        return max(ix, 0), max(iy, 0)

    @staticmethod
    def _coerce(coord) -> Coordinate:
        lat, lng = coord
        if not is_valid_coordinate(lat, lng):
            raise ValueError(f"Invalid coordinate: {coord!r}")
        return Coordinate(float(lat), float(lng))

    # -- mutation (caller holds _write_lock) --

    def _put(self, photo_id: int, coord: Coordinate, facet: Facet | None) -> None:
        key = self._key(coord)
        bucket = self._buckets.get(key)
        if bucket is None:
            bucket = _Bucket()
            self._buckets[key] = bucket
        with bucket.lock:
            bucket.members[photo_id] = coord
        self._locations[photo_id] = coord
        if facet is not None:
            self._facets[photo_id] = facet
        else:
            self._facets.pop(photo_id, None)

    def _drop(self, photo_id: int, coord: Coordinate) -> None:
        key = self._key(coord)
        bucket = self._buckets.get(key)
        if bucket is None or photo_id not in bucket.members:
            raise IndexWriteConflict(photo_id, f"missing from bucket {key}")
        with bucket.lock:
            del bucket.members[photo_id]
            empty = not bucket.members
        if empty:
            del self._buckets[key]
        del self._locations[photo_id]
        self._facets.pop(photo_id, None)

    # -- public mutation API --

    def insert(self, photo_id: int, coord, facet: Facet | None = None) -> None:
        coord = self._coerce(coord)
        with self._write_lock:
            if photo_id in self._locations:
                raise IndexWriteConflict(photo_id, "already indexed")
            self._put(photo_id, coord, facet)
            self._version += 1

    def remove(self, photo_id: int) -> bool:
        with self._write_lock:
            coord = self._locations.get(photo_id)
            if coord is None:
                return False
            self._drop(photo_id, coord)
            self._version += 1
            return True

    def update(self, photo_id: int, coord, facet: Facet | None = None) -> None:
        """Move a point (remove + insert under one write lock). Inserts if absent."""
        coord = self._coerce(coord)
        with self._write_lock:
            old = self._locations.get(photo_id)
            if old is not None:
                if old == coord:
                    if facet is not None and self._facets.get(photo_id) != facet:
                        self._facets[photo_id] = facet
                        self._version += 1
                    return
                self._drop(photo_id, old)
            self._put(photo_id, coord, facet)
            self._version += 1

    def bulk_load(self, items: Iterable[tuple]) -> int:
        """Insert many (photo_id, coord) or (photo_id, coord, facet) items.

        Invalid coordinates are skipped and logged.
        """
        loaded = 0
        with self._write_lock:
            for item in items:
                photo_id, coord = item[0], item[1]
                facet = item[2] if len(item) > 2 else None
                try:
                    coord = self._coerce(coord)
                except ValueError:
                    logger.warning("Skipping photo %d with invalid coordinate %r", photo_id, coord)
                    continue
                if photo_id in self._locations:
                    raise IndexWriteConflict(photo_id, "duplicate id in bulk load")
                self._put(photo_id, coord, facet)
                loaded += 1
            if loaded:
                self._version += 1
        return loaded

    def clear(self) -> None:
        with self._write_lock:
            self._buckets = {}
            self._locations = {}
            self._facets = {}
            self._version += 1

    # -- queries --

    def _cell_range(self, bbox: BBox) -> tuple[int, int, int, int]:
        west, south, east, north = bbox
        x0, y0 = self._key(Coordinate(max(south, -90.0), max(west, -180.0)))
        x1, y1 = self._key(Coordinate(min(north, 90.0), min(east, 180.0)))
        return x0, y0, x1, y1

    def _cell_inside(self, key: CellKey, bbox: BBox) -> bool:
        west, south, east, north = bbox
        ix, iy = key
        cw = ix * self._cell - 180.0
        cs = iy * self._cell - 90.0
        return west <= cw and cw + self._cell <= east and south <= cs and cs + self._cell <= north

    def query_region(
        self,
        bbox: BBox,
        check: Callable[[], None] | None = None,
    ) -> list[tuple[int, Coordinate]]:
        """Points inside bbox (west, south, east, north), boundary inclusive.

        Results are ordered by photo id. ``check`` is called before each
        bucket and may raise to abandon the query.
        """
        west, south, east, north = bbox
        if west > east:
            raise ValueError("query_region needs west <= east; split antimeridian boxes first")
        if south > north:
            raise ValueError("query_region needs south <= north")

        x0, y0, x1, y1 = self._cell_range(bbox)
        span = (x1 - x0 + 1) * (y1 - y0 + 1)

        if span > len(self._buckets):
            # Sparse index: cheaper to walk occupied buckets than the range.
            candidates = [
                (key, bucket) for key, bucket in list(self._buckets.items())
                if x0 <= key[0] <= x1 and y0 <= key[1] <= y1
            ]
        else:
            candidates = []
            for ix in range(x0, x1 + 1):
                for iy in range(y0, y1 + 1):
                    bucket = self._buckets.get((ix, iy))
                    if bucket is not None:
                        candidates.append(((ix, iy), bucket))

        found: dict[int, Coordinate] = {}
        for key, bucket in candidates:
            if check is not None:
                check()
            members = bucket.snapshot()
            if self._cell_inside(key, bbox):
                found.update(members)
                continue
            for photo_id, coord in members:
                if south <= coord.lat <= north and west <= coord.lng <= east:
                    found[photo_id] = coord

        return sorted(found.items())
