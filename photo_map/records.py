import math
from dataclasses import dataclass, field, replace
from datetime import datetime
from enum import Enum
from typing import NamedTuple


class MediaType(str, Enum):
    PHOTO = "photo"
    VIDEO = "video"


class ThumbnailStatus(str, Enum):
    PENDING = "pending"
    READY = "ready"
    FAILED = "failed"


class RootState(str, Enum):
    IDLE = "idle"
    SCANNING = "scanning"
    DIFFING = "diffing"
    APPLYING = "applying"
    ERROR = "error"
    STOPPED = "stopped"


class Coordinate(NamedTuple):
    lat: float
    lng: float


# (west, south, east, north) in degrees
BBox = tuple[float, float, float, float]


def is_valid_coordinate(lat: float | None, lng: float | None) -> bool:
    if lat is None or lng is None:
        return False
    try:
        lat = float(lat)
        lng = float(lng)
    except (TypeError, ValueError):
        return False
    if not (math.isfinite(lat) and math.isfinite(lng)):
        return False
    return -90.0 <= lat <= 90.0 and -180.0 <= lng <= 180.0


@dataclass(frozen=True)
class Facet:
    """The attributes cluster filters look at, kept beside each indexed point."""

    root_id: int
    media_type: MediaType
    taken_at: datetime | None = None


@dataclass
class MediaMetadata:
    """What the extractor learns from one file."""

    media_type: MediaType
    content_hash: str
    taken_at: datetime | None = None
    coordinate: Coordinate | None = None


@dataclass
class PhotoRecord:
    path: str
    root_id: int
    media_type: MediaType
    content_hash: str = ""
    size: int = 0
    mtime: float = 0.0
    taken_at: datetime | None = None
    coordinate: Coordinate | None = None
    thumbnail_status: ThumbnailStatus = ThumbnailStatus.PENDING
    error: str | None = None
    stale: bool = False
    id: int | None = None

    @property
    def has_error(self) -> bool:
        return self.error is not None

    @property
    def facet(self) -> Facet:
        return Facet(self.root_id, self.media_type, self.taken_at)

    def copy(self, **changes) -> "PhotoRecord":
        return replace(self, **changes)

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "path": self.path,
            "root_id": self.root_id,
            "media_type": self.media_type.value,
            "content_hash": self.content_hash,
            "size": self.size,
            "mtime": self.mtime,
            "taken_at": self.taken_at.isoformat() if self.taken_at else None,
            "lat": self.coordinate.lat if self.coordinate else None,
            "lng": self.coordinate.lng if self.coordinate else None,
            "thumbnail_status": self.thumbnail_status.value,
            "error": self.error,
        }


@dataclass
class Root:
    id: int
    path: str
    state: RootState = RootState.IDLE
    last_scan_at: float | None = None
    error: str | None = None

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "path": self.path,
            "state": self.state.value,
            "last_scan_at": self.last_scan_at,
            "error": self.error,
        }


@dataclass
class IndexingProgress:
    root_id: int
    state: RootState
    processed: int = 0
    total: int = 0
    errors: int = 0
    message: str | None = None

    def to_dict(self) -> dict:
        return {
            "root_id": self.root_id,
            "state": self.state.value,
            "processed": self.processed,
            "total": self.total,
            "errors": self.errors,
            "message": self.message,
        }


@dataclass
class ClusterCell:
    cluster_id: str
    zoom: int
    cell_x: int
    cell_y: int
    centroid: Coordinate
    bbox: BBox
    member_ids: tuple[int, ...] = field(default_factory=tuple)

    @property
    def count(self) -> int:
        return len(self.member_ids)

    def to_dict(self, include_members: bool = False) -> dict:
        data = {
            "cluster_id": self.cluster_id,
            "zoom": self.zoom,
            "cell_x": self.cell_x,
            "cell_y": self.cell_y,
            "count": self.count,
            "lat": self.centroid.lat,
            "lng": self.centroid.lng,
            "bbox": list(self.bbox),
        }
        if include_members:
            data["member_ids"] = list(self.member_ids)
        return data
