"""Extract indexing metadata from media files.

Reads capture time and GPS position from EXIF for photos and from the
container tags (through MediaInfo) for videos, classifies the file as photo
or video by extension, and computes a content digest used to recognise moved
files. Any failure to read a file surfaces as ExtractionError.
"""

import hashlib
import logging
import re
from datetime import datetime, timedelta, timezone
from pathlib import Path

from PIL import Image, UnidentifiedImageError
from PIL.ExifTags import GPS, IFD, Base as ExifBase
from pymediainfo import MediaInfo

from config import HASH_BLOCK_SIZE, PHOTO_EXTENSIONS, VIDEO_EXTENSIONS
from errors import ExtractionError
from records import Coordinate, MediaMetadata, MediaType, is_valid_coordinate
from thumbnails import register_heif

logger = logging.getLogger(__name__)

# Camera raw formats Pillow usually cannot decode. Failing to open one is not
# a corrupt file, just a file we can hash but not read EXIF from.
_RAW_EXTENSIONS = {
    ".dng", ".cr2", ".cr3", ".nef", ".nrw", ".arw", ".sr2", ".rw2",
    ".orf", ".raf", ".pef", ".srw", ".raw",
}

# Tags on ExifBase that don't exist on older Pillow releases
_OFFSET_TIME_ORIGINAL = 0x9011
_OFFSET_TIME = 0x9010


def media_type_for(path: Path) -> MediaType | None:
    """Classify a path by extension. None means unsupported."""
    suffix = path.suffix.lower()
    if suffix in PHOTO_EXTENSIONS:
        return MediaType.PHOTO
    if suffix in VIDEO_EXTENSIONS:
        return MediaType.VIDEO
    return None


def content_hash(path: Path) -> str:
    """SHA-256 of the file contents, streamed in fixed-size blocks."""
    digest = hashlib.sha256()
    with open(path, "rb") as fh:
        while True:
            block = fh.read(HASH_BLOCK_SIZE)
            if not block:
                break
            digest.update(block)
    return digest.hexdigest()


# ---------------------------------------------------------------------------
# GPS
# ---------------------------------------------------------------------------


def _dms_to_decimal(dms: tuple, ref: str) -> float:
    """Convert EXIF GPS degrees/minutes/seconds to decimal degrees."""
    degrees = float(dms[0])
    minutes = float(dms[1])
    seconds = float(dms[2])
    decimal = degrees + minutes / 60.0 + seconds / 3600.0
    if ref in ("S", "W"):
        decimal = -decimal
    return decimal


def _parse_gps_ifd(gps_ifd: dict) -> Coordinate | None:
    """Extract a coordinate from a GPS EXIF IFD dict. None if missing/invalid."""
    lat_dms = gps_ifd.get(GPS.GPSLatitude)
    lat_ref = gps_ifd.get(GPS.GPSLatitudeRef)
    lon_dms = gps_ifd.get(GPS.GPSLongitude)
    lon_ref = gps_ifd.get(GPS.GPSLongitudeRef)

    if not (lat_dms and lat_ref and lon_dms and lon_ref):
        return None

    try:
        lat = _dms_to_decimal(lat_dms, lat_ref)
        lon = _dms_to_decimal(lon_dms, lon_ref)
    except (TypeError, ValueError, IndexError, ZeroDivisionError):
        return None

    if not is_valid_coordinate(lat, lon):
        return None

    # Filter Null Island: cameras sometimes write (0, 0) as default
    if lat == 0.0 and lon == 0.0:
        return None

    return Coordinate(lat, lon)


# ---------------------------------------------------------------------------
# Capture time
# ---------------------------------------------------------------------------


def _parse_offset(value: str | None) -> timezone | None:
    """Parse an EXIF OffsetTime value like '+02:00'."""
    if not value:
        return None
    value = str(value).strip().strip("\x00")
    try:
        sign = -1 if value[0] == "-" else 1
        hours, minutes = value.lstrip("+-").split(":")
        return timezone(sign * timedelta(hours=int(hours), minutes=int(minutes)))
    except (ValueError, IndexError):
        return None


def _parse_exif_datetime(value: str | None, offset: str | None = None) -> datetime | None:
    """Convert an EXIF date string to an aware UTC datetime.

    EXIF format: "2023:07:15 14:30:00". Without an offset tag the wall-clock
    time is taken as UTC.
    """
    if not value:
        return None
    text = str(value).strip().strip("\x00")
    try:
        parsed = datetime.strptime(text[:19], "%Y:%m:%d %H:%M:%S")
    except ValueError:
        return None
    if not 1900 <= parsed.year <= 2100:
        return None
    tz = _parse_offset(offset) or timezone.utc
    return parsed.replace(tzinfo=tz).astimezone(timezone.utc)


def _read_exif(path: Path) -> tuple[datetime | None, Coordinate | None]:
    """Read capture time and GPS position. Raises on unreadable images."""
    with Image.open(path) as img:
        exif = img.getexif()
        if not exif:
            return None, None

        exif_ifd = exif.get_ifd(IFD.Exif) or {}
        taken_at = _parse_exif_datetime(
            exif_ifd.get(ExifBase.DateTimeOriginal) or exif.get(ExifBase.DateTimeOriginal),
            exif_ifd.get(_OFFSET_TIME_ORIGINAL),
        )
        if taken_at is None:
            taken_at = _parse_exif_datetime(
                exif.get(ExifBase.DateTime), exif_ifd.get(_OFFSET_TIME),
            )

        coords = None
        gps_ifd = exif.get_ifd(IFD.GPSInfo)
        if gps_ifd:
            coords = _parse_gps_ifd(gps_ifd)

    return taken_at, coords


# ---------------------------------------------------------------------------
# Video
# ---------------------------------------------------------------------------

# QuickTime/MP4 location atoms use ISO 6709, e.g. "+48.8584+002.2945+035.0/"
_ISO6709 = re.compile(r"^\s*([+-]\d{1,2}(?:\.\d+)?)([+-]\d{1,3}(?:\.\d+)?)")

_VIDEO_LOCATION_FIELDS = ("comapplequicktimelocationiso6709", "xyz", "location")
_VIDEO_DATE_FIELDS = (
    "comapplequicktimecreationdate", "recorded_date", "encoded_date", "tagged_date",
)


def _parse_iso6709(value) -> Coordinate | None:
    if not value:
        return None
    match = _ISO6709.match(str(value))
    if not match:
        return None
    lat, lng = float(match.group(1)), float(match.group(2))
    if not is_valid_coordinate(lat, lng) or (lat == 0.0 and lng == 0.0):
        return None
    return Coordinate(lat, lng)


def _parse_media_datetime(value) -> datetime | None:
    """Convert a MediaInfo date to an aware UTC datetime.

    MediaInfo writes "2023-07-15 14:30:00 UTC" (older releases put UTC
    first); the QuickTime creation date carries its own offset. Unset
    QuickTime dates read as 1904, the format's epoch.
    """
    if not value:
        return None
    text = str(value).strip()
    if text.startswith("UTC "):
        text = text[4:] + "+0000"
    elif text.endswith(" UTC"):
        text = text[:-4] + "+0000"
    for fmt in (
        "%Y-%m-%d %H:%M:%S%z", "%Y-%m-%dT%H:%M:%S%z", "%Y-%m-%d %H:%M:%S.%f%z",
        "%Y-%m-%d %H:%M:%S", "%Y-%m-%dT%H:%M:%S",
    ):
        try:
            parsed = datetime.strptime(text, fmt)
        except ValueError:
            continue
        if not 1904 < parsed.year <= 2100:
            return None
        if parsed.tzinfo is None:
            parsed = parsed.replace(tzinfo=timezone.utc)
        return parsed.astimezone(timezone.utc)
    return None


def _read_video(path: Path) -> tuple[datetime | None, Coordinate | None]:
    """Capture time and location from the container's general track."""
    try:
        media_info = MediaInfo.parse(str(path))
    except Exception as exc:
        logger.warning("MediaInfo.parse failed for %s: %s", path, exc)
        return None, None

    taken_at = None
    coords = None
    for track in media_info.tracks:
        if track.track_type != "General":
            continue
        for name in _VIDEO_DATE_FIELDS:
            taken_at = _parse_media_datetime(getattr(track, name, None))
            if taken_at:
                break
        for name in _VIDEO_LOCATION_FIELDS:
            coords = _parse_iso6709(getattr(track, name, None))
            if coords:
                break
    return taken_at, coords


def extract_metadata(path: Path) -> MediaMetadata:

    """Build the metadata for one file.

    Raises:
        ExtractionError: the file is unsupported, unreadable, empty, or
            an image Pillow should decode but can't.
    """
    media_type = media_type_for(path)
    if media_type is None:
        raise ExtractionError(str(path), "unsupported file type")

    try:
        if path.stat().st_size == 0:
            raise ExtractionError(str(path), "empty file")
        digest = content_hash(path)
    except OSError as exc:
        raise ExtractionError(str(path), f"unreadable: {exc}") from exc

    if media_type is MediaType.VIDEO:
        taken_at, coords = _read_video(path)
        return MediaMetadata(
            media_type=media_type, content_hash=digest, taken_at=taken_at, coordinate=coords,
        )

    register_heif()
    try:
        taken_at, coords = _read_exif(path)
    except UnidentifiedImageError as exc:
        if path.suffix.lower() in _RAW_EXTENSIONS:
            logger.debug("No EXIF decoder for raw file %s", path)
            return MediaMetadata(media_type=media_type, content_hash=digest)
        raise ExtractionError(str(path), "not a decodable image") from exc
    except (OSError, SyntaxError, ValueError) as exc:
        raise ExtractionError(str(path), f"corrupt image: {exc}") from exc

    return MediaMetadata(
        media_type=media_type,
        content_hash=digest,
        taken_at=taken_at,
        coordinate=coords,
    )
