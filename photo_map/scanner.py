"""Walk a root directory and list supported media files."""

import logging
import os
from collections import deque
from dataclasses import dataclass, field
from pathlib import Path

from config import SCAN_EXCLUDE_DIRS, SUPPORTED_EXTENSIONS
from errors import RootError

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class ScanEntry:
    path: str
    mtime: float
    size: int


@dataclass
class ScanResult:
    entries: list[ScanEntry] = field(default_factory=list)
    # Symlinked directories not descended because they point at a directory
    # already visited in this walk.
    cycles: list[str] = field(default_factory=list)
    unreadable: list[str] = field(default_factory=list)


def normalize_path(path: str | Path) -> str:
    return os.path.normpath(os.path.abspath(str(path)))


def is_supported(path: str | Path) -> bool:
    return Path(path).suffix.lower() in SUPPORTED_EXTENSIONS


def _skip_dir(name: str) -> bool:
    return name.startswith(".") or name in SCAN_EXCLUDE_DIRS


def stat_entry(path: str) -> ScanEntry | None:
    """ScanEntry for a single file, or None if it is gone or unsupported."""
    if not is_supported(path):
        return None
    try:
        st = os.stat(path)
    except OSError:
        return None
    if not os.path.isfile(path):
        return None
    return ScanEntry(path=normalize_path(path), mtime=st.st_mtime, size=st.st_size)


def scan_root(
    root_path: str, root_id: int | None = None, is_cancelled=None, exclude=None,
) -> ScanResult:
    """Breadth-first walk of root_path following symlinks.

    Directories whose path is in ``exclude`` are not descended; they belong
    to roots nested inside this one.

    Directory identity is (st_dev, st_ino), so a symlink back into an
    ancestor is reported in ``cycles`` and skipped instead of recursing
    forever.

    Raises:
        RootError: root_path is missing or not a readable directory.
    """
    root = normalize_path(root_path)
    try:
        root_stat = os.stat(root)
    except OSError as exc:
        raise RootError(root_id, root, f"not accessible: {exc}") from exc
    if not os.path.isdir(root):
        raise RootError(root_id, root, "not a directory")

    excluded = frozenset(exclude or ())
    result = ScanResult()
    visited: set[tuple[int, int]] = {(root_stat.st_dev, root_stat.st_ino)}
    queue: deque[str] = deque([root])

    while queue:
        if is_cancelled is not None and is_cancelled():
            break
        current = queue.popleft()
        try:
            iterator = os.scandir(current)
        except FileNotFoundError:
            continue
        except OSError:
            if current == root:
                raise RootError(root_id, root, "cannot list directory")
            logger.warning("Cannot list %s", current, exc_info=True)
            result.unreadable.append(current)
            continue

        with iterator as entries:
            for entry in entries:
                try:
                    if entry.is_dir(follow_symlinks=True):
                        if _skip_dir(entry.name) or entry.path in excluded:
                            continue
                        st = entry.stat(follow_symlinks=True)
                        key = (st.st_dev, st.st_ino)
                        if key in visited:
                            logger.info("Skipping symlink cycle at %s", entry.path)
                            result.cycles.append(entry.path)
                            continue
                        visited.add(key)
                        queue.append(entry.path)
                        continue

                    if not entry.is_file(follow_symlinks=True) or not is_supported(entry.name):
                        continue
                    st = entry.stat(follow_symlinks=True)
                except FileNotFoundError:
                    # Vanished mid-walk, or a dangling symlink
                    continue
                except OSError:
                    logger.warning("Cannot stat %s", entry.path, exc_info=True)
                    result.unreadable.append(entry.path)
                    continue

                result.entries.append(
                    ScanEntry(path=normalize_path(entry.path), mtime=st.st_mtime, size=st.st_size)
                )

    result.entries.sort(key=lambda e: e.path)
    return result
