"""Debounce and coalesce filesystem change events.

Events are grouped per root. Each new event restarts that root's quiet
timer; once a root has been quiet for the debounce window its pending paths
are released as one EventBatch. Within a batch every path appears once, in
its latest state. The clock is injectable so tests can step time by hand.
"""

import logging
import threading
import time
from dataclasses import dataclass, field
from typing import Callable

import config
from scanner import normalize_path

logger = logging.getLogger(__name__)

EVENT_KINDS = ("create", "modify", "delete", "rename")


@dataclass(frozen=True)
class FsEvent:
    path: str
    kind: str
    old_path: str | None = None

    def __post_init__(self):
        if self.kind not in EVENT_KINDS:
            raise ValueError(f"Unknown event kind: {self.kind!r}")
        if self.kind == "rename" and not self.old_path:
            raise ValueError("rename events need old_path")

    @classmethod
    def from_dict(cls, data: dict) -> "FsEvent":
        return cls(
            path=data["path"],
            kind=data["kind"],
            old_path=data.get("old_path") or data.get("oldPath"),
        )


@dataclass
class EventBatch:
    root_id: int
    changed: list[str] = field(default_factory=list)
    removed: list[str] = field(default_factory=list)
    full_rescan: bool = False

    def __len__(self) -> int:
        return len(self.changed) + len(self.removed)


@dataclass
class _Pending:
    # path -> True if changed, False if removed. dict keeps arrival order.
    paths: dict[str, bool] = field(default_factory=dict)
    last_event_at: float = 0.0
    interrupted: bool = False


class EventCoalescer:
    def __init__(
        self,
        window: float | None = None,
        clock: Callable[[], float] = time.monotonic,
        overflow_threshold: int | None = None,
    ):
        self._window = config.DEBOUNCE_SECONDS if window is None else window
        self._clock = clock
        self._overflow = overflow_threshold or config.OVERFLOW_THRESHOLD
        self._pending: dict[int, _Pending] = {}
        self._lock = threading.Lock()

    @property
    def window(self) -> float:
        return self._window

    def _now(self, now: float | None) -> float:
        return self._clock() if now is None else now

    def push(self, root_id: int, event: FsEvent, now: float | None = None) -> None:
        """Record one event. Duplicates collapse; the latest state of a path wins."""
        ts = self._now(now)
        with self._lock:
            pending = self._pending.setdefault(root_id, _Pending())
            if event.kind == "rename":
                self._set(pending, normalize_path(event.old_path), False)
                self._set(pending, normalize_path(event.path), True)
            else:
                self._set(pending, normalize_path(event.path), event.kind != "delete")
            pending.last_event_at = ts

    @staticmethod
    def _set(pending: _Pending, path: str, changed: bool) -> None:
        # Re-insert so the path moves to the end in arrival order
        pending.paths.pop(path, None)
        pending.paths[path] = changed

    def mark_interrupted(self, root_id: int, now: float | None = None) -> None:
        """The event stream for this root lost events; rescan it fully."""
        ts = self._now(now)
        with self._lock:
            pending = self._pending.setdefault(root_id, _Pending())
            pending.interrupted = True
            pending.last_event_at = ts

    def discard(self, root_id: int) -> int:
        """Drop everything queued for a root. Returns the number of paths dropped."""
        with self._lock:
            pending = self._pending.pop(root_id, None)
        return len(pending.paths) if pending else 0

    def pending_roots(self) -> list[int]:
        with self._lock:
            return sorted(self._pending)

    def due(self, now: float | None = None) -> list[EventBatch]:
        """Release batches for every root that has been quiet for the window."""
        ts = self._now(now)
        batches: list[EventBatch] = []
        with self._lock:
            for root_id in sorted(self._pending):
                pending = self._pending[root_id]
                if ts - pending.last_event_at < self._window:
                    continue
                del self._pending[root_id]
                batch = EventBatch(
                    root_id=root_id,
                    changed=[p for p, changed in pending.paths.items() if changed],
                    removed=[p for p, changed in pending.paths.items() if not changed],
                    full_rescan=pending.interrupted,
                )
                if len(batch) > self._overflow:
                    logger.info(
                        "Root %d: %d paths in one burst, falling back to full rescan",
                        root_id, len(batch),
                    )
                    batch.full_rescan = True
                batches.append(batch)
        return batches
