"""Diff a scanned candidate set against the catalog.

Produces the ordered op list an apply cycle executes: Add and Update ops in
path order, then Remove ops in photo id order.
"""

import logging
import os
from dataclasses import dataclass, field

from records import PhotoRecord
from scanner import ScanEntry, normalize_path, scan_root, stat_entry

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class AddOp:
    path: str
    mtime: float
    size: int


@dataclass(frozen=True)
class UpdateOp:
    path: str
    photo_id: int
    mtime: float
    size: int


@dataclass(frozen=True)
class RemoveOp:
    photo_id: int
    path: str


Op = AddOp | UpdateOp | RemoveOp


@dataclass
class Plan:
    ops: list[Op] = field(default_factory=list)
    unchanged: int = 0
    scanned: int = 0

    @property
    def adds(self) -> list[AddOp]:
        return [op for op in self.ops if isinstance(op, AddOp)]

    @property
    def updates(self) -> list[UpdateOp]:
        return [op for op in self.ops if isinstance(op, UpdateOp)]

    @property
    def removes(self) -> list[RemoveOp]:
        return [op for op in self.ops if isinstance(op, RemoveOp)]

    def __len__(self) -> int:
        return len(self.ops)


def _is_under(path: str, prefixes) -> bool:
    return any(path.startswith(p.rstrip(os.sep) + os.sep) for p in prefixes)


def _needs_update(entry: ScanEntry, record: PhotoRecord) -> bool:
    return record.stale or record.mtime != entry.mtime or record.size != entry.size


def _classify(
    entries: list[ScanEntry], existing: dict[str, PhotoRecord], plan: Plan,
) -> list[Op]:
    ops: list[Op] = []
    for entry in sorted(entries, key=lambda e: e.path):
        record = existing.get(entry.path)
        if record is None:
            ops.append(AddOp(entry.path, entry.mtime, entry.size))
        elif _needs_update(entry, record):
            ops.append(UpdateOp(entry.path, record.id, entry.mtime, entry.size))
        else:
            plan.unchanged += 1
    return ops


def plan_full(
    entries: list[ScanEntry], records: list[PhotoRecord], exclude=(),
) -> Plan:
    """Plan for a full scan: anything catalogued but not scanned is removed.

    Records under an ``exclude`` prefix are left alone; the nested root
    there owns them.
    """
    existing = {r.path: r for r in records}
    plan = Plan(scanned=len(entries))
    plan.ops.extend(_classify(entries, existing, plan))

    seen = {e.path for e in entries}
    removes = [
        RemoveOp(r.id, r.path) for r in records
        if r.path not in seen and not _is_under(r.path, exclude)
    ]
    plan.ops.extend(sorted(removes, key=lambda op: op.photo_id))
    return plan


def plan_delta(
    changed_paths: list[str],
    removed_paths: list[str],
    records: list[PhotoRecord],
    exclude=(),
) -> Plan:
    """Plan for a burst of filesystem events.

    Only the named paths are examined. Each path is re-checked on disk, so a
    'changed' path that is gone becomes a removal and a 'removed' path that
    exists again is treated as changed. A directory path stands for every
    file beneath it.
    """
    existing = {r.path: r for r in records}
    entries: dict[str, ScanEntry] = {}
    gone: set[str] = set()

    for raw in list(changed_paths) + list(removed_paths):
        path = normalize_path(raw)
        if os.path.isdir(path):
            for entry in scan_root(path, exclude=exclude).entries:
                entries[entry.path] = entry
            continue
        entry = stat_entry(path)
        if entry is not None:
            entries[entry.path] = entry
        else:
            gone.add(path)

    plan = Plan(scanned=len(entries) + len(gone))
    plan.ops.extend(_classify(list(entries.values()), existing, plan))

    removes: dict[int, RemoveOp] = {}
    for path in gone:
        record = existing.get(path)
        if record is not None:
            removes[record.id] = RemoveOp(record.id, record.path)
            continue
        # A removed directory takes everything under it along
        prefix = path.rstrip(os.sep) + os.sep
        for rec_path, rec in existing.items():
            if rec_path.startswith(prefix) and rec_path not in entries:
                removes[rec.id] = RemoveOp(rec.id, rec.path)

    plan.ops.extend(removes[k] for k in sorted(removes))
    return plan
