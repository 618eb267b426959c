import os
import shutil
import sys
from pathlib import Path

sys.path.insert(0, str(Path(__file__).resolve().parent.parent))

from incremental import AddOp, RemoveOp, UpdateOp, plan_delta, plan_full
from records import MediaType, PhotoRecord
from scanner import ScanEntry, stat_entry


def _rec(photo_id: int, path: str, mtime: float = 1.0, size: int = 1, stale: bool = False) -> PhotoRecord:
    return PhotoRecord(
        id=photo_id, path=path, root_id=1, media_type=MediaType.PHOTO,
        mtime=mtime, size=size, stale=stale,
    )


def _touch(path: Path, data: bytes = b"x") -> str:
    path.parent.mkdir(parents=True, exist_ok=True)
    path.write_bytes(data)
    return str(path)


# -- plan_full --

def test_plan_full_classifies_and_orders():
    entries = [
        ScanEntry("/r/c.jpg", 1.0, 1),    # unchanged
        ScanEntry("/r/a.jpg", 1.0, 1),    # new
        ScanEntry("/r/b.jpg", 2.0, 1),    # mtime changed
    ]
    records = [_rec(5, "/r/gone2.jpg"), _rec(2, "/r/b.jpg"), _rec(3, "/r/c.jpg"), _rec(4, "/r/gone1.jpg")]
    plan = plan_full(entries, records)

    assert plan.ops == [
        AddOp("/r/a.jpg", 1.0, 1),
        UpdateOp("/r/b.jpg", 2, 2.0, 1),
        RemoveOp(4, "/r/gone1.jpg"),
        RemoveOp(5, "/r/gone2.jpg"),
    ]
    assert plan.unchanged == 1
    assert plan.scanned == 3


def test_plan_full_size_change_is_update():
    plan = plan_full([ScanEntry("/r/a.jpg", 1.0, 99)], [_rec(1, "/r/a.jpg")])
    assert plan.updates == [UpdateOp("/r/a.jpg", 1, 1.0, 99)]


def test_plan_full_stale_record_is_update():
    plan = plan_full([ScanEntry("/r/a.jpg", 1.0, 1)], [_rec(1, "/r/a.jpg", stale=True)])
    assert len(plan.updates) == 1


def test_plan_full_nothing_to_do():
    plan = plan_full([ScanEntry("/r/a.jpg", 1.0, 1)], [_rec(1, "/r/a.jpg")])
    assert len(plan) == 0
    assert plan.unchanged == 1


def test_plan_full_leaves_records_under_nested_roots():
    records = [_rec(1, "/r/trip/a.jpg"), _rec(2, "/r/trip2/b.jpg")]
    plan = plan_full([], records, exclude=["/r/trip"])
    assert plan.ops == [RemoveOp(2, "/r/trip2/b.jpg")]


# -- plan_delta --

def test_plan_delta_new_and_modified(tmp_path):
    new = _touch(tmp_path / "new.jpg")
    old = _touch(tmp_path / "old.jpg", b"longer")
    plan = plan_delta([new, old], [], [_rec(7, old, mtime=0.0, size=1)])
    assert [type(op) for op in plan.ops] == [AddOp, UpdateOp]
    assert plan.updates[0].photo_id == 7


def test_plan_delta_deleted_path_becomes_remove(tmp_path):
    gone = str(tmp_path / "gone.jpg")
    plan = plan_delta([], [gone], [_rec(3, gone)])
    assert plan.ops == [RemoveOp(3, gone)]


def test_plan_delta_changed_but_missing_is_remove(tmp_path):
    gone = str(tmp_path / "gone.jpg")
    plan = plan_delta([gone], [], [_rec(3, gone)])
    assert plan.ops == [RemoveOp(3, gone)]


def test_plan_delta_removed_but_present_is_rechecked(tmp_path):
    back = _touch(tmp_path / "back.jpg")
    entry = stat_entry(back)
    plan = plan_delta([], [back], [_rec(3, back, mtime=entry.mtime, size=entry.size)])
    assert len(plan) == 0
    assert plan.unchanged == 1


def test_plan_delta_unknown_missing_path_ignored(tmp_path):
    plan = plan_delta([], [str(tmp_path / "never.jpg")], [])
    assert len(plan) == 0


def test_plan_delta_removed_directory_takes_children(tmp_path):
    album = tmp_path / "album"
    a = _touch(album / "a.jpg")
    b = _touch(album / "nested" / "b.jpg")
    keep = _touch(tmp_path / "keep.jpg")
    shutil.rmtree(album)
    records = [_rec(1, a), _rec(2, b), _rec(3, keep)]
    plan = plan_delta([], [str(album)], records)
    assert plan.ops == [RemoveOp(1, a), RemoveOp(2, b)]


def test_plan_delta_new_directory_expands(tmp_path):
    album = tmp_path / "album"
    _touch(album / "a.jpg")
    _touch(album / "sub" / "b.jpg")
    plan = plan_delta([str(album)], [], [])
    assert sorted(os.path.basename(op.path) for op in plan.adds) == ["a.jpg", "b.jpg"]


def test_plan_delta_rename_pair(tmp_path):
    old = str(tmp_path / "old.jpg")
    new = _touch(tmp_path / "new.jpg")
    plan = plan_delta([new], [old], [_rec(9, old)])
    assert [type(op) for op in plan.ops] == [AddOp, RemoveOp]
