import os
import sys
from pathlib import Path

import pytest

sys.path.insert(0, str(Path(__file__).resolve().parent.parent))

from errors import RootError
from scanner import is_supported, scan_root, stat_entry


def _touch(path: Path, data: bytes = b"x") -> Path:
    path.parent.mkdir(parents=True, exist_ok=True)
    path.write_bytes(data)
    return path


def _names(result) -> list[str]:
    return [Path(e.path).name for e in result.entries]


def test_scan_finds_supported_files_recursively(tmp_path):
    _touch(tmp_path / "a.jpg")
    _touch(tmp_path / "sub" / "b.HEIC")
    _touch(tmp_path / "sub" / "deeper" / "c.mov")
    _touch(tmp_path / "notes.txt")
    result = scan_root(str(tmp_path))
    assert sorted(_names(result)) == ["a.jpg", "b.HEIC", "c.mov"]


def test_scan_entries_sorted_with_stat(tmp_path):
    _touch(tmp_path / "z.jpg", b"12345")
    _touch(tmp_path / "a.jpg")
    result = scan_root(str(tmp_path))
    assert [e.path for e in result.entries] == sorted(e.path for e in result.entries)
    z = next(e for e in result.entries if e.path.endswith("z.jpg"))
    assert z.size == 5
    assert z.mtime == os.stat(z.path).st_mtime


def test_scan_skips_hidden_and_system_dirs(tmp_path):
    _touch(tmp_path / ".thumbnails" / "a.jpg")
    _touch(tmp_path / "$RECYCLE.BIN" / "b.jpg")
    _touch(tmp_path / "System Volume Information" / "c.jpg")
    _touch(tmp_path / "keep" / "d.jpg")
    assert _names(scan_root(str(tmp_path))) == ["d.jpg"]


def test_scan_survives_symlink_cycle(tmp_path):
    _touch(tmp_path / "album" / "a.jpg")
    os.symlink(tmp_path, tmp_path / "album" / "loop")
    result = scan_root(str(tmp_path))
    assert _names(result) == ["a.jpg"]
    assert len(result.cycles) == 1


def test_scan_does_not_descend_excluded_dirs(tmp_path):
    _touch(tmp_path / "a.jpg")
    _touch(tmp_path / "nested" / "b.jpg")
    _touch(tmp_path / "nested2" / "c.jpg")
    result = scan_root(str(tmp_path), exclude=[str(tmp_path / "nested")])
    assert sorted(_names(result)) == ["a.jpg", "c.jpg"]


def test_scan_follows_symlinked_dirs(tmp_path):
    outside = tmp_path / "outside"
    _touch(outside / "linked.jpg")
    root = tmp_path / "root"
    root.mkdir()
    os.symlink(outside, root / "link")
    assert _names(scan_root(str(root))) == ["linked.jpg"]


def test_scan_ignores_dangling_symlink(tmp_path):
    os.symlink(tmp_path / "nowhere.jpg", tmp_path / "dangling.jpg")
    _touch(tmp_path / "real.jpg")
    assert _names(scan_root(str(tmp_path))) == ["real.jpg"]


def test_scan_missing_root_raises(tmp_path):
    with pytest.raises(RootError) as info:
        scan_root(str(tmp_path / "gone"), root_id=3)
    assert info.value.root_id == 3


def test_scan_file_root_raises(tmp_path):
    f = _touch(tmp_path / "a.jpg")
    with pytest.raises(RootError, match="not a directory"):
        scan_root(str(f))


def test_scan_cancelled_stops_early(tmp_path):
    for i in range(5):
        _touch(tmp_path / f"d{i}" / "a.jpg")
    result = scan_root(str(tmp_path), is_cancelled=lambda: True)
    assert result.entries == []


def test_stat_entry(tmp_path):
    f = _touch(tmp_path / "a.jpg", b"abc")
    entry = stat_entry(str(f))
    assert entry.size == 3
    assert stat_entry(str(tmp_path / "missing.jpg")) is None
    assert stat_entry(str(_touch(tmp_path / "a.txt"))) is None
    assert stat_entry(str(tmp_path)) is None


def test_is_supported_case_insensitive():
    assert is_supported("IMG.JPEG")
    assert is_supported("clip.Mp4")
    assert not is_supported("doc.pdf")
