import sys
import threading
import time
from concurrent.futures import ThreadPoolExecutor
from pathlib import Path

import pytest

sys.path.insert(0, str(Path(__file__).resolve().parent.parent))

from errors import CancelledError, ExtractionError
from incremental import AddOp, UpdateOp
from pipeline import run_extraction
from records import MediaMetadata, MediaType


@pytest.fixture
def pool():
    executor = ThreadPoolExecutor(max_workers=4)
    yield executor
    executor.shutdown(wait=True)


def _ops(count: int) -> list[AddOp]:
    return [AddOp(f"/r/{i:03d}.jpg", 1.0, 1) for i in range(count)]


def _hash_extractor(path: Path) -> MediaMetadata:
    return MediaMetadata(media_type=MediaType.PHOTO, content_hash=path.name)


def test_results_in_op_order(pool):
    def slow_first(path: Path) -> MediaMetadata:
        if path.name == "000.jpg":
            time.sleep(0.05)
        return _hash_extractor(path)

    ops = _ops(20)
    results = list(run_extraction(ops, slow_first, pool, workers=4))
    assert [r.op for r in results] == ops
    assert [r.metadata.content_hash for r in results] == [Path(op.path).name for op in ops]


def test_extraction_error_is_per_file(pool):
    def flaky(path: Path) -> MediaMetadata:
        if path.name == "001.jpg":
            raise ExtractionError(str(path), "corrupt image")
        return _hash_extractor(path)

    results = list(run_extraction(_ops(3), flaky, pool, workers=2))
    assert [r.error is None for r in results] == [True, False, True]
    assert results[1].error.reason == "corrupt image"


def test_unexpected_exception_becomes_extraction_error(pool):
    def broken(path: Path) -> MediaMetadata:
        raise RuntimeError("decoder exploded")

    [result] = run_extraction([UpdateOp("/r/a.jpg", 4, 1.0, 1)], broken, pool, workers=1)
    assert isinstance(result.error, ExtractionError)
    assert "decoder exploded" in result.error.reason


def test_in_flight_work_is_bounded(pool):
    active = 0
    peak = 0
    lock = threading.Lock()

    def tracking(path: Path) -> MediaMetadata:
        nonlocal active, peak
        with lock:
            active += 1
            peak = max(peak, active)
        time.sleep(0.001)
        with lock:
            active -= 1
        return _hash_extractor(path)

    results = list(run_extraction(_ops(50), tracking, pool, workers=2))
    assert len(results) == 50
    assert peak <= 4


def test_cancellation_between_files(pool):
    cancelled = threading.Event()
    seen = []
    with pytest.raises(CancelledError):
        for result in run_extraction(_ops(30), _hash_extractor, pool, workers=2,
                                     is_cancelled=cancelled.is_set):
            seen.append(result)
            if len(seen) == 3:
                cancelled.set()
    assert len(seen) == 3


def test_empty_ops(pool):
    assert list(run_extraction([], _hash_extractor, pool, workers=2)) == []
