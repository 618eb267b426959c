"""Streaming extraction pipeline.

Runs the metadata extractor for a list of ops on a bounded thread pool and
hands the results back to the calling thread in op order. The caller is the
single writer for its root: it applies each result to the catalog and the
spatial index while later files are still being read.

    ThreadPool (I/O)              Calling thread (writer)
    ================              =======================
    extract(file_1)
    extract(file_2)     -->       apply(file_1)
    extract(file_3)     -->       apply(file_2)
    ...                           cancellation checked between files
"""

import logging
from collections import deque
from concurrent.futures import Future, ThreadPoolExecutor
from dataclasses import dataclass
from pathlib import Path
from typing import Callable, Iterable, Iterator

from errors import CancelledError, ExtractionError
from incremental import AddOp, UpdateOp
from records import MediaMetadata

logger = logging.getLogger(__name__)

Extractor = Callable[[Path], MediaMetadata]

# Futures in flight per worker; bounds memory on very large plans
PREFETCH_PER_WORKER = 4


@dataclass
class Extracted:
    op: AddOp | UpdateOp
    metadata: MediaMetadata | None = None
    error: ExtractionError | None = None


def _extract_one(extractor: Extractor, op: AddOp | UpdateOp) -> Extracted:
    """Run the extractor for one op. Runs in the thread pool."""
    try:
        return Extracted(op=op, metadata=extractor(Path(op.path)))
    except ExtractionError as exc:
        return Extracted(op=op, error=exc)
    except Exception as exc:
        logger.warning("Extractor crashed on %s", op.path, exc_info=True)
        return Extracted(op=op, error=ExtractionError(op.path, f"{type(exc).__name__}: {exc}"))


def run_extraction(
    ops: Iterable[AddOp | UpdateOp],
    extractor: Extractor,
    pool: ThreadPoolExecutor,
    workers: int,
    is_cancelled: Callable[[], bool] | None = None,
) -> Iterator[Extracted]:
    """Yield one Extracted per op, in op order.

    Raises:
        CancelledError: is_cancelled() turned true. Checked between files;
            queued work that has not started is cancelled.
    """
    pending = iter(ops)
    in_flight: deque[Future] = deque()
    limit = max(1, workers) * PREFETCH_PER_WORKER

    def _fill() -> None:
        while len(in_flight) < limit:
            op = next(pending, None)
            if op is None:
                return
            in_flight.append(pool.submit(_extract_one, extractor, op))

    _fill()
    try:
        while in_flight:
            if is_cancelled is not None and is_cancelled():
                raise CancelledError("Extraction cancelled")
            result = in_flight.popleft().result()
            _fill()
            yield result
    finally:
        for future in in_flight:
            future.cancel()
