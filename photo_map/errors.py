"""Error taxonomy for indexing and cluster queries.

Per-file and per-query errors stay local to the operation that raised them.
Root-level failures and invariant violations are surfaced to the caller.
"""


class PhotoMapError(Exception):
    """Base class for everything raised by this package."""


class ExtractionError(PhotoMapError):
    """A single file could not be read, is corrupt, or is unsupported."""

    def __init__(self, path: str, reason: str):
        super().__init__(f"{path}: {reason}")
        self.path = path
        self.reason = reason


class RootError(PhotoMapError):
    """The root directory is missing or inaccessible."""

    def __init__(self, root_id: int | None, path: str, reason: str):
        super().__init__(f"Root {path}: {reason}")
        self.root_id = root_id
        self.path = path
        self.reason = reason


class QueryNotFound(PhotoMapError):
    """A cluster id could not be decoded."""

    def __init__(self, cluster_id: str):
        super().__init__(f"Unknown cluster id: {cluster_id!r}")
        self.cluster_id = cluster_id


class QueryTimeout(PhotoMapError):
    def __init__(self, timeout: float):
        super().__init__(f"Query exceeded {timeout:.3f}s")
        self.timeout = timeout


class IndexWriteConflict(PhotoMapError):
    """The spatial index disagrees with the catalog about a record."""

    def __init__(self, photo_id: int, detail: str = ""):
        msg = f"Index write conflict for photo {photo_id}"
        super().__init__(f"{msg}: {detail}" if detail else msg)
        self.photo_id = photo_id


class CatalogError(PhotoMapError):
    """A catalog read or write failed. Retryable for a single record."""


class CancelledError(PhotoMapError):
    """An indexing cycle was cancelled because its root was removed."""
