from .errors import (
    TrackerError, ValidationError, NotFoundError, StoreError,
    DuplicateSubmissionError, ConsistencyError,
)
from .store import EntityStore, InMemoryEntityStore
from .database import SqliteEntityStore
from .blob_store import BlobStore, LocalBlobStore, StoredBlob, BlobDownload
from .state import TrackerState
from .coordinator import MutationCoordinator, SupplyResult, LoadReport
from .scheduler import UrgencySweeper

__all__ = [
    "TrackerError", "ValidationError", "NotFoundError", "StoreError",
    "DuplicateSubmissionError", "ConsistencyError",
    "EntityStore", "InMemoryEntityStore", "SqliteEntityStore",
    "BlobStore", "LocalBlobStore", "StoredBlob", "BlobDownload",
    "TrackerState", "MutationCoordinator", "SupplyResult", "LoadReport",
    "UrgencySweeper",
]
