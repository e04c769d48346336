"""
Storage layer: table stores, blob stores, run log and the upsert engine.
"""

from .blob_store import BlobStore, LocalBlobStore, MemoryBlobStore
from .memory_store import MemoryTableStore
from .store import Condition, TableStore

__all__ = [
    "BlobStore",
    "Condition",
    "LocalBlobStore",
    "MemoryBlobStore",
    "MemoryTableStore",
    "TableStore",
]
