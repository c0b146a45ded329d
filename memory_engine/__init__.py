"""File-backed per-user memory store with priority-based retention."""

from .errors import (
    InvalidIdentifier,
    MalformedMetadata,
    MemoryEngineError,
    RecordNotFound,
    StorageUnavailable,
)
from .models import EvictResult, MemoryMeta, MemoryStats, MemoryTitle, Priority, QueryResult
from .store import MemoryStore, generate_token

__all__ = [
    "EvictResult",
    "InvalidIdentifier",
    "MalformedMetadata",
    "MemoryEngineError",
    "MemoryMeta",
    "MemoryStats",
    "MemoryStore",
    "MemoryTitle",
    "Priority",
    "QueryResult",
    "RecordNotFound",
    "StorageUnavailable",
    "generate_token",
]
