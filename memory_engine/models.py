"""Data models for records, listings and sweep results."""

from pathlib import Path
from typing import Dict, List, Literal, Optional, Union

from pydantic import BaseModel, ConfigDict, Field

Priority = Literal["P0", "P1", "P2"]
PRIORITIES = ("P0", "P1", "P2")
DEFAULT_PRIORITY: Priority = "P2"


class MemoryMeta(BaseModel):
    """Metadata block stored at the top of every record."""
    model_config = ConfigDict(frozen=True)

    priority: Priority
    createdAt: str
    updatedAt: str
    lastAccessedAt: str


class MemoryFile(BaseModel):
    """A record as read from disk.

    ``meta`` is ``None`` for legacy records that have not been migrated yet;
    ``body`` is then the whole ``content``.
    """

    filename: str
    path: Path
    content: str
    meta: Optional[MemoryMeta] = None
    body: str


class MemoryTitle(BaseModel):
    """Listing entry used for discovery."""

    filename: str
    title: str
    priority: Priority
    lastAccessedAt: str


class QueryResult(BaseModel):
    """Outcome of a read-path operation.

    ``items`` holds formatted records for reads and ``MemoryTitle`` entries
    for listings. An empty ``items`` list with ``error`` unset means the user
    simply has no matching records; a set ``error`` means storage could not
    be read.
    """

    items: List[Union[str, MemoryTitle]] = Field(default_factory=list)
    error: Optional[str] = None

    @property
    def ok(self) -> bool:
        return self.error is None


class EvictResult(BaseModel):
    """Outcome of one eviction sweep."""

    archived: List[str] = Field(default_factory=list)
    kept: List[str] = Field(default_factory=list)
    dry_run: bool = False
    error: Optional[str] = None


class MemoryStats(BaseModel):
    """Counts describing one user's hot and archive storage."""

    token: str
    hot_count: int = 0
    archive_count: int = 0
    by_priority: Dict[str, int] = Field(default_factory=lambda: {p: 0 for p in PRIORITIES})
    max_hot_count: int
    last_sweep_at: Optional[str] = None
    error: Optional[str] = None
