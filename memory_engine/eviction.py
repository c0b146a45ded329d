"""Retention policy: which hot records move to the archive."""

import threading
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Any, Dict, List, Optional, Sequence, Tuple

from .frontmatter import parse_timestamp
from .models import MemoryMeta


@dataclass(frozen=True)
class EvictionPolicy:
    max_hot_count: int = 50
    p1_max_age: timedelta = timedelta(days=90)
    p2_max_age: timedelta = timedelta(days=30)

    @classmethod
    def from_config(cls, config: Dict[str, Dict[str, Any]], max_hot_count: Optional[int] = None) -> "EvictionPolicy":
        return cls(
            max_hot_count=config["limits"]["max_hot_count"] if max_hot_count is None else max_hot_count,
            p1_max_age=timedelta(days=config["retention"]["P1_max_age_days"]),
            p2_max_age=timedelta(days=config["retention"]["P2_max_age_days"]),
        )


def _last_accessed(meta: MemoryMeta) -> datetime:
    parsed = parse_timestamp(meta.lastAccessedAt)
    if parsed is None:
        # parse_frontmatter never yields an unparseable timestamp
        raise ValueError(f"Unparseable lastAccessedAt: {meta.lastAccessedAt!r}")
    return parsed


def classify(
    entries: Sequence[Tuple[str, MemoryMeta]],
    now: datetime,
    policy: EvictionPolicy,
) -> Tuple[List[str], List[str]]:
    """Split ``(filename, meta)`` pairs into ``(archived, kept)`` filenames.

    - P0: never archived
    - P2 idle longer than ``p2_max_age``: archived
    - P1 idle longer than ``p1_max_age``: archived
    - If the rest still exceeds ``max_hot_count``: archive least recently
      accessed P2 records first, then P1, until the count fits
    """
    archived: List[str] = []
    remaining: List[Tuple[str, MemoryMeta]] = []

    for filename, meta in entries:
        if meta.priority == "P0":
            remaining.append((filename, meta))
            continue

        age = now - _last_accessed(meta)
        if meta.priority == "P2" and age > policy.p2_max_age:
            archived.append(filename)
        elif meta.priority == "P1" and age > policy.p1_max_age:
            archived.append(filename)
        else:
            remaining.append((filename, meta))

    overflow = len(remaining) - policy.max_hot_count
    if overflow > 0:
        candidates = []
        for priority in ("P2", "P1"):
            tier = [entry for entry in remaining if entry[1].priority == priority]
            tier.sort(key=lambda entry: _last_accessed(entry[1]))
            candidates.extend(tier)
        archived.extend(filename for filename, _ in candidates[:overflow])

    archived_set = set(archived)
    kept = [filename for filename, _ in entries if filename not in archived_set]
    return archived, kept


class EvictionThrottle:
    """Remembers when each token last had an automatic sweep.

    Held in memory only; a restart allows one immediate sweep per token.
    """

    def __init__(self, interval: timedelta) -> None:
        self.interval = interval
        self._last_run: Dict[str, datetime] = {}
        self._lock = threading.Lock()

    def try_acquire(self, token: str, now: datetime) -> bool:
        """Record a sweep for ``token`` at ``now`` unless one ran within ``interval``."""
        with self._lock:
            last = self._last_run.get(token)
            if last is not None and now - last < self.interval:
                return False
            self._last_run[token] = now
            return True

    def last_run(self, token: str) -> Optional[datetime]:
        with self._lock:
            return self._last_run.get(token)
