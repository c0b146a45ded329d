"""Per-user record store backed by Markdown files.

Layout under the base path::

    <base>/<token>/*.md           hot records
    <base>/<token>/archive/*.md   archived records
    <base>/audit.log              one line per mutating operation
"""

import asyncio
import logging
import secrets
from collections import defaultdict
from datetime import datetime, timedelta, timezone
from pathlib import Path
from typing import Any, Callable, Dict, List, Optional, Tuple, Union

import aiofiles
import aiofiles.os

from . import paths
from .config import AUDIT_LOG_NAME, MEMORY_BASE_PATH, MEMORY_CONFIG, RECORD_EXTENSION
from .errors import MemoryEngineError, RecordNotFound, StorageUnavailable
from .eviction import EvictionPolicy, EvictionThrottle, classify
from .frontmatter import (
    extract_title,
    format_memory,
    format_timestamp,
    later_timestamp,
    legacy_meta,
    parse_frontmatter,
    serialize_frontmatter,
)
from .models import (
    DEFAULT_PRIORITY,
    PRIORITIES,
    EvictResult,
    MemoryFile,
    MemoryMeta,
    MemoryStats,
    MemoryTitle,
    Priority,
    QueryResult,
)
from .search import search_records

logger = logging.getLogger(__name__)

# Failures the public methods turn into sentinels instead of raising
_RECOVERABLE = (MemoryEngineError, OSError, ValueError)


def generate_token() -> str:
    """Generate a new random user token (32 hex characters)."""
    return secrets.token_hex(16)


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class MemoryStore:
    """CRUD, search and eviction over one base directory of user namespaces.

    Each instance owns its own per-token locks and eviction throttle, so
    separate stores (e.g. one per test) never share state.
    """

    def __init__(
        self,
        base_path: Union[str, Path] = MEMORY_BASE_PATH,
        config: Optional[Dict[str, Dict[str, Any]]] = None,
        clock: Optional[Callable[[], datetime]] = None,
    ) -> None:
        self.base_path = Path(base_path)
        self.config = config or MEMORY_CONFIG
        self._clock = clock or _utcnow
        self.throttle = EvictionThrottle(
            timedelta(hours=self.config["eviction"]["interval_hours"])
        )
        self._locks: Dict[str, asyncio.Lock] = defaultdict(asyncio.Lock)
        self._audit_lock = asyncio.Lock()

    @property
    def audit_log_path(self) -> Path:
        return self.base_path / AUDIT_LOG_NAME

    def _now(self) -> datetime:
        return self._clock()

    # ========================================================================
    # File helpers
    # ========================================================================

    async def _ensure_dir(self, directory: Path) -> None:
        await aiofiles.os.makedirs(directory, exist_ok=True)

    async def _read_text(self, path: Path) -> str:
        # Undecodable bytes read as U+FFFD instead of failing the namespace
        async with aiofiles.open(path, "r", encoding="utf-8", errors="replace") as f:
            return await f.read()

    async def _write_text(self, path: Path, content: str) -> None:
        """Write through a temp file so readers never see a partial record."""
        temp_file = path.with_suffix(".tmp")
        async with aiofiles.open(temp_file, "w", encoding="utf-8") as f:
            await f.write(content)
        await aiofiles.os.replace(temp_file, path)

    async def _mtime(self, path: Path) -> Optional[datetime]:
        try:
            stat = await aiofiles.os.stat(path)
        except OSError:
            return None
        return datetime.fromtimestamp(stat.st_mtime, tz=timezone.utc)

    async def _load_record(self, path: Path) -> MemoryFile:
        content = await self._read_text(path)
        meta, body = parse_frontmatter(content)
        return MemoryFile(filename=path.name, path=path, content=content, meta=meta, body=body)

    async def _load_dir(self, directory: Path) -> List[MemoryFile]:
        """Read every record in ``directory``, sorted by filename.

        A missing directory reads as empty; only the write path creates one.
        """
        if not await aiofiles.os.path.isdir(directory):
            return []
        try:
            names = await aiofiles.os.listdir(directory)
        except OSError as e:
            raise StorageUnavailable(f"Cannot list {directory}: {e}") from e

        records = []
        for name in sorted(names):
            if not name.endswith(RECORD_EXTENSION):
                continue
            if not paths.is_safe_filename(name):
                logger.debug("Skipping record with unsafe name %r in %s", name, directory)
                continue
            records.append(await self._load_record(directory / name))
        return records

    async def _search(self, records: List[MemoryFile], query: Optional[str]) -> List[MemoryFile]:
        """Filter records in a worker thread; fuzzy matching is CPU bound."""
        threshold = self.config["search"]["threshold"]
        return await asyncio.to_thread(search_records, records, query, threshold)

    async def _audit(self, token: str, action: str, details: str = "") -> None:
        """Append ``timestamp | token | action | details`` to the audit log."""
        entry = f"{format_timestamp(self._now())} | {token} | {action} | {details}\n"

        async with self._audit_lock:
            try:
                await self._ensure_dir(self.base_path)
                async with aiofiles.open(self.audit_log_path, "a", encoding="utf-8") as f:
                    await f.write(entry)
            except OSError as e:
                # Audit failures never fail the operation itself
                logger.warning("Audit log write failed: %s", e)

    # ========================================================================
    # Metadata lifecycle
    # ========================================================================

    async def _resolve_meta(self, record: MemoryFile) -> Tuple[MemoryMeta, bool]:
        """Return the record's metadata and whether it had to be inferred."""
        if record.meta is not None:
            return record.meta, False
        mtime = await self._mtime(record.path)
        return legacy_meta(record.content, mtime, self._now()), True

    async def _note_migration(self, token: str, filename: str, meta: MemoryMeta) -> None:
        logger.info("Migrated legacy record %s for %s", filename, token)
        await self._audit(token, "migrate", f"filename={filename} | createdAt={meta.createdAt}")

    async def _ensure_frontmatter(self, token: str, record: MemoryFile) -> MemoryMeta:
        """Migrate a legacy record in place; tagged records are left untouched."""
        meta, migrated = await self._resolve_meta(record)
        if migrated:
            await self._write_text(record.path, serialize_frontmatter(meta, record.body))
            await self._note_migration(token, record.filename, meta)
        return meta

    async def _touch(self, token: str, record: MemoryFile) -> str:
        """Refresh ``lastAccessedAt`` and persist; returns the new file content."""
        meta, migrated = await self._resolve_meta(record)
        if not migrated:
            meta = meta.model_copy(
                update={"lastAccessedAt": later_timestamp(meta.lastAccessedAt, self._now())}
            )
        content = serialize_frontmatter(meta, record.body)
        await self._write_text(record.path, content)
        if migrated:
            await self._note_migration(token, record.filename, meta)
        return content

    # ========================================================================
    # Read path
    # ========================================================================

    async def list_memory_titles(self, token: str) -> QueryResult:
        """List hot records as ``MemoryTitle`` items, migrating legacy ones."""
        try:
            hot_dir = paths.user_dir(self.base_path, token)
            async with self._locks[token]:
                items = []
                for record in await self._load_dir(hot_dir):
                    meta = await self._ensure_frontmatter(token, record)
                    items.append(MemoryTitle(
                        filename=record.filename,
                        title=extract_title(record.body),
                        priority=meta.priority,
                        lastAccessedAt=meta.lastAccessedAt,
                    ))
                return QueryResult(items=items)
        except _RECOVERABLE as e:
            logger.warning("Listing memories for %r failed: %s", token, e)
            return QueryResult(error=str(e))

    async def read_memories(self, token: str, query: Optional[str] = None) -> QueryResult:
        """Return formatted hot records, optionally filtered by ``query``.

        Pipeline: enumerate -> filter -> refresh access time -> maybe sweep
        -> format. Every record that survives the filter, fuzzy or exact,
        counts as accessed.
        """
        try:
            hot_dir = paths.user_dir(self.base_path, token)
            async with self._locks[token]:
                records = await self._load_dir(hot_dir)
                matched = await self._search(records, query)

                refreshed = []
                for record in matched:
                    refreshed.append((record.filename, await self._touch(token, record)))

                await self._maybe_evict_unlocked(token)

                return QueryResult(items=[format_memory(name, content) for name, content in refreshed])
        except _RECOVERABLE as e:
            logger.warning("Reading memories for %r failed: %s", token, e)
            return QueryResult(error=str(e))

    async def search_archive(self, token: str, query: Optional[str] = None) -> QueryResult:
        """Search archived records. Read-only: no access refresh, no sweep."""
        try:
            cold_dir = paths.archive_dir(self.base_path, token)
            async with self._locks[token]:
                records = await self._load_dir(cold_dir)
                matched = await self._search(records, query)
                return QueryResult(items=[format_memory(r.filename, r.content) for r in matched])
        except _RECOVERABLE as e:
            logger.warning("Searching archive for %r failed: %s", token, e)
            return QueryResult(error=str(e))

    # ========================================================================
    # Write path
    # ========================================================================

    async def write_memory(
        self,
        token: str,
        title: str,
        content: str,
        priority: Priority = DEFAULT_PRIORITY,
    ) -> Optional[str]:
        """Create (or silently overwrite) a record; returns its filename or ``None``."""
        try:
            if priority not in PRIORITIES:
                raise ValueError(f"Invalid priority: {priority!r}")
            filename = paths.slugify_title(title)
            path = paths.hot_record_path(self.base_path, token, filename)
            archived_path = paths.archive_record_path(self.base_path, token, filename)

            async with self._locks[token]:
                await self._ensure_dir(path.parent)

                now = format_timestamp(self._now())
                meta = MemoryMeta(priority=priority, createdAt=now, updatedAt=now, lastAccessedAt=now)
                body = f"# {title}\n\n{content}\n\n---\n*Created: {now}*"
                await self._write_text(path, serialize_frontmatter(meta, body))

                # A filename lives in hot or archive storage, never both
                if await aiofiles.os.path.isfile(archived_path):
                    await aiofiles.os.remove(archived_path)
                    logger.info("Overwrite of %s replaced its archived copy", filename)

            await self._audit(token, "write_memory", f"filename={filename} | priority={priority}")
            return filename
        except _RECOVERABLE as e:
            logger.warning("Writing memory %r for %r failed: %s", title, token, e)
            return None

    async def update_memory(
        self,
        token: str,
        filename: str,
        title: str,
        content: str,
        priority: Optional[Priority] = None,
    ) -> bool:
        """Replace a record's body, keeping its identity and creation/access times."""
        try:
            if priority is not None and priority not in PRIORITIES:
                raise ValueError(f"Invalid priority: {priority!r}")
            path = paths.hot_record_path(self.base_path, token, filename)

            async with self._locks[token]:
                if not await aiofiles.os.path.isfile(path):
                    raise RecordNotFound(f"No memory named {path.name}")

                record = await self._load_record(path)
                existing, migrated = await self._resolve_meta(record)
                if migrated:
                    await self._note_migration(token, path.name, existing)

                now = self._now()
                changes: Dict[str, Any] = {"updatedAt": later_timestamp(existing.updatedAt, now)}
                if priority is not None:
                    changes["priority"] = priority
                meta = existing.model_copy(update=changes)

                body = f"# {title}\n\n{content}\n\n---\n*Updated: {format_timestamp(now)}*"
                await self._write_text(path, serialize_frontmatter(meta, body))

            await self._audit(token, "update_memory", f"filename={path.name} | priority={meta.priority}")
            return True
        except _RECOVERABLE as e:
            logger.info("Update of %r for %r failed: %s", filename, token, e)
            return False

    async def delete_memory(self, token: str, filename: str) -> bool:
        """Permanently remove a hot record. Archived records are out of reach."""
        try:
            path = paths.hot_record_path(self.base_path, token, filename)

            async with self._locks[token]:
                if not await aiofiles.os.path.isfile(path):
                    raise RecordNotFound(f"No memory named {path.name}")
                await aiofiles.os.remove(path)

            await self._audit(token, "delete_memory", f"filename={path.name}")
            return True
        except _RECOVERABLE as e:
            logger.info("Delete of %r for %r failed: %s", filename, token, e)
            return False

    async def archive_memory(self, token: str, filename: str) -> bool:
        """Move a hot record into the archive, metadata untouched."""
        try:
            async with self._locks[token]:
                await self._archive_unlocked(token, filename)
            return True
        except _RECOVERABLE as e:
            logger.info("Archive of %r for %r failed: %s", filename, token, e)
            return False

    async def _archive_unlocked(self, token: str, filename: str) -> None:
        """Archive without acquiring the token lock (caller must hold it)."""
        hot_path = paths.hot_record_path(self.base_path, token, filename)
        cold_path = paths.archive_record_path(self.base_path, token, filename)

        if not await aiofiles.os.path.isfile(hot_path):
            raise RecordNotFound(f"No memory named {hot_path.name}")

        await self._ensure_dir(cold_path.parent)
        await aiofiles.os.rename(hot_path, cold_path)
        await self._audit(token, "archive_memory", f"filename={hot_path.name}")

    # ========================================================================
    # Eviction
    # ========================================================================

    async def evict_memories(
        self,
        token: str,
        dry_run: bool = False,
        max_hot_count: Optional[int] = None,
    ) -> EvictResult:
        """Run one sweep now. Manual sweeps ignore the throttle."""
        try:
            async with self._locks[token]:
                return await self._evict_unlocked(token, dry_run, max_hot_count)
        except _RECOVERABLE as e:
            logger.warning("Eviction sweep for %r failed: %s", token, e)
            return EvictResult(dry_run=dry_run, error=str(e))

    async def _maybe_evict_unlocked(self, token: str) -> Optional[EvictResult]:
        """Automatic sweep, at most once per throttle interval per token."""
        if not self.throttle.try_acquire(token, self._now()):
            return None
        try:
            return await self._evict_unlocked(token)
        except _RECOVERABLE as e:
            logger.warning("Automatic sweep for %r failed: %s", token, e)
            return None

    async def _evict_unlocked(
        self,
        token: str,
        dry_run: bool = False,
        max_hot_count: Optional[int] = None,
    ) -> EvictResult:
        hot_dir = paths.user_dir(self.base_path, token)
        policy = EvictionPolicy.from_config(self.config, max_hot_count)

        entries = []
        for record in await self._load_dir(hot_dir):
            meta = await self._ensure_frontmatter(token, record)
            entries.append((record.filename, meta))

        candidates, kept = classify(entries, self._now(), policy)

        if dry_run:
            return EvictResult(archived=candidates, kept=kept, dry_run=True)

        archived = []
        for filename in candidates:
            try:
                await self._archive_unlocked(token, filename)
            except _RECOVERABLE as e:
                # Left in hot storage; the next sweep retries it
                logger.warning("Could not archive %s for %s: %s", filename, token, e)
                kept.append(filename)
                continue
            archived.append(filename)

        if archived:
            logger.info("Sweep for %s archived %d record(s)", token, len(archived))
        await self._audit(token, "evict_memories", f"archived={len(archived)} | kept={len(kept)}")
        return EvictResult(archived=archived, kept=kept, dry_run=False)

    # ========================================================================
    # Stats
    # ========================================================================

    async def get_memory_stats(self, token: str) -> MemoryStats:
        """Counts per location and priority, without migrating or touching records."""
        max_hot_count = self.config["limits"]["max_hot_count"]
        try:
            hot_dir = paths.user_dir(self.base_path, token)
            cold_dir = paths.archive_dir(self.base_path, token)
            async with self._locks[token]:
                hot = await self._load_dir(hot_dir)
                cold = await self._load_dir(cold_dir)
        except _RECOVERABLE as e:
            logger.warning("Stats for %r failed: %s", token, e)
            return MemoryStats(token=token, max_hot_count=max_hot_count, error=str(e))

        stats = MemoryStats(
            token=token,
            hot_count=len(hot),
            archive_count=len(cold),
            max_hot_count=max_hot_count,
        )
        for record in hot:
            # Untagged records default to P2 once migrated
            priority = record.meta.priority if record.meta else DEFAULT_PRIORITY
            stats.by_priority[priority] += 1

        last_sweep = self.throttle.last_run(token)
        if last_sweep is not None:
            stats.last_sweep_at = format_timestamp(last_sweep)
        return stats
