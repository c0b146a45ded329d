"""Metadata codec for record files.

A record is a Markdown body prefixed by a fixed block::

    ---
    priority: P2
    createdAt: 2026-01-01T00:00:00.000Z
    updatedAt: 2026-01-01T00:00:00.000Z
    lastAccessedAt: 2026-01-01T00:00:00.000Z
    ---
    # Title

Records written before priorities existed have no block ("legacy") and are
migrated on first touch.
"""

import re
from datetime import datetime, timezone
from typing import Dict, Optional, Tuple

from .errors import MalformedMetadata
from .models import DEFAULT_PRIORITY, PRIORITIES, MemoryMeta

FRONTMATTER_MARKER = "---"
META_FIELDS = ("priority", "createdAt", "updatedAt", "lastAccessedAt")
UNTITLED = "Untitled"

_BLOCK_RE = re.compile(r"^---\n([\s\S]*?)\n---\n")
_LEGACY_CREATED_RE = re.compile(r"\*Created: ([^*]+)\*")


# ============================================================================
# Timestamps
# ============================================================================

def format_timestamp(moment: datetime) -> str:
    """ISO-8601 in UTC with millisecond precision and a ``Z`` suffix."""
    if moment.tzinfo is None:
        moment = moment.replace(tzinfo=timezone.utc)
    moment = moment.astimezone(timezone.utc)
    return moment.isoformat(timespec="milliseconds").replace("+00:00", "Z")


def parse_timestamp(value: str) -> Optional[datetime]:
    """Parse an ISO-8601 string into an aware datetime, or ``None``."""
    text = value.strip()
    if text.endswith("Z"):
        text = text[:-1] + "+00:00"
    try:
        parsed = datetime.fromisoformat(text)
    except ValueError:
        return None
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed


def later_timestamp(existing: str, moment: datetime) -> str:
    """Return ``moment`` formatted, unless ``existing`` is already later."""
    previous = parse_timestamp(existing)
    if previous is not None and previous > moment:
        return existing
    return format_timestamp(moment)


# ============================================================================
# Encode / decode
# ============================================================================

def _parse_block(raw: str) -> MemoryMeta:
    values: Dict[str, str] = {}
    for line in raw.split("\n"):
        key, sep, value = line.partition(":")
        if not sep:
            continue
        key = key.strip()
        # First occurrence wins
        if key in META_FIELDS and key not in values:
            values[key] = value.strip()

    missing = [name for name in META_FIELDS if not values.get(name)]
    if missing:
        raise MalformedMetadata(f"Missing fields: {', '.join(missing)}")

    if values["priority"] not in PRIORITIES:
        raise MalformedMetadata(f"Invalid priority: {values['priority']!r}")

    for name in META_FIELDS[1:]:
        if parse_timestamp(values[name]) is None:
            raise MalformedMetadata(f"Unparseable {name}: {values[name]!r}")

    return MemoryMeta(**values)


def parse_frontmatter(content: str) -> Tuple[Optional[MemoryMeta], str]:
    """Split ``content`` into ``(meta, body)``.

    Partial or invalid blocks count as absent: ``(None, content)``.
    """
    match = _BLOCK_RE.match(content)
    if not match:
        return None, content

    try:
        meta = _parse_block(match.group(1))
    except MalformedMetadata:
        return None, content

    return meta, content[match.end():]


def serialize_frontmatter(meta: MemoryMeta, body: str) -> str:
    lines = [FRONTMATTER_MARKER]
    lines.extend(f"{name}: {getattr(meta, name)}" for name in META_FIELDS)
    lines.append(FRONTMATTER_MARKER)
    return "\n".join(lines) + "\n" + body


# ============================================================================
# Legacy migration helpers
# ============================================================================

def infer_created_at(content: str, mtime: Optional[datetime], now: datetime) -> str:
    """Best guess at a legacy record's creation time.

    Prefers a ``*Created: <timestamp>*`` footer, then the file's modification
    time, then ``now``.
    """
    match = _LEGACY_CREATED_RE.search(content)
    if match:
        parsed = parse_timestamp(match.group(1))
        if parsed is not None:
            return format_timestamp(parsed)

    if mtime is not None:
        return format_timestamp(mtime)

    return format_timestamp(now)


def legacy_meta(content: str, mtime: Optional[datetime], now: datetime) -> MemoryMeta:
    created_at = infer_created_at(content, mtime, now)
    return MemoryMeta(
        priority=DEFAULT_PRIORITY,
        createdAt=created_at,
        updatedAt=created_at,
        lastAccessedAt=format_timestamp(now),
    )


# ============================================================================
# Presentation
# ============================================================================

def extract_title(content: str) -> str:
    """First ``# `` heading of the body, or ``Untitled``."""
    _, body = parse_frontmatter(content)
    for line in body.split("\n"):
        if line.startswith("# "):
            return line[2:].strip()
    return UNTITLED


def format_memory(filename: str, content: str) -> str:
    """Render a record with a metadata prefix for LLM consumption."""
    title = extract_title(content)
    return f"### Memory\n**filename:** {filename}\n**title:** {title}\n---\n{content}"
