"""Shared fixtures for memory engine tests."""

from datetime import datetime, timedelta, timezone
from pathlib import Path

import pytest

from memory_engine import MemoryStore
from memory_engine.frontmatter import format_timestamp, parse_frontmatter, serialize_frontmatter

TOKEN = "test-user"
START = datetime(2026, 3, 1, 12, 0, 0, tzinfo=timezone.utc)


class FixedClock:
    """Clock that only moves when told to."""

    def __init__(self, now: datetime = START) -> None:
        self.now = now

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **kwargs) -> datetime:
        self.now += timedelta(**kwargs)
        return self.now


@pytest.fixture
def clock() -> FixedClock:
    return FixedClock()


@pytest.fixture
def base_path(tmp_path: Path) -> Path:
    return tmp_path / "memories"


@pytest.fixture
def store(base_path: Path, clock: FixedClock) -> MemoryStore:
    """A MemoryStore rooted in a temporary directory."""
    return MemoryStore(base_path, clock=clock)


def hot_file(base_path: Path, filename: str, token: str = TOKEN) -> Path:
    return base_path / token / filename


def archive_file(base_path: Path, filename: str, token: str = TOKEN) -> Path:
    return base_path / token / "archive" / filename


def write_raw(path: Path, content: str) -> Path:
    path.parent.mkdir(parents=True, exist_ok=True)
    path.write_text(content, encoding="utf-8")
    return path


def set_last_accessed(path: Path, moment: datetime) -> None:
    """Rewrite a record's lastAccessedAt in place."""
    meta, body = parse_frontmatter(path.read_text(encoding="utf-8"))
    assert meta is not None
    meta = meta.model_copy(update={"lastAccessedAt": format_timestamp(moment)})
    path.write_text(serialize_frontmatter(meta, body), encoding="utf-8")


def read_meta(path: Path):
    meta, _ = parse_frontmatter(path.read_text(encoding="utf-8"))
    return meta
