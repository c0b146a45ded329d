"""Filename safety gate.

Every path handed to the filesystem is built here from a user-supplied
token and filename and re-validated on each call; nothing is cached.
"""

import re
from pathlib import Path

from .config import ARCHIVE_DIR_NAME, RECORD_EXTENSION
from .errors import InvalidIdentifier

_FILENAME_RE = re.compile(r"^[a-z0-9\-]+" + re.escape(RECORD_EXTENSION) + r"$")
_TOKEN_RE = re.compile(r"^[a-z0-9\-]+$")
_SLUG_STRIP_RE = re.compile(r"[^a-z0-9]+")


def normalize_filename(name: str) -> str:
    """Append the record extension when missing and validate the result."""
    normalized = name if name.endswith(RECORD_EXTENSION) else f"{name}{RECORD_EXTENSION}"

    if ".." in normalized or "/" in normalized or "\\" in normalized:
        raise InvalidIdentifier(f"Path traversal in filename: {name!r}")

    if not _FILENAME_RE.match(normalized):
        raise InvalidIdentifier(f"Unsafe characters in filename: {name!r}")

    return normalized


def is_safe_filename(name: str) -> bool:
    try:
        normalize_filename(name)
    except InvalidIdentifier:
        return False
    return True


def slugify_title(title: str) -> str:
    """Derive a record filename from a title ("Morning Routine" -> "morning-routine.md")."""
    slug = _SLUG_STRIP_RE.sub("-", title.lower()).strip("-")
    return f"{slug}{RECORD_EXTENSION}"


def _ensure_within(path: Path, root: Path, label: str) -> Path:
    resolved = path.resolve()
    resolved_root = root.resolve()
    if resolved == resolved_root or resolved_root not in resolved.parents:
        raise InvalidIdentifier(f"{label} resolves outside {resolved_root}")
    return path


def user_dir(base_path: Path, token: str) -> Path:
    """Hot directory for ``token``; the token obeys the filename character rules."""
    if not isinstance(token, str) or ".." in token or not _TOKEN_RE.match(token):
        raise InvalidIdentifier(f"Invalid token: {token!r}")
    return _ensure_within(base_path / token, base_path, "token directory")


def archive_dir(base_path: Path, token: str) -> Path:
    return user_dir(base_path, token) / ARCHIVE_DIR_NAME


def hot_record_path(base_path: Path, token: str, filename: str) -> Path:
    """Safe path of a hot record, or ``InvalidIdentifier``."""
    root = user_dir(base_path, token)
    return _ensure_within(root / normalize_filename(filename), root, "filename")


def archive_record_path(base_path: Path, token: str, filename: str) -> Path:
    """Safe path of an archived record, or ``InvalidIdentifier``."""
    root = archive_dir(base_path, token)
    return _ensure_within(root / normalize_filename(filename), root, "filename")
