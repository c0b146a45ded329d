"""
Memory MCP Server

Per-user Markdown memory store exposed as MCP tools. Each user is identified
by an opaque token; their records live in a capacity-bounded hot directory
and stale ones are swept into a searchable archive.

Tools: read_memory, write_memory, update_memory, delete_memory,
       list_memory_titles, archive_memory, search_archive, evict_memories,
       get_memory_stats, generate_token
Resources: memory://config, memory://{token}/summary
"""

import logging
from typing import Any, Dict, Optional

from fastmcp import FastMCP
from pydantic import BaseModel, ConfigDict, Field

from memory_engine import MemoryStore, Priority, generate_token as new_token
from memory_engine.config import (
    LOG_LEVEL,
    MEMORY_BASE_PATH,
    MEMORY_CONFIG,
    SERVER_HOST,
    SERVER_PORT,
    SERVER_TRANSPORT,
)

# Initialize FastMCP server
mcp = FastMCP("memory_mcp_server")

store = MemoryStore(MEMORY_BASE_PATH, MEMORY_CONFIG)

NO_MEMORIES_MESSAGE = "No memories found. Try `list_memory_titles` first to see all available memories."
MEMORY_SEPARATOR = "\n\n---\n\n"


# ============================================================================
# Input Models for Tools
# ============================================================================

class ReadMemoryInput(BaseModel):
    """Input for reading hot memories."""
    model_config = ConfigDict(str_strip_whitespace=True, extra='forbid')

    token: str = Field(..., description="Opaque user token (lowercase letters, digits and '-')", min_length=1, max_length=100)
    query: Optional[str] = Field(None, description="Search query to filter memories; every term must match")


class WriteMemoryInput(BaseModel):
    """Input for writing a new memory."""
    model_config = ConfigDict(str_strip_whitespace=True, extra='forbid')

    token: str = Field(..., description="Opaque user token (lowercase letters, digits and '-')", min_length=1, max_length=100)
    title: str = Field(..., description="Title of the memory; also determines its filename", min_length=1, max_length=200)
    content: str = Field(..., description="Content of the memory")
    priority: Priority = Field(
        default="P2",
        description="Retention: 'P0' permanent, 'P1' archived after 90 idle days, 'P2' after 30"
    )


class UpdateMemoryInput(BaseModel):
    """Input for updating an existing memory."""
    model_config = ConfigDict(str_strip_whitespace=True, extra='forbid')

    token: str = Field(..., description="Opaque user token (lowercase letters, digits and '-')", min_length=1, max_length=100)
    filename: str = Field(..., description="Current filename of the memory", min_length=1)
    title: str = Field(..., description="New title of the memory", min_length=1, max_length=200)
    content: str = Field(
        ...,
        description="New content of the memory. Must preserve original content - only append new information or modify specific parts, never summarize or condense."
    )
    priority: Optional[Priority] = Field(None, description="New priority; omit to keep the current one")


class FilenameInput(BaseModel):
    """Input for operations addressing a single memory by filename."""
    model_config = ConfigDict(str_strip_whitespace=True, extra='forbid')

    token: str = Field(..., description="Opaque user token (lowercase letters, digits and '-')", min_length=1, max_length=100)
    filename: str = Field(..., description="Filename of the memory", min_length=1)


class TokenInput(BaseModel):
    """Input for operations scoped to a whole user namespace."""
    model_config = ConfigDict(str_strip_whitespace=True, extra='forbid')

    token: str = Field(..., description="Opaque user token (lowercase letters, digits and '-')", min_length=1, max_length=100)


class SearchArchiveInput(BaseModel):
    """Input for searching archived memories."""
    model_config = ConfigDict(str_strip_whitespace=True, extra='forbid')

    token: str = Field(..., description="Opaque user token (lowercase letters, digits and '-')", min_length=1, max_length=100)
    query: Optional[str] = Field(None, description="Search query to filter archived memories")


class EvictMemoriesInput(BaseModel):
    """Input for running an eviction sweep."""
    model_config = ConfigDict(str_strip_whitespace=True, extra='forbid')

    token: str = Field(..., description="Opaque user token (lowercase letters, digits and '-')", min_length=1, max_length=100)
    dry_run: bool = Field(default=False, description="Preview which memories would be archived without moving them")
    max_hot_count: Optional[int] = Field(
        None,
        description="Hot storage capacity to enforce (defaults to the configured limit)",
        ge=0,
        le=10000
    )


# ============================================================================
# Helper Functions
# ============================================================================

def render_memories(items: list) -> str:
    """Join formatted memories for LLM consumption."""
    return MEMORY_SEPARATOR.join(items) if items else NO_MEMORIES_MESSAGE


# ============================================================================
# MCP Tools
# ============================================================================

@mcp.tool(
    name="read_memory",
    annotations={
        "title": "Read Memory",
        "readOnlyHint": False,  # Refreshes access times, may archive stale memories
        "destructiveHint": False,
        "idempotentHint": False,
        "openWorldHint": False
    }
)
async def read_memory(params: ReadMemoryInput) -> Dict[str, Any]:
    """Read memories for a user, optionally filtered by query.

    Every returned memory counts as accessed. At most once a day per user,
    reading also archives memories that have been idle past their retention.

    Args:
        params: ReadMemoryInput with token and optional query.

    Returns:
        Dict with success status, count, memories (formatted strings) and
        text (all memories joined, or a hint when none were found).
    """
    result = await store.read_memories(params.token, params.query)
    if not result.ok:
        return {"success": False, "count": 0, "memories": [], "text": NO_MEMORIES_MESSAGE, "error": result.error}

    return {
        "success": True,
        "count": len(result.items),
        "memories": result.items,
        "text": render_memories(result.items)
    }


@mcp.tool(
    name="write_memory",
    annotations={
        "title": "Write Memory",
        "readOnlyHint": False,
        "destructiveHint": True,  # Same title overwrites
        "idempotentHint": False,
        "openWorldHint": False
    }
)
async def write_memory(params: WriteMemoryInput) -> Dict[str, Any]:
    """Write a memory for a user.

    The filename is derived from the title; writing the same title again
    overwrites the existing memory.

    Args:
        params: WriteMemoryInput with token, title, content and priority.

    Returns:
        Dict with success status, filename and a message.
    """
    filename = await store.write_memory(params.token, params.title, params.content, params.priority)
    if filename is None:
        return {"success": False, "filename": None, "message": "Memory could not be saved: invalid token or title"}

    return {
        "success": True,
        "filename": filename,
        "priority": params.priority,
        "message": f"Memory saved to {filename}"
    }


@mcp.tool(
    name="update_memory",
    annotations={
        "title": "Update Memory",
        "readOnlyHint": False,
        "destructiveHint": True,
        "idempotentHint": False,
        "openWorldHint": False
    }
)
async def update_memory(params: UpdateMemoryInput) -> Dict[str, Any]:
    """Update an existing memory for a user.

    IMPORTANT: Preserve the original content and only add or modify specific
    parts. Do NOT summarize or condense existing content. If adding new
    information, append it to the existing content. If correcting
    information, only change the specific incorrect parts.

    Args:
        params: UpdateMemoryInput with token, filename, title, content and
                optional priority.

    Returns:
        Dict with success status, filename and a message.
    """
    success = await store.update_memory(
        params.token, params.filename, params.title, params.content, params.priority
    )
    return {
        "success": success,
        "filename": params.filename,
        "message": "Memory updated successfully" if success else "Memory not found"
    }


@mcp.tool(
    name="delete_memory",
    annotations={
        "title": "Delete Memory",
        "readOnlyHint": False,
        "destructiveHint": True,
        "idempotentHint": True,
        "openWorldHint": False
    }
)
async def delete_memory(params: FilenameInput) -> Dict[str, Any]:
    """Permanently delete a memory from hot storage.

    Args:
        params: FilenameInput with token and filename.

    Returns:
        Dict with success status, filename and a message.
    """
    success = await store.delete_memory(params.token, params.filename)
    return {
        "success": success,
        "filename": params.filename,
        "message": "Memory deleted successfully" if success else "Memory not found"
    }


@mcp.tool(
    name="list_memory_titles",
    annotations={
        "title": "List Memory Titles",
        "readOnlyHint": False,  # Migrates untagged memories
        "destructiveHint": False,
        "idempotentHint": True,
        "openWorldHint": False
    }
)
async def list_memory_titles(params: TokenInput) -> Dict[str, Any]:
    """List all memory titles for discovery.

    Call this FIRST in new conversations to see what memories exist before
    querying specific ones. Listing does not count as accessing a memory.

    Args:
        params: TokenInput with token.

    Returns:
        Dict with success status, count, titles (filename, title, priority,
        lastAccessedAt) and text ("filename|title" lines).
    """
    result = await store.list_memory_titles(params.token)
    titles = [item.model_dump() for item in result.items]

    response: Dict[str, Any] = {
        "success": result.ok,
        "count": len(titles),
        "titles": titles,
        "text": "\n".join(f"{t['filename']}|{t['title']}" for t in titles) if titles else "No memories found"
    }
    if not result.ok:
        response["error"] = result.error
    return response


@mcp.tool(
    name="archive_memory",
    annotations={
        "title": "Archive Memory",
        "readOnlyHint": False,
        "destructiveHint": False,
        "idempotentHint": False,
        "openWorldHint": False
    }
)
async def archive_memory(params: FilenameInput) -> Dict[str, Any]:
    """Move a memory from hot storage into the archive.

    Archived memories are no longer returned by read_memory but remain
    searchable through search_archive.

    Args:
        params: FilenameInput with token and filename.

    Returns:
        Dict with success status, filename and a message.
    """
    success = await store.archive_memory(params.token, params.filename)
    return {
        "success": success,
        "filename": params.filename,
        "message": "Memory archived successfully" if success else "Memory not found"
    }


@mcp.tool(
    name="search_archive",
    annotations={
        "title": "Search Archived Memories",
        "readOnlyHint": True,
        "destructiveHint": False,
        "idempotentHint": True,
        "openWorldHint": False
    }
)
async def search_archive(params: SearchArchiveInput) -> Dict[str, Any]:
    """Search archived memories with the same matching rules as read_memory.

    Args:
        params: SearchArchiveInput with token and optional query.

    Returns:
        Dict with success status, count, memories and text.
    """
    result = await store.search_archive(params.token, params.query)
    if not result.ok:
        return {"success": False, "count": 0, "memories": [], "text": NO_MEMORIES_MESSAGE, "error": result.error}

    return {
        "success": True,
        "count": len(result.items),
        "memories": result.items,
        "text": render_memories(result.items)
    }


@mcp.tool(
    name="evict_memories",
    annotations={
        "title": "Evict Stale Memories",
        "readOnlyHint": False,
        "destructiveHint": False,
        "idempotentHint": False,
        "openWorldHint": False
    }
)
async def evict_memories(params: EvictMemoriesInput) -> Dict[str, Any]:
    """Archive stale memories from hot storage.

    Policy:
    - P0: never archived
    - P2 idle more than 30 days, P1 idle more than 90 days: archived
    - Still over capacity: least recently accessed P2 first, then P1

    Args:
        params: EvictMemoriesInput with token, dry_run and max_hot_count.

    Returns:
        Dict with token, dry_run, archived and kept filename lists, and
        total_archived.
    """
    result = await store.evict_memories(params.token, params.dry_run, params.max_hot_count)

    response = {
        "success": result.error is None,
        "token": params.token,
        "dry_run": result.dry_run,
        "archived": result.archived,
        "kept": result.kept,
        "total_archived": len(result.archived)
    }
    if result.error is not None:
        response["error"] = result.error
    return response


@mcp.tool(
    name="get_memory_stats",
    annotations={
        "title": "Get Memory Statistics",
        "readOnlyHint": True,
        "destructiveHint": False,
        "idempotentHint": True,
        "openWorldHint": False
    }
)
async def get_memory_stats(params: TokenInput) -> Dict[str, Any]:
    """Get hot/archive counts and per-priority breakdown for a user.

    Args:
        params: TokenInput with token.

    Returns:
        Dict with hot_count, archive_count, by_priority, max_hot_count,
        utilization_percent and last_sweep_at.
    """
    stats = await store.get_memory_stats(params.token)
    data = stats.model_dump()
    data["success"] = stats.error is None
    data["utilization_percent"] = (
        round(100 * stats.hot_count / stats.max_hot_count, 1) if stats.max_hot_count else 0.0
    )
    return data


@mcp.tool(
    name="generate_token",
    annotations={
        "title": "Generate User Token",
        "readOnlyHint": True,
        "destructiveHint": False,
        "idempotentHint": False,
        "openWorldHint": False
    }
)
async def generate_token() -> Dict[str, Any]:
    """Generate a fresh random token for a new user namespace."""
    return {"token": new_token()}


# ============================================================================
# MCP Resources
# ============================================================================

@mcp.resource("memory://{token}/summary")
async def memory_summary(token: str) -> str:
    """Provides a summary of a user's memory state.

    Use this to quickly check storage usage without reading any memory.
    """
    stats = await store.get_memory_stats(token)
    if stats.error is not None:
        return f"Error generating summary for {token}: {stats.error}"

    summary = f"""# Memory Summary: {token}

## Storage
- Hot Memories: {stats.hot_count} / {stats.max_hot_count}
- Archived Memories: {stats.archive_count}
- Last Automatic Sweep: {stats.last_sweep_at or 'never'}

## Hot Memories by Priority
"""
    for priority, count in stats.by_priority.items():
        summary += f"- {priority}: {count}\n"

    return summary


@mcp.resource("memory://config")
def memory_config() -> str:
    """Provides the current memory management configuration.

    Shows capacity, retention windows and the sweep schedule.
    """
    return f"""# Memory Management Configuration

## Storage

- Base Path: {store.base_path}
- Hot Capacity: {store.config['limits']['max_hot_count']} memories per user
- Archive: unbounded, searchable, never swept

## Retention

- **P0:** Permanent, never archived
- **P1:** Archived after {store.config['retention']['P1_max_age_days']} days without access
- **P2 (default):** Archived after {store.config['retention']['P2_max_age_days']} days without access
- **Over capacity:** Least recently accessed P2 archived first, then P1

## Sweep Schedule

- **Automatic:** On read, at most once every {store.config['eviction']['interval_hours']:g} hours per user
- **Manual:** evict_memories, never throttled, supports dry_run

## Search

- Terms split on whitespace and `-_,;:`; every term must match
- Fuzzy tolerance: {store.config['search']['threshold']:g} of each term's length
- Results with more exact term matches rank first
"""


# ============================================================================
# Server Entry Point
# ============================================================================

def main() -> None:
    logging.basicConfig(
        level=LOG_LEVEL,
        format="%(asctime)s %(levelname)s %(name)s: %(message)s"
    )
    mcp.run(
        transport=SERVER_TRANSPORT,
        host=SERVER_HOST,
        port=SERVER_PORT
    )


if __name__ == "__main__":
    main()
