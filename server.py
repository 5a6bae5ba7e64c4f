#!/usr/bin/env python3
"""
Dude Memory MCP Server - cross-project record store with semantic dedup

Provides persistent memory of issues, specs, architecture decisions and
feature updates, shared across every project of one user:
- FastMCP for clean, idiomatic MCP server patterns
- SQLite for projects and records (FK cascade, versioned migrations)
- LanceDB for cosine nearest-neighbour search over record embeddings
- Ollama/all-minilm for local embeddings (384-dim), hash provider for offline use
"""

from __future__ import annotations

import asyncio
import json
import os
import sys
import threading
from dataclasses import dataclass
from pathlib import Path
from typing import Any

from mcp.server.fastmcp import FastMCP

from embeddings import compute_embedding, get_embedding
from errors import DudeError, NotInitializedError
from models import EMBEDDING_DIM
from records import RecordService
from utils import detect_project_name

# =============================================================================
# Configuration
# =============================================================================


@dataclass(frozen=True, slots=True)
class Config:
    """Server configuration with sensible defaults."""

    data_dir: Path = Path(os.environ.get("DUDE_DATA_DIR", Path.home() / ".dude-claude"))
    embedding_provider: str = os.environ.get("EMBEDDING_PROVIDER", "ollama")  # ollama | hash
    embedding_model: str = os.environ.get("EMBEDDING_MODEL", "all-minilm")
    embedding_dim: int = EMBEDDING_DIM
    ollama_base_url: str = os.environ.get("OLLAMA_BASE_URL", "http://localhost:11434")
    default_limit: int = 5
    max_limit: int = 50


CONFIG = Config()

# =============================================================================
# Store (Lazy Singleton)
# =============================================================================

_lock = threading.RLock()
_service: RecordService | None = None


def init_database() -> RecordService:
    """Open and migrate the store, resolving the current project once (thread-safe)."""
    global _service
    if _service is None:
        with _lock:
            if _service is None:  # Double-check after acquiring lock
                _service = RecordService.open(CONFIG.data_dir, detect_project_name())
    return _service


def get_service() -> RecordService:
    if _service is None:
        raise NotInitializedError("Store not initialised - call init_database() first")
    return _service


async def embed(text: str) -> list[float]:
    return await get_embedding(
        text, CONFIG.embedding_provider, CONFIG.embedding_model, CONFIG.ollama_base_url, CONFIG.embedding_dim
    )


def _embed_sync(text: str) -> list[float]:
    return list(
        compute_embedding(
            text, CONFIG.embedding_provider, CONFIG.embedding_model, CONFIG.ollama_base_url, CONFIG.embedding_dim
        )
    )


def _to_json(data: Any) -> str:
    return json.dumps(data, indent=2)


def _error(tool: str, e: Exception) -> str:
    print(f"[dude] {tool} failed: {e}", file=sys.stderr)
    return f"Error in {tool}: {e}"


# =============================================================================
# FastMCP Server
# =============================================================================

mcp = FastMCP(
    "dude",
    instructions=(
        "Cross-project memory of issues, specs, architecture decisions and updates. "
        "Search before starting work; upsert_record after fixing, planning or deciding something."
    ),
)


@mcp.tool(
    annotations={
        "readOnlyHint": True,
        "destructiveHint": False,
        "idempotentHint": True,
    }
)
async def search(
    query: str,
    kind: str | None = None,
    project: str | None = None,
    limit: int | None = None,
) -> str:
    """Semantic search across records. Returns cross-project results ranked by similarity.

    Args:
        query: Natural language search query
        kind: Optional filter: issue, spec, arch, update (or all)
        project: Restrict to one project by name or "current"; omit or "*" to search every project
        limit: Max results (defaults to the configured limit, max 50)
    """
    if not query.strip():
        return "Error in search: query is required"
    if limit is None:
        limit = CONFIG.default_limit
    if limit > CONFIG.max_limit:
        return f"Error in search: limit cannot exceed {CONFIG.max_limit}, got {limit}"
    try:
        service = get_service()
        project_id = None
        if project == "current":
            project_id = service.current_project.id
        elif project and project != "*":
            target = service.projects.get(project)
            if target is None:
                return _to_json([])
            project_id = target.id
        embedding = await embed(query)
        results = service.search_records(embedding, kind=kind, project_id=project_id, limit=limit)
        return _to_json([result.to_dict() for result in results])
    except DudeError as e:
        return _error("search", e)


@mcp.tool(
    annotations={
        "readOnlyHint": False,
        "destructiveHint": False,
        "idempotentHint": False,
    }
)
async def upsert_record(
    kind: str,
    title: str,
    body: str | None = None,
    status: str | None = None,
    id: int | None = None,
) -> str:
    """Create or update a record. With id, updates that record; otherwise inserts with dedup.

    A new record that closely matches an existing one of the same kind in the
    current project is merged into it; the returned id tells which happened.

    Args:
        kind: issue (bug), spec (plan), arch (architecture decision), update (feature change)
        title: Short summary
        body: Full description
        status: open, resolved or archived (defaults to open)
        id: Record ID to update (omit for new)
    """
    try:
        service = get_service()
        body = body or ""
        embedding = await embed(f"{title} {body}".strip())
        record = await asyncio.to_thread(
            service.upsert_record,
            embedding,
            id=id,
            project_id=service.current_project.id,
            kind=kind,
            title=title,
            body=body,
            status=status or "open",
        )
        return _to_json(record.to_dict())
    except DudeError as e:
        return _error("upsert_record", e)


@mcp.tool(
    annotations={
        "readOnlyHint": True,
        "destructiveHint": False,
        "idempotentHint": True,
    }
)
async def get_record(id: int) -> str:
    """Get a record by ID.

    Args:
        id: Record ID
    """
    try:
        record = get_service().get_record(id)
    except DudeError as e:
        return _error("get_record", e)
    if record is None:
        return f"Record {id} not found."
    return _to_json(record.to_dict())


@mcp.tool(
    annotations={
        "readOnlyHint": True,
        "destructiveHint": False,
        "idempotentHint": True,
    }
)
async def list_records(
    kind: str | None = None,
    status: str | None = None,
    project: str | None = None,
) -> str:
    """List records with optional filters, most recently updated first.

    Args:
        kind: issue, spec, arch, update or all
        status: open, resolved, archived or all
        project: Project name, "current" (default) or "*" for all projects
    """
    try:
        records = get_service().list_records(kind=kind, status=status, project=project)
        return _to_json([record.to_dict() for record in records])
    except DudeError as e:
        return _error("list_records", e)


@mcp.tool(
    annotations={
        "readOnlyHint": False,
        "destructiveHint": True,
        "idempotentHint": True,
    }
)
async def delete_record(id: int) -> str:
    """Delete a record by ID.

    Args:
        id: Record ID to delete
    """
    try:
        deleted = await asyncio.to_thread(get_service().delete_record, id)
    except DudeError as e:
        return _error("delete_record", e)
    return f"Record {id} deleted." if deleted else f"Record {id} not found."


@mcp.tool(
    annotations={
        "readOnlyHint": True,
        "destructiveHint": False,
        "idempotentHint": True,
    }
)
async def list_projects() -> str:
    """List all known projects."""
    try:
        projects = get_service().list_projects()
        return _to_json([project.to_dict() for project in projects])
    except DudeError as e:
        return _error("list_projects", e)


@mcp.tool(
    annotations={
        "readOnlyHint": False,
        "destructiveHint": True,
        "idempotentHint": True,
    }
)
async def delete_project(name: str) -> str:
    """Delete a project together with all of its records.

    Args:
        name: Project name (the current project cannot be deleted)
    """
    try:
        deleted = await asyncio.to_thread(get_service().delete_project, name)
    except DudeError as e:
        return _error("delete_project", e)
    return f"Project {name} deleted." if deleted else f"Project {name} not found."


@mcp.tool(
    annotations={
        "readOnlyHint": False,
        "destructiveHint": False,
        "idempotentHint": True,
    }
)
async def repair_index() -> str:
    """Re-embed records missing from the vector index and drop orphaned embeddings."""
    try:
        result = await asyncio.to_thread(get_service().repair_index, _embed_sync)
        return _to_json(result)
    except DudeError as e:
        return _error("repair_index", e)


# =============================================================================
# Server Entry Point
# =============================================================================


async def run_server():
    """Run the MCP server after opening and migrating the store."""
    init_database()
    print("[dude] MCP server running on stdio", file=sys.stderr)
    await mcp.run_stdio_async()


def main():
    """Entry point."""
    asyncio.run(run_server())


if __name__ == "__main__":
    main()
