"""Shared data models for dude-memory."""

from __future__ import annotations

import os
import sqlite3
from dataclasses import asdict, dataclass
from typing import Any

from lancedb.pydantic import LanceModel, Vector

# Configuration
EMBEDDING_DIM = int(os.environ.get("EMBEDDING_DIM", "384"))

KINDS = frozenset({"issue", "spec", "arch", "update"})
STATUSES = frozenset({"open", "resolved", "archived"})


class RecordEmbedding(LanceModel):
    """Vector index schema for LanceDB.

    IMPORTANT: Any changes to this schema require rebuilding the index
    (see RecordService.repair_index). project_id and kind are copied from
    the record row so KNN queries can prefilter on them.
    """

    record_id: int
    project_id: int
    kind: str
    vector: Vector(EMBEDDING_DIM)  # type: ignore[valid-type] - Dynamic dimension from env


@dataclass(frozen=True, slots=True)
class Project:
    id: int
    name: str
    created_at: str
    updated_at: str

    @classmethod
    def from_row(cls, row: sqlite3.Row) -> Project:
        return cls(
            id=row["id"],
            name=row["name"],
            created_at=row["created_at"],
            updated_at=row["updated_at"],
        )

    def to_dict(self) -> dict[str, Any]:
        return asdict(self)


@dataclass(frozen=True, slots=True)
class Record:
    """A record row hydrated with its owning project's name."""

    id: int
    project_id: int
    kind: str
    title: str
    body: str
    status: str
    created_at: str
    updated_at: str
    project: str

    @classmethod
    def from_row(cls, row: sqlite3.Row) -> Record:
        return cls(
            id=row["id"],
            project_id=row["project_id"],
            kind=row["kind"],
            title=row["title"],
            body=row["body"],
            status=row["status"],
            created_at=row["created_at"],
            updated_at=row["updated_at"],
            project=row["project"],
        )

    @property
    def text(self) -> str:
        """Text the record's embedding is computed from."""
        return f"{self.title} {self.body}".strip()

    def to_dict(self) -> dict[str, Any]:
        return asdict(self)


@dataclass(frozen=True, slots=True)
class SearchResult:
    record: Record
    similarity: float

    def to_dict(self) -> dict[str, Any]:
        data = self.record.to_dict()
        data["similarity"] = round(self.similarity, 4)
        return data
