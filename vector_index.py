"""LanceDB-backed nearest-neighbour index over record embeddings.

The index is append/delete only: LanceDB has no in-place vector update, so
callers replace an embedding with delete() followed by insert().
"""

from __future__ import annotations

from collections.abc import Sequence
from pathlib import Path
from typing import NamedTuple

import lancedb
import numpy as np

from errors import NotInitializedError, StorageError, ValidationError
from models import EMBEDDING_DIM, RecordEmbedding

TABLE_NAME = "record_embedding"


class IndexHit(NamedTuple):
    record_id: int
    distance: float
    project_id: int


def _escape_filter_value(value: str) -> str:
    """Escape single quotes in filter values to prevent injection."""
    return value.replace("'", "''")


def _build_filter(project_id: int | None = None, kind: str | None = None) -> str | None:
    filters = []
    if project_id is not None:
        filters.append(f"project_id = {int(project_id)}")
    if kind is not None:
        filters.append(f"kind = '{_escape_filter_value(kind)}'")
    return " AND ".join(filters) if filters else None


class VectorIndex:
    """Cosine-distance KNN over (record_id -> vector), filterable by project and kind."""

    def __init__(self, path: Path, table_name: str = TABLE_NAME):
        self.path = Path(path)
        self.dim = EMBEDDING_DIM
        self.table_name = table_name
        self._db: lancedb.DBConnection | None = None
        self._table: lancedb.table.Table | None = None

    def open(self) -> VectorIndex:
        if self._table is not None:
            return self
        try:
            self.path.mkdir(parents=True, exist_ok=True)
            self._db = lancedb.connect(str(self.path))
            self._table = self._db.create_table(self.table_name, schema=RecordEmbedding, exist_ok=True)
        except Exception as e:
            raise StorageError(f"Cannot open vector index at {self.path}: {e}") from e

        vector_type = self._table.schema.field("vector").type
        actual_dim = getattr(vector_type, "list_size", self.dim)
        if actual_dim != self.dim:
            self._table = None
            raise StorageError(
                f"Vector index dimension is {actual_dim}, expected {self.dim}. "
                f"Delete {self.path} and run repair_index to rebuild."
            )
        return self

    @property
    def table(self) -> lancedb.table.Table:
        if self._table is None:
            raise NotInitializedError("Vector index not initialised - call open() first")
        return self._table

    def to_vector(self, vector: Sequence[float]) -> list[float]:
        """Validate an embedding and coerce it to the index's float32 layout."""
        array = np.asarray(vector, dtype=np.float32)
        if array.ndim != 1 or array.shape[0] != self.dim:
            raise ValidationError(f"Embedding must have {self.dim} dimensions, got shape {array.shape}")
        if not np.all(np.isfinite(array)):
            raise ValidationError("Embedding contains NaN or infinite values")
        return array.tolist()

    def insert(self, record_id: int, vector: Sequence[float], *, project_id: int, kind: str) -> None:
        """Add one entry. The caller must delete() any existing entry for record_id first."""
        table = self.table
        row = RecordEmbedding(
            record_id=record_id,
            project_id=project_id,
            kind=kind,
            vector=self.to_vector(vector),
        )
        try:
            table.add([row.model_dump()])
        except Exception as e:
            raise StorageError(f"Vector insert failed for record {record_id}: {e}") from e

    def delete(self, record_id: int) -> None:
        """Remove the entry for record_id; no-op when absent."""
        table = self.table
        try:
            table.delete(f"record_id = {int(record_id)}")
        except Exception as e:
            raise StorageError(f"Vector delete failed for record {record_id}: {e}") from e

    def delete_project(self, project_id: int) -> None:
        table = self.table
        try:
            table.delete(_build_filter(project_id=project_id))
        except Exception as e:
            raise StorageError(f"Vector delete failed for project {project_id}: {e}") from e

    def knn(
        self,
        vector: Sequence[float],
        k: int,
        *,
        project_id: int | None = None,
        kind: str | None = None,
    ) -> list[IndexHit]:
        """Return up to k hits ordered by ascending cosine distance."""
        table = self.table
        query = self.to_vector(vector)
        if k <= 0:
            return []
        filter_expr = _build_filter(project_id=project_id, kind=kind)
        try:
            # Searching an empty (or fully filtered-out) table is wasted work
            if table.count_rows(filter_expr) == 0:
                return []
            search = table.search(query).distance_type("cosine")
            if filter_expr:
                search = search.where(filter_expr, prefilter=True)
            rows = search.select(["record_id", "project_id"]).limit(k).to_list()
        except Exception as e:
            raise StorageError(f"Vector search failed: {e}") from e

        hits = [IndexHit(int(r["record_id"]), float(r["_distance"]), int(r["project_id"])) for r in rows]
        return sorted(hits, key=lambda h: h.distance)

    def keys(self) -> set[int]:
        table = self.table
        try:
            return set(table.to_arrow().column("record_id").to_pylist())
        except Exception as e:
            raise StorageError(f"Cannot read vector index keys: {e}") from e

    def count(self, project_id: int | None = None) -> int:
        table = self.table
        try:
            return table.count_rows(_build_filter(project_id=project_id))
        except Exception as e:
            raise StorageError(f"Cannot count vector index rows: {e}") from e

    def close(self) -> None:
        self._table = None
        self._db = None
