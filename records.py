"""Project registry and record service.

Writes deduplicate against the nearest existing record of the same project
and kind; reads run a small ranking pipeline over KNN candidates:

    knn (limit x 3) -> similarity -> project boost -> threshold -> sort -> truncate -> hydrate

The relational row and its embedding are two separate physical writes.
The row is always written first and is authoritative: a record missing its
embedding is simply not searchable until repair_index() re-embeds it.
"""

from __future__ import annotations

import sys
import threading
from collections.abc import Callable, Iterable, Sequence
from dataclasses import dataclass
from pathlib import Path

from db import Database
from errors import NotFoundError, ValidationError
from models import KINDS, STATUSES, Project, Record, SearchResult
from utils import now_iso
from vector_index import IndexHit, VectorIndex

DEDUP_THRESHOLD = 0.15  # max cosine distance treated as the same topic
DEDUP_CANDIDATES = 5
OVERFETCH_FACTOR = 3
PROJECT_BOOST = 0.1
MIN_SIMILARITY = 0.3

RECORD_SELECT = """
    SELECT r.*, p.name AS project
    FROM record r JOIN project p ON r.project_id = p.id
"""


def _check_choice(value: str | None, allowed: frozenset[str], label: str) -> None:
    if value not in allowed:
        raise ValidationError(f"Invalid {label} '{value}'. Valid: {sorted(allowed)}")


def _optional_filter(value: str | None, allowed: frozenset[str], label: str) -> str | None:
    """Map None / 'all' to no filter, validate anything else."""
    if value is None or value == "all":
        return None
    _check_choice(value, allowed, label)
    return value


# =============================================================================
# Ranking pipeline
# =============================================================================


@dataclass(frozen=True, slots=True)
class Candidate:
    record_id: int
    project_id: int
    similarity: float


def is_duplicate(distance: float) -> bool:
    return distance <= DEDUP_THRESHOLD


def boosted_similarity(distance: float, same_project: bool) -> float:
    similarity = 1.0 - distance
    if same_project:
        similarity = min(1.0, similarity + PROJECT_BOOST)
    return similarity


def score_hits(hits: Iterable[IndexHit], current_project_id: int) -> list[Candidate]:
    return [
        Candidate(
            record_id=hit.record_id,
            project_id=hit.project_id,
            similarity=boosted_similarity(hit.distance, hit.project_id == current_project_id),
        )
        for hit in hits
    ]


def rank_candidates(candidates: Iterable[Candidate]) -> list[Candidate]:
    """Drop candidates under MIN_SIMILARITY and sort the rest best-first."""
    kept = [c for c in candidates if c.similarity >= MIN_SIMILARITY]
    return sorted(kept, key=lambda c: c.similarity, reverse=True)


# =============================================================================
# Project Registry
# =============================================================================


class ProjectRegistry:
    def __init__(self, db: Database):
        self.db = db

    def resolve(self, name: str) -> Project:
        """Create the project on first sight, otherwise bump its updated_at."""
        if not name:
            raise ValidationError("Project name is required")
        now = now_iso()
        self.db.execute(
            """
            INSERT INTO project (name, created_at, updated_at) VALUES (?, ?, ?)
            ON CONFLICT(name) DO UPDATE SET updated_at = excluded.updated_at
            """,
            (name, now, now),
        )
        return Project.from_row(self.db.fetchone("SELECT * FROM project WHERE name = ?", (name,)))

    def get(self, name: str) -> Project | None:
        row = self.db.fetchone("SELECT * FROM project WHERE name = ?", (name,))
        return Project.from_row(row) if row else None

    def list(self) -> list[Project]:
        rows = self.db.fetchall("SELECT * FROM project ORDER BY name")
        return [Project.from_row(row) for row in rows]

    def delete(self, project_id: int) -> bool:
        """Delete the project row; its records go with it (ON DELETE CASCADE)."""
        cursor = self.db.execute("DELETE FROM project WHERE id = ?", (project_id,))
        return cursor.rowcount > 0


# =============================================================================
# Record Service
# =============================================================================


class RecordService:
    """Keeps record rows and their embeddings in lockstep for one process.

    current_project is resolved once when the service is built and is the
    default owner for new records and the target of the search boost.
    """

    def __init__(self, db: Database, index: VectorIndex, current_project: Project):
        self.db = db
        self.index = index
        self.current_project = current_project
        self.projects = ProjectRegistry(db)
        self._lock = threading.RLock()

    @classmethod
    def open(cls, data_dir: Path, project_name: str) -> RecordService:
        """Open (and migrate) the store under data_dir and resolve the current project."""
        data_dir = Path(data_dir)
        db = Database(data_dir / "dude.db").open()
        try:
            index = VectorIndex(data_dir / "vectors").open()
            project = ProjectRegistry(db).resolve(project_name)
        except Exception:
            db.close()
            raise
        print(f'[dude] DB ready - project "{project.name}" (id={project.id})', file=sys.stderr)
        return cls(db, index, project)

    def close(self) -> None:
        self.db.close()
        self.index.close()

    # -------------------------------------------------------------------------
    # Write path
    # -------------------------------------------------------------------------

    def upsert_record(
        self,
        embedding: Sequence[float],
        *,
        kind: str,
        title: str,
        body: str = "",
        status: str = "open",
        id: int | None = None,
        project_id: int | None = None,
    ) -> Record:
        """Update record `id`, or insert a new record unless a near-duplicate exists.

        Without an id, the nearest record of the same project and kind within
        DEDUP_THRESHOLD is overwritten instead of creating a new one; the
        caller sees this only through the returned (pre-existing) id.
        project_id is ignored for explicit updates, records never change owner.
        """
        _check_choice(kind, KINDS, "kind")
        _check_choice(status, STATUSES, "status")
        if not title or not title.strip():
            raise ValidationError("title is required")
        body = body or ""
        vector = self.index.to_vector(embedding)

        with self._lock:
            if id is not None:
                return self._update(id, vector, kind=kind, title=title, body=body, status=status)

            owner = project_id if project_id is not None else self.current_project.id
            for hit in self.index.knn(vector, DEDUP_CANDIDATES, project_id=owner, kind=kind):
                if not is_duplicate(hit.distance):
                    break
                merged = self._merge(hit.record_id, vector, owner, kind, title=title, body=body, status=status)
                if merged is not None:
                    return merged

            now = now_iso()
            cursor = self.db.execute(
                """
                INSERT INTO record (project_id, kind, title, body, status, created_at, updated_at)
                VALUES (?, ?, ?, ?, ?, ?, ?)
                """,
                (owner, kind, title, body, status, now, now),
            )
            new_id = cursor.lastrowid
            self.index.insert(new_id, vector, project_id=owner, kind=kind)
            return self.get_record(new_id)

    def _update(self, record_id: int, vector: list[float], *, kind: str, title: str, body: str, status: str) -> Record:
        row = self.db.fetchone("SELECT project_id FROM record WHERE id = ?", (record_id,))
        if row is None:
            raise NotFoundError(f"Record {record_id} not found")
        self.db.execute(
            "UPDATE record SET kind = ?, title = ?, body = ?, status = ?, updated_at = ? WHERE id = ?",
            (kind, title, body, status, now_iso(), record_id),
        )
        self._replace_embedding(record_id, vector, project_id=row["project_id"], kind=kind)
        return self.get_record(record_id)

    def _merge(
        self, record_id: int, vector: list[float], project_id: int, kind: str, *, title: str, body: str, status: str
    ) -> Record | None:
        """Overwrite a near-duplicate. Returns None if its row is gone (stale embedding)."""
        cursor = self.db.execute(
            "UPDATE record SET title = ?, body = ?, status = ?, updated_at = ? WHERE id = ?",
            (title, body, status, now_iso(), record_id),
        )
        if cursor.rowcount == 0:
            print(f"[dude] Dropping stale embedding for missing record {record_id}", file=sys.stderr)
            self.index.delete(record_id)
            return None
        self._replace_embedding(record_id, vector, project_id=project_id, kind=kind)
        print(f"[dude] Merged near-duplicate into record {record_id}", file=sys.stderr)
        return self.get_record(record_id)

    def _replace_embedding(self, record_id: int, vector: list[float], *, project_id: int, kind: str) -> None:
        # No in-place update in the index: between these two calls the record
        # has no embedding and is briefly unsearchable.
        self.index.delete(record_id)
        self.index.insert(record_id, vector, project_id=project_id, kind=kind)

    # -------------------------------------------------------------------------
    # Read path
    # -------------------------------------------------------------------------

    def search_records(
        self,
        embedding: Sequence[float],
        *,
        kind: str | None = None,
        project_id: int | None = None,
        limit: int = 5,
    ) -> list[SearchResult]:
        """Rank records by similarity to embedding, favouring the current project.

        project_id restricts candidates to one project; by default the search
        spans every project. Returns at most `limit` results, possibly fewer.
        """
        if limit <= 0:
            raise ValidationError(f"limit must be positive, got {limit}")
        kind = _optional_filter(kind, KINDS, "kind")

        hits = self.index.knn(embedding, limit * OVERFETCH_FACTOR, project_id=project_id, kind=kind)
        ranked = rank_candidates(score_hits(hits, self.current_project.id))
        return self._hydrate(ranked)[:limit]

    def _hydrate(self, candidates: list[Candidate]) -> list[SearchResult]:
        if not candidates:
            return []
        ids = [c.record_id for c in candidates]
        placeholders = ", ".join("?" for _ in ids)
        rows = self.db.fetchall(f"{RECORD_SELECT} WHERE r.id IN ({placeholders})", ids)
        records = {row["id"]: Record.from_row(row) for row in rows}
        # Candidates whose row is gone are skipped, not reported
        return [
            SearchResult(record=records[c.record_id], similarity=c.similarity)
            for c in candidates
            if c.record_id in records
        ]

    def get_record(self, record_id: int) -> Record | None:
        row = self.db.fetchone(f"{RECORD_SELECT} WHERE r.id = ?", (record_id,))
        return Record.from_row(row) if row else None

    def list_records(
        self,
        *,
        kind: str | None = None,
        status: str | None = None,
        project: str | None = None,
    ) -> list[Record]:
        """List records newest-first.

        project: None or "current" for the current project, "*" for every
        project, otherwise a project name (unknown names yield []).
        """
        kind = _optional_filter(kind, KINDS, "kind")
        status = _optional_filter(status, STATUSES, "status")

        filters: list[str] = []
        params: list[object] = []
        if project is None or project == "current":
            filters.append("r.project_id = ?")
            params.append(self.current_project.id)
        elif project != "*":
            named = self.projects.get(project)
            if named is None:
                return []
            filters.append("r.project_id = ?")
            params.append(named.id)
        if kind:
            filters.append("r.kind = ?")
            params.append(kind)
        if status:
            filters.append("r.status = ?")
            params.append(status)

        sql = RECORD_SELECT
        if filters:
            sql += " WHERE " + " AND ".join(filters)
        sql += " ORDER BY r.updated_at DESC, r.id DESC"
        return [Record.from_row(row) for row in self.db.fetchall(sql, params)]

    def list_projects(self) -> list[Project]:
        return self.projects.list()

    # -------------------------------------------------------------------------
    # Delete / maintenance
    # -------------------------------------------------------------------------

    def delete_record(self, record_id: int) -> bool:
        """Delete a record and its embedding. Returns False if no record existed."""
        with self._lock:
            # Embedding first: deleting it twice is harmless, an orphaned one is not.
            self.index.delete(record_id)
            cursor = self.db.execute("DELETE FROM record WHERE id = ?", (record_id,))
            return cursor.rowcount > 0

    def delete_project(self, name: str) -> bool:
        """Delete a project with all its records and embeddings."""
        with self._lock:
            project = self.projects.get(name)
            if project is None:
                return False
            if project.id == self.current_project.id:
                raise ValidationError(f"Refusing to delete the current project '{name}'")
            self.index.delete_project(project.id)
            return self.projects.delete(project.id)

    def repair_index(self, embed: Callable[[str], Sequence[float]]) -> dict[str, int]:
        """Reconcile the index with the record table.

        Removes embeddings whose record is gone and re-embeds records that
        have none. The embedder runs without holding the lock; a record that
        is deleted or re-embedded meanwhile is skipped.
        """
        with self._lock:
            indexed = self.index.keys()
            records = {row["id"]: Record.from_row(row) for row in self.db.fetchall(f"{RECORD_SELECT} ORDER BY r.id")}
            orphans = sorted(indexed - records.keys())
            for record_id in orphans:
                self.index.delete(record_id)

        missing = [record for record_id, record in records.items() if record_id not in indexed]
        embedded = [(record, embed(record.text)) for record in missing]

        reindexed = 0
        with self._lock:
            indexed = self.index.keys()
            for record, vector in embedded:
                current = self.get_record(record.id)
                if current is None or record.id in indexed or current.text != record.text:
                    continue
                self.index.insert(record.id, vector, project_id=current.project_id, kind=current.kind)
                reindexed += 1

        print(f"[dude] Index repair: removed {len(orphans)}, reindexed {reindexed}", file=sys.stderr)
        return {"removed": len(orphans), "reindexed": reindexed}
