"""Tests for the LanceDB vector index adapter."""

import pytest

from conftest import unit_vector, vector_at_distance
from errors import ValidationError
from models import EMBEDDING_DIM
from vector_index import VectorIndex


@pytest.fixture
def index(tmp_path):
    idx = VectorIndex(tmp_path / "vectors").open()
    yield idx
    idx.close()


class TestVectorIndex:
    def test_empty_index(self, index):
        assert index.knn(unit_vector(0), 5) == []
        assert index.count() == 0
        assert index.keys() == set()

    def test_knn_orders_by_ascending_distance(self, index):
        for record_id, distance in [(1, 0.5), (2, 0.1), (3, 0.3)]:
            index.insert(record_id, vector_at_distance(distance, axis=record_id), project_id=1, kind="issue")

        hits = index.knn(unit_vector(0), 5)

        assert [h.record_id for h in hits] == [2, 3, 1]
        assert [h.distance for h in hits] == pytest.approx([0.1, 0.3, 0.5], abs=1e-4)
        assert all(h.project_id == 1 for h in hits)

    def test_knn_respects_k(self, index):
        for record_id in range(1, 6):
            index.insert(record_id, unit_vector(record_id), project_id=1, kind="issue")
        assert len(index.knn(unit_vector(1), 2)) == 2
        assert index.knn(unit_vector(1), 0) == []

    def test_knn_filters(self, index):
        index.insert(1, unit_vector(0), project_id=1, kind="issue")
        index.insert(2, unit_vector(0), project_id=1, kind="spec")
        index.insert(3, unit_vector(0), project_id=2, kind="issue")

        assert [h.record_id for h in index.knn(unit_vector(0), 5, project_id=1, kind="issue")] == [1]
        assert {h.record_id for h in index.knn(unit_vector(0), 5, kind="issue")} == {1, 3}
        assert {h.record_id for h in index.knn(unit_vector(0), 5, project_id=1)} == {1, 2}
        assert index.knn(unit_vector(0), 5, kind="it's") == []

    def test_delete(self, index):
        index.insert(1, unit_vector(0), project_id=1, kind="issue")
        index.delete(1)
        index.delete(1)  # absent: no-op
        assert index.knn(unit_vector(0), 5) == []

    def test_delete_then_insert_replaces_vector(self, index):
        index.insert(1, unit_vector(0), project_id=1, kind="issue")
        index.delete(1)
        index.insert(1, unit_vector(7), project_id=1, kind="issue")
        assert index.count() == 1
        assert index.knn(unit_vector(7), 1)[0].distance == pytest.approx(0.0, abs=1e-5)

    def test_delete_project(self, index):
        index.insert(1, unit_vector(0), project_id=1, kind="issue")
        index.insert(2, unit_vector(1), project_id=2, kind="issue")
        index.delete_project(2)
        assert index.keys() == {1}
        assert index.count(project_id=2) == 0

    def test_reopen_keeps_entries(self, tmp_path, index):
        index.insert(1, unit_vector(0), project_id=1, kind="arch")
        reopened = VectorIndex(tmp_path / "vectors").open()
        assert reopened.keys() == {1}

    @pytest.mark.parametrize(
        "vector",
        [
            [1.0] * (EMBEDDING_DIM + 1),
            [],
            [[1.0] * EMBEDDING_DIM],
            [float("nan")] * EMBEDDING_DIM,
        ],
    )
    def test_invalid_vectors_rejected(self, index, vector):
        with pytest.raises(ValidationError):
            index.insert(1, vector, project_id=1, kind="issue")
        with pytest.raises(ValidationError):
            index.knn(vector, 5)
