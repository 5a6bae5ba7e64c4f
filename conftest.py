"""Shared fixtures: an isolated store under tmp_path and exact-distance vectors."""

import numpy as np
import pytest

from models import EMBEDDING_DIM
from records import RecordService


def unit_vector(axis: int = 0) -> list[float]:
    vector = np.zeros(EMBEDDING_DIM)
    vector[axis] = 1.0
    return vector.tolist()


def vector_at_distance(distance: float, axis: int = 1, anchor: int = 0) -> list[float]:
    """Unit vector at the given cosine distance from unit_vector(anchor)."""
    cos = 1.0 - distance
    vector = np.zeros(EMBEDDING_DIM)
    vector[anchor] = cos
    vector[axis] = np.sqrt(max(0.0, 1.0 - cos**2))
    return vector.tolist()


@pytest.fixture
def service(tmp_path):
    """Record service whose current project is 'demo'."""
    svc = RecordService.open(tmp_path, "demo")
    yield svc
    svc.close()


@pytest.fixture
def other_project(service):
    return service.projects.resolve("other")
