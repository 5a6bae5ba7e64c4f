"""Embedding providers for dude-memory.

- ollama: local model over HTTP (default all-minilm, 384-dim)
- hash:   deterministic feature hashing, no network; similar wording gives
          similar vectors but there is no real semantic understanding
"""

from __future__ import annotations

import asyncio
import hashlib
import re
from functools import lru_cache

import numpy as np
import requests

from errors import EmbeddingError

TOKEN_RE = re.compile(r"\w+")


def _fit(embedding: np.ndarray, dim: int) -> list[float]:
    """Truncate/zero-pad to dim and normalize to unit length."""
    if len(embedding) > dim:
        embedding = embedding[:dim]
    elif len(embedding) < dim:
        embedding = np.concatenate([embedding, np.zeros(dim - len(embedding))])
    norm = np.linalg.norm(embedding)
    if norm == 0:
        raise EmbeddingError("Embedding is all zeros")
    return (embedding / norm).tolist()


def _compute_embedding_ollama(text: str, model: str, base_url: str, dim: int) -> list[float]:
    try:
        response = requests.post(
            f"{base_url}/api/embeddings",
            json={"model": model, "prompt": text},
            timeout=30,
        )
        response.raise_for_status()
    except requests.RequestException as e:
        raise EmbeddingError(f"Ollama embedding failed ({model} at {base_url}): {e}") from e
    values = response.json().get("embedding") or []
    if not values:
        raise EmbeddingError(f"Ollama returned no embedding for model {model}")
    return _fit(np.asarray(values, dtype=np.float64), dim)


def _compute_embedding_hash(text: str, dim: int) -> list[float]:
    """Signed feature hashing over lowercase word tokens.

    Never fails on non-empty text: punctuation-only input (or tokens whose
    signs cancel out) falls back to hashing the whole stripped text.
    """
    embedding = np.zeros(dim)
    for token in TOKEN_RE.findall(text.lower()):
        _add_hashed(embedding, token)
    if not embedding.any():
        _add_hashed(embedding, text.strip())
    return _fit(embedding, dim)


def _add_hashed(embedding: np.ndarray, token: str) -> None:
    digest = hashlib.sha256(token.encode()).digest()
    bucket = int.from_bytes(digest[:8], "little") % len(embedding)
    embedding[bucket] += 1.0 if digest[8] & 1 else -1.0


@lru_cache(maxsize=128)
def compute_embedding(text: str, provider: str, model: str, base_url: str, dim: int) -> tuple[float, ...]:
    """Synchronous, cached embedding computation."""
    if not text.strip():
        raise EmbeddingError("Cannot embed empty text")
    provider = provider.lower()
    if provider == "ollama":
        return tuple(_compute_embedding_ollama(text, model, base_url, dim))
    if provider == "hash":
        return tuple(_compute_embedding_hash(text, dim))
    raise EmbeddingError(f"Unknown embedding provider '{provider}'. Valid: ['hash', 'ollama']")


async def get_embedding(text: str, provider: str, model: str, base_url: str, dim: int) -> list[float]:
    """Generate embedding off the event loop."""
    return list(await asyncio.to_thread(compute_embedding, text, provider, model, base_url, dim))
