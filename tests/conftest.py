"""
Shared fixtures.

The embedder used here is a deterministic bag-of-words hasher: every token
lands in one dimension, so texts sharing words have positive similarity
and the suite never touches the network or downloads a model.
"""

import hashlib
import re

import numpy as np
import pytest


class HashingEmbedder:
    """Deterministic stand-in for an embedding provider."""

    def __init__(self, dimension: int = 1536):
        self.dimension = dimension
        self.calls: list[str] = []
        self.fail: Exception | None = None

    def embed(self, text: str) -> np.ndarray:
        self.calls.append(text)
        if self.fail is not None:
            raise self.fail
        vector = np.zeros(self.dimension, dtype=np.float32)
        for token in re.findall(r"\w+", text.lower()):
            index = int(hashlib.md5(token.encode()).hexdigest(), 16) % self.dimension
            vector[index] += 1.0
        if not vector.any():
            vector[0] = 1.0
        return vector / np.linalg.norm(vector)

    def warmup(self):
        pass

    def get_info(self) -> dict:
        return {"provider": "hashing", "model_name": "bag-of-words", "output_dimension": self.dimension}


@pytest.fixture
def scope():
    from maas.models import TenantScope
    return TenantScope("org-1", "user-1")


@pytest.fixture
def other_scope():
    from maas.models import TenantScope
    return TenantScope("org-2", "user-2")


@pytest.fixture
def basis():
    """basis(i) -> unit vector along dimension i, at the default dimension."""
    def make(index: int, dimension: int = 1536) -> np.ndarray:
        vector = np.zeros(dimension, dtype=np.float32)
        vector[index] = 1.0
        return vector
    return make


@pytest.fixture
def make_entry(basis):
    """Build a MemoryEntry for direct store tests."""
    from maas.models import MemoryEntry

    def make(scope, title="Note", content="Some content", embedding=None, **kwargs):
        return MemoryEntry(
            title=title,
            content=content,
            organization_id=scope.organization_id,
            user_id=scope.user_id,
            embedding=basis(0) if embedding is None else embedding,
            **kwargs,
        )
    return make


@pytest.fixture
def store():
    """In-memory store at the default dimension."""
    from maas.storage import MemoryStore
    store = MemoryStore(db_path=":memory:")
    yield store
    store.close()


@pytest.fixture
def embedder():
    return HashingEmbedder()


@pytest.fixture
def manager(store, embedder):
    """Memory manager over the in-memory store and hashing embedder."""
    from maas.config import MemoryConfig
    from maas.memory import MemoryManager
    manager = MemoryManager(store, embedder, MemoryConfig(db_path=":memory:"))
    yield manager
    manager.close()
