"""
Error taxonomy for the memory store.

Every failure surfaced by the store, the embedding adapter or the
orchestrator is one of these. Callers map them to user-visible results:
validation -> 400, not found -> 404, embedding -> 502, store -> 500.
"""
from __future__ import annotations


class MemoryServiceError(Exception):
    """Base for all memory service errors."""

    status_code = 500


class ValidationError(MemoryServiceError):
    """Malformed input or out-of-bounds query parameters."""

    status_code = 400


class NotFoundError(MemoryServiceError):
    """Memory or topic does not exist within the caller's tenant scope.

    Raised both for ids that do not exist and for ids owned by another
    tenant, so existence is never leaked across tenants.
    """

    status_code = 404

    def __init__(self, kind: str, item_id: str):
        super().__init__(f"{kind} not found: {item_id}")
        self.kind = kind
        self.item_id = item_id


class EmbeddingProviderError(MemoryServiceError):
    """The embedding call failed (network, provider, or rejected content)."""

    status_code = 502


class EmbeddingTimeoutError(EmbeddingProviderError):
    """The embedding call did not complete within the configured timeout."""


class StoreError(MemoryServiceError):
    """Underlying persistence failure. Detail is logged, not exposed."""

    status_code = 500
