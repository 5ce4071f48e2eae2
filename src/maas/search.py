"""
Similarity search over stored memory embeddings.

score = 1 - cosine_distance. An entry is returned only when its score is
at least the threshold and it passes the tenant, status, type, tag, topic
and project filters. Results are ordered by distance ascending, then by
newest first, then by id.

Backends, tried in order:
1. HNSW candidates restricted to rows that pass the SQL filters (optional)
2. sqlite-vec exact scan with every predicate in one WHERE clause
3. numpy scan over SQL-prefiltered rows (sqlite-vec not loadable)
"""
from __future__ import annotations

import logging
import sqlite3
import time
from typing import Optional

import numpy as np

from .errors import ValidationError
from .models import (
    DEFAULT_SEARCH_LIMIT,
    DEFAULT_THRESHOLD,
    MemoryFilters,
    SearchResult,
    TenantScope,
    check_limit,
    check_threshold,
)
from .storage import MemoryStore, build_filter_clause, deserialize_f32, serialize_f32

logger = logging.getLogger(__name__)


def cosine_distance(query: np.ndarray, vectors: np.ndarray) -> np.ndarray:
    """Cosine distance between one query and each row of `vectors`."""
    query = query.astype(np.float64)
    vectors = vectors.astype(np.float64)
    norms = np.linalg.norm(vectors, axis=1) * np.linalg.norm(query)
    similarity = np.divide(
        vectors @ query,
        norms,
        out=np.zeros(len(vectors), dtype=np.float64),
        where=norms > 0,
    )
    return 1.0 - similarity


class SimilaritySearchEngine:
    """Ranks a tenant's memories against a query vector."""

    def __init__(self, store: MemoryStore, hnsw_ef: int = 50):
        self.store = store
        self.hnsw_ef = hnsw_ef

    def search(
        self,
        query_vector: np.ndarray,
        scope: TenantScope,
        filters: Optional[MemoryFilters] = None,
        threshold: float = DEFAULT_THRESHOLD,
        limit: int = DEFAULT_SEARCH_LIMIT,
    ) -> list[SearchResult]:
        """
        Search memories by vector similarity.

        Args:
            query_vector: Query embedding, same dimension as the store
            scope: Tenant whose memories are searched
            filters: Relational predicates (default: active entries only)
            threshold: Minimum score, 0.0 to 1.0 inclusive
            limit: Maximum number of results, 1 to 100

        Returns:
            SearchResult list, best match first
        """
        limit = check_limit(limit)
        threshold = check_threshold(threshold)
        query_vector = np.asarray(query_vector, dtype=np.float32)
        if query_vector.shape != (self.store.dimension,):
            raise ValidationError(
                f"query vector must have {self.store.dimension} dimensions, "
                f"got {query_vector.shape}"
            )
        filters = filters or MemoryFilters()
        max_distance = 1.0 - threshold

        start = time.perf_counter()
        results = None
        if self.store.hnsw is not None:
            try:
                results = self._search_hnsw(query_vector, scope, filters, max_distance, limit)
            except RuntimeError as e:
                logger.debug(f"HNSW search failed, falling back: {e}")

        if results is None:
            if self.store.vec_available:
                results = self._search_sqlite_vec(query_vector, scope, filters, max_distance, limit)
            else:
                results = self._search_numpy(query_vector, scope, filters, max_distance, limit)

        logger.debug(
            f"similarity_search took {(time.perf_counter() - start) * 1000:.1f}ms "
            f"({len(results)} results, backend={self.store.vector_backend})"
        )
        return results

    def _search_sqlite_vec(
        self,
        query_vector: np.ndarray,
        scope: TenantScope,
        filters: MemoryFilters,
        max_distance: float,
        limit: int,
    ) -> list[SearchResult]:
        where, params = build_filter_clause(scope, filters)
        query_blob = serialize_f32(query_vector)

        with self.store.connection() as conn:
            rows = conn.execute(f"""
                SELECT m.*, vec_distance_cosine(m.embedding, ?) AS distance
                FROM memory_entries m
                WHERE {where}
                  AND m.embedding IS NOT NULL
                  AND vec_distance_cosine(m.embedding, ?) <= ?
                ORDER BY distance ASC, m.created_at DESC, m.id ASC
                LIMIT ?
            """, (query_blob, *params, query_blob, max_distance, limit)).fetchall()

        return [
            SearchResult(memory=self.store.row_to_entry(row), score=1.0 - row["distance"])
            for row in rows
        ]

    def _search_numpy(
        self,
        query_vector: np.ndarray,
        scope: TenantScope,
        filters: MemoryFilters,
        max_distance: float,
        limit: int,
    ) -> list[SearchResult]:
        where, params = build_filter_clause(scope, filters)
        with self.store.connection() as conn:
            rows = conn.execute(
                f"SELECT m.* FROM memory_entries m WHERE {where} AND m.embedding IS NOT NULL",
                params,
            ).fetchall()
        return self._rank(query_vector, rows, max_distance, limit)

    def _search_hnsw(
        self,
        query_vector: np.ndarray,
        scope: TenantScope,
        filters: MemoryFilters,
        max_distance: float,
        limit: int,
    ) -> list[SearchResult]:
        where, params = build_filter_clause(scope, filters)
        with self.store.connection() as conn:
            allowed = [
                row["seq"]
                for row in conn.execute(
                    f"SELECT m.seq FROM memory_entries m WHERE {where} AND m.embedding IS NOT NULL",
                    params,
                )
            ]
            if not allowed:
                return []

            hits = self.store.hnsw.search(query_vector, k=limit, ef=self.hnsw_ef, allowed=allowed)
            # Rows written by another process since this index was loaded
            unindexed = [seq for seq in allowed if seq not in self.store.hnsw]

            seqs = [seq for seq, _ in hits] + unindexed
            if not seqs:
                return []
            placeholders = ",".join("?" * len(seqs))
            rows = conn.execute(
                f"SELECT m.* FROM memory_entries m WHERE m.seq IN ({placeholders})",
                seqs,
            ).fetchall()

        # Candidates are re-scored exactly so scores match the other backends
        return self._rank(query_vector, rows, max_distance, limit)

    def _rank(
        self,
        query_vector: np.ndarray,
        rows: list[sqlite3.Row],
        max_distance: float,
        limit: int,
    ) -> list[SearchResult]:
        if not rows:
            return []
        vectors = np.stack([deserialize_f32(row["embedding"]) for row in rows])
        distances = cosine_distance(query_vector, vectors)

        ranked = [
            (float(dist), row)
            for dist, row in zip(distances, rows)
            if dist <= max_distance
        ]
        ranked.sort(key=lambda pair: pair[1]["id"])
        ranked.sort(key=lambda pair: pair[1]["created_at"], reverse=True)
        ranked.sort(key=lambda pair: pair[0])

        return [
            SearchResult(memory=self.store.row_to_entry(row), score=1.0 - dist)
            for dist, row in ranked[:limit]
        ]
