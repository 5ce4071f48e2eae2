"""
Memory lifecycle orchestration.

High-level API over the store, the search engine and the embedding
provider:
- Create / get / update / delete with validation and tenant scoping
- Re-embedding when content changes
- Semantic search with relational filters
- Bulk delete in batches with per-id failure reporting
- Version history, topics, statistics and purge of deleted entries

Errors keep their kind on the way out: validation, not found, embedding
and store failures reach the caller as raised. Only access tracking is
allowed to fail quietly.
"""
from __future__ import annotations

import hashlib
import logging
import threading
import time
from datetime import timedelta
from typing import Optional

import numpy as np

from .config import MemoryConfig
from .embedding import EmbeddingProvider, get_engine
from .errors import NotFoundError, StoreError, ValidationError
from .models import (
    BulkDeleteResult,
    CreateMemoryRequest,
    CreateTopicRequest,
    ListMemoryRequest,
    MemoryEntry,
    MemoryPage,
    MemoryTopic,
    MemoryVersion,
    SearchMemoryRequest,
    SearchResult,
    TenantScope,
    UpdateMemoryRequest,
    UpdateTopicRequest,
)
from .search import SimilaritySearchEngine
from .storage import MemoryStore, utcnow
from .tracking import AccessTracker, VersionHistory

logger = logging.getLogger(__name__)


class MemoryManager:
    """
    Orchestrates every memory operation for one process.

    The store and embedding provider are long-lived handles passed in by
    the caller; use `from_config` to build both from a MemoryConfig.
    """

    def __init__(
        self,
        storage: MemoryStore,
        embedding_engine: EmbeddingProvider,
        config: Optional[MemoryConfig] = None,
    ):
        self.config = config or MemoryConfig()
        if embedding_engine.dimension != storage.dimension:
            raise ValueError(
                f"Embedding dimension {embedding_engine.dimension} does not match "
                f"store dimension {storage.dimension}"
            )
        self.storage = storage
        self.embedding_engine = embedding_engine
        self.search_engine = SimilaritySearchEngine(storage)
        self.access_tracker = AccessTracker(storage)
        self.version_history = VersionHistory(storage)

        # content hash -> embedding, FIFO eviction
        self._embed_cache: dict[str, np.ndarray] = {}
        self._embed_cache_lock = threading.Lock()

    @classmethod
    def from_config(cls, config: MemoryConfig) -> MemoryManager:
        """Build the store and embedding provider described by `config`."""
        storage = MemoryStore(
            db_path=config.db_path,
            dimension=config.embedding_dim,
            use_hnsw=config.use_hnsw,
        )
        return cls(storage, get_engine(config), config)

    # ------------------------------------------------------------------
    # Embeddings
    # ------------------------------------------------------------------

    def _content_hash(self, content: str) -> str:
        return hashlib.sha256(content.encode()).hexdigest()

    def _get_embedding(self, content: str) -> np.ndarray:
        """Embed content, reusing a cached vector for identical text.

        The cache holds its own copy; callers always get a fresh array.
        """
        if self.config.embed_cache_size == 0:
            return self.embedding_engine.embed(content)

        h = self._content_hash(content)
        with self._embed_cache_lock:
            cached = self._embed_cache.get(h)
        if cached is not None:
            return cached.copy()

        embedding = self.embedding_engine.embed(content)
        with self._embed_cache_lock:
            if len(self._embed_cache) >= self.config.embed_cache_size:
                del self._embed_cache[next(iter(self._embed_cache))]
            self._embed_cache[h] = embedding.copy()
        return embedding

    # ------------------------------------------------------------------
    # Memories
    # ------------------------------------------------------------------

    def _require_topic(self, scope: TenantScope, topic_id: Optional[str]):
        if topic_id is not None and self.storage.get_topic(topic_id, scope) is None:
            raise ValidationError(f"Unknown topic_id: {topic_id}")

    def create(self, scope: TenantScope, request: CreateMemoryRequest) -> MemoryEntry:
        """
        Validate, embed the content and persist a new memory.

        Nothing is stored when the embedding call fails.
        """
        start = time.perf_counter()
        self._require_topic(scope, request.topic_id)
        embedding = self._get_embedding(request.content)

        entry = self.storage.insert(MemoryEntry(
            title=request.title,
            content=request.content,
            summary=request.summary,
            memory_type=request.memory_type,
            status=request.status,
            tags=request.tags,
            topic_id=request.topic_id,
            project_ref=request.project_ref,
            metadata=request.metadata,
            organization_id=scope.organization_id,
            user_id=scope.user_id,
            embedding=embedding,
        ))
        logger.debug(f"memory_create {entry.id} took {(time.perf_counter() - start) * 1000:.1f}ms")
        return entry

    def get(self, scope: TenantScope, memory_id: str) -> MemoryEntry:
        """
        Fetch a memory and record the access.

        Returns the entry as it was before this access was counted.
        """
        entry = self.storage.get_by_id(memory_id, scope)
        if entry is None:
            raise NotFoundError("Memory", memory_id)
        self.access_tracker.record_access(memory_id)
        return entry

    def update(
        self,
        scope: TenantScope,
        memory_id: str,
        request: UpdateMemoryRequest,
    ) -> MemoryEntry:
        """Apply a partial update; content changes are re-embedded first."""
        start = time.perf_counter()
        fields = request.changes()
        if not fields:
            raise ValidationError("No fields to update")
        if fields.get("topic_id") is not None:
            self._require_topic(scope, fields["topic_id"])

        if "content" in fields:
            # Skip the provider call when the entry does not exist in scope
            if self.storage.get_by_id(memory_id, scope) is None:
                raise NotFoundError("Memory", memory_id)
            fields["embedding"] = self._get_embedding(fields["content"])

        entry = self.storage.update(memory_id, scope, fields)
        if entry is None:
            raise NotFoundError("Memory", memory_id)
        logger.debug(f"memory_update {memory_id} took {(time.perf_counter() - start) * 1000:.1f}ms")
        return entry

    def search(self, scope: TenantScope, request: SearchMemoryRequest) -> list[SearchResult]:
        """Embed the query and rank the scope's memories against it."""
        start = time.perf_counter()
        filters = request.filters()
        query_embedding = self._get_embedding(request.query)
        results = self.search_engine.search(
            query_embedding,
            scope,
            filters=filters,
            threshold=request.threshold,
            limit=request.limit,
        )
        logger.debug(
            f"memory_search returned {len(results)} results in "
            f"{(time.perf_counter() - start) * 1000:.1f}ms"
        )
        return results

    def delete(self, scope: TenantScope, memory_id: str):
        """Soft delete a memory. Deleting twice is not an error."""
        if not self.storage.soft_delete(memory_id, scope):
            raise NotFoundError("Memory", memory_id)
        logger.debug(f"memory_delete {memory_id}")

    def bulk_delete(
        self,
        scope: TenantScope,
        memory_ids: list[str],
        batch_size: Optional[int] = None,
    ) -> BulkDeleteResult:
        """
        Soft delete many memories in sequential batches.

        A batch that fails as a whole reports all of its ids as failed and
        processing continues with the next batch. Ids that do not exist in
        scope are reported as failed too.
        """
        if not memory_ids:
            raise ValidationError("ids cannot be empty")
        batch_size = batch_size or self.config.bulk_batch_size
        if batch_size < 1:
            raise ValidationError("batch_size must be >= 1")

        result = BulkDeleteResult()
        for offset in range(0, len(memory_ids), batch_size):
            batch = memory_ids[offset:offset + batch_size]
            try:
                found = self.storage.soft_delete_batch(batch, scope)
            except StoreError as e:
                logger.warning(f"Bulk delete batch at offset {offset} failed ({len(batch)} ids): {e}")
                result.failed_ids.extend(batch)
                continue
            for memory_id in batch:
                if memory_id in found:
                    result.deleted_count += 1
                else:
                    result.failed_ids.append(memory_id)

        logger.info(
            f"Bulk delete: {result.deleted_count} deleted, {len(result.failed_ids)} failed"
        )
        return result

    def list(self, scope: TenantScope, request: Optional[ListMemoryRequest] = None) -> MemoryPage:
        """List memories with filters, sorting and pagination."""
        request = request or ListMemoryRequest()
        entries, total = self.storage.list(
            scope,
            request.filters(),
            page=request.page,
            limit=request.limit,
            sort=request.sort,
            order=request.order,
        )
        return MemoryPage(memories=entries, total=total, page=request.page, limit=request.limit)

    def versions(self, scope: TenantScope, memory_id: str) -> list[MemoryVersion]:
        """Version snapshots of a memory, oldest first."""
        if self.storage.get_by_id(memory_id, scope) is None:
            raise NotFoundError("Memory", memory_id)
        return self.version_history.list(memory_id, scope)

    def get_version(self, scope: TenantScope, memory_id: str, version_number: int) -> MemoryVersion:
        if self.storage.get_by_id(memory_id, scope) is None:
            raise NotFoundError("Memory", memory_id)
        version = self.version_history.get(memory_id, scope, version_number)
        if version is None:
            raise NotFoundError("Memory version", f"{memory_id}@{version_number}")
        return version

    # ------------------------------------------------------------------
    # Topics
    # ------------------------------------------------------------------

    def _check_parent(self, scope: TenantScope, topic_id: Optional[str], parent_id: Optional[str]):
        """Parent must exist in scope and must not be the topic or its descendant."""
        if parent_id is None:
            return
        seen = set()
        current = parent_id
        while current is not None:
            if current == topic_id:
                raise ValidationError("parent_topic_id would create a cycle")
            if current in seen:
                break
            seen.add(current)
            parent = self.storage.get_topic(current, scope)
            if parent is None:
                if current == parent_id:
                    raise ValidationError(f"Unknown parent_topic_id: {parent_id}")
                break
            current = parent.parent_topic_id

    def create_topic(self, scope: TenantScope, request: CreateTopicRequest) -> MemoryTopic:
        self._check_parent(scope, None, request.parent_topic_id)
        return self.storage.insert_topic(MemoryTopic(
            name=request.name,
            description=request.description,
            color=request.color,
            icon=request.icon,
            parent_topic_id=request.parent_topic_id,
            is_system=request.is_system,
            metadata=request.metadata,
            organization_id=scope.organization_id,
            user_id=scope.user_id,
        ))

    def get_topic(self, scope: TenantScope, topic_id: str) -> MemoryTopic:
        topic = self.storage.get_topic(topic_id, scope)
        if topic is None:
            raise NotFoundError("Topic", topic_id)
        return topic

    def list_topics(self, scope: TenantScope) -> list[MemoryTopic]:
        return self.storage.list_topics(scope)

    def update_topic(
        self,
        scope: TenantScope,
        topic_id: str,
        request: UpdateTopicRequest,
    ) -> MemoryTopic:
        fields = request.changes()
        if not fields:
            raise ValidationError("No fields to update")
        if fields.get("parent_topic_id") is not None:
            self._check_parent(scope, topic_id, fields["parent_topic_id"])
        topic = self.storage.update_topic(topic_id, scope, fields)
        if topic is None:
            raise NotFoundError("Topic", topic_id)
        return topic

    def delete_topic(self, scope: TenantScope, topic_id: str):
        """Delete a topic; its memories and child topics are detached."""
        if not self.storage.delete_topic(topic_id, scope):
            raise NotFoundError("Topic", topic_id)

    # ------------------------------------------------------------------
    # Maintenance
    # ------------------------------------------------------------------

    def stats(self, scope: TenantScope) -> dict:
        """Get memory system statistics."""
        engine_info = self.embedding_engine.get_info()
        return {
            **self.storage.get_stats(scope),
            "embedding_provider": engine_info["provider"],
            "embedding_model": engine_info["model_name"],
        }

    def purge_deleted(self, scope: TenantScope, older_than_days: Optional[int] = None) -> int:
        """Physically remove soft-deleted memories, optionally only older ones."""
        if older_than_days is not None and older_than_days < 0:
            raise ValidationError("older_than_days must be >= 0")
        older_than = utcnow() - timedelta(days=older_than_days) if older_than_days is not None else None
        return self.storage.purge_deleted(scope, older_than)

    def warmup(self):
        """Warmup the embedding model."""
        self.embedding_engine.warmup()

    def close(self):
        """Close resources."""
        self.storage.close()
