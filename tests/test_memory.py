"""
Test suite for the memory lifecycle orchestrator.

Tests cover:
- Create / get / update / delete through the manager
- Access counting and version history
- Semantic search with tenant isolation
- Bulk delete batch arithmetic
- Embedding failures and caching
- Topics, stats and purge
"""

import threading

import numpy as np
import pytest


def _create(manager, scope, title="Note", content="Some content", **kwargs):
    from maas.models import CreateMemoryRequest
    return manager.create(scope, CreateMemoryRequest(title=title, content=content, **kwargs))


# ============================================================================
# Create / get
# ============================================================================

class TestCreateAndGet:
    """Round trip and access counting."""

    def test_create_then_get(self, manager, scope):
        """Test creating and retrieving a memory."""
        from maas.models import MemoryStatus, MemoryType

        created = _create(manager, scope, title="Release checklist",
                          content="Tag the build and publish notes",
                          memory_type="workflow", tags=["release"], metadata={"team": "infra"})

        fetched = manager.get(scope, created.id)

        assert fetched.title == "Release checklist"
        assert fetched.content == "Tag the build and publish notes"
        assert fetched.memory_type == MemoryType.WORKFLOW
        assert fetched.status == MemoryStatus.ACTIVE
        assert fetched.tags == ["release"]
        assert fetched.metadata == {"team": "infra"}
        assert fetched.organization_id == scope.organization_id
        assert fetched.user_id == scope.user_id

    def test_get_returns_pre_access_snapshot(self, manager, scope):
        """Test that get returns the entry before its access is counted."""
        created = _create(manager, scope)

        first = manager.get(scope, created.id)
        second = manager.get(scope, created.id)

        assert first.access_count == 0
        assert second.access_count == 1
        assert second.last_accessed is not None
        assert manager.storage.get_by_id(created.id, scope).access_count == 2

    def test_get_other_tenant_is_not_found(self, manager, scope, other_scope):
        """Test that another tenant's memory is not found."""
        from maas.errors import NotFoundError

        created = _create(manager, scope)
        with pytest.raises(NotFoundError):
            manager.get(other_scope, created.id)

    def test_get_unknown_is_not_found(self, manager, scope):
        """Test getting an unknown id."""
        from maas.errors import NotFoundError

        with pytest.raises(NotFoundError) as exc:
            manager.get(scope, "missing")
        assert exc.value.status_code == 404

    def test_access_tracking_failure_does_not_fail_get(self, manager, scope, monkeypatch):
        """Test that access tracking failures are suppressed."""
        from maas.errors import StoreError

        created = _create(manager, scope)

        def broken(memory_id):
            raise StoreError("database is locked")

        monkeypatch.setattr(manager.storage, "record_access", broken)

        assert manager.get(scope, created.id).id == created.id

    def test_embedding_failure_stores_nothing(self, manager, scope, embedder):
        """Test that nothing is stored when embedding fails."""
        from maas.errors import EmbeddingProviderError

        embedder.fail = EmbeddingProviderError("provider unavailable")

        with pytest.raises(EmbeddingProviderError):
            _create(manager, scope)

        assert manager.list(scope).total == 0

    def test_create_with_unknown_topic(self, manager, scope):
        """Test creating a memory under an unknown topic."""
        from maas.errors import ValidationError

        with pytest.raises(ValidationError):
            _create(manager, scope, topic_id="no-such-topic")

    def test_embedding_cache_reuses_vectors(self, manager, scope, embedder):
        """Test embedding cache for identical content."""
        _create(manager, scope, content="identical text")
        _create(manager, scope, content="identical text")

        assert embedder.calls.count("identical text") == 1

    def test_cached_embedding_is_not_shared(self, manager, scope, embedder):
        """Test that mutating a returned embedding leaves the cache intact."""
        first = _create(manager, scope, content="identical text")
        first.embedding[:] = 0.0

        second = _create(manager, scope, content="identical text")
        stored = manager.storage.get_by_id(second.id, scope, include_embedding=True)

        assert embedder.calls.count("identical text") == 1
        assert second.embedding is not first.embedding
        assert float(np.linalg.norm(second.embedding)) == pytest.approx(1.0)
        assert float(np.linalg.norm(stored.embedding)) == pytest.approx(1.0)

    def test_embedding_cache_disabled(self, store, embedder, scope):
        """Test that a zero cache size disables caching."""
        from maas.config import MemoryConfig
        from maas.memory import MemoryManager

        manager = MemoryManager(store, embedder, MemoryConfig(db_path=":memory:", embed_cache_size=0))
        _create(manager, scope, content="identical text")
        _create(manager, scope, content="identical text")

        assert embedder.calls.count("identical text") == 2

    def test_dimension_mismatch_rejected(self, store):
        """Test that provider and store dimensions must agree."""
        from conftest import HashingEmbedder
        from maas.memory import MemoryManager

        with pytest.raises(ValueError):
            MemoryManager(store, HashingEmbedder(dimension=384))


# ============================================================================
# Update / versions
# ============================================================================

class TestUpdate:
    """Partial updates, re-embedding and version history."""

    def test_content_update_reembeds_and_versions(self, manager, scope, embedder):
        """Test that a content update re-embeds and records a version."""
        from maas.models import UpdateMemoryRequest

        created = _create(manager, scope, content="first draft")
        updated = manager.update(scope, created.id, UpdateMemoryRequest(content="second draft"))

        assert updated.content == "second draft"
        assert "second draft" in embedder.calls
        versions = manager.versions(scope, created.id)
        assert [v.version_number for v in versions] == [1]
        assert versions[0].content == "second draft"

    def test_three_updates_give_versions_one_to_three(self, manager, scope):
        """Test version numbering across updates."""
        from maas.models import UpdateMemoryRequest

        created = _create(manager, scope)
        for title in ["a", "b", "c"]:
            manager.update(scope, created.id, UpdateMemoryRequest(title=title))

        versions = manager.versions(scope, created.id)
        assert [v.version_number for v in versions] == [1, 2, 3]
        assert manager.get_version(scope, created.id, 2).title == "b"

    def test_status_only_update_has_no_version(self, manager, scope):
        """Test that a status change records no version."""
        from maas.models import MemoryStatus, UpdateMemoryRequest

        created = _create(manager, scope)
        updated = manager.update(scope, created.id, UpdateMemoryRequest(status="archived"))

        assert updated.status == MemoryStatus.ARCHIVED
        assert updated.updated_at > created.updated_at
        assert manager.versions(scope, created.id) == []

    def test_clear_topic(self, manager, scope):
        """Test removing a memory from its topic."""
        from maas.models import CreateTopicRequest, UpdateMemoryRequest

        topic = manager.create_topic(scope, CreateTopicRequest(name="work"))
        created = _create(manager, scope, topic_id=topic.id)

        updated = manager.update(scope, created.id, UpdateMemoryRequest(topic_id=None))

        assert updated.topic_id is None
        assert manager.versions(scope, created.id)[0].topic_id is None

    def test_update_errors(self, manager, scope, other_scope):
        """Test update validation and scope errors."""
        from maas.errors import NotFoundError, ValidationError
        from maas.models import UpdateMemoryRequest

        created = _create(manager, scope)

        with pytest.raises(ValidationError):
            manager.update(scope, created.id, UpdateMemoryRequest())
        with pytest.raises(NotFoundError):
            manager.update(other_scope, created.id, UpdateMemoryRequest(title="x"))
        with pytest.raises(NotFoundError):
            manager.update(scope, "missing", UpdateMemoryRequest(content="x"))
        with pytest.raises(ValidationError):
            UpdateMemoryRequest(status="deleted")

    def test_update_deleted_is_not_found(self, manager, scope):
        """Test updating a deleted memory."""
        from maas.errors import NotFoundError
        from maas.models import UpdateMemoryRequest

        created = _create(manager, scope)
        manager.delete(scope, created.id)

        with pytest.raises(NotFoundError):
            manager.update(scope, created.id, UpdateMemoryRequest(title="x"))

    def test_versions_of_unknown_memory(self, manager, scope):
        """Test version lookups on an unknown memory."""
        from maas.errors import NotFoundError

        with pytest.raises(NotFoundError):
            manager.versions(scope, "missing")
        with pytest.raises(NotFoundError):
            manager.get_version(scope, "missing", 1)

    def test_missing_version_number(self, manager, scope):
        """Test looking up a version that does not exist."""
        from maas.errors import NotFoundError

        created = _create(manager, scope)
        with pytest.raises(NotFoundError):
            manager.get_version(scope, created.id, 1)


# ============================================================================
# Search
# ============================================================================

class TestSearch:
    """Semantic search through the manager."""

    def test_finds_related_memory(self, manager, scope):
        """Test semantic search finds the related memory."""
        from maas.models import SearchMemoryRequest

        target = _create(manager, scope, title="db", content="postgres connection pool settings")
        _create(manager, scope, title="food", content="banana bread recipe with walnuts")

        results = manager.search(scope, SearchMemoryRequest(
            query="postgres connection pool", threshold=0.3,
        ))

        assert [r.memory.id for r in results] == [target.id]
        assert 0.3 <= results[0].score <= 1.0

    def test_tenant_isolation(self, manager, scope, other_scope):
        """Test that search only returns the caller's memories."""
        from maas.models import SearchMemoryRequest

        _create(manager, other_scope, content="secret launch plan")
        mine = _create(manager, scope, content="secret launch plan")

        results = manager.search(scope, SearchMemoryRequest(query="secret launch plan", threshold=0.0))

        assert [r.memory.id for r in results] == [mine.id]

    def test_deleted_memories_not_returned(self, manager, scope):
        """Test that deleted memories are not searchable."""
        from maas.models import SearchMemoryRequest

        created = _create(manager, scope, content="ephemeral note")
        manager.delete(scope, created.id)

        assert manager.search(scope, SearchMemoryRequest(query="ephemeral note")) == []

    def test_query_embedding_failure_propagates(self, manager, scope, embedder):
        """Test that query embedding failures reach the caller."""
        from maas.errors import EmbeddingTimeoutError
        from maas.models import SearchMemoryRequest

        embedder.fail = EmbeddingTimeoutError("timed out")
        with pytest.raises(EmbeddingTimeoutError):
            manager.search(scope, SearchMemoryRequest(query="anything"))

    def test_invalid_request(self):
        """Test search request validation."""
        from maas.errors import ValidationError
        from maas.models import SearchMemoryRequest

        with pytest.raises(ValidationError):
            SearchMemoryRequest(query="   ")
        with pytest.raises(ValidationError):
            SearchMemoryRequest(query="x", limit=0)
        with pytest.raises(ValidationError):
            SearchMemoryRequest(query="x", threshold=2)


# ============================================================================
# Delete
# ============================================================================

class TestDelete:
    """Single and bulk deletion."""

    def test_delete_then_get(self, manager, scope):
        """Test deleting a memory."""
        from maas.errors import NotFoundError

        created = _create(manager, scope)
        manager.delete(scope, created.id)

        with pytest.raises(NotFoundError):
            manager.get(scope, created.id)

    def test_delete_twice_is_ok(self, manager, scope):
        """Test that deleting twice is not an error."""
        created = _create(manager, scope)
        manager.delete(scope, created.id)
        manager.delete(scope, created.id)

    def test_delete_unknown(self, manager, scope, other_scope):
        """Test deleting unknown or foreign ids."""
        from maas.errors import NotFoundError

        created = _create(manager, scope)
        with pytest.raises(NotFoundError):
            manager.delete(scope, "missing")
        with pytest.raises(NotFoundError):
            manager.delete(other_scope, created.id)

    def test_bulk_delete_all_succeed(self, manager, scope):
        """Test bulk delete across several batches."""
        ids = [_create(manager, scope, content=f"memory {i}").id for i in range(7)]

        result = manager.bulk_delete(scope, ids, batch_size=3)

        assert result.deleted_count == 7
        assert result.failed_ids == []
        assert manager.list(scope).total == 0

    def test_bulk_delete_failing_batch(self, manager, scope, monkeypatch):
        """Test that a failing batch is reported and later batches still run."""
        from maas.errors import StoreError

        ids = [_create(manager, scope, content=f"memory {i}").id for i in range(120)]
        original = manager.storage.soft_delete_batch
        calls = []

        def flaky(batch, batch_scope):
            calls.append(list(batch))
            if len(calls) == 2:
                raise StoreError("Store operation failed")
            return original(batch, batch_scope)

        monkeypatch.setattr(manager.storage, "soft_delete_batch", flaky)

        result = manager.bulk_delete(scope, ids)

        assert [len(c) for c in calls] == [50, 50, 20]
        assert result.deleted_count == 70
        assert result.failed_ids == ids[50:100]
        assert result.deleted_count + len(result.failed_ids) == len(ids)
        assert manager.list(scope).total == 50

    def test_bulk_delete_reports_unknown_ids(self, manager, scope, other_scope):
        """Test that unknown ids are reported as failed."""
        mine = _create(manager, scope).id
        theirs = _create(manager, other_scope).id

        result = manager.bulk_delete(scope, [mine, "missing", theirs])

        assert result.deleted_count == 1
        assert result.failed_ids == ["missing", theirs]
        assert manager.get(other_scope, theirs).id == theirs

    def test_bulk_delete_empty(self, manager, scope):
        """Test bulk delete with no ids."""
        from maas.errors import ValidationError

        with pytest.raises(ValidationError):
            manager.bulk_delete(scope, [])

    def test_purge_deleted(self, manager, scope):
        """Test purging soft-deleted memories."""
        keep = _create(manager, scope)
        gone = _create(manager, scope)
        manager.delete(scope, gone.id)

        assert manager.purge_deleted(scope, older_than_days=1) == 0
        assert manager.purge_deleted(scope) == 1
        assert manager.get(scope, keep.id).id == keep.id


# ============================================================================
# Listing / topics / stats
# ============================================================================

class TestListAndTopics:
    """Pagination, topics and statistics."""

    def test_list_pages(self, manager, scope):
        """Test listing with sorting and pagination."""
        from maas.models import ListMemoryRequest

        for i in range(5):
            _create(manager, scope, title=f"m{i}")

        page = manager.list(scope, ListMemoryRequest(page=2, limit=2, sort="title", order="asc"))

        assert [m.title for m in page.memories] == ["m2", "m3"]
        assert page.total == 5
        assert page.pages == 3

    def test_topic_hierarchy_and_cycles(self, manager, scope):
        """Test topic nesting and cycle rejection."""
        from maas.errors import ValidationError
        from maas.models import CreateTopicRequest, UpdateTopicRequest

        root = manager.create_topic(scope, CreateTopicRequest(name="root", color="#112233"))
        child = manager.create_topic(scope, CreateTopicRequest(name="child", parent_topic_id=root.id))
        grandchild = manager.create_topic(scope, CreateTopicRequest(name="grandchild", parent_topic_id=child.id))

        with pytest.raises(ValidationError):
            manager.update_topic(scope, root.id, UpdateTopicRequest(parent_topic_id=grandchild.id))
        with pytest.raises(ValidationError):
            manager.update_topic(scope, root.id, UpdateTopicRequest(parent_topic_id=root.id))
        with pytest.raises(ValidationError):
            manager.create_topic(scope, CreateTopicRequest(name="orphan", parent_topic_id="missing"))

        moved = manager.update_topic(scope, grandchild.id, UpdateTopicRequest(parent_topic_id=root.id))
        assert moved.parent_topic_id == root.id

    def test_topic_parent_must_be_in_scope(self, manager, scope, other_scope):
        """Test that a parent topic must belong to the tenant."""
        from maas.errors import ValidationError
        from maas.models import CreateTopicRequest

        foreign = manager.create_topic(other_scope, CreateTopicRequest(name="theirs"))
        with pytest.raises(ValidationError):
            manager.create_topic(scope, CreateTopicRequest(name="mine", parent_topic_id=foreign.id))

    def test_delete_topic_detaches_memory(self, manager, scope):
        """Test that deleting a topic detaches its memories."""
        from maas.errors import NotFoundError
        from maas.models import CreateTopicRequest

        topic = manager.create_topic(scope, CreateTopicRequest(name="work"))
        created = _create(manager, scope, topic_id=topic.id)

        manager.delete_topic(scope, topic.id)

        assert manager.get(scope, created.id).topic_id is None
        with pytest.raises(NotFoundError):
            manager.get_topic(scope, topic.id)
        with pytest.raises(NotFoundError):
            manager.delete_topic(scope, topic.id)

    def test_stats(self, manager, scope):
        """Test memory statistics."""
        from maas.models import CreateTopicRequest

        manager.create_topic(scope, CreateTopicRequest(name="work"))
        created = _create(manager, scope, memory_type="knowledge")
        manager.get(scope, created.id)

        stats = manager.stats(scope)

        assert stats["total_memories"] == 1
        assert stats["memories_by_type"]["knowledge"] == 1
        assert stats["total_topics"] == 1
        assert stats["most_accessed_id"] == created.id
        assert stats["embedding_provider"] == "hashing"


# ============================================================================
# Concurrency
# ============================================================================

class TestConcurrency:
    def test_concurrent_updates_keep_versions_gapless(self, manager, scope):
        """Test gapless versions under concurrent updates."""
        from maas.models import UpdateMemoryRequest

        created = _create(manager, scope)
        errors = []

        def worker(n):
            try:
                for i in range(5):
                    manager.update(scope, created.id, UpdateMemoryRequest(title=f"t{n}-{i}"))
            except Exception as e:
                errors.append(e)

        threads = [threading.Thread(target=worker, args=(n,)) for n in range(4)]
        for t in threads:
            t.start()
        for t in threads:
            t.join()

        assert errors == []
        numbers = [v.version_number for v in manager.versions(scope, created.id)]
        assert numbers == list(range(1, 21))

    def test_concurrent_access_counts(self, manager, scope):
        """Test access counting under concurrent reads."""
        created = _create(manager, scope)

        threads = [threading.Thread(target=manager.get, args=(scope, created.id)) for _ in range(10)]
        for t in threads:
            t.start()
        for t in threads:
            t.join()

        assert manager.storage.get_by_id(created.id, scope).access_count == 10
