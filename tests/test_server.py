"""
Tests for the MCP tool layer: registration, payload shape and error mapping.
"""

import asyncio

import pytest

TOOLS = {
    "memory_create", "memory_get", "memory_update", "memory_delete",
    "memory_list", "memory_search", "memory_versions", "memory_stats",
    "topic_create", "topic_list", "topic_update", "topic_delete",
}


@pytest.fixture
def server(manager, scope):
    from maas.server import build_server
    return build_server(manager, scope)


@pytest.fixture
def call(server):
    """Invoke a registered tool function synchronously."""
    def invoke(name, /, **kwargs):
        return server._tool_manager.get_tool(name).fn(**kwargs)
    return invoke


class TestRegistration:
    def test_all_tools_registered(self, server):
        """Test tool registration."""
        tools = asyncio.run(server.list_tools())
        assert {t.name for t in tools} == TOOLS


class TestTools:
    def test_create_get_update_versions(self, call):
        """Test the memory tool round trip."""
        created = call("memory_create", title="Deploy", content="Run the migration first",
                       tags=["ops"], memory_type="workflow")
        assert created["success"] is True
        memory_id = created["memory"]["id"]

        fetched = call("memory_get", id=memory_id)
        assert fetched["memory"]["tags"] == ["ops"]

        updated = call("memory_update", id=memory_id, title="Deploy v2")
        assert updated["memory"]["title"] == "Deploy v2"

        versions = call("memory_versions", id=memory_id)
        assert [v["version_number"] for v in versions["versions"]] == [1]

    def test_search_payload(self, call):
        """Test the search tool payload."""
        call("memory_create", title="Cache", content="redis eviction policy allkeys lru")

        result = call("memory_search", query="redis eviction policy", threshold=0.2)

        assert result["success"] is True
        assert result["count"] == 1
        assert 0.2 <= result["results"][0]["score"] <= 1.0

    def test_validation_error_is_400(self, call):
        """Test invalid input maps to status 400."""
        result = call("memory_create", title="", content="x")
        assert result == {"success": False, "error": result["error"], "status": 400}

    def test_unknown_id_is_404(self, call):
        """Test unknown ids map to status 404."""
        result = call("memory_get", id="missing")
        assert result["success"] is False
        assert result["status"] == 404

    def test_delete_single_and_bulk(self, call):
        """Test single and bulk delete modes."""
        ids = [call("memory_create", title=f"t{i}", content=f"c{i}")["memory"]["id"] for i in range(3)]

        assert call("memory_delete", id=ids[0]) == {"success": True, "id": ids[0]}
        bulk = call("memory_delete", ids=ids[1:] + ["missing"])
        assert bulk["deleted_count"] == 2
        assert bulk["failed_ids"] == ["missing"]
        assert call("memory_delete")["status"] == 400

    def test_list_pages(self, call):
        """Test the list tool pagination."""
        for i in range(3):
            call("memory_create", title=f"t{i}", content=f"c{i}")

        result = call("memory_list", limit=2)

        assert len(result["memories"]) == 2
        assert result["total"] == 3
        assert result["pages"] == 2

    def test_topics(self, call):
        """Test the topic tools."""
        topic = call("topic_create", name="infra", color="#00ff00")["topic"]
        duplicate = call("topic_create", name="infra")
        assert duplicate["status"] == 400

        memory = call("memory_create", title="t", content="c", topic_id=topic["id"])["memory"]
        cleared = call("memory_update", id=memory["id"], clear_topic=True)
        assert cleared["memory"]["topic_id"] is None

        renamed = call("topic_update", id=topic["id"], name="platform")
        assert renamed["topic"]["name"] == "platform"
        assert [t["name"] for t in call("topic_list")["topics"]] == ["platform"]
        assert call("topic_delete", id=topic["id"])["success"] is True

    def test_stats(self, call):
        """Test the stats tool."""
        call("memory_create", title="t", content="c")
        stats = call("memory_stats")

        assert stats["success"] is True
        assert stats["total_memories"] == 1
        assert stats["embedding_provider"] == "hashing"

    def test_embedding_failure_is_502(self, call, embedder):
        """Test embedding failures map to status 502."""
        from maas.errors import EmbeddingProviderError

        embedder.fail = EmbeddingProviderError("Failed to create text embedding")
        result = call("memory_create", title="t", content="c")

        assert result["status"] == 502


class TestErrorResponse:
    def test_service_errors_keep_status(self):
        """Test service error mapping."""
        from maas.errors import NotFoundError, ValidationError
        from maas.server import _error_response

        assert _error_response(ValidationError("bad"))["status"] == 400
        not_found = _error_response(NotFoundError("Memory", "m1"))
        assert not_found == {"success": False, "error": "Memory not found: m1", "status": 404}

    def test_store_errors_are_opaque(self):
        """Test that store error detail is not returned."""
        from maas.errors import StoreError
        from maas.server import _error_response

        result = _error_response(StoreError("disk I/O error at /var/lib/secret.db"))

        assert result["status"] == 500
        assert "secret" not in result["error"]

    def test_unexpected_errors_are_opaque(self):
        """Test that unexpected error detail is not returned."""
        from maas.server import _error_response

        result = _error_response(KeyError("internal"))
        assert result["status"] == 500
        assert "internal" not in result["error"]
