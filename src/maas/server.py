"""
MCP server exposing the memory service as tools.

Tools:
- memory_create / memory_get / memory_update / memory_delete
- memory_list / memory_search / memory_versions / memory_stats
- topic_create / topic_list / topic_update / topic_delete

Every tool returns {"success": True, ...} or
{"success": False, "error": <message>, "status": <code>} where status is
400 for invalid input, 404 for unknown ids, 502 for embedding failures and
500 for everything else. Storage failure detail is logged, never returned.
"""
from __future__ import annotations

import logging
from typing import Any

from mcp.server.fastmcp import FastMCP

from .config import MemoryConfig
from .errors import MemoryServiceError, StoreError
from .memory import MemoryManager
from .models import (
    CreateMemoryRequest,
    CreateTopicRequest,
    ListMemoryRequest,
    SearchMemoryRequest,
    TenantScope,
    UpdateMemoryRequest,
    UpdateTopicRequest,
)

logger = logging.getLogger(__name__)

SERVER_NAME = "maas-memory"


def _error_response(e: Exception) -> dict:
    """Map an exception to the tool error payload."""
    if isinstance(e, MemoryServiceError) and not isinstance(e, StoreError):
        return {"success": False, "error": str(e), "status": e.status_code}
    logger.error(f"Tool call failed: {e!r}")
    return {"success": False, "error": "Internal error, see server logs", "status": 500}


def _supplied(**kwargs: Any) -> dict[str, Any]:
    """Drop arguments the caller left at None."""
    return {name: value for name, value in kwargs.items() if value is not None}


def build_server(manager: MemoryManager, scope: TenantScope) -> FastMCP:
    """Create an MCP server whose tools act on `manager` within `scope`."""
    mcp = FastMCP(SERVER_NAME)

    @mcp.tool()
    def memory_create(
        title: str,
        content: str,
        memory_type: str = "context",
        tags: list[str] | None = None,
        summary: str | None = None,
        topic_id: str | None = None,
        project_ref: str | None = None,
        metadata: dict[str, Any] | None = None,
    ) -> dict:
        """
        Store a new memory. The content is embedded for semantic search.

        Args:
            title       : Short title (1-500 chars)
            content     : Memory text (1-50,000 chars)
            memory_type : context, project, knowledge, reference, personal or workflow
            tags        : Up to 20 tags (1-50 chars each)
            summary     : Optional summary (<= 1,000 chars)
            topic_id    : Optional topic the memory belongs to
            project_ref : Optional free-text project reference
            metadata    : Optional metadata dictionary

        Returns:
            {"success": True, "memory": {...}}
        """
        try:
            entry = manager.create(scope, CreateMemoryRequest(
                title=title,
                content=content,
                memory_type=memory_type,
                tags=tags,
                summary=summary,
                topic_id=topic_id,
                project_ref=project_ref,
                metadata=metadata,
            ))
            return {"success": True, "memory": entry.to_dict()}
        except Exception as e:
            return _error_response(e)

    @mcp.tool()
    def memory_get(id: str) -> dict:
        """
        Get a memory by id. Counts as an access.

        Returns:
            {"success": True, "memory": {...}}
        """
        try:
            return {"success": True, "memory": manager.get(scope, id).to_dict()}
        except Exception as e:
            return _error_response(e)

    @mcp.tool()
    def memory_update(
        id: str,
        title: str | None = None,
        content: str | None = None,
        summary: str | None = None,
        memory_type: str | None = None,
        status: str | None = None,
        tags: list[str] | None = None,
        topic_id: str | None = None,
        clear_topic: bool = False,
        project_ref: str | None = None,
        metadata: dict[str, Any] | None = None,
    ) -> dict:
        """
        Update fields of a memory. Omitted fields are left unchanged.

        Changing title, content, memory_type, tags, topic or metadata records
        a new version. Changing content re-embeds the memory.

        Args:
            id          : Memory id (required)
            status      : active, archived or draft
            tags        : Replaces the tag list
            clear_topic : Remove the memory from its topic
            metadata    : Replaces the metadata dictionary

        Returns:
            {"success": True, "memory": {...}}
        """
        try:
            fields = _supplied(
                title=title,
                content=content,
                summary=summary,
                memory_type=memory_type,
                status=status,
                tags=tags,
                topic_id=topic_id,
                project_ref=project_ref,
                metadata=metadata,
            )
            if clear_topic:
                fields["topic_id"] = None
            entry = manager.update(scope, id, UpdateMemoryRequest(**fields))
            return {"success": True, "memory": entry.to_dict()}
        except Exception as e:
            return _error_response(e)

    @mcp.tool()
    def memory_delete(id: str = "", ids: list[str] | None = None) -> dict:
        """
        Delete one memory, or many at once.

        Single mode : id  -> {"success": True, "id": ...}
        Bulk mode   : ids -> {"success": True, "deleted_count": N, "failed_ids": [...]}

        Bulk deletes run in batches; ids that could not be deleted are
        reported in failed_ids rather than failing the whole call.
        """
        try:
            if ids:
                return {"success": True, **manager.bulk_delete(scope, ids).to_dict()}
            if not id:
                return {"success": False, "error": "Provide id or ids", "status": 400}
            manager.delete(scope, id)
            return {"success": True, "id": id}
        except Exception as e:
            return _error_response(e)

    @mcp.tool()
    def memory_list(
        page: int = 1,
        limit: int = 20,
        memory_type: str | None = None,
        tags: list[str] | None = None,
        topic_id: str | None = None,
        project_ref: str | None = None,
        status: str = "active",
        sort: str = "created_at",
        order: str = "desc",
    ) -> dict:
        """
        List memories with filters and pagination.

        Args:
            page   : Page number, starting at 1
            limit  : Page size (1-100)
            tags   : Match memories having any of these tags
            status : active, archived, draft or deleted
            sort   : created_at, updated_at, last_accessed, title or access_count
            order  : asc or desc

        Returns:
            {"success": True, "memories": [...], "total": N, "page": P, "limit": L, "pages": K}
        """
        try:
            result = manager.list(scope, ListMemoryRequest(
                page=page,
                limit=limit,
                memory_type=memory_type,
                tags=tags,
                topic_id=topic_id,
                project_ref=project_ref,
                status=status,
                sort=sort,
                order=order,
            ))
            return {
                "success": True,
                "memories": [m.to_dict() for m in result.memories],
                "total": result.total,
                "page": result.page,
                "limit": result.limit,
                "pages": result.pages,
            }
        except Exception as e:
            return _error_response(e)

    @mcp.tool()
    def memory_search(
        query: str,
        limit: int = 20,
        threshold: float = 0.7,
        memory_types: list[str] | None = None,
        tags: list[str] | None = None,
        topic_id: str | None = None,
        project_ref: str | None = None,
        status: str = "active",
    ) -> dict:
        """
        Semantic search over memories.

        Args:
            query        : Natural-language query
            limit        : Maximum results (1-100, default 20)
            threshold    : Minimum similarity score 0-1 (default 0.7)
            memory_types : Restrict to these memory types
            tags         : Match memories having any of these tags

        Returns:
            {"success": True, "count": N, "results": [{...memory, "score": s}]}
        """
        try:
            results = manager.search(scope, SearchMemoryRequest(
                query=query,
                limit=limit,
                threshold=threshold,
                memory_types=memory_types,
                tags=tags,
                topic_id=topic_id,
                project_ref=project_ref,
                status=status,
            ))
            return {
                "success": True,
                "count": len(results),
                "results": [r.to_dict() for r in results],
            }
        except Exception as e:
            return _error_response(e)

    @mcp.tool()
    def memory_versions(id: str) -> dict:
        """
        Version history of a memory, oldest first.

        Returns:
            {"success": True, "versions": [...]}
        """
        try:
            return {
                "success": True,
                "versions": [v.to_dict() for v in manager.versions(scope, id)],
            }
        except Exception as e:
            return _error_response(e)

    @mcp.tool()
    def memory_stats() -> dict:
        """Get memory statistics for the current tenant."""
        try:
            return {"success": True, **manager.stats(scope)}
        except Exception as e:
            return _error_response(e)

    @mcp.tool()
    def topic_create(
        name: str,
        description: str | None = None,
        color: str | None = None,
        icon: str | None = None,
        parent_topic_id: str | None = None,
        metadata: dict[str, Any] | None = None,
    ) -> dict:
        """
        Create a topic. Names are unique per tenant; color is #RRGGBB.

        Returns:
            {"success": True, "topic": {...}}
        """
        try:
            topic = manager.create_topic(scope, CreateTopicRequest(
                name=name,
                description=description,
                color=color,
                icon=icon,
                parent_topic_id=parent_topic_id,
                metadata=metadata,
            ))
            return {"success": True, "topic": topic.to_dict()}
        except Exception as e:
            return _error_response(e)

    @mcp.tool()
    def topic_list() -> dict:
        """List all topics of the current tenant, ordered by name."""
        try:
            return {
                "success": True,
                "topics": [t.to_dict() for t in manager.list_topics(scope)],
            }
        except Exception as e:
            return _error_response(e)

    @mcp.tool()
    def topic_update(
        id: str,
        name: str | None = None,
        description: str | None = None,
        color: str | None = None,
        icon: str | None = None,
        parent_topic_id: str | None = None,
        clear_parent: bool = False,
        metadata: dict[str, Any] | None = None,
    ) -> dict:
        """
        Update a topic. Omitted fields are left unchanged.

        A topic cannot become its own ancestor.
        """
        try:
            fields = _supplied(
                name=name,
                description=description,
                color=color,
                icon=icon,
                parent_topic_id=parent_topic_id,
                metadata=metadata,
            )
            if clear_parent:
                fields["parent_topic_id"] = None
            topic = manager.update_topic(scope, id, UpdateTopicRequest(**fields))
            return {"success": True, "topic": topic.to_dict()}
        except Exception as e:
            return _error_response(e)

    @mcp.tool()
    def topic_delete(id: str) -> dict:
        """Delete a topic. Its memories stay, detached from the topic."""
        try:
            manager.delete_topic(scope, id)
            return {"success": True, "id": id}
        except Exception as e:
            return _error_response(e)

    return mcp


# ============================================================================
# Server Entry Point
# ============================================================================

def run_server():
    """Run the MCP server over stdio."""
    config = MemoryConfig.from_env()
    logging.basicConfig(
        level=config.log_level,
        format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
    )

    logger.info(f"Starting {SERVER_NAME} MCP server (db={config.db_path})...")

    manager = MemoryManager.from_config(config)
    scope = TenantScope(config.organization_id, config.user_id)

    try:
        manager.warmup()
    except Exception as e:
        logger.warning(f"Warmup failed: {e}")

    try:
        build_server(manager, scope).run()
    finally:
        manager.close()


if __name__ == "__main__":
    run_server()
