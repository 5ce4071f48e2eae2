"""
Memory-as-a-Service: semantic memory store.

Stores text memories with vector embeddings and answers natural-language
similarity queries, scoped per organization and user.

Features:
- OpenAI or local sentence-transformers embeddings
- SQLite + sqlite-vec storage, optional HNSW candidate index
- Version history on every meaningful update
- Access counting, topics, soft delete and bulk delete
- MCP tool server
"""

__version__ = "0.3.0"

from .config import MemoryConfig
from .embedding import DEFAULT_DIM, EmbeddingEngine, OpenAIEmbeddingEngine, get_engine
from .errors import (
    EmbeddingProviderError,
    EmbeddingTimeoutError,
    MemoryServiceError,
    NotFoundError,
    StoreError,
    ValidationError,
)
from .memory import MemoryManager
from .models import (
    BulkDeleteResult,
    CreateMemoryRequest,
    CreateTopicRequest,
    ListMemoryRequest,
    MemoryEntry,
    MemoryStatus,
    MemoryTopic,
    MemoryType,
    MemoryVersion,
    SearchMemoryRequest,
    SearchResult,
    TenantScope,
    UpdateMemoryRequest,
    UpdateTopicRequest,
)
from .search import SimilaritySearchEngine
from .storage import MemoryStore

__all__ = [
    # Version
    "__version__",
    # Orchestration
    "MemoryManager",
    "MemoryConfig",
    # Embedding
    "EmbeddingEngine",
    "OpenAIEmbeddingEngine",
    "get_engine",
    "DEFAULT_DIM",
    # Storage / search
    "MemoryStore",
    "SimilaritySearchEngine",
    # Models
    "MemoryEntry",
    "MemoryVersion",
    "MemoryTopic",
    "MemoryType",
    "MemoryStatus",
    "TenantScope",
    "SearchResult",
    "BulkDeleteResult",
    "CreateMemoryRequest",
    "UpdateMemoryRequest",
    "SearchMemoryRequest",
    "ListMemoryRequest",
    "CreateTopicRequest",
    "UpdateTopicRequest",
    # Errors
    "MemoryServiceError",
    "ValidationError",
    "NotFoundError",
    "EmbeddingProviderError",
    "EmbeddingTimeoutError",
    "StoreError",
]
