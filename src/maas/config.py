"""
Configuration loaded from environment variables.

All knobs for the store, the embedding provider and the MCP server live
in one dataclass so they can be passed explicitly instead of being read
from the environment deep inside the call stack.
"""
from __future__ import annotations

import os
from dataclasses import dataclass
from pathlib import Path
from typing import Optional

from .embedding import DEFAULT_DIM, DEFAULT_OPENAI_MODEL, PROVIDERS

MAX_EMBEDDING_RETRIES = 5
_TRUTHY = {"true", "1", "yes", "on"}


def _env_bool(name: str, default: bool) -> bool:
    value = os.getenv(name)
    if value is None:
        return default
    return value.strip().lower() in _TRUTHY


def _env_int(name: str, default: int) -> int:
    value = os.getenv(name)
    if value is None or value == "":
        return default
    try:
        return int(value)
    except ValueError:
        raise ValueError(f"{name} must be an integer, got '{value}'") from None


def _env_float(name: str, default: float) -> float:
    value = os.getenv(name)
    if value is None or value == "":
        return default
    try:
        return float(value)
    except ValueError:
        raise ValueError(f"{name} must be a number, got '{value}'") from None


@dataclass
class MemoryConfig:
    """Runtime configuration for the memory service."""

    db_path: str = str(Path.home() / ".maas" / "memory.db")
    embedding_provider: str = "openai"
    embedding_model: Optional[str] = None
    embedding_dim: int = DEFAULT_DIM
    openai_api_key: Optional[str] = None
    embedding_timeout: float = 30.0
    embedding_max_retries: int = 0
    use_gpu: bool = True
    use_hnsw: bool = False
    embed_cache_size: int = 10_000
    bulk_batch_size: int = 50
    organization_id: str = "default-org"
    user_id: str = "default-user"
    log_level: str = "INFO"

    def __post_init__(self):
        if self.embedding_provider not in PROVIDERS:
            raise ValueError(
                f"Unknown embedding provider '{self.embedding_provider}'. "
                f"Available: {sorted(PROVIDERS)}"
            )
        if self.embedding_dim <= 0:
            raise ValueError("embedding_dim must be positive")
        if self.embedding_timeout <= 0:
            raise ValueError("embedding_timeout must be positive")
        if not 0 <= self.embedding_max_retries <= MAX_EMBEDDING_RETRIES:
            raise ValueError(f"embedding_max_retries must be between 0 and {MAX_EMBEDDING_RETRIES}")
        if self.embed_cache_size < 0:
            raise ValueError("embed_cache_size must be >= 0")
        if self.bulk_batch_size < 1:
            raise ValueError("bulk_batch_size must be >= 1")
        if self.embedding_provider == "openai" and self.embedding_model is None:
            self.embedding_model = DEFAULT_OPENAI_MODEL

    @classmethod
    def from_env(cls) -> MemoryConfig:
        """Load configuration from environment variables."""
        return cls(
            db_path=os.getenv("MEMORY_DB_PATH", str(Path.home() / ".maas" / "memory.db")),
            embedding_provider=os.getenv("MEMORY_EMBEDDING_PROVIDER", "openai"),
            embedding_model=os.getenv("MEMORY_MODEL") or None,
            embedding_dim=_env_int("MEMORY_EMBEDDING_DIM", DEFAULT_DIM),
            openai_api_key=os.getenv("OPENAI_API_KEY"),
            embedding_timeout=_env_float("MEMORY_EMBEDDING_TIMEOUT", 30.0),
            embedding_max_retries=_env_int("MEMORY_EMBEDDING_MAX_RETRIES", 0),
            use_gpu=_env_bool("MEMORY_USE_GPU", True),
            use_hnsw=_env_bool("MEMORY_USE_HNSW", False),
            embed_cache_size=_env_int("MEMORY_EMBED_CACHE_SIZE", 10_000),
            bulk_batch_size=_env_int("MEMORY_BULK_BATCH_SIZE", 50),
            organization_id=os.getenv("MEMORY_ORGANIZATION_ID", "default-org"),
            user_id=os.getenv("MEMORY_USER_ID", "default-user"),
            log_level=os.getenv("MEMORY_LOG_LEVEL", "INFO").upper(),
        )
