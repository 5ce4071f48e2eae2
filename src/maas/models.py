"""
Data model for memory entries, version snapshots and topics.

Request shapes validate their own bounds on construction so the
orchestrator can trust anything it receives as already checked.
"""
from __future__ import annotations

import json
import math
import re
import uuid
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Any, Optional

import numpy as np

from .errors import ValidationError

TITLE_MAX = 500
CONTENT_MAX = 50_000
SUMMARY_MAX = 1_000
MAX_TAGS = 20
TAG_MAX = 50
TOPIC_NAME_MAX = 100
TOPIC_DESCRIPTION_MAX = 500

DEFAULT_SEARCH_LIMIT = 20
MAX_SEARCH_LIMIT = 100
DEFAULT_THRESHOLD = 0.7
DEFAULT_PAGE_SIZE = 20
MAX_PAGE_SIZE = 100

SORT_FIELDS = ("created_at", "updated_at", "last_accessed", "title", "access_count")
DEFAULT_SORT = "created_at"

# Fields whose change produces a MemoryVersion snapshot
VERSIONED_FIELDS = ("title", "content", "memory_type", "tags", "topic_id", "metadata")

_COLOR_RE = re.compile(r"^#[0-9A-Fa-f]{6}$")


class MemoryType(str, Enum):
    """Closed set of memory categories."""

    CONTEXT = "context"
    PROJECT = "project"
    KNOWLEDGE = "knowledge"
    REFERENCE = "reference"
    PERSONAL = "personal"
    WORKFLOW = "workflow"


class MemoryStatus(str, Enum):
    """Lifecycle status. DELETED marks a soft-deleted entry."""

    ACTIVE = "active"
    ARCHIVED = "archived"
    DRAFT = "draft"
    DELETED = "deleted"


class _Unset:
    """Marker for update fields the caller did not supply."""

    _instance = None

    def __new__(cls):
        if cls._instance is None:
            cls._instance = super().__new__(cls)
        return cls._instance

    def __repr__(self) -> str:
        return "UNSET"

    def __bool__(self) -> bool:
        return False


UNSET: Any = _Unset()


def new_id() -> str:
    """Generate an opaque unique identifier."""
    return str(uuid.uuid4())


# ============================================================================
# Validation helpers
# ============================================================================

def check_text(name: str, value: Any, max_len: int, min_len: int = 1) -> str:
    if not isinstance(value, str):
        raise ValidationError(f"{name} must be a string")
    if not min_len <= len(value) <= max_len:
        raise ValidationError(f"{name} must be between {min_len} and {max_len} characters")
    return value


def check_limit(limit: Any, maximum: int = MAX_SEARCH_LIMIT) -> int:
    if isinstance(limit, bool) or not isinstance(limit, int):
        raise ValidationError("limit must be an integer")
    if not 1 <= limit <= maximum:
        raise ValidationError(f"limit must be between 1 and {maximum}")
    return limit


def check_threshold(threshold: Any) -> float:
    if isinstance(threshold, bool) or not isinstance(threshold, (int, float)):
        raise ValidationError("threshold must be a number")
    if math.isnan(threshold) or not 0.0 <= threshold <= 1.0:
        raise ValidationError("threshold must be between 0.0 and 1.0")
    return float(threshold)


def normalize_tags(tags: Any) -> list[str]:
    """Validate tags and collapse duplicates, keeping first occurrence."""
    if tags is None:
        return []
    if isinstance(tags, str) or not isinstance(tags, (list, tuple, set, frozenset)):
        raise ValidationError("tags must be a list of strings")
    result = list(dict.fromkeys(tags))
    if len(result) > MAX_TAGS:
        raise ValidationError(f"at most {MAX_TAGS} tags are allowed")
    for tag in result:
        check_text("tag", tag, TAG_MAX)
    return result


def parse_memory_type(value: Any) -> MemoryType:
    try:
        return MemoryType(value)
    except ValueError:
        valid = [t.value for t in MemoryType]
        raise ValidationError(f"Invalid memory_type '{value}'. Valid: {valid}") from None


def parse_status(value: Any, allow_deleted: bool = False) -> MemoryStatus:
    try:
        status = MemoryStatus(value)
    except ValueError:
        valid = [s.value for s in MemoryStatus]
        raise ValidationError(f"Invalid status '{value}'. Valid: {valid}") from None
    if status is MemoryStatus.DELETED and not allow_deleted:
        raise ValidationError("status 'deleted' can only be set by deleting the memory")
    return status


def check_color(color: Any) -> Optional[str]:
    if color is None:
        return None
    if not isinstance(color, str) or not _COLOR_RE.match(color):
        raise ValidationError(f"color must match #RRGGBB, got '{color}'")
    return color


def _check_metadata(metadata: Any) -> dict[str, Any]:
    if metadata is None:
        return {}
    if not isinstance(metadata, dict):
        raise ValidationError("metadata must be an object")
    try:
        json.dumps(metadata)
    except (TypeError, ValueError):
        raise ValidationError("metadata must be JSON serializable") from None
    return metadata


def _check_optional_id(name: str, value: Any) -> Optional[str]:
    if value is None:
        return None
    if not isinstance(value, str) or not value:
        raise ValidationError(f"{name} must be a non-empty string")
    return value


def _iso(value: Optional[datetime]) -> Optional[str]:
    return value.isoformat() if value is not None else None


# ============================================================================
# Entities
# ============================================================================

@dataclass(frozen=True)
class TenantScope:
    """Organization/user pair that every read and write is filtered by."""

    organization_id: str
    user_id: str

    def __post_init__(self):
        if not self.organization_id or not self.user_id:
            raise ValidationError("tenant scope requires organization_id and user_id")


@dataclass
class MemoryEntry:
    """A stored memory with its embedding and usage stats."""

    title: str
    content: str
    organization_id: str
    user_id: str
    memory_type: MemoryType = MemoryType.CONTEXT
    status: MemoryStatus = MemoryStatus.ACTIVE
    tags: list[str] = field(default_factory=list)
    summary: Optional[str] = None
    topic_id: Optional[str] = None
    project_ref: Optional[str] = None
    metadata: dict[str, Any] = field(default_factory=dict)
    embedding: Optional[np.ndarray] = field(default=None, repr=False, compare=False)
    id: Optional[str] = None
    access_count: int = 0
    last_accessed: Optional[datetime] = None
    created_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None

    @property
    def scope(self) -> TenantScope:
        return TenantScope(self.organization_id, self.user_id)

    def to_dict(self, include_embedding: bool = False) -> dict[str, Any]:
        data = {
            "id": self.id,
            "title": self.title,
            "content": self.content,
            "summary": self.summary,
            "memory_type": self.memory_type.value,
            "status": self.status.value,
            "tags": list(self.tags),
            "topic_id": self.topic_id,
            "project_ref": self.project_ref,
            "organization_id": self.organization_id,
            "user_id": self.user_id,
            "metadata": self.metadata,
            "access_count": self.access_count,
            "last_accessed": _iso(self.last_accessed),
            "created_at": _iso(self.created_at),
            "updated_at": _iso(self.updated_at),
        }
        if include_embedding:
            data["embedding"] = self.embedding.tolist() if self.embedding is not None else None
        return data


@dataclass
class MemoryVersion:
    """Immutable snapshot of a memory's versioned fields after an update."""

    id: str
    memory_id: str
    version_number: int
    title: str
    content: str
    memory_type: MemoryType
    tags: list[str]
    topic_id: Optional[str]
    metadata: dict[str, Any]
    created_by: str
    created_at: datetime

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "memory_id": self.memory_id,
            "version_number": self.version_number,
            "title": self.title,
            "content": self.content,
            "memory_type": self.memory_type.value,
            "tags": list(self.tags),
            "topic_id": self.topic_id,
            "metadata": self.metadata,
            "created_by": self.created_by,
            "created_at": _iso(self.created_at),
        }


@dataclass
class MemoryTopic:
    """Named grouping of memories, optionally nested under a parent topic."""

    name: str
    organization_id: str
    user_id: str
    description: Optional[str] = None
    color: Optional[str] = None
    icon: Optional[str] = None
    parent_topic_id: Optional[str] = None
    is_system: bool = False
    metadata: dict[str, Any] = field(default_factory=dict)
    id: Optional[str] = None
    created_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "name": self.name,
            "description": self.description,
            "color": self.color,
            "icon": self.icon,
            "parent_topic_id": self.parent_topic_id,
            "is_system": self.is_system,
            "metadata": self.metadata,
            "organization_id": self.organization_id,
            "user_id": self.user_id,
            "created_at": _iso(self.created_at),
            "updated_at": _iso(self.updated_at),
        }


@dataclass
class SearchResult:
    """A memory matched by similarity search, with score = 1 - cosine distance."""

    memory: MemoryEntry
    score: float

    def to_dict(self) -> dict[str, Any]:
        return {**self.memory.to_dict(), "score": round(self.score, 4)}


@dataclass
class BulkDeleteResult:
    """Outcome of a bulk delete. Partial failure is reported, not raised."""

    deleted_count: int = 0
    failed_ids: list[str] = field(default_factory=list)

    def to_dict(self) -> dict[str, Any]:
        return {"deleted_count": self.deleted_count, "failed_ids": list(self.failed_ids)}


@dataclass
class MemoryPage:
    """One page of a filtered, sorted memory listing."""

    memories: list[MemoryEntry]
    total: int
    page: int
    limit: int

    @property
    def pages(self) -> int:
        return math.ceil(self.total / self.limit) if self.limit else 0


@dataclass
class MemoryFilters:
    """Relational predicates shared by list and similarity search."""

    memory_types: Optional[tuple[MemoryType, ...]] = None
    tags: Optional[list[str]] = None
    topic_id: Optional[str] = None
    project_ref: Optional[str] = None
    status: MemoryStatus = MemoryStatus.ACTIVE

    def __post_init__(self):
        if self.memory_types is not None:
            self.memory_types = tuple(parse_memory_type(t) for t in self.memory_types) or None
        if self.tags is not None:
            self.tags = normalize_tags(self.tags) or None
        self.status = parse_status(self.status, allow_deleted=True)


# ============================================================================
# Requests
# ============================================================================

@dataclass
class CreateMemoryRequest:
    title: str
    content: str
    memory_type: Any = MemoryType.CONTEXT
    tags: Optional[list[str]] = None
    summary: Optional[str] = None
    topic_id: Optional[str] = None
    project_ref: Optional[str] = None
    status: Any = MemoryStatus.ACTIVE
    metadata: Optional[dict[str, Any]] = None

    def __post_init__(self):
        check_text("title", self.title, TITLE_MAX)
        check_text("content", self.content, CONTENT_MAX)
        if self.summary is not None:
            check_text("summary", self.summary, SUMMARY_MAX, min_len=0)
        self.memory_type = parse_memory_type(self.memory_type)
        self.status = parse_status(self.status)
        self.tags = normalize_tags(self.tags)
        self.topic_id = _check_optional_id("topic_id", self.topic_id)
        self.metadata = _check_metadata(self.metadata)


@dataclass
class UpdateMemoryRequest:
    """Partial update. Only fields other than UNSET are applied.

    topic_id, summary and project_ref accept None to clear the value.
    """

    title: Any = UNSET
    content: Any = UNSET
    summary: Any = UNSET
    memory_type: Any = UNSET
    status: Any = UNSET
    tags: Any = UNSET
    topic_id: Any = UNSET
    project_ref: Any = UNSET
    metadata: Any = UNSET

    def __post_init__(self):
        if self.title is not UNSET:
            check_text("title", self.title, TITLE_MAX)
        if self.content is not UNSET:
            check_text("content", self.content, CONTENT_MAX)
        if self.summary is not UNSET and self.summary is not None:
            check_text("summary", self.summary, SUMMARY_MAX, min_len=0)
        if self.memory_type is not UNSET:
            self.memory_type = parse_memory_type(self.memory_type)
        if self.status is not UNSET:
            self.status = parse_status(self.status)
        if self.tags is not UNSET:
            if self.tags is None:
                raise ValidationError("tags cannot be null; pass an empty list to clear")
            self.tags = normalize_tags(self.tags)
        if self.topic_id is not UNSET:
            self.topic_id = _check_optional_id("topic_id", self.topic_id)
        if self.metadata is not UNSET:
            if self.metadata is None:
                raise ValidationError("metadata cannot be null; pass an empty object to clear")
            self.metadata = _check_metadata(self.metadata)

    def changes(self) -> dict[str, Any]:
        """Supplied fields as a column -> value mapping."""
        return {
            name: value
            for name, value in vars(self).items()
            if value is not UNSET
        }


@dataclass
class SearchMemoryRequest:
    query: str
    limit: int = DEFAULT_SEARCH_LIMIT
    threshold: float = DEFAULT_THRESHOLD
    memory_types: Optional[list[Any]] = None
    tags: Optional[list[str]] = None
    topic_id: Optional[str] = None
    project_ref: Optional[str] = None
    status: Any = MemoryStatus.ACTIVE

    def __post_init__(self):
        if not isinstance(self.query, str) or not self.query.strip():
            raise ValidationError("query cannot be empty")
        self.limit = check_limit(self.limit)
        self.threshold = check_threshold(self.threshold)

    def filters(self) -> MemoryFilters:
        return MemoryFilters(
            memory_types=tuple(self.memory_types) if self.memory_types else None,
            tags=self.tags,
            topic_id=self.topic_id,
            project_ref=self.project_ref,
            status=self.status,
        )


@dataclass
class ListMemoryRequest:
    page: int = 1
    limit: int = DEFAULT_PAGE_SIZE
    memory_type: Any = None
    tags: Optional[list[str]] = None
    topic_id: Optional[str] = None
    project_ref: Optional[str] = None
    status: Any = MemoryStatus.ACTIVE
    sort: str = DEFAULT_SORT
    order: str = "desc"

    def __post_init__(self):
        if isinstance(self.page, bool) or not isinstance(self.page, int) or self.page < 1:
            raise ValidationError("page must be an integer >= 1")
        self.limit = check_limit(self.limit, MAX_PAGE_SIZE)
        if self.sort not in SORT_FIELDS:
            self.sort = DEFAULT_SORT
        if self.order not in ("asc", "desc"):
            raise ValidationError("order must be 'asc' or 'desc'")

    def filters(self) -> MemoryFilters:
        return MemoryFilters(
            memory_types=(self.memory_type,) if self.memory_type else None,
            tags=self.tags,
            topic_id=self.topic_id,
            project_ref=self.project_ref,
            status=self.status,
        )


@dataclass
class CreateTopicRequest:
    name: str
    description: Optional[str] = None
    color: Optional[str] = None
    icon: Optional[str] = None
    parent_topic_id: Optional[str] = None
    is_system: bool = False
    metadata: Optional[dict[str, Any]] = None

    def __post_init__(self):
        check_text("name", self.name, TOPIC_NAME_MAX)
        if self.description is not None:
            check_text("description", self.description, TOPIC_DESCRIPTION_MAX, min_len=0)
        self.color = check_color(self.color)
        self.parent_topic_id = _check_optional_id("parent_topic_id", self.parent_topic_id)
        self.metadata = _check_metadata(self.metadata)


@dataclass
class UpdateTopicRequest:
    name: Any = UNSET
    description: Any = UNSET
    color: Any = UNSET
    icon: Any = UNSET
    parent_topic_id: Any = UNSET
    metadata: Any = UNSET

    def __post_init__(self):
        if self.name is not UNSET:
            check_text("name", self.name, TOPIC_NAME_MAX)
        if self.description is not UNSET and self.description is not None:
            check_text("description", self.description, TOPIC_DESCRIPTION_MAX, min_len=0)
        if self.color is not UNSET:
            self.color = check_color(self.color)
        if self.parent_topic_id is not UNSET:
            self.parent_topic_id = _check_optional_id("parent_topic_id", self.parent_topic_id)
        if self.metadata is not UNSET:
            self.metadata = _check_metadata(self.metadata)

    def changes(self) -> dict[str, Any]:
        return {
            name: value
            for name, value in vars(self).items()
            if value is not UNSET
        }
