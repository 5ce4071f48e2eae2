"""
Access counting and version history.

Access recording is best effort: a failure to bump the counter is logged
and never fails the read that triggered it. Version snapshots are written
by the store inside the update transaction; this module decides which
field changes count as a new version and exposes the history.
"""
from __future__ import annotations

import logging
import sqlite3
from typing import TYPE_CHECKING, Any, Optional

from .errors import StoreError
from .models import VERSIONED_FIELDS, MemoryEntry, MemoryVersion, TenantScope

if TYPE_CHECKING:
    from .storage import MemoryStore

logger = logging.getLogger(__name__)


def _same_value(name: str, old: Any, new: Any) -> bool:
    if name == "tags":
        return set(old or ()) == set(new or ())
    return old == new


def changed_fields(current: MemoryEntry, fields: dict[str, Any]) -> list[str]:
    """Versioned fields whose supplied value differs from the stored one."""
    return [
        name
        for name in VERSIONED_FIELDS
        if name in fields and not _same_value(name, getattr(current, name), fields[name])
    ]


class AccessTracker:
    """Bumps access_count / last_accessed on reads without failing them."""

    def __init__(self, store: MemoryStore):
        self._store = store

    def record_access(self, memory_id: str) -> bool:
        try:
            return self._store.record_access(memory_id)
        except (StoreError, sqlite3.Error) as e:
            logger.warning(f"Failed to record access for memory {memory_id}: {e}")
            return False


class VersionHistory:
    """Read side of a memory's version snapshots."""

    def __init__(self, store: MemoryStore):
        self._store = store

    def list(self, memory_id: str, scope: TenantScope) -> list[MemoryVersion]:
        return self._store.list_versions(memory_id, scope)

    def get(self, memory_id: str, scope: TenantScope, version_number: int) -> Optional[MemoryVersion]:
        return self._store.get_version(memory_id, scope, version_number)
