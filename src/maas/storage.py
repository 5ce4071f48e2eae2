"""
Tenant-scoped memory record store on SQLite with sqlite-vec.

Features:
- Zero server dependencies (embedded SQLite)
- Cosine distance computed in SQL via sqlite-vec
- Thread-safe connection pooling (WAL) for file databases
- Every read and write filtered by organization and user
- Update and version snapshot committed in one transaction
- Soft delete with physical purge of deleted rows
- Topics with set-null semantics on deletion
- Optional HNSW index kept in sync with embeddings
"""
from __future__ import annotations

import json
import logging
import sqlite3
import threading
from contextlib import contextmanager
from datetime import datetime, timedelta, timezone
from pathlib import Path
from queue import Empty, Full, Queue
from typing import Any, Iterator, Optional

import numpy as np
import sqlite_vec

from .embedding import DEFAULT_DIM
from .errors import StoreError, ValidationError
from .hnsw_index import HNSW_AVAILABLE, HNSWIndex
from .models import (
    DEFAULT_SORT,
    SORT_FIELDS,
    MemoryEntry,
    MemoryFilters,
    MemoryStatus,
    MemoryTopic,
    MemoryType,
    MemoryVersion,
    TenantScope,
    new_id,
)
from .tracking import changed_fields

logger = logging.getLogger(__name__)

UPDATABLE_FIELDS = frozenset({
    "title", "content", "summary", "memory_type", "status",
    "tags", "topic_id", "project_ref", "metadata", "embedding",
})
TOPIC_UPDATABLE_FIELDS = frozenset({
    "name", "description", "color", "icon", "parent_topic_id", "metadata",
})

_SCHEMA = """
    CREATE TABLE IF NOT EXISTS memory_entries (
        seq INTEGER PRIMARY KEY AUTOINCREMENT,
        id TEXT UNIQUE NOT NULL,
        organization_id TEXT NOT NULL,
        user_id TEXT NOT NULL,
        title TEXT NOT NULL,
        content TEXT NOT NULL,
        summary TEXT,
        memory_type TEXT NOT NULL DEFAULT 'context',
        status TEXT NOT NULL DEFAULT 'active',
        tags TEXT NOT NULL DEFAULT '[]',
        topic_id TEXT,
        project_ref TEXT,
        metadata TEXT NOT NULL DEFAULT '{}',
        embedding BLOB,
        access_count INTEGER NOT NULL DEFAULT 0 CHECK (access_count >= 0),
        last_accessed TEXT,
        created_at TEXT NOT NULL,
        updated_at TEXT NOT NULL
    );
    CREATE INDEX IF NOT EXISTS idx_entries_scope
        ON memory_entries(organization_id, user_id, status);
    CREATE INDEX IF NOT EXISTS idx_entries_topic ON memory_entries(topic_id);
    CREATE INDEX IF NOT EXISTS idx_entries_created ON memory_entries(created_at);

    -- Tags junction table for overlap filters
    CREATE TABLE IF NOT EXISTS memory_tags (
        memory_seq INTEGER NOT NULL,
        tag TEXT NOT NULL,
        PRIMARY KEY (memory_seq, tag)
    );
    CREATE INDEX IF NOT EXISTS idx_tags_tag ON memory_tags(tag);

    CREATE TABLE IF NOT EXISTS memory_versions (
        id TEXT PRIMARY KEY,
        memory_id TEXT NOT NULL,
        version_number INTEGER NOT NULL,
        title TEXT NOT NULL,
        content TEXT NOT NULL,
        memory_type TEXT NOT NULL,
        tags TEXT NOT NULL DEFAULT '[]',
        topic_id TEXT,
        metadata TEXT NOT NULL DEFAULT '{}',
        created_by TEXT NOT NULL,
        created_at TEXT NOT NULL,
        UNIQUE (memory_id, version_number)
    );

    CREATE TABLE IF NOT EXISTS memory_topics (
        id TEXT PRIMARY KEY,
        organization_id TEXT NOT NULL,
        user_id TEXT NOT NULL,
        name TEXT NOT NULL,
        description TEXT,
        color TEXT,
        icon TEXT,
        parent_topic_id TEXT,
        is_system INTEGER NOT NULL DEFAULT 0,
        metadata TEXT NOT NULL DEFAULT '{}',
        created_at TEXT NOT NULL,
        updated_at TEXT NOT NULL,
        UNIQUE (organization_id, user_id, name)
    );
"""


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def next_timestamp(previous: Optional[datetime]) -> datetime:
    """Current UTC time, nudged past `previous` on clock ties."""
    now = utcnow()
    if previous is not None and now <= previous:
        now = previous + timedelta(microseconds=1)
    return now


def _ts(value: Optional[datetime]) -> Optional[str]:
    # Fixed-width ISO strings so text ordering matches time ordering
    if value is None:
        return None
    return value.astimezone(timezone.utc).isoformat(timespec="microseconds")


def _parse_ts(value: Optional[str]) -> Optional[datetime]:
    return datetime.fromisoformat(value) if value else None


def serialize_f32(vector: np.ndarray) -> bytes:
    """Serialize numpy array to sqlite-vec float32 format."""
    if vector.dtype != np.float32:
        vector = vector.astype(np.float32)
    return vector.tobytes()


def deserialize_f32(blob: bytes) -> np.ndarray:
    """Deserialize sqlite-vec float32 blob to numpy array."""
    return np.frombuffer(blob, dtype=np.float32).copy()


def build_filter_clause(
    scope: TenantScope,
    filters: MemoryFilters,
    alias: str = "m",
) -> tuple[str, list[Any]]:
    """
    WHERE clause shared by listing and similarity search.

    Tenant and status predicates are always present; the optional ones are
    added only when the filter carries a value.
    """
    clauses = [
        f"{alias}.organization_id = ?",
        f"{alias}.user_id = ?",
        f"{alias}.status = ?",
    ]
    params: list[Any] = [scope.organization_id, scope.user_id, filters.status.value]

    if filters.memory_types:
        placeholders = ",".join("?" * len(filters.memory_types))
        clauses.append(f"{alias}.memory_type IN ({placeholders})")
        params.extend(t.value for t in filters.memory_types)
    if filters.topic_id:
        clauses.append(f"{alias}.topic_id = ?")
        params.append(filters.topic_id)
    if filters.project_ref:
        clauses.append(f"{alias}.project_ref = ?")
        params.append(filters.project_ref)
    if filters.tags:
        placeholders = ",".join("?" * len(filters.tags))
        clauses.append(
            f"EXISTS (SELECT 1 FROM memory_tags t "
            f"WHERE t.memory_seq = {alias}.seq AND t.tag IN ({placeholders}))"
        )
        params.extend(filters.tags)

    return " AND ".join(clauses), params


def connect(db_path: str) -> tuple[sqlite3.Connection, bool]:
    """Open a connection in autocommit mode and try to load sqlite-vec.

    Returns the connection and whether the vector extension is usable.
    """
    conn = sqlite3.connect(db_path, check_same_thread=False, isolation_level=None, timeout=10.0)
    conn.row_factory = sqlite3.Row
    if db_path != ":memory:":
        conn.execute("PRAGMA journal_mode=WAL")
        conn.execute("PRAGMA synchronous=NORMAL")
    conn.execute("PRAGMA cache_size=-64000")  # 64MB cache

    try:
        conn.enable_load_extension(True)
        sqlite_vec.load(conn)
        conn.enable_load_extension(False)
    except (AttributeError, sqlite3.Error) as e:
        # Interpreters built without extension loading fall back to a numpy scan
        logger.warning(f"sqlite-vec could not be loaded: {e}")
        return conn, False
    return conn, True


class ConnectionPool:
    """Thread-safe SQLite connection pool."""

    def __init__(self, db_path: str, pool_size: int = 5, timeout: float = 10.0):
        self.db_path = db_path
        self.pool_size = pool_size
        self.timeout = timeout
        self.vec_loaded = False
        self._pool: Queue = Queue(maxsize=pool_size)
        self._semaphore = threading.Semaphore(pool_size)

    def _create_connection(self) -> sqlite3.Connection:
        conn, self.vec_loaded = connect(self.db_path)
        return conn

    @contextmanager
    def get_connection(self) -> Iterator[sqlite3.Connection]:
        """Get a connection from the pool (bounded by semaphore)."""
        if not self._semaphore.acquire(timeout=self.timeout):
            raise StoreError("Timed out waiting for a database connection")
        conn = None
        try:
            try:
                conn = self._pool.get_nowait()
            except Empty:
                conn = self._create_connection()
            yield conn
        finally:
            if conn is not None:
                try:
                    self._pool.put_nowait(conn)
                except Full:
                    conn.close()
            self._semaphore.release()

    def close_all(self):
        while True:
            try:
                self._pool.get_nowait().close()
            except Empty:
                break


class MemoryStore:
    """
    Durable storage for memory entries, version snapshots and topics.

    File databases use a connection pool in WAL mode. ":memory:" uses one
    shared connection, serialized by a lock. Methods that take a scope
    never see rows belonging to another organization or user.
    """

    def __init__(
        self,
        db_path: str | Path = ":memory:",
        dimension: int = DEFAULT_DIM,
        pool_size: int = 5,
        use_hnsw: bool = False,
        hnsw_max_elements: int = 100_000,
        hnsw_ef_construction: int = 200,
        hnsw_M: int = 16,
    ):
        """
        Initialize the store.

        Args:
            db_path: Path to SQLite database (or ":memory:")
            dimension: Embedding dimension every stored vector must have
            pool_size: Connection pool size for file databases
            use_hnsw: Maintain an HNSW index for candidate generation
            hnsw_max_elements: Initial HNSW capacity
            hnsw_ef_construction: HNSW construction parameter
            hnsw_M: HNSW links per node
        """
        self._is_memory = str(db_path) == ":memory:"
        self.db_path = db_path if self._is_memory else Path(db_path)
        self.dimension = dimension
        self.pool_size = pool_size
        self._pool: Optional[ConnectionPool] = None
        self._single_conn: Optional[sqlite3.Connection] = None
        self._lock = threading.RLock()
        self._vec_available = False

        self._hnsw: Optional[HNSWIndex] = None
        if use_hnsw and not HNSW_AVAILABLE:
            logger.warning("HNSW requested but hnswlib is not installed; using exact search")
        elif use_hnsw:
            self._init_hnsw(hnsw_max_elements, hnsw_ef_construction, hnsw_M)

        if not self._is_memory:
            self.db_path.parent.mkdir(parents=True, exist_ok=True)

    def _init_hnsw(self, max_elements: int, ef_construction: int, M: int):
        index_path = None if self._is_memory else self.db_path.with_suffix(".hnsw")
        try:
            self._hnsw = HNSWIndex(
                dimension=self.dimension,
                max_elements=max_elements,
                ef_construction=ef_construction,
                M=M,
                index_path=index_path,
            )
        except (RuntimeError, OSError) as e:
            logger.warning(f"Failed to initialize HNSW index: {e}")
            self._hnsw = None

    @property
    def vec_available(self) -> bool:
        """Whether sqlite-vec SQL functions can be used."""
        return self._vec_available

    @property
    def hnsw(self) -> Optional[HNSWIndex]:
        return self._hnsw

    @property
    def vector_backend(self) -> str:
        if self._hnsw is not None:
            return "hnsw"
        return "sqlite-vec" if self._vec_available else "numpy"

    # ------------------------------------------------------------------
    # Connections and transactions
    # ------------------------------------------------------------------

    @contextmanager
    def connection(self) -> Iterator[sqlite3.Connection]:
        """
        Yield a connection for the duration of one operation.

        Any sqlite3 error raised inside the block is logged with full
        detail and re-raised as StoreError.
        """
        try:
            if self._is_memory:
                with self._lock:
                    if self._single_conn is None:
                        self._single_conn, self._vec_available = connect(":memory:")
                        self._init_schema(self._single_conn)
                    yield self._single_conn
            else:
                if self._pool is None:
                    with self._lock:
                        if self._pool is None:
                            pool = ConnectionPool(str(self.db_path), self.pool_size)
                            with pool.get_connection() as conn:
                                self._init_schema(conn)
                            self._vec_available = pool.vec_loaded
                            self._pool = pool
                            logger.info(f"✓ Connected to {self.db_path}")
                with self._pool.get_connection() as conn:
                    yield conn
        except sqlite3.Error as e:
            logger.error(f"Store operation failed: {e}", exc_info=True)
            raise StoreError("Store operation failed") from e

    @contextmanager
    def _transaction(self) -> Iterator[sqlite3.Connection]:
        """BEGIN IMMEDIATE ... COMMIT, rolled back on any exception."""
        with self.connection() as conn:
            conn.execute("BEGIN IMMEDIATE")
            try:
                yield conn
            except BaseException:
                conn.execute("ROLLBACK")
                raise
            conn.execute("COMMIT")

    def _init_schema(self, conn: sqlite3.Connection):
        conn.executescript(_SCHEMA)
        if self._hnsw is not None:
            self._reconcile_hnsw(conn)

    def _reconcile_hnsw(self, conn: sqlite3.Connection):
        """
        Bring the HNSW index in line with the stored embeddings.

        A saved index lags the table when the previous process exited
        without close(); missing, re-embedded and purged rows are fixed here.
        """
        rows = conn.execute(
            "SELECT seq, embedding FROM memory_entries WHERE embedding IS NOT NULL"
        ).fetchall()
        if rows:
            vectors = np.array([deserialize_f32(row["embedding"]) for row in rows], dtype=np.float32)
        else:
            vectors = np.zeros((0, self.dimension), dtype=np.float32)

        changed = self._hnsw.sync([row["seq"] for row in rows], vectors)
        if not changed:
            return
        logger.info(f"✓ HNSW index reconciled ({changed} entries refreshed, {len(rows)} vectors)")
        try:
            self._hnsw.save()
        except (RuntimeError, OSError) as e:
            logger.warning(f"Failed to save HNSW index: {e}")

    def _sync_hnsw(self, seq: int, embedding: Optional[np.ndarray]):
        if self._hnsw is None or embedding is None:
            return
        try:
            self._hnsw.add(seq, embedding)
        except RuntimeError as e:
            logger.warning(f"Failed to add seq={seq} to HNSW index: {e}")

    # ------------------------------------------------------------------
    # Row mapping
    # ------------------------------------------------------------------

    @staticmethod
    def row_to_entry(row: sqlite3.Row, include_embedding: bool = False) -> MemoryEntry:
        embedding = None
        if include_embedding and row["embedding"] is not None:
            embedding = deserialize_f32(row["embedding"])
        return MemoryEntry(
            id=row["id"],
            title=row["title"],
            content=row["content"],
            summary=row["summary"],
            organization_id=row["organization_id"],
            user_id=row["user_id"],
            memory_type=MemoryType(row["memory_type"]),
            status=MemoryStatus(row["status"]),
            tags=json.loads(row["tags"]) if row["tags"] else [],
            topic_id=row["topic_id"],
            project_ref=row["project_ref"],
            metadata=json.loads(row["metadata"]) if row["metadata"] else {},
            embedding=embedding,
            access_count=row["access_count"],
            last_accessed=_parse_ts(row["last_accessed"]),
            created_at=_parse_ts(row["created_at"]),
            updated_at=_parse_ts(row["updated_at"]),
        )

    @staticmethod
    def _row_to_version(row: sqlite3.Row) -> MemoryVersion:
        return MemoryVersion(
            id=row["id"],
            memory_id=row["memory_id"],
            version_number=row["version_number"],
            title=row["title"],
            content=row["content"],
            memory_type=MemoryType(row["memory_type"]),
            tags=json.loads(row["tags"]),
            topic_id=row["topic_id"],
            metadata=json.loads(row["metadata"]),
            created_by=row["created_by"],
            created_at=_parse_ts(row["created_at"]),
        )

    @staticmethod
    def _row_to_topic(row: sqlite3.Row) -> MemoryTopic:
        return MemoryTopic(
            id=row["id"],
            name=row["name"],
            description=row["description"],
            color=row["color"],
            icon=row["icon"],
            parent_topic_id=row["parent_topic_id"],
            is_system=bool(row["is_system"]),
            metadata=json.loads(row["metadata"]) if row["metadata"] else {},
            organization_id=row["organization_id"],
            user_id=row["user_id"],
            created_at=_parse_ts(row["created_at"]),
            updated_at=_parse_ts(row["updated_at"]),
        )

    def _check_embedding(self, embedding: Optional[np.ndarray]):
        if embedding is not None and np.shape(embedding) != (self.dimension,):
            raise ValidationError(
                f"embedding must have {self.dimension} dimensions, got {np.shape(embedding)}"
            )

    @staticmethod
    def _encode(name: str, value: Any) -> Any:
        if name in ("memory_type", "status"):
            return value.value
        if name in ("tags", "metadata"):
            return json.dumps(value)
        if name == "embedding":
            return serialize_f32(value) if value is not None else None
        return value

    @staticmethod
    def _write_tags(conn: sqlite3.Connection, seq: int, tags: list[str]):
        conn.execute("DELETE FROM memory_tags WHERE memory_seq = ?", (seq,))
        if tags:
            conn.executemany(
                "INSERT OR IGNORE INTO memory_tags (memory_seq, tag) VALUES (?, ?)",
                [(seq, t) for t in tags],
            )

    # ------------------------------------------------------------------
    # Memory entries
    # ------------------------------------------------------------------

    def insert(self, entry: MemoryEntry) -> MemoryEntry:
        """Persist a new entry, assigning id and timestamps when absent."""
        self._check_embedding(entry.embedding)
        entry.id = entry.id or new_id()
        entry.created_at = entry.created_at or utcnow()
        entry.updated_at = entry.updated_at or entry.created_at

        with self._transaction() as conn:
            cursor = conn.execute("""
                INSERT INTO memory_entries (
                    id, organization_id, user_id, title, content, summary,
                    memory_type, status, tags, topic_id, project_ref, metadata,
                    embedding, access_count, last_accessed, created_at, updated_at
                ) VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
            """, (
                entry.id, entry.organization_id, entry.user_id, entry.title,
                entry.content, entry.summary, entry.memory_type.value,
                entry.status.value, json.dumps(entry.tags), entry.topic_id,
                entry.project_ref, json.dumps(entry.metadata),
                self._encode("embedding", entry.embedding), entry.access_count,
                _ts(entry.last_accessed), _ts(entry.created_at), _ts(entry.updated_at),
            ))
            seq = cursor.lastrowid
            self._write_tags(conn, seq, entry.tags)

        self._sync_hnsw(seq, entry.embedding)
        return entry

    def _select_entry(
        self,
        conn: sqlite3.Connection,
        memory_id: str,
        scope: TenantScope,
        include_deleted: bool = False,
    ) -> Optional[sqlite3.Row]:
        sql = "SELECT * FROM memory_entries WHERE id = ? AND organization_id = ? AND user_id = ?"
        if not include_deleted:
            sql += " AND status != 'deleted'"
        return conn.execute(sql, (memory_id, scope.organization_id, scope.user_id)).fetchone()

    def get_by_id(
        self,
        memory_id: str,
        scope: TenantScope,
        include_deleted: bool = False,
        include_embedding: bool = False,
    ) -> Optional[MemoryEntry]:
        """Fetch one entry in scope; soft-deleted entries only when asked."""
        with self.connection() as conn:
            row = self._select_entry(conn, memory_id, scope, include_deleted)
        return self.row_to_entry(row, include_embedding) if row else None

    def update(
        self,
        memory_id: str,
        scope: TenantScope,
        fields: dict[str, Any],
    ) -> Optional[MemoryEntry]:
        """
        Apply a partial update and, when a versioned field changes value,
        record exactly one version snapshot of the new state.

        Both writes share one transaction. Returns None when the entry is
        missing, deleted or outside the scope.
        """
        unknown = set(fields) - UPDATABLE_FIELDS
        if unknown:
            raise ValueError(f"Fields cannot be updated: {sorted(unknown)}")
        if "embedding" in fields:
            self._check_embedding(fields["embedding"])

        with self._transaction() as conn:
            row = self._select_entry(conn, memory_id, scope)
            if row is None:
                return None
            current = self.row_to_entry(row)
            changed = changed_fields(current, fields)
            updated_at = next_timestamp(current.updated_at)

            columns = sorted(fields)
            assignments = ", ".join(f"{name} = ?" for name in columns + ["updated_at"])
            values = [self._encode(name, fields[name]) for name in columns]
            conn.execute(
                f"UPDATE memory_entries SET {assignments} WHERE seq = ?",
                (*values, _ts(updated_at), row["seq"]),
            )
            if "tags" in fields:
                self._write_tags(conn, row["seq"], fields["tags"])

            updated = self.row_to_entry(
                conn.execute("SELECT * FROM memory_entries WHERE seq = ?", (row["seq"],)).fetchone()
            )
            if changed:
                self._insert_version(conn, updated, scope.user_id, updated_at)
                logger.debug(f"Memory {memory_id} changed {changed}, version recorded")

        if "embedding" in fields:
            self._sync_hnsw(row["seq"], fields["embedding"])
        return updated

    def _insert_version(
        self,
        conn: sqlite3.Connection,
        entry: MemoryEntry,
        created_by: str,
        created_at: datetime,
    ):
        conn.execute("""
            INSERT INTO memory_versions (
                id, memory_id, version_number, title, content, memory_type,
                tags, topic_id, metadata, created_by, created_at
            ) VALUES (
                ?, ?,
                (SELECT COALESCE(MAX(version_number), 0) + 1 FROM memory_versions WHERE memory_id = ?),
                ?, ?, ?, ?, ?, ?, ?, ?
            )
        """, (
            new_id(), entry.id, entry.id, entry.title, entry.content,
            entry.memory_type.value, json.dumps(entry.tags), entry.topic_id,
            json.dumps(entry.metadata), created_by, _ts(created_at),
        ))

    def soft_delete(self, memory_id: str, scope: TenantScope) -> bool:
        """
        Mark an entry deleted. Deleting an already deleted entry succeeds
        without touching it; unknown or foreign ids return False.
        """
        with self._transaction() as conn:
            row = self._select_entry(conn, memory_id, scope, include_deleted=True)
            if row is None:
                return False
            if row["status"] == MemoryStatus.DELETED.value:
                return True
            updated_at = next_timestamp(_parse_ts(row["updated_at"]))
            conn.execute(
                "UPDATE memory_entries SET status = ?, updated_at = ? WHERE seq = ?",
                (MemoryStatus.DELETED.value, _ts(updated_at), row["seq"]),
            )
        return True

    def soft_delete_batch(self, memory_ids: list[str], scope: TenantScope) -> set[str]:
        """Soft delete a batch in one transaction; returns the ids found in scope."""
        if not memory_ids:
            return set()
        placeholders = ",".join("?" * len(memory_ids))
        with self._transaction() as conn:
            rows = conn.execute(f"""
                SELECT seq, id, status, updated_at FROM memory_entries
                WHERE id IN ({placeholders}) AND organization_id = ? AND user_id = ?
            """, (*memory_ids, scope.organization_id, scope.user_id)).fetchall()
            updates = [
                (MemoryStatus.DELETED.value, _ts(next_timestamp(_parse_ts(row["updated_at"]))), row["seq"])
                for row in rows
                if row["status"] != MemoryStatus.DELETED.value
            ]
            if updates:
                conn.executemany(
                    "UPDATE memory_entries SET status = ?, updated_at = ? WHERE seq = ?",
                    updates,
                )
        return {row["id"] for row in rows}

    def list(
        self,
        scope: TenantScope,
        filters: Optional[MemoryFilters] = None,
        page: int = 1,
        limit: int = 20,
        sort: str = DEFAULT_SORT,
        order: str = "desc",
    ) -> tuple[list[MemoryEntry], int]:
        """One page of entries matching the filters, plus the total count."""
        filters = filters or MemoryFilters()
        if sort not in SORT_FIELDS:
            sort = DEFAULT_SORT
        direction = "ASC" if order == "asc" else "DESC"
        where, params = build_filter_clause(scope, filters)

        with self.connection() as conn:
            total = conn.execute(
                f"SELECT COUNT(*) FROM memory_entries m WHERE {where}", params
            ).fetchone()[0]
            rows = conn.execute(f"""
                SELECT m.* FROM memory_entries m
                WHERE {where}
                ORDER BY m.{sort} {direction}, m.id {direction}
                LIMIT ? OFFSET ?
            """, (*params, limit, (page - 1) * limit)).fetchall()

        return [self.row_to_entry(row) for row in rows], total

    def record_access(self, memory_id: str) -> bool:
        """Increment access_count and stamp last_accessed."""
        with self._transaction() as conn:
            cursor = conn.execute("""
                UPDATE memory_entries SET
                    access_count = access_count + 1,
                    last_accessed = ?
                WHERE id = ? AND status != 'deleted'
            """, (_ts(utcnow()), memory_id))
            return cursor.rowcount > 0

    def purge_deleted(self, scope: TenantScope, older_than: Optional[datetime] = None) -> int:
        """Physically remove soft-deleted entries with their tags and versions."""
        sql = """
            SELECT seq, id FROM memory_entries
            WHERE organization_id = ? AND user_id = ? AND status = 'deleted'
        """
        params: list[Any] = [scope.organization_id, scope.user_id]
        if older_than is not None:
            sql += " AND updated_at < ?"
            params.append(_ts(older_than))

        with self._transaction() as conn:
            rows = conn.execute(sql, params).fetchall()
            if not rows:
                return 0
            seqs = [row["seq"] for row in rows]
            ids = [row["id"] for row in rows]
            seq_ph = ",".join("?" * len(seqs))
            id_ph = ",".join("?" * len(ids))
            conn.execute(f"DELETE FROM memory_tags WHERE memory_seq IN ({seq_ph})", seqs)
            conn.execute(f"DELETE FROM memory_versions WHERE memory_id IN ({id_ph})", ids)
            conn.execute(f"DELETE FROM memory_entries WHERE seq IN ({seq_ph})", seqs)

        if self._hnsw is not None:
            for seq in seqs:
                self._hnsw.delete(seq)
        logger.info(f"Purged {len(seqs)} deleted memories")
        return len(seqs)

    # ------------------------------------------------------------------
    # Versions
    # ------------------------------------------------------------------

    def list_versions(self, memory_id: str, scope: TenantScope) -> list[MemoryVersion]:
        with self.connection() as conn:
            rows = conn.execute("""
                SELECT v.* FROM memory_versions v
                JOIN memory_entries m ON m.id = v.memory_id
                WHERE v.memory_id = ? AND m.organization_id = ? AND m.user_id = ?
                ORDER BY v.version_number ASC
            """, (memory_id, scope.organization_id, scope.user_id)).fetchall()
        return [self._row_to_version(row) for row in rows]

    def get_version(
        self,
        memory_id: str,
        scope: TenantScope,
        version_number: int,
    ) -> Optional[MemoryVersion]:
        with self.connection() as conn:
            row = conn.execute("""
                SELECT v.* FROM memory_versions v
                JOIN memory_entries m ON m.id = v.memory_id
                WHERE v.memory_id = ? AND v.version_number = ?
                  AND m.organization_id = ? AND m.user_id = ?
            """, (memory_id, version_number, scope.organization_id, scope.user_id)).fetchone()
        return self._row_to_version(row) if row else None

    # ------------------------------------------------------------------
    # Topics
    # ------------------------------------------------------------------

    @staticmethod
    def _check_topic_name(
        conn: sqlite3.Connection,
        name: str,
        scope: TenantScope,
        exclude_id: Optional[str] = None,
    ):
        row = conn.execute("""
            SELECT id FROM memory_topics
            WHERE organization_id = ? AND user_id = ? AND name = ? AND id != ?
        """, (scope.organization_id, scope.user_id, name, exclude_id or "")).fetchone()
        if row is not None:
            raise ValidationError(f"Topic '{name}' already exists")

    def insert_topic(self, topic: MemoryTopic) -> MemoryTopic:
        """Persist a topic; names are unique per tenant."""
        topic.id = topic.id or new_id()
        topic.created_at = topic.created_at or utcnow()
        topic.updated_at = topic.updated_at or topic.created_at

        with self._transaction() as conn:
            self._check_topic_name(conn, topic.name, TenantScope(topic.organization_id, topic.user_id))
            conn.execute("""
                INSERT INTO memory_topics (
                    id, organization_id, user_id, name, description, color, icon,
                    parent_topic_id, is_system, metadata, created_at, updated_at
                ) VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
            """, (
                topic.id, topic.organization_id, topic.user_id, topic.name,
                topic.description, topic.color, topic.icon, topic.parent_topic_id,
                int(topic.is_system), json.dumps(topic.metadata),
                _ts(topic.created_at), _ts(topic.updated_at),
            ))
        return topic

    def get_topic(self, topic_id: str, scope: TenantScope) -> Optional[MemoryTopic]:
        with self.connection() as conn:
            row = conn.execute("""
                SELECT * FROM memory_topics
                WHERE id = ? AND organization_id = ? AND user_id = ?
            """, (topic_id, scope.organization_id, scope.user_id)).fetchone()
        return self._row_to_topic(row) if row else None

    def list_topics(self, scope: TenantScope) -> list[MemoryTopic]:
        with self.connection() as conn:
            rows = conn.execute("""
                SELECT * FROM memory_topics
                WHERE organization_id = ? AND user_id = ?
                ORDER BY name ASC
            """, (scope.organization_id, scope.user_id)).fetchall()
        return [self._row_to_topic(row) for row in rows]

    def update_topic(
        self,
        topic_id: str,
        scope: TenantScope,
        fields: dict[str, Any],
    ) -> Optional[MemoryTopic]:
        unknown = set(fields) - TOPIC_UPDATABLE_FIELDS
        if unknown:
            raise ValueError(f"Topic fields cannot be updated: {sorted(unknown)}")

        with self._transaction() as conn:
            row = conn.execute("""
                SELECT * FROM memory_topics
                WHERE id = ? AND organization_id = ? AND user_id = ?
            """, (topic_id, scope.organization_id, scope.user_id)).fetchone()
            if row is None:
                return None
            if "name" in fields:
                self._check_topic_name(conn, fields["name"], scope, exclude_id=topic_id)

            updated_at = next_timestamp(_parse_ts(row["updated_at"]))
            columns = sorted(fields)
            assignments = ", ".join(f"{name} = ?" for name in columns + ["updated_at"])
            values = [
                json.dumps(fields[name]) if name == "metadata" else fields[name]
                for name in columns
            ]
            conn.execute(
                f"UPDATE memory_topics SET {assignments} WHERE id = ?",
                (*values, _ts(updated_at), topic_id),
            )
            updated = conn.execute("SELECT * FROM memory_topics WHERE id = ?", (topic_id,)).fetchone()
        return self._row_to_topic(updated)

    def delete_topic(self, topic_id: str, scope: TenantScope) -> bool:
        """
        Delete a topic. Memories and child topics that referenced it are
        detached in the same transaction.
        """
        org, user = scope.organization_id, scope.user_id
        with self._transaction() as conn:
            cursor = conn.execute(
                "DELETE FROM memory_topics WHERE id = ? AND organization_id = ? AND user_id = ?",
                (topic_id, org, user),
            )
            if cursor.rowcount == 0:
                return False
            detached = conn.execute("""
                UPDATE memory_entries SET topic_id = NULL
                WHERE topic_id = ? AND organization_id = ? AND user_id = ?
            """, (topic_id, org, user)).rowcount
            conn.execute("""
                UPDATE memory_topics SET parent_topic_id = NULL
                WHERE parent_topic_id = ? AND organization_id = ? AND user_id = ?
            """, (topic_id, org, user))
        logger.debug(f"Deleted topic {topic_id}, detached {detached} memories")
        return True

    # ------------------------------------------------------------------
    # Stats / lifecycle
    # ------------------------------------------------------------------

    def get_stats(self, scope: TenantScope) -> dict:
        """Aggregate statistics over the active memories in scope."""
        params = (scope.organization_id, scope.user_id)
        active = "organization_id = ? AND user_id = ? AND status = 'active'"

        with self.connection() as conn:
            totals = conn.execute(f"""
                SELECT COUNT(*) AS total,
                       COALESCE(SUM(LENGTH(CAST(content AS BLOB))), 0) AS content_bytes,
                       COALESCE(AVG(access_count), 0) AS avg_access
                FROM memory_entries WHERE {active}
            """, params).fetchone()
            by_type = {
                row["memory_type"]: row["n"]
                for row in conn.execute(f"""
                    SELECT memory_type, COUNT(*) AS n FROM memory_entries
                    WHERE {active} GROUP BY memory_type
                """, params)
            }
            most_accessed = conn.execute(f"""
                SELECT id FROM memory_entries WHERE {active} AND access_count > 0
                ORDER BY access_count DESC, created_at DESC LIMIT 1
            """, params).fetchone()
            recent = conn.execute(f"""
                SELECT id FROM memory_entries WHERE {active}
                ORDER BY created_at DESC, id DESC LIMIT 5
            """, params).fetchall()
            total_topics = conn.execute(
                "SELECT COUNT(*) FROM memory_topics WHERE organization_id = ? AND user_id = ?",
                params,
            ).fetchone()[0]

        stats = {
            "total_memories": totals["total"],
            "memories_by_type": {t.value: by_type.get(t.value, 0) for t in MemoryType},
            "total_topics": total_topics,
            "total_content_bytes": totals["content_bytes"],
            "average_access_count": round(float(totals["avg_access"]), 2),
            "most_accessed_id": most_accessed["id"] if most_accessed else None,
            "recent_ids": [row["id"] for row in recent],
            "dimension": self.dimension,
            "vector_backend": self.vector_backend,
        }
        if self._hnsw is not None:
            stats["hnsw"] = self._hnsw.get_stats()
        return stats

    def close(self):
        """Close database connections and save the HNSW index."""
        if self._hnsw is not None:
            try:
                self._hnsw.close()
            except (RuntimeError, OSError) as e:
                logger.warning(f"Failed to save HNSW index: {e}")
            self._hnsw = None

        with self._lock:
            if self._single_conn is not None:
                self._single_conn.close()
                self._single_conn = None
            if self._pool is not None:
                self._pool.close_all()
                self._pool = None
