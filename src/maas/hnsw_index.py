"""
Optional HNSW index over memory embeddings.

Approximate nearest neighbor candidates for similarity search, keyed by
the memory's integer row sequence. Searches can be restricted to an
allowed set of rows so tenant and relational filters are applied before
the graph walk instead of after it.

Persisted next to the SQLite database as `<db>.hnsw` plus an id map.
"""

import logging
import threading
from pathlib import Path
from typing import Iterable, Optional

import numpy as np

logger = logging.getLogger(__name__)

try:
    import hnswlib
    HNSW_AVAILABLE = True
except ImportError:
    HNSW_AVAILABLE = False
    logger.debug("hnswlib not available, HNSW indexing disabled")


class HNSWIndex:
    """
    Cosine-space HNSW index mapping memory row sequences to graph labels.

    Parameters:
        dimension: Vector dimension (must match embeddings)
        max_elements: Initial capacity, grown in place when full
        ef_construction: Build-time candidate list size
        M: Links per node
        index_path: Where to save/load the index (None keeps it in memory)
    """

    def __init__(
        self,
        dimension: int,
        max_elements: int = 100_000,
        ef_construction: int = 200,
        M: int = 16,
        index_path: Optional[Path | str] = None,
    ):
        if not HNSW_AVAILABLE:
            raise ImportError(
                "hnswlib is not installed. "
                "Install it with: pip install 'maas-memory[hnsw]'"
            )

        self.dimension = dimension
        self.max_elements = max_elements
        self.ef_construction = ef_construction
        self.M = M
        self.index_path = Path(index_path) if index_path else None

        self._lock = threading.RLock()
        self._index: Optional["hnswlib.Index"] = None
        self._labels: dict[int, int] = {}  # label -> memory seq
        self._seqs: dict[int, int] = {}  # memory seq -> label
        self._next_label = 0

        if self.index_path and self.index_path.exists():
            self._load_index()
        else:
            self._init_index()

    @property
    def _map_path(self) -> Path:
        return self.index_path.with_suffix(".map.npy")

    def _init_index(self):
        self._index = hnswlib.Index(space="cosine", dim=self.dimension)
        self._index.init_index(
            max_elements=self.max_elements,
            ef_construction=self.ef_construction,
            M=self.M,
        )
        self._index.set_ef(50)
        self._labels.clear()
        self._seqs.clear()
        self._next_label = 0
        logger.info(f"✓ HNSW index initialized (dim={self.dimension}, max={self.max_elements})")

    def _load_index(self):
        if not self._map_path.exists():
            logger.warning(f"HNSW id map missing for {self.index_path}, starting a new index")
            self._init_index()
            return
        try:
            self._index = hnswlib.Index(space="cosine", dim=self.dimension)
            self._index.load_index(str(self.index_path), max_elements=self.max_elements)
            self._index.set_ef(50)
            data = np.load(str(self._map_path), allow_pickle=True).item()
            self._labels = data["labels"]
            self._seqs = {seq: label for label, seq in self._labels.items()}
            self._next_label = data["next_label"]
            self.max_elements = max(self.max_elements, self._index.get_max_elements())
            logger.info(f"✓ HNSW index loaded from {self.index_path} ({len(self._seqs)} elements)")
        except Exception as e:
            logger.warning(f"Failed to load HNSW index: {e}, creating new index")
            self._init_index()

    def __len__(self) -> int:
        return len(self._seqs)

    def __contains__(self, seq: int) -> bool:
        return seq in self._seqs

    def save(self):
        if not self.index_path or not self._index:
            return

        with self._lock:
            self.index_path.parent.mkdir(parents=True, exist_ok=True)
            self._index.save_index(str(self.index_path))
            np.save(str(self._map_path), {
                "labels": self._labels,
                "next_label": self._next_label,
            })
            logger.debug(f"HNSW index saved to {self.index_path}")

    def add(self, seq: int, vector: np.ndarray):
        """Insert or replace the vector for one memory."""
        self.add_batch([seq], vector.reshape(1, -1))

    def add_batch(self, seqs: list[int], vectors: np.ndarray):
        if not seqs:
            return
        vectors = np.asarray(vectors, dtype=np.float32)

        with self._lock:
            fresh = sum(1 for seq in seqs if seq not in self._seqs)
            needed = self._next_label + fresh - self.max_elements
            if needed > 0:
                self._expand_index(additional=needed + 1000)

            labels = []
            for seq in seqs:
                label = self._seqs.get(seq)
                if label is None:
                    label = self._next_label
                    self._next_label += 1
                    self._seqs[seq] = label
                    self._labels[label] = seq
                labels.append(label)

            # Re-adding an existing label replaces its vector and clears a deleted mark
            self._index.add_items(vectors, np.array(labels, dtype=np.int64))

    def sync(self, seqs: list[int], vectors: np.ndarray) -> int:
        """
        Make the index hold exactly `seqs` with the given vectors.

        Rows missing from the index, or whose stored vector differs, are
        (re)added. Entries for rows that no longer exist are deleted.

        Returns:
            Number of entries added, replaced or deleted
        """
        vectors = np.asarray(vectors, dtype=np.float32).reshape(len(seqs), self.dimension)

        with self._lock:
            wanted = set(seqs)
            stale = [seq for seq in self._seqs if seq not in wanted]
            for seq in stale:
                self.delete(seq)

            changed = [i for i, seq in enumerate(seqs) if seq not in self._seqs]
            present = [i for i, seq in enumerate(seqs) if seq in self._seqs]
            if present:
                # Cosine space stores normalized vectors
                stored = np.asarray(
                    self._index.get_items([self._seqs[seqs[i]] for i in present]),
                    dtype=np.float32,
                )
                expected = vectors[present]
                expected = expected / np.maximum(np.linalg.norm(expected, axis=1, keepdims=True), 1e-10)
                differs = ~np.all(np.isclose(stored, expected, atol=1e-5), axis=1)
                changed.extend(i for i, d in zip(present, differs) if d)

            if changed:
                self.add_batch([seqs[i] for i in changed], vectors[changed])
            return len(stale) + len(changed)

    def search(
        self,
        query_vector: np.ndarray,
        k: int = 10,
        ef: int = 50,
        allowed: Optional[Iterable[int]] = None,
    ) -> list[tuple[int, float]]:
        """
        Find up to k nearest memories.

        Args:
            query_vector: Query embedding
            k: Number of neighbours wanted
            ef: Search candidate list size (raised to at least k + 1)
            allowed: Restrict results to these memory seqs

        Returns:
            List of (seq, similarity) sorted by similarity descending
        """
        if not self._seqs:
            return []

        query_vector = np.asarray(query_vector, dtype=np.float32).reshape(1, -1)

        with self._lock:
            if allowed is not None:
                allowed_labels = {self._seqs[s] for s in allowed if s in self._seqs}
                if not allowed_labels:
                    return []
                k = min(k, len(allowed_labels))
                self._index.set_ef(max(ef, k + 1))
                labels, distances = self._index.knn_query(
                    query_vector,
                    k=k,
                    num_threads=1,
                    filter=lambda label: label in allowed_labels,
                )
            else:
                k = min(k, len(self._seqs))
                self._index.set_ef(max(ef, k + 1))
                labels, distances = self._index.knn_query(query_vector, k=k)

            return [
                (self._labels[int(label)], float(1.0 - dist))
                for label, dist in zip(labels[0], distances[0])
                if int(label) in self._labels
            ]

    def _expand_index(self, additional: int = 10_000):
        new_max = self.max_elements + additional
        try:
            self._index.resize_index(new_max)
            self.max_elements = new_max
            logger.info(f"HNSW index capacity expanded to {new_max}")
        except Exception as e:
            logger.error(f"Failed to resize HNSW index to {new_max}: {e}")
            raise

    def delete(self, seq: int) -> bool:
        """Mark a memory's vector deleted and drop its mapping."""
        with self._lock:
            label = self._seqs.pop(seq, None)
            if label is None:
                return False
            self._labels.pop(label, None)
            try:
                self._index.mark_deleted(label)
            except RuntimeError as e:
                logger.warning(f"Failed to mark HNSW label {label} deleted: {e}")
            return True

    def get_stats(self) -> dict:
        return {
            "type": "HNSW",
            "dimension": self.dimension,
            "element_count": len(self._seqs),
            "max_elements": self.max_elements,
            "ef_construction": self.ef_construction,
            "M": self.M,
            "index_path": str(self.index_path) if self.index_path else None,
        }

    def close(self):
        self.save()
