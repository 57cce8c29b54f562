"""Vector index for cosine-similarity search over chunk embeddings.

Handles:
- Upsert/delete of embedding records keyed by chunk id
- Exact brute-force cosine search (numpy) with deterministic tie-breaking
- Approximate search through a FAISS HNSW index, re-scored exactly; ids
  written or deleted since the graph was built are kept in a change log
- Document -> chunk id bookkeeping for incremental re-ingestion
- Persistence (vectors.npy + index.json)

Records are immutable and swapped in with a single mapping assignment.
Searches run against a point-in-time copy of the mapping, so readers never
take a lock and never observe a half-written vector. Writers on the same
chunk id are serialised by striped locks.
"""
import itertools
import json
import os
import threading
import zlib
from dataclasses import dataclass
from datetime import datetime, timezone
from pathlib import Path
from typing import Dict, FrozenSet, Iterable, List, Optional, Sequence, Set, Tuple

import faiss
import numpy as np
import structlog

from docent import config
from docent.errors import DimensionMismatch
from docent.rag.models import EmbeddingRecord, SearchHit

logger = structlog.get_logger()

TIE_EPSILON = 1e-6
FORMAT_VERSION = 1


@dataclass(frozen=True)
class _ExactSnapshot:
    version: int
    ids: List[str]
    matrix: np.ndarray  # float64, one row per id
    norms: np.ndarray


@dataclass(frozen=True)
class _AnnSnapshot:
    ids: List[str]
    index: "faiss.Index"


def cosine_scores(matrix: np.ndarray, norms: np.ndarray, query: np.ndarray) -> np.ndarray:
    """Cosine similarity of each row with ``query``; zero vectors score 0."""
    query = query.astype(np.float64)
    query_norm = float(np.linalg.norm(query))
    dots = matrix @ query
    denominators = norms * query_norm
    scores = np.zeros_like(dots)
    np.divide(dots, denominators, out=scores, where=denominators > 0)
    return scores


def rank_hits(ids: Sequence[str], scores: Sequence[float], k: int) -> List[SearchHit]:
    """Order candidates by score, breaking near-ties by chunk id.

    Scores within TIE_EPSILON of a group's leading score are treated as equal:
    the group is ordered by ascending chunk id and reported with the leading
    score, so reported scores never increase with rank.
    """
    order = sorted(range(len(ids)), key=lambda i: (-scores[i], ids[i]))
    hits: List[SearchHit] = []

    i = 0
    while i < len(order) and len(hits) < k:
        leader = float(scores[order[i]])
        j = i
        while j < len(order) and leader - float(scores[order[j]]) <= TIE_EPSILON:
            j += 1
        for position in sorted(order[i:j], key=lambda p: ids[p]):
            hits.append(SearchHit(chunk_id=ids[position], score=leader, rank=len(hits) + 1))
            if len(hits) == k:
                break
        i = j

    return hits


class VectorIndex:
    """Embedding records plus search structures for one project."""

    def __init__(
        self,
        dimension: Optional[int] = None,
        index_dir: Optional[Path] = None,
        ann_enabled: bool = None,
        ann_min_vectors: int = None,
        hnsw_m: int = None,
        ef_construction: int = None,
        ef_search: int = None,
        oversample: int = None,
        recall_tolerance: float = None,
        lock_stripes: int = 64,
    ):
        """Initialize an empty vector index.

        Args:
            dimension: Fixed vector dimension (set by the first upsert if None)
            index_dir: Directory used by save()/close() (optional)
            ann_enabled: Use approximate search for large indexes (default from config)
            ann_min_vectors: Record count from which approximate search is used
            hnsw_m: HNSW graph degree
            ef_construction: HNSW build-time candidate list size
            ef_search: HNSW query-time candidate list size
            oversample: Approximate candidates fetched per requested result
            recall_tolerance: Accepted recall loss of approximate search
            lock_stripes: Number of writer locks chunk ids are hashed onto
        """
        self.dimension = dimension
        self.index_dir = Path(index_dir) if index_dir is not None else None
        self.ann_enabled = config.ANN_ENABLED if ann_enabled is None else ann_enabled
        self.ann_min_vectors = (
            ann_min_vectors if ann_min_vectors is not None else config.ANN_MIN_VECTORS
        )
        self.hnsw_m = hnsw_m or config.ANN_HNSW_M
        self.ef_construction = ef_construction or config.ANN_EF_CONSTRUCTION
        self.ef_search = ef_search or config.ANN_EF_SEARCH
        self.oversample = oversample or config.ANN_OVERSAMPLE
        self.recall_tolerance = (
            recall_tolerance if recall_tolerance is not None else config.ANN_RECALL_TOLERANCE
        )

        self._records: Dict[str, EmbeddingRecord] = {}
        self._documents: Dict[str, FrozenSet[str]] = {}
        self._write_locks = [threading.Lock() for _ in range(max(1, lock_stripes))]
        self._dimension_lock = threading.Lock()
        self._versions = itertools.count(1)
        self._version = 0
        self._exact_cache: Optional[_ExactSnapshot] = None
        self._ann_cache: Optional[_AnnSnapshot] = None
        # Ids written or deleted since the HNSW graph was built
        self._ann_changes: Set[str] = set()
        self._ann_tracking = False
        self._dirty = False
        self._closed = False

        logger.debug(
            "vector_index_initialized",
            dimension=dimension,
            ann_enabled=self.ann_enabled,
            index_dir=str(self.index_dir) if self.index_dir else None,
        )

    # ------------------------------------------------------------------
    # Lifecycle

    @classmethod
    def open(cls, index_dir: Path = None, **kwargs) -> "VectorIndex":
        """Load the index persisted in ``index_dir`` or create an empty one."""
        index_dir = Path(index_dir) if index_dir is not None else config.INDEX_DIR
        index = cls(index_dir=index_dir, **kwargs)
        if (index_dir / "index.json").exists():
            index._load(index_dir)
        else:
            logger.info("no_index_found_initializing_new", index_dir=str(index_dir))
        return index

    def close(self) -> None:
        """Persist pending changes (if backed by a directory) and release caches."""
        if self._closed:
            return
        if self._dirty and self.index_dir is not None:
            self.save()
        self._exact_cache = None
        self._ann_cache = None
        self._closed = True
        logger.info("vector_index_closed", vector_count=len(self._records))

    def __enter__(self) -> "VectorIndex":
        return self

    def __exit__(self, exc_type, exc, tb) -> None:
        self.close()

    # ------------------------------------------------------------------
    # Records

    def __len__(self) -> int:
        return len(self._records)

    def __contains__(self, chunk_id: str) -> bool:
        return chunk_id in self._records

    def get(self, chunk_id: str) -> Optional[EmbeddingRecord]:
        return self._records.get(chunk_id)

    def ids(self) -> List[str]:
        return sorted(self._records.copy())

    @property
    def version(self) -> int:
        """Counter bumped by every mutation of the record set."""
        return self._version

    def upsert(self, chunk_id: str, vector) -> None:
        """Insert or replace the vector for a chunk.

        Raises:
            DimensionMismatch: If the vector length differs from the index dimension
        """
        record = EmbeddingRecord.build(chunk_id, vector)
        self._check_dimension(record)
        with self._lock_for(chunk_id):
            self._records[chunk_id] = record
            self._touch(chunk_id)

    def upsert_many(self, items: Iterable[Tuple[str, Sequence[float]]]) -> int:
        """Insert or replace several vectors; nothing is written if any is invalid."""
        records = [EmbeddingRecord.build(chunk_id, vector) for chunk_id, vector in items]
        for record in records:
            self._check_dimension(record)
        for record in records:
            with self._lock_for(record.chunk_id):
                self._records[record.chunk_id] = record
                self._touch(record.chunk_id)
        return len(records)

    def delete(self, chunk_id: str) -> bool:
        """Remove a chunk's vector. Returns False (not an error) if absent."""
        with self._lock_for(chunk_id):
            removed = self._records.pop(chunk_id, None)
            if removed is not None:
                self._touch(chunk_id)
        return removed is not None

    def delete_many(self, chunk_ids: Iterable[str]) -> int:
        return sum(1 for chunk_id in list(chunk_ids) if self.delete(chunk_id))

    def _check_dimension(self, record: EmbeddingRecord) -> None:
        size = record.vector.shape[0]
        if size == 0:
            raise ValueError(f"Cannot index an empty vector for chunk {record.chunk_id}")
        if self.dimension is None:
            with self._dimension_lock:
                if self.dimension is None:
                    self.dimension = size
                    logger.info("index_dimension_fixed", dimension=size)
        if size != self.dimension:
            raise DimensionMismatch(self.dimension, size)

    def _lock_for(self, chunk_id: str) -> threading.Lock:
        return self._write_locks[zlib.crc32(chunk_id.encode("utf-8")) % len(self._write_locks)]

    def _touch(self, chunk_id: str) -> None:
        self._version = next(self._versions)
        self._dirty = True
        if self._ann_tracking:
            self._ann_changes.add(chunk_id)

    # ------------------------------------------------------------------
    # Documents

    def document_chunk_ids(self, document_key: str) -> FrozenSet[str]:
        """Chunk ids currently committed for a document."""
        return self._documents.get(document_key, frozenset())

    def set_document_chunks(self, document_key: str, chunk_ids: Iterable[str]) -> None:
        ids = frozenset(chunk_ids)
        if ids:
            self._documents[document_key] = ids
        else:
            self._documents.pop(document_key, None)
        self._dirty = True

    def remove_document(self, document_key: str) -> FrozenSet[str]:
        """Delete a document's vectors and bookkeeping; returns removed ids."""
        ids = self._documents.pop(document_key, frozenset())
        self.delete_many(ids)
        self._dirty = True
        return ids

    def documents(self) -> Dict[str, FrozenSet[str]]:
        return dict(self._documents)

    # ------------------------------------------------------------------
    # Search

    def search(self, query_vector, k: int, exact: Optional[bool] = None) -> List[SearchHit]:
        """Return up to ``k`` chunks most similar to ``query_vector``.

        Args:
            query_vector: Query embedding
            k: Maximum number of results
            exact: Force the brute-force scan (True) or the approximate
                index (False); None picks by index size and configuration

        Returns:
            SearchHits ordered by rank (1-based), scores non-increasing

        Raises:
            DimensionMismatch: If the query length differs from the index dimension
        """
        query = np.asarray(query_vector, dtype=np.float64).reshape(-1)

        if self.dimension is not None and query.shape[0] != self.dimension:
            raise DimensionMismatch(self.dimension, query.shape[0])

        if k <= 0 or not self._records:
            return []

        use_ann = (exact is False) or (
            exact is None and self.ann_enabled and len(self._records) >= self.ann_min_vectors
        )
        # A zero query scores 0 against everything; ordering is by id alone
        if use_ann and float(np.linalg.norm(query)) > 0:
            hits = self._search_approximate(query, k)
        else:
            hits = self._search_exact(query, k)

        logger.debug(
            "vector_search_completed",
            k=k,
            results_found=len(hits),
            approximate=use_ann,
        )

        return hits

    def _search_exact(self, query: np.ndarray, k: int) -> List[SearchHit]:
        snapshot = self._exact_snapshot()
        if not snapshot.ids:
            return []

        scores = cosine_scores(snapshot.matrix, snapshot.norms, query)
        n = len(snapshot.ids)

        if n > k:
            # Keep the top k plus anything tied with the k-th score
            kth = np.partition(scores, n - k)[n - k]
            candidates = np.nonzero(scores >= kth - TIE_EPSILON)[0]
        else:
            candidates = np.arange(n)

        return rank_hits(
            [snapshot.ids[i] for i in candidates],
            [float(scores[i]) for i in candidates],
            k,
        )

    def _exact_snapshot(self) -> _ExactSnapshot:
        cache = self._exact_cache
        version = self._version
        if cache is not None and cache.version == version:
            return cache

        records = self._records.copy()
        ids = sorted(records)
        if ids:
            matrix = np.vstack([records[i].vector for i in ids]).astype(np.float64)
            norms = np.array([records[i].norm for i in ids], dtype=np.float64)
        else:
            matrix = np.zeros((0, self.dimension or 0), dtype=np.float64)
            norms = np.zeros(0, dtype=np.float64)

        cache = _ExactSnapshot(version=version, ids=ids, matrix=matrix, norms=norms)
        self._exact_cache = cache
        return cache

    def _search_approximate(self, query: np.ndarray, k: int) -> List[SearchHit]:
        cache = self._ann_cache
        changes = self._ann_changes.copy()
        if cache is None or len(changes) > max(64, len(cache.ids) // 10):
            cache = self._build_ann()
            changes = set()
            if cache is None:
                return []

        # Every changed id may be a stale graph entry; fetch past them
        fetch = min(len(cache.ids), max(k * self.oversample, k) + len(changes))
        normalized = (query / np.linalg.norm(query)).astype(np.float32).reshape(1, -1)
        _, positions = cache.index.search(normalized, fetch)

        candidates = set(changes)
        candidates.update(cache.ids[p] for p in positions[0] if p >= 0)

        # Records are immutable, so each lookup is a consistent read
        found = {c: self._records.get(c) for c in candidates}
        candidate_ids = sorted(c for c, record in found.items() if record is not None)
        if len(candidate_ids) < min(k, len(self._records)):
            logger.debug("ann_candidates_short", found=len(candidate_ids), k=k)
            return self._search_exact(query, k)

        matrix = np.vstack([found[c].vector for c in candidate_ids]).astype(np.float64)
        norms = np.array([found[c].norm for c in candidate_ids], dtype=np.float64)
        scores = cosine_scores(matrix, norms, query)

        return rank_hits(candidate_ids, [float(s) for s in scores], k)

    def _build_ann(self) -> Optional[_AnnSnapshot]:
        # Reset the change log before copying the records
        self._ann_tracking = True
        self._ann_changes = set()
        records = self._records.copy()
        ids = sorted(records)
        if not ids:
            self._ann_cache = None
            return None
        vectors = np.vstack([records[i].vector for i in ids]).astype(np.float32)
        norms = np.linalg.norm(vectors, axis=1, keepdims=True)
        norms[norms == 0] = 1.0
        vectors = np.ascontiguousarray(vectors / norms, dtype=np.float32)

        index = faiss.IndexHNSWFlat(vectors.shape[1], self.hnsw_m, faiss.METRIC_INNER_PRODUCT)
        index.hnsw.efConstruction = self.ef_construction
        index.add(vectors)
        index.hnsw.efSearch = max(self.ef_search, self.oversample)

        logger.info(
            "ann_index_built",
            vector_count=len(ids),
            hnsw_m=self.hnsw_m,
            ef_search=index.hnsw.efSearch,
        )

        cache = _AnnSnapshot(ids=ids, index=index)
        self._ann_cache = cache
        return cache

    def measure_recall(self, queries: Sequence[Sequence[float]], k: int) -> float:
        """Mean overlap of approximate results with the exact scan."""
        if not queries:
            return 1.0
        overlaps = []
        for query in queries:
            exact = {hit.chunk_id for hit in self.search(query, k, exact=True)}
            approx = {hit.chunk_id for hit in self.search(query, k, exact=False)}
            overlaps.append(len(exact & approx) / len(exact) if exact else 1.0)
        recall = float(np.mean(overlaps))
        logger.info("ann_recall_measured", queries=len(queries), k=k, recall=recall)
        return recall

    def recall_acceptable(self, queries: Sequence[Sequence[float]], k: int) -> bool:
        """True when approximate search stays within the recall tolerance."""
        return self.measure_recall(queries, k) >= 1.0 - self.recall_tolerance

    # ------------------------------------------------------------------
    # Persistence

    def save(self, index_dir: Path = None) -> None:
        """Write vectors and bookkeeping atomically to ``index_dir``.

        Raises:
            RuntimeError: If no directory is configured or writing fails
        """
        index_dir = Path(index_dir) if index_dir is not None else self.index_dir
        if index_dir is None:
            raise RuntimeError("No index directory configured for save()")

        index_dir.mkdir(parents=True, exist_ok=True)
        records = self._records.copy()
        documents = dict(self._documents)
        ids = sorted(records)

        if ids:
            matrix = np.vstack([records[i].vector for i in ids]).astype(np.float32)
        else:
            matrix = np.zeros((0, self.dimension or 0), dtype=np.float32)

        metadata = {
            "format_version": FORMAT_VERSION,
            "dimension": self.dimension,
            "chunk_ids": ids,
            "norms": [records[i].norm for i in ids],
            "documents": {key: sorted(chunk_ids) for key, chunk_ids in documents.items()},
            "vector_count": len(ids),
            "saved_at": datetime.now(timezone.utc).isoformat(),
        }

        vectors_path = index_dir / "vectors.npy"
        metadata_path = index_dir / "index.json"

        try:
            tmp_vectors = vectors_path.with_suffix(".npy.tmp")
            with open(tmp_vectors, "wb") as f:
                np.save(f, matrix)
            tmp_metadata = metadata_path.with_suffix(".json.tmp")
            with open(tmp_metadata, "w") as f:
                json.dump(metadata, f, indent=2)
            os.replace(tmp_vectors, vectors_path)
            os.replace(tmp_metadata, metadata_path)
        except OSError as e:
            raise RuntimeError(f"Failed to save vector index: {e}") from e

        self.index_dir = index_dir
        self._dirty = False

        logger.info("vector_index_saved", index_dir=str(index_dir), vector_count=len(ids))

    def _load(self, index_dir: Path) -> None:
        try:
            with open(index_dir / "index.json", "r") as f:
                metadata = json.load(f)
            with open(index_dir / "vectors.npy", "rb") as f:
                matrix = np.load(f)
        except (OSError, ValueError) as e:
            raise RuntimeError(f"Failed to load vector index: {e}") from e

        ids = metadata.get("chunk_ids", [])
        stored_dim = metadata.get("dimension")

        if matrix.shape[0] != len(ids):
            raise RuntimeError(
                f"Corrupt index: {matrix.shape[0]} vectors for {len(ids)} chunk ids"
            )
        if self.dimension is not None and stored_dim is not None and stored_dim != self.dimension:
            raise DimensionMismatch(self.dimension, stored_dim)

        self.dimension = stored_dim
        self._records = {
            chunk_id: EmbeddingRecord.build(chunk_id, row) for chunk_id, row in zip(ids, matrix)
        }
        self._documents = {
            key: frozenset(chunk_ids) for key, chunk_ids in metadata.get("documents", {}).items()
        }
        self._version = next(self._versions)
        self._dirty = False

        logger.info(
            "vector_index_loaded",
            index_dir=str(index_dir),
            dimension=self.dimension,
            vector_count=len(self._records),
            document_count=len(self._documents),
        )

    def stats(self) -> dict:
        """Get statistics about the vector index."""
        return {
            "vector_count": len(self._records),
            "document_count": len(self._documents),
            "dimension": self.dimension,
            "ann_enabled": self.ann_enabled,
            "ann_built": self._ann_cache is not None,
            "index_dir": str(self.index_dir) if self.index_dir else None,
            "dirty": self._dirty,
        }
