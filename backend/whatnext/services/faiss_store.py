"""
FAISS-backed vector index with string ids and per-vector metadata.

- IndexIDMap2 over IndexFlatIP; vectors are L2-normalized on the way in so
  inner product == cosine similarity.
- String ids (`movie_{tmdb_id}`) map to int64 FAISS ids; upserting an id that
  already exists replaces it, so re-processing a movie never adds a second vector.
- Index and mapping are rewritten atomically (temp file + rename) under an
  exclusive lock file; readers take a shared lock and reload when the files
  change on disk.
"""
import fcntl
import hashlib
import json
import logging
import os
from contextlib import contextmanager
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Dict, Iterable, List, Optional

import faiss
import numpy as np

from whatnext.core.config import settings
from whatnext.services.movie_state import tmdb_id_from_vector_id

logger = logging.getLogger(__name__)


@dataclass
class VectorMatch:
    id: str
    score: float
    metadata: Dict[str, Any] = field(default_factory=dict)


@dataclass
class StoredVector:
    id: str
    values: List[float]
    metadata: Dict[str, Any] = field(default_factory=dict)


def _l2_normalize(mat: np.ndarray) -> np.ndarray:
    """Normalize rows to unit length for cosine similarity via inner product."""
    norms = np.linalg.norm(mat, axis=1, keepdims=True) + 1e-8
    return (mat / norms).astype(np.float32)


def _int_id(vector_id: str) -> int:
    tmdb_id = tmdb_id_from_vector_id(vector_id)
    if tmdb_id is not None:
        return tmdb_id
    digest = hashlib.blake2b(vector_id.encode("utf-8"), digest_size=8).digest()
    return int.from_bytes(digest, "big") & 0x7FFFFFFFFFFFFFFF


def matches_filter(metadata: Dict[str, Any], filter: Optional[Dict[str, Any]]) -> bool:
    """Metadata filter with $eq/$gte/$lte/$in operators; a bare value means $eq."""
    if not filter:
        return True
    for key, condition in filter.items():
        value = metadata.get(key)
        ops = condition if isinstance(condition, dict) else {"$eq": condition}
        for op, expected in ops.items():
            if op == "$eq" and value != expected:
                return False
            if op == "$in" and value not in expected:
                return False
            if op in ("$gte", "$lte"):
                if value is None:
                    return False
                if op == "$gte" and value < expected:
                    return False
                if op == "$lte" and value > expected:
                    return False
            if op not in ("$eq", "$in", "$gte", "$lte"):
                raise ValueError(f"Unsupported filter operator {op!r}")
    return True


class FaissVectorStore:
    def __init__(self, index_dir: Optional[str] = None):
        self.index_dir = Path(index_dir or settings.vector_index_dir)
        self.index_file = self.index_dir / "vectors.faiss"
        self.mapping_file = self.index_dir / "vectors_map.json"
        self.lock_file = self.index_dir / "vectors.lock"
        self._index: Optional[faiss.Index] = None
        self._entries: Dict[str, Dict[str, Any]] = {}  # vector_id -> {"key": int, "metadata": {...}}
        self._by_key: Dict[int, str] = {}
        self._loaded_mtime: Optional[float] = None

    @contextmanager
    def _lock(self, exclusive: bool):
        self.index_dir.mkdir(parents=True, exist_ok=True)
        with open(self.lock_file, "w") as lock_f:
            fcntl.flock(lock_f.fileno(), fcntl.LOCK_EX if exclusive else fcntl.LOCK_SH)
            try:
                yield
            finally:
                fcntl.flock(lock_f.fileno(), fcntl.LOCK_UN)

    def _reload_if_changed(self) -> None:
        if not self.index_file.exists() or not self.mapping_file.exists():
            return
        mtime = self.mapping_file.stat().st_mtime
        if self._loaded_mtime == mtime and self._index is not None:
            return
        self._index = faiss.read_index(str(self.index_file))
        with open(self.mapping_file) as f:
            self._entries = json.load(f)
        self._by_key = {entry["key"]: vid for vid, entry in self._entries.items()}
        self._loaded_mtime = mtime
        logger.debug(f"[FAISS] Loaded {self._index.ntotal} vectors from {self.index_file}")

    def _save(self) -> None:
        index_tmp = self.index_file.with_suffix(".faiss.tmp")
        mapping_tmp = self.mapping_file.with_suffix(".json.tmp")
        try:
            faiss.write_index(self._index, str(index_tmp))
            with open(mapping_tmp, "w") as f:
                json.dump(self._entries, f)
                f.flush()
                os.fsync(f.fileno())
            os.replace(index_tmp, self.index_file)
            os.replace(mapping_tmp, self.mapping_file)
        except Exception:
            for tmp in (index_tmp, mapping_tmp):
                if tmp.exists():
                    tmp.unlink()
            raise
        self._loaded_mtime = self.mapping_file.stat().st_mtime

    def upsert(self, vectors: Iterable[Any]) -> int:
        """Insert or replace vectors. Items need `id`, `values` and optional `metadata`
        (attributes or dict keys)."""
        records = [
            (v["id"], v["values"], v.get("metadata") or {}) if isinstance(v, dict)
            else (v.id, v.values, v.metadata or {})
            for v in vectors
        ]
        if not records:
            return 0
        mat = _l2_normalize(np.asarray([r[1] for r in records], dtype=np.float32))

        with self._lock(exclusive=True):
            self._reload_if_changed()
            if self._index is None:
                self._index = faiss.IndexIDMap2(faiss.IndexFlatIP(mat.shape[1]))
            if mat.shape[1] != self._index.d:
                raise ValueError(f"Vector dimension {mat.shape[1]} does not match index dimension {self._index.d}")

            keys = np.asarray([_int_id(r[0]) for r in records], dtype=np.int64)
            existing = [k for k in keys.tolist() if k in self._by_key]
            if existing:
                self._index.remove_ids(np.asarray(existing, dtype=np.int64))
            self._index.add_with_ids(mat, keys)
            for (vector_id, _, metadata), key in zip(records, keys.tolist()):
                self._entries[vector_id] = {"key": key, "metadata": metadata}
                self._by_key[key] = vector_id
            self._save()
            total = self._index.ntotal
        logger.info(f"[FAISS] Upserted {len(records)} vectors (total {total})")
        return len(records)

    def query(self, vector: List[float], top_k: int = 10, filter: Optional[Dict[str, Any]] = None) -> List[VectorMatch]:
        query = _l2_normalize(np.asarray([vector], dtype=np.float32))
        with self._lock(exclusive=False):
            self._reload_if_changed()
            if self._index is None or self._index.ntotal == 0:
                return []
            # Over-fetch when filtering since the flat index filters after search
            k = min(self._index.ntotal, top_k * 10 if filter else top_k)
            scores, keys = self._index.search(query, k)

            matches = []
            for score, key in zip(scores[0].tolist(), keys[0].tolist()):
                vector_id = self._by_key.get(key)
                if key < 0 or vector_id is None:
                    continue
                metadata = self._entries[vector_id]["metadata"]
                if not matches_filter(metadata, filter):
                    continue
                matches.append(VectorMatch(id=vector_id, score=float(score), metadata=metadata))
                if len(matches) >= top_k:
                    break
        return matches

    def fetch(self, ids: Iterable[str]) -> Dict[str, StoredVector]:
        found = {}
        with self._lock(exclusive=False):
            self._reload_if_changed()
            if self._index is None:
                return found
            for vector_id in ids:
                entry = self._entries.get(vector_id)
                if entry is None:
                    continue
                values = self._index.reconstruct(int(entry["key"]))
                found[vector_id] = StoredVector(id=vector_id, values=values.tolist(), metadata=entry["metadata"])
        return found

    def delete(self, ids: Iterable[str]) -> int:
        with self._lock(exclusive=True):
            self._reload_if_changed()
            present = [vid for vid in ids if vid in self._entries]
            if not present or self._index is None:
                return 0
            keys = [self._entries[vid]["key"] for vid in present]
            self._index.remove_ids(np.asarray(keys, dtype=np.int64))
            for vid, key in zip(present, keys):
                del self._entries[vid]
                self._by_key.pop(key, None)
            self._save()
        logger.info(f"[FAISS] Deleted {len(present)} vectors")
        return len(present)

    def describe(self) -> Dict[str, Any]:
        with self._lock(exclusive=False):
            self._reload_if_changed()
            return {
                "total_vectors": int(self._index.ntotal) if self._index is not None else 0,
                "dimension": int(self._index.d) if self._index is not None else None,
                "index_file": str(self.index_file),
            }
