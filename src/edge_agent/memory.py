"""
Best-effort vector memory for the agent.

- MemoryPipeline: embed the message, store it, and return related past texts
- SentenceTransformerEmbedder: lazy sentence-transformers encoder
- FaissVectorIndex: FAISS inner-product index persisted as JSONL rows

Every collaborator failure surfaces as MemoryUnavailable inside the pipeline
and degrades to an empty context.
"""
from __future__ import annotations

import json
import logging
import threading
import time
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Callable, Dict, List, Optional, Protocol, Sequence, Tuple

import numpy as np

from .errors import MemoryUnavailable

logger = logging.getLogger(__name__)


# -----------------------------
# Types & collaborator protocols
# -----------------------------
@dataclass(frozen=True)
class MemoryRecord:
    id: str
    vector: Tuple[float, ...]
    metadata: Dict[str, str] = field(default_factory=dict)


@dataclass(frozen=True)
class MemoryMatch:
    id: str
    score: float
    metadata: Dict[str, Any] = field(default_factory=dict)


class Embedder(Protocol):
    def embed(self, text: str) -> Sequence[float]: ...


class VectorIndex(Protocol):
    def upsert(self, record_id: str, vector: Sequence[float], metadata: Dict[str, str]) -> None: ...

    def query(self, vector: Sequence[float], top_k: int) -> List[MemoryMatch]: ...


# -----------------------------
# Memory pipeline
# -----------------------------
class MemoryPipeline:
    """
    Best-effort memory augmentation for one agent instance.

    embed -> upsert -> query top-k -> join matched texts. Any failure degrades
    to an empty (or partial) context; ``retrieve_context`` never raises and
    never blocks reply generation.
    """

    def __init__(
        self,
        embedder: Optional[Embedder],
        index: Optional[VectorIndex],
        *,
        owner_id: str,
        top_k: int = 3,
        clock: Callable[[], float] = time.time,
    ) -> None:
        self.embedder = embedder
        self.index = index
        self.owner_id = owner_id
        self.top_k = top_k
        self._clock = clock
        self._last_stamp = 0

    def retrieve_context(self, message: str, user_id: str = "guest") -> str:
        try:
            vector = self._embed(message)
        except MemoryUnavailable as e:
            logger.warning("Memory pipeline unavailable, continuing without context: %s", e)
            return ""
        if not vector:
            return ""

        try:
            self._upsert(vector, {"text": message, "user": user_id})
        except MemoryUnavailable as e:
            logger.warning("Memory upsert skipped: %s", e)

        try:
            matches = self._query(vector)
        except MemoryUnavailable as e:
            logger.warning("Memory query skipped: %s", e)
            return ""

        texts = [str(m.metadata.get("text")) for m in matches if m.metadata.get("text")]
        return "\n".join(texts)

    def next_record_id(self) -> str:
        """``<owner>-<epoch ms>``, strictly increasing for this pipeline."""
        stamp = int(self._clock() * 1000)
        if stamp <= self._last_stamp:
            stamp = self._last_stamp + 1
        self._last_stamp = stamp
        return f"{self.owner_id}-{stamp}"

    # --------- collaborator boundary ----------
    def _embed(self, message: str) -> List[float]:
        if self.embedder is None:
            raise MemoryUnavailable("no embedder configured")
        try:
            return [float(x) for x in self.embedder.embed(message)]
        except Exception as e:
            raise MemoryUnavailable(f"embedding failed: {e}") from e

    def _upsert(self, vector: List[float], metadata: Dict[str, str]) -> None:
        if self.index is None:
            raise MemoryUnavailable("no vector index configured")
        record_id = self.next_record_id()
        try:
            self.index.upsert(record_id, vector, metadata)
        except Exception as e:
            raise MemoryUnavailable(f"upsert of {record_id} failed: {e}") from e

    def _query(self, vector: List[float]) -> List[MemoryMatch]:
        if self.index is None:
            raise MemoryUnavailable("no vector index configured")
        try:
            return list(self.index.query(vector, self.top_k))
        except Exception as e:
            raise MemoryUnavailable(f"query failed: {e}") from e


# -----------------------------
# Default collaborators
# -----------------------------
class SentenceTransformerEmbedder:
    """Lazy sentence-transformers embedder returning L2-normalized vectors."""

    max_chars = 4000

    def __init__(self, model_name: str) -> None:
        self.model_name = model_name
        self._model = None
        self._lock = threading.Lock()

    def _model_ensure(self):
        with self._lock:
            if self._model is None:
                # Lazy import so the server starts without the dep.
                from sentence_transformers import SentenceTransformer  # type: ignore

                self._model = SentenceTransformer(self.model_name)
            return self._model

    def embed(self, text: str) -> List[float]:
        model = self._model_ensure()
        v = model.encode([text[: self.max_chars]], normalize_embeddings=True)[0]
        return [float(x) for x in v]


class FaissVectorIndex:
    """
    Append-only vector index on FAISS ``IndexFlatIP`` (cosine via normalized
    inner product).

    - Records persist to ``<data_dir>/memory.jsonl`` (one JSON row per record)
    - The FAISS index is rebuilt from that file on first use
    - Upserting an id that already exists is ignored (records are write-once)
    """

    def __init__(self, data_dir: str) -> None:
        self.dir = Path(data_dir)
        self.dir.mkdir(parents=True, exist_ok=True)
        self.rows_path = self.dir / "memory.jsonl"
        self._rows: List[Dict[str, Any]] = []
        self._ids: set = set()
        self._index = None
        self._dim: Optional[int] = None
        self._lock = threading.RLock()
        self._loaded = False

    # ----------------- persistence -----------------
    def _load_rows(self) -> None:
        if self._loaded:
            return
        if not self.rows_path.exists():
            self._loaded = True
            return
        try:
            with self.rows_path.open("r", encoding="utf-8") as f:
                for line_no, line in enumerate(f, 1):
                    line = line.strip()
                    if not line:
                        continue
                    try:
                        self._add_to_index(json.loads(line))
                    except (KeyError, TypeError, ValueError) as e:
                        logger.warning("Skipping corrupt line %d in %s: %s", line_no, self.rows_path, e)
        except OSError:
            # Drop the partial index so the next call reloads from scratch.
            self._rows, self._ids, self._index, self._dim = [], set(), None, None
            raise
        self._loaded = True

    def _add_to_index(self, row: Dict[str, Any]) -> None:
        import faiss  # type: ignore

        vec = np.asarray([row["vector"]], dtype="float32")
        index = self._index_ensure(vec.shape[1])
        if vec.shape[1] != self._dim:
            raise ValueError(f"vector dimension {vec.shape[1]} != index dimension {self._dim}")
        faiss.normalize_L2(vec)
        index.add(vec)
        self._rows.append(row)
        self._ids.add(row["id"])

    def _index_ensure(self, dim: int):
        if self._index is None:
            import faiss  # type: ignore

            self._dim = dim
            self._index = faiss.IndexFlatIP(dim)
        return self._index

    # ----------------- public API -----------------
    def upsert(self, record_id: str, vector: Sequence[float], metadata: Dict[str, str]) -> None:
        record = MemoryRecord(id=record_id, vector=tuple(float(x) for x in vector), metadata=dict(metadata))
        with self._lock:
            self._load_rows()
            if record.id in self._ids:
                logger.debug("Memory record %s already stored; ignoring upsert", record.id)
                return
            row = {"id": record.id, "vector": list(record.vector), "metadata": record.metadata}
            self._add_to_index(row)
            with self.rows_path.open("a", encoding="utf-8") as f:
                f.write(json.dumps(row, ensure_ascii=False) + "\n")

    def query(self, vector: Sequence[float], top_k: int) -> List[MemoryMatch]:
        with self._lock:
            self._load_rows()
            if self._index is None or self._index.ntotal == 0 or top_k <= 0:
                return []
            import faiss  # type: ignore

            q = np.asarray([list(vector)], dtype="float32")
            faiss.normalize_L2(q)
            D, I = self._index.search(q, min(top_k, self._index.ntotal))
            out: List[MemoryMatch] = []
            for idx, score in zip(I[0].tolist(), D[0].tolist()):
                if idx < 0 or idx >= len(self._rows):
                    continue
                row = self._rows[idx]
                out.append(MemoryMatch(id=row["id"], score=float(score), metadata=dict(row.get("metadata") or {})))
            return out

    def __len__(self) -> int:
        with self._lock:
            self._load_rows()
            return len(self._rows)
