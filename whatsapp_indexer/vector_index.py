"""
Append-only vector index over message embeddings (numpy arena + parallel metadata).

Vectors are L2-normalized on insert so inner product is cosine similarity.
Positions are never reused: a superseded or deleted entry is only tagged until
compaction rebuilds the arena with contiguous positions from 0.
"""

import json
import logging
import os
import tempfile
import threading
from collections import Counter
from contextlib import contextmanager
from pathlib import Path
from typing import Callable, Generator, NamedTuple

import numpy as np

from whatsapp_indexer.embeddings import EmbedFn, build_embedding_text
from whatsapp_indexer.errors import EmbeddingError, PersistenceError
from whatsapp_indexer.models import (
    EntityLists,
    IndexPosition,
    IndexStats,
    VectorFilter,
    VectorHit,
    VectorMetadata,
)

logger = logging.getLogger(__name__)

VECTORS_FILE = "vectors.npy"
METADATA_FILE = "metadata.json"
_MIN_CAPACITY = 16


class _IndexState(NamedTuple):
    """Arena snapshot. Rows past `count` are unused capacity."""

    vectors: np.ndarray
    count: int
    metadata: list[VectorMetadata]


def _empty_state(dimension: int | None) -> _IndexState:
    return _IndexState(np.zeros((0, dimension or 0), dtype=np.float32), 0, [])


def _normalize(vectors: np.ndarray) -> np.ndarray:
    norms = np.linalg.norm(vectors, axis=-1, keepdims=True)
    norms[norms == 0] = 1.0
    return (vectors / norms).astype(np.float32)


def embedding_text(meta: VectorMetadata) -> str:
    """Text a metadata entry is (re-)embedded from."""
    return build_embedding_text(
        meta.content or meta.searchable_text,
        meta.entities.people,
        meta.entities.places,
        meta.entities.activities,
    )


class VectorIndex:
    """
    Similarity index with a single writer lock. Readers take the current
    state reference and never block on writers; compaction swaps the state
    in one assignment.
    """

    def __init__(
        self,
        path: str | Path | None,
        embed_fn: EmbedFn,
        *,
        dimension: int | None = None,
        overfetch: int = 3,
        threshold: float = 0.1,
        compaction_threshold: float = 0.2,
        autosave_every: int = 10,
        model_name: str | None = None,
    ):
        self.path = Path(path) if path is not None else None
        self.embed_fn = embed_fn
        self.dimension = dimension
        self.overfetch = overfetch
        self.threshold = threshold
        self.compaction_threshold = compaction_threshold
        self.autosave_every = autosave_every
        self.model_name = model_name
        self._lock = threading.RLock()
        self._state = _empty_state(dimension)
        self._unsaved = 0
        self._autosave_paused = 0

    # --- persistence ----------------------------------------------------

    def load(self) -> None:
        """Load vectors and metadata from disk; start empty when none exist."""
        if self.path is None:
            return
        vectors_path = self.path / VECTORS_FILE
        metadata_path = self.path / METADATA_FILE
        if not vectors_path.exists() or not metadata_path.exists():
            logger.info("No vector index at %s, starting empty", self.path)
            return
        try:
            vectors = np.load(vectors_path)
            raw = json.loads(metadata_path.read_text(encoding="utf-8"))
            # pydantic's ValidationError is a ValueError
            metadata = [VectorMetadata.model_validate(m) for m in raw]
        except (OSError, ValueError, TypeError) as e:
            raise PersistenceError(f"Cannot load vector index from {self.path}: {e}") from e
        if vectors.ndim != 2 or len(vectors) != len(metadata):
            raise PersistenceError(
                f"Vector index at {self.path} is inconsistent: {len(vectors)} vectors, {len(metadata)} metadata entries"
            )
        if self.dimension is not None and len(metadata) and vectors.shape[1] != self.dimension:
            raise PersistenceError(f"Stored dimension {vectors.shape[1]} != configured {self.dimension}")
        with self._lock:
            if len(metadata):
                self.dimension = int(vectors.shape[1])
            self._state = _IndexState(vectors.astype(np.float32), len(metadata), metadata)
            self._unsaved = 0
        logger.info("Loaded vector index: %d vectors (dim=%s)", len(metadata), self.dimension)

    def save(self) -> None:
        """Write both files atomically (temp file + rename)."""
        if self.path is None:
            return
        with self._lock:
            state = self._state
            try:
                self.path.mkdir(parents=True, exist_ok=True)
                self._atomic_write(self.path / VECTORS_FILE, lambda f: np.save(f, state.vectors[: state.count]))
                payload = json.dumps(
                    [m.model_dump(mode="json") for m in state.metadata[: state.count]],
                    ensure_ascii=False,
                ).encode("utf-8")
                self._atomic_write(self.path / METADATA_FILE, lambda f: f.write(payload))
            except OSError as e:
                raise PersistenceError(f"Cannot save vector index to {self.path}: {e}") from e
            self._unsaved = 0

    def _atomic_write(self, target: Path, write: Callable) -> None:
        fd, tmp = tempfile.mkstemp(dir=str(target.parent), prefix=f".{target.name}.")
        try:
            with os.fdopen(fd, "wb") as f:
                write(f)
            os.replace(tmp, target)
        except BaseException:
            if os.path.exists(tmp):
                os.unlink(tmp)
            raise

    def _maybe_autosave(self) -> None:
        self._unsaved += 1
        if not self._autosave_paused and self._unsaved >= self.autosave_every:
            self.save()

    @contextmanager
    def autosave_paused(self) -> Generator["VectorIndex", None, None]:
        """Hold periodic saves (bulk loads save once at the end)."""
        with self._lock:
            self._autosave_paused += 1
        try:
            yield self
        finally:
            with self._lock:
                self._autosave_paused -= 1

    # --- embedding ------------------------------------------------------

    def embed(self, texts: list[str]) -> np.ndarray:
        raw = self.embed_fn(texts)
        if len(raw) != len(texts):
            raise EmbeddingError(f"Embedding function returned {len(raw)} vectors for {len(texts)} texts")
        vectors = np.asarray(raw, dtype=np.float32)
        if vectors.ndim != 2:
            raise EmbeddingError("Embedding function returned ragged vectors")
        if self.dimension is None:
            self.dimension = int(vectors.shape[1])
        elif vectors.shape[1] != self.dimension:
            raise EmbeddingError(f"Embedding dimension {vectors.shape[1]} != index dimension {self.dimension}")
        return _normalize(vectors)

    # --- writes ---------------------------------------------------------

    def add(self, embedding, metadata: VectorMetadata) -> IndexPosition:
        """Append one vector; its position is the current size."""
        vector = np.asarray(embedding, dtype=np.float32).reshape(-1)
        with self._lock:
            if self.dimension is None:
                self.dimension = int(vector.shape[0])
            if vector.shape[0] != self.dimension:
                raise EmbeddingError(f"Embedding dimension {vector.shape[0]} != index dimension {self.dimension}")
            state = self._state
            vectors = state.vectors
            if vectors.shape[1] != self.dimension:
                vectors = np.zeros((0, self.dimension), dtype=np.float32)
            if state.count >= len(vectors):
                grown = np.zeros((max(_MIN_CAPACITY, len(vectors) * 2), self.dimension), dtype=np.float32)
                grown[: state.count] = vectors[: state.count]
                vectors = grown
            position = IndexPosition(slot=state.count)
            vectors[state.count] = _normalize(vector)
            state.metadata.append(metadata.model_copy(update={"position": position}))
            self._state = _IndexState(vectors, state.count + 1, state.metadata)
            self._maybe_autosave()
        return position

    def add_metadata(self, metadata: VectorMetadata) -> IndexPosition:
        """Embed the metadata's own text (content + entity context) and append it."""
        vector = self.embed([embedding_text(metadata)])[0]
        return self.add(vector, metadata)

    def soft_delete(self, message_id: str) -> int:
        """Tag every live entry of `message_id` deleted. Returns how many were tagged."""
        tagged = 0
        with self._lock:
            metadata = self._state.metadata
            for i, meta in enumerate(metadata):
                if meta.message_id == message_id and not meta.deleted:
                    metadata[i] = meta.model_copy(update={"deleted": True})
                    tagged += 1
            if tagged:
                self._maybe_autosave()
        return tagged

    def compact(self, force: bool = False) -> bool:
        """
        Rebuild the arena from live entries, re-embedding their stored text.
        Runs when the deleted fraction exceeds the threshold (or when forced).
        Returns True if a rebuild happened.
        """
        with self._lock:
            state = self._state
            if state.count == 0 or (not force and not self.needs_compaction()):
                return False
            live = [m for m in state.metadata[: state.count] if not m.deleted]
            dropped = state.count - len(live)
            if live:
                vectors = self.embed([embedding_text(m) for m in live])
            else:
                vectors = np.zeros((0, self.dimension or 0), dtype=np.float32)
            metadata = [m.model_copy(update={"position": IndexPosition(slot=i)}) for i, m in enumerate(live)]
            self._state = _IndexState(vectors, len(metadata), metadata)
            self.save()
        logger.info("Compacted vector index: dropped %d deleted vectors, %d remain", dropped, len(live))
        return True

    # --- reads ----------------------------------------------------------

    def search(
        self,
        query_embedding,
        k: int = 10,
        predicate: Callable[[VectorMetadata], bool] | None = None,
    ) -> list[VectorHit]:
        """
        Top `k * overfetch` neighbours by inner product; deleted entries and
        scores under the threshold are skipped, then `predicate` filters and the
        result is trimmed to `k`.
        """
        state = self._state
        if state.count == 0 or k <= 0:
            return []
        query = _normalize(np.asarray(query_embedding, dtype=np.float32).reshape(-1))
        if query.shape[0] != state.vectors.shape[1]:
            raise EmbeddingError(f"Query dimension {query.shape[0]} != index dimension {state.vectors.shape[1]}")
        scores = state.vectors[: state.count] @ query
        fetch = min(state.count, k * self.overfetch)
        candidates = np.argpartition(-scores, fetch - 1)[:fetch]
        candidates = candidates[np.argsort(-scores[candidates], kind="stable")]
        hits: list[VectorHit] = []
        for slot in candidates:
            meta = state.metadata[int(slot)]
            score = float(scores[slot])
            if meta.deleted or score < self.threshold:
                continue
            if predicate is not None and not predicate(meta):
                continue
            hits.append(VectorHit(position=IndexPosition(slot=int(slot)), score=score, metadata=meta))
            if len(hits) >= k:
                break
        return hits

    def search_text(
        self,
        text: str,
        k: int = 10,
        vector_filter: VectorFilter | None = None,
        entities: EntityLists | None = None,
    ) -> list[VectorHit]:
        """Embed the query (with entity context folded in) and search."""
        if self._state.count == 0:
            return []
        entities = entities or EntityLists()
        query = build_embedding_text(text, entities.people, entities.places, entities.activities)
        vector = self.embed([query])[0]
        return self.search(vector, k, vector_filter.matches if vector_filter else None)

    @property
    def size(self) -> int:
        return self._state.count

    def active_count(self) -> int:
        state = self._state
        return sum(1 for m in state.metadata[: state.count] if not m.deleted)

    def deleted_fraction(self) -> float:
        state = self._state
        if state.count == 0:
            return 0.0
        return (state.count - self.active_count()) / state.count

    def needs_compaction(self) -> bool:
        return self.deleted_fraction() > self.compaction_threshold

    def positions(self) -> list[IndexPosition]:
        state = self._state
        return [m.position for m in state.metadata[: state.count] if m.position is not None]

    def entries(self, message_id: str) -> list[VectorMetadata]:
        state = self._state
        return [m for m in state.metadata[: state.count] if m.message_id == message_id]

    def stats(self) -> IndexStats:
        state = self._state
        live = [m for m in state.metadata[: state.count] if not m.deleted]
        languages = Counter(lang for m in live for lang in m.languages)
        return IndexStats(
            total_vectors=state.count,
            active_vectors=len(live),
            deleted_vectors=state.count - len(live),
            scheduling_messages=sum(1 for m in live if m.has_scheduling),
            messages_with_urls=sum(1 for m in live if m.has_urls),
            language_distribution=dict(languages),
            dimension=self.dimension,
            model_name=self.model_name,
        )
