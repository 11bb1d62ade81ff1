"""
catalog_index.py — in-memory catalog entries + their embeddings.

Read-mostly. Every read works on one immutable snapshot (entries by code, a
code-sorted embedding matrix); every write builds a fresh snapshot under a
lock and swaps the reference in one assignment. Readers therefore never see a
half-written vector, and never block on writers.

Queries:
  nearest(vector, k)            k closest embedded entries, distance ascending,
                                ties by code ascending
  by_code(code)                 exact lookup, NotFound on miss
  by_prefix_or_suffix(fragment) "did you mean" candidates, code ascending
"""
from __future__ import annotations

import dataclasses
import logging
import threading
from dataclasses import dataclass, field
from enum import Enum
from typing import Iterable, Optional

import numpy as np

from errors import ConfigurationError, InvalidInput, NotFound

logger = logging.getLogger(__name__)

METRICS = ("cosine", "euclidean")


class Segment(str, Enum):
    PREMIUM  = "premium"
    STANDARD = "standard"
    ECONOMY  = "economy"


@dataclass(frozen=True)
class CatalogEntry:
    code: str                                   # unique business identifier
    description: str
    brand: str = ""
    manufacturer_code: str = ""
    stock_flag: bool = False
    cost_list: Optional[float] = None
    segment: Optional[Segment] = None
    embedding: Optional[np.ndarray] = field(default=None, compare=False, repr=False)
    embedding_confidence: float = 0.0           # confidence of the text that was embedded

    @property
    def has_embedding(self) -> bool:
        return self.embedding is not None

    def as_dict(self) -> dict:
        return {
            "code": self.code,
            "description": self.description,
            "brand": self.brand,
            "manufacturer_code": self.manufacturer_code,
            "stock_flag": self.stock_flag,
            "cost_list": self.cost_list,
            "segment": self.segment.value if self.segment else None,
        }


@dataclass(frozen=True)
class _Snapshot:
    entries: dict[str, CatalogEntry]
    sorted_codes: tuple[str, ...]      # every code, ascending
    embedded_codes: tuple[str, ...]    # codes with an embedding, ascending
    matrix: np.ndarray                 # rows aligned with embedded_codes


class CatalogIndex:

    def __init__(self, dimension: int, metric: str = "cosine", max_suggestions: int = 10):
        if dimension <= 0:
            raise ConfigurationError(f"Invalid index dimension: {dimension}")
        if metric not in METRICS:
            raise ConfigurationError(f"Unknown distance metric '{metric}'. Available: {', '.join(METRICS)}")
        self._dimension = dimension
        self._metric = metric
        self._max_suggestions = max_suggestions
        self._write_lock = threading.Lock()
        self._snapshot = self._build({})

    # ── Properties ─────────────────────────────────────────────────────────────

    @property
    def dimension(self) -> int:
        return self._dimension

    @property
    def metric(self) -> str:
        return self._metric

    def __len__(self) -> int:
        return len(self._snapshot.entries)

    @property
    def embedded_count(self) -> int:
        return len(self._snapshot.embedded_codes)

    # ── Snapshot construction ──────────────────────────────────────────────────

    def _prepare(self, vector: np.ndarray) -> np.ndarray:
        vec = np.asarray(vector, dtype=np.float32).reshape(-1)
        if vec.shape != (self._dimension,):
            raise ConfigurationError(
                f"Vector has {vec.size} dimensions; index dimension is {self._dimension}"
            )
        return vec

    def _build(self, entries: dict[str, CatalogEntry]) -> _Snapshot:
        sorted_codes = tuple(sorted(entries))
        embedded = tuple(c for c in sorted_codes if entries[c].has_embedding)
        if embedded:
            matrix = np.vstack([entries[c].embedding for c in embedded]).astype(np.float32)
            if self._metric == "cosine":
                norms = np.linalg.norm(matrix, axis=1, keepdims=True)
                matrix = matrix / np.where(norms == 0, 1.0, norms)
        else:
            matrix = np.zeros((0, self._dimension), dtype=np.float32)
        matrix.setflags(write=False)
        return _Snapshot(
            entries=entries,
            sorted_codes=sorted_codes,
            embedded_codes=embedded,
            matrix=matrix,
        )

    def _freeze(self, entry: CatalogEntry) -> CatalogEntry:
        if entry.embedding is None:
            return entry
        vec = self._prepare(entry.embedding).copy()
        vec.setflags(write=False)
        return dataclasses.replace(entry, embedding=vec)

    # ── Writes ─────────────────────────────────────────────────────────────────

    def load(self, entries: Iterable[CatalogEntry]) -> None:
        """Replace the whole catalog. Raises ValueError on a duplicate code."""
        fresh: dict[str, CatalogEntry] = {}
        for entry in entries:
            if entry.code in fresh:
                raise ValueError(f"Duplicate catalog code '{entry.code}'")
            fresh[entry.code] = self._freeze(entry)
        snapshot = self._build(fresh)
        with self._write_lock:
            self._snapshot = snapshot
        logger.info(
            "Catalog index loaded: %d entries, %d embedded (dim=%d, metric=%s)",
            len(fresh), len(snapshot.embedded_codes), self._dimension, self._metric,
        )

    def upsert(self, entry: CatalogEntry) -> None:
        """Insert or update one entry. The stored embedding is kept when the new
        entry has none, or has one computed from lower-confidence text."""
        entry = self._freeze(entry)
        with self._write_lock:
            entries = dict(self._snapshot.entries)
            current = entries.get(entry.code)
            if current is not None and current.has_embedding and (
                not entry.has_embedding
                or entry.embedding_confidence < current.embedding_confidence
            ):
                if entry.has_embedding:
                    logger.info(
                        "Kept embedding for %s (stored confidence %.2f > new %.2f)",
                        entry.code, current.embedding_confidence, entry.embedding_confidence,
                    )
                entry = dataclasses.replace(
                    entry,
                    embedding=current.embedding,
                    embedding_confidence=current.embedding_confidence,
                )
            entries[entry.code] = entry
            self._snapshot = self._build(entries)

    def set_embeddings(self, items: Iterable[tuple[str, np.ndarray, float]]) -> list[str]:
        """
        Backfill embeddings in one snapshot swap. Returns the codes written.

        An embedding is never replaced by one computed from lower-confidence
        text; such writes are skipped. Unknown codes raise NotFound.
        """
        prepared = [(code, self._prepare(vec), conf) for code, vec, conf in items]
        written: list[str] = []
        with self._write_lock:
            entries = dict(self._snapshot.entries)
            for code, vec, confidence in prepared:
                current = entries.get(code)
                if current is None:
                    raise NotFound(f"No catalog entry with code '{code}'")
                if current.has_embedding and confidence < current.embedding_confidence:
                    logger.info(
                        "Kept embedding for %s (stored confidence %.2f > new %.2f)",
                        code, current.embedding_confidence, confidence,
                    )
                    continue
                frozen = vec.copy()
                frozen.setflags(write=False)
                entries[code] = dataclasses.replace(
                    current, embedding=frozen, embedding_confidence=confidence,
                )
                written.append(code)
            if written:
                self._snapshot = self._build(entries)
        return written

    # ── Reads ──────────────────────────────────────────────────────────────────

    def missing_embeddings(self, limit: int) -> list[CatalogEntry]:
        snap = self._snapshot
        missing = [snap.entries[c] for c in snap.sorted_codes if not snap.entries[c].has_embedding]
        return missing[:limit]

    def nearest(self, vector: np.ndarray, k: int) -> list[tuple[CatalogEntry, float]]:
        """
        Up to k embedded entries closest to `vector`, as (entry, distance),
        distance ascending, ties broken by code ascending.
        """
        if isinstance(k, bool) or not isinstance(k, (int, np.integer)) or k <= 0:
            raise InvalidInput(f"k must be a positive integer, got {k!r}")
        query = self._prepare(vector)

        snap = self._snapshot
        if not snap.embedded_codes:
            return []

        if self._metric == "cosine":
            norm = float(np.linalg.norm(query))
            unit = query / norm if norm else query
            distances = 1.0 - snap.matrix @ unit
            distances = np.clip(distances, 0.0, 2.0)
        else:
            distances = np.linalg.norm(snap.matrix - query, axis=1)

        # Rows are already in code order, so row position is the code tie-break
        order = np.lexsort((np.arange(len(distances)), distances))[:k]
        return [
            (snap.entries[snap.embedded_codes[i]], float(distances[i]))
            for i in order
        ]

    def by_code(self, code: str) -> CatalogEntry:
        entry = self._snapshot.entries.get((code or "").strip())
        if entry is None:
            raise NotFound(f"No catalog entry with code '{code}'")
        return entry

    def by_prefix_or_suffix(self, fragment: str, limit: Optional[int] = None) -> list[CatalogEntry]:
        """Entries whose code starts or ends with `fragment` (case-insensitive)."""
        needle = (fragment or "").strip().casefold()
        if not needle:
            raise InvalidInput("Code fragment is empty")
        limit = self._max_suggestions if limit is None else limit
        if limit <= 0:
            return []

        snap = self._snapshot
        found: list[CatalogEntry] = []
        for code in snap.sorted_codes:
            folded = code.casefold()
            if folded.startswith(needle) or folded.endswith(needle):
                found.append(snap.entries[code])
                if len(found) >= limit:
                    break
        return found
