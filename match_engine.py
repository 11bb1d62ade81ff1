"""
match_engine.py — lexical + vector scoring, pairwise equivalence and ranking.

Two signals, blended:
  lexical  mean of rapidfuzz token_set_ratio and token_sort_ratio on normalised
           text; exact brand/model tokens ("850w", "20oz") weigh here
  vector   1 − cosine distance of the two embeddings; paraphrases and
           synonyms that share few tokens still score

    combined = w_lex · lexical + w_vec · vector      (weights normalised to sum 1)

Pairwise: matched = combined ≥ threshold. Both signals are symmetric, so
is_match(a, b) and is_match(b, a) agree exactly.

Ranking: candidates from CatalogIndex.nearest() are re-scored against the
query text and sorted by combined desc, then distance asc, then code asc.
"""
from __future__ import annotations

import logging
from dataclasses import dataclass
from enum import Enum
from typing import Optional

import numpy as np
from rapidfuzz import fuzz

import text_normalize
from catalog_index import CatalogEntry, Segment
from embeddings import EmbeddingProvider
from errors import ConfigurationError, InvalidInput

logger = logging.getLogger(__name__)


class SimilarityBand(str, Enum):
    EXACT       = "EXACT"
    EQUIVALENT  = "EQUIVALENT"
    COMPATIBLE  = "COMPATIBLE"
    ALTERNATIVE = "ALTERNATIVE"
    DIFFERENT   = "DIFFERENT"


DEFAULT_BANDS: dict[SimilarityBand, float] = {
    SimilarityBand.EXACT:       0.98,
    SimilarityBand.EQUIVALENT:  0.94,
    SimilarityBand.COMPATIBLE:  0.88,
    SimilarityBand.ALTERNATIVE: 0.82,
}


@dataclass
class MatchCandidate:
    """One ranked catalog hit. `entry` is borrowed from the index."""
    entry: CatalogEntry
    lexical_score: float
    vector_score: float
    combined_score: float
    distance: float
    band: SimilarityBand
    rank: int = 0
    segment: Optional[Segment] = None

    def as_dict(self) -> dict:
        data = self.entry.as_dict()
        data.update({
            "rank": self.rank,
            "lexical_score": round(self.lexical_score, 4),
            "vector_score": round(self.vector_score, 4),
            "combined_score": round(self.combined_score, 4),
            "distance": round(self.distance, 4),
            "similarity": self.band.value,
            "segment": self.segment.value if self.segment else data["segment"],
        })
        return data


@dataclass(frozen=True)
class MatchResult:
    matched: bool
    confidence: float
    lexical_score: float
    vector_score: float
    band: SimilarityBand

    def as_dict(self) -> dict:
        return {
            "matched": self.matched,
            "confidence": round(self.confidence, 4),
            "lexical_score": round(self.lexical_score, 4),
            "vector_score": round(self.vector_score, 4),
            "similarity": self.band.value,
        }


def lexical_similarity(a: str, b: str) -> float:
    """0..1, order-insensitive token comparison of the normalised texts."""
    na, nb = text_normalize.normalize(a), text_normalize.normalize(b)
    if not na or not nb:
        return 0.0
    score = (fuzz.token_set_ratio(na, nb) + fuzz.token_sort_ratio(na, nb)) / 200.0
    return min(1.0, max(0.0, score))


def vector_similarity(va: np.ndarray, vb: np.ndarray) -> float:
    """1 − cosine distance, clipped to 0..1."""
    na, nb = float(np.linalg.norm(va)), float(np.linalg.norm(vb))
    if na == 0.0 or nb == 0.0:
        return 0.0
    cosine = float(np.dot(va, vb)) / (na * nb)
    return min(1.0, max(0.0, cosine))


def similarity_from_distance(distance: float, metric: str) -> float:
    if metric == "cosine":
        return min(1.0, max(0.0, 1.0 - distance))
    return 1.0 / (1.0 + distance)


class MatchEngine:

    def __init__(
        self,
        embedder: EmbeddingProvider,
        lexical_weight: float = 0.4,
        vector_weight: float = 0.6,
        threshold: float = 0.75,
        bands: Optional[dict[SimilarityBand, float]] = None,
        metric: str = "cosine",
    ):
        if lexical_weight < 0 or vector_weight < 0 or lexical_weight + vector_weight <= 0:
            raise ConfigurationError(
                f"Match weights must be non-negative with a positive sum "
                f"(lexical={lexical_weight}, vector={vector_weight})"
            )
        total = lexical_weight + vector_weight
        self._embedder = embedder
        self._w_lex = lexical_weight / total
        self._w_vec = vector_weight / total
        self._threshold = threshold
        self._metric = metric
        # Highest threshold first so classify() can return on the first hit
        self._bands = sorted((bands or DEFAULT_BANDS).items(), key=lambda kv: kv[1], reverse=True)

    @property
    def threshold(self) -> float:
        return self._threshold

    def combine(self, lexical: float, vector: float) -> float:
        return self._w_lex * lexical + self._w_vec * vector

    def classify(self, score: float) -> SimilarityBand:
        for band, floor in self._bands:
            if score >= floor:
                return band
        return SimilarityBand.DIFFERENT

    # ── Pairwise ───────────────────────────────────────────────────────────────

    def score_pair(self, text_a: str, text_b: str, vec_a: np.ndarray, vec_b: np.ndarray) -> MatchResult:
        lexical = lexical_similarity(text_a, text_b)
        vector = vector_similarity(vec_a, vec_b)
        combined = self.combine(lexical, vector)
        return MatchResult(
            matched=combined >= self._threshold,
            confidence=combined,
            lexical_score=lexical,
            vector_score=vector,
            band=self.classify(combined),
        )

    async def is_match(self, text_a: str, text_b: str) -> MatchResult:
        if not (text_a or "").strip() or not (text_b or "").strip():
            raise InvalidInput("Both descriptors must be non-empty")
        vec_a = await self._embedder.embed(text_a)
        vec_b = await self._embedder.embed(text_b)
        return self.score_pair(text_a, text_b, vec_a, vec_b)

    # ── Ranking ────────────────────────────────────────────────────────────────

    def rank(
        self,
        query_text: str,
        neighbours: list[tuple[CatalogEntry, float]],
        limit: Optional[int] = None,
    ) -> list[MatchCandidate]:
        """Re-score nearest() output against the query text; best first."""
        if not (query_text or "").strip():
            raise InvalidInput("Query text is empty")

        candidates = []
        for entry, distance in neighbours:
            lexical = lexical_similarity(query_text, entry.description)
            vector = similarity_from_distance(distance, self._metric)
            combined = self.combine(lexical, vector)
            candidates.append(MatchCandidate(
                entry=entry,
                lexical_score=lexical,
                vector_score=vector,
                combined_score=combined,
                distance=distance,
                band=self.classify(combined),
            ))

        candidates.sort(key=lambda c: (-c.combined_score, c.distance, c.entry.code))
        if limit is not None:
            candidates = candidates[:limit]
        for position, candidate in enumerate(candidates, start=1):
            candidate.rank = position
        return candidates
