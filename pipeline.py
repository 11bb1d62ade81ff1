"""
pipeline.py — request orchestration over the identification/matching services.

Operations (each one request, stages strictly in order):

  identify_from_image   extract
  find_candidates       embed → retrieve
  search_from_image     extract → embed → retrieve
  is_match              embed (both sides) → score
  lookup_code           exact code, else prefix/suffix suggestions

One overall deadline is split across the stages a request actually runs, in
proportion to STAGE_SHARES. A stage that overruns its share fails the whole
request with Timeout; its in-flight upstream call is cancelled and the Gate
slot released. Retries happen only inside the Gate.

build_pipeline() is the composition root: it constructs and owns the Gate,
the providers, the index and the engines.
"""
from __future__ import annotations

import asyncio
import logging
import time
from contextlib import asynccontextmanager
from dataclasses import dataclass, field
from typing import Awaitable, Callable, Mapping, Optional

import config
import text_normalize
from catalog_index import CatalogEntry, CatalogIndex, Segment
from descriptor_extractor import Descriptor, DescriptorExtractor
from embeddings import EmbeddingProvider
from errors import InvalidInput, NotFound, PipelineError, Timeout
from inference_gate import InferenceGate
from match_engine import MatchCandidate, MatchEngine, MatchResult, SimilarityBand

logger = logging.getLogger(__name__)

SegmentLookup  = Callable[[str], Awaitable[Optional[Segment]]]
AcronymSource  = Callable[[], Awaitable[Mapping[str, str]]]
AuditSink      = Callable[..., Awaitable[None]]


@dataclass
class LookupResult:
    """Exact hit, or "did you mean" suggestions when the code is unknown."""
    entry: Optional[CatalogEntry] = None
    suggestions: list[CatalogEntry] = field(default_factory=list)

    @property
    def found(self) -> bool:
        return self.entry is not None

    def as_dict(self) -> dict:
        return {
            "found": self.found,
            "entry": self.entry.as_dict() if self.entry else None,
            "suggestions": [e.as_dict() for e in self.suggestions],
        }


class _StageBudget:
    """Per-request deadline, split across the stages that request runs."""

    def __init__(
        self,
        deadline_secs: float,
        shares: Mapping[str, float],
        stages: tuple[str, ...],
        clock: Callable[[], float],
    ):
        weights = {s: max(0.0, shares.get(s, 0.0)) for s in stages}
        total = sum(weights.values())
        if total <= 0:
            weights = {s: 1.0 for s in stages}
            total = float(len(stages))
        self._allowance = {s: deadline_secs * w / total for s, w in weights.items()}
        self._clock = clock
        self._expires = clock() + deadline_secs
        self.timings: dict[str, int] = {}

    async def run(self, stage: str, awaitable: Awaitable):
        remaining = self._expires - self._clock()
        allowance = min(self._allowance[stage], remaining)
        if allowance <= 0:
            if asyncio.iscoroutine(awaitable):
                awaitable.close()
            raise Timeout(f"Request deadline exhausted before the {stage} stage")

        t0 = self._clock()
        try:
            return await asyncio.wait_for(awaitable, timeout=allowance)
        except asyncio.TimeoutError as exc:
            raise Timeout(f"{stage} stage exceeded its {allowance:.2f}s share of the deadline") from exc
        finally:
            self.timings[stage] = int((self._clock() - t0) * 1000)


class Pipeline:

    def __init__(
        self,
        extractor: DescriptorExtractor,
        embedder: EmbeddingProvider,
        index: CatalogIndex,
        engine: MatchEngine,
        gate: Optional[InferenceGate] = None,
        segment_lookup: Optional[SegmentLookup] = None,
        acronym_source: Optional[AcronymSource] = None,
        audit_sink: Optional[AuditSink] = None,
        deadline_secs: float = 60.0,
        stage_shares: Optional[Mapping[str, float]] = None,
        rerank_pool_factor: int = 3,
        max_query_chars: int = 500,
        max_k: int = 50,
        clock: Callable[[], float] = time.monotonic,
    ):
        self._extractor = extractor
        self._embedder = embedder
        self._index = index
        self._engine = engine
        self._gate = gate
        self._segment_lookup = segment_lookup
        self._acronym_source = acronym_source
        self._audit_sink = audit_sink
        self._deadline = deadline_secs
        self._shares = dict(stage_shares or {"extract": 0.5, "embed": 0.25, "retrieve": 0.25})
        self._pool_factor = max(1, rerank_pool_factor)
        self._max_query_chars = max_query_chars
        self._max_k = max_k
        self._clock = clock

    @property
    def index(self) -> CatalogIndex:
        return self._index

    @property
    def embedder(self) -> EmbeddingProvider:
        return self._embedder

    @property
    def gate(self) -> Optional[InferenceGate]:
        return self._gate

    def _budget(self, *stages: str) -> _StageBudget:
        return _StageBudget(self._deadline, self._shares, stages, self._clock)

    def _check_k(self, k) -> None:
        if isinstance(k, bool) or not isinstance(k, int) or k <= 0:
            raise InvalidInput(f"k must be a positive integer, got {k!r}")
        if k > self._max_k:
            raise InvalidInput(f"k must be at most {self._max_k}, got {k}")

    def _check_query(self, text) -> None:
        if isinstance(text, str) and len(text) > self._max_query_chars:
            raise InvalidInput(
                f"Query is {len(text)} characters; the limit is {self._max_query_chars}"
            )

    # ── Operations ─────────────────────────────────────────────────────────────

    async def identify_from_image(self, image_bytes: bytes, media_type: str) -> Descriptor:
        async with self._audited("identify", f"<{media_type} {len(image_bytes or b'')} bytes>") as audit:
            budget = self._budget("extract")
            descriptor = await budget.run(
                "extract", self._extractor.from_image(image_bytes, media_type),
            )
            audit["confidence"] = descriptor.extraction_confidence
            audit["timings"] = budget.timings
            return descriptor

    async def find_candidates(self, query_text: str, k: int) -> list[MatchCandidate]:
        """Up to k catalog entries for a free-text query, best first."""
        async with self._audited("search", query_text or "") as audit:
            self._check_k(k)
            self._check_query(query_text)
            descriptor = self._extractor.from_text(query_text)
            budget = self._budget("embed", "retrieve")
            candidates = await self._search(descriptor.text, k, budget)
            audit.update(_summarise(candidates))
            audit["timings"] = budget.timings
            return candidates

    async def search_from_image(
        self, image_bytes: bytes, media_type: str, k: int,
    ) -> tuple[Descriptor, list[MatchCandidate]]:
        async with self._audited("image_search", f"<{media_type} {len(image_bytes or b'')} bytes>") as audit:
            self._check_k(k)
            budget = self._budget("extract", "embed", "retrieve")
            descriptor = await budget.run(
                "extract", self._extractor.from_image(image_bytes, media_type),
            )
            if not descriptor.text:
                audit["timings"] = budget.timings
                return descriptor, []
            candidates = await self._search(descriptor.text, k, budget)
            audit.update(_summarise(candidates))
            audit["timings"] = budget.timings
            return descriptor, candidates

    async def is_match(self, text_a: str, text_b: str) -> MatchResult:
        async with self._audited("match", f"{text_a or ''} | {text_b or ''}") as audit:
            self._check_query(text_a)
            self._check_query(text_b)
            a = self._extractor.from_text(text_a).text
            b = self._extractor.from_text(text_b).text
            budget = self._budget("embed")

            async def _score() -> MatchResult:
                acronyms = await self._acronyms()
                return await self._engine.is_match(
                    text_normalize.expand_acronyms(a, acronyms),
                    text_normalize.expand_acronyms(b, acronyms),
                )

            result = await budget.run("embed", _score())
            audit["confidence"] = result.confidence
            audit["timings"] = budget.timings
            return result

    async def lookup_code(self, code: str) -> LookupResult:
        async with self._audited("lookup", code or "") as audit:
            if not (code or "").strip():
                raise InvalidInput("Product code is empty")
            try:
                entry = self._index.by_code(code)
            except NotFound:
                suggestions = self._index.by_prefix_or_suffix(code)
                if not suggestions:
                    raise
                audit["result_count"] = len(suggestions)
                return LookupResult(suggestions=suggestions)
            audit["top_code"] = entry.code
            audit["result_count"] = 1
            return LookupResult(entry=entry)

    def health(self) -> dict:
        data = {
            "catalog_entries": len(self._index),
            "embedded_entries": self._index.embedded_count,
            "dimension": self._index.dimension,
            "metric": self._index.metric,
        }
        if self._gate is not None:
            data["gate"] = self._gate.stats().as_dict()
        return data

    # ── Stages ─────────────────────────────────────────────────────────────────

    async def _search(self, text: str, k: int, budget: _StageBudget) -> list[MatchCandidate]:
        async def _embed():
            acronyms = await self._acronyms()
            query = text_normalize.expand_acronyms(text, acronyms)
            return query, await self._embedder.embed(query)

        query, vector = await budget.run("embed", _embed())

        async def _retrieve() -> list[MatchCandidate]:
            pool = self._index.nearest(vector, k * self._pool_factor)
            ranked = self._engine.rank(query, pool, limit=k)
            await self._enrich_segments(ranked)
            return ranked

        return await budget.run("retrieve", _retrieve())

    async def _enrich_segments(self, candidates: list[MatchCandidate]) -> None:
        """Attach a segment to each candidate; brand lookups cached per request."""
        cache: dict[str, Optional[Segment]] = {}
        for candidate in candidates:
            entry = candidate.entry
            if entry.segment is not None:
                candidate.segment = entry.segment
                continue
            if self._segment_lookup is None or not entry.brand:
                continue
            brand = entry.brand.strip().upper()
            if brand not in cache:
                cache[brand] = await self._segment_lookup(brand)
            candidate.segment = cache[brand]

    async def _acronyms(self) -> Mapping[str, str]:
        if self._acronym_source is None:
            return {}
        return await self._acronym_source()

    # ── Audit ──────────────────────────────────────────────────────────────────

    @asynccontextmanager
    async def _audited(self, operation: str, query: str):
        record: dict = {"outcome": "ok", "top_code": None, "confidence": None, "result_count": 0}
        t0 = self._clock()
        try:
            yield record
        except PipelineError as exc:
            record["outcome"] = exc.kind
            raise
        except asyncio.CancelledError:
            record["outcome"] = "cancelled"
            raise
        except Exception:
            record["outcome"] = "internal_error"
            raise
        finally:
            latency_ms = int((self._clock() - t0) * 1000)
            timings = record.pop("timings", {})
            logger.info(
                "[%s] %s in %dms %s",
                operation, record["outcome"], latency_ms,
                " ".join(f"{s}={ms}ms" for s, ms in timings.items()),
            )
            await self._write_audit(operation, query, latency_ms, record)

    async def _write_audit(self, operation: str, query: str, latency_ms: int, record: dict) -> None:
        if self._audit_sink is None:
            return
        try:
            await self._audit_sink(
                operation=operation,
                query=query,
                outcome=record["outcome"],
                top_code=record["top_code"],
                confidence=record["confidence"],
                result_count=record["result_count"],
                latency_ms=latency_ms,
            )
        except Exception as exc:
            logger.warning("Audit write failed for %s: %s", operation, exc)


def _summarise(candidates: list[MatchCandidate]) -> dict:
    if not candidates:
        return {"result_count": 0}
    top = candidates[0]
    return {
        "result_count": len(candidates),
        "top_code": top.entry.code,
        "confidence": top.combined_score,
    }


# ── Composition root ──────────────────────────────────────────────────────────

async def build_pipeline() -> Pipeline:
    """Wire every service from config. Raises ConfigurationError on bad wiring."""
    import database as db
    from providers import manager

    gate = InferenceGate(
        max_concurrency=config.GATE_MAX_CONCURRENCY,
        rate_max_calls=config.GATE_RATE_MAX_CALLS,
        rate_window_secs=config.GATE_RATE_WINDOW_SECS,
        max_queue=config.GATE_MAX_QUEUE,
        max_retries=config.GATE_MAX_RETRIES,
        backoff_base_secs=config.GATE_BACKOFF_BASE_SECS,
        backoff_max_secs=config.GATE_BACKOFF_MAX_SECS,
        call_timeout_secs=config.INFERENCE_CALL_TIMEOUT_SECS,
    )

    vision = await manager.build_vision_provider(
        config.VISION_PROVIDER, config.VISION_MODEL, timeout=config.INFERENCE_CALL_TIMEOUT_SECS,
    )
    embedding = await manager.build_embedding_provider(
        config.EMBEDDING_PROVIDER, config.EMBEDDING_MODEL, timeout=config.INFERENCE_CALL_TIMEOUT_SECS,
    )

    extractor = DescriptorExtractor(
        gate, vision,
        max_image_bytes=config.MAX_IMAGE_BYTES,
        allowed_media_types=config.ALLOWED_MEDIA_TYPES,
        unidentified_sentinel=config.UNIDENTIFIED_SENTINEL,
    )
    embedder = EmbeddingProvider(
        gate, embedding, config.VECTOR_DIMENSIONS, cache_size=config.EMBEDDING_CACHE_SIZE,
    )

    index = CatalogIndex(
        config.VECTOR_DIMENSIONS, metric=config.INDEX_METRIC, max_suggestions=config.MAX_SUGGESTIONS,
    )
    embedder.ensure_dimension(index.dimension)
    index.load(await db.load_entries())

    engine = MatchEngine(
        embedder,
        lexical_weight=config.LEXICAL_WEIGHT,
        vector_weight=config.VECTOR_WEIGHT,
        threshold=config.MATCH_THRESHOLD,
        bands={
            SimilarityBand.EXACT:       config.SIMILARITY_EXACT,
            SimilarityBand.EQUIVALENT:  config.SIMILARITY_EQUIVALENT,
            SimilarityBand.COMPATIBLE:  config.SIMILARITY_COMPATIBLE,
            SimilarityBand.ALTERNATIVE: config.SIMILARITY_ALTERNATIVE,
        },
        metric=config.INDEX_METRIC,
    )

    return Pipeline(
        extractor, embedder, index, engine,
        gate=gate,
        segment_lookup=db.get_segment,
        acronym_source=db.get_active_acronyms,
        audit_sink=db.log_request,
        deadline_secs=config.REQUEST_DEADLINE_SECS,
        stage_shares=config.STAGE_SHARES,
        rerank_pool_factor=config.RERANK_POOL_FACTOR,
        max_query_chars=config.MAX_QUERY_CHARS,
        max_k=config.MAX_K,
    )
