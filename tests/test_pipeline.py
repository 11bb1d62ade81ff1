"""
Tests for pipeline.py — the request orchestrator.

Covers:
  - find_candidates(): the martillo scenario, k bound, acronym expansion,
    segment enrichment with per-request caching
  - search_from_image(): extract → embed → retrieve order; bad images cost
    zero upstream calls
  - deadline: an overrunning stage fails with Timeout and frees its slot
  - is_match(), lookup_code(), identify_from_image()
  - audit sink: written on success and failure, never fails a request
"""
from __future__ import annotations

import asyncio
from unittest.mock import AsyncMock

import pytest

import config
from catalog_index import CatalogEntry, CatalogIndex, Segment
from conftest import FakeProvider, text_vector
from descriptor_extractor import DescriptorExtractor
from embeddings import EmbeddingProvider
from errors import InvalidInput, NotFound, PayloadTooLarge, Timeout
from inference_gate import InferenceGate
from match_engine import MatchEngine
from pipeline import Pipeline, _StageBudget

MIB = 1024 * 1024
DIM = 8


def catalog_entry(code: str, description: str, brand: str = "", segment=None) -> CatalogEntry:
    return CatalogEntry(
        code=code,
        description=description,
        brand=brand,
        segment=segment,
        embedding=text_vector(description, DIM),
        embedding_confidence=1.0,
    )


CATALOG = [
    catalog_entry("36070020", "martillo stanley 20oz", brand="STANLEY"),
    catalog_entry("36070021", "martillo stanley 16oz", brand="Stanley "),
    catalog_entry("10010001", "casco seguridad 3m blanco", brand="3M", segment=Segment.STANDARD),
    catalog_entry("20020002", "guantes nitrilo negro talla l"),
]


class RecordingProvider(FakeProvider):
    """FakeProvider that logs the order of upstream calls."""

    def __init__(self, *args, describe_delay: float = 0.0, **kwargs):
        super().__init__(*args, **kwargs)
        self.events: list[str] = []
        self.describe_delay = describe_delay

    async def describe_image(self, image_bytes, media_type):
        self.events.append("describe")
        if self.describe_delay:
            await asyncio.sleep(self.describe_delay)
        return await super().describe_image(image_bytes, media_type)

    async def embed(self, text, dimensions):
        self.events.append("embed")
        return await super().embed(text, dimensions)


def make_pipeline(clock, provider=None, entries=None, deadline_secs: float = 5.0, **kwargs) -> Pipeline:
    provider = provider or RecordingProvider()
    gate = InferenceGate(
        max_concurrency=2, rate_max_calls=100, rate_window_secs=60, max_queue=4,
        max_retries=0, clock=clock,
    )
    extractor = DescriptorExtractor(
        gate, provider,
        max_image_bytes=10 * MIB,
        allowed_media_types=config.ALLOWED_MEDIA_TYPES,
        unidentified_sentinel="no identificado",
    )
    embedder = EmbeddingProvider(gate, provider, DIM)
    index = CatalogIndex(DIM)
    index.load(CATALOG if entries is None else entries)
    engine = MatchEngine(embedder)
    return Pipeline(extractor, embedder, index, engine, gate=gate, deadline_secs=deadline_secs, **kwargs)


# ── find_candidates ───────────────────────────────────────────────────────────

@pytest.mark.asyncio
class TestFindCandidates:
    async def test_martillo_scenario(self, clock):
        pipeline = make_pipeline(clock)
        candidates = await pipeline.find_candidates("martillo stanley 20oz", 2)

        assert len(candidates) <= 2
        assert candidates[0].entry.code == "36070020"
        assert candidates[0].rank == 1

    async def test_results_sorted_and_bounded(self, clock):
        pipeline = make_pipeline(clock)
        candidates = await pipeline.find_candidates("martillo", 3)

        assert len(candidates) == 3
        keys = [(-c.combined_score, c.distance, c.entry.code) for c in candidates]
        assert keys == sorted(keys)

    @pytest.mark.parametrize("k", [0, -3, "2", True])
    async def test_invalid_k(self, clock, k):
        provider = RecordingProvider()
        pipeline = make_pipeline(clock, provider)
        with pytest.raises(InvalidInput):
            await pipeline.find_candidates("martillo", k)
        assert provider.events == []

    async def test_k_above_limit(self, clock):
        provider = RecordingProvider()
        pipeline = make_pipeline(clock, provider, max_k=10)
        with pytest.raises(InvalidInput):
            await pipeline.find_candidates("martillo", 11)
        assert provider.events == []

    async def test_overlong_query_rejected_before_upstream(self, clock):
        provider = RecordingProvider()
        pipeline = make_pipeline(clock, provider, max_query_chars=20)
        with pytest.raises(InvalidInput):
            await pipeline.find_candidates("martillo " * 5, 3)
        with pytest.raises(InvalidInput):
            await pipeline.is_match("martillo", "x" * 21)
        assert provider.events == []

    async def test_empty_query_invalid(self, clock):
        pipeline = make_pipeline(clock)
        with pytest.raises(InvalidInput):
            await pipeline.find_candidates("   ", 3)

    async def test_empty_index_returns_no_candidates(self, clock):
        pipeline = make_pipeline(clock, entries=[])
        assert await pipeline.find_candidates("martillo", 3) == []

    async def test_acronyms_expanded_before_embedding(self, clock):
        provider = RecordingProvider()
        pipeline = make_pipeline(
            clock, provider,
            acronym_source=AsyncMock(return_value={"MART": "martillo"}),
        )
        candidates = await pipeline.find_candidates("mart stanley 20oz", 1)

        assert provider.embed_calls == ["martillo stanley 20oz"]
        assert candidates[0].entry.code == "36070020"

    async def test_segment_enrichment_cached_per_brand(self, clock):
        lookup = AsyncMock(return_value=Segment.PREMIUM)
        pipeline = make_pipeline(clock, segment_lookup=lookup)

        candidates = await pipeline.find_candidates("martillo stanley", 3)
        by_code = {c.entry.code: c for c in candidates}

        assert by_code["36070020"].segment == Segment.PREMIUM
        assert by_code["36070021"].segment == Segment.PREMIUM
        lookup.assert_awaited_once_with("STANLEY")

    async def test_entry_segment_wins_over_lookup(self, clock):
        lookup = AsyncMock(return_value=Segment.ECONOMY)
        pipeline = make_pipeline(clock, segment_lookup=lookup)

        candidates = await pipeline.find_candidates("casco seguridad 3m blanco", 1)
        assert candidates[0].segment == Segment.STANDARD
        lookup.assert_not_awaited()


# ── Image operations ──────────────────────────────────────────────────────────

@pytest.mark.asyncio
class TestImageOperations:
    async def test_identify_from_image(self, clock):
        provider = RecordingProvider(reply="martillo stanley 20oz")
        pipeline = make_pipeline(clock, provider)

        descriptor = await pipeline.identify_from_image(b"\xff\xd8\xff", "image/jpeg")
        assert descriptor.text == "martillo stanley 20oz"
        assert descriptor.extraction_confidence == 0.8
        assert provider.events == ["describe"]

    async def test_search_runs_stages_in_order(self, clock):
        provider = RecordingProvider(reply="martillo stanley 20oz")
        pipeline = make_pipeline(clock, provider)

        descriptor, candidates = await pipeline.search_from_image(b"\xff\xd8\xff", "image/jpeg", 2)

        assert provider.events == ["describe", "embed"]
        assert descriptor.text == "martillo stanley 20oz"
        assert candidates[0].entry.code == "36070020"

    async def test_oversized_image_makes_no_upstream_call(self, clock):
        provider = RecordingProvider()
        pipeline = make_pipeline(clock, provider)

        with pytest.raises(PayloadTooLarge):
            await pipeline.search_from_image(b"\0" * (11 * MIB), "image/jpeg", 3)

        assert provider.events == []
        assert pipeline.gate.stats().submitted == 0

    async def test_empty_descriptor_yields_no_candidates(self, clock):
        provider = RecordingProvider(reply="")
        pipeline = make_pipeline(clock, provider)

        descriptor, candidates = await pipeline.search_from_image(b"GIF89a", "image/gif", 3)
        assert descriptor.extraction_confidence == 0.2
        assert candidates == []
        assert provider.events == ["describe"]


# ── Deadline ──────────────────────────────────────────────────────────────────

@pytest.mark.asyncio
class TestDeadline:
    async def test_slow_extraction_times_out_and_frees_slot(self, clock):
        provider = RecordingProvider(describe_delay=2.0)
        audit = AsyncMock()
        pipeline = make_pipeline(clock, provider, deadline_secs=0.1, audit_sink=audit)

        with pytest.raises(Timeout):
            await pipeline.search_from_image(b"\xff\xd8\xff", "image/jpeg", 3)

        await asyncio.sleep(0)
        assert pipeline.gate.stats().running == 0
        assert "embed" not in provider.events
        assert audit.await_args.kwargs["outcome"] == "timeout"

    async def test_stage_allowances_follow_shares(self, clock):
        budget = _StageBudget(60.0, {"extract": 0.5, "embed": 0.25, "retrieve": 0.25}, ("embed", "retrieve"), clock)
        assert budget._allowance == {"embed": 30.0, "retrieve": 30.0}

    async def test_exhausted_deadline_fails_before_stage(self, clock):
        budget = _StageBudget(1.0, {"embed": 1.0}, ("embed",), clock)
        clock.advance(2.0)

        async def never_run():
            raise AssertionError("stage should not start")

        with pytest.raises(Timeout):
            await budget.run("embed", never_run())


# ── is_match / lookup_code ────────────────────────────────────────────────────

@pytest.mark.asyncio
class TestMatchAndLookup:
    async def test_is_match_identity(self, clock):
        pipeline = make_pipeline(clock)
        result = await pipeline.is_match("martillo stanley 20oz", "martillo stanley 20oz")
        assert result.matched is True

    async def test_is_match_expands_both_sides(self, clock):
        provider = RecordingProvider()
        pipeline = make_pipeline(
            clock, provider,
            acronym_source=AsyncMock(return_value={"TAL": "taladro"}),
        )
        ab = await pipeline.is_match("tal bosch 850w", "taladro bosch 850w")

        assert ab.matched is True
        assert ab.lexical_score == 1.0
        assert provider.embed_calls == ["taladro bosch 850w"]

    async def test_is_match_empty_side(self, clock):
        pipeline = make_pipeline(clock)
        with pytest.raises(InvalidInput):
            await pipeline.is_match("martillo", "")

    async def test_lookup_exact(self, clock):
        result = await make_pipeline(clock).lookup_code("36070020")
        assert result.found
        assert result.entry.description == "martillo stanley 20oz"

    async def test_lookup_suggestions_on_miss(self, clock):
        result = await make_pipeline(clock).lookup_code("3607")
        assert not result.found
        assert [e.code for e in result.suggestions] == ["36070020", "36070021"]

    async def test_lookup_not_found(self, clock):
        with pytest.raises(NotFound):
            await make_pipeline(clock).lookup_code("55555555")


# ── Audit sink ────────────────────────────────────────────────────────────────

@pytest.mark.asyncio
class TestAudit:
    async def test_success_is_logged(self, clock):
        audit = AsyncMock()
        pipeline = make_pipeline(clock, audit_sink=audit)
        await pipeline.find_candidates("martillo stanley 20oz", 2)

        kwargs = audit.await_args.kwargs
        assert kwargs["operation"] == "search"
        assert kwargs["outcome"] == "ok"
        assert kwargs["top_code"] == "36070020"
        assert kwargs["result_count"] == 2

    async def test_error_kind_is_logged(self, clock):
        audit = AsyncMock()
        pipeline = make_pipeline(clock, audit_sink=audit)
        with pytest.raises(InvalidInput):
            await pipeline.find_candidates("martillo", 0)
        assert audit.await_args.kwargs["outcome"] == "invalid_input"

    async def test_failing_sink_does_not_fail_request(self, clock):
        audit = AsyncMock(side_effect=RuntimeError("disk full"))
        pipeline = make_pipeline(clock, audit_sink=audit)

        candidates = await pipeline.find_candidates("martillo stanley 20oz", 1)
        assert candidates[0].entry.code == "36070020"


class TestHealth:
    def test_reports_index_and_gate(self, clock):
        data = make_pipeline(clock).health()
        assert data["catalog_entries"] == 4
        assert data["embedded_entries"] == 4
        assert data["gate"]["submitted"] == 0
