"""
Tests for descriptor_extractor.py.

Covers:
  - image validation happens before any gate/upstream call
  - two-level confidence policy (sentinel → 0.2, otherwise 0.8)
  - text input → confidence 1.0
  - media type normalisation
"""
from __future__ import annotations

import pytest

import config
from conftest import FakeProvider
from descriptor_extractor import (
    IDENTIFIED_CONFIDENCE,
    TEXT_CONFIDENCE,
    UNIDENTIFIED_CONFIDENCE,
    DescriptorExtractor,
    SourceKind,
    normalise_media_type,
)
from errors import InvalidInput, InvalidMediaType, PayloadTooLarge
from inference_gate import InferenceGate

MIB = 1024 * 1024


def make_extractor(provider, clock, max_image_bytes: int = 10 * MIB) -> tuple[DescriptorExtractor, InferenceGate]:
    gate = InferenceGate(
        max_concurrency=2, rate_max_calls=100, rate_window_secs=60, max_queue=4,
        backoff_base_secs=0.001, clock=clock,
    )
    extractor = DescriptorExtractor(
        gate, provider,
        max_image_bytes=max_image_bytes,
        allowed_media_types=config.ALLOWED_MEDIA_TYPES,
        unidentified_sentinel="no identificado",
    )
    return extractor, gate


# ── normalise_media_type ──────────────────────────────────────────────────────

class TestNormaliseMediaType:
    def test_lowercases_and_strips_parameters(self):
        assert normalise_media_type("Image/PNG; charset=binary") == "image/png"

    def test_jpg_alias(self):
        assert normalise_media_type("image/jpg") == "image/jpeg"

    def test_empty(self):
        assert normalise_media_type("") == ""


# ── Validation ────────────────────────────────────────────────────────────────

@pytest.mark.asyncio
class TestImageValidation:
    async def test_oversized_image_never_reaches_gate(self, clock):
        provider = FakeProvider()
        extractor, gate = make_extractor(provider, clock)

        with pytest.raises(PayloadTooLarge) as excinfo:
            await extractor.from_image(b"\0" * (11 * MIB), "image/jpeg")

        assert isinstance(excinfo.value, InvalidInput)
        assert provider.describe_calls == 0
        assert gate.stats().submitted == 0

    async def test_bad_media_type_never_reaches_gate(self, clock):
        provider = FakeProvider()
        extractor, gate = make_extractor(provider, clock)

        with pytest.raises(InvalidMediaType):
            await extractor.from_image(b"%PDF-1.4", "application/pdf")
        assert provider.describe_calls == 0
        assert gate.stats().submitted == 0

    async def test_empty_payload_rejected(self, clock):
        extractor, _ = make_extractor(FakeProvider(), clock)
        with pytest.raises(InvalidInput):
            await extractor.from_image(b"", "image/png")

    async def test_image_at_exact_limit_accepted(self, clock):
        provider = FakeProvider()
        extractor, _ = make_extractor(provider, clock, max_image_bytes=16)
        await extractor.from_image(b"x" * 16, "image/webp")
        assert provider.describe_calls == 1


# ── Confidence policy ─────────────────────────────────────────────────────────

@pytest.mark.asyncio
class TestImageExtraction:
    async def test_identified_reply_gets_high_confidence(self, clock):
        provider = FakeProvider(reply="Taladro Percutor Bosch 850W Azul.")
        extractor, gate = make_extractor(provider, clock)

        descriptor = await extractor.from_image(b"\xff\xd8\xff", "image/jpeg")

        assert descriptor.text == "taladro percutor bosch 850w azul"
        assert descriptor.source_kind == SourceKind.IMAGE
        assert descriptor.extraction_confidence == IDENTIFIED_CONFIDENCE == 0.8
        assert gate.stats().succeeded == 1

    async def test_sentinel_reply_gets_low_confidence(self, clock):
        provider = FakeProvider(reply="Producto NO IDENTIFICADO")
        extractor, _ = make_extractor(provider, clock)

        descriptor = await extractor.from_image(b"\x89PNG", "image/png")
        assert descriptor.extraction_confidence == UNIDENTIFIED_CONFIDENCE == 0.2

    async def test_empty_reply_gets_low_confidence(self, clock):
        provider = FakeProvider(reply="")
        extractor, _ = make_extractor(provider, clock)

        descriptor = await extractor.from_image(b"GIF89a", "image/gif")
        assert descriptor.text == ""
        assert descriptor.extraction_confidence == UNIDENTIFIED_CONFIDENCE


class TestConfidenceFor:
    def test_two_levels_only(self, clock):
        extractor, _ = make_extractor(FakeProvider(), clock)
        assert extractor.confidence_for("martillo stanley 20oz") == 0.8
        assert extractor.confidence_for("producto no identificado") == 0.2


class TestFromText:
    def test_text_is_the_descriptor(self, clock):
        extractor, _ = make_extractor(FakeProvider(), clock)
        descriptor = extractor.from_text("  martillo   stanley 20oz ")
        assert descriptor.text == "martillo stanley 20oz"
        assert descriptor.source_kind == SourceKind.TEXT
        assert descriptor.extraction_confidence == TEXT_CONFIDENCE == 1.0

    def test_blank_text_rejected(self, clock):
        extractor, _ = make_extractor(FakeProvider(), clock)
        with pytest.raises(InvalidInput):
            extractor.from_text("   ")

    def test_as_dict(self, clock):
        extractor, _ = make_extractor(FakeProvider(), clock)
        assert extractor.from_text("casco 3m").as_dict() == {
            "descriptor_text": "casco 3m",
            "source_kind": "text",
            "confidence": 1.0,
        }
