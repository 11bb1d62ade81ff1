"""
descriptor_extractor.py — image or free text → (descriptor text, confidence).

Images are validated locally (byte ceiling, media-type allow-list) before the
Inference Gate is touched, so a bad upload never costs an upstream call or a
slot. Accepted images get one vision call with the fixed prompt from
providers/base.py.

Confidence is deliberately two-level: the vision models return no calibrated
probability, only a sentinel phrase when they cannot identify the item.

  reply contains UNIDENTIFIED_SENTINEL → 0.2   (so does an empty reply)
  any other reply                      → 0.8
  text input                           → 1.0
"""
from __future__ import annotations

import logging
import time
from dataclasses import dataclass
from enum import Enum

from errors import InvalidInput, InvalidMediaType, PayloadTooLarge
from inference_gate import InferenceGate
from providers.base import InferenceProvider, clean_descriptor

logger = logging.getLogger(__name__)

IDENTIFIED_CONFIDENCE   = 0.8
UNIDENTIFIED_CONFIDENCE = 0.2
TEXT_CONFIDENCE         = 1.0


class SourceKind(str, Enum):
    IMAGE = "image"
    TEXT  = "text"


@dataclass(frozen=True)
class Descriptor:
    """Request-scoped canonical product name."""
    text: str
    source_kind: SourceKind
    extraction_confidence: float

    def as_dict(self) -> dict:
        return {
            "descriptor_text": self.text,
            "source_kind": self.source_kind.value,
            "confidence": self.extraction_confidence,
        }


def normalise_media_type(media_type: str) -> str:
    """'Image/JPEG; charset=x' → 'image/jpeg'; 'image/jpg' → 'image/jpeg'."""
    base = (media_type or "").split(";")[0].strip().lower()
    return "image/jpeg" if base == "image/jpg" else base


class DescriptorExtractor:

    def __init__(
        self,
        gate: InferenceGate,
        provider: InferenceProvider,
        max_image_bytes: int,
        allowed_media_types: frozenset[str],
        unidentified_sentinel: str,
    ):
        self._gate = gate
        self._provider = provider
        self._max_image_bytes = max_image_bytes
        self._allowed = allowed_media_types
        self._sentinel = unidentified_sentinel.lower()

    def validate_image(self, image_bytes: bytes, media_type: str) -> str:
        """Return the normalised media type or raise before any upstream call."""
        if not image_bytes:
            raise InvalidInput("Image payload is empty")
        if len(image_bytes) > self._max_image_bytes:
            raise PayloadTooLarge(
                f"Image is {len(image_bytes)} bytes; limit is {self._max_image_bytes}"
            )
        mime = normalise_media_type(media_type)
        if mime not in self._allowed:
            allowed = ", ".join(sorted(self._allowed))
            raise InvalidMediaType(f"Unsupported media type '{media_type}'. Allowed: {allowed}")
        return mime

    def confidence_for(self, text: str) -> float:
        # An empty reply carries no identification either
        if not text or self._sentinel in text.lower():
            return UNIDENTIFIED_CONFIDENCE
        return IDENTIFIED_CONFIDENCE

    async def from_image(self, image_bytes: bytes, media_type: str) -> Descriptor:
        mime = self.validate_image(image_bytes, media_type)

        t0 = time.monotonic()
        raw = await self._gate.submit(
            lambda: self._provider.describe_image(image_bytes, mime),
            label="extract",
        )
        text = clean_descriptor(raw)
        confidence = self.confidence_for(text)

        logger.info(
            "[%s] extracted '%s' (confidence=%.1f) in %dms",
            self._provider.full_name, text, confidence,
            int((time.monotonic() - t0) * 1000),
        )
        return Descriptor(text=text, source_kind=SourceKind.IMAGE, extraction_confidence=confidence)

    def from_text(self, text: str) -> Descriptor:
        cleaned = " ".join((text or "").split())
        if not cleaned:
            raise InvalidInput("Descriptor text is empty")
        return Descriptor(text=cleaned, source_kind=SourceKind.TEXT, extraction_confidence=TEXT_CONFIDENCE)
