"""
Shared prompt, error classification and base class for all inference providers.

A provider is the raw `infer()` edge of the system: one SDK call, no retries,
no rate limiting (the InferenceGate owns both). Adapters translate their
SDK's exceptions into two outcomes the Gate understands:

  TransientFailure — timeouts, dropped connections, 429, 5xx  → retried
  RejectedInput    — any other 4xx (malformed image, bad request) → not retried
"""
from __future__ import annotations

import logging
from abc import ABC, abstractmethod
from typing import Optional

from errors import RejectedInput, TransientFailure

logger = logging.getLogger(__name__)

# ── Prompt (shared across all providers) ──────────────────────────────────────
# Fixed and deterministic: the same image always gets the same instruction.

DESCRIPTOR_SYSTEM_PROMPT = """You are an expert in identifying industrial products, hand and power tools, and safety equipment.
Look at the photo and reply with ONLY the technical product name, in Spanish, lowercase.

Rules:
- Include brand, model, type, size and visible characteristics
- Use standard industry terminology
- Be specific but terse
- Include text printed on the product when it helps identify it
- No explanations, no punctuation at the end, no quotes

Examples of correct answers:
- martillo carpintero stanley fatmax 20oz
- llave ajustable cromada 10 pulgadas
- taladro percutor bosch 850w azul
- casco seguridad 3m blanco ventilado
- guantes nitrilo negro talla l

If you cannot identify the product with certainty, reply exactly: producto no identificado"""

DESCRIPTOR_USER_PROMPT = "¿Qué producto es este?"


def clean_descriptor(raw: Optional[str]) -> str:
    """
    Normalise a vision model's reply into a descriptor string:
    first non-empty line, fences/quotes/trailing period stripped, lowercased.
    """
    if not raw:
        return ""
    lines = [ln.strip() for ln in raw.strip().splitlines()]
    lines = [ln for ln in lines if ln and not ln.startswith("```")]
    if not lines:
        return ""
    text = lines[0].strip("\"'`“”").rstrip(".").strip()
    return text.lower()


def classify_status(status: Optional[int], message: str) -> Exception:
    """Map an upstream HTTP status to the Gate's failure vocabulary."""
    if status is None or status == 429 or status >= 500:
        return TransientFailure(f"upstream {status}: {message}")
    return RejectedInput(f"upstream rejected request ({status}): {message}")


# ── Abstract base ──────────────────────────────────────────────────────────────

class InferenceProvider(ABC):
    """Base class all inference providers must implement."""

    name: str               # e.g. "openai"
    model_id: str           # e.g. "gpt-4o"
    supports_embeddings: bool = False

    @abstractmethod
    async def describe_image(self, image_bytes: bytes, media_type: str) -> str:
        """Return the model's raw text reply for a product photo."""
        ...

    async def embed(self, text: str, dimensions: int) -> list[float]:
        """Return the embedding vector for `text`."""
        raise NotImplementedError(f"{self.full_name} does not provide embeddings")

    @property
    def full_name(self) -> str:
        return f"{self.name}/{self.model_id}"
