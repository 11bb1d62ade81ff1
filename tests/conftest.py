"""
Shared pytest fixtures.

Every test that touches the database or config gets a clean
temporary DATA_DIR via the `tmp_data_dir` fixture so tests
are fully isolated from each other and from the real catalog.db.

Also provides fake inference providers and a manual clock so gate,
extractor, embedding and pipeline tests never touch the network.
"""
from __future__ import annotations

import asyncio
import sys
from pathlib import Path

import numpy as np
import pytest

# ── Make the project root importable without installing the package ────────────
PROJECT_ROOT = Path(__file__).parent.parent
sys.path.insert(0, str(PROJECT_ROOT))

from providers.base import InferenceProvider  # noqa: E402


@pytest.fixture(autouse=True)
def tmp_data_dir(tmp_path, monkeypatch):
    """
    Redirect DATA_DIR to a fresh tmp directory for every test.
    This gives each test a clean SQLite file and prevents cross-test pollution.
    """
    data = tmp_path / "data"
    data.mkdir()
    monkeypatch.setenv("DATA_DIR", str(data))

    # Patch the module-level DB_PATH that was already computed at import time
    import database
    monkeypatch.setattr(database, "DB_PATH", str(data / "catalog.db"))
    monkeypatch.setattr(database, "_DATA_DIR", data)

    # Also reset the internal lock so tests don't share state
    monkeypatch.setattr(database, "_lock", asyncio.Lock())

    # Rejected-code memory of the backfill job is module state
    import backfill
    monkeypatch.setattr(backfill, "_rejected", set())

    yield data


# ── Fakes ─────────────────────────────────────────────────────────────────────

class ManualClock:
    """Monotonic clock the test advances by hand."""

    def __init__(self, start: float = 1000.0):
        self.now = start

    def __call__(self) -> float:
        return self.now

    def advance(self, secs: float) -> None:
        self.now += secs


class FakeProvider(InferenceProvider):
    """
    Vision + embedding provider backed by lookup tables.

    `vectors` maps text → vector; unknown text gets a deterministic vector
    derived from its characters so identical text always embeds the same.
    """

    name = "fake"
    model_id = "fake-1"
    supports_embeddings = True

    def __init__(self, reply: str = "taladro percutor bosch 850w", vectors: dict | None = None, dimension: int = 8):
        self.reply = reply
        self.vectors = vectors or {}
        self.dimension = dimension
        self.describe_calls = 0
        self.embed_calls: list[str] = []

    async def describe_image(self, image_bytes: bytes, media_type: str) -> str:
        self.describe_calls += 1
        return self.reply

    async def embed(self, text: str, dimensions: int) -> list[float]:
        self.embed_calls.append(text)
        if text in self.vectors:
            return list(self.vectors[text])
        return list(text_vector(text, dimensions))


def text_vector(text: str, dimension: int = 8) -> np.ndarray:
    """Deterministic, non-zero pseudo-embedding for arbitrary text."""
    vec = np.zeros(dimension, dtype=np.float32)
    for i, ch in enumerate(text):
        vec[(ord(ch) + i) % dimension] += 1.0
    vec[0] += 0.1
    return vec


def unit(*values: float) -> np.ndarray:
    vec = np.asarray(values, dtype=np.float32)
    return vec / np.linalg.norm(vec)


@pytest.fixture
def clock() -> ManualClock:
    return ManualClock()


@pytest.fixture
def fake_provider() -> FakeProvider:
    return FakeProvider()
