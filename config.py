"""
Central configuration — reads from .env file.

Every value is read once at import time from the environment (with .env as
bootstrap) and exposed as a typed module attribute. The composition root in
pipeline.build_pipeline() passes these into the services it constructs, so
nothing below is consulted again mid-request.

API keys are not kept here; they are resolved through key_store.py
(DB first, then environment).
"""
import os
from pathlib import Path

from dotenv import load_dotenv

load_dotenv()


def _float(name: str, default: str) -> float:
    return float(os.getenv(name, default))


def _int(name: str, default: str) -> int:
    return int(os.getenv(name, default))


# ── Storage ───────────────────────────────────────────────────────────────────
# Database and log file live together so a single volume mount captures both.
DATA_DIR: Path = Path(os.getenv("DATA_DIR", "data"))

# ── Inference Gate ────────────────────────────────────────────────────────────
# C: calls in flight at once.  R/T: calls started per sliding window.
GATE_MAX_CONCURRENCY: int    = _int("GATE_MAX_CONCURRENCY", "4")
GATE_RATE_MAX_CALLS: int     = _int("GATE_RATE_MAX_CALLS", "120")
GATE_RATE_WINDOW_SECS: float = _float("GATE_RATE_WINDOW_SECS", "60")
# Callers allowed to wait for a slot before submit() sheds load with Overloaded
GATE_MAX_QUEUE: int          = _int("GATE_MAX_QUEUE", "32")
GATE_MAX_RETRIES: int        = _int("GATE_MAX_RETRIES", "2")
GATE_BACKOFF_BASE_SECS: float = _float("GATE_BACKOFF_BASE_SECS", "0.5")
GATE_BACKOFF_MAX_SECS: float  = _float("GATE_BACKOFF_MAX_SECS", "8")
INFERENCE_CALL_TIMEOUT_SECS: float = _float("INFERENCE_CALL_TIMEOUT_SECS", "45")

# ── Descriptor extraction (vision) ────────────────────────────────────────────
#   openai    → gpt-4o family
#   google    → gemini family
#   anthropic → claude family (vision only, no embeddings)
VISION_PROVIDER: str = os.getenv("VISION_PROVIDER", "openai").lower()
VISION_MODEL: str    = os.getenv("VISION_MODEL", "gpt-4o")

MAX_IMAGE_BYTES: int = _int("MAX_IMAGE_BYTES", str(10 * 1024 * 1024))
ALLOWED_MEDIA_TYPES: frozenset[str] = frozenset({
    "image/jpeg", "image/png", "image/gif", "image/webp",
})
# Phrase the vision model is told to answer with when it cannot identify the item
UNIDENTIFIED_SENTINEL: str = os.getenv("UNIDENTIFIED_SENTINEL", "no identificado").lower()

# ── Embeddings ────────────────────────────────────────────────────────────────
EMBEDDING_PROVIDER: str  = os.getenv("EMBEDDING_PROVIDER", "openai").lower()
EMBEDDING_MODEL: str     = os.getenv("EMBEDDING_MODEL", "text-embedding-3-large")
# Must equal the dimension of the vectors stored in the catalog
VECTOR_DIMENSIONS: int   = _int("VECTOR_DIMENSIONS", "1024")
EMBEDDING_CACHE_SIZE: int = _int("EMBEDDING_CACHE_SIZE", "2048")

# ── Catalog index ─────────────────────────────────────────────────────────────
INDEX_METRIC: str       = os.getenv("INDEX_METRIC", "cosine").lower()   # cosine | euclidean
MAX_SUGGESTIONS: int    = _int("MAX_SUGGESTIONS", "10")
# Query limits: longer queries and larger k are rejected as invalid input
MAX_QUERY_CHARS: int    = _int("MAX_QUERY_CHARS", "500")
MAX_K: int              = _int("MAX_K", "50")
# nearest() is asked for k × factor entries, re-ranked, then cut back to k
RERANK_POOL_FACTOR: int = _int("RERANK_POOL_FACTOR", "3")

# ── Match engine ──────────────────────────────────────────────────────────────
LEXICAL_WEIGHT: float  = _float("LEXICAL_WEIGHT", "0.4")
VECTOR_WEIGHT: float   = _float("VECTOR_WEIGHT", "0.6")
MATCH_THRESHOLD: float = _float("MATCH_THRESHOLD", "0.75")

# Similarity bands reported alongside every score
SIMILARITY_EXACT: float       = _float("SIMILARITY_EXACT", "0.98")
SIMILARITY_EQUIVALENT: float  = _float("SIMILARITY_EQUIVALENT", "0.94")
SIMILARITY_COMPATIBLE: float  = _float("SIMILARITY_COMPATIBLE", "0.88")
SIMILARITY_ALTERNATIVE: float = _float("SIMILARITY_ALTERNATIVE", "0.82")

# ── Orchestrator ──────────────────────────────────────────────────────────────
REQUEST_DEADLINE_SECS: float = _float("REQUEST_DEADLINE_SECS", "60")
STAGE_SHARES: dict[str, float] = {
    "extract":  _float("STAGE_SHARE_EXTRACT", "0.5"),
    "embed":    _float("STAGE_SHARE_EMBED", "0.25"),
    "retrieve": _float("STAGE_SHARE_RETRIEVE", "0.25"),
}

# ── HTTP service ──────────────────────────────────────────────────────────────
SERVER_HOST: str = os.getenv("SERVER_HOST", "0.0.0.0")
SERVER_PORT: int = _int("SERVER_PORT", "8080")
# Bearer token for the /admin routes; they are not mounted when empty
ADMIN_TOKEN: str = os.getenv("ADMIN_TOKEN", "")

# ── Embedding backfill job ────────────────────────────────────────────────────
BACKFILL_ENABLED: bool        = os.getenv("BACKFILL_ENABLED", "true").lower() == "true"
BACKFILL_INTERVAL_SECS: float = _float("BACKFILL_INTERVAL_SECS", "300")
BACKFILL_BATCH_SIZE: int      = _int("BACKFILL_BATCH_SIZE", "50")
