"""
database.py — async SQLite persistence via aiosqlite.

Tables:
  catalog_entries  — product rows; source of the in-memory CatalogIndex and
                     target of embedding backfill writes
  brand_segments   — brand → premium | standard | economy (result enrichment)
  acronyms         — catalog abbreviations expanded in queries
  api_keys         — provider keys (override .env values)
  request_log      — one row per pipeline request (audit sink)

The DB file is created automatically on first run.
"""
from __future__ import annotations

import asyncio
import json
import logging
import os
from datetime import datetime, timezone
from pathlib import Path
from typing import Optional

import aiosqlite
import numpy as np

from catalog_index import CatalogEntry, Segment

logger = logging.getLogger(__name__)

# Store the DB in a dedicated data/ directory so Docker volume mounts work
# correctly (mount ./data:/app/data) and the file survives container restarts.
_DATA_DIR = Path(os.getenv("DATA_DIR", "data"))
_DATA_DIR.mkdir(parents=True, exist_ok=True)

DB_PATH = str(_DATA_DIR / "catalog.db")
_lock = asyncio.Lock()          # serialise schema migrations


# ── Schema ────────────────────────────────────────────────────────────────────

_SCHEMA = """
CREATE TABLE IF NOT EXISTS catalog_entries (
    code                 TEXT    PRIMARY KEY,
    description          TEXT    NOT NULL,
    brand                TEXT    NOT NULL DEFAULT '',
    manufacturer_code    TEXT    NOT NULL DEFAULT '',
    stock_flag           INTEGER NOT NULL DEFAULT 0,
    cost_list            REAL,
    segment              TEXT,
    embedding            TEXT,            -- JSON array of floats, NULL until computed
    embedding_confidence REAL    NOT NULL DEFAULT 0,
    updated_at           TEXT    NOT NULL
);
CREATE INDEX IF NOT EXISTS idx_catalog_brand ON catalog_entries (brand);

CREATE TABLE IF NOT EXISTS brand_segments (
    brand      TEXT PRIMARY KEY,          -- stored upper-cased and trimmed
    segment    TEXT NOT NULL CHECK (segment IN ('premium', 'standard', 'economy')),
    updated_at TEXT NOT NULL
);

CREATE TABLE IF NOT EXISTS acronyms (
    acronym    TEXT    PRIMARY KEY,       -- stored upper-cased
    expansion  TEXT    NOT NULL,
    active     INTEGER NOT NULL DEFAULT 1,
    updated_at TEXT    NOT NULL
);

CREATE TABLE IF NOT EXISTS api_keys (
    key_name   TEXT PRIMARY KEY,
    key_value  TEXT NOT NULL,
    updated_at TEXT NOT NULL
);

CREATE TABLE IF NOT EXISTS request_log (
    id          INTEGER PRIMARY KEY AUTOINCREMENT,
    operation   TEXT    NOT NULL,         -- identify | search | image_search | match | lookup
    query       TEXT    NOT NULL DEFAULT '',
    outcome     TEXT    NOT NULL,         -- ok | error kind
    top_code    TEXT,
    confidence  REAL,
    result_count INTEGER NOT NULL DEFAULT 0,
    latency_ms  INTEGER NOT NULL DEFAULT 0,
    logged_at   TEXT    NOT NULL
);
CREATE INDEX IF NOT EXISTS idx_request_log_at ON request_log (logged_at);
"""


def _now() -> str:
    return datetime.now(timezone.utc).isoformat()


async def init_db() -> None:
    """Create tables if they don't exist. Safe to call multiple times."""
    async with _lock:
        async with aiosqlite.connect(DB_PATH) as db:
            await db.executescript(_SCHEMA)
            await db.commit()
    logger.info("Database initialised at %s", DB_PATH)


# ── Catalog entries ───────────────────────────────────────────────────────────

def _row_to_entry(r: aiosqlite.Row) -> CatalogEntry:
    embedding = None
    if r["embedding"]:
        embedding = np.asarray(json.loads(r["embedding"]), dtype=np.float32)
    return CatalogEntry(
        code=r["code"],
        description=r["description"],
        brand=r["brand"],
        manufacturer_code=r["manufacturer_code"],
        stock_flag=bool(r["stock_flag"]),
        cost_list=r["cost_list"],
        segment=Segment(r["segment"]) if r["segment"] else None,
        embedding=embedding,
        embedding_confidence=r["embedding_confidence"],
    )


# Both CASE arms read the row as it was before the update
_REPLACE_EMBEDDING = (
    "excluded.embedding IS NOT NULL AND (catalog_entries.embedding IS NULL"
    " OR excluded.embedding_confidence >= catalog_entries.embedding_confidence)"
)


async def upsert_entry(entry: CatalogEntry) -> None:
    """
    Insert or update a catalog row. A stored embedding is only replaced by one
    computed from text of equal or higher confidence.
    """
    embedding = json.dumps([float(x) for x in entry.embedding]) if entry.has_embedding else None
    async with aiosqlite.connect(DB_PATH) as db:
        await db.execute(
            """INSERT INTO catalog_entries
               (code, description, brand, manufacturer_code, stock_flag, cost_list,
                segment, embedding, embedding_confidence, updated_at)
               VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
               ON CONFLICT(code) DO UPDATE SET
                 description=excluded.description,
                 brand=excluded.brand,
                 manufacturer_code=excluded.manufacturer_code,
                 stock_flag=excluded.stock_flag,
                 cost_list=excluded.cost_list,
                 segment=excluded.segment,
                 embedding=CASE WHEN {replace}
                     THEN excluded.embedding ELSE catalog_entries.embedding END,
                 embedding_confidence=CASE WHEN {replace}
                     THEN excluded.embedding_confidence ELSE catalog_entries.embedding_confidence END,
                 updated_at=excluded.updated_at""".format(replace=_REPLACE_EMBEDDING),
            (
                entry.code, entry.description, entry.brand, entry.manufacturer_code,
                1 if entry.stock_flag else 0, entry.cost_list,
                entry.segment.value if entry.segment else None,
                embedding, entry.embedding_confidence, _now(),
            ),
        )
        await db.commit()


async def load_entries() -> list[CatalogEntry]:
    """Return every catalog row ordered by code."""
    async with aiosqlite.connect(DB_PATH) as db:
        db.row_factory = aiosqlite.Row
        async with db.execute("SELECT * FROM catalog_entries ORDER BY code") as cursor:
            rows = await cursor.fetchall()
    return [_row_to_entry(r) for r in rows]


async def get_entry(code: str) -> Optional[CatalogEntry]:
    async with aiosqlite.connect(DB_PATH) as db:
        db.row_factory = aiosqlite.Row
        async with db.execute(
            "SELECT * FROM catalog_entries WHERE code = ?", (code,)
        ) as cursor:
            row = await cursor.fetchone()
    return _row_to_entry(row) if row else None


async def save_embedding(code: str, vector: np.ndarray, confidence: float) -> bool:
    """
    Persist a backfilled embedding. Returns False when the row is missing or
    already holds an embedding computed from higher-confidence text.
    """
    payload = json.dumps([float(x) for x in vector])
    async with aiosqlite.connect(DB_PATH) as db:
        cursor = await db.execute(
            """UPDATE catalog_entries
               SET embedding = ?, embedding_confidence = ?, updated_at = ?
               WHERE code = ?
                 AND (embedding IS NULL OR embedding_confidence <= ?)""",
            (payload, confidence, _now(), code, confidence),
        )
        await db.commit()
        return cursor.rowcount > 0


async def count_entries() -> tuple[int, int]:
    """Return (total rows, rows with an embedding)."""
    async with aiosqlite.connect(DB_PATH) as db:
        async with db.execute(
            "SELECT COUNT(*), COUNT(embedding) FROM catalog_entries"
        ) as cur:
            total, embedded = await cur.fetchone()
    return total, embedded


# ── Brand segments ────────────────────────────────────────────────────────────

def _brand_key(brand: str) -> str:
    return (brand or "").strip().upper()


async def get_segment(brand: str) -> Optional[Segment]:
    """Segment for a brand (case/whitespace-insensitive), or None."""
    key = _brand_key(brand)
    if not key:
        return None
    async with aiosqlite.connect(DB_PATH) as db:
        async with db.execute(
            "SELECT segment FROM brand_segments WHERE brand = ?", (key,)
        ) as cur:
            row = await cur.fetchone()
    return Segment(row[0]) if row else None


async def set_segment(brand: str, segment: Segment) -> None:
    key = _brand_key(brand)
    if not key:
        raise ValueError("Brand name is empty.")
    async with aiosqlite.connect(DB_PATH) as db:
        await db.execute(
            """INSERT INTO brand_segments (brand, segment, updated_at)
               VALUES (?, ?, ?)
               ON CONFLICT(brand) DO UPDATE SET
                 segment=excluded.segment,
                 updated_at=excluded.updated_at""",
            (key, Segment(segment).value, _now()),
        )
        await db.commit()


async def delete_segment(brand: str) -> bool:
    async with aiosqlite.connect(DB_PATH) as db:
        cursor = await db.execute(
            "DELETE FROM brand_segments WHERE brand = ?", (_brand_key(brand),)
        )
        await db.commit()
        return cursor.rowcount > 0


async def get_all_segments() -> dict[str, Segment]:
    async with aiosqlite.connect(DB_PATH) as db:
        async with db.execute("SELECT brand, segment FROM brand_segments ORDER BY brand") as cur:
            rows = await cur.fetchall()
    return {r[0]: Segment(r[1]) for r in rows}


# ── Acronyms ──────────────────────────────────────────────────────────────────

async def set_acronym(acronym: str, expansion: str, active: bool = True) -> None:
    key = (acronym or "").strip().upper()
    if not key or not (expansion or "").strip():
        raise ValueError("Acronym and expansion must both be non-empty.")
    async with aiosqlite.connect(DB_PATH) as db:
        await db.execute(
            """INSERT INTO acronyms (acronym, expansion, active, updated_at)
               VALUES (?, ?, ?, ?)
               ON CONFLICT(acronym) DO UPDATE SET
                 expansion=excluded.expansion,
                 active=excluded.active,
                 updated_at=excluded.updated_at""",
            (key, expansion.strip(), 1 if active else 0, _now()),
        )
        await db.commit()


async def get_active_acronyms() -> dict[str, str]:
    """Return {ACRONYM: expansion} for active rows."""
    async with aiosqlite.connect(DB_PATH) as db:
        async with db.execute(
            "SELECT acronym, expansion FROM acronyms WHERE active = 1 ORDER BY acronym"
        ) as cur:
            rows = await cur.fetchall()
    return {r[0]: r[1] for r in rows}


# ── API key operations ────────────────────────────────────────────────────────

async def get_api_key(key_name: str) -> Optional[str]:
    """Return DB-stored value for key_name, or None if not set."""
    async with aiosqlite.connect(DB_PATH) as db:
        async with db.execute(
            "SELECT key_value FROM api_keys WHERE key_name = ?", (key_name,)
        ) as cur:
            row = await cur.fetchone()
            return row[0] if row else None


async def set_api_key(key_name: str, key_value: str) -> None:
    """Insert or replace an API key in the DB."""
    async with aiosqlite.connect(DB_PATH) as db:
        await db.execute(
            """INSERT INTO api_keys (key_name, key_value, updated_at)
               VALUES (?, ?, ?)
               ON CONFLICT(key_name) DO UPDATE SET
                 key_value=excluded.key_value,
                 updated_at=excluded.updated_at""",
            (key_name, key_value, _now()),
        )
        await db.commit()


async def delete_api_key(key_name: str) -> None:
    """Remove a key from DB (falls back to .env value)."""
    async with aiosqlite.connect(DB_PATH) as db:
        await db.execute("DELETE FROM api_keys WHERE key_name = ?", (key_name,))
        await db.commit()


# ── Request log (audit sink) ──────────────────────────────────────────────────

async def log_request(
    operation: str,
    query: str,
    outcome: str,
    top_code: Optional[str] = None,
    confidence: Optional[float] = None,
    result_count: int = 0,
    latency_ms: int = 0,
) -> None:
    """Record one pipeline request."""
    async with aiosqlite.connect(DB_PATH) as db:
        await db.execute(
            """INSERT INTO request_log
               (operation, query, outcome, top_code, confidence, result_count, latency_ms, logged_at)
               VALUES (?, ?, ?, ?, ?, ?, ?, ?)""",
            (operation, query[:500], outcome, top_code, confidence, result_count, latency_ms, _now()),
        )
        await db.commit()


async def get_request_stats() -> dict:
    """Summary of the request log, for /health."""
    async with aiosqlite.connect(DB_PATH) as db:
        async with db.execute("SELECT COUNT(*) FROM request_log") as cur:
            total = (await cur.fetchone())[0]

        async with db.execute(
            "SELECT operation, COUNT(*) FROM request_log GROUP BY operation ORDER BY operation"
        ) as cur:
            per_operation = dict(await cur.fetchall())

        async with db.execute(
            "SELECT outcome, COUNT(*) FROM request_log GROUP BY outcome ORDER BY outcome"
        ) as cur:
            per_outcome = dict(await cur.fetchall())

    return {
        "total_requests": total,
        "per_operation": per_operation,
        "per_outcome": per_outcome,
    }
