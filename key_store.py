"""
key_store.py — single source of truth for all API keys.

Priority order for every key:
  1. Database (api_keys table)         — takes precedence
  2. Environment variable / .env file  — fallback / bootstrap

Key names (stored in DB as-is, env vars are the uppercase equivalent):
  openai_api_key     →  OPENAI_API_KEY
  google_api_key     →  GOOGLE_API_KEY
  anthropic_api_key  →  ANTHROPIC_API_KEY
"""
from __future__ import annotations

import logging
import os
from typing import Optional

logger = logging.getLogger(__name__)

KNOWN_KEYS = ("openai_api_key", "google_api_key", "anthropic_api_key")

# Lazy import to avoid circular dependency at module load time
_db = None


def _get_db():
    global _db
    if _db is None:
        import database as db
        _db = db
    return _db


async def get(key_name: str) -> Optional[str]:
    """
    Return the value for key_name, checking DB first then env.
    Returns None if not set anywhere.
    """
    try:
        db_val = await _get_db().get_api_key(key_name)
        if db_val:
            return db_val
    except Exception as exc:
        logger.warning("key_store: DB lookup failed for %s: %s", key_name, exc)

    env_val = os.getenv(key_name.upper())
    return env_val or None


async def set(key_name: str, value: str) -> None:
    """Save a key to the DB (overrides .env for all future builds)."""
    await _get_db().set_api_key(key_name, value)


async def delete(key_name: str) -> None:
    """Remove a key from DB (will fall back to .env value if present)."""
    await _get_db().delete_api_key(key_name)


def mask(value: Optional[str]) -> str:
    """Return a masked version safe to log."""
    if not value:
        return "not set"
    if len(value) <= 8:
        return "****"
    return f"{value[:4]}{'*' * (len(value) - 8)}{value[-4:]}"
