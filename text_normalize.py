"""
text_normalize.py — canonical form of product text for lexical comparison.

    "Taladro Percutor BOSCH, 850W (azul)"  →  "taladro percutor bosch 850w azul"

Accents are folded, punctuation becomes whitespace, whitespace is collapsed.
Catalog abbreviations ("tal" → "taladro") are expanded whole-token from the
active acronym table before text is scored or embedded.
"""
from __future__ import annotations

import re
import unicodedata
from typing import Mapping

_PUNCT_RE = re.compile(r"[^\w\s]+", re.UNICODE)
_SPACE_RE = re.compile(r"\s+")


def fold_accents(text: str) -> str:
    decomposed = unicodedata.normalize("NFKD", text)
    return "".join(ch for ch in decomposed if not unicodedata.combining(ch))


def normalize(text: str) -> str:
    text = fold_accents((text or "").lower())
    text = _PUNCT_RE.sub(" ", text.replace("_", " "))
    return _SPACE_RE.sub(" ", text).strip()


def expand_acronyms(text: str, acronyms: Mapping[str, str]) -> str:
    """
    Replace whole tokens found in `acronyms` (keys matched case-insensitively)
    with their expansion. Text without any known abbreviation is returned as-is.
    """
    if not acronyms or not text:
        return text
    table = {k.casefold(): v for k, v in acronyms.items()}
    words = text.split()
    expanded = [table.get(w.casefold().strip(".,;:"), w) for w in words]
    if expanded == words:
        return text
    return " ".join(expanded)
