"""String normalization shared by condition matching and interactive aliasing."""
from __future__ import annotations

import re
import unicodedata
from typing import Any

_NON_ALNUM = re.compile(r"[^\w]+|_+", re.UNICODE)


def strip_diacritics(value: str) -> str:
    decomposed = unicodedata.normalize("NFD", value)
    return "".join(ch for ch in decomposed if not unicodedata.combining(ch))


def fold(value: Any) -> str:
    """Case- and diacritic-insensitive form of ``value`` ('' for None)."""
    if value is None:
        return ""
    return strip_diacritics(str(value)).lower()


def loose(value: Any) -> str:
    """Like ``fold`` but also collapses punctuation and whitespace to single spaces."""
    folded = fold(value)
    return " ".join(_NON_ALNUM.sub(" ", folded).split())


def digits_only(value: Any) -> str:
    if value is None:
        return ""
    return re.sub(r"\D+", "", str(value))
