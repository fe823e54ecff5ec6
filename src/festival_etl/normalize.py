"""Normalization functions for legacy dump values.

All functions accept the output of ``coerce_cell`` (None, str, int or
float) and return the appropriate type or None.
"""

from __future__ import annotations

import re
from typing import Any

LANGUAGES = frozenset({
    "Welsh",
    "Spanish",
    "English",
    "German",
    "Polish",
    "French",
    "Portuguese",
    "Italian",
})
OTHER_LANGUAGE = "Other"

# Spellings used by the legacy (Spanish-language) application.
LEGACY_LANGUAGE_ALIASES = {
    "Cymraeg": "Welsh",
    "Castellano": "Spanish",
    "Aleman": "German",
    "Polaco": "Polish",
    "Frances": "French",
    "Portugues": "Portuguese",
    "Italiano": "Italian",
    "Otro": OTHER_LANGUAGE,
}

PLACEMENTS = ("1", "2", "3", "mention")
LEGACY_PLACEMENT_ALIASES = {"mencion": "mention"}

COMPETITION_TYPES = ("IND", "GRU")
DEFAULT_COMPETITION_TYPE = "IND"

UNTITLED_WORK = "(untitled)"

_ISO_DATE_RE = re.compile(r"^\d{4}-\d{2}-\d{2}$")
_NUMERIC_TEXT_RE = re.compile(r"^[+-]?(?:\d+(?:\.\d*)?|\.\d+)$")


# ---------------------------------------------------------------------------
# Rule 1: trim
# ---------------------------------------------------------------------------

def trim(value: str | None) -> str | None:
    """Strip leading/trailing whitespace; treat empty string as None."""
    if value is None:
        return None
    v = value.strip()
    return v if v else None


# ---------------------------------------------------------------------------
# Rule 2: blank_to_none
# ---------------------------------------------------------------------------

def blank_to_none(value: Any) -> Any:
    """Map falsy cell values (None, '', 0) to None; keep everything else."""
    return value if value else None


# ---------------------------------------------------------------------------
# Rule 3: to_text
# ---------------------------------------------------------------------------

def to_text(value: Any) -> str | None:
    """Render a cell value as text.

    Integral floats lose their ``.0`` so a legacy id of ``7.0`` and ``7``
    both become ``"7"``.
    """
    if value is None:
        return None
    if isinstance(value, float) and value.is_integer():
        return str(int(value))
    return str(value)


def to_text_id(value: Any) -> str | None:
    """Stringify a numeric legacy id for a textual destination key."""
    if isinstance(value, str):
        return value.strip() or None
    return to_text(value)


# ---------------------------------------------------------------------------
# Rule 4: language enum
# ---------------------------------------------------------------------------

def coerce_language(value: Any) -> str | None:
    """Keep known languages, map anything else (non-null) to 'Other'.

    Legacy spellings ('Castellano', 'Cymraeg', ...) map to their English
    names.
    """
    if value is None:
        return None
    text = to_text(value)
    text = LEGACY_LANGUAGE_ALIASES.get(text, text)
    if text in LANGUAGES or text == OTHER_LANGUAGE:
        return text
    return OTHER_LANGUAGE


# ---------------------------------------------------------------------------
# Rule 5: placement enum
# ---------------------------------------------------------------------------

def coerce_placement(value: Any) -> str | None:
    """Accept '1', '2', '3' or 'mention' (case-sensitive); else None."""
    if value is None:
        return None
    text = trim(to_text(value))
    text = LEGACY_PLACEMENT_ALIASES.get(text, text)
    if text in PLACEMENTS:
        return text
    return None


# ---------------------------------------------------------------------------
# Rule 6: competition type
# ---------------------------------------------------------------------------

def coerce_competition_type(value: Any) -> str:
    """Blank type → 'IND'; otherwise the trimmed text."""
    if not value:
        return DEFAULT_COMPETITION_TYPE
    return trim(to_text(value)) or DEFAULT_COMPETITION_TYPE


# ---------------------------------------------------------------------------
# Rule 7: date_in_year
# ---------------------------------------------------------------------------

def date_in_year(value: Any, year: int) -> str:
    """Move a ``YYYY-MM-DD`` date into ``year``, keeping month and day.

    Anything that is not such a string becomes ``<year>-01-15``.
    """
    if isinstance(value, str):
        v = value.strip()
        if _ISO_DATE_RE.match(v):
            return f"{year}{v[4:]}"
    return f"{year}-01-15"


def positive_int(value: Any) -> int | None:
    """Return value as int when it is a number > 0, else None.

    Numeric text (``'2015'``) counts as a number; the dump quotes some
    numeric columns and not others.
    """
    if isinstance(value, str):
        text = value.strip()
        if not _NUMERIC_TEXT_RE.match(text):
            return None
        value = float(text)
    if isinstance(value, bool) or not isinstance(value, (int, float)):
        return None
    if value <= 0 or (isinstance(value, float) and not value.is_integer()):
        return None
    return int(value)
