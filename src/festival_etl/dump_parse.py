"""festival_etl.dump_parse

Parsing of the legacy MySQL dump.

The dump is a single latin-1 text file holding one
``INSERT INTO `table` VALUES (...),(...);`` statement per legacy table.
Parsing happens in three steps, each a pure function over strings:

  extract_block : full document text → VALUES substring for one table
  split_rows    : VALUES substring   → list of rows of raw cell strings
  coerce_cell   : raw cell string    → None | str | int | float

Quoting follows the dump's conventions: string literals use single quotes
and a doubled ``''`` inside a literal is an escaped quote.
"""

from __future__ import annotations

import re

_NUMERIC_RE = re.compile(r"^[+-]?(?:\d+(?:\.\d*)?|\.\d+)(?:[eE][+-]?\d+)?$")
_INTEGER_RE = re.compile(r"^[+-]?\d+$")


# ---------------------------------------------------------------------------
# Literal block extraction
# ---------------------------------------------------------------------------

def extract_block(document: str, table: str) -> str | None:
    """Return the VALUES list of the first ``INSERT INTO `table``` statement.

    The returned text starts at the first ``(`` after ``VALUES`` and stops
    before the first ``;`` that is not inside a quoted string.  Returns None
    when the header or the VALUES keyword is missing.

    The header match includes the closing backtick, so ``Obra`` never
    matches a table called ``Obras``.  Only the first statement for a table
    is read.
    """
    header = f"INSERT INTO `{table}`"
    start = document.find(header)
    if start == -1:
        return None

    values_idx = document.find("VALUES", start + len(header))
    if values_idx == -1:
        return None

    i = values_idx + len("VALUES")
    length = len(document)
    while i < length and document[i] != "(":
        i += 1

    begin = i
    in_str = False
    while i < length:
        ch = document[i]
        if ch == "'":
            if not in_str:
                in_str = True
            elif i + 1 < length and document[i + 1] == "'":
                i += 1  # escaped ''
            else:
                in_str = False
        elif ch == ";" and not in_str:
            break
        i += 1
    return document[begin:i]


# ---------------------------------------------------------------------------
# Row / cell splitting
# ---------------------------------------------------------------------------

def split_rows(block: str) -> list[list[str]]:
    """Split a VALUES block into rows of trimmed raw cell strings.

    Every top-level ``( ... )`` group is one row.  Parentheses nested inside
    a row (outside quotes) are kept as part of the row text.  Groups with
    only whitespace inside are dropped.
    """
    rows: list[list[str]] = []
    i = 0
    length = len(block)

    while i < length:
        while i < length and block[i] != "(":
            i += 1
        if i >= length:
            break
        i += 1  # skip the opening (

        begin = i
        depth = 1
        in_str = False
        while i < length:
            ch = block[i]
            if ch == "'":
                if not in_str:
                    in_str = True
                elif i + 1 < length and block[i + 1] == "'":
                    i += 1
                else:
                    in_str = False
            elif not in_str and ch == "(":
                depth += 1
            elif not in_str and ch == ")":
                depth -= 1
                if depth == 0:
                    break
            i += 1

        row_text = block[begin:i]
        i += 1  # skip the closing )
        if row_text.strip():
            rows.append(split_cells(row_text))

    return rows


def split_cells(row_text: str) -> list[str]:
    """Split one row's text on commas outside single-quoted strings.

    Escaped ``''`` sequences stay in the cell verbatim; ``coerce_cell``
    collapses them.  Cells are trimmed.  A row with N top-level commas
    always yields N + 1 cells.
    """
    cells: list[str] = []
    current: list[str] = []
    in_str = False
    i = 0
    length = len(row_text)

    while i < length:
        ch = row_text[i]
        if ch == "'":
            if not in_str:
                in_str = True
            elif i + 1 < length and row_text[i + 1] == "'":
                current.append("''")
                i += 2
                continue
            else:
                in_str = False
            current.append(ch)
        elif ch == "," and not in_str:
            cells.append("".join(current).strip())
            current = []
        else:
            current.append(ch)
        i += 1

    cells.append("".join(current).strip())
    return cells


# ---------------------------------------------------------------------------
# Cell coercion
# ---------------------------------------------------------------------------

def coerce_cell(raw: str) -> str | int | float | None:
    """Convert a raw cell string into a Python value.

    ``NULL`` → None, ``'text'`` → ``text`` with ``''`` collapsed to ``'``,
    an unquoted numeric token → int or float, anything else is returned
    unchanged.  Numeric-looking tokens always become numbers, so ``007``
    comes back as ``7``.
    """
    v = raw.strip()
    if v == "NULL":
        return None
    if len(v) >= 2 and v.startswith("'") and v.endswith("'"):
        return v[1:-1].replace("''", "'")
    if _INTEGER_RE.match(v):
        return int(v)
    if _NUMERIC_RE.match(v):
        return float(v)
    return v


def parse_table(document: str, table: str) -> list[list[str]] | None:
    """Extract and split one table's rows; None when its block is missing."""
    block = extract_block(document, table)
    if block is None:
        return None
    return split_rows(block)
