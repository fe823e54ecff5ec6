"""festival_etl.column_maps

Declarative positional column maps for the legacy dump.

The legacy dump carries no column names in its INSERT statements, so the
position → destination-field association of every legacy table lives in
legacy_dump.yml, shipped inside the package.  This module:

  - Loads and validates that YAML file into TableMap objects
  - Applies a TableMap to one parsed row, checking that the row is wide
    enough before any positional access (RowShapeAnomaly otherwise)
  - Holds the transform registry referenced by name from the YAML

Usage:
    from festival_etl.column_maps import apply_table_map, load_column_maps

    column_maps = load_column_maps()
    for table_map in column_maps.tables:
        record = apply_table_map(table_map, row, row_number=1)
"""

from __future__ import annotations

import hashlib
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Callable

import yaml

from festival_etl.dump_parse import coerce_cell
from festival_etl.normalize import (
    UNTITLED_WORK,
    blank_to_none,
    coerce_competition_type,
    coerce_language,
    coerce_placement,
    to_text,
    to_text_id,
)

# ---------------------------------------------------------------------------
# Default column map location
# ---------------------------------------------------------------------------

DEFAULT_COLUMN_MAP_PATH = Path(__file__).with_name("legacy_dump.yml")

# ---------------------------------------------------------------------------
# Destination schema (see migrations/0001_festival_schema.sql)
# ---------------------------------------------------------------------------

DESTINATION_TABLES: dict[str, tuple[str, ...]] = {
    "edition": ("year", "committee", "committee_img", "presenters", "presenters_img"),
    "category": ("id", "name", "name_welsh"),
    "competition": (
        "id", "category_id", "description", "language", "year", "type",
        "extra_text", "rank", "preliminary",
    ),
    "participant": (
        "id", "name", "surname", "document_id", "birth_date", "nationality",
        "residence", "email", "phone", "type", "active",
    ),
    "registration": (
        "id", "participant_id", "competition_id", "pseudonym", "registered_at",
        "year", "dropped",
    ),
    "work": (
        "id", "participant_id", "display_name", "placement", "competition_id",
        "title", "date", "video_url", "photo_url",
    ),
    "upload": ("id", "year", "filename", "description"),
}

# Tables whose integer primary key is backed by an identity sequence.
IDENTITY_TABLES = frozenset({"category", "participant", "registration", "work", "upload"})

REQUIRED_TABLE_KEYS = frozenset({"legacy_table", "destination", "primary_key", "columns"})

# ---------------------------------------------------------------------------
# Transforms
# ---------------------------------------------------------------------------

def _zero_if_null(value: Any) -> Any:
    return 0 if value is None else value


def _text_zero_if_null(value: Any) -> str:
    return to_text(_zero_if_null(value))  # type: ignore[return-value]


def _blank_to_empty(value: Any) -> Any:
    return value if value else ""


def _untitled_if_blank(value: Any) -> Any:
    return value if value else UNTITLED_WORK


TRANSFORMS: dict[str, Callable[[Any], Any]] = {
    "cell": lambda value: value,
    "blank_to_null": blank_to_none,
    "blank_to_empty": _blank_to_empty,
    "text_id": to_text_id,
    "language": coerce_language,
    "placement": coerce_placement,
    "competition_type": coerce_competition_type,
    "zero_if_null": _zero_if_null,
    "text_zero_if_null": _text_zero_if_null,
    "untitled_if_blank": _untitled_if_blank,
}


# ---------------------------------------------------------------------------
# Exceptions
# ---------------------------------------------------------------------------

class ColumnMapValidationError(ValueError):
    """Raised when the column map YAML fails schema validation."""


class RowShapeAnomaly(Exception):
    """Raised when a row has fewer cells than its table map reads."""

    def __init__(self, legacy_table: str, row_number: int, expected: int, actual: int) -> None:
        self.legacy_table = legacy_table
        self.row_number = row_number
        self.expected = expected
        self.actual = actual
        super().__init__(
            f"row_shape_anomaly: table={legacy_table!r} row={row_number} "
            f"needs {expected} cells, got {actual}"
        )


# ---------------------------------------------------------------------------
# Dataclasses
# ---------------------------------------------------------------------------

@dataclass(frozen=True)
class ColumnRule:
    source: int
    field: str
    transform: str = "cell"


@dataclass(frozen=True)
class ParentRef:
    """A parent row (``table.key = record[field]``) ensured before the child."""

    table: str
    key: str
    field: str


@dataclass
class TableMap:
    legacy_table: str
    destination: str
    primary_key: str
    columns: list[ColumnRule]
    parents: list[ParentRef] = field(default_factory=list)
    require_positive: str | None = None
    replace: bool = False

    @property
    def min_row_length(self) -> int:
        return max(rule.source for rule in self.columns) + 1

    @property
    def fields(self) -> list[str]:
        return [rule.field for rule in self.columns]


@dataclass
class ColumnMapSet:
    """Parsed, validated column maps in import order."""

    version: str
    yaml_hash: str
    tables: list[TableMap]
    raw_yaml: str = field(repr=False, default="")

    def get(self, legacy_table: str) -> TableMap | None:
        for table_map in self.tables:
            if table_map.legacy_table == legacy_table:
                return table_map
        return None


# ---------------------------------------------------------------------------
# Loader + validator
# ---------------------------------------------------------------------------

def load_column_maps(yaml_path: Path | None = None) -> ColumnMapSet:
    """Load, validate, and return the column maps from a YAML file.

    Raises:
        ColumnMapValidationError: If the file does not match the schema.
        FileNotFoundError: If the YAML file does not exist.
    """
    path = yaml_path or DEFAULT_COLUMN_MAP_PATH
    raw = path.read_text(encoding="utf-8")
    data: dict[str, Any] = yaml.safe_load(raw)
    validate_column_maps(data)
    return ColumnMapSet(
        version=str(data.get("version", "")),
        yaml_hash=hashlib.sha256(raw.encode("utf-8")).hexdigest(),
        tables=[_build_table_map(entry) for entry in data["tables"]],
        raw_yaml=raw,
    )


def _build_table_map(entry: dict[str, Any]) -> TableMap:
    return TableMap(
        legacy_table=str(entry["legacy_table"]),
        destination=entry["destination"],
        primary_key=entry["primary_key"],
        columns=[
            ColumnRule(
                source=int(col["source"]),
                field=col["field"],
                transform=col.get("transform") or "cell",
            )
            for col in entry["columns"]
        ],
        parents=[
            ParentRef(table=p["table"], key=p["key"], field=p["field"])
            for p in (entry.get("parents") or [])
        ],
        require_positive=entry.get("require_positive"),
        replace=bool(entry.get("replace", False)),
    )


def validate_column_maps(data: dict[str, Any]) -> None:
    """Raise ColumnMapValidationError if data does not match required schema.

    Validates:
      - Root is a mapping with a non-empty ``tables`` list
      - Each table has the required keys and a known destination table
      - Source indices are non-negative integers
      - Fields exist in the destination table and are mapped once
      - Transforms are registered names
      - The primary key and any require_positive field are mapped
      - Parent references point at known tables/columns
      - Each legacy table appears only once
    """
    if not isinstance(data, dict):
        raise ColumnMapValidationError("YAML root must be a mapping.")

    tables = data.get("tables")
    if not isinstance(tables, list) or not tables:
        raise ColumnMapValidationError("'tables' must be a non-empty list.")

    seen_legacy: set[str] = set()
    for idx, entry in enumerate(tables):
        if not isinstance(entry, dict):
            raise ColumnMapValidationError(f"tables[{idx}] must be a mapping.")
        missing = REQUIRED_TABLE_KEYS - set(entry.keys())
        if missing:
            raise ColumnMapValidationError(
                f"tables[{idx}] missing required keys: {sorted(missing)}"
            )

        legacy = str(entry["legacy_table"])
        if legacy in seen_legacy:
            raise ColumnMapValidationError(f"Legacy table '{legacy}' is mapped twice.")
        seen_legacy.add(legacy)

        destination = entry["destination"]
        if destination not in DESTINATION_TABLES:
            raise ColumnMapValidationError(
                f"Unknown destination table '{destination}' for '{legacy}'. "
                f"Must be one of {sorted(DESTINATION_TABLES)}."
            )
        allowed = DESTINATION_TABLES[destination]

        columns = entry["columns"]
        if not isinstance(columns, list) or not columns:
            raise ColumnMapValidationError(f"'{legacy}': 'columns' must be a non-empty list.")

        mapped: set[str] = set()
        for col in columns:
            if not isinstance(col, dict) or "source" not in col or "field" not in col:
                raise ColumnMapValidationError(
                    f"'{legacy}': each column needs 'source' and 'field'."
                )
            source = col["source"]
            if isinstance(source, bool) or not isinstance(source, int) or source < 0:
                raise ColumnMapValidationError(
                    f"'{legacy}': source index {source!r} must be a non-negative integer."
                )
            fld = col["field"]
            if fld not in allowed:
                raise ColumnMapValidationError(
                    f"'{legacy}': field '{fld}' is not a column of '{destination}'."
                )
            if fld in mapped:
                raise ColumnMapValidationError(f"'{legacy}': field '{fld}' is mapped twice.")
            mapped.add(fld)
            transform = col.get("transform") or "cell"
            if transform not in TRANSFORMS:
                raise ColumnMapValidationError(
                    f"'{legacy}': unknown transform '{transform}'. "
                    f"Must be one of {sorted(TRANSFORMS)}."
                )

        if entry["primary_key"] not in mapped:
            raise ColumnMapValidationError(
                f"'{legacy}': primary key '{entry['primary_key']}' is not mapped."
            )

        require_positive = entry.get("require_positive")
        if require_positive is not None and require_positive not in mapped:
            raise ColumnMapValidationError(
                f"'{legacy}': require_positive field '{require_positive}' is not mapped."
            )

        for parent in entry.get("parents") or []:
            if not isinstance(parent, dict) or not {"table", "key", "field"} <= set(parent):
                raise ColumnMapValidationError(
                    f"'{legacy}': parents need 'table', 'key' and 'field'."
                )
            if parent["table"] not in DESTINATION_TABLES:
                raise ColumnMapValidationError(
                    f"'{legacy}': unknown parent table '{parent['table']}'."
                )
            if parent["key"] not in DESTINATION_TABLES[parent["table"]]:
                raise ColumnMapValidationError(
                    f"'{legacy}': '{parent['key']}' is not a column of '{parent['table']}'."
                )
            if parent["field"] not in mapped:
                raise ColumnMapValidationError(
                    f"'{legacy}': parent field '{parent['field']}' is not mapped."
                )


# ---------------------------------------------------------------------------
# Row application
# ---------------------------------------------------------------------------

def apply_table_map(table_map: TableMap, row: list[str], row_number: int) -> dict[str, Any]:
    """Map one parsed row to a destination record.

    Raises RowShapeAnomaly when the row is shorter than the highest source
    index the map reads.
    """
    if len(row) < table_map.min_row_length:
        raise RowShapeAnomaly(
            table_map.legacy_table, row_number, table_map.min_row_length, len(row)
        )
    return {
        rule.field: TRANSFORMS[rule.transform](coerce_cell(row[rule.source]))
        for rule in table_map.columns
    }
