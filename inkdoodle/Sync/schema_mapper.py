# schema_mapper.py
# Description: Field-name and identifier translation between on-disk records and remote rows
#
# Local files key an entity on its small per-parent sequence number (`id`) and
# keep the public code in `code`. Remote rows do the opposite: `id` holds the
# public code and `code` holds the sequence number. Every record crossing the
# boundary goes through `to_remote_row` or `to_local_record`, both of which
# use the single `invert` function below for that swap.
#
# Imports
import json
import re
from dataclasses import dataclass
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Dict, List, Optional, Tuple
#
# Third-Party Imports
from loguru import logger
#
########################################################################################################################
#
# Classes and Functions:


class EntityKind(Enum):
    """Entity kinds handled by the sync layer."""
    PROJECT = "project"
    CHAPTER = "chapter"
    NOTE = "note"
    REFERENCE = "reference"
    LORE_ITEM = "lore_item"
    TIMELINE = "timeline"

    @property
    def is_child(self) -> bool:
        return self is not EntityKind.PROJECT


# Column value types
TEXT = "text"
INT = "int"
IDENT = "ident"
TAGS = "tags"
BOOL = "bool"
EVENTS = "events"
TIMESTAMP = "timestamp"


@dataclass(frozen=True)
class ColumnSpec:
    """
    One remote column and how it is found in a local record.

    `local` is the on-disk field name when it differs from the remote one;
    `aliases` are older on-disk names accepted as a fallback. `default` is
    written remotely when the column is `non_null`, and always used to fill a
    missing value on the way back to disk.
    """
    remote: str
    type: str = TEXT
    local: Optional[str] = None
    aliases: Tuple[str, ...] = ()
    default: Any = None
    non_null: bool = False
    mutable: bool = True

    @property
    def local_name(self) -> str:
        return self.local or self.remote


@dataclass(frozen=True)
class EntitySchema:
    """Static description of one entity kind on both sides of the boundary."""
    kind: EntityKind
    table: str
    prefix: str
    subdir: Optional[str]
    wrapper_key: Optional[str]
    index_type: Optional[str]
    columns: Tuple[ColumnSpec, ...]
    # (remote-facing key, local key) swapped by `invert`
    identifier_pair: Tuple[str, str] = ("id", "code")

    @property
    def remote_columns(self) -> List[str]:
        return [col.remote for col in self.columns]

    @property
    def mutable_columns(self) -> List[str]:
        return [col.remote for col in self.columns if col.mutable and col.remote != "updated_at"]

    def column(self, remote: str) -> Optional[ColumnSpec]:
        for col in self.columns:
            if col.remote == remote:
                return col
        return None


_ID = ColumnSpec("id", IDENT, mutable=False)
_CREATED_AT = ColumnSpec("created_at", TIMESTAMP, mutable=False)
_UPDATED_AT = ColumnSpec("updated_at", TIMESTAMP)
_TITLE = ColumnSpec("title", TEXT, default="", non_null=True)
_TAGS = ColumnSpec("tags", TAGS, default=[], non_null=True)


def _child_head(number_aliases: Tuple[str, ...] = ("order_index",)) -> Tuple[ColumnSpec, ...]:
    return (
        _ID,
        ColumnSpec("code", IDENT),
        ColumnSpec("project_id", IDENT, mutable=False),
        ColumnSpec("creator_id", INT, mutable=False),
        ColumnSpec("number", INT, aliases=number_aliases),
        _TITLE,
    )


def _lore_entry_columns() -> Tuple[ColumnSpec, ...]:
    columns = []
    for i in range(1, 5):
        columns.append(ColumnSpec(
            f"entry{i}_name", TEXT,
            aliases=(f"entry{i}name", f"Field {i} Name", f"Field {i}Name")))
        columns.append(ColumnSpec(
            f"entry{i}_content", TEXT,
            aliases=(f"entry{i}content", f"Field {i} Content", f"Field {i}Content")))
    return tuple(columns)


SCHEMAS: Dict[EntityKind, EntitySchema] = {
    EntityKind.PROJECT: EntitySchema(
        kind=EntityKind.PROJECT, table="projects", prefix="PRJ",
        subdir=None, wrapper_key="project", index_type=None,
        columns=(
            _ID,
            ColumnSpec("code", IDENT, mutable=False),
            _TITLE,
            ColumnSpec("creator_id", INT, mutable=False),
            _CREATED_AT,
            _UPDATED_AT,
        ),
    ),
    EntityKind.CHAPTER: EntitySchema(
        kind=EntityKind.CHAPTER, table="chapters", prefix="CHP",
        subdir="chapters", wrapper_key="chapter", index_type="chapter",
        columns=_child_head() + (
            ColumnSpec("content", TEXT, aliases=("body",), default="", non_null=True),
            ColumnSpec("status", TEXT),
            ColumnSpec("summary", TEXT, aliases=("synopsis",)),
            _TAGS,
            ColumnSpec("word_goal", INT, aliases=("wordGoal",)),
            _CREATED_AT,
            _UPDATED_AT,
        ),
    ),
    EntityKind.NOTE: EntitySchema(
        kind=EntityKind.NOTE, table="notes", prefix="NT",
        subdir="notes", wrapper_key="note", index_type="note",
        columns=_child_head() + (
            ColumnSpec("content", TEXT, aliases=("body",), default="", non_null=True),
            _TAGS,
            ColumnSpec("category", TEXT, default="Misc"),
            ColumnSpec("pinned", BOOL, default=False, non_null=True),
            _CREATED_AT,
            _UPDATED_AT,
        ),
    ),
    EntityKind.REFERENCE: EntitySchema(
        kind=EntityKind.REFERENCE, table="refs", prefix="RF",
        subdir="refs", wrapper_key="ref", index_type="reference",
        columns=_child_head() + (
            _TAGS,
            ColumnSpec("reference_type", TEXT, aliases=("refType",), default="Glossary"),
            ColumnSpec("summary", TEXT, aliases=("synopsis",)),
            ColumnSpec("source_link", TEXT, aliases=("sourceLink",)),
            ColumnSpec("content", TEXT, aliases=("body",), default="", non_null=True),
            _CREATED_AT,
            _UPDATED_AT,
        ),
    ),
    EntityKind.LORE_ITEM: EntitySchema(
        kind=EntityKind.LORE_ITEM, table="lore", prefix="LR",
        subdir="lore", wrapper_key="lore", index_type="lore",
        columns=_child_head() + (
            # Lore keeps its text under `body` on disk
            ColumnSpec("content", TEXT, local="body", aliases=("content",), default="", non_null=True),
            ColumnSpec("status", TEXT),
            ColumnSpec("summary", TEXT),
            _TAGS,
            ColumnSpec("lore_kind", TEXT, aliases=("lore_type", "loreType")),
        ) + _lore_entry_columns() + (
            _CREATED_AT,
            _UPDATED_AT,
        ),
    ),
    EntityKind.TIMELINE: EntitySchema(
        kind=EntityKind.TIMELINE, table="timelines", prefix="TL",
        subdir=None, wrapper_key="timeline", index_type=None,
        columns=(
            _ID,
            ColumnSpec("code", IDENT),
            ColumnSpec("project_id", IDENT, mutable=False),
            ColumnSpec("creator_id", INT, mutable=False),
            _TITLE,
            ColumnSpec("events", EVENTS, default=[], non_null=True),
            _CREATED_AT,
            _UPDATED_AT,
        ),
    ),
}

CHILD_KINDS: Tuple[EntityKind, ...] = (
    EntityKind.CHAPTER,
    EntityKind.NOTE,
    EntityKind.REFERENCE,
    EntityKind.LORE_ITEM,
    EntityKind.TIMELINE,
)

INDEX_TYPE_TO_KIND: Dict[str, EntityKind] = {
    schema.index_type: kind for kind, schema in SCHEMAS.items() if schema.index_type
}

_TRAILING_DIGITS = re.compile(r"(\d+)\s*$")
_TRUE_STRINGS = {"1", "true", "yes", "on"}
_FALSE_STRINGS = {"0", "false", "no", "off", ""}


def schema_for(kind: EntityKind) -> EntitySchema:
    return SCHEMAS[kind]


def utc_now_iso() -> str:
    return datetime.now(timezone.utc).isoformat()


# --- Identifier helpers ---

def invert(kind: EntityKind, record: Dict[str, Any]) -> Dict[str, Any]:
    """
    Swap the identifier pair of a record between its local and remote meaning.

    Applying it twice returns the original pairing.
    """
    first, second = SCHEMAS[kind].identifier_pair
    out = dict(record)
    out[first], out[second] = record.get(second), record.get(first)
    return out


def parse_local_id(value: Any) -> Any:
    """Return the value as an int when it is integral, otherwise the raw value."""
    if value is None or isinstance(value, bool):
        return value
    if isinstance(value, int):
        return value
    if isinstance(value, float) and value.is_integer():
        return int(value)
    if isinstance(value, str):
        stripped = value.strip()
        if re.fullmatch(r"[+-]?\d+", stripped):
            return int(stripped)
    return value


def local_id_from_code(code: Any) -> Optional[int]:
    """Recover the sequence number from the trailing segment of a public code."""
    if not isinstance(code, str):
        return None
    match = _TRAILING_DIGITS.search(code)
    return int(match.group(1)) if match else None


def make_public_code(kind: EntityKind, parent_id: Any, local_id: Any) -> Optional[str]:
    """
    Build `<PREFIX>-<parent:04>-<local:06>`.

    For projects the parent is the creator; for children it is the project's local id.
    Returns None when either number is not integral.
    """
    parent = parse_local_id(parent_id)
    local = parse_local_id(local_id)
    if not isinstance(parent, int) or not isinstance(local, int):
        logger.warning(f"Cannot build a {kind.value} code from parent={parent_id!r}, id={local_id!r}")
        return None
    return f"{SCHEMAS[kind].prefix}-{parent:04d}-{local:06d}"


# --- Value coercion ---

def _coerce(col: ColumnSpec, value: Any) -> Any:
    if value is None:
        return None
    if col.type == IDENT:
        if isinstance(value, bool):
            return None
        text = str(parse_local_id(value)).strip()
        return text or None
    if col.type == TEXT:
        if isinstance(value, str):
            return value
        if isinstance(value, (dict, list)):
            return json.dumps(value, ensure_ascii=False)
        return str(value)
    if col.type == INT:
        parsed = parse_local_id(value)
        return parsed if isinstance(parsed, int) and not isinstance(parsed, bool) else None
    if col.type == TAGS:
        if isinstance(value, str):
            return [part.strip() for part in value.split(",") if part.strip()]
        if isinstance(value, (list, tuple)):
            return [str(tag) for tag in value if tag is not None]
        return None
    if col.type == BOOL:
        if isinstance(value, bool):
            return value
        if isinstance(value, (int, float)):
            return bool(value)
        if isinstance(value, str):
            lowered = value.strip().lower()
            if lowered in _TRUE_STRINGS:
                return True
            if lowered in _FALSE_STRINGS:
                return False
        return None
    if col.type == EVENTS:
        if isinstance(value, list):
            return list(value)
        if isinstance(value, dict):
            return [value]
        return None
    if col.type == TIMESTAMP:
        return value if isinstance(value, str) and value.strip() else None
    return value


def _fresh_default(col: ColumnSpec) -> Any:
    return list(col.default) if isinstance(col.default, list) else col.default


def _first_present(record: Dict[str, Any], names: Tuple[str, ...]) -> Any:
    for name in names:
        if record.get(name) is not None:
            return record[name]
    return None


# --- Public mapping API ---

def unwrap_record(kind: EntityKind, raw: Any) -> Dict[str, Any]:
    """Strip a `{ "chapter": {...} }` style wrapper; non-objects become an empty dict."""
    if not isinstance(raw, dict):
        return {}
    wrapper = SCHEMAS[kind].wrapper_key
    inner = raw.get(wrapper) if wrapper else None
    return dict(inner) if isinstance(inner, dict) else dict(raw)


def canonicalize_legacy_fields(kind: EntityKind, raw: Dict[str, Any]) -> Dict[str, Any]:
    """
    Resolve legacy lore field names into the canonical ones.

    `content` becomes `body`, `lore_type`/`loreType` become `lore_kind` and the
    `Field N Name/Content` family becomes `entryN_name/entryN_content`. When the
    canonical name is already set it wins and the alias is dropped. Other
    kinds are returned unchanged.
    """
    if kind is not EntityKind.LORE_ITEM or not isinstance(raw, dict):
        return raw
    out = dict(raw)
    for col in SCHEMAS[kind].columns:
        if not col.aliases:
            continue
        canonical = col.local_name
        for alias in col.aliases:
            if alias == canonical or alias not in out:
                continue
            alias_value = out.pop(alias)
            if out.get(canonical) is None and alias_value is not None:
                out[canonical] = alias_value
    return out


def to_remote_row(kind: EntityKind, local_record: Dict[str, Any],
                  parent_code: Optional[str] = None, now: Optional[str] = None) -> Dict[str, Any]:
    """
    Convert a local record into a remote row.

    The identifier pair is inverted, children get `project_id` set to the
    parent's public code (when given), `updated_at` is stamped and every
    non-null column is filled with its default when nothing usable was found.
    """
    schema = SCHEMAS[kind]
    now = now or utc_now_iso()
    source = invert(kind, local_record if isinstance(local_record, dict) else {})
    row: Dict[str, Any] = {}
    for col in schema.columns:
        names = (col.local_name,) + tuple(a for a in col.aliases if a != col.local_name)
        raw_value = _first_present(source, names)
        value = _coerce(col, raw_value)
        if value is None and raw_value is not None:
            logger.debug(f"{kind.value}: unusable value for {col.remote!r} ({raw_value!r})")
        if value is None and col.non_null:
            value = _fresh_default(col)
        row[col.remote] = value

    if kind.is_child and parent_code:
        row["project_id"] = parent_code
    if row.get("created_at") is None:
        row["created_at"] = now
    row["updated_at"] = now
    return row


def to_local_record(kind: EntityKind, remote_row: Dict[str, Any],
                    parent_local_id: Any = None) -> Dict[str, Any]:
    """
    Convert a remote row into a local record.

    `code` becomes the local `id`, parsed to int when it is integral (otherwise
    kept as-is). Children point at `parent_local_id` when it is given.
    """
    schema = SCHEMAS[kind]
    row = remote_row if isinstance(remote_row, dict) else {}
    local: Dict[str, Any] = {}
    for col in schema.columns:
        value = _coerce(col, row.get(col.remote))
        if value is None:
            value = _fresh_default(col)
        local[col.local_name] = value

    local = invert(kind, local)
    local["id"] = parse_local_id(local.get("id"))
    if kind.is_child:
        if parent_local_id is not None:
            local["project_id"] = parent_local_id
        else:
            local["project_id"] = parse_local_id(local.get("project_id"))
    return local


def changed_columns(kind: EntityKind, remote_row: Dict[str, Any], new_row: Dict[str, Any]) -> List[str]:
    """Mutable columns (ignoring updated_at) whose normalized values differ."""
    schema = SCHEMAS[kind]
    changed = []
    for name in schema.mutable_columns:
        col = schema.column(name)
        old = _coerce(col, remote_row.get(name))
        new = _coerce(col, new_row.get(name))
        if old is None and col.non_null:
            old = _fresh_default(col)
        if new is None and col.non_null:
            new = _fresh_default(col)
        if old != new:
            changed.append(name)
    return changed


def to_index_entry(kind: EntityKind, local_record: Dict[str, Any], order_index: int) -> Dict[str, Any]:
    """Lightweight summary of an item for the project index `entries` list."""
    return {
        "id": local_record.get("id"),
        "code": local_record.get("code"),
        "type": SCHEMAS[kind].index_type,
        "title": local_record.get("title"),
        "order_index": order_index,
        "updated_at": local_record.get("updated_at"),
    }

#
# End of schema_mapper.py
########################################################################################################################
