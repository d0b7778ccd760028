"""Field mapping between feature-service attributes and local record columns."""

from __future__ import annotations

from datetime import datetime, timezone
from typing import Any

# local column -> remote attribute names (primary first, then fallbacks)
PARENT_FIELD_MAP: dict[str, tuple[str, ...]] = {
    "object_id": ("OBJECTID", "OID", "FID"),
    "relation_key": ("GLOBALID",),
    "action_code": ("CA", "CODIGO_ACCION"),
    "alt_action_code": ("OTRO_CA",),
    "occurred_at": ("FECHA_HORA", "FECHA"),
    "north": ("NORTE",),
    "east": ("ESTE",),
    "zone": ("ZONA",),
    "altitude": ("ALTITUD",),
    "component": ("COMPONENTE",),
    "sub_component": ("SUBCOMPONENTE",),
    "component_type": ("TIPO_COMPONENTE",),
    "installation": ("INSTALACION_REFERENCIA",),
    "modality": ("MODALIDAD",),
    "activity": ("ACTIVIDAD",),
    "sampling_point": ("NOM_PTO_MUESTREO", "NOM_PTO_PPC"),
    "supervisor_name": ("SUPERVISOR", "NOMBRE_SUPERVISOR"),
    "description": ("DESCRIPCION",),
    "findings": ("HALLAZGOS",),
    "remote_created_at": ("CREATED_DATE", "CreationDate"),
    "remote_edited_at": ("LAST_EDITED_DATE", "EditDate"),
    "remote_editor": ("LAST_EDITED_USER", "Editor"),
}

PHOTO_DESCRIPTION_SLOTS = 10
PHOTO_DESCRIPTION_FIELDS: tuple[str, ...] = tuple(
    f"DESCRIPCION_F{i:02d}" for i in range(1, PHOTO_DESCRIPTION_SLOTS + 1)
)

FLOAT_COLUMNS = frozenset({"north", "east", "altitude"})
DATETIME_COLUMNS = frozenset({"occurred_at", "remote_created_at", "remote_edited_at"})
INT_COLUMNS = frozenset({"object_id"})

# Columns that describe the remote copy rather than its content.
BOOKKEEPING_COLUMNS = frozenset(
    {"object_id", "relation_key", "remote_created_at", "remote_edited_at", "remote_editor"}
)

# Child attribute holding the parent's relation key.
CHILD_KEY_FIELDS: tuple[str, ...] = ("GUID", "PARENTGLOBALID")
CHILD_OBJECT_ID_FIELDS: tuple[str, ...] = ("OBJECTID", "OID", "FID")

# local flattened column -> remote child attribute names
DESCRIPTION_TEXT_FIELDS: dict[str, tuple[str, ...]] = {
    "descriptions_text": ("DESCRIP_1",),
}
FACT_TEXT_FIELDS: dict[str, tuple[str, ...]] = {
    "facts_text": ("HECHO_DETEC_1",),
    "fact_descriptions_text": ("DESCRIP_2",),
}


def find_attribute(attributes: dict[str, Any], names: tuple[str, ...]) -> tuple[str | None, Any]:
    """Return (actual_key, value) for the first of `names` present, case-insensitively."""
    if not names:
        return None, None
    for name in names:
        if name in attributes:
            return name, attributes[name]
    lowered = {k.lower(): k for k in attributes if isinstance(k, str)}
    for name in names:
        key = lowered.get(name.lower())
        if key is not None:
            return key, attributes[key]
    return None, None


def normalize_relation_key(value: Any) -> str | None:
    """Uppercase, brace-delimited form of a global id; None when unusable."""
    if not isinstance(value, str):
        return None
    core = value.strip().strip("{}").strip()
    if not core:
        return None
    return "{" + core.upper() + "}"


def to_datetime(value: Any) -> datetime | None:
    """Feature services send epoch milliseconds; ISO strings are accepted too."""
    if value is None or value == "":
        return None
    if isinstance(value, datetime):
        return value if value.tzinfo else value.replace(tzinfo=timezone.utc)
    if isinstance(value, (int, float)) and not isinstance(value, bool):
        return datetime.fromtimestamp(value / 1000.0, tz=timezone.utc)
    if isinstance(value, str):
        try:
            parsed = datetime.fromisoformat(value.strip().replace("Z", "+00:00"))
        except ValueError:
            return None
        return parsed if parsed.tzinfo else parsed.replace(tzinfo=timezone.utc)
    return None


def to_float(value: Any) -> float | None:
    if value is None or value == "" or isinstance(value, bool):
        return None
    try:
        return float(value)
    except (TypeError, ValueError):
        return None


def to_int(value: Any) -> int | None:
    if value is None or value == "" or isinstance(value, bool):
        return None
    try:
        return int(value)
    except (TypeError, ValueError):
        return None


def to_text(value: Any) -> str | None:
    if value is None:
        return None
    if isinstance(value, str):
        return value if value.strip() else None
    return str(value)


def _coerce(column: str, value: Any) -> Any:
    if column in DATETIME_COLUMNS:
        return to_datetime(value)
    if column in FLOAT_COLUMNS:
        return to_float(value)
    if column in INT_COLUMNS:
        return to_int(value)
    if column == "relation_key":
        return normalize_relation_key(value)
    return to_text(value)


def map_parent_attributes(attributes: dict[str, Any]) -> tuple[dict[str, Any], dict[str, Any]]:
    """Split a parent's attributes into (typed columns, extension map).

    Every remote attribute lands in exactly one of the two.
    """
    consumed: set[str] = set()
    columns: dict[str, Any] = {}

    for column, names in PARENT_FIELD_MAP.items():
        key, value = find_attribute(attributes, names)
        if key is not None:
            consumed.add(key)
        columns[column] = _coerce(column, value)

    slots: list[str | None] = []
    for name in PHOTO_DESCRIPTION_FIELDS:
        key, value = find_attribute(attributes, (name,))
        if key is not None:
            consumed.add(key)
        slots.append(to_text(value))
    columns["photo_descriptions"] = slots if any(s is not None for s in slots) else None

    extra = {k: v for k, v in attributes.items() if k not in consumed}
    return columns, extra


def child_relation_key(attributes: dict[str, Any]) -> str | None:
    _, value = find_attribute(attributes, CHILD_KEY_FIELDS)
    return normalize_relation_key(value)


def child_object_id(attributes: dict[str, Any]) -> int | None:
    _, value = find_attribute(attributes, CHILD_OBJECT_ID_FIELDS)
    return to_int(value)
