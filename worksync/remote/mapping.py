"""Translate between remote page JSON and local typed fields."""

import logging
from typing import Any, Dict, List, Optional

from worksync.config import EntitySettings, PropertySpec
from worksync.types import RemoteRecord

logger = logging.getLogger(__name__)

# Fields that map to something other than a plain column.
RELATION_FIELDS = frozenset({"project_ids"})
IDENTITY_FIELDS = frozenset({"unique_id"})


def _plain_text(parts: Optional[List[Dict[str, Any]]]) -> Optional[str]:
    if not parts:
        return None
    return "".join(p.get("plain_text") or (p.get("text") or {}).get("content", "") for p in parts)


def extract_unique_id(prop: Optional[Dict[str, Any]]) -> Optional[str]:
    """Render a ``unique_id`` property as ``PREFIX-N`` (or ``N`` without a prefix)."""
    if not prop or prop.get("type") != "unique_id":
        return None
    value = prop.get("unique_id") or {}
    number = value.get("number")
    if number is None:
        return None
    prefix = value.get("prefix")
    return f"{prefix}-{number}" if prefix else str(number)


def _extract(prop: Dict[str, Any], spec: PropertySpec) -> Any:
    kind = prop.get("type", spec.kind)
    if kind == "title":
        return _plain_text(prop.get("title"))
    if kind == "rich_text":
        return _plain_text(prop.get("rich_text"))
    if kind in ("status", "select"):
        name = (prop.get(kind) or {}).get("name")
        if spec.active_value is not None:
            return name == spec.active_value
        return name
    if kind == "checkbox":
        return bool(prop.get("checkbox"))
    if kind == "number":
        return prop.get("number")
    if kind == "url":
        return prop.get("url")
    if kind == "date":
        date = prop.get("date") or {}
        return date.get(spec.part)
    if kind == "relation":
        return [r["id"] for r in prop.get("relation") or [] if r.get("id")]
    if kind == "formula":
        formula = prop.get("formula") or {}
        return formula.get(formula.get("type"))
    logger.debug(f"Unsupported property type {kind} for {spec.name}")
    return None


def map_remote_page(entity: EntitySettings, page: Dict[str, Any]) -> RemoteRecord:
    """Map a remote page onto the entity's local fields.

    Raises:
        ValueError: If the page has no id.
    """
    remote_id = page.get("id")
    if not remote_id:
        raise ValueError("Remote page is missing an id")

    properties = page.get("properties") or {}
    fields: Dict[str, Any] = {}
    relation_ids: List[str] = []
    unique_id = None

    for field_name, spec in entity.properties.items():
        prop = properties.get(spec.name)
        if prop is None:
            continue
        if field_name in IDENTITY_FIELDS:
            unique_id = extract_unique_id(prop)
            continue
        value = _extract(prop, spec)
        if field_name in RELATION_FIELDS:
            relation_ids = value or []
        elif spec.kind == "relation":
            # Single-valued relation stored as a plain column
            fields[field_name] = value[0] if value else None
        else:
            fields[field_name] = value

    fields["url"] = page.get("url")
    fields["last_edited"] = page.get("last_edited_time")
    parent = page.get("parent") or {}
    return RemoteRecord(
        remote_id=remote_id,
        fields=fields,
        unique_id=unique_id,
        remote_modified_at=page.get("last_edited_time"),
        relation_ids=relation_ids,
        archived=bool(page.get("archived") or page.get("in_trash")),
        parent_id=parent.get("data_source_id") or parent.get("database_id"),
    )


def _rich_text(value: Any) -> List[Dict[str, Any]]:
    if value is None or value == "":
        return []
    return [{"type": "text", "text": {"content": str(value)}}]


def to_remote_properties(
    entity: EntitySettings,
    fields: Dict[str, Any],
    current: Optional[Dict[str, Any]] = None,
) -> Dict[str, Any]:
    """Build the ``properties`` body for a create or update call.

    Only fields present in ``fields`` are written. Date ranges split over two
    local fields are merged back into one property; when only one part is
    being written the other part is taken from ``current`` (the record's
    stored fields), because the remote side replaces the whole range.
    """
    properties: Dict[str, Any] = {}
    for field_name, value in fields.items():
        spec = entity.properties.get(field_name)
        if spec is None or field_name in IDENTITY_FIELDS:
            continue
        if spec.kind == "title":
            properties[spec.name] = {"title": _rich_text(value)}
        elif spec.kind == "rich_text":
            properties[spec.name] = {"rich_text": _rich_text(value)}
        elif spec.kind in ("status", "select"):
            if spec.active_value is not None:
                option = spec.active_value if value else spec.inactive_value
                if option is not None:
                    properties[spec.name] = {spec.kind: {"name": option}}
                elif spec.kind == "select":
                    properties[spec.name] = {"select": None}
                else:
                    logger.warning(
                        f"Cannot clear {field_name}: no inactive option configured for {spec.name}"
                    )
            elif value:
                properties[spec.name] = {spec.kind: {"name": value}}
        elif spec.kind == "checkbox":
            properties[spec.name] = {"checkbox": bool(value)}
        elif spec.kind == "number":
            properties[spec.name] = {"number": value}
        elif spec.kind == "url":
            properties[spec.name] = {"url": value}
        elif spec.kind == "date":
            date = (properties.get(spec.name) or {}).get("date") or {}
            date[spec.part] = value
            properties[spec.name] = {"date": date}
        elif spec.kind == "relation":
            ids = value if isinstance(value, list) else ([value] if value else [])
            properties[spec.name] = {"relation": [{"id": i} for i in ids]}

    for field_name, spec in entity.properties.items():
        if spec.kind != "date" or spec.name not in properties:
            continue
        date = properties[spec.name]["date"]
        if spec.part not in date and current:
            date[spec.part] = current.get(field_name)

    for prop in properties.values():
        date = prop.get("date")
        if date is not None and date.get("start") is None:
            # A range cannot exist without a start
            prop["date"] = None
    return properties
