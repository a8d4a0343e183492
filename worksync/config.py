"""Settings for worksync.

Settings are loaded once per process and passed explicitly to the engines.

Priority for credentials:
1. Environment variables (WORKSYNC_API_KEY, WORKSYNC_BASE_URL, ...)
2. ~/.worksync/credentials.json
3. ~/.worksync/config.json

Entity configuration (database ids, property names, completed status) and
timing knobs come from config.json, with environment overrides for the
database ids.
"""

import json
import logging
import os
from dataclasses import dataclass, field, replace
from pathlib import Path
from typing import Any, Dict, List, Optional, Tuple
from urllib.parse import urlparse

from worksync.protocols import ConfigError
from worksync.types import EntityType
from worksync.utils import get_worksync_home

logger = logging.getLogger(__name__)

DEFAULT_BASE_URL = "https://api.notion.com/v1"
DEFAULT_API_VERSION = "2025-09-03"
DEFAULT_PAGE_SIZE = 100
PAGE_SIZE_LADDER = (100, 20, 10, 5, 2, 1)

PROPERTY_KINDS = frozenset(
    {
        "title",
        "rich_text",
        "status",
        "select",
        "checkbox",
        "date",
        "number",
        "relation",
        "unique_id",
        "url",
    }
)


@dataclass(frozen=True)
class PropertySpec:
    """Where a local field lives on the remote record.

    ``part`` picks the start or end of a date range. ``active_value`` turns a
    status/select property into a boolean flag; ``inactive_value`` is the
    option written when the flag is cleared.
    """

    name: str
    kind: str
    part: str = "start"
    active_value: Optional[str] = None
    inactive_value: Optional[str] = None


def _task_properties() -> Dict[str, PropertySpec]:
    return {
        "title": PropertySpec("Name", "title"),
        "status": PropertySpec("Status", "status"),
        "due_date": PropertySpec("Date", "date"),
        "due_date_end": PropertySpec("Date", "date", part="end"),
        "urgent": PropertySpec(
            "Urgent", "status", active_value="Urgent", inactive_value="Not urgent"
        ),
        "important": PropertySpec(
            "Important", "status", active_value="Important", inactive_value="Not important"
        ),
        "hard_deadline": PropertySpec(
            "Hard Deadline?", "status", active_value="Hard", inactive_value="Soft"
        ),
        "main_entry": PropertySpec("Main Entry", "rich_text"),
        "body": PropertySpec("Body", "rich_text"),
        "session_length_minutes": PropertySpec("Session Length", "number"),
        "estimated_length_minutes": PropertySpec("Estimated Length", "number"),
        "parent_task_id": PropertySpec("Parent Task", "relation"),
        "project_ids": PropertySpec("Projects", "relation"),
        "unique_id": PropertySpec("ID", "unique_id"),
    }


def _project_properties() -> Dict[str, PropertySpec]:
    return {
        "title": PropertySpec("Name", "title"),
        "status": PropertySpec("Status", "status"),
        "description": PropertySpec("Description", "rich_text"),
        "start_date": PropertySpec("Dates", "date"),
        "end_date": PropertySpec("Dates", "date", part="end"),
        "unique_id": PropertySpec("ID", "unique_id"),
    }


def _time_log_properties() -> Dict[str, PropertySpec]:
    return {
        "title": PropertySpec("Name", "title"),
        "status": PropertySpec("Status", "status"),
        "task_id": PropertySpec("Task", "relation"),
        "start_time": PropertySpec("Start Time", "date"),
        "end_time": PropertySpec("End Time", "date"),
        "duration_minutes": PropertySpec("Duration", "number"),
        "unique_id": PropertySpec("ID", "unique_id"),
    }


DEFAULT_PROPERTIES = {
    EntityType.TASK.value: _task_properties,
    EntityType.PROJECT.value: _project_properties,
    EntityType.TIME_LOG.value: _time_log_properties,
}

DEFAULT_COMPLETED_STATUS = {
    EntityType.TASK.value: "Done",
    EntityType.PROJECT.value: "Done",
    EntityType.TIME_LOG.value: "Completed",
}

_DATABASE_ENV = {
    EntityType.TASK.value: "WORKSYNC_TASKS_DB",
    EntityType.PROJECT.value: "WORKSYNC_PROJECTS_DB",
    EntityType.TIME_LOG.value: "WORKSYNC_TIME_LOGS_DB",
}


@dataclass
class EntitySettings:
    entity_type: str
    database_id: Optional[str] = None
    completed_status: str = "Done"
    properties: Dict[str, PropertySpec] = field(default_factory=dict)
    filter_properties: List[str] = field(default_factory=list)

    @property
    def enabled(self) -> bool:
        return bool(self.database_id)

    @property
    def status_property(self) -> Optional[PropertySpec]:
        return self.properties.get("status")


@dataclass
class Settings:
    """Everything the engines need to know about the environment."""

    api_key: Optional[str] = None
    base_url: str = DEFAULT_BASE_URL
    api_version: str = DEFAULT_API_VERSION
    relay_url: Optional[str] = None
    relay_subject: Optional[str] = None
    db_path: Optional[Path] = None
    entities: Dict[str, EntitySettings] = field(default_factory=dict)
    # Remote client
    request_timeout: float = 30.0
    max_retries: int = 3
    retry_base_delay: float = 1.0
    # Paging
    page_size: int = DEFAULT_PAGE_SIZE
    page_size_ladder: Tuple[int, ...] = PAGE_SIZE_LADDER
    slow_threshold: float = 30.0
    fast_threshold: float = 5.0
    max_failures_at_min: int = 3
    # Import engine
    page_retry_delay: float = 3.0
    max_page_retries: int = 5
    # Background work
    queue_batch_size: int = 25
    drain_interval: float = 30.0
    poll_interval: float = 5.0

    def __post_init__(self):
        for entity_type in DEFAULT_PROPERTIES:
            if entity_type not in self.entities:
                self.entities[entity_type] = default_entity_settings(entity_type)

    def entity(self, entity_type: str) -> EntitySettings:
        try:
            return self.entities[entity_type]
        except KeyError:
            raise ValueError(f"Unknown entity type: {entity_type}") from None

    @property
    def enabled_entities(self) -> List[str]:
        return [name for name, ent in self.entities.items() if ent.enabled]

    @property
    def has_remote(self) -> bool:
        return bool(self.api_key) and bool(self.enabled_entities)

    @property
    def has_relay(self) -> bool:
        return bool(self.relay_url) and bool(self.relay_subject)


def default_entity_settings(entity_type: str, database_id: Optional[str] = None) -> EntitySettings:
    if entity_type not in DEFAULT_PROPERTIES:
        raise ValueError(f"Unknown entity type: {entity_type}")
    return EntitySettings(
        entity_type=entity_type,
        database_id=database_id,
        completed_status=DEFAULT_COMPLETED_STATUS[entity_type],
        properties=DEFAULT_PROPERTIES[entity_type](),
    )


def validate_backend_url(url: str, *, allow_localhost_http: bool = True) -> "str | None":
    """Validate a service URL before sending credentials to it.

    Rejects non-http/https schemes, URLs with no host, and remote HTTP
    endpoints (only localhost/127.0.0.1 are allowed over plaintext HTTP).

    Returns:
        The URL unchanged if valid, or ``None`` if rejected (with a
        warning logged for each rejection reason).
    """
    if not url:
        return None
    parsed = urlparse(url)
    if parsed.scheme not in {"https", "http"}:
        logger.warning("Invalid service URL scheme; only http/https allowed.")
        return None
    if not parsed.netloc:
        logger.warning("Invalid service URL; missing host.")
        return None
    if parsed.scheme == "http":
        if not allow_localhost_http:
            logger.warning("HTTP not allowed in this context.")
            return None
        host = parsed.hostname or ""
        if host not in {"localhost", "127.0.0.1"}:
            logger.warning("Refusing non-local http service URL for security.")
            return None
    return url


def _read_json(path: Path) -> Dict[str, Any]:
    if not path.exists():
        return {}
    try:
        with open(path) as f:
            data = json.load(f)
    except (json.JSONDecodeError, OSError) as e:
        logger.warning(f"Ignoring unreadable settings file {path}: {e}")
        return {}
    if not isinstance(data, dict):
        logger.warning(f"Ignoring settings file {path}: expected a JSON object")
        return {}
    return data


def _parse_property(field_name: str, raw: Any, default: Optional[PropertySpec]) -> PropertySpec:
    if isinstance(raw, str):
        if default is None:
            raise ConfigError(f"Property '{field_name}' needs a kind")
        return replace(default, name=raw)
    if not isinstance(raw, dict):
        raise ConfigError(f"Property '{field_name}' must be a name or an object")
    base = default or PropertySpec(name=raw.get("name", field_name), kind=raw.get("kind", ""))
    spec = replace(
        base,
        name=raw.get("name", base.name),
        kind=raw.get("kind", base.kind),
        part=raw.get("part", base.part),
        active_value=raw.get("active_value", base.active_value),
        inactive_value=raw.get("inactive_value", base.inactive_value),
    )
    if spec.kind not in PROPERTY_KINDS:
        raise ConfigError(f"Property '{field_name}' has unknown kind '{spec.kind}'")
    return spec


def _parse_entity(entity_type: str, raw: Dict[str, Any]) -> EntitySettings:
    ent = default_entity_settings(entity_type, raw.get("database_id"))
    if "completed_status" in raw:
        ent.completed_status = raw["completed_status"]
    for field_name, prop in (raw.get("properties") or {}).items():
        ent.properties[field_name] = _parse_property(
            field_name, prop, ent.properties.get(field_name)
        )
    ent.filter_properties = list(raw.get("filter_properties") or [])
    return ent


_TIMING_KEYS = (
    "request_timeout",
    "max_retries",
    "retry_base_delay",
    "page_size",
    "slow_threshold",
    "fast_threshold",
    "max_failures_at_min",
    "page_retry_delay",
    "max_page_retries",
    "queue_batch_size",
    "drain_interval",
    "poll_interval",
)


def load_settings(home: Optional[Path] = None) -> Settings:
    """Load settings from the worksync home directory and environment.

    Raises:
        ConfigError: If config.json describes an unknown entity or property kind.
    """
    home = home or get_worksync_home()
    credentials = _read_json(home / "credentials.json")
    config = _read_json(home / "config.json")

    api_key = credentials.get("api_key")
    base_url = credentials.get("base_url")
    relay_subject = credentials.get("relay_subject")

    # Override with environment variables
    api_key = os.environ.get("WORKSYNC_API_KEY") or api_key
    base_url = os.environ.get("WORKSYNC_BASE_URL") or base_url
    relay_subject = os.environ.get("WORKSYNC_RELAY_SUBJECT") or relay_subject
    relay_url = os.environ.get("WORKSYNC_RELAY_URL") or config.get("relay_url")

    # config.json as fallback
    api_key = api_key or config.get("api_key")
    base_url = base_url or config.get("base_url") or DEFAULT_BASE_URL
    relay_subject = relay_subject or config.get("relay_subject")

    validated = validate_backend_url(base_url)
    if validated is None:
        logger.warning(f"Falling back to default base URL {DEFAULT_BASE_URL}")
        validated = DEFAULT_BASE_URL
    if relay_url:
        relay_url = validate_backend_url(relay_url)

    entities = {}
    raw_entities = config.get("entities") or {}
    for entity_type in raw_entities:
        if entity_type not in DEFAULT_PROPERTIES:
            raise ConfigError(f"Unknown entity type in config: {entity_type}")
    for entity_type in DEFAULT_PROPERTIES:
        entities[entity_type] = _parse_entity(entity_type, raw_entities.get(entity_type) or {})
        env_db = os.environ.get(_DATABASE_ENV[entity_type])
        if env_db:
            entities[entity_type].database_id = env_db

    settings = Settings(
        api_key=api_key,
        base_url=validated.rstrip("/"),
        api_version=config.get("api_version", DEFAULT_API_VERSION),
        relay_url=relay_url.rstrip("/") if relay_url else None,
        relay_subject=relay_subject,
        db_path=Path(config["db_path"]).expanduser() if config.get("db_path") else home / "worksync.db",
        entities=entities,
    )
    for key in _TIMING_KEYS:
        if key in config:
            setattr(settings, key, type(getattr(settings, key))(config[key]))
    return settings
