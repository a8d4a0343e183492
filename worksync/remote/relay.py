"""Client for the webhook relay that buffers remote change events."""

import logging
from typing import Any, Dict, List, Optional

import httpx

from worksync.protocols import PermanentRemoteError, TransientRemoteError
from worksync.types import EventKind, RemoteEvent

logger = logging.getLogger(__name__)

EVENT_KINDS = {
    "created": EventKind.CREATED,
    "page.created": EventKind.CREATED,
    "updated": EventKind.UPDATED,
    "page.updated": EventKind.UPDATED,
    "page.content_updated": EventKind.UPDATED,
    "page.properties_updated": EventKind.UPDATED,
    "deleted": EventKind.DELETED,
    "page.deleted": EventKind.DELETED,
    "page.moved_to_trash": EventKind.DELETED,
    "restored": EventKind.RESTORED,
    "page.restored": EventKind.RESTORED,
    "page.undeleted": EventKind.RESTORED,
}


def parse_event(raw: Dict[str, Any]) -> Optional[RemoteEvent]:
    """Normalize one relay event.

    Unhandled event types come back with ``kind=None`` so their timestamp still
    advances the poll cursor. Events without a timestamp are dropped.
    """
    data = raw.get("data") or {}
    raw_type = data.get("type") or raw.get("type") or ""
    kind = EVENT_KINDS.get(raw_type)
    entity = data.get("entity") or raw.get("entity") or {}
    entity_id = entity.get("id")
    if kind is None or not entity_id:
        logger.debug(f"Ignoring relay event {raw.get('id')} of type {raw_type!r}")
        kind = None
    try:
        timestamp = int(raw.get("timestamp") or 0)
    except (TypeError, ValueError):
        logger.warning(f"Relay event {raw.get('id')} has a bad timestamp")
        return None
    return RemoteEvent(
        id=str(raw.get("id") or ""),
        kind=kind,
        timestamp=timestamp,
        entity_id=entity_id or "",
        raw_type=raw_type,
    )


class RelayClient:
    """Poll and acknowledge events buffered for one subscriber.

    Args:
        base_url: Relay root URL.
        subject: Subscriber id the relay files events under.
        http: Pre-built httpx client.
    """

    def __init__(
        self,
        base_url: str,
        subject: Optional[str],
        http: Optional[httpx.Client] = None,
        timeout: float = 10.0,
    ):
        self.base_url = base_url.rstrip("/")
        self.subject = subject
        self._http = http or httpx.Client(base_url=self.base_url, timeout=timeout)

    def close(self):
        self._http.close()

    def _call(self, method: str, path: str, **kwargs) -> Dict[str, Any]:
        try:
            response = self._http.request(method, path, **kwargs)
        except httpx.TimeoutException as e:
            raise TransientRemoteError(f"Relay {method} {path} timed out: {e}", timed_out=True) from e
        except httpx.TransportError as e:
            raise TransientRemoteError(f"Relay {method} {path} failed: {e}") from e

        if response.status_code == 429 or response.status_code >= 500:
            raise TransientRemoteError(
                f"Relay {method} {path} returned {response.status_code}", response.status_code
            )
        if response.status_code >= 400:
            raise PermanentRemoteError(
                f"Relay {method} {path} returned {response.status_code}", response.status_code
            )
        if not response.content:
            return {}
        try:
            data = response.json()
        except ValueError as e:
            raise PermanentRemoteError(f"Relay returned malformed JSON: {e}") from e
        return data if isinstance(data, dict) else {}

    def register(self) -> str:
        """Register with the relay and remember the subscriber id it assigns."""
        data = self._call("POST", "/register")
        subject = data.get("userId") or data.get("subject")
        if not subject:
            raise PermanentRemoteError("Relay registration returned no subscriber id")
        self.subject = subject
        return subject

    def fetch_events(self, since: Optional[int] = None) -> List[RemoteEvent]:
        """Events newer than ``since`` (epoch ms), oldest first."""
        if not self.subject:
            raise ValueError("Relay subject is not configured")
        params = {"since": since} if since else None
        data = self._call("GET", f"/events/{self.subject}", params=params)
        raw_events = data.get("events")
        if not isinstance(raw_events, list):
            raise PermanentRemoteError("Relay response has no events list")
        events = [event for event in (parse_event(raw) for raw in raw_events) if event]
        return sorted(events, key=lambda event: event.timestamp)

    def acknowledge(self, before: int) -> None:
        """Ask the relay to drop events up to and including ``before``."""
        if not self.subject:
            raise ValueError("Relay subject is not configured")
        self._call("DELETE", f"/events/{self.subject}", params={"before": before})
