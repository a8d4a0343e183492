"""Fold relay change notifications into the local replica."""

import logging
from typing import Any, Dict, Optional

from worksync.protocols import PermanentRemoteError, RemoteError, TransientRemoteError
from worksync.remote.mapping import map_remote_page
from worksync.sync.context import SyncContext
from worksync.types import EventKind, PollResult, RemoteEvent

logger = logging.getLogger(__name__)

LAST_EVENT_TS = "last_event_ts"


def _compact(record_id: Optional[str]) -> str:
    return (record_id or "").replace("-", "")


class EventIngestor:
    """Poll the relay once and apply what it delivered.

    Creates, updates and restores fetch the record and upsert it, so an
    event for a record the replica has never seen inserts it. Deletes trash
    the local row. Redelivered events are harmless because every write is
    an upsert keyed by remote id.
    """

    def __init__(self, ctx: SyncContext):
        self.ctx = ctx

    def poll_once(self) -> PollResult:
        """Fetch and apply new events, then advance the cursor and acknowledge.

        Raises:
            RemoteError: The relay itself could not be read.
        """
        relay = self.ctx.require_relay()
        storage = self.ctx.storage
        result = PollResult()

        since = int(storage.get_app_state(LAST_EVENT_TS) or 0)
        events = relay.fetch_events(since or None)
        result.received = len(events)

        last_ts = None
        for index, event in enumerate(events):
            if event.kind is not None:
                try:
                    self._apply(event, result)
                except TransientRemoteError as e:
                    # Leave this event and everything after it for the next poll;
                    # the relay only serves timestamps after the cursor
                    logger.warning(f"Stopping event batch at {event.id}: {e}")
                    result.errors.append(str(e))
                    if last_ts is not None and last_ts >= event.timestamp:
                        last_ts = max(
                            (
                                done.timestamp
                                for done in events[:index]
                                if done.timestamp < event.timestamp
                            ),
                            default=None,
                        )
                    break
                except PermanentRemoteError as e:
                    logger.warning(f"Skipping event {event.id} ({event.raw_type}): {e}")
                    result.skipped += 1
                    result.errors.append(str(e))
            last_ts = event.timestamp

        if last_ts is None:
            return result

        storage.set_app_state(LAST_EVENT_TS, str(last_ts))
        result.last_event_ts = last_ts
        try:
            relay.acknowledge(last_ts)
            result.acknowledged = True
        except RemoteError as e:
            logger.warning(f"Could not acknowledge relay events up to {last_ts}: {e}")
        return result

    def _apply(self, event: RemoteEvent, result: PollResult) -> None:
        storage = self.ctx.storage
        if event.kind == EventKind.DELETED:
            if storage.mark_trashed_by_remote_id(event.entity_id):
                result.trashed += 1
            else:
                result.skipped += 1
            return

        page = self.ctx.require_client().fetch_one(event.entity_id)
        if page is None:
            logger.info(f"Record {event.entity_id} from event {event.id} no longer exists")
            if storage.mark_trashed_by_remote_id(event.entity_id):
                result.trashed += 1
            else:
                result.skipped += 1
            return

        entity_type = self._entity_type_for(page)
        if entity_type is None:
            logger.debug(f"Event {event.id} is for a collection we do not replicate")
            result.skipped += 1
            return

        try:
            remote = map_remote_page(self.ctx.settings.entity(entity_type), page)
        except ValueError as e:
            raise PermanentRemoteError(f"Malformed record {event.entity_id}: {e}") from e
        if event.kind == EventKind.RESTORED:
            remote.archived = False
        outcome = storage.upsert_remote(entity_type, remote)
        if outcome == "skipped":
            result.skipped += 1
        else:
            result.upserted += 1

    def _entity_type_for(self, page: Dict[str, Any]) -> Optional[str]:
        parent = page.get("parent") or {}
        parent_ids = {
            _compact(parent.get("data_source_id")),
            _compact(parent.get("database_id")),
        } - {""}
        if not parent_ids:
            return None

        settings = self.ctx.settings
        client = self.ctx.require_client()
        for entity_type in settings.enabled_entities:
            database_id = settings.entity(entity_type).database_id
            candidates = {_compact(database_id), _compact(client.resolve_data_source(database_id))}
            if parent_ids & candidates:
                return entity_type
        return None
