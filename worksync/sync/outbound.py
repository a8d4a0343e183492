"""Drain the outbound change queue into the remote service."""

import logging
from typing import Optional

from worksync.config import EntitySettings
from worksync.protocols import (
    PermanentRemoteError,
    RecordNotFoundError,
    RemoteAPI,
    TransientRemoteError,
)
from worksync.remote.mapping import map_remote_page, to_remote_properties
from worksync.sync.context import SyncContext
from worksync.types import ChangeOperation, DrainResult, EntityRecord, QueuedChange, RemoteRecord

logger = logging.getLogger(__name__)


def _mapped(ent: EntitySettings, response: dict) -> RemoteRecord:
    try:
        return map_remote_page(ent, response)
    except ValueError as e:
        raise PermanentRemoteError(f"Malformed write response: {e}") from e


class OutboundDrainer:
    """Push queued local changes, oldest first.

    Delivery is at-least-once: an entry is removed only after the remote
    service acknowledges it, and failed entries stay queued with an
    incremented retry count for the next cycle. A transient failure ends the
    cycle (the service is likely unreachable); a permanent one only skips
    that entry.
    """

    def __init__(self, ctx: SyncContext):
        self.ctx = ctx

    def drain(self, limit: Optional[int] = None) -> DrainResult:
        client = self.ctx.require_client()
        storage = self.ctx.storage
        result = DrainResult()

        for change in storage.queue.list_pending(limit or self.ctx.settings.queue_batch_size):
            ent = self.ctx.settings.entity(change.entity_type)
            if not ent.enabled:
                logger.debug(f"No remote database for {change.entity_type}; leaving change queued")
                continue

            record = storage.get_record(change.entity_type, change.local_id)
            if record is None:
                logger.warning(
                    f"Dropping queued {change.operation} for missing "
                    f"{change.entity_type} {change.local_id}"
                )
                storage.queue.drop(change.id)
                result.dropped += 1
                continue

            try:
                remote = self._push(client, ent, change, record)
            except RecordNotFoundError as e:
                if change.operation == ChangeOperation.CREATE.value:
                    self._fail(change, e, result)
                    continue
                if change.operation == ChangeOperation.UPDATE.value:
                    logger.info(
                        f"Remote {change.entity_type} for {change.local_id} is gone; trashing it"
                    )
                    storage.mark_trashed(change.entity_type, change.local_id)
                    result.trashed += 1
                # Already deleted remotely
                storage.queue.drop(change.id)
                continue
            except TransientRemoteError as e:
                self._fail(change, e, result)
                break
            except PermanentRemoteError as e:
                self._fail(change, e, result)
                continue

            storage.confirm_push(change, remote)
            result.pushed += 1

        result.remaining = storage.queue.count_pending()
        if result.pushed or result.failed:
            logger.info(
                f"Drained outbound queue: {result.pushed} pushed, {result.failed} failed, "
                f"{result.remaining} remaining"
            )
        return result

    def _fail(self, change: QueuedChange, error: Exception, result: DrainResult) -> None:
        retries = self.ctx.storage.queue.mark_failed(change.id, str(error))
        logger.warning(
            f"Push of {change.operation} {change.entity_type} {change.local_id} failed "
            f"(attempt {retries}): {error}"
        )
        result.failed += 1
        result.errors.append(str(error))

    def _push(
        self,
        client: RemoteAPI,
        ent: EntitySettings,
        change: QueuedChange,
        record: EntityRecord,
    ) -> Optional[RemoteRecord]:
        remote_id = change.remote_id or record.remote_id

        if change.operation == ChangeOperation.DELETE.value:
            if remote_id:
                client.archive_record(remote_id)
            return None

        if remote_id:
            # A create that was already acknowledged is sent as an update
            properties = to_remote_properties(ent, change.payload, current=record.fields)
            if not properties:
                return None
            return _mapped(ent, client.update_record(remote_id, properties))

        # Create (or an update for a record that never made it upstream)
        fields = {k: v for k, v in record.fields.items() if v not in (None, [])}
        fields.update(change.payload)
        response = client.create_record(ent.database_id, to_remote_properties(ent, fields))
        return _mapped(ent, response)
