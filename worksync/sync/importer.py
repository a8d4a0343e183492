"""Import engine: pull remote records into the local replica.

Three modes share one page loop:

- ``full``: every record, insert-or-ignore. First-time setup. Uses the
  adaptive pager and saves its cursor after each page so an interrupted run
  can pick up where it stopped.
- ``active``: records whose status is not the completed status, upserted.
  The steady-state refresh.
- ``delta``: every record, newest edit first, upserted until the first one
  older than ``last_app_close``. Advances ``last_app_close`` on success.

Each page is committed on its own. Transient failures wait and retry the
same page; anything else aborts the run with the committed pages intact.
"""

import logging
import sqlite3
import threading
import time
from concurrent.futures import ThreadPoolExecutor
from datetime import datetime
from typing import Any, Dict, List, Optional, Tuple

from worksync.config import EntitySettings
from worksync.protocols import (
    ConfigError,
    ImportAbortedError,
    PermanentRemoteError,
    TransientRemoteError,
    WorkSyncError,
)
from worksync.remote.mapping import map_remote_page
from worksync.remote.pager import AdaptivePager
from worksync.sync.context import SyncContext
from worksync.types import (
    EPOCH,
    ImportMode,
    ImportReport,
    ImportResult,
    PageResult,
    RemoteRecord,
    parse_datetime,
    utc_now,
)

logger = logging.getLogger(__name__)

LAST_APP_CLOSE = "last_app_close"
NEWEST_FIRST = [{"timestamp": "last_edited_time", "direction": "descending"}]


def cursor_key(entity_type: str) -> str:
    return f"import_cursor:{entity_type}"


def skipped_cursors_key(entity_type: str) -> str:
    return f"skipped_cursors:{entity_type}"


def summary_key(mode: str) -> str:
    return f"last_import:{mode}"


class ImportEngine:
    """Runs imports against the remote service for every configured entity type."""

    def __init__(self, ctx: SyncContext):
        self.ctx = ctx

    def import_all(self, entity_types=None, cancel=None, resume: bool = True) -> ImportReport:
        return self.run(ImportMode.FULL.value, entity_types, cancel, resume=resume)

    def import_active(self, entity_types=None, cancel=None) -> ImportReport:
        return self.run(ImportMode.ACTIVE.value, entity_types, cancel)

    def import_delta(self, entity_types=None, cancel=None) -> ImportReport:
        return self.run(ImportMode.DELTA.value, entity_types, cancel)

    def run(
        self,
        mode: str,
        entity_types: Optional[List[str]] = None,
        cancel: Optional[threading.Event] = None,
        resume: bool = True,
    ) -> ImportReport:
        """Import the given entity types (default: all configured) concurrently.

        Args:
            mode: ``full``, ``active`` or ``delta``.
            entity_types: Subset of entity types to import.
            cancel: Set to stop after the page in flight.
            resume: Full mode only: continue from a saved cursor.

        Returns:
            Per-entity counters.

        Raises:
            ImportAbortedError: An entity import hit a non-retryable error.
                ``report`` carries the partial counts of every entity.
        """
        mode = ImportMode(mode).value
        client = self.ctx.require_client()
        cancel = cancel or threading.Event()
        entities = self._select(entity_types)
        started_at = utc_now()
        started = time.monotonic()

        cutoff = None
        if mode == ImportMode.DELTA.value:
            cutoff = parse_datetime(self.ctx.storage.get_app_state(LAST_APP_CLOSE) or EPOCH)

        report = ImportReport(mode=mode)
        for ent in entities:
            report.results[ent.entity_type] = ImportResult(entity_type=ent.entity_type, mode=mode)

        failures: List[Tuple[str, Exception]] = []
        if entities:
            with ThreadPoolExecutor(
                max_workers=len(entities), thread_name_prefix="worksync-import"
            ) as pool:
                futures = {
                    ent.entity_type: pool.submit(
                        self._import_entity,
                        client,
                        ent,
                        report.results[ent.entity_type],
                        cancel,
                        cutoff,
                        resume,
                    )
                    for ent in entities
                }
                for entity_type, future in futures.items():
                    error = future.result()
                    if error is not None:
                        failures.append((entity_type, error))

        report.time_ms = int((time.monotonic() - started) * 1000)
        self._save_summary(report)

        if failures:
            entity_type, first = failures[0]
            raise ImportAbortedError(
                f"{mode} import of {entity_type} aborted: {first}", report
            ) from first

        if mode == ImportMode.DELTA.value and not report.cancelled:
            # Anchor at the start so edits made during the run are seen next time
            self.ctx.storage.set_app_state(LAST_APP_CLOSE, started_at)
        logger.info(
            f"{mode} import finished in {report.time_ms}ms: "
            + ", ".join(
                f"{r.entity_type} +{r.inserted} ~{r.updated} ={r.skipped}"
                for r in report.results.values()
            )
        )
        return report

    def _select(self, entity_types: Optional[List[str]]) -> List[EntitySettings]:
        settings = self.ctx.settings
        if entity_types is None:
            return [settings.entity(name) for name in settings.enabled_entities]
        selected = []
        for name in entity_types:
            ent = settings.entity(name)
            if not ent.enabled:
                raise ValueError(f"No remote database configured for {name}")
            selected.append(ent)
        return selected

    def _save_summary(self, report: ImportReport) -> None:
        summary = report.to_dict()
        summary["finished_at"] = utc_now()
        self.ctx.storage.set_app_state_json(summary_key(report.mode), summary)

    # === Per-entity loop ===

    def _import_entity(
        self,
        client,
        ent: EntitySettings,
        result: ImportResult,
        cancel: threading.Event,
        cutoff: Optional[datetime],
        resume: bool,
    ) -> Optional[Exception]:
        """Import one entity type; returns the aborting error instead of raising it.

        Only library errors are converted. Anything else is a bug and
        propagates out of the worker.
        """
        try:
            if result.mode == ImportMode.FULL.value:
                self._full_scan(client, ent, result, cancel, resume)
            else:
                self._filtered_scan(client, ent, result, cancel, cutoff)
        except (WorkSyncError, sqlite3.Error) as e:
            logger.error(
                f"{result.mode} import of {ent.entity_type} aborted after "
                f"{result.pages} pages: {e}"
            )
            result.errors.append(str(e))
            return e
        if not result.cancelled:
            result.completed = True
        return None

    def _apply(self, ent: EntitySettings, page: PageResult, result: ImportResult, cutoff=None) -> bool:
        """Map and store one page. Returns False once a delta scan reaches the cutoff."""
        records: List[RemoteRecord] = []
        reached_cutoff = False
        for raw in page.records:
            try:
                remote = map_remote_page(ent, raw)
            except ValueError as e:
                logger.warning(f"Skipping unmappable {ent.entity_type} record: {e}")
                result.skipped += 1
                continue
            if cutoff is not None:
                modified = parse_datetime(remote.remote_modified_at)
                if modified is not None and modified < cutoff:
                    reached_cutoff = True
                    break
            records.append(remote)

        counts = self.ctx.storage.apply_page(ent.entity_type, records, result.mode)
        result.inserted += counts["inserted"]
        result.updated += counts["updated"]
        result.skipped += counts["skipped"]
        result.links += counts["links"]
        return not reached_cutoff

    def _filtered_scan(
        self,
        client,
        ent: EntitySettings,
        result: ImportResult,
        cancel: threading.Event,
        cutoff: Optional[datetime],
    ) -> None:
        settings = self.ctx.settings
        query_filter = None
        if result.mode == ImportMode.ACTIVE.value:
            query_filter = self._active_filter(ent)

        cursor = None
        page_number = 0
        consecutive_retries = 0
        while True:
            if cancel.is_set():
                logger.info(f"{result.mode} import of {ent.entity_type} cancelled")
                result.cancelled = True
                return
            page_number += 1
            try:
                page = client.query_page(
                    ent.database_id, cursor=cursor, filter=query_filter, sorts=NEWEST_FIRST
                )
            except TransientRemoteError as e:
                consecutive_retries += 1
                result.retries += 1
                if consecutive_retries > settings.max_page_retries:
                    raise
                logger.warning(
                    f"Page {page_number} of {ent.entity_type} failed ({e}); "
                    f"retrying in {settings.page_retry_delay}s"
                )
                self.ctx.sleep(settings.page_retry_delay)
                page_number -= 1
                continue
            consecutive_retries = 0

            keep_going = self._apply(ent, page, result, cutoff)
            result.pages = page_number
            if not keep_going:
                logger.debug(f"Delta import of {ent.entity_type} reached the cutoff")
                return
            if not page.has_more or not page.next_cursor:
                return
            cursor = page.next_cursor

    def _active_filter(self, ent: EntitySettings) -> Dict[str, Any]:
        status = ent.status_property
        if status is None:
            raise ConfigError(f"{ent.entity_type} has no status property configured")
        return {"property": status.name, status.kind: {"does_not_equal": ent.completed_status}}

    def _full_scan(
        self,
        client,
        ent: EntitySettings,
        result: ImportResult,
        cancel: threading.Event,
        resume: bool,
    ) -> None:
        storage = self.ctx.storage
        saved_cursor = storage.get_app_state(cursor_key(ent.entity_type)) if resume else None
        if saved_cursor:
            logger.info(f"Resuming full import of {ent.entity_type} from saved cursor")
        pager = self._pager(client, ent, saved_cursor)

        while True:
            if cancel.is_set():
                logger.info(f"Full import of {ent.entity_type} cancelled")
                result.cancelled = True
                return
            try:
                page = pager.next_page()
            except PermanentRemoteError as e:
                if saved_cursor and result.pages == 0 and e.error_class == "validation":
                    logger.warning(f"Saved cursor for {ent.entity_type} rejected; starting over")
                    saved_cursor = None
                    storage.set_app_state(cursor_key(ent.entity_type), None)
                    pager = self._pager(client, ent, None)
                    continue
                raise
            if page is None:
                break
            if page.skipped_cursor is not None:
                result.skipped_cursors.append(page.skipped_cursor)
                skipped = storage.get_app_state_json(skipped_cursors_key(ent.entity_type), [])
                skipped.append(page.skipped_cursor)
                storage.set_app_state_json(skipped_cursors_key(ent.entity_type), skipped)
                break

            self._apply(ent, page, result)
            result.pages += 1
            storage.set_app_state(cursor_key(ent.entity_type), None if pager.done else pager.cursor)

        storage.set_app_state(cursor_key(ent.entity_type), None)

    def _pager(self, client, ent: EntitySettings, cursor: Optional[str]) -> AdaptivePager:
        return AdaptivePager(
            client,
            ent.database_id,
            self.ctx.settings,
            cursor=cursor,
            clock=self.ctx.clock,
            sleep=self.ctx.sleep,
        )
