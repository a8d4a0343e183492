"""Adaptive pagination for long full scans.

Large pages are the first thing a struggling backend times out on, so a
full scan walks down a page-size ladder when responses are slow or fail,
and climbs back to the base size once a fast response comes back.
"""

import logging
import time
from typing import Any, Callable, Dict, List, Optional

from worksync.config import Settings
from worksync.protocols import RemoteAPI, TransientRemoteError
from worksync.types import PageResult

logger = logging.getLogger(__name__)

# Recorded in place of a cursor when the very first page is skipped
START_CURSOR = "start"


class AdaptivePager:
    """Iterate a remote collection page by page with adaptive page sizing.

    Every request is issued with retries disabled; the pager does its own
    recovery. A transient failure or a response slower than
    ``settings.slow_threshold`` moves one step down the ladder. A response
    faster than ``settings.fast_threshold`` at a reduced size restores the
    base size. ``settings.max_failures_at_min`` consecutive failures at the
    smallest size mark the cursor as skipped and end the scan, since there
    is no later cursor to continue from.

    Args:
        client: Remote API client.
        resource_id: Collection to scan.
        settings: Thresholds and the page-size ladder.
        cursor: Start cursor (to resume an interrupted scan).
    """

    def __init__(
        self,
        client: RemoteAPI,
        resource_id: str,
        settings: Settings,
        filter: Optional[Dict[str, Any]] = None,
        sorts: Optional[List[Dict[str, Any]]] = None,
        cursor: Optional[str] = None,
        clock: Callable[[], float] = time.monotonic,
        sleep: Callable[[float], None] = time.sleep,
    ):
        self.client = client
        self.resource_id = resource_id
        self.settings = settings
        self.filter = filter
        self.sorts = sorts
        self.cursor = cursor
        self._clock = clock
        self._sleep = sleep

        ladder = [size for size in settings.page_size_ladder if size <= settings.page_size]
        if not ladder or ladder[0] != settings.page_size:
            ladder.insert(0, settings.page_size)
        self.ladder = ladder
        self._step = 0
        self._failures_at_min = 0
        self.done = False
        self.skipped_cursors: List[str] = []
        self.requested_sizes: List[int] = []

    @property
    def page_size(self) -> int:
        return self.ladder[self._step]

    @property
    def at_minimum(self) -> bool:
        return self._step == len(self.ladder) - 1

    def _shrink(self, reason: str) -> None:
        if not self.at_minimum:
            self._step += 1
            logger.info(f"Page size -> {self.page_size} ({reason})")

    def _restore(self) -> None:
        if self._step:
            self._step = 0
            logger.info(f"Page size restored to {self.page_size}")

    def next_page(self) -> Optional[PageResult]:
        """Return the next page, or None when the scan is finished.

        A page with ``skipped_cursor`` set is the last one: it carries no
        records and reports the cursor that could not be fetched.

        Raises:
            PermanentRemoteError: Propagated from the client unchanged.
        """
        if self.done:
            return None

        while True:
            size = self.page_size
            self.requested_sizes.append(size)
            started = self._clock()
            try:
                page = self.client.query_page(
                    self.resource_id,
                    cursor=self.cursor,
                    filter=self.filter,
                    sorts=self.sorts,
                    page_size=size,
                    max_attempts=1,
                )
            except TransientRemoteError as e:
                if self.at_minimum:
                    self._failures_at_min += 1
                    if self._failures_at_min >= self.settings.max_failures_at_min:
                        return self._skip_cursor(e)
                self._shrink("timeout" if e.timed_out else str(e.status_code or "network"))
                self._sleep(self.settings.retry_base_delay)
                continue

            elapsed = self._clock() - started
            self._failures_at_min = 0
            if elapsed >= self.settings.slow_threshold:
                self._shrink(f"slow response {elapsed:.1f}s")
            elif elapsed < self.settings.fast_threshold:
                self._restore()

            self.cursor = page.next_cursor
            if not page.has_more or not page.next_cursor:
                self.done = True
            return page

    def _skip_cursor(self, error: TransientRemoteError) -> PageResult:
        logger.warning(
            f"Skipping cursor {self.cursor!r} of {self.resource_id} after "
            f"{self._failures_at_min} failures at page size {self.page_size}: {error}"
        )
        skipped = self.cursor or START_CURSOR
        self.skipped_cursors.append(skipped)
        self.done = True
        return PageResult(records=[], has_more=False, skipped_cursor=skipped)
