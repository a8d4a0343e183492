"""Replica class: the shell-facing interface to the local-first sync engine.

This module composes the Replica class from the record, sync and
lifecycle mixins and wires the engines to one explicit SyncContext.
"""

import logging
import threading
import time
from typing import Callable, Dict, Optional

from worksync.config import Settings, load_settings
from worksync.core.lifecycle import LifecycleMixin
from worksync.core.records import RecordsMixin
from worksync.core.sync import SyncMixin
from worksync.protocols import EventRelay, RemoteAPI
from worksync.remote.client import RemoteClient
from worksync.remote.relay import RelayClient
from worksync.storage.sqlite import SQLiteStorage
from worksync.sync.context import SyncContext
from worksync.sync.events import EventIngestor
from worksync.sync.importer import ImportEngine
from worksync.sync.outbound import OutboundDrainer
from worksync.sync.scheduler import PeriodicTask
from worksync.types import SyncState
from worksync.utils import get_worksync_home

logger = logging.getLogger(__name__)


class Replica(RecordsMixin, SyncMixin, LifecycleMixin):
    """Local replica of the remote workspace.

    Reads and writes always hit the local store. Remote traffic happens in
    the import, drain and poll operations, which callers run on demand or
    through :meth:`start_background`.

    Args:
        settings: Loaded settings. Defaults to :func:`load_settings`.
        storage: Local store. Defaults to SQLite at ``settings.db_path``.
        client: Remote API client. Built from settings when an API key is set.
        relay: Event relay client. Built from settings when a relay is configured.
        sleep: Backoff sleep used by every engine.
    """

    def __init__(
        self,
        settings: Optional[Settings] = None,
        storage: Optional[SQLiteStorage] = None,
        client: Optional[RemoteAPI] = None,
        relay: Optional[EventRelay] = None,
        sleep: Callable[[float], None] = time.sleep,
    ):
        settings = settings or load_settings()
        if storage is None:
            storage = SQLiteStorage(settings.db_path or get_worksync_home() / "worksync.db")
        if client is None and settings.api_key:
            client = RemoteClient(settings, sleep=sleep)
        if relay is None and settings.has_relay:
            relay = RelayClient(settings.relay_url, settings.relay_subject)

        self._storage = storage
        self._ctx = SyncContext(
            storage=storage, settings=settings, client=client, relay=relay, sleep=sleep
        )
        self._importer = ImportEngine(self._ctx)
        self._drainer = OutboundDrainer(self._ctx)
        self._ingestor = EventIngestor(self._ctx)

        self._status_lock = threading.Lock()
        self._import_lock = threading.Lock()
        self._cancel = threading.Event()
        self._state = SyncState.IDLE
        self._message: Optional[str] = None
        self._tasks: Dict[str, PeriodicTask] = {}

    @property
    def settings(self) -> Settings:
        return self._ctx.settings

    @property
    def storage(self) -> SQLiteStorage:
        return self._storage

    def __enter__(self) -> "Replica":
        return self

    def __exit__(self, *exc) -> None:
        self.close()
