"""Explicit dependencies shared by the sync engines."""

import time
from dataclasses import dataclass, field
from typing import Callable, Optional

from worksync.config import Settings
from worksync.protocols import ConfigError, EventRelay, RemoteAPI
from worksync.storage.sqlite import SQLiteStorage


@dataclass
class SyncContext:
    """Built once per process by :class:`worksync.Replica` and passed to every engine."""

    storage: SQLiteStorage
    settings: Settings
    client: Optional[RemoteAPI] = None
    relay: Optional[EventRelay] = None
    sleep: Callable[[float], None] = field(default=time.sleep)
    clock: Callable[[], float] = field(default=time.monotonic)

    def require_client(self) -> RemoteAPI:
        if self.client is None:
            raise ConfigError("Remote service is not configured (missing API key)")
        return self.client

    def require_relay(self) -> EventRelay:
        if self.relay is None:
            raise ConfigError("Event relay is not configured")
        return self.relay
