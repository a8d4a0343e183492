"""Sync engines: imports, outbound drain, event ingestion and scheduling."""

from worksync.sync.context import SyncContext
from worksync.sync.events import EventIngestor
from worksync.sync.importer import ImportEngine
from worksync.sync.outbound import OutboundDrainer
from worksync.sync.scheduler import PeriodicTask

__all__ = ["EventIngestor", "ImportEngine", "OutboundDrainer", "PeriodicTask", "SyncContext"]
