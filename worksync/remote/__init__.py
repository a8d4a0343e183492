"""Clients for the remote workspace API and the event relay."""

from worksync.remote.client import RemoteClient
from worksync.remote.pager import AdaptivePager
from worksync.remote.relay import RelayClient

__all__ = ["AdaptivePager", "RelayClient", "RemoteClient"]
