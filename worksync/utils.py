"""Filesystem helpers shared by config and storage."""

import os
from pathlib import Path


def get_worksync_home() -> Path:
    """Return the worksync data directory, honouring ``WORKSYNC_HOME``."""
    override = os.environ.get("WORKSYNC_HOME")
    if override:
        return Path(override).expanduser()
    return Path.home() / ".worksync"
