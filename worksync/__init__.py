"""
worksync - local-first replica of remote workspace tasks, projects and time logs.
"""

from .core import Replica

try:
    from importlib.metadata import version

    __version__ = version("worksync")
except Exception:
    __version__ = "0.0.0"

__all__ = ["Replica"]
