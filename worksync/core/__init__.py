"""worksync core: the Replica facade.

    from worksync.core import Replica
"""

from worksync.core.replica import Replica

__all__ = ["Replica"]
