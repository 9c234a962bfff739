"""
Stratum exception hierarchy.

Durability problems (a failed write, an unreachable database, a missing FTS5
module) are caught inside the manager and recorded in the health report.
These classes exist so the backends can signal them precisely.
"""


class StratumError(Exception):
    """Base exception for all Stratum errors."""


class BackendError(StratumError):
    """Error from a storage backend."""


class BackendUnavailableError(BackendError):
    """Durable engine driver is missing or the database cannot be opened."""


class IndexUnavailableError(BackendError):
    """Full-text index is not available on this backend."""


class ManagerClosedError(StratumError):
    """Operation attempted on a MemoryManager after close()."""
