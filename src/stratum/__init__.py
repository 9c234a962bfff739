"""Stratum -- tiered memory persistence for autonomous agents.

::

    from stratum import MemoryManager, PersistenceConfig
    with MemoryManager(persistence=PersistenceConfig(db_path="agent.db")) as mm:
        mm.add_episodic("User asked to deploy the staging cluster")
        results = mm.hybrid_search("deploy")
"""

__version__ = "0.1.0"

from stratum.cache import LRUCache
from stratum.config import MemoryConfig, PersistenceConfig
from stratum.errors import (
    BackendError,
    BackendUnavailableError,
    IndexUnavailableError,
    ManagerClosedError,
    StratumError,
)
from stratum.manager import MemoryManager
from stratum.types import (
    EntryType,
    MatchType,
    MemoryEntry,
    MemorySearchResult,
    SessionDeltaState,
    Tier,
    TranscriptEntry,
)

__all__ = [
    "BackendError",
    "BackendUnavailableError",
    "EntryType",
    "IndexUnavailableError",
    "LRUCache",
    "ManagerClosedError",
    "MatchType",
    "MemoryConfig",
    "MemoryEntry",
    "MemoryManager",
    "MemorySearchResult",
    "PersistenceConfig",
    "SessionDeltaState",
    "StratumError",
    "Tier",
    "TranscriptEntry",
    "__version__",
]
