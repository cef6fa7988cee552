"""
Resolution sync package.

Keeps a queryable projection of CNS, UNS and ZNS domain resolution state in
sync with the on-chain registries.
"""

from .config import SyncConfig
from .models import Blockchain, ChainEvent, ChainEventKind, Checkpoint, DomainRecord
from .reducer import StateReducer
from .scheduler import ChainSynchronizer, CycleReport, SyncScheduler
from .service import ResolutionSync
from .store import ProjectionStore

__all__ = [
    "Blockchain",
    "ChainEvent",
    "ChainEventKind",
    "ChainSynchronizer",
    "Checkpoint",
    "CycleReport",
    "DomainRecord",
    "ProjectionStore",
    "ResolutionSync",
    "StateReducer",
    "SyncConfig",
    "SyncScheduler",
]
__version__ = "0.1.0"
