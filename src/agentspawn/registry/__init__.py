"""Session registry: the durable, lock-coordinated store shared by all
agentspawn processes, plus change notification for long-running readers.
"""

from agentspawn.registry.lock import RegistryLock
from agentspawn.registry.schema import RegistryData, RegistryEntry
from agentspawn.registry.store import Registry
from agentspawn.registry.watcher import RegistryWatcher

__all__ = [
    "Registry",
    "RegistryData",
    "RegistryEntry",
    "RegistryLock",
    "RegistryWatcher",
]
