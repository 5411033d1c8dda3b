from battle_arena.storage.base import Storage
from battle_arena.storage.database import DatabaseStorage
from battle_arena.storage.fallback import FallbackStorage
from battle_arena.storage.memory import MemoryStorage


def build_storage(backend: str = "database", session_factory=None) -> Storage:
    """Select the store named by STORAGE_BACKEND."""
    if backend == "memory":
        return MemoryStorage()
    return FallbackStorage(DatabaseStorage(session_factory))


__all__ = ["Storage", "MemoryStorage", "DatabaseStorage", "FallbackStorage", "build_storage"]
