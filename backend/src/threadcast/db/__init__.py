"""Document store implementations."""

from threadcast.config import Settings
from threadcast.db.base import DocumentStore
from threadcast.db.memory import MemoryStore


def create_store(settings: Settings) -> DocumentStore:
    """Build the store selected by `settings.store_backend`."""
    if settings.store_backend == "postgres":
        from threadcast.db.postgres import PostgresStore

        return PostgresStore(
            settings.database_url,
            notify=settings.store_notify,
            poll_interval=settings.store_poll_interval,
        )
    return MemoryStore()


__all__ = ["DocumentStore", "MemoryStore", "create_store"]
