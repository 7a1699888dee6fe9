"""Durable store backends and configuration-driven selection."""

from ..config import get_store_backend
from ..durable import DurableStore
from .rest import RestStore
from .sqlite import SQLiteStore

BACKENDS = {
    SQLiteStore.name: SQLiteStore,
    RestStore.name: RestStore,
}


def get_durable_store(name: str | None = None) -> DurableStore:
    """Build the configured durable store (AICHAT_STORE, default sqlite)."""
    name = name or get_store_backend()
    try:
        backend_class = BACKENDS[name]
    except KeyError:
        raise ValueError(f"Unknown store backend: {name}") from None
    return backend_class()
