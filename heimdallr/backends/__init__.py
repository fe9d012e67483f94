"""
Storage backends for Heimdallr.

Heimdallr decorates an existing storage layer. A backend adapts that
layer's model classes, records and query scopes. Available backends:

- MemoryBackend: Built-in in-memory storage (no dependencies)
- SQLAlchemyBackend: SQLAlchemy 2.x declarative models (requires sqlalchemy)

Backends are imported from their own modules:

    >>> from heimdallr.backends.memory import MemoryModel, belongs_to, has_many
    >>> from heimdallr.backends.sqlalchemy_backend import SQLAlchemyRecord, bind_session
"""

from heimdallr.backends.base import (
    Errors,
    Preload,
    Scope,
    StorageBackend,
    backend_for,
    is_scope,
    iter_preloads,
)

__all__ = [
    "Errors",
    "Preload",
    "Scope",
    "StorageBackend",
    "backend_for",
    "is_scope",
    "iter_preloads",
]
