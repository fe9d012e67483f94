"""
Storage backend base classes for Heimdallr.

Heimdallr does not execute queries itself. It decorates a host storage
layer that offers composable scopes and records with change tracking.
This module defines the contract such a layer must satisfy:

- StorageBackend: record-side operations (identity, dirty tracking,
  error collection, save/delete) and model reflection.
- Scope: an immutable, composable query object.
- Errors: the per-record validation error collector.

The built-in MemoryBackend implements the contract without dependencies;
SQLAlchemyBackend adapts SQLAlchemy's ORM.
"""

from __future__ import annotations

import inspect
from abc import ABC, abstractmethod
from collections.abc import Iterable, Iterator, Mapping, Sequence
from dataclasses import dataclass, field
from typing import TYPE_CHECKING, Any

from heimdallr.exceptions import ConfigurationError, RecordNotFoundError

if TYPE_CHECKING:
    from heimdallr.types import Relation
    from heimdallr.validators import Validator


class Errors:
    """
    Validation error collector attached to a record.

    Example:
        >>> errors = Errors()
        >>> errors.add("title", "can't be blank")
        >>> errors.full_messages()
        ['title can't be blank']
    """

    def __init__(self) -> None:
        self._messages: dict[str, list[str]] = {}

    def add(self, attribute: str, message: str) -> None:
        """Record an error message for an attribute."""
        self._messages.setdefault(attribute, []).append(message)

    def on(self, attribute: str) -> list[str]:
        """Return the messages recorded for an attribute."""
        return list(self._messages.get(attribute, []))

    def clear(self) -> None:
        self._messages.clear()

    def full_messages(self) -> list[str]:
        return [
            f"{attribute} {message}"
            for attribute, messages in self._messages.items()
            for message in messages
        ]

    def to_dict(self) -> dict[str, list[str]]:
        return {attribute: list(messages) for attribute, messages in self._messages.items()}

    def __contains__(self, attribute: object) -> bool:
        return attribute in self._messages

    def __iter__(self) -> Iterator[tuple[str, str]]:
        for attribute, messages in self._messages.items():
            for message in messages:
                yield attribute, message

    def __len__(self) -> int:
        return sum(len(messages) for messages in self._messages.values())

    def __bool__(self) -> bool:
        return bool(self._messages)

    def __repr__(self) -> str:
        return f"Errors({self.to_dict()!r})"


@dataclass(frozen=True)
class Preload:
    """
    One node of an eager-load request.

    Attributes:
        condition: Backend-specific filter applied to the preloaded rows,
            or None to load them unfiltered.
        children: Nested preloads of the target model.
    """

    condition: Any = None
    children: Mapping[str, Preload] = field(default_factory=dict)


class Scope(ABC):
    """
    Abstract base class for composable query scopes.

    Scopes are immutable: every refining method returns a new scope.
    Named scopes declared on the model with ``@named_scope`` are
    reachable as attributes of any scope over that model.

    Attributes:
        model: The entity type the scope selects.
    """

    model: type

    # Query refinement

    @abstractmethod
    def where(self, *conditions: Any, **equals: Any) -> Scope:
        """Filter rows by backend-specific conditions and/or equality."""

    @abstractmethod
    def order_by(self, *orderings: Any) -> Scope:
        """Order rows. Strings name fields; a leading "-" means descending."""

    @abstractmethod
    def limit(self, count: int | None) -> Scope:
        pass

    @abstractmethod
    def offset(self, count: int | None) -> Scope:
        pass

    def distinct(self) -> Scope:
        raise NotImplementedError(f"{type(self).__name__} does not support distinct()")

    def join(self, *targets: Any, **options: Any) -> Scope:
        raise NotImplementedError(f"{type(self).__name__} does not support join()")

    @abstractmethod
    def none(self) -> Scope:
        """Return a scope that matches no rows."""

    @abstractmethod
    def with_identity(self, identity: Any) -> Scope:
        """Narrow the scope to the row with the given primary key."""

    @abstractmethod
    def condition(self) -> Any:
        """
        Return the combined filter condition of this scope.

        The value is backend-specific and is only passed back into
        ``preload`` of the same backend. None means "no filter".
        """

    @abstractmethod
    def preload(self, tree: Mapping[str, Preload]) -> Scope:
        """Eager-load associations, filtering preloaded rows by their conditions."""

    # Terminal operations

    @abstractmethod
    def all(self) -> list[Any]:
        pass

    @abstractmethod
    def first(self) -> Any | None:
        pass

    @abstractmethod
    def last(self) -> Any | None:
        pass

    @abstractmethod
    def count(self) -> int:
        pass

    @abstractmethod
    def exists(self) -> bool:
        pass

    @abstractmethod
    def pluck(self, *fields: str) -> list[Any]:
        """Return raw column values; one value per row for a single field."""

    @abstractmethod
    def sum(self, field: str) -> Any:
        pass

    def get(self, identity: Any) -> Any | None:
        """Return the row with the given primary key within this scope."""
        return self.with_identity(identity).first()

    def find(self, identity: Any) -> Any:
        """Like ``get`` but raise RecordNotFoundError when nothing matches."""
        record = self.get(identity)
        if record is None:
            raise RecordNotFoundError(self.model.__name__, identity)
        return record

    def find_by(self, **equals: Any) -> Any | None:
        return self.where(**equals).first()

    def ids(self) -> list[Any]:
        return self.pluck(backend_for(self.model).primary_key(self.model))

    def __iter__(self) -> Iterator[Any]:
        return iter(self.all())

    # Constructors

    def new(self, **attributes: Any) -> Any:
        return self.model(**attributes)

    def create(self, **attributes: Any) -> Any:
        """Instantiate and save a record, returning it whether or not it saved."""
        record = self.new(**attributes)
        backend_for(self.model).save(record, (), strict=False)
        return record

    # Bulk destruction

    @abstractmethod
    def delete_all(self) -> int:
        """Delete matching rows without callbacks; return the number deleted."""

    @abstractmethod
    def destroy_all(self) -> list[Any]:
        """Destroy matching records one by one; return the destroyed records."""

    # Named scopes

    def __getattr__(self, name: str) -> Any:
        if name.startswith("_") or name == "model":
            raise AttributeError(name)
        scopes = getattr(self.model, "heimdallr_scopes", frozenset())
        if name in scopes:
            function = inspect.getattr_static(self.model, name).function

            def call_named_scope(*args: Any, **kwargs: Any) -> Scope:
                return function(self, *args, **kwargs)

            return call_named_scope
        raise AttributeError(f"{type(self).__name__!r} object has no attribute {name!r}")


class StorageBackend(ABC):
    """
    Abstract base class for storage backends.

    A backend adapts one storage layer's records and model classes to
    what the proxies need. Backends are stateless; models point at
    theirs through the ``__heimdallr_backend__`` class attribute.

    Attributes:
        name: Human-readable name for the backend.
    """

    name: str = "base"

    # Model reflection

    @abstractmethod
    def base_scope(self, model: type) -> Scope:
        """Return an unrestricted scope over every row of ``model``."""

    @abstractmethod
    def primary_key(self, model: type) -> str:
        pass

    @abstractmethod
    def attribute_names(self, model: type) -> list[str]:
        """Return the persisted attribute names of ``model``."""

    @abstractmethod
    def reflect_on_relation(self, model: type, name: str) -> Relation | None:
        """Return metadata for association ``name`` or None if it is not one."""

    @abstractmethod
    def relation_scope(self, record: Any, relation: Relation) -> Scope:
        """Return an unrestricted scope over a multi-valued association."""

    @abstractmethod
    def loaded_scope(self, record: Any, relation: Relation) -> Scope:
        """Return a scope over the already preloaded rows of an association."""

    @abstractmethod
    def is_loaded(self, record: Any, relation: Relation) -> bool:
        """Check whether an association of ``record`` holds preloaded rows."""

    # Record state

    @abstractmethod
    def is_new(self, record: Any) -> bool:
        pass

    @abstractmethod
    def changed_fields(self, record: Any) -> list[str]:
        pass

    @abstractmethod
    def errors(self, record: Any) -> Errors:
        pass

    @abstractmethod
    def attributes(self, record: Any) -> dict[str, Any]:
        pass

    def identity(self, record: Any) -> Any:
        return getattr(record, self.primary_key(type(record)))

    # Persistence

    @abstractmethod
    def save(
        self,
        record: Any,
        validators: Sequence[Validator],
        strict: bool = False,
    ) -> bool:
        """
        Validate and persist a record.

        Native validation runs first, then ``validators``; both report
        through the record's errors. Returns False when validation fails,
        or raises RecordInvalidError if ``strict`` is set.
        """

    @abstractmethod
    def delete(self, record: Any) -> None:
        """Delete a record without callbacks."""

    @abstractmethod
    def destroy(self, record: Any) -> None:
        """Delete a record running the storage layer's callbacks."""

    def __repr__(self) -> str:
        return f"<{type(self).__name__} {self.name!r}>"


def backend_for(model: type) -> StorageBackend:
    """
    Return the storage backend of a model class.

    Raises:
        ConfigurationError: If the model is not backed by a storage backend.
    """
    backend = getattr(model, "__heimdallr_backend__", None)
    if not isinstance(backend, StorageBackend):
        raise ConfigurationError(
            config_key=f"{getattr(model, '__name__', model)}.__heimdallr_backend__",
            expected="a StorageBackend instance",
            received=backend,
        )
    return backend


def is_scope(value: Any) -> bool:
    return isinstance(value, Scope)


def iter_preloads(tree: Mapping[str, Preload]) -> Iterable[tuple[tuple[str, ...], list[Any]]]:
    """
    Yield every root-to-leaf path of a preload tree with its conditions.

    Example:
        >>> tree = {"comments": Preload("c", {"author": Preload(None)})}
        >>> list(iter_preloads(tree))
        [(('comments', 'author'), ['c', None])]
    """
    for name, node in tree.items():
        if not node.children:
            yield (name,), [node.condition]
            continue
        for path, conditions in iter_preloads(node.children):
            yield (name, *path), [node.condition, *conditions]

