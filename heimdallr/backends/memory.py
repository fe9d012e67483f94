"""
In-memory storage backend for Heimdallr.

A zero-dependency storage layer with just enough of an ORM to exercise
every proxy feature: declared fields, dirty tracking, validation hooks,
associations, composable scopes filtered by predicates, and eager
loading with per-association conditions.

Rows are kept as snapshots in a MemoryStore; every query materializes
fresh instances, the way a database-backed ORM does.

Example:
    >>> class Article(MemoryModel):
    ...     fields = ("id", "owner_id", "content", "secrecy_level")
    ...     owner = belongs_to("User")
    ...     comments = has_many("Comment")
    >>>
    >>> article = Article.create(owner_id=1, content="Hi", secrecy_level=0)
    >>> Article.query().where(lambda a: a.secrecy_level < 5).count()
    1
"""

from __future__ import annotations

import logging
import threading
from collections.abc import Callable, Mapping, Sequence
from typing import Any

from heimdallr.backends.base import Errors, Preload, Scope, StorageBackend
from heimdallr.exceptions import ConfigurationError, RecordInvalidError
from heimdallr.model import Restrictable
from heimdallr.types import Relation
from heimdallr.validators import SecurityValidator, Validator

logger = logging.getLogger(__name__)

Predicate = Callable[[Any], bool]

_CLASS_KEY = "__class__"


class MemoryStore:
    """
    Thread-safe table storage: table name -> primary key -> row snapshot.
    """

    def __init__(self) -> None:
        self._tables: dict[str, dict[Any, dict[str, Any]]] = {}
        self._sequences: dict[str, int] = {}
        self._lock = threading.RLock()

    def next_identity(self, table: str) -> int:
        with self._lock:
            self._sequences[table] = self._sequences.get(table, 0) + 1
            return self._sequences[table]

    def write(self, table: str, identity: Any, row: Mapping[str, Any]) -> None:
        with self._lock:
            self._tables.setdefault(table, {})[identity] = dict(row)
            if isinstance(identity, int) and identity > self._sequences.get(table, 0):
                self._sequences[table] = identity

    def remove(self, table: str, identity: Any) -> bool:
        with self._lock:
            return self._tables.get(table, {}).pop(identity, None) is not None

    def contains(self, table: str, identity: Any) -> bool:
        with self._lock:
            return identity in self._tables.get(table, {})

    def rows(self, table: str) -> list[dict[str, Any]]:
        """Return copies of every row of a table in insertion order."""
        with self._lock:
            return [dict(row) for row in self._tables.get(table, {}).values()]

    def clear(self) -> None:
        with self._lock:
            self._tables.clear()
            self._sequences.clear()

    def __len__(self) -> int:
        with self._lock:
            return sum(len(rows) for rows in self._tables.values())


default_store = MemoryStore()

_models: dict[str, type[MemoryModel]] = {}
_models_lock = threading.Lock()


def resolve_model(target: type | str) -> type[MemoryModel]:
    """Resolve a model class or the name of a MemoryModel subclass."""
    if isinstance(target, type):
        return target
    with _models_lock:
        model = _models.get(target)
    if model is None:
        raise ConfigurationError(
            config_key=f"relation target {target!r}",
            expected="the name of a defined MemoryModel subclass",
        )
    return model


# Associations


class _Association:
    collection = False

    def __init__(self, target: type | str, foreign_key: str | None = None) -> None:
        self._target = target
        self.foreign_key = foreign_key
        self.name = ""

    def __set_name__(self, owner: type, name: str) -> None:
        self.name = name

    @property
    def target(self) -> type[MemoryModel]:
        return resolve_model(self._target)

    def relation(self) -> Relation:
        return Relation(self.name, self.target, self.collection)

    def related_scope(self, record: MemoryModel) -> MemoryScope:
        raise NotImplementedError

    def __repr__(self) -> str:
        target = self._target if isinstance(self._target, str) else self._target.__name__
        return f"{type(self).__name__}({target!r}, foreign_key={self.foreign_key!r})"


class belongs_to(_Association):
    """
    Single association through a foreign key on the owning record.

    The foreign key defaults to ``<name>_id``.
    """

    def __set_name__(self, owner: type, name: str) -> None:
        super().__set_name__(owner, name)
        if self.foreign_key is None:
            self.foreign_key = f"{name}_id"

    def related_scope(self, record: MemoryModel) -> MemoryScope:
        target = self.target
        identity = getattr(record, self.foreign_key)
        if identity is None:
            return MemoryScope(target).none()
        return MemoryScope(target).with_identity(identity)

    def __get__(self, instance: MemoryModel | None, owner: type) -> Any:
        if instance is None:
            return self
        if self.name in instance._preloaded:
            return instance._preloaded[self.name]
        return self.related_scope(instance).first()

    def __set__(self, instance: MemoryModel, value: MemoryModel | None) -> None:
        instance._preloaded.pop(self.name, None)
        setattr(instance, self.foreign_key, None if value is None else value.identity)


class has_many(_Association):
    """
    Multi-valued association through a foreign key on the target records.

    The foreign key defaults to ``<owner class name in lower case>_id``.
    Reading it returns an unrestricted scope, or the preloaded list.
    """

    collection = True

    def __set_name__(self, owner: type, name: str) -> None:
        super().__set_name__(owner, name)
        if self.foreign_key is None:
            self.foreign_key = f"{owner.__name__.lower()}_id"

    def related_scope(self, record: MemoryModel) -> MemoryScope:
        return MemoryScope(self.target).where(**{self.foreign_key: record.identity})

    def __get__(self, instance: MemoryModel | None, owner: type) -> Any:
        if instance is None:
            return self
        if self.name in instance._preloaded:
            return list(instance._preloaded[self.name])
        return self.related_scope(instance)


class has_one(has_many):
    """Single association through a foreign key on the target record."""

    collection = False

    def __get__(self, instance: MemoryModel | None, owner: type) -> Any:
        if instance is None:
            return self
        if self.name in instance._preloaded:
            return instance._preloaded[self.name]
        return self.related_scope(instance).first()


# Models


class MemoryModel(Restrictable):
    """
    Base class for in-memory models.

    Class attributes:
        fields: Persisted attribute names, including the primary key.
        primary_key: Name of the primary key field.
        table_name: Storage table. Subclasses of a model share its table
            and are filtered by type when queried.
        store: The MemoryStore holding the rows.
    """

    fields: tuple[str, ...] = ("id",)
    primary_key: str = "id"
    table_name: str | None = None
    store: MemoryStore = default_store

    _associations: dict[str, _Association] = {}

    def __init_subclass__(cls, **kwargs: Any) -> None:
        super().__init_subclass__(**kwargs)
        if cls.primary_key not in cls.fields:
            raise ConfigurationError(
                config_key=f"{cls.__name__}.fields",
                expected=f"to include the primary key {cls.primary_key!r}",
                received=cls.fields,
            )
        if cls.table_name is None:
            cls.table_name = cls.__name__.lower()

        associations: dict[str, _Association] = {}
        for klass in reversed(cls.__mro__):
            for name, value in vars(klass).items():
                if isinstance(value, _Association):
                    associations[name] = value
        cls._associations = associations

        with _models_lock:
            _models[cls.__name__] = cls

    def __init__(self, **attributes: Any) -> None:
        self._errors = Errors()
        self._preloaded: dict[str, Any] = {}
        self._original: dict[str, Any] = dict.fromkeys(self.fields)
        self._persisted = False
        self._destroyed = False

        for name in self.fields:
            self.__dict__[name] = None

        for name, value in attributes.items():
            if name not in self.fields and name not in self._associations:
                raise TypeError(f"{type(self).__name__} got an unexpected attribute {name!r}")
            setattr(self, name, value)

    @classmethod
    def _materialize(cls, row: Mapping[str, Any]) -> MemoryModel:
        model = row[_CLASS_KEY]
        record = model.__new__(model)
        record._errors = Errors()
        record._preloaded = {}
        record._persisted = True
        record._destroyed = False
        values = {name: row.get(name) for name in model.fields}
        record.__dict__.update(values)
        record._original = dict(values)
        return record

    # Querying

    @classmethod
    def query(cls) -> MemoryScope:
        """Return an unrestricted scope over every record of this model."""
        return MemoryScope(cls)

    @classmethod
    def create(cls, **attributes: Any) -> MemoryModel:
        """Instantiate and save a record without restrictions."""
        record = cls(**attributes)
        record.save()
        return record

    # State

    @property
    def identity(self) -> Any:
        return getattr(self, self.primary_key)

    @property
    def errors(self) -> Errors:
        return self._errors

    @property
    def is_new(self) -> bool:
        return not self._persisted and not self._destroyed

    @property
    def is_destroyed(self) -> bool:
        return self._destroyed

    def changed_fields(self) -> list[str]:
        return [name for name in self.fields if getattr(self, name) != self._original.get(name)]

    def attributes(self) -> dict[str, Any]:
        return {name: getattr(self, name) for name in self.fields}

    def reload(self) -> MemoryModel:
        """Re-read the stored row, discarding unsaved changes."""
        fresh = type(self).query().with_identity(self.identity).first()
        if fresh is None:
            raise LookupError(f"{self!r} is no longer stored")
        values = fresh.attributes()
        self.__dict__.update(values)
        self._original = dict(values)
        self._preloaded.clear()
        return self

    # Hooks

    def validate(self) -> None:
        """Native validation hook; add messages to ``self.errors``."""

    def before_destroy(self) -> None:
        """Callback run by ``destroy``; raise to abort the destruction."""

    # Persistence

    def save(
        self,
        validate: bool = True,
        validators: Sequence[Validator] = (),
        strict: bool = False,
    ) -> bool:
        """
        Validate and store the record.

        Returns:
            True on success, False when validation failed.

        Raises:
            RecordInvalidError: Validation failed and ``strict`` is set.
        """
        if validate:
            self._errors.clear()
            self.validate()
            SecurityValidator(validators).validate(self)
            if self._errors:
                if strict:
                    raise RecordInvalidError(self, self._errors.full_messages())
                return False

        if self.identity is None:
            self.__dict__[self.primary_key] = self.store.next_identity(self.table_name)

        row = self.attributes()
        row[_CLASS_KEY] = type(self)
        self.store.write(self.table_name, self.identity, row)
        self._original = self.attributes()
        self._persisted = True
        self._destroyed = False
        return True

    def delete(self) -> None:
        self.store.remove(self.table_name, self.identity)
        self._persisted = False
        self._destroyed = True

    def destroy(self) -> None:
        self.before_destroy()
        self.delete()

    def __eq__(self, other: object) -> bool:
        if not isinstance(other, MemoryModel):
            return NotImplemented
        if self.table_name != other.table_name:
            return False
        if self.identity is None:
            return self is other
        return self.identity == other.identity

    def __hash__(self) -> int:
        if self.identity is None:
            raise TypeError("Model instances without primary key value are unhashable")
        return hash((self.table_name, self.identity))

    def __repr__(self) -> str:
        return f"<{type(self).__name__} {self.primary_key}={self.identity!r}>"


# Scopes


def _ordering_key(field: str) -> Callable[[Any], tuple[bool, Any]]:
    def key(record: Any) -> tuple[bool, Any]:
        value = getattr(record, field)
        return (value is not None, value)

    return key


class MemoryScope(Scope):
    """
    An immutable query over a MemoryModel.

    ``where`` accepts predicates called with each record and keyword
    equality conditions. ``order_by`` accepts field names, with a leading
    "-" for descending order. Without an ordering, rows come back in
    primary key order.
    """

    def __init__(
        self,
        model: type[MemoryModel],
        filters: tuple[Predicate, ...] = (),
        orderings: tuple[str, ...] = (),
        limit: int | None = None,
        offset: int | None = None,
        empty: bool = False,
        preloads: Mapping[str, Preload] | None = None,
        loaded: Sequence[Any] | None = None,
    ) -> None:
        self.model = model
        self._filters = filters
        self._orderings = orderings
        self._limit = limit
        self._offset = offset
        self._empty = empty
        self._preloads = dict(preloads or {})
        self._loaded = None if loaded is None else list(loaded)

    def _replace(self, **changes: Any) -> MemoryScope:
        state = {
            "filters": self._filters,
            "orderings": self._orderings,
            "limit": self._limit,
            "offset": self._offset,
            "empty": self._empty,
            "preloads": self._preloads,
            "loaded": self._loaded,
        }
        state.update(changes)
        return MemoryScope(self.model, **state)

    # Refinement

    def where(self, *conditions: Predicate, **equals: Any) -> MemoryScope:
        filters = list(self._filters)
        for condition in conditions:
            if not callable(condition):
                raise TypeError(f"MemoryScope conditions must be callables, got {condition!r}")
            filters.append(condition)
        for name, expected in equals.items():
            if name not in self.model.fields:
                raise ValueError(f"{self.model.__name__} has no field named {name!r}")
            filters.append(_equals(name, expected))
        return self._replace(filters=tuple(filters))

    def order_by(self, *orderings: str) -> MemoryScope:
        for ordering in orderings:
            if ordering.lstrip("-") not in self.model.fields:
                raise ValueError(f"{self.model.__name__} has no field named {ordering!r}")
        return self._replace(orderings=self._orderings + tuple(orderings))

    def limit(self, count: int | None) -> MemoryScope:
        return self._replace(limit=count)

    def offset(self, count: int | None) -> MemoryScope:
        return self._replace(offset=count)

    def distinct(self) -> MemoryScope:
        return self

    def none(self) -> MemoryScope:
        return self._replace(empty=True)

    def with_identity(self, identity: Any) -> MemoryScope:
        return self.where(**{self.model.primary_key: identity})

    def condition(self) -> Predicate | None:
        if self._empty:
            return _never
        if not self._filters:
            return None
        filters = self._filters

        def matches(record: Any) -> bool:
            return all(check(record) for check in filters)

        return matches

    def preload(self, tree: Mapping[str, Preload]) -> MemoryScope:
        preloads = dict(self._preloads)
        preloads.update(tree)
        return self._replace(preloads=preloads)

    # Execution

    def _source(self) -> list[Any]:
        if self._loaded is not None:
            return list(self._loaded)
        rows = self.model.store.rows(self.model.table_name)
        return [
            MemoryModel._materialize(row)
            for row in rows
            if issubclass(row[_CLASS_KEY], self.model)
        ]

    def _matching(self) -> list[Any]:
        if self._empty:
            return []

        records = [
            record
            for record in self._source()
            if all(check(record) for check in self._filters)
        ]

        if self._loaded is None:
            records.sort(key=_ordering_key(self.model.primary_key))
        for ordering in reversed(self._orderings):
            descending = ordering.startswith("-")
            records.sort(key=_ordering_key(ordering.lstrip("-")), reverse=descending)

        start = self._offset or 0
        stop = None if self._limit is None else start + self._limit
        return records[start:stop]

    def all(self) -> list[Any]:
        records = self._matching()
        if self._preloads:
            _apply_preloads(records, self._preloads)
        return records

    def first(self) -> Any | None:
        records = self.limit(1).all() if self._limit is None else self.all()[:1]
        return records[0] if records else None

    def last(self) -> Any | None:
        records = self.all()
        return records[-1] if records else None

    def count(self) -> int:
        return len(self._matching())

    def exists(self) -> bool:
        return bool(self._matching())

    def pluck(self, *fields: str) -> list[Any]:
        if not fields:
            raise TypeError("pluck() requires at least one field")
        records = self._matching()
        if len(fields) == 1:
            return [getattr(record, fields[0]) for record in records]
        return [tuple(getattr(record, name) for name in fields) for record in records]

    def sum(self, field: str) -> Any:
        return sum(value for value in self.pluck(field) if value is not None)

    def delete_all(self) -> int:
        deleted = 0
        for record in self._matching():
            if record.store.remove(record.table_name, record.identity):
                deleted += 1
        logger.debug(f"Deleted {deleted} {self.model.__name__} row(s)")
        return deleted

    def destroy_all(self) -> list[Any]:
        records = self._matching()
        for record in records:
            record.destroy()
        return records

    def __repr__(self) -> str:
        return (
            f"MemoryScope({self.model.__name__}, filters={len(self._filters)}, "
            f"orderings={list(self._orderings)!r}, limit={self._limit!r}, "
            f"offset={self._offset!r}, empty={self._empty!r})"
        )


def _never(record: Any) -> bool:
    return False


def _equals(name: str, expected: Any) -> Predicate:
    if isinstance(expected, (list, tuple, set, frozenset, range)):
        options = expected

        def is_member(record: Any) -> bool:
            return getattr(record, name) in options

        return is_member

    def is_equal(record: Any) -> bool:
        return getattr(record, name) == expected

    return is_equal


def _apply_preloads(records: list[Any], tree: Mapping[str, Preload]) -> None:
    for name, node in tree.items():
        for record in records:
            association = record._associations.get(name)
            if association is None:
                raise ValueError(f"{type(record).__name__} has no association named {name!r}")
            scope = association.related_scope(record)
            if node.condition is not None:
                scope = scope.where(node.condition)
            if node.children:
                scope = scope.preload(node.children)
            if association.collection:
                record._preloaded[name] = scope.all()
            else:
                related = scope.all()
                record._preloaded[name] = related[0] if related else None


# Backend


class MemoryBackend(StorageBackend):
    """Storage backend for MemoryModel subclasses."""

    name = "memory"

    def base_scope(self, model: type) -> MemoryScope:
        return MemoryScope(model)

    def primary_key(self, model: type) -> str:
        return model.primary_key

    def attribute_names(self, model: type) -> list[str]:
        return list(model.fields)

    def reflect_on_relation(self, model: type, name: str) -> Relation | None:
        association = getattr(model, "_associations", {}).get(name)
        if association is None:
            return None
        return association.relation()

    def relation_scope(self, record: Any, relation: Relation) -> MemoryScope:
        return record._associations[relation.name].related_scope(record)

    def loaded_scope(self, record: Any, relation: Relation) -> MemoryScope:
        loaded = record._preloaded.get(relation.name)
        if loaded is None:
            loaded = []
        elif not isinstance(loaded, list):
            loaded = [loaded]
        return MemoryScope(relation.target, loaded=loaded)

    def is_loaded(self, record: Any, relation: Relation) -> bool:
        return relation.name in record._preloaded

    def is_new(self, record: Any) -> bool:
        return record.is_new

    def changed_fields(self, record: Any) -> list[str]:
        return record.changed_fields()

    def errors(self, record: Any) -> Errors:
        return record.errors

    def attributes(self, record: Any) -> dict[str, Any]:
        return record.attributes()

    def identity(self, record: Any) -> Any:
        return record.identity

    def save(
        self,
        record: Any,
        validators: Sequence[Validator],
        strict: bool = False,
    ) -> bool:
        return record.save(validate=True, validators=validators, strict=strict)

    def delete(self, record: Any) -> None:
        record.delete()

    def destroy(self, record: Any) -> None:
        record.destroy()


MemoryModel.__heimdallr_backend__ = MemoryBackend()
