"""
SQLAlchemy storage backend for Heimdallr.

Adapts declarative SQLAlchemy 2.x models. Scopes wrap ORM ``Query``
objects, eager loads become ``selectinload`` options carrying the fetch
condition of the target as relationship criteria, and dirty tracking
reads SQLAlchemy's attribute history.

The backend flushes on save and delete but never commits; transaction
boundaries belong to the application.

Requires: pip install heimdallr[sqlalchemy]

Example:
    >>> class Base(DeclarativeBase):
    ...     pass
    >>>
    >>> class Article(SQLAlchemyRecord, Base):
    ...     __tablename__ = "articles"
    ...     id: Mapped[int] = mapped_column(primary_key=True)
    ...     owner_id: Mapped[int]
    >>>
    >>> bind_session(Base, session)
    >>> Article.restrict(user).count()
"""

from __future__ import annotations

import logging
from collections.abc import Mapping, Sequence
from typing import Any

from heimdallr.backends.base import Errors, Preload, Scope, StorageBackend, iter_preloads
from heimdallr.exceptions import ConfigurationError, RecordInvalidError
from heimdallr.model import Restrictable
from heimdallr.types import Relation
from heimdallr.validators import SecurityValidator, Validator

logger = logging.getLogger(__name__)

# Check if SQLAlchemy is available
try:
    import sqlalchemy as sa
    from sqlalchemy import orm
    HAS_SQLALCHEMY = True
except ImportError:
    HAS_SQLALCHEMY = False
    sa = None  # type: ignore
    orm = None  # type: ignore

_ERRORS_KEY = "_heimdallr_errors"


def _require_sqlalchemy() -> None:
    if not HAS_SQLALCHEMY:
        raise ConfigurationError(
            config_key="sqlalchemy",
            expected="the sqlalchemy package. Install with: pip install heimdallr[sqlalchemy]",
        )


def bind_session(model: type, session: Any) -> None:
    """
    Bind a session to a model class and its subclasses.

    Scopes over the model are built on this session. Records already
    attached to a session keep using their own.
    """
    _require_sqlalchemy()
    model.__heimdallr_session__ = session
    logger.debug(f"Bound session {session!r} to {model.__name__}")


def unbind_session(model: type) -> None:
    if "__heimdallr_session__" in vars(model):
        del model.__heimdallr_session__


def _model_session(model: type) -> Any:
    session = getattr(model, "__heimdallr_session__", None)
    if session is None:
        raise ConfigurationError(
            config_key=f"{model.__name__}.__heimdallr_session__",
            expected="a session bound with bind_session()",
        )
    return session


def _record_session(record: Any) -> Any:
    return orm.object_session(record) or _model_session(type(record))


def _column(model: type, name: str) -> Any:
    mapper = sa.inspect(model)
    if name not in mapper.column_attrs:
        raise ValueError(f"{model.__name__} has no column attribute named {name!r}")
    return getattr(model, name)


def _primary_key(model: type) -> str:
    mapper = sa.inspect(model)
    return mapper.get_property_by_column(mapper.primary_key[0]).key


class SQLAlchemyRecord(Restrictable):
    """
    Mixin for declarative models backed by SQLAlchemy.

    Adds the validation error collector and a ``validate()`` hook that
    runs before every save through a proxy.
    """

    __allow_unmapped__ = True

    @property
    def errors(self) -> Errors:
        errors = self.__dict__.get(_ERRORS_KEY)
        if errors is None:
            errors = Errors()
            self.__dict__[_ERRORS_KEY] = errors
        return errors

    def validate(self) -> None:
        """Native validation hook; add messages to ``self.errors``."""


class SQLAlchemyScope(Scope):
    """
    An immutable scope over an ORM ``Query``.

    ``where`` accepts SQL expressions and keyword equality conditions;
    ``order_by`` accepts column names (with a leading "-" for descending
    order) as well as SQL expressions.
    """

    def __init__(
        self,
        model: type,
        query: Any,
        loaded: Sequence[Any] | None = None,
        loaders: Sequence[Any] = (),
        refresh: bool = False,
    ) -> None:
        self.model = model
        self.query = query
        self._loaded = None if loaded is None else list(loaded)
        self._loaders = tuple(loaders)
        self._refresh = refresh

    def _refine(self, query: Any) -> SQLAlchemyScope:
        return SQLAlchemyScope(self.model, query, loaders=self._loaders, refresh=self._refresh)

    def _loading_query(self) -> Any:
        query = self.query
        if self._loaders:
            query = query.options(*self._loaders)
        # Collections loaded earlier in the session would otherwise be served unfiltered.
        if self._refresh:
            query = query.populate_existing()
        return query

    def where(self, *conditions: Any, **equals: Any) -> SQLAlchemyScope:
        query = self.query
        if conditions:
            query = query.filter(*conditions)
        if equals:
            query = query.filter_by(**equals)
        return self._refine(query)

    def order_by(self, *orderings: Any) -> SQLAlchemyScope:
        clauses = []
        for ordering in orderings:
            if isinstance(ordering, str):
                column = _column(self.model, ordering.lstrip("-"))
                clauses.append(column.desc() if ordering.startswith("-") else column.asc())
            else:
                clauses.append(ordering)
        return self._refine(self.query.order_by(*clauses))

    def limit(self, count: int | None) -> SQLAlchemyScope:
        return self._refine(self.query.limit(count))

    def offset(self, count: int | None) -> SQLAlchemyScope:
        return self._refine(self.query.offset(count))

    def distinct(self) -> SQLAlchemyScope:
        return self._refine(self.query.distinct())

    def join(self, *targets: Any, **options: Any) -> SQLAlchemyScope:
        return self._refine(self.query.join(*targets, **options))

    def none(self) -> SQLAlchemyScope:
        return self._refine(self.query.filter(sa.false()))

    def with_identity(self, identity: Any) -> SQLAlchemyScope:
        primary_key = getattr(self.model, _primary_key(self.model))
        return self._refine(self.query.filter(primary_key == identity))

    def condition(self) -> Any:
        return self.query.whereclause

    def preload(self, tree: Mapping[str, Preload]) -> SQLAlchemyScope:
        loaders = []
        filtered = False
        for path, conditions in iter_preloads(tree):
            filtered = filtered or any(condition is not None for condition in conditions)
            loader = None
            current = self.model
            for name, condition in zip(path, conditions):
                attribute = getattr(current, name)
                target = attribute.property.mapper.class_
                if condition is not None:
                    attribute = attribute.and_(condition)
                if loader is None:
                    loader = orm.selectinload(attribute)
                else:
                    loader = loader.selectinload(attribute)
                current = target
            loaders.append(loader)
        return SQLAlchemyScope(
            self.model,
            self.query,
            loaders=self._loaders + tuple(loaders),
            refresh=self._refresh or filtered,
        )

    def all(self) -> list[Any]:
        if self._loaded is not None:
            return list(self._loaded)
        return self._loading_query().all()

    def first(self) -> Any | None:
        if self._loaded is not None:
            return self._loaded[0] if self._loaded else None
        return self._loading_query().first()

    def last(self) -> Any | None:
        records = self.all()
        return records[-1] if records else None

    def count(self) -> int:
        if self._loaded is not None:
            return len(self._loaded)
        return self.query.count()

    def exists(self) -> bool:
        if self._loaded is not None:
            return bool(self._loaded)
        return bool(self.query.session.query(self.query.exists()).scalar())

    def pluck(self, *fields: str) -> list[Any]:
        if not fields:
            raise TypeError("pluck() requires at least one field")
        if self._loaded is not None:
            if len(fields) == 1:
                return [getattr(record, fields[0]) for record in self._loaded]
            return [tuple(getattr(record, name) for name in fields) for record in self._loaded]

        columns = [_column(self.model, name) for name in fields]
        rows = self.query.with_entities(*columns).all()
        if len(fields) == 1:
            return [row[0] for row in rows]
        return [tuple(row) for row in rows]

    def sum(self, field: str) -> Any:
        if self._loaded is not None:
            return sum(value for value in self.pluck(field) if value is not None)
        total = (
            self.query.order_by(None)
            .with_entities(sa.func.sum(_column(self.model, field)))
            .scalar()
        )
        return total or 0

    def delete_all(self) -> int:
        identities = self.ids()
        if not identities:
            return 0
        session = self.query.session
        primary_key = getattr(self.model, _primary_key(self.model))
        deleted = (
            session.query(self.model)
            .filter(primary_key.in_(identities))
            .delete(synchronize_session="fetch")
        )
        logger.debug(f"Deleted {deleted} {self.model.__name__} row(s)")
        return deleted

    def destroy_all(self) -> list[Any]:
        records = self.all()
        session = self.query.session
        for record in records:
            session.delete(record)
        session.flush()
        return records

    def __repr__(self) -> str:
        return f"SQLAlchemyScope({self.model.__name__})"


class SQLAlchemyBackend(StorageBackend):
    """Storage backend for SQLAlchemy declarative models."""

    name = "sqlalchemy"

    def base_scope(self, model: type) -> SQLAlchemyScope:
        _require_sqlalchemy()
        return SQLAlchemyScope(model, _model_session(model).query(model))

    def primary_key(self, model: type) -> str:
        return _primary_key(model)

    def attribute_names(self, model: type) -> list[str]:
        return [attribute.key for attribute in sa.inspect(model).column_attrs]

    def reflect_on_relation(self, model: type, name: str) -> Relation | None:
        relationship = sa.inspect(model).relationships.get(name)
        if relationship is None:
            return None
        return Relation(name, relationship.mapper.class_, bool(relationship.uselist))

    def relation_scope(self, record: Any, relation: Relation) -> SQLAlchemyScope:
        session = _record_session(record)
        query = session.query(relation.target).filter(
            orm.with_parent(record, getattr(type(record), relation.name))
        )
        return SQLAlchemyScope(relation.target, query)

    def loaded_scope(self, record: Any, relation: Relation) -> SQLAlchemyScope:
        scope = self.relation_scope(record, relation)
        loaded = getattr(record, relation.name)
        return SQLAlchemyScope(relation.target, scope.query, loaded=list(loaded or ()))

    def is_loaded(self, record: Any, relation: Relation) -> bool:
        return relation.name not in sa.inspect(record).unloaded

    def is_new(self, record: Any) -> bool:
        state = sa.inspect(record)
        return state.transient or state.pending

    def changed_fields(self, record: Any) -> list[str]:
        state = sa.inspect(record)
        columns = state.mapper.column_attrs
        return [
            attribute.key
            for attribute in state.attrs
            if attribute.key in columns and attribute.history.has_changes()
        ]

    def errors(self, record: Any) -> Errors:
        if isinstance(record, SQLAlchemyRecord):
            return record.errors
        errors = record.__dict__.get(_ERRORS_KEY)
        if errors is None:
            errors = Errors()
            record.__dict__[_ERRORS_KEY] = errors
        return errors

    def attributes(self, record: Any) -> dict[str, Any]:
        return {name: getattr(record, name) for name in self.attribute_names(type(record))}

    def save(
        self,
        record: Any,
        validators: Sequence[Validator],
        strict: bool = False,
    ) -> bool:
        errors = self.errors(record)
        errors.clear()
        if hasattr(record, "validate"):
            record.validate()
        SecurityValidator(validators).validate(record)
        if errors:
            if strict:
                raise RecordInvalidError(record, errors.full_messages())
            return False

        session = _record_session(record)
        session.add(record)
        session.flush()
        return True

    def delete(self, record: Any) -> None:
        model = type(record)
        session = _record_session(record)
        session.query(model).filter(
            getattr(model, _primary_key(model)) == self.identity(record)
        ).delete(synchronize_session="fetch")

    def destroy(self, record: Any) -> None:
        session = _record_session(record)
        session.delete(record)
        session.flush()


SQLAlchemyRecord.__heimdallr_backend__ = SQLAlchemyBackend()
