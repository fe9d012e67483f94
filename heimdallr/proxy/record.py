"""
Record proxy: a security wrapper around a single record.

The proxy consults the record's DecisionTable on every read, on save and
on deletion. Writes to attributes go straight to the record; the save is
the enforcement point for writes.
"""

from __future__ import annotations

import logging
from collections.abc import Mapping
from typing import Any

from heimdallr.backends.base import Errors, StorageBackend, backend_for, is_scope
from heimdallr.config import get_config
from heimdallr.evaluator import DELETE, DecisionTable
from heimdallr.exceptions import (
    AlreadyRestrictedError,
    InsecureOperationError,
    PermissionDeniedError,
    RecordInvalidError,
)
from heimdallr.model import is_restrictable
from heimdallr.types import Action, Relation, RestrictOptions

logger = logging.getLogger(__name__)

_MARKERS = ("?", "!", "=")


def _normalize_name(name: str) -> str:
    if name and name[-1] in _MARKERS:
        return name[:-1]
    return name


class RecordProxy:
    """
    A security wrapper around one record.

    Reads of fields outside the view whitelist raise PermissionDeniedError
    (explicit mode) or return None (implicit mode). Associations are
    returned restricted with the same security context.

    Attributes are forwarded to the record, so ``proxy.title`` reads
    ``record.title`` through the whitelist and ``proxy.title = "x"``
    assigns it on the record.

    Example:
        >>> proxy = article.restrict(user)
        >>> proxy.content
        'Lorem ipsum'
        >>> proxy.secrecy_level
        Traceback (most recent call last):
            ...
        heimdallr.exceptions.PermissionDeniedError: ...
        >>> proxy.content = "Updated"
        >>> proxy.save()
        True
    """

    __slots__ = ("_record", "_context", "_options", "_restrictions", "_backend")

    def __init__(
        self,
        context: Any,
        record: Any,
        options: RestrictOptions | None = None,
    ) -> None:
        if isinstance(record, RecordProxy):
            raise AlreadyRestrictedError(repr(record))
        object.__setattr__(self, "_record", record)
        object.__setattr__(self, "_context", context)
        object.__setattr__(self, "_options", options or RestrictOptions())
        object.__setattr__(self, "_backend", backend_for(type(record)))
        object.__setattr__(
            self, "_restrictions", type(record).restrictions(context, record)
        )

    # Reading

    def get(self, name: str) -> Any:
        """
        Read a field or association through the security policy.

        Raises:
            PermissionDeniedError: The field is not viewable (explicit mode).
            InsecureOperationError: The association target has no restrictions.
            AttributeError: The record has no such attribute.
        """
        name = _normalize_name(name)
        model = type(self._record)

        relation = self._backend.reflect_on_relation(model, name)
        if relation is not None or name in getattr(model, "heimdallr_relations", ()):
            return self._fetch_association(name, relation)

        if not hasattr(self._record, name):
            raise AttributeError(f"{model.__name__!r} object has no attribute {name!r}")

        if name not in self._restrictions.allowed(Action.VIEW):
            if self._options.implicit:
                return None
            raise PermissionDeniedError(
                model=model.__name__,
                action=Action.VIEW.value,
                field=name,
                reason="Attempt to fetch non-whitelisted attribute",
            )

        return self._wrap(name, getattr(self._record, name))

    def __getattr__(self, name: str) -> Any:
        if name.startswith("_"):
            raise AttributeError(name)
        return self.get(name)

    def set(self, name: str, value: Any) -> None:
        """
        Assign a field on the record. Checked when the record is saved.

        Raises:
            InsecureOperationError: The name is private to the record.
        """
        name = _normalize_name(name)
        if name.startswith("_"):
            raise InsecureOperationError(
                operation=f"assign {type(self._record).__name__}.{name}",
                hint="Use insecure() to modify record internals",
            )
        setattr(self._record, name, value)

    def __setattr__(self, name: str, value: Any) -> None:
        if name in RecordProxy.__slots__:
            raise AttributeError(f"Cannot reassign {name} of a RecordProxy")
        self.set(name, value)

    def __getitem__(self, name: str) -> Any:
        return self.get(name)

    def __setitem__(self, name: str, value: Any) -> None:
        self.set(name, value)

    def _fetch_association(self, name: str, relation: Relation | None) -> Any:
        if relation is not None and relation.collection and is_restrictable(relation.target):
            return self._restricted_collection(name, relation)

        value = getattr(self._record, name)
        if callable(value) and not is_restrictable(value):
            value = value()

        if value is None:
            return None

        wrapped = self._wrap_restrictable(name, value)
        if wrapped is not None:
            return wrapped

        if get_config().allow_insecure_associations:
            logger.warning(
                f"Returning association {type(self._record).__name__}.{name} "
                f"without restrictions"
            )
            return value

        raise InsecureOperationError(
            operation=f"fetch association {type(self._record).__name__}.{name}",
            hint="Its target has no restrictions; use insecure() to access it",
        )

    def _restricted_collection(self, name: str, relation: Relation) -> Any:
        from heimdallr.proxy.collection import CollectionProxy

        options = self._options.for_relation(name)
        if self._options.is_eager_loaded(name) and self._backend.is_loaded(self._record, relation):
            scope = self._backend.loaded_scope(self._record, relation)
            return CollectionProxy(self._context, scope, options)

        base = self._backend.relation_scope(self._record, relation)
        scope = relation.target.restrictions(self._context).request_scope("fetch", base=base)
        return CollectionProxy(self._context, scope, options.without_eager_loads())

    def _wrap_restrictable(self, name: str, value: Any) -> Any:
        """Restrict records, scopes and lists of records; None for anything else."""
        from heimdallr.proxy.collection import CollectionProxy

        options = self._options.for_relation(name)

        if isinstance(value, (RecordProxy, CollectionProxy)):
            return value.restrict(
                self._context,
                implicit=options.implicit,
                eager_loaded=options.eager_loaded or None,
            )
        if is_scope(value) and is_restrictable(value.model):
            scope = value.model.restrictions(self._context).request_scope("fetch", base=value)
            return CollectionProxy(self._context, scope, options.without_eager_loads())
        if is_restrictable(value) and not isinstance(value, type):
            return RecordProxy(self._context, value, options)
        if isinstance(value, (list, tuple)) and value and all(
            is_restrictable(item) and not isinstance(item, type) for item in value
        ):
            return [RecordProxy(self._context, item, options) for item in value]
        return None

    def _wrap(self, name: str, value: Any) -> Any:
        wrapped = self._wrap_restrictable(name, value) if value is not None else None
        return value if wrapped is None else wrapped

    # Writing

    def assign_attributes(self, attributes: Mapping[str, Any]) -> None:
        for name, value in attributes.items():
            self.set(name, value)

    def update_attributes(self, attributes: Mapping[str, Any]) -> bool:
        self.assign_attributes(attributes)
        return self.save()

    def update_attributes_or_raise(self, attributes: Mapping[str, Any]) -> bool:
        self.assign_attributes(attributes)
        return self.save_or_raise()

    def increment(self, name: str, by: Any = 1) -> RecordProxy:
        """Add ``by`` to a field, treating None as zero. Checked on save."""
        current = getattr(self._record, _normalize_name(name))
        self.set(name, (current or 0) + by)
        return self

    def decrement(self, name: str, by: Any = 1) -> RecordProxy:
        return self.increment(name, -by)

    def toggle(self, name: str) -> RecordProxy:
        """Flip a boolean field. Checked on save."""
        self.set(name, not getattr(self._record, _normalize_name(name)))
        return self

    def save(self, validate: bool = True) -> bool:
        """
        Save the record if the security policy allows it.

        Returns:
            True if the record was saved, False if validation failed.

        Raises:
            InsecureOperationError: ``validate`` is False.
            PermissionDeniedError: The action is not permitted, or a changed
                field is neither whitelisted nor equal to its fixture.
        """
        return self._save(validate, strict=False)

    def save_or_raise(self, validate: bool = True) -> bool:
        """
        Like ``save`` but raise RecordInvalidError when validation fails.
        """
        return self._save(validate, strict=True)

    def _save(self, validate: bool, strict: bool) -> bool:
        if not validate:
            raise InsecureOperationError(
                operation=f"save {type(self._record).__name__} without validation",
                hint="Use insecure() to skip validation",
            )

        action = self._save_action()
        model_name = type(self._record).__name__
        if not self._restrictions.can(action):
            raise PermissionDeniedError(
                model=model_name,
                action=action,
                reason=f"{action} is not permitted",
            )

        errors = self._backend.errors(self._record)
        errors.clear()

        fixtures = self._restrictions.fixtures_for(action)
        allowed = self._restrictions.allowed(action)

        for name in self._backend.changed_fields(self._record):
            value = getattr(self._record, name)
            if name in fixtures:
                if value != fixtures[name]:
                    errors.add(name, f"cannot be changed to {value!r}")
                    raise PermissionDeniedError(
                        model=model_name,
                        action=action,
                        field=name,
                        reason=f"Attribute value is fixed to {fixtures[name]!r}",
                    )
            elif name not in allowed:
                errors.add(name, "is not allowed to be changed")
                raise PermissionDeniedError(
                    model=model_name,
                    action=action,
                    field=name,
                    reason="Attempt to write non-whitelisted attribute",
                )

        validators = self._restrictions.validators_for(action)
        try:
            return self._backend.save(self._record, validators, strict=strict)
        except RecordInvalidError:
            logger.debug(f"Rejected invalid {model_name}: {errors.full_messages()}")
            raise

    def _save_action(self) -> str:
        if self._backend.is_new(self._record):
            return Action.CREATE.value
        return Action.UPDATE.value

    # Deleting

    def delete(self) -> None:
        """Delete the record without callbacks, if it is in the delete scope."""
        self._check_destroyable()
        self._backend.delete(self._record)

    def destroy(self) -> None:
        """Destroy the record running callbacks, if it is in the delete scope."""
        self._check_destroyable()
        self._backend.destroy(self._record)

    def _check_destroyable(self) -> None:
        if not self.is_destroyable():
            raise PermissionDeniedError(
                model=type(self._record).__name__,
                action=DELETE,
                reason="Record is outside of the delete scope",
            )

    # Introspection

    def is_visible(self) -> bool:
        """Check whether the record is within the fetch scope."""
        if self._backend.is_new(self._record):
            return False
        return self._restrictions.request_scope("fetch").with_identity(
            self._backend.identity(self._record)
        ).exists()

    def is_creatable(self) -> bool:
        return self._backend.is_new(self._record) and self._restrictions.can(Action.CREATE)

    def is_modifiable(self) -> bool:
        return not self._backend.is_new(self._record) and self._restrictions.can(Action.UPDATE)

    def is_destroyable(self) -> bool:
        """Check whether the record is within the delete scope."""
        if self._backend.is_new(self._record):
            return False
        return self._restrictions.request_scope(DELETE).with_identity(
            self._backend.identity(self._record)
        ).exists()

    @property
    def attributes(self) -> dict[str, Any]:
        """Record attributes, with fields outside the view whitelist set to None."""
        viewable = self._restrictions.allowed(Action.VIEW)
        return {
            name: value if name in viewable else None
            for name, value in self._backend.attributes(self._record).items()
        }

    @property
    def errors(self) -> Errors:
        return self._backend.errors(self._record)

    def is_valid(self) -> bool:
        return not self._backend.errors(self._record)

    @property
    def class_name(self) -> str:
        return type(self._record).__name__

    @property
    def restrictions(self) -> DecisionTable:
        return self._restrictions

    @property
    def context(self) -> Any:
        return self._context

    @property
    def options(self) -> RestrictOptions:
        return self._options

    def reflect_on_security(self) -> dict[str, Any]:
        """Describe the security state of this proxy."""
        return {
            "operations": [
                name
                for name, permitted in (
                    ("view", self.is_visible()),
                    ("create", self.is_creatable()),
                    ("update", self.is_modifiable()),
                    ("destroy", self.is_destroyable()),
                )
                if permitted
            ],
            "restrictions": self._restrictions.to_dict(),
            "options": self._options.to_dict(),
        }

    # Strategy

    def implicit(self) -> RecordProxy:
        """Return a proxy that reads non-whitelisted fields as None."""
        return RecordProxy(self._context, self._record, self._options.with_implicit(True))

    def explicit(self) -> RecordProxy:
        """Return a proxy that raises on reads of non-whitelisted fields."""
        return RecordProxy(self._context, self._record, self._options.with_implicit(False))

    def insecure(self) -> Any:
        """Return the underlying record, bypassing every check."""
        return self._record

    def restrict(
        self,
        context: Any,
        implicit: bool | None = None,
        eager_loaded: Any = None,
    ) -> RecordProxy:
        """
        Return self if already restricted with the same context and options.

        Options left as None keep the value the proxy was built with.

        Raises:
            AlreadyRestrictedError: The context or the options differ.
        """
        options = self._options.requested(implicit, eager_loaded)
        if context == self._context and options == self._options:
            return self
        raise AlreadyRestrictedError(repr(self))

    def __eq__(self, other: object) -> bool:
        if isinstance(other, RecordProxy):
            return self._record == other._record and self._context == other._context
        return NotImplemented

    __hash__ = None  # type: ignore[assignment]

    def __repr__(self) -> str:
        return f"<RecordProxy {self._record!r}>"

