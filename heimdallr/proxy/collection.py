"""
Collection proxy: a security wrapper around a scope.

Every record the proxy returns is wrapped in a RecordProxy with the same
security context. Deletions go through the delete scope and new records
get the create fixtures of the model's restrictions.
"""

from __future__ import annotations

import logging
from collections.abc import Callable, Iterator
from typing import Any

from heimdallr.backends.base import Preload, Scope, backend_for
from heimdallr.config import get_config
from heimdallr.evaluator import DELETE, FETCH, DecisionTable
from heimdallr.exceptions import (
    AlreadyRestrictedError,
    InsecureOperationError,
    RecordNotFoundError,
)
from heimdallr.model import is_restrictable
from heimdallr.proxy.record import RecordProxy
from heimdallr.types import (
    Action,
    AssociationTree,
    RestrictOptions,
    merge_associations,
    normalize_associations,
)

logger = logging.getLogger(__name__)


class CollectionProxy:
    """
    A security wrapper around a scope already filtered by the fetch scope.

    Query refinements return new proxies. Records come back as RecordProxy
    instances; plain values (counts, plucked columns) come back as is.
    Methods of the scope that the proxy does not know how to secure raise
    InsecureOperationError.

    Example:
        >>> articles = Article.restrict(user)
        >>> articles.where(owner_id=user.id).order_by("-id").first()
        <RecordProxy <Article id=3>>
        >>> articles.new(content="Draft").owner_id == user.id
        True
    """

    def __init__(
        self,
        context: Any,
        scope: Scope,
        options: RestrictOptions | None = None,
    ) -> None:
        self._context = context
        self._scope = scope
        self._options = options or RestrictOptions()
        self._restrictions = scope.model.restrictions(context)

    @property
    def model(self) -> type:
        return self._scope.model

    @property
    def context(self) -> Any:
        return self._context

    @property
    def options(self) -> RestrictOptions:
        return self._options

    @property
    def restrictions(self) -> DecisionTable:
        return self._restrictions

    def _rewrap(self, scope: Scope, options: RestrictOptions | None = None) -> CollectionProxy:
        if options is None:
            options = self._options.without_eager_loads()
        return CollectionProxy(self._context, scope, options)

    def _record(self, record: Any) -> RecordProxy | None:
        if record is None:
            return None
        return RecordProxy(self._context, record, self._options)

    # Query refinement

    def where(self, *conditions: Any, **equals: Any) -> CollectionProxy:
        return self._rewrap(self._scope.where(*conditions, **equals))

    def order_by(self, *orderings: Any) -> CollectionProxy:
        return self._rewrap(self._scope.order_by(*orderings))

    def limit(self, count: int | None) -> CollectionProxy:
        return self._rewrap(self._scope.limit(count))

    def offset(self, count: int | None) -> CollectionProxy:
        return self._rewrap(self._scope.offset(count))

    def distinct(self) -> CollectionProxy:
        return self._rewrap(self._scope.distinct())

    def join(self, *targets: Any, **options: Any) -> CollectionProxy:
        return self._rewrap(self._scope.join(*targets, **options))

    def includes(self, *associations: Any) -> CollectionProxy:
        """
        Eager-load associations of the returned records.

        Accepts names, lists of names and nested mappings. When the target
        of an association has restrictions, its fetch condition is applied
        to the preloaded rows. Records read through the resulting proxy
        serve those associations from the preloaded rows.

        Raises:
            ValueError: An association name is not a relation of its model.
        """
        tree = normalize_associations(*associations)
        preloads = self._build_preloads(self.model, tree)
        options = RestrictOptions(
            implicit=self._options.implicit,
            eager_loaded=merge_associations(self._options.eager_loaded, tree),
        )
        return self._rewrap(self._scope.preload(preloads), options)

    def _build_preloads(self, model: type, tree: AssociationTree) -> dict[str, Preload]:
        backend = backend_for(model)
        inject = get_config().inject_eager_load_filters
        preloads: dict[str, Preload] = {}

        for name, children in tree.items():
            relation = backend.reflect_on_relation(model, name)
            if relation is None:
                raise ValueError(f"{model.__name__} has no association named {name!r}")

            condition = None
            if inject and is_restrictable(relation.target):
                condition = (
                    relation.target.restrictions(self._context).request_scope(FETCH).condition()
                )
                logger.debug(
                    f"Filtering eager load {model.__name__}.{name} "
                    f"by the fetch scope of {relation.target.__name__}"
                )
            preloads[name] = Preload(condition, self._build_preloads(relation.target, children))

        return preloads

    # Constructors

    def new(self, **attributes: Any) -> RecordProxy:
        """
        Build a new record with the create fixtures applied.

        Fixtures take precedence over the given attributes.
        """
        values = dict(attributes)
        values.update(self._restrictions.fixtures_for(Action.CREATE))
        return RecordProxy(self._context, self._scope.new(**values), self._options)

    build = new

    def create(self, **attributes: Any) -> RecordProxy:
        """Build and save a new record; check ``errors`` for the outcome."""
        record = self.new(**attributes)
        record.save()
        return record

    def create_or_raise(self, **attributes: Any) -> RecordProxy:
        """Build and save a new record, raising RecordInvalidError on failure."""
        record = self.new(**attributes)
        record.save_or_raise()
        return record

    # Destruction

    def _delete_scope(self) -> Scope:
        return self._restrictions.request_scope(DELETE, base=self._scope)

    def delete_all(self) -> int:
        """Delete every record in the delete scope without callbacks."""
        return self._delete_scope().delete_all()

    def destroy_all(self) -> list[Any]:
        """Destroy every record in the delete scope, running callbacks."""
        return self._delete_scope().destroy_all()

    def delete(self, identity: Any) -> int:
        """Delete the record with the given identity if it is in the delete scope."""
        return self._delete_scope().with_identity(identity).delete_all()

    def destroy(self, identity: Any) -> list[Any]:
        """Destroy the record with the given identity if it is in the delete scope."""
        return self._delete_scope().with_identity(identity).destroy_all()

    # Record-returning

    def all(self) -> list[RecordProxy]:
        return [RecordProxy(self._context, record, self._options) for record in self._scope.all()]

    def __iter__(self) -> Iterator[RecordProxy]:
        return iter(self.all())

    def first(self) -> RecordProxy | None:
        return self._record(self._scope.first())

    def last(self) -> RecordProxy | None:
        return self._record(self._scope.last())

    def get(self, identity: Any) -> RecordProxy | None:
        return self._record(self._scope.get(identity))

    def find(self, identity: Any) -> RecordProxy:
        """
        Return the visible record with the given identity.

        Raises:
            RecordNotFoundError: No visible record has the identity.
        """
        record = self._scope.get(identity)
        if record is None:
            raise RecordNotFoundError(self.model.__name__, identity)
        return RecordProxy(self._context, record, self._options)

    def find_by(self, **equals: Any) -> RecordProxy | None:
        return self._record(self._scope.find_by(**equals))

    # Value-returning

    def count(self) -> int:
        return self._scope.count()

    def exists(self) -> bool:
        return self._scope.exists()

    def pluck(self, *fields: str) -> list[Any]:
        return self._scope.pluck(*fields)

    def ids(self) -> list[Any]:
        return self._scope.ids()

    def sum(self, field: str) -> Any:
        return self._scope.sum(field)

    # Named scopes and unknown methods

    def __getattr__(self, name: str) -> Any:
        if name.startswith("_"):
            raise AttributeError(name)

        if name in getattr(self.model, "heimdallr_scopes", ()):
            named = getattr(self._scope, name)

            def call_named_scope(*args: Any, **kwargs: Any) -> CollectionProxy:
                return self._rewrap(named(*args, **kwargs))

            return call_named_scope

        if hasattr(self._scope, name):
            raise InsecureOperationError(
                operation=f"{self.model.__name__} collection method {name}()",
                hint="Use insecure() to call arbitrary scope methods",
            )
        raise AttributeError(f"{type(self).__name__!r} object has no attribute {name!r}")

    # Security

    def insecure(self, transform: Callable[[Scope], Scope] | None = None) -> Any:
        """
        Bypass the proxy.

        Without a transform, return the underlying scope. With one, apply it
        to the underlying scope and restrict the result again.
        """
        if transform is None:
            return self._scope
        return self._rewrap(transform(self._scope))

    def is_creatable(self) -> bool:
        return self._restrictions.can(Action.CREATE)

    def restrict(
        self,
        context: Any,
        implicit: bool | None = None,
        eager_loaded: Any = None,
    ) -> CollectionProxy:
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

    def reflect_on_security(self) -> dict[str, Any]:
        """Describe the security state of this proxy."""
        return {
            "operations": ["create"] if self.is_creatable() else [],
            "restrictions": self._restrictions.to_dict(),
            "options": self._options.to_dict(),
        }

    def __repr__(self) -> str:
        return f"<CollectionProxy {self.model.__name__} {self._scope!r}>"
