"""
Model integration for Heimdallr.

Mix ``Restrictable`` into a model class backed by a storage backend and
register a rule block for it:

    class Article(MemoryModel):
        fields = ("id", "owner_id", "content", "secrecy_level")

    @Article.register_restrictions
    def article_rules(rules, user, record):
        rules.scope("fetch", lambda q: q.where(owner_id=user.id))
        rules.can("view")

    Article.restrict(user)            # CollectionProxy over the fetch scope
    article.restrict(user)            # RecordProxy
    Article.restrictions(user)        # DecisionTable

Named scopes declared with ``@named_scope`` are callable on the model and
on any scope over it, including restricted collections.
"""

from __future__ import annotations

import functools
import logging
import threading
from collections.abc import Callable
from typing import TYPE_CHECKING, Any, ClassVar

from heimdallr.backends.base import Scope, backend_for
from heimdallr.evaluator import DecisionTable, Evaluator, RuleBlock
from heimdallr.exceptions import ConfigurationError
from heimdallr.types import RestrictOptions

if TYPE_CHECKING:
    from heimdallr.proxy.collection import CollectionProxy
    from heimdallr.proxy.record import RecordProxy

logger = logging.getLogger(__name__)

_evaluator_lock = threading.RLock()


class named_scope:
    """
    Declare a reusable query refinement on a model.

    The decorated function receives a scope and returns a refined one.
    Accessed on the model it runs against the unrestricted base scope;
    accessed on a scope (restricted or not) it runs against that scope.

    Example:
        >>> class Article(MemoryModel):
        ...     @named_scope
        ...     def public(scope):
        ...         return scope.where(secrecy_level=0)
        >>>
        >>> Article.restrict(user).public().count()
    """

    def __init__(self, function: Callable[..., Scope]) -> None:
        self.function = function
        functools.update_wrapper(self, function)  # type: ignore[arg-type]

    def __set_name__(self, owner: type, name: str) -> None:
        self.name = name

    def __get__(self, instance: Any, owner: type) -> Callable[..., Scope]:
        function = self.function

        def call_on_base_scope(*args: Any, **kwargs: Any) -> Scope:
            return function(backend_for(owner).base_scope(owner), *args, **kwargs)

        return call_on_base_scope


class _RestrictDispatch:
    """
    ``restrict`` on the model returns a collection proxy, ``restrict`` on a
    record returns a record proxy.
    """

    def __get__(self, instance: Any, owner: type) -> Callable[..., Any]:
        if instance is None:
            return functools.partial(_restrict_model, owner)
        return functools.partial(_restrict_record, instance)


def _restrict_model(
    model: type[Restrictable],
    context: Any,
    implicit: bool = False,
) -> CollectionProxy:
    from heimdallr.proxy.collection import CollectionProxy

    scope = model.restrictions(context).request_scope("fetch")
    return CollectionProxy(context, scope, RestrictOptions(implicit=implicit))


def _restrict_record(
    record: Restrictable,
    context: Any,
    implicit: bool = False,
    eager_loaded: Any = None,
) -> RecordProxy:
    from heimdallr.proxy.record import RecordProxy

    options = RestrictOptions.build(implicit=implicit, eager_loaded=eager_loaded)
    return RecordProxy(context, record, options)


class Restrictable:
    """
    Mixin that makes a model restrictable.

    Class attributes:
        heimdallr_scopes: Names of the model's named scopes (collected
            automatically from ``@named_scope`` declarations).
        heimdallr_relations: Names of relation-like methods that the
            record proxy should treat as associations.
    """

    heimdallr_scopes: ClassVar[frozenset[str]] = frozenset()
    heimdallr_relations: ClassVar[tuple[str, ...]] = ()

    restrict = _RestrictDispatch()

    def __init_subclass__(cls, **kwargs: Any) -> None:
        super().__init_subclass__(**kwargs)
        names = set()
        for klass in reversed(cls.__mro__):
            for name, value in vars(klass).items():
                if isinstance(value, named_scope):
                    names.add(name)
        cls.heimdallr_scopes = frozenset(names)

    @classmethod
    def register_restrictions(cls, block: RuleBlock) -> RuleBlock:
        """
        Attach a rule block to the model, replacing any previous one.

        Subclasses inherit the block until they register their own.
        Usable as a decorator.
        """
        with _evaluator_lock:
            if "_heimdallr_block" in vars(cls):
                logger.warning(f"Replacing the restrictions registered for {cls.__name__}")
            cls._heimdallr_block = block
            cls._heimdallr_evaluator = Evaluator(cls, block)
        logger.debug(f"Registered restrictions for {cls.__name__}")
        return block

    @classmethod
    def has_restrictions(cls) -> bool:
        return getattr(cls, "_heimdallr_block", None) is not None

    @classmethod
    def heimdallr_evaluator(cls) -> Evaluator:
        """
        Return the evaluator bound to this class.

        Raises:
            ConfigurationError: If no rule block is registered.
        """
        block = getattr(cls, "_heimdallr_block", None)
        if block is None:
            raise ConfigurationError(
                config_key=f"{cls.__name__} restrictions",
                expected="a rule block registered with register_restrictions()",
            )

        evaluator = vars(cls).get("_heimdallr_evaluator")
        if evaluator is not None and evaluator.block is block:
            return evaluator

        with _evaluator_lock:
            evaluator = vars(cls).get("_heimdallr_evaluator")
            if evaluator is None or evaluator.block is not block:
                evaluator = Evaluator(cls, block)
                cls._heimdallr_evaluator = evaluator
            return evaluator

    @classmethod
    def restrictions(cls, context: Any, record: Any = None) -> DecisionTable:
        """Compute the restrictions of this model for a security context."""
        return cls.heimdallr_evaluator().evaluate(context, record)


def is_restrictable(value: Any) -> bool:
    """Check whether a model class or record has registered restrictions."""
    model = value if isinstance(value, type) else type(value)
    return issubclass(model, Restrictable) and model.has_restrictions()
