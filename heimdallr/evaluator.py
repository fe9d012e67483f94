"""
Policy evaluation for Heimdallr.

A rule block is a plain function registered once per entity type. Given a
security context (and optionally the record being accessed) it describes,
through a small DSL, what the context may do:

    def article_rules(rules, user, record):
        if user.admin:
            rules.scope("fetch")
            rules.scope("delete")
            rules.can(["view", "create", "update"])
        else:
            rules.scope("fetch", lambda q: q.where(lambda a: a.secrecy_level < 5))
            rules.can("view")
            rules.cannot("view", ["secrecy_level"])
            rules.can("create", ["content"])
            rules.can("create", {"owner_id": user.id})

The Evaluator compiles the block into an immutable DecisionTable and
memoizes the result: one slot for the record-less table used by
collections, one for the last seen (context, record) pair.

The default resolution is to forbid everything: the policy whitelists
safe actions, it does not blacklist unsafe ones. The primary key is
always viewable.
"""

from __future__ import annotations

import inspect
import logging
import threading
from collections.abc import Callable, Iterable, Mapping
from dataclasses import dataclass, field
from types import MappingProxyType
from typing import Any, NamedTuple

from heimdallr.backends.base import Scope, backend_for
from heimdallr.config import get_config
from heimdallr.exceptions import ConfigurationError
from heimdallr.types import Action, normalize_action, normalize_actions
from heimdallr.validators import Validator, compile_validators

logger = logging.getLogger(__name__)

ScopeTransform = Callable[[Scope], Scope]
RuleBlock = Callable[..., Any]

FETCH = "fetch"
DELETE = "delete"

_EMPTY_FIELDS: frozenset[str] = frozenset()
_EMPTY_FIXTURES: Mapping[str, Any] = MappingProxyType({})


def _identity(scope: Scope) -> Scope:
    return scope


@dataclass(frozen=True)
class DecisionTable:
    """
    The compiled restrictions of one entity type for one security context.

    Attributes:
        model: The entity type the table was compiled for.
        allowed_fields: Whitelisted field names per action.
        fixtures: Forced field values per action.
        validators: Validators run on save per action.
        scopes: Named scope transforms; "fetch" is always present.

    Example:
        >>> table = Article.restrictions(user)
        >>> "content" in table.allowed("view")
        True
        >>> table.can("update")
        False
    """

    model: type
    allowed_fields: Mapping[str, frozenset[str]]
    fixtures: Mapping[str, Mapping[str, Any]]
    validators: Mapping[str, tuple[Validator, ...]]
    scopes: Mapping[str, ScopeTransform] = field(repr=False)

    def allowed(self, action: Action | str) -> frozenset[str]:
        """Return the whitelisted fields of an action."""
        return self.allowed_fields.get(normalize_action(action), _EMPTY_FIELDS)

    def fixtures_for(self, action: Action | str) -> Mapping[str, Any]:
        return self.fixtures.get(normalize_action(action), _EMPTY_FIXTURES)

    def validators_for(self, action: Action | str) -> tuple[Validator, ...]:
        return self.validators.get(normalize_action(action), ())

    def can(self, action: Action | str) -> bool:
        """
        Check whether an action is permitted at all.

        True if the action whitelists any field, fixes any field or
        validates any field.
        """
        return bool(
            self.allowed(action) or self.fixtures_for(action) or self.validators_for(action)
        )

    def has_scope(self, name: str) -> bool:
        return name in self.scopes

    def request_scope(self, name: str = FETCH, base: Scope | None = None) -> Scope:
        """
        Resolve a named scope.

        The fetch scope without a base is applied to the unrestricted scope
        of the model. Any other request applies the named transform on top
        of ``base``, which defaults to the fetch scope.

        A non-fetch scope the rule block did not define leaves the base
        unchanged under the "permit" policy, or matches nothing under the
        "deny" policy (see ``heimdallr.config``).

        Args:
            name: Scope name.
            base: Scope to apply the transform to.

        Returns:
            The resolved scope.
        """
        if name == FETCH and base is None:
            return self.scopes[FETCH](backend_for(self.model).base_scope(self.model))

        if base is None:
            base = self.request_scope(FETCH)

        transform = self.scopes.get(name)
        if transform is not None:
            return transform(base)

        if get_config().undefined_scope_policy == "deny":
            logger.debug(f"Scope '{name}' is undefined for {self.model.__name__}, denying")
            return base.none()

        logger.debug(
            f"Scope '{name}' is undefined for {self.model.__name__}, "
            f"falling back to the base scope"
        )
        return base

    def to_dict(self) -> dict[str, Any]:
        """Describe the table for introspection and serialization."""
        return {
            "model": self.model.__name__,
            "allowed_fields": {
                action: sorted(fields) for action, fields in self.allowed_fields.items()
            },
            "fixtures": {action: dict(values) for action, values in self.fixtures.items()},
            "validators": {
                action: [validator.describe() for validator in validators]
                for action, validators in self.validators.items()
            },
            "scopes": sorted(self.scopes),
        }


class RuleBuilder:
    """
    The DSL handed to a rule block.

    Consists of three functions: ``scope``, ``can`` and ``cannot``.
    """

    def __init__(self, model: type) -> None:
        self.model = model
        self._backend = backend_for(model)
        self._scopes: dict[str, ScopeTransform] = {}
        self._allowed_fields: dict[str, list[str]] = {}
        self._fixtures: dict[str, dict[str, Any]] = {}
        self._validators: dict[str, list[Validator]] = {}

        self._allowed(Action.VIEW.value).append(self._backend.primary_key(model))

    def scope(self, name: str, transform: ScopeTransform | None = None) -> None:
        """
        Define a named scope.

        A transform takes a scope and returns a refined one; without a
        transform the scope is unrestricted. The special "fetch" scope is
        applied to every other scope automatically.

        Example:
            >>> rules.scope("fetch", lambda q: q.where(owner_id=user.id))
            >>> rules.scope("delete")
        """
        if transform is not None and not callable(transform):
            raise ConfigurationError(
                config_key=f"{self.model.__name__}.scope({name!r})",
                expected="a callable taking and returning a scope",
                received=transform,
            )
        self._scopes[name] = transform or _identity

    def can(
        self,
        actions: Action | str | Iterable[Action | str],
        fields: str | Iterable[str] | Mapping[str, Any] | None = None,
    ) -> None:
        """
        Define allowed operations for action(s).

        ``fields`` accepts field names or a mapping:

        * Names (a string or an iterable) are whitelisted.
        * Mapping keys are whitelisted, and:
          1. a mapping value is compiled into validators for the field,
             which make records invalid when saved through a proxy;
          2. any other value becomes a fixture: it is merged into records
             created through restricted collections, and a save fails if
             the field holds anything else.
        * None whitelists every attribute of the model.

        Example:
            >>> rules.can("view", ["title", "content"])
            >>> rules.can("create", {"owner_id": user.id})
            >>> rules.can(["create", "update"], {"priority": {"inclusion": range(1, 11)}})
        """
        if fields is None:
            fields = self._backend.attribute_names(self.model)

        for action in normalize_actions(actions):
            allowed = self._allowed(action)

            if isinstance(fields, Mapping):
                allowed.extend(str(name) for name in fields)
                fixtures = self._fixtures.setdefault(action, {})
                for name, value in fields.items():
                    if isinstance(value, Mapping):
                        self._validators.setdefault(action, []).extend(
                            compile_validators(str(name), value)
                        )
                    else:
                        fixtures[str(name)] = value
                        while str(name) in allowed:
                            allowed.remove(str(name))
            else:
                allowed.extend(_field_names(fields))

    def cannot(
        self,
        actions: Action | str | Iterable[Action | str],
        fields: str | Iterable[str],
    ) -> None:
        """
        Revoke permissions on fields.

        Removes the fields from the whitelist of each action and drops any
        fixtures or validators bound to them.

        Example:
            >>> rules.cannot("view", ["secrecy_level"])
        """
        names = set(_field_names(fields))
        for action in normalize_actions(actions):
            self._allowed_fields[action] = [
                name for name in self._allowed(action) if name not in names
            ]
            fixtures = self._fixtures.get(action)
            if fixtures:
                for name in names:
                    fixtures.pop(name, None)
            validators = self._validators.get(action)
            if validators:
                self._validators[action] = [
                    validator for validator in validators if validator.attribute not in names
                ]

    def build(self) -> DecisionTable:
        """
        Freeze the collected rules into a DecisionTable.

        Raises:
            ConfigurationError: If no fetch scope was defined.
        """
        if FETCH not in self._scopes:
            raise ConfigurationError(
                config_key=f"{self.model.__name__} restrictions",
                expected="a 'fetch' scope to be defined",
            )

        return DecisionTable(
            model=self.model,
            allowed_fields=MappingProxyType(
                {action: frozenset(names) for action, names in self._allowed_fields.items()}
            ),
            fixtures=MappingProxyType(
                {
                    action: MappingProxyType(dict(values))
                    for action, values in self._fixtures.items()
                }
            ),
            validators=MappingProxyType(
                {action: tuple(items) for action, items in self._validators.items()}
            ),
            scopes=MappingProxyType(dict(self._scopes)),
        )

    def _allowed(self, action: str) -> list[str]:
        return self._allowed_fields.setdefault(action, [])


def _field_names(fields: str | Iterable[str]) -> list[str]:
    if isinstance(fields, str):
        return [fields]
    return [str(name) for name in fields]


class _Memo(NamedTuple):
    context: Any
    record: Any
    table: DecisionTable


class Evaluator:
    """
    Compiles and memoizes the restrictions of one entity type.

    The rule block runs again only when the security context differs
    (by equality) or the sample record differs (by identity) from the
    previous evaluation. Record-less tables are memoized apart from
    per-record ones, so building record proxies does not evict the table
    of the collection they came from. Blocks that do not take a record
    share one memo for every record. Each memo is replaced as a whole, so
    concurrent readers see either the old or the new table, never a
    partial one.

    Attributes:
        model: The entity type.
        block: The rule block.
        evaluations: How many times the rule block has been compiled.

    Example:
        >>> evaluator = Evaluator(Article, article_rules)
        >>> table = evaluator.evaluate(user)
        >>> evaluator.evaluate(user) is table
        True
    """

    def __init__(self, model: type, block: RuleBlock) -> None:
        if not callable(block):
            raise ConfigurationError(
                config_key=f"{model.__name__} restrictions",
                expected="a callable rule block",
                received=block,
            )
        self.model = model
        self.block = block
        self.evaluations = 0
        self._takes_record = _accepts_record(block)
        self._memo: _Memo | None = None
        self._record_memo: _Memo | None = None
        self._lock = threading.Lock()

    def evaluate(self, context: Any, record: Any = None) -> DecisionTable:
        """
        Compute the restrictions for a security context.

        Args:
            context: The security context.
            record: The record being accessed, if any.

        Returns:
            The DecisionTable for (context, record).

        Raises:
            ConfigurationError: If the rule block is malformed.
        """
        if not self._takes_record:
            record = None

        memo = self._memo if record is None else self._record_memo
        if memo is not None and memo.record is record and _same_context(memo.context, context):
            logger.debug(f"Reusing memoized restrictions for {self.model.__name__}")
            return memo.table

        table = self._compile(context, record)
        if record is None:
            self._memo = _Memo(context, None, table)
        else:
            self._record_memo = _Memo(context, record, table)
        return table

    def reset(self) -> None:
        """Forget the memoized tables."""
        self._memo = None
        self._record_memo = None

    def _compile(self, context: Any, record: Any) -> DecisionTable:
        builder = RuleBuilder(self.model)
        if self._takes_record:
            self.block(builder, context, record)
        else:
            self.block(builder, context)
        table = builder.build()

        with self._lock:
            self.evaluations += 1
            count = self.evaluations
        logger.debug(f"Compiled restrictions for {self.model.__name__} (evaluation #{count})")
        return table

    def __repr__(self) -> str:
        return f"Evaluator({self.model.__name__}, {getattr(self.block, '__name__', self.block)!r})"


def _same_context(previous: Any, context: Any) -> bool:
    if previous is context:
        return True
    return bool(previous == context)


def _accepts_record(block: RuleBlock) -> bool:
    """Check whether a rule block takes (rules, context, record) or (rules, context)."""
    try:
        signature = inspect.signature(block)
    except (TypeError, ValueError):
        return True

    positional = 0
    for parameter in signature.parameters.values():
        if parameter.kind is inspect.Parameter.VAR_POSITIONAL:
            return True
        if parameter.kind in (
            inspect.Parameter.POSITIONAL_ONLY,
            inspect.Parameter.POSITIONAL_OR_KEYWORD,
        ):
            positional += 1
    return positional >= 3
