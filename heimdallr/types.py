"""
Core type definitions for Heimdallr.

This module defines the small value types shared by the evaluator, the
proxies and the storage backends: action names, relation metadata,
restriction options and the eager-load tree.
"""

from __future__ import annotations

from collections.abc import Iterable, Mapping
from dataclasses import dataclass, field, replace
from enum import Enum
from types import MappingProxyType
from typing import Any

# Nested association tree: relation name -> sub-tree
AssociationTree = Mapping[str, "AssociationTree"]

_EMPTY_TREE: AssociationTree = MappingProxyType({})


class Action(str, Enum):
    """
    Built-in action names.

    Rule blocks may use any other string as a custom action; these are
    the ones the proxies consult on their own.
    """

    VIEW = "view"
    CREATE = "create"
    UPDATE = "update"


def normalize_action(action: Action | str) -> str:
    """Return the plain string name of an action."""
    if isinstance(action, Action):
        return action.value
    if not isinstance(action, str) or not action:
        raise TypeError(f"Action must be a non-empty string, got {action!r}")
    return action


def normalize_actions(actions: Action | str | Iterable[Action | str]) -> list[str]:
    """Normalize one action or an iterable of actions into a list of names."""
    if isinstance(actions, (str, Action)):
        return [normalize_action(actions)]
    return [normalize_action(action) for action in actions]


@dataclass(frozen=True)
class Relation:
    """
    Metadata about an association between two entity types.

    Attributes:
        name: Attribute name of the association on the owning model.
        target: The model class on the other side.
        collection: True for multi-valued associations (has-many).
    """

    name: str
    target: type
    collection: bool = False


@dataclass(frozen=True)
class RestrictOptions:
    """
    Options carried by record and collection proxies.

    Attributes:
        implicit: Reads of non-whitelisted fields return None instead of
            raising PermissionDeniedError.
        eager_loaded: Tree of associations that were preloaded through
            the collection the proxy came from.
    """

    implicit: bool = False
    eager_loaded: AssociationTree = field(default_factory=lambda: _EMPTY_TREE)

    @classmethod
    def build(
        cls,
        implicit: bool = False,
        eager_loaded: Any = None,
    ) -> RestrictOptions:
        """Build options, normalizing the eager-load argument."""
        return cls(
            implicit=implicit,
            eager_loaded=normalize_associations(eager_loaded) if eager_loaded else _EMPTY_TREE,
        )

    def requested(self, implicit: bool | None = None, eager_loaded: Any = None) -> RestrictOptions:
        """Options asked for by restrict(); arguments left as None keep the current value."""
        return RestrictOptions.build(
            implicit=self.implicit if implicit is None else implicit,
            eager_loaded=self.eager_loaded if eager_loaded is None else eager_loaded,
        )

    def with_implicit(self, implicit: bool) -> RestrictOptions:
        return replace(self, implicit=implicit)

    def without_eager_loads(self) -> RestrictOptions:
        return replace(self, eager_loaded=_EMPTY_TREE)

    def for_relation(self, name: str) -> RestrictOptions:
        """Options for a proxy produced by following relation ``name``."""
        return replace(self, eager_loaded=self.eager_loaded.get(name, _EMPTY_TREE))

    def is_eager_loaded(self, name: str) -> bool:
        return name in self.eager_loaded

    def to_dict(self) -> dict[str, Any]:
        return {
            "implicit": self.implicit,
            "eager_loaded": _thaw(self.eager_loaded),
        }


def normalize_associations(*associations: Any) -> AssociationTree:
    """
    Normalize eager-load arguments into a read-only nested mapping.

    Accepts relation names, iterables of names and nested mappings, in
    any combination.

    Example:
        >>> tree = normalize_associations("owner", {"comments": ["author"]})
        >>> {k: dict(v) for k, v in tree.items()}
        {'owner': {}, 'comments': {'author': mappingproxy({})}}
    """
    merged: dict[str, dict[str, Any]] = {}
    for association in associations:
        _merge_into(merged, association)
    return _freeze(merged)


def merge_associations(left: AssociationTree, right: AssociationTree) -> AssociationTree:
    """Merge two association trees."""
    merged: dict[str, dict[str, Any]] = {}
    _merge_into(merged, _thaw(left))
    _merge_into(merged, _thaw(right))
    return _freeze(merged)


def _merge_into(target: dict[str, dict[str, Any]], association: Any) -> None:
    if association is None:
        return
    if isinstance(association, str):
        target.setdefault(association, {})
    elif isinstance(association, Mapping):
        for name, nested in association.items():
            if not isinstance(name, str):
                raise TypeError(f"Association names must be strings, got {name!r}")
            _merge_into(target.setdefault(name, {}), nested)
    elif isinstance(association, Iterable):
        for item in association:
            _merge_into(target, item)
    else:
        raise TypeError(f"Cannot interpret {association!r} as an association")


def _freeze(tree: Mapping[str, Any]) -> AssociationTree:
    return MappingProxyType({name: _freeze(nested) for name, nested in tree.items()})


def _thaw(tree: Mapping[str, Any]) -> dict[str, Any]:
    return {name: _thaw(nested) for name, nested in tree.items()}
