"""
Security validators for Heimdallr.

Rule blocks attach validators to fields for an action:

    rules.can("update", {"secrecy_level": {"inclusion": range(0, 5)}})

Each ``{name: options}`` pair is resolved through the validator registry
and bound to the field. When a record is saved through a proxy, the
validators of the save action run as part of the backend's native
validation and report through the record's error collector.

Built-in validators: inclusion, exclusion, presence, absence, length,
numericality, format and type. The type validator is backed by Pydantic
and requires ``pip install heimdallr[pydantic]``.
"""

from __future__ import annotations

import logging
import numbers
import re
import threading
from abc import ABC, abstractmethod
from collections.abc import Mapping, Sequence
from typing import Any

from heimdallr.backends.base import backend_for
from heimdallr.exceptions import ConfigurationError

logger = logging.getLogger(__name__)

# Check if Pydantic is available
try:
    from pydantic import TypeAdapter, ValidationError
    HAS_PYDANTIC = True
except ImportError:
    HAS_PYDANTIC = False
    TypeAdapter = None  # type: ignore
    ValidationError = None  # type: ignore


def _errors_of(record: Any) -> Any:
    return backend_for(type(record)).errors(record)


class Validator(ABC):
    """
    Base class for field validators.

    A validator is bound to one attribute and configured with an options
    mapping. ``validate(record)`` reads the attribute and appends
    messages to the record's errors on failure; it never raises for an
    invalid value.

    Common options:
        message: Override the default error message.
        allow_none: Skip validation when the value is None.

    Example:
        >>> class EvenValidator(Validator):
        ...     default_message = "must be even"
        ...
        ...     def is_valid(self, value):
        ...         return value % 2 == 0
        >>>
        >>> register_validator("even", EvenValidator)
    """

    default_message = "is invalid"

    def __init__(self, attribute: str, options: Mapping[str, Any] | None = None) -> None:
        self.attribute = attribute
        self.options = dict(options or {})
        self.check_options()

    def check_options(self) -> None:
        """Validate the options; raise ConfigurationError when they are unusable."""

    @abstractmethod
    def is_valid(self, value: Any) -> bool:
        pass

    def message_for(self, value: Any) -> str:
        return str(self.options.get("message", self.default_message))

    def validate(self, record: Any) -> None:
        value = getattr(record, self.attribute, None)
        if value is None and self.options.get("allow_none", False):
            return
        if not self.is_valid(value):
            _errors_of(record).add(self.attribute, self.message_for(value))

    def describe(self) -> dict[str, Any]:
        """Describe the validator for introspection."""
        return {
            "validator": type(self).__name__,
            "attribute": self.attribute,
            "options": {key: repr(value) for key, value in self.options.items()},
        }

    def _require(self, *keys: str) -> None:
        if not any(key in self.options for key in keys):
            raise ConfigurationError(
                config_key=f"{type(self).__name__}({self.attribute})",
                expected=f"one of the options: {', '.join(keys)}",
                received=self.options,
            )

    def __repr__(self) -> str:
        return f"{type(self).__name__}({self.attribute!r}, {self.options!r})"


class InclusionValidator(Validator):
    """Value must be a member of ``in`` (a range, list, set or other container)."""

    default_message = "is not included in the list"

    def check_options(self) -> None:
        self._require("in")

    def is_valid(self, value: Any) -> bool:
        try:
            return value in self.options["in"]
        except TypeError:
            return False


class ExclusionValidator(Validator):
    """Value must not be a member of ``in``."""

    default_message = "is reserved"

    def check_options(self) -> None:
        self._require("in")

    def is_valid(self, value: Any) -> bool:
        try:
            return value not in self.options["in"]
        except TypeError:
            return True


def _is_blank(value: Any) -> bool:
    if value is None:
        return True
    if isinstance(value, str):
        return not value.strip()
    if isinstance(value, (Sequence, Mapping, set, frozenset)):
        return len(value) == 0
    return False


class PresenceValidator(Validator):
    """Value must not be None, an empty collection or a blank string."""

    default_message = "can't be blank"

    def is_valid(self, value: Any) -> bool:
        return not _is_blank(value)


class AbsenceValidator(Validator):
    """Value must be blank."""

    default_message = "must be blank"

    def is_valid(self, value: Any) -> bool:
        return _is_blank(value)


class LengthValidator(Validator):
    """
    Length constraints.

    Options: ``minimum``, ``maximum``, ``is`` or ``in`` (a range or container
    of allowed lengths).
    """

    def check_options(self) -> None:
        self._require("minimum", "maximum", "is", "in")

    def is_valid(self, value: Any) -> bool:
        try:
            length = len(value)
        except TypeError:
            return False
        if "is" in self.options and length != self.options["is"]:
            return False
        if "minimum" in self.options and length < self.options["minimum"]:
            return False
        if "maximum" in self.options and length > self.options["maximum"]:
            return False
        return not ("in" in self.options and length not in self.options["in"])

    def message_for(self, value: Any) -> str:
        if "message" in self.options:
            return str(self.options["message"])
        if "is" in self.options:
            return f"is the wrong length (should be {self.options['is']})"
        return "has an invalid length"


_NUMERIC_CHECKS = {
    "greater_than": (lambda value, bound: value > bound, "must be greater than"),
    "greater_than_or_equal_to": (
        lambda value, bound: value >= bound,
        "must be greater than or equal to",
    ),
    "less_than": (lambda value, bound: value < bound, "must be less than"),
    "less_than_or_equal_to": (
        lambda value, bound: value <= bound,
        "must be less than or equal to",
    ),
    "equal_to": (lambda value, bound: value == bound, "must be equal to"),
    "other_than": (lambda value, bound: value != bound, "must be other than"),
}


class NumericalityValidator(Validator):
    """
    Value must be a number satisfying the given comparisons.

    Options: ``only_integer`` plus any of greater_than,
    greater_than_or_equal_to, less_than, less_than_or_equal_to,
    equal_to and other_than.
    """

    default_message = "is not a number"

    def _failure(self, value: Any) -> str | None:
        if isinstance(value, bool) or not isinstance(value, numbers.Real):
            return self.default_message
        if self.options.get("only_integer") and not isinstance(value, numbers.Integral):
            return "must be an integer"
        for option, (check, message) in _NUMERIC_CHECKS.items():
            if option in self.options and not check(value, self.options[option]):
                return f"{message} {self.options[option]}"
        return None

    def is_valid(self, value: Any) -> bool:
        return self._failure(value) is None

    def message_for(self, value: Any) -> str:
        if "message" in self.options:
            return str(self.options["message"])
        return self._failure(value) or self.default_message


class FormatValidator(Validator):
    """String value must match the regular expression ``with``."""

    def check_options(self) -> None:
        self._require("with")
        pattern = self.options["with"]
        if isinstance(pattern, str):
            self.options["with"] = re.compile(pattern)
        elif not isinstance(pattern, re.Pattern):
            raise ConfigurationError(
                config_key=f"FormatValidator({self.attribute})",
                expected="a regular expression",
                received=pattern,
            )

    def is_valid(self, value: Any) -> bool:
        return isinstance(value, str) and self.options["with"].search(value) is not None


class TypeValidator(Validator):
    """
    Value must validate against a Python type annotation with Pydantic.

    The ``with`` option holds the annotation, e.g. ``int``,
    ``list[str]`` or ``pydantic.EmailStr``. Values are checked in
    strict mode unless ``strict`` is set to False.

    Requires: pip install heimdallr[pydantic]
    """

    default_message = "has an invalid type"

    def check_options(self) -> None:
        if not HAS_PYDANTIC:
            raise ConfigurationError(
                config_key=f"TypeValidator({self.attribute})",
                expected="the pydantic package. Install with: pip install heimdallr[pydantic]",
            )
        self._require("with")
        self._adapter = TypeAdapter(self.options["with"])

    def is_valid(self, value: Any) -> bool:
        try:
            self._adapter.validate_python(value, strict=self.options.get("strict", True))
        except ValidationError:
            return False
        return True


_registry: dict[str, type[Validator]] = {
    "inclusion": InclusionValidator,
    "exclusion": ExclusionValidator,
    "presence": PresenceValidator,
    "absence": AbsenceValidator,
    "length": LengthValidator,
    "numericality": NumericalityValidator,
    "format": FormatValidator,
    "type": TypeValidator,
}
_builtin_names = frozenset(_registry)
_registry_lock = threading.RLock()


def register_validator(name: str, validator_class: type[Validator]) -> None:
    """
    Register a validator class under a name usable in rule blocks.

    Example:
        >>> register_validator("even", EvenValidator)
        >>> rules.can("update", {"count": {"even": True}})
    """
    if not (isinstance(validator_class, type) and issubclass(validator_class, Validator)):
        raise TypeError(f"{validator_class!r} is not a Validator subclass")
    with _registry_lock:
        if name in _registry:
            logger.warning(
                f"Overwriting validator '{name}': "
                f"{_registry[name].__name__} -> {validator_class.__name__}"
            )
        _registry[name] = validator_class
        logger.debug(f"Registered validator '{name}' ({validator_class.__name__})")


def unregister_validator(name: str) -> bool:
    """
    Remove a custom validator. Built-in validators cannot be removed.

    Returns:
        True if a validator was removed.
    """
    with _registry_lock:
        if name in _registry and name not in _builtin_names:
            del _registry[name]
            return True
        return False


def available_validators() -> list[str]:
    with _registry_lock:
        return sorted(_registry)


def resolve_validator(name: str | type[Validator]) -> type[Validator]:
    """
    Resolve a validator name (or class) to a validator class.

    Raises:
        ConfigurationError: If no validator is registered under the name.
    """
    if isinstance(name, type) and issubclass(name, Validator):
        return name
    with _registry_lock:
        validator_class = _registry.get(name) if isinstance(name, str) else None
    if validator_class is None:
        raise ConfigurationError(
            config_key=f"validator {name!r}",
            expected=f"one of: {', '.join(available_validators())}",
            received=name,
        )
    return validator_class


def parse_validator_options(options: Any) -> dict[str, Any]:
    """
    Normalize the options given to a validator in a rule block.

    - True: no options
    - a range, list, tuple, set or frozenset: the allowed values ("in")
    - a mapping: used as is
    - anything else: a single comparison argument ("with")
    """
    if options is True:
        return {}
    if isinstance(options, Mapping):
        return dict(options)
    if isinstance(options, (range, list, tuple, set, frozenset)):
        return {"in": options}
    return {"with": options}


def compile_validators(attribute: str, validations: Mapping[Any, Any]) -> list[Validator]:
    """
    Build validators for one attribute from a ``{name: options}`` mapping.

    Raises:
        ConfigurationError: If a validator name cannot be resolved.
    """
    return [
        resolve_validator(name)(attribute, parse_validator_options(options))
        for name, options in validations.items()
    ]


class SecurityValidator:
    """
    Runs the active validators of a save against a record.

    Storage backends invoke this after their native validation, so
    failures land in the same error collector the host application
    already reads.

    Example:
        >>> SecurityValidator(table.validators_for("update")).validate(record)
        >>> record.errors.full_messages()
        ['secrecy_level is not included in the list']
    """

    def __init__(self, validators: Sequence[Validator] = ()) -> None:
        self.validators = tuple(validators)

    def validate(self, record: Any) -> None:
        for validator in self.validators:
            validator.validate(record)

    def __bool__(self) -> bool:
        return bool(self.validators)

    def __repr__(self) -> str:
        return f"SecurityValidator({list(self.validators)!r})"
