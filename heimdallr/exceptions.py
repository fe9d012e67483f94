"""
Custom exceptions for Heimdallr.

This module defines the exception hierarchy for the library. Policy denials,
unsafe usage and malformed rule blocks each get their own type so callers can
tell a denied-but-expected access apart from a programming error.
"""

from __future__ import annotations

from typing import Any


class HeimdallrError(Exception):
    """
    Base exception for all Heimdallr errors.

    All Heimdallr-specific exceptions inherit from this class,
    making it easy to catch any library-related error.

    Attributes:
        message: Human-readable error description.
        details: Additional context about the error.

    Example:
        >>> try:
        ...     Article.restrict(user).find(42).secrecy_level
        ... except HeimdallrError as e:
        ...     logger.error(f"Heimdallr error: {e}")
    """

    def __init__(self, message: str, details: dict[str, Any] | None = None) -> None:
        self.message = message
        self.details = details or {}
        super().__init__(message)

    def __str__(self) -> str:
        if self.details:
            return f"{self.message} | Details: {self.details}"
        return self.message

    def to_dict(self) -> dict[str, Any]:
        """Convert exception to dictionary for logging/serialization."""
        return {
            "error_type": self.__class__.__name__,
            "message": self.message,
            "details": self.details,
        }


class PermissionDeniedError(HeimdallrError):
    """
    Raised when a security policy prevents an operation from being executed.

    This covers reading a non-whitelisted field through an explicit proxy,
    saving a changed field that is neither whitelisted nor matching its
    fixture, saving when the action is not permitted at all, and deleting
    a record outside of the delete scope.

    Attributes:
        model: Name of the entity type the operation targeted.
        action: The action that was attempted (e.g., "view", "update").
        field: The offending field, if the denial is field-level.
        reason: Explanation of why the operation was denied.

    Example:
        >>> raise PermissionDeniedError(
        ...     model="Article",
        ...     action="view",
        ...     field="secrecy_level",
        ...     reason="Attempt to fetch non-whitelisted attribute",
        ... )
    """

    def __init__(
        self,
        model: str,
        action: str,
        field: str | None = None,
        reason: str | None = None,
    ) -> None:
        self.model = model
        self.action = action
        self.field = field
        self.reason = reason or "Operation denied by security policy"

        message = f"Permission denied: cannot {action} {model}"
        if field:
            message += f".{field}"
        message += f". Reason: {self.reason}"

        details = {
            "model": model,
            "action": action,
            "field": field,
            "reason": self.reason,
        }
        super().__init__(message, details)


class InsecureOperationError(HeimdallrError):
    """
    Raised when a potentially unsafe operation is about to be executed.

    The policy layer cannot tell whether the operation is safe, so it
    refuses it. This signals a usage error rather than a denied access:
    calling an unknown method on a restricted collection, saving with
    validation disabled, or fetching an association whose target has
    no registered restrictions.

    Attributes:
        operation: The operation that was refused.
        hint: How to perform the operation explicitly, if possible.

    Example:
        >>> raise InsecureOperationError(
        ...     operation="Article.raw_sql",
        ...     hint="Use insecure() to run arbitrary scope methods",
        ... )
    """

    def __init__(self, operation: str, hint: str | None = None) -> None:
        self.operation = operation
        self.hint = hint

        message = f"Insecure operation refused: {operation}"
        if hint:
            message += f". {hint}"

        details = {
            "operation": operation,
            "hint": hint,
        }
        super().__init__(message, details)


class ConfigurationError(HeimdallrError):
    """
    Raised when a rule block or a library setting is malformed.

    Rule blocks are validated when they are evaluated: a missing
    mandatory fetch scope or an unknown validator name surfaces here
    rather than silently weakening the policy.

    Attributes:
        config_key: The configuration key that has an issue.
        expected: What was expected for this configuration.
        received: What was actually provided.

    Example:
        >>> raise ConfigurationError(
        ...     config_key="Article.scopes",
        ...     expected="a 'fetch' scope to be defined",
        ... )
    """

    def __init__(
        self,
        config_key: str,
        expected: str | None = None,
        received: Any = None,
    ) -> None:
        self.config_key = config_key
        self.expected = expected
        self.received = received

        message = f"Configuration error for '{config_key}'"
        if expected:
            message += f": expected {expected}"
        if received is not None:
            message += f", got {received!r}"

        details = {
            "config_key": config_key,
            "expected": expected,
            "received": str(received) if received is not None else None,
        }
        super().__init__(message, details)


class AlreadyRestrictedError(HeimdallrError):
    """
    Raised when a restricted record or collection is restricted again
    with a different security context or different options.

    Restricting again with the same context and options is a no-op;
    anything else would stack two policies on one object.
    """

    def __init__(self, target: str) -> None:
        self.target = target
        super().__init__(
            f"{target} is already restricted with a different context or options",
            {"target": target},
        )


class RecordNotFoundError(HeimdallrError):
    """
    Raised when a record lookup by identity finds nothing.

    Through a restricted collection this also covers records that exist
    but are outside of the fetch scope; the caller cannot tell the two
    cases apart.
    """

    def __init__(self, model: str, identity: Any) -> None:
        self.model = model
        self.identity = identity
        super().__init__(
            f"Couldn't find {model} with identity {identity!r}",
            {"model": model, "identity": repr(identity)},
        )


class RecordInvalidError(HeimdallrError):
    """
    Raised by strict saves when the record fails validation.

    Attributes:
        record: The record that failed to save.
        errors: Full error messages collected during validation.
    """

    def __init__(self, record: Any, errors: list[str]) -> None:
        self.record = record
        self.errors = errors

        message = f"Validation failed for {type(record).__name__}"
        if errors:
            message += f": {', '.join(errors)}"

        super().__init__(message, {"errors": errors})
