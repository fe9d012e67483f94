"""
Global configuration for Heimdallr.

Settings here change how proxies treat cases the rule blocks cannot
express on their own: associations to models without restrictions,
filter injection into eager loads, and optional scopes a rule block
left undefined.

Example:
    >>> from heimdallr.config import configure, override_config
    >>>
    >>> configure(allow_insecure_associations=True)
    >>>
    >>> with override_config(undefined_scope_policy="deny"):
    ...     Article.restrict(user).destroy_all()
"""

from __future__ import annotations

import logging
import os
import threading
from collections.abc import Generator
from contextlib import contextmanager
from dataclasses import asdict, dataclass, replace
from typing import Any

from heimdallr.exceptions import ConfigurationError

logger = logging.getLogger(__name__)

UNDEFINED_SCOPE_POLICIES = ("permit", "deny")

_TRUE_VALUES = {"1", "true", "yes", "on"}
_FALSE_VALUES = {"0", "false", "no", "off", ""}


@dataclass(frozen=True)
class HeimdallrConfig:
    """
    Library-wide settings.

    Attributes:
        allow_insecure_associations: If True, fetching an association whose
            target has no registered restrictions returns the raw value
            instead of raising InsecureOperationError.
        inject_eager_load_filters: If True, eager loading through a
            restricted collection conjoins the target's fetch condition
            into the preload so the storage layer only returns visible rows.
        undefined_scope_policy: What an undefined optional scope (such as
            "delete") resolves to. "permit" falls back to the base scope
            (the fetch scope by default), "deny" resolves to an empty scope.

    Example:
        >>> config = HeimdallrConfig(undefined_scope_policy="deny")
        >>> config.allow_insecure_associations
        False
    """

    allow_insecure_associations: bool = False
    inject_eager_load_filters: bool = True
    undefined_scope_policy: str = "permit"

    def __post_init__(self) -> None:
        """Validate setting values."""
        for name in ("allow_insecure_associations", "inject_eager_load_filters"):
            value = getattr(self, name)
            if not isinstance(value, bool):
                raise ConfigurationError(
                    config_key=name,
                    expected="a boolean",
                    received=value,
                )
        if self.undefined_scope_policy not in UNDEFINED_SCOPE_POLICIES:
            raise ConfigurationError(
                config_key="undefined_scope_policy",
                expected=f"one of: {', '.join(UNDEFINED_SCOPE_POLICIES)}",
                received=self.undefined_scope_policy,
            )

    @classmethod
    def from_env(cls, prefix: str = "HEIMDALLR_") -> HeimdallrConfig:
        """
        Build a configuration from environment variables.

        Reads ``<prefix>ALLOW_INSECURE_ASSOCIATIONS``,
        ``<prefix>INJECT_EAGER_LOAD_FILTERS`` and
        ``<prefix>UNDEFINED_SCOPE_POLICY``. Unset variables keep defaults.

        Raises:
            ConfigurationError: If a variable holds an unrecognized value.
        """
        options: dict[str, Any] = {}

        for name in ("allow_insecure_associations", "inject_eager_load_filters"):
            raw = os.environ.get(f"{prefix}{name.upper()}")
            if raw is None:
                continue
            normalized = raw.strip().lower()
            if normalized in _TRUE_VALUES:
                options[name] = True
            elif normalized in _FALSE_VALUES:
                options[name] = False
            else:
                raise ConfigurationError(
                    config_key=f"{prefix}{name.upper()}",
                    expected="a boolean flag",
                    received=raw,
                )

        policy = os.environ.get(f"{prefix}UNDEFINED_SCOPE_POLICY")
        if policy is not None:
            options["undefined_scope_policy"] = policy.strip().lower()

        return cls(**options)

    def to_dict(self) -> dict[str, Any]:
        """Convert to dictionary for serialization."""
        return asdict(self)


_config = HeimdallrConfig()
_config_lock = threading.Lock()


def get_config() -> HeimdallrConfig:
    """Return the active configuration."""
    return _config


def configure(**options: Any) -> HeimdallrConfig:
    """
    Replace the active configuration with updated settings.

    Unspecified settings keep their current values. The new configuration
    is validated before it becomes active.

    Args:
        **options: Fields of HeimdallrConfig to change.

    Returns:
        The new active configuration.

    Raises:
        ConfigurationError: If an option is unknown or invalid.
    """
    global _config
    known = set(HeimdallrConfig.__dataclass_fields__)
    unknown = sorted(set(options) - known)
    if unknown:
        raise ConfigurationError(
            config_key=", ".join(unknown),
            expected=f"one of: {', '.join(sorted(known))}",
        )

    with _config_lock:
        _config = replace(_config, **options)
        logger.debug(f"Heimdallr configuration updated: {_config.to_dict()}")
        return _config


def reset_config() -> HeimdallrConfig:
    """Restore the default configuration."""
    global _config
    with _config_lock:
        _config = HeimdallrConfig()
        return _config


@contextmanager
def override_config(**options: Any) -> Generator[HeimdallrConfig, None, None]:
    """
    Temporarily change settings within a block.

    Example:
        >>> with override_config(allow_insecure_associations=True):
        ...     article.restrict(user).tags
    """
    global _config
    previous = _config
    try:
        yield configure(**options)
    finally:
        with _config_lock:
            _config = previous
