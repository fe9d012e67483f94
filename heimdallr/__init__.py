"""
Heimdallr: field- and record-level authorization for data-access layers.

Heimdallr wraps records and query scopes in security proxies. Every read,
write and deletion through a proxy is checked against per-model rules
evaluated for the current security context (usually the current user).

Basic Usage:
    >>> from heimdallr import MemoryModel, belongs_to
    >>>
    >>> class Article(MemoryModel):
    ...     fields = ("id", "owner_id", "content", "secrecy_level")
    ...     owner = belongs_to("User")
    >>>
    >>> @Article.register_restrictions
    ... def article_rules(rules, user, record):
    ...     if user.admin:
    ...         rules.scope("fetch")
    ...         rules.can(["view", "create", "update"])
    ...     else:
    ...         rules.scope("fetch", lambda q: q.where(lambda a: a.secrecy_level < 5))
    ...         rules.can("view")
    ...         rules.cannot("view", ["secrecy_level"])
    ...         rules.can("create", ["content"])
    ...         rules.can("create", {"owner_id": user.id})
    >>>
    >>> articles = Article.restrict(user)
    >>> articles.count()
    >>> article = articles.create(content="Hello")
    >>> article.owner_id == user.id
    True
    >>> article.secrecy_level
    Traceback (most recent call last):
        ...
    heimdallr.exceptions.PermissionDeniedError: ...

SQLAlchemy models use ``heimdallr.backends.sqlalchemy_backend``
(pip install heimdallr[sqlalchemy]).
"""

__version__ = "1.0.0"

# Storage boundary
from heimdallr.backends.base import Errors, Preload, Scope, StorageBackend, backend_for

# In-memory backend
from heimdallr.backends.memory import (
    MemoryBackend,
    MemoryModel,
    MemoryScope,
    MemoryStore,
    belongs_to,
    default_store,
    has_many,
    has_one,
)

# Configuration
from heimdallr.config import (
    HeimdallrConfig,
    configure,
    get_config,
    override_config,
    reset_config,
)

# Policy evaluation
from heimdallr.evaluator import DecisionTable, Evaluator, RuleBuilder

# Exceptions
from heimdallr.exceptions import (
    AlreadyRestrictedError,
    ConfigurationError,
    HeimdallrError,
    InsecureOperationError,
    PermissionDeniedError,
    RecordInvalidError,
    RecordNotFoundError,
)

# Model integration
from heimdallr.model import Restrictable, is_restrictable, named_scope

# Proxies
from heimdallr.proxy import CollectionProxy, RecordProxy

# Types
from heimdallr.types import Action, Relation, RestrictOptions

# Validators
from heimdallr.validators import (
    SecurityValidator,
    Validator,
    available_validators,
    register_validator,
    unregister_validator,
)

__all__ = [
    # Version
    "__version__",
    # Exceptions
    "HeimdallrError",
    "PermissionDeniedError",
    "InsecureOperationError",
    "ConfigurationError",
    "AlreadyRestrictedError",
    "RecordNotFoundError",
    "RecordInvalidError",
    # Configuration
    "HeimdallrConfig",
    "configure",
    "get_config",
    "override_config",
    "reset_config",
    # Types
    "Action",
    "Relation",
    "RestrictOptions",
    # Policy evaluation
    "DecisionTable",
    "Evaluator",
    "RuleBuilder",
    # Model integration
    "Restrictable",
    "is_restrictable",
    "named_scope",
    # Proxies
    "CollectionProxy",
    "RecordProxy",
    # Validators
    "SecurityValidator",
    "Validator",
    "available_validators",
    "register_validator",
    "unregister_validator",
    # Storage boundary
    "Errors",
    "Preload",
    "Scope",
    "StorageBackend",
    "backend_for",
    # In-memory backend
    "MemoryBackend",
    "MemoryModel",
    "MemoryScope",
    "MemoryStore",
    "belongs_to",
    "default_store",
    "has_many",
    "has_one",
]
