"""modqueue Engine — errors, configuration, logging, retry, collaborators."""

from modqueue.engine.errors import (  # noqa: F401
    AuthorizationError,
    ConfigError,
    InvalidTransitionError,
    ModQueueError,
    NotFoundError,
    NotOwnedError,
    QueueEmptyError,
    StoreUnavailableError,
    TaskLeasedError,
    TransactionConflictError,
    ValidationError,
)

__all__ = [
    "AuthorizationError",
    "ConfigError",
    "InvalidTransitionError",
    "ModQueueError",
    "NotFoundError",
    "NotOwnedError",
    "QueueEmptyError",
    "StoreUnavailableError",
    "TaskLeasedError",
    "TransactionConflictError",
    "ValidationError",
]
