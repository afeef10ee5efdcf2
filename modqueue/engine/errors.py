"""
modqueue Error Hierarchy — Structured exceptions for the moderation queue.

Every error carries a context dict that serialises to JSON so failures can be
written to the activity/diagnostic logs and rendered distinctly by callers
("queue is empty" vs "you don't own this task").

Hierarchy:
    ModQueueError
    ├── AuthorizationError        — Caller is not a moderation admin
    ├── QueueEmptyError           — No pending task to check out
    ├── NotFoundError             — Task / report group does not exist
    ├── NotOwnedError             — Caller does not hold the task's lease
    ├── TaskLeasedError           — Task is leased to someone else
    ├── InvalidTransitionError    — State machine forbids the transition
    ├── ValidationError           — Input validation failed
    ├── TransactionConflictError  — Store write conflict (retryable)
    ├── StoreUnavailableError     — Store unreachable or failing outright
    └── ConfigError               — Configuration error
"""

from __future__ import annotations

import json
from datetime import datetime, timezone
from typing import Any, Dict, Optional


class ModQueueError(Exception):
    """
    Base error for all modqueue failures.
    All context is serialisable to JSON.
    """

    def __init__(self, message: str, **context: Any):
        self.message = message
        self.error_type: str = self.__class__.__name__
        self.context: Dict[str, Any] = context
        self.task_id: Optional[str] = context.get("task_id")
        self.task_type: Optional[str] = context.get("task_type")
        self.user_id: Optional[str] = context.get("user_id")
        self.timestamp: str = datetime.now(timezone.utc).isoformat()
        super().__init__(message)

    def to_dict(self) -> Dict[str, Any]:
        """Serialize error to JSON-compatible dict for logging."""
        return {
            "error_type": self.error_type,
            "message": self.message,
            "task_id": self.task_id,
            "task_type": self.task_type,
            "user_id": self.user_id,
            "timestamp": self.timestamp,
            "context": {
                k: str(v) for k, v in self.context.items()
                if k not in ("task_id", "task_type", "user_id")
            },
        }

    def to_json(self) -> str:
        """Serialize to JSON string."""
        return json.dumps(self.to_dict(), default=str)

    def __repr__(self) -> str:
        parts = [f"{self.error_type}: {self.message}"]
        if self.task_id:
            parts.append(f"task_id={self.task_id}")
        if self.user_id:
            parts.append(f"user_id={self.user_id}")
        return " | ".join(parts)


class AuthorizationError(ModQueueError):
    """Caller failed the admin check. Logged to the leases/security log."""
    pass


class QueueEmptyError(ModQueueError):
    """No pending tasks available (optionally scoped to one task_type)."""
    pass


class NotFoundError(ModQueueError):
    """A task or report group could not be found."""

    def __init__(self, message: str, **context: Any):
        self.record_type: Optional[str] = context.get("record_type")
        self.record_id: Optional[str] = context.get("record_id")
        super().__init__(message, **context)

    def to_dict(self) -> Dict[str, Any]:
        d = super().to_dict()
        d["record_type"] = self.record_type
        d["record_id"] = self.record_id
        return d


class NotOwnedError(ModQueueError):
    """
    Check-in / release / work-later by a worker that does not hold the lease.
    Also raised when the task is not checked out at all (holder_id is None).
    """

    def __init__(self, message: str, **context: Any):
        self.holder_id: Optional[str] = context.get("holder_id")
        super().__init__(message, **context)

    def to_dict(self) -> Dict[str, Any]:
        d = super().to_dict()
        d["holder_id"] = self.holder_id
        return d


class TaskLeasedError(ModQueueError):
    """The requested task holds a live lease owned by another worker."""

    def __init__(self, message: str, **context: Any):
        self.holder_display_name: Optional[str] = context.get("holder_display_name")
        super().__init__(message, **context)


class InvalidTransitionError(ModQueueError):
    """Requested status change is not allowed (e.g. completed -> checkedOut)."""

    def __init__(self, message: str, **context: Any):
        self.from_status: Optional[str] = context.get("from_status")
        self.to_status: Optional[str] = context.get("to_status")
        super().__init__(message, **context)


class ValidationError(ModQueueError):
    """Input validation failed. Includes field-level details when available."""

    def __init__(self, message: str, **context: Any):
        self.field: Optional[str] = context.get("field")
        super().__init__(message, **context)

    def to_dict(self) -> Dict[str, Any]:
        d = super().to_dict()
        d["field"] = self.field
        return d


class TransactionConflictError(ModQueueError):
    """
    A concurrent writer changed a row this transaction depended on.
    Retryable; surfaced to callers only once the retry budget is spent.
    """

    def __init__(self, message: str, **context: Any):
        self.attempts: Optional[int] = context.get("attempts")
        super().__init__(message, **context)


class StoreUnavailableError(ModQueueError):
    """
    The store kept failing for reasons other than write contention, such as a
    refused connection or a missing database file.
    """

    def __init__(self, message: str, **context: Any):
        self.attempts: Optional[int] = context.get("attempts")
        super().__init__(message, **context)


class ConfigError(ModQueueError):
    """Configuration error — invalid modqueue.yaml or unknown task type."""
    pass
