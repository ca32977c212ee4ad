"""
Structured error types for the provisioner.

Every failure that reaches the operation engine is sorted into one of two
tiers:

- **Recoverable** - anything raised by a stage that is not explicitly
  tagged. The operation is left untouched and retried later.
- **Non-recoverable** - :class:`NonRecoverableError`, an unknown stage, or
  a stage timeout. The operation is marked failed and never processed again.

Architecture:
    ::

        ┌──────────────────────────────────────────────────────────────┐
        │                      ProvisionerError                        │
        │        (category, retryable, context, cause)                 │
        ├──────────────────────────────────────────────────────────────┤
        │  NonRecoverableError   DatabaseError          ConfigError    │
        │  (OPERATION, final)    (DATABASE)             (CONFIG)       │
        │                             │                                │
        │                        NotFoundError                         │
        │                        InternalDBError                       │
        └──────────────────────────────────────────────────────────────┘

        Outcome = Recoverable(error) | NonRecoverable(error)

The tier of an exception is decided by :func:`classify_error`, which the
executor matches on instead of sprinkling ``isinstance`` checks through the
stage loop.

Examples:
    >>> err = NonRecoverableError(ValueError("bad machine type"))
    >>> str(err)
    'bad machine type'
    >>> classify_error(err)
    NonRecoverable(error=NonRecoverableError('bad machine type'))
    >>> classify_error(ConnectionError("reset"))
    Recoverable(error=ConnectionError('reset'))

Tags:
    error-handling, exception-hierarchy, retry-logic, provisioner
"""

from __future__ import annotations

from dataclasses import dataclass, field
from enum import Enum
from typing import Any


class ErrorCategory(str, Enum):
    """Standard error categories for classification and log routing."""

    NETWORK = "NETWORK"
    DATABASE = "DATABASE"

    CONFIG = "CONFIG"
    VALIDATION = "VALIDATION"

    OPERATION = "OPERATION"  # Stage / operation execution failures
    TIMEOUT = "TIMEOUT"

    INTERNAL = "INTERNAL"
    UNKNOWN = "UNKNOWN"


@dataclass
class ErrorContext:
    """Structured metadata attached to an error for logging."""

    operation_id: str | None = None
    operation_type: str | None = None
    cluster_id: str | None = None
    stage: str | None = None

    metadata: dict[str, Any] = field(default_factory=dict)

    def to_dict(self) -> dict[str, Any]:
        """Convert to dictionary for logging."""
        result = {}
        for key in ["operation_id", "operation_type", "cluster_id", "stage"]:
            value = getattr(self, key)
            if value is not None:
                result[key] = value
        if self.metadata:
            result.update(self.metadata)
        return result


class ProvisionerError(Exception):
    """Base exception for all provisioner errors.

    Subclasses set ``default_category`` and ``default_retryable`` so that
    callers rarely pass them explicitly.

    Args:
        message: Human-readable error message.
        category: Error category; defaults to the class default.
        retryable: Whether the failed work may be retried.
        context: Structured metadata for logs.
        cause: Underlying exception, also chained as ``__cause__``.
    """

    default_category: ErrorCategory = ErrorCategory.UNKNOWN
    default_retryable: bool = False

    def __init__(
        self,
        message: str,
        *,
        category: ErrorCategory | None = None,
        retryable: bool | None = None,
        context: ErrorContext | None = None,
        cause: BaseException | None = None,
    ):
        super().__init__(message)
        self.message = message
        self.category = category or self.default_category
        self.retryable = retryable if retryable is not None else self.default_retryable
        self.context = context or ErrorContext()
        self.cause = cause
        if cause is not None:
            self.__cause__ = cause

    def with_context(self, **kwargs: Any) -> ProvisionerError:
        """Add context fields, returning self for chaining."""
        for key, value in kwargs.items():
            if hasattr(self.context, key) and key != "metadata":
                setattr(self.context, key, value)
            else:
                self.context.metadata[key] = value
        return self

    def to_dict(self) -> dict[str, Any]:
        """Serialize error for logging and status reporting."""
        result: dict[str, Any] = {
            "error_type": self.__class__.__name__,
            "message": self.message,
            "category": self.category.value,
            "retryable": self.retryable,
        }
        ctx = self.context.to_dict()
        if ctx:
            result["context"] = ctx
        if self.cause is not None:
            result["cause"] = f"{type(self.cause).__name__}: {self.cause}"
        return result

    def __repr__(self) -> str:
        return f"{self.__class__.__name__}({self.message!r})"


class NonRecoverableError(ProvisionerError):
    """An error that terminates an operation permanently.

    Wraps either another exception or a plain message. ``str()`` of the
    wrapper is the wrapped error's message, so the persisted operation
    message reads exactly like the underlying failure.
    """

    default_category = ErrorCategory.OPERATION
    default_retryable = False

    def __init__(
        self,
        error: BaseException | str,
        *,
        category: ErrorCategory | None = None,
        context: ErrorContext | None = None,
    ):
        if isinstance(error, BaseException):
            super().__init__(str(error), category=category, retryable=False, context=context, cause=error)
        else:
            super().__init__(error, category=category, retryable=False, context=context)


def new_non_recoverable_error(error: BaseException | str) -> NonRecoverableError:
    """Tag *error* as non-recoverable."""
    if isinstance(error, NonRecoverableError):
        return error
    return NonRecoverableError(error)


class ConfigError(ProvisionerError):
    """Invalid configuration or wiring (e.g. duplicate stage names)."""

    default_category = ErrorCategory.CONFIG
    default_retryable = False


class DatabaseError(ProvisionerError):
    """Persistence layer failure. Retryable unless stated otherwise."""

    default_category = ErrorCategory.DATABASE
    default_retryable = True


class NotFoundError(DatabaseError):
    """The requested record does not exist."""

    default_retryable = False


class InternalDBError(DatabaseError):
    """Unexpected database failure (connection drop, lock timeout, ...)."""


# ---------------------------------------------------------------------------
# Outcome sum type
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class Recoverable:
    """Transient failure - retry the same stage later."""

    error: BaseException


@dataclass(frozen=True)
class NonRecoverable:
    """Terminal failure - mark the operation failed."""

    error: BaseException


Outcome = Recoverable | NonRecoverable


def classify_error(error: BaseException) -> Outcome:
    """Sort an exception raised by a stage into its tier.

    Only :class:`NonRecoverableError` is terminal; everything else, including
    other :class:`ProvisionerError` subclasses, is recoverable by default.
    """
    if isinstance(error, NonRecoverableError):
        return NonRecoverable(error)
    return Recoverable(error)


__all__ = [
    "ErrorCategory",
    "ErrorContext",
    "ProvisionerError",
    "NonRecoverableError",
    "new_non_recoverable_error",
    "ConfigError",
    "DatabaseError",
    "NotFoundError",
    "InternalDBError",
    "Recoverable",
    "NonRecoverable",
    "Outcome",
    "classify_error",
]
