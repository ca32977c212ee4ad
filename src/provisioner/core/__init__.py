"""Core primitives shared by the operation engine.

- errors: typed error hierarchy and the Recoverable/NonRecoverable outcome
- logging: structlog configuration
- config: validated settings (pydantic-settings)
- metrics: injected metrics sinks
- orm: SQLAlchemy base and engine factory
"""

from provisioner.core.errors import (
    ConfigError,
    DatabaseError,
    ErrorCategory,
    InternalDBError,
    NonRecoverable,
    NonRecoverableError,
    NotFoundError,
    ProvisionerError,
    Recoverable,
    classify_error,
    new_non_recoverable_error,
)
from provisioner.core.metrics import InMemoryMetrics, MetricsSink, NoopMetrics

__all__ = [
    "ConfigError",
    "DatabaseError",
    "ErrorCategory",
    "InternalDBError",
    "NonRecoverable",
    "NonRecoverableError",
    "NotFoundError",
    "ProvisionerError",
    "Recoverable",
    "classify_error",
    "new_non_recoverable_error",
    "InMemoryMetrics",
    "MetricsSink",
    "NoopMetrics",
]
