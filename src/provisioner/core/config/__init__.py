"""Centralized configuration.

One validated, cached settings object (:class:`ProvisionerSettings`) is the
single source of truth for database, worker-pool, retry and logging
settings.

Quick start::

    from provisioner.core.config import get_settings

    settings = get_settings()
    print(settings.worker_count)            # 5
    print(settings.default_requeue_delay)   # 20.0

Guardrails:
    ❌ Parsing env vars ad-hoc in each module
    ✅ ``get_settings().database_url`` from the cached singleton
"""

from .settings import (
    LogFormat,
    ProvisionerSettings,
    clear_settings_cache,
    get_settings,
)

__all__ = [
    "LogFormat",
    "ProvisionerSettings",
    "get_settings",
    "clear_settings_cache",
]
