"""SQLAlchemy 2.0 plumbing: declarative base and engine/session factories.

Tables themselves live in :mod:`provisioner.persistence.tables`.
"""

from provisioner.core.orm.base import ProvisionerBase
from provisioner.core.orm.session import create_provisioner_engine, provisioner_session_factory

__all__ = [
    "ProvisionerBase",
    "create_provisioner_engine",
    "provisioner_session_factory",
]
