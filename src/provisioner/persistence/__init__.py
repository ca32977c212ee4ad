"""Persistence for operations and clusters.

- session: the Session protocol the engine consumes
- memory: thread-safe in-memory implementation
- dbsession: SQLAlchemy implementation over ``tables``
"""

from provisioner.persistence.dbsession import DBSession
from provisioner.persistence.memory import InMemorySession
from provisioner.persistence.session import ReadSession, Session, WriteSession

__all__ = [
    "DBSession",
    "InMemorySession",
    "ReadSession",
    "Session",
    "WriteSession",
]
