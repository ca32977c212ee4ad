"""Declarative base and type-map for all provisioner ORM models.

Uses SQLAlchemy 2.0 ``DeclarativeBase`` with a ``type_annotation_map``
that maps Python built-in types to portable SA column types:

* ``str``   → ``Text``
* ``int``   → ``Integer``
* ``bool``  → ``Boolean``
* ``datetime.datetime`` → ``DateTime(timezone=True)``
* ``dict``  → ``JSON``
"""

from __future__ import annotations

import datetime

from sqlalchemy import JSON, Boolean, DateTime, Integer, Text
from sqlalchemy.orm import DeclarativeBase


class ProvisionerBase(DeclarativeBase):
    """Shared declarative base for every provisioner table."""

    type_annotation_map = {
        str: Text,
        int: Integer,
        bool: Boolean,
        datetime.datetime: DateTime(timezone=True),
        dict: JSON,
    }
