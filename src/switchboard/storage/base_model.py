"""Centralized SQLAlchemy declarative base for all ORM models.

Every ORM model in Switchboard inherits from this base so that all tables
share one metadata registry.
"""

from sqlalchemy.orm import DeclarativeBase


class Base(DeclarativeBase):
    """Base class for all ORM models in Switchboard."""

    pass
