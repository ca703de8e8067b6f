"""
Single source of truth for the SQLAlchemy Declarative Base.

IMPORTANT:
- This file must NOT import averon.models.
  Doing so creates circular import issues when Uvicorn imports
  averon.main -> averon.models -> averon.db.base.
"""

from sqlalchemy.orm import DeclarativeBase


class Base(DeclarativeBase):
    """Base class for all ORM models."""
    pass
