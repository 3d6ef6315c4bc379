"""SQLAlchemy ORM models for treepush."""

from treepush.models.base import Base
from treepush.models.kv import KeyValueEntry

__all__ = [
    "Base",
    "KeyValueEntry",
]
