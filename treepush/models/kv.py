"""Key-value entry model backing the SQL job state store."""

from __future__ import annotations

from sqlalchemy import Float, Index, Text
from sqlalchemy.orm import Mapped, mapped_column

from treepush.models.base import Base


class KeyValueEntry(Base):
    """One stored value with an optional absolute expiry (unix seconds)."""

    __tablename__ = "kv_store"

    key: Mapped[str] = mapped_column(Text, primary_key=True)
    value: Mapped[str] = mapped_column(Text, nullable=False)
    expires_at: Mapped[float | None] = mapped_column(Float, nullable=True)

    __table_args__ = (Index("idx_kv_store_expires_at", "expires_at"),)
