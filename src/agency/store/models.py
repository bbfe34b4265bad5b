"""Record store persistence model -- one JSONB document table for every collection.

Collections (opportunity pools, packages, work units, payment alerts,
clients) share a single table keyed by (collection, id). Moving a record
between pools rewrites its ``collection`` inside one transaction.
"""

from __future__ import annotations

from datetime import datetime

from sqlalchemy import DateTime, Index, Integer, String, func, text
from sqlalchemy.dialects.postgresql import JSONB
from sqlalchemy.orm import Mapped, mapped_column

from src.agency.core.database import Base


class RecordModel(Base):
    """A single document within a named collection.

    ``version`` starts at 1 on create and increments on every update; it is
    the compare-and-set guard for version-checked writes.
    """

    __tablename__ = "records"
    __table_args__ = (
        Index("ix_records_collection", "collection"),
        Index("ix_records_document_gin", "document", postgresql_using="gin"),
    )

    collection: Mapped[str] = mapped_column(String(100), primary_key=True)
    id: Mapped[str] = mapped_column(String(100), primary_key=True)
    document: Mapped[dict] = mapped_column(
        JSONB, default=dict, server_default=text("'{}'::jsonb")
    )
    version: Mapped[int] = mapped_column(
        Integer, default=1, server_default=text("1"), nullable=False
    )
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        server_default=func.now(),
    )
    updated_at: Mapped[datetime | None] = mapped_column(
        DateTime(timezone=True),
        onupdate=func.now(),
        nullable=True,
    )
