"""SQLAlchemy models for stored mapping/selection documents and table records."""

from __future__ import annotations

from datetime import datetime

from sqlalchemy import DateTime, Integer, String, UniqueConstraint, func
from sqlalchemy.dialects.postgresql import JSONB
from sqlalchemy.orm import Mapped, mapped_column
from sqlalchemy.types import JSON

from exolix.database import Base

JSONType = JSON().with_variant(JSONB, "postgresql")


class StoredDocument(Base):
    """One JSON document (feature mapping, training selection) under a fixed key."""

    __tablename__ = "stored_documents"

    key: Mapped[str] = mapped_column(String(64), primary_key=True)
    payload: Mapped[dict] = mapped_column(JSONType, nullable=False)
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), server_default=func.now(), onupdate=func.now(), nullable=False
    )


class StoredRecord(Base):
    """One table row; insertion order is kept through the surrogate id."""

    __tablename__ = "stored_records"
    __table_args__ = (UniqueConstraint("dataset_id", "record_id", name="uq_stored_records_dataset_record"),)

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    dataset_id: Mapped[str] = mapped_column(String(128), index=True, nullable=False)
    record_id: Mapped[str] = mapped_column(String(128), nullable=False)
    payload: Mapped[dict] = mapped_column(JSONType, nullable=False)
