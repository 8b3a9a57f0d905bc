"""SQLAlchemy model exports."""

from __future__ import annotations

from exolix.models.document import StoredDocument, StoredRecord

__all__ = ["StoredDocument", "StoredRecord"]
