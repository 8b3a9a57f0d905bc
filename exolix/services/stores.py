"""Mapping and selection stores: async contracts plus in-memory and SQL implementations."""

from __future__ import annotations

import asyncio
import copy
from collections.abc import Iterable, Mapping, Sequence
from typing import Any, Protocol

import structlog
from sqlalchemy import delete, select
from sqlalchemy.orm import Session, sessionmaker

from exolix.schemas.mapping import FeatureMapping
from exolix.schemas.selection import TrainingSelection

logger = structlog.get_logger(__name__)

Record = Mapping[str, Any]

DEFAULT_RECORD_KEY = "__internalId"
MAPPING_DOCUMENT_KEY = "feature_mapping"
SELECTION_DOCUMENT_KEY = "training_selection"


class MappingStore(Protocol):
    async def get(self) -> FeatureMapping | None: ...

    async def save(self, mapping: FeatureMapping) -> None: ...


class SelectionStore(Protocol):
    async def get(self) -> TrainingSelection | None: ...

    async def save(self, selection: TrainingSelection) -> None: ...

    async def records_by_ids(self, ids: Sequence[str | int], dataset_id: str) -> list[Record]: ...


def _record_id(record: Record, record_key: str) -> str:
    if record_key not in record or record[record_key] is None:
        raise ValueError(f"Record has no '{record_key}' key.")
    return str(record[record_key])


class InMemoryMappingStore:
    """Keeps a copy of the last saved mapping."""

    def __init__(self, mapping: FeatureMapping | None = None) -> None:
        self._mapping = mapping.model_copy(deep=True) if mapping is not None else None

    async def get(self) -> FeatureMapping | None:
        return self._mapping.model_copy(deep=True) if self._mapping is not None else None

    async def save(self, mapping: FeatureMapping) -> None:
        self._mapping = mapping.model_copy(deep=True)


class InMemorySelectionStore:
    def __init__(
        self,
        selection: TrainingSelection | None = None,
        *,
        record_key: str = DEFAULT_RECORD_KEY,
    ) -> None:
        self._selection = selection.model_copy(deep=True) if selection is not None else None
        self.record_key = record_key
        self._records: dict[str, dict[str, dict[str, Any]]] = {}

    async def get(self) -> TrainingSelection | None:
        return self._selection.model_copy(deep=True) if self._selection is not None else None

    async def save(self, selection: TrainingSelection) -> None:
        self._selection = selection.model_copy(deep=True)

    async def save_records(self, records: Iterable[Record], dataset_id: str = "default") -> int:
        table = self._records.setdefault(dataset_id, {})
        count = 0
        for record in records:
            table[_record_id(record, self.record_key)] = copy.deepcopy(dict(record))
            count += 1
        return count

    async def records_by_ids(self, ids: Sequence[str | int], dataset_id: str = "default") -> list[Record]:
        """Records whose key is in ``ids``, in the order they were saved."""
        wanted = {str(record_id) for record_id in ids}
        table = self._records.get(dataset_id, {})
        found = [copy.deepcopy(record) for key, record in table.items() if key in wanted]
        if len(found) < len(wanted):
            logger.warning(
                "selection_records_missing",
                dataset_id=dataset_id,
                requested=len(wanted),
                found=len(found),
            )
        return found

    async def clear_records(self, dataset_id: str = "default") -> None:
        self._records.pop(dataset_id, None)


class _SqlDocumentStore:
    """Sync SQLAlchemy sessions run in a worker thread so the event loop never blocks."""

    document_key: str

    def __init__(self, session_factory: sessionmaker[Session] | None = None) -> None:
        if session_factory is None:
            from exolix.database import SessionLocal

            session_factory = SessionLocal
        self.session_factory = session_factory

    def _load_payload(self) -> dict[str, Any] | None:
        from exolix.models import StoredDocument

        with self.session_factory() as db:
            document = db.get(StoredDocument, self.document_key)
            return dict(document.payload) if document is not None else None

    def _store_payload(self, payload: dict[str, Any]) -> None:
        from exolix.models import StoredDocument

        with self.session_factory() as db:
            document = db.get(StoredDocument, self.document_key)
            if document is None:
                db.add(StoredDocument(key=self.document_key, payload=payload))
            else:
                document.payload = payload
            db.commit()
        logger.debug("document_saved", key=self.document_key)


class SqlMappingStore(_SqlDocumentStore):
    document_key = MAPPING_DOCUMENT_KEY

    async def get(self) -> FeatureMapping | None:
        payload = await asyncio.to_thread(self._load_payload)
        return FeatureMapping.model_validate(payload) if payload is not None else None

    async def save(self, mapping: FeatureMapping) -> None:
        await asyncio.to_thread(self._store_payload, mapping.model_dump(mode="json"))


class SqlSelectionStore(_SqlDocumentStore):
    document_key = SELECTION_DOCUMENT_KEY

    def __init__(
        self,
        session_factory: sessionmaker[Session] | None = None,
        *,
        record_key: str = DEFAULT_RECORD_KEY,
    ) -> None:
        super().__init__(session_factory)
        self.record_key = record_key

    async def get(self) -> TrainingSelection | None:
        payload = await asyncio.to_thread(self._load_payload)
        return TrainingSelection.model_validate(payload) if payload is not None else None

    async def save(self, selection: TrainingSelection) -> None:
        await asyncio.to_thread(self._store_payload, selection.model_dump(mode="json"))

    async def save_records(self, records: Iterable[Record], dataset_id: str = "default") -> int:
        rows = [dict(record) for record in records]
        return await asyncio.to_thread(self._save_records, rows, dataset_id)

    async def records_by_ids(self, ids: Sequence[str | int], dataset_id: str = "default") -> list[Record]:
        return await asyncio.to_thread(self._records_by_ids, [str(record_id) for record_id in ids], dataset_id)

    async def clear_records(self, dataset_id: str = "default") -> None:
        await asyncio.to_thread(self._clear_records, dataset_id)

    def _save_records(self, rows: list[dict[str, Any]], dataset_id: str) -> int:
        from exolix.models import StoredRecord

        with self.session_factory() as db:
            existing = {
                stored.record_id: stored
                for stored in db.scalars(select(StoredRecord).where(StoredRecord.dataset_id == dataset_id))
            }
            for row in rows:
                record_id = _record_id(row, self.record_key)
                stored = existing.get(record_id)
                if stored is None:
                    stored = StoredRecord(dataset_id=dataset_id, record_id=record_id, payload=row)
                    db.add(stored)
                    existing[record_id] = stored
                else:
                    stored.payload = row
            db.commit()
        logger.info("records_saved", dataset_id=dataset_id, count=len(rows))
        return len(rows)

    def _records_by_ids(self, ids: list[str], dataset_id: str) -> list[Record]:
        from exolix.models import StoredRecord

        wanted = set(ids)
        with self.session_factory() as db:
            stored = db.scalars(
                select(StoredRecord)
                .where(StoredRecord.dataset_id == dataset_id)
                .order_by(StoredRecord.id)
            ).all()
            found = [dict(row.payload) for row in stored if row.record_id in wanted]
        if len(found) < len(wanted):
            logger.warning(
                "selection_records_missing",
                dataset_id=dataset_id,
                requested=len(wanted),
                found=len(found),
            )
        return found

    def _clear_records(self, dataset_id: str) -> None:
        from exolix.models import StoredRecord

        with self.session_factory() as db:
            db.execute(delete(StoredRecord).where(StoredRecord.dataset_id == dataset_id))
            db.commit()
