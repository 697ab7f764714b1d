"""In-memory store of transfer records."""

import logging
from typing import Callable

from transfer.models import TransferRecord

logger = logging.getLogger(__name__)

# fn(kind, record, previous) with kind in "upsert" | "patch" | "remove"
StoreListener = Callable[[str, TransferRecord, TransferRecord | None], None]


class TransferStore:
    """
    Authoritative list of transfer records, keyed by file id.

    Persists whatever it is told; state machine rules live in the
    pipelines. Records are replaced, never mutated in place, so a record
    handed out earlier is a stable snapshot.
    """

    def __init__(self) -> None:
        self._records: dict[str, TransferRecord] = {}
        self._listeners: list[StoreListener] = []

    def subscribe(self, listener: StoreListener) -> Callable[[], None]:
        """Register a change listener. Returns a function that removes it."""
        self._listeners.append(listener)

        def unsubscribe() -> None:
            if listener in self._listeners:
                self._listeners.remove(listener)

        return unsubscribe

    def _notify(self, kind: str, record: TransferRecord,
                previous: TransferRecord | None) -> None:
        for listener in list(self._listeners):
            try:
                listener(kind, record, previous)
            except Exception:
                logger.exception("Store listener failed")

    def upsert(self, record: TransferRecord) -> TransferRecord:
        previous = self._records.get(record.id)
        self._records[record.id] = record
        self._notify("upsert", record, previous)
        return record

    def patch(self, file_id: str, **changes) -> TransferRecord | None:
        """Apply ``changes`` to a record. No-op returning None if absent."""
        previous = self._records.get(file_id)
        if previous is None:
            return None
        record = previous.model_copy(update=changes)
        self._records[file_id] = record
        self._notify("patch", record, previous)
        return record

    def remove(self, file_id: str) -> TransferRecord | None:
        record = self._records.pop(file_id, None)
        if record is not None:
            self._notify("remove", record, record)
        return record

    def get(self, file_id: str) -> TransferRecord | None:
        return self._records.get(file_id)

    def list(self) -> list[TransferRecord]:
        return list(self._records.values())

    def clear(self) -> None:
        for file_id in list(self._records):
            self.remove(file_id)

    def __contains__(self, file_id: str) -> bool:
        return file_id in self._records

    def __len__(self) -> int:
        return len(self._records)
