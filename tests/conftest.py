from __future__ import annotations

import asyncio

import pytest

from transfer.models import TransferRecord
from transfer.store import TransferStore


class Outbox:
    """Stands in for an ActionSender and remembers what was sent."""

    def __init__(self):
        self.sent: list[tuple[dict, str | None]] = []

    def __call__(self, data, peer_id=None):
        if hasattr(data, "model_dump"):
            data = data.model_dump(mode="json")
        self.sent.append((data, peer_id))

    @property
    def payloads(self) -> list[dict]:
        return [data for data, _ in self.sent]


class ProgressLog:
    """Records every (status, progress) a store reports per file id."""

    def __init__(self, store: TransferStore):
        self.history: dict[str, list[tuple[str, int]]] = {}
        store.subscribe(self._on_change)

    def _on_change(self, kind: str, record: TransferRecord, previous) -> None:
        if kind == "remove":
            return
        self.history.setdefault(record.id, []).append((record.status.value, record.progress))

    def progress(self, file_id: str) -> list[int]:
        return [p for _, p in self.history.get(file_id, [])]


async def wait_for(predicate, timeout: float = 2.0, interval: float = 0.005):
    """Poll ``predicate`` on the running loop until it is true."""
    loop = asyncio.get_running_loop()
    deadline = loop.time() + timeout
    while not predicate():
        if loop.time() > deadline:
            raise AssertionError("condition not met in time")
        await asyncio.sleep(interval)


@pytest.fixture
def store():
    return TransferStore()


@pytest.fixture
def progress_log(store):
    return ProgressLog(store)
