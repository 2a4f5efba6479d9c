# Copyright (c) 2025 CoReason, Inc.
#
# This software is proprietary and dual-licensed.
# Licensed under the Prosperity Public License 3.0 (the "License").
# A copy of the license is available at https://prosperitylicense.com/versions/3.0.0
# For details, see the LICENSE file.
# Commercial use beyond a 30-day trial requires a separate license.
#
# Source Code: https://github.com/CoReason-AI/coreason_orchestrator

from typing import Generic

from coreason_orchestrator.models import DeploymentRecord, ManagedResource, ScheduledTask
from coreason_orchestrator.registry.base import RecordStore, RecordT, Registry


class MemoryRecordStore(RecordStore[RecordT], Generic[RecordT]):
    """Dictionary-backed store.

    Records are copied on the way in and out so callers never share mutable
    state through the store.
    """

    def __init__(self) -> None:
        self._records: dict[str, RecordT] = {}

    async def get(self, record_id: str) -> RecordT | None:
        record = self._records.get(record_id)
        return record.model_copy(deep=True) if record is not None else None

    async def save(self, record: RecordT) -> None:
        self._records[record.id] = record.model_copy(deep=True)  # type: ignore[attr-defined]

    async def delete(self, record_id: str) -> bool:
        return self._records.pop(record_id, None) is not None

    async def all(self) -> list[RecordT]:
        return [record.model_copy(deep=True) for record in self._records.values()]


class MemoryRegistry(Registry):
    """In-process registry, used for tests and single-node development."""

    def __init__(self) -> None:
        self.deployments: MemoryRecordStore[DeploymentRecord] = MemoryRecordStore()
        self.resources: MemoryRecordStore[ManagedResource] = MemoryRecordStore()
        self.tasks: MemoryRecordStore[ScheduledTask] = MemoryRecordStore()
