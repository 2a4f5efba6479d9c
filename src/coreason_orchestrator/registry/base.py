# Copyright (c) 2025 CoReason, Inc.
#
# This software is proprietary and dual-licensed.
# Licensed under the Prosperity Public License 3.0 (the "License").
# A copy of the license is available at https://prosperitylicense.com/versions/3.0.0
# For details, see the LICENSE file.
# Commercial use beyond a 30-day trial requires a separate license.
#
# Source Code: https://github.com/CoReason-AI/coreason_orchestrator

"""Storage interface for the records every component shares.

The registry is the single source of truth: components read records through it
for the duration of one operation and write every status change back to it.
"""

from abc import ABC, abstractmethod
from typing import Any, Generic, TypeVar

from pydantic import BaseModel

from coreason_orchestrator.models import DeploymentRecord, ManagedResource, ScheduledTask

RecordT = TypeVar("RecordT", bound=BaseModel)


def _lookup(record: Any, path: str) -> Any:
    value = record
    for part in path.split("."):
        if isinstance(value, dict):
            value = value.get(part)
        else:
            value = getattr(value, part, None)
        if value is None:
            return None
    return value


def matches_filters(record: BaseModel, filters: dict[str, Any]) -> bool:
    """Check a record against equality filters.

    Keys may use dotted paths into nested models (``metadata.placement_target``)
    and ``__`` is accepted as an alias for ``.`` so filters can be passed as
    keyword arguments.
    """
    for key, expected in filters.items():
        if _lookup(record, key.replace("__", ".")) != expected:
            return False
    return True


class RecordStore(ABC, Generic[RecordT]):
    """Persistence for one kind of record, keyed by ``record.id``."""

    @abstractmethod
    async def get(self, record_id: str) -> RecordT | None:
        """Return the record or ``None`` when it does not exist."""
        pass  # pragma: no cover

    @abstractmethod
    async def save(self, record: RecordT) -> None:
        """Insert or replace the record."""
        pass  # pragma: no cover

    @abstractmethod
    async def delete(self, record_id: str) -> bool:
        """Remove the record. Returns ``True`` if it existed."""
        pass  # pragma: no cover

    @abstractmethod
    async def all(self) -> list[RecordT]:
        pass  # pragma: no cover

    async def find(self, **filters: Any) -> list[RecordT]:
        """Return every record matching all equality ``filters``."""
        return [record for record in await self.all() if matches_filters(record, filters)]


class Registry(ABC):
    """Groups the record stores used by the control plane."""

    deployments: RecordStore[DeploymentRecord]
    resources: RecordStore[ManagedResource]
    tasks: RecordStore[ScheduledTask]

    async def connect(self) -> None:
        """Open backend connections. No-op by default."""

    async def close(self) -> None:
        """Release backend connections. No-op by default."""
