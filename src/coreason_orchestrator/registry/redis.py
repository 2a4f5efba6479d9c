# Copyright (c) 2025 CoReason, Inc.
#
# This software is proprietary and dual-licensed.
# Licensed under the Prosperity Public License 3.0 (the "License").
# A copy of the license is available at https://prosperitylicense.com/versions/3.0.0
# For details, see the LICENSE file.
# Commercial use beyond a 30-day trial requires a separate license.
#
# Source Code: https://github.com/CoReason-AI/coreason_orchestrator

"""Durable registry backed by Redis hashes.

Each record kind lives in one hash, ``{prefix}:{kind}``, mapping record ids to
the record serialized as JSON.
"""

from typing import Generic

from loguru import logger
from redis import asyncio as aioredis
from redis.exceptions import RedisError

from coreason_orchestrator.errors import RegistryUnavailableError
from coreason_orchestrator.models import DeploymentRecord, ManagedResource, ScheduledTask
from coreason_orchestrator.registry.base import RecordStore, RecordT, Registry


class RedisRecordStore(RecordStore[RecordT], Generic[RecordT]):
    def __init__(self, client: aioredis.Redis, hash_key: str, model: type[RecordT]):
        self._client = client
        self.hash_key = hash_key
        self._model = model

    async def get(self, record_id: str) -> RecordT | None:
        try:
            data = await self._client.hget(self.hash_key, record_id)
        except RedisError as e:
            raise RegistryUnavailableError(f"Failed to read {self.hash_key}/{record_id}: {e}") from e
        if data is None:
            return None
        return self._model.model_validate_json(data)

    async def save(self, record: RecordT) -> None:
        try:
            await self._client.hset(self.hash_key, record.id, record.model_dump_json())  # type: ignore[attr-defined]
        except RedisError as e:
            logger.error(f"Failed to persist {self.hash_key}/{record.id}: {e}")  # type: ignore[attr-defined]
            raise RegistryUnavailableError(f"Failed to write {self.hash_key}: {e}") from e

    async def delete(self, record_id: str) -> bool:
        try:
            removed = await self._client.hdel(self.hash_key, record_id)
        except RedisError as e:
            raise RegistryUnavailableError(f"Failed to delete {self.hash_key}/{record_id}: {e}") from e
        return bool(removed)

    async def all(self) -> list[RecordT]:
        try:
            values = await self._client.hvals(self.hash_key)
        except RedisError as e:
            raise RegistryUnavailableError(f"Failed to scan {self.hash_key}: {e}") from e
        return [self._model.model_validate_json(value) for value in values]


class RedisRegistry(Registry):
    """Registry persisted in Redis.

    Args:
        url: Redis connection URL.
        key_prefix: Namespace prepended to every hash key.
        client: Pre-built client, mainly for tests.
    """

    def __init__(
        self,
        url: str = "redis://localhost:6379/0",
        key_prefix: str = "coreason-orchestrator",
        client: aioredis.Redis | None = None,
    ):
        self.url = url
        self.client = client or aioredis.from_url(url, decode_responses=True)
        self.deployments: RedisRecordStore[DeploymentRecord] = RedisRecordStore(
            self.client, f"{key_prefix}:deployments", DeploymentRecord
        )
        self.resources: RedisRecordStore[ManagedResource] = RedisRecordStore(
            self.client, f"{key_prefix}:resources", ManagedResource
        )
        self.tasks: RedisRecordStore[ScheduledTask] = RedisRecordStore(
            self.client, f"{key_prefix}:tasks", ScheduledTask
        )

    async def connect(self) -> None:
        try:
            await self.client.ping()
        except RedisError as e:
            raise RegistryUnavailableError(f"Redis registry unreachable at {self.url}: {e}") from e
        logger.info(f"Connected to Redis registry at {self.url}")

    async def close(self) -> None:
        await self.client.aclose()
