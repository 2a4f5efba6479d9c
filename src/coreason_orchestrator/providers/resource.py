# Copyright (c) 2025 CoReason, Inc.
#
# This software is proprietary and dual-licensed.
# Licensed under the Prosperity Public License 3.0 (the "License").
# A copy of the license is available at https://prosperitylicense.com/versions/3.0.0
# For details, see the LICENSE file.
# Commercial use beyond a 30-day trial requires a separate license.
#
# Source Code: https://github.com/CoReason-AI/coreason_orchestrator

"""Contract implemented by each managed-resource (data engine) provider."""

from abc import ABC, abstractmethod
from typing import Any

from pydantic import BaseModel, Field

from coreason_orchestrator.models import ConnectionInfo, ResourceConfig, TenantRecord


class ProvisionedInstance(BaseModel):
    instance_id: str
    connection: ConnectionInfo
    details: dict[str, Any] = Field(default_factory=dict)


class BackupArtifact(BaseModel):
    backup_id: str
    size_bytes: int = 0


class HealthReport(BaseModel):
    healthy: bool
    checks: dict[str, bool] = Field(default_factory=dict)
    message: str | None = None


class InstanceMetrics(BaseModel):
    """Raw metrics as reported by the engine; utilization in ``[0, 1]``."""

    cpu_utilization: float = 0.0
    memory_utilization: float = 0.0
    storage_used_gb: float = 0.0
    connections: int = 0
    operations_per_second: float = 0.0


class ResourceProvider(ABC):
    """Drives one engine family (e.g. relational or key-value).

    Implementations raise on failure; the orchestrator converts errors into
    status transitions.
    """

    resource_type: str = ""

    @abstractmethod
    async def deploy_template(self, resource_id: str, config: ResourceConfig) -> ProvisionedInstance:
        pass  # pragma: no cover

    @abstractmethod
    async def scale_instance(self, instance_id: str, replicas: int, config: ResourceConfig) -> None:
        pass  # pragma: no cover

    @abstractmethod
    async def destroy_instance(self, instance_id: str) -> None:
        pass  # pragma: no cover

    @abstractmethod
    async def instance_exists(self, instance_id: str) -> bool:
        pass  # pragma: no cover

    @abstractmethod
    async def create_backup(self, instance_id: str, backup_type: str = "full") -> BackupArtifact:
        pass  # pragma: no cover

    @abstractmethod
    async def restore_from_backup(self, instance_id: str, backup_id: str) -> None:
        pass  # pragma: no cover

    @abstractmethod
    async def check_health(self, instance_id: str) -> HealthReport:
        pass  # pragma: no cover

    @abstractmethod
    async def get_metrics(self, instance_id: str) -> InstanceMetrics:
        pass  # pragma: no cover

    @abstractmethod
    async def create_tenant(self, instance_id: str, tenant: TenantRecord, params: dict[str, Any]) -> None:
        pass  # pragma: no cover

    @abstractmethod
    async def remove_tenant(self, instance_id: str, tenant: TenantRecord) -> None:
        pass  # pragma: no cover

    @abstractmethod
    async def migrate_tenant(self, source_instance_id: str, target_instance_id: str, tenant: TenantRecord) -> None:
        pass  # pragma: no cover

    @abstractmethod
    async def initiate_failover(self, instance_id: str) -> None:
        pass  # pragma: no cover

    @abstractmethod
    async def run_maintenance(self, instance_id: str, maintenance_type: str) -> str:
        """Run a maintenance routine and return a short summary."""
        pass  # pragma: no cover

    @abstractmethod
    async def optimize(self, instance_id: str, optimization_type: str) -> str:
        pass  # pragma: no cover

    @abstractmethod
    async def archive_backups(self, instance_id: str, older_than_days: int, storage_class: str) -> int:
        """Move backups older than the threshold to ``storage_class``; return how many moved."""
        pass  # pragma: no cover
