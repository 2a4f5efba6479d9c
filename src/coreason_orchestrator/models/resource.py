# Copyright (c) 2025 CoReason, Inc.
#
# This software is proprietary and dual-licensed.
# Licensed under the Prosperity Public License 3.0 (the "License").
# A copy of the license is available at https://prosperitylicense.com/versions/3.0.0
# For details, see the LICENSE file.
# Commercial use beyond a 30-day trial requires a separate license.
#
# Source Code: https://github.com/CoReason-AI/coreason_orchestrator

"""Models for managed data-engine resources, tenants and placement."""

from datetime import datetime
from enum import Enum
from typing import Any, Literal

from pydantic import BaseModel, Field, model_validator

from coreason_orchestrator.models.common import new_id, utcnow


class ResourceStatus(str, Enum):
    PENDING = "pending"
    PROVISIONING = "provisioning"
    RUNNING = "running"
    SCALING = "scaling"
    BACKING_UP = "backing_up"
    RESTORING = "restoring"
    MIGRATING = "migrating"
    STOPPING = "stopping"
    STOPPED = "stopped"
    FAILED = "failed"
    DESTROYED = "destroyed"


TRANSIENT_STATUSES = frozenset(
    {
        ResourceStatus.SCALING,
        ResourceStatus.BACKING_UP,
        ResourceStatus.RESTORING,
        ResourceStatus.MIGRATING,
    }
)


class BackupPolicy(BaseModel):
    """Recurring backup settings.

    Attributes:
        enabled: Whether scheduled backups are active.
        schedule: Schedule expression, e.g. ``0 2 * * *``.
        type: ``full`` or ``incremental``.
        retention_days: How long backups are kept.
        compression: Compress backup artifacts.
        encryption: Encrypt backup artifacts.
    """

    enabled: bool = True
    schedule: str = "0 2 * * *"
    type: Literal["full", "incremental"] = "full"
    retention_days: int = Field(default=30, ge=1)
    compression: bool = True
    encryption: bool = False


class ScalingPolicy(BaseModel):
    """Autoscale policy evaluated against collected utilization.

    Thresholds are utilization fractions in ``[0, 1]``; ``cooldown`` is in seconds.
    """

    enabled: bool = True
    min_replicas: int = Field(default=1, ge=1)
    max_replicas: int = Field(default=3, ge=1)
    scale_up_threshold: float = Field(default=0.7, gt=0, le=1)
    scale_down_threshold: float = Field(default=0.3, ge=0, lt=1)
    cooldown: float = 300.0
    evaluation_schedule: str = "@every 5m"

    @model_validator(mode="after")
    def _check_bounds(self) -> "ScalingPolicy":
        if self.min_replicas > self.max_replicas:
            raise ValueError("min_replicas must not exceed max_replicas")
        if self.scale_down_threshold >= self.scale_up_threshold:
            raise ValueError("scale_down_threshold must be below scale_up_threshold")
        return self


class MonitoringPolicy(BaseModel):
    enabled: bool = True
    alert_on_unhealthy: bool = True


class ResourceConfig(BaseModel):
    """Requested shape of a managed resource.

    Attributes:
        name: Display name.
        version: Engine version.
        size_class: Provider size class (``small``, ``medium``...).
        storage_gb: Requested storage.
        replicas: Initial replica count.
        cpu_cores: Requested CPU, used for placement.
        memory_gb: Requested memory, used for placement.
        scaling: Optional autoscale policy.
        backup: Optional backup policy.
        monitoring: Optional monitoring policy.
        options: Engine specific options passed to the provider.
    """

    name: str = Field(min_length=1)
    version: str = "latest"
    size_class: str = "small"
    storage_gb: int = Field(default=10, ge=1)
    replicas: int = Field(default=1, ge=1)
    cpu_cores: float = 1.0
    memory_gb: float = 1.0
    scaling: ScalingPolicy | None = None
    backup: BackupPolicy | None = None
    monitoring: MonitoringPolicy | None = None
    options: dict[str, Any] = Field(default_factory=dict)


class QuotaUsage(BaseModel):
    cpu_cores: float = 0.0
    memory_gb: float = 0.0
    storage_gb: float = 0.0
    connections: int = 0


class ResourceMetadata(BaseModel):
    placement_target: str | None = None
    region: str | None = None
    quota_usage: QuotaUsage = Field(default_factory=QuotaUsage)
    last_backup_at: datetime | None = None
    next_backup_at: datetime | None = None
    last_scaled_at: datetime | None = None
    monitoring_enabled: bool = False
    last_error: str | None = None


class ConnectionInfo(BaseModel):
    host: str
    port: int
    url: str
    username: str | None = None
    database: str | None = None


TenantIsolation = Literal["key_prefix", "database", "instance", "schema", "row"]


class TenantLimits(BaseModel):
    max_connections: int = Field(default=10, ge=1)
    storage_quota_mb: int = Field(default=1024, ge=1)
    cpu_quota_percent: int = Field(default=10, ge=1, le=100)


class TenantRequest(BaseModel):
    """Request to carve out a tenant inside a multi-tenant resource.

    ``database_number`` is required for key-value ``database`` isolation and
    ``database_name`` for relational ``database`` isolation.
    """

    tenant_id: str = Field(min_length=1)
    isolation: TenantIsolation
    limits: TenantLimits = Field(default_factory=TenantLimits)
    database_number: int | None = Field(default=None, ge=0, le=15)
    database_name: str | None = None


class TenantRecord(BaseModel):
    tenant_id: str
    namespace: str
    isolation: TenantIsolation
    limits: TenantLimits = Field(default_factory=TenantLimits)
    created_at: datetime = Field(default_factory=utcnow)


class ManagedResource(BaseModel):
    """One managed data-engine instance.

    Attributes:
        id: Resource identifier.
        type: Engine family (``postgres``, ``redis``...), selects the provider.
        owner_id: Owning user.
        project_id: Owning project.
        tenant_id: Optional tenant this resource belongs to.
        environment: Deployment environment label.
        status: Current lifecycle state.
        instance_id: Provider identifier of the backing instance.
        replicas: Current replica count.
        connection: Connection endpoints reported by the provider.
        config: Requested configuration.
        metadata: Placement, quota and policy bookkeeping.
        tenants: Tenants hosted by this resource, keyed by tenant id.
        tags: Free-form labels.
    """

    id: str = Field(default_factory=lambda: new_id("res"))
    type: str
    owner_id: str
    project_id: str | None = None
    tenant_id: str | None = None
    environment: str = "development"
    status: ResourceStatus = ResourceStatus.PENDING
    instance_id: str | None = None
    replicas: int = 1
    connection: ConnectionInfo | None = None
    config: ResourceConfig
    metadata: ResourceMetadata = Field(default_factory=ResourceMetadata)
    tenants: dict[str, TenantRecord] = Field(default_factory=dict)
    tags: dict[str, str] = Field(default_factory=dict)
    created_at: datetime = Field(default_factory=utcnow)
    updated_at: datetime = Field(default_factory=utcnow)


class DeployRequest(BaseModel):
    type: str
    owner_id: str
    project_id: str | None = None
    tenant_id: str | None = None
    environment: str = "development"
    config: ResourceConfig
    tags: dict[str, str] = Field(default_factory=dict)


class BackupInfo(BaseModel):
    id: str
    resource_id: str
    type: Literal["full", "incremental"] = "full"
    status: Literal["completed", "failed"] = "completed"
    size_bytes: int = 0
    created_at: datetime = Field(default_factory=utcnow)
    expires_at: datetime | None = None


HealthState = Literal["healthy", "degraded", "unhealthy"]


class HealthStatus(BaseModel):
    resource_id: str
    status: HealthState
    response_time_ms: float | None = None
    checks: dict[str, bool] = Field(default_factory=dict)
    message: str | None = None
    checked_at: datetime = Field(default_factory=utcnow)


class ResourceMetrics(BaseModel):
    """Point-in-time resource metrics.

    Utilization values are fractions in ``[0, 1]``.
    """

    resource_id: str
    cpu_utilization: float = 0.0
    memory_utilization: float = 0.0
    storage_used_gb: float = 0.0
    connections: int = 0
    operations_per_second: float = 0.0
    collected_at: datetime = Field(default_factory=utcnow)


class SystemHealth(BaseModel):
    status: HealthState
    total: int
    healthy: int
    unhealthy: int
    average_response_time_ms: float
    resources: list[HealthStatus] = Field(default_factory=list)
    checked_at: datetime = Field(default_factory=utcnow)


class PlacementTarget(BaseModel):
    """A node or region able to host resources.

    Utilization values are fractions in ``[0, 1]``.
    """

    id: str
    region: str = "local"
    available: bool = True
    cpu_cores: float = 16.0
    memory_gb: float = 64.0
    storage_gb: float = 1000.0
    cpu_utilization: float = 0.0
    memory_utilization: float = 0.0
    storage_utilization: float = 0.0
    cost_per_hour: float = 0.0


class ResourceCleanupReport(BaseModel):
    removed: list[str] = Field(default_factory=list)
    errors: dict[str, str] = Field(default_factory=dict)
