import asyncio
from datetime import timedelta
from typing import Any
from unittest.mock import AsyncMock, MagicMock, patch

import pytest
from coreason_orchestrator.config import OrchestratorConfig
from coreason_orchestrator.errors import (
    AccessDeniedError,
    InvalidTransitionError,
    NotFoundError,
    OrchestratorError,
    PostProvisioningError,
    ProviderError,
    QuotaExceededError,
    ValidationError,
)
from coreason_orchestrator.events import EventBus, EventType
from coreason_orchestrator.models import (
    BackupPolicy,
    DeployRequest,
    ManagedResource,
    PlacementTarget,
    ResourceConfig,
    ResourceStatus,
    ScalingPolicy,
    TaskType,
    TenantRequest,
)
from coreason_orchestrator.models.common import utcnow
from coreason_orchestrator.orchestrator import ResourceOrchestrator, tenant_namespace
from coreason_orchestrator.providers.resource import BackupArtifact, InstanceMetrics
from coreason_orchestrator.registry import MemoryRegistry

from conftest import FakeResourceProvider


@pytest.fixture
def postgres_provider() -> FakeResourceProvider:
    return FakeResourceProvider("postgres")


@pytest.fixture
def orchestrator(
    registry: MemoryRegistry,
    resource_provider: FakeResourceProvider,
    postgres_provider: FakeResourceProvider,
    config: OrchestratorConfig,
    events: EventBus,
    mock_scheduler: MagicMock,
) -> ResourceOrchestrator:
    return ResourceOrchestrator(
        registry,
        {"redis": resource_provider, "postgres": postgres_provider},
        config,
        events,
        scheduler=mock_scheduler,
    )


async def deploy(
    orchestrator: ResourceOrchestrator, owner: str = "user-1", resource_type: str = "redis", **config: Any
) -> ManagedResource:
    return await orchestrator.deploy(
        DeployRequest(type=resource_type, owner_id=owner, config=ResourceConfig(name="cache", **config))
    )


# Deploy


@pytest.mark.asyncio
async def test_deploy(
    orchestrator: ResourceOrchestrator,
    registry: MemoryRegistry,
    resource_provider: FakeResourceProvider,
    recorded_events: list[Any],
) -> None:
    resource = await deploy(orchestrator, replicas=2, cpu_cores=2, memory_gb=4, storage_gb=20)

    assert resource.status == ResourceStatus.RUNNING
    assert resource.instance_id == "redis-1"
    assert resource.connection is not None and resource.connection.host == "db.test"
    assert resource.replicas == 2
    assert resource.metadata.placement_target == "local-1"
    assert resource.metadata.quota_usage.cpu_cores == 4
    assert resource.metadata.quota_usage.memory_gb == 8
    assert resource.metadata.quota_usage.storage_gb == 20

    stored = await registry.resources.get(resource.id)
    assert stored is not None and stored.status == ResourceStatus.RUNNING
    assert len(resource_provider.called("deploy_template")) == 1
    assert [e.type for e in recorded_events] == [EventType.RESOURCE_CREATED]


@pytest.mark.asyncio
async def test_deploy_wires_policies(
    orchestrator: ResourceOrchestrator, registry: MemoryRegistry, mock_scheduler: MagicMock
) -> None:
    resource = await orchestrator.deploy(
        DeployRequest(
            type="redis",
            owner_id="user-1",
            config=ResourceConfig(
                name="cache",
                backup=BackupPolicy(schedule="0 4 * * *", retention_days=14),
                scaling=ScalingPolicy(max_replicas=5),
            ),
        )
    )

    mock_scheduler.schedule_backup.assert_awaited_once()
    args = mock_scheduler.schedule_backup.await_args.args
    assert args[0] == resource.id
    assert args[1] == "0 4 * * *"
    assert args[2]["retention_days"] == 14
    mock_scheduler.schedule_scaling.assert_awaited_once_with(resource.id, "@every 5m", config={"autoscale": True})

    stored = await registry.resources.get(resource.id)
    assert stored is not None
    assert stored.metadata.next_backup_at is not None


@pytest.mark.asyncio
async def test_deploy_unsupported_type(orchestrator: ResourceOrchestrator, registry: MemoryRegistry) -> None:
    with pytest.raises(ValidationError, match="Unsupported resource type"):
        await deploy(orchestrator, resource_type="mongodb")
    assert await registry.resources.all() == []


@pytest.mark.asyncio
async def test_deploy_resource_quota(orchestrator: ResourceOrchestrator, config: OrchestratorConfig) -> None:
    config.max_resources_per_user = 1
    await deploy(orchestrator)

    with pytest.raises(QuotaExceededError) as exc_info:
        await deploy(orchestrator)
    assert exc_info.value.details["reason"] == "resource_limit"

    # Other users are unaffected
    await deploy(orchestrator, owner="user-2")


@pytest.mark.asyncio
async def test_deploy_storage_quota(orchestrator: ResourceOrchestrator, config: OrchestratorConfig) -> None:
    config.max_storage_gb_per_user = 50
    await deploy(orchestrator, storage_gb=40)

    with pytest.raises(QuotaExceededError) as exc_info:
        await deploy(orchestrator, storage_gb=20)
    assert exc_info.value.details["reason"] == "storage_limit"


@pytest.mark.asyncio
async def test_deploy_placement_exhausted(
    registry: MemoryRegistry, resource_provider: FakeResourceProvider, config: OrchestratorConfig
) -> None:
    config.placement_targets = [PlacementTarget(id="tiny", cpu_cores=1, memory_gb=1)]
    orchestrator = ResourceOrchestrator(registry, {"redis": resource_provider}, config)

    with pytest.raises(QuotaExceededError) as exc_info:
        await deploy(orchestrator, cpu_cores=4)
    assert exc_info.value.details["reason"] == "capacity_exhausted"
    assert resource_provider.called("deploy_template") == []


@pytest.mark.asyncio
async def test_deploy_provider_failure_leaves_resource_failed(
    orchestrator: ResourceOrchestrator,
    registry: MemoryRegistry,
    resource_provider: FakeResourceProvider,
    recorded_events: list[Any],
) -> None:
    resource_provider.failures["deploy_template"] = RuntimeError("image pull failed")

    with pytest.raises(ProviderError, match="image pull failed"):
        await deploy(orchestrator)

    [stored] = await registry.resources.all()
    assert stored.status == ResourceStatus.FAILED
    assert stored.metadata.last_error == "deploy: image pull failed"
    assert recorded_events[-1].type == EventType.RESOURCE_FAILED


@pytest.mark.asyncio
async def test_deploy_post_provisioning_failure_keeps_resource_running(
    orchestrator: ResourceOrchestrator, registry: MemoryRegistry, mock_scheduler: MagicMock
) -> None:
    mock_scheduler.schedule_backup.side_effect = RuntimeError("scheduler offline")

    with pytest.raises(PostProvisioningError) as exc_info:
        await deploy(orchestrator, backup=BackupPolicy())

    error = exc_info.value
    assert error.errors == {"backup": "scheduler offline"}
    assert error.resource.status == ResourceStatus.RUNNING
    stored = await registry.resources.get(error.resource.id)
    assert stored is not None and stored.status == ResourceStatus.RUNNING


@pytest.mark.asyncio
async def test_deploy_without_scheduler_reports_policy_errors(
    registry: MemoryRegistry, resource_provider: FakeResourceProvider, config: OrchestratorConfig
) -> None:
    orchestrator = ResourceOrchestrator(registry, {"redis": resource_provider}, config)

    with pytest.raises(PostProvisioningError) as exc_info:
        await deploy(orchestrator, scaling=ScalingPolicy())
    assert "autoscale" in exc_info.value.errors


# Scale and destroy


@pytest.mark.asyncio
async def test_scale(
    orchestrator: ResourceOrchestrator, resource_provider: FakeResourceProvider, recorded_events: list[Any]
) -> None:
    resource = await deploy(orchestrator, cpu_cores=2)

    scaled = await orchestrator.scale(resource.id, 3, actor_id="user-1")

    assert scaled.status == ResourceStatus.RUNNING
    assert scaled.replicas == 3
    assert scaled.metadata.quota_usage.cpu_cores == 6
    assert scaled.metadata.last_scaled_at is not None
    assert resource_provider.called("scale_instance") == [("redis-1", 3)]
    assert recorded_events[-1].type == EventType.RESOURCE_SCALED
    assert recorded_events[-1].payload == {"previous": 1, "replicas": 3}


@pytest.mark.asyncio
async def test_scale_failure(
    orchestrator: ResourceOrchestrator, registry: MemoryRegistry, resource_provider: FakeResourceProvider
) -> None:
    resource = await deploy(orchestrator)
    resource_provider.failures["scale_instance"] = TimeoutError("too slow")

    with pytest.raises(ProviderError) as exc_info:
        await orchestrator.scale(resource.id, 2)

    assert exc_info.value.category == "timeout"
    stored = await registry.resources.get(resource.id)
    assert stored is not None
    assert stored.status == ResourceStatus.FAILED
    assert stored.replicas == 1


@pytest.mark.asyncio
async def test_scale_validation(orchestrator: ResourceOrchestrator) -> None:
    resource = await deploy(orchestrator)
    with pytest.raises(ValidationError):
        await orchestrator.scale(resource.id, 0)
    with pytest.raises(NotFoundError):
        await orchestrator.scale("res-missing", 2)


@pytest.mark.asyncio
async def test_operation_on_resource_without_instance(
    orchestrator: ResourceOrchestrator, registry: MemoryRegistry
) -> None:
    resource = ManagedResource(type="redis", owner_id="user-1", config=ResourceConfig(name="x"))
    await registry.resources.save(resource)

    with pytest.raises(InvalidTransitionError):
        await orchestrator.backup(resource.id)


@pytest.mark.asyncio
async def test_destroy(
    orchestrator: ResourceOrchestrator,
    registry: MemoryRegistry,
    resource_provider: FakeResourceProvider,
    mock_scheduler: MagicMock,
    recorded_events: list[Any],
) -> None:
    resource = await deploy(orchestrator)

    await orchestrator.destroy(resource.id, actor_id="user-1")

    mock_scheduler.cancel_all_for_resource.assert_awaited_once_with(resource.id)
    assert resource_provider.called("destroy_instance") == [("redis-1",)]
    assert await registry.resources.get(resource.id) is None
    assert recorded_events[-1].type == EventType.RESOURCE_DESTROYED


@pytest.mark.asyncio
async def test_destroy_access_denied(
    orchestrator: ResourceOrchestrator, resource_provider: FakeResourceProvider
) -> None:
    resource = await deploy(orchestrator)

    with pytest.raises(AccessDeniedError):
        await orchestrator.destroy(resource.id, actor_id="user-2")
    assert resource_provider.called("destroy_instance") == []


@pytest.mark.asyncio
async def test_destroy_failure_keeps_failed_record(
    orchestrator: ResourceOrchestrator, registry: MemoryRegistry, resource_provider: FakeResourceProvider
) -> None:
    resource = await deploy(orchestrator)
    resource_provider.failures["destroy_instance"] = ConnectionError("unreachable")

    with pytest.raises(ProviderError):
        await orchestrator.destroy(resource.id)

    stored = await registry.resources.get(resource.id)
    assert stored is not None
    assert stored.status == ResourceStatus.FAILED


# Backup and restore


@pytest.mark.asyncio
async def test_backup(
    orchestrator: ResourceOrchestrator, registry: MemoryRegistry, recorded_events: list[Any]
) -> None:
    resource = await deploy(orchestrator, backup=BackupPolicy(retention_days=7))

    info = await orchestrator.backup(resource.id, "full")

    assert info.id == "full-1"
    assert info.size_bytes == 2048
    assert info.expires_at is not None
    assert info.expires_at - info.created_at == timedelta(days=7)
    stored = await registry.resources.get(resource.id)
    assert stored is not None
    assert stored.status == ResourceStatus.RUNNING
    assert stored.metadata.last_backup_at == info.created_at
    assert recorded_events[-1].type == EventType.BACKUP_CREATED


@pytest.mark.asyncio
async def test_backup_default_retention(orchestrator: ResourceOrchestrator) -> None:
    resource = await deploy(orchestrator)
    info = await orchestrator.backup(resource.id, "incremental")
    assert info.type == "incremental"
    assert info.expires_at is not None
    assert info.expires_at - info.created_at == timedelta(days=30)


@pytest.mark.asyncio
async def test_restore(orchestrator: ResourceOrchestrator, resource_provider: FakeResourceProvider) -> None:
    resource = await deploy(orchestrator)

    restored = await orchestrator.restore(resource.id, "full-1")

    assert restored.status == ResourceStatus.RUNNING
    assert resource_provider.called("restore_from_backup") == [("redis-1", "full-1")]


@pytest.mark.asyncio
async def test_failed_restore_leaves_resource_failed(
    orchestrator: ResourceOrchestrator,
    registry: MemoryRegistry,
    resource_provider: FakeResourceProvider,
    recorded_events: list[Any],
) -> None:
    resource = await deploy(orchestrator)
    missing = ProviderError("Backup nope does not exist", category="resource", retryable=False)
    resource_provider.failures["restore_from_backup"] = missing

    with pytest.raises(ProviderError) as exc_info:
        await orchestrator.restore(resource.id, "nope")

    assert exc_info.value is missing
    stored = await registry.resources.get(resource.id)
    assert stored is not None
    assert stored.status == ResourceStatus.FAILED
    assert "does not exist" in (stored.metadata.last_error or "")
    assert recorded_events[-1].type == EventType.RESOURCE_FAILED


@pytest.mark.asyncio
async def test_auto_backup(
    orchestrator: ResourceOrchestrator, registry: MemoryRegistry, mock_scheduler: MagicMock
) -> None:
    resource = await deploy(orchestrator)

    updated = await orchestrator.auto_backup(resource.id, BackupPolicy(schedule="0 1 * * *"))

    mock_scheduler.cancel_backup_schedule.assert_awaited_once_with(resource.id)
    assert mock_scheduler.schedule_backup.await_args.args[:2] == (resource.id, "0 1 * * *")
    assert updated.config.backup is not None
    assert updated.metadata.next_backup_at is not None

    await orchestrator.auto_backup(resource.id, BackupPolicy(enabled=False))
    assert mock_scheduler.schedule_backup.await_count == 1
    stored = await registry.resources.get(resource.id)
    assert stored is not None
    assert stored.metadata.next_backup_at is None


@pytest.mark.asyncio
async def test_auto_backup_requires_scheduler(
    registry: MemoryRegistry, resource_provider: FakeResourceProvider, config: OrchestratorConfig
) -> None:
    orchestrator = ResourceOrchestrator(registry, {"redis": resource_provider}, config)
    resource = await deploy(orchestrator)

    with pytest.raises(OrchestratorError, match="No task scheduler"):
        await orchestrator.auto_backup(resource.id, BackupPolicy())


# Tenants


@pytest.mark.parametrize(
    "resource_type, request_kwargs, namespace",
    [
        ("redis", {"isolation": "key_prefix"}, "tenant:acme:"),
        ("redis", {"isolation": "database", "database_number": 3}, "db3"),
        ("redis", {"isolation": "instance"}, "instance:acme"),
        ("postgres", {"isolation": "schema"}, "tenant_acme"),
        ("postgres", {"isolation": "row"}, "tenant_acme"),
        ("postgres", {"isolation": "database", "database_name": "acme_db"}, "acme_db"),
    ],
)
def test_tenant_namespace(resource_type: str, request_kwargs: dict[str, Any], namespace: str) -> None:
    assert tenant_namespace(resource_type, TenantRequest(tenant_id="acme", **request_kwargs)) == namespace


@pytest.mark.asyncio
async def test_create_and_remove_tenant(
    orchestrator: ResourceOrchestrator,
    registry: MemoryRegistry,
    resource_provider: FakeResourceProvider,
    recorded_events: list[Any],
) -> None:
    resource = await deploy(orchestrator)

    tenant = await orchestrator.create_tenant(
        resource.id, TenantRequest(tenant_id="acme", isolation="database", database_number=2)
    )

    assert tenant.namespace == "db2"
    [(instance_id, created, params)] = resource_provider.called("create_tenant")
    assert instance_id == "redis-1"
    assert created.tenant_id == "acme"
    assert params == {"database_number": 2}
    stored = await registry.resources.get(resource.id)
    assert stored is not None and "acme" in stored.tenants
    assert recorded_events[-1].type == EventType.TENANT_CREATED

    await orchestrator.remove_tenant(resource.id, "acme")

    stored = await registry.resources.get(resource.id)
    assert stored is not None and stored.tenants == {}
    assert recorded_events[-1].type == EventType.TENANT_REMOVED
    with pytest.raises(NotFoundError):
        await orchestrator.remove_tenant(resource.id, "acme")


@pytest.mark.asyncio
@pytest.mark.parametrize(
    "resource_type, request_kwargs, message",
    [
        ("redis", {"isolation": "schema"}, "does not support schema"),
        ("postgres", {"isolation": "key_prefix"}, "does not support key_prefix"),
        ("redis", {"isolation": "database"}, "requires database_number"),
        ("postgres", {"isolation": "database"}, "requires database_name"),
    ],
)
async def test_create_tenant_validation(
    orchestrator: ResourceOrchestrator,
    resource_provider: FakeResourceProvider,
    postgres_provider: FakeResourceProvider,
    resource_type: str,
    request_kwargs: dict[str, Any],
    message: str,
) -> None:
    resource = await deploy(orchestrator, resource_type=resource_type)

    with pytest.raises(ValidationError, match=message):
        await orchestrator.create_tenant(resource.id, TenantRequest(tenant_id="acme", **request_kwargs))

    assert resource_provider.called("create_tenant") == []
    assert postgres_provider.called("create_tenant") == []


@pytest.mark.asyncio
async def test_create_duplicate_tenant(orchestrator: ResourceOrchestrator) -> None:
    resource = await deploy(orchestrator)
    request = TenantRequest(tenant_id="acme", isolation="key_prefix")
    await orchestrator.create_tenant(resource.id, request)

    with pytest.raises(ValidationError, match="already exists"):
        await orchestrator.create_tenant(resource.id, request)


@pytest.mark.asyncio
async def test_migrate_tenant(
    orchestrator: ResourceOrchestrator, registry: MemoryRegistry, resource_provider: FakeResourceProvider
) -> None:
    source = await deploy(orchestrator)
    target = await deploy(orchestrator)
    await orchestrator.create_tenant(source.id, TenantRequest(tenant_id="acme", isolation="key_prefix"))

    tenant = await orchestrator.migrate_tenant(source.id, target.id, "acme")

    assert tenant.namespace == "tenant:acme:"
    calls = [(name, args[0]) for name, args in resource_provider.calls if name.endswith("tenant")]
    assert calls == [
        ("create_tenant", "redis-1"),
        ("create_tenant", "redis-2"),
        ("migrate_tenant", "redis-1"),
        ("remove_tenant", "redis-1"),
    ]
    stored_source = await registry.resources.get(source.id)
    stored_target = await registry.resources.get(target.id)
    assert stored_source is not None and stored_target is not None
    assert "acme" not in stored_source.tenants
    assert "acme" in stored_target.tenants
    assert stored_source.status == stored_target.status == ResourceStatus.RUNNING


@pytest.mark.asyncio
async def test_migrate_tenant_failure_fails_both(
    orchestrator: ResourceOrchestrator, registry: MemoryRegistry, resource_provider: FakeResourceProvider
) -> None:
    source = await deploy(orchestrator)
    target = await deploy(orchestrator)
    await orchestrator.create_tenant(source.id, TenantRequest(tenant_id="acme", isolation="key_prefix"))
    resource_provider.failures["migrate_tenant"] = RuntimeError("copy failed")

    with pytest.raises(ProviderError):
        await orchestrator.migrate_tenant(source.id, target.id, "acme")

    for resource_id in (source.id, target.id):
        stored = await registry.resources.get(resource_id)
        assert stored is not None
        assert stored.status == ResourceStatus.FAILED
    stored_source = await registry.resources.get(source.id)
    assert stored_source is not None and "acme" in stored_source.tenants


@pytest.mark.asyncio
async def test_migrate_tenant_validation(orchestrator: ResourceOrchestrator) -> None:
    redis = await deploy(orchestrator)
    postgres = await deploy(orchestrator, resource_type="postgres")
    await orchestrator.create_tenant(redis.id, TenantRequest(tenant_id="acme", isolation="key_prefix"))

    with pytest.raises(ValidationError, match="Cannot migrate"):
        await orchestrator.migrate_tenant(redis.id, postgres.id, "acme")
    with pytest.raises(ValidationError, match="must differ"):
        await orchestrator.migrate_tenant(redis.id, redis.id, "acme")
    other = await deploy(orchestrator)
    with pytest.raises(NotFoundError):
        await orchestrator.migrate_tenant(redis.id, other.id, "ghost")


# Failover and maintenance


@pytest.mark.asyncio
async def test_auto_failover(orchestrator: ResourceOrchestrator, resource_provider: FakeResourceProvider) -> None:
    resource = await deploy(orchestrator)
    result = await orchestrator.auto_failover(resource.id)
    assert result.status == ResourceStatus.RUNNING
    assert resource_provider.called("initiate_failover") == [("redis-1",)]


@pytest.mark.asyncio
async def test_maintenance_operations(
    orchestrator: ResourceOrchestrator, resource_provider: FakeResourceProvider
) -> None:
    resource = await deploy(orchestrator)

    assert await orchestrator.run_maintenance(resource.id, "vacuum") == "vacuum done"
    assert await orchestrator.optimize(resource.id, "storage") == "storage done"
    assert await orchestrator.archive_backups(resource.id, 30, "glacier") == 2
    assert resource_provider.called("archive_backups") == [("redis-1", 30, "glacier")]


# Autoscale


@pytest.mark.asyncio
async def test_evaluate_autoscale_up_and_down(
    orchestrator: ResourceOrchestrator, resource_provider: FakeResourceProvider
) -> None:
    resource = await deploy(orchestrator, scaling=ScalingPolicy(min_replicas=1, max_replicas=3, cooldown=0))

    resource_provider.metrics = InstanceMetrics(cpu_utilization=0.9, memory_utilization=0.2)
    assert (await orchestrator.evaluate_autoscale(resource.id)).startswith("scaled 1 -> 2")

    resource_provider.metrics = InstanceMetrics(cpu_utilization=0.5, memory_utilization=0.5)
    assert (await orchestrator.evaluate_autoscale(resource.id)).startswith("no change at 2")

    resource_provider.metrics = InstanceMetrics(cpu_utilization=0.1, memory_utilization=0.1)
    assert (await orchestrator.evaluate_autoscale(resource.id)).startswith("scaled 2 -> 1")

    # Never below the minimum
    assert (await orchestrator.evaluate_autoscale(resource.id)).startswith("no change at 1")


@pytest.mark.asyncio
async def test_evaluate_autoscale_respects_max_and_cooldown(
    orchestrator: ResourceOrchestrator, registry: MemoryRegistry, resource_provider: FakeResourceProvider
) -> None:
    resource = await deploy(orchestrator, replicas=2, scaling=ScalingPolicy(max_replicas=2, cooldown=300))
    resource_provider.metrics = InstanceMetrics(cpu_utilization=0.95)

    assert (await orchestrator.evaluate_autoscale(resource.id)).startswith("no change at 2")

    stored = await registry.resources.get(resource.id)
    assert stored is not None
    stored.metadata.last_scaled_at = utcnow() - timedelta(seconds=10)
    await registry.resources.save(stored)
    assert await orchestrator.evaluate_autoscale(resource.id) == "in cooldown"


@pytest.mark.asyncio
async def test_evaluate_autoscale_disabled(orchestrator: ResourceOrchestrator) -> None:
    resource = await deploy(orchestrator)
    assert await orchestrator.evaluate_autoscale(resource.id) == "autoscale disabled"


@pytest.mark.asyncio
async def test_auto_scale_replaces_evaluation_task(
    orchestrator: ResourceOrchestrator, registry: MemoryRegistry, mock_scheduler: MagicMock
) -> None:
    resource = await deploy(orchestrator)
    existing = MagicMock(id="task-old", type=TaskType.SCALING, config={"autoscale": True}, is_terminal=False)
    manual = MagicMock(id="task-manual", type=TaskType.SCALING, config={"target_replicas": 2}, is_terminal=False)
    mock_scheduler.get_scheduled_tasks.return_value = [existing, manual]

    await orchestrator.auto_scale(resource.id, ScalingPolicy(evaluation_schedule="@every 1m"))

    mock_scheduler.cancel_task.assert_awaited_once_with("task-old")
    mock_scheduler.schedule_scaling.assert_awaited_once_with(resource.id, "@every 1m", config={"autoscale": True})
    stored = await registry.resources.get(resource.id)
    assert stored is not None and stored.config.scaling is not None


# Health and metrics


@pytest.mark.asyncio
async def test_health_check(
    orchestrator: ResourceOrchestrator, resource_provider: FakeResourceProvider, recorded_events: list[Any]
) -> None:
    resource = await deploy(orchestrator)

    healthy = await orchestrator.health_check(resource.id)
    assert healthy.status == "healthy"
    assert healthy.response_time_ms is not None

    resource_provider.healthy = False
    unhealthy = await orchestrator.health_check(resource.id)
    assert unhealthy.status == "unhealthy"
    assert recorded_events[-1].type == EventType.HEALTH_ALERT

    resource_provider.failures["check_health"] = ConnectionError("refused")
    errored = await orchestrator.health_check(resource.id)
    assert errored.status == "unhealthy"
    assert errored.message == "refused"


@pytest.mark.asyncio
@pytest.mark.parametrize(
    "unhealthy_count, expected", [(0, "healthy"), (1, "degraded"), (2, "degraded"), (3, "unhealthy")]
)
async def test_system_health(
    orchestrator: ResourceOrchestrator,
    resource_provider: FakeResourceProvider,
    config: OrchestratorConfig,
    unhealthy_count: int,
    expected: str,
) -> None:
    resources = [await deploy(orchestrator) for _ in range(4)]
    resource_provider.unhealthy = {r.instance_id for r in resources[:unhealthy_count] if r.instance_id}

    health = await orchestrator.get_system_health()

    assert health.status == expected
    assert health.total == 4
    assert health.unhealthy == unhealthy_count
    assert health.healthy == 4 - unhealthy_count
    assert len(health.resources) == 4


@pytest.mark.asyncio
async def test_system_health_empty(orchestrator: ResourceOrchestrator) -> None:
    health = await orchestrator.get_system_health()
    assert health.status == "healthy"
    assert health.total == 0
    assert health.average_response_time_ms == 0.0


@pytest.mark.asyncio
async def test_get_metrics(orchestrator: ResourceOrchestrator, resource_provider: FakeResourceProvider) -> None:
    resource = await deploy(orchestrator)
    resource_provider.metrics = InstanceMetrics(cpu_utilization=0.25, connections=7)

    metrics = await orchestrator.get_metrics(resource.id)

    assert metrics.resource_id == resource.id
    assert metrics.cpu_utilization == 0.25
    assert metrics.connections == 7
    assert orchestrator.latest_metrics(resource.id) == metrics

    resource_provider.failures["get_metrics"] = RuntimeError("INFO failed")
    with pytest.raises(ProviderError):
        await orchestrator.get_metrics(resource.id)


# Visibility and sweeps


@pytest.mark.asyncio
async def test_list_and_get_resources(orchestrator: ResourceOrchestrator) -> None:
    mine = await deploy(orchestrator, owner="user-1")
    await deploy(orchestrator, owner="user-2", resource_type="postgres")

    assert [r.id for r in await orchestrator.list_resources(owner_id="user-1")] == [mine.id]
    assert len(await orchestrator.list_resources(type="postgres")) == 1
    assert len(await orchestrator.list_resources(metadata__placement_target="local-1")) == 2
    assert (await orchestrator.get_resource(mine.id, actor_id="user-1")).id == mine.id
    with pytest.raises(AccessDeniedError):
        await orchestrator.get_resource(mine.id, actor_id="user-2")


@pytest.mark.asyncio
async def test_cleanup_sweep_removes_resources_with_missing_instances(
    orchestrator: ResourceOrchestrator,
    registry: MemoryRegistry,
    resource_provider: FakeResourceProvider,
    mock_scheduler: MagicMock,
) -> None:
    gone = await deploy(orchestrator)
    kept = await deploy(orchestrator)
    resource_provider.instances.discard(gone.instance_id or "")

    report = await orchestrator.cleanup_sweep()

    assert report.removed == [gone.id]
    assert report.errors == {}
    assert await registry.resources.get(gone.id) is None
    assert await registry.resources.get(kept.id) is not None
    mock_scheduler.cancel_all_for_resource.assert_awaited_once_with(gone.id)


@pytest.mark.asyncio
async def test_cleanup_sweep_records_errors(
    orchestrator: ResourceOrchestrator, resource_provider: FakeResourceProvider
) -> None:
    resource = await deploy(orchestrator)
    resource_provider.failures["instance_exists"] = ConnectionError("api down")

    report = await orchestrator.cleanup_sweep()

    assert report.removed == []
    assert report.errors == {resource.id: "api down"}


@pytest.mark.asyncio
async def test_health_and_metrics_sweeps(
    orchestrator: ResourceOrchestrator, resource_provider: FakeResourceProvider
) -> None:
    await deploy(orchestrator)
    await deploy(orchestrator)
    resource_provider.healthy = False

    statuses = await orchestrator.health_sweep()
    assert [s.status for s in statuses] == ["unhealthy", "unhealthy"]
    assert await orchestrator.metrics_sweep() == 2


@pytest.mark.asyncio
async def test_background_loops(orchestrator: ResourceOrchestrator, config: OrchestratorConfig) -> None:
    config.health_check_interval = 0.01
    config.metrics_interval = 0.01
    config.resource_cleanup_interval = 0.01

    with (
        patch.object(orchestrator, "health_sweep", AsyncMock()) as health,
        patch.object(orchestrator, "metrics_sweep", AsyncMock(side_effect=RuntimeError("boom"))) as metrics,
        patch.object(orchestrator, "cleanup_sweep", AsyncMock()) as cleanup,
    ):
        await orchestrator.start()
        await orchestrator.start()
        assert len(orchestrator._loops) == 3
        await asyncio.sleep(0.05)
        await orchestrator.shutdown()

    assert health.await_count >= 1
    assert metrics.await_count >= 1
    assert cleanup.await_count >= 1
    assert orchestrator._loops == []


# Concurrency


class GatedProvider(FakeResourceProvider):
    """Scale, backup and destroy calls wait on ``release`` and count overlaps."""

    def __init__(self) -> None:
        super().__init__("redis")
        self.entered = asyncio.Event()
        self.release = asyncio.Event()
        self.active = 0
        self.max_active = 0

    async def _gate(self) -> None:
        self.active += 1
        self.max_active = max(self.max_active, self.active)
        self.entered.set()
        try:
            await self.release.wait()
        finally:
            self.active -= 1

    async def scale_instance(self, instance_id: str, replicas: int, config: ResourceConfig) -> None:
        await super().scale_instance(instance_id, replicas, config)
        await self._gate()

    async def create_backup(self, instance_id: str, backup_type: str = "full") -> BackupArtifact:
        artifact = await super().create_backup(instance_id, backup_type)
        await self._gate()
        return artifact

    async def destroy_instance(self, instance_id: str) -> None:
        await super().destroy_instance(instance_id)
        await self._gate()


@pytest.fixture
def gated_provider() -> GatedProvider:
    return GatedProvider()


@pytest.fixture
def gated_orchestrator(
    registry: MemoryRegistry,
    gated_provider: GatedProvider,
    config: OrchestratorConfig,
    events: EventBus,
    mock_scheduler: MagicMock,
) -> ResourceOrchestrator:
    return ResourceOrchestrator(registry, {"redis": gated_provider}, config, events, scheduler=mock_scheduler)


@pytest.mark.asyncio
async def test_operations_on_one_resource_are_serialized(
    gated_orchestrator: ResourceOrchestrator, gated_provider: GatedProvider, registry: MemoryRegistry
) -> None:
    resource = await deploy(gated_orchestrator)

    scaling = asyncio.create_task(gated_orchestrator.scale(resource.id, 2))
    await gated_provider.entered.wait()
    backing_up = asyncio.create_task(gated_orchestrator.backup(resource.id))
    await asyncio.sleep(0.01)

    # The backup waits for the scale to finish
    assert gated_provider.called("create_backup") == []
    stored = await registry.resources.get(resource.id)
    assert stored is not None and stored.status == ResourceStatus.SCALING

    gated_provider.release.set()
    scaled, info = await asyncio.gather(scaling, backing_up)

    assert gated_provider.max_active == 1
    assert [call for call, _ in gated_provider.calls][-2:] == ["scale_instance", "create_backup"]
    assert scaled.replicas == 2
    stored = await registry.resources.get(resource.id)
    assert stored is not None
    assert stored.status == ResourceStatus.RUNNING
    assert stored.replicas == 2
    assert stored.metadata.last_backup_at == info.created_at


@pytest.mark.asyncio
async def test_cancelled_scale_leaves_resource_failed(
    gated_orchestrator: ResourceOrchestrator,
    gated_provider: GatedProvider,
    registry: MemoryRegistry,
    recorded_events: list[Any],
) -> None:
    resource = await deploy(gated_orchestrator)

    scaling = asyncio.create_task(gated_orchestrator.scale(resource.id, 3))
    await gated_provider.entered.wait()
    scaling.cancel()
    with pytest.raises(asyncio.CancelledError):
        await scaling

    stored = await registry.resources.get(resource.id)
    assert stored is not None
    assert stored.status == ResourceStatus.FAILED
    assert stored.metadata.last_error == "scale: cancelled"
    assert stored.replicas == 1
    assert recorded_events[-1].type == EventType.RESOURCE_FAILED
    assert recorded_events[-1].payload == {"operation": "scale", "error": "cancelled"}

    # The resource lock was released
    gated_provider.release.set()
    await gated_orchestrator.backup(resource.id)


@pytest.mark.asyncio
async def test_cancelled_destroy_keeps_failed_record(
    gated_orchestrator: ResourceOrchestrator, gated_provider: GatedProvider, registry: MemoryRegistry
) -> None:
    resource = await deploy(gated_orchestrator)

    destroying = asyncio.create_task(gated_orchestrator.destroy(resource.id))
    await gated_provider.entered.wait()
    destroying.cancel()
    with pytest.raises(asyncio.CancelledError):
        await destroying

    stored = await registry.resources.get(resource.id)
    assert stored is not None
    assert stored.status == ResourceStatus.FAILED
    assert stored.metadata.last_error == "destroy: cancelled"


@pytest.mark.asyncio
async def test_concurrent_deploys_share_owner_quota(
    orchestrator: ResourceOrchestrator, registry: MemoryRegistry, config: OrchestratorConfig
) -> None:
    config.max_resources_per_user = 1
    find = registry.resources.find

    async def yielding_find(**filters: Any) -> list[ManagedResource]:
        found = await find(**filters)
        await asyncio.sleep(0)
        return found

    with patch.object(registry.resources, "find", side_effect=yielding_find):
        results = await asyncio.gather(deploy(orchestrator), deploy(orchestrator), return_exceptions=True)

    deployed = [r for r in results if isinstance(r, ManagedResource)]
    rejected = [r for r in results if isinstance(r, QuotaExceededError)]
    assert len(deployed) == 1
    assert len(rejected) == 1
    assert [r.id for r in await registry.resources.find(owner_id="user-1")] == [deployed[0].id]
