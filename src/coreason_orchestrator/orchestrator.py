# Copyright (c) 2025 CoReason, Inc.
#
# This software is proprietary and dual-licensed.
# Licensed under the Prosperity Public License 3.0 (the "License").
# A copy of the license is available at https://prosperitylicense.com/versions/3.0.0
# For details, see the LICENSE file.
# Commercial use beyond a 30-day trial requires a separate license.
#
# Source Code: https://github.com/CoReason-AI/coreason_orchestrator

import asyncio
import time
from contextlib import asynccontextmanager
from datetime import timedelta
from typing import Any, AsyncIterator, Awaitable, Callable, NoReturn

from loguru import logger

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
from coreason_orchestrator.locks import KeyedLock
from coreason_orchestrator.models import (
    BackupInfo,
    BackupPolicy,
    DeployRequest,
    HealthStatus,
    ManagedResource,
    QuotaUsage,
    ResourceCleanupReport,
    ResourceMetadata,
    ResourceMetrics,
    ResourceStatus,
    ScalingPolicy,
    SystemHealth,
    TaskType,
    TenantRecord,
    TenantRequest,
)
from coreason_orchestrator.models.common import utcnow
from coreason_orchestrator.placement import CapacityAwarePlacement, PlacementStrategy
from coreason_orchestrator.providers.resource import ResourceProvider
from coreason_orchestrator.registry import Registry
from coreason_orchestrator.scheduler import TaskScheduler

# Tenant isolation modes each engine family supports
TENANT_ISOLATION: dict[str, frozenset[str]] = {
    "redis": frozenset({"key_prefix", "database", "instance"}),
    "postgres": frozenset({"schema", "database", "row"}),
}


def tenant_namespace(resource_type: str, request: TenantRequest) -> str:
    """Derive the key or schema namespace a tenant is confined to."""
    if request.isolation == "key_prefix":
        return f"tenant:{request.tenant_id}:"
    if request.isolation == "instance":
        return f"instance:{request.tenant_id}"
    if request.isolation == "database":
        if resource_type == "redis":
            return f"db{request.database_number}"
        return request.database_name or f"tenant_{request.tenant_id}"
    return f"tenant_{request.tenant_id}"


class ResourceOrchestrator:
    """Uniform lifecycle operations over managed data-engine resources.

    Every mutating operation holds a per-resource lock, moves the resource into
    its in-progress state, delegates to the provider for the resource type and
    always leaves the resource ``running`` or ``failed``.
    """

    def __init__(
        self,
        registry: Registry,
        providers: dict[str, ResourceProvider],
        config: OrchestratorConfig | None = None,
        events: EventBus | None = None,
        scheduler: TaskScheduler | None = None,
        placement: PlacementStrategy | None = None,
    ):
        """Initializes the ResourceOrchestrator.

        Args:
            registry: Registry holding resource records.
            providers: One provider per resource type.
            config: Optional configuration object. If not provided, defaults are used.
            events: Event bus for lifecycle notifications.
            scheduler: Task scheduler used to wire backup and autoscale policies.
            placement: Placement strategy. Defaults to capacity-aware placement
                over the configured targets.
        """
        self.registry = registry
        self.providers = providers
        self.config = config or OrchestratorConfig()
        self.events = events or EventBus()
        self.scheduler = scheduler
        self.placement = placement or CapacityAwarePlacement(
            self.config.placement_targets, self.config.placement_headroom
        )
        self._locks = KeyedLock()
        self._owner_locks = KeyedLock()
        self._latest_metrics: dict[str, ResourceMetrics] = {}
        self._loops: list[asyncio.Task[None]] = []

    # Helpers

    def _provider(self, resource_type: str) -> ResourceProvider:
        provider = self.providers.get(resource_type)
        if provider is None:
            raise ValidationError(
                f"Unsupported resource type: {resource_type}",
                {"supported": sorted(self.providers)},
            )
        return provider

    async def _load(self, resource_id: str, actor_id: str | None = None) -> ManagedResource:
        resource = await self.registry.resources.get(resource_id)
        if resource is None:
            raise NotFoundError("Resource", resource_id)
        if actor_id is not None and actor_id != resource.owner_id:
            logger.warning(f"Unauthorized access attempt to resource {resource_id} by {actor_id}")
            raise AccessDeniedError("Resource belongs to another user", {"resource_id": resource_id})
        return resource

    @staticmethod
    def _instance_id(resource: ManagedResource) -> str:
        if not resource.instance_id:
            raise InvalidTransitionError(
                f"Resource {resource.id} has no backing instance (status {resource.status.value})",
                {"resource_id": resource.id},
            )
        return resource.instance_id

    async def _persist(self, resource: ManagedResource) -> None:
        resource.updated_at = utcnow()
        await self.registry.resources.save(resource)

    async def _fail(self, resource: ManagedResource, operation: str, error: Exception) -> NoReturn:
        """Mark the resource failed and raise ``error`` as an OrchestratorError."""
        resource.status = ResourceStatus.FAILED
        resource.metadata.last_error = f"{operation}: {error}"
        await self._persist(resource)
        logger.error(f"Resource {resource.id} failed during {operation}: {error}")
        await self.events.emit(EventType.RESOURCE_FAILED, resource.id, operation=operation, error=str(error))
        if isinstance(error, OrchestratorError):
            raise error
        raise ProviderError.wrap(error, operation) from error

    async def _abandon(self, resource: ManagedResource, operation: str) -> None:
        """Mark the resource failed after its operation was cancelled mid-call.

        The provider-side outcome is unknown, so the resource is not trusted
        to be running. The write is shielded from a repeated cancellation.
        """
        resource.status = ResourceStatus.FAILED
        resource.metadata.last_error = f"{operation}: cancelled"
        await asyncio.shield(self._persist(resource))
        logger.error(f"Resource {resource.id} failed during {operation}: operation cancelled")
        await self.events.emit(EventType.RESOURCE_FAILED, resource.id, operation=operation, error="cancelled")

    @asynccontextmanager
    async def _operation(
        self, resource: ManagedResource, in_progress: ResourceStatus | None, operation: str
    ) -> AsyncIterator[None]:
        """Run a provider operation with a guaranteed terminal status.

        The resource moves to ``in_progress`` (when given) and ends ``running``
        on success. Any error marks it ``failed`` and is re-raised as an
        OrchestratorError. Cancellation also marks it ``failed`` and propagates.
        """
        if in_progress is not None:
            resource.status = in_progress
            await self._persist(resource)
        try:
            yield
        except Exception as e:
            await self._fail(resource, operation, e)
        except BaseException:
            await self._abandon(resource, operation)
            raise
        resource.status = ResourceStatus.RUNNING
        resource.metadata.last_error = None
        await self._persist(resource)

    # Deploy and destroy

    async def _check_quota(self, request: DeployRequest) -> None:
        owned = [
            r for r in await self.registry.resources.find(owner_id=request.owner_id)
            if r.status != ResourceStatus.DESTROYED
        ]
        if len(owned) >= self.config.max_resources_per_user:
            raise QuotaExceededError(
                f"User {request.owner_id} already owns {len(owned)} resources "
                f"(limit {self.config.max_resources_per_user})",
                {"reason": "resource_limit", "limit": self.config.max_resources_per_user},
            )
        storage = sum(r.config.storage_gb for r in owned) + request.config.storage_gb
        if storage > self.config.max_storage_gb_per_user:
            raise QuotaExceededError(
                f"User {request.owner_id} would use {storage}GB of storage "
                f"(limit {self.config.max_storage_gb_per_user}GB)",
                {"reason": "storage_limit", "limit": self.config.max_storage_gb_per_user},
            )

    async def deploy(self, request: DeployRequest) -> ManagedResource:
        """Provision a managed resource.

        Validates the type and quota, selects a placement target, provisions
        through the provider and then wires monitoring, backup and autoscale
        policies.

        Args:
            request: What to deploy and for whom.

        Returns:
            ManagedResource: The running resource.

        Raises:
            ValidationError: If the resource type is unsupported.
            QuotaExceededError: If the owner's quota or placement capacity is exhausted.
            ProviderError: If provisioning fails; the resource is left ``failed``.
            PostProvisioningError: If the resource runs but policy wiring failed.
        """
        provider = self._provider(request.type)
        # Quota counts persisted records, so the check and the insert run under one owner lock
        async with self._owner_locks.hold(request.owner_id):
            await self._check_quota(request)
            target = self.placement.select(request.config)

            resource = ManagedResource(
                type=request.type,
                owner_id=request.owner_id,
                project_id=request.project_id,
                tenant_id=request.tenant_id,
                environment=request.environment,
                config=request.config,
                replicas=request.config.replicas,
                tags=request.tags,
                metadata=ResourceMetadata(
                    placement_target=target.id,
                    region=target.region,
                    quota_usage=QuotaUsage(
                        cpu_cores=request.config.cpu_cores * request.config.replicas,
                        memory_gb=request.config.memory_gb * request.config.replicas,
                        storage_gb=request.config.storage_gb,
                    ),
                ),
            )
            await self._persist(resource)
        logger.info(
            "Deploying managed resource",
            resource_id=resource.id,
            type=request.type,
            owner_id=request.owner_id,
            target=target.id,
        )

        async with self._locks.hold(resource.id):
            async with self._operation(resource, ResourceStatus.PROVISIONING, "deploy"):
                instance = await provider.deploy_template(resource.id, request.config)
                resource.instance_id = instance.instance_id
                resource.connection = instance.connection
        await self.events.emit(
            EventType.RESOURCE_CREATED, resource.id, type=resource.type, instance_id=resource.instance_id
        )

        errors = await self._wire_policies(resource)
        if errors:
            logger.error(f"Resource {resource.id} is running but post-provisioning failed: {errors}")
            raise PostProvisioningError(resource, errors)
        return resource

    async def _wire_policies(self, resource: ManagedResource) -> dict[str, str]:
        """Attach monitoring, backup and autoscale policies. Returns failed steps."""
        errors: dict[str, str] = {}
        config = resource.config

        if config.monitoring and config.monitoring.enabled:
            resource.metadata.monitoring_enabled = True

        if config.backup and config.backup.enabled:
            try:
                task = await self._require_scheduler().schedule_backup(
                    resource.id, config.backup.schedule, _backup_task_config(config.backup)
                )
                resource.metadata.next_backup_at = task.next_run
            except Exception as e:
                errors["backup"] = str(e)

        if config.scaling and config.scaling.enabled:
            try:
                await self._require_scheduler().schedule_scaling(
                    resource.id, config.scaling.evaluation_schedule, config={"autoscale": True}
                )
            except Exception as e:
                errors["autoscale"] = str(e)

        async with self._locks.hold(resource.id):
            current = await self.registry.resources.get(resource.id)
            if current is not None:
                current.metadata.monitoring_enabled = resource.metadata.monitoring_enabled
                current.metadata.next_backup_at = resource.metadata.next_backup_at
                await self._persist(current)
        return errors

    def _require_scheduler(self) -> TaskScheduler:
        if self.scheduler is None:
            raise OrchestratorError("No task scheduler is attached to the orchestrator")
        return self.scheduler

    async def destroy(self, resource_id: str, actor_id: str | None = None) -> None:
        """Destroy a resource, cancel its tasks and remove it from the registry.

        Raises:
            NotFoundError: If the resource does not exist.
            AccessDeniedError: If ``actor_id`` does not own it.
            ProviderError: If the provider fails; the resource is left ``failed``.
        """
        async with self._locks.hold(resource_id):
            resource = await self._load(resource_id, actor_id)
            resource.status = ResourceStatus.STOPPING
            await self._persist(resource)
            try:
                if self.scheduler is not None:
                    await self.scheduler.cancel_all_for_resource(resource_id)
                if resource.instance_id:
                    await self._provider(resource.type).destroy_instance(resource.instance_id)
            except Exception as e:
                await self._fail(resource, "destroy", e)
            except BaseException:
                await self._abandon(resource, "destroy")
                raise
            await self.registry.resources.delete(resource_id)
            self._latest_metrics.pop(resource_id, None)
        logger.info(f"Resource {resource_id} destroyed")
        await self.events.emit(EventType.RESOURCE_DESTROYED, resource_id, type=resource.type)

    # Capacity

    async def scale(self, resource_id: str, replicas: int, actor_id: str | None = None) -> ManagedResource:
        """Change the replica count of a resource.

        Raises:
            ValidationError: If ``replicas`` is below 1.
            ProviderError: If the provider fails; the resource is left ``failed``.
        """
        if replicas < 1:
            raise ValidationError("Replica count must be at least 1")
        async with self._locks.hold(resource_id):
            resource = await self._load(resource_id, actor_id)
            provider = self._provider(resource.type)
            instance_id = self._instance_id(resource)
            previous = resource.replicas
            async with self._operation(resource, ResourceStatus.SCALING, "scale"):
                await provider.scale_instance(instance_id, replicas, resource.config)
                resource.replicas = replicas
                resource.metadata.last_scaled_at = utcnow()
                resource.metadata.quota_usage.cpu_cores = resource.config.cpu_cores * replicas
                resource.metadata.quota_usage.memory_gb = resource.config.memory_gb * replicas
        logger.info(f"Resource {resource_id} scaled from {previous} to {replicas} replicas")
        await self.events.emit(EventType.RESOURCE_SCALED, resource_id, previous=previous, replicas=replicas)
        return resource

    async def auto_scale(self, resource_id: str, policy: ScalingPolicy, actor_id: str | None = None) -> ManagedResource:
        """Store an autoscale policy and (re)register its evaluation task."""
        async with self._locks.hold(resource_id):
            resource = await self._load(resource_id, actor_id)
            resource.config.scaling = policy
            await self._persist(resource)

        scheduler = self._require_scheduler()
        for task in await scheduler.get_scheduled_tasks(resource_id):
            if task.type == TaskType.SCALING and task.config.get("autoscale") and not task.is_terminal:
                await scheduler.cancel_task(task.id)
        if policy.enabled:
            await scheduler.schedule_scaling(resource_id, policy.evaluation_schedule, config={"autoscale": True})
        return resource

    async def evaluate_autoscale(self, resource_id: str) -> str:
        """Scale one step up or down based on the latest utilization.

        Utilization is the higher of CPU and memory. Above the scale-up
        threshold one replica is added, below the scale-down threshold one is
        removed, always within the policy bounds and outside the cooldown.

        Returns:
            str: A summary of the decision.
        """
        resource = await self._load(resource_id)
        policy = resource.config.scaling
        if policy is None or not policy.enabled:
            return "autoscale disabled"
        last = resource.metadata.last_scaled_at
        if last is not None and utcnow() - last < timedelta(seconds=policy.cooldown):
            return "in cooldown"

        metrics = await self.get_metrics(resource_id)
        utilization = max(metrics.cpu_utilization, metrics.memory_utilization)
        desired = resource.replicas
        if utilization > policy.scale_up_threshold:
            desired = min(resource.replicas + 1, policy.max_replicas)
        elif utilization < policy.scale_down_threshold:
            desired = max(resource.replicas - 1, policy.min_replicas)
        desired = max(policy.min_replicas, min(desired, policy.max_replicas))

        if desired == resource.replicas:
            return f"no change at {resource.replicas} replicas (utilization {utilization:.2f})"
        await self.scale(resource_id, desired)
        return f"scaled {resource.replicas} -> {desired} (utilization {utilization:.2f})"

    # Backup

    async def backup(self, resource_id: str, backup_type: str = "full", actor_id: str | None = None) -> BackupInfo:
        """Take a backup of a resource.

        Raises:
            ProviderError: If the provider fails; the resource is left ``failed``.
        """
        async with self._locks.hold(resource_id):
            resource = await self._load(resource_id, actor_id)
            provider = self._provider(resource.type)
            instance_id = self._instance_id(resource)
            async with self._operation(resource, ResourceStatus.BACKING_UP, "backup"):
                artifact = await provider.create_backup(instance_id, backup_type)
                created = utcnow()
                retention = resource.config.backup.retention_days if resource.config.backup else 30
                info = BackupInfo(
                    id=artifact.backup_id,
                    resource_id=resource_id,
                    type="incremental" if backup_type == "incremental" else "full",
                    size_bytes=artifact.size_bytes,
                    created_at=created,
                    expires_at=created + timedelta(days=retention),
                )
                resource.metadata.last_backup_at = created
        logger.info(f"Backup {info.id} created for {resource_id} ({info.size_bytes} bytes)")
        await self.events.emit(EventType.BACKUP_CREATED, resource_id, backup_id=info.id, size_bytes=info.size_bytes)
        return info

    async def restore(self, resource_id: str, backup_id: str, actor_id: str | None = None) -> ManagedResource:
        """Restore a resource from a backup.

        Raises:
            ProviderError: If the provider rejects the backup or the restore
                fails; the resource is left ``failed``.
        """
        async with self._locks.hold(resource_id):
            resource = await self._load(resource_id, actor_id)
            provider = self._provider(resource.type)
            instance_id = self._instance_id(resource)
            async with self._operation(resource, ResourceStatus.RESTORING, "restore"):
                await provider.restore_from_backup(instance_id, backup_id)
        logger.info(f"Resource {resource_id} restored from {backup_id}")
        return resource

    async def auto_backup(self, resource_id: str, policy: BackupPolicy, actor_id: str | None = None) -> ManagedResource:
        """Replace the backup schedule of a resource, or remove it when disabled."""
        scheduler = self._require_scheduler()
        async with self._locks.hold(resource_id):
            resource = await self._load(resource_id, actor_id)
            await scheduler.cancel_backup_schedule(resource_id)
            resource.config.backup = policy
            resource.metadata.next_backup_at = None
            if policy.enabled:
                task = await scheduler.schedule_backup(resource_id, policy.schedule, _backup_task_config(policy))
                resource.metadata.next_backup_at = task.next_run
            await self._persist(resource)
        return resource

    # Tenants

    def _validate_tenant(self, resource: ManagedResource, request: TenantRequest) -> None:
        allowed = TENANT_ISOLATION.get(resource.type)
        if allowed is not None and request.isolation not in allowed:
            raise ValidationError(
                f"{resource.type} does not support {request.isolation} tenant isolation",
                {"supported": sorted(allowed)},
            )
        if request.isolation == "database":
            if resource.type == "redis" and request.database_number is None:
                raise ValidationError("database isolation requires database_number")
            if resource.type == "postgres" and not request.database_name:
                raise ValidationError("database isolation requires database_name")
        if request.tenant_id in resource.tenants:
            raise ValidationError(f"Tenant {request.tenant_id} already exists on {resource.id}")

    async def create_tenant(
        self, resource_id: str, request: TenantRequest, actor_id: str | None = None
    ) -> TenantRecord:
        """Create an isolated tenant inside a resource.

        Raises:
            ValidationError: If the isolation mode is unsupported or missing a
                required parameter. Raised before any provider call.
        """
        async with self._locks.hold(resource_id):
            resource = await self._load(resource_id, actor_id)
            self._validate_tenant(resource, request)
            provider = self._provider(resource.type)
            instance_id = self._instance_id(resource)
            tenant = TenantRecord(
                tenant_id=request.tenant_id,
                namespace=tenant_namespace(resource.type, request),
                isolation=request.isolation,
                limits=request.limits,
            )
            params = request.model_dump(include={"database_number", "database_name"}, exclude_none=True)
            async with self._operation(resource, None, "create_tenant"):
                await provider.create_tenant(instance_id, tenant, params)
                resource.tenants[tenant.tenant_id] = tenant
        await self.events.emit(EventType.TENANT_CREATED, resource_id, tenant_id=tenant.tenant_id)
        return tenant

    async def remove_tenant(self, resource_id: str, tenant_id: str, actor_id: str | None = None) -> None:
        async with self._locks.hold(resource_id):
            resource = await self._load(resource_id, actor_id)
            tenant = resource.tenants.get(tenant_id)
            if tenant is None:
                raise NotFoundError("Tenant", tenant_id)
            provider = self._provider(resource.type)
            instance_id = self._instance_id(resource)
            async with self._operation(resource, None, "remove_tenant"):
                await provider.remove_tenant(instance_id, tenant)
                del resource.tenants[tenant_id]
        await self.events.emit(EventType.TENANT_REMOVED, resource_id, tenant_id=tenant_id)

    async def migrate_tenant(
        self, source_id: str, target_id: str, tenant_id: str, actor_id: str | None = None
    ) -> TenantRecord:
        """Move a tenant and its data between two resources of the same type.

        Both resources are ``migrating`` for the duration and end ``running``
        or ``failed``.

        Raises:
            ValidationError: If the resources differ in type or are the same.
            NotFoundError: If either resource or the tenant does not exist.
        """
        if source_id == target_id:
            raise ValidationError("Source and target resources must differ")
        async with self._locks.hold(source_id, target_id):
            source = await self._load(source_id, actor_id)
            target = await self._load(target_id, actor_id)
            if source.type != target.type:
                raise ValidationError(
                    f"Cannot migrate a tenant from {source.type} to {target.type}",
                    {"source_type": source.type, "target_type": target.type},
                )
            tenant = source.tenants.get(tenant_id)
            if tenant is None:
                raise NotFoundError("Tenant", tenant_id)
            if tenant_id in target.tenants:
                raise ValidationError(f"Tenant {tenant_id} already exists on {target_id}")
            provider = self._provider(source.type)
            source_instance = self._instance_id(source)
            target_instance = self._instance_id(target)

            params: dict[str, Any] = {}
            if tenant.isolation == "database" and source.type == "postgres":
                params["database_name"] = tenant.namespace
            async with self._operation(source, ResourceStatus.MIGRATING, "migrate_tenant"):
                async with self._operation(target, ResourceStatus.MIGRATING, "migrate_tenant"):
                    await provider.create_tenant(target_instance, tenant, params)
                    await provider.migrate_tenant(source_instance, target_instance, tenant)
                    target.tenants[tenant_id] = tenant
                await provider.remove_tenant(source_instance, tenant)
                del source.tenants[tenant_id]
        logger.info(f"Tenant {tenant_id} migrated from {source_id} to {target_id}")
        await self.events.emit(EventType.TENANT_MIGRATED, target_id, tenant_id=tenant_id, source_id=source_id)
        return tenant

    # Failover and scheduled maintenance

    async def auto_failover(self, resource_id: str, actor_id: str | None = None) -> ManagedResource:
        async with self._locks.hold(resource_id):
            resource = await self._load(resource_id, actor_id)
            provider = self._provider(resource.type)
            instance_id = self._instance_id(resource)
            async with self._operation(resource, None, "failover"):
                await provider.initiate_failover(instance_id)
        logger.warning(f"Failover completed for {resource_id}")
        return resource

    async def _run_provider_action(
        self, resource_id: str, operation: str, action: Callable[[ResourceProvider, str], Awaitable[Any]]
    ) -> Any:
        async with self._locks.hold(resource_id):
            resource = await self._load(resource_id)
            provider = self._provider(resource.type)
            instance_id = self._instance_id(resource)
            async with self._operation(resource, None, operation):
                result = await action(provider, instance_id)
        return result

    async def run_maintenance(self, resource_id: str, maintenance_type: str = "update") -> str:
        return await self._run_provider_action(
            resource_id, "maintenance", lambda provider, instance: provider.run_maintenance(instance, maintenance_type)
        )

    async def optimize(self, resource_id: str, optimization_type: str = "performance") -> str:
        return await self._run_provider_action(
            resource_id, "optimize", lambda provider, instance: provider.optimize(instance, optimization_type)
        )

    async def archive_backups(self, resource_id: str, older_than_days: int = 90, storage_class: str = "cold") -> int:
        return await self._run_provider_action(
            resource_id,
            "archive_backups",
            lambda provider, instance: provider.archive_backups(instance, older_than_days, storage_class),
        )

    # Health and metrics

    async def health_check(self, resource_id: str) -> HealthStatus:
        """Probe a resource. Provider failures are reported as unhealthy."""
        resource = await self._load(resource_id)
        if not resource.instance_id:
            status = HealthStatus(resource_id=resource_id, status="unhealthy", message="no backing instance")
        else:
            started = time.perf_counter()
            try:
                report = await self._provider(resource.type).check_health(resource.instance_id)
                status = HealthStatus(
                    resource_id=resource_id,
                    status="healthy" if report.healthy else "unhealthy",
                    response_time_ms=(time.perf_counter() - started) * 1000,
                    checks=report.checks,
                    message=report.message,
                )
            except Exception as e:
                logger.warning(f"Health check for {resource_id} failed: {e}")
                status = HealthStatus(resource_id=resource_id, status="unhealthy", message=str(e))

        alerts = resource.config.monitoring is None or resource.config.monitoring.alert_on_unhealthy
        if status.status != "healthy" and alerts:
            await self.events.emit(EventType.HEALTH_ALERT, resource_id, status=status.status, message=status.message)
        return status

    async def get_metrics(self, resource_id: str) -> ResourceMetrics:
        """Collect current metrics for a resource.

        Raises:
            ProviderError: If the provider cannot report metrics.
        """
        resource = await self._load(resource_id)
        instance_id = self._instance_id(resource)
        try:
            raw = await self._provider(resource.type).get_metrics(instance_id)
        except OrchestratorError:
            raise
        except Exception as e:
            raise ProviderError.wrap(e, "get_metrics") from e
        metrics = ResourceMetrics(resource_id=resource_id, **raw.model_dump())
        self._latest_metrics[resource_id] = metrics
        return metrics

    def latest_metrics(self, resource_id: str) -> ResourceMetrics | None:
        return self._latest_metrics.get(resource_id)

    async def get_system_health(self) -> SystemHealth:
        """Check every tracked resource concurrently and classify the system.

        ``healthy`` when nothing is unhealthy, ``unhealthy`` when more than
        half is, ``degraded`` otherwise.
        """
        resources = await self.registry.resources.all()
        results = await asyncio.gather(
            *(self.health_check(resource.id) for resource in resources), return_exceptions=True
        )
        statuses: list[HealthStatus] = []
        for resource, result in zip(resources, results):
            if isinstance(result, BaseException):
                statuses.append(HealthStatus(resource_id=resource.id, status="unhealthy", message=str(result)))
            else:
                statuses.append(result)

        total = len(statuses)
        healthy = sum(1 for s in statuses if s.status == "healthy")
        unhealthy = total - healthy
        times = [s.response_time_ms for s in statuses if s.status == "healthy" and s.response_time_ms is not None]
        if unhealthy == 0:
            state = "healthy"
        elif unhealthy / total > 0.5:
            state = "unhealthy"
        else:
            state = "degraded"
        return SystemHealth(
            status=state,
            total=total,
            healthy=healthy,
            unhealthy=unhealthy,
            average_response_time_ms=sum(times) / len(times) if times else 0.0,
            resources=statuses,
        )

    # Visibility

    async def get_resource(self, resource_id: str, actor_id: str | None = None) -> ManagedResource:
        return await self._load(resource_id, actor_id)

    async def list_resources(self, **filters: Any) -> list[ManagedResource]:
        return await self.registry.resources.find(**filters)

    async def resource_exists(self, resource_id: str) -> bool:
        return await self.registry.resources.get(resource_id) is not None

    # Background sweeps

    async def _running_resources(self) -> list[ManagedResource]:
        return await self.registry.resources.find(status=ResourceStatus.RUNNING)

    async def health_sweep(self) -> list[HealthStatus]:
        results = []
        for resource in await self._running_resources():
            results.append(await self.health_check(resource.id))
        unhealthy = [s.resource_id for s in results if s.status != "healthy"]
        if unhealthy:
            logger.warning(f"Health sweep found {len(unhealthy)} non-healthy resources: {unhealthy}")
        return results

    async def metrics_sweep(self) -> int:
        collected = 0
        for resource in await self._running_resources():
            try:
                await self.get_metrics(resource.id)
                collected += 1
            except Exception as e:
                logger.warning(f"Metrics collection failed for {resource.id}: {e}")
        return collected

    async def cleanup_sweep(self) -> ResourceCleanupReport:
        """Remove resources whose backing instance no longer exists."""
        report = ResourceCleanupReport()
        for resource in await self.registry.resources.all():
            if not resource.instance_id or resource.status not in (ResourceStatus.RUNNING, ResourceStatus.FAILED):
                continue
            try:
                if await self._provider(resource.type).instance_exists(resource.instance_id):
                    continue
                async with self._locks.hold(resource.id):
                    if self.scheduler is not None:
                        await self.scheduler.cancel_all_for_resource(resource.id)
                    await self.registry.resources.delete(resource.id)
                self._latest_metrics.pop(resource.id, None)
                report.removed.append(resource.id)
                logger.info(f"Removed stale resource {resource.id}, instance {resource.instance_id} is gone")
                await self.events.emit(EventType.RESOURCE_DESTROYED, resource.id, reason="instance_missing")
            except Exception as e:
                logger.error(f"Cleanup of resource {resource.id} failed: {e}")
                report.errors[resource.id] = str(e)
        return report

    async def _periodic(self, name: str, interval: float, sweep: Callable[[], Awaitable[Any]]) -> None:
        logger.info(f"{name} started (every {interval:g}s)")
        try:
            while True:
                await asyncio.sleep(interval)
                try:
                    await sweep()
                except Exception as e:
                    logger.error(f"{name} failed: {e}")
        except asyncio.CancelledError:
            logger.info(f"{name} cancelled")

    async def start(self) -> None:
        """Start the health, metrics and cleanup sweeps."""
        if self._loops:
            return
        self._loops = [
            asyncio.create_task(self._periodic("Health sweep", self.config.health_check_interval, self.health_sweep)),
            asyncio.create_task(self._periodic("Metrics sweep", self.config.metrics_interval, self.metrics_sweep)),
            asyncio.create_task(
                self._periodic("Resource cleanup sweep", self.config.resource_cleanup_interval, self.cleanup_sweep)
            ),
        ]

    async def shutdown(self) -> None:
        for loop in self._loops:
            loop.cancel()
        await asyncio.gather(*self._loops, return_exceptions=True)
        self._loops = []
        logger.info("Resource orchestrator stopped")


def _backup_task_config(policy: BackupPolicy) -> dict[str, Any]:
    return {
        "backup_type": policy.type,
        "compression": policy.compression,
        "encryption": policy.encryption,
        "retention_days": policy.retention_days,
    }
