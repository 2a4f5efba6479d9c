# Copyright (c) 2025 CoReason, Inc.
#
# This software is proprietary and dual-licensed.
# Licensed under the Prosperity Public License 3.0 (the "License").
# A copy of the license is available at https://prosperitylicense.com/versions/3.0.0
# For details, see the LICENSE file.
# Commercial use beyond a 30-day trial requires a separate license.
#
# Source Code: https://github.com/CoReason-AI/coreason_orchestrator

from typing import Any

from coreason_orchestrator.errors import NotFoundError
from coreason_orchestrator.models import DeploymentStatus
from coreason_orchestrator.orchestrator import ResourceOrchestrator
from coreason_orchestrator.sandbox_manager import SandboxLifecycleManager


class ControlPlaneActions:
    """Routes scheduled task work to the component that owns the target.

    Managed resources are handled by the orchestrator; deployment ids are
    accepted for time-to-live destruction and go to the sandbox manager.
    """

    def __init__(self, orchestrator: ResourceOrchestrator, sandboxes: SandboxLifecycleManager | None = None):
        self.orchestrator = orchestrator
        self.sandboxes = sandboxes

    async def _is_deployment(self, resource_id: str) -> bool:
        if self.sandboxes is None:
            return False
        record = await self.sandboxes.registry.deployments.get(resource_id)
        return record is not None and record.status != DeploymentStatus.DESTROYED

    async def resource_exists(self, resource_id: str) -> bool:
        if await self.orchestrator.resource_exists(resource_id):
            return True
        return await self._is_deployment(resource_id)

    async def backup(self, resource_id: str, config: dict[str, Any]) -> str:
        info = await self.orchestrator.backup(resource_id, config.get("backup_type", "full"))
        return f"backup {info.id} ({info.size_bytes} bytes)"

    async def maintain(self, resource_id: str, config: dict[str, Any]) -> str:
        return await self.orchestrator.run_maintenance(resource_id, config.get("maintenance_type", "update"))

    async def scale(self, resource_id: str, config: dict[str, Any]) -> str:
        target = config.get("target_replicas")
        if target is None:
            return await self.orchestrator.evaluate_autoscale(resource_id)
        resource = await self.orchestrator.scale(resource_id, int(target))
        return f"scaled to {resource.replicas} replicas"

    async def optimize(self, resource_id: str, config: dict[str, Any]) -> str:
        return await self.orchestrator.optimize(resource_id, config.get("optimization_type", "performance"))

    async def archive(self, resource_id: str, config: dict[str, Any]) -> str:
        moved = await self.orchestrator.archive_backups(
            resource_id,
            int(config.get("age_threshold_days", 90)),
            config.get("storage_class", "cold"),
        )
        return f"archived {moved} backups"

    async def destroy(self, resource_id: str) -> str:
        if await self.orchestrator.resource_exists(resource_id):
            await self.orchestrator.destroy(resource_id)
            return f"resource {resource_id} destroyed"
        if await self._is_deployment(resource_id):
            assert self.sandboxes is not None
            await self.sandboxes.cancel(resource_id)
            return f"deployment {resource_id} destroyed"
        raise NotFoundError("Resource", resource_id)
