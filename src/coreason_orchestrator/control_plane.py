# Copyright (c) 2025 CoReason, Inc.
#
# This software is proprietary and dual-licensed.
# Licensed under the Prosperity Public License 3.0 (the "License").
# A copy of the license is available at https://prosperitylicense.com/versions/3.0.0
# For details, see the LICENSE file.
# Commercial use beyond a 30-day trial requires a separate license.
#
# Source Code: https://github.com/CoReason-AI/coreason_orchestrator

from loguru import logger

from coreason_orchestrator.actions import ControlPlaneActions
from coreason_orchestrator.config import OrchestratorConfig
from coreason_orchestrator.events import EventBus
from coreason_orchestrator.factory import ControlPlaneFactory
from coreason_orchestrator.integrations.audit import AuditIntegrator
from coreason_orchestrator.orchestrator import ResourceOrchestrator
from coreason_orchestrator.providers.resource import ResourceProvider
from coreason_orchestrator.providers.sandbox import SandboxProvider
from coreason_orchestrator.registry import Registry
from coreason_orchestrator.sandbox_manager import SandboxLifecycleManager
from coreason_orchestrator.scheduler import TaskScheduler


class ControlPlane:
    """Owns and wires the three control-plane components.

    All components share one registry and one event bus. The scheduler reaches
    resources only through ``ControlPlaneActions``, and the orchestrator reaches
    the scheduler only to wire backup and autoscale policies.
    """

    def __init__(
        self,
        config: OrchestratorConfig | None = None,
        registry: Registry | None = None,
        sandbox_provider: SandboxProvider | None = None,
        resource_providers: dict[str, ResourceProvider] | None = None,
    ):
        self.config = config or OrchestratorConfig()
        self.registry = registry or ControlPlaneFactory.get_registry(self.config)
        self.events = EventBus()
        self.audit = AuditIntegrator(enabled=self.config.enable_audit_logging)
        self.audit.attach(self.events)

        sandbox_provider = sandbox_provider or ControlPlaneFactory.get_sandbox_provider(self.config)
        if resource_providers is None:
            resource_providers = ControlPlaneFactory.get_resource_providers(self.config, sandbox_provider)

        self.sandboxes = SandboxLifecycleManager(sandbox_provider, self.registry, self.config, self.events)
        self.orchestrator = ResourceOrchestrator(self.registry, resource_providers, self.config, self.events)
        self.actions = ControlPlaneActions(self.orchestrator, self.sandboxes)
        self.scheduler = TaskScheduler(self.actions, self.registry, self.config, self.events)
        self.orchestrator.scheduler = self.scheduler

    async def start(self) -> None:
        logger.info("Starting control plane")
        await self.registry.connect()
        await self.sandboxes.start()
        await self.scheduler.start()
        await self.orchestrator.start()
        logger.info("Control plane started")

    async def shutdown(self, terminate_sandboxes: bool = False) -> None:
        logger.info("Stopping control plane")
        await self.orchestrator.shutdown()
        await self.scheduler.shutdown()
        await self.sandboxes.shutdown(terminate_sandboxes=terminate_sandboxes)
        await self.registry.close()
        logger.info("Control plane stopped")
