from collections.abc import AsyncGenerator
from datetime import datetime, timezone
from typing import Any, Generator
from unittest.mock import AsyncMock, MagicMock, patch

import pytest
import pytest_asyncio
from coreason_orchestrator.config import OrchestratorConfig
from coreason_orchestrator.events import Event, EventBus
from coreason_orchestrator.models import ConnectionInfo, ResourceConfig, TenantRecord
from coreason_orchestrator.providers.resource import (
    BackupArtifact,
    HealthReport,
    InstanceMetrics,
    ProvisionedInstance,
    ResourceProvider,
)
from coreason_orchestrator.providers.sandbox import CommandResult, SandboxInfo, SandboxProvider, SandboxSession
from coreason_orchestrator.registry import MemoryRegistry


class FakeSession(SandboxSession):
    """In-memory sandbox session.

    ``results`` maps a command substring to the CommandResult (or exception)
    returned for any command containing it.
    """

    def __init__(self, sandbox_id: str, metadata: dict[str, str] | None = None):
        self._id = sandbox_id
        self.metadata = metadata or {}
        self.files: dict[str, str | bytes] = {}
        self.commands: list[str] = []
        self.results: dict[str, CommandResult | Exception] = {}
        self.env: dict[str, str] = {}
        self.status = "running"
        self.killed = False
        self.kill_error: Exception | None = None

    @property
    def sandbox_id(self) -> str:
        return self._id

    async def initialize(self, env: dict[str, str], timeout: float | None = None) -> None:
        self.env.update(env)

    async def write_file(self, path: str, content: str | bytes) -> None:
        self.files[path] = content

    async def read_file(self, path: str) -> bytes:
        content = self.files[path]
        return content.encode() if isinstance(content, str) else content

    async def run_command(
        self,
        command: str,
        *,
        cwd: str | None = None,
        background: bool = False,
        timeout: float | None = None,
    ) -> CommandResult:
        self.commands.append(command)
        for needle, outcome in self.results.items():
            if needle in command:
                if isinstance(outcome, Exception):
                    raise outcome
                return outcome
        return CommandResult()

    def get_host(self, port: int) -> str:
        return f"{port}-{self._id}.sandbox.test"

    async def get_info(self) -> SandboxInfo:
        return SandboxInfo(sandbox_id=self._id, status=self.status, metadata=self.metadata)

    async def kill(self) -> None:
        if self.kill_error is not None:
            raise self.kill_error
        self.killed = True
        self.status = "stopped"


class FakeSandboxProvider(SandboxProvider):
    def __init__(self) -> None:
        self.sessions: dict[str, FakeSession] = {}
        self.created = 0
        self.create_error: Exception | None = None
        # Applied to every new session before it is returned
        self.default_results: dict[str, CommandResult | Exception] = {}

    async def create(
        self,
        template: str,
        metadata: dict[str, str] | None = None,
        timeout: float | None = None,
    ) -> SandboxSession:
        if self.create_error is not None:
            raise self.create_error
        self.created += 1
        session = FakeSession(f"sbx-{self.created}", metadata)
        session.results.update(self.default_results)
        self.sessions[session.sandbox_id] = session
        return session

    def live(self) -> list[FakeSession]:
        # Defined before the list method, which shadows the builtin in this class body
        return [session for session in self.sessions.values() if not session.killed]

    async def list(self) -> list[SandboxInfo]:
        return [
            SandboxInfo(
                sandbox_id=session.sandbox_id,
                started_at=datetime.now(timezone.utc),
                metadata=session.metadata,
            )
            for session in self.sessions.values()
            if not session.killed
        ]

    async def connect(self, sandbox_id: str) -> SandboxSession:
        session = self.sessions.get(sandbox_id)
        if session is None or session.killed:
            raise ConnectionError(f"sandbox {sandbox_id} not found")
        return session


class FakeResourceProvider(ResourceProvider):
    """Records calls; ``failures`` maps a method name to the exception it raises."""

    resource_type = "redis"

    def __init__(self, resource_type: str = "redis"):
        self.resource_type = resource_type
        self.failures: dict[str, Exception] = {}
        self.calls: list[tuple[str, tuple[Any, ...]]] = []
        self.instances: set[str] = set()
        self.healthy = True
        self.unhealthy: set[str] = set()
        self.metrics = InstanceMetrics(cpu_utilization=0.5, memory_utilization=0.5)
        self._counter = 0

    def _call(self, name: str, *args: Any) -> None:
        self.calls.append((name, args))
        if name in self.failures:
            raise self.failures[name]

    def called(self, name: str) -> list[tuple[Any, ...]]:
        return [args for call, args in self.calls if call == name]

    async def deploy_template(self, resource_id: str, config: ResourceConfig) -> ProvisionedInstance:
        self._call("deploy_template", resource_id, config)
        self._counter += 1
        instance_id = f"{self.resource_type}-{self._counter}"
        self.instances.add(instance_id)
        return ProvisionedInstance(
            instance_id=instance_id,
            connection=ConnectionInfo(host="db.test", port=6379, url="redis://db.test:6379/0"),
        )

    async def scale_instance(self, instance_id: str, replicas: int, config: ResourceConfig) -> None:
        self._call("scale_instance", instance_id, replicas)

    async def destroy_instance(self, instance_id: str) -> None:
        self._call("destroy_instance", instance_id)
        self.instances.discard(instance_id)

    async def instance_exists(self, instance_id: str) -> bool:
        self._call("instance_exists", instance_id)
        return instance_id in self.instances

    async def create_backup(self, instance_id: str, backup_type: str = "full") -> BackupArtifact:
        self._call("create_backup", instance_id, backup_type)
        return BackupArtifact(backup_id=f"{backup_type}-1", size_bytes=2048)

    async def restore_from_backup(self, instance_id: str, backup_id: str) -> None:
        self._call("restore_from_backup", instance_id, backup_id)

    async def check_health(self, instance_id: str) -> HealthReport:
        self._call("check_health", instance_id)
        healthy = self.healthy and instance_id not in self.unhealthy
        return HealthReport(healthy=healthy, checks={"engine": healthy})

    async def get_metrics(self, instance_id: str) -> InstanceMetrics:
        self._call("get_metrics", instance_id)
        return self.metrics

    async def create_tenant(self, instance_id: str, tenant: TenantRecord, params: dict[str, Any]) -> None:
        self._call("create_tenant", instance_id, tenant, params)

    async def remove_tenant(self, instance_id: str, tenant: TenantRecord) -> None:
        self._call("remove_tenant", instance_id, tenant)

    async def migrate_tenant(self, source_instance_id: str, target_instance_id: str, tenant: TenantRecord) -> None:
        self._call("migrate_tenant", source_instance_id, target_instance_id, tenant)

    async def initiate_failover(self, instance_id: str) -> None:
        self._call("initiate_failover", instance_id)

    async def run_maintenance(self, instance_id: str, maintenance_type: str) -> str:
        self._call("run_maintenance", instance_id, maintenance_type)
        return f"{maintenance_type} done"

    async def optimize(self, instance_id: str, optimization_type: str) -> str:
        self._call("optimize", instance_id, optimization_type)
        return f"{optimization_type} done"

    async def archive_backups(self, instance_id: str, older_than_days: int, storage_class: str) -> int:
        self._call("archive_backups", instance_id, older_than_days, storage_class)
        return 2


@pytest.fixture
def config() -> OrchestratorConfig:
    return OrchestratorConfig(
        max_sandboxes_per_user=2,
        enable_audit_logging=False,
        retry_base_delay=1.0,
        retry_max_delay=30.0,
        task_retry_backoff=60.0,
    )


@pytest.fixture
def registry() -> MemoryRegistry:
    return MemoryRegistry()


@pytest.fixture
def events() -> EventBus:
    return EventBus()


@pytest.fixture
def recorded_events(events: EventBus) -> list[Event]:
    received: list[Event] = []
    events.subscribe(received.append)
    return received


@pytest.fixture
def sandbox_provider() -> FakeSandboxProvider:
    return FakeSandboxProvider()


@pytest.fixture
def resource_provider() -> FakeResourceProvider:
    return FakeResourceProvider("redis")


@pytest.fixture
def mock_scheduler() -> MagicMock:
    scheduler = MagicMock()
    task = MagicMock()
    task.next_run = datetime(2030, 1, 1, 2, 0, tzinfo=timezone.utc)
    scheduler.schedule_backup = AsyncMock(return_value=task)
    scheduler.schedule_scaling = AsyncMock(return_value=task)
    scheduler.cancel_all_for_resource = AsyncMock(return_value=0)
    scheduler.cancel_backup_schedule = AsyncMock(return_value=0)
    scheduler.cancel_task = AsyncMock()
    scheduler.get_scheduled_tasks = AsyncMock(return_value=[])
    return scheduler


@pytest.fixture
def mock_vault_integrator() -> Generator[Any, None, None]:
    with patch("coreason_orchestrator.config.VaultIntegrator") as mock:
        mock.return_value.get_secret.return_value = None
        yield mock


@pytest_asyncio.fixture
async def started_scheduler_cleanup() -> AsyncGenerator[list[Any], None]:
    """Collects schedulers started by a test and shuts them down afterwards."""
    started: list[Any] = []
    yield started
    for scheduler in started:
        await scheduler.shutdown()
