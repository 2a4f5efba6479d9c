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
import posixpath
import time
from dataclasses import dataclass, field

import httpx
from loguru import logger

from coreason_orchestrator.config import OrchestratorConfig
from coreason_orchestrator.errors import (
    AccessDeniedError,
    InvalidTransitionError,
    NotFoundError,
    ProviderError,
    ProviderErrorCategory,
    QuotaExceededError,
    SandboxDeploymentError,
    ValidationError,
)
from coreason_orchestrator.events import EventBus, EventType
from coreason_orchestrator.locks import KeyedLock
from coreason_orchestrator.models import (
    CleanupPolicy,
    CleanupReport,
    DeploymentRecord,
    DeploymentStatus,
    DeployOptions,
    DeployResult,
    ErrorDecision,
    MonitorReport,
    ProjectFile,
)
from coreason_orchestrator.models.sandbox import CleanupDetail, CleanupReason, ErrorCategory
from coreason_orchestrator.providers.sandbox import SandboxInfo, SandboxProvider, SandboxSession
from coreason_orchestrator.registry import Registry

LOG_TAIL_LINES = 50

FATAL_ERRORS = (
    ValidationError,
    QuotaExceededError,
    AccessDeniedError,
    NotFoundError,
    InvalidTransitionError,
)


@dataclass
class SandboxHandle:
    session: SandboxSession
    user_id: str
    created_at: float
    last_activity: float
    project_id: str | None = None
    deployment_id: str | None = None
    host: str | None = None
    lock: asyncio.Lock = field(default_factory=asyncio.Lock)

    @property
    def sandbox_id(self) -> str:
        return self.session.sandbox_id


def classify_error(error: BaseException) -> ErrorCategory:
    """Map an exception onto the error family used for retry decisions."""
    if isinstance(error, FATAL_ERRORS):
        return "validation"
    if isinstance(error, ProviderError) and error.category != "unknown":
        return error.category
    if isinstance(error, (TimeoutError, asyncio.TimeoutError, httpx.TimeoutException)):
        return "timeout"
    if isinstance(error, (httpx.TransportError, ConnectionError)):
        return "network"

    message = str(error).lower()
    if "timeout" in message or "timed out" in message:
        return "timeout"
    if any(word in message for word in ("network", "connection", "econnrefused", "dns")):
        return "network"
    if any(word in message for word in ("memory", "disk", "quota", "resource")):
        return "resource"
    if "sandbox" in message:
        return "sandbox"
    return "unknown"


def _validate_files(files: list[ProjectFile]) -> None:
    if not files:
        raise ValidationError("At least one file is required to deploy")
    for item in files:
        normalized = posixpath.normpath(item.path)
        if item.path.startswith("/") or normalized == ".." or normalized.startswith("../"):
            raise ValidationError(f"File path must stay inside the application directory: {item.path}")


class SandboxLifecycleManager:
    """Manages the lifecycle of deployment sandboxes.

    Owns every live sandbox handle, enforces the per-user concurrency limit,
    deploys code, monitors it, and reclaims idle, expired, failed or orphaned
    sandboxes through a background reaper task.
    """

    def __init__(
        self,
        provider: SandboxProvider,
        registry: Registry,
        config: OrchestratorConfig | None = None,
        events: EventBus | None = None,
    ):
        """Initializes the SandboxLifecycleManager.

        Args:
            provider: The sandbox provider sandboxes are created with.
            registry: Registry holding deployment records.
            config: Optional configuration object. If not provided, defaults are used.
            events: Event bus for lifecycle notifications.
        """
        self.provider = provider
        self.registry = registry
        self.config = config or OrchestratorConfig()
        self.events = events or EventBus()
        self.handles: dict[str, SandboxHandle] = {}
        self._user_locks = KeyedLock()
        self._creation_lock = asyncio.Lock()
        self._reaper_task: asyncio.Task[None] | None = None

    def default_policy(self) -> CleanupPolicy:
        return CleanupPolicy(max_idle=self.config.sandbox_max_idle, max_age=self.config.sandbox_max_age)

    def handles_for_user(self, user_id: str) -> list[SandboxHandle]:
        return [handle for handle in self.handles.values() if handle.user_id == user_id]

    def touch(self, sandbox_id: str) -> None:
        """Record user activity on a sandbox."""
        handle = self.handles.get(sandbox_id)
        if handle:
            handle.last_activity = time.time()

    async def list_active(self) -> list[SandboxInfo]:
        """Query the provider for all live sandboxes.

        Returns:
            list[SandboxInfo]: Live sandboxes, or an empty list if the provider
            cannot be reached.
        """
        try:
            return await self.provider.list()
        except Exception as e:
            logger.error(f"Failed to list active sandboxes: {e}")
            return []

    async def find_for_user(self, user_id: str, project_id: str | None = None) -> SandboxHandle | None:
        """Return the most recently active live sandbox of a user.

        Tracked handles are preferred; otherwise live provider sandboxes
        labelled with the user (and project) are reconnected and tracked.

        Args:
            user_id: Owner to search for.
            project_id: Optional project scope.

        Returns:
            SandboxHandle | None: The handle, or ``None`` when there is none.
        """
        tracked = [
            handle
            for handle in self.handles_for_user(user_id)
            if project_id is None or handle.project_id == project_id
        ]
        if tracked:
            handle = max(tracked, key=lambda h: h.last_activity)
            handle.last_activity = time.time()
            return handle

        live = [
            info
            for info in await self.list_active()
            if info.metadata.get("user_id") == user_id
            and (project_id is None or info.metadata.get("project_id") == project_id)
        ]
        if not live:
            return None
        newest = max(live, key=lambda info: info.started_at.timestamp() if info.started_at else 0.0)
        return await self._adopt(newest)

    async def _adopt(self, info: SandboxInfo) -> SandboxHandle | None:
        """Start tracking a live sandbox that has no handle yet."""
        async with self._creation_lock:
            # Double-check inside lock
            if info.sandbox_id in self.handles:
                return self.handles[info.sandbox_id]
            try:
                session = await self.provider.connect(info.sandbox_id)
            except Exception as e:
                logger.warning(f"Could not reconnect to sandbox {info.sandbox_id}: {e}")
                return None
            now = time.time()
            handle = SandboxHandle(
                session=session,
                user_id=info.metadata.get("user_id", ""),
                project_id=info.metadata.get("project_id"),
                deployment_id=info.metadata.get("deployment_id"),
                created_at=info.started_at.timestamp() if info.started_at else now,
                last_activity=now,
            )
            self.handles[info.sandbox_id] = handle
            return handle

    async def resync(self) -> int:
        """Track every live provider sandbox created by this control plane.

        Returns:
            int: Number of sandboxes adopted.
        """
        adopted = 0
        for info in await self.list_active():
            if "deployment_id" not in info.metadata or info.sandbox_id in self.handles:
                continue
            if await self._adopt(info):
                adopted += 1
        if adopted:
            logger.info(f"Resynced {adopted} live sandboxes from the provider")
        return adopted

    async def _save(self, record: DeploymentRecord, status: DeploymentStatus, error: str | None = None) -> None:
        record.transition(status, error)
        await self.registry.deployments.save(record)
        await self.events.emit(
            EventType.DEPLOYMENT_STATUS_CHANGED,
            record.id,
            status=status.value,
            user_id=record.user_id,
            error=error,
        )

    async def _retire(self, record: DeploymentRecord) -> None:
        """Walk a record through the states leading to ``destroyed``."""
        if record.status == DeploymentStatus.DESTROYED:
            return
        if record.status in (DeploymentStatus.RUNNING, DeploymentStatus.RESTARTING):
            await self._save(record, DeploymentStatus.STOPPING)
        if record.status == DeploymentStatus.STOPPING:
            await self._save(record, DeploymentStatus.STOPPED)
        await self._save(record, DeploymentStatus.DESTROYED)

    async def _terminate(self, handle: SandboxHandle, reason: CleanupReason) -> None:
        """Kill a sandbox, drop its handle and retire its deployment record.

        Raises:
            Exception: Whatever the provider raised; the handle is kept so a
            later sweep can retry.
        """
        async with handle.lock:
            await handle.session.kill()
        self.handles.pop(handle.sandbox_id, None)
        logger.info(f"Terminated sandbox {handle.sandbox_id} ({reason})")
        await self.events.emit(
            EventType.SANDBOX_RECLAIMED,
            handle.deployment_id or handle.sandbox_id,
            sandbox_id=handle.sandbox_id,
            user_id=handle.user_id,
            reason=reason,
        )
        if handle.deployment_id:
            record = await self.registry.deployments.get(handle.deployment_id)
            if record:
                await self._retire(record)

    async def _enforce_quota(self, user_id: str) -> None:
        """Reclaim the user's least recently active sandbox while at the limit."""
        while len(self.handles_for_user(user_id)) >= self.config.max_sandboxes_per_user:
            lru = min(self.handles_for_user(user_id), key=lambda h: h.last_activity)
            logger.info(
                f"User {user_id} reached {self.config.max_sandboxes_per_user} sandboxes; "
                f"reclaiming least recently used {lru.sandbox_id}"
            )
            try:
                await self._terminate(lru, "user_limit_exceeded")
            except Exception as e:
                raise QuotaExceededError(
                    f"User {user_id} is at the sandbox limit and {lru.sandbox_id} could not be reclaimed: {e}",
                    {"user_id": user_id, "limit": self.config.max_sandboxes_per_user},
                ) from e

    async def deploy(
        self, user_id: str, files: list[ProjectFile], options: DeployOptions | None = None
    ) -> DeployResult:
        """Deploy user code into a fresh sandbox.

        Enforces the concurrent-sandbox quota, creates the sandbox, writes the
        files, runs the install and start steps and exposes the application port.

        Args:
            user_id: The deploying user.
            files: Files to write, relative to the application directory.
            options: Per-deployment overrides.

        Returns:
            DeployResult: Running deployment with its public URL.

        Raises:
            ValidationError: If the user id or files are invalid.
            QuotaExceededError: If the quota cannot be restored.
            SandboxDeploymentError: If any deploy step fails. The sandbox is
                killed and the deployment record marked failed.
        """
        if not user_id:
            raise ValidationError("User ID is required")
        _validate_files(files)
        options = options or DeployOptions()

        async with self._user_locks.hold(user_id):
            await self._enforce_quota(user_id)

            record = DeploymentRecord(user_id=user_id, project_id=options.project_id, runtime=options.runtime)
            await self.registry.deployments.save(record)
            logger.info("Deploying sandbox application", user_id=user_id, deployment_id=record.id)

            session: SandboxSession | None = None
            stage = "provision"
            try:
                await self._save(record, DeploymentStatus.PROVISIONING)
                metadata = {"user_id": user_id, "deployment_id": record.id}
                if options.project_id:
                    metadata["project_id"] = options.project_id
                session = await self.provider.create(
                    options.template or self.config.sandbox_template,
                    metadata=metadata,
                    timeout=self.config.sandbox_timeout,
                )
                now = time.time()
                self.handles[session.sandbox_id] = SandboxHandle(
                    session=session,
                    user_id=user_id,
                    project_id=options.project_id,
                    deployment_id=record.id,
                    created_at=now,
                    last_activity=now,
                )
                record.sandbox_id = session.sandbox_id
                await self.registry.deployments.save(record)
                await self.events.emit(EventType.SANDBOX_CREATED, record.id, sandbox_id=session.sandbox_id)
                await session.initialize(options.env, timeout=self.config.sandbox_timeout)

                stage = "write_files"
                for item in files:
                    await session.write_file(posixpath.join(self.config.app_dir, item.path), item.content)

                stage = "install"
                install = self.config.install_command if options.install_command is None else options.install_command
                if install:
                    result = await session.run_command(
                        install, cwd=self.config.app_dir, timeout=self.config.command_timeout
                    )
                    if not result.ok:
                        raise SandboxDeploymentError(
                            f"Install step failed (exit {result.exit_code}): {result.stderr.strip()[-500:]}",
                            stage=stage,
                        )

                stage = "start"
                start = options.start_command or self.config.start_command
                await session.run_command(
                    f"{start} > {self.config.app_log_path} 2>&1",
                    cwd=self.config.app_dir,
                    background=True,
                )

                stage = "expose"
                host = session.get_host(options.port or self.config.app_port)
                self.handles[session.sandbox_id].host = host
                record.url = f"https://{host}"
                await self._save(record, DeploymentStatus.RUNNING)
            except Exception as e:
                await self._abort_deploy(record, session, stage, e)
                if isinstance(e, SandboxDeploymentError):
                    raise
                raise SandboxDeploymentError(
                    f"Deployment {record.id} failed during {stage}: {e}",
                    stage=stage,
                    category=_provider_category(classify_error(e)),
                ) from e

        logger.info(f"Deployment {record.id} running at {record.url}")
        return DeployResult(
            deployment_id=record.id,
            sandbox_id=record.sandbox_id or "",
            status=record.status,
            url=record.url or "",
        )

    async def _abort_deploy(
        self,
        record: DeploymentRecord,
        session: SandboxSession | None,
        stage: str,
        error: BaseException,
    ) -> None:
        logger.error(f"Deployment {record.id} failed during {stage}: {error}")
        if session is not None:
            self.handles.pop(session.sandbox_id, None)
            try:
                await session.kill()
            except Exception as e:
                logger.error(f"Error killing sandbox {session.sandbox_id} after failed deploy: {e}")
        if record.can_transition(DeploymentStatus.FAILED):
            await self._save(record, DeploymentStatus.FAILED, f"{stage}: {error}")

    async def _get_record(self, deployment_id: str) -> DeploymentRecord:
        record = await self.registry.deployments.get(deployment_id)
        if record is None:
            raise NotFoundError("Deployment", deployment_id)
        return record

    async def monitor(self, deployment_id: str) -> MonitorReport:
        """Report the status, health, uptime and recent logs of a deployment.

        Raises:
            NotFoundError: If the deployment record does not exist.
        """
        record = await self._get_record(deployment_id)
        handle = self.handles.get(record.sandbox_id) if record.sandbox_id else None
        report = MonitorReport(
            deployment_id=record.id,
            status=record.status,
            health="unhealthy",
            url=record.url,
        )
        if handle is None or record.status != DeploymentStatus.RUNNING:
            return report

        healthy = False
        try:
            info = await handle.session.get_info()
            healthy = info.status == "running"
        except Exception as e:
            logger.warning(f"Failed to inspect sandbox {handle.sandbox_id}: {e}")
        if healthy and self.config.health_check_path and record.url:
            healthy = await self._probe(record.url + self.config.health_check_path)

        report.health = "healthy" if healthy else "unhealthy"
        report.metrics = {"uptime_seconds": round(time.time() - handle.created_at, 3)}
        try:
            tail = await handle.session.run_command(
                f"tail -n {LOG_TAIL_LINES} {self.config.app_log_path}", timeout=30
            )
            report.logs = tail.stdout.splitlines()
        except Exception as e:
            logger.warning(f"Failed to read logs of sandbox {handle.sandbox_id}: {e}")
        return report

    async def _probe(self, url: str) -> bool:
        try:
            async with httpx.AsyncClient(timeout=5.0, follow_redirects=True) as client:
                response = await client.get(url)
            return response.is_success
        except httpx.HTTPError as e:
            logger.debug(f"Health probe to {url} failed: {e}")
            return False

    async def _cleanup_reason(self, handle: SandboxHandle, policy: CleanupPolicy, now: float) -> CleanupReason | None:
        if policy.force:
            return "forced"
        if policy.max_age is not None and now - handle.created_at > policy.max_age:
            return "max_age_exceeded"
        if policy.max_idle is not None and now - handle.last_activity > policy.max_idle:
            return "idle_timeout"
        if not (policy.include_orphaned or policy.include_failed):
            return None

        if handle.deployment_id is None:
            return "orphaned" if policy.include_orphaned else None
        try:
            record = await self.registry.deployments.get(handle.deployment_id)
        except Exception as e:
            logger.warning(f"Skipping metadata checks for {handle.sandbox_id}, registry read failed: {e}")
            return None
        if record is None:
            return "orphaned" if policy.include_orphaned else None
        if record.status == DeploymentStatus.FAILED and policy.include_failed:
            return "deployment_failed"
        return None

    async def cleanup(self, policy: CleanupPolicy | None = None) -> CleanupReport:
        """Terminate every tracked sandbox matching the policy.

        Each termination is independent; failures are recorded in the report
        and do not stop the scan.

        Args:
            policy: Which sandboxes to reclaim. Defaults to the configured
                max-idle and max-age limits.

        Returns:
            CleanupReport: Counts and per-sandbox reasons.
        """
        policy = policy or self.default_policy()
        report = CleanupReport()
        now = time.time()

        # Snapshot to allow modification while iterating
        for handle in list(self.handles.values()):
            reason = await self._cleanup_reason(handle, policy, now)
            if reason is None:
                continue
            try:
                await self._terminate(handle, reason)
                report.cleaned += 1
                report.details.append(CleanupDetail(sandbox_id=handle.sandbox_id, reason=reason, success=True))
            except Exception as e:
                logger.error(f"Error terminating sandbox {handle.sandbox_id}: {e}")
                report.failed += 1
                report.details.append(
                    CleanupDetail(sandbox_id=handle.sandbox_id, reason=reason, success=False, error=str(e))
                )

        if report.cleaned or report.failed:
            logger.info(f"Sandbox cleanup: {report.cleaned} terminated, {report.failed} failed")
        return report

    async def handle_error(
        self,
        deployment_id: str,
        error: BaseException,
        stage: str,
        retry_count: int = 0,
        max_retries: int | None = None,
    ) -> ErrorDecision:
        """Decide whether a failed deployment step should be retried.

        Args:
            deployment_id: Deployment the error belongs to.
            error: The failure.
            stage: Deploy stage that failed.
            retry_count: Retries already attempted.
            max_retries: Retry ceiling. Defaults to the configured value.

        Returns:
            ErrorDecision: ``retry`` with a delay, or ``abort``.
        """
        max_retries = self.config.max_retries if max_retries is None else max_retries
        category = classify_error(error)
        fatal = category == "validation" or (isinstance(error, ProviderError) and not error.retryable)

        if fatal or retry_count >= max_retries:
            reason = "not recoverable" if fatal else f"retry limit {max_retries} reached"
            logger.error(f"Aborting deployment {deployment_id} at {stage}: {reason} ({error})")
            await self._mark_failed(deployment_id, f"{stage}: {error}")
            return ErrorDecision(action="abort", category=category, retry_count=retry_count, reason=reason)

        delay = min(self.config.retry_base_delay * 2**retry_count, self.config.retry_max_delay)
        if category == "network":
            delay *= 2
        logger.warning(
            f"Retrying deployment {deployment_id} at {stage} in {delay}s "
            f"(attempt {retry_count + 1}/{max_retries}, {category})"
        )
        return ErrorDecision(
            action="retry", category=category, delay=delay, retry_count=retry_count, reason=f"{category} error"
        )

    async def _mark_failed(self, deployment_id: str, error: str) -> None:
        try:
            record = await self.registry.deployments.get(deployment_id)
        except Exception as e:
            logger.error(f"Could not load deployment {deployment_id} to mark it failed: {e}")
            return
        if record and record.can_transition(DeploymentStatus.FAILED):
            await self._save(record, DeploymentStatus.FAILED, error)

    async def restart(self, deployment_id: str, start_command: str | None = None) -> DeploymentRecord:
        """Restart the application process of a running deployment.

        Raises:
            NotFoundError: If the deployment record or its sandbox is missing.
            InvalidTransitionError: If the deployment is not running.
            SandboxDeploymentError: If the start step fails; the record is marked failed.
        """
        record = await self._get_record(deployment_id)
        handle = self.handles.get(record.sandbox_id) if record.sandbox_id else None
        if handle is None:
            raise NotFoundError("Sandbox", record.sandbox_id or deployment_id)
        await self._save(record, DeploymentStatus.RESTARTING)

        command = start_command or self.config.start_command
        try:
            async with handle.lock:
                await handle.session.run_command(
                    f"fuser -k {self.config.app_port}/tcp; {command} > {self.config.app_log_path} 2>&1",
                    cwd=self.config.app_dir,
                    background=True,
                )
        except Exception as e:
            await self._save(record, DeploymentStatus.FAILED, f"restart: {e}")
            raise SandboxDeploymentError(f"Restart of {deployment_id} failed: {e}", stage="start") from e

        handle.last_activity = time.time()
        await self._save(record, DeploymentStatus.RUNNING)
        return record

    async def cancel(self, deployment_id: str, actor_id: str | None = None) -> DeploymentRecord:
        """Terminate a deployment's sandbox and mark the record destroyed.

        Idempotent: cancelling a destroyed deployment returns it unchanged.

        Raises:
            NotFoundError: If the deployment record does not exist.
            AccessDeniedError: If ``actor_id`` is given and does not own it.
        """
        record = await self._get_record(deployment_id)
        if actor_id is not None and actor_id != record.user_id:
            logger.warning(f"Unauthorized cancel attempt on deployment {deployment_id} by {actor_id}")
            raise AccessDeniedError("Deployment belongs to another user")
        if record.status == DeploymentStatus.DESTROYED:
            return record

        handle = self.handles.get(record.sandbox_id) if record.sandbox_id else None
        if handle is not None:
            await self._terminate(handle, "forced")
        elif record.sandbox_id:
            try:
                session = await self.provider.connect(record.sandbox_id)
                await session.kill()
            except Exception as e:
                logger.info(f"Sandbox {record.sandbox_id} not reachable during cancel, assuming gone: {e}")

        record = await self._get_record(deployment_id)
        await self._retire(record)
        logger.info(f"Deployment {deployment_id} cancelled")
        return record

    async def start(self) -> None:
        """Resync live sandboxes and start the background reaper."""
        await self.resync()
        await self._start_reaper_if_needed()

    async def _start_reaper_if_needed(self) -> None:
        if self._reaper_task is None or self._reaper_task.done():
            self._reaper_task = asyncio.create_task(self._reaper_loop())

    async def _reaper_loop(self) -> None:
        """Background task reclaiming sandboxes under the default policy."""
        logger.info("Sandbox reaper started")
        try:
            while True:
                await asyncio.sleep(self.config.sandbox_cleanup_interval)
                try:
                    await self.cleanup()
                except Exception as e:
                    logger.error(f"Sandbox cleanup pass failed: {e}")
        except asyncio.CancelledError:
            logger.info("Sandbox reaper cancelled")

    async def shutdown(self, terminate_sandboxes: bool = False) -> None:
        """Stop the reaper and release handles.

        Args:
            terminate_sandboxes: Also kill every tracked sandbox. Otherwise the
                sandboxes keep running and are picked up by ``resync`` on the
                next start.
        """
        if self._reaper_task and not self._reaper_task.done():
            self._reaper_task.cancel()
            try:
                await self._reaper_task
            except asyncio.CancelledError:
                pass
            self._reaper_task = None

        logger.info(f"Shutting down SandboxLifecycleManager with {len(self.handles)} tracked sandboxes.")
        if not terminate_sandboxes:
            self.handles.clear()
            return

        for handle in list(self.handles.values()):
            try:
                await self._terminate(handle, "forced")
            except Exception as e:
                logger.error(f"Error terminating sandbox during shutdown: {e}")
        self.handles.clear()


def _provider_category(category: ErrorCategory) -> ProviderErrorCategory:
    return "unknown" if category == "validation" else category
