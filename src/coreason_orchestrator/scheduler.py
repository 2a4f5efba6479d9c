# Copyright (c) 2025 CoReason, Inc.
#
# This software is proprietary and dual-licensed.
# Licensed under the Prosperity Public License 3.0 (the "License").
# A copy of the license is available at https://prosperitylicense.com/versions/3.0.0
# For details, see the LICENSE file.
# Commercial use beyond a 30-day trial requires a separate license.
#
# Source Code: https://github.com/CoReason-AI/coreason_orchestrator

"""Scheduled background work against managed resources.

Each task is bound to an APScheduler timer. A timer fire only spawns the
execution as its own asyncio task, so slow work never delays other timers or
the next fire of the same timer. The registry holds the task records; the
timers are rebuilt from it on start.
"""

import asyncio
from datetime import datetime, timedelta, timezone
from typing import Any, Protocol

from apscheduler.jobstores.base import JobLookupError
from apscheduler.schedulers.asyncio import AsyncIOScheduler
from apscheduler.triggers.date import DateTrigger
from apscheduler.triggers.interval import IntervalTrigger
from loguru import logger

from coreason_orchestrator.config import OrchestratorConfig
from coreason_orchestrator.errors import (
    NotFoundError,
    OrchestratorError,
    ProviderError,
    RegistryUnavailableError,
    ValidationError,
)
from coreason_orchestrator.events import EventBus, EventType
from coreason_orchestrator.locks import KeyedLock
from coreason_orchestrator.models import (
    MaintenanceWindow,
    ScalingSchedule,
    ScheduledTask,
    SchedulerStats,
    TaskResult,
    TaskStatus,
    TaskType,
)
from coreason_orchestrator.models.common import utcnow
from coreason_orchestrator.models.task import ACTIVE_TASK_STATUSES
from coreason_orchestrator.registry import Registry
from coreason_orchestrator.schedules import next_fire_time, one_shot_expression, parse_schedule

RETRY_SUFFIX = ":retry"
RETENTION_JOB_ID = "scheduler:retention_sweep"
TIMEOUT_JOB_ID = "scheduler:timeout_sweep"

BACKUP_DEFAULTS: dict[str, Any] = {
    "backup_type": "full",
    "compression": True,
    "encryption": False,
    "retention_days": 30,
}
OPTIMIZATION_DEFAULTS: dict[str, Any] = {"optimization_type": "performance"}
COLD_STORAGE_DEFAULTS: dict[str, Any] = {"age_threshold_days": 90, "storage_class": "cold"}


class ResourceActions(Protocol):
    """What scheduled tasks are allowed to do to a resource.

    Every method returns a short human readable summary stored on the task
    result, and raises on failure.
    """

    async def resource_exists(self, resource_id: str) -> bool: ...

    async def backup(self, resource_id: str, config: dict[str, Any]) -> str: ...

    async def maintain(self, resource_id: str, config: dict[str, Any]) -> str: ...

    async def scale(self, resource_id: str, config: dict[str, Any]) -> str: ...

    async def optimize(self, resource_id: str, config: dict[str, Any]) -> str: ...

    async def archive(self, resource_id: str, config: dict[str, Any]) -> str: ...

    async def destroy(self, resource_id: str) -> str: ...


def is_retryable(error: Exception) -> bool:
    """Whether running a failed task again may succeed.

    Provider errors carry their own flag. Other control-plane errors (bad
    input, missing resource, quota, denied access) fail the same way on every
    attempt, except a registry outage. Anything unclassified is retried.
    """
    if isinstance(error, ProviderError):
        return error.retryable
    if isinstance(error, RegistryUnavailableError):
        return True
    return not isinstance(error, OrchestratorError)


def _sort_key(task: ScheduledTask) -> tuple[bool, datetime]:
    return task.next_run is None, task.next_run or datetime.max.replace(tzinfo=timezone.utc)


class TaskScheduler:
    """Runs recurring and one-shot tasks with retry and timeout policy."""

    def __init__(
        self,
        actions: ResourceActions,
        registry: Registry,
        config: OrchestratorConfig | None = None,
        events: EventBus | None = None,
    ):
        """Initializes the TaskScheduler.

        Args:
            actions: Callbacks executing the work of each task type.
            registry: Registry holding the task records.
            config: Optional configuration object. If not provided, defaults are used.
            events: Event bus for task notifications.
        """
        self.actions = actions
        self.registry = registry
        self.config = config or OrchestratorConfig()
        self.events = events or EventBus()
        self._scheduler = AsyncIOScheduler(
            timezone=self.config.timezone,
            job_defaults={
                "coalesce": True,  # Combine missed executions into one
                "max_instances": 1,
                "misfire_grace_time": self.config.misfire_grace_time,
            },
        )
        self._task_locks = KeyedLock()
        self._inflight: set[asyncio.Task[Any]] = set()

    @property
    def is_running(self) -> bool:
        return bool(self._scheduler.running)

    # Timers

    def _trigger_for(self, task: ScheduledTask) -> Any:
        trigger = parse_schedule(task.schedule, task.timezone or self.config.timezone)
        if task.one_shot and task.next_run is not None and task.next_run <= utcnow():
            # Overdue one-shot (e.g. found on restart): run as soon as possible
            return DateTrigger(run_date=utcnow() + timedelta(seconds=1))
        return trigger

    def _bind(self, task: ScheduledTask) -> None:
        self._scheduler.add_job(
            self._fire,
            self._trigger_for(task),
            args=[task.id],
            id=task.id,
            name=f"{task.type.value}:{task.resource_id}",
            replace_existing=True,
        )

    def _bind_retry(self, task: ScheduledTask) -> None:
        self._scheduler.add_job(
            self._fire,
            DateTrigger(run_date=task.next_run),
            args=[task.id],
            id=task.id + RETRY_SUFFIX,
            name=f"{task.type.value}:{task.resource_id}:retry",
            replace_existing=True,
        )

    def _unbind(self, task_id: str) -> None:
        for job_id in (task_id, task_id + RETRY_SUFFIX):
            self._remove_job(job_id)

    def _remove_job(self, job_id: str) -> None:
        # Jobs added before start() may be queued more than once
        while True:
            try:
                self._scheduler.remove_job(job_id)
            except JobLookupError:
                break

    async def _fire(self, task_id: str) -> None:
        """Timer callback: spawn the execution and return immediately."""
        execution = asyncio.create_task(self.execute_task(task_id))
        self._inflight.add(execution)
        execution.add_done_callback(self._inflight.discard)

    # Registration

    async def _register(
        self,
        resource_id: str,
        task_type: TaskType,
        schedule: str,
        config: dict[str, Any],
        *,
        one_shot: bool = False,
        max_retries: int = 3,
        timeout: float = 3600.0,
        priority: int = 5,
        tz: str | None = None,
    ) -> ScheduledTask:
        if not resource_id:
            raise ValidationError("Resource ID is required")
        trigger = parse_schedule(schedule, tz or self.config.timezone)
        task = ScheduledTask(
            resource_id=resource_id,
            type=task_type,
            schedule=schedule,
            timezone=tz,
            config=config,
            one_shot=one_shot,
            max_retries=max_retries,
            timeout=timeout,
            priority=priority,
            next_run=next_fire_time(trigger),
        )
        await self.registry.tasks.save(task)
        self._bind(task)
        logger.info(f"Scheduled {task_type.value} task {task.id} for {resource_id} ({schedule})")
        await self.events.emit(
            EventType.TASK_SCHEDULED,
            resource_id,
            task_id=task.id,
            task_type=task_type.value,
            schedule=schedule,
        )
        return task

    async def schedule_backup(
        self, resource_id: str, schedule: str, config: dict[str, Any] | None = None
    ) -> ScheduledTask:
        """Schedule recurring backups.

        Args:
            resource_id: Resource to back up.
            schedule: Schedule expression.
            config: Overrides for the full, compressed, 30-day retention defaults.

        Returns:
            ScheduledTask: The registered task.
        """
        return await self._register(
            resource_id,
            TaskType.BACKUP,
            schedule,
            {**BACKUP_DEFAULTS, **(config or {})},
            timeout=3600,
            priority=5,
        )

    async def schedule_maintenance(
        self,
        resource_id: str,
        window: MaintenanceWindow | str,
        config: dict[str, Any] | None = None,
    ) -> ScheduledTask:
        """Schedule recurring maintenance.

        Args:
            resource_id: Resource to maintain.
            window: A maintenance window, or a raw schedule expression.
            config: Extra settings; ``maintenance_type`` defaults to ``update``.

        Returns:
            ScheduledTask: The registered task.
        """
        settings: dict[str, Any] = {"maintenance_type": "update"}
        tz = None
        if isinstance(window, MaintenanceWindow):
            schedule = window.to_cron()
            tz = window.timezone
            settings.update(maintenance_type=window.type, duration_minutes=window.duration_minutes)
        else:
            schedule = window
        settings.update(config or {})
        return await self._register(
            resource_id, TaskType.MAINTENANCE, schedule, settings, timeout=7200, priority=8, tz=tz
        )

    async def schedule_destruction(
        self, resource_id: str, ttl_seconds: float, config: dict[str, Any] | None = None
    ) -> ScheduledTask:
        """Destroy a resource once its time-to-live expires.

        The task runs at most once.
        """
        if ttl_seconds <= 0:
            raise ValidationError("TTL must be positive")
        return await self._register(
            resource_id,
            TaskType.TTL_CLEANUP,
            one_shot_expression(ttl_seconds),
            {"ttl_seconds": ttl_seconds, **(config or {})},
            one_shot=True,
            max_retries=1,
            timeout=600,
            priority=10,
        )

    async def schedule_scaling(
        self,
        resource_id: str,
        schedule: str,
        target_replicas: int | None = None,
        config: dict[str, Any] | None = None,
    ) -> ScheduledTask:
        """Scale a resource on a schedule.

        Either ``target_replicas`` is given, or ``config`` sets ``autoscale``
        to have the orchestrator evaluate the resource's autoscale policy.

        Raises:
            ValidationError: If neither a target nor autoscale is requested.
        """
        settings = dict(config or {})
        if target_replicas is not None:
            if target_replicas < 1:
                raise ValidationError("target_replicas must be at least 1")
            settings["target_replicas"] = target_replicas
        elif not settings.get("autoscale"):
            raise ValidationError("Scaling tasks need target_replicas or autoscale")
        priority = 6 if settings.get("direction") == "down" else 7
        return await self._register(
            resource_id, TaskType.SCALING, schedule, settings, timeout=1800, priority=priority
        )

    async def schedule_scaling_plan(self, resource_id: str, plan: ScalingSchedule) -> list[ScheduledTask]:
        """Register the scale-up and scale-down halves of a time-based scaling plan."""
        up = await self.schedule_scaling(
            resource_id, plan.scale_up_schedule, plan.scale_up_replicas, {"direction": "up"}
        )
        down = await self.schedule_scaling(
            resource_id, plan.scale_down_schedule, plan.scale_down_replicas, {"direction": "down"}
        )
        return [up, down]

    async def schedule_optimization(
        self, resource_id: str, schedule: str = "0 2 * * *", config: dict[str, Any] | None = None
    ) -> ScheduledTask:
        return await self._register(
            resource_id,
            TaskType.OPTIMIZATION,
            schedule,
            {**OPTIMIZATION_DEFAULTS, **(config or {})},
            timeout=3600,
            priority=4,
        )

    async def schedule_cold_storage(
        self, resource_id: str, schedule: str = "0 3 * * 0", config: dict[str, Any] | None = None
    ) -> ScheduledTask:
        return await self._register(
            resource_id,
            TaskType.COLD_STORAGE,
            schedule,
            {**COLD_STORAGE_DEFAULTS, **(config or {})},
            timeout=7200,
            priority=3,
        )

    # Cancellation

    async def cancel_task(self, task_id: str) -> ScheduledTask:
        """Stop a task's timers and mark it cancelled.

        Works in any state and is idempotent. An execution already in flight
        finishes, but its result does not reschedule the task.

        Raises:
            NotFoundError: If the task does not exist.
        """
        self._unbind(task_id)
        task = await self.registry.tasks.get(task_id)
        if task is None:
            raise NotFoundError("Task", task_id)
        if task.status == TaskStatus.CANCELLED:
            return task
        task.status = TaskStatus.CANCELLED
        task.next_run = None
        task.updated_at = utcnow()
        await self.registry.tasks.save(task)
        logger.info(f"Cancelled task {task_id}")
        await self.events.emit(EventType.TASK_CANCELLED, task.resource_id, task_id=task_id)
        return task

    async def _cancel_matching(self, resource_id: str, task_type: TaskType | None = None) -> int:
        tasks = await self.registry.tasks.find(resource_id=resource_id)
        cancelled = 0
        for task in tasks:
            if task.status not in ACTIVE_TASK_STATUSES:
                continue
            if task_type is not None and task.type != task_type:
                continue
            await self.cancel_task(task.id)
            cancelled += 1
        return cancelled

    async def cancel_all_for_resource(self, resource_id: str) -> int:
        """Cancel every pending or running task of a resource. Returns how many."""
        return await self._cancel_matching(resource_id)

    async def cancel_backup_schedule(self, resource_id: str) -> int:
        return await self._cancel_matching(resource_id, TaskType.BACKUP)

    # Execution

    async def run_task_now(self, task_id: str) -> TaskResult | None:
        """Execute a pending task immediately, outside its schedule."""
        return await self.execute_task(task_id)

    async def execute_task(self, task_id: str) -> TaskResult | None:
        """Run one execution cycle of a task.

        Skips tasks that are not pending, cancels tasks whose resource is gone,
        and otherwise runs the task's action and records the outcome.

        Returns:
            TaskResult | None: The outcome, or ``None`` when nothing ran.
        """
        async with self._task_locks.hold(task_id):
            task = await self.registry.tasks.get(task_id)
            if task is None:
                self._unbind(task_id)
                return None
            if task.status != TaskStatus.PENDING:
                logger.debug(f"Skipping task {task_id} in state {task.status.value}")
                return None
            if not await self.actions.resource_exists(task.resource_id):
                logger.info(f"Resource {task.resource_id} no longer exists, cancelling task {task_id}")
                await self.cancel_task(task_id)
                return None

            started = utcnow()
            task.status = TaskStatus.RUNNING
            task.started_at = started
            task.last_run = started
            task.updated_at = started
            await self.registry.tasks.save(task)
        await self.events.emit(EventType.TASK_STARTED, task.resource_id, task_id=task_id, task_type=task.type.value)

        retryable = True
        try:
            output = await self._dispatch(task)
            result = TaskResult(success=True, started_at=started, output=output)
        except Exception as e:
            logger.error(f"Task {task_id} ({task.type.value}) failed: {e}")
            result = TaskResult(success=False, started_at=started, error=str(e))
            retryable = is_retryable(e)
        result.duration = (result.finished_at - started).total_seconds()

        async with self._task_locks.hold(task_id):
            await self._record_result(task_id, result, retryable=retryable)
        return result

    async def _dispatch(self, task: ScheduledTask) -> str:
        if task.type == TaskType.BACKUP:
            return await self.actions.backup(task.resource_id, task.config)
        if task.type == TaskType.MAINTENANCE:
            return await self.actions.maintain(task.resource_id, task.config)
        if task.type == TaskType.SCALING:
            return await self.actions.scale(task.resource_id, task.config)
        if task.type == TaskType.OPTIMIZATION:
            return await self.actions.optimize(task.resource_id, task.config)
        if task.type == TaskType.COLD_STORAGE:
            return await self.actions.archive(task.resource_id, task.config)
        if task.type == TaskType.TTL_CLEANUP:
            return await self.actions.destroy(task.resource_id)
        raise ValidationError(f"Unsupported task type: {task.type}")  # pragma: no cover

    async def _record_result(self, task_id: str, result: TaskResult, *, retryable: bool = True) -> None:
        task = await self.registry.tasks.get(task_id)
        if task is None:
            # Removed while running, e.g. by resource destruction
            return
        task.last_result = result
        task.started_at = None
        task.updated_at = utcnow()

        if task.status != TaskStatus.RUNNING:
            # Cancelled or timed out while in flight; keep that outcome
            await self.registry.tasks.save(task)
            return

        if result.success:
            task.retry_count = 0
            if task.type == TaskType.TTL_CLEANUP:
                await self.registry.tasks.save(task)
                await self.cancel_task(task_id)
                await self.events.emit(EventType.TASK_COMPLETED, task.resource_id, task_id=task_id)
                return
            if task.one_shot:
                task.status = TaskStatus.COMPLETED
                task.next_run = None
                self._unbind(task_id)
            else:
                task.status = TaskStatus.PENDING
                task.next_run = next_fire_time(parse_schedule(task.schedule, task.timezone or self.config.timezone))
                self._remove_job(task_id + RETRY_SUFFIX)
                if self._scheduler.get_job(task_id) is None:
                    # Recovered from a retry; resume the regular timer
                    self._bind(task)
            await self.registry.tasks.save(task)
            await self.events.emit(
                EventType.TASK_COMPLETED, task.resource_id, task_id=task_id, duration=result.duration
            )
            return

        task.retry_count += 1
        final = not retryable or task.retry_count >= task.max_retries
        if final:
            task.status = TaskStatus.FAILED
            task.next_run = None
            self._unbind(task_id)
            logger.error(f"Task {task_id} failed permanently after {task.retry_count} attempts")
        else:
            task.status = TaskStatus.PENDING
            task.next_run = utcnow() + timedelta(seconds=task.retry_count * self.config.task_retry_backoff)
            # The regular timer stays off until the retry chain ends
            self._remove_job(task_id)
            self._bind_retry(task)
            logger.warning(f"Task {task_id} will retry at {task.next_run.isoformat()} (attempt {task.retry_count})")
        await self.registry.tasks.save(task)
        await self.events.emit(
            EventType.TASK_FAILED,
            task.resource_id,
            task_id=task_id,
            error=result.error,
            retry_count=task.retry_count,
            final=final,
        )

    # Sweeps

    async def check_timeouts(self) -> list[str]:
        """Fail tasks stuck running past their timeout. Returns their ids."""
        now = utcnow()
        timed_out = []
        for task in await self.registry.tasks.find(status=TaskStatus.RUNNING):
            if task.started_at is None or now - task.started_at <= timedelta(seconds=task.timeout):
                continue
            async with self._task_locks.hold(task.id):
                current = await self.registry.tasks.get(task.id)
                if current is None or current.status != TaskStatus.RUNNING:
                    continue
                current.status = TaskStatus.FAILED
                current.last_result = TaskResult(
                    success=False,
                    started_at=task.started_at,
                    duration=(now - task.started_at).total_seconds(),
                    error=f"Task timed out after {task.timeout:g}s",
                )
                current.started_at = None
                current.next_run = None
                current.updated_at = now
                self._unbind(task.id)
                await self.registry.tasks.save(current)
            timed_out.append(task.id)
            logger.warning(f"Task {task.id} exceeded its {task.timeout:g}s timeout")
            await self.events.emit(EventType.TASK_FAILED, task.resource_id, task_id=task.id, error="timeout", final=True)
        return timed_out

    async def purge_expired(self) -> int:
        """Delete terminal tasks older than the retention window."""
        cutoff = utcnow() - timedelta(days=self.config.task_retention_days)
        removed = 0
        for task in await self.registry.tasks.all():
            if task.is_terminal and task.updated_at < cutoff:
                self._unbind(task.id)
                await self.registry.tasks.delete(task.id)
                removed += 1
        if removed:
            logger.info(f"Purged {removed} finished tasks older than {self.config.task_retention_days} days")
        return removed

    async def _safe_sweep(self, sweep: Any) -> None:
        try:
            await sweep()
        except Exception as e:
            logger.error(f"Scheduler sweep {sweep.__name__} failed: {e}")

    # Visibility

    async def get_scheduled_tasks(self, resource_id: str) -> list[ScheduledTask]:
        return sorted(await self.registry.tasks.find(resource_id=resource_id), key=_sort_key)

    async def get_all_tasks(self) -> list[ScheduledTask]:
        return sorted(await self.registry.tasks.all(), key=_sort_key)

    async def get_next_tasks(self, limit: int = 10) -> list[ScheduledTask]:
        """Pending tasks ordered by their next run, soonest first."""
        pending = await self.registry.tasks.find(status=TaskStatus.PENDING)
        return sorted(pending, key=_sort_key)[:limit]

    async def get_stats(self) -> SchedulerStats:
        """Aggregate counters.

        Average duration and success rate only consider completed and failed
        tasks; with none yet the success rate is reported as 100%.
        """
        tasks = await self.registry.tasks.all()
        completed = [t for t in tasks if t.status == TaskStatus.COMPLETED]
        failed = [t for t in tasks if t.status == TaskStatus.FAILED]
        finished = [t for t in completed + failed if t.last_result is not None]
        average = sum(t.last_result.duration for t in finished) / len(finished) if finished else 0.0  # type: ignore[union-attr]
        terminal = len(completed) + len(failed)
        return SchedulerStats(
            total_tasks=len(tasks),
            active_tasks=sum(1 for t in tasks if t.status in ACTIVE_TASK_STATUSES),
            completed_tasks=len(completed),
            failed_tasks=len(failed),
            cancelled_tasks=sum(1 for t in tasks if t.status == TaskStatus.CANCELLED),
            next_scheduled=await self.get_next_tasks(5),
            average_execution_time=average,
            success_rate=len(completed) / terminal * 100 if terminal else 100.0,
        )

    # Lifecycle

    async def start(self) -> None:
        """Rebind timers for stored tasks and start the scheduler."""
        if self._scheduler.running:
            logger.warning("Task scheduler is already running")
            return

        rebound = 0
        for task in await self.registry.tasks.all():
            if task.status == TaskStatus.RUNNING:
                # The process that ran it is gone
                task.status = TaskStatus.PENDING
                task.started_at = None
                await self.registry.tasks.save(task)
            if task.status != TaskStatus.PENDING:
                continue
            if task.retry_count and task.next_run is not None:
                task.next_run = max(task.next_run, utcnow() + timedelta(seconds=1))
                await self.registry.tasks.save(task)
                self._bind_retry(task)
            else:
                self._bind(task)
            rebound += 1

        self._scheduler.add_job(
            self._safe_sweep,
            IntervalTrigger(seconds=self.config.task_cleanup_interval),
            args=[self.purge_expired],
            id=RETENTION_JOB_ID,
            name="Task retention sweep",
            replace_existing=True,
        )
        self._scheduler.add_job(
            self._safe_sweep,
            IntervalTrigger(seconds=self.config.task_timeout_check_interval),
            args=[self.check_timeouts],
            id=TIMEOUT_JOB_ID,
            name="Task timeout sweep",
            replace_existing=True,
        )
        self._scheduler.start()
        logger.info(f"Task scheduler started with {rebound} tasks")

    async def shutdown(self) -> None:
        """Stop firing timers and wait for in-flight executions."""
        if self._scheduler.running:
            self._scheduler.shutdown(wait=False)
            # AsyncIOScheduler applies the shutdown on the next loop iteration
            await asyncio.sleep(0)
        if self._inflight:
            await asyncio.gather(*list(self._inflight), return_exceptions=True)
        logger.info("Task scheduler stopped")
