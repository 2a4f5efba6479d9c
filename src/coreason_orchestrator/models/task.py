# Copyright (c) 2025 CoReason, Inc.
#
# This software is proprietary and dual-licensed.
# Licensed under the Prosperity Public License 3.0 (the "License").
# A copy of the license is available at https://prosperitylicense.com/versions/3.0.0
# For details, see the LICENSE file.
# Commercial use beyond a 30-day trial requires a separate license.
#
# Source Code: https://github.com/CoReason-AI/coreason_orchestrator

"""Models for scheduled background tasks."""

from datetime import datetime
from enum import Enum
from typing import Any, Literal

from pydantic import BaseModel, Field, field_validator

from coreason_orchestrator.models.common import new_id, utcnow


class TaskType(str, Enum):
    BACKUP = "backup"
    MAINTENANCE = "maintenance"
    TTL_CLEANUP = "ttl_cleanup"
    SCALING = "scaling"
    OPTIMIZATION = "optimization"
    COLD_STORAGE = "cold_storage"


class TaskStatus(str, Enum):
    PENDING = "pending"
    RUNNING = "running"
    COMPLETED = "completed"
    FAILED = "failed"
    CANCELLED = "cancelled"


ACTIVE_TASK_STATUSES = frozenset({TaskStatus.PENDING, TaskStatus.RUNNING})


class TaskResult(BaseModel):
    success: bool
    started_at: datetime
    finished_at: datetime = Field(default_factory=utcnow)
    duration: float = 0.0
    output: str | None = None
    error: str | None = None


class ScheduledTask(BaseModel):
    """A recurring or one-shot unit of work bound to a resource.

    Attributes:
        id: Task identifier; also the timer job id.
        resource_id: Resource (or sandbox deployment) the task acts on.
        type: Job family.
        schedule: Schedule expression the timer fires on.
        timezone: Timezone the expression is evaluated in; defaults to the scheduler timezone.
        status: Current task state.
        config: Job-family specific settings.
        one_shot: Whether the task runs at most once.
        next_run: Next computed fire time.
        last_run: Start time of the most recent execution.
        started_at: Start time of the execution in progress.
        last_result: Outcome of the most recent execution.
        retry_count: Consecutive failed executions.
        max_retries: Retry ceiling; reaching it marks the task failed.
        timeout: Seconds an execution may stay running before it is failed.
        priority: Informational priority, higher is more important.
    """

    id: str = Field(default_factory=lambda: new_id("task"))
    resource_id: str
    type: TaskType
    schedule: str
    timezone: str | None = None
    status: TaskStatus = TaskStatus.PENDING
    config: dict[str, Any] = Field(default_factory=dict)
    one_shot: bool = False
    next_run: datetime | None = None
    last_run: datetime | None = None
    started_at: datetime | None = None
    last_result: TaskResult | None = None
    retry_count: int = 0
    max_retries: int = Field(default=3, ge=1)
    timeout: float = 3600.0
    priority: int = 5
    created_at: datetime = Field(default_factory=utcnow)
    updated_at: datetime = Field(default_factory=utcnow)

    @property
    def is_terminal(self) -> bool:
        return self.status in (TaskStatus.COMPLETED, TaskStatus.FAILED, TaskStatus.CANCELLED)


class MaintenanceWindow(BaseModel):
    """A weekly maintenance window.

    Attributes:
        start: Start time as ``HH:MM``.
        end: End time as ``HH:MM``.
        timezone: IANA timezone name the window is expressed in.
        days_of_week: Days using cron numbering (0 = Sunday ... 6 = Saturday).
        type: Maintenance type passed to the provider.
    """

    start: str
    end: str
    timezone: str = "UTC"
    days_of_week: list[int] = Field(default_factory=lambda: [0])
    type: Literal["update", "patch", "restart", "vacuum", "reindex"] = "update"

    @field_validator("start", "end")
    @classmethod
    def _check_time(cls, value: str) -> str:
        hour, sep, minute = value.partition(":")
        if not sep or not hour.isdigit() or not minute.isdigit():
            raise ValueError(f"expected HH:MM, got {value!r}")
        if not (0 <= int(hour) <= 23 and 0 <= int(minute) <= 59):
            raise ValueError(f"time out of range: {value!r}")
        return value

    @field_validator("days_of_week")
    @classmethod
    def _check_days(cls, value: list[int]) -> list[int]:
        if not value or any(day < 0 or day > 6 for day in value):
            raise ValueError("days_of_week must hold values between 0 and 6")
        return sorted(set(value))

    @property
    def duration_minutes(self) -> int:
        start_h, start_m = (int(part) for part in self.start.split(":"))
        end_h, end_m = (int(part) for part in self.end.split(":"))
        minutes = (end_h * 60 + end_m) - (start_h * 60 + start_m)
        return minutes if minutes > 0 else minutes + 24 * 60

    def to_cron(self) -> str:
        hour, minute = (int(part) for part in self.start.split(":"))
        days = ",".join(str(day) for day in self.days_of_week)
        return f"{minute} {hour} * * {days}"


class ScalingSchedule(BaseModel):
    scale_up_schedule: str
    scale_down_schedule: str
    scale_up_replicas: int = Field(ge=1)
    scale_down_replicas: int = Field(ge=1)


class SchedulerStats(BaseModel):
    total_tasks: int
    active_tasks: int
    completed_tasks: int
    failed_tasks: int
    cancelled_tasks: int
    next_scheduled: list[ScheduledTask] = Field(default_factory=list)
    average_execution_time: float = 0.0
    success_rate: float = 100.0
