# Copyright (c) 2025 CoReason, Inc.
#
# This software is proprietary and dual-licensed.
# Licensed under the Prosperity Public License 3.0 (the "License").
# A copy of the license is available at https://prosperitylicense.com/versions/3.0.0
# For details, see the LICENSE file.
# Commercial use beyond a 30-day trial requires a separate license.
#
# Source Code: https://github.com/CoReason-AI/coreason_orchestrator

"""Models for sandbox deployments and their lifecycle."""

from datetime import datetime
from enum import Enum
from typing import Literal

from pydantic import BaseModel, Field

from coreason_orchestrator.errors import InvalidTransitionError
from coreason_orchestrator.models.common import new_id, utcnow


class DeploymentStatus(str, Enum):
    PENDING = "pending"
    PROVISIONING = "provisioning"
    RUNNING = "running"
    RESTARTING = "restarting"
    STOPPING = "stopping"
    STOPPED = "stopped"
    FAILED = "failed"
    DESTROYED = "destroyed"


ALLOWED_TRANSITIONS: dict[DeploymentStatus, frozenset[DeploymentStatus]] = {
    DeploymentStatus.PENDING: frozenset(
        {DeploymentStatus.PROVISIONING, DeploymentStatus.FAILED, DeploymentStatus.DESTROYED}
    ),
    DeploymentStatus.PROVISIONING: frozenset(
        {DeploymentStatus.RUNNING, DeploymentStatus.FAILED, DeploymentStatus.DESTROYED}
    ),
    DeploymentStatus.RUNNING: frozenset(
        {DeploymentStatus.STOPPING, DeploymentStatus.RESTARTING, DeploymentStatus.FAILED}
    ),
    DeploymentStatus.RESTARTING: frozenset({DeploymentStatus.RUNNING, DeploymentStatus.FAILED}),
    DeploymentStatus.STOPPING: frozenset({DeploymentStatus.STOPPED, DeploymentStatus.FAILED}),
    DeploymentStatus.STOPPED: frozenset({DeploymentStatus.DESTROYED}),
    DeploymentStatus.FAILED: frozenset({DeploymentStatus.DESTROYED}),
    DeploymentStatus.DESTROYED: frozenset(),
}


class DeploymentRecord(BaseModel):
    """One deployment of user code into a sandbox.

    Records are never deleted; terminal states are kept for audit.

    Attributes:
        id: Deployment identifier.
        user_id: Owner of the deployment.
        project_id: Project the code belongs to.
        sandbox_id: Provider identifier of the backing sandbox, once created.
        status: Current lifecycle state.
        url: Public URL of the running application.
        runtime: Runtime family of the deployed code (e.g. ``node``).
        error: Last failure message, if any.
        created_at: Creation time.
        updated_at: Time of the last transition.
    """

    id: str = Field(default_factory=lambda: new_id("dep"))
    user_id: str
    project_id: str | None = None
    sandbox_id: str | None = None
    status: DeploymentStatus = DeploymentStatus.PENDING
    url: str | None = None
    runtime: str = "node"
    error: str | None = None
    created_at: datetime = Field(default_factory=utcnow)
    updated_at: datetime = Field(default_factory=utcnow)

    @property
    def is_terminal(self) -> bool:
        return self.status in (DeploymentStatus.FAILED, DeploymentStatus.DESTROYED)

    def can_transition(self, target: DeploymentStatus) -> bool:
        return target in ALLOWED_TRANSITIONS[self.status]

    def transition(self, target: DeploymentStatus, error: str | None = None) -> None:
        """Move the record to ``target``.

        Raises:
            InvalidTransitionError: If the state machine does not allow the move.
        """
        if not self.can_transition(target):
            raise InvalidTransitionError(
                f"Deployment {self.id} cannot move from {self.status.value} to {target.value}",
                {"deployment_id": self.id, "from": self.status.value, "to": target.value},
            )
        self.status = target
        if error is not None:
            self.error = error
        self.updated_at = utcnow()


class ProjectFile(BaseModel):
    """A file to write into the sandbox, relative to the application directory."""

    path: str
    content: str


class DeployOptions(BaseModel):
    """Per-deployment overrides for the sandbox deploy flow.

    Attributes:
        project_id: Project to associate with the deployment.
        runtime: Runtime family recorded on the deployment.
        env: Environment variables exported to install and start commands.
        install_command: Overrides the configured install command; empty string skips it.
        start_command: Overrides the configured start command.
        port: Port the application listens on.
        template: Sandbox template to boot.
    """

    project_id: str | None = None
    runtime: str = "node"
    env: dict[str, str] = Field(default_factory=dict)
    install_command: str | None = None
    start_command: str | None = None
    port: int | None = None
    template: str | None = None


class DeployResult(BaseModel):
    deployment_id: str
    sandbox_id: str
    status: DeploymentStatus
    url: str


class MonitorReport(BaseModel):
    """Snapshot returned by the sandbox monitor.

    Attributes:
        deployment_id: Deployment being monitored.
        status: Current deployment status.
        health: ``healthy`` or ``unhealthy``.
        url: Public URL, if any.
        metrics: Basic metrics such as ``uptime_seconds``.
        logs: Most recent application log lines.
    """

    deployment_id: str
    status: DeploymentStatus
    health: Literal["healthy", "unhealthy"]
    url: str | None = None
    metrics: dict[str, float] = Field(default_factory=dict)
    logs: list[str] = Field(default_factory=list)


CleanupReason = Literal[
    "idle_timeout",
    "max_age_exceeded",
    "deployment_failed",
    "orphaned",
    "user_limit_exceeded",
    "forced",
]


class CleanupPolicy(BaseModel):
    """Which sandboxes a cleanup pass may reclaim.

    Durations are in seconds; ``None`` disables that rule.
    """

    max_idle: float | None = None
    max_age: float | None = None
    include_failed: bool = True
    include_orphaned: bool = True
    force: bool = False


class CleanupDetail(BaseModel):
    sandbox_id: str
    reason: CleanupReason
    success: bool
    error: str | None = None


class CleanupReport(BaseModel):
    cleaned: int = 0
    failed: int = 0
    details: list[CleanupDetail] = Field(default_factory=list)


ErrorCategory = Literal["timeout", "network", "resource", "sandbox", "validation", "unknown"]


class ErrorDecision(BaseModel):
    """Outcome of classifying a deployment failure.

    Attributes:
        action: ``retry`` or ``abort``.
        category: Classified error family.
        delay: Seconds to wait before retrying (0 when aborting).
        retry_count: Retry count the decision was made for.
        reason: Short explanation for logs and API responses.
    """

    action: Literal["retry", "abort"]
    category: ErrorCategory
    delay: float = 0.0
    retry_count: int = 0
    reason: str = ""
