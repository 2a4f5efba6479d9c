# Copyright (c) 2025 CoReason, Inc.
#
# This software is proprietary and dual-licensed.
# Licensed under the Prosperity Public License 3.0 (the "License").
# A copy of the license is available at https://prosperitylicense.com/versions/3.0.0
# For details, see the LICENSE file.
# Commercial use beyond a 30-day trial requires a separate license.
#
# Source Code: https://github.com/CoReason-AI/coreason_orchestrator

"""
Data models for the control plane.
"""

from .resource import (
    BackupInfo,
    BackupPolicy,
    ConnectionInfo,
    DeployRequest,
    HealthStatus,
    ManagedResource,
    MonitoringPolicy,
    PlacementTarget,
    QuotaUsage,
    ResourceCleanupReport,
    ResourceConfig,
    ResourceMetadata,
    ResourceMetrics,
    ResourceStatus,
    ScalingPolicy,
    SystemHealth,
    TenantLimits,
    TenantRecord,
    TenantRequest,
)
from .sandbox import (
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
from .task import (
    MaintenanceWindow,
    ScalingSchedule,
    ScheduledTask,
    SchedulerStats,
    TaskResult,
    TaskStatus,
    TaskType,
)

__all__ = [
    "BackupInfo",
    "BackupPolicy",
    "CleanupPolicy",
    "CleanupReport",
    "ConnectionInfo",
    "DeployOptions",
    "DeployRequest",
    "DeployResult",
    "DeploymentRecord",
    "DeploymentStatus",
    "ErrorDecision",
    "HealthStatus",
    "MaintenanceWindow",
    "ManagedResource",
    "MonitorReport",
    "MonitoringPolicy",
    "PlacementTarget",
    "ProjectFile",
    "QuotaUsage",
    "ResourceCleanupReport",
    "ResourceConfig",
    "ResourceMetadata",
    "ResourceMetrics",
    "ResourceStatus",
    "ScalingPolicy",
    "ScalingSchedule",
    "ScheduledTask",
    "SchedulerStats",
    "SystemHealth",
    "TaskResult",
    "TaskStatus",
    "TaskType",
    "TenantLimits",
    "TenantRecord",
    "TenantRequest",
]
