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
coreason-orchestrator
"""

__version__ = "0.1.0"
__author__ = "Gowtham A Rao"
__email__ = "gowtham.rao@coreason.ai"

from .config import OrchestratorConfig
from .control_plane import ControlPlane
from .errors import (
    AccessDeniedError,
    NotFoundError,
    OrchestratorError,
    PostProvisioningError,
    ProviderError,
    QuotaExceededError,
    SandboxDeploymentError,
    ValidationError,
)
from .orchestrator import ResourceOrchestrator
from .sandbox_manager import SandboxLifecycleManager
from .scheduler import TaskScheduler

__all__ = [
    "AccessDeniedError",
    "ControlPlane",
    "NotFoundError",
    "OrchestratorConfig",
    "OrchestratorError",
    "PostProvisioningError",
    "ProviderError",
    "QuotaExceededError",
    "ResourceOrchestrator",
    "SandboxDeploymentError",
    "SandboxLifecycleManager",
    "TaskScheduler",
    "ValidationError",
]
