# Copyright (c) 2025 CoReason, Inc.
#
# This software is proprietary and dual-licensed.
# Licensed under the Prosperity Public License 3.0 (the "License").
# A copy of the license is available at https://prosperitylicense.com/versions/3.0.0
# For details, see the LICENSE file.
# Commercial use beyond a 30-day trial requires a separate license.
#
# Source Code: https://github.com/CoReason-AI/coreason_orchestrator

"""Typed error taxonomy shared by every control-plane component.

Each error carries a stable ``code`` so that callers (the API layer, the task
scheduler) can branch on the failure kind without parsing messages.
"""

from typing import Any, Literal

ProviderErrorCategory = Literal["timeout", "network", "resource", "sandbox", "unknown"]


class OrchestratorError(Exception):
    """Base class for all control-plane errors."""

    code: str = "orchestrator_error"

    def __init__(self, message: str, details: dict[str, Any] | None = None):
        super().__init__(message)
        self.message = message
        self.details = details or {}

    def to_dict(self) -> dict[str, Any]:
        """Serialize the error for an API response body."""
        return {"code": self.code, "message": self.message, "details": self.details}


class NotFoundError(OrchestratorError):
    code = "not_found"

    def __init__(self, kind: str, identifier: str):
        super().__init__(f"{kind} {identifier} not found", {"kind": kind, "id": identifier})
        self.kind = kind
        self.identifier = identifier


class QuotaExceededError(OrchestratorError):
    code = "quota_exceeded"


class ValidationError(OrchestratorError):
    code = "validation_error"


class AccessDeniedError(OrchestratorError):
    code = "access_denied"


class InvalidTransitionError(OrchestratorError):
    code = "invalid_transition"


class RegistryUnavailableError(OrchestratorError):
    code = "registry_unavailable"


class ProviderError(OrchestratorError):
    """An external sandbox or resource provider call failed.

    Args:
        message: Human readable description.
        category: Failure family used for retry decisions.
        retryable: Whether retrying the same call may succeed.
        details: Extra structured context.
    """

    code = "provider_error"

    def __init__(
        self,
        message: str,
        category: ProviderErrorCategory = "unknown",
        retryable: bool = True,
        details: dict[str, Any] | None = None,
    ):
        super().__init__(message, details)
        self.category = category
        self.retryable = retryable

    @classmethod
    def wrap(cls, exc: BaseException, operation: str) -> "ProviderError":
        """Convert an arbitrary provider exception into a ProviderError."""
        if isinstance(exc, ProviderError):
            return exc
        if isinstance(exc, TimeoutError):
            category: ProviderErrorCategory = "timeout"
        elif isinstance(exc, (ConnectionError, OSError)):
            category = "network"
        else:
            category = "unknown"
        return cls(f"{operation} failed: {exc}", category=category, details={"operation": operation})


class SandboxDeploymentError(ProviderError):
    code = "deployment_failed"

    def __init__(self, message: str, stage: str, category: ProviderErrorCategory = "sandbox"):
        super().__init__(message, category=category, details={"stage": stage})
        self.stage = stage


class PostProvisioningError(OrchestratorError):
    """A resource was provisioned but wiring its policies failed.

    The resource is left running; ``resource`` holds its current record and
    ``errors`` maps each failed step to its error message.
    """

    code = "post_provisioning_failed"

    def __init__(self, resource: Any, errors: dict[str, str]):
        super().__init__(
            f"Resource {resource.id} is running but post-provisioning failed: {', '.join(errors)}",
            {"resource_id": resource.id, "steps": errors},
        )
        self.resource = resource
        self.errors = errors
