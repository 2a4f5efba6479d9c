# Copyright (c) 2025 CoReason, Inc.
#
# This software is proprietary and dual-licensed.
# Licensed under the Prosperity Public License 3.0 (the "License").
# A copy of the license is available at https://prosperitylicense.com/versions/3.0.0
# For details, see the LICENSE file.
# Commercial use beyond a 30-day trial requires a separate license.
#
# Source Code: https://github.com/CoReason-AI/coreason_orchestrator

"""Contract the control plane uses to drive an external sandbox provider."""

from abc import ABC, abstractmethod
from datetime import datetime

from pydantic import BaseModel, Field


class CommandResult(BaseModel):
    """Represents the result of a command run inside a sandbox.

    Attributes:
        stdout: Standard output captured from the command.
        stderr: Standard error captured from the command.
        exit_code: The exit code of the process (0 for success).
    """

    stdout: str = ""
    stderr: str = ""
    exit_code: int = 0

    @property
    def ok(self) -> bool:
        return self.exit_code == 0


class SandboxInfo(BaseModel):
    """Provider-side view of one sandbox.

    Attributes:
        sandbox_id: Provider identifier.
        status: ``running`` or ``stopped``.
        started_at: Boot time reported by the provider.
        template: Template the sandbox was booted from.
        metadata: Labels attached at creation (owner, project, deployment).
    """

    sandbox_id: str
    status: str = "running"
    started_at: datetime | None = None
    template: str | None = None
    metadata: dict[str, str] = Field(default_factory=dict)


class SandboxSession(ABC):
    """A live handle to one sandbox.

    Only the sandbox lifecycle manager (and the engine providers it lends
    sessions to) holds these.
    """

    @property
    @abstractmethod
    def sandbox_id(self) -> str:
        pass  # pragma: no cover

    @abstractmethod
    async def initialize(self, env: dict[str, str], timeout: float | None = None) -> None:
        """Apply session-wide environment variables and lifetime."""
        pass  # pragma: no cover

    @abstractmethod
    async def write_file(self, path: str, content: str | bytes) -> None:
        pass  # pragma: no cover

    @abstractmethod
    async def read_file(self, path: str) -> bytes:
        pass  # pragma: no cover

    @abstractmethod
    async def run_command(
        self,
        command: str,
        *,
        cwd: str | None = None,
        background: bool = False,
        timeout: float | None = None,
    ) -> CommandResult:
        """Run a shell command.

        Background commands return immediately with an empty result.
        A non-zero exit code is reported in the result, not raised.
        """
        pass  # pragma: no cover

    @abstractmethod
    def get_host(self, port: int) -> str:
        """Public host name routing to ``port`` inside the sandbox."""
        pass  # pragma: no cover

    @abstractmethod
    async def get_info(self) -> SandboxInfo:
        pass  # pragma: no cover

    @abstractmethod
    async def kill(self) -> None:
        pass  # pragma: no cover


class SandboxProvider(ABC):
    """Factory and directory for sandboxes."""

    @abstractmethod
    async def create(
        self,
        template: str,
        metadata: dict[str, str] | None = None,
        timeout: float | None = None,
    ) -> SandboxSession:
        pass  # pragma: no cover

    @abstractmethod
    async def list(self) -> list[SandboxInfo]:
        pass  # pragma: no cover

    @abstractmethod
    async def connect(self, sandbox_id: str) -> SandboxSession:
        pass  # pragma: no cover
