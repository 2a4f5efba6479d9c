import asyncio
import os
from typing import Any, Callable, TypeVar

from e2b import CommandExitException
from e2b_code_interpreter import Sandbox as E2BSandbox
from loguru import logger

from coreason_orchestrator.errors import ProviderError
from coreason_orchestrator.providers.sandbox import (
    CommandResult,
    SandboxInfo,
    SandboxProvider,
    SandboxSession,
)

T = TypeVar("T")


class E2BSession(SandboxSession):
    """E2B Cloud implementation of a sandbox session.

    The E2B SDK is synchronous, so every call runs in a worker thread and is
    bounded by ``timeout``.
    """

    def __init__(self, sandbox: E2BSandbox, timeout: float = 300.0):
        """Initializes the E2BSession.

        Args:
            sandbox: A connected E2B sandbox.
            timeout: Default per-call timeout in seconds.
        """
        self.sandbox = sandbox
        self.timeout = timeout
        self.envs: dict[str, str] = {}

    @property
    def sandbox_id(self) -> str:
        return str(self.sandbox.sandbox_id)

    async def _run_sdk_command(
        self, func: Callable[..., T], *args: Any, call_timeout: float | None = None, **kwargs: Any
    ) -> T:
        """Helper to run an SDK call in a thread with timeout enforcement.

        Raises:
            TimeoutError: If the call exceeds the timeout.
        """
        limit = call_timeout or self.timeout
        try:
            return await asyncio.wait_for(asyncio.to_thread(func, *args, **kwargs), timeout=limit)
        except asyncio.TimeoutError as e:
            logger.warning(f"E2B call {getattr(func, '__name__', func)} timed out after {limit}s")
            raise TimeoutError(f"E2B call exceeded {limit} seconds limit.") from e

    async def initialize(self, env: dict[str, str], timeout: float | None = None) -> None:
        self.envs.update(env)
        if timeout:
            await self._run_sdk_command(self.sandbox.set_timeout, int(timeout))

    async def write_file(self, path: str, content: str | bytes) -> None:
        await self._run_sdk_command(self.sandbox.files.write, path, content)

    async def read_file(self, path: str) -> bytes:
        data = await self._run_sdk_command(self.sandbox.files.read, path, format="bytes")
        return bytes(data)

    async def run_command(
        self,
        command: str,
        *,
        cwd: str | None = None,
        background: bool = False,
        timeout: float | None = None,
    ) -> CommandResult:
        limit = timeout or self.timeout
        try:
            result = await self._run_sdk_command(
                self.sandbox.commands.run,
                command,
                background=background,
                cwd=cwd,
                envs=self.envs or None,
                timeout=limit,
                call_timeout=limit + 5,
            )
        except CommandExitException as e:
            # E2B raises on non-zero exit codes
            return CommandResult(stdout=e.stdout, stderr=e.stderr, exit_code=e.exit_code)
        if background:
            return CommandResult()
        return CommandResult(stdout=result.stdout, stderr=result.stderr, exit_code=result.exit_code)

    def get_host(self, port: int) -> str:
        return str(self.sandbox.get_host(port))

    async def get_info(self) -> SandboxInfo:
        info = await self._run_sdk_command(self.sandbox.get_info)
        return SandboxInfo(
            sandbox_id=info.sandbox_id,
            status=info.state.value,
            started_at=info.started_at,
            template=info.template_id,
            metadata=dict(info.metadata or {}),
        )

    async def kill(self) -> None:
        logger.info(f"Killing E2B sandbox {self.sandbox_id}")
        await self._run_sdk_command(self.sandbox.kill)


class E2BProvider(SandboxProvider):
    """Creates, lists and reconnects E2B sandboxes."""

    def __init__(self, api_key: str | None = None, call_timeout: float = 300.0):
        """Initializes the E2BProvider.

        Args:
            api_key: E2B API Key. Defaults to E2B_API_KEY env var.
            call_timeout: Default per-call timeout for sessions, in seconds.
        """
        self.api_key = api_key or os.getenv("E2B_API_KEY")
        self.call_timeout = call_timeout

    async def create(
        self,
        template: str,
        metadata: dict[str, str] | None = None,
        timeout: float | None = None,
    ) -> SandboxSession:
        logger.info(f"Starting E2B sandbox (template: {template})")
        try:
            sandbox = await asyncio.to_thread(
                E2BSandbox,
                template=template,
                timeout=int(timeout) if timeout else None,
                metadata=metadata,
                api_key=self.api_key,
            )
        except Exception as e:
            logger.error(f"Failed to start E2B sandbox: {e}")
            raise ProviderError.wrap(e, "sandbox create") from e
        logger.info(f"E2B sandbox started: {sandbox.sandbox_id}")
        return E2BSession(sandbox, timeout=self.call_timeout)

    def _list_all(self) -> list[Any]:
        paginator = E2BSandbox.list(api_key=self.api_key)
        items: list[Any] = []
        while paginator.has_next:
            items.extend(paginator.next_items())
        return items

    async def list(self) -> list[SandboxInfo]:
        items = await asyncio.to_thread(self._list_all)
        return [
            SandboxInfo(
                sandbox_id=item.sandbox_id,
                status=item.state.value,
                started_at=item.started_at,
                template=item.template_id,
                metadata=dict(item.metadata or {}),
            )
            for item in items
        ]

    async def connect(self, sandbox_id: str) -> SandboxSession:
        try:
            sandbox = await asyncio.to_thread(E2BSandbox.connect, sandbox_id, api_key=self.api_key)
        except Exception as e:
            raise ProviderError.wrap(e, f"sandbox connect {sandbox_id}") from e
        return E2BSession(sandbox, timeout=self.call_timeout)
