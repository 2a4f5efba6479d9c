from coreason_orchestrator.config import OrchestratorConfig
from coreason_orchestrator.providers.e2b import E2BProvider
from coreason_orchestrator.providers.engines import PostgresEngineProvider, RedisEngineProvider
from coreason_orchestrator.providers.resource import ResourceProvider
from coreason_orchestrator.providers.sandbox import SandboxProvider
from coreason_orchestrator.registry import MemoryRegistry, RedisRegistry, Registry

ENGINE_PROVIDERS: dict[str, type[PostgresEngineProvider] | type[RedisEngineProvider]] = {
    "postgres": PostgresEngineProvider,
    "redis": RedisEngineProvider,
}


class ControlPlaneFactory:
    """
    Factory to create control-plane backends based on configuration.
    """

    @staticmethod
    def get_registry(config: OrchestratorConfig) -> Registry:
        """
        Returns the configured state registry.
        """
        if config.registry_backend == "redis":
            return RedisRegistry(url=config.redis_url, key_prefix=config.redis_key_prefix)
        elif config.registry_backend == "memory":
            return MemoryRegistry()
        else:
            # This should be unreachable due to Pydantic validation, but for safety:
            raise ValueError(f"Unknown registry backend: {config.registry_backend}")  # pragma: no cover

    @staticmethod
    def get_sandbox_provider(config: OrchestratorConfig) -> SandboxProvider:
        return E2BProvider(api_key=config.e2b_api_key, call_timeout=config.command_timeout)

    @staticmethod
    def get_resource_providers(config: OrchestratorConfig, sandboxes: SandboxProvider) -> dict[str, ResourceProvider]:
        """
        Returns one provider per enabled engine, all hosted on ``sandboxes``.
        """
        providers: dict[str, ResourceProvider] = {}
        for engine in sorted(config.resource_engines):
            provider_cls = ENGINE_PROVIDERS.get(engine)
            if provider_cls is None:
                raise ValueError(f"Unknown resource engine: {engine}")
            providers[engine] = provider_cls(sandboxes, command_timeout=config.command_timeout)
        return providers
