from typing import Any, Literal

from pydantic import Field
from pydantic_settings import BaseSettings, PydanticBaseSettingsSource, SettingsConfigDict

from coreason_orchestrator.integrations.vault import VaultIntegrator
from coreason_orchestrator.models import PlacementTarget


class VaultSettingsSource(PydanticBaseSettingsSource):
    """
    Custom Pydantic Settings Source that reads secrets from Vault.
    """

    def get_field_value(self, field: Any, field_name: str) -> tuple[Any, str, bool]:
        # Required by the abstract base class; __call__ returns the full dict instead.
        return None, field_name, False  # pragma: no cover

    def __call__(self) -> dict[str, Any]:
        vault = VaultIntegrator()
        secrets: dict[str, Any] = {}

        # Config Field -> Vault Key
        mapping = {
            "e2b_api_key": "E2B_API_KEY",
            "redis_url": "REDIS_URL",
        }

        for field, key in mapping.items():
            val = vault.get_secret(key)
            if val:
                secrets[field] = val

        return secrets


def _default_targets() -> list[PlacementTarget]:
    return [PlacementTarget(id="local-1", region="local")]


class OrchestratorConfig(BaseSettings):
    """
    Configuration for the control plane. Durations are in seconds.
    """

    # Sandbox lifecycle
    max_sandboxes_per_user: int = Field(default=3, ge=1)
    sandbox_template: str = "base"
    sandbox_timeout: float = 3600.0
    sandbox_cleanup_interval: float = 300.0  # 5 minutes
    sandbox_max_idle: float = 1800.0  # 30 minutes
    sandbox_max_age: float = 3600.0  # 1 hour
    app_dir: str = "/home/user/app"
    install_command: str = "npm install"
    start_command: str = "npm start"
    app_port: int = 3000
    app_log_path: str = "/tmp/app.log"
    command_timeout: float = 300.0
    health_check_path: str | None = None
    max_retries: int = 3
    retry_base_delay: float = 1.0
    retry_max_delay: float = 30.0

    # Resource orchestration
    max_resources_per_user: int = Field(default=10, ge=1)
    max_storage_gb_per_user: int = 100
    health_check_interval: float = 60.0
    metrics_interval: float = 30.0
    resource_cleanup_interval: float = 300.0
    placement_targets: list[PlacementTarget] = Field(default_factory=_default_targets)
    placement_headroom: float = Field(default=0.8, gt=0, le=1)

    # Task scheduling
    timezone: str = "UTC"
    task_retry_backoff: float = 60.0
    task_retention_days: int = 7
    task_cleanup_interval: float = 3600.0  # hourly
    task_timeout_check_interval: float = 60.0
    misfire_grace_time: int = 60

    # Backends
    registry_backend: Literal["memory", "redis"] = "memory"
    redis_url: str = "redis://localhost:6379/0"
    redis_key_prefix: str = "coreason-orchestrator"
    resource_engines: set[str] = {"postgres", "redis"}
    enable_audit_logging: bool = True

    # E2B Configuration
    e2b_api_key: str | None = None

    model_config = SettingsConfigDict(
        env_prefix="COREASON_ORCHESTRATOR_",
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore",
    )

    @classmethod
    def settings_customise_sources(
        cls,
        settings_cls: type[BaseSettings],
        init_settings: PydanticBaseSettingsSource,
        env_settings: PydanticBaseSettingsSource,
        dotenv_settings: PydanticBaseSettingsSource,
        file_secret_settings: PydanticBaseSettingsSource,
    ) -> tuple[PydanticBaseSettingsSource, ...]:
        return (
            init_settings,
            env_settings,
            dotenv_settings,
            VaultSettingsSource(settings_cls),
            file_secret_settings,
        )
