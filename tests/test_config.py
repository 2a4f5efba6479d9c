from unittest.mock import MagicMock

import pytest
from coreason_orchestrator.config import OrchestratorConfig
from pydantic import ValidationError


def test_defaults(mock_vault_integrator: MagicMock) -> None:
    mock_vault_integrator.return_value.get_secret.return_value = None
    config = OrchestratorConfig()

    assert config.max_sandboxes_per_user == 3
    assert config.sandbox_cleanup_interval == 300.0
    assert config.sandbox_max_idle == 1800.0
    assert config.sandbox_max_age == 3600.0
    assert config.registry_backend == "memory"
    assert config.resource_engines == {"postgres", "redis"}
    assert config.timezone == "UTC"
    assert [target.id for target in config.placement_targets] == ["local-1"]
    assert config.e2b_api_key is None


def test_env_prefix(monkeypatch: pytest.MonkeyPatch, mock_vault_integrator: MagicMock) -> None:
    mock_vault_integrator.return_value.get_secret.return_value = None
    monkeypatch.setenv("COREASON_ORCHESTRATOR_MAX_SANDBOXES_PER_USER", "5")
    monkeypatch.setenv("COREASON_ORCHESTRATOR_REGISTRY_BACKEND", "redis")
    monkeypatch.setenv("COREASON_ORCHESTRATOR_TIMEZONE", "Europe/Berlin")

    config = OrchestratorConfig()

    assert config.max_sandboxes_per_user == 5
    assert config.registry_backend == "redis"
    assert config.timezone == "Europe/Berlin"


def test_vault_secrets(mock_vault_integrator: MagicMock) -> None:
    secrets = {"E2B_API_KEY": "vault-key", "REDIS_URL": "redis://vault:6379/3"}
    mock_vault_integrator.return_value.get_secret.side_effect = secrets.get

    config = OrchestratorConfig()

    assert config.e2b_api_key == "vault-key"
    assert config.redis_url == "redis://vault:6379/3"


def test_init_overrides_vault(mock_vault_integrator: MagicMock) -> None:
    mock_vault_integrator.return_value.get_secret.return_value = "vault-value"

    config = OrchestratorConfig(e2b_api_key="explicit")

    assert config.e2b_api_key == "explicit"


@pytest.mark.parametrize(
    "overrides",
    [
        {"max_sandboxes_per_user": 0},
        {"max_resources_per_user": 0},
        {"placement_headroom": 0},
        {"placement_headroom": 1.5},
        {"registry_backend": "etcd"},
    ],
)
def test_invalid_values(overrides: dict[str, object], mock_vault_integrator: MagicMock) -> None:
    mock_vault_integrator.return_value.get_secret.return_value = None
    with pytest.raises(ValidationError):
        OrchestratorConfig(**overrides)  # type: ignore[arg-type]
