import pytest
from coreason_orchestrator.errors import InvalidTransitionError
from coreason_orchestrator.models import (
    DeploymentRecord,
    DeploymentStatus,
    MaintenanceWindow,
    ResourceConfig,
    ScalingPolicy,
    TenantRequest,
)
from pydantic import ValidationError


def test_deployment_happy_path() -> None:
    record = DeploymentRecord(user_id="user-1")
    assert record.id.startswith("dep_")

    for status in (
        DeploymentStatus.PROVISIONING,
        DeploymentStatus.RUNNING,
        DeploymentStatus.STOPPING,
        DeploymentStatus.STOPPED,
        DeploymentStatus.DESTROYED,
    ):
        record.transition(status)

    assert record.status == DeploymentStatus.DESTROYED
    assert record.is_terminal


def test_deployment_failure_keeps_error() -> None:
    record = DeploymentRecord(user_id="user-1", status=DeploymentStatus.PROVISIONING)
    record.transition(DeploymentStatus.FAILED, error="npm install failed")

    assert record.error == "npm install failed"
    assert record.is_terminal
    assert record.can_transition(DeploymentStatus.DESTROYED)


@pytest.mark.parametrize(
    "start, target",
    [
        (DeploymentStatus.PENDING, DeploymentStatus.RUNNING),
        (DeploymentStatus.RUNNING, DeploymentStatus.PROVISIONING),
        (DeploymentStatus.STOPPED, DeploymentStatus.RUNNING),
        (DeploymentStatus.DESTROYED, DeploymentStatus.PENDING),
        (DeploymentStatus.FAILED, DeploymentStatus.RUNNING),
    ],
)
def test_invalid_transitions(start: DeploymentStatus, target: DeploymentStatus) -> None:
    record = DeploymentRecord(user_id="user-1", status=start)

    with pytest.raises(InvalidTransitionError) as exc_info:
        record.transition(target)

    assert exc_info.value.details["from"] == start.value
    assert record.status == start


def test_maintenance_window() -> None:
    window = MaintenanceWindow(start="02:30", end="04:00", days_of_week=[6, 0, 6])

    assert window.days_of_week == [0, 6]
    assert window.to_cron() == "30 2 * * 0,6"
    assert window.duration_minutes == 90


def test_maintenance_window_across_midnight() -> None:
    assert MaintenanceWindow(start="23:00", end="01:00").duration_minutes == 120


@pytest.mark.parametrize(
    "fields",
    [
        {"start": "2:30pm", "end": "04:00"},
        {"start": "24:00", "end": "04:00"},
        {"start": "02:00", "end": "04:60"},
        {"start": "02:00", "end": "04:00", "days_of_week": []},
        {"start": "02:00", "end": "04:00", "days_of_week": [7]},
    ],
)
def test_maintenance_window_validation(fields: dict[str, object]) -> None:
    with pytest.raises(ValidationError):
        MaintenanceWindow(**fields)  # type: ignore[arg-type]


@pytest.mark.parametrize(
    "fields",
    [
        {"min_replicas": 4, "max_replicas": 2},
        {"scale_up_threshold": 0.5, "scale_down_threshold": 0.5},
        {"scale_up_threshold": 1.5},
    ],
)
def test_scaling_policy_validation(fields: dict[str, object]) -> None:
    with pytest.raises(ValidationError):
        ScalingPolicy(**fields)  # type: ignore[arg-type]


def test_resource_config_defaults() -> None:
    config = ResourceConfig(name="cache")
    assert config.replicas == 1
    assert config.storage_gb == 10
    assert config.scaling is None


def test_tenant_request_database_number_range() -> None:
    with pytest.raises(ValidationError):
        TenantRequest(tenant_id="acme", isolation="database", database_number=16)
