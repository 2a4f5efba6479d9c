# Copyright (c) 2025 CoReason, Inc.
#
# This software is proprietary and dual-licensed.
# Licensed under the Prosperity Public License 3.0 (the "License").
# A copy of the license is available at https://prosperitylicense.com/versions/3.0.0
# For details, see the LICENSE file.
# Commercial use beyond a 30-day trial requires a separate license.
#
# Source Code: https://github.com/CoReason-AI/coreason_orchestrator

from loguru import logger

from coreason_orchestrator.events import Event, EventBus, EventType

WARNING_EVENTS = frozenset(
    {EventType.RESOURCE_FAILED, EventType.HEALTH_ALERT, EventType.TASK_FAILED}
)


class AuditIntegrator:
    """Audit trail for lifecycle events.

    Subscribes to the event bus and writes one ``AUDIT:`` line per event to the
    standard logger.
    """

    def __init__(self, service_name: str = "coreason-orchestrator", enabled: bool = True):
        """Initializes the AuditIntegrator.

        Args:
            service_name: The name of the service recorded on each audit line.
            enabled: Whether to enable audit logging.
        """
        self.service_name = service_name
        self.enabled = enabled
        if self.enabled:
            logger.info("Audit logging enabled (Local Mode - STDOUT only)")

    def attach(self, bus: EventBus) -> None:
        if self.enabled:
            bus.subscribe(self.record)

    def record(self, event: Event) -> None:
        """Log a single event.

        Failure and alert events are logged at WARNING, everything else at INFO.
        """
        if not self.enabled:
            return
        message = (
            f"AUDIT: [{self.service_name}] {event.type.value} resource={event.resource_id} "
            f"payload={event.payload}"
        )
        if event.type in WARNING_EVENTS:
            logger.warning(message)
        else:
            logger.info(message)
