# Copyright (c) 2025 CoReason, Inc.
#
# This software is proprietary and dual-licensed.
# Licensed under the Prosperity Public License 3.0 (the "License").
# A copy of the license is available at https://prosperitylicense.com/versions/3.0.0
# For details, see the LICENSE file.
# Commercial use beyond a 30-day trial requires a separate license.
#
# Source Code: https://github.com/CoReason-AI/coreason_orchestrator

"""Placement strategies choosing where a new resource is hosted."""

from typing import Protocol, runtime_checkable

from loguru import logger

from coreason_orchestrator.errors import QuotaExceededError
from coreason_orchestrator.models import PlacementTarget, ResourceConfig


@runtime_checkable
class PlacementStrategy(Protocol):
    def select(self, config: ResourceConfig) -> PlacementTarget:
        """Pick a target for ``config`` or raise ``QuotaExceededError``."""
        ...


class CapacityAwarePlacement:
    """Picks the cheapest target with enough headroom.

    A target qualifies when it is available, its CPU, memory and storage
    utilization stay under ``headroom`` after adding the request, and it has the
    requested storage free. Ties on cost go to the least utilized target.
    """

    def __init__(self, targets: list[PlacementTarget], headroom: float = 0.8):
        self.targets = targets
        self.headroom = headroom

    def _projected(self, target: PlacementTarget, config: ResourceConfig) -> tuple[float, float, float]:
        cpu = target.cpu_utilization + config.cpu_cores / target.cpu_cores
        memory = target.memory_utilization + config.memory_gb / target.memory_gb
        storage = target.storage_utilization + config.storage_gb / target.storage_gb
        return cpu, memory, storage

    def candidates(self, config: ResourceConfig) -> list[PlacementTarget]:
        eligible = []
        for target in self.targets:
            if not target.available:
                continue
            if any(value > self.headroom for value in self._projected(target, config)):
                continue
            eligible.append(target)
        return eligible

    def select(self, config: ResourceConfig) -> PlacementTarget:
        eligible = self.candidates(config)
        if not eligible:
            raise QuotaExceededError(
                f"No placement target has capacity for {config.name}",
                {"reason": "capacity_exhausted"},
            )

        def rank(target: PlacementTarget) -> tuple[float, float]:
            load = (target.cpu_utilization + target.memory_utilization + target.storage_utilization) / 3
            return target.cost_per_hour, load

        chosen = min(eligible, key=rank)
        logger.debug(f"Placing {config.name} on {chosen.id} ({len(eligible)} candidates)")
        return chosen
