# Copyright (c) 2025 CoReason, Inc.
#
# This software is proprietary and dual-licensed.
# Licensed under the Prosperity Public License 3.0 (the "License").
# A copy of the license is available at https://prosperitylicense.com/versions/3.0.0
# For details, see the LICENSE file.
# Commercial use beyond a 30-day trial requires a separate license.
#
# Source Code: https://github.com/CoReason-AI/coreason_orchestrator

import anyio

from coreason_orchestrator.config import OrchestratorConfig
from coreason_orchestrator.control_plane import ControlPlane
from coreason_orchestrator.utils.logger import logger


async def serve(control_plane: ControlPlane) -> None:
    """Run the control plane until cancelled, then shut it down."""
    await control_plane.start()
    try:
        await anyio.sleep_forever()
    finally:
        with anyio.CancelScope(shield=True):
            await control_plane.shutdown()


def main() -> None:
    """Entry point for the control plane service."""
    config = OrchestratorConfig()
    logger.info(f"Registry backend: {config.registry_backend}, engines: {sorted(config.resource_engines)}")
    try:
        anyio.run(serve, ControlPlane(config))
    except KeyboardInterrupt:
        logger.info("Interrupted")


if __name__ == "__main__":  # pragma: no cover
    main()
