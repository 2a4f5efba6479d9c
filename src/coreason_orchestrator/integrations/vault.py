import os

from loguru import logger

ENV_PREFIX = "COREASON_ORCHESTRATOR_"


class VaultIntegrator:
    """
    Reads control-plane secrets (provider API keys, registry credentials)
    from Environment Variables.
    """

    def __init__(self, prefix: str = ENV_PREFIX):
        self.prefix = prefix

    def get_secret(self, key: str) -> str | None:
        """
        Fetch a secret by its plain name, then by its prefixed name.
        """
        val = os.getenv(key)
        if not val:
            # Deployment manifests usually namespace secrets with the service prefix
            val = os.getenv(f"{self.prefix}{key}")

        if not val:
            logger.debug(f"Secret {key} not found in environment.")

        return val
