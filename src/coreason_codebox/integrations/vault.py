import os
from typing import Protocol, runtime_checkable

from loguru import logger


@runtime_checkable
class VaultClientProtocol(Protocol):
    """
    Protocol for a secrets client, to allow dependency injection and testing.
    """

    def get_secret(self, key: str) -> str | None: ...


class VaultIntegrator:
    """
    Resolves secrets from an injected client, falling back to environment variables.
    """

    def __init__(self, client: VaultClientProtocol | None = None):
        self.client = client

    def get_secret(self, key: str) -> str | None:
        """
        Fetch a secret by key.

        The injected client wins; a failing client is logged and the environment
        is consulted instead (`KEY`, then `COREASON_CODEBOX_KEY`).
        """
        if self.client is not None:
            try:
                val = self.client.get_secret(key)
                if val:
                    return val
            except Exception as e:
                logger.warning(f"Failed to fetch secret {key} from Vault: {e}")

        val = os.getenv(key) or os.getenv(f"COREASON_CODEBOX_{key}")
        if not val:
            logger.debug(f"Secret {key} not found in environment.")

        return val
