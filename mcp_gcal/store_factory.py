import logging
from pathlib import Path

from .config import Config
from .store_interface import CredentialStore

logger = logging.getLogger(__name__)


class StoreFactory:
    """Factory class for creating credential store instances"""

    @staticmethod
    def create_store(config: Config) -> CredentialStore:
        """Create the configured store; call ``connect()`` before use"""

        if config.database.type == "sqlite":
            from .sqlite_store import SQLiteCredentialStore
            Path(config.database.path).parent.mkdir(parents=True, exist_ok=True)
            return SQLiteCredentialStore(config.database.path)

        elif config.database.type == "postgresql":
            from .postgres_store import PostgresCredentialStore
            return PostgresCredentialStore(
                config.database.connection_string,
                pool_size=config.database.pool_size
            )

        else:
            raise ValueError(f"Unsupported database type: {config.database.type}")

    @staticmethod
    async def open_store(config: Config) -> CredentialStore:
        """Create and connect the configured store"""
        store = StoreFactory.create_store(config)
        await store.connect()
        logger.info(f"Credential store ready ({config.database.type})")
        return store
