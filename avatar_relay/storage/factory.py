"""
Storage factory - picks the job store backend from config.
"""

import logging
from typing import Optional

from avatar_relay.config import Config
from avatar_relay.storage.base import JobStore
from avatar_relay.storage.json_storage import JsonJobStore

logger = logging.getLogger(__name__)

_storage_instance: Optional[JobStore] = None


def create_storage(config: Config) -> JobStore:
    """
    Create a job store.

    STORAGE_MODE=postgres uses asyncpg; json keeps records under
    STORAGE_DATA_DIR; auto picks postgres when DATABASE_URL is set.
    """
    mode = config.resolved_storage_mode
    if mode == "postgres":
        from avatar_relay.storage.postgres_storage import PostgresJobStore

        logger.info("[STORAGE] mode=postgres dsn=%s", config.mask_secret(config.database_url, 10))
        return PostgresJobStore(config.database_url)
    logger.info("[STORAGE] mode=json dir=%s", config.storage_data_dir)
    return JsonJobStore(config.storage_data_dir)


def get_storage(config: Config) -> JobStore:
    """Get the process-wide store (singleton)."""
    global _storage_instance
    if _storage_instance is None:
        _storage_instance = create_storage(config)
    return _storage_instance


def reset_storage() -> None:
    global _storage_instance
    _storage_instance = None
