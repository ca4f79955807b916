"""Storage package."""
from avatar_relay.storage.base import JobStore
from avatar_relay.storage.factory import create_storage, get_storage, reset_storage
from avatar_relay.storage.records import JobQuery, JobRecord

__all__ = ["JobStore", "JobQuery", "JobRecord", "create_storage", "get_storage", "reset_storage"]
