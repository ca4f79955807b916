"""Error taxonomy shared by dispatcher, reconciler and HTTP surface.

Validation errors go back to the caller and are never retried. Configuration
errors are fatal at startup. Provider errors are declared next to the client.
"""

from __future__ import annotations

from enum import Enum
from typing import Optional


class ErrorCode(str, Enum):
    INPUT = "E_INPUT"
    CONFIG = "E_CONFIG"
    NOT_FOUND = "E_NOT_FOUND"
    UPSTREAM = "E_UPSTREAM"
    STORAGE = "E_STORAGE"
    INTERNAL = "E_INTERNAL"


class AvatarRelayError(Exception):
    """Base class for service errors."""

    code: ErrorCode = ErrorCode.INTERNAL


class ValidationError(AvatarRelayError):
    """Request is missing a required field or carries an invalid value."""

    code = ErrorCode.INPUT

    def __init__(self, field: str, message: Optional[str] = None):
        self.field = field
        super().__init__(message or f"{field} is required")


class ConfigurationError(AvatarRelayError):
    """Missing credentials or secrets."""

    code = ErrorCode.CONFIG


class JobNotFoundError(AvatarRelayError):
    code = ErrorCode.NOT_FOUND

    def __init__(self, video_id: str):
        self.video_id = video_id
        super().__init__(f"Video {video_id} not found")


class StorageError(AvatarRelayError):
    """Persistence backend failed to read or write."""

    code = ErrorCode.STORAGE
