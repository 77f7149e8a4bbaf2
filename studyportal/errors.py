"""
Exception types for the studyportal storage layer.

These are raised inside the package (raw storage operations, import
validation) and caught at the public boundary of each component, which
turns them into sentinel results and log entries.
"""

from typing import Any, Dict, Optional


class StudyPortalError(Exception):
    """Base class for all studyportal errors."""

    def __init__(self, message: str, context: Optional[Dict[str, Any]] = None):
        super().__init__(message)
        self.context = context or {}

    def __str__(self) -> str:
        message = super().__str__()
        if self.context:
            details = ", ".join(f"{k}={v}" for k, v in self.context.items())
            return f"{message} ({details})"
        return message


class StorageError(StudyPortalError):
    """Raised when the persistence medium cannot be read or written."""
    pass


class StorageQuotaError(StorageError):
    """Raised when a write would exceed the configured storage quota."""

    def __init__(self, message: str, used: int, quota: int, **kwargs: Any):
        context = kwargs.pop("context", {})
        context.update({"used": used, "quota": quota})
        super().__init__(message, context=context)
        self.used = used
        self.quota = quota


class SerializationError(StorageError):
    """Raised when a value cannot be encoded to or decoded from JSON."""
    pass


class ImportDocumentError(StudyPortalError):
    """Raised when a transfer document is malformed."""
    pass


__all__ = [
    "StudyPortalError",
    "StorageError",
    "StorageQuotaError",
    "SerializationError",
    "ImportDocumentError",
]
