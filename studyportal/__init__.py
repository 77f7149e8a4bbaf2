"""
studyportal: local-first persistence for the Study Portal app.

Provides:
- Durable key/value storage with cross-context change notification
- Reactive per-key state bindings
- File attachment storage with an LRU cache
- Export/import of the full application state
"""

from .errors import (
    StudyPortalError,
    StorageError,
    StorageQuotaError,
    SerializationError,
    ImportDocumentError,
)

from .local_storage import (
    LocalStorage,
    StorageChannel,
    StorageEvent,
)

from .local_state import LocalState

from .attachments import (
    FileAttachmentStorage,
    FileAttachmentMetadata,
    StoredFileAttachment,
    CACHE_SIZE,
    format_file_size,
)

from .data_transfer import DataTransfer

from .app_state import AppState, create_initial_state

__version__ = "0.1.0"

__all__ = [
    # Errors
    "StudyPortalError",
    "StorageError",
    "StorageQuotaError",
    "SerializationError",
    "ImportDocumentError",
    # Storage
    "LocalStorage",
    "StorageChannel",
    "StorageEvent",
    "LocalState",
    # Attachments
    "FileAttachmentStorage",
    "FileAttachmentMetadata",
    "StoredFileAttachment",
    "CACHE_SIZE",
    "format_file_size",
    # Transfer
    "DataTransfer",
    # Wiring
    "AppState",
    "create_initial_state",
]
