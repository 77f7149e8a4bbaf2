"""
File attachment storage for studyportal.

Attachments (uploads embedded in rich-text notes) are kept out of the main
state document, in two LocalStorage namespaces:

- ``fileAttachments.files``: id -> full record including the payload
- ``fileAttachments.metadata``: id -> metadata only, cheap to list

Full records read back are kept in a small per-instance LRU cache.

Usage:
    from studyportal.attachments import FileAttachmentStorage

    attachments = FileAttachmentStorage(storage)
    meta = attachments.store_file(b"%PDF-1.7 ...", "notes.pdf", "application/pdf")
    record = attachments.get_file(meta["id"])
    pdf_bytes = attachments.decode_file_data(record)
"""

import base64
import itertools
import logging
import mimetypes
import random
import string
import threading
import time
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Callable, Dict, Iterable, List, Optional, Tuple, TypedDict

from .errors import StorageError
from .local_storage import LocalStorage
from .logging_utils import log_error

logger = logging.getLogger("studyportal.attachments")

CACHE_SIZE = 10

FILES_NAMESPACE = "fileAttachments.files"
METADATA_NAMESPACE = "fileAttachments.metadata"

DEFAULT_MIME_TYPE = "application/octet-stream"

_ID_ALPHABET = string.digits + string.ascii_lowercase


class FileAttachmentMetadata(TypedDict):
    id: str
    fileName: str
    fileSize: str
    fileType: str
    uploadedAt: int


class StoredFileAttachment(FileAttachmentMetadata):
    fileData: str


@dataclass
class CacheEntry:
    """A cached full attachment record with its last access stamp."""

    data: StoredFileAttachment
    last_accessed: float
    order: int

    @property
    def recency(self) -> Tuple[float, int]:
        return (self.last_accessed, self.order)


def format_file_size(size: int) -> str:
    """
    Human readable size with one decimal, in steps of 1024.

    Example:
        format_file_size(512)      -> "512 B"
        format_file_size(1536)     -> "1.5 KB"
        format_file_size(5 << 20)  -> "5.0 MB"
    """
    if size < 1024:
        return f"{size} B"
    if size < 1024 ** 2:
        return f"{size / 1024:.1f} KB"
    if size < 1024 ** 3:
        return f"{size / 1024 ** 2:.1f} MB"
    return f"{size / 1024 ** 3:.1f} GB"


def to_data_url(file_bytes: bytes, mime_type: str) -> str:
    encoded = base64.b64encode(file_bytes).decode("ascii")
    return f"data:{mime_type or DEFAULT_MIME_TYPE};base64,{encoded}"


class FileAttachmentStorage:
    """
    Attachment store with a bounded recency-ordered cache.

    Public methods never raise for storage failures; they log and return
    None, False or 0 instead.

    Args:
        storage: Backing LocalStorage
        cache_size: Maximum cached full records (default CACHE_SIZE)
        clock: Returns the current time in seconds; used for ids, upload stamps and LRU
    """

    def __init__(
        self,
        storage: LocalStorage,
        cache_size: int = CACHE_SIZE,
        clock: Callable[[], float] = time.time,
    ):
        if cache_size <= 0:
            raise ValueError(f"cache_size must be positive, got {cache_size}")

        self.storage = storage
        self.cache_size = cache_size
        self._clock = clock
        self._lock = threading.RLock()
        self._cache: Dict[str, CacheEntry] = {}
        # Breaks ties between equal clock readings
        self._counter = itertools.count()
        self._hits = 0
        self._misses = 0

    # -------------------------
    # Helpers
    # -------------------------

    def _now_ms(self) -> int:
        return int(self._clock() * 1000)

    def _generate_file_id(self) -> str:
        """``<epoch ms>_<9 base36 chars>``. Unique in practice, not guaranteed."""
        suffix = "".join(random.choices(_ID_ALPHABET, k=9))
        return f"{self._now_ms()}_{suffix}"

    def _add_to_cache(self, file_id: str, record: StoredFileAttachment) -> None:
        with self._lock:
            if file_id not in self._cache:
                while len(self._cache) >= self.cache_size:
                    oldest = min(self._cache, key=lambda k: self._cache[k].recency)
                    del self._cache[oldest]
                    logger.debug(f"Evicted attachment {oldest} from cache")
            self._cache[file_id] = CacheEntry(
                data=record,
                last_accessed=self._clock(),
                order=next(self._counter),
            )

    # -------------------------
    # Public API
    # -------------------------

    def store_file(
        self,
        file_bytes: bytes,
        file_name: str,
        mime_type: str,
    ) -> Optional[FileAttachmentMetadata]:
        """
        Store an attachment and return its metadata (never the payload).

        Returns:
            Metadata of the stored file, or None if it could not be written
        """
        file_id = self._generate_file_id()
        metadata: FileAttachmentMetadata = {
            "id": file_id,
            "fileName": file_name,
            "fileSize": format_file_size(len(file_bytes)),
            "fileType": mime_type,
            "uploadedAt": self._now_ms(),
        }
        record: StoredFileAttachment = {**metadata, "fileData": to_data_url(file_bytes, mime_type)}

        try:
            self.storage.write(file_id, record, namespace=FILES_NAMESPACE, notify=False)
            self.storage.write(file_id, metadata, namespace=METADATA_NAMESPACE, notify=False)
        except StorageError as e:
            log_error(logger, e, context=f"storing attachment {file_name!r}")
            try:
                self.storage.remove(file_id, namespace=FILES_NAMESPACE, notify=False)
            except StorageError as cleanup_error:
                logger.warning(f"Could not remove partial attachment {file_id}: {cleanup_error}")
            return None

        self._add_to_cache(file_id, record)
        logger.info(f"Stored attachment {file_id} ({metadata['fileSize']}, {file_name})")
        return metadata

    def store_path(self, path: str, mime_type: Optional[str] = None) -> Optional[FileAttachmentMetadata]:
        """Store a file from disk, guessing the mime type from its name."""
        file_path = Path(path)
        try:
            file_bytes = file_path.read_bytes()
        except OSError as e:
            log_error(logger, e, context=f"reading attachment {path}")
            return None

        if mime_type is None:
            mime_type = mimetypes.guess_type(file_path.name)[0] or ""
        return self.store_file(file_bytes, file_path.name, mime_type)

    def get_file_metadata(self, file_id: str) -> Optional[FileAttachmentMetadata]:
        try:
            return self.storage.read(file_id, namespace=METADATA_NAMESPACE)
        except StorageError as e:
            log_error(logger, e, context=f"reading metadata for {file_id}")
            return None

    def get_file(self, file_id: str) -> Optional[StoredFileAttachment]:
        """
        Full record for an attachment.

        A cache hit refreshes its recency and does not touch storage, so it
        may return a record another context has since deleted.
        """
        with self._lock:
            entry = self._cache.get(file_id)
            if entry is not None:
                entry.last_accessed = self._clock()
                entry.order = next(self._counter)
                self._hits += 1
                return entry.data
            self._misses += 1

        try:
            record = self.storage.read(file_id, namespace=FILES_NAMESPACE)
        except StorageError as e:
            log_error(logger, e, context=f"reading attachment {file_id}")
            return None

        if record is not None:
            self._add_to_cache(file_id, record)
        return record

    def delete_file(self, file_id: str) -> bool:
        """Remove an attachment. Deleting an absent id succeeds."""
        with self._lock:
            self._cache.pop(file_id, None)

        try:
            self.storage.remove(file_id, namespace=FILES_NAMESPACE, notify=False)
            self.storage.remove(file_id, namespace=METADATA_NAMESPACE, notify=False)
        except StorageError as e:
            log_error(logger, e, context=f"deleting attachment {file_id}")
            return False
        return True

    def get_all_file_metadata(self) -> List[FileAttachmentMetadata]:
        """Metadata of every attachment, oldest upload first."""
        try:
            metadata = list(self.storage.items(namespace=METADATA_NAMESPACE).values())
        except StorageError as e:
            log_error(logger, e, context="listing attachments")
            return []
        return sorted(metadata, key=lambda m: m.get("uploadedAt", 0))

    def cleanup_orphaned_files(self, referenced_ids: Iterable[str]) -> int:
        """
        Delete every attachment whose id is not in ``referenced_ids``.

        Payloads that lost their metadata entry are collected as well.

        Returns:
            Number of attachments deleted
        """
        referenced = set(referenced_ids)
        try:
            stored_ids = self.storage.list_keys(namespace=METADATA_NAMESPACE)
            stored_ids += [
                k for k in self.storage.list_keys(namespace=FILES_NAMESPACE)
                if k not in stored_ids
            ]
        except StorageError as e:
            log_error(logger, e, context="enumerating attachments for cleanup")
            return 0

        deleted = 0
        for file_id in stored_ids:
            if file_id in referenced:
                continue
            if self.delete_file(file_id):
                deleted += 1
                logger.info(f"Cleaned up orphaned attachment {file_id}")

        return deleted

    @staticmethod
    def decode_file_data(record: StoredFileAttachment) -> bytes:
        """Payload bytes of a stored record."""
        data_url = record["fileData"]
        _, _, encoded = data_url.partition(",")
        return base64.b64decode(encoded)

    # -------------------------
    # Cache inspection
    # -------------------------

    def cached_ids(self) -> List[str]:
        """Cached attachment ids, least recently used first."""
        with self._lock:
            return sorted(self._cache, key=lambda k: self._cache[k].recency)

    def clear_cache(self) -> None:
        with self._lock:
            self._cache.clear()

    def cache_stats(self) -> Dict[str, Any]:
        with self._lock:
            total = self._hits + self._misses
            return {
                "hits": self._hits,
                "misses": self._misses,
                "hit_rate": self._hits / total if total else 0.0,
                "entries": len(self._cache),
                "capacity": self.cache_size,
            }


__all__ = [
    "FileAttachmentStorage",
    "FileAttachmentMetadata",
    "StoredFileAttachment",
    "CacheEntry",
    "CACHE_SIZE",
    "FILES_NAMESPACE",
    "METADATA_NAMESPACE",
    "format_file_size",
    "to_data_url",
]
