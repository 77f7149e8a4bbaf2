"""
SQLite local storage for studyportal.

Key-value store with namespaces and a change log. Several LocalStorage
instances opened on the same database file act as separate execution
contexts (tabs/windows of the same client): a write in one context is
delivered to the listeners of the others either immediately, through a
shared StorageChannel, or when they call sync().
"""

import json
import logging
import sqlite3
import threading
import uuid
from contextlib import contextmanager
from dataclasses import dataclass
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Callable, Dict, Iterator, List, Optional, Tuple

from .config_loader import get_db_path, get_sync_interval
from .errors import SerializationError, StorageError, StorageQuotaError
from .logging_utils import log_storage_operation

logger = logging.getLogger("studyportal.local_storage")

DEFAULT_NAMESPACE = "state"

# Change log rows kept for contexts that sync late
MAX_CHANGE_LOG = 1000

DEFAULT_TIMEOUT = 10.0


@dataclass(frozen=True)
class StorageEvent:
    """A change to one key, as seen by listeners.

    ``new_value`` and ``old_value`` are the serialized JSON text, mirroring the
    browser storage event. ``new_value`` is None when the key was removed.
    """

    key: str
    new_value: Optional[str]
    old_value: Optional[str]
    namespace: str
    seq: int
    origin: str


StorageListener = Callable[[StorageEvent], None]


class StorageChannel:
    """In-process broadcast of change events between LocalStorage instances."""

    def __init__(self):
        self._members: List["LocalStorage"] = []
        self._lock = threading.Lock()

    def join(self, storage: "LocalStorage") -> None:
        with self._lock:
            if storage not in self._members:
                self._members.append(storage)

    def leave(self, storage: "LocalStorage") -> None:
        with self._lock:
            if storage in self._members:
                self._members.remove(storage)

    def publish(self, event: StorageEvent) -> None:
        with self._lock:
            members = list(self._members)
        for member in members:
            if member.context_id != event.origin:
                member._receive(event)


def _utcnow() -> str:
    return datetime.now(timezone.utc).isoformat()


class LocalStorage:
    """SQLite key-value store shared by every context of one client."""

    def __init__(
        self,
        db_path: Optional[str] = None,
        context_id: Optional[str] = None,
        quota_bytes: Optional[int] = None,
        channel: Optional[StorageChannel] = None,
    ):
        self.db_path = db_path or get_db_path()
        self.context_id = context_id or uuid.uuid4().hex[:12]
        self.quota_bytes = quota_bytes
        self._lock = threading.RLock()
        self._listeners: List[StorageListener] = []
        self._applied_seq: Dict[Tuple[str, str], int] = {}
        self._sync_thread: Optional[threading.Thread] = None
        self._sync_stop = threading.Event()

        self._init_db()
        # A new context starts from the current end of the log; it does not replay history
        self._last_seq = self._current_seq()

        self._channel = channel
        if channel is not None:
            channel.join(self)

        logger.debug(f"LocalStorage opened: context={self.context_id}, db={self.db_path}")

    # -------------------------
    # Connection handling
    # -------------------------

    def _init_db(self) -> None:
        Path(self.db_path).parent.mkdir(parents=True, exist_ok=True)
        try:
            with self._transaction() as conn:
                conn.execute("""CREATE TABLE IF NOT EXISTS kv (
                    namespace TEXT NOT NULL,
                    key TEXT NOT NULL,
                    value TEXT NOT NULL,
                    created_at TEXT NOT NULL,
                    updated_at TEXT NOT NULL,
                    PRIMARY KEY (namespace, key)
                )""")
                conn.execute("""CREATE TABLE IF NOT EXISTS changes (
                    seq INTEGER PRIMARY KEY AUTOINCREMENT,
                    namespace TEXT NOT NULL,
                    key TEXT NOT NULL,
                    new_value TEXT,
                    old_value TEXT,
                    origin TEXT NOT NULL,
                    created_at TEXT NOT NULL
                )""")
        except sqlite3.Error as e:
            raise StorageError(f"Failed to initialize storage: {e}", context={"db": self.db_path}) from e

    @contextmanager
    def _connect(self) -> Iterator[sqlite3.Connection]:
        conn = sqlite3.connect(self.db_path, timeout=DEFAULT_TIMEOUT, isolation_level=None)
        try:
            yield conn
        finally:
            conn.close()

    @contextmanager
    def _transaction(self) -> Iterator[sqlite3.Connection]:
        """Write transaction that takes the database write lock up front."""
        with self._connect() as conn:
            conn.execute("BEGIN IMMEDIATE")
            try:
                yield conn
            except BaseException:
                conn.execute("ROLLBACK")
                raise
            conn.execute("COMMIT")

    def _current_seq(self) -> int:
        try:
            with self._connect() as conn:
                return conn.execute("SELECT COALESCE(MAX(seq), 0) FROM changes").fetchone()[0]
        except sqlite3.Error as e:
            logger.warning(f"Failed to read change log position: {e}")
            return 0

    # -------------------------
    # Serialization
    # -------------------------

    @staticmethod
    def _encode(key: str, value: Any) -> str:
        try:
            return json.dumps(value, ensure_ascii=False)
        except (TypeError, ValueError) as e:
            raise SerializationError(f"Value is not JSON-serializable: {e}", context={"key": key}) from e

    @staticmethod
    def _decode(key: str, raw: str) -> Any:
        try:
            return json.loads(raw)
        except json.JSONDecodeError as e:
            raise SerializationError(f"Stored value is not valid JSON: {e}", context={"key": key}) from e

    def _check_quota(
        self,
        conn: sqlite3.Connection,
        key: str,
        payload: str,
        old_payload: Optional[str],
    ) -> None:
        used = self._used_bytes(conn)
        if old_payload is not None:
            used -= len(key.encode("utf-8")) + len(old_payload.encode("utf-8"))
        needed = used + len(key.encode("utf-8")) + len(payload.encode("utf-8"))
        if needed > self.quota_bytes:
            raise StorageQuotaError(
                f"Storage quota exceeded writing {key!r}",
                used=needed,
                quota=self.quota_bytes,
            )

    @staticmethod
    def _used_bytes(conn: sqlite3.Connection) -> int:
        row = conn.execute(
            "SELECT COALESCE(SUM(LENGTH(CAST(key AS BLOB)) + LENGTH(CAST(value AS BLOB))), 0) FROM kv"
        ).fetchone()
        return row[0]

    # -------------------------
    # Raw operations (raise StorageError)
    # -------------------------

    def read(self, key: str, namespace: str = DEFAULT_NAMESPACE, default: Any = None) -> Any:
        """Read a value, returning ``default`` when the key is absent."""
        try:
            with self._connect() as conn:
                row = conn.execute(
                    "SELECT value FROM kv WHERE namespace=? AND key=?",
                    (namespace, key),
                ).fetchone()
        except sqlite3.Error as e:
            raise StorageError(f"Failed to read {key!r}: {e}", context={"namespace": namespace}) from e
        if row is None:
            return default
        return self._decode(key, row[0])

    def write(
        self,
        key: str,
        value: Any,
        namespace: str = DEFAULT_NAMESPACE,
        notify: bool = True,
    ) -> Optional[StorageEvent]:
        """
        Persist a value, replacing any previous value for the key.

        When ``notify`` is set the write is appended to the change log and a
        StorageEvent is emitted to this context's listeners and the channel.

        Returns:
            The emitted event, or None when ``notify`` is False.

        Raises:
            SerializationError: value cannot be encoded as JSON
            StorageQuotaError: the write would exceed ``quota_bytes``
            StorageError: the database could not be written
        """
        payload = self._encode(key, value)
        now = _utcnow()
        seq = None

        try:
            with self._lock, self._transaction() as conn:
                row = conn.execute(
                    "SELECT value FROM kv WHERE namespace=? AND key=?",
                    (namespace, key),
                ).fetchone()
                old_payload = row[0] if row else None

                if self.quota_bytes:
                    self._check_quota(conn, key, payload, old_payload)

                conn.execute(
                    """INSERT INTO kv (namespace, key, value, created_at, updated_at)
                    VALUES (?, ?, ?, ?, ?)
                    ON CONFLICT(namespace, key) DO UPDATE SET
                        value=excluded.value, updated_at=excluded.updated_at""",
                    (namespace, key, payload, now, now),
                )

                if notify:
                    seq = self._append_change(conn, namespace, key, payload, old_payload, now)
                    self._applied_seq[(namespace, key)] = seq
        except sqlite3.Error as e:
            raise StorageError(f"Failed to write {key!r}: {e}", context={"namespace": namespace}) from e

        if seq is None:
            return None

        event = StorageEvent(key, payload, old_payload, namespace, seq, self.context_id)
        self._emit(event)
        return event

    def remove(self, key: str, namespace: str = DEFAULT_NAMESPACE, notify: bool = True) -> bool:
        """Remove a key. Returns True if it existed."""
        seq = None
        try:
            with self._lock, self._transaction() as conn:
                row = conn.execute(
                    "SELECT value FROM kv WHERE namespace=? AND key=?",
                    (namespace, key),
                ).fetchone()
                if row is None:
                    return False
                conn.execute("DELETE FROM kv WHERE namespace=? AND key=?", (namespace, key))
                if notify:
                    seq = self._append_change(conn, namespace, key, None, row[0], _utcnow())
                    self._applied_seq[(namespace, key)] = seq
        except sqlite3.Error as e:
            raise StorageError(f"Failed to remove {key!r}: {e}", context={"namespace": namespace}) from e

        if seq is not None:
            self._emit(StorageEvent(key, None, row[0], namespace, seq, self.context_id))
        return True

    def list_keys(self, namespace: str = DEFAULT_NAMESPACE, prefix: str = "") -> List[str]:
        """List keys in a namespace, oldest first, optionally filtered by prefix."""
        try:
            with self._connect() as conn:
                rows = conn.execute(
                    "SELECT key FROM kv WHERE namespace=? AND key LIKE ? ORDER BY created_at, rowid",
                    (namespace, f"{prefix}%"),
                ).fetchall()
        except sqlite3.Error as e:
            raise StorageError(f"Failed to list keys: {e}", context={"namespace": namespace}) from e
        return [r[0] for r in rows]

    def items(self, namespace: str = DEFAULT_NAMESPACE) -> Dict[str, Any]:
        """All decoded values in a namespace, oldest first."""
        try:
            with self._connect() as conn:
                rows = conn.execute(
                    "SELECT key, value FROM kv WHERE namespace=? ORDER BY created_at, rowid",
                    (namespace,),
                ).fetchall()
        except sqlite3.Error as e:
            raise StorageError(f"Failed to read namespace: {e}", context={"namespace": namespace}) from e
        return {key: self._decode(key, raw) for key, raw in rows}

    def _append_change(
        self,
        conn: sqlite3.Connection,
        namespace: str,
        key: str,
        new_value: Optional[str],
        old_value: Optional[str],
        now: str,
    ) -> int:
        cursor = conn.execute(
            """INSERT INTO changes (namespace, key, new_value, old_value, origin, created_at)
            VALUES (?, ?, ?, ?, ?, ?)""",
            (namespace, key, new_value, old_value, self.context_id, now),
        )
        seq = cursor.lastrowid
        conn.execute("DELETE FROM changes WHERE seq <= ?", (seq - MAX_CHANGE_LOG,))
        return seq

    # -------------------------
    # Public API (never raises)
    # -------------------------

    def get(self, key: str, default: Any = None, namespace: str = DEFAULT_NAMESPACE) -> Any:
        """Retrieve a value. Returns default if not found or unreadable."""
        try:
            return self.read(key, namespace=namespace, default=default)
        except StorageError as e:
            log_storage_operation(logger, "get", key, success=False, namespace=namespace, error=str(e))
            return default

    def set(
        self,
        key: str,
        value: Any,
        namespace: str = DEFAULT_NAMESPACE,
        notify: bool = True,
    ) -> bool:
        """Store a JSON-serializable value. Returns False if the write was lost."""
        try:
            self.write(key, value, namespace=namespace, notify=notify)
        except StorageError as e:
            log_storage_operation(logger, "set", key, success=False, namespace=namespace, error=str(e))
            return False
        log_storage_operation(logger, "set", key, success=True, namespace=namespace)
        return True

    def delete(self, key: str, namespace: str = DEFAULT_NAMESPACE) -> bool:
        """Delete a key. Returns True if it existed."""
        try:
            return self.remove(key, namespace=namespace)
        except StorageError as e:
            log_storage_operation(logger, "delete", key, success=False, namespace=namespace, error=str(e))
            return False

    def keys(self, namespace: str = DEFAULT_NAMESPACE, prefix: str = "") -> List[str]:
        try:
            return self.list_keys(namespace=namespace, prefix=prefix)
        except StorageError as e:
            logger.warning(f"Failed to list keys in {namespace}: {e}")
            return []

    def clear(self, namespace: str = DEFAULT_NAMESPACE) -> int:
        """Remove every key in a namespace without emitting events. Returns count removed."""
        try:
            with self._lock, self._transaction() as conn:
                cursor = conn.execute("DELETE FROM kv WHERE namespace=?", (namespace,))
                return cursor.rowcount
        except sqlite3.Error as e:
            logger.warning(f"Failed to clear namespace {namespace}: {e}")
            return 0

    def storage_info(self) -> Dict[str, Any]:
        """Usage figures, in the shape the settings screen shows them."""
        used = 0
        try:
            with self._connect() as conn:
                used = self._used_bytes(conn)
        except sqlite3.Error as e:
            logger.warning(f"Failed to measure storage usage: {e}")

        db_file = Path(self.db_path)
        return {
            "adapter": "sqlite",
            "used": used,
            "quota": self.quota_bytes,
            "available": max(self.quota_bytes - used, 0) if self.quota_bytes else None,
            "db_size_bytes": db_file.stat().st_size if db_file.exists() else 0,
        }

    # -------------------------
    # Change notification
    # -------------------------

    def add_listener(self, listener: StorageListener) -> None:
        with self._lock:
            if listener not in self._listeners:
                self._listeners.append(listener)

    def remove_listener(self, listener: StorageListener) -> None:
        with self._lock:
            if listener in self._listeners:
                self._listeners.remove(listener)

    def _dispatch(self, event: StorageEvent) -> None:
        with self._lock:
            listeners = list(self._listeners)
        for listener in listeners:
            try:
                listener(event)
            except Exception as e:
                logger.error(f"Storage listener failed for {event.key!r}: {e}", exc_info=True)

    def _emit(self, event: StorageEvent) -> None:
        self._dispatch(event)
        if self._channel is not None:
            self._channel.publish(event)

    def _receive(self, event: StorageEvent) -> None:
        """Deliver a change made by another context, at most once and never out of order."""
        slot = (event.namespace, event.key)
        with self._lock:
            if self._applied_seq.get(slot, 0) >= event.seq:
                return
            self._applied_seq[slot] = event.seq
        self._dispatch(event)

    def sync(self) -> int:
        """
        Deliver changes other contexts wrote since the last sync.

        Returns:
            Number of change records read from the log.
        """
        try:
            with self._connect() as conn:
                rows = conn.execute(
                    """SELECT seq, namespace, key, new_value, old_value, origin
                    FROM changes WHERE seq > ? ORDER BY seq""",
                    (self._last_seq,),
                ).fetchall()
        except sqlite3.Error as e:
            logger.warning(f"Failed to read change log: {e}")
            return 0

        for seq, namespace, key, new_value, old_value, origin in rows:
            self._last_seq = max(self._last_seq, seq)
            if origin == self.context_id:
                continue
            self._receive(StorageEvent(key, new_value, old_value, namespace, seq, origin))

        return len(rows)

    def start_sync(self, interval: Optional[float] = None) -> None:
        """Poll the change log on a daemon thread. Listeners then run on that thread."""
        if self._sync_thread is not None and self._sync_thread.is_alive():
            return

        interval = interval or get_sync_interval()
        self._sync_stop.clear()

        def _loop():
            while not self._sync_stop.wait(interval):
                self.sync()

        self._sync_thread = threading.Thread(
            target=_loop,
            name=f"studyportal-sync-{self.context_id}",
            daemon=True,
        )
        self._sync_thread.start()
        logger.debug(f"Change log polling started every {interval}s for {self.context_id}")

    def stop_sync(self) -> None:
        self._sync_stop.set()
        if self._sync_thread is not None:
            self._sync_thread.join(timeout=DEFAULT_TIMEOUT)
            self._sync_thread = None

    def close(self) -> None:
        """Stop polling and leave the channel. The database file stays."""
        self.stop_sync()
        if self._channel is not None:
            self._channel.leave(self)
            self._channel = None
        with self._lock:
            self._listeners.clear()


__all__ = [
    "LocalStorage",
    "StorageChannel",
    "StorageEvent",
    "DEFAULT_NAMESPACE",
]
