"""
Reactive per-key state bindings over LocalStorage.

Usage:
    from studyportal.local_state import LocalState

    tasks = LocalState(storage, "tasks", [])
    unsubscribe = tasks.subscribe(lambda value: print("tasks now", value))
    tasks.set(lambda prev: prev + [{"id": "t1", "title": "Read"}])
"""

import copy
import json
import logging
import threading
from typing import Any, Callable, Generic, List, TypeVar, Union

from .local_storage import DEFAULT_NAMESPACE, LocalStorage, StorageEvent

logger = logging.getLogger("studyportal.local_state")

T = TypeVar("T")

Subscriber = Callable[[Any], None]


class LocalState(Generic[T]):
    """
    Observable copy of one stored key.

    The in-memory value is updated before the write is persisted, so a
    failed write (quota, serialization) leaves the new value visible in
    this context while other contexts keep the old one.
    """

    def __init__(
        self,
        storage: LocalStorage,
        key: str,
        initial: T,
        namespace: str = DEFAULT_NAMESPACE,
    ):
        self.storage = storage
        self.key = key
        self.namespace = namespace
        self._lock = threading.RLock()
        self._local = threading.local()
        self._subscribers: List[Subscriber] = []
        self._closed = False

        self._value: T = storage.get(key, default=copy.deepcopy(initial), namespace=namespace)
        storage.add_listener(self._on_storage_event)

    @property
    def value(self) -> T:
        return self._value

    def get(self) -> T:
        return self._value

    def set(self, value: Union[T, Callable[[T], T]]) -> bool:
        """
        Replace the value, or derive it from the previous one with a callable.

        Returns:
            True if the value was persisted, False if only the in-memory copy changed
        """
        with self._lock:
            new_value = value(self._value) if callable(value) else value
            self._value = new_value
        self._notify(new_value)

        self._local.writing = True
        try:
            persisted = self.storage.set(self.key, new_value, namespace=self.namespace)
        finally:
            self._local.writing = False
        if not persisted:
            logger.warning(f"State {self.key!r} updated in memory but not persisted")
        return persisted

    def subscribe(self, fn: Subscriber) -> Callable[[], None]:
        """Register ``fn(new_value)``. Returns a function that unsubscribes it."""
        with self._lock:
            self._subscribers.append(fn)

        def unsubscribe() -> None:
            with self._lock:
                if fn in self._subscribers:
                    self._subscribers.remove(fn)

        return unsubscribe

    def close(self) -> None:
        """Stop following storage changes."""
        if self._closed:
            return
        self._closed = True
        self.storage.remove_listener(self._on_storage_event)
        with self._lock:
            self._subscribers.clear()

    def _notify(self, value: Any) -> None:
        with self._lock:
            subscribers = list(self._subscribers)
        for fn in subscribers:
            try:
                fn(value)
            except Exception as e:
                logger.error(f"Subscriber for {self.key!r} failed: {e}", exc_info=True)

    def _on_storage_event(self, event: StorageEvent) -> None:
        if event.key != self.key or event.namespace != self.namespace:
            return
        # This binding's own write, already applied optimistically
        if getattr(self._local, "writing", False) and event.origin == self.storage.context_id:
            return
        if event.new_value is None:
            return

        try:
            new_value = json.loads(event.new_value)
        except json.JSONDecodeError as e:
            logger.error(f"Ignoring unparseable change for {self.key!r}: {e}")
            return

        with self._lock:
            self._value = new_value
        self._notify(new_value)

    def __repr__(self) -> str:
        return f"LocalState(key={self.key!r}, namespace={self.namespace!r})"


__all__ = ["LocalState"]
