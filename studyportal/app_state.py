"""
Application state container.

Wires one LocalStorage to the components built on it. Nothing here is a
module-level singleton: each AppState owns its storage handle, so tests and
separate contexts can run side by side.

Usage:
    from studyportal.app_state import AppState

    app = AppState.open()
    app.ensure_defaults()
    tasks = app.bind("tasks")
    tasks.set(lambda prev: prev + [new_task])
    app.collect_garbage()
    app.close()
"""

import copy
import logging
import uuid
from html.parser import HTMLParser
from typing import Any, Dict, List, Optional, Set

from .attachments import FileAttachmentStorage
from .config_loader import get_cache_size, get_quota_bytes
from .data_transfer import DataTransfer
from .errors import StorageError
from .local_state import LocalState
from .local_storage import LocalStorage, StorageChannel
from .logging_utils import log_error
from .models import (
    DEFAULT_DEGREE_PLAN,
    DEFAULT_HYDRATION_SETTINGS,
    DEFAULT_MOOD_EMOJIS,
    DEFAULT_WEATHER_LOCATION,
)

logger = logging.getLogger("studyportal.app_state")

DEFAULT_COURSE_TITLES = [
    "Calculus",
    "Chemistry",
    "Linear Algebra",
    "Economics",
    "Programming",
    "Elective",
    "Optional Course",
]

# State keys whose entities hold rich-text notes that may embed attachments
NOTE_BEARING_KEYS = ("regularEvents", "exams", "tasks")


def create_initial_state() -> Dict[str, Any]:
    """A fresh state document with the default courses and theme."""
    courses = [{"id": str(uuid.uuid4()), "title": title} for title in DEFAULT_COURSE_TITLES]
    return {
        "sessions": [],
        "exams": [],
        "examGrades": [],
        "tasks": [],
        "schedule": [],
        "timetableEvents": [],
        "regularEvents": [],
        "sessionTasks": [],
        "weeklyGoals": [],
        "courses": courses,
        "selectedCourseId": courses[0]["id"],
        "theme": {
            "darkMode": False,
            "bgImage": "",
            "accentColor": {"light": "#7c3aed", "dark": "#8b5cf6"},
            "cardOpacity": {"light": 0.8, "dark": 0.25},
            "gradientEnabled": True,
            "gradientStart": {"light": "#ffd2e9", "dark": "#18181b"},
            "gradientMiddle": {"light": "#bae6fd", "dark": "#0f172a"},
            "gradientEnd": {"light": "#a7f3d0", "dark": "#1e293b"},
        },
        "soundtrack": {"embed": "", "position": "dashboard"},
        "weather": {"apiKey": "", "location": copy.deepcopy(DEFAULT_WEATHER_LOCATION)},
        "degreePlan": copy.deepcopy(DEFAULT_DEGREE_PLAN),
        "wellness": {
            "water": 0,
            "gratitude": "",
            "moodPercentages": {},
            "hasInteracted": False,
            "monthlyMoods": {},
            "showWords": True,
            "moodEmojis": copy.deepcopy(DEFAULT_MOOD_EMOJIS),
            "hydrationSettings": copy.deepcopy(DEFAULT_HYDRATION_SETTINGS),
        },
    }


class _AttachmentRefParser(HTMLParser):
    """Collects ``data-file-id`` of elements marked ``data-type="file-attachment"``."""

    def __init__(self):
        super().__init__()
        self.file_ids: Set[str] = set()

    def handle_starttag(self, tag, attrs):
        attributes = dict(attrs)
        if attributes.get("data-type") == "file-attachment" and attributes.get("data-file-id"):
            self.file_ids.add(attributes["data-file-id"])


def extract_file_ids(html: str) -> Set[str]:
    """Attachment ids referenced from a rich-text (HTML) note."""
    if not html:
        return set()
    parser = _AttachmentRefParser()
    parser.feed(html)
    parser.close()
    return parser.file_ids


class AppState:
    """
    Storage plus the attachment store and transfer codec built on it.

    Args:
        storage: The LocalStorage every component shares
        cache_size: Attachment cache capacity (default from config)
    """

    def __init__(self, storage: LocalStorage, cache_size: Optional[int] = None):
        self.storage = storage
        self.attachments = FileAttachmentStorage(storage, cache_size=cache_size or get_cache_size())
        self.transfer = DataTransfer(storage)
        self._bindings: Dict[str, LocalState] = {}

    @classmethod
    def open(
        cls,
        db_path: Optional[str] = None,
        context_id: Optional[str] = None,
        channel: Optional[StorageChannel] = None,
        cache_size: Optional[int] = None,
    ) -> "AppState":
        """Open the configured database (or ``db_path``) as a new context."""
        storage = LocalStorage(
            db_path=db_path,
            context_id=context_id,
            quota_bytes=get_quota_bytes(),
            channel=channel,
        )
        return cls(storage, cache_size=cache_size)

    def ensure_defaults(self) -> List[str]:
        """
        Write default values for state keys that are missing.

        Stored objects (theme, wellness and the like) are completed with any
        default fields they lack.

        Returns:
            Keys that were written
        """
        written = []
        for key, default in create_initial_state().items():
            stored = self.storage.get(key)
            if stored is None:
                value = default
            elif isinstance(default, dict) and isinstance(stored, dict):
                value = {**default, **stored}
                if value == stored:
                    continue
            else:
                continue

            if self.storage.set(key, value):
                written.append(key)

        if written:
            logger.info(f"Initialized state keys: {', '.join(written)}")
        return written

    def bind(self, key: str, initial: Any = None) -> LocalState:
        """
        Reactive binding for a state key, shared per key within this context.

        ``initial`` defaults to the key's value in a fresh state document.
        """
        if key not in self._bindings:
            if initial is None:
                initial = copy.deepcopy(create_initial_state().get(key))
            self._bindings[key] = LocalState(self.storage, key, initial)
        return self._bindings[key]

    def referenced_file_ids(self) -> Set[str]:
        """Attachment ids embedded in notes. Raises StorageError if the notes cannot be read."""
        referenced: Set[str] = set()
        for key in NOTE_BEARING_KEYS:
            for entity in self.storage.read(key, default=[]) or []:
                if isinstance(entity, dict) and isinstance(entity.get("notes"), str):
                    referenced |= extract_file_ids(entity["notes"])
        return referenced

    def collect_garbage(self) -> int:
        """Delete attachments no note references. Returns count deleted."""
        try:
            referenced = self.referenced_file_ids()
        except StorageError as e:
            # Without the notes every attachment would look orphaned
            log_error(logger, e, context="scanning notes for attachments")
            return 0

        deleted = self.attachments.cleanup_orphaned_files(referenced)
        if deleted:
            logger.info(f"Attachment garbage collection removed {deleted} orphaned files")
        return deleted

    def close(self) -> None:
        for binding in self._bindings.values():
            binding.close()
        self._bindings.clear()
        self.storage.close()


__all__ = [
    "AppState",
    "create_initial_state",
    "extract_file_ids",
    "DEFAULT_COURSE_TITLES",
]
