"""Pydantic schemas for the export/import transfer document."""

import copy
import re
from datetime import datetime, timedelta, timezone
from typing import Annotated, Any, ClassVar, Dict, List, Literal, Optional, Tuple, Union

from pydantic import BaseModel, ConfigDict, Field, field_validator, model_validator
from pydantic.alias_generators import to_camel

EPOCH = datetime(1970, 1, 1, tzinfo=timezone.utc)

Number = Union[int, float]

_LINE_BREAKS = re.compile(r"[\r\n]+")

# Keys a record never carries over between an entity and the document
_ENTITY_REFERENCE_KEYS = frozenset({"id", "type", "course", "courseId", "courseIndex"})


# =============================================================================
# Helpers
# =============================================================================

def ms_to_iso(value: Number) -> str:
    """Epoch milliseconds to ``YYYY-MM-DDTHH:MM:SS.mmmZ``."""
    dt = EPOCH + timedelta(milliseconds=int(value))
    return dt.strftime("%Y-%m-%dT%H:%M:%S") + f".{dt.microsecond // 1000:03d}Z"


def iso_to_ms(value: str) -> int:
    """ISO-8601 string to epoch milliseconds. Naive times are taken as UTC."""
    dt = datetime.fromisoformat(value.strip().replace("Z", "+00:00"))
    if dt.tzinfo is None:
        dt = dt.replace(tzinfo=timezone.utc)
    return (dt - EPOCH) // timedelta(milliseconds=1)


def collapse_line_breaks(text: Optional[str]) -> str:
    return _LINE_BREAKS.sub(" ", text or "")


def _export_ms(value: Any) -> Any:
    if isinstance(value, (int, float)) and not isinstance(value, bool):
        return ms_to_iso(value)
    return value


def _restore_ms(value: Any) -> Any:
    if isinstance(value, str):
        try:
            return iso_to_ms(value)
        except ValueError:
            return value
    return value


# =============================================================================
# Entity Records
# =============================================================================

class TransferRecord(BaseModel):
    """
    One entity as it appears in the transfer document.

    Internal entities are keyed by ``id`` and reference courses by
    ``courseId``; records drop the id and carry the course title instead.
    """

    # Fields without a declared counterpart are carried through unchanged
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True, extra="allow")

    # Epoch-ms fields rendered as ISO strings in the document
    TIMESTAMP_FIELDS: ClassVar[Tuple[str, ...]] = ()
    # Free-text fields whose line breaks are collapsed on export
    TEXT_FIELDS: ClassVar[Tuple[str, ...]] = ()

    @classmethod
    def from_entity(cls, entity: Dict[str, Any], course_name: Optional[str] = None) -> "TransferRecord":
        data = {k: v for k, v in entity.items() if k not in _ENTITY_REFERENCE_KEYS}
        for name in cls.TIMESTAMP_FIELDS:
            if name in data:
                data[name] = _export_ms(data[name])
        for name in cls.TEXT_FIELDS:
            if isinstance(data.get(name), str):
                data[name] = collapse_line_breaks(data[name])
        if "course" in cls.model_fields:
            data["course"] = course_name
        return cls.model_validate(data)

    def to_entity(self, new_id: str, course_id: Optional[str] = None) -> Dict[str, Any]:
        entity: Dict[str, Any] = {"id": new_id}
        if "course" in type(self).model_fields:
            entity["courseId"] = course_id
        data = self.model_dump(by_alias=True, exclude_none=True)
        # Identity and course references are reassigned, never taken from the document
        entity.update({k: v for k, v in data.items() if k not in _ENTITY_REFERENCE_KEYS})
        for name in self.TIMESTAMP_FIELDS:
            if name in entity:
                entity[name] = _restore_ms(entity[name])
        return entity


class SessionRecord(TransferRecord):
    TIMESTAMP_FIELDS: ClassVar[Tuple[str, ...]] = ("startTs", "endTs")
    TEXT_FIELDS: ClassVar[Tuple[str, ...]] = ("note",)

    type: Literal["session"] = "session"
    course: Optional[str] = None
    start_ts: Optional[Union[str, Number]] = None
    end_ts: Optional[Union[str, Number]] = None
    duration_min: Optional[Number] = None
    technique: Optional[str] = None
    mood_start: Optional[Number] = None
    mood_end: Optional[Number] = None
    note: Optional[str] = None


class ExamRecord(TransferRecord):
    TEXT_FIELDS: ClassVar[Tuple[str, ...]] = ("notes",)

    type: Literal["exam"] = "exam"
    course: Optional[str] = None
    title: Optional[str] = None
    date: Optional[str] = None
    weight: Optional[Number] = None
    notes: Optional[str] = None
    completed: Optional[bool] = None


class TaskRecord(TransferRecord):
    TEXT_FIELDS: ClassVar[Tuple[str, ...]] = ("notes",)

    type: Literal["task"] = "task"
    course: Optional[str] = None
    title: Optional[str] = None
    due: Optional[str] = None
    priority: Optional[str] = None
    done: Optional[bool] = None
    notes: Optional[str] = None


class ScheduleRecord(TransferRecord):
    type: Literal["schedule"] = "schedule"
    course: Optional[str] = None
    title: Optional[str] = None
    day: Optional[str] = None
    start: Optional[str] = None
    end: Optional[str] = None
    location: Optional[str] = None
    color: Optional[str] = None


class _LegacyColorMixin(BaseModel):
    @model_validator(mode="before")
    @classmethod
    def accept_hex_color(cls, data: Any) -> Any:
        """Older exports stored event colors as ``hexColor``."""
        if isinstance(data, dict) and "hexColor" in data:
            data = dict(data)
            hex_color = data.pop("hexColor")
            if not data.get("color") and hex_color:
                data["color"] = hex_color
        return data


class TimetableEventRecord(_LegacyColorMixin, TransferRecord):
    type: Literal["timetableEvent"] = "timetableEvent"
    course: Optional[str] = None
    event_type: Optional[str] = None
    classroom: Optional[str] = None
    teacher: Optional[str] = None
    day: Optional[str] = None
    start_time: Optional[str] = None
    end_time: Optional[str] = None
    block: Optional[str] = None
    color: Optional[str] = None


class RegularEventRecord(_LegacyColorMixin, TransferRecord):
    TEXT_FIELDS: ClassVar[Tuple[str, ...]] = ("notes",)

    type: Literal["regularEvent"] = "regularEvent"
    course: Optional[str] = None
    title: Optional[str] = None
    start_date: Optional[str] = None
    end_date: Optional[str] = None
    is_multi_day: Optional[bool] = None
    location: Optional[str] = None
    notes: Optional[str] = None
    color: Optional[str] = None


class SessionTaskRecord(TransferRecord):
    TIMESTAMP_FIELDS: ClassVar[Tuple[str, ...]] = ("createdAt",)

    type: Literal["sessionTask"] = "sessionTask"
    title: Optional[str] = None
    done: Optional[bool] = None
    created_at: Optional[Union[str, Number]] = None


class WeeklyGoalRecord(TransferRecord):
    TIMESTAMP_FIELDS: ClassVar[Tuple[str, ...]] = ("createdAt",)

    type: Literal["weeklyGoal"] = "weeklyGoal"
    title: Optional[str] = None
    completed: Optional[bool] = None
    created_at: Optional[Union[str, Number]] = None
    color: Optional[str] = None


EntityRecord = Annotated[
    Union[
        SessionRecord,
        ExamRecord,
        TaskRecord,
        ScheduleRecord,
        TimetableEventRecord,
        RegularEventRecord,
        SessionTaskRecord,
        WeeklyGoalRecord,
    ],
    Field(discriminator="type"),
]


class ExamGradeRecord(BaseModel):
    """
    Grade for one exam.

    Exam ids are regenerated on import, so the document also records the
    exam's position in the ``exams`` array.
    """

    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True, extra="ignore")

    exam_id: Optional[str] = None
    grade: Optional[Number] = None
    exam_index: Optional[int] = None


# (state key / document key, record type tag)
ENTITY_ARRAYS = (
    ("sessions", "session"),
    ("exams", "exam"),
    ("tasks", "task"),
    ("schedule", "schedule"),
    ("timetableEvents", "timetableEvent"),
    ("regularEvents", "regularEvent"),
    ("sessionTasks", "sessionTask"),
    ("weeklyGoals", "weeklyGoal"),
)

RECORD_CLASSES = {
    "session": SessionRecord,
    "exam": ExamRecord,
    "task": TaskRecord,
    "schedule": ScheduleRecord,
    "timetableEvent": TimetableEventRecord,
    "regularEvent": RegularEventRecord,
    "sessionTask": SessionTaskRecord,
    "weeklyGoal": WeeklyGoalRecord,
}


# =============================================================================
# Degree Plan / Wellness
# =============================================================================

DEFAULT_DEGREE_PLAN: Dict[str, Any] = {
    "name": "Degree Plan",
    "semesters": [],
    "completedCourses": [],
}

DEFAULT_WEATHER_LOCATION: Dict[str, Any] = {
    "useGeolocation": True,
    "city": "",
}

DEFAULT_MOOD_EMOJIS: Dict[str, Dict[str, str]] = {
    "angry": {"emoji": "\U0001F620", "color": "#ff6b6b", "word": "Angry"},
    "sad": {"emoji": "\U0001F614", "color": "#ff9f43", "word": "Sad"},
    "neutral": {"emoji": "\U0001F610", "color": "#f7dc6f", "word": "Neutral"},
    "happy": {"emoji": "\U0001F642", "color": "#45b7d1", "word": "Happy"},
    "excited": {"emoji": "\U0001F601", "color": "#10ac84", "word": "Excited"},
}

DEFAULT_HYDRATION_SETTINGS: Dict[str, Any] = {
    "useCups": True,
    "cupSizeML": 250,
    "cupSizeOZ": 8.5,
    "dailyGoalML": 2000,
    "dailyGoalOZ": 67.6,
    "unit": "metric",
}


class DegreePlanRecord(BaseModel):
    """The degree plan, carried as a single object."""

    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True, extra="allow")

    name: Optional[str] = None
    semesters: Optional[List[Any]] = None
    completed_courses: Optional[List[Any]] = None

    def to_state(self) -> Dict[str, Any]:
        plan = {**copy.deepcopy(DEFAULT_DEGREE_PLAN), **self.model_dump(by_alias=True, exclude_none=True)}
        if not plan["name"]:
            plan["name"] = DEFAULT_DEGREE_PLAN["name"]
        return plan


class WellnessRecord(BaseModel):
    """Water, gratitude and mood tracking, carried as a single object."""

    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True, extra="allow")

    water: Optional[Number] = None
    gratitude: Optional[str] = None
    mood_percentages: Optional[Dict[str, Any]] = None
    has_interacted: Optional[bool] = None
    monthly_moods: Optional[Dict[str, Any]] = None
    show_words: Optional[bool] = None
    mood_emojis: Optional[Dict[str, Any]] = None

    def to_state(self) -> Dict[str, Any]:
        """Stored wellness object; empty values fall back to their defaults."""
        state = self.model_dump(by_alias=True, exclude_none=True)
        state.update({
            "water": self.water or 0,
            "gratitude": self.gratitude or "",
            "moodPercentages": self.mood_percentages or {},
            "hasInteracted": self.has_interacted or False,
            "monthlyMoods": self.monthly_moods or {},
            "showWords": True if self.show_words is None else self.show_words,
            "moodEmojis": self.mood_emojis or copy.deepcopy(DEFAULT_MOOD_EMOJIS),
        })
        return state


# =============================================================================
# Settings
# =============================================================================

class GradientSettings(BaseModel):
    enabled: Optional[bool] = None
    start: Optional[Any] = None
    middle: Optional[Any] = None
    end: Optional[Any] = None


class TransferSettings(BaseModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True, extra="ignore")

    courses: List[str] = Field(..., description="Course titles, in display order")
    selected_course: Optional[int] = Field(None, description="Index into courses")
    dark_mode: Optional[bool] = None
    gradient: Optional[GradientSettings] = None
    bg_image: Optional[str] = None
    soundtrack_embed: Optional[str] = None
    accent_color: Optional[Any] = None
    card_opacity: Optional[Any] = None
    weather_api_key: Optional[str] = None
    weather_location: Optional[Dict[str, Any]] = None
    # Older exports kept the degree plan here as well
    degree_plan: Optional[DegreePlanRecord] = None

    @field_validator("courses", mode="before")
    @classmethod
    def course_titles(cls, v: Any) -> Any:
        """Accept plain titles or ``{id, title}`` objects."""
        if not isinstance(v, list):
            return v
        return [c.get("title") if isinstance(c, dict) else c for c in v]


# =============================================================================
# Document
# =============================================================================

class TransferDocument(BaseModel):
    """The portable snapshot written by export and read by import."""

    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True, extra="ignore")

    sessions: Optional[List[EntityRecord]] = None
    exams: Optional[List[EntityRecord]] = None
    exam_grades: Optional[List[ExamGradeRecord]] = None
    tasks: Optional[List[EntityRecord]] = None
    schedule: Optional[List[EntityRecord]] = None
    timetable_events: Optional[List[EntityRecord]] = None
    regular_events: Optional[List[EntityRecord]] = None
    session_tasks: Optional[List[EntityRecord]] = None
    weekly_goals: Optional[List[EntityRecord]] = None
    degree_plan: Optional[DegreePlanRecord] = None
    wellness: Optional[WellnessRecord] = None
    settings: TransferSettings

    @model_validator(mode="before")
    @classmethod
    def tag_untyped_records(cls, data: Any) -> Any:
        """Records without a ``type`` take the type of the array holding them."""
        if not isinstance(data, dict):
            return data
        data = dict(data)
        for key, tag in ENTITY_ARRAYS:
            records = data.get(key)
            if isinstance(records, list):
                data[key] = [
                    {"type": tag, **r} if isinstance(r, dict) and "type" not in r else r
                    for r in records
                ]
        return data

    @model_validator(mode="after")
    def check_record_types(self) -> "TransferDocument":
        for key, tag in ENTITY_ARRAYS:
            for record in self.records(key):
                if record.type != tag:
                    raise ValueError(f"{key} contains a {record.type!r} record")
        return self

    def records(self, key: str) -> List[TransferRecord]:
        """Records of one array, by its document key (``timetableEvents``)."""
        field_name = _FIELD_BY_ALIAS[key]
        return getattr(self, field_name) or []

    def has_array(self, key: str) -> bool:
        """Whether the document carries the array at all (an empty one counts)."""
        return getattr(self, _FIELD_BY_ALIAS[key]) is not None

    def has_course_entities(self) -> bool:
        """Whether any record needs a course to attach to."""
        return any(
            self.records(key)
            for key, tag in ENTITY_ARRAYS
            if "course" in RECORD_CLASSES[tag].model_fields
        )

    def to_json_dict(self) -> Dict[str, Any]:
        return self.model_dump(by_alias=True, exclude_none=True)


_FIELD_BY_ALIAS = {
    field.alias or name: name for name, field in TransferDocument.model_fields.items()
}


__all__ = [
    "TransferRecord",
    "SessionRecord",
    "ExamRecord",
    "TaskRecord",
    "ScheduleRecord",
    "TimetableEventRecord",
    "RegularEventRecord",
    "SessionTaskRecord",
    "WeeklyGoalRecord",
    "EntityRecord",
    "ExamGradeRecord",
    "DegreePlanRecord",
    "WellnessRecord",
    "GradientSettings",
    "TransferSettings",
    "TransferDocument",
    "ENTITY_ARRAYS",
    "RECORD_CLASSES",
    "DEFAULT_DEGREE_PLAN",
    "DEFAULT_WEATHER_LOCATION",
    "DEFAULT_MOOD_EMOJIS",
    "DEFAULT_HYDRATION_SETTINGS",
    "ms_to_iso",
    "iso_to_ms",
    "collapse_line_breaks",
]
