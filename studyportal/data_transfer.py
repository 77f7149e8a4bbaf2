"""
Export and import of the whole application state.

The transfer document references courses by title rather than by id, so an
export can be imported into a store whose course list was rebuilt. Imports
assign fresh ids to every course and entity.

Usage:
    from studyportal.data_transfer import DataTransfer

    transfer = DataTransfer(storage)
    transfer.export_file("backup.json")
    ok = transfer.import_file("backup.json")
"""

import copy
import json
import logging
import os
import tempfile
import uuid
from pathlib import Path
from typing import Any, Dict, List, Optional, Type, Union

import filelock
from pydantic import BaseModel, ValidationError

from .config_loader import get_config
from .errors import ImportDocumentError, StudyPortalError
from .local_storage import LocalStorage
from .logging_utils import log_error
from .models import (
    DEFAULT_WEATHER_LOCATION,
    ENTITY_ARRAYS,
    RECORD_CLASSES,
    DegreePlanRecord,
    ExamGradeRecord,
    GradientSettings,
    TransferDocument,
    TransferRecord,
    TransferSettings,
    WellnessRecord,
)

logger = logging.getLogger("studyportal.data_transfer")

LOCK_TIMEOUT = 10


def new_id() -> str:
    return str(uuid.uuid4())


def default_export_path() -> Path:
    data_dir = get_config("STUDYPORTAL_DATA_DIR")
    return Path(data_dir) / get_config("EXPORT_FILE_NAME")


class DataTransfer:
    """Projects stored state to a TransferDocument and back."""

    def __init__(self, storage: LocalStorage):
        self.storage = storage

    # -------------------------
    # Export
    # -------------------------

    def _load_courses(self) -> List[Dict[str, Any]]:
        """Stored courses as ``{id, title}``. Courses stored as plain titles have no id."""
        courses = self.storage.get("courses", []) or []
        normalized = []
        for course in courses:
            if isinstance(course, dict):
                normalized.append({"id": course.get("id"), "title": str(course.get("title") or "")})
            else:
                normalized.append({"id": None, "title": str(course)})
        return normalized

    @staticmethod
    def _course_name(entity: Dict[str, Any], courses: List[Dict[str, Any]]) -> Optional[str]:
        course_id = entity.get("courseId")
        if course_id is not None:
            for course in courses:
                if course["id"] == course_id:
                    return course["title"]

        # Entities saved before courses had ids
        index = entity.get("courseIndex")
        if isinstance(index, int) and 0 <= index < len(courses):
            return courses[index]["title"]

        logger.debug(f"Entity {entity.get('id')} has no resolvable course")
        return None

    def export_data(self) -> Dict[str, Any]:
        """
        Snapshot the stored state as a transfer document (a JSON-ready dict).

        Entities that cannot be represented are skipped with a warning.
        Attachments are not included.
        """
        courses = self._load_courses()
        document: Dict[str, Any] = {}

        for key, tag in ENTITY_ARRAYS:
            record_cls = RECORD_CLASSES[tag]
            records = []
            for entity in self.storage.get(key, []) or []:
                if not isinstance(entity, dict):
                    logger.warning(f"Skipping non-object entry in {key}: {entity!r}")
                    continue
                try:
                    records.append(record_cls.from_entity(entity, self._course_name(entity, courses)))
                except ValidationError as e:
                    logger.warning(f"Skipping {tag} {entity.get('id')} on export: {e}")
            document[key] = records

        exported = TransferDocument(
            sessions=document["sessions"],
            exams=document["exams"],
            exam_grades=self._export_grades(),
            tasks=document["tasks"],
            schedule=document["schedule"],
            timetable_events=document["timetableEvents"],
            regular_events=document["regularEvents"],
            session_tasks=document["sessionTasks"],
            weekly_goals=document["weeklyGoals"],
            degree_plan=self._export_object("degreePlan", DegreePlanRecord),
            wellness=self._export_object("wellness", WellnessRecord),
            settings=self._export_settings(courses),
        )

        logger.info(
            "Exported state: "
            + ", ".join(f"{key}={len(document[key])}" for key, _ in ENTITY_ARRAYS)
        )
        return exported.to_json_dict()

    def _export_grades(self) -> List[ExamGradeRecord]:
        exam_ids = [e.get("id") for e in self.storage.get("exams", []) or [] if isinstance(e, dict)]
        grades = []
        for grade in self.storage.get("examGrades", []) or []:
            if not isinstance(grade, dict):
                logger.warning(f"Skipping non-object entry in examGrades: {grade!r}")
                continue
            exam_id = grade.get("examId")
            try:
                grades.append(ExamGradeRecord(
                    exam_id=exam_id,
                    grade=grade.get("grade"),
                    exam_index=exam_ids.index(exam_id) if exam_id in exam_ids else None,
                ))
            except ValidationError as e:
                logger.warning(f"Skipping grade for exam {exam_id!r} on export: {e}")
        return grades

    def _stored_object(self, key: str) -> Dict[str, Any]:
        stored = self.storage.get(key)
        return stored if isinstance(stored, dict) else {}

    def _export_object(self, key: str, record_cls: Type[BaseModel]) -> BaseModel:
        """A single stored object (degree plan, wellness), or an empty one if unusable."""
        try:
            return record_cls.model_validate(self._stored_object(key))
        except ValidationError as e:
            logger.warning(f"Exporting empty {key}, stored value is invalid: {e}")
            return record_cls()

    def _export_settings(self, courses: List[Dict[str, Any]]) -> TransferSettings:
        theme = self._stored_object("theme")
        soundtrack = self._stored_object("soundtrack")
        weather = self._stored_object("weather")

        selected_id = self.storage.get("selectedCourseId")
        selected = 0
        for index, course in enumerate(courses):
            if course["id"] is not None and course["id"] == selected_id:
                selected = index
                break

        titles = [c["title"] for c in courses]
        try:
            return TransferSettings(
                courses=titles,
                selected_course=selected,
                dark_mode=theme.get("darkMode"),
                gradient=GradientSettings(
                    enabled=theme.get("gradientEnabled"),
                    start=theme.get("gradientStart"),
                    middle=theme.get("gradientMiddle"),
                    end=theme.get("gradientEnd"),
                ),
                bg_image=theme.get("bgImage"),
                soundtrack_embed=soundtrack.get("embed"),
                accent_color=theme.get("accentColor"),
                card_opacity=theme.get("cardOpacity"),
                weather_api_key=weather.get("apiKey"),
                weather_location=weather.get("location"),
            )
        except ValidationError as e:
            logger.warning(f"Exporting courses only, stored settings are invalid: {e}")
            return TransferSettings(courses=titles, selected_course=selected)

    def export_file(self, path: Optional[Union[str, Path]] = None) -> bool:
        """
        Write the export document to ``path`` (pretty-printed UTF-8 JSON).

        The file is replaced atomically under a lock file next to it.

        Returns:
            True if the file was written
        """
        target = Path(path) if path else default_export_path()
        try:
            data = self.export_data()
            target.parent.mkdir(parents=True, exist_ok=True)
            with filelock.FileLock(str(target) + ".lock", timeout=LOCK_TIMEOUT):
                temp_fd, temp_path = tempfile.mkstemp(dir=target.parent, suffix=".json.tmp")
                try:
                    with os.fdopen(temp_fd, "w", encoding="utf-8") as f:
                        json.dump(data, f, indent=2, ensure_ascii=False)
                    os.replace(temp_path, target)
                except BaseException:
                    if os.path.exists(temp_path):
                        os.unlink(temp_path)
                    raise
        except (OSError, filelock.Timeout, StudyPortalError, ValidationError) as e:
            log_error(logger, e, context=f"exporting to {target}")
            return False

        logger.info(f"Exported state to {target}")
        return True

    # -------------------------
    # Import
    # -------------------------

    @staticmethod
    def parse_document(document: Union[str, bytes, Dict[str, Any]]) -> TransferDocument:
        """
        Validate a transfer document.

        Raises:
            ImportDocumentError: not JSON, not an object, missing
                ``settings.courses``, or records that do not fit their array
        """
        if isinstance(document, (str, bytes)):
            try:
                document = json.loads(document)
            except ValueError as e:
                raise ImportDocumentError(f"Import document is not valid JSON: {e}") from e

        if not isinstance(document, dict):
            raise ImportDocumentError(
                "Import document must be a JSON object",
                context={"type": type(document).__name__},
            )

        try:
            parsed = TransferDocument.model_validate(document)
        except ValidationError as e:
            raise ImportDocumentError(
                f"Malformed import document: {e.error_count()} error(s)",
                context={"first_error": e.errors()[0]["msg"]},
            ) from e

        if parsed.has_course_entities() and not parsed.settings.courses:
            raise ImportDocumentError("Import document has entities but no courses")

        return parsed

    def import_data(self, document: Union[str, bytes, Dict[str, Any]]) -> bool:
        """
        Replace the stored state with the contents of a transfer document.

        Settings (and with them the course list) are written first, then each
        entity array present in the document. There is no rollback: a failure
        partway leaves the arrays already written in place.

        Returns:
            True on success, False if the document was rejected or a write failed
        """
        try:
            parsed = self.parse_document(document)
        except ImportDocumentError as e:
            log_error(logger, e, context="validating import document")
            return False

        try:
            courses = self._apply_settings(parsed.settings)
            self._apply_objects(parsed)
            course_ids = {}
            for course in courses:
                course_ids.setdefault(course["title"], course["id"])

            new_exam_ids: List[str] = []
            for key, _ in ENTITY_ARRAYS:
                records = parsed.records(key)
                if not parsed.has_array(key):
                    continue
                entities = [self._import_record(r, course_ids, courses) for r in records]
                if key == "exams":
                    new_exam_ids = [e["id"] for e in entities]
                self.storage.write(key, entities)

            if parsed.exam_grades is not None:
                self.storage.write("examGrades", [
                    self._import_grade(g, new_exam_ids) for g in parsed.exam_grades
                ])
        except (StudyPortalError, ValueError, TypeError) as e:
            log_error(logger, e, context="importing state")
            return False

        logger.info(
            f"Imported {len(courses)} courses and "
            f"{sum(len(parsed.records(k)) for k, _ in ENTITY_ARRAYS)} records"
        )
        return True

    def _apply_settings(self, settings: TransferSettings) -> List[Dict[str, Any]]:
        courses = [{"id": new_id(), "title": title} for title in settings.courses]
        self.storage.write("courses", courses)

        selected = settings.selected_course or 0
        if courses:
            selected_id = courses[selected]["id"] if 0 <= selected < len(courses) else courses[0]["id"]
        else:
            selected_id = ""
        self.storage.write("selectedCourseId", selected_id)

        # Keys absent from the document keep their current values
        theme = dict(self.storage.read("theme", default={}) or {})
        gradient = settings.gradient or GradientSettings()
        updates = {
            "darkMode": settings.dark_mode,
            "bgImage": settings.bg_image,
            "accentColor": settings.accent_color,
            "cardOpacity": settings.card_opacity,
            "gradientEnabled": gradient.enabled,
            "gradientStart": gradient.start,
            "gradientMiddle": gradient.middle,
            "gradientEnd": gradient.end,
        }
        theme.update({k: v for k, v in updates.items() if v is not None})
        self.storage.write("theme", theme)

        if settings.soundtrack_embed is not None:
            self.storage.write("soundtrack", {"embed": settings.soundtrack_embed, "position": "dashboard"})

        if settings.weather_api_key is not None or settings.weather_location is not None:
            weather = dict(self._stored_object("weather"))
            weather["apiKey"] = settings.weather_api_key or ""
            weather["location"] = settings.weather_location or copy.deepcopy(DEFAULT_WEATHER_LOCATION)
            self.storage.write("weather", weather)

        return courses

    def _apply_objects(self, parsed: TransferDocument) -> None:
        """Degree plan and wellness replace the stored objects when present."""
        degree_plan = parsed.degree_plan or parsed.settings.degree_plan
        if degree_plan is not None:
            self.storage.write("degreePlan", degree_plan.to_state())

        if parsed.wellness is not None:
            # Hydration settings and other keys the document omits are kept
            wellness = dict(self._stored_object("wellness"))
            wellness.update(parsed.wellness.to_state())
            self.storage.write("wellness", wellness)

    @staticmethod
    def _import_record(
        record: TransferRecord,
        course_ids: Dict[str, str],
        courses: List[Dict[str, Any]],
    ) -> Dict[str, Any]:
        course_id = None
        if "course" in type(record).model_fields:
            course_name = getattr(record, "course", None)
            course_id = course_ids.get(course_name)
            if course_id is None:
                course_id = courses[0]["id"]
                logger.debug(
                    f"Course {course_name!r} not in imported list, "
                    f"using {courses[0]['title']!r}"
                )
        return record.to_entity(new_id(), course_id)

    @staticmethod
    def _import_grade(grade: ExamGradeRecord, new_exam_ids: List[str]) -> Dict[str, Any]:
        exam_id = grade.exam_id
        if grade.exam_index is not None and 0 <= grade.exam_index < len(new_exam_ids):
            exam_id = new_exam_ids[grade.exam_index]
        entity = {"examId": exam_id, "grade": grade.grade}
        return {k: v for k, v in entity.items() if v is not None}

    def import_file(self, path: Union[str, Path]) -> bool:
        """Read a transfer document from disk and import it."""
        source = Path(path)
        try:
            with filelock.FileLock(str(source) + ".lock", timeout=LOCK_TIMEOUT):
                text = source.read_text(encoding="utf-8")
        except (OSError, UnicodeDecodeError, filelock.Timeout) as e:
            log_error(logger, e, context=f"reading import file {source}")
            return False

        return self.import_data(text)


__all__ = ["DataTransfer", "default_export_path", "new_id"]
