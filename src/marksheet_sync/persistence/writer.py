from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Optional, Sequence

from ..config import PersistenceConfig
from ..errors import PersistenceConflict, PersistenceError
from ..models import AcademicGroup, Course, ExtractionResult, PersistedRecord, SaveSummary, StudentInfo
from ..util.numbers import round_half_up
from .store import MarksheetStore


logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class FallbackIdentifierPolicy:
    """
    Resolve the key records are stored under.

    A missing or "not available" registration id maps to `fallback_id`, so one bad field never loses
    a whole run. Every such run lands under the same key.
    """

    fallback_id: str
    not_available_values: Sequence[str] = ("", "n/a", "na", "-", "none", "null")

    def is_available(self, value: Optional[str]) -> bool:
        v = (value or "").strip()
        return bool(v) and v.lower() not in {s.lower() for s in self.not_available_values}

    def resolve(self, student: StudentInfo) -> str:
        if self.is_available(student.registration_id):
            return (student.registration_id or "").strip()
        logger.warning("No usable registration number on the page; using fallback id %r", self.fallback_id)
        return self.fallback_id


@dataclass(frozen=True)
class NullToZeroAtPersistence:
    """
    Storage columns are integers: round half-up, and collapse "absent" to `default`.
    """

    default: int = 0

    def coerce(self, value: Optional[float]) -> int:
        if value is None:
            return self.default
        try:
            return round_half_up(value)
        except ValueError:
            return self.default


def to_record(
    course: Course,
    *,
    student_uuid: str,
    group_title: str = "",
    numbers: NullToZeroAtPersistence = NullToZeroAtPersistence(),
    placeholder: str = "N/A",
) -> PersistedRecord:
    return PersistedRecord(
        student_uuid=student_uuid,
        code=(course.code or "").strip() or placeholder,
        name=(course.name or "").strip() or placeholder,
        credit=numbers.coerce(course.credits),
        cat1=numbers.coerce(course.continuous_assessment_1),
        cat2=numbers.coerce(course.continuous_assessment_2),
        exam_mark=numbers.coerce(course.exam_mark),
        total_mark=numbers.coerce(course.total_mark),
        grade=(course.grade or "").strip(),
        group_title=group_title,
    )


class PersistenceWriter:
    """
    Writes an ExtractionResult to the store one record at a time.

    Each record succeeds, conflicts or errors independently; a conflict is an expected outcome on re-runs.
    """

    def __init__(self, store: MarksheetStore, config: Optional[PersistenceConfig] = None) -> None:
        self.store = store
        self.config = config or PersistenceConfig()
        self.identifier_policy = FallbackIdentifierPolicy(
            fallback_id=self.config.fallback_student_id,
            not_available_values=self.config.not_available_values,
        )
        self.number_policy = NullToZeroAtPersistence(default=self.config.null_numeric_default)

    def save(self, result: ExtractionResult) -> SaveSummary:
        summary = SaveSummary()
        student_uuid = self.identifier_policy.resolve(result.student)
        logger.info("Saving %d courses for student %s", result.course_count, student_uuid)

        for group in result.groups:
            self._save_group(group, student_uuid, summary)

        logger.info(
            "Save complete: saved=%d updated=%d skipped=%d errors=%d",
            summary.saved_count,
            summary.updated_count,
            summary.skipped_count,
            summary.error_count,
        )
        summary.success = summary.error_count == 0
        summary.message = self._summary_message(summary)
        return summary

    def _save_group(self, group: AcademicGroup, student_uuid: str, summary: SaveSummary) -> None:
        if not group.courses:
            logger.warning("Skipping group with no courses: %s", group.title)
            return

        for course in group.courses:
            if not course.is_identified():
                logger.warning("Skipping course with no code or name in %r: %s", group.title, course)
                summary.skipped_count += 1
                continue

            record = to_record(
                course,
                student_uuid=student_uuid,
                group_title=group.title,
                numbers=self.number_policy,
                placeholder=self.config.placeholder_text,
            )
            try:
                if self.config.on_conflict == "update":
                    if self.store.upsert(record):
                        summary.updated_count += 1
                    else:
                        summary.saved_count += 1
                else:
                    self.store.create(record)
                    summary.saved_count += 1
                logger.debug("Saved %s (%s) for %s", record.code, record.name, student_uuid)
            except PersistenceConflict:
                logger.info("Duplicate entry for %s (student %s); skipping.", record.code, student_uuid)
                summary.skipped_count += 1
            except PersistenceError as e:
                logger.error("Error saving %s for student %s: %s", record.code, student_uuid, e)
                summary.error_count += 1

    def _summary_message(self, summary: SaveSummary) -> str:
        if summary.error_count:
            return f"Completed with {summary.error_count} errors. Some records might not have been saved."
        if summary.saved_count == 0 and summary.updated_count == 0 and summary.skipped_count > 0:
            return f"Completed, but no new records were found to save. {summary.skipped_count} records skipped."
        if summary.saved_count == 0 and summary.updated_count == 0:
            return "Completed, but no records were found in the extracted content."
        if summary.updated_count:
            return f"Saved {summary.saved_count} new and updated {summary.updated_count} existing records."
        return f"Successfully saved {summary.saved_count} records."
