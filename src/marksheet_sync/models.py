from __future__ import annotations

from enum import Enum
from typing import Optional

from pydantic import BaseModel, ConfigDict, Field


class StudentInfo(BaseModel):
    model_config = ConfigDict(frozen=True)

    name: Optional[str] = None
    registration_id: Optional[str] = None
    program: Optional[str] = None
    faculty: Optional[str] = None


class Course(BaseModel):
    """
    One parsed course row.

    Numeric fields stay `None` when the cell is empty or unparsable, so "absent" never reads as zero.
    """

    model_config = ConfigDict(frozen=True)

    code: Optional[str] = None
    name: Optional[str] = None
    credits: Optional[float] = None
    continuous_assessment_1: Optional[float] = None
    continuous_assessment_2: Optional[float] = None
    exam_mark: Optional[float] = None
    total_mark: Optional[float] = None
    grade: Optional[str] = None
    grade_point: Optional[float] = None
    extra_fields: dict[str, str] = Field(default_factory=dict)

    def is_identified(self) -> bool:
        return bool((self.code or "").strip() or (self.name or "").strip())


class AcademicGroup(BaseModel):
    model_config = ConfigDict(frozen=True)

    title: str
    courses: tuple[Course, ...] = ()


class ExtractionDiagnostics(BaseModel):
    tables_seen: int = 0
    tables_classified: int = 0
    rows_dropped_empty: int = 0
    rows_dropped_footer: int = 0
    rows_dropped_unidentified: int = 0
    groups_dropped_empty: int = 0


class ExtractionResult(BaseModel):
    """
    Immutable result tree handed from the extraction engine to the persistence writer.
    """

    model_config = ConfigDict(frozen=True)

    student: StudentInfo = Field(default_factory=StudentInfo)
    groups: tuple[AcademicGroup, ...] = ()
    diagnostics: ExtractionDiagnostics = Field(default_factory=ExtractionDiagnostics)

    @property
    def course_count(self) -> int:
        return sum(len(g.courses) for g in self.groups)


class PageSnapshot(BaseModel):
    """
    One stabilization poll of the rendered document.
    """

    model_config = ConfigDict(frozen=True)

    table_count: int = 0
    mark_relevant_table_count: int = 0
    body_text_length: int = 0
    has_loading_indicator: bool = False

    @classmethod
    def from_page_data(cls, data: dict) -> "PageSnapshot":
        return cls(
            table_count=int(data.get("tableCount") or 0),
            mark_relevant_table_count=int(data.get("markRelevantTableCount") or 0),
            body_text_length=int(data.get("bodyTextLength") or 0),
            has_loading_indicator=bool(data.get("hasLoadingIndicator")),
        )


class PersistedRecord(BaseModel):
    """
    Canonical row shape written to the store (and served by the downstream read API).

    Keyed by (student_uuid, code). Numeric columns are integers.
    """

    model_config = ConfigDict(frozen=True)

    student_uuid: str
    code: str
    name: str
    credit: int
    cat1: int
    cat2: int
    exam_mark: int
    total_mark: int
    grade: str = ""
    group_title: str = ""

    def record_key(self) -> str:
        return f"{self.student_uuid}|{self.code}"


class SaveSummary(BaseModel):
    saved_count: int = 0
    updated_count: int = 0
    skipped_count: int = 0
    error_count: int = 0
    success: bool = True
    message: str = ""


class PipelineStage(str, Enum):
    SESSION = "session"
    NAVIGATION = "navigation"
    INTERACTION = "interaction"
    STABILIZATION = "stabilization"
    EXTRACTION = "extraction"
    PERSISTENCE = "persistence"
    COMPLETE = "complete"


class StabilizationReport(BaseModel):
    stabilized: bool = False
    timed_out: bool = False
    polls: int = 0
    elapsed_seconds: float = 0.0
    has_record_tables: bool = False
    final_snapshot: Optional[PageSnapshot] = None


class PipelineOutcome(BaseModel):
    """
    Structured summary of a pipeline run, whatever stage it ended in.
    """

    ok: bool
    stage: PipelineStage
    error_kind: Optional[str] = None
    message: str = ""
    groups_count: int = 0
    courses_count: int = 0
    degraded: bool = False
    stabilization: Optional[StabilizationReport] = None
    save: Optional[SaveSummary] = None
