from __future__ import annotations

import re
from typing import Literal, Optional

from pydantic import BaseModel, Field, field_validator


CanonicalField = Literal[
    "code",
    "name",
    "credits",
    "continuous_assessment_1",
    "continuous_assessment_2",
    "exam_mark",
    "total_mark",
    "grade",
    "grade_point",
]


class FieldRule(BaseModel):
    """
    Maps a lower-cased header onto a canonical field.

    A header matches when it equals one of `exact`, or contains one of `contains` and none of `excludes`.
    """

    field: CanonicalField
    contains: tuple[str, ...] = ()
    exact: tuple[str, ...] = ()
    excludes: tuple[str, ...] = ()

    def matches(self, header: str) -> bool:
        h = (header or "").strip().lower()
        if not h:
            return False
        if h in self.exact:
            return True
        if any(x in h for x in self.excludes):
            return False
        return any(c in h for c in self.contains)


def _default_field_rules() -> list[FieldRule]:
    # Order matters: the first matching rule wins (e.g. "Course Code" is a code, not a name).
    return [
        FieldRule(field="code", contains=("code",)),
        FieldRule(field="name", contains=("course", "subject", "module", "unit")),
        FieldRule(field="credits", contains=("credit",), exact=("ch",)),
        FieldRule(
            field="continuous_assessment_1",
            contains=("ca1", "cat1", "cat 1", "ca 1", "cont. assess. 1", "continuous assessment 1"),
        ),
        FieldRule(
            field="continuous_assessment_2",
            contains=("ca2", "cat2", "cat 2", "ca 2", "cont. assess. 2", "continuous assessment 2"),
        ),
        FieldRule(field="exam_mark", contains=("exam", "final")),
        FieldRule(field="total_mark", contains=("total", "overall", "mark", "score"), excludes=("remark",)),
        FieldRule(field="grade", contains=("grade",), excludes=("point",)),
        FieldRule(field="grade_point", contains=("point",), exact=("gp",)),
    ]


class ExtractionRules(BaseModel):
    """
    Heuristic dictionaries used to read a results page.

    These are tuned for one narrow class of institutional result pages and are expected to need re-tuning;
    every list can be overridden from the `extraction:` section of the YAML config.
    """

    record_table_keywords: tuple[str, ...] = (
        "course code",
        "module code",
        "subject code",
        "course name",
        "module name",
        "subject name",
        "course",
        "code",
        "credit",
        "ca1",
        "cat1",
        "cont. assess. 1",
        "continuous assessment 1",
        "ca2",
        "cat2",
        "cont. assess. 2",
        "continuous assessment 2",
        "exam",
        "examination",
        "mark",
        "total mark",
        "overall mark",
        "grand total",
        "aggregate",
        "grade",
        "letter grade",
        "grade point",
        "points",
    )
    # Short tokens that only count as record-table headers when they are the whole header.
    record_table_exact_headers: tuple[str, ...] = ("ch", "gp")
    min_record_table_rows: int = 3

    field_rules: list[FieldRule] = Field(default_factory=_default_field_rules)
    numeric_fields: frozenset[str] = frozenset(
        {
            "credits",
            "continuous_assessment_1",
            "continuous_assessment_2",
            "exam_mark",
            "total_mark",
            "grade_point",
        }
    )

    footer_keywords: tuple[str, ...] = ("total", "gpa", "average", "cumulative", "overall", "disclaimer")

    group_title_keywords: tuple[str, ...] = ("semester", "academic year", "trimester", "term ")
    group_title_pattern: str = r"^[a-z]+\s+\d{4}\s*/\s*\d{4}$"
    group_title_max_length: int = 150
    group_title_tags: tuple[str, ...] = ("h1", "h2", "h3", "h4", "h5", "h6", "div", "span", "p", "strong", "b", "label")
    group_title_scan_depth: int = 5
    positional_title_template: str = "Academic Period {n}"

    # Used by the stabilization snapshot to decide whether a table is worth waiting for.
    relevance_keywords: tuple[str, ...] = (
        "course",
        "subject",
        "module",
        "code",
        "mark",
        "score",
        "grade",
        "point",
        "credit",
        "cat1",
        "cat2",
        "exam",
        "total",
    )

    @field_validator("group_title_pattern")
    @classmethod
    def _pattern_compiles(cls, v: str) -> str:
        re.compile(v)
        return v

    def field_for_header(self, header: str) -> Optional[str]:
        for rule in self.field_rules:
            if rule.matches(header):
                return rule.field
        return None

    def footer_re(self) -> re.Pattern[str]:
        words = "|".join(re.escape(k) for k in self.footer_keywords if k)
        if not words:
            return re.compile(r"(?!)")
        return re.compile(rf"\b(?:{words})\b", re.I)

    def title_re(self) -> re.Pattern[str]:
        return re.compile(self.group_title_pattern, re.I)
