from __future__ import annotations

import logging
import re
from typing import Optional, Sequence

from ..errors import ExtractionAnomaly
from ..models import AcademicGroup, Course, ExtractionDiagnostics, ExtractionResult, StudentInfo
from ..util.numbers import parse_number
from .rules import ExtractionRules
from .snapshot import DocumentSnapshot, TableSnapshot


logger = logging.getLogger(__name__)


_WS_RE = re.compile(r"\s+")
_KEY_RE = re.compile(r"[^a-z0-9]")


def normalize_header(cell: str) -> str:
    return _WS_RE.sub(" ", cell or "").strip().lower()


def sanitize_key(header: str) -> str:
    return _KEY_RE.sub("", (header or "").lower())


def extract_student_info(snapshot: DocumentSnapshot) -> StudentInfo:
    """
    First non-empty candidate per field, in the order the candidates were captured.
    """
    values: dict[str, str] = {}
    for field, candidates in snapshot.student_fields.items():
        if field not in StudentInfo.model_fields:
            continue
        for text in candidates:
            t = (text or "").strip()
            if t:
                values[field] = t
                break
    return StudentInfo(**values)


def header_row_index(table: TableSnapshot) -> int:
    for i, row in enumerate(table.rows):
        if row.in_header:
            return i
    return 0


def is_record_table(headers: Sequence[str], row_count: int, rules: ExtractionRules) -> bool:
    """
    A record table has a header matching the keyword dictionary and at least one data row beyond
    the header (2-row tables with matching headers are usually summary widgets).
    """
    if row_count < rules.min_record_table_rows:
        return False
    for h in headers:
        if not h:
            continue
        if h in rules.record_table_exact_headers:
            return True
        if any(k in h for k in rules.record_table_keywords):
            return True
    return False


def find_group_title(table: TableSnapshot, rules: ExtractionRules) -> Optional[str]:
    title_re = rules.title_re()
    for sib in table.preceding[: rules.group_title_scan_depth]:
        if sib.tag.lower() not in rules.group_title_tags:
            continue
        text = (sib.text or "").strip()
        if not text or len(text) >= rules.group_title_max_length:
            continue
        low = text.lower()
        if any(k in low for k in rules.group_title_keywords) or title_re.match(text):
            return text
    return None


def is_footer_row(cells: Sequence[str], rules: ExtractionRules) -> bool:
    return bool(rules.footer_re().search(" ".join(cells)))


def map_row(headers: Sequence[str], cells: Sequence[str], rules: ExtractionRules) -> Course:
    """
    Map one data row onto a Course using the header rules.

    Raises ExtractionAnomaly when the row has neither a code nor a name.
    """
    values: dict[str, object] = {}
    extra: dict[str, str] = {}

    for header, raw in zip(headers, cells):
        cell = (raw or "").strip()
        field = rules.field_for_header(header)
        if field is None:
            key = sanitize_key(header)
            if key and key not in extra:
                extra[key] = cell
            continue

        if field in rules.numeric_fields:
            if values.get(field) is None:
                values[field] = parse_number(cell)
        elif cell and not values.get(field):
            values[field] = cell

    course = Course(**values, extra_fields=extra)
    if not course.is_identified():
        raise ExtractionAnomaly(f"row has neither code nor name: {list(cells)}")
    return course


def extract_records(snapshot: DocumentSnapshot, rules: Optional[ExtractionRules] = None) -> ExtractionResult:
    """
    Turn a serialized records page into (StudentInfo, groups of courses).

    Pure: no browser, no I/O. Unclassifiable rows are dropped and counted, never raised.
    """
    rules = rules or ExtractionRules()
    diag = ExtractionDiagnostics(tables_seen=len(snapshot.tables))
    groups: list[AcademicGroup] = []

    for table in snapshot.tables:
        if len(table.rows) < 2:
            logger.debug("Table %d skipped - fewer than 2 rows.", table.index)
            continue

        h_idx = header_row_index(table)
        headers = [normalize_header(c) for c in table.rows[h_idx].cells]
        if not is_record_table(headers, len(table.rows), rules):
            logger.debug("Table %d skipped - not a record table. Headers: %s", table.index, headers)
            continue

        diag.tables_classified += 1
        # n is the table's position among all tables in the document, not among record tables.
        title = find_group_title(table, rules) or rules.positional_title_template.format(n=table.index + 1)
        logger.debug("Processing record table %d as %r - headers: %s", table.index, title, headers)

        courses: list[Course] = []
        for i, row in enumerate(table.rows):
            if i == h_idx or row.in_header:
                continue
            cells = [(c or "").strip() for c in row.cells]
            if len(cells) < 2 or not any(cells):
                diag.rows_dropped_empty += 1
                continue
            # Before field mapping, so aggregate rows never parse as courses.
            if is_footer_row(cells, rules):
                logger.debug("Skipping summary/footer row: %s", cells)
                diag.rows_dropped_footer += 1
                continue
            try:
                courses.append(map_row(headers, cells, rules))
            except ExtractionAnomaly as e:
                logger.debug("Dropped row in %r: %s", title, e)
                diag.rows_dropped_unidentified += 1

        if not courses:
            logger.info("Group %r had no valid courses; dropped.", title)
            diag.groups_dropped_empty += 1
            continue

        groups.append(AcademicGroup(title=title, courses=tuple(courses)))
        logger.info("Extracted group %r with %d courses", title, len(courses))

    return ExtractionResult(
        student=extract_student_info(snapshot),
        groups=tuple(groups),
        diagnostics=diag,
    )
