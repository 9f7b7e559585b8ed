from __future__ import annotations

import json
from pathlib import Path
from typing import Optional

import pytest
from fakes import BASE_URL, LOGOUT_LINK, RECORDS_URL, FakePage, FakePortal
from playwright.sync_api import Error as PlaywrightError

from marksheet_sync.config import AppConfig, BrowserConfig, PortalConfig, StateConfig
from marksheet_sync.extraction.snapshot import DOCUMENT_SNAPSHOT_JS
from marksheet_sync.models import PipelineStage
from marksheet_sync.persistence.store import MarksheetStore
from marksheet_sync.pipeline import MarksheetPipeline
from marksheet_sync.portal.cookies import CookieJar
from marksheet_sync.portal.interactions import _BUTTONS_JS, _DROPDOWNS_JS, _RECORDS_CONTENT_JS
from marksheet_sync.portal.session import SessionState
from marksheet_sync.portal.stabilization import PAGE_SNAPSHOT_JS


HEADERS = ["Code", "Course Name", "Credits", "CAT1", "CAT2", "Exam", "Total", "Grade"]


def _document(reg: str = "REG/2021/0042", rows: Optional[list[list[str]]] = None) -> dict:
    rows = rows if rows is not None else [
        HEADERS,
        ["CSC101", "Introduction to Programming", "4", "18", "17.5", "52", "87.5", "A"],
        ["MTH102", "Discrete Mathematics", "3", "12", "", "40", "62", "C"],
        ["", "Total", "7", "", "", "", "149.5", ""],
    ]
    return {
        "url": RECORDS_URL,
        "title": "Marksheet",
        "student_fields": {"name": ["Jane Doe"], "registration_id": [reg]},
        "tables": [
            {
                "index": 0,
                "element_id": "ctl00_GridviewMarks",
                "rows": [{"cells": r, "in_header": i == 0} for i, r in enumerate(rows)],
                "preceding": [{"tag": "h3", "text": "Semester 1 2023/2024"}],
            }
        ],
    }


def _records_page(*, content: bool = True, tables: bool = True, document: Optional[dict] = None) -> FakePage:
    return FakePage(
        url=RECORDS_URL,
        title="Marksheet",
        elements={LOGOUT_LINK},
        scripts={
            _RECORDS_CONTENT_JS: {"found": content, "reason": "grid table" if content else ""},
            _DROPDOWNS_JS: [
                {
                    "index": 0,
                    "id": "ddlAcademicYear",
                    "value": "",
                    "options": [{"value": "", "text": "-- Select --"}, {"value": "2023", "text": "2023/2024"}],
                }
            ],
            _BUTTONS_JS: [{"id": "", "tag": "input", "label": "Logout"}, {"id": "btnView", "tag": "input", "label": "View Marks"}],
            PAGE_SNAPSHOT_JS: {
                "tableCount": 1 if tables else 0,
                "markRelevantTableCount": 1 if tables else 0,
                "bodyTextLength": 2400,
                "hasLoadingIndicator": False,
            },
            DOCUMENT_SNAPSHOT_JS: document if document is not None else _document(),
        },
    )


def _config(tmp_path: Path) -> AppConfig:
    return AppConfig(
        portal=PortalConfig(base_url=BASE_URL, username="u", password="p"),
        browser=BrowserConfig(cookies_path=str(tmp_path / "cookies.json"), debug_dir=str(tmp_path / "debug")),
        state=StateConfig(db_path=str(tmp_path / "marksheet.db")),
    )


def _run(tmp_path: Path, portal: FakePortal, *, store: Optional[MarksheetStore] = None, dry_run: bool = False):
    cfg = _config(tmp_path)
    pipeline = MarksheetPipeline(
        portal.driver,
        cfg,
        store=store,
        cookie_jar=CookieJar(cfg.browser.cookies_path),
        clock=portal.driver.clock,
        dry_run=dry_run,
    )
    return pipeline, pipeline.run()


def test_full_run_logs_in_extracts_and_saves(tmp_path: Path) -> None:
    portal = FakePortal(records_page=_records_page)
    store = MarksheetStore(str(tmp_path / "marksheet.db"))
    try:
        pipeline, outcome = _run(tmp_path, portal, store=store)

        assert outcome.ok
        assert outcome.stage is PipelineStage.COMPLETE
        assert outcome.groups_count == 1
        assert outcome.courses_count == 2
        assert not outcome.degraded
        assert outcome.save is not None
        assert (outcome.save.saved_count, outcome.save.skipped_count, outcome.save.error_count) == (2, 0, 0)

        records = store.list_records()
        assert {r.code for r in records} == {"CSC101", "MTH102"}
        assert {r.student_uuid for r in records} == {"REG/2021/0042"}

        last = store.last_run()
        assert last is not None and last["ok"] == 1 and last["stage"] == "complete"
    finally:
        store.close()

    assert pipeline.session is not None and pipeline.session.is_valid
    assert portal.logins == 1
    assert ("#ddlAcademicYear", "2023") in portal.driver.selected
    assert "#btnView" in portal.driver.clicks
    assert (tmp_path / "cookies.json").exists()
    saved = json.loads((tmp_path / "debug" / "records_snapshot.json").read_text(encoding="utf-8"))
    assert saved["tables"][0]["element_id"] == "ctl00_GridviewMarks"


def test_second_run_reuses_cookies_and_skips_duplicates(tmp_path: Path) -> None:
    store = MarksheetStore(str(tmp_path / "marksheet.db"))
    try:
        first_portal = FakePortal(records_page=_records_page)
        _run(tmp_path, first_portal, store=store)

        # New browser, same portal session: cookies from the jar are enough.
        second_portal = FakePortal(logged_in=True, records_page=_records_page)
        pipeline, outcome = _run(tmp_path, second_portal, store=store)

        assert outcome.ok
        assert second_portal.logins == 0
        assert second_portal.driver.cookies[0]["name"] == "ASP.NET_SessionId"
        assert pipeline.session is not None and pipeline.session.history[-1].value == "checking"
        assert outcome.save is not None
        assert outcome.save.saved_count == 0
        assert outcome.save.skipped_count == 2
    finally:
        store.close()


def test_rejected_login_aborts_with_authentication_outcome(tmp_path: Path) -> None:
    portal = FakePortal(password="something-else", records_page=_records_page)
    store = MarksheetStore(str(tmp_path / "marksheet.db"))
    try:
        _, outcome = _run(tmp_path, portal, store=store)
        assert store.list_records() == []
        last = store.last_run()
        assert last is not None and last["ok"] == 0 and last["stage"] == "session"
    finally:
        store.close()

    assert not outcome.ok
    assert outcome.stage is PipelineStage.SESSION
    assert outcome.error_kind == "authentication"
    assert RECORDS_URL not in portal.driver.navigations


def test_missing_records_content_is_distinct_from_auth_failure(tmp_path: Path) -> None:
    portal = FakePortal(logged_in=True, records_page=lambda: _records_page(content=False))
    _, outcome = _run(tmp_path, portal)

    assert not outcome.ok
    assert outcome.stage is PipelineStage.NAVIGATION
    assert outcome.error_kind == "content_not_found"


def test_session_expiring_on_records_page_is_authentication_failure(tmp_path: Path) -> None:
    portal = FakePortal(logged_in=True, records_page=_records_page)
    portal.driver.routes[RECORDS_URL] = portal.login_page
    _, outcome = _run(tmp_path, portal)

    assert not outcome.ok
    assert outcome.stage is PipelineStage.NAVIGATION
    assert outcome.error_kind == "authentication"


def test_bounce_to_login_after_view_click_aborts(tmp_path: Path) -> None:
    portal = FakePortal(logged_in=True, records_page=_records_page)
    portal.driver.on_click["#btnView"] = portal.login_page
    _, outcome = _run(tmp_path, portal)

    assert not outcome.ok
    assert outcome.stage is PipelineStage.INTERACTION
    assert outcome.error_kind == "authentication"


def test_no_tables_after_stabilization_is_content_not_found(tmp_path: Path) -> None:
    empty = _document(rows=[])
    empty["tables"] = []
    portal = FakePortal(logged_in=True, records_page=lambda: _records_page(tables=False, document=empty))
    _, outcome = _run(tmp_path, portal)

    assert not outcome.ok
    assert outcome.stage is PipelineStage.EXTRACTION
    assert outcome.error_kind == "content_not_found"
    assert outcome.stabilization is not None and outcome.stabilization.timed_out
    assert "no_records_extracted" in portal.driver.captures


def test_dry_run_extracts_without_writing(tmp_path: Path) -> None:
    portal = FakePortal(logged_in=True, records_page=_records_page)
    pipeline, outcome = _run(tmp_path, portal, dry_run=True)

    assert outcome.ok
    assert outcome.stage is PipelineStage.PERSISTENCE
    assert outcome.save is None
    assert pipeline.result is not None and pipeline.result.course_count == 2
    assert not (tmp_path / "marksheet.db").exists()


@pytest.mark.parametrize("reg", ["", "N/A"])
def test_missing_registration_number_uses_fallback_id(tmp_path: Path, reg: str) -> None:
    portal = FakePortal(logged_in=True, records_page=lambda: _records_page(document=_document(reg=reg)))
    store = MarksheetStore(str(tmp_path / "marksheet.db"))
    try:
        _, outcome = _run(tmp_path, portal, store=store)
        assert outcome.ok
        assert {r.student_uuid for r in store.list_records()} == {"unknown-student"}
    finally:
        store.close()


def test_unexpected_driver_error_still_ends_in_an_outcome(tmp_path: Path) -> None:
    portal = FakePortal(records_page=_records_page)

    def detached(selector: str, text: str, *, delay_ms: int = 0) -> None:
        raise PlaywrightError("Element is not attached to the DOM")

    portal.driver.type_into = detached  # type: ignore[method-assign]
    store = MarksheetStore(str(tmp_path / "marksheet.db"))
    try:
        pipeline, outcome = _run(tmp_path, portal, store=store)
        last = store.last_run()
        assert last is not None and last["ok"] == 0 and last["stage"] == "session"
    finally:
        store.close()

    assert not outcome.ok
    assert outcome.stage is PipelineStage.SESSION
    assert outcome.error_kind == "unexpected"
    assert "not attached" in outcome.message
    assert pipeline.session is not None
    assert pipeline.session.state is SessionState.FAILED
