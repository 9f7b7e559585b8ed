from __future__ import annotations

import logging
import time
from pathlib import Path
from typing import Callable, Optional

from .config import AppConfig
from .errors import AuthenticationFailure, ContentNotFound, TransportError
from .extraction.engine import extract_records
from .extraction.snapshot import capture_document_snapshot, save_snapshot
from .models import ExtractionResult, PipelineOutcome, PipelineStage, SaveSummary, StabilizationReport
from .persistence.store import MarksheetStore
from .persistence.writer import PersistenceWriter
from .portal.classifier import looks_like_auth_page
from .portal.cookies import CookieJar
from .portal.driver import BrowserDriver
from .portal.interactions import RecordsPageInteractor
from .portal.selectors import PortalSelectors
from .portal.session import Session, SessionController
from .portal.stabilization import StabilizationDetector


logger = logging.getLogger(__name__)


class MarksheetPipeline:
    """
    One strictly sequential run: session -> navigation -> interaction -> stabilization -> extraction -> persistence.

    Only session and content-availability failures abort. Everything else degrades and continues,
    and every path ends in a PipelineOutcome.
    """

    def __init__(
        self,
        driver: BrowserDriver,
        config: AppConfig,
        *,
        store: Optional[MarksheetStore] = None,
        selectors: Optional[PortalSelectors] = None,
        cookie_jar: Optional[CookieJar] = None,
        clock: Callable[[], float] = time.monotonic,
        dry_run: bool = False,
    ) -> None:
        self.driver = driver
        self.config = config
        self.store = store
        self.selectors = selectors or PortalSelectors()
        self.cookie_jar = cookie_jar
        self.dry_run = dry_run
        self._clock = clock

        self.stage = PipelineStage.SESSION
        self.session: Optional[Session] = None
        self.result: Optional[ExtractionResult] = None
        self._stabilization: Optional[StabilizationReport] = None
        self._save: Optional[SaveSummary] = None

    def run(self) -> PipelineOutcome:
        run_id: Optional[int] = None
        if self.store is not None and not self.dry_run:
            run_id = self.store.record_run_start()

        try:
            outcome = self._run()
        except AuthenticationFailure as e:
            logger.error("Authentication failed during %s: %s", self.stage.value, e)
            outcome = self._failure("authentication", str(e))
        except ContentNotFound as e:
            logger.error("Content not found during %s: %s", self.stage.value, e)
            outcome = self._failure("content_not_found", str(e))
        except TransportError as e:
            logger.error("Transport failure during %s: %s", self.stage.value, e)
            outcome = self._failure("transport", str(e))
        except Exception as e:
            # Driver or store bug: still report where the run stopped.
            logger.exception("Unexpected error during %s", self.stage.value)
            outcome = self._failure("unexpected", f"{type(e).__name__}: {e}")

        if run_id is not None and self.store is not None:
            self.store.record_run_finish(run_id, ok=outcome.ok, stage=outcome.stage.value, message=outcome.message)
        return outcome

    def _run(self) -> PipelineOutcome:
        cfg = self.config

        self.stage = PipelineStage.SESSION
        self.session = Session.from_cookie_jar(self.cookie_jar)
        if self.session.cookies:
            self.driver.set_cookies(self.session.cookies)
        controller = SessionController(
            self.driver,
            portal=cfg.portal,
            timing=cfg.timing,
            selectors=self.selectors,
            cookie_jar=self.cookie_jar,
            headless=cfg.browser.headless,
            clock=self._clock,
        )
        controller.ensure_session(self.session)
        if not self.session.is_valid:
            raise AuthenticationFailure(f"Session ended in state {self.session.state.value}, not valid.")

        self.stage = PipelineStage.NAVIGATION
        interactor = RecordsPageInteractor(
            self.driver,
            timing=cfg.timing,
            selectors=self.selectors,
            table_keywords=cfg.extraction.record_table_keywords,
        )
        self._navigate_to_records(interactor)

        self.stage = PipelineStage.INTERACTION
        interactor.run()

        self.stage = PipelineStage.STABILIZATION
        detector = StabilizationDetector(
            self.driver,
            selectors=self.selectors,
            relevance_keywords=cfg.extraction.relevance_keywords,
            max_wait_ms=cfg.timing.stabilization_max_wait_ms,
            poll_interval_ms=cfg.timing.stabilization_poll_interval_ms,
            required_stable_polls=cfg.timing.stabilization_required_stable_polls,
            clock=self._clock,
        )
        report = detector.wait_until_stable()
        self._stabilization = report
        if not report.has_record_tables:
            logger.warning("No record tables detected after waiting; extracting anyway, results may be incomplete.")

        self.stage = PipelineStage.EXTRACTION
        snapshot = capture_document_snapshot(
            self.driver,
            self.selectors,
            scan_depth=cfg.extraction.group_title_scan_depth,
        )
        try:
            out = save_snapshot(snapshot, Path(cfg.browser.debug_dir) / "records_snapshot.json")
            logger.info("Saved document snapshot: %s", out)
        except OSError:
            logger.debug("Failed to save document snapshot.", exc_info=True)

        result = extract_records(snapshot, cfg.extraction)
        self.result = result
        logger.info(
            "Extraction: %d groups, %d courses (tables seen=%d classified=%d; rows dropped empty=%d footer=%d unidentified=%d)",
            len(result.groups),
            result.course_count,
            result.diagnostics.tables_seen,
            result.diagnostics.tables_classified,
            result.diagnostics.rows_dropped_empty,
            result.diagnostics.rows_dropped_footer,
            result.diagnostics.rows_dropped_unidentified,
        )
        if not result.groups:
            self.driver.capture_diagnostic("no_records_extracted")
            raise ContentNotFound("No records were extracted from the records page.")

        self.stage = PipelineStage.PERSISTENCE
        degraded = not report.stabilized
        if self.dry_run or self.store is None:
            logger.info("Dry run: not writing %d courses to the store.", result.course_count)
            return self._outcome(ok=True, message="Dry run; nothing saved.", degraded=degraded)

        summary = PersistenceWriter(self.store, cfg.persistence).save(result)
        self._save = summary
        if summary.success:
            self.stage = PipelineStage.COMPLETE
        return self._outcome(
            ok=summary.success,
            error_kind=None if summary.success else "persistence",
            message=summary.message,
            degraded=degraded,
        )

    def _navigate_to_records(self, interactor: RecordsPageInteractor) -> None:
        url = self.config.portal.records_url
        logger.info("Navigating to records page: %s", url)
        try:
            self.driver.navigate(url, timeout_ms=self.config.timing.navigation_timeout_ms)
        except TransportError as e:
            # A slow postback can time out while the page is usable; the checks below decide.
            logger.warning("Navigation to records page reported an error; checking the page anyway. (%s)", e)
        self.driver.wait(self.config.timing.page_load_wait_ms * 3)
        self.driver.step("records_page_initial")

        if looks_like_auth_page(self.driver, self.selectors):
            self.driver.capture_diagnostic("records_redirected_to_login")
            raise AuthenticationFailure("Redirected to the login page when opening the records page; session expired.")

        if not interactor.has_records_content():
            raise ContentNotFound(f"Records page content not found at {self.driver.url}")

    def _outcome(
        self,
        *,
        ok: bool,
        message: str = "",
        error_kind: Optional[str] = None,
        degraded: bool = False,
    ) -> PipelineOutcome:
        result = self.result
        return PipelineOutcome(
            ok=ok,
            stage=self.stage,
            error_kind=error_kind,
            message=message,
            groups_count=len(result.groups) if result else 0,
            courses_count=result.course_count if result else 0,
            degraded=degraded,
            stabilization=self._stabilization,
            save=self._save,
        )

    def _failure(self, kind: str, message: str) -> PipelineOutcome:
        return self._outcome(ok=False, error_kind=kind, message=message)
