from __future__ import annotations

import logging
import time
from enum import Enum
from typing import Callable, Optional, Sequence

from ..errors import TransportError
from ..models import PageSnapshot, StabilizationReport
from .driver import BrowserDriver
from .selectors import PortalSelectors


logger = logging.getLogger(__name__)


PAGE_SNAPSHOT_JS = """
({ loadingTexts, loadingSelectors, relevanceKeywords }) => {
  const body = document.body;
  const bodyText = ((body && body.innerText) || '').toLowerCase();
  const hasLoadingText = loadingTexts.some(t => bodyText.includes(t));

  let visibleLoading = 0;
  for (const sel of loadingSelectors) {
    let nodes = [];
    try { nodes = Array.from(document.querySelectorAll(sel)); } catch (_) { continue; }
    for (const el of nodes) {
      const style = window.getComputedStyle(el);
      if (style.display !== 'none' && style.visibility !== 'hidden' && style.opacity !== '0') visibleLoading++;
    }
  }

  const tables = Array.from(document.querySelectorAll('table'));
  let relevant = 0;
  for (const table of tables) {
    const text = (table.innerText || '').toLowerCase();
    if (relevanceKeywords.some(k => text.includes(k))) relevant++;
  }

  return {
    tableCount: tables.length,
    markRelevantTableCount: relevant,
    bodyTextLength: bodyText.length,
    hasLoadingIndicator: hasLoadingText || visibleLoading > 0,
  };
}
"""


class StabilizationPhase(str, Enum):
    POLLING = "polling"
    STABLE = "stable"
    DONE = "done"


class StabilizationMachine:
    """
    Decides, one snapshot at a time, whether asynchronously-loaded tables have stopped changing.

    - a loading indicator resets the stable counter; counts are not compared on that poll
    - unchanged table count and body length with at least one relevant table counts as a stable poll
    - anything else (growth, shrinkage, no relevant tables) resets the counter
    - `required_stable_polls` consecutive stable polls -> DONE
    """

    def __init__(self, required_stable_polls: int = 3) -> None:
        if required_stable_polls < 1:
            raise ValueError("required_stable_polls must be >= 1")
        self.required_stable_polls = required_stable_polls
        self.phase = StabilizationPhase.POLLING
        self.stable_count = 0
        self.polls = 0
        self.last: Optional[PageSnapshot] = None
        self._previous: Optional[PageSnapshot] = None

    @property
    def stabilized(self) -> bool:
        return self.phase is StabilizationPhase.DONE

    def feed(self, snapshot: PageSnapshot) -> StabilizationPhase:
        if self.phase is StabilizationPhase.DONE:
            return self.phase

        self.polls += 1
        self.last = snapshot

        if snapshot.has_loading_indicator:
            self._reset()
            return self.phase

        prev = self._previous
        unchanged = (
            prev is not None
            and snapshot.table_count == prev.table_count
            and snapshot.body_text_length == prev.body_text_length
        )
        if unchanged and snapshot.mark_relevant_table_count > 0:
            self.stable_count += 1
            if self.stable_count >= self.required_stable_polls:
                self.phase = StabilizationPhase.DONE
            else:
                self.phase = StabilizationPhase.STABLE
        else:
            self._reset()

        self._previous = snapshot
        return self.phase

    def _reset(self) -> None:
        self.stable_count = 0
        self.phase = StabilizationPhase.POLLING


def capture_page_snapshot(
    driver: BrowserDriver,
    selectors: PortalSelectors,
    relevance_keywords: Sequence[str],
) -> PageSnapshot:
    data = driver.evaluate(
        PAGE_SNAPSHOT_JS,
        {
            "loadingTexts": [t.lower() for t in selectors.loading_text_patterns],
            "loadingSelectors": list(selectors.loading_element_selectors),
            "relevanceKeywords": [k.lower() for k in relevance_keywords],
        },
    )
    return PageSnapshot.from_page_data(data or {})


class StabilizationDetector:
    """
    Polls the page on a fixed interval until the records tables settle, or the wait runs out.

    A timeout is not a failure: the report says whether record tables are present at all and the
    caller proceeds with whatever rendered (degraded).
    """

    def __init__(
        self,
        driver: BrowserDriver,
        *,
        selectors: Optional[PortalSelectors] = None,
        relevance_keywords: Sequence[str] = (),
        max_wait_ms: int = 90_000,
        poll_interval_ms: int = 2_000,
        required_stable_polls: int = 3,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self.driver = driver
        self.selectors = selectors or PortalSelectors()
        self.relevance_keywords = tuple(relevance_keywords)
        self.max_wait_ms = max_wait_ms
        self.poll_interval_ms = poll_interval_ms
        self.required_stable_polls = required_stable_polls
        self._clock = clock

    def snapshot(self) -> PageSnapshot:
        return capture_page_snapshot(self.driver, self.selectors, self.relevance_keywords)

    def wait_until_stable(self) -> StabilizationReport:
        machine = StabilizationMachine(self.required_stable_polls)
        started = self._clock()
        deadline = started + self.max_wait_ms / 1000
        logger.info("Waiting for records to load (max %.0fs)...", self.max_wait_ms / 1000)

        while self._clock() < deadline:
            try:
                snap = self.snapshot()
            except TransportError as e:
                # Usually a postback replaced the document mid-evaluation.
                logger.debug("Snapshot failed during stabilization poll: %s", e)
                self.driver.wait(self.poll_interval_ms)
                continue

            phase = machine.feed(snap)
            logger.info(
                "Loading check - tables=%d relevant=%d chars=%d loading=%s stable=%d/%d",
                snap.table_count,
                snap.mark_relevant_table_count,
                snap.body_text_length,
                snap.has_loading_indicator,
                machine.stable_count,
                self.required_stable_polls,
            )
            if phase is StabilizationPhase.DONE:
                break
            self.driver.wait(self.poll_interval_ms)

        elapsed = self._clock() - started
        timed_out = not machine.stabilized
        if timed_out:
            logger.warning("Records did not stabilize within %.0fs; continuing with what is present.", elapsed)
        else:
            logger.info("Records stabilized after %d polls (%.1fs)", machine.polls, elapsed)

        self.driver.step("after_stabilization")
        final: Optional[PageSnapshot]
        try:
            final = self.snapshot()
        except TransportError:
            logger.debug("Final table-presence snapshot failed.", exc_info=True)
            final = machine.last

        has_tables = bool(final and final.mark_relevant_table_count > 0)
        logger.info(
            "Final check - tables=%d relevant=%d",
            final.table_count if final else 0,
            final.mark_relevant_table_count if final else 0,
        )
        return StabilizationReport(
            stabilized=machine.stabilized,
            timed_out=timed_out,
            polls=machine.polls,
            elapsed_seconds=round(elapsed, 3),
            has_record_tables=has_tables,
            final_snapshot=final,
        )
