from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Optional, Sequence

from ..config import TimingConfig
from ..errors import AuthenticationFailure, TransportError
from .classifier import looks_like_auth_page
from .driver import BrowserDriver
from .selectors import PortalSelectors


logger = logging.getLogger(__name__)


_RECORDS_CONTENT_JS = """
({ tableSelector, headingSelector, headingTexts, tableKeywords, requiredPhrase, anyPhrases }) => {
  try {
    if (document.querySelector(tableSelector)) return { found: true, reason: 'grid table' };
  } catch (_) {}

  let headings = [];
  try { headings = Array.from(document.querySelectorAll(headingSelector)); } catch (_) {}
  for (const h of headings) {
    const text = (h.textContent || '').trim();
    const hit = headingTexts.find(t => text.includes(t));
    if (hit) return { found: true, reason: 'heading: ' + text.slice(0, 80) };
  }

  for (const table of Array.from(document.querySelectorAll('table'))) {
    const headerRow = table.querySelector('thead tr, tbody tr:first-child');
    if (!headerRow) continue;
    const headerText = (headerRow.textContent || '').toLowerCase();
    if (tableKeywords.some(k => headerText.includes(k)) && table.querySelectorAll('tr').length >= 2) {
      return { found: true, reason: 'keyword table' };
    }
  }

  const bodyText = ((document.body && document.body.innerText) || '').toLowerCase();
  if (bodyText.includes(requiredPhrase) && anyPhrases.some(p => bodyText.includes(p))) {
    return { found: true, reason: 'body text' };
  }
  return { found: false, reason: '' };
}
"""


_DROPDOWNS_JS = """
() => Array.from(document.querySelectorAll('select')).map((el, index) => ({
  index,
  id: el.id || '',
  value: el.value || '',
  options: Array.from(el.options).map(o => ({ value: o.value, text: (o.textContent || '').trim() })),
}))
"""


_BUTTONS_JS = """
({ selector, excluded }) => {
  let nodes = [];
  try { nodes = Array.from(document.querySelectorAll(selector)); } catch (_) { return []; }
  return nodes
    .map(el => ({
      id: el.id || '',
      tag: el.tagName.toLowerCase(),
      label: ((el.value || el.textContent) || '').trim(),
      visible: el.offsetParent !== null,
    }))
    .filter(b => b.visible && b.label && !excluded.some(x => b.label.toLowerCase().includes(x)));
}
"""


@dataclass(frozen=True)
class PageButton:
    id: str
    tag: str
    label: str

    def selector(self) -> str:
        if self.id:
            return f"#{self.id}"
        label = self.label.replace('"', '\\"')
        if self.tag == "input":
            return f'input[type="submit"][value="{label}"]'
        return f'{self.tag}:has-text("{label}")'


def pick_view_button(buttons: Sequence[PageButton], keywords: Sequence[str]) -> Optional[PageButton]:
    """
    Prefer a button whose label reads like "view"/"show"/...; otherwise the first visible one.
    """
    for b in buttons:
        low = b.label.lower()
        if any(k in low for k in keywords):
            return b
    return buttons[0] if buttons else None


class RecordsPageInteractor:
    """
    Gets the records page from "reached" to "records requested": confirm it is the right page,
    fill any unset filter dropdowns and press the view button.
    """

    def __init__(
        self,
        driver: BrowserDriver,
        *,
        timing: TimingConfig,
        selectors: Optional[PortalSelectors] = None,
        table_keywords: Sequence[str] = (),
    ) -> None:
        self.driver = driver
        self.timing = timing
        self.selectors = selectors or PortalSelectors()
        self.table_keywords = tuple(k.lower() for k in table_keywords)

    def has_records_content(self) -> bool:
        sel = self.selectors
        try:
            res = self.driver.evaluate(
                _RECORDS_CONTENT_JS,
                {
                    "tableSelector": sel.records_table_selector,
                    "headingSelector": sel.records_heading_selector,
                    "headingTexts": list(sel.records_heading_texts),
                    "tableKeywords": list(self.table_keywords),
                    "requiredPhrase": sel.records_body_required_phrase.lower(),
                    "anyPhrases": [p.lower() for p in sel.records_body_any_phrases],
                },
            ) or {}
        except TransportError as e:
            logger.warning("Records content check failed: %s", e)
            return False

        if res.get("found"):
            logger.info("Records page content found (%s)", res.get("reason") or "match")
            return True
        logger.warning("No records content indicators found on %s", self.driver.url)
        self.driver.capture_diagnostic("records_content_missing")
        return False

    def select_default_options(self) -> int:
        """
        Pick the first real option in every dropdown that has nothing selected. Returns how many were changed.
        """
        dropdowns = self.driver.evaluate(_DROPDOWNS_JS) or []
        logger.info("Found %d dropdown(s)", len(dropdowns))

        changed = 0
        for dd in dropdowns:
            index = int(dd.get("index") or 0)
            options = dd.get("options") or []
            if dd.get("value"):
                logger.info("Dropdown %d already has value selected: %s", index + 1, dd.get("value"))
                continue
            if len(options) <= 1:
                continue
            first = next((o for o in options if o.get("value")), None)
            if first is None:
                logger.info("Dropdown %d has no selectable options with values.", index + 1)
                continue

            selector = f"#{dd['id']}" if dd.get("id") else f"select >> nth={index}"
            logger.info("Selecting %r (value=%s) in dropdown %d", first.get("text"), first.get("value"), index + 1)
            self.driver.select_option(selector, str(first["value"]))
            self.driver.wait(self.timing.page_load_wait_ms * 2)
            self.driver.step(f"after_dropdown_{index}_selection")
            self._fail_if_bounced("dropdown selection")
            changed += 1
        return changed

    def visible_buttons(self) -> list[PageButton]:
        raw = self.driver.evaluate(
            _BUTTONS_JS,
            {
                "selector": self.selectors.view_button_selector,
                "excluded": [x.lower() for x in self.selectors.view_button_excluded_keywords],
            },
        ) or []
        return [PageButton(id=b.get("id") or "", tag=b.get("tag") or "button", label=b.get("label") or "") for b in raw]

    def click_view_button(self) -> Optional[PageButton]:
        buttons = self.visible_buttons()
        logger.info("Available buttons: %s", [b.label for b in buttons])
        button = pick_view_button(buttons, self.selectors.view_button_keywords)
        if button is None:
            logger.info("No interactive buttons found on the page.")
            return None

        logger.info("Clicking button %r (id=%s)", button.label, button.id or "n/a")
        try:
            self.driver.click(
                button.selector(),
                wait_for_navigation=True,
                timeout_ms=self.timing.navigation_timeout_ms * 2,
            )
        except TransportError as e:
            # The page may still have changed; the bounce check and stabilization decide.
            logger.warning("Button click failed for %r: %s. Checking whether the page changed anyway.", button.label, e)

        self.driver.wait(self.timing.page_load_wait_ms * 3)
        self.driver.step("after_button_click")
        self._fail_if_bounced("button click")
        return button

    def run(self) -> None:
        self.select_default_options()
        self.click_view_button()

    def _fail_if_bounced(self, after: str) -> None:
        if looks_like_auth_page(self.driver, self.selectors):
            self.driver.capture_diagnostic(f"login_redirect_after_{after.replace(' ', '_')}")
            raise AuthenticationFailure(f"Redirected to the login page after {after}; session expired.")
