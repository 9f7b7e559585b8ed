from __future__ import annotations

import logging
import re
from contextlib import contextmanager
from pathlib import Path
from typing import Any, Iterator, Optional, Protocol

from playwright.sync_api import Error as PlaywrightError
from playwright.sync_api import Page, sync_playwright
from playwright.sync_api import TimeoutError as PlaywrightTimeoutError

from ..errors import TransportError


logger = logging.getLogger(__name__)


class BrowserDriver(Protocol):
    """
    What the session controller, stabilization detector and pipeline need from a browser.

    `evaluate` must return plain structured data (dicts/lists/str/numbers), never element handles.
    """

    @property
    def url(self) -> str: ...

    def title(self) -> str: ...

    def navigate(self, url: str, *, wait_until: str = "domcontentloaded", timeout_ms: int = 30_000) -> None: ...

    def wait_for_element(self, selector: str, *, timeout_ms: int) -> bool: ...

    def has_element(self, selector: str) -> bool: ...

    def evaluate(self, script: str, arg: Any = None) -> Any: ...

    def get_cookies(self) -> list[dict]: ...

    def set_cookies(self, cookies: list[dict]) -> None: ...

    def clear_input(self, selector: str) -> None: ...

    def type_into(self, selector: str, text: str, *, delay_ms: int = 0) -> None: ...

    def click(self, selector: str, *, wait_for_navigation: bool = False, timeout_ms: int = 30_000) -> None: ...

    def select_option(self, selector: str, value: str) -> None: ...

    def wait(self, ms: int) -> None: ...

    def capture_diagnostic(self, name: str) -> None: ...

    def step(self, name: str) -> None: ...


def _safe_name(name: str) -> str:
    return re.sub(r"[^a-zA-Z0-9_-]+", "_", name).strip("_")[:60] or "capture"


class PlaywrightDriver:
    """
    `BrowserDriver` backed by a Playwright sync `Page`.
    """

    def __init__(self, page: Page, *, debug_dir: str = "data/debug", step_debug: bool = False) -> None:
        self.page = page
        self.debug_dir = debug_dir
        self._step_debug_enabled = step_debug
        self._step_counter = 0

    @property
    def url(self) -> str:
        try:
            return self.page.url or ""
        except PlaywrightError:
            return ""

    def title(self) -> str:
        try:
            return self.page.title() or ""
        except PlaywrightError:
            return ""

    def navigate(self, url: str, *, wait_until: str = "domcontentloaded", timeout_ms: int = 30_000) -> None:
        try:
            self.page.goto(url, wait_until=wait_until, timeout=timeout_ms)
        except PlaywrightError as e:
            # TimeoutError subclasses Error; both mean we could not reach the page.
            raise TransportError(f"Navigation to {url} failed: {e}") from e

    def wait_for_element(self, selector: str, *, timeout_ms: int) -> bool:
        try:
            self.page.locator(selector).first.wait_for(state="visible", timeout=timeout_ms)
            return True
        except PlaywrightTimeoutError:
            return False
        except PlaywrightError as e:
            raise TransportError(f"Waiting for {selector} failed: {e}") from e

    def has_element(self, selector: str) -> bool:
        try:
            return self.page.locator(selector).count() > 0
        except PlaywrightError:
            logger.debug("Selector check failed (selector=%s).", selector, exc_info=True)
            return False

    def evaluate(self, script: str, arg: Any = None) -> Any:
        try:
            return self.page.evaluate(script, arg)
        except PlaywrightError as e:
            raise TransportError(f"Script evaluation failed: {e}") from e

    def get_cookies(self) -> list[dict]:
        try:
            return [dict(c) for c in self.page.context.cookies()]
        except PlaywrightError as e:
            raise TransportError(f"Reading cookies failed: {e}") from e

    def set_cookies(self, cookies: list[dict]) -> None:
        if not cookies:
            return
        try:
            self.page.context.add_cookies(cookies)
        except PlaywrightError as e:
            raise TransportError(f"Restoring {len(cookies)} cookies failed: {e}") from e

    def clear_input(self, selector: str) -> None:
        try:
            self.page.locator(selector).first.fill("")
        except PlaywrightError as e:
            raise TransportError(f"Clearing {selector} failed: {e}") from e

    def type_into(self, selector: str, text: str, *, delay_ms: int = 0) -> None:
        try:
            self.page.locator(selector).first.press_sequentially(text, delay=delay_ms)
        except PlaywrightError as e:
            # never echo `text`: it may be the password
            raise TransportError(f"Typing into {selector} failed: {e}") from e

    def click(self, selector: str, *, wait_for_navigation: bool = False, timeout_ms: int = 30_000) -> None:
        try:
            if not wait_for_navigation:
                self.page.locator(selector).first.click(timeout=timeout_ms)
                return
            try:
                with self.page.expect_navigation(wait_until="domcontentloaded", timeout=timeout_ms):
                    self.page.locator(selector).first.click(timeout=timeout_ms)
            except PlaywrightTimeoutError:
                # Postbacks that update in place (UpdatePanel/AJAX) never fire a navigation.
                logger.warning("No navigation after clicking %s within %.1fs; continuing.", selector, timeout_ms / 1000)
        except PlaywrightError as e:
            raise TransportError(f"Click on {selector} failed: {e}") from e

    def select_option(self, selector: str, value: str) -> None:
        try:
            self.page.locator(selector).first.select_option(value=value)
        except PlaywrightError as e:
            raise TransportError(f"Selecting {value!r} in {selector} failed: {e}") from e

    def wait(self, ms: int) -> None:
        try:
            self.page.wait_for_timeout(ms)
        except PlaywrightError as e:
            raise TransportError(f"Page closed while waiting: {e}") from e

    def capture_diagnostic(self, name: str) -> None:
        prefix = _safe_name(name)
        try:
            out_dir = Path(self.debug_dir)
            out_dir.mkdir(parents=True, exist_ok=True)
            self.page.screenshot(path=str(out_dir / f"{prefix}.png"), full_page=True)
            (out_dir / f"{prefix}.html").write_text(self.page.content(), encoding="utf-8")
            # Rendered body text, so parsing can be debugged offline without DOM tooling.
            try:
                (out_dir / f"{prefix}.txt").write_text(self.page.inner_text("body"), encoding="utf-8")
            except PlaywrightError:
                pass
            logger.info("Saved diagnostic capture: %s", out_dir / prefix)
        except (PlaywrightError, OSError):
            logger.debug("Failed to save diagnostic capture (name=%s).", name, exc_info=True)

    def step(self, name: str) -> None:
        """
        When step debugging is enabled, log the step and save a numbered screenshot.
        """
        if not self._step_debug_enabled:
            return
        self._step_counter += 1
        prefix = f"step_{self._step_counter:02d}_{_safe_name(name)}"
        logger.info("Step %02d %s (url=%s)", self._step_counter, name, self.url)
        try:
            out_dir = Path(self.debug_dir)
            out_dir.mkdir(parents=True, exist_ok=True)
            self.page.screenshot(path=str(out_dir / f"{prefix}.png"), full_page=True)
        except (PlaywrightError, OSError):
            logger.debug("Failed to save step screenshot (name=%s).", name, exc_info=True)


def _install_page_logging(page: Page) -> None:
    def _on_console(msg) -> None:
        if msg.type in ("warning", "error"):
            logger.debug("Page console (%s): %s", msg.type, msg.text)

    def _on_response(response) -> None:
        status = response.status
        if 300 <= status < 400:
            location = response.headers.get("location")
            if location:
                logger.info("Redirect: %s -> %s (status=%s)", response.url, location, status)
        elif status in (401, 403):
            logger.warning("Auth issue: %s (status=%s)", response.url, status)

    page.on("console", _on_console)
    page.on("response", _on_response)


@contextmanager
def open_portal_driver(
    *,
    headless: bool = True,
    slow_mo_ms: int = 0,
    user_agent: Optional[str] = None,
    debug_dir: str = "data/debug",
    step_debug: bool = False,
    default_timeout_ms: int = 90_000,
) -> Iterator[PlaywrightDriver]:
    """
    Launch Chromium, open one page and yield it wrapped as a `PlaywrightDriver`.
    """
    Path(debug_dir).mkdir(parents=True, exist_ok=True)

    with sync_playwright() as p:
        slow_mo = int(slow_mo_ms or 0)
        try:
            browser = p.chromium.launch(headless=headless, slow_mo=slow_mo)
        except PlaywrightError as e:
            msg = str(e)
            if "Executable doesn't exist" not in msg:
                raise
            logger.warning(
                "Playwright Chromium executable missing; falling back to system browser channel. (%s)",
                msg,
            )
            try:
                browser = p.chromium.launch(headless=headless, slow_mo=slow_mo, channel="chrome")
            except PlaywrightError:
                browser = p.chromium.launch(headless=headless, slow_mo=slow_mo, channel="msedge")
        try:
            ctx_kwargs: dict = {"color_scheme": "light"}
            if user_agent:
                ctx_kwargs["user_agent"] = user_agent
            ctx = browser.new_context(**ctx_kwargs)
            try:
                page = ctx.new_page()
                page.set_default_timeout(default_timeout_ms)
                _install_page_logging(page)
                yield PlaywrightDriver(page, debug_dir=debug_dir, step_debug=step_debug)
            finally:
                ctx.close()
        finally:
            browser.close()
