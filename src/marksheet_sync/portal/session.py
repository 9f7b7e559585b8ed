from __future__ import annotations

import logging
import time
from dataclasses import dataclass, field
from enum import Enum
from typing import Callable, Optional

from ..config import PortalConfig, TimingConfig
from ..errors import AuthenticationFailure, LoginFormNotFoundError, TransportError
from .classifier import PageState, classify_page, has_post_login_indicator, url_in_authenticated_area
from .cookies import CookieJar
from .driver import BrowserDriver
from .selectors import PortalSelectors


logger = logging.getLogger(__name__)


class SessionState(str, Enum):
    UNKNOWN = "unknown"
    CHECKING = "checking"
    LOGGING_IN = "logging_in"
    AWAITING_MANUAL_CHALLENGE = "awaiting_manual_challenge"
    VALID = "valid"
    INVALID = "invalid"
    FAILED = "failed"


_TRANSITIONS: dict[SessionState, frozenset[SessionState]] = {
    SessionState.UNKNOWN: frozenset({SessionState.CHECKING}),
    SessionState.CHECKING: frozenset({SessionState.VALID, SessionState.INVALID}),
    SessionState.INVALID: frozenset({SessionState.LOGGING_IN}),
    SessionState.LOGGING_IN: frozenset(
        {SessionState.VALID, SessionState.AWAITING_MANUAL_CHALLENGE, SessionState.FAILED}
    ),
    SessionState.AWAITING_MANUAL_CHALLENGE: frozenset({SessionState.VALID, SessionState.FAILED}),
    SessionState.VALID: frozenset(),
    SessionState.FAILED: frozenset(),
}


class LoginOutcome(str, Enum):
    SUCCESS = "success"
    ALREADY_AUTHENTICATED = "already_authenticated"
    CHALLENGE_REQUIRED = "challenge_required"
    FAILED = "failed"


@dataclass(frozen=True)
class LoginResult:
    outcome: LoginOutcome
    message: str = ""


@dataclass(frozen=True)
class PortalCredentials:
    username: str
    password: str = field(repr=False)


@dataclass
class Session:
    """
    Login state plus the cookie jar contents. Only `SessionController` moves `state`.
    """

    state: SessionState = SessionState.UNKNOWN
    cookies: list[dict] = field(default_factory=list)
    history: list[SessionState] = field(default_factory=list)

    @classmethod
    def from_cookie_jar(cls, jar: Optional[CookieJar]) -> "Session":
        cookies = jar.load() if jar is not None else []
        if cookies:
            logger.info("Loaded %d stored cookies", len(cookies))
        return cls(cookies=cookies)

    @property
    def is_valid(self) -> bool:
        return self.state is SessionState.VALID


_LOGIN_ERRORS_JS = """
(selectors) => {
  const out = [];
  for (const sel of selectors) {
    let nodes = [];
    try { nodes = Array.from(document.querySelectorAll(sel)); } catch (_) { continue; }
    for (const el of nodes) {
      const text = (el.textContent || '').trim();
      if (text) out.push(text);
    }
  }
  return out;
}
"""


class SessionController:
    """
    Drives the portal login state machine:

        UNKNOWN -> CHECKING -> VALID | INVALID
        INVALID -> LOGGING_IN -> VALID | AWAITING_MANUAL_CHALLENGE | FAILED
        AWAITING_MANUAL_CHALLENGE -> VALID | FAILED   (bounded by a wall-clock deadline)
    """

    def __init__(
        self,
        driver: BrowserDriver,
        *,
        portal: PortalConfig,
        timing: TimingConfig,
        selectors: Optional[PortalSelectors] = None,
        cookie_jar: Optional[CookieJar] = None,
        headless: bool = True,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self.driver = driver
        self.portal = portal
        self.timing = timing
        self.selectors = selectors or PortalSelectors()
        self.cookie_jar = cookie_jar
        self.headless = headless
        self.creds = PortalCredentials(username=portal.username, password=portal.password)
        self._clock = clock

    def classify(self) -> PageState:
        return classify_page(self.driver, self.selectors, self.portal.authenticated_url_patterns)

    def ensure_session(self, session: Session) -> Session:
        """
        Validate the current session, logging in when needed.

        Returns the session in VALID state, or raises AuthenticationFailure (session FAILED).
        TransportError is raised only when the login page itself cannot be reached.
        """
        self._transition(session, SessionState.CHECKING)
        try:
            valid = self.check_session()
        except TransportError as e:
            logger.warning("Session check failed at transport level; treating session as invalid. (%s)", e)
            valid = False

        if valid:
            logger.info("Stored session is valid; skipping login.")
            self._transition(session, SessionState.VALID)
            return session

        self._transition(session, SessionState.INVALID)
        self._transition(session, SessionState.LOGGING_IN)
        try:
            return self._login_and_confirm(session)
        except Exception:
            # Any error past this point leaves the session unusable, not half-logged-in.
            if session.state is not SessionState.FAILED:
                self._transition(session, SessionState.FAILED)
            raise

    def _login_and_confirm(self, session: Session) -> Session:
        result = self.login()

        if result.outcome is LoginOutcome.FAILED:
            if result.message:
                raise AuthenticationFailure(f"Login failed: {result.message}")
            raise AuthenticationFailure(
                "Login failed: still on the login page after submitting credentials and no error message was shown."
            )

        if result.outcome is LoginOutcome.CHALLENGE_REQUIRED:
            self._transition(session, SessionState.AWAITING_MANUAL_CHALLENGE)
            if self.headless:
                raise AuthenticationFailure(
                    "The portal asked for a challenge code; re-run with --headful and complete it in the browser."
                )
            if not self.await_manual_challenge():
                raise AuthenticationFailure(
                    f"Manual challenge not completed within {self.timing.challenge_timeout_ms / 1000:.0f}s."
                )

        if result.outcome is LoginOutcome.ALREADY_AUTHENTICATED:
            logger.info("Login page redirected into the portal; session appears to be valid already.")

        # Re-validate: a redirect after submit can land on an intermediate page.
        try:
            confirmed = self.check_session()
        except TransportError as e:
            logger.warning("Post-login session check failed at transport level. (%s)", e)
            confirmed = False
        if not confirmed:
            raise AuthenticationFailure(
                "Session still invalid after login; the login flow or cookie handling may have changed."
            )

        session.cookies = self.driver.get_cookies()
        if self.cookie_jar is not None:
            self.cookie_jar.save(session.cookies)
        self._transition(session, SessionState.VALID)
        return session

    def check_session(self) -> bool:
        """
        Navigate to an authenticated-only page and decide whether we are logged in.

        Requires the classifier to say AUTHENTICATED *and* an independent confirmation
        (URL prefix match plus a post-login element). Raises TransportError on navigation failure.
        """
        target = self.portal.session_check_url
        logger.info("Checking session via %s", target)
        self.driver.navigate(target, timeout_ms=self.timing.navigation_timeout_ms)
        self.driver.wait(self.timing.page_load_wait_ms)
        self.driver.step("session_check")

        state = self.classify()
        current = self.driver.url
        if state is PageState.AUTH_PAGE:
            logger.info("Session check: landed on the login page (url=%s). Session invalid.", current)
            return False

        url_ok = current.lower().startswith(target.lower())
        indicator_ok = has_post_login_indicator(self.driver, self.selectors)
        if state is PageState.AUTHENTICATED and url_ok and indicator_ok:
            logger.info("Session check: valid (url=%s)", current)
            return True

        logger.info(
            "Session check: not confirmed (url=%s state=%s url_match=%s indicators=%s)",
            current,
            state.value,
            url_ok,
            indicator_ok,
        )
        self.driver.capture_diagnostic("session_check_failed")
        return False

    def login(self) -> LoginResult:
        sel = self.selectors
        logger.info("Navigating to login page: %s", self.portal.login_url)
        self.driver.navigate(self.portal.login_url, timeout_ms=self.timing.navigation_timeout_ms)
        self.driver.wait(self.timing.page_load_wait_ms)
        self.driver.step("login_page")

        if not self.driver.wait_for_element(sel.username_input, timeout_ms=self.timing.login_field_timeout_ms):
            self.driver.capture_diagnostic("login_page_no_username_field")
            current = self.driver.url
            if url_in_authenticated_area(current, self.portal.authenticated_url_patterns):
                return LoginResult(LoginOutcome.ALREADY_AUTHENTICATED, f"redirected to {current}")
            raise LoginFormNotFoundError(f"Username field ({sel.username_input}) not found on {current}")

        # Clear first: browsers (and persisted profiles) may have autofilled the fields.
        self.driver.clear_input(sel.username_input)
        self.driver.clear_input(sel.password_input)
        self.driver.type_into(sel.username_input, self.creds.username, delay_ms=self.timing.typing_delay_ms)
        self.driver.type_into(sel.password_input, self.creds.password, delay_ms=self.timing.typing_delay_ms)
        self.driver.step("credentials_filled")

        if self.driver.has_element(sel.challenge_input):
            logger.warning("Challenge (CAPTCHA) input detected on the login page.")
            self.driver.capture_diagnostic("login_challenge_detected")
            return LoginResult(LoginOutcome.CHALLENGE_REQUIRED)

        if not self.driver.wait_for_element(sel.login_submit, timeout_ms=10_000):
            self.driver.capture_diagnostic("login_submit_missing")
            raise LoginFormNotFoundError(f"Login button ({sel.login_submit}) not found")

        logger.info("Submitting credentials")
        self.driver.click(
            sel.login_submit,
            wait_for_navigation=True,
            timeout_ms=self.timing.navigation_timeout_ms * 2,
        )
        self.driver.wait(self.timing.page_load_wait_ms * 2)
        self.driver.step("after_login_submit")

        if self.classify() is PageState.AUTH_PAGE:
            errors = self.collect_login_errors()
            self.driver.capture_diagnostic("login_failed")
            if errors:
                logger.error("Login rejected: %s", errors)
            else:
                # Could also be a slow post-login redirect; we cannot tell the two apart.
                logger.error("Still on the login page after submit and no error message found (url=%s)", self.driver.url)
            return LoginResult(LoginOutcome.FAILED, "; ".join(errors))

        logger.info("Login appears successful (url=%s)", self.driver.url)
        return LoginResult(LoginOutcome.SUCCESS)

    def await_manual_challenge(self) -> bool:
        """
        Let the operator solve the challenge in the visible browser; poll until the portal is reached.
        """
        timeout_s = self.timing.challenge_timeout_ms / 1000
        logger.info("Complete the challenge and click login in the browser window (waiting up to %.0fs)...", timeout_s)
        deadline = self._clock() + timeout_s
        while self._clock() < deadline:
            self.driver.wait(self.timing.challenge_poll_interval_ms)
            if self.classify() is PageState.AUTHENTICATED:
                logger.info("Manual challenge completed.")
                return True

        self.driver.capture_diagnostic("manual_challenge_timeout")
        return False

    def collect_login_errors(self) -> list[str]:
        try:
            raw = self.driver.evaluate(_LOGIN_ERRORS_JS, list(self.selectors.login_error_selectors)) or []
        except TransportError:
            logger.debug("Could not read login error elements.", exc_info=True)
            return []
        out: list[str] = []
        seen: set[str] = set()
        for item in raw:
            text = str(item).strip()
            if text and text not in seen:
                out.append(text)
                seen.add(text)
        return out

    def _transition(self, session: Session, new: SessionState) -> None:
        allowed = _TRANSITIONS[session.state]
        if new not in allowed:
            raise RuntimeError(f"Illegal session transition {session.state.value} -> {new.value}")
        logger.debug("Session %s -> %s", session.state.value, new.value)
        session.history.append(session.state)
        session.state = new
