from __future__ import annotations

import json
from pathlib import Path
from typing import Optional

import pytest
from fakes import BASE_URL, HOME_URL, LOGIN_SUBMIT, LOGIN_URL, LOGOUT_LINK, USERNAME_INPUT, FakePage, FakePortal

from marksheet_sync.config import PortalConfig, TimingConfig
from marksheet_sync.errors import AuthenticationFailure, LoginFormNotFoundError, TransportError
from marksheet_sync.portal.cookies import CookieJar
from marksheet_sync.portal.classifier import PageState
from marksheet_sync.portal.session import LoginOutcome, Session, SessionController, SessionState


def _controller(
    portal: FakePortal,
    *,
    password: str = "p",
    headless: bool = True,
    jar: Optional[CookieJar] = None,
) -> SessionController:
    return SessionController(
        portal.driver,
        portal=PortalConfig(base_url=BASE_URL, username="u", password=password),
        timing=TimingConfig(),
        cookie_jar=jar,
        headless=headless,
        clock=portal.driver.clock,
    )


def test_valid_stored_session_skips_login() -> None:
    portal = FakePortal(logged_in=True)
    session = _controller(portal).ensure_session(Session())

    assert session.state is SessionState.VALID
    assert session.history == [SessionState.UNKNOWN, SessionState.CHECKING]
    assert portal.logins == 0
    assert LOGIN_SUBMIT not in portal.driver.clicks


def test_invalid_session_logs_in_and_saves_cookies(tmp_path: Path) -> None:
    portal = FakePortal()
    jar = CookieJar(str(tmp_path / "cookies.json"))

    session = _controller(portal, jar=jar).ensure_session(Session())

    assert session.state is SessionState.VALID
    assert session.history == [
        SessionState.UNKNOWN,
        SessionState.CHECKING,
        SessionState.INVALID,
        SessionState.LOGGING_IN,
    ]
    assert portal.logins == 1
    assert portal.driver.typed[USERNAME_INPUT] == "u"
    saved = json.loads((tmp_path / "cookies.json").read_text(encoding="utf-8"))
    assert saved[0]["name"] == "ASP.NET_SessionId"
    assert session.cookies == saved
    assert jar.backup_path.exists()


def test_transport_error_during_check_forces_login() -> None:
    portal = FakePortal()
    calls = {"n": 0}
    original = portal.driver.routes[HOME_URL]

    def flaky_home() -> FakePage:
        calls["n"] += 1
        if calls["n"] == 1:
            raise TransportError("net::ERR_TIMED_OUT")
        return original()

    portal.driver.routes[HOME_URL] = flaky_home
    session = _controller(portal).ensure_session(Session())

    assert session.state is SessionState.VALID
    assert SessionState.INVALID in session.history
    assert portal.logins == 1


def test_rejected_credentials_fail_with_portal_message() -> None:
    portal = FakePortal()
    session = Session()

    with pytest.raises(AuthenticationFailure, match="Invalid username or password"):
        _controller(portal, password="wrong").ensure_session(session)

    assert session.state is SessionState.FAILED
    assert "login_failed" in portal.driver.captures


def test_rejected_credentials_without_error_text_report_empty_message() -> None:
    portal = FakePortal(login_errors=[])
    result = _controller(portal, password="wrong").login()

    assert result.outcome is LoginOutcome.FAILED
    assert result.message == ""

    with pytest.raises(AuthenticationFailure, match="no error message"):
        _controller(portal, password="wrong").ensure_session(Session())


def test_challenge_while_headless_fails_fast() -> None:
    portal = FakePortal(challenge=True)
    session = Session()

    with pytest.raises(AuthenticationFailure, match="--headful"):
        _controller(portal, headless=True).ensure_session(session)

    assert session.state is SessionState.FAILED
    assert SessionState.AWAITING_MANUAL_CHALLENGE in session.history
    assert LOGIN_SUBMIT not in portal.driver.clicks


def test_manual_challenge_completed_within_deadline() -> None:
    portal = FakePortal(challenge=True)
    driver = portal.driver
    seen: dict[str, float] = {}

    def operator() -> None:
        if "login_challenge_detected" not in driver.captures:
            return
        seen.setdefault("at", driver.clock.now)
        if driver.clock.now - seen["at"] >= 6 and not portal.logged_in:
            portal.logged_in = True
            driver.cookies = [{"name": "ASP.NET_SessionId", "value": "manual"}]
            driver.page = portal.home_page()

    driver.on_wait = operator
    session = _controller(portal, headless=False).ensure_session(Session())

    assert session.state is SessionState.VALID
    assert SessionState.AWAITING_MANUAL_CHALLENGE in session.history
    assert session.cookies == [{"name": "ASP.NET_SessionId", "value": "manual"}]


def test_manual_challenge_times_out() -> None:
    portal = FakePortal(challenge=True)
    session = Session()
    start = portal.driver.clock.now

    with pytest.raises(AuthenticationFailure, match="not completed"):
        _controller(portal, headless=False).ensure_session(session)

    assert session.state is SessionState.FAILED
    assert portal.driver.clock.now - start >= TimingConfig().challenge_timeout_ms / 1000
    assert "manual_challenge_timeout" in portal.driver.captures


def test_missing_login_form_is_fatal() -> None:
    portal = FakePortal()
    portal.driver.routes[LOGIN_URL] = FakePage(url="https://mis.example.ac/Maintenance.aspx", title="Down")
    session = Session()

    with pytest.raises(LoginFormNotFoundError):
        _controller(portal).ensure_session(session)

    assert session.state is SessionState.FAILED


def test_login_redirect_into_portal_reports_already_authenticated() -> None:
    portal = FakePortal(logged_in=True)
    result = _controller(portal).login()

    assert result.outcome is LoginOutcome.ALREADY_AUTHENTICATED


def test_unreachable_login_page_raises_transport_error() -> None:
    portal = FakePortal()
    portal.driver.fail_navigation.add(LOGIN_URL)
    session = Session()

    with pytest.raises(TransportError):
        _controller(portal).ensure_session(session)

    assert session.state is SessionState.FAILED


def test_terminal_state_cannot_be_rechecked() -> None:
    portal = FakePortal(logged_in=True)
    session = Session(state=SessionState.VALID)

    with pytest.raises(RuntimeError):
        _controller(portal).ensure_session(session)


def test_session_loads_cookies_from_jar(tmp_path: Path) -> None:
    jar = CookieJar(str(tmp_path / "cookies.json"))
    jar.save([{"name": "ASP.NET_SessionId", "value": "x"}])

    session = Session.from_cookie_jar(jar)

    assert session.state is SessionState.UNKNOWN
    assert session.cookies == [{"name": "ASP.NET_SessionId", "value": "x"}]


def test_authenticated_url_without_indicator_is_not_a_valid_session() -> None:
    portal = FakePortal(logged_in=True)
    # Home.aspx matches an authenticated URL pattern, but nothing on the page proves the login.
    portal.driver.routes[HOME_URL] = FakePage(url=HOME_URL, title="Student Portal - Home")
    controller = _controller(portal)

    assert controller.check_session() is False
    assert controller.classify() is PageState.AUTHENTICATED
    assert "session_check_failed" in portal.driver.captures


def test_indicator_on_intermediate_redirect_is_not_a_valid_session() -> None:
    portal = FakePortal(logged_in=True)
    portal.driver.routes[HOME_URL] = FakePage(
        url=f"{BASE_URL}/Dashboard.aspx?ReturnUrl=%2fHome.aspx",
        title="Student Portal",
        elements={LOGOUT_LINK},
    )
    controller = _controller(portal)

    assert controller.check_session() is False
    assert controller.classify() is PageState.AUTHENTICATED


def test_ambiguous_login_url_page_is_invalid_and_triggers_login() -> None:
    portal = FakePortal()
    # Login URL without credential inputs or post-login indicators: neither login page nor portal.
    ambiguous = FakePage(url=LOGIN_URL, title="Student Portal - Login")
    portal.driver.routes[HOME_URL] = lambda: portal.home_page() if portal.logged_in else ambiguous
    controller = _controller(portal)

    assert controller.check_session() is False
    assert controller.classify() is PageState.UNKNOWN

    session = controller.ensure_session(Session())

    assert session.state is SessionState.VALID
    assert session.history[1:] == [SessionState.CHECKING, SessionState.INVALID, SessionState.LOGGING_IN]
    assert portal.logins == 1


def test_transport_error_while_typing_fails_the_session() -> None:
    portal = FakePortal()

    def detached(selector: str, text: str, *, delay_ms: int = 0) -> None:
        raise TransportError(f"Typing into {selector} failed: Element is not attached to the DOM")

    portal.driver.type_into = detached  # type: ignore[method-assign]
    session = Session()

    with pytest.raises(TransportError):
        _controller(portal).ensure_session(session)

    assert session.state is SessionState.FAILED
    assert session.history[-1] is SessionState.LOGGING_IN
