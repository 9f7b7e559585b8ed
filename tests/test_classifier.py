from __future__ import annotations

from fakes import LOGIN_URL, LOGOUT_LINK, PASSWORD_INPUT, USERNAME_INPUT, FakeDriver, FakePage

from marksheet_sync.portal.classifier import PageState, classify_page, url_in_authenticated_area
from marksheet_sync.portal.selectors import PortalSelectors


PATTERNS = ("dashboard", "home.aspx", "marksheet")


def _classify(page: FakePage) -> PageState:
    return classify_page(FakeDriver(start=page), PortalSelectors(), PATTERNS)


def test_login_page_is_auth_page() -> None:
    page = FakePage(url=LOGIN_URL, title="Login", elements={USERNAME_INPUT, PASSWORD_INPUT})
    assert _classify(page) is PageState.AUTH_PAGE


def test_auth_marker_without_credential_inputs_is_not_auth_page() -> None:
    # e.g. a "login history" page inside the portal
    page = FakePage(url="https://mis.example.ac/LoginHistory.aspx", elements={USERNAME_INPUT})
    assert _classify(page) is PageState.UNKNOWN


def test_post_login_indicator_means_authenticated() -> None:
    page = FakePage(url="https://mis.example.ac/Profile.aspx", elements={LOGOUT_LINK})
    assert _classify(page) is PageState.AUTHENTICATED


def test_authenticated_url_pattern_means_authenticated() -> None:
    page = FakePage(url="https://mis.example.ac/Student/Dashboard.aspx")
    assert _classify(page) is PageState.AUTHENTICATED


def test_unrecognized_page_is_unknown() -> None:
    page = FakePage(url="https://mis.example.ac/Error.aspx", title="Server Error")
    assert _classify(page) is PageState.UNKNOWN


def test_url_in_authenticated_area_is_case_insensitive() -> None:
    assert url_in_authenticated_area("https://mis.example.ac/HOME.ASPX", PATTERNS)
    assert not url_in_authenticated_area("https://mis.example.ac/Login.aspx", PATTERNS)
    assert not url_in_authenticated_area("", PATTERNS)
