from __future__ import annotations

import logging
from enum import Enum
from typing import Sequence

from .driver import BrowserDriver
from .selectors import PortalSelectors


logger = logging.getLogger(__name__)


class PageState(str, Enum):
    AUTH_PAGE = "auth_page"
    AUTHENTICATED = "authenticated"
    UNKNOWN = "unknown"


def looks_like_auth_page(driver: BrowserDriver, selectors: PortalSelectors) -> bool:
    """
    Auth page: an auth marker in the URL or title, and both credential inputs present.
    """
    url = (driver.url or "").lower()
    title = (driver.title() or "").lower()
    marker_hit = any(m in url or m in title for m in selectors.auth_page_markers)
    if not marker_hit:
        return False
    return driver.has_element(selectors.username_input) and driver.has_element(selectors.password_input)


def has_post_login_indicator(driver: BrowserDriver, selectors: PortalSelectors) -> bool:
    return any(driver.has_element(sel) for sel in selectors.post_login_indicators)


def url_in_authenticated_area(url: str, patterns: Sequence[str]) -> bool:
    u = (url or "").lower()
    return any(p and p in u for p in patterns)


def classify_page(
    driver: BrowserDriver,
    selectors: PortalSelectors,
    authenticated_url_patterns: Sequence[str] = (),
) -> PageState:
    """
    Decide whether the current page is the login page, a page inside the portal, or neither.

    UNKNOWN means "not confirmed authenticated"; callers must re-validate, never treat it as success.
    """
    if looks_like_auth_page(driver, selectors):
        state = PageState.AUTH_PAGE
    elif has_post_login_indicator(driver, selectors) or url_in_authenticated_area(
        driver.url, authenticated_url_patterns
    ):
        state = PageState.AUTHENTICATED
    else:
        state = PageState.UNKNOWN

    logger.debug("Page check - url=%s state=%s", driver.url, state.value)
    return state
