from __future__ import annotations

from typing import Any

import pytest
from playwright.sync_api import Error as PlaywrightError
from playwright.sync_api import TimeoutError as PlaywrightTimeoutError

from marksheet_sync.errors import TransportError
from marksheet_sync.portal.driver import PlaywrightDriver


class _Locator:
    def __init__(self, exc: Exception) -> None:
        self.exc = exc

    @property
    def first(self) -> "_Locator":
        return self

    def fill(self, value: str) -> None:
        raise self.exc

    def press_sequentially(self, text: str, delay: int = 0) -> None:
        raise self.exc

    def wait_for(self, state: str, timeout: int) -> None:
        raise self.exc


class _Context:
    def cookies(self) -> list[dict]:
        raise PlaywrightError("Target page, context or browser has been closed")

    def add_cookies(self, cookies: list[dict]) -> None:
        raise PlaywrightError("Cookie should have a url or a domain/path pair")


class _Page:
    """Page whose elements are all detached from the DOM."""

    def __init__(self, exc: Exception) -> None:
        self.exc = exc
        self.context = _Context()

    def locator(self, selector: str) -> _Locator:
        return _Locator(self.exc)

    def wait_for_timeout(self, ms: int) -> None:
        raise PlaywrightError("Target page, context or browser has been closed")


def _driver(exc: Exception) -> PlaywrightDriver:
    page: Any = _Page(exc)
    return PlaywrightDriver(page)


def test_detached_inputs_raise_transport_error() -> None:
    driver = _driver(PlaywrightError("Element is not attached to the DOM"))

    with pytest.raises(TransportError, match="#txtUserName"):
        driver.clear_input("#txtUserName")
    with pytest.raises(TransportError, match="#txtPassword") as excinfo:
        driver.type_into("#txtPassword", "hunter2")
    assert "hunter2" not in str(excinfo.value)


def test_wait_for_element_timeout_is_false_but_other_errors_are_transport() -> None:
    assert _driver(PlaywrightTimeoutError("Timeout 5000ms exceeded")).wait_for_element("#x", timeout_ms=5000) is False

    with pytest.raises(TransportError):
        _driver(PlaywrightError("Element is not attached to the DOM")).wait_for_element("#x", timeout_ms=5000)


def test_cookie_and_wait_failures_raise_transport_error() -> None:
    driver = _driver(PlaywrightError("unused"))

    with pytest.raises(TransportError):
        driver.get_cookies()
    with pytest.raises(TransportError):
        driver.set_cookies([{"name": "ASP.NET_SessionId", "value": "x"}])
    with pytest.raises(TransportError):
        driver.wait(100)
    driver.set_cookies([])  # nothing to restore, no browser call
