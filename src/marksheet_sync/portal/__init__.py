from .cookies import CookieJar
from .driver import BrowserDriver, PlaywrightDriver, open_portal_driver
from .selectors import PortalSelectors

__all__ = ["BrowserDriver", "CookieJar", "PlaywrightDriver", "PortalSelectors", "open_portal_driver"]
