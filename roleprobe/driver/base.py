"""
Driver Abstraction
==================
The capability the core consumes from a browser-automation backend: open an
isolated session, navigate, query DOM, observe console/network traffic,
screenshot. roleprobe.driver.playwright_driver is the shipped adapter; tests
use an in-memory fake.

Event handlers registered with Page.on():
    "console"  -> handler(kind: str, text: str)
    "response" -> handler(info: dict) with url, method, status, headers,
                  content_type, post_data
"""

import logging
from abc import ABC, abstractmethod
from typing import Optional, Dict, List, Any, Callable

from ..errors import SessionUnavailable, NavigationError

logger = logging.getLogger("roleprobe.driver")


class Response(ABC):
    """HTTP response as seen by the page"""

    @property
    @abstractmethod
    def status(self) -> int:
        pass

    @property
    @abstractmethod
    def headers(self) -> Dict[str, str]:
        pass

    @property
    @abstractmethod
    def url(self) -> str:
        pass

    @abstractmethod
    async def text(self) -> str:
        pass


class Page(ABC):
    """One tab inside a role's session"""

    @property
    @abstractmethod
    def url(self) -> str:
        pass

    @abstractmethod
    async def goto(self, url: str, timeout_ms: int) -> Optional[Response]:
        """Navigate. Raises NavigationTimeout / NavigationError."""

    @abstractmethod
    async def fetch(self, url: str, method: str = "GET", data: Any = None,
                    headers: Dict[str, str] = None, timeout_ms: int = 10000) -> Response:
        """Issue a request with the session's cookies, without navigating."""

    @abstractmethod
    async def fill(self, selector: str, value: str, timeout_ms: int = 5000):
        pass

    @abstractmethod
    async def click(self, selector: str, timeout_ms: int = 5000):
        pass

    @abstractmethod
    async def press(self, selector: str, key: str, timeout_ms: int = 5000):
        pass

    @abstractmethod
    async def submit(self, selector: Optional[str], timeout_ms: int) -> Optional[Response]:
        """Click `selector` (or press Enter when None) and return the first response."""

    @abstractmethod
    async def query_elements(self, selector: str) -> List[Dict[str, Any]]:
        """Attributes of every element matching `selector` (tag, type, name, id, href, ...)."""

    @abstractmethod
    async def count(self, selector: str) -> int:
        pass

    @abstractmethod
    async def is_visible(self, selector: str) -> bool:
        pass

    @abstractmethod
    async def content(self) -> str:
        pass

    @abstractmethod
    async def screenshot(self, path: str) -> str:
        pass

    @abstractmethod
    async def evaluate(self, script: str, arg: Any = None) -> Any:
        pass

    @abstractmethod
    def on(self, event: str, handler: Callable):
        pass

    @abstractmethod
    async def close(self):
        pass


class Session(ABC):
    """An isolated browsing context bound to one role"""

    def __init__(self, role: str):
        self.role = role
        self.authenticated = False

    @abstractmethod
    async def new_page(self) -> Page:
        pass

    @abstractmethod
    async def cookies(self) -> List[Dict[str, Any]]:
        pass

    @abstractmethod
    async def add_cookies(self, cookies: List[Dict[str, Any]]):
        pass

    @abstractmethod
    async def clear_cookies(self):
        pass

    @abstractmethod
    async def close(self):
        pass

    async def login(self, base_url: str, email: str, password: str, login_settings) -> bool:
        """
        Log in through the application's login form.

        Returns False when the page has no login form (already authenticated
        or open application). Raises SessionUnavailable when the form is
        there but the login does not go through.
        """
        page = await self.new_page()
        try:
            await page.goto(f"{base_url}{login_settings.login_path}", login_settings.timeout_ms)

            if not await page.is_visible(login_settings.email_selector):
                logger.info(f"{self.role} - no login form found, assuming already authenticated")
                self.authenticated = True
                return False

            await page.fill(login_settings.email_selector, email, login_settings.timeout_ms)
            await page.fill(login_settings.password_selector, password, login_settings.timeout_ms)
            await page.submit(login_settings.submit_selector, login_settings.timeout_ms)

            if login_settings.login_path in page.url:
                raise SessionUnavailable(self.role, "login form rejected the credentials")

            self.authenticated = True
            logger.info(f"{self.role} authenticated successfully")
            return True

        except NavigationError as e:
            raise SessionUnavailable(self.role, f"login failed: {e}")
        finally:
            await page.close()


class Driver(ABC):
    """Factory for isolated sessions"""

    @abstractmethod
    async def start(self):
        pass

    @abstractmethod
    async def open_session(self, role: str) -> Session:
        pass

    @abstractmethod
    async def close(self):
        pass

    async def __aenter__(self):
        await self.start()
        return self

    async def __aexit__(self, exc_type, exc, tb):
        await self.close()
