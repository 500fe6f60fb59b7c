"""
Shared fixtures: an in-memory browser driver scripted by a route table.

A route answers every request for one path (optionally per role). Sessions
start with a `session` cookie; routes marked `requires_cookie` bounce
cookieless requests to /login, the way a real app behaves.
"""

import os
import sys
from dataclasses import dataclass, field, replace
from typing import Any, Callable, Dict, List, Optional, Tuple
from urllib.parse import urlparse

import pytest

sys.path.insert(0, os.path.dirname(os.path.dirname(os.path.abspath(__file__))))

from roleprobe.config import BatchSettings, CrawlerSettings, Profile, Settings
from roleprobe.driver.base import Driver, Page, Response, Session
from roleprobe.errors import NavigationError, NavigationTimeout
from roleprobe.events import EventLedger

BASE_URL = "http://app.test"


@dataclass
class Route:
    status: int = 200
    body: str = "<html><body>ok</body></html>"
    redirect: Optional[str] = None
    links: Tuple[str, ...] = ()
    visible: Tuple[str, ...] = ()
    elements: Dict[str, List[Dict[str, Any]]] = field(default_factory=dict)
    console: Tuple[Tuple[str, str], ...] = ()
    captures: Tuple[Dict[str, Any], ...] = ()
    error: Optional[str] = None
    failures: int = 0
    requires_cookie: bool = False
    on_submit: Optional[Callable[[Dict[str, str]], str]] = None
    detach_on: Tuple[str, ...] = ()


NOT_FOUND = Route(status=404, body="<html><body>Not Found</body></html>")
LOGIN_BOUNCE = Route(status=200, redirect="/login", body="<html><body>Please sign in</body></html>")


class FakeResponse(Response):

    def __init__(self, status: int, url: str, body: str = "", headers: Dict[str, str] = None):
        self._status = status
        self._url = url
        self._body = body
        self._headers = headers or {"content-type": "text/html"}

    @property
    def status(self):
        return self._status

    @property
    def headers(self):
        return self._headers

    @property
    def url(self):
        return self._url

    async def text(self):
        return self._body


class FakePage(Page):

    def __init__(self, session: "FakeSession"):
        self.session = session
        self.driver = session.driver
        self._url = "about:blank"
        self._route: Route = NOT_FOUND
        self._content = ""
        self._filled: Dict[str, str] = {}
        self._handlers: Dict[str, List[Callable]] = {}
        self.closed = False

    @property
    def url(self):
        return self._url

    def _resolve(self, url: str, timeout_ms: int) -> Tuple[Route, str]:
        parsed = urlparse(url)
        path = parsed.path or "/"
        key = f"{path}?{parsed.query}" if parsed.query else path
        self.driver.visits.append((self.session.role, key))

        route = self.driver.route_for(self.session.role, key)
        attempt = self.driver.attempts.get((self.session.role, path), 0) + 1
        self.driver.attempts[(self.session.role, path)] = attempt
        if route.error == "timeout" or attempt <= route.failures:
            raise NavigationTimeout(url, timeout_ms)
        if route.error:
            raise NavigationError(url, route.error)
        if route.requires_cookie and not self.session.jar:
            route = LOGIN_BOUNCE
        final = f"{BASE_URL}{route.redirect}" if route.redirect else url
        return route, final

    def _emit(self, event: str, *args):
        for handler in self._handlers.get(event, []):
            handler(*args)

    async def goto(self, url, timeout_ms):
        route, final = self._resolve(url, timeout_ms)
        self._route = route
        self._url = final
        self._content = route.body
        self._filled = {}
        self._emit("response", {"url": url, "method": "GET", "status": route.status,
                                "headers": {"content-type": "text/html"}, "content_type": "text/html"})
        for info in route.captures:
            self._emit("response", dict(info))
        for kind, text in route.console:
            self._emit("console", kind, text)
        return FakeResponse(route.status, final, route.body)

    async def fetch(self, url, method="GET", data=None, headers=None, timeout_ms=10000):
        self.driver.requests.append((self.session.role, method, url, dict(headers or {})))
        route, final = self._resolve(url, timeout_ms)
        return FakeResponse(route.status, final, route.body)

    async def fill(self, selector, value, timeout_ms=5000):
        if value in self._route.detach_on:
            raise NavigationError(self._url, "element is not attached to the DOM")
        self._filled[selector] = value

    async def click(self, selector, timeout_ms=5000):
        pass

    async def press(self, selector, key, timeout_ms=5000):
        pass

    async def submit(self, selector, timeout_ms):
        self.driver.submissions.append((self.session.role, self._url, dict(self._filled)))
        body = self._route.on_submit(dict(self._filled)) if self._route.on_submit else self._route.body
        self._content = body
        return FakeResponse(200, self._url, body)

    async def query_elements(self, selector):
        if selector == "a[href]":
            return [{"tag": "a", "href": link} for link in self._route.links]
        return [dict(e) for e in self._route.elements.get(selector, [])]

    async def count(self, selector):
        matched = len(self._route.elements.get(selector, []))
        return matched or (1 if selector in self._route.visible else 0)

    async def is_visible(self, selector):
        return selector in self._route.visible

    async def content(self):
        return self._content

    async def screenshot(self, path):
        self.driver.screenshots.append(path)
        return path

    async def evaluate(self, script, arg=None):
        return None

    def on(self, event, handler):
        self._handlers.setdefault(event, []).append(handler)

    async def close(self):
        self.closed = True
        self.session.open_pages -= 1


class FakeSession(Session):

    def __init__(self, driver: "FakeDriver", role: str):
        super().__init__(role)
        self.driver = driver
        self.jar: List[Dict[str, Any]] = []
        if role not in driver.cookieless:
            self.jar.append({"name": "session", "value": f"{role}-token", "url": BASE_URL})
        self.open_pages = 0
        self.closed = False

    async def new_page(self):
        self.open_pages += 1
        self.driver.peak_pages = max(self.driver.peak_pages, self.open_pages)
        return FakePage(self)

    async def cookies(self):
        return [dict(c) for c in self.jar]

    async def add_cookies(self, cookies):
        self.driver.cookie_writes.append((self.role, [dict(c) for c in cookies]))
        self.jar.extend(dict(c) for c in cookies)

    async def clear_cookies(self):
        self.jar = []

    async def close(self):
        self.closed = True
        self.driver.open_sessions -= 1


class FakeDriver(Driver):
    """
    routes:      path (or "path?query") -> Route for every role
    role_routes: role -> {path -> Route}, consulted first
    cookieless:  session labels that start without a session cookie
    """

    def __init__(self, routes: Dict[str, Route] = None, role_routes: Dict[str, Dict[str, Route]] = None,
                 cookieless=("anonymous",)):
        self.routes = dict(routes or {})
        self.role_routes = {role: dict(r) for role, r in (role_routes or {}).items()}
        self.cookieless = set(cookieless)
        self.started = False
        self.closed = False
        self.open_sessions = 0
        self.peak_sessions = 0
        self.peak_pages = 0
        self.sessions: List[FakeSession] = []
        self.visits: List[Tuple[str, str]] = []
        self.requests: List[Tuple[str, str, str, Dict[str, str]]] = []
        self.submissions: List[Tuple[str, str, Dict[str, str]]] = []
        self.screenshots: List[str] = []
        self.cookie_writes: List[Tuple[str, List[Dict[str, Any]]]] = []
        self.attempts: Dict[Tuple[str, str], int] = {}

    def route_for(self, role: str, key: str) -> Route:
        for table in (self.role_routes.get(role, {}), self.routes):
            if key in table:
                return table[key]
        path = key.split("?", 1)[0]
        for table in (self.role_routes.get(role, {}), self.routes):
            if path in table:
                return table[path]
        return NOT_FOUND

    async def start(self):
        self.started = True

    async def open_session(self, role):
        session = FakeSession(self, role)
        self.sessions.append(session)
        self.open_sessions += 1
        self.peak_sessions = max(self.peak_sessions, self.open_sessions)
        return session

    async def close(self):
        self.closed = True


# ═══════════════════════════════════════════════════════════════
# FIXTURES
# ═══════════════════════════════════════════════════════════════

def make_settings(output_dir: str, **crawler) -> Settings:
    crawler_settings = dict(base_url=BASE_URL, timeout_ms=1000, retry_delay_ms=0, retry_attempts=2)
    crawler_settings.update(crawler)
    return Settings(
        crawler=CrawlerSettings(**crawler_settings),
        batch=BatchSettings(cooldown_ms=0),
        output_dir=output_dir,
    )


def make_profile(settings: Settings, **changes) -> Profile:
    return replace(Profile.default(settings), **changes)


def ledgers():
    return EventLedger(), EventLedger()


@pytest.fixture
def settings(tmp_path):
    return make_settings(str(tmp_path))


@pytest.fixture
def profile(settings):
    return Profile.default(settings)


def secure_app(profile, leaks=(), **extra) -> FakeDriver:
    """
    An app that grants every role exactly its expected access, plus the
    (role, path) pairs in `leaks`. Every declared path needs a session cookie.
    """
    paths = {p for declared in profile.expected_access.values() for p in declared}
    denied = Route(status=403, body="<h1>403 Forbidden</h1>", requires_cookie=True)
    routes = {path: denied for path in paths}
    routes.update(extra)

    role_routes = {}
    for role in profile.role_names:
        granted = set(profile.expected_access.get(role, ())) | {p for r, p in leaks if r == role}
        role_routes[role] = {path: Route(requires_cookie=True) for path in granted}
    return FakeDriver(routes, role_routes)
