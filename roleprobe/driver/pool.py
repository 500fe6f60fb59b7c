"""
Role Session Pool
=================
Owns one isolated, logged-in session per role. Bounds are enforced with
semaphores: a caller beyond `max_concurrent_sessions` or
`max_pages_per_session` waits for capacity instead of exceeding it.

Every page handed out is wired to the run's console ledger and network
buffer.
"""

import asyncio
import logging
import time
from contextlib import asynccontextmanager
from dataclasses import dataclass, field
from typing import Dict, Iterable, Optional

from .base import Driver, Session, Page
from ..events import EventLedger, ConsoleEvent, NetworkCapture
from ..errors import SessionUnavailable
from ..models import Role

logger = logging.getLogger("roleprobe.pool")


@dataclass
class SessionHandle:
    role: str
    session: Session
    opened_at: float = field(default_factory=time.time)
    refs: int = 0


class RoleSessionPool:
    """
    Usage:
        pool = RoleSessionPool(driver, roles, settings, console, network)
        async with pool:
            async with pool.page("wms_user") as page:
                await page.goto(...)
    """

    def __init__(
        self,
        driver: Driver,
        roles: Iterable[Role],
        settings,
        console: EventLedger,
        network: EventLedger,
    ):
        self.driver = driver
        self.roles: Dict[str, Role] = {r.name: r for r in roles}
        self.settings = settings
        self.console = console
        self.network = network

        limits = settings.limits
        self._session_slots = asyncio.Semaphore(limits.max_concurrent_sessions)
        self._page_slots: Dict[str, asyncio.Semaphore] = {
            name: asyncio.Semaphore(limits.max_pages_per_session) for name in self.roles
        }
        self._role_locks: Dict[str, asyncio.Lock] = {name: asyncio.Lock() for name in self.roles}
        self._handles: Dict[str, SessionHandle] = {}
        self._closed = False
        self.stats = {"sessions_opened": 0, "pages_opened": 0, "login_failures": 0}

    # ─────────────────────────────────────────────────────────────
    # ACQUIRE / RELEASE
    # ─────────────────────────────────────────────────────────────

    async def acquire(self, role: str, timeout: Optional[float] = None) -> SessionHandle:
        """
        Get (or open and log in) the session for a role.

        Args:
            role:    Role name declared in the profile.
            timeout: Seconds to wait for a free session slot. None waits forever.

        Raises:
            SessionUnavailable: unknown role, closed pool, slot wait timed out,
                                or the login failed.
        """
        if self._closed:
            raise SessionUnavailable(role, "pool is closed")
        if role not in self.roles:
            raise SessionUnavailable(role, "role not declared")

        async with self._role_locks[role]:
            handle = self._handles.get(role)
            if handle:
                handle.refs += 1
                return handle

            try:
                await asyncio.wait_for(self._session_slots.acquire(), timeout)
            except asyncio.TimeoutError:
                raise SessionUnavailable(role, f"pool exhausted (waited {timeout}s)")

            try:
                session = await self._open(role)
            except BaseException:
                self._session_slots.release()
                raise

            handle = SessionHandle(role=role, session=session, refs=1)
            self._handles[role] = handle
            return handle

    async def release(self, role: str):
        """Drop one reference; the session closes when nobody holds it."""
        async with self._role_locks[role]:
            handle = self._handles.get(role)
            if not handle:
                return
            handle.refs -= 1
            if handle.refs > 0:
                return
            del self._handles[role]
            try:
                await handle.session.close()
            finally:
                self._session_slots.release()
                logger.debug(f"Session closed for {role}")

    async def _open(self, role: str) -> Session:
        account = self.roles[role]
        session = await self.driver.open_session(role)
        self.stats["sessions_opened"] += 1
        try:
            await session.login(
                self.settings.crawler.base_url,
                account.email,
                account.password,
                self.settings.login,
            )
        except SessionUnavailable:
            self.stats["login_failures"] += 1
            await session.close()
            raise
        logger.info(f"Session ready for {role}")
        return session

    # ─────────────────────────────────────────────────────────────
    # SCOPED PAGE
    # ─────────────────────────────────────────────────────────────

    @asynccontextmanager
    async def page(self, role: str):
        """A monitored page for `role`, closed and released on every exit path."""
        handle = await self.acquire(role)
        slots = self._page_slots[role]
        page = None
        try:
            await slots.acquire()
            try:
                page = await handle.session.new_page()
                self.stats["pages_opened"] += 1
                self._observe(role, page)
                yield page
            finally:
                if page is not None:
                    await page.close()
                slots.release()
        finally:
            await self.release(role)

    @asynccontextmanager
    async def anonymous_page(self, label: str = "anonymous"):
        """A monitored page in a fresh session that never logged in."""
        if self._closed:
            raise SessionUnavailable(label, "pool is closed")
        await self._session_slots.acquire()
        session = page = None
        try:
            session = await self.driver.open_session(label)
            page = await session.new_page()
            self.stats["pages_opened"] += 1
            self._observe(label, page)
            yield page
        finally:
            try:
                if page is not None:
                    await page.close()
                if session is not None:
                    await session.close()
            finally:
                self._session_slots.release()

    async def with_page(self, role: str, fn):
        """Run `await fn(page)` inside a scoped page and return its result."""
        async with self.page(role) as page:
            return await fn(page)

    def session_for(self, role: str) -> Session:
        """The live session of an acquired role"""
        handle = self._handles.get(role)
        if not handle:
            raise SessionUnavailable(role, "not acquired")
        return handle.session

    def _observe(self, role: str, page: Page):
        def on_console(kind, text):
            self.console.append(ConsoleEvent(kind=kind, text=text, url=page.url, role=role))

        def on_response(info):
            self.network.append(NetworkCapture(
                url=info.get("url", ""),
                method=info.get("method", "GET"),
                status=info.get("status", 0),
                headers=info.get("headers", {}),
                content_type=info.get("content_type", ""),
                post_data=info.get("post_data"),
                role=role,
            ))

        page.on("console", on_console)
        page.on("response", on_response)

    # ─────────────────────────────────────────────────────────────
    # LIFECYCLE
    # ─────────────────────────────────────────────────────────────

    @property
    def active_sessions(self) -> int:
        return len(self._handles)

    async def close(self):
        self._closed = True
        for role in list(self._handles):
            handle = self._handles.pop(role)
            try:
                await handle.session.close()
            finally:
                self._session_slots.release()

    async def __aenter__(self):
        limits = self.settings.limits
        logger.info(f"Session pool: up to {limits.max_concurrent_sessions} session(s), "
                    f"{limits.max_pages_per_session} page(s) each")
        logger.info(f"Memory limit {limits.memory_limit_mb} MB is advisory, not enforced")
        return self

    async def __aexit__(self, exc_type, exc, tb):
        await self.close()
