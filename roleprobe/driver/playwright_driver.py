"""
Playwright adapter
==================
Chromium via playwright.async_api, one browser context per role.
"""

import asyncio
import logging
from typing import Optional, Dict, List, Any, Callable

from playwright.async_api import (
    async_playwright,
    TimeoutError as PlaywrightTimeoutError,
    Error as PlaywrightError,
)

from .base import Driver, Session, Page, Response
from ..errors import NavigationError, NavigationTimeout, SessionUnavailable

logger = logging.getLogger("roleprobe.driver")

# Surfaces alert()/eval() calls as console errors so the fuzzer can see them
SECURITY_HOOK_SCRIPT = """
(() => {
  const originalAlert = window.alert;
  window.alert = function(message) {
    console.error('SECURITY_EVENT_ALERT: ' + message);
    return originalAlert.apply(this, arguments);
  };
  const originalEval = window.eval;
  window.eval = function(code) {
    console.error('SECURITY_EVENT_EVAL: ' + code);
    return originalEval.apply(this, arguments);
  };
})();
"""

ELEMENT_ATTRIBUTES_JS = """
(elements) => elements.map(el => ({
  tag: el.tagName.toLowerCase(),
  type: el.getAttribute('type') || '',
  name: el.getAttribute('name') || '',
  id: el.id || '',
  href: el.getAttribute('href') || '',
  placeholder: el.getAttribute('placeholder') || '',
  required: el.hasAttribute('required'),
  maxlength: el.getAttribute('maxlength'),
  pattern: el.getAttribute('pattern'),
  text: (el.textContent || '').trim().slice(0, 200),
}))
"""


class PlaywrightResponse(Response):
    """Wraps both page responses and APIRequestContext responses"""

    def __init__(self, raw):
        self._raw = raw

    @property
    def status(self) -> int:
        return self._raw.status

    @property
    def headers(self) -> Dict[str, str]:
        return dict(self._raw.headers)

    @property
    def url(self) -> str:
        return self._raw.url

    async def text(self) -> str:
        try:
            return await self._raw.text()
        except PlaywrightError:
            return ""


class PlaywrightPage(Page):

    def __init__(self, raw, default_timeout_ms: int):
        self._page = raw
        self._page.set_default_timeout(default_timeout_ms)

    @property
    def url(self) -> str:
        return self._page.url

    async def goto(self, url: str, timeout_ms: int) -> Optional[Response]:
        try:
            raw = await self._page.goto(url, timeout=timeout_ms, wait_until="domcontentloaded")
        except PlaywrightTimeoutError:
            raise NavigationTimeout(url, timeout_ms)
        except PlaywrightError as e:
            raise NavigationError(url, str(e).splitlines()[0])
        return PlaywrightResponse(raw) if raw else None

    async def fetch(self, url, method="GET", data=None, headers=None, timeout_ms=10000) -> Response:
        try:
            raw = await self._page.request.fetch(
                url, method=method, data=data, headers=headers or {}, timeout=timeout_ms
            )
        except PlaywrightTimeoutError:
            raise NavigationTimeout(url, timeout_ms)
        except PlaywrightError as e:
            raise NavigationError(url, str(e).splitlines()[0])
        return PlaywrightResponse(raw)

    async def fill(self, selector, value, timeout_ms=5000):
        try:
            await self._page.fill(selector, value, timeout=timeout_ms)
        except PlaywrightTimeoutError:
            raise NavigationTimeout(self.url, timeout_ms)
        except PlaywrightError as e:
            raise NavigationError(self.url, f"fill {selector}: {e}")

    async def click(self, selector, timeout_ms=5000):
        try:
            await self._page.click(selector, timeout=timeout_ms)
        except PlaywrightTimeoutError:
            raise NavigationTimeout(self.url, timeout_ms)
        except PlaywrightError as e:
            raise NavigationError(self.url, f"click {selector}: {e}")

    async def press(self, selector, key, timeout_ms=5000):
        try:
            await self._page.press(selector, key, timeout=timeout_ms)
        except PlaywrightTimeoutError:
            raise NavigationTimeout(self.url, timeout_ms)
        except PlaywrightError as e:
            raise NavigationError(self.url, f"press {key} on {selector}: {e}")

    async def submit(self, selector, timeout_ms) -> Optional[Response]:
        try:
            async with self._page.expect_response(lambda r: True, timeout=timeout_ms) as info:
                if selector:
                    await self._page.click(selector, timeout=timeout_ms)
                else:
                    await self._page.keyboard.press("Enter")
            return PlaywrightResponse(await info.value)
        except PlaywrightTimeoutError:
            # Client-side forms may not hit the network at all
            return None
        except PlaywrightError as e:
            raise NavigationError(self.url, f"submit: {e}")

    async def query_elements(self, selector) -> List[Dict[str, Any]]:
        try:
            return await self._page.eval_on_selector_all(selector, ELEMENT_ATTRIBUTES_JS)
        except PlaywrightError as e:
            logger.debug(f"query_elements({selector}) failed: {e}")
            return []

    async def count(self, selector) -> int:
        try:
            return await self._page.locator(selector).count()
        except PlaywrightError:
            return 0

    async def is_visible(self, selector) -> bool:
        try:
            return await self._page.locator(selector).first.is_visible()
        except PlaywrightError:
            return False

    async def content(self) -> str:
        try:
            return await self._page.content()
        except PlaywrightError:
            return ""

    async def screenshot(self, path) -> str:
        await self._page.screenshot(path=path, full_page=False)
        return path

    async def evaluate(self, script, arg=None):
        return await self._page.evaluate(script, arg)

    def on(self, event: str, handler: Callable):
        if event == "console":
            self._page.on("console", lambda msg: handler(msg.type, msg.text))
            self._page.on("pageerror", lambda err: handler("pageerror", str(err)))
            self._page.on("dialog", lambda dialog: self._on_dialog(dialog, handler))
        elif event == "response":
            self._page.on("response", lambda resp: handler(_response_info(resp)))
        else:
            raise ValueError(f"Unsupported page event: {event}")

    @staticmethod
    def _on_dialog(dialog, handler):
        handler("dialog", dialog.message)
        asyncio.ensure_future(dialog.dismiss())

    async def close(self):
        try:
            await self._page.close()
        except PlaywrightError as e:
            logger.debug(f"page close failed: {e}")


def _response_info(resp) -> Dict[str, Any]:
    headers = dict(resp.headers)
    return {
        "url": resp.url,
        "method": resp.request.method,
        "status": resp.status,
        "headers": headers,
        "content_type": headers.get("content-type", ""),
        "post_data": resp.request.post_data,
    }


class PlaywrightSession(Session):

    def __init__(self, role: str, context, default_timeout_ms: int):
        super().__init__(role)
        self._context = context
        self._default_timeout_ms = default_timeout_ms

    async def new_page(self) -> Page:
        raw = await self._context.new_page()
        return PlaywrightPage(raw, self._default_timeout_ms)

    async def cookies(self):
        return await self._context.cookies()

    async def add_cookies(self, cookies):
        await self._context.add_cookies(cookies)

    async def clear_cookies(self):
        await self._context.clear_cookies()

    async def close(self):
        try:
            await self._context.close()
        except PlaywrightError as e:
            logger.debug(f"context close failed for {self.role}: {e}")


class PlaywrightDriver(Driver):
    """Chromium, headless by default"""

    def __init__(self, headless: bool = True, network_timeout_ms: int = 10000):
        self.headless = headless
        self.network_timeout_ms = network_timeout_ms
        self._playwright = None
        self._browser = None

    async def start(self):
        if self._browser:
            return
        self._playwright = await async_playwright().start()
        self._browser = await self._playwright.chromium.launch(headless=self.headless)
        logger.info(f"Chromium launched (headless={self.headless})")

    async def open_session(self, role: str) -> Session:
        if not self._browser:
            raise SessionUnavailable(role, "driver not started")
        try:
            context = await self._browser.new_context(ignore_https_errors=True)
            await context.add_init_script(SECURITY_HOOK_SCRIPT)
        except PlaywrightError as e:
            raise SessionUnavailable(role, str(e))
        return PlaywrightSession(role, context, self.network_timeout_ms)

    async def close(self):
        if self._browser:
            await self._browser.close()
            self._browser = None
        if self._playwright:
            await self._playwright.stop()
            self._playwright = None
