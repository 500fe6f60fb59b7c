"""
Role-Context Crawler
====================
Breadth-first discovery of reachable paths, one logged-in session per role.

- FIFO queue seeded with the role's seed paths; new links go to the tail
- bounded retries with strategy-selected timeouts (roleprobe.backoff)
- a path that exhausts its retries becomes an inaccessible PathResult
- roles run in priority-ordered batches, settled together, with a cooldown
"""

import asyncio
import logging
import os
import re
import time
from collections import deque
from typing import Dict, List, Any, Optional, Iterable, Callable
from urllib.parse import urlparse

from ..backoff import (
    TimeoutStrategy,
    ErrorRecovery,
    navigation_timeout,
    retry_delay,
    attempt_budget,
)
from ..errors import NavigationError, ProbeFailure, FATAL_ERRORS
from ..events import EventLedger, for_role, is_error
from ..models import (
    PathResult,
    PathDiscovery,
    PermissionBoundary,
    Severity,
    is_accessible,
)

logger = logging.getLogger("roleprobe.crawler")

NAVIGATION_SELECTOR = "nav a, [role=navigation] a, .sidebar a, .menu a"
EXCLUDED_LINK_WORDS = ("logout", "external")


def batch_roles(roles: List[str], priority: Iterable[str], size: int) -> List[List[str]]:
    """Priority roles first (in priority order), the rest in declared order."""
    priority = [r for r in priority if r in roles]
    rest = [r for r in roles if r not in priority]
    ordered = priority + rest
    return [ordered[i:i + size] for i in range(0, len(ordered), size)]


def normalize_link(href: str, base_url: str) -> Optional[str]:
    """Same-origin path for an href, or None if it should not be followed."""
    if not href or href.startswith(("mailto:", "tel:", "javascript:", "#")):
        return None

    if href.startswith(("http://", "https://")):
        target, base = urlparse(href), urlparse(base_url)
        if target.netloc != base.netloc:
            return None
        href = target.path or "/"
        if target.query:
            href = f"{href}?{target.query}"

    if not href.startswith("/"):
        href = f"/{href}"
    href = href.split("#", 1)[0]

    if len(href) <= 1 or any(word in href.lower() for word in EXCLUDED_LINK_WORDS):
        return None
    return href


def api_pattern_matches(pattern: str, method: str, path: str) -> bool:
    """'GET /api/admin/*' style pattern against a request"""
    pattern_method, _, pattern_path = pattern.partition(" ")
    if pattern_method.upper() != method.upper():
        return False
    regex = "^" + ".*".join(re.escape(part) for part in pattern_path.split("*")) + "$"
    return re.match(regex, path) is not None


class RoleCrawler:
    """
    Discovers what each role can reach.

    Usage:
        crawler = RoleCrawler(pool, profile, console, network)
        discovery = await crawler.discover("wms_user")
        everything = await crawler.discover_all()
    """

    def __init__(
        self,
        pool,
        profile,
        console: EventLedger,
        network: EventLedger,
        progress: Callable = None,
    ):
        self.pool = pool
        self.profile = profile
        self.settings = profile.settings
        self.console = console
        self.network = network
        self.progress = progress

    # ─────────────────────────────────────────────────────────────
    # SINGLE ROLE
    # ─────────────────────────────────────────────────────────────

    async def discover(self, role: str) -> PathDiscovery:
        account = self.profile.role(role)
        crawler = self.settings.crawler
        started = time.monotonic()

        queue = deque(dict.fromkeys(account.seed_paths))
        seen = set(queue)
        results: List[PathResult] = []

        console_mark = self.console.mark()
        network_mark = self.network.mark()

        logger.info(f"Crawling as {role}: {len(queue)} seed path(s), cap {crawler.max_pages}")

        async with self.pool.page(role) as page:
            while queue and len(results) < crawler.max_pages:
                path = queue.popleft()
                result = await self._probe(page, role, path)
                results.append(result)

                if self.progress:
                    self.progress(role, result)

                if not result.accessible:
                    continue
                for link in result.links:
                    if link not in seen:
                        seen.add(link)
                        queue.append(link)

        console_events = self.console.since(console_mark, lambda e: e.role == role and is_error(e))
        captures = self.network.since(network_mark, for_role(role))

        security_events = [
            {"type": "console_error", "severity": Severity.MEDIUM.value,
             "url": e.url, "message": e.text}
            for e in console_events
        ]
        security_events.extend(self._check_api_access(role, captures))

        discovery = PathDiscovery.build(
            role=role,
            results=results,
            execution_time_ms=int((time.monotonic() - started) * 1000),
            permission_boundaries=self._permission_boundaries(role, results),
            security_events=security_events,
        )
        cov = discovery.coverage
        logger.info(
            f"{role}: {cov.accessible}/{cov.total} accessible ({cov.percentage}%), "
            f"{cov.errors} error(s), grade {cov.performance_grade}"
        )
        return discovery

    async def _probe(self, page, role: str, path: str) -> PathResult:
        crawler = self.settings.crawler
        attempts = attempt_budget(crawler.error_recovery, crawler.retry_attempts)
        last_error = None

        for attempt in range(1, attempts + 1):
            timeout = navigation_timeout(crawler.strategy, crawler.timeout_ms, attempt)
            try:
                return await self._navigate(page, role, path, timeout, attempt)
            except NavigationError as e:
                last_error = e
                logger.warning(f"{role} {path}: attempt {attempt}/{attempts} failed: {e}")
                if attempt < attempts:
                    await asyncio.sleep(retry_delay(crawler.retry_delay_ms, attempt) / 1000)

        if crawler.error_recovery is ErrorRecovery.FALLBACK:
            attempts += 1
            timeout = navigation_timeout(TimeoutStrategy.PATIENT, crawler.timeout_ms, attempts)
            try:
                return await self._navigate(page, role, path, timeout, attempts)
            except NavigationError as e:
                last_error = e
                logger.warning(f"{role} {path}: fallback attempt failed: {e}")

        failure = ProbeFailure(path, attempts, last_error)
        logger.error(str(failure))
        return PathResult(
            path=path,
            role=role,
            accessible=False,
            error=str(last_error) if last_error else str(failure),
            attempts=attempts,
        )

    async def _navigate(self, page, role: str, path: str, timeout_ms: int, attempt: int) -> PathResult:
        url = f"{self.settings.crawler.base_url}{path}"
        started = time.monotonic()
        response = await page.goto(url, timeout_ms)
        elapsed = int((time.monotonic() - started) * 1000)

        status = response.status if response else 0
        final_url = page.url
        accessible = is_accessible(status, final_url)

        links, nav_count, screenshot = (), 0, None
        if accessible:
            links = await self._extract_links(page)
            nav_count = await page.count(NAVIGATION_SELECTOR)
            if self.settings.crawler.screenshots:
                screenshot = await self._screenshot(page, role, path)

        return PathResult(
            path=path,
            role=role,
            accessible=accessible,
            status_code=status,
            response_time_ms=elapsed,
            screenshot=screenshot,
            links=links,
            navigation_elements=nav_count,
            final_url=final_url,
            attempts=attempt,
        )

    async def _extract_links(self, page) -> tuple:
        base_url = self.settings.crawler.base_url
        links = []
        for element in await page.query_elements("a[href]"):
            link = normalize_link(element.get("href", ""), base_url)
            if link and link not in links:
                links.append(link)
        return tuple(links)

    async def _screenshot(self, page, role: str, path: str) -> Optional[str]:
        directory = os.path.join(self.settings.output_dir, "screenshots")
        os.makedirs(directory, exist_ok=True)
        slug = path.strip("/").replace("/", "_") or "root"
        target = os.path.join(directory, f"{role}-{slug}.png")
        try:
            return await page.screenshot(target)
        except Exception as e:
            logger.warning(f"Screenshot failed for {role} {path}: {e}")
            return None

    # ─────────────────────────────────────────────────────────────
    # EXPECTATION CHECKS
    # ─────────────────────────────────────────────────────────────

    def _permission_boundaries(self, role: str, results: List[PathResult]) -> List[PermissionBoundary]:
        if role not in self.profile.expected_access:
            return []
        is_admin = self.profile.hierarchy.is_admin(role) if role in self.profile.hierarchy else False

        boundaries = []
        for result in results:
            if result.error:
                continue
            expected = self.profile.expects_access(role, result.path)
            if expected == result.accessible:
                continue
            if result.accessible and result.path.startswith("/admin") and not is_admin:
                severity = Severity.CRITICAL
            elif result.accessible:
                severity = Severity.HIGH
            else:
                severity = Severity.MEDIUM
            boundaries.append(PermissionBoundary(role, result.path, expected, result.accessible, severity))
        return boundaries

    def _check_api_access(self, role: str, captures) -> List[Dict[str, Any]]:
        rules = self.profile.api_access.get(role)
        if not rules:
            return []
        events = []
        for capture in captures:
            path = urlparse(capture.url).path
            if "/api/" not in path:
                continue
            denied = any(api_pattern_matches(p, capture.method, path) for p in rules.get("denied", []))
            if denied and 200 <= capture.status < 400:
                events.append({
                    "type": "api_access_violation",
                    "severity": Severity.HIGH.value,
                    "url": capture.url,
                    "message": f"{capture.method} {path} returned {capture.status} for {role}",
                })
        return events

    # ─────────────────────────────────────────────────────────────
    # ALL ROLES
    # ─────────────────────────────────────────────────────────────

    async def discover_all(self, roles: List[str] = None) -> Dict[str, PathDiscovery]:
        roles = roles or self.profile.role_names
        batch = self.settings.batch
        batches = batch_roles(roles, batch.priority_roles, batch.batch_size)
        discoveries: Dict[str, PathDiscovery] = {}

        for index, group in enumerate(batches):
            logger.info(f"Batch {index + 1}/{len(batches)}: {', '.join(group)}")
            outcomes = await asyncio.gather(*(self.discover(r) for r in group), return_exceptions=True)

            for role, outcome in zip(group, outcomes):
                if isinstance(outcome, FATAL_ERRORS):
                    raise outcome
                if isinstance(outcome, BaseException) and not isinstance(outcome, Exception):
                    raise outcome
                if isinstance(outcome, Exception):
                    logger.error(f"Crawl failed for {role}: {outcome}")
                    discoveries[role] = PathDiscovery.build(role, [], error=str(outcome))
                else:
                    discoveries[role] = outcome

            if index < len(batches) - 1 and batch.cooldown_ms:
                await asyncio.sleep(batch.cooldown_ms / 1000)

        return discoveries
