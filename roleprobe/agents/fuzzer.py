"""
Security Payload Fuzzer
=======================
Form fuzzing through the role's browser session, plus a lighter API pass
over endpoints reconstructed from captured traffic.

A fill/submit failure aborts only that payload test; it is logged, counted
and recorded with its error.
"""

import asyncio
import json
import logging
import os
import time
from dataclasses import dataclass, field
from typing import Dict, List, Any, Optional, Tuple
from urllib.parse import urlparse, parse_qs, urlunparse

import httpx

from ..detection.classifier import SignalClassifier, Detection
from ..errors import NavigationError, DetectionAmbiguous, FATAL_ERRORS
from ..events import EventLedger, for_role
from ..models import (
    FormInput,
    ApiEndpoint,
    PayloadSet,
    SecurityTestResult,
    Severity,
)
from .crawler import batch_roles

logger = logging.getLogger("roleprobe.fuzzer")

FIELD_SELECTOR = "input, textarea, select"
SKIPPED_INPUT_TYPES = {"hidden", "submit", "button", "image", "reset", "file"}
SUBMIT_SELECTOR = '[type="submit"]'
MUTATING_METHODS = {"POST", "PUT", "PATCH", "DELETE"}
API_PAYLOADS_PER_PARAM = 3
EVIDENCE_NETWORK_TAIL = 5
RESPONSE_SNIPPET = 1000


# ═══════════════════════════════════════════════════════════════
# API SURFACE HELPERS
# ═══════════════════════════════════════════════════════════════

def is_api_call(capture) -> bool:
    url = capture.url
    return (
        "/api/" in url
        or "/graphql" in url
        or capture.method.upper() != "GET"
        or "application/json" in (capture.content_type or "")
    )


def parameter_names(capture) -> List[str]:
    names = list(parse_qs(urlparse(capture.url).query, keep_blank_values=True))
    if capture.post_data:
        try:
            body = json.loads(capture.post_data)
            if isinstance(body, dict):
                names.extend(body)
        except (ValueError, TypeError):
            names.extend(parse_qs(capture.post_data, keep_blank_values=True))
    return list(dict.fromkeys(names))


def endpoint_risk(method: str, url: str, parameter_count: int) -> Severity:
    score = 0
    if method.upper() in MUTATING_METHODS:
        score += 2
    score += min(parameter_count, 3)
    lowered = url.lower()
    if "admin" in lowered or "user" in lowered:
        score += 2
    if score >= 6:
        return Severity.CRITICAL
    if score >= 4:
        return Severity.HIGH
    if score >= 2:
        return Severity.MEDIUM
    return Severity.LOW


def extract_api_endpoints(captures) -> List[ApiEndpoint]:
    """Deduplicated (by METHOD:url) candidate API endpoints with their parameters."""
    merged: Dict[str, Dict[str, Any]] = {}
    for capture in captures:
        if not is_api_call(capture):
            continue
        parsed = urlparse(capture.url)
        bare = urlunparse(parsed._replace(query="", fragment=""))
        method = capture.method.upper()
        key = f"{method}:{bare}"
        entry = merged.setdefault(key, {"method": method, "url": bare, "params": [],
                                        "content_type": capture.content_type or ""})
        for name in parameter_names(capture):
            if name not in entry["params"]:
                entry["params"].append(name)

    return [
        ApiEndpoint(
            method=e["method"],
            url=e["url"],
            parameters=tuple(e["params"]),
            content_type=e["content_type"],
            risk_level=endpoint_risk(e["method"], e["url"], len(e["params"])),
        )
        for e in merged.values()
    ]


def form_security_score(vulnerabilities: int) -> int:
    return max(0, 100 - 20 * vulnerabilities)


@dataclass
class FuzzCampaign:
    """Everything one role's fuzzing run produced"""
    role: str
    results: List[SecurityTestResult] = field(default_factory=list)
    form_scores: Dict[str, int] = field(default_factory=dict)
    api_endpoints: List[ApiEndpoint] = field(default_factory=list)
    failed_tests: int = 0
    error: Optional[str] = None

    @property
    def vulnerabilities(self) -> List[SecurityTestResult]:
        return [r for r in self.results if r.vulnerable]

    @property
    def ambiguous(self) -> List[SecurityTestResult]:
        return [r for r in self.results if r.ambiguous]

    def to_dict(self) -> Dict[str, Any]:
        return {
            "role": self.role,
            "total_tests": len(self.results),
            "vulnerable": len(self.vulnerabilities),
            "ambiguous": len(self.ambiguous),
            "failed_tests": self.failed_tests,
            "form_scores": dict(self.form_scores),
            "api_endpoints": [e.to_dict() for e in self.api_endpoints],
            "results": [r.to_dict() for r in self.results],
            "error": self.error,
        }


class PayloadFuzzer:
    """
    Usage:
        fuzzer = PayloadFuzzer(pool, profile, console, network)
        campaign = await fuzzer.fuzz_role("wms_user", paths=discovery.accessible_paths)
    """

    def __init__(
        self,
        pool,
        profile,
        console: EventLedger,
        network: EventLedger,
        classifier: SignalClassifier = None,
        http_transport: httpx.AsyncBaseTransport = None,
    ):
        self.pool = pool
        self.profile = profile
        self.settings = profile.settings
        self.console = console
        self.network = network
        self.classifier = classifier or SignalClassifier(profile.vulnerability_types)
        self.http_transport = http_transport
        self._counter = 0

    def _next_id(self, role: str) -> str:
        self._counter += 1
        return f"fuzz-{role}-{self._counter:05d}"

    # ─────────────────────────────────────────────────────────────
    # FORMS
    # ─────────────────────────────────────────────────────────────

    async def discover_inputs(self, page) -> List[FormInput]:
        inputs = []
        for index, el in enumerate(await page.query_elements(FIELD_SELECTOR)):
            tag = el.get("tag", "input")
            input_type = (el.get("type") or ("text" if tag == "input" else tag)).lower()
            if input_type in SKIPPED_INPUT_TYPES:
                continue

            name = el.get("name") or el.get("id") or "unnamed"
            if el.get("name"):
                selector = f'[name="{el["name"]}"]'
            elif el.get("id"):
                selector = f'#{el["id"]}'
            else:
                selector = f"{FIELD_SELECTOR} >> nth={index}"

            max_length = el.get("maxlength")
            try:
                max_length = int(max_length) if max_length not in (None, "") else None
            except (TypeError, ValueError):
                max_length = None

            inputs.append(FormInput(
                selector=selector,
                type=input_type,
                name=name,
                placeholder=el.get("placeholder", ""),
                required=bool(el.get("required")),
                max_length=max_length,
                pattern=el.get("pattern"),
            ))
        return inputs

    async def fuzz_role(self, role: str, paths: List[str] = None) -> FuzzCampaign:
        account = self.profile.role(role)
        paths = list(paths or account.seed_paths[:1] or ["/"])
        base_url = self.settings.crawler.base_url
        timeout = self.settings.fuzzer.timeout_per_payload_ms
        campaign = FuzzCampaign(role=role)
        network_mark = self.network.mark()

        logger.info(f"Fuzzing {len(paths)} page(s) as {role}")

        async with self.pool.page(role) as page:
            for path in paths:
                url = f"{base_url}{path}"
                try:
                    await page.goto(url, timeout)
                except NavigationError as e:
                    logger.warning(f"{role}: cannot open {url} for fuzzing: {e}")
                    campaign.failed_tests += 1
                    continue

                fields = await self.discover_inputs(page)
                if not fields:
                    continue
                has_submit = await page.count(SUBMIT_SELECTOR) > 0
                baseline = await page.content()
                logger.info(f"{role} {path}: {len(fields)} field(s) found")

                found_here = 0
                for payload_set in self.profile.payload_sets:
                    limit = self.settings.fuzzer.max_payloads_per_field
                    for payload in payload_set.payloads[:limit]:
                        result = await self._test_payload(
                            page, role, url, fields, payload, payload_set, baseline, has_submit
                        )
                        campaign.results.append(result)
                        if result.error:
                            campaign.failed_tests += 1
                        if result.vulnerable:
                            found_here += 1
                campaign.form_scores[url] = form_security_score(found_here)

        captures = self.network.since(network_mark, for_role(role))
        campaign.api_endpoints = extract_api_endpoints(captures)

        if self.settings.fuzzer.api_fuzzing and campaign.api_endpoints:
            api_results = await self.fuzz_api(role, campaign.api_endpoints)
            campaign.results.extend(api_results)
            campaign.failed_tests += sum(1 for r in api_results if r.error)

        logger.info(
            f"{role}: {len(campaign.results)} test(s), {len(campaign.vulnerabilities)} vulnerable, "
            f"{campaign.failed_tests} failed"
        )
        return campaign

    async def _test_payload(
        self,
        page,
        role: str,
        url: str,
        fields: List[FormInput],
        payload: str,
        payload_set: PayloadSet,
        baseline: str,
        has_submit: bool,
    ) -> SecurityTestResult:
        test_id = self._next_id(role)
        timeout = self.settings.fuzzer.timeout_per_payload_ms
        field_names = tuple(f.name for f in fields)
        console_mark = self.console.mark()
        started = time.monotonic()

        try:
            await page.goto(url, timeout)
            for form_field in fields:
                if form_field.type == "select":
                    continue
                await page.fill(form_field.selector, payload, timeout)
            response = await page.submit(SUBMIT_SELECTOR if has_submit else None, timeout)
        except NavigationError as e:
            logger.warning(f"{test_id}: payload test aborted: {e}")
            return SecurityTestResult(
                test_id=test_id, url=url, role=role, fields=field_names, payload=payload,
                category=payload_set.category, vulnerable=False,
                response_time_ms=int((time.monotonic() - started) * 1000), error=str(e),
            )

        elapsed = int((time.monotonic() - started) * 1000)
        body = await response.text() if response else ""
        dom = await page.content()
        events = self.console.since(console_mark, for_role(role))

        detection, ambiguous, note = self._classify(
            payload_set.category, payload, body, dom, events, elapsed, baseline
        )

        evidence = {
            "console_events": [e.to_dict() for e in events],
            "network": [c.to_dict() for c in self.network.tail(EVIDENCE_NETWORK_TAIL, for_role(role))],
            "status": response.status if response else None,
            "headers": response.headers if response else {},
            "response_snippet": body[:RESPONSE_SNIPPET],
        }
        if note:
            evidence["note"] = note
        if detection:
            evidence["signal"] = detection.signal
            evidence["indicator"] = detection.indicator
            evidence["screenshot"] = await self._screenshot(page, test_id)
            logger.warning(f"VULNERABILITY DETECTED: {detection.rule.name} in {url} ({role})")

        return SecurityTestResult(
            test_id=test_id,
            url=url,
            role=role,
            fields=field_names,
            payload=payload,
            category=payload_set.category,
            vulnerable=detection is not None,
            matched_rule=detection.rule if detection else None,
            risk_level=detection.rule.risk_level if detection else Severity.LOW,
            evidence=evidence,
            response_time_ms=elapsed,
            ambiguous=ambiguous,
        )

    def _classify(self, category, payload, body, dom, events, elapsed, baseline
                  ) -> Tuple[Optional[Detection], bool, str]:
        try:
            detection = self.classifier.classify(
                category, payload, body=body, dom=dom, console_events=events,
                response_time_ms=elapsed, baseline=baseline,
            )
            return detection, False, ""
        except DetectionAmbiguous as e:
            logger.info(f"Not counted: {e}")
            return None, True, str(e)

    async def _screenshot(self, page, test_id: str) -> Optional[str]:
        directory = os.path.join(self.settings.output_dir, "evidence")
        os.makedirs(directory, exist_ok=True)
        try:
            return await page.screenshot(os.path.join(directory, f"{test_id}.png"))
        except Exception as e:
            logger.warning(f"Evidence screenshot failed for {test_id}: {e}")
            return None

    # ─────────────────────────────────────────────────────────────
    # API PASS
    # ─────────────────────────────────────────────────────────────

    async def fuzz_api(self, role: str, endpoints: List[ApiEndpoint]) -> List[SecurityTestResult]:
        """One request per (endpoint, parameter, payload) with the role's cookies."""
        handle = await self.pool.acquire(role)
        try:
            cookies = await handle.session.cookies()
        finally:
            await self.pool.release(role)

        jar = httpx.Cookies()
        for cookie in cookies:
            jar.set(cookie["name"], cookie["value"], domain=cookie.get("domain", ""), path=cookie.get("path", "/"))

        timeout = self.settings.fuzzer.timeout_per_payload_ms / 1000
        results = []
        async with httpx.AsyncClient(cookies=jar, timeout=timeout, transport=self.http_transport,
                                     verify=False, follow_redirects=True) as client:
            for endpoint in endpoints:
                for param in endpoint.parameters:
                    for payload_set in self.profile.payload_sets:
                        for payload in payload_set.payloads[:API_PAYLOADS_PER_PARAM]:
                            results.append(
                                await self._api_probe(client, role, endpoint, param, payload, payload_set)
                            )
        return results

    async def _api_probe(self, client, role, endpoint: ApiEndpoint, param, payload, payload_set
                         ) -> SecurityTestResult:
        test_id = self._next_id(role)
        started = time.monotonic()
        request = {"method": endpoint.method, "url": endpoint.url}
        if endpoint.method == "GET":
            request["params"] = {param: payload}
        elif "json" in endpoint.content_type:
            request["json"] = {param: payload}
        else:
            request["data"] = {param: payload}

        try:
            response = await client.request(**request)
        except httpx.HTTPError as e:
            logger.warning(f"{test_id}: API probe failed: {e}")
            return SecurityTestResult(
                test_id=test_id, url=endpoint.url, role=role, fields=(param,), payload=payload,
                category=payload_set.category, vulnerable=False, error=str(e),
                response_time_ms=int((time.monotonic() - started) * 1000),
            )

        elapsed = int((time.monotonic() - started) * 1000)
        body = response.text
        detection, ambiguous, note = self._classify(payload_set.category, payload, body, "", (), elapsed, "")

        evidence = {
            "status": response.status_code,
            "headers": dict(response.headers),
            "response_snippet": body[:RESPONSE_SNIPPET],
            "method": endpoint.method,
        }
        if note:
            evidence["note"] = note
        if detection:
            evidence["signal"] = detection.signal
            evidence["indicator"] = detection.indicator
            logger.warning(f"VULNERABILITY DETECTED: {detection.rule.name} in {endpoint.key} ({role})")

        return SecurityTestResult(
            test_id=test_id,
            url=endpoint.url,
            role=role,
            fields=(param,),
            payload=payload,
            category=payload_set.category,
            vulnerable=detection is not None,
            matched_rule=detection.rule if detection else None,
            risk_level=detection.rule.risk_level if detection else Severity.LOW,
            evidence=evidence,
            response_time_ms=elapsed,
            ambiguous=ambiguous,
        )

    # ─────────────────────────────────────────────────────────────
    # ALL ROLES
    # ─────────────────────────────────────────────────────────────

    async def fuzz_all(self, roles: List[str] = None, discoveries: Dict[str, Any] = None
                       ) -> Dict[str, FuzzCampaign]:
        roles = roles or self.profile.role_names
        discoveries = discoveries or {}
        batch = self.settings.batch
        campaigns: Dict[str, FuzzCampaign] = {}

        for group in batch_roles(roles, batch.priority_roles, batch.batch_size):
            outcomes = await asyncio.gather(
                *(self.fuzz_role(r, self._paths_for(r, discoveries)) for r in group),
                return_exceptions=True,
            )
            for role, outcome in zip(group, outcomes):
                if isinstance(outcome, FATAL_ERRORS):
                    raise outcome
                if isinstance(outcome, BaseException) and not isinstance(outcome, Exception):
                    raise outcome
                if isinstance(outcome, Exception):
                    logger.error(f"Fuzzing failed for {role}: {outcome}")
                    campaigns[role] = FuzzCampaign(role=role, error=str(outcome))
                else:
                    campaigns[role] = outcome
        return campaigns

    @staticmethod
    def _paths_for(role: str, discoveries) -> Optional[List[str]]:
        discovery = discoveries.get(role)
        if discovery and discovery.accessible_paths:
            return discovery.accessible_paths
        return None
