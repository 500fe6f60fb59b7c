"""
RBAC Validator Base Classes
===========================
Shared result shape for all four test types and the observe → decide step
every test uses to turn a driver observation into allow/deny/error.

Decision order:
1. content signal (privileged markers present -> allow, denial text -> deny)
2. transport failure -> error
3. HTTP status + final URL
A content signal overrides an HTTP error status. When an attempt looked for
capabilities and none rendered, a reachable page still counts as deny.
"""

import logging
import os
import time
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from enum import Enum
from typing import Optional, Dict, List, Any, Tuple, Sequence

from ..errors import NavigationError
from ..events import EventLedger, for_role
from ..models import Outcome, Severity, DENIED_URL_MARKERS, is_accessible, to_plain

logger = logging.getLogger("roleprobe.validator")

DENIAL_TEXT = (
    "access denied",
    "unauthorized",
    "403 forbidden",
    "permission denied",
    "not authorized",
    "insufficient permissions",
)


class TestType(Enum):
    PERMISSION = "permission"
    ESCALATION = "escalation"
    ISOLATION = "isolation"
    BOUNDARY = "boundary"


@dataclass(frozen=True)
class RBACEvidence:
    """What the driver saw while a test ran"""
    status_code: int = 0
    final_url: str = ""
    headers: Dict[str, str] = field(default_factory=dict)
    screenshot: Optional[str] = None
    console_excerpt: Tuple[str, ...] = ()
    network_excerpt: Tuple[str, ...] = ()
    markers: Tuple[str, ...] = ()
    notes: Tuple[str, ...] = ()

    def to_dict(self) -> Dict[str, Any]:
        return to_plain({
            "status_code": self.status_code,
            "final_url": self.final_url,
            "headers": self.headers,
            "screenshot": self.screenshot,
            "console_excerpt": self.console_excerpt,
            "network_excerpt": self.network_excerpt,
            "markers": self.markers,
            "notes": self.notes,
        })


@dataclass(frozen=True)
class RBACTestResult:
    test_id: str
    test_type: TestType
    role: str
    resource: str
    action: str
    expected: Outcome
    actual: Outcome
    risk_level: Severity
    evidence: RBACEvidence = field(default_factory=RBACEvidence)
    tenant: Optional[str] = None
    timestamp: float = 0.0
    execution_time_ms: int = 0
    passed: bool = field(init=False)

    def __post_init__(self):
        object.__setattr__(self, "test_type", TestType(self.test_type))
        object.__setattr__(self, "expected", Outcome(self.expected))
        object.__setattr__(self, "actual", Outcome(self.actual))
        object.__setattr__(self, "risk_level", Severity(self.risk_level))
        if self.expected is Outcome.ERROR:
            raise ValueError(f"{self.test_id}: expected outcome must be allow or deny")
        object.__setattr__(self, "passed", self.expected is self.actual)

    @property
    def is_violation(self) -> bool:
        """Granted something that should have been refused"""
        return self.expected is Outcome.DENY and self.actual is Outcome.ALLOW

    def to_dict(self) -> Dict[str, Any]:
        return {
            "test_id": self.test_id,
            "test_type": self.test_type.value,
            "role": self.role,
            "resource": self.resource,
            "action": self.action,
            "tenant": self.tenant,
            "expected": self.expected.value,
            "actual": self.actual.value,
            "passed": self.passed,
            "risk_level": self.risk_level.value,
            "evidence": self.evidence.to_dict(),
            "timestamp": self.timestamp,
            "execution_time_ms": self.execution_time_ms,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "RBACTestResult":
        data = dict(data)
        data.pop("passed", None)
        evidence = data.pop("evidence", {}) or {}
        return cls(evidence=RBACEvidence(**{k: tuple(v) if isinstance(v, list) else v
                                            for k, v in evidence.items()}), **data)


@dataclass(frozen=True)
class Observation:
    """Raw signal from one access attempt"""
    url: str
    status: int = 0
    final_url: str = ""
    body: str = ""
    headers: Dict[str, str] = field(default_factory=dict)
    privileged_markers: Tuple[str, ...] = ()
    capabilities: Tuple[str, ...] = ()
    transport_error: Optional[str] = None

    @property
    def denial_markers(self) -> Tuple[str, ...]:
        lowered = self.body.lower()
        return tuple(t for t in DENIAL_TEXT if t in lowered)


def decide(obs: Observation) -> Outcome:
    if obs.privileged_markers:
        return Outcome.ALLOW
    if obs.denial_markers:
        return Outcome.DENY
    if obs.transport_error:
        return Outcome.ERROR
    if is_accessible(obs.status, obs.final_url):
        if obs.capabilities:
            return Outcome.DENY
        return Outcome.ALLOW
    if 400 <= obs.status < 500:
        return Outcome.DENY
    if 200 <= obs.status < 400 and any(m in obs.final_url for m in DENIED_URL_MARKERS):
        return Outcome.DENY
    return Outcome.ERROR


async def observe_navigation(page, url: str, timeout_ms: int, privileged_selectors: Sequence[str] = ()
                             ) -> Observation:
    try:
        response = await page.goto(url, timeout_ms)
    except NavigationError as e:
        return Observation(url=url, transport_error=str(e))
    markers = []
    for selector in privileged_selectors:
        if await page.is_visible(selector):
            markers.append(selector)
    return Observation(
        url=url,
        status=response.status if response else 0,
        final_url=page.url,
        body=await page.content(),
        headers=response.headers if response else {},
        privileged_markers=tuple(markers),
        capabilities=tuple(privileged_selectors),
    )


async def observe_request(page, url: str, timeout_ms: int, method: str = "GET", headers: Dict = None,
                          data: Any = None, privileged_text: Sequence[str] = ()) -> Observation:
    try:
        response = await page.fetch(url, method=method, data=data, headers=headers, timeout_ms=timeout_ms)
    except NavigationError as e:
        return Observation(url=url, transport_error=str(e))
    body = await response.text()
    return Observation(
        url=url,
        status=response.status,
        final_url=response.url,
        body=body,
        headers=response.headers,
        privileged_markers=tuple(t for t in privileged_text if t and t in body),
        capabilities=tuple(t for t in privileged_text if t),
    )


class BaseRBACTest(ABC):
    """
    Common plumbing for the four RBAC test families.

    Test ids are derived from the test coordinates, so re-running the same
    test yields the same id.
    """

    test_type: TestType = None

    def __init__(self, pool, profile, console: EventLedger, network: EventLedger):
        self.pool = pool
        self.profile = profile
        self.settings = profile.settings
        self.console = console
        self.network = network

    @property
    def base_url(self) -> str:
        return self.settings.crawler.base_url

    @property
    def timeout_ms(self) -> int:
        return self.settings.limits.network_timeout_ms

    @abstractmethod
    async def run(self):
        """Run every test of this family and return its aggregate"""

    def url_for(self, resource: str) -> str:
        if resource.startswith(("http://", "https://")):
            return resource
        return f"{self.base_url}/{resource.lstrip('/')}"

    def test_id(self, *parts: str) -> str:
        return ":".join([self.test_type.value, *parts])

    def evidence(self, role: str, obs: Optional[Observation], console_mark: int,
                 screenshot: str = None, notes: Sequence[str] = ()) -> RBACEvidence:
        console = self.console.since(console_mark, for_role(role))
        network = self.network.tail(5, for_role(role))
        notes = list(notes)
        if obs and obs.transport_error:
            notes.append(obs.transport_error)
        if obs and obs.denial_markers:
            notes.append(f"denial text: {', '.join(obs.denial_markers)}")
        return RBACEvidence(
            status_code=obs.status if obs else 0,
            final_url=obs.final_url if obs else "",
            headers=dict(obs.headers) if obs else {},
            screenshot=screenshot,
            console_excerpt=tuple(e.text[:200] for e in console),
            network_excerpt=tuple(f"{c.method} {c.url} {c.status}" for c in network),
            markers=obs.privileged_markers if obs else (),
            notes=tuple(notes),
        )

    def build(self, test_id: str, role: str, resource: str, action: str, expected: Outcome,
              actual: Outcome, risk: Severity, evidence: RBACEvidence, started: float,
              tenant: str = None) -> RBACTestResult:
        result = RBACTestResult(
            test_id=test_id,
            test_type=self.test_type,
            role=role,
            resource=resource,
            action=action,
            tenant=tenant,
            expected=expected,
            actual=actual,
            risk_level=risk,
            evidence=evidence,
            timestamp=time.time(),
            execution_time_ms=int((time.monotonic() - started) * 1000),
        )
        level = logging.WARNING if not result.passed else logging.DEBUG
        logger.log(level, f"{test_id}: expected {expected.value}, got {actual.value} "
                          f"({'pass' if result.passed else 'FAIL'})")
        return result

    def errored(self, test_id: str, role: str, resource: str, action: str, expected: Outcome,
                error: Exception, started: float, console_mark: int, tenant: str = None) -> RBACTestResult:
        logger.error(f"{test_id}: {error}")
        return self.build(
            test_id, role, resource, action, expected, Outcome.ERROR, Severity.MEDIUM,
            self.evidence(role, None, console_mark, notes=[f"error: {error}"]), started, tenant,
        )

    async def screenshot(self, page, name: str) -> Optional[str]:
        directory = os.path.join(self.settings.output_dir, "evidence")
        os.makedirs(directory, exist_ok=True)
        path = os.path.join(directory, f"{name.replace(':', '_').replace('/', '_')}.png")
        try:
            return await page.screenshot(path)
        except Exception as e:
            logger.warning(f"Evidence screenshot failed for {name}: {e}")
            return None


def foreign_paths(profile, role: str, limit: int = 3) -> List[str]:
    """Declared paths some other role may reach but this role may not"""
    own = set(profile.expected_access.get(role, ()))
    others = []
    for name, paths in profile.expected_access.items():
        if name == role:
            continue
        for path in paths:
            if path not in own and path not in others:
                others.append(path)
    return sorted(others)[:limit]
