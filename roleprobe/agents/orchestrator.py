"""
Orchestrator
============
Wires the ledgers, driver, session pool and the three agents together and
runs the phases of one security run:

    crawl → validate → fuzz → analyze

Live phases can be switched off individually; analysis always runs over
whatever the live phases produced. Every run returns a SecurityReport, even
when individual roles failed (their discoveries carry the error).
"""

import logging
import time
from contextlib import contextmanager
from dataclasses import dataclass, field
from typing import Any, Callable, Dict, Iterable, List, Optional, Tuple

from .crawler import RoleCrawler
from .fuzzer import PayloadFuzzer, FuzzCampaign
from ..driver.base import Driver
from ..driver.playwright_driver import PlaywrightDriver
from ..driver.pool import RoleSessionPool
from ..events import EventLedger
from ..intelligence import IntelligenceEngine, IntelligenceReport
from ..models import PathDiscovery, SecurityTestResult, Severity, Vulnerability, ApiEndpoint
from ..validator import RBACValidator, RBACSecurityReport, RBACTestResult, TechniqueRegistry

logger = logging.getLogger("roleprobe.orchestrator")

LIVE_PHASES = ("crawl", "validate", "fuzz")


# ═══════════════════════════════════════════════════════════════
# COMBINED REPORT
# ═══════════════════════════════════════════════════════════════

@dataclass
class SecurityReport:
    generated_at: float
    base_url: str
    settings: Dict[str, Any]
    discoveries: Dict[str, PathDiscovery]
    intelligence: IntelligenceReport
    rbac: Optional[RBACSecurityReport] = None
    fuzz: Dict[str, FuzzCampaign] = field(default_factory=dict)
    phase_timings: Dict[str, int] = field(default_factory=dict)

    @property
    def vulnerabilities(self) -> List[Vulnerability]:
        """RBAC findings plus crawl/fuzz findings, most severe first"""
        found = list(self.intelligence.vulnerabilities)
        if self.rbac:
            found.extend(self.rbac.vulnerabilities)
        found.sort(key=lambda v: (-v.severity.weight, v.vuln_id))
        return found

    @property
    def severity_counts(self) -> Dict[str, int]:
        counts = {s.value: 0 for s in sorted(Severity, reverse=True)}
        for vuln in self.vulnerabilities:
            counts[vuln.severity.value] += 1
        return counts

    @property
    def security_tests(self) -> List[SecurityTestResult]:
        return [r for c in self.fuzz.values() for r in c.results]

    @property
    def api_endpoints(self) -> List[ApiEndpoint]:
        return [e for c in self.fuzz.values() for e in c.api_endpoints]

    def to_dict(self) -> Dict[str, Any]:
        return {
            "generated_at": self.generated_at,
            "base_url": self.base_url,
            "settings": self.settings,
            "phase_timings": self.phase_timings,
            "severity_counts": self.severity_counts,
            "vulnerabilities": [v.to_dict() for v in self.vulnerabilities],
            "discoveries": {role: d.to_dict() for role, d in self.discoveries.items()},
            "rbac": self.rbac.to_dict() if self.rbac else None,
            "fuzz": {role: c.to_dict() for role, c in self.fuzz.items()},
            "intelligence": self.intelligence.to_dict(),
        }


def records_from_dict(data: Dict[str, Any]) -> Tuple[Dict[str, PathDiscovery], List[RBACTestResult],
                                                     List[SecurityTestResult]]:
    """Rebuild the engine inputs from a saved SecurityReport"""
    discoveries = {role: PathDiscovery.from_dict(d) for role, d in (data.get("discoveries") or {}).items()}

    rbac_results = []
    rbac = data.get("rbac") or {}
    for family in ("permission_matrix", "escalation", "isolation", "boundary"):
        for section in rbac.get(family, []):
            rbac_results.extend(RBACTestResult.from_dict(r) for r in section.get("results", []))

    security_tests = [
        SecurityTestResult.from_dict(r)
        for campaign in (data.get("fuzz") or {}).values()
        for r in campaign.get("results", [])
    ]
    return discoveries, rbac_results, security_tests


# ═══════════════════════════════════════════════════════════════
# ORCHESTRATOR
# ═══════════════════════════════════════════════════════════════

class Orchestrator:
    """
    Usage:
        orch = Orchestrator(profile)
        report = await orch.run()
        print(report.intelligence.executive_summary.security_posture)
    """

    def __init__(
        self,
        profile,
        driver: Driver = None,
        registry: TechniqueRegistry = None,
        progress: Callable = None,
        clock: Callable[[], float] = time.time,
    ):
        self.profile = profile
        self.settings = profile.settings
        self.driver = driver or PlaywrightDriver(
            headless=self.settings.headless,
            network_timeout_ms=self.settings.limits.network_timeout_ms,
        )
        self.registry = registry or TechniqueRegistry()
        self.progress = progress
        self.clock = clock

        self.console = EventLedger()
        self.network = EventLedger(capacity=self.settings.fuzzer.network_capture_limit)
        self.results = EventLedger()
        self.engine = IntelligenceEngine.from_profile(profile)
        self.phase_timings: Dict[str, int] = {}

    @contextmanager
    def _phase(self, name: str):
        started = time.time()
        logger.info(f"Phase {name} started")
        if self.progress:
            self.progress(name, "started")
        try:
            yield
        finally:
            elapsed = int((time.time() - started) * 1000)
            self.phase_timings[name] = elapsed
            logger.info(f"Phase {name} finished in {elapsed} ms")
            if self.progress:
                self.progress(name, "finished")

    # ─────────────────────────────────────────────────────────────
    # RUN
    # ─────────────────────────────────────────────────────────────

    async def run(self, roles: Iterable[str] = None, phases: Iterable[str] = LIVE_PHASES) -> SecurityReport:
        """
        roles narrows crawling and fuzzing; RBAC validation always covers
        every profile role because its rules and paths name them.
        """
        phases = tuple(phases)
        unknown = set(phases) - set(LIVE_PHASES)
        if unknown:
            raise ValueError(f"Unknown phase(s): {', '.join(sorted(unknown))}")
        roles = list(roles) if roles else self.profile.role_names
        for role in roles:
            self.profile.role(role)

        self.phase_timings = {}
        discoveries: Dict[str, PathDiscovery] = {}
        rbac: Optional[RBACSecurityReport] = None
        fuzz: Dict[str, FuzzCampaign] = {}

        async with self.driver:
            async with RoleSessionPool(self.driver, self.profile.roles, self.settings,
                                       self.console, self.network) as pool:
                if "crawl" in phases:
                    with self._phase("crawl"):
                        crawler = RoleCrawler(pool, self.profile, self.console, self.network)
                        discoveries = await crawler.discover_all(roles)

                if "validate" in phases:
                    with self._phase("validate"):
                        validator = RBACValidator(pool, self.profile, self.console, self.network,
                                                  registry=self.registry, results=self.results)
                        rbac = await validator.run()

                if "fuzz" in phases:
                    with self._phase("fuzz"):
                        fuzzer = PayloadFuzzer(pool, self.profile, self.console, self.network)
                        fuzz = await fuzzer.fuzz_all(roles, discoveries)

        return self.assemble(discoveries, rbac, fuzz)

    def assemble(self, discoveries: Dict[str, PathDiscovery], rbac: Optional[RBACSecurityReport],
                 fuzz: Dict[str, FuzzCampaign]) -> SecurityReport:
        generated_at = self.clock()
        with self._phase("analyze"):
            intelligence = self.engine.analyze(
                discoveries,
                rbac_results=rbac.all_results if rbac else (),
                security_tests=[r for c in fuzz.values() for r in c.results],
                generated_at=generated_at,
            )

        report = SecurityReport(
            generated_at=generated_at,
            base_url=self.settings.crawler.base_url,
            settings=self.settings.to_dict(),
            discoveries=discoveries,
            intelligence=intelligence,
            rbac=rbac,
            fuzz=fuzz,
            phase_timings=dict(self.phase_timings),
        )
        counts = report.severity_counts
        logger.info(
            f"Run complete: {len(report.vulnerabilities)} vulnerabilities "
            f"({counts['critical']} critical, {counts['high']} high), "
            f"posture {intelligence.executive_summary.security_posture}"
        )
        return report
