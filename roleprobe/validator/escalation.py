"""
Privilege Escalation Test
=========================
For each EscalationPath, every listed method is tried from the lower role's
own session against resources only the higher role may reach. The
expected outcome is always deny; any allow is a critical finding and gets
an evidence screenshot. A reachable page that renders none of the higher
role's capabilities is not an escalation.
"""

import logging
import time
from typing import List

from .base import BaseRBACTest, TestType, RBACTestResult, decide
from .report import EscalationTestResult
from .techniques import AttemptContext, TechniqueRegistry
from ..errors import FATAL_ERRORS
from ..models import Outcome, Severity, Vulnerability, is_accessible
from ..policy import EscalationPath

logger = logging.getLogger("roleprobe.validator")

MAX_TARGETS = 3


class EscalationTest(BaseRBACTest):
    test_type = TestType.ESCALATION

    def __init__(self, pool, profile, console, network, registry: TechniqueRegistry = None):
        super().__init__(pool, profile, console, network)
        self.registry = registry or TechniqueRegistry()

    async def run(self) -> List[EscalationTestResult]:
        sections = []
        for path in self.profile.hierarchy.escalation_paths:
            targets = self.targets(path)
            if not targets:
                logger.warning(f"Escalation {path.path_id}: no resource exclusive to {path.to_role}, skipped")
            results = []
            for method in path.methods:
                for target in targets:
                    results.append(await self.attempt(path, method, target))
            section = EscalationTestResult.build(path, results)
            state = "BLOCKED" if section.blocked else "ESCALATED"
            logger.info(f"Escalation {path.path_id}: {state} ({len(results)} attempt(s))")
            sections.append(section)
        return sections

    def targets(self, path: EscalationPath) -> List[str]:
        """Declared resources the target role may reach and the source role may not"""
        own = set(self.profile.expected_access.get(path.from_role, ()))
        reachable = self.profile.expected_access.get(path.to_role, ())
        return sorted(p for p in reachable if p not in own)[:MAX_TARGETS]

    def privileged_selectors(self, path: EscalationPath) -> tuple:
        visibility = self.profile.element_visibility
        own = set(visibility.get(path.from_role, {}).get("visible", ()))
        return tuple(s for s in visibility.get(path.to_role, {}).get("visible", ()) if s not in own)

    async def attempt(self, path: EscalationPath, method: str, target: str) -> RBACTestResult:
        technique = self.registry.resolve(method)
        role = path.from_role
        test_id = self.test_id(path.path_id, method, target)
        started = time.monotonic()
        console_mark = self.console.mark()

        try:
            async with self.pool.page(role) as page:
                ctx = AttemptContext(
                    page=page,
                    session=self.pool.session_for(role),
                    role=role,
                    target_url=self.url_for(target),
                    base_url=self.base_url,
                    timeout_ms=self.timeout_ms,
                    target_role=path.to_role,
                    privileged_selectors=self.privileged_selectors(path),
                )
                obs = await technique.attempt(ctx)
                actual = decide(obs)
                screenshot = None
                if actual is Outcome.ALLOW:
                    screenshot = await self.screenshot(page, test_id)
        except FATAL_ERRORS:
            raise
        except Exception as e:
            return self.errored(test_id, role, target, method, Outcome.DENY, e, started, console_mark)

        if actual is Outcome.ALLOW:
            risk = Severity.CRITICAL
        elif actual is Outcome.ERROR:
            risk = Severity.MEDIUM
        else:
            risk = Severity.LOW

        notes = [f"technique: {technique.name}"]
        if actual is Outcome.DENY and obs.capabilities and not obs.privileged_markers \
                and not obs.denial_markers and is_accessible(obs.status, obs.final_url):
            notes.append("no target capability observed")
        if actual is Outcome.ALLOW and path.detection_signatures:
            notes.append(f"signatures: {', '.join(path.detection_signatures)}")
        return self.build(
            test_id, role, target, method, Outcome.DENY, actual, risk,
            self.evidence(role, obs, console_mark, screenshot=screenshot, notes=notes), started,
        )

    def vulnerabilities(self, sections: List[EscalationTestResult]) -> List[Vulnerability]:
        found = []
        for section in sections:
            path = section.path
            for result in section.results:
                if result.actual is not Outcome.ALLOW:
                    continue
                found.append(Vulnerability(
                    vuln_id=f"rbac-{result.test_id}",
                    type="privilege_escalation",
                    severity=Severity.CRITICAL,
                    description=f"{path.from_role} reached {result.resource}, reserved for {path.to_role}, "
                                f"via {result.action} ({path.vulnerability_type})",
                    affected_roles=(path.from_role, path.to_role),
                    affected_resources=(result.resource,),
                    remediation=f"Authorize {result.resource} on the server from the session's role, "
                                f"ignoring client-supplied role claims",
                    source="rbac",
                ))
        return found
