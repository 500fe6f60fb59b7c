"""
Isolation Test
==============
Each IsolationBoundary × test method × role: the role tries to reach a
resource outside its own scope with the bypass technique paired to the
test method. Roles without any foreign resource are not tested.
"""

import logging
import time
from typing import List

from .base import BaseRBACTest, TestType, RBACTestResult, decide, foreign_paths
from .report import IsolationTestResult
from .techniques import AttemptContext, TechniqueRegistry, FOREIGN_TENANT
from ..errors import FATAL_ERRORS
from ..models import Outcome, Severity, Vulnerability
from ..policy import IsolationBoundary, BoundaryType

logger = logging.getLogger("roleprobe.validator")

BREACH_SEVERITY = {
    BoundaryType.TENANT: Severity.CRITICAL,
    BoundaryType.ROLE: Severity.HIGH,
    BoundaryType.DATA: Severity.HIGH,
    BoundaryType.MODULE: Severity.MEDIUM,
}


def technique_for(boundary: IsolationBoundary, index: int) -> str:
    """Bypass technique paired with the index-th test method"""
    if boundary.bypass_techniques:
        return boundary.bypass_techniques[index % len(boundary.bypass_techniques)]
    return boundary.test_methods[index]


class IsolationTest(BaseRBACTest):
    test_type = TestType.ISOLATION

    def __init__(self, pool, profile, console, network, registry: TechniqueRegistry = None):
        super().__init__(pool, profile, console, network)
        self.registry = registry or TechniqueRegistry()

    async def run(self) -> List[IsolationTestResult]:
        sections = []
        for boundary in self.profile.hierarchy.isolation_boundaries:
            results = []
            for index, method in enumerate(boundary.test_methods):
                technique = technique_for(boundary, index)
                for role in self.profile.role_names:
                    targets = foreign_paths(self.profile, role, limit=1)
                    if not targets:
                        continue
                    results.append(await self.attempt(boundary, method, technique, role, targets[0]))
            section = IsolationTestResult.build(boundary, results)
            logger.info(f"Isolation {boundary.boundary_type.value}: "
                        f"{section.successful_breaches}/{section.breach_attempts} breach(es), "
                        f"risk {section.risk_level.value}")
            sections.append(section)
        return sections

    async def attempt(self, boundary: IsolationBoundary, method: str, technique_name: str,
                      role: str, target: str) -> RBACTestResult:
        technique = self.registry.resolve(technique_name)
        tenant = FOREIGN_TENANT if boundary.boundary_type is BoundaryType.TENANT else None
        action = f"{method}/{technique_name}"
        test_id = self.test_id(boundary.boundary_type.value, method, role)
        started = time.monotonic()
        console_mark = self.console.mark()

        try:
            async with self.pool.page(role) as page:
                obs = await technique.attempt(AttemptContext(
                    page=page,
                    session=self.pool.session_for(role),
                    role=role,
                    target_url=self.url_for(target),
                    base_url=self.base_url,
                    timeout_ms=self.timeout_ms,
                ))
        except FATAL_ERRORS:
            raise
        except Exception as e:
            return self.errored(test_id, role, target, action, Outcome.DENY, e, started, console_mark, tenant)

        actual = decide(obs)
        if actual is Outcome.ALLOW:
            risk = BREACH_SEVERITY[boundary.boundary_type]
        elif actual is Outcome.ERROR:
            risk = Severity.MEDIUM
        else:
            risk = Severity.LOW
        notes = [f"enforcer: {boundary.enforcer}", f"technique: {technique.name}"]
        return self.build(
            test_id, role, target, action, Outcome.DENY, actual, risk,
            self.evidence(role, obs, console_mark, notes=notes), started, tenant,
        )

    def vulnerabilities(self, sections: List[IsolationTestResult]) -> List[Vulnerability]:
        found = []
        for section in sections:
            kind = section.boundary.boundary_type
            for result in section.results:
                if result.actual is not Outcome.ALLOW:
                    continue
                found.append(Vulnerability(
                    vuln_id=f"rbac-{result.test_id}",
                    type=f"{kind.value}_isolation_breach",
                    severity=BREACH_SEVERITY[kind],
                    description=f"{result.role} crossed the {kind.value} boundary to {result.resource} "
                                f"using {result.action}",
                    affected_roles=(result.role,),
                    affected_resources=(result.resource,),
                    remediation=f"Enforce {', '.join(section.boundary.validation_rules) or 'scope checks'} "
                                f"in {section.boundary.enforcer}",
                    source="rbac",
                ))
        return found
