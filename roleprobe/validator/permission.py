"""
Permission Matrix Test
======================
Every PermissionRule against every declared role.

API resources (/api/...) are requested with the HTTP method of the rule's
permission level. UI resources are navigated to; for write/delete/admin
rules a reachable page only counts as "allow" when the matching action
control is visible.
"""

import asyncio
import logging
import time
from typing import List, Tuple

from .base import BaseRBACTest, TestType, RBACTestResult, Observation, decide, observe_navigation, observe_request
from .report import PermissionMatrixResult
from ..errors import FATAL_ERRORS
from ..models import Outcome, Severity, Vulnerability
from ..policy import PermissionRule, PermissionLevel

logger = logging.getLogger("roleprobe.validator")

LEVEL_METHODS = {
    PermissionLevel.READ: "GET",
    PermissionLevel.WRITE: "PUT",
    PermissionLevel.DELETE: "DELETE",
    PermissionLevel.ADMIN: "POST",
}

ACTION_CONTROLS = {
    PermissionLevel.WRITE: '[data-testid*="edit"], [data-testid*="create"], button[type="submit"]',
    PermissionLevel.DELETE: '[data-testid*="delete"]',
    PermissionLevel.ADMIN: '[data-testid*="admin"], [data-testid*="settings"], [data-testid*="management"]',
}


def is_api_resource(resource: str) -> bool:
    return resource.startswith("/api/") or "/graphql" in resource


class PermissionTest(BaseRBACTest):
    test_type = TestType.PERMISSION

    async def run(self) -> List[PermissionMatrixResult]:
        matrix = []
        for rule in self.profile.permission_rules:
            results = await asyncio.gather(*(self.check(rule, role) for role in self.profile.role_names))
            section = PermissionMatrixResult.build(rule, results)
            logger.info(f"Permission {rule.rule_id}: {section.overall_compliance}% compliant, "
                        f"{len(section.violations)} violation(s)")
            matrix.append(section)
        return matrix

    async def check(self, rule: PermissionRule, role: str) -> RBACTestResult:
        expected = Outcome.ALLOW if rule.expects_allow(role) else Outcome.DENY
        test_id = self.test_id(rule.action, rule.resource, role)
        started = time.monotonic()
        console_mark = self.console.mark()

        try:
            async with self.pool.page(role) as page:
                obs, notes, controls_missing = await self._attempt(page, rule)
        except FATAL_ERRORS:
            raise
        except Exception as e:
            return self.errored(test_id, role, rule.resource, rule.action, expected, e, started, console_mark)

        actual = decide(obs)
        if actual is Outcome.ERROR and not notes:
            notes = (f"unclassifiable response: status {obs.status}",)
        if controls_missing and actual is Outcome.ALLOW:
            actual = Outcome.DENY

        if actual is Outcome.ERROR:
            risk = Severity.MEDIUM
        elif actual is expected:
            risk = Severity.LOW
        else:
            risk = rule.permission_level.violation_severity()

        return self.build(
            test_id, role, rule.resource, rule.action, expected, actual, risk,
            self.evidence(role, obs, console_mark, notes=notes), started,
        )

    async def _attempt(self, page, rule: PermissionRule) -> Tuple[Observation, tuple, bool]:
        url = self.url_for(rule.resource)
        if is_api_resource(rule.resource):
            method = LEVEL_METHODS[rule.permission_level]
            obs = await observe_request(page, url, self.timeout_ms, method=method)
            return obs, (f"{method} {rule.resource}",), False

        obs = await observe_navigation(page, url, self.timeout_ms)
        controls = ACTION_CONTROLS.get(rule.permission_level)
        if not controls or decide(obs) is not Outcome.ALLOW:
            return obs, (), False
        if await page.count(controls):
            return obs, (f"{rule.permission_level.value} controls visible",), False
        return obs, (f"no {rule.permission_level.value} controls on page",), True

    def vulnerabilities(self, matrix: List[PermissionMatrixResult]) -> List[Vulnerability]:
        found = []
        for section in matrix:
            rule = section.rule
            kind = "unauthorized_access" if rule.permission_level is PermissionLevel.READ else "permission_bypass"
            for result in section.violations:
                found.append(Vulnerability(
                    vuln_id=f"rbac-{result.test_id}",
                    type=kind,
                    severity=rule.permission_level.violation_severity(),
                    description=f"{result.role} was granted {rule.action} on {rule.resource} "
                                f"({rule.business_context or 'no business context'})",
                    affected_roles=(result.role,),
                    affected_resources=(rule.resource,),
                    remediation=f"Deny {rule.action} on {rule.resource} to {result.role} server-side",
                    source="rbac",
                ))
        return found
