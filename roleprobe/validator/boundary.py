"""
Boundary Test
=============
Concrete per-role checks in four categories:

- authentication: an unauthenticated session requests the role's deepest
  protected path
- authorization:  the role requests a path declared for other roles only,
                  and its landing page must not render elements hidden from it
- session:        the role's cookies are dropped and the protected path is
                  requested again (cookies are restored afterwards)
- data:           the role asks the API for another tenant's users; roles with
                  global tenant access are not tested
"""

import logging
import time
from typing import Dict, List, Optional

from .base import BaseRBACTest, TestType, RBACTestResult, Observation, decide, foreign_paths
from .base import observe_navigation, observe_request
from .report import BoundaryTestResult
from .techniques import FOREIGN_TENANT
from ..errors import FATAL_ERRORS
from ..models import Outcome, Severity, Vulnerability

logger = logging.getLogger("roleprobe.validator")

CATEGORIES = ("authentication", "authorization", "session", "data")

CROSS_TENANT_RESOURCE = "/api/tenants/{tenant}/users"

FAILURE_SEVERITY = {
    "authentication": Severity.CRITICAL,
    "authorization": Severity.HIGH,
    "session": Severity.HIGH,
    "data": Severity.CRITICAL,
}

WEAKNESS_TYPES = {
    "authentication": "broken_authentication",
    "authorization": "missing_authorization",
    "session": "session_management",
    "data": "cross_tenant_data_access",
}


def rendered_elements(obs: Observation) -> Outcome:
    """Only the rendered elements decide: any hidden element visible is an allow"""
    if obs.privileged_markers:
        return Outcome.ALLOW
    if obs.transport_error:
        return Outcome.ERROR
    return Outcome.DENY


class BoundaryTest(BaseRBACTest):
    test_type = TestType.BOUNDARY

    async def run(self) -> List[BoundaryTestResult]:
        by_category: Dict[str, List[RBACTestResult]] = {c: [] for c in CATEGORIES}

        for role in self.profile.role_names:
            protected = self.protected_path(role)
            if protected:
                by_category["authentication"].append(await self.authentication(role, protected))
                by_category["session"].append(await self.session(role, protected))

            denied = foreign_paths(self.profile, role, limit=1)
            if denied:
                by_category["authorization"].append(await self.denied_route(role, denied[0]))
            hidden = self.profile.element_visibility.get(role, {}).get("hidden", ())
            if hidden:
                by_category["authorization"].append(await self.hidden_elements(role, tuple(hidden)))

            if self.tenant_scoped(role):
                by_category["data"].append(await self.cross_tenant(role))

        sections = [BoundaryTestResult.build(c, by_category[c]) for c in CATEGORIES]
        for section in sections:
            logger.info(f"Boundary {section.category}: integrity {section.boundary_integrity_score}%")
        return sections

    def protected_path(self, role: str) -> Optional[str]:
        """Deepest non-root path the role is expected to reach"""
        paths = [p for p in self.profile.expected_access.get(role, ()) if p != "/"]
        if not paths:
            paths = [p for p in self.profile.role(role).seed_paths if p != "/"]
        if not paths:
            return None
        return sorted(paths, key=lambda p: (-p.count("/"), -len(p), p))[0]

    def tenant_scoped(self, role: str) -> bool:
        definition = self.profile.hierarchy.roles.get(role)
        return definition is None or definition.tenant_access != "global"

    # ─────────────────────────────────────────────────────────────
    # CHECKS
    # ─────────────────────────────────────────────────────────────

    async def authentication(self, role: str, path: str) -> RBACTestResult:
        return await self._run_check(
            "authentication", role, path, "unauthenticated_access",
            lambda: self._anonymous(path),
        )

    async def session(self, role: str, path: str) -> RBACTestResult:
        return await self._run_check(
            "session", role, path, "cookieless_reuse",
            lambda: self._without_cookies(role, path),
        )

    async def denied_route(self, role: str, path: str) -> RBACTestResult:
        async def probe():
            async with self.pool.page(role) as page:
                return await observe_navigation(page, self.url_for(path), self.timeout_ms), ()
        return await self._run_check("authorization", role, path, "denied_route", probe)

    async def hidden_elements(self, role: str, hidden: tuple) -> RBACTestResult:
        landing = self.protected_path(role) or "/"

        async def probe():
            async with self.pool.page(role) as page:
                obs = await observe_navigation(page, self.url_for(landing), self.timeout_ms, hidden)
            notes = ()
            if obs.privileged_markers:
                notes = (f"hidden elements rendered: {', '.join(obs.privileged_markers)}",)
            return obs, notes
        return await self._run_check("authorization", role, landing, "hidden_elements", probe,
                                     decider=rendered_elements)

    async def cross_tenant(self, role: str) -> RBACTestResult:
        resource = CROSS_TENANT_RESOURCE.format(tenant=FOREIGN_TENANT)

        async def probe():
            async with self.pool.page(role) as page:
                obs = await observe_request(page, self.url_for(resource), self.timeout_ms,
                                            headers={"X-Tenant-ID": FOREIGN_TENANT})
            return obs, ()
        return await self._run_check("data", role, resource, "cross_tenant_read", probe, tenant=FOREIGN_TENANT)

    async def _anonymous(self, path: str):
        async with self.pool.anonymous_page() as page:
            return await observe_navigation(page, self.url_for(path), self.timeout_ms), ()

    async def _without_cookies(self, role: str, path: str):
        async with self.pool.page(role) as page:
            session = self.pool.session_for(role)
            saved = await session.cookies()
            await session.clear_cookies()
            try:
                obs = await observe_navigation(page, self.url_for(path), self.timeout_ms)
            finally:
                if saved:
                    await session.add_cookies(saved)
            return obs, (f"{len(saved)} cookie(s) dropped",)

    async def _run_check(self, category: str, role: str, resource: str, action: str, probe,
                         tenant: str = None, decider=decide) -> RBACTestResult:
        test_id = self.test_id(category, action, role)
        started = time.monotonic()
        console_mark = self.console.mark()
        try:
            obs, notes = await probe()
        except FATAL_ERRORS:
            raise
        except Exception as e:
            return self.errored(test_id, role, resource, action, Outcome.DENY, e, started, console_mark, tenant)

        actual = decider(obs)
        if actual is Outcome.ALLOW:
            risk = FAILURE_SEVERITY[category]
        elif actual is Outcome.ERROR:
            risk = Severity.MEDIUM
        else:
            risk = Severity.LOW
        return self.build(
            test_id, role, resource, action, Outcome.DENY, actual, risk,
            self.evidence(role, obs, console_mark, notes=notes), started, tenant,
        )

    def vulnerabilities(self, sections: List[BoundaryTestResult]) -> List[Vulnerability]:
        found = []
        for section in sections:
            for result in section.results:
                if result.actual is not Outcome.ALLOW:
                    continue
                found.append(Vulnerability(
                    vuln_id=f"rbac-{result.test_id}",
                    type=WEAKNESS_TYPES[section.category],
                    severity=FAILURE_SEVERITY[section.category],
                    description=f"{section.category} boundary: {result.action} succeeded on "
                                f"{result.resource} for {result.role}",
                    affected_roles=(result.role,),
                    affected_resources=(result.resource,),
                    remediation=f"Reject {result.action.replace('_', ' ')} requests on {result.resource}",
                    source="rbac",
                ))
        return found
