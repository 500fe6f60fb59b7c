"""
RBAC Validator Hub
==================
Runs the four test families against a session pool and assembles the
RBACSecurityReport.

Usage:
    validator = RBACValidator(pool, profile, console, network)
    report = await validator.run()
    print(report.compliance_score)

Families run one after another: the escalation, isolation and session
checks temporarily rewrite a role's cookies, so two families must never
share a role session at the same time.
"""

import logging
import time
from typing import List, Optional

from .base import RBACTestResult
from .boundary import BoundaryTest
from .escalation import EscalationTest
from .isolation import IsolationTest
from .permission import PermissionTest
from .report import (
    RBACSecurityReport,
    PermissionMatrixResult,
    EscalationTestResult,
    IsolationTestResult,
    BoundaryTestResult,
    SecurityRecommendation,
)
from .techniques import TechniqueRegistry
from ..events import EventLedger
from ..models import Outcome, Severity

logger = logging.getLogger("roleprobe.validator")


class RBACValidator:

    def __init__(
        self,
        pool,
        profile,
        console: EventLedger,
        network: EventLedger,
        registry: TechniqueRegistry = None,
        results: Optional[EventLedger] = None,
    ):
        self.profile = profile
        self.registry = registry or TechniqueRegistry()
        self.results = results if results is not None else EventLedger()

        self.permission = PermissionTest(pool, profile, console, network)
        self.escalation = EscalationTest(pool, profile, console, network, self.registry)
        self.isolation = IsolationTest(pool, profile, console, network, self.registry)
        self.boundary = BoundaryTest(pool, profile, console, network)

    # ─────────────────────────────────────────────────────────────
    # CORE RUN
    # ─────────────────────────────────────────────────────────────

    async def run(self) -> RBACSecurityReport:
        logger.info("RBAC validation: permission matrix")
        matrix = await self.permission.run()
        logger.info("RBAC validation: escalation paths")
        escalation = await self.escalation.run()
        logger.info("RBAC validation: isolation boundaries")
        isolation = await self.isolation.run()
        logger.info("RBAC validation: boundary checks")
        boundary = await self.boundary.run()

        vulnerabilities = (
            self.permission.vulnerabilities(matrix)
            + self.escalation.vulnerabilities(escalation)
            + self.isolation.vulnerabilities(isolation)
            + self.boundary.vulnerabilities(boundary)
        )
        vulnerabilities.sort(key=lambda v: (-v.severity.weight, v.vuln_id))

        report = RBACSecurityReport(
            generated_at=time.time(),
            permission_matrix=tuple(matrix),
            escalation=tuple(escalation),
            isolation=tuple(isolation),
            boundary=tuple(boundary),
            vulnerabilities=tuple(vulnerabilities),
            recommendations=tuple(recommendations(matrix, escalation, isolation, boundary)),
        )
        for result in report.all_results:
            self.results.append(result)

        summary = report.summary
        logger.info(
            f"RBAC validation done: {summary['passed']}/{summary['total_tests']} passed, "
            f"{summary['vulnerabilities']} vulnerabilit{'y' if summary['vulnerabilities'] == 1 else 'ies'}, "
            f"compliance {report.compliance_score}%"
        )
        return report


# =============================================================================
# RECOMMENDATIONS
# =============================================================================

def recommendations(
    matrix: List[PermissionMatrixResult],
    escalation: List[EscalationTestResult],
    isolation: List[IsolationTestResult],
    boundary: List[BoundaryTestResult],
) -> List[SecurityRecommendation]:
    recs = []

    for section in matrix:
        if not section.violations:
            continue
        rule = section.rule
        recs.append(SecurityRecommendation(
            priority=rule.permission_level.violation_severity(),
            category="permission",
            title=f"Enforce {rule.rule_id}",
            description=f"{len(section.violations)} role(s) were granted {rule.action} on {rule.resource}",
            affected_roles=tuple(sorted({r.role for r in section.violations})),
            remediation_steps=section.recommendations,
        ))

    for section in escalation:
        if section.vulnerability_detected:
            recs.append(SecurityRecommendation(
                priority=Severity.CRITICAL,
                category="escalation",
                title=f"Close escalation path {section.path.path_id}",
                description=f"{section.path.from_role} obtained {section.path.to_role} access",
                affected_roles=(section.path.from_role,),
                remediation_steps=section.mitigation_required,
            ))

    for section in isolation:
        if not section.isolation_intact:
            boundary_type = section.boundary.boundary_type.value
            recs.append(SecurityRecommendation(
                priority=section.risk_level,
                category="isolation",
                title=f"Repair {boundary_type} isolation",
                description=f"{section.successful_breaches} of {section.breach_attempts} attempts crossed "
                            f"the {boundary_type} boundary",
                affected_roles=_failed_roles(section.results),
                remediation_steps=tuple(f"Enforce {rule}" for rule in section.boundary.validation_rules),
            ))

    for section in boundary:
        failed = [r for r in section.results if r.actual is Outcome.ALLOW]
        if failed:
            recs.append(SecurityRecommendation(
                priority=max((r.risk_level for r in failed), key=lambda s: s.weight),
                category="boundary",
                title=f"Harden the {section.category} boundary",
                description=f"Integrity score {section.boundary_integrity_score}%",
                affected_roles=_failed_roles(failed),
                remediation_steps=section.weaknesses,
            ))

    errored = [r for s in (*matrix, *escalation, *isolation, *boundary) for r in s.results
               if r.actual is Outcome.ERROR]
    if errored:
        recs.append(SecurityRecommendation(
            priority=Severity.MEDIUM,
            category="coverage",
            title="Investigate tests that could not complete",
            description=f"{len(errored)} test(s) ended in error and count as failed",
            affected_roles=_failed_roles(errored),
        ))

    recs.sort(key=lambda r: -r.priority.weight)
    return recs


def _failed_roles(results: List[RBACTestResult]) -> tuple:
    return tuple(sorted({r.role for r in results if not r.passed}))
