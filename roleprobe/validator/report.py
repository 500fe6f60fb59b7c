"""
RBAC Report Sections
====================
Aggregates for the four test families and the combined RBACSecurityReport.
Every section is derived from its RBACTestResult list at construction.
"""

from dataclasses import dataclass, field
from typing import Dict, List, Any, Tuple, Sequence

from .base import RBACTestResult, TestType
from ..models import Outcome, Severity, Vulnerability
from ..policy import PermissionRule, EscalationPath, IsolationBoundary


def pass_rate(results: Sequence[RBACTestResult]) -> float:
    """passed/total*100, 100 when nothing ran"""
    if not results:
        return 100.0
    return round(sum(1 for r in results if r.passed) / len(results) * 100, 1)


def breach_risk(breaches: int, attempts: int) -> Severity:
    if not attempts or not breaches:
        return Severity.LOW
    rate = breaches / attempts
    if rate < 0.1:
        return Severity.MEDIUM
    if rate < 0.3:
        return Severity.HIGH
    return Severity.CRITICAL


def _check_score(score: float, label: str):
    if not 0 <= score <= 100:
        raise ValueError(f"{label} out of range: {score}")


# ─────────────────────────────────────────────────────────────
# PERMISSION MATRIX
# ─────────────────────────────────────────────────────────────

@dataclass(frozen=True)
class PermissionMatrixResult:
    rule: PermissionRule
    results: Tuple[RBACTestResult, ...]
    overall_compliance: float
    violations: Tuple[RBACTestResult, ...]
    recommendations: Tuple[str, ...] = ()

    def __post_init__(self):
        _check_score(self.overall_compliance, "overall_compliance")

    @classmethod
    def build(cls, rule: PermissionRule, results: Sequence[RBACTestResult]) -> "PermissionMatrixResult":
        violations = tuple(r for r in results if r.is_violation)
        recommendations = []
        if violations:
            roles = ", ".join(sorted({r.role for r in violations}))
            recommendations.append(f"Enforce server-side {rule.action} checks on {rule.resource} for: {roles}")
        over_denied = [r for r in results if r.expected is Outcome.ALLOW and r.actual is Outcome.DENY]
        if over_denied:
            roles = ", ".join(sorted({r.role for r in over_denied}))
            recommendations.append(f"Restore {rule.action} access to {rule.resource} for: {roles}")
        if any(r.actual is Outcome.ERROR for r in results):
            recommendations.append(f"Re-run {rule.rule_id}: some checks could not complete")
        return cls(
            rule=rule,
            results=tuple(results),
            overall_compliance=pass_rate(results),
            violations=violations,
            recommendations=tuple(recommendations),
        )

    def to_dict(self) -> Dict[str, Any]:
        return {
            "rule": self.rule.to_dict(),
            "overall_compliance": self.overall_compliance,
            "violations": [v.test_id for v in self.violations],
            "recommendations": list(self.recommendations),
            "results": [r.to_dict() for r in self.results],
        }


# ─────────────────────────────────────────────────────────────
# ESCALATION
# ─────────────────────────────────────────────────────────────

@dataclass(frozen=True)
class EscalationTestResult:
    path: EscalationPath
    results: Tuple[RBACTestResult, ...]
    blocked: bool
    vulnerability_detected: bool
    risk_assessment: Severity
    mitigation_required: Tuple[str, ...] = ()

    @classmethod
    def build(cls, path: EscalationPath, results: Sequence[RBACTestResult]) -> "EscalationTestResult":
        succeeded = [r for r in results if r.actual is Outcome.ALLOW]
        errored = [r for r in results if r.actual is Outcome.ERROR]

        if succeeded:
            risk = Severity.CRITICAL
        elif errored:
            risk = Severity.MEDIUM
        else:
            risk = Severity.LOW

        mitigation = [f"Block '{r.action}' from {path.from_role} on {r.resource}" for r in succeeded]
        if succeeded and path.detection_signatures:
            mitigation.append(f"Alert on: {', '.join(path.detection_signatures)}")

        return cls(
            path=path,
            results=tuple(results),
            blocked=not succeeded,
            vulnerability_detected=bool(succeeded),
            risk_assessment=risk,
            mitigation_required=tuple(mitigation),
        )

    def to_dict(self) -> Dict[str, Any]:
        return {
            "path": self.path.to_dict(),
            "blocked": self.blocked,
            "vulnerability_detected": self.vulnerability_detected,
            "risk_assessment": self.risk_assessment.value,
            "mitigation_required": list(self.mitigation_required),
            "results": [r.to_dict() for r in self.results],
        }


# ─────────────────────────────────────────────────────────────
# ISOLATION
# ─────────────────────────────────────────────────────────────

@dataclass(frozen=True)
class IsolationTestResult:
    boundary: IsolationBoundary
    results: Tuple[RBACTestResult, ...]
    isolation_intact: bool
    breach_attempts: int
    successful_breaches: int
    risk_level: Severity

    def __post_init__(self):
        if self.successful_breaches > self.breach_attempts:
            raise ValueError("More breaches than attempts")
        if self.isolation_intact != (self.successful_breaches == 0):
            raise ValueError("isolation_intact must mean zero breaches")

    @classmethod
    def build(cls, boundary: IsolationBoundary, results: Sequence[RBACTestResult]) -> "IsolationTestResult":
        breaches = sum(1 for r in results if r.actual is Outcome.ALLOW)
        return cls(
            boundary=boundary,
            results=tuple(results),
            isolation_intact=breaches == 0,
            breach_attempts=len(results),
            successful_breaches=breaches,
            risk_level=breach_risk(breaches, len(results)),
        )

    def to_dict(self) -> Dict[str, Any]:
        return {
            "boundary": self.boundary.to_dict(),
            "isolation_intact": self.isolation_intact,
            "breach_attempts": self.breach_attempts,
            "successful_breaches": self.successful_breaches,
            "risk_level": self.risk_level.value,
            "results": [r.to_dict() for r in self.results],
        }


# ─────────────────────────────────────────────────────────────
# BOUNDARY
# ─────────────────────────────────────────────────────────────

@dataclass(frozen=True)
class BoundaryTestResult:
    category: str
    results: Tuple[RBACTestResult, ...]
    boundary_integrity_score: float
    weaknesses: Tuple[str, ...] = ()
    strength_areas: Tuple[str, ...] = ()

    def __post_init__(self):
        _check_score(self.boundary_integrity_score, "boundary_integrity_score")

    @classmethod
    def build(cls, category: str, results: Sequence[RBACTestResult]) -> "BoundaryTestResult":
        weaknesses = [f"{r.role}: {r.action} on {r.resource} ({r.actual.value})"
                      for r in results if not r.passed]
        strengths = sorted({r.role for r in results if r.passed} - {r.role for r in results if not r.passed})
        return cls(
            category=category,
            results=tuple(results),
            boundary_integrity_score=pass_rate(results),
            weaknesses=tuple(weaknesses),
            strength_areas=tuple(f"{category} boundary holds for {role}" for role in strengths),
        )

    def to_dict(self) -> Dict[str, Any]:
        return {
            "category": self.category,
            "boundary_integrity_score": self.boundary_integrity_score,
            "weaknesses": list(self.weaknesses),
            "strength_areas": list(self.strength_areas),
            "results": [r.to_dict() for r in self.results],
        }


# ═══════════════════════════════════════════════════════════════
# COMBINED REPORT
# ═══════════════════════════════════════════════════════════════

@dataclass(frozen=True)
class SecurityRecommendation:
    priority: Severity
    category: str
    title: str
    description: str
    affected_roles: Tuple[str, ...] = ()
    remediation_steps: Tuple[str, ...] = ()

    def to_dict(self) -> Dict[str, Any]:
        return {
            "priority": self.priority.value,
            "category": self.category,
            "title": self.title,
            "description": self.description,
            "affected_roles": list(self.affected_roles),
            "remediation_steps": list(self.remediation_steps),
        }


@dataclass(frozen=True)
class RBACSecurityReport:
    generated_at: float
    permission_matrix: Tuple[PermissionMatrixResult, ...]
    escalation: Tuple[EscalationTestResult, ...]
    isolation: Tuple[IsolationTestResult, ...]
    boundary: Tuple[BoundaryTestResult, ...]
    vulnerabilities: Tuple[Vulnerability, ...]
    recommendations: Tuple[SecurityRecommendation, ...]
    compliance_score: float = field(init=False)
    category_scores: Dict[str, float] = field(init=False)
    summary: Dict[str, int] = field(init=False)

    def __post_init__(self):
        results = self.all_results
        object.__setattr__(self, "compliance_score", pass_rate(results))
        object.__setattr__(self, "category_scores", {
            t.value: pass_rate([r for r in results if r.test_type is t]) for t in TestType
        })
        object.__setattr__(self, "summary", {
            "total_tests": len(results),
            "passed": sum(1 for r in results if r.passed),
            "failed": sum(1 for r in results if not r.passed and r.actual is not Outcome.ERROR),
            "errors": sum(1 for r in results if r.actual is Outcome.ERROR),
            "vulnerabilities": len(self.vulnerabilities),
            "critical": sum(1 for v in self.vulnerabilities if v.severity is Severity.CRITICAL),
            "high": sum(1 for v in self.vulnerabilities if v.severity is Severity.HIGH),
        })

    @property
    def all_results(self) -> List[RBACTestResult]:
        out: List[RBACTestResult] = []
        for section in (self.permission_matrix, self.escalation, self.isolation, self.boundary):
            for item in section:
                out.extend(item.results)
        return out

    def to_dict(self) -> Dict[str, Any]:
        return {
            "generated_at": self.generated_at,
            "summary": self.summary,
            "compliance_score": self.compliance_score,
            "category_scores": self.category_scores,
            "permission_matrix": [m.to_dict() for m in self.permission_matrix],
            "escalation": [e.to_dict() for e in self.escalation],
            "isolation": [i.to_dict() for i in self.isolation],
            "boundary": [b.to_dict() for b in self.boundary],
            "vulnerabilities": [v.to_dict() for v in self.vulnerabilities],
            "recommendations": [r.to_dict() for r in self.recommendations],
        }
