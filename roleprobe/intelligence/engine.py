"""
Intelligence Engine
===================
Turns the records of one run (per-role PathDiscovery, RBACTestResult,
SecurityTestResult) into an IntelligenceReport.

The engine never opens a session and never reads the clock: the same
records and the same generated_at always give the same report.

Usage:
    engine = IntelligenceEngine.from_profile(profile)
    report = engine.analyze(discoveries, rbac_results, fuzz_results, generated_at=time.time())
    print(report.executive_summary.security_posture)
"""

import logging
from typing import Dict, Iterable, List, Optional, Sequence, Set, Tuple

from .matrix import build_heatmap, build_matrix
from .report import (
    IntelligenceReport,
    PermissionPatternAnalysis,
    HierarchyCompliance,
    HierarchyViolation,
    AccessPattern,
    PermissionGap,
    SecurityRisk,
    RoleComparison,
    SecurityException,
    PerformanceAnalysis,
    PathTiming,
    ErrorPattern,
    ActionableInsight,
    ExecutiveSummary,
)
from ..models import PathDiscovery, SecurityTestResult, Severity, Vulnerability, crawl_performance_grade
from ..policy import RoleHierarchy
from ..validator.base import RBACTestResult
from ..validator.report import pass_rate

logger = logging.getLogger("roleprobe.intelligence")

ADMIN_PATHS = ("/admin", "/admin/users", "/admin/settings", "/admin/roles")

WEAK_BOUNDARY_OVERLAP = 80.0
SLOW_PATH_MS = 2000
TOP_PATHS = 5
RISK_PENALTY = 5

ERROR_BUCKETS = (
    ("timeout", "Timeout"),
    ("timed out", "Timeout"),
    ("404", "Not Found"),
    ("403", "Forbidden"),
    ("500", "Server Error"),
    ("network", "Network Error"),
)

FUZZ_REMEDIATION = {
    "xss": "Encode output and validate input on the server",
    "sqli": "Use parameterized queries for every database call",
    "cmdi": "Never pass user input to a shell; use allow-listed arguments",
    "path_traversal": "Resolve file paths against a fixed root and reject escapes",
}


def is_admin_path(path: str) -> bool:
    return path.startswith("/admin")


# ═══════════════════════════════════════════════════════════════
# SCORING
# ═══════════════════════════════════════════════════════════════

def performance_score(avg_response_ms: float) -> int:
    if avg_response_ms < 1000:
        return 100
    if avg_response_ms < 2000:
        return 80
    if avg_response_ms < 3000:
        return 60
    if avg_response_ms < 5000:
        return 40
    return 20


def score_grade(score: float) -> str:
    if score >= 90:
        return "A"
    if score >= 80:
        return "B"
    if score >= 70:
        return "C"
    if score >= 60:
        return "D"
    return "F"


def compliance_grade(score: float) -> str:
    for threshold, grade in ((95, "A+"), (90, "A"), (85, "B+"), (80, "B"),
                             (75, "C+"), (70, "C"), (65, "D+"), (60, "D")):
        if score >= threshold:
            return grade
    return "F"


def compliance_status(score: float) -> str:
    if score >= 90:
        return "compliant"
    if score >= 70:
        return "partial"
    return "non_compliant"


def security_posture(severities: Sequence[Severity], compliance: float) -> str:
    high = sum(1 for s in severities if s is Severity.HIGH)
    if any(s is Severity.CRITICAL for s in severities):
        return "critical"
    if high > 2 or compliance < 70:
        return "needs_improvement"
    if high or compliance < 90:
        return "good"
    return "excellent"


def overall_score(compliance: float, perf_score: float, risk_count: int) -> int:
    return min(100, max(0, round((compliance + perf_score) / 2 - RISK_PENALTY * risk_count)))


def effort_for(roles: int, paths: int) -> str:
    if paths > 5 or roles > 4:
        return "high"
    if paths > 2 or roles > 2:
        return "medium"
    return "low"


def impact_for(severity: Severity) -> str:
    if severity.weight >= Severity.HIGH.weight:
        return "high"
    return severity.value


def error_bucket(error: str) -> str:
    text = error.lower()
    for needle, name in ERROR_BUCKETS:
        if needle in text:
            return name
    return "Other"


def _percent(part: int, whole: int) -> float:
    return round(part / whole * 100, 2) if whole else 0.0


def _overlap(a: Set[str], b: Set[str]) -> Optional[float]:
    union = a | b
    if not union:
        return None
    return _percent(len(a & b), len(union))


# ═══════════════════════════════════════════════════════════════
# ENGINE
# ═══════════════════════════════════════════════════════════════

class IntelligenceEngine:

    def __init__(self, hierarchy: RoleHierarchy, expected_access: Dict[str, Iterable[str]] = None):
        self.hierarchy = hierarchy
        self.expected_access = {role: frozenset(paths) for role, paths in (expected_access or {}).items()}

    @classmethod
    def from_profile(cls, profile) -> "IntelligenceEngine":
        return cls(profile.hierarchy, profile.expected_access)

    def expects(self, role: str, path: str) -> Optional[bool]:
        """Declared expectation, None for a role with no declared access"""
        if role not in self.expected_access:
            return None
        return path in self.expected_access[role]

    def is_admin(self, role: str) -> bool:
        return self.hierarchy.is_admin(role)

    def unauthorized(self, role: str, path: str) -> bool:
        expected = self.expects(role, path)
        if expected is None:
            return is_admin_path(path) and not self.is_admin(role)
        return not expected

    # ─────────────────────────────────────────────────────────────
    # MAIN ENTRY POINT
    # ─────────────────────────────────────────────────────────────

    def analyze(
        self,
        discoveries: Dict[str, PathDiscovery],
        rbac_results: Sequence[RBACTestResult] = (),
        security_tests: Sequence[SecurityTestResult] = (),
        generated_at: float = 0.0,
    ) -> IntelligenceReport:
        access = {role: tuple(sorted(set(d.accessible_paths))) for role, d in discoveries.items()}

        patterns = self.permission_patterns(discoveries, access)
        comparison = self.compare_roles(access)
        performance = analyze_performance(discoveries)
        vulnerabilities = self.vulnerabilities(patterns.security_risks, security_tests)
        insights = self.actionable_insights(patterns, vulnerabilities, performance, rbac_results)
        summary = self.executive_summary(patterns, comparison, performance, vulnerabilities,
                                         insights, rbac_results)

        logger.debug(f"Analyzed {len(access)} role(s): {len(vulnerabilities)} vulnerabilit"
                     f"{'y' if len(vulnerabilities) == 1 else 'ies'}, posture {summary.security_posture}")

        return IntelligenceReport(
            generated_at=generated_at,
            roles=tuple(discoveries),
            patterns=patterns,
            comparison=comparison,
            performance=performance,
            matrix=build_matrix(discoveries, self.expects),
            heatmap=build_heatmap(discoveries),
            vulnerabilities=tuple(vulnerabilities),
            actionable_insights=tuple(insights),
            executive_summary=summary,
        )

    # ─────────────────────────────────────────────────────────────
    # PERMISSION PATTERNS
    # ─────────────────────────────────────────────────────────────

    def permission_patterns(self, discoveries: Dict[str, PathDiscovery],
                            access: Dict[str, Tuple[str, ...]]) -> PermissionPatternAnalysis:
        return PermissionPatternAnalysis(
            hierarchy=self.hierarchy_compliance(access),
            access_patterns=tuple(self.access_patterns(access)),
            permission_gaps=tuple(self.permission_gaps(discoveries)),
            security_risks=tuple(self.security_risks(access)),
        )

    def hierarchy_compliance(self, access: Dict[str, Tuple[str, ...]]) -> HierarchyCompliance:
        """
        Every comparable pair of observed roles is one check. The pair fails
        when the lower role reaches a path the higher one cannot.
        """
        ranked = [r for r in self.hierarchy.roles_by_rank() if r in access]
        checks = 0
        violations = []

        for i, a in enumerate(ranked):
            for b in ranked[i + 1:]:
                pair = self.hierarchy.order(a, b)
                if pair is None:
                    continue
                lower, higher = pair
                checks += 1
                excess = sorted(set(access[lower]) - set(access[higher]))
                if excess:
                    violations.append(HierarchyViolation(lower, higher, tuple(excess)))

        score = 100.0
        if checks:
            score = round(max(0.0, (checks - len(violations)) / checks * 100), 2)
        return HierarchyCompliance(
            expected={role: tuple(sorted(self.expected_access.get(role, ()))) for role in access},
            actual=dict(access),
            checks=checks,
            violations=tuple(violations),
            compliance_score=score,
        )

    def access_patterns(self, access: Dict[str, Tuple[str, ...]]) -> List[AccessPattern]:
        reach = _reach(access)
        roles = set(access)
        admins = {r for r in roles if self.is_admin(r)}
        patterns = []

        admin_only = sorted(p for p, rs in reach.items() if admins and rs <= admins and roles - admins)
        if admin_only:
            holders = sorted(set().union(*(reach[p] for p in admin_only)))
            patterns.append(AccessPattern(
                pattern="Admin-Only Access",
                roles_with_access=tuple(holders),
                paths=tuple(admin_only),
                frequency=len(admin_only),
                risk_level=Severity.LOW,
                description="Paths reachable by administrative roles only",
            ))

        universal = sorted(p for p, rs in reach.items() if len(roles) > 1 and rs == roles)
        if universal:
            patterns.append(AccessPattern(
                pattern="Universal Access",
                roles_with_access=tuple(sorted(roles)),
                paths=tuple(universal),
                frequency=len(universal),
                risk_level=Severity.MEDIUM,
                description="Paths every role can reach",
            ))

        escalated = [(role, path) for role in sorted(access) if not self.is_admin(role)
                     for path in access[role] if is_admin_path(path) and self.expects(role, path) is not True]
        if escalated:
            patterns.append(AccessPattern(
                pattern="Potential Privilege Escalation",
                roles_with_access=tuple(sorted({r for r, _ in escalated})),
                paths=tuple(sorted({p for _, p in escalated})),
                frequency=len(escalated),
                risk_level=Severity.HIGH,
                description="Non-administrative roles reaching administrative paths",
            ))
        return patterns

    def permission_gaps(self, discoveries: Dict[str, PathDiscovery]) -> List[PermissionGap]:
        gaps = []
        for role, discovery in discoveries.items():
            if not self.is_admin(role):
                continue
            if role in self.expected_access:
                wanted = sorted(p for p in self.expected_access[role] if is_admin_path(p))
            else:
                wanted = list(ADMIN_PATHS)

            for path in wanted:
                result = discovery.result_for(path)
                if result is not None and result.accessible:
                    continue
                if result is None:
                    actual = "missing"
                elif result.error:
                    actual = "error"
                else:
                    actual = "forbidden"
                gaps.append(PermissionGap(role, path, actual, Severity.HIGH,
                                          f"Ensure {role} has access to {path}"))
        return gaps

    def security_risks(self, access: Dict[str, Tuple[str, ...]]) -> List[SecurityRisk]:
        risks = []
        for role, paths in access.items():
            for path in paths:
                if not self.unauthorized(role, path):
                    continue
                risks.append(SecurityRisk(
                    type="unauthorized_access",
                    severity=Severity.CRITICAL,
                    affected_roles=(role,),
                    paths=(path,),
                    description=f"{role} can reach {path}",
                    mitigation=f"Deny {role} on {path} with a server-side route guard",
                ))

        roles = list(access)
        pairs = []
        for i, a in enumerate(roles):
            for b in roles[i + 1:]:
                overlap = _overlap(set(access[a]), set(access[b]))
                if overlap is not None and overlap > WEAK_BOUNDARY_OVERLAP:
                    pairs.append((a, b, overlap))
        if pairs:
            risks.append(SecurityRisk(
                type="weak_boundaries",
                severity=Severity.MEDIUM,
                affected_roles=tuple(sorted({r for a, b, _ in pairs for r in (a, b)})),
                paths=(),
                description="Roles with near-identical access: "
                            + ", ".join(f"{a}/{b} {o}%" for a, b, o in pairs),
                mitigation="Narrow the access of the lower role or merge the roles",
            ))
        return risks

    # ─────────────────────────────────────────────────────────────
    # ROLE COMPARISON
    # ─────────────────────────────────────────────────────────────

    def compare_roles(self, access: Dict[str, Tuple[str, ...]]) -> RoleComparison:
        roles = list(access)
        reach = _reach(access)
        everyone = set(roles)

        unique = {role: tuple(p for p in access[role] if reach[p] == {role}) for role in roles}
        common = tuple(sorted(p for p, rs in reach.items() if rs == everyone))

        ordered = [r for r in self.hierarchy.roles_by_rank() if r in access]
        ordered += [r for r in roles if r not in self.hierarchy]
        hierarchical = {role: access[role] for role in ordered}

        exceptions = []
        for role in roles:
            granted = set(access[role])
            for path in sorted(granted | self.expected_access.get(role, frozenset())):
                actual = path in granted
                expected = self.expects(role, path)
                if expected is None:
                    if actual and self.unauthorized(role, path):
                        exceptions.append(SecurityException("unexpected_access", role, path,
                                                            False, True, Severity.HIGH))
                elif expected != actual:
                    kind = "unexpected_access" if actual else "missing_access"
                    risk = Severity.HIGH if actual else Severity.MEDIUM
                    exceptions.append(SecurityException(kind, role, path, expected, actual, risk))

        pair_overlap = {}
        for i, a in enumerate(roles):
            for b in roles[i + 1:]:
                overlap = _overlap(set(access[a]), set(access[b]))
                if overlap is not None:
                    pair_overlap[f"{a}|{b}"] = overlap

        shared = sum(1 for rs in reach.values() if len(rs) > 1)
        return RoleComparison(
            unique_access=unique,
            common_access=common,
            hierarchical_access=hierarchical,
            security_exceptions=tuple(exceptions),
            overlap_percentage=_percent(shared, len(reach)),
            pair_overlap=pair_overlap,
        )

    # ─────────────────────────────────────────────────────────────
    # FINDINGS
    # ─────────────────────────────────────────────────────────────

    def vulnerabilities(self, risks: Sequence[SecurityRisk],
                        security_tests: Sequence[SecurityTestResult]) -> List[Vulnerability]:
        found = []
        for risk in risks:
            if risk.type != "unauthorized_access":
                continue
            role, path = risk.affected_roles[0], risk.paths[0]
            found.append(Vulnerability(
                vuln_id=f"crawl-unauthorized_access-{role}-{path}",
                type="unauthorized_access",
                severity=risk.severity,
                description=f"{role} reached {path} without being granted it",
                affected_roles=(role,),
                affected_resources=(path,),
                remediation=risk.mitigation,
                source="crawl",
            ))

        seen = set()
        for test in security_tests:
            if not test.vulnerable or test.matched_rule is None:
                continue
            key = (test.role, test.url, test.matched_rule.category)
            if key in seen:
                continue
            seen.add(key)
            rule = test.matched_rule
            found.append(Vulnerability(
                vuln_id=f"fuzz-{test.test_id}",
                type=rule.category,
                severity=test.risk_level,
                description=f"{rule.name} on {test.url} via {', '.join(test.fields) or 'request'}",
                affected_roles=(test.role,),
                affected_resources=(test.url,),
                remediation=FUZZ_REMEDIATION.get(rule.category, "Validate and encode all user input"),
                source="fuzz",
            ))

        found.sort(key=lambda v: (-v.severity.weight, v.vuln_id))
        return found

    def actionable_insights(
        self,
        patterns: PermissionPatternAnalysis,
        vulnerabilities: Sequence[Vulnerability],
        performance: PerformanceAnalysis,
        rbac_results: Sequence[RBACTestResult],
    ) -> List[ActionableInsight]:
        insights = []

        for vuln in vulnerabilities:
            if vuln.type == "unauthorized_access":
                implementation = ("Review role-based route guards",
                                  "Implement server-side authorization checks",
                                  "Add integration tests for role boundaries")
                validation = ("Re-run the RBAC validation", "Verify access is denied for unauthorized roles")
            else:
                implementation = (vuln.remediation,)
                validation = (f"Re-run the {vuln.type} payload set against the affected pages",)
            insights.append(ActionableInsight(
                category="security",
                title=f"Fix {vuln.type.replace('_', ' ')} on {', '.join(vuln.affected_resources)}",
                description=vuln.description,
                priority=vuln.severity,
                impact=impact_for(vuln.severity),
                effort=effort_for(len(vuln.affected_roles), len(vuln.affected_resources)),
                affected_roles=vuln.affected_roles,
                affected_paths=vuln.affected_resources,
                implementation=implementation,
                validation=validation,
            ))

        for risk in patterns.security_risks:
            if risk.type == "unauthorized_access":
                continue
            insights.append(ActionableInsight(
                category="architecture",
                title=f"Review {risk.type.replace('_', ' ')}",
                description=risk.description,
                priority=risk.severity,
                impact=impact_for(risk.severity),
                effort=effort_for(len(risk.affected_roles), len(risk.paths)),
                affected_roles=risk.affected_roles,
                affected_paths=risk.paths,
                implementation=(risk.mitigation,),
            ))

        for gap in patterns.permission_gaps:
            insights.append(ActionableInsight(
                category="compliance",
                title=f"Restore {gap.expected_path} for {gap.role}",
                description=f"{gap.role} is expected to reach {gap.expected_path} ({gap.actual_result})",
                priority=gap.severity,
                impact="medium",
                effort="low",
                affected_roles=(gap.role,),
                affected_paths=(gap.expected_path,),
                implementation=(gap.recommendation,),
            ))

        for violation in patterns.hierarchy.violations:
            insights.append(ActionableInsight(
                category="compliance",
                title=f"Align {violation.lower_role} below {violation.higher_role}",
                description=f"{violation.lower_role} reaches {len(violation.affected_paths)} path(s) "
                            f"that {violation.higher_role} cannot",
                priority=violation.severity,
                impact="medium",
                effort=effort_for(2, len(violation.affected_paths)),
                affected_roles=(violation.lower_role, violation.higher_role),
                affected_paths=violation.affected_paths,
                implementation=("Grant the higher role the same paths or revoke them from the lower role",),
            ))

        failed_by_type: Dict[str, List[RBACTestResult]] = {}
        for result in rbac_results:
            if not result.passed:
                failed_by_type.setdefault(result.test_type.value, []).append(result)
        for test_type in sorted(failed_by_type):
            failed = failed_by_type[test_type]
            priority = max((r.risk_level for r in failed), key=lambda s: s.weight)
            roles = sorted({r.role for r in failed})
            resources = sorted({r.resource for r in failed})
            insights.append(ActionableInsight(
                category="security",
                title=f"Address {len(failed)} failed {test_type} test(s)",
                description=f"{test_type} tests did not match the declared policy for {', '.join(roles)}",
                priority=priority,
                impact=impact_for(priority),
                effort=effort_for(len(roles), len(resources)),
                affected_roles=tuple(roles),
                affected_paths=tuple(resources),
                validation=("Re-run the RBAC validation",),
            ))

        if performance.slow_paths:
            roles = sorted({t.role for t in performance.slow_paths})
            paths = sorted({t.path for t in performance.slow_paths})
            insights.append(ActionableInsight(
                category="performance",
                title="Optimize Slow Loading Paths",
                description=f"{len(paths)} path(s) take longer than {SLOW_PATH_MS} ms to load",
                priority=Severity.MEDIUM,
                impact="medium",
                effort=effort_for(len(roles), len(paths)),
                affected_roles=tuple(roles),
                affected_paths=tuple(paths),
                implementation=("Profile the slow pages", "Cache or paginate heavy queries"),
                validation=(f"Re-crawl and confirm load times under {SLOW_PATH_MS} ms",),
            ))

        insights.sort(key=lambda i: (-i.score, i.title))
        return insights

    # ─────────────────────────────────────────────────────────────
    # SUMMARY
    # ─────────────────────────────────────────────────────────────

    def executive_summary(
        self,
        patterns: PermissionPatternAnalysis,
        comparison: RoleComparison,
        performance: PerformanceAnalysis,
        vulnerabilities: Sequence[Vulnerability],
        insights: Sequence[ActionableInsight],
        rbac_results: Sequence[RBACTestResult],
    ) -> ExecutiveSummary:
        compliance = patterns.hierarchy.compliance_score
        risks = patterns.security_risks
        breaches = [r for r in rbac_results if r.is_violation]
        severities = [r.severity for r in risks] + [v.severity for v in vulnerabilities if v.source != "crawl"]
        severities += [r.risk_level for r in breaches]
        critical = sum(1 for v in vulnerabilities if v.severity is Severity.CRITICAL)
        high = sum(1 for v in vulnerabilities if v.severity is Severity.HIGH)

        findings = [
            f"Hierarchy compliance {compliance}% ({len(patterns.hierarchy.violations)} violation(s) "
            f"in {patterns.hierarchy.checks} check(s))",
            f"{len(vulnerabilities)} vulnerabilit{'y' if len(vulnerabilities) == 1 else 'ies'} "
            f"({critical} critical, {high} high)",
            f"Average response time {performance.overall_average_ms} ms (grade {performance.performance_grade})",
        ]
        if patterns.permission_gaps:
            findings.append(f"{len(patterns.permission_gaps)} expected admin path(s) unreachable")
        if comparison.overlap_percentage > 50:
            findings.append(f"{comparison.overlap_percentage}% of reachable paths are shared between roles")

        rbac_compliance = None
        if rbac_results:
            rbac_compliance = pass_rate(rbac_results)
            findings.append(f"RBAC tests: {rbac_compliance}% passed")
        if breaches:
            findings.append(f"{len(breaches)} RBAC test(s) granted access that should be refused")

        return ExecutiveSummary(
            security_posture=security_posture(severities, compliance),
            overall_score=overall_score(compliance, performance.performance_score,
                                        len(risks) + len(breaches)),
            hierarchy_compliance=compliance,
            performance_score=performance.performance_score,
            compliance_grade=compliance_grade(compliance),
            compliance_status=compliance_status(compliance),
            key_findings=tuple(findings),
            top_risks=tuple(v.description for v in vulnerabilities
                            if v.severity.weight >= Severity.HIGH.weight)[:3],
            quick_wins=tuple(i.title for i in insights
                             if i.priority.weight >= Severity.HIGH.weight and i.effort == "low")[:3],
            rbac_compliance=rbac_compliance,
        )


# ═══════════════════════════════════════════════════════════════
# PERFORMANCE
# ═══════════════════════════════════════════════════════════════

def analyze_performance(discoveries: Dict[str, PathDiscovery]) -> PerformanceAnalysis:
    timings = []
    averages = {}
    grades = {}

    for role, discovery in discoveries.items():
        timed = [PathTiming(r.path, role, r.response_time_ms) for r in discovery.results if r.response_time_ms > 0]
        timings.extend(timed)
        avg = sum(t.response_time_ms for t in timed) / len(timed) if timed else 0
        averages[role] = round(avg)
        grades[role] = crawl_performance_grade(avg, discovery.coverage.error_rate)

    overall = round(sum(t.response_time_ms for t in timings) / len(timings)) if timings else 0
    score = performance_score(overall)
    slowest = sorted(timings, key=lambda t: (-t.response_time_ms, t.role, t.path))

    return PerformanceAnalysis(
        average_by_role=averages,
        grades=grades,
        slowest_paths=tuple(slowest[:TOP_PATHS]),
        fastest_paths=tuple(sorted(timings, key=lambda t: (t.response_time_ms, t.role, t.path))[:TOP_PATHS]),
        error_patterns=tuple(error_patterns(discoveries)),
        overall_average_ms=overall,
        performance_score=score,
        performance_grade=score_grade(score),
        slow_paths=tuple(t for t in slowest if t.response_time_ms > SLOW_PATH_MS),
    )


def error_patterns(discoveries: Dict[str, PathDiscovery]) -> List[ErrorPattern]:
    buckets: Dict[str, List[Tuple[str, str]]] = {}
    for role, discovery in discoveries.items():
        for result in discovery.results:
            if result.error:
                buckets.setdefault(error_bucket(result.error), []).append((role, result.path))

    patterns = [
        ErrorPattern(
            error_type=name,
            frequency=len(hits),
            affected_roles=tuple(sorted({r for r, _ in hits})),
            affected_paths=tuple(sorted({p for _, p in hits})),
            commonality=_percent(len({r for r, _ in hits}), len(discoveries)),
        )
        for name, hits in buckets.items()
    ]
    patterns.sort(key=lambda p: (-p.frequency, p.error_type))
    return patterns


def _reach(access: Dict[str, Tuple[str, ...]]) -> Dict[str, Set[str]]:
    """path → roles that reached it"""
    reach: Dict[str, Set[str]] = {}
    for role, paths in access.items():
        for path in paths:
            reach.setdefault(path, set()).add(role)
    return reach
