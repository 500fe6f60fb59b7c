import pytest

from roleprobe import defaults
from roleprobe.intelligence import IntelligenceEngine, analyze_performance, build_heatmap, build_matrix
from roleprobe.intelligence.engine import compliance_grade, overall_score, performance_score, security_posture
from roleprobe.intelligence.matrix import COLOR_SCALE, heat_color, heat_value
from roleprobe.models import PathDiscovery, PathResult, SecurityTestResult, Severity
from roleprobe.policy import RoleHierarchy
from roleprobe.validator import RBACTestResult

SQLI_RULE = next(v for v in defaults.VULNERABILITY_TYPES if v.category == "sqli")


def discovery(role, reached=(), denied=(), ms=400, errors=()):
    results = [PathResult(path, role, True, 200, response_time_ms=ms) for path in reached]
    results += [PathResult(path, role, False, 403, response_time_ms=ms) for path in denied]
    results += [PathResult(path, role, False, 0, error=error) for path, error in errors]
    return PathDiscovery.build(role, results)


@pytest.fixture
def hierarchy():
    return RoleHierarchy(defaults.ROLE_DEFINITIONS, defaults.ESCALATION_PATHS, defaults.ISOLATION_BOUNDARIES)


@pytest.fixture
def engine(hierarchy):
    return IntelligenceEngine(hierarchy, defaults.EXPECTED_ACCESS)


@pytest.fixture
def six_roles():
    return {
        "super_admin": discovery("super_admin", ["/", "/admin", "/admin/integrations"]),
        "tenant_admin": discovery("tenant_admin", ["/", "/admin"]),
        "module_admin": discovery("module_admin", ["/", "/admin"]),
        "wms_user": discovery("wms_user", ["/", "/admin"]),
        "accounting_user": discovery("accounting_user", ["/", "/admin"]),
        "readonly_user": discovery("readonly_user", ["/"], denied=["/admin"]),
    }


# ═══════════════════════════════════════════════════════════════
# FINDINGS
# ═══════════════════════════════════════════════════════════════

class TestUnauthorizedAccess:

    def test_unexpected_admin_path_is_one_critical_finding(self, hierarchy):
        engine = IntelligenceEngine(hierarchy, {
            "super_admin": ["/", "/admin"],
            "readonly_user": ["/"],
        })
        report = engine.analyze({
            "super_admin": discovery("super_admin", ["/", "/admin"]),
            "readonly_user": discovery("readonly_user", ["/", "/admin"]),
        })

        assert [(v.type, v.severity, v.affected_roles, v.affected_resources) for v in report.vulnerabilities] == [
            ("unauthorized_access", Severity.CRITICAL, ("readonly_user",), ("/admin",)),
        ]
        assert report.vulnerabilities[0].source == "crawl"
        assert report.executive_summary.security_posture == "critical"

    def test_undeclared_role_is_judged_by_admin_paths(self, hierarchy):
        engine = IntelligenceEngine(hierarchy, {})
        report = engine.analyze({
            "wms_user": discovery("wms_user", ["/", "/admin/users"]),
            "tenant_admin": discovery("tenant_admin", ["/", "/admin/users"]),
        })
        assert [(v.affected_roles[0], v.affected_resources[0]) for v in report.vulnerabilities] == [
            ("wms_user", "/admin/users"),
        ]

    def test_near_identical_roles_are_a_weak_boundary(self, engine, six_roles):
        risks = engine.analyze(six_roles).patterns.security_risks
        weak = [r for r in risks if r.type == "weak_boundaries"]

        assert len(weak) == 1
        assert weak[0].severity is Severity.MEDIUM
        assert "readonly_user" not in weak[0].affected_roles

    def test_fuzz_findings_are_deduplicated(self, engine, six_roles):
        tests = [
            SecurityTestResult(f"fuzz-{i}", "http://app.test/search", "wms_user", ("q",), payload, "sqli",
                               True, SQLI_RULE, Severity.CRITICAL)
            for i, payload in enumerate(["' OR '1'='1", "admin'--"])
        ]
        report = engine.analyze(six_roles, security_tests=tests)

        fuzz = [v for v in report.vulnerabilities if v.source == "fuzz"]
        assert len(fuzz) == 1
        assert fuzz[0].type == "sqli"
        assert report.executive_summary.security_posture == "critical"


class TestPermissionGaps:

    def test_admin_role_without_declarations_uses_the_admin_paths(self, hierarchy):
        engine = IntelligenceEngine(hierarchy, {})
        report = engine.analyze({
            "tenant_admin": discovery("tenant_admin", ["/admin"], denied=["/admin/users"]),
        })

        gaps = {g.expected_path: g.actual_result for g in report.patterns.permission_gaps}
        assert gaps == {"/admin/users": "forbidden", "/admin/settings": "missing", "/admin/roles": "missing"}
        assert any(i.category == "compliance" for i in report.actionable_insights)

    def test_non_admin_roles_have_no_gaps(self, engine):
        report = engine.analyze({"wms_user": discovery("wms_user", ["/"])})
        assert report.patterns.permission_gaps == ()


# ═══════════════════════════════════════════════════════════════
# HIERARCHY & COMPARISON
# ═══════════════════════════════════════════════════════════════

class TestHierarchyCompliance:

    def test_consistent_hierarchy_is_fully_compliant(self, engine, six_roles):
        compliance = engine.analyze(six_roles).patterns.hierarchy
        assert compliance.violations == ()
        assert compliance.compliance_score == 100.0
        assert compliance.checks > 0

    def test_lower_role_with_extra_access_lowers_compliance(self, engine, six_roles):
        before = engine.analyze(six_roles).patterns.hierarchy.compliance_score
        six_roles["wms_user"] = discovery("wms_user", ["/", "/admin", "/admin/audit"])
        after = engine.analyze(six_roles).patterns.hierarchy

        assert 0 <= after.compliance_score < before
        assert {(v.lower_role, v.higher_role) for v in after.violations} == {
            ("wms_user", "module_admin"), ("wms_user", "tenant_admin"), ("wms_user", "super_admin"),
        }

    def test_incomparable_roles_are_not_checked(self, engine):
        report = engine.analyze({
            "wms_user": discovery("wms_user", ["/", "/wms"]),
            "accounting_user": discovery("accounting_user", ["/", "/ledger"]),
        })
        assert report.patterns.hierarchy.checks == 0
        assert report.patterns.hierarchy.compliance_score == 100.0


class TestRoleComparison:

    def test_common_and_unique_access(self, engine, six_roles):
        comparison = engine.analyze(six_roles).comparison

        assert comparison.common_access == ("/",)
        assert comparison.unique_access["super_admin"] == ("/admin/integrations",)
        assert all("/" not in paths for paths in comparison.unique_access.values())
        assert list(comparison.hierarchical_access)[0] == "super_admin"

    def test_missing_expected_access_is_an_exception(self, engine, six_roles):
        exceptions = engine.analyze(six_roles).comparison.security_exceptions
        missing = [(e.role, e.path) for e in exceptions if e.type == "missing_access"]
        assert ("readonly_user", "/admin") in missing


# ═══════════════════════════════════════════════════════════════
# MATRIX & HEATMAP
# ═══════════════════════════════════════════════════════════════

class TestComparisonMatrix:

    def test_dimensions_follow_roles_and_probed_paths(self, engine, six_roles):
        matrix = build_matrix(six_roles, engine.expects)

        assert matrix.roles == tuple(six_roles)
        assert matrix.paths == ("/", "/admin", "/admin/integrations")
        assert all(len(row) == 3 for row in matrix.access_matrix)
        assert matrix.accessible("super_admin", "/admin/integrations")
        assert not matrix.accessible("readonly_user", "/admin")

    def test_anomalies(self, engine, six_roles):
        anomalies = build_matrix(six_roles, engine.expects).anomalies
        assert [(a.role, a.path, a.risk_level) for a in anomalies] == [
            ("readonly_user", "/admin", Severity.MEDIUM),
        ]


class TestHeatmap:

    def test_values(self):
        assert heat_value(None) == 0.0
        assert heat_value(PathResult("/a", "r", False, 403)) == 0.0
        assert heat_value(PathResult("/a", "r", True, 200)) == 50.0
        assert heat_value(PathResult("/a", "r", True, 200, response_time_ms=500)) == 90.0
        assert heat_value(PathResult("/a", "r", True, 200, response_time_ms=9000)) == 10.0

    def test_colors(self):
        assert heat_color(0) == COLOR_SCALE["min"]
        assert heat_color(50) == COLOR_SCALE["mid"]
        assert heat_color(90) == COLOR_SCALE["max"]

    def test_grid_matches_the_matrix(self, six_roles):
        heatmap = build_heatmap(six_roles)
        assert len(heatmap.cells) == 6
        assert heatmap.cells[-1][1].tooltip == "readonly_user on /admin: no access (403)"
        assert heatmap.cells[1][2].tooltip == "tenant_admin on /admin/integrations: not probed"
        assert heatmap.insights[0] == "12/18 role-path combinations are accessible"


# ═══════════════════════════════════════════════════════════════
# PERFORMANCE
# ═══════════════════════════════════════════════════════════════

class TestPerformance:

    def test_slow_paths_and_error_patterns(self):
        discoveries = {
            "wms_user": discovery("wms_user", ["/"], ms=2500,
                                  errors=[("/reports", "Navigation to /reports timed out after 1000ms")]),
            "readonly_user": discovery("readonly_user", ["/"], ms=300),
        }
        performance = analyze_performance(discoveries)

        assert performance.overall_average_ms == 1400
        assert performance.performance_score == 80
        assert [t.role for t in performance.slow_paths] == ["wms_user"]
        assert performance.slowest_paths[0].response_time_ms == 2500
        assert [(p.error_type, p.commonality) for p in performance.error_patterns] == [("Timeout", 50.0)]

    def test_slow_paths_become_an_insight(self, engine):
        report = engine.analyze({"wms_user": discovery("wms_user", ["/"], ms=2500)})
        assert "Optimize Slow Loading Paths" in [i.title for i in report.actionable_insights]


# ═══════════════════════════════════════════════════════════════
# SUMMARY & SCORES
# ═══════════════════════════════════════════════════════════════

class TestScores:

    def test_compliance_grade(self):
        assert compliance_grade(100) == "A+"
        assert compliance_grade(94.9) == "A"
        assert compliance_grade(72) == "C"
        assert compliance_grade(59.9) == "F"

    def test_overall_score_is_clamped(self):
        assert overall_score(100, 100, 0) == 100
        assert overall_score(90, 80, 2) == 75
        assert overall_score(50, 20, 10) == 0

    def test_performance_score(self):
        assert performance_score(999) == 100
        assert performance_score(1500) == 80
        assert performance_score(6000) == 20

    def test_security_posture(self):
        assert security_posture([], 95) == "excellent"
        assert security_posture([Severity.HIGH], 95) == "good"
        assert security_posture([], 85) == "good"
        assert security_posture([Severity.HIGH] * 3, 95) == "needs_improvement"
        assert security_posture([], 65) == "needs_improvement"
        assert security_posture([Severity.LOW, Severity.CRITICAL], 100) == "critical"


class TestIntelligenceReport:

    def test_same_records_give_the_same_report(self, engine, six_roles):
        first = engine.analyze(six_roles, generated_at=1700000000.0)
        second = engine.analyze(six_roles, generated_at=1700000000.0)
        assert first == second
        assert first.to_dict() == second.to_dict()

    def test_insights_are_ranked(self, engine, six_roles):
        six_roles["readonly_user"] = discovery("readonly_user", ["/", "/admin", "/admin/users"])
        insights = engine.analyze(six_roles).actionable_insights
        assert [i.score for i in insights] == sorted((i.score for i in insights), reverse=True)
        assert insights[0].priority is Severity.CRITICAL

    def test_rbac_results_feed_the_summary(self, engine, six_roles):
        rbac = [
            RBACTestResult("permission:read:/admin/users:wms_user", "permission", "wms_user", "/admin/users",
                           "read", "deny", "allow", "medium"),
            RBACTestResult("permission:read:/admin/users:super_admin", "permission", "super_admin",
                           "/admin/users", "read", "allow", "allow", "low"),
        ]
        report = engine.analyze(six_roles, rbac_results=rbac)

        assert report.executive_summary.rbac_compliance == 50.0
        assert "Address 1 failed permission test(s)" in [i.title for i in report.actionable_insights]

    def test_rbac_breach_drives_the_posture(self, engine, six_roles):
        clean = engine.analyze(six_roles).executive_summary
        breach = RBACTestResult("escalation:wms_to_tenant:header_injection:/admin/audit", "escalation",
                                "wms_user", "/admin/audit", "header_injection", "deny", "allow", "critical")
        summary = engine.analyze(six_roles, rbac_results=[breach]).executive_summary

        assert clean.security_posture != "critical"
        assert summary.security_posture == "critical"
        assert summary.overall_score < clean.overall_score
        assert "1 RBAC test(s) granted access that should be refused" in summary.key_findings

    def test_summary_fields_are_bounded(self, engine, six_roles):
        summary = engine.analyze(six_roles).executive_summary
        assert 0 <= summary.overall_score <= 100
        assert summary.compliance_grade == "A+"
        assert summary.compliance_status == "compliant"
        assert summary.rbac_compliance is None
