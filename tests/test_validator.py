import asyncio
import base64
import json

import pytest

from conftest import BASE_URL, FakeDriver, Route, ledgers, make_profile, secure_app
from roleprobe import defaults
from roleprobe.driver.pool import RoleSessionPool
from roleprobe.events import EventLedger
from roleprobe.models import Outcome, Severity
from roleprobe.policy import EscalationPath, PermissionLevel, PermissionRule, RoleHierarchy
from roleprobe.validator import (
    AttemptContext,
    BypassTechnique,
    Observation,
    RBACTestResult,
    RBACValidator,
    TechniqueRegistry,
    decide,
)
from roleprobe.validator import base, techniques
from roleprobe.validator.boundary import BoundaryTest
from roleprobe.validator.escalation import EscalationTest
from roleprobe.validator.isolation import IsolationTest
from roleprobe.validator.permission import ACTION_CONTROLS, PermissionTest
from roleprobe.validator.techniques import CookieTampering, forge_unsigned_jwt


def run_family(family_cls, driver, profile, **kwargs):
    console, network = ledgers()

    async def scenario():
        async with RoleSessionPool(driver, profile.roles, profile.settings, console, network) as pool:
            return await family_cls(pool, profile, console, network, **kwargs).run()

    return asyncio.run(scenario())


def escalation_profile(settings, path):
    hierarchy = RoleHierarchy(defaults.ROLE_DEFINITIONS, [path], defaults.ISOLATION_BOUNDARIES)
    return make_profile(settings, hierarchy=hierarchy)


WMS_TO_TENANT = EscalationPath(
    from_role="wms_user",
    to_role="tenant_admin",
    methods=["privilege_escalation_api", "permission_bypass", "admin_impersonation"],
    vulnerability_type="vertical",
    risk_level=Severity.HIGH,
    detection_signatures=["admin_function_access"],
)


# ═══════════════════════════════════════════════════════════════
# DECISION
# ═══════════════════════════════════════════════════════════════

class TestDecide:

    def test_privileged_marker_overrides_error_status(self):
        obs = Observation(url="/admin", status=500, privileged_markers=('[data-testid="user-management"]',))
        assert decide(obs) is Outcome.ALLOW

    def test_denial_text_overrides_success_status(self):
        assert decide(Observation(url="/admin", status=200, body="<h1>Access Denied</h1>")) is Outcome.DENY

    def test_transport_failure_is_an_error(self):
        assert decide(Observation(url="/admin", transport_error="timed out")) is Outcome.ERROR

    def test_status_and_final_url(self):
        assert decide(Observation(url="/a", status=200, final_url=f"{BASE_URL}/a")) is Outcome.ALLOW
        assert decide(Observation(url="/a", status=200, final_url=f"{BASE_URL}/login")) is Outcome.DENY
        assert decide(Observation(url="/a", status=404, final_url=f"{BASE_URL}/a")) is Outcome.DENY
        assert decide(Observation(url="/a", status=502, final_url=f"{BASE_URL}/a")) is Outcome.ERROR

    def test_reachable_page_without_sought_capabilities_is_denied(self):
        looked_for = ('[data-testid="user-management"]',)
        bare = Observation(url="/a", status=200, final_url=f"{BASE_URL}/a", capabilities=looked_for)
        rendered = Observation(url="/a", status=200, final_url=f"{BASE_URL}/a", capabilities=looked_for,
                               privileged_markers=looked_for)
        assert decide(bare) is Outcome.DENY
        assert decide(rendered) is Outcome.ALLOW


class TestRBACTestResult:

    def test_passed_is_derived(self):
        result = RBACTestResult("permission:read:/x:a", base.TestType.PERMISSION, "a", "/x", "read",
                                Outcome.DENY, Outcome.ALLOW, Severity.HIGH)
        assert not result.passed
        assert result.is_violation

    def test_expected_error_is_rejected(self):
        with pytest.raises(ValueError):
            RBACTestResult("t", "permission", "a", "/x", "read", "error", "deny", "low")

    def test_round_trip_through_dict(self):
        result = RBACTestResult("boundary:data:cross_tenant_read:a", "boundary", "a", "/api/x", "cross_tenant_read",
                                "deny", "deny", "low", base.RBACEvidence(status_code=403, notes=("n",)))
        assert RBACTestResult.from_dict(result.to_dict()) == result


# ═══════════════════════════════════════════════════════════════
# PERMISSION MATRIX
# ═══════════════════════════════════════════════════════════════

class TestPermissionMatrix:

    def test_leaked_read_is_a_violation(self, profile):
        rule = PermissionRule("/admin/users", "read", {"super_admin", "tenant_admin"},
                              {"wms_user", "accounting_user", "readonly_user"}, PermissionLevel.READ)
        profile = make_profile(profile.settings, permission_rules=[rule])
        driver = FakeDriver(
            {"/admin/users": Route(status=403, body="Forbidden")},
            {role: {"/admin/users": Route()} for role in ("super_admin", "tenant_admin", "readonly_user")},
        )

        sections = run_family(PermissionTest, driver, profile)
        section = sections[0]

        assert [r.role for r in section.violations] == ["readonly_user"]
        assert section.overall_compliance == round(5 / 6 * 100, 1)
        assert section.results[0].test_id == "permission:read:/admin/users:super_admin"

    def test_violation_becomes_a_vulnerability(self, profile):
        rule = PermissionRule("/admin/users", "read", {"super_admin"}, {"readonly_user"})
        profile = make_profile(profile.settings, permission_rules=[rule])
        driver = FakeDriver({"/admin/users": Route()})

        console, network = ledgers()

        async def scenario():
            async with RoleSessionPool(driver, profile.roles, profile.settings, console, network) as pool:
                test = PermissionTest(pool, profile, console, network)
                return test.vulnerabilities(await test.run())

        vulns = asyncio.run(scenario())
        assert {v.affected_roles[0] for v in vulns} == {
            "tenant_admin", "module_admin", "wms_user", "accounting_user", "readonly_user",
        }
        assert all(v.type == "unauthorized_access" and v.severity is Severity.MEDIUM for v in vulns)

    def test_admin_rule_needs_visible_controls(self, profile):
        rule = PermissionRule("/admin/roles", "write", {"super_admin"}, set(), PermissionLevel.ADMIN)
        profile = make_profile(profile.settings, permission_rules=[rule])
        controls = ACTION_CONTROLS[PermissionLevel.ADMIN]
        driver = FakeDriver(
            {"/admin/roles": Route()},
            {"super_admin": {"/admin/roles": Route(visible=(controls,))}},
        )

        results = {r.role: r for r in run_family(PermissionTest, driver, profile)[0].results}
        assert results["super_admin"].actual is Outcome.ALLOW
        assert results["wms_user"].actual is Outcome.DENY
        assert "no admin controls on page" in results["wms_user"].evidence.notes

    def test_api_rule_uses_the_level_method(self, profile):
        rule = PermissionRule("/api/sensitive-data", "delete", {"super_admin"}, set(), PermissionLevel.DELETE)
        profile = make_profile(profile.settings, permission_rules=[rule])
        driver = FakeDriver({"/api/sensitive-data": Route(status=403, body='{"error": "forbidden"}')})

        run_family(PermissionTest, driver, profile)
        assert {method for _, method, _, _ in driver.requests} == {"DELETE"}

    def test_navigation_failure_is_recorded_as_error(self, profile):
        rule = PermissionRule("/admin/users", "read", {"super_admin"}, set())
        profile = make_profile(profile.settings, permission_rules=[rule])
        driver = FakeDriver({"/admin/users": Route(error="net::ERR_CONNECTION_REFUSED")})

        section = run_family(PermissionTest, driver, profile)[0]
        assert all(r.actual is Outcome.ERROR for r in section.results)
        assert not any(r.passed for r in section.results)
        assert section.overall_compliance == 0.0


# ═══════════════════════════════════════════════════════════════
# ESCALATION
# ═══════════════════════════════════════════════════════════════

class TestEscalation:

    def test_all_methods_denied_means_blocked(self, settings):
        profile = escalation_profile(settings, WMS_TO_TENANT)
        sections = run_family(EscalationTest, secure_app(profile), profile)

        section = sections[0]
        assert section.blocked
        assert not section.vulnerability_detected
        assert section.risk_assessment is Severity.LOW
        assert len(section.results) == 3 * 3
        assert {r.resource for r in section.results} == {"/admin/audit", "/admin/currencies", "/admin/data-scopes"}

    def test_tampered_query_escalates(self, settings):
        profile = escalation_profile(settings, WMS_TO_TENANT)
        tampered = "/admin/audit?role=tenant_admin&isAdmin=true&admin=1"
        driver = secure_app(profile, **{tampered: Route(visible=('[data-testid="audit-logs"]',))})
        console, network = ledgers()

        async def scenario():
            async with RoleSessionPool(driver, profile.roles, profile.settings, console, network) as pool:
                test = EscalationTest(pool, profile, console, network)
                sections = await test.run()
                return sections, test.vulnerabilities(sections)

        sections, vulns = asyncio.run(scenario())
        section = sections[0]
        assert section.vulnerability_detected
        assert section.risk_assessment is Severity.CRITICAL
        assert [(v.type, v.affected_resources) for v in vulns] == [("privilege_escalation", ("/admin/audit",))]
        assert vulns[0].severity is Severity.CRITICAL
        assert driver.screenshots

    def test_generic_page_without_target_capabilities_is_not_an_escalation(self, settings):
        profile = escalation_profile(settings, WMS_TO_TENANT)
        shell = Route(visible=('[data-testid="wms-dashboard"]',))
        driver = secure_app(profile, **{path: shell for path in ("/admin/audit", "/admin/currencies",
                                                                 "/admin/data-scopes")})
        section = run_family(EscalationTest, driver, profile)[0]

        assert section.blocked
        assert {r.actual for r in section.results} == {Outcome.DENY}
        assert len(section.results) == 9
        assert all("no target capability observed" in r.evidence.notes for r in section.results)
        assert not driver.screenshots

    def test_unknown_method_falls_back_to_forced_browsing(self, settings):
        path = EscalationPath("readonly_user", "wms_user", ["quantum_tunnelling"], risk_level=Severity.MEDIUM)
        profile = escalation_profile(settings, path)
        section = run_family(EscalationTest, secure_app(profile), profile)[0]

        assert section.blocked
        assert "technique: forced_browsing" in section.results[0].evidence.notes

    def test_custom_technique(self, settings):
        class AlwaysAllowed(BypassTechnique):
            name = "always_allowed"

            async def attempt(self, ctx):
                return Observation(url=ctx.target_url, status=200, final_url=ctx.target_url)

        path = EscalationPath("readonly_user", "wms_user", ["oracle"], risk_level=Severity.MEDIUM)
        profile = escalation_profile(settings, path)
        registry = TechniqueRegistry({"oracle": AlwaysAllowed()})
        section = run_family(EscalationTest, secure_app(profile), profile, registry=registry)[0]

        assert not section.blocked
        assert all(r.actual is Outcome.ALLOW for r in section.results)


# ═══════════════════════════════════════════════════════════════
# ISOLATION & BOUNDARY
# ═══════════════════════════════════════════════════════════════

class TestIsolation:

    def test_intact_boundaries(self, profile):
        sections = run_family(IsolationTest, secure_app(profile), profile)

        assert [s.boundary.boundary_type.value for s in sections] == ["tenant", "role"]
        for section in sections:
            assert section.isolation_intact
            assert section.breach_attempts > 0
            assert section.risk_level is Severity.LOW

    def test_tenant_results_carry_the_tenant(self, profile):
        sections = run_family(IsolationTest, secure_app(profile), profile)
        assert all(r.tenant for r in sections[0].results)
        assert all(r.tenant is None for r in sections[1].results)


class TestBoundary:

    def test_secure_app_holds_every_boundary(self, profile):
        sections = {s.category: s for s in run_family(BoundaryTest, secure_app(profile), profile)}

        assert set(sections) == {"authentication", "authorization", "session", "data"}
        for section in sections.values():
            assert section.boundary_integrity_score == 100.0, section.weaknesses

    def test_global_roles_skip_the_data_check(self, profile):
        sections = {s.category: s for s in run_family(BoundaryTest, secure_app(profile), profile)}
        assert "super_admin" not in {r.role for r in sections["data"].results}

    def test_unprotected_page_breaks_authentication(self, profile):
        driver = secure_app(profile, **{"/admin/modules": Route()})
        sections = {s.category: s for s in run_family(BoundaryTest, driver, profile)}

        failed = [r for r in sections["authentication"].results if not r.passed]
        assert [r.role for r in failed] == ["module_admin", "wms_user"]
        assert failed[0].risk_level is Severity.CRITICAL

    def test_rendered_hidden_element_is_an_authorization_failure(self, profile):
        leak = '[data-testid="user-management"]'
        driver = secure_app(profile)
        driver.role_routes["readonly_user"]["/admin"] = Route(requires_cookie=True, visible=(leak,))
        sections = {s.category: s for s in run_family(BoundaryTest, driver, profile)}

        failed = [r for r in sections["authorization"].results if not r.passed]
        assert [(r.role, r.action) for r in failed] == [("readonly_user", "hidden_elements")]

    def test_cookies_are_restored_after_the_session_check(self, profile):
        driver = secure_app(profile)
        run_family(BoundaryTest, driver, profile)
        restored = [cookies for role, cookies in driver.cookie_writes if role == "wms_user"]
        assert restored and restored[0][0]["value"] == "wms_user-token"


# ═══════════════════════════════════════════════════════════════
# TECHNIQUES
# ═══════════════════════════════════════════════════════════════

def _segment(data) -> str:
    return base64.urlsafe_b64encode(json.dumps(data).encode()).rstrip(b"=").decode()


class TestTechniques:

    def test_cookie_technique_requires_a_forge(self):
        class Incomplete(techniques._CookieTechnique):
            name = "incomplete"

        with pytest.raises(TypeError):
            Incomplete()

    def test_registry_fallback(self):
        registry = TechniqueRegistry()
        assert registry.resolve("no_such_method").name == "forced_browsing"
        assert registry.resolve("token_manipulation").name == "jwt_manipulation"
        assert "cookie_tampering" in registry.names()

    def test_forge_unsigned_jwt(self):
        token = f"{_segment({'alg': 'HS256', 'typ': 'JWT'})}.{_segment({'sub': '7', 'role': 'wms_user'})}.sig"
        forged = forge_unsigned_jwt(token, "tenant_admin")

        header, payload, signature = forged.split(".")
        pad = lambda s: s + "=" * (-len(s) % 4)
        assert json.loads(base64.urlsafe_b64decode(pad(header)))["alg"] == "none"
        claims = json.loads(base64.urlsafe_b64decode(pad(payload)))
        assert claims["role"] == "tenant_admin"
        assert claims["sub"] == "7"
        assert claims["isAdmin"] is True
        assert signature == ""

    def test_forge_ignores_non_jwt_values(self):
        assert forge_unsigned_jwt("s%3Aabc.def", "admin") is None
        assert forge_unsigned_jwt("eyJ.not-json.x", "admin") is None

    def test_cookie_tampering_restores_the_session(self):
        driver = FakeDriver({"/admin/users": Route(status=403, body="Forbidden")})

        async def scenario():
            session = await driver.open_session("wms_user")
            page = await session.new_page()
            original = await session.cookies()
            ctx = AttemptContext(page=page, session=session, role="wms_user",
                                 target_url=f"{BASE_URL}/admin/users", base_url=BASE_URL,
                                 timeout_ms=1000, target_role="tenant_admin")
            obs = await CookieTampering().attempt(ctx)
            return obs, original, await session.cookies()

        obs, original, after = asyncio.run(scenario())
        assert decide(obs) is Outcome.DENY
        assert after == original
        forged = driver.cookie_writes[0][1]
        assert {"name": "role", "value": "tenant_admin", "url": BASE_URL} in forged


# ═══════════════════════════════════════════════════════════════
# HUB
# ═══════════════════════════════════════════════════════════════

class TestRBACValidator:

    def test_full_run_feeds_the_results_ledger(self, profile):
        results = EventLedger()
        console, network = ledgers()
        driver = secure_app(profile)

        async def scenario():
            async with RoleSessionPool(driver, profile.roles, profile.settings, console, network) as pool:
                return await RBACValidator(pool, profile, console, network, results=results).run()

        report = asyncio.run(scenario())

        assert report.summary["total_tests"] == len(report.all_results) == len(results)
        assert set(report.category_scores) == {"permission", "escalation", "isolation", "boundary"}
        assert 0 <= report.compliance_score <= 100
        assert all(e.blocked for e in report.escalation)
        assert [v.severity.weight for v in report.vulnerabilities] == sorted(
            (v.severity.weight for v in report.vulnerabilities), reverse=True)
