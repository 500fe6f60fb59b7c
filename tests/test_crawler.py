import asyncio
from dataclasses import replace

import pytest

from conftest import BASE_URL, FakeDriver, Route, ledgers, make_profile, make_settings
from roleprobe.agents.crawler import RoleCrawler, api_pattern_matches, batch_roles, normalize_link
from roleprobe.config import Profile
from roleprobe.driver.pool import RoleSessionPool
from roleprobe.errors import SessionUnavailable
from roleprobe.models import Severity


def crawl(driver, profile, roles=None, progress=None):
    console, network = ledgers()

    async def scenario():
        async with RoleSessionPool(driver, profile.roles, profile.settings, console, network) as pool:
            crawler = RoleCrawler(pool, profile, console, network, progress=progress)
            if isinstance(roles, str):
                return await crawler.discover(roles)
            return await crawler.discover_all(roles)

    return asyncio.run(scenario())


def rooted(settings):
    """Default profile whose roles all start crawling at /"""
    base = Profile.default(settings)
    return make_profile(settings, roles=[replace(r, seed_paths=("/",)) for r in base.roles])


SITE = {
    "/": Route(links=("/admin", "/reports", "mailto:ops@app.test", "https://elsewhere.test/x",
                      "/logout", "/admin#top")),
    "/admin": Route(links=("/admin/users", "/")),
    "/reports": Route(),
    "/admin/users": Route(status=403, body="403 Forbidden"),
}


class TestLinkHelpers:

    def test_normalize_link(self):
        assert normalize_link("/admin#section", BASE_URL) == "/admin"
        assert normalize_link(f"{BASE_URL}/reports?page=2", BASE_URL) == "/reports?page=2"
        assert normalize_link("users", BASE_URL) == "/users"
        assert normalize_link("https://elsewhere.test/", BASE_URL) is None
        assert normalize_link("javascript:void(0)", BASE_URL) is None
        assert normalize_link("/logout", BASE_URL) is None
        assert normalize_link("/", BASE_URL) is None

    def test_api_pattern(self):
        assert api_pattern_matches("GET /api/admin/*", "get", "/api/admin/users")
        assert not api_pattern_matches("GET /api/admin/*", "POST", "/api/admin/users")
        assert api_pattern_matches("PUT /api/tenants/*/users/*", "PUT", "/api/tenants/t1/users/9")

    def test_batch_roles_puts_priority_first(self):
        roles = ["wms_user", "super_admin", "readonly_user", "tenant_admin"]
        assert batch_roles(roles, ["super_admin", "tenant_admin"], 2) == [
            ["super_admin", "tenant_admin"], ["wms_user", "readonly_user"],
        ]


class TestRoleCrawler:

    def test_breadth_first_discovery(self, settings):
        profile = rooted(settings)
        discovery = crawl(FakeDriver(SITE), profile, "wms_user")

        assert [r.path for r in discovery.results] == ["/", "/admin", "/reports", "/admin/users"]
        assert discovery.accessible_paths == ["/", "/admin", "/reports"]
        assert discovery.coverage.total == 4
        assert discovery.coverage.restricted == 1
        assert discovery.result_for("/admin/users").status_code == 403

    def test_unexpected_access_becomes_a_boundary(self, settings):
        discovery = crawl(FakeDriver(SITE), rooted(settings), "wms_user")

        boundaries = {b.path: b for b in discovery.permission_boundaries}
        assert set(boundaries) == {"/reports"}
        assert boundaries["/reports"].actual is True
        assert boundaries["/reports"].severity is Severity.HIGH

    def test_admin_path_for_non_admin_is_critical(self, settings):
        profile = rooted(settings)
        profile = replace(profile, expected_access=dict(profile.expected_access, readonly_user=["/"]))
        discovery = crawl(FakeDriver(SITE), profile, "readonly_user")

        boundaries = {b.path: b.severity for b in discovery.permission_boundaries}
        assert boundaries["/admin"] is Severity.CRITICAL

    def test_page_cap(self, tmp_path):
        settings = make_settings(str(tmp_path), max_pages=2)
        discovery = crawl(FakeDriver(SITE), rooted(settings), "wms_user")
        assert len(discovery.results) == 2

    def test_login_redirect_is_not_accessible(self, settings):
        driver = FakeDriver({"/": Route(links=("/settings",)), "/settings": Route(redirect="/login")})
        discovery = crawl(driver, rooted(settings), "wms_user")

        result = discovery.result_for("/settings")
        assert result.status_code == 200
        assert not result.accessible

    def test_retry_recovers_from_a_timeout(self, settings):
        driver = FakeDriver({"/": Route(failures=1)})
        discovery = crawl(driver, rooted(settings), "wms_user")

        result = discovery.result_for("/")
        assert result.accessible
        assert result.attempts == 2

    def test_exhausted_retries_become_an_error_result(self, settings):
        driver = FakeDriver({"/": Route(error="timeout")})
        discovery = crawl(driver, rooted(settings), "wms_user")

        result = discovery.result_for("/")
        assert not result.accessible
        assert "timed out" in result.error
        assert result.attempts == 2
        assert discovery.coverage.errors == 1

    def test_console_errors_and_denied_api_calls_are_reported(self, settings):
        driver = FakeDriver({"/": Route(
            console=(("error", "Uncaught ReferenceError: x is not defined"), ("log", "ready")),
            captures=({"url": f"{BASE_URL}/api/admin/users", "method": "GET", "status": 200},),
        )})
        discovery = crawl(driver, rooted(settings), "wms_user")

        kinds = [e["type"] for e in discovery.security_events]
        assert kinds.count("console_error") == 1
        assert kinds.count("api_access_violation") == 1

    def test_progress_callback(self, settings):
        seen = []
        crawl(FakeDriver(SITE), rooted(settings), "wms_user", progress=lambda role, r: seen.append(r.path))
        assert seen == ["/", "/admin", "/reports", "/admin/users"]


class TestDiscoverAll:

    def test_every_role_gets_a_discovery(self, settings):
        profile = rooted(settings)
        discoveries = crawl(FakeDriver(SITE), profile)

        assert set(discoveries) == set(profile.role_names)
        assert all(d.error is None for d in discoveries.values())

    def test_role_filter(self, settings):
        discoveries = crawl(FakeDriver(SITE), rooted(settings), ["readonly_user"])
        assert list(discoveries) == ["readonly_user"]

    def test_a_failing_role_does_not_stop_the_others(self, settings):
        class FlakyDriver(FakeDriver):
            async def open_session(self, role):
                if role == "accounting_user":
                    raise RuntimeError("browser crashed")
                return await super().open_session(role)

        discoveries = crawl(FlakyDriver(SITE), rooted(settings))
        assert "browser crashed" in discoveries["accounting_user"].error
        assert discoveries["accounting_user"].coverage.total == 0
        assert discoveries["wms_user"].error is None

    def test_session_failure_aborts_the_crawl(self, settings):
        login = Route(visible=('input[type="email"], input[name="email"]',), redirect="/login")
        driver = FakeDriver(dict(SITE, **{"/login": login}))
        with pytest.raises(SessionUnavailable):
            crawl(driver, rooted(settings))
