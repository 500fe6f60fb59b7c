import asyncio

import httpx
import pytest

from conftest import BASE_URL, FakeDriver, Route, ledgers, make_profile
from roleprobe.agents.fuzzer import PayloadFuzzer, endpoint_risk, extract_api_endpoints, form_security_score
from roleprobe.detection.classifier import SignalClassifier
from roleprobe.driver.pool import RoleSessionPool
from roleprobe.errors import DetectionAmbiguous
from roleprobe.events import ConsoleEvent, NetworkCapture
from roleprobe.models import PayloadSet, Severity
from roleprobe import defaults

SQLI = PayloadSet("SQL Injection", "sqli", ["' OR '1'='1", "admin'--"], severity=Severity.CRITICAL)
XSS = PayloadSet("XSS Basic", "xss", ['<script>alert("XSS")</script>'], severity=Severity.HIGH)

FIELDS = 'input, textarea, select'
SUBMIT = '[type="submit"]'
QUERY = '[name="q"]'
FORM = "<html><body><form><input name='q'><button type='submit'>Search</button></form></body></html>"


def search_page(on_submit, body=FORM, captures=()):
    return Route(
        body=body,
        elements={FIELDS: [
            {"tag": "input", "type": "text", "name": "q", "maxlength": "80"},
            {"tag": "input", "type": "hidden", "name": "csrf"},
            {"tag": "select", "name": "scope"},
        ]},
        visible=(SUBMIT,),
        captures=captures,
        on_submit=on_submit,
    )


def fuzz(driver, profile, role="wms_user", paths=("/search",), transport=None):
    console, network = ledgers()

    async def scenario():
        async with RoleSessionPool(driver, profile.roles, profile.settings, console, network) as pool:
            fuzzer = PayloadFuzzer(pool, profile, console, network, http_transport=transport)
            return await fuzzer.fuzz_role(role, list(paths))

    return asyncio.run(scenario())


def echo_query(values):
    return f"<p>Results for {values.get(QUERY, '')}</p>"


def sql_error_on_quote(values):
    if "'" in values.get(QUERY, ""):
        return "<html><body>Warning: You have an SQL syntax error near ''</body></html>"
    return "<html><body>No results</body></html>"


class TestFormFuzzing:

    def test_sql_error_marks_the_test_vulnerable(self, settings):
        profile = make_profile(settings, payload_sets=[SQLI])
        campaign = fuzz(FakeDriver({"/search": search_page(sql_error_on_quote)}), profile)

        first = campaign.results[0]
        assert first.payload == "' OR '1'='1"
        assert first.vulnerable
        assert first.matched_rule.category == "sqli"
        assert first.risk_level is Severity.CRITICAL
        assert first.evidence["indicator"] == "SQL syntax error"
        assert first.evidence["screenshot"].endswith(f"{first.test_id}.png")

    def test_hidden_inputs_are_not_fuzzed(self, settings):
        profile = make_profile(settings, payload_sets=[SQLI])
        driver = FakeDriver({"/search": search_page(sql_error_on_quote)})
        campaign = fuzz(driver, profile)

        assert campaign.results[0].fields == ("q", "scope")
        filled = driver.submissions[-1][2]
        assert set(filled) == {QUERY}

    def test_form_score_drops_per_finding(self, settings):
        profile = make_profile(settings, payload_sets=[SQLI])
        campaign = fuzz(FakeDriver({"/search": search_page(sql_error_on_quote)}), profile)

        assert len(campaign.vulnerabilities) == 2
        assert campaign.form_scores[f"{BASE_URL}/search"] == 60

    def test_echo_without_indicator_is_ambiguous(self, settings):
        profile = make_profile(settings, payload_sets=[SQLI])
        echo = search_page(echo_query)
        campaign = fuzz(FakeDriver({"/search": echo}), profile)

        assert not campaign.vulnerabilities
        assert len(campaign.ambiguous) == 2
        assert "payload echoed" in campaign.results[0].evidence["note"]

    def test_reflected_script_is_xss(self, settings):
        profile = make_profile(settings, payload_sets=[XSS])
        echo = search_page(echo_query)
        campaign = fuzz(FakeDriver({"/search": echo}), profile)

        result = campaign.results[0]
        assert result.vulnerable
        assert result.evidence["signal"] == "response"

    def test_indicator_already_on_the_page_is_ignored(self, settings):
        profile = make_profile(settings, payload_sets=[SQLI])
        body = "<p>Tip: a SQL syntax error means the query was malformed</p>"
        page = search_page(lambda values: body, body=body)
        campaign = fuzz(FakeDriver({"/search": page}), profile)

        assert not campaign.vulnerabilities
        assert not campaign.ambiguous

    def test_page_without_inputs_runs_no_tests(self, settings):
        profile = make_profile(settings, payload_sets=[SQLI])
        campaign = fuzz(FakeDriver({"/about": Route()}), profile, paths=("/about",))
        assert campaign.results == []

    def test_unreachable_page_counts_as_failed(self, settings):
        profile = make_profile(settings, payload_sets=[SQLI])
        campaign = fuzz(FakeDriver({"/search": Route(error="net::ERR_CONNECTION_RESET")}), profile)
        assert campaign.failed_tests == 1
        assert campaign.results == []

    def test_failed_fill_aborts_only_that_payload(self, settings):
        profile = make_profile(settings, payload_sets=[SQLI])
        flaky = search_page(sql_error_on_quote)
        flaky.detach_on = ("' OR '1'='1",)
        campaign = fuzz(FakeDriver({"/search": flaky}), profile)

        first, second = campaign.results
        assert "not attached" in first.error
        assert not first.vulnerable
        assert second.payload == "admin'--"
        assert second.error is None
        assert second.vulnerable
        assert campaign.failed_tests == 1


class TestApiFuzzing:

    def test_captured_endpoint_is_probed_with_payloads(self, settings):
        profile = make_profile(settings, payload_sets=[SQLI])
        captures = ({"url": f"{BASE_URL}/api/search?q=boots&page=1", "method": "GET", "status": 200,
                     "content_type": "application/json"},)
        seen = []

        def handler(request):
            seen.append(request)
            if "'" in request.url.params.get("q", ""):
                return httpx.Response(500, text="ERROR: SQL syntax error at or near \"'\"")
            return httpx.Response(200, json={"items": []})

        page = search_page(lambda values: "<p>No results</p>", captures=captures)
        campaign = fuzz(FakeDriver({"/search": page}), profile, transport=httpx.MockTransport(handler))

        assert [e.key for e in campaign.api_endpoints] == [f"GET:{BASE_URL}/api/search"]
        api_results = [r for r in campaign.results if r.evidence.get("method") == "GET"]
        # two parameters x two payloads
        assert len(api_results) == 4
        assert sum(r.vulnerable for r in api_results) == 2
        assert len(seen) == 4


class TestApiHelpers:

    def test_extract_endpoints_merges_parameters(self):
        captures = [
            NetworkCapture(url=f"{BASE_URL}/api/users?page=1", method="GET"),
            NetworkCapture(url=f"{BASE_URL}/api/users?sort=name", method="GET"),
            NetworkCapture(url=f"{BASE_URL}/api/users", method="POST", post_data='{"email": "a@b.c"}',
                           content_type="application/json"),
            NetworkCapture(url=f"{BASE_URL}/styles.css", method="GET", content_type="text/css"),
        ]
        endpoints = {e.key: e for e in extract_api_endpoints(captures)}

        assert set(endpoints) == {f"GET:{BASE_URL}/api/users", f"POST:{BASE_URL}/api/users"}
        assert endpoints[f"GET:{BASE_URL}/api/users"].parameters == ("page", "sort")
        assert endpoints[f"POST:{BASE_URL}/api/users"].parameters == ("email",)

    def test_endpoint_risk(self):
        assert endpoint_risk("GET", "/api/health", 0) is Severity.LOW
        assert endpoint_risk("POST", "/api/admin/users", 3) is Severity.CRITICAL

    def test_form_security_score_floor(self):
        assert form_security_score(0) == 100
        assert form_security_score(7) == 0


class TestSignalClassifier:

    @pytest.fixture
    def classifier(self):
        return SignalClassifier(defaults.VULNERABILITY_TYPES)

    def test_sql_error_in_body(self, classifier):
        detection = classifier.classify("sqli", "' OR '1'='1", body="SQL syntax error near '1'")
        assert detection.rule.name == "SQL Injection"
        assert detection.signal == "response"

    def test_xss_dialog_in_console(self, classifier):
        events = [ConsoleEvent("dialog", "XSS")]
        detection = classifier.classify("xss", "<svg onload=alert(1)>", console_events=events)
        assert detection.signal == "console"

    def test_xss_indicator_without_reflection_is_ambiguous(self, classifier):
        with pytest.raises(DetectionAmbiguous):
            classifier.classify("xss", "<svg onload=alert(1)>", body="<script>app.init()</script>")

    def test_nothing_fires(self, classifier):
        assert classifier.classify("cmdi", "; whoami", body="<p>Saved</p>") is None
