import pytest
import yaml

from roleprobe.backoff import TimeoutStrategy
from roleprobe.config import CrawlerSettings, Profile, Settings, load_profile, profile_from_dict
from roleprobe.errors import ConfigurationError


class TestSettings:

    def test_defaults(self):
        settings = Settings()
        assert settings.crawler.base_url == "http://localhost:3002"
        assert settings.limits.max_concurrent_sessions == 6
        assert settings.crawler.strategy is TimeoutStrategy.BALANCED

    def test_rejects_non_positive_limits(self):
        with pytest.raises(ConfigurationError):
            Settings(crawler=CrawlerSettings(max_pages=0))

    def test_from_env(self, monkeypatch):
        monkeypatch.setenv("ROLEPROBE_BASE_URL", "http://staging.test/")
        monkeypatch.setenv("ROLEPROBE_MAX_PAGES", "7")
        monkeypatch.setenv("ROLEPROBE_STRATEGY", "patient")
        monkeypatch.setenv("ROLEPROBE_HEADLESS", "false")

        settings = Settings.from_env()
        assert settings.crawler.base_url == "http://staging.test"
        assert settings.crawler.max_pages == 7
        assert settings.crawler.strategy is TimeoutStrategy.PATIENT
        assert settings.headless is False

    def test_from_env_rejects_bad_integers(self, monkeypatch):
        monkeypatch.setenv("ROLEPROBE_MAX_PAGES", "lots")
        with pytest.raises(ConfigurationError):
            Settings.from_env()

    def test_overrides(self):
        settings = Settings().with_overrides({"crawler": {"max_pages": 5, "strategy": "aggressive"},
                                              "headless": False})
        assert settings.crawler.max_pages == 5
        assert settings.crawler.strategy is TimeoutStrategy.AGGRESSIVE
        assert settings.headless is False

    def test_unknown_override_keys(self):
        with pytest.raises(ConfigurationError):
            Settings().with_overrides({"crawler": {"depth": 3}})
        with pytest.raises(ConfigurationError):
            Settings().with_overrides({"proxy": {}})

    def test_invalid_strategy_name(self):
        with pytest.raises(ConfigurationError):
            Settings().with_overrides({"crawler": {"strategy": "reckless"}})


class TestProfile:

    def test_default_profile_has_six_roles(self):
        profile = Profile.default()
        assert profile.role_names == [
            "super_admin", "tenant_admin", "module_admin", "wms_user", "accounting_user", "readonly_user",
        ]
        assert profile.expects_access("wms_user", "/admin/modules")
        assert not profile.expects_access("wms_user", "/admin/users")

    def test_unknown_role(self):
        with pytest.raises(ConfigurationError):
            Profile.default().role("ghost")

    def test_expected_access_for_unknown_role(self):
        with pytest.raises(ConfigurationError):
            profile_from_dict({"expected_access": {"ghost": ["/"]}}, Settings())

    def test_payload_set_needs_a_detection_rule(self):
        with pytest.raises(ConfigurationError):
            profile_from_dict({"payload_sets": [{"name": "LDAP", "category": "ldap", "payloads": ["*)("]}]},
                              Settings())

    def test_yaml_profile_overrides_sections(self, tmp_path):
        path = tmp_path / "app.yaml"
        path.write_text(yaml.safe_dump({
            "settings": {"crawler": {"base_url": "http://erp.test", "max_pages": 10}},
            "roles": [
                {"name": "super_admin", "email": "root@erp.test", "password": "pw", "seed_paths": ["/"]},
                {"name": "tenant_admin", "email": "t@erp.test", "password": "pw", "seed_paths": ["/"]},
                {"name": "module_admin", "email": "m@erp.test", "password": "pw", "seed_paths": ["/"]},
                {"name": "wms_user", "email": "w@erp.test", "password": "pw", "seed_paths": ["/", "/wms"]},
                {"name": "accounting_user", "email": "a@erp.test", "password": "pw", "seed_paths": ["/"]},
                {"name": "readonly_user", "email": "r@erp.test", "password": "pw", "seed_paths": ["/"]},
            ],
        }))

        profile = load_profile(str(path), Settings())
        assert profile.settings.crawler.base_url == "http://erp.test"
        assert profile.settings.crawler.max_pages == 10
        assert profile.role("wms_user").seed_paths == ("/", "/wms")
        assert len(profile.permission_rules) == 4

    def test_written_profile_loads_back(self, tmp_path):
        path = tmp_path / "roleprobe.yaml"
        original = Profile.default(Settings())
        path.write_text(yaml.safe_dump(original.to_dict(), sort_keys=False))

        loaded = load_profile(str(path), Settings())
        assert loaded.role_names == original.role_names
        assert loaded.hierarchy.order("readonly_user", "super_admin") == ("readonly_user", "super_admin")
        assert [p.category for p in loaded.payload_sets] == ["xss", "sqli", "cmdi", "path_traversal"]

    def test_missing_profile(self, tmp_path):
        with pytest.raises(ConfigurationError):
            load_profile(str(tmp_path / "nope.yaml"))

    def test_profile_must_be_a_mapping(self, tmp_path):
        path = tmp_path / "list.yaml"
        path.write_text("- just\n- a list\n")
        with pytest.raises(ConfigurationError):
            load_profile(str(path), Settings())
