"""
Configuration
=============
Run settings come from the environment (a .env file is honoured) and can be
overridden by the `settings:` section of a YAML profile. The profile also
declares roles, expected access and the RBAC/fuzzing policy; anything it
leaves out falls back to roleprobe.defaults.
"""

import os
from dataclasses import dataclass, field, replace, fields, asdict
from typing import Dict, List, Any, Optional

import yaml
from dotenv import load_dotenv

from . import defaults
from .backoff import TimeoutStrategy, ErrorRecovery
from .errors import ConfigurationError
from .models import Role, PayloadSet, VulnerabilityType, to_plain
from .policy import (
    PermissionRule,
    RoleDefinition,
    EscalationPath,
    IsolationBoundary,
    RoleHierarchy,
)

load_dotenv()


@dataclass(frozen=True)
class CrawlerSettings:
    base_url: str = "http://localhost:3002"
    max_pages: int = 50
    timeout_ms: int = 15000
    retry_attempts: int = 3
    retry_delay_ms: int = 1000
    strategy: TimeoutStrategy = TimeoutStrategy.BALANCED
    error_recovery: ErrorRecovery = ErrorRecovery.RETRY
    screenshots: bool = False


@dataclass(frozen=True)
class ResourceLimits:
    max_concurrent_sessions: int = 6
    max_pages_per_session: int = 3
    memory_limit_mb: int = 2048
    network_timeout_ms: int = 10000


@dataclass(frozen=True)
class BatchSettings:
    batch_size: int = 2
    cooldown_ms: int = 500
    priority_roles: tuple = tuple(defaults.PRIORITY_ROLES)


@dataclass(frozen=True)
class FuzzerSettings:
    max_payloads_per_field: int = 50
    timeout_per_payload_ms: int = 5000
    network_capture_limit: int = 1000
    api_fuzzing: bool = True


@dataclass(frozen=True)
class LoginSettings:
    login_path: str = "/login"
    email_selector: str = 'input[type="email"], input[name="email"]'
    password_selector: str = 'input[type="password"], input[name="password"]'
    submit_selector: str = 'button[type="submit"]'
    success_url_pattern: str = "**/admin*"
    timeout_ms: int = 10000


_SECTIONS = {
    "crawler": CrawlerSettings,
    "limits": ResourceLimits,
    "batch": BatchSettings,
    "fuzzer": FuzzerSettings,
    "login": LoginSettings,
}


@dataclass(frozen=True)
class Settings:
    crawler: CrawlerSettings = field(default_factory=CrawlerSettings)
    limits: ResourceLimits = field(default_factory=ResourceLimits)
    batch: BatchSettings = field(default_factory=BatchSettings)
    fuzzer: FuzzerSettings = field(default_factory=FuzzerSettings)
    login: LoginSettings = field(default_factory=LoginSettings)
    headless: bool = True
    output_dir: str = "results"

    def __post_init__(self):
        positive = {
            "crawler.max_pages": self.crawler.max_pages,
            "crawler.timeout_ms": self.crawler.timeout_ms,
            "crawler.retry_attempts": self.crawler.retry_attempts,
            "limits.max_concurrent_sessions": self.limits.max_concurrent_sessions,
            "limits.max_pages_per_session": self.limits.max_pages_per_session,
            "limits.network_timeout_ms": self.limits.network_timeout_ms,
            "batch.batch_size": self.batch.batch_size,
            "fuzzer.max_payloads_per_field": self.fuzzer.max_payloads_per_field,
            "fuzzer.network_capture_limit": self.fuzzer.network_capture_limit,
        }
        for name, value in positive.items():
            if not isinstance(value, int) or value < 1:
                raise ConfigurationError(f"{name} must be a positive integer, got {value!r}")
        if self.crawler.retry_delay_ms < 0 or self.batch.cooldown_ms < 0:
            raise ConfigurationError("Delays must not be negative")

    @classmethod
    def from_env(cls) -> "Settings":
        """Build settings from ROLEPROBE_* environment variables"""
        env = os.environ

        def _int(name, default):
            raw = env.get(name)
            if raw is None or raw == "":
                return default
            try:
                return int(raw)
            except ValueError:
                raise ConfigurationError(f"{name} must be an integer, got {raw!r}")

        base = cls()
        crawler = replace(
            base.crawler,
            base_url=env.get("ROLEPROBE_BASE_URL", base.crawler.base_url).rstrip("/"),
            max_pages=_int("ROLEPROBE_MAX_PAGES", base.crawler.max_pages),
            timeout_ms=_int("ROLEPROBE_TIMEOUT_MS", base.crawler.timeout_ms),
            retry_attempts=_int("ROLEPROBE_RETRY_ATTEMPTS", base.crawler.retry_attempts),
            retry_delay_ms=_int("ROLEPROBE_RETRY_DELAY_MS", base.crawler.retry_delay_ms),
            strategy=_enum(TimeoutStrategy, env.get("ROLEPROBE_STRATEGY", base.crawler.strategy.value)),
            error_recovery=_enum(ErrorRecovery, env.get("ROLEPROBE_ERROR_RECOVERY",
                                                        base.crawler.error_recovery.value)),
        )
        limits = replace(
            base.limits,
            max_concurrent_sessions=_int("ROLEPROBE_MAX_SESSIONS", base.limits.max_concurrent_sessions),
            max_pages_per_session=_int("ROLEPROBE_PAGES_PER_SESSION", base.limits.max_pages_per_session),
            network_timeout_ms=_int("ROLEPROBE_NETWORK_TIMEOUT_MS", base.limits.network_timeout_ms),
        )
        batch = replace(
            base.batch,
            batch_size=_int("ROLEPROBE_BATCH_SIZE", base.batch.batch_size),
            cooldown_ms=_int("ROLEPROBE_COOLDOWN_MS", base.batch.cooldown_ms),
        )
        fuzzer = replace(
            base.fuzzer,
            max_payloads_per_field=_int("ROLEPROBE_MAX_PAYLOADS", base.fuzzer.max_payloads_per_field),
        )
        headless = env.get("ROLEPROBE_HEADLESS", "true").lower() not in ("0", "false", "no")
        return cls(crawler=crawler, limits=limits, batch=batch, fuzzer=fuzzer,
                   login=base.login, headless=headless,
                   output_dir=env.get("ROLEPROBE_OUTPUT_DIR", base.output_dir))

    def with_overrides(self, overrides: Dict[str, Any]) -> "Settings":
        """Apply a nested dict like {"crawler": {"max_pages": 10}, "headless": False}"""
        changes = {}
        for key, value in (overrides or {}).items():
            if key in _SECTIONS:
                section = getattr(self, key)
                known = {f.name for f in fields(section)}
                unknown = set(value) - known
                if unknown:
                    raise ConfigurationError(f"Unknown {key} settings: {sorted(unknown)}")
                value = dict(value)
                if "strategy" in value:
                    value["strategy"] = _enum(TimeoutStrategy, value["strategy"])
                if "error_recovery" in value:
                    value["error_recovery"] = _enum(ErrorRecovery, value["error_recovery"])
                if "priority_roles" in value:
                    value["priority_roles"] = tuple(value["priority_roles"])
                changes[key] = replace(section, **value)
            elif key in ("headless", "output_dir"):
                changes[key] = value
            else:
                raise ConfigurationError(f"Unknown settings section: {key}")
        return replace(self, **changes)

    def to_dict(self) -> Dict[str, Any]:
        return to_plain(asdict(self))


def _enum(enum_cls, value):
    try:
        return enum_cls(value)
    except ValueError:
        choices = ", ".join(e.value for e in enum_cls)
        raise ConfigurationError(f"Invalid {enum_cls.__name__} '{value}' (choose from {choices})")


# ═══════════════════════════════════════════════════════════════
# PROFILE
# ═══════════════════════════════════════════════════════════════

@dataclass
class Profile:
    """Everything a run needs to know about the application under test"""
    roles: List[Role]
    expected_access: Dict[str, List[str]]
    permission_rules: List[PermissionRule]
    hierarchy: RoleHierarchy
    payload_sets: List[PayloadSet]
    vulnerability_types: List[VulnerabilityType]
    api_access: Dict[str, Dict[str, List[str]]] = field(default_factory=dict)
    element_visibility: Dict[str, Dict[str, List[str]]] = field(default_factory=dict)
    settings: Settings = field(default_factory=Settings)

    def __post_init__(self):
        names = [r.name for r in self.roles]
        if len(set(names)) != len(names):
            raise ConfigurationError("Duplicate role names in profile")
        known = set(names)

        for role in self.expected_access:
            if role not in known:
                raise ConfigurationError(f"expected_access names unknown role: {role}")
        for rule in self.permission_rules:
            stray = (rule.allowed_roles | rule.denied_roles) - known
            if stray:
                raise ConfigurationError(f"Rule {rule.rule_id} names unknown roles: {sorted(stray)}")
        for path in self.hierarchy.escalation_paths:
            for role in (path.from_role, path.to_role):
                if role not in known:
                    raise ConfigurationError(f"Escalation path {path.path_id} needs a session for {role}")
        categories = {v.category for v in self.vulnerability_types}
        for payload_set in self.payload_sets:
            if payload_set.category not in categories:
                raise ConfigurationError(
                    f"Payload set '{payload_set.name}' has no detection rule for '{payload_set.category}'"
                )

    @property
    def role_names(self) -> List[str]:
        return [r.name for r in self.roles]

    def role(self, name: str) -> Role:
        for role in self.roles:
            if role.name == name:
                return role
        raise ConfigurationError(f"Unknown role: {name}")

    def expects_access(self, role: str, path: str) -> bool:
        return path in self.expected_access.get(role, ())

    @classmethod
    def default(cls, settings: Settings = None) -> "Profile":
        return cls(
            roles=defaults.default_roles(),
            expected_access={k: list(v) for k, v in defaults.EXPECTED_ACCESS.items()},
            permission_rules=list(defaults.PERMISSION_RULES),
            hierarchy=RoleHierarchy(
                defaults.ROLE_DEFINITIONS,
                defaults.ESCALATION_PATHS,
                defaults.ISOLATION_BOUNDARIES,
            ),
            payload_sets=list(defaults.PAYLOAD_SETS),
            vulnerability_types=list(defaults.VULNERABILITY_TYPES),
            api_access={k: dict(v) for k, v in defaults.API_ACCESS_MATRIX.items()},
            element_visibility={k: dict(v) for k, v in defaults.ROLE_ELEMENT_VISIBILITY.items()},
            settings=settings or Settings(),
        )

    def to_dict(self) -> Dict[str, Any]:
        return {
            "settings": self.settings.to_dict(),
            "roles": [dict(r.to_dict(), password=r.password) for r in self.roles],
            "expected_access": self.expected_access,
            "api_access": self.api_access,
            "element_visibility": self.element_visibility,
            "permission_rules": [r.to_dict() for r in self.permission_rules],
            "hierarchy": self.hierarchy.to_dict(),
            "payload_sets": [p.to_dict() for p in self.payload_sets],
            "vulnerability_types": [v.to_dict() for v in self.vulnerability_types],
        }


def load_profile(path: str, settings: Settings = None) -> Profile:
    """Load a YAML profile; sections it omits come from the built-in profile."""
    if not os.path.exists(path):
        raise ConfigurationError(f"Profile not found: {path}")

    with open(path, "r") as f:
        try:
            data = yaml.safe_load(f) or {}
        except yaml.YAMLError as e:
            raise ConfigurationError(f"Invalid YAML in {path}: {e}")

    if not isinstance(data, dict):
        raise ConfigurationError(f"Profile {path} must be a mapping")

    return profile_from_dict(data, settings)


def profile_from_dict(data: Dict[str, Any], settings: Settings = None) -> Profile:
    base = Profile.default(settings or Settings.from_env())
    try:
        settings = base.settings.with_overrides(data.get("settings", {}))

        roles = base.roles
        if "roles" in data:
            roles = [Role(**r) for r in data["roles"]]

        hierarchy = base.hierarchy
        if "hierarchy" in data:
            h = data["hierarchy"]
            hierarchy = RoleHierarchy(
                [RoleDefinition(**r) for r in h.get("roles", [])],
                [EscalationPath(**p) for p in h.get("escalation_paths", [])],
                [IsolationBoundary(**b) for b in h.get("isolation_boundaries", [])],
            )

        return Profile(
            roles=roles,
            expected_access=data.get("expected_access", base.expected_access),
            permission_rules=[PermissionRule(**r) for r in data["permission_rules"]]
            if "permission_rules" in data else base.permission_rules,
            hierarchy=hierarchy,
            payload_sets=[PayloadSet(**p) for p in data["payload_sets"]]
            if "payload_sets" in data else base.payload_sets,
            vulnerability_types=[VulnerabilityType(**v) for v in data["vulnerability_types"]]
            if "vulnerability_types" in data else base.vulnerability_types,
            api_access=data.get("api_access", base.api_access),
            element_visibility=data.get("element_visibility", base.element_visibility),
            settings=settings,
        )
    except (TypeError, ValueError) as e:
        raise ConfigurationError(f"Invalid profile: {e}")
