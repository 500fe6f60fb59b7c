"""
Core records
============
Immutable records produced by the crawler and the fuzzer, plus the shared
Severity/Outcome vocabulary. RBAC policy types live in roleprobe.policy,
report sections in roleprobe.intelligence.report.
"""

import fnmatch
from dataclasses import dataclass, field, fields, is_dataclass
from enum import Enum
from typing import Optional, Dict, List, Any, Tuple, FrozenSet

from .errors import ConfigurationError


class Severity(Enum):
    """Risk levels, ordered"""
    LOW = "low"
    MEDIUM = "medium"
    HIGH = "high"
    CRITICAL = "critical"

    @property
    def weight(self) -> int:
        return _SEVERITY_WEIGHT[self]

    @property
    def cvss(self) -> float:
        return _CVSS_SCORE[self]

    def __lt__(self, other):
        if not isinstance(other, Severity):
            return NotImplemented
        return self.weight < other.weight


_SEVERITY_WEIGHT = {
    Severity.LOW: 1,
    Severity.MEDIUM: 2,
    Severity.HIGH: 3,
    Severity.CRITICAL: 4,
}

_CVSS_SCORE = {
    Severity.LOW: 3.9,
    Severity.MEDIUM: 6.9,
    Severity.HIGH: 8.9,
    Severity.CRITICAL: 10.0,
}


class Outcome(Enum):
    """Observed or expected result of an access attempt"""
    ALLOW = "allow"
    DENY = "deny"
    ERROR = "error"


# Final URLs that mean "not really reachable" even on a 2xx/3xx
DENIED_URL_MARKERS = ("/login", "/403", "/404")


def is_accessible(status_code: int, final_url: str) -> bool:
    """2xx/3xx and not bounced to an auth/denied/not-found page."""
    if not 200 <= (status_code or 0) < 400:
        return False
    return not any(marker in (final_url or "") for marker in DENIED_URL_MARKERS)


def to_plain(value):
    """Recursively turn records into JSON-safe structures."""
    if isinstance(value, Enum):
        return value.value
    if is_dataclass(value) and not isinstance(value, type):
        if hasattr(value, "to_dict"):
            return value.to_dict()
        return {f.name: to_plain(getattr(value, f.name)) for f in fields(value)}
    if isinstance(value, dict):
        return {str(k): to_plain(v) for k, v in value.items()}
    if isinstance(value, (frozenset, set)):
        return sorted(to_plain(v) for v in value)
    if isinstance(value, (list, tuple)):
        return [to_plain(v) for v in value]
    return value


def _record_dict(record) -> Dict[str, Any]:
    return {f.name: to_plain(getattr(record, f.name)) for f in fields(record)}


# ═══════════════════════════════════════════════════════════════
# ROLES
# ═══════════════════════════════════════════════════════════════

@dataclass(frozen=True)
class Role:
    """A named identity driving one isolated browsing session"""
    name: str
    email: str
    password: str = field(default="", repr=False)
    permissions: FrozenSet[str] = frozenset()
    seed_paths: Tuple[str, ...] = ()
    description: str = ""

    def __post_init__(self):
        if not self.name:
            raise ConfigurationError("Role name must not be empty")
        # Accept lists from YAML/JSON while keeping the record immutable
        object.__setattr__(self, "permissions", frozenset(self.permissions))
        object.__setattr__(self, "seed_paths", tuple(self.seed_paths))
        for path in self.seed_paths:
            if not path.startswith("/"):
                raise ConfigurationError(f"Seed path for {self.name} must start with '/': {path}")

    def has_permission(self, permission: str) -> bool:
        """Wildcard-aware check: 'wms:*', '*:view' and '*' all match."""
        return any(fnmatch.fnmatchcase(permission, granted) for granted in self.permissions)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "name": self.name,
            "email": self.email,
            "permissions": sorted(self.permissions),
            "seed_paths": list(self.seed_paths),
            "description": self.description,
        }


# ═══════════════════════════════════════════════════════════════
# CRAWL RECORDS
# ═══════════════════════════════════════════════════════════════

@dataclass(frozen=True)
class PathResult:
    """One probe of one path under one role"""
    path: str
    role: str
    accessible: bool
    status_code: int = 0
    response_time_ms: int = 0
    error: Optional[str] = None
    screenshot: Optional[str] = None
    links: Tuple[str, ...] = ()
    navigation_elements: int = 0
    final_url: str = ""
    attempts: int = 1

    def __post_init__(self):
        object.__setattr__(self, "links", tuple(self.links))
        if self.accessible and not is_accessible(self.status_code, self.final_url):
            raise ValueError(
                f"{self.role} {self.path}: accessible result with status "
                f"{self.status_code} and final url '{self.final_url}'"
            )

    def to_dict(self) -> Dict[str, Any]:
        return _record_dict(self)


@dataclass(frozen=True)
class PermissionBoundary:
    """A path whose observed accessibility differs from the declared expectation"""
    role: str
    path: str
    expected: bool
    actual: bool
    severity: Severity

    def to_dict(self) -> Dict[str, Any]:
        return _record_dict(self)


def crawl_performance_grade(avg_response_ms: float, error_rate: float) -> str:
    if avg_response_ms < 1000 and error_rate < 5:
        return "A+"
    if avg_response_ms < 2000 and error_rate < 10:
        return "A"
    if avg_response_ms < 3000 and error_rate < 20:
        return "B"
    if avg_response_ms < 5000 and error_rate < 30:
        return "C"
    return "D"


@dataclass(frozen=True)
class CoverageAnalysis:
    total: int
    accessible: int
    restricted: int
    errors: int
    percentage: float
    avg_response_time_ms: float
    error_rate: float
    performance_grade: str
    navigation_elements: int = 0

    def __post_init__(self):
        if self.accessible + self.restricted + self.errors != self.total:
            raise ValueError("Coverage counts do not add up to total")
        if not 0 <= self.percentage <= 100:
            raise ValueError(f"Coverage percentage out of range: {self.percentage}")

    @classmethod
    def from_results(cls, results) -> "CoverageAnalysis":
        total = len(results)
        accessible = sum(1 for r in results if r.accessible)
        errors = sum(1 for r in results if not r.accessible and r.error)
        restricted = total - accessible - errors
        timed = [r.response_time_ms for r in results if r.response_time_ms > 0]
        avg = sum(timed) / len(timed) if timed else 0.0
        error_rate = errors / total * 100 if total else 0.0
        return cls(
            total=total,
            accessible=accessible,
            restricted=restricted,
            errors=errors,
            percentage=round(accessible / total * 100, 2) if total else 0.0,
            avg_response_time_ms=round(avg, 2),
            error_rate=round(error_rate, 2),
            performance_grade=crawl_performance_grade(avg, error_rate),
            navigation_elements=sum(r.navigation_elements for r in results),
        )

    def to_dict(self) -> Dict[str, Any]:
        return _record_dict(self)


@dataclass(frozen=True)
class PathDiscovery:
    """Everything one crawl learned about one role"""
    role: str
    results: Tuple[PathResult, ...]
    coverage: CoverageAnalysis
    execution_time_ms: int = 0
    permission_boundaries: Tuple[PermissionBoundary, ...] = ()
    security_events: Tuple[Dict[str, Any], ...] = ()
    error: Optional[str] = None

    @classmethod
    def build(cls, role: str, results, execution_time_ms: int = 0,
              permission_boundaries=(), security_events=(), error: str = None) -> "PathDiscovery":
        results = tuple(results)
        return cls(
            role=role,
            results=results,
            coverage=CoverageAnalysis.from_results(results),
            execution_time_ms=execution_time_ms,
            permission_boundaries=tuple(permission_boundaries),
            security_events=tuple(security_events),
            error=error,
        )

    @property
    def accessible_paths(self) -> List[str]:
        return [r.path for r in self.results if r.accessible]

    def result_for(self, path: str) -> Optional[PathResult]:
        for r in self.results:
            if r.path == path:
                return r
        return None

    def to_dict(self) -> Dict[str, Any]:
        return _record_dict(self)

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "PathDiscovery":
        results = [PathResult(**{**r, "links": tuple(r.get("links", ()))}) for r in data.get("results", [])]
        boundaries = [
            PermissionBoundary(**{**b, "severity": Severity(b["severity"])})
            for b in data.get("permission_boundaries", [])
        ]
        return cls.build(
            role=data["role"],
            results=results,
            execution_time_ms=data.get("execution_time_ms", 0),
            permission_boundaries=boundaries,
            security_events=data.get("security_events", ()),
            error=data.get("error"),
        )


# ═══════════════════════════════════════════════════════════════
# FINDINGS
# ═══════════════════════════════════════════════════════════════

@dataclass(frozen=True)
class Vulnerability:
    """A place where actual behaviour exceeds what was allowed"""
    vuln_id: str
    type: str
    severity: Severity
    description: str
    affected_roles: Tuple[str, ...] = ()
    affected_resources: Tuple[str, ...] = ()
    cvss_score: float = 0.0
    remediation: str = ""
    source: str = "rbac"

    def __post_init__(self):
        object.__setattr__(self, "severity", Severity(self.severity))
        object.__setattr__(self, "affected_roles", tuple(self.affected_roles))
        object.__setattr__(self, "affected_resources", tuple(self.affected_resources))
        if not self.cvss_score:
            object.__setattr__(self, "cvss_score", self.severity.cvss)
        if not 0 <= self.cvss_score <= 10:
            raise ValueError(f"CVSS score out of range: {self.cvss_score}")

    def to_dict(self) -> Dict[str, Any]:
        return _record_dict(self)

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "Vulnerability":
        return cls(**data)


# ═══════════════════════════════════════════════════════════════
# FUZZING RECORDS
# ═══════════════════════════════════════════════════════════════

class DetectionMethod(Enum):
    RESPONSE_ANALYSIS = "response_analysis"
    ERROR_DETECTION = "error_detection"
    CONSOLE_MONITORING = "console_monitoring"
    TIMING_ANALYSIS = "timing_analysis"


@dataclass(frozen=True)
class PayloadSet:
    name: str
    category: str
    payloads: Tuple[str, ...]
    description: str = ""
    severity: Severity = Severity.MEDIUM

    def __post_init__(self):
        object.__setattr__(self, "payloads", tuple(self.payloads))
        object.__setattr__(self, "severity", Severity(self.severity))
        if not self.payloads:
            raise ConfigurationError(f"Payload set '{self.name}' has no payloads")

    def to_dict(self) -> Dict[str, Any]:
        return _record_dict(self)


@dataclass(frozen=True)
class VulnerabilityType:
    """Detection rule for one payload category"""
    name: str
    category: str
    detection_method: DetectionMethod
    indicators: Tuple[str, ...]
    risk_level: Severity

    def __post_init__(self):
        object.__setattr__(self, "detection_method", DetectionMethod(self.detection_method))
        object.__setattr__(self, "risk_level", Severity(self.risk_level))
        object.__setattr__(self, "indicators", tuple(self.indicators))

    def to_dict(self) -> Dict[str, Any]:
        return _record_dict(self)


@dataclass(frozen=True)
class FormInput:
    selector: str
    type: str = "text"
    name: str = ""
    placeholder: str = ""
    required: bool = False
    max_length: Optional[int] = None
    pattern: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        return _record_dict(self)


@dataclass(frozen=True)
class ApiEndpoint:
    """Candidate API surface reconstructed from captured traffic"""
    method: str
    url: str
    parameters: Tuple[str, ...] = ()
    content_type: str = ""
    risk_level: Severity = Severity.LOW

    @property
    def key(self) -> str:
        return f"{self.method}:{self.url}"

    def to_dict(self) -> Dict[str, Any]:
        return _record_dict(self)


@dataclass(frozen=True)
class SecurityTestResult:
    """One payload execution"""
    test_id: str
    url: str
    role: str
    fields: Tuple[str, ...]
    payload: str
    category: str
    vulnerable: bool
    matched_rule: Optional[VulnerabilityType] = None
    risk_level: Severity = Severity.LOW
    evidence: Dict[str, Any] = field(default_factory=dict)
    response_time_ms: int = 0
    ambiguous: bool = False
    error: Optional[str] = None

    def __post_init__(self):
        object.__setattr__(self, "fields", tuple(self.fields))
        object.__setattr__(self, "risk_level", Severity(self.risk_level))
        if self.vulnerable and self.matched_rule is None:
            raise ValueError(f"{self.test_id}: vulnerable result needs a matched rule")

    def to_dict(self) -> Dict[str, Any]:
        return _record_dict(self)

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "SecurityTestResult":
        data = dict(data)
        rule = data.pop("matched_rule", None)
        return cls(matched_rule=VulnerabilityType(**rule) if rule else None, **data)
