"""
Intelligence Report Sections
============================
Typed sections of the IntelligenceReport. Each one checks its own shape in
__post_init__ (score ranges, matrix dimensions, enum membership), so a
report that exists is a report that is well formed.
"""

from dataclasses import dataclass, field
from typing import Dict, List, Any, Tuple, Optional

from ..models import Severity, Vulnerability, to_plain

POSTURES = ("critical", "needs_improvement", "good", "excellent")
COMPLIANCE_STATUSES = ("compliant", "partial", "non_compliant")
LEVELS = ("low", "medium", "high")
INSIGHT_CATEGORIES = ("security", "performance", "architecture", "compliance")
GAP_RESULTS = ("accessible", "forbidden", "error", "missing")
EXCEPTION_TYPES = ("unexpected_access", "missing_access")

_LEVEL_WEIGHT = {"low": 1, "medium": 2, "high": 3}
_EFFORT_WEIGHT = {"low": 3, "medium": 2, "high": 1}


def _score(value: float, name: str):
    if not 0 <= value <= 100:
        raise ValueError(f"{name} must be within [0, 100], got {value}")


def _member(value: str, allowed: Tuple[str, ...], name: str):
    if value not in allowed:
        raise ValueError(f"{name} must be one of {allowed}, got {value!r}")


def _severity(obj, attr: str = "severity"):
    object.__setattr__(obj, attr, Severity(getattr(obj, attr)))


class _Section:
    """to_dict for frozen dataclass sections"""

    def to_dict(self) -> Dict[str, Any]:
        return {name: to_plain(getattr(self, name)) for name in self.__dataclass_fields__}


# ═══════════════════════════════════════════════════════════════
# PERMISSION PATTERNS
# ═══════════════════════════════════════════════════════════════

@dataclass(frozen=True)
class HierarchyViolation(_Section):
    lower_role: str
    higher_role: str
    affected_paths: Tuple[str, ...]
    severity: Severity = Severity.MEDIUM
    violation_type: str = "excessive_access"

    def __post_init__(self):
        _severity(self)
        if not self.affected_paths:
            raise ValueError("A hierarchy violation needs at least one path")


@dataclass(frozen=True)
class HierarchyCompliance(_Section):
    expected: Dict[str, Tuple[str, ...]]
    actual: Dict[str, Tuple[str, ...]]
    checks: int
    violations: Tuple[HierarchyViolation, ...]
    compliance_score: float

    def __post_init__(self):
        _score(self.compliance_score, "compliance_score")
        if len(self.violations) > self.checks:
            raise ValueError("More hierarchy violations than checks")


@dataclass(frozen=True)
class AccessPattern(_Section):
    pattern: str
    roles_with_access: Tuple[str, ...]
    paths: Tuple[str, ...]
    frequency: int
    risk_level: Severity
    description: str

    def __post_init__(self):
        _severity(self, "risk_level")


@dataclass(frozen=True)
class PermissionGap(_Section):
    role: str
    expected_path: str
    actual_result: str
    severity: Severity
    recommendation: str

    def __post_init__(self):
        _severity(self)
        _member(self.actual_result, GAP_RESULTS, "actual_result")


@dataclass(frozen=True)
class SecurityRisk(_Section):
    type: str
    severity: Severity
    affected_roles: Tuple[str, ...]
    paths: Tuple[str, ...]
    description: str
    mitigation: str

    def __post_init__(self):
        _severity(self)


@dataclass(frozen=True)
class PermissionPatternAnalysis(_Section):
    hierarchy: HierarchyCompliance
    access_patterns: Tuple[AccessPattern, ...]
    permission_gaps: Tuple[PermissionGap, ...]
    security_risks: Tuple[SecurityRisk, ...]


# ═══════════════════════════════════════════════════════════════
# ROLE COMPARISON
# ═══════════════════════════════════════════════════════════════

@dataclass(frozen=True)
class SecurityException(_Section):
    type: str
    role: str
    path: str
    expected: bool
    actual: bool
    risk_level: Severity

    def __post_init__(self):
        _severity(self, "risk_level")
        _member(self.type, EXCEPTION_TYPES, "type")


@dataclass(frozen=True)
class RoleComparison(_Section):
    unique_access: Dict[str, Tuple[str, ...]]
    common_access: Tuple[str, ...]
    hierarchical_access: Dict[str, Tuple[str, ...]]
    security_exceptions: Tuple[SecurityException, ...]
    overlap_percentage: float
    pair_overlap: Dict[str, float] = field(default_factory=dict)

    def __post_init__(self):
        _score(self.overlap_percentage, "overlap_percentage")
        for pair, value in self.pair_overlap.items():
            _score(value, f"pair_overlap[{pair}]")
        for role, paths in self.unique_access.items():
            shared = set(paths) & set(self.common_access)
            if shared and len(self.unique_access) > 1:
                raise ValueError(f"{role}: paths both unique and common: {sorted(shared)}")


# ═══════════════════════════════════════════════════════════════
# PERFORMANCE
# ═══════════════════════════════════════════════════════════════

@dataclass(frozen=True)
class PathTiming(_Section):
    path: str
    role: str
    response_time_ms: int


@dataclass(frozen=True)
class ErrorPattern(_Section):
    error_type: str
    frequency: int
    affected_roles: Tuple[str, ...]
    affected_paths: Tuple[str, ...]
    commonality: float

    def __post_init__(self):
        _score(self.commonality, "commonality")


@dataclass(frozen=True)
class PerformanceAnalysis(_Section):
    average_by_role: Dict[str, int]
    grades: Dict[str, str]
    slowest_paths: Tuple[PathTiming, ...]
    fastest_paths: Tuple[PathTiming, ...]
    error_patterns: Tuple[ErrorPattern, ...]
    overall_average_ms: int
    performance_score: int
    performance_grade: str
    slow_paths: Tuple[PathTiming, ...] = ()

    def __post_init__(self):
        _score(self.performance_score, "performance_score")
        _member(self.performance_grade, ("A", "B", "C", "D", "F"), "performance_grade")


# ═══════════════════════════════════════════════════════════════
# MATRIX & HEATMAP
# ═══════════════════════════════════════════════════════════════

@dataclass(frozen=True)
class MatrixAnomaly(_Section):
    role: str
    path: str
    expected: bool
    actual: bool
    risk_level: Severity
    description: str

    def __post_init__(self):
        _severity(self, "risk_level")
        if self.expected == self.actual:
            raise ValueError(f"{self.role} {self.path}: not an anomaly")


@dataclass(frozen=True)
class ComparisonMatrix(_Section):
    roles: Tuple[str, ...]
    paths: Tuple[str, ...]
    access_matrix: Tuple[Tuple[bool, ...], ...]
    anomalies: Tuple[MatrixAnomaly, ...]

    def __post_init__(self):
        if len(self.access_matrix) != len(self.roles):
            raise ValueError(f"Matrix has {len(self.access_matrix)} rows for {len(self.roles)} roles")
        for role, row in zip(self.roles, self.access_matrix):
            if len(row) != len(self.paths):
                raise ValueError(f"Row for {role} has {len(row)} cells for {len(self.paths)} paths")

    def accessible(self, role: str, path: str) -> bool:
        return self.access_matrix[self.roles.index(role)][self.paths.index(path)]


@dataclass(frozen=True)
class HeatmapCell(_Section):
    role: str
    path: str
    value: float
    color: str
    tooltip: str

    def __post_init__(self):
        _score(self.value, "heatmap value")


@dataclass(frozen=True)
class Heatmap(_Section):
    roles: Tuple[str, ...]
    paths: Tuple[str, ...]
    cells: Tuple[Tuple[HeatmapCell, ...], ...]
    color_scale: Dict[str, str]
    insights: Tuple[str, ...] = ()

    def __post_init__(self):
        if len(self.cells) != len(self.roles) or any(len(row) != len(self.paths) for row in self.cells):
            raise ValueError("Heatmap cells do not match roles x paths")


# ═══════════════════════════════════════════════════════════════
# RECOMMENDATIONS & SUMMARY
# ═══════════════════════════════════════════════════════════════

@dataclass(frozen=True)
class ActionableInsight(_Section):
    category: str
    title: str
    description: str
    priority: Severity
    impact: str
    effort: str
    affected_roles: Tuple[str, ...] = ()
    affected_paths: Tuple[str, ...] = ()
    implementation: Tuple[str, ...] = ()
    validation: Tuple[str, ...] = ()

    def __post_init__(self):
        _severity(self, "priority")
        _member(self.category, INSIGHT_CATEGORIES, "category")
        _member(self.impact, LEVELS, "impact")
        _member(self.effort, LEVELS, "effort")

    @property
    def score(self) -> int:
        """priority + impact + effort weight; cheaper fixes score higher"""
        return self.priority.weight + _LEVEL_WEIGHT[self.impact] + _EFFORT_WEIGHT[self.effort]


@dataclass(frozen=True)
class ExecutiveSummary(_Section):
    security_posture: str
    overall_score: int
    hierarchy_compliance: float
    performance_score: int
    compliance_grade: str
    compliance_status: str
    key_findings: Tuple[str, ...] = ()
    top_risks: Tuple[str, ...] = ()
    quick_wins: Tuple[str, ...] = ()
    rbac_compliance: Optional[float] = None

    def __post_init__(self):
        _member(self.security_posture, POSTURES, "security_posture")
        _member(self.compliance_status, COMPLIANCE_STATUSES, "compliance_status")
        _score(self.overall_score, "overall_score")
        _score(self.hierarchy_compliance, "hierarchy_compliance")
        if self.rbac_compliance is not None:
            _score(self.rbac_compliance, "rbac_compliance")


@dataclass(frozen=True)
class IntelligenceReport(_Section):
    generated_at: float
    roles: Tuple[str, ...]
    patterns: PermissionPatternAnalysis
    comparison: RoleComparison
    performance: PerformanceAnalysis
    matrix: ComparisonMatrix
    heatmap: Heatmap
    vulnerabilities: Tuple[Vulnerability, ...]
    actionable_insights: Tuple[ActionableInsight, ...]
    executive_summary: ExecutiveSummary

    def __post_init__(self):
        if tuple(self.matrix.roles) != tuple(self.roles):
            raise ValueError("Comparison matrix roles differ from report roles")
        scores = [i.score for i in self.actionable_insights]
        if scores != sorted(scores, reverse=True):
            raise ValueError("Actionable insights must be sorted by score")

    def vulnerabilities_of(self, severity: Severity) -> List[Vulnerability]:
        return [v for v in self.vulnerabilities if v.severity is severity]
