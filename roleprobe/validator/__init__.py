"""
RBAC Validator
==============
Permission matrix, privilege escalation, isolation and boundary tests run
through the role session pool.

Usage:
    from roleprobe.validator import RBACValidator

    validator = RBACValidator(pool, profile, console, network)
    report = await validator.run()

    for vuln in report.vulnerabilities:
        print(vuln.severity.value, vuln.description)
"""

from .base import (
    TestType,
    RBACEvidence,
    RBACTestResult,
    Observation,
    decide,
)
from .report import (
    PermissionMatrixResult,
    EscalationTestResult,
    IsolationTestResult,
    BoundaryTestResult,
    SecurityRecommendation,
    RBACSecurityReport,
)
from .techniques import (
    AttemptContext,
    BypassTechnique,
    TechniqueRegistry,
)
from .hub import RBACValidator

__all__ = [
    # Core types
    "TestType",
    "RBACEvidence",
    "RBACTestResult",
    "Observation",
    "decide",

    # Report sections
    "PermissionMatrixResult",
    "EscalationTestResult",
    "IsolationTestResult",
    "BoundaryTestResult",
    "SecurityRecommendation",
    "RBACSecurityReport",

    # Bypass techniques
    "AttemptContext",
    "BypassTechnique",
    "TechniqueRegistry",

    # Main validator
    "RBACValidator",
]
