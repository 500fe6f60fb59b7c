"""
Intelligence Engine
===================
Pure analysis over the records of a run: hierarchy compliance, access
patterns, role comparison, comparison matrix, heatmap, performance and a
prioritized executive summary.
"""

from .engine import IntelligenceEngine, analyze_performance
from .matrix import build_matrix, build_heatmap
from .report import (
    IntelligenceReport,
    PermissionPatternAnalysis,
    RoleComparison,
    PerformanceAnalysis,
    ComparisonMatrix,
    Heatmap,
    ActionableInsight,
    ExecutiveSummary,
)

__all__ = [
    "IntelligenceEngine",
    "analyze_performance",
    "build_matrix",
    "build_heatmap",
    "IntelligenceReport",
    "PermissionPatternAnalysis",
    "RoleComparison",
    "PerformanceAnalysis",
    "ComparisonMatrix",
    "Heatmap",
    "ActionableInsight",
    "ExecutiveSummary",
]
