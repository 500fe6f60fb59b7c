"""
Comparison matrix and heatmap
=============================
Both are roles × paths grids over the sorted union of every path any role
probed. Row order follows the order of the discoveries mapping.
"""

from typing import Callable, Dict, List, Optional

from .report import ComparisonMatrix, MatrixAnomaly, Heatmap, HeatmapCell
from ..models import PathDiscovery, PathResult, Severity

COLOR_SCALE = {
    "min": "#ff4444",
    "mid": "#ffaa00",
    "max": "#00aa00",
}

HIGH_PERFORMANCE = 70

# role, path → True/False when declared, None when the role declares nothing
Expectation = Callable[[str, str], Optional[bool]]


def observed_paths(discoveries: Dict[str, PathDiscovery]) -> List[str]:
    return sorted({r.path for d in discoveries.values() for r in d.results})


def build_matrix(discoveries: Dict[str, PathDiscovery], expects: Expectation) -> ComparisonMatrix:
    roles = tuple(discoveries)
    paths = tuple(observed_paths(discoveries))
    rows = []
    anomalies = []

    for role in roles:
        reachable = set(discoveries[role].accessible_paths)
        row = tuple(path in reachable for path in paths)
        rows.append(row)

        for path, actual in zip(paths, row):
            expected = expects(role, path)
            if expected is None or expected == actual:
                continue
            if actual:
                anomalies.append(MatrixAnomaly(role, path, expected, actual, Severity.HIGH,
                                               f"{role} has unexpected access to {path}"))
            else:
                anomalies.append(MatrixAnomaly(role, path, expected, actual, Severity.MEDIUM,
                                               f"{role} lacks expected access to {path}"))

    return ComparisonMatrix(roles=roles, paths=paths, access_matrix=tuple(rows), anomalies=tuple(anomalies))


# ─────────────────────────────────────────────────────────────
# HEATMAP
# ─────────────────────────────────────────────────────────────

def heat_value(result: Optional[PathResult]) -> float:
    """0 when unreachable, 50 when reachable with no timing, else faster is hotter"""
    if result is None or not result.accessible:
        return 0.0
    if result.response_time_ms <= 0:
        return 50.0
    return round(max(10.0, 100 - result.response_time_ms / 50), 1)


def heat_color(value: float) -> str:
    if value <= 0:
        return COLOR_SCALE["min"]
    if value <= 50:
        return COLOR_SCALE["mid"]
    return COLOR_SCALE["max"]


def build_heatmap(discoveries: Dict[str, PathDiscovery]) -> Heatmap:
    roles = tuple(discoveries)
    paths = tuple(observed_paths(discoveries))
    rows = []

    for role in roles:
        row = []
        for path in paths:
            result = discoveries[role].result_for(path)
            value = heat_value(result)
            if result is None:
                tooltip = f"{role} on {path}: not probed"
            elif not result.accessible:
                tooltip = f"{role} on {path}: no access ({result.status_code or result.error or 'unknown'})"
            else:
                tooltip = f"{role} on {path}: {result.response_time_ms} ms"
            row.append(HeatmapCell(role, path, value, heat_color(value), tooltip))
        rows.append(tuple(row))

    return Heatmap(
        roles=roles,
        paths=paths,
        cells=tuple(rows),
        color_scale=dict(COLOR_SCALE),
        insights=tuple(heatmap_insights(rows)),
    )


def heatmap_insights(rows) -> List[str]:
    cells = [c for row in rows for c in row]
    if not cells:
        return []
    accessible = sum(1 for c in cells if c.value > 0)
    fast = sum(1 for c in cells if c.value > HIGH_PERFORMANCE)

    insights = [
        f"{accessible}/{len(cells)} role-path combinations are accessible",
        f"{fast} combinations show high performance (>{HIGH_PERFORMANCE})",
    ]
    if accessible / len(cells) < 0.3:
        insights.append("Low access coverage: most role-path combinations are unreachable")
    if accessible and fast / accessible > 0.8:
        insights.append("Excellent performance across accessible paths")
    return insights
