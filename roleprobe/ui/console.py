"""
Console rendering
- render_report: full SecurityReport (summary panel + section tables)
- render_* helpers: individual sections, reused by the single-phase commands
"""

from typing import Dict, List, Optional

from rich.console import Console
from rich.panel import Panel
from rich.table import Table

console = Console()

SEVERITY_COLORS = {
    "critical": "bold red",
    "high": "red",
    "medium": "yellow",
    "low": "blue",
}

POSTURE_COLORS = {
    "critical": "bold red",
    "needs_improvement": "yellow",
    "good": "green",
    "excellent": "bold green",
}


def severity_label(severity) -> str:
    value = getattr(severity, "value", severity)
    style = SEVERITY_COLORS.get(value, "white")
    return f"[{style}]{value.upper()}[/{style}]"


def _pct_style(value: float) -> str:
    if value >= 90:
        return f"[bold green]{value}%[/bold green]"
    if value >= 70:
        return f"[yellow]{value}%[/yellow]"
    return f"[red]{value}%[/red]"


# ─────────────────────────────────────────────────────────────
# SECTIONS
# ─────────────────────────────────────────────────────────────

def render_discoveries(discoveries: Dict) -> Table:
    table = Table(title="Role Coverage", show_header=True, header_style="bold magenta")
    table.add_column("Role", style="cyan", width=16)
    table.add_column("Paths", width=7)
    table.add_column("Accessible", width=11)
    table.add_column("Restricted", width=11)
    table.add_column("Errors", width=7)
    table.add_column("Avg ms", width=8)
    table.add_column("Grade", width=6)
    table.add_column("Boundaries", width=11)

    for role, d in discoveries.items():
        cov = d.coverage
        errors = f"[red]{cov.errors}[/red]" if cov.errors else "[dim]0[/dim]"
        table.add_row(
            role,
            str(cov.total),
            f"[green]{cov.accessible}[/green]",
            str(cov.restricted),
            errors,
            str(int(cov.avg_response_time_ms)),
            cov.performance_grade,
            str(len(d.permission_boundaries)),
        )
    return table


def render_rbac(rbac) -> Table:
    table = Table(title=f"RBAC Validation • compliance {rbac.compliance_score}%",
                  show_header=True, header_style="bold blue")
    table.add_column("Family", width=12)
    table.add_column("Pass rate", width=10)

    for family, score in rbac.category_scores.items():
        table.add_row(family, _pct_style(score))
    s = rbac.summary
    table.add_row("[bold]Total[/bold]", f"[bold]{s['passed']}/{s['total_tests']}[/bold]")
    return table


def render_fuzz(campaigns: Dict) -> Table:
    table = Table(title="Payload Fuzzing", show_header=True, header_style="bold cyan")
    table.add_column("Role", style="cyan", width=16)
    table.add_column("Tests", width=7)
    table.add_column("Vulnerable", width=11)
    table.add_column("Ambiguous", width=10)
    table.add_column("Failed", width=7)
    table.add_column("API endpoints", width=14)

    for role, c in campaigns.items():
        vulnerable = len(c.vulnerabilities)
        table.add_row(
            role,
            str(len(c.results)),
            f"[red]{vulnerable}[/red]" if vulnerable else "[dim]0[/dim]",
            str(len(c.ambiguous)),
            str(c.failed_tests),
            str(len(c.api_endpoints)),
        )
    return table


def render_vulnerabilities(vulns: List, title: str = "Vulnerabilities") -> Optional[Table]:
    if not vulns:
        return None
    table = Table(title=title, show_header=True, header_style="bold magenta")
    table.add_column("Severity", width=10)
    table.add_column("Type", width=26)
    table.add_column("Roles", width=18)
    table.add_column("Resource", width=28)
    table.add_column("Source", width=6)

    for v in vulns:
        table.add_row(
            severity_label(v.severity),
            v.type[:26],
            ", ".join(v.affected_roles)[:18],
            ", ".join(v.affected_resources)[:28] or "-",
            v.source,
        )
    return table


def render_matrix(matrix) -> Table:
    table = Table(title="Access Matrix", show_header=True, header_style="bold magenta")
    table.add_column("Path", style="cyan")
    for role in matrix.roles:
        table.add_column(role, justify="center")

    anomalies = {(a.role, a.path): a for a in matrix.anomalies}
    for j, path in enumerate(matrix.paths):
        cells = []
        for i, role in enumerate(matrix.roles):
            mark = "✓" if matrix.access_matrix[i][j] else "·"
            anomaly = anomalies.get((role, path))
            if anomaly:
                style = SEVERITY_COLORS[anomaly.risk_level.value]
                mark = f"[{style}]{mark}![/{style}]"
            cells.append(mark)
        table.add_row(path, *cells)
    return table


def render_insights(insights: List, limit: int = 10) -> Optional[Table]:
    if not insights:
        return None
    table = Table(title="Actionable Insights", show_header=True, header_style="bold green")
    table.add_column("Priority", width=10)
    table.add_column("Category", width=12)
    table.add_column("Title", width=44)
    table.add_column("Impact", width=7)
    table.add_column("Effort", width=7)

    for insight in insights[:limit]:
        table.add_row(
            severity_label(insight.priority),
            insight.category,
            insight.title[:44],
            insight.impact,
            insight.effort,
        )
    return table


def render_summary(report) -> Panel:
    summary = report.intelligence.executive_summary
    posture_style = POSTURE_COLORS[summary.security_posture]
    counts = report.severity_counts
    timings = ", ".join(f"{name} {ms / 1000:.1f}s" for name, ms in report.phase_timings.items())

    lines = [
        f"[bold]Target:[/bold] {report.base_url}",
        f"[bold]Posture:[/bold] [{posture_style}]{summary.security_posture}[/{posture_style}]",
        f"[bold]Overall score:[/bold] {summary.overall_score}/100",
        f"[bold]Compliance:[/bold] {summary.compliance_grade} ({summary.compliance_status})",
        f"[bold]Findings:[/bold] "
        + " ".join(f"{severity_label(s)} {n}" for s, n in counts.items()),
        f"[bold]Phases:[/bold] {timings or '-'}",
    ]
    if summary.key_findings:
        lines.append("")
        lines.extend(f"  • {f}" for f in summary.key_findings)
    return Panel("\n".join(lines), title="Security Report")


def render_report(report, show_matrix: bool = False):
    if report.discoveries:
        console.print(render_discoveries(report.discoveries))
    if report.rbac:
        console.print(render_rbac(report.rbac))
    if report.fuzz:
        console.print(render_fuzz(report.fuzz))
    if show_matrix and report.intelligence.matrix.paths:
        console.print(render_matrix(report.intelligence.matrix))

    for table in (render_vulnerabilities(report.vulnerabilities),
                  render_insights(list(report.intelligence.actionable_insights))):
        if table is not None:
            console.print(table)
    console.print(render_summary(report))


def render_runs(rows: List[Dict]) -> Table:
    table = Table(title="Recent Runs", show_header=True, header_style="bold magenta")
    table.add_column("ID", style="cyan", width=6)
    table.add_column("Target", width=30)
    table.add_column("Status", width=10)
    table.add_column("Posture", width=18)
    table.add_column("Score", width=6)
    table.add_column("Vulns", width=6)
    table.add_column("Started", width=18)

    for row in rows:
        posture = row.get("posture") or "-"
        style = POSTURE_COLORS.get(posture, "white")
        table.add_row(
            str(row["id"]),
            row["base_url"][:28],
            row["status"],
            f"[{style}]{posture}[/{style}]",
            str(row.get("overall_score") if row.get("overall_score") is not None else "-"),
            str(row.get("vuln_count", 0)),
            str(row["start_time"])[:16] if row.get("start_time") else "-",
        )
    return table
