"""
RoleProbe CLI
Main entry point
"""

import asyncio
import json
import logging
import os
import time

import click
import yaml
from rich.logging import RichHandler
from rich.panel import Panel
from dotenv import load_dotenv

from ..config import Profile, Settings, load_profile
from ..errors import ConfigurationError, RoleProbeError
from ..ui.console import (
    console,
    render_discoveries,
    render_insights,
    render_matrix,
    render_report,
    render_runs,
    render_vulnerabilities,
)

load_dotenv()

logger = logging.getLogger("roleprobe.cli")


def run_async(coro):
    """Helper to run async functions"""
    loop = asyncio.new_event_loop()
    asyncio.set_event_loop(loop)
    try:
        return loop.run_until_complete(coro)
    finally:
        loop.close()


def format_duration(seconds: float) -> str:
    if seconds < 60:
        return f"{seconds:.1f}s"
    mins, secs = divmod(int(seconds), 60)
    if mins < 60:
        return f"{mins}m {secs}s"
    hours, mins = divmod(mins, 60)
    return f"{hours}h {mins}m {secs}s"


def configure_logging(verbose: bool):
    logging.basicConfig(
        level=logging.DEBUG if verbose else logging.INFO,
        format="%(message)s",
        datefmt="[%X]",
        handlers=[RichHandler(console=console, rich_tracebacks=True, show_path=verbose)],
        force=True,
    )


def build_profile(profile_path, base_url, headed) -> Profile:
    settings = Settings.from_env()
    overrides = {}
    if base_url:
        overrides["crawler"] = {"base_url": base_url.rstrip("/")}
    if headed:
        overrides["headless"] = False
    settings = settings.with_overrides(overrides)

    if profile_path:
        return load_profile(profile_path, settings)
    return Profile.default(settings)


def write_report(report, output) -> str:
    path = output or os.path.join(report_dir(report), f"report-{int(report.generated_at)}.json")
    os.makedirs(os.path.dirname(path) or ".", exist_ok=True)
    with open(path, "w") as f:
        json.dump(report.to_dict(), f, indent=2, default=str)
    return path


def report_dir(report) -> str:
    return report.settings.get("output_dir") or "results"


# ═══════════════════════════════════════════════════════════════
# SHARED OPTIONS
# ═══════════════════════════════════════════════════════════════

def run_options(fn):
    options = [
        click.option("--profile", "profile_path", type=click.Path(exists=True), help="YAML profile"),
        click.option("--base-url", type=str, help="Application base URL"),
        click.option("--role", "roles", multiple=True, help="Limit crawling/fuzzing to these roles"),
        click.option("--output", "-o", type=click.Path(), help="Report JSON path"),
        click.option("--save", is_flag=True, help="Store the run in MySQL"),
        click.option("--headed", is_flag=True, help="Show the browser"),
        click.option("--matrix", "show_matrix", is_flag=True, help="Print the access matrix"),
    ]
    for option in reversed(options):
        fn = option(fn)
    return fn


@click.group()
@click.version_option(version="1.0.0", prog_name="roleprobe")
@click.option("--verbose", "-v", is_flag=True, help="Debug logging")
def cli(verbose):
    """RoleProbe: multi-role access control and payload tester"""
    configure_logging(verbose)


def _execute(phases, profile_path, base_url, roles, output, save, headed, show_matrix):
    from ..agents.orchestrator import Orchestrator

    try:
        profile = build_profile(profile_path, base_url, headed)
    except ConfigurationError as e:
        raise click.ClickException(str(e))
    logger.debug(f"Profile: {len(profile.roles)} roles, {len(profile.permission_rules)} rules, "
                 f"{len(profile.payload_sets)} payload sets")

    console.print(Panel(
        f"[bold green]Target:[/bold green] {profile.settings.crawler.base_url}\n"
        f"[bold]Roles:[/bold] {', '.join(roles or profile.role_names)}\n"
        f"[bold]Phases:[/bold] {' → '.join(phases + ('analyze',))}",
        title="Run Configuration",
    ))

    started = time.time()
    orch = Orchestrator(profile)
    try:
        report = run_async(orch.run(roles=roles or None, phases=phases))
    except KeyboardInterrupt:
        console.print("\n[yellow]Run interrupted by user.[/yellow]")
        return None
    except RoleProbeError as e:
        console.print(f"\n[red]Run aborted after {format_duration(time.time() - started)}:[/red] {e}")
        raise click.Abort()

    render_report(report, show_matrix=show_matrix)
    path = write_report(report, output)
    console.print(f"[dim]Report written to {path} • {format_duration(time.time() - started)}[/dim]")

    if save:
        from ..db.database import RunStore
        with RunStore() as store:
            run_id = store.save(report)
        console.print(f"[green]Stored as run #{run_id}[/green]")
    return report


# ═══════════════════════════════════════════════════════════════
# COMMANDS
# ═══════════════════════════════════════════════════════════════

@cli.command()
@run_options
def run(profile_path, base_url, roles, output, save, headed, show_matrix):
    """
    Full pipeline: crawl, validate, fuzz, analyze.

    Examples:
      roleprobe run --base-url http://localhost:3002
      roleprobe run --profile app.yaml --role wms_user --save
    """
    _execute(("crawl", "validate", "fuzz"), profile_path, base_url, roles, output, save, headed, show_matrix)


@cli.command()
@run_options
def crawl(profile_path, base_url, roles, output, save, headed, show_matrix):
    """Discover reachable paths per role."""
    _execute(("crawl",), profile_path, base_url, roles, output, save, headed, show_matrix)


@cli.command()
@run_options
def validate(profile_path, base_url, roles, output, save, headed, show_matrix):
    """Run the RBAC validator (permission, escalation, isolation, boundary)."""
    _execute(("validate",), profile_path, base_url, roles, output, save, headed, show_matrix)


@cli.command()
@run_options
@click.option("--no-crawl", is_flag=True, help="Fuzz entry pages only")
def fuzz(profile_path, base_url, roles, output, save, headed, show_matrix, no_crawl):
    """Inject payload sets into discovered forms and API calls."""
    phases = ("fuzz",) if no_crawl else ("crawl", "fuzz")
    _execute(phases, profile_path, base_url, roles, output, save, headed, show_matrix)


@cli.command()
@click.argument("report_file", type=click.Path(exists=True), required=False)
@click.option("--run-id", type=int, help="Analyze a stored run instead of a report file")
@click.option("--profile", "profile_path", type=click.Path(exists=True), help="YAML profile")
@click.option("--matrix", "show_matrix", is_flag=True, help="Print the access matrix")
def analyze(report_file, run_id, profile_path, show_matrix):
    """Re-run the intelligence engine over a saved report or stored run."""
    from ..agents.orchestrator import records_from_dict
    from ..intelligence import IntelligenceEngine

    if (report_file is None) == (run_id is None):
        raise click.UsageError("Give either REPORT_FILE or --run-id")
    if report_file:
        with open(report_file, "r") as f:
            data = json.load(f)
        source = os.path.basename(report_file)
    else:
        data = _stored_report(run_id)
        source = f"run #{run_id}"
    try:
        profile = load_profile(profile_path) if profile_path else Profile.default()
    except ConfigurationError as e:
        raise click.ClickException(str(e))

    discoveries, rbac_results, security_tests = records_from_dict(data)
    intelligence = IntelligenceEngine.from_profile(profile).analyze(
        discoveries, rbac_results, security_tests, generated_at=data.get("generated_at", 0.0),
    )

    console.print(render_discoveries(discoveries))
    if show_matrix and intelligence.matrix.paths:
        console.print(render_matrix(intelligence.matrix))
    for table in (render_vulnerabilities(list(intelligence.vulnerabilities)),
                  render_insights(list(intelligence.actionable_insights))):
        if table is not None:
            console.print(table)

    summary = intelligence.executive_summary
    console.print(Panel(
        f"[bold]Posture:[/bold] {summary.security_posture}\n"
        f"[bold]Overall score:[/bold] {summary.overall_score}/100\n"
        f"[bold]Compliance:[/bold] {summary.compliance_grade} ({summary.compliance_status})\n"
        + "\n".join(f"  • {finding}" for finding in summary.key_findings),
        title=f"Analysis of {source}",
    ))


def _stored_report(run_id: int) -> dict:
    from ..db.database import RunStore

    try:
        with RunStore() as store:
            data = store.report(run_id)
    except RoleProbeError as e:
        raise click.ClickException(str(e))
    if data is None:
        raise click.ClickException(f"Run #{run_id} has no stored report")
    return data


@cli.command()
@click.option("--output", "-o", type=click.Path(), default="roleprobe.yaml", show_default=True)
def profile(output):
    """Write the built-in profile as an editable YAML file."""
    data = Profile.default(Settings.from_env()).to_dict()
    with open(output, "w") as f:
        yaml.safe_dump(data, f, sort_keys=False, default_flow_style=False)
    console.print(f"[green]Profile written to {output}[/green] "
                  f"({len(data['roles'])} roles, {len(data['permission_rules'])} rules)")


@cli.command()
@click.option("--limit", type=int, default=15, show_default=True)
@click.option("--run-id", type=int, help="Show the findings of one run")
def runs(limit, run_id):
    """List stored runs."""
    from ..db.database import RunStore
    from ..models import Vulnerability

    try:
        with RunStore() as store:
            if run_id is None:
                rows = store.recent(limit)
                if not rows:
                    console.print("[yellow]No runs found.[/yellow]")
                    return
                console.print(render_runs(rows))
                return

            rows = store.findings(run_id)
    except RoleProbeError as e:
        raise click.ClickException(str(e))

    vulns = [Vulnerability.from_dict({k: row[k] for k in (
        "vuln_id", "type", "severity", "description", "affected_roles",
        "affected_resources", "cvss_score", "remediation", "source")}) for row in rows]
    table = render_vulnerabilities(vulns, title=f"Run #{run_id}")
    if table is None:
        console.print(f"[yellow]Run #{run_id} has no findings.[/yellow]")
    else:
        console.print(table)


def main():
    cli()


if __name__ == "__main__":
    main()
