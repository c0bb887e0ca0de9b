"""Main entry point for the infra-pipeline CLI."""

import logging
import sys
from pathlib import Path
from typing import Optional

import click
from rich.console import Console
from rich.markup import escape
from rich.panel import Panel
from rich.table import Table
from rich.text import Text

from infra_pipeline import __version__
from infra_pipeline.cloud.azure import AzureOidcIdentity
from infra_pipeline.config import Settings, get_settings
from infra_pipeline.core.artifacts import ArtifactManager
from infra_pipeline.core.context import CiContext
from infra_pipeline.core.errors import ConfigurationError, PipelineError
from infra_pipeline.core.gate import GatePolicy, StageGate
from infra_pipeline.core.graph import PipelineRunner, ProgressCallback
from infra_pipeline.core.registry import EnvironmentRegistry
from infra_pipeline.core.state import PipelineRun, RunStatus, Stage, StageStatus, TriggerKind
from infra_pipeline.terraform.cli import TerraformCli

console = Console()

STATUS_STYLES = {
    StageStatus.COMPLETED: "green",
    StageStatus.FAILED: "red",
    StageStatus.SKIPPED: "dim",
}


def print_banner(environment: str, trigger: str) -> None:
    """Print the run banner."""
    banner = Text()
    banner.append("Terraform Pipeline", style="bold blue")
    banner.append(f" v{__version__}\n", style="dim")
    banner.append(f"Environment: {environment}  Trigger: {trigger}", style="italic")

    console.print(Panel(banner, title="[bold]infra-pipeline[/bold]", border_style="blue"))


def stage_options(f):
    """Add repeatable --enable/--disable stage switches."""
    choice = click.Choice([s.value for s in Stage])
    f = click.option("--disable", "-d", multiple=True, type=choice, help="Stage to switch off")(f)
    f = click.option("--enable", "-s", multiple=True, type=choice, help="Stage to switch on")(f)
    return f


def requested_flags(enable: tuple[str, ...], disable: tuple[str, ...]) -> dict[str, bool]:
    """Turn --enable/--disable values into a partial flag mapping."""
    both = sorted(set(enable) & set(disable))
    if both:
        raise click.BadParameter(f"both enabled and disabled: {', '.join(both)}")
    return {**{s: True for s in enable}, **{s: False for s in disable}}


def parse_stages(names) -> frozenset[Stage]:
    try:
        return frozenset(Stage(name) for name in names)
    except ValueError as e:
        raise ConfigurationError(f"Unknown stage: {e}") from e


def load_registry(settings: Settings, registry_path: Optional[Path]) -> EnvironmentRegistry:
    """Load the registry file, falling back to the built-in environments."""
    if registry_path is not None:
        return EnvironmentRegistry.from_yaml(registry_path)
    if settings.registry_file.exists():
        return EnvironmentRegistry.from_yaml(settings.registry_file)

    console.print(f"[dim]{settings.registry_file} not found, using built-in environments[/dim]")
    return EnvironmentRegistry.default()


def build_runner(settings: Settings, progress: Optional[ProgressCallback] = None) -> PipelineRunner:
    """Create a runner backed by the Terraform CLI and Azure OIDC identity."""
    return PipelineRunner(
        TerraformCli.from_settings(settings),
        identity=AzureOidcIdentity(),
        progress=progress,
    )


def print_error(error: Exception) -> None:
    console.print(f"[red]Error: {escape(str(error))}[/red]")


def print_progress(event_type: str, message: str, details: Optional[dict]) -> None:
    if event_type == "stage_started":
        console.print(f"[cyan]▶ {message}[/cyan]")
    elif event_type == "stage_completed":
        console.print(f"[green]✓ {message}[/green]")
    elif event_type == "stage_failed":
        console.print(f"[red]✗ {message}[/red]")
    elif event_type == "stage_skipped":
        console.print(f"[dim]- {message}[/dim]")


def print_flags(title: str, flags: dict[str, bool]) -> None:
    table = Table(title=title)
    table.add_column("Stage")
    table.add_column("Runs")
    for name, enabled in flags.items():
        table.add_row(name, "[green]yes[/green]" if enabled else "[dim]no[/dim]")
    console.print(table)


def print_results(run: PipelineRun) -> None:
    table = Table(title=f"Run {run.run_id} ({run.environment.name})")
    table.add_column("Stage")
    table.add_column("Status")
    table.add_column("Detail")
    table.add_column("Duration", justify="right")

    for result in run.results:
        style = STATUS_STYLES.get(result.status, "white")
        detail = result.skip_reason.value if result.skip_reason else ""
        if result.returncode is not None:
            detail = f"exit {result.returncode}"
        table.add_row(
            result.stage.value,
            f"[{style}]{result.status.value}[/{style}]",
            detail,
            f"{result.duration_seconds:.1f}s" if result.duration_seconds else "",
        )
    console.print(table)

    failure = run.failure
    if failure is not None:
        console.print(Panel(
            Text(failure.output or "(no output)"),
            title=f"[bold red]{failure.stage.value} failed[/bold red]",
            border_style="red",
        ))


def execute_run(
    settings: Settings,
    registry: EnvironmentRegistry,
    environment: str,
    trigger: TriggerKind,
    requested: dict[str, bool],
    approved: bool,
    branch: Optional[str],
    best_effort: tuple[str, ...],
    save_report: bool,
) -> None:
    """Gate, execute and report a run; exits nonzero on failure."""
    try:
        env = registry.resolve(environment)
        gate = StageGate(GatePolicy.from_settings(settings))
        flags = gate.evaluate(trigger, env, requested or None)

        run = PipelineRun(
            environment=env,
            flags=flags,
            trigger=trigger,
            approval_satisfied=approved,
            branch=branch,
            best_effort=parse_stages(best_effort or settings.best_effort_list),
        )

        print_banner(env.name, trigger.value)
        runner = build_runner(settings, progress=print_progress)
        runner.execute(run)
    except PipelineError as e:
        print_error(e)
        sys.exit(2)

    print_results(run)

    if save_report:
        path = ArtifactManager(settings.reports_dir).save_run(run)
        console.print(f"[dim]Report saved to {path}[/dim]")

    if run.status == RunStatus.FAILED:
        console.print(f"[red]Run {run.status.value}.[/red]")
        sys.exit(1)
    console.print(f"[green]Run {run.status.value}.[/green]")


@click.group()
@click.version_option(version=__version__)
def cli() -> None:
    """Terraform lifecycle orchestration across environments."""
    settings = get_settings()
    logging.basicConfig(
        level=getattr(logging, settings.log_level.upper(), logging.INFO),
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )


@cli.command()
@click.option("--registry", "-r", type=click.Path(path_type=Path), default=None)
def environments(registry: Optional[Path]) -> None:
    """List configured environments."""
    settings = get_settings()
    try:
        reg = load_registry(settings, registry)
    except PipelineError as e:
        print_error(e)
        sys.exit(2)

    table = Table(title="Environments")
    table.add_column("Name")
    table.add_column("tfvars")
    table.add_column("State key")
    table.add_column("Approval")
    table.add_column("Production")

    for env in reg:
        approval = "required" if env.approval.required else "none"
        if env.approval.reviewers:
            approval += f" ({', '.join(env.approval.reviewers)})"
        table.add_row(
            env.name,
            env.tfvars_file,
            f"{env.backend.storage_account_name}/{env.backend.container_name}/{env.backend.key}",
            approval,
            "yes" if env.production else "",
        )
    console.print(table)


@cli.command()
@click.option("--environment", "-e", required=True)
@click.option("--trigger", "-t", type=click.Choice(["push", "manual"]), default="push")
@click.option("--registry", "-r", type=click.Path(path_type=Path), default=None)
@stage_options
def gate(
    environment: str,
    trigger: str,
    registry: Optional[Path],
    enable: tuple[str, ...],
    disable: tuple[str, ...],
) -> None:
    """Show which stages would run."""
    settings = get_settings()
    requested = requested_flags(enable, disable)

    try:
        env = load_registry(settings, registry).resolve(environment)
        flags = StageGate(GatePolicy.from_settings(settings)).evaluate(
            TriggerKind(trigger), env, requested or None
        )
    except PipelineError as e:
        print_error(e)
        sys.exit(2)

    print_flags(f"{env.name} / {trigger}", flags.as_dict())


@cli.command()
@click.option("--environment", "-e", required=True)
@click.option("--trigger", "-t", type=click.Choice(["push", "manual"]), default="manual")
@click.option("--registry", "-r", type=click.Path(path_type=Path), default=None)
@click.option("--approved", is_flag=True, help="Approval gate was satisfied upstream")
@click.option("--branch", "-b", default=None, help="Branch the run originates from")
@click.option(
    "--best-effort",
    multiple=True,
    type=click.Choice([s.value for s in Stage]),
    help="Stage whose failure does not halt the run",
)
@click.option("--no-report", is_flag=True, help="Skip saving the YAML run report")
@stage_options
def run(
    environment: str,
    trigger: str,
    registry: Optional[Path],
    approved: bool,
    branch: Optional[str],
    best_effort: tuple[str, ...],
    no_report: bool,
    enable: tuple[str, ...],
    disable: tuple[str, ...],
) -> None:
    """Execute the Terraform lifecycle for an environment."""
    settings = get_settings()
    requested = requested_flags(enable, disable)
    try:
        reg = load_registry(settings, registry)
    except PipelineError as e:
        print_error(e)
        sys.exit(2)

    execute_run(
        settings,
        reg,
        environment,
        TriggerKind(trigger),
        requested,
        approved,
        branch,
        best_effort,
        settings.save_reports and not no_report,
    )


@cli.command()
@click.option("--registry", "-r", type=click.Path(path_type=Path), default=None)
def ci(registry: Optional[Path]) -> None:
    """Execute a run described by the GitHub Actions environment."""
    settings = get_settings()
    try:
        context = CiContext.from_environ()
        reg = load_registry(settings, registry)
    except PipelineError as e:
        print_error(e)
        sys.exit(2)

    execute_run(
        settings,
        reg,
        context.environment,
        context.trigger,
        context.requested_flags,
        context.approval_satisfied,
        context.branch,
        (),
        settings.save_reports,
    )


@cli.command()
@click.option("--environment", "-e", required=True)
@click.option("--run-id", default="latest")
def report(environment: str, run_id: str) -> None:
    """Show a saved run report."""
    settings = get_settings()
    try:
        data = ArtifactManager(settings.reports_dir).load_run(environment, run_id)
    except PipelineError as e:
        print_error(e)
        sys.exit(2)

    console.print(Panel.fit(
        f"""[bold]Run:[/bold] {data.get('run_id')}
[bold]Environment:[/bold] {data.get('environment')}
[bold]Trigger:[/bold] {data.get('trigger')}
[bold]Status:[/bold] {data.get('status')}
[bold]Finished:[/bold] {data.get('finished_at')}
""",
        title="Run Report",
        border_style="green" if data.get("status") == "succeeded" else "red",
    ))
    for stage in data.get("stages", []):
        detail = stage.get("skip_reason") or f"exit {stage.get('returncode')}"
        console.print(f"  {stage['stage']}: {stage['status']} [dim]{detail}[/dim]")


if __name__ == "__main__":
    cli()
